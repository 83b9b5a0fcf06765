"""
In-transaction domain events.

Workflows publish an event instead of mutating the stage tracker directly; the
handlers run synchronously on the same DB session, so the tracker change commits
or rolls back together with the workflow transition that caused it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from utils import AuthContext


SUPERVISOR_DECISION_MADE = "SupervisorDecisionMade"
SUPERVISOR_ASSESSMENT_APPROVED = "SupervisorAssessmentApproved"
HR_ASSESSMENT_APPROVED = "HRAssessmentApproved"


@dataclass
class DomainEvent:
    name: str
    userId: str
    assessmentId: str
    actor: AuthContext | None
    payload: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Any, DomainEvent, Any], Any]

_HANDLERS: dict[str, list[Handler]] = {}

log = logging.getLogger("workflow")


def subscribe(name: str, handler: Handler) -> None:
    handlers = _HANDLERS.setdefault(name, [])
    if handler not in handlers:
        handlers.append(handler)


def publish(db, event: DomainEvent, cfg) -> list[Any]:
    """Run every handler for ``event``; handler errors propagate and abort the transaction."""

    results = []
    for handler in _HANDLERS.get(event.name, []):
        log.info("event=%s user=%s assessment=%s handler=%s", event.name, event.userId, event.assessmentId, handler.__name__)
        results.append(handler(db, event, cfg))
    return results
