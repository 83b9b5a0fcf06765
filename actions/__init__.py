from __future__ import annotations

from actions.auth_actions import get_me, login_exchange, session_logout
from actions.hr_assessment import (
    hr_assessment_conduct,
    hr_assessment_decide,
    hr_assessment_get,
    hr_assessment_init,
    hr_assessments_by_hr,
    hr_assessments_queue,
)
from actions.notifications import notification_mark_read, notifications_list
from actions.progress_ledger import task_completion_set, task_validate
from actions.stage_tracker import (
    onboarding_journey_create,
    onboarding_journey_delete,
    onboarding_journey_reset,
    onboarding_phase_advance,
    onboarding_progress_get,
    onboarding_progress_list,
)
from actions.supervisor_assessment import (
    supervisor_assessment_conduct,
    supervisor_assessment_decide,
    supervisor_assessment_get,
    supervisor_assessment_hr_approve,
    supervisor_assessment_init,
    supervisor_assessment_upload_certificate,
    supervisor_assessments_by_supervisor,
    supervisor_assessments_hr_queue,
)
from actions.task_catalog import journey_types_list, task_catalog_list
from utils import ApiError


ACTION_HANDLERS = {
    "LOGIN_EXCHANGE": login_exchange,
    "GET_ME": get_me,
    "SESSION_LOGOUT": session_logout,
    "TASK_CATALOG_LIST": task_catalog_list,
    "JOURNEY_TYPES_LIST": journey_types_list,
    "ONBOARDING_JOURNEY_CREATE": onboarding_journey_create,
    "ONBOARDING_JOURNEY_RESET": onboarding_journey_reset,
    "ONBOARDING_JOURNEY_DELETE": onboarding_journey_delete,
    "ONBOARDING_PHASE_ADVANCE": onboarding_phase_advance,
    "ONBOARDING_PROGRESS_GET": onboarding_progress_get,
    "ONBOARDING_PROGRESS_LIST": onboarding_progress_list,
    "TASK_COMPLETION_SET": task_completion_set,
    "TASK_VALIDATE": task_validate,
    "SUPERVISOR_ASSESSMENT_INIT": supervisor_assessment_init,
    "SUPERVISOR_ASSESSMENT_UPLOAD_CERTIFICATE": supervisor_assessment_upload_certificate,
    "SUPERVISOR_ASSESSMENT_CONDUCT": supervisor_assessment_conduct,
    "SUPERVISOR_ASSESSMENT_DECIDE": supervisor_assessment_decide,
    "SUPERVISOR_ASSESSMENT_HR_APPROVE": supervisor_assessment_hr_approve,
    "SUPERVISOR_ASSESSMENT_GET": supervisor_assessment_get,
    "SUPERVISOR_ASSESSMENTS_BY_SUPERVISOR": supervisor_assessments_by_supervisor,
    "SUPERVISOR_ASSESSMENTS_HR_QUEUE": supervisor_assessments_hr_queue,
    "HR_ASSESSMENT_INIT": hr_assessment_init,
    "HR_ASSESSMENT_CONDUCT": hr_assessment_conduct,
    "HR_ASSESSMENT_DECIDE": hr_assessment_decide,
    "HR_ASSESSMENT_GET": hr_assessment_get,
    "HR_ASSESSMENTS_BY_HR": hr_assessments_by_hr,
    "HR_ASSESSMENTS_QUEUE": hr_assessments_queue,
    "NOTIFICATIONS_LIST": notifications_list,
    "NOTIFICATION_MARK_READ": notification_mark_read,
}


def dispatch(action: str, data, auth, db, cfg):
    action_u = str(action or "").upper().strip()
    handler = ACTION_HANDLERS.get(action_u)
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    return handler(data or {}, auth, db, cfg)
