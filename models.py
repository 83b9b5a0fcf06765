from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, String, Text, UniqueConstraint

from db import Base


class User(Base):
    __tablename__ = "users"

    userId = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    fullName = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    # Single-hop reporting line; not a foreign key so directory imports can arrive in any order.
    supervisorId = Column(String, nullable=False, default="", index=True)
    department = Column(String, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Role(Base):
    __tablename__ = "roles"

    roleCode = Column(String, primary_key=True)
    roleName = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("permType", "permKey", name="uq_permissions_type_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    permType = Column(String, nullable=False)
    permKey = Column(String, nullable=False)
    rolesCsv = Column(Text, nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")
    revokedBy = Column(String, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    actorEmail = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    beforeJson = Column(Text, nullable=False, default="")
    afterJson = Column(Text, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="")


class OnboardingTask(Base):
    __tablename__ = "onboarding_tasks"
    __table_args__ = (UniqueConstraint("taskKey", name="uq_onboarding_tasks_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    # Stable seed key so catalog seeding stays idempotent across restarts.
    taskKey = Column(String, nullable=False)
    stage = Column(String, nullable=False, index=True)  # prepare/orient/land/integrate/excel
    order = Column(Integer, nullable=False, default=0)
    title = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    controlledBy = Column(String, nullable=False, default="both")  # hr/employee/both
    isDefault = Column(Boolean, nullable=False, default=True)
    journeyType = Column(String, nullable=False, default="both", index=True)  # SFP/CC/both
    createdAt = Column(Text, nullable=False, default="")


class OnboardingProgress(Base):
    __tablename__ = "onboarding_progress"
    __table_args__ = (UniqueConstraint("userId", name="uq_onboarding_progress_user"),)

    progressId = Column(String, primary_key=True)  # OBP-<uuid>
    userId = Column(String, nullable=False, index=True)
    stage = Column(String, nullable=False, default="prepare", index=True)
    progress = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)
    journeyType = Column(String, nullable=False, default="SFP")
    stageStartDate = Column(Text, nullable=False, default="")
    estimatedCompletionDate = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class UserTaskProgress(Base):
    __tablename__ = "user_task_progress"
    __table_args__ = (UniqueConstraint("userId", "taskId", name="uq_user_task_progress_user_task"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    userId = Column(String, nullable=False, index=True)
    taskId = Column(Integer, nullable=False, index=True)
    isCompleted = Column(Boolean, nullable=False, default=False)
    completedAt = Column(Text, nullable=False, default="")
    completedBy = Column(String, nullable=False, default="")
    hrValidated = Column(Boolean, nullable=False, default=False)
    hrValidatedAt = Column(Text, nullable=False, default="")
    hrValidatedBy = Column(String, nullable=False, default="")
    hrComments = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class SupervisorAssessment(Base):
    __tablename__ = "supervisor_assessments"
    __table_args__ = (UniqueConstraint("progressId", name="uq_supervisor_assessments_progress"),)

    assessmentId = Column(String, primary_key=True)  # SA-<uuid>
    progressId = Column(String, nullable=False, index=True)
    userId = Column(String, nullable=False, index=True)
    supervisorId = Column(String, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="pending_certificate", index=True)
    phase1CompletedDate = Column(Text, nullable=False, default="")
    certificateFile = Column(Text, nullable=False, default="")
    certificateUploadDate = Column(Text, nullable=False, default="")
    assessmentDate = Column(Text, nullable=False, default="")
    assessmentNotes = Column(Text, nullable=False, default="")
    assessmentScore = Column(Integer, nullable=True)
    supervisorDecision = Column(String, nullable=False, default="")
    supervisorComments = Column(Text, nullable=False, default="")
    decisionDate = Column(Text, nullable=False, default="")
    hrDecision = Column(String, nullable=False, default="")
    hrDecisionComments = Column(Text, nullable=False, default="")
    hrDecisionDate = Column(Text, nullable=False, default="")
    hrValidatorId = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class HRAssessment(Base):
    __tablename__ = "hr_assessments"
    __table_args__ = (UniqueConstraint("progressId", name="uq_hr_assessments_progress"),)

    assessmentId = Column(String, primary_key=True)  # HRA-<uuid>
    progressId = Column(String, nullable=False, index=True)
    userId = Column(String, nullable=False, index=True)
    hrId = Column(String, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="pending_assessment", index=True)
    phase2CompletedDate = Column(Text, nullable=False, default="")
    assessmentRequestedDate = Column(Text, nullable=False, default="")
    assessmentDate = Column(Text, nullable=False, default="")
    assessmentNotes = Column(Text, nullable=False, default="")
    assessmentScore = Column(Integer, nullable=True)
    hrDecision = Column(String, nullable=False, default="")
    hrDecisionComments = Column(Text, nullable=False, default="")
    hrDecisionDate = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    userId = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False, default="", index=True)
    title = Column(Text, nullable=False, default="")
    message = Column(Text, nullable=False, default="")
    metadataJson = Column(Text, nullable=False, default="")
    isRead = Column(Boolean, nullable=False, default=False)
    readAt = Column(Text, nullable=False, default="")
    deliveredAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
