from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from .database import Base


def _uuid() -> str:
    return str(uuid4())


class FileStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class InstanceStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_INSTANCE_STATES = frozenset({InstanceStatus.SUCCEEDED.value, InstanceStatus.FAILED.value})


class StepStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class LedgerKind(str, Enum):
    DEBIT = "debit"
    REFUND = "refund"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, unique=True, nullable=True)
    plan = Column(String, default="free", nullable=False)
    credits = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=_uuid)
    owner_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class UploadedFile(Base):
    __tablename__ = "uploaded_files"

    id = Column(String, primary_key=True, default=_uuid)
    r2_key = Column(String, unique=True, nullable=False)
    display_name = Column(String, nullable=True)
    uploaded = Column(Boolean, default=False, nullable=False)
    status = Column(String, default=FileStatus.QUEUED.value, nullable=False)  # queued, processing, completed, failed
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    project_id = Column(String, ForeignKey("projects.id"), unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Clip(Base):
    __tablename__ = "clips"
    __table_args__ = (UniqueConstraint("r2_key", "uploaded_file_id", name="uq_clip_key_file"),)

    id = Column(String, primary_key=True, default=_uuid)
    r2_key = Column(String, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    uploaded_file_id = Column(String, ForeignKey("uploaded_files.id"), index=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class LedgerEntry(Base):
    """One applied balance change; the unique triple makes job-scoped debits and refunds idempotent."""

    __tablename__ = "ledger_entries"
    __table_args__ = (UniqueConstraint("user_id", "job_id", "kind", name="uq_ledger_user_job_kind"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), index=True, nullable=False)
    job_id = Column(String, nullable=False)
    kind = Column(String, nullable=False)  # debit, refund
    amount = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class WorkflowInstance(Base):
    __tablename__ = "workflow_instances"

    id = Column(String, primary_key=True, default=_uuid)
    user_key = Column(String, index=True, nullable=False)
    queue_position = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String, default=InstanceStatus.QUEUED.value, index=True, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INSTANCE_STATES


class StepRecord(Base):
    __tablename__ = "step_records"

    workflow_instance_id = Column(String, ForeignKey("workflow_instances.id"), primary_key=True)
    step_name = Column(String, primary_key=True)
    status = Column(String, default=StepStatus.PENDING.value, nullable=False)
    output = Column(JSON, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
