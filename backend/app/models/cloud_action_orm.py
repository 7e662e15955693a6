"""
Cloud Action ORM: durable actions and their append-only log.
"""
import uuid
from enum import Enum as PyEnum

from sqlalchemy import Column, String, Integer, DateTime, JSON, Enum, Text

from backend.app.core.clock import utc_now
from backend.app.core.database import Base


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class ActionStatus(str, PyEnum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = (ActionStatus.SUCCEEDED, ActionStatus.FAILED, ActionStatus.CANCELED)


class OperationType(str, PyEnum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    DEPLOY = "deploy"
    TRANSPORT = "transport"


class LogLevel(str, PyEnum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class CloudActionORM(Base):
    __tablename__ = "cloud_actions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)
    app_id = Column(String(128), nullable=False)
    environment_name = Column(String(64), nullable=False)
    credential_id = Column(String(36), nullable=True)
    operation_type = Column(
        Enum(OperationType, values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
    )
    status = Column(
        Enum(ActionStatus, values_callable=_enum_values, native_enum=False, length=16),
        nullable=False,
        default=ActionStatus.SCHEDULED,
        index=True,
    )
    current_step = Column(String(64), nullable=True)
    step_data = Column(JSON, nullable=False, default=dict)
    payload = Column(JSON, nullable=False, default=dict)

    scheduled_for = Column(DateTime(timezone=True), nullable=True, index=True)
    retry_until = Column(DateTime(timezone=True), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_heartbeat = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_by = Column(String(256), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<CloudAction {self.id} {self.operation_type} status={self.status} step={self.current_step}>"


class CloudActionLogORM(Base):
    __tablename__ = "cloud_action_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    action_id = Column(String(36), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    level = Column(
        Enum(LogLevel, values_callable=_enum_values, native_enum=False, length=8),
        nullable=False,
        default=LogLevel.INFO,
    )
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    def __repr__(self):
        return f"<CloudActionLog {self.action_id} {self.level}: {self.message[:40]}>"
