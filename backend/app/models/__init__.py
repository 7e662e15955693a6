"""Models package."""

from backend.app.models.cloud_action_orm import (
    ActionStatus,
    CloudActionLogORM,
    CloudActionORM,
    LogLevel,
    OperationType,
    TERMINAL_STATUSES,
)
from backend.app.models.platform_credential_orm import PlatformCredentialORM

__all__ = [
    "ActionStatus",
    "CloudActionLogORM",
    "CloudActionORM",
    "LogLevel",
    "OperationType",
    "TERMINAL_STATUSES",
    "PlatformCredentialORM",
]
