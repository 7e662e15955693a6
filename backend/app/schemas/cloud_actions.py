"""
Cloud Action Schemas.

Shared contract used by: the cloud actions API, the step executor (payload
parsing) and the dashboard frontend.
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, model_validator

from backend.app.models.cloud_action_orm import ActionStatus, LogLevel, OperationType


class ActionPayload(BaseModel):
    """Operation parameters. Unknown keys are kept untouched."""
    branch_name: str = "main"
    revision_id: str = "HEAD"
    version: str = "1.0.0"
    description: Optional[str] = None
    source_environment: Optional[str] = None
    comment: Optional[str] = None

    class Config:
        extra = "allow"


class CloudActionCreate(BaseModel):
    app_id: str = Field(min_length=1, max_length=128)
    environment_name: str = Field(min_length=1, max_length=64)
    operation_type: OperationType
    credential_id: Optional[str] = None
    payload: ActionPayload = Field(default_factory=ActionPayload)
    scheduled_for: Optional[datetime] = None
    retry_until: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_operation_payload(self) -> "CloudActionCreate":
        if self.operation_type == OperationType.TRANSPORT:
            source = self.payload.source_environment
            if not source:
                raise ValueError("transport actions require payload.source_environment")
            if source.strip().lower() == self.environment_name.strip().lower():
                raise ValueError("source_environment must differ from environment_name")
        if self.scheduled_for and self.retry_until and self.retry_until <= self.scheduled_for:
            raise ValueError("retry_until must be later than scheduled_for")
        return self


class CloudActionResponse(BaseModel):
    id: str
    tenant_id: str
    app_id: str
    environment_name: str
    credential_id: Optional[str] = None
    operation_type: OperationType
    status: ActionStatus
    current_step: Optional[str] = None
    step_data: Dict[str, Any] = {}
    payload: Dict[str, Any] = {}
    scheduled_for: Optional[datetime] = None
    retry_until: Optional[datetime] = None
    attempt_count: int = 0
    last_heartbeat: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_by: Optional[str] = None

    class Config:
        from_attributes = True


class CloudActionLogResponse(BaseModel):
    id: str
    action_id: str
    level: LogLevel
    message: str
    created_at: datetime

    class Config:
        from_attributes = True


class RunResultResponse(BaseModel):
    """Outcome of a manual run-now request."""
    action_id: str
    outcome: str
    step: Optional[str] = None
    next_step: Optional[str] = None
    message: Optional[str] = None


class DispatchReportResponse(BaseModel):
    skipped: bool = False
    started_at: datetime
    finished_at: Optional[datetime] = None
    selected: int = 0
    resumed: int = 0
    partitions: int = 0
    outcomes: Dict[str, int] = {}
    deferred: int = 0
    cancelled_partitions: int = 0
    errors: List[str] = []
    retention: Optional[Dict[str, Any]] = None
