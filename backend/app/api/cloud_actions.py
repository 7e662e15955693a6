"""
Cloud Actions API Router.

Thin surface over the engine: the dashboard creates, reads, cancels and
runs actions here, and the external scheduler triggers dispatch cycles.
All reads and writes are scoped to the caller's tenant.
"""
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Security

from backend.app.core.security import (
    get_current_user, require_tenant, User,
    CLOUD_ACTIONS_READ, CLOUD_ACTIONS_WRITE, CLOUD_ACTIONS_DISPATCH,
)
from backend.app.models.cloud_action_orm import ActionStatus
from backend.app.schemas.cloud_actions import (
    CloudActionCreate, CloudActionResponse, CloudActionLogResponse,
    DispatchReportResponse, RunResultResponse,
)
from backend.app.services.action_store import ActionStore
from backend.app.services.orchestrator import ActionNotEligibleError, Orchestrator, build_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = build_orchestrator()
        request.app.state.orchestrator = orchestrator
    return orchestrator


def get_action_store(orchestrator: Orchestrator = Depends(get_orchestrator)) -> ActionStore:
    return orchestrator.store


async def _get_or_404(store: ActionStore, action_id: str, tenant_id: str):
    action = await store.get(action_id, tenant_id=tenant_id)
    if action is None:
        raise HTTPException(status_code=404, detail=f"Cloud action {action_id} not found")
    return action


@router.post("/dispatch", response_model=DispatchReportResponse)
async def dispatch_cycle(
    orchestrator: Orchestrator = Depends(get_orchestrator),
    current_user: User = Security(get_current_user, scopes=[CLOUD_ACTIONS_DISPATCH]),
):
    """Run one dispatch cycle. Called by the external scheduler every interval."""
    report = await orchestrator.run_cycle()
    return DispatchReportResponse(**report.to_dict())


@router.post("/", response_model=CloudActionResponse, status_code=201)
async def create_action(
    payload: CloudActionCreate,
    store: ActionStore = Depends(get_action_store),
    current_user: User = Security(get_current_user, scopes=[CLOUD_ACTIONS_WRITE]),
):
    """Queue a new action in ``scheduled``; it runs on the next cycle at or after ``scheduled_for``."""
    tenant_id = require_tenant(current_user)
    action = await store.create(
        tenant_id=tenant_id,
        app_id=payload.app_id,
        environment_name=payload.environment_name,
        operation_type=payload.operation_type,
        credential_id=payload.credential_id,
        payload=payload.payload.model_dump(exclude_none=True),
        scheduled_for=payload.scheduled_for,
        retry_until=payload.retry_until,
        created_by=current_user.username,
    )
    return CloudActionResponse.model_validate(action)


@router.get("/", response_model=List[CloudActionResponse])
async def list_actions(
    status: Optional[ActionStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    store: ActionStore = Depends(get_action_store),
    current_user: User = Security(get_current_user, scopes=[CLOUD_ACTIONS_READ]),
):
    """List the tenant's actions, newest first."""
    tenant_id = require_tenant(current_user)
    actions = await store.list_for_tenant(tenant_id, status=status, limit=limit, offset=offset)
    return [CloudActionResponse.model_validate(a) for a in actions]


@router.get("/{action_id}", response_model=CloudActionResponse)
async def get_action(
    action_id: str,
    store: ActionStore = Depends(get_action_store),
    current_user: User = Security(get_current_user, scopes=[CLOUD_ACTIONS_READ]),
):
    action = await _get_or_404(store, action_id, require_tenant(current_user))
    return CloudActionResponse.model_validate(action)


@router.get("/{action_id}/logs", response_model=List[CloudActionLogResponse])
async def get_action_logs(
    action_id: str,
    store: ActionStore = Depends(get_action_store),
    current_user: User = Security(get_current_user, scopes=[CLOUD_ACTIONS_READ]),
):
    await _get_or_404(store, action_id, require_tenant(current_user))
    logs = await store.list_logs(action_id)
    return [CloudActionLogResponse.model_validate(entry) for entry in logs]


@router.post("/{action_id}/cancel", response_model=CloudActionResponse)
async def cancel_action(
    action_id: str,
    store: ActionStore = Depends(get_action_store),
    current_user: User = Security(get_current_user, scopes=[CLOUD_ACTIONS_WRITE]),
):
    """Cancel a scheduled action. Running and finished actions cannot be cancelled."""
    tenant_id = require_tenant(current_user)
    action = await _get_or_404(store, action_id, tenant_id)
    if not await store.cancel(action_id, tenant_id):
        current = await store.get(action_id, tenant_id=tenant_id)
        status_value = current.status.value if current else action.status.value
        raise HTTPException(status_code=409, detail=f"Cloud action {action_id} is {status_value}; only scheduled actions can be cancelled")
    logger.info(f"Cloud action {action_id} cancelled by {current_user.username}")
    return CloudActionResponse.model_validate(await store.get(action_id, tenant_id=tenant_id))


@router.post("/{action_id}/run", response_model=RunResultResponse)
async def run_action_now(
    action_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    current_user: User = Security(get_current_user, scopes=[CLOUD_ACTIONS_WRITE]),
):
    """Advance one action by one step right away, ignoring its ``scheduled_for``."""
    tenant_id = require_tenant(current_user)
    try:
        result = await orchestrator.run_now(action_id, tenant_id)
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Cloud action {action_id} not found")
    except ActionNotEligibleError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return RunResultResponse(
        action_id=result.action_id,
        outcome=result.outcome.value,
        step=result.step,
        next_step=result.next_step,
        message=result.message,
    )
