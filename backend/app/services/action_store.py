"""
Action Store.

Persistence for cloud actions and their log. Every mutation made on behalf of
a runner is a conditional UPDATE scoped by the action id and the state the
runner expects; a zero-row result means the runner lost the action and the
write is dropped.

After a claim, the heartbeat written acts as a fencing token: advance,
complete, fail and reschedule only match while ``last_heartbeat`` still
equals it.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.clock import Clock, as_utc, utc_now
from backend.app.core.database import async_session_maker
from backend.app.core.logging import get_logger
from backend.app.models.cloud_action_orm import (
    ActionStatus,
    CloudActionLogORM,
    CloudActionORM,
    LogLevel,
    OperationType,
)

logger = get_logger(__name__)


@dataclass
class Claim:
    action: CloudActionORM
    token: datetime
    resumed: bool = False


class ActionStore:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory or async_session_maker
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    async def create(
        self,
        *,
        tenant_id: str,
        app_id: str,
        environment_name: str,
        operation_type: OperationType,
        credential_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        scheduled_for: Optional[datetime] = None,
        retry_until: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> CloudActionORM:
        now = self.clock()
        action = CloudActionORM(
            tenant_id=tenant_id,
            app_id=app_id,
            environment_name=environment_name,
            operation_type=OperationType(operation_type),
            credential_id=credential_id,
            status=ActionStatus.SCHEDULED,
            step_data={},
            payload=dict(payload or {}),
            scheduled_for=as_utc(scheduled_for),
            retry_until=as_utc(retry_until),
            attempt_count=0,
            created_at=now,
            updated_at=now,
            created_by=created_by,
        )
        async with self.session_factory() as session:
            session.add(action)
            await session.commit()
        logger.info(f"Created {action.operation_type.value} action {action.id} for {app_id}/{environment_name}")
        return action

    async def get(self, action_id: str, tenant_id: Optional[str] = None) -> Optional[CloudActionORM]:
        stmt = select(CloudActionORM).where(CloudActionORM.id == action_id)
        if tenant_id is not None:
            stmt = stmt.where(CloudActionORM.tenant_id == tenant_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_for_tenant(
        self,
        tenant_id: str,
        status: Optional[ActionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[CloudActionORM]:
        stmt = select(CloudActionORM).where(CloudActionORM.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(CloudActionORM.status == status)
        stmt = stmt.order_by(CloudActionORM.created_at.desc()).limit(limit).offset(offset)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def append_log(self, action_id: str, tenant_id: str, level: LogLevel, message: str) -> None:
        async with self.session_factory() as session:
            session.add(
                CloudActionLogORM(
                    action_id=action_id,
                    tenant_id=tenant_id,
                    level=LogLevel(level),
                    message=message,
                    created_at=self.clock(),
                )
            )
            await session.commit()

    async def list_logs(self, action_id: str, limit: int = 500) -> List[CloudActionLogORM]:
        stmt = (
            select(CloudActionLogORM)
            .where(CloudActionLogORM.action_id == action_id)
            .order_by(CloudActionLogORM.created_at.asc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Dispatch selection
    # ------------------------------------------------------------------

    async def select_due(self, now: datetime, max_attempts: int, limit: int) -> List[CloudActionORM]:
        """Scheduled actions whose time has come, oldest first."""
        stmt = (
            select(CloudActionORM)
            .where(
                CloudActionORM.status == ActionStatus.SCHEDULED,
                or_(CloudActionORM.scheduled_for.is_(None), CloudActionORM.scheduled_for <= now),
                CloudActionORM.attempt_count < max_attempts,
            )
            .order_by(CloudActionORM.created_at.asc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def select_stale(self, stale_before: datetime, max_attempts: int, limit: int) -> List[CloudActionORM]:
        """Running actions whose heartbeat is missing or older than ``stale_before``, oldest first."""
        stmt = (
            select(CloudActionORM)
            .where(
                CloudActionORM.status == ActionStatus.RUNNING,
                or_(CloudActionORM.last_heartbeat.is_(None), CloudActionORM.last_heartbeat < stale_before),
                CloudActionORM.attempt_count < max_attempts,
            )
            .order_by(CloudActionORM.created_at.asc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Conditional mutations
    # ------------------------------------------------------------------

    async def claim(
        self,
        action_id: str,
        now: datetime,
        stale_before: datetime,
        max_attempts: int,
        ignore_schedule: bool = False,
    ) -> Optional[Claim]:
        """
        Mark the action running and take ownership of it.

        Succeeds from ``scheduled`` when the action is due (or ``ignore_schedule``)
        and from ``running`` when its heartbeat is stale. Returns None when
        another runner got there first or the action is not eligible.
        """
        async with self.session_factory() as session:
            result = await session.execute(select(CloudActionORM).where(CloudActionORM.id == action_id))
            action = result.scalar_one_or_none()
            if action is None:
                return None

            resumed = action.status == ActionStatus.RUNNING
            previous = as_utc(action.last_heartbeat)
            token = max(now, previous) if previous else now
            started_at = action.started_at or now

            due = CloudActionORM.status == ActionStatus.SCHEDULED
            if not ignore_schedule:
                due = and_(due, or_(CloudActionORM.scheduled_for.is_(None), CloudActionORM.scheduled_for <= now))
            stale = and_(
                CloudActionORM.status == ActionStatus.RUNNING,
                or_(CloudActionORM.last_heartbeat.is_(None), CloudActionORM.last_heartbeat < stale_before),
            )

            claimed = await session.execute(
                update(CloudActionORM)
                .where(
                    CloudActionORM.id == action_id,
                    CloudActionORM.attempt_count < max_attempts,
                    or_(due, stale),
                )
                .values(
                    status=ActionStatus.RUNNING,
                    last_heartbeat=token,
                    started_at=started_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            if claimed.rowcount != 1:
                return None

            action.status = ActionStatus.RUNNING
            action.last_heartbeat = token
            action.started_at = started_at
            action.updated_at = now
            return Claim(action=action, token=token, resumed=resumed)

    async def _fenced_update(self, action_id: str, token: datetime, values: Dict[str, Any], what: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(CloudActionORM)
                .where(
                    CloudActionORM.id == action_id,
                    CloudActionORM.status == ActionStatus.RUNNING,
                    CloudActionORM.last_heartbeat == token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount != 1:
            logger.warning(f"Dropped {what} for action {action_id}: claim no longer held")
            return False
        return True

    async def advance(
        self,
        action_id: str,
        token: datetime,
        next_step: str,
        step_data: Dict[str, Any],
        now: datetime,
    ) -> Optional[datetime]:
        """Move to ``next_step`` and refresh the heartbeat. Returns the new token."""
        heartbeat = max(now, token)
        ok = await self._fenced_update(
            action_id,
            token,
            {
                "current_step": next_step,
                "step_data": step_data,
                "last_heartbeat": heartbeat,
                "updated_at": now,
            },
            "advance",
        )
        return heartbeat if ok else None

    async def complete(
        self,
        action_id: str,
        token: datetime,
        step: str,
        step_data: Dict[str, Any],
        now: datetime,
    ) -> bool:
        return await self._fenced_update(
            action_id,
            token,
            {
                "status": ActionStatus.SUCCEEDED,
                "current_step": step,
                "step_data": step_data,
                "last_heartbeat": max(now, token),
                "completed_at": now,
                "error_message": None,
                "updated_at": now,
            },
            "completion",
        )

    async def fail(
        self,
        action_id: str,
        token: datetime,
        error_message: str,
        attempt_count: int,
        step: str,
        step_data: Dict[str, Any],
        now: datetime,
    ) -> bool:
        return await self._fenced_update(
            action_id,
            token,
            {
                "status": ActionStatus.FAILED,
                "current_step": step,
                "step_data": step_data,
                "attempt_count": attempt_count,
                "error_message": error_message,
                "last_heartbeat": max(now, token),
                "completed_at": now,
                "updated_at": now,
            },
            "failure",
        )

    async def reschedule(
        self,
        action_id: str,
        token: datetime,
        error_message: str,
        attempt_count: int,
        scheduled_for: datetime,
        step: str,
        step_data: Dict[str, Any],
        now: datetime,
    ) -> bool:
        return await self._fenced_update(
            action_id,
            token,
            {
                "status": ActionStatus.SCHEDULED,
                "current_step": step,
                "step_data": step_data,
                "attempt_count": attempt_count,
                "error_message": error_message,
                "scheduled_for": scheduled_for,
                "last_heartbeat": max(now, token),
                "updated_at": now,
            },
            "reschedule",
        )

    async def cancel(self, action_id: str, tenant_id: str, now: Optional[datetime] = None) -> bool:
        """``scheduled -> canceled``. False when the action has moved on (or is not the tenant's)."""
        now = now or self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(CloudActionORM)
                .where(
                    CloudActionORM.id == action_id,
                    CloudActionORM.tenant_id == tenant_id,
                    CloudActionORM.status == ActionStatus.SCHEDULED,
                )
                .values(status=ActionStatus.CANCELED, completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

