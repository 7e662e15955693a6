"""
Data Retention Enforcement Service.

Retention policies:
  - Terminal actions (succeeded, failed, canceled): 7 days after completion,
    deleted together with their log entries
  - Action log entries:                           30 days rolling
  - Scheduled and running actions:                never auto-deleted

Each deletion runs in its own transaction; a failure is logged and reported
in the result, never raised.
"""
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.clock import Clock, utc_now
from backend.app.core.database import async_session_maker
from backend.app.core.logging import get_logger
from backend.app.models.cloud_action_orm import CloudActionLogORM, CloudActionORM, TERMINAL_STATUSES

logger = get_logger(__name__)


class DataRetentionService:
    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        action_retention_days: int = 7,
        log_retention_days: int = 30,
        clock: Clock = utc_now,
    ):
        self.session_factory = session_factory or async_session_maker
        self.action_retention = timedelta(days=action_retention_days)
        self.log_retention = timedelta(days=log_retention_days)
        self.clock = clock

    async def run_retention_cleanup(self) -> Dict[str, Any]:
        """Delete expired terminal actions (with their logs), then expired log entries."""
        now = self.clock()
        results: Dict[str, Any] = {}

        cutoff = now - self.action_retention
        try:
            results["cloud_actions"] = await self._delete_terminal_actions(cutoff)
        except Exception as e:
            logger.error(f"Retention cleanup failed for 'cloud_actions': {e}")
            results["cloud_actions"] = {"error": str(e)}

        cutoff = now - self.log_retention
        try:
            results["cloud_action_logs"] = await self._delete_old_logs(cutoff)
        except Exception as e:
            logger.error(f"Retention cleanup failed for 'cloud_action_logs': {e}")
            results["cloud_action_logs"] = {"error": str(e)}

        return results

    async def _delete_terminal_actions(self, cutoff) -> Dict[str, Any]:
        async with self.session_factory() as session:
            expired = (
                select(CloudActionORM.id)
                .where(
                    CloudActionORM.status.in_(TERMINAL_STATUSES),
                    CloudActionORM.completed_at.is_not(None),
                    CloudActionORM.completed_at < cutoff,
                )
                .scalar_subquery()
            )
            logs = await session.execute(
                delete(CloudActionLogORM)
                .where(CloudActionLogORM.action_id.in_(expired))
                .execution_options(synchronize_session=False)
            )
            actions = await session.execute(
                delete(CloudActionORM)
                .where(
                    CloudActionORM.status.in_(TERMINAL_STATUSES),
                    CloudActionORM.completed_at.is_not(None),
                    CloudActionORM.completed_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info(
            f"Retention cleanup: deleted {actions.rowcount} actions and {logs.rowcount} of their log entries "
            f"(cutoff: {cutoff.date()})"
        )
        return {"deleted": actions.rowcount, "logs_deleted": logs.rowcount, "cutoff": cutoff.isoformat()}

    async def _delete_old_logs(self, cutoff) -> Dict[str, Any]:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(CloudActionLogORM)
                .where(CloudActionLogORM.created_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        logger.info(f"Retention cleanup: deleted {result.rowcount} rows from 'cloud_action_logs' (cutoff: {cutoff.date()})")
        return {"deleted": result.rowcount, "cutoff": cutoff.isoformat()}
