"""
Dispatch Loop.

One cycle selects due and stale actions, partitions them by tenant, runs the
partitions concurrently under a wall-clock budget, and finally runs the
retention sweep. Cycles are triggered by an external scheduler hitting the
dispatch endpoint or by the in-process scheduler.
"""
import asyncio
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from backend.app.core.clock import Clock, utc_now
from backend.app.core.config import Settings, get_settings
from backend.app.core.logging import get_logger
from backend.app.core.resilience import RetryPolicy
from backend.app.models.cloud_action_orm import CloudActionORM
from backend.app.services.action_runner import ActionRunner, RunOutcome, RunResult
from backend.app.services.action_store import ActionStore
from backend.app.services.credentials import CredentialResolver
from backend.app.services.data_retention import DataRetentionService
from backend.app.services.platform_adapter import PlatformAdapter, get_platform_adapter
from backend.app.services.step_executor import StepExecutor

logger = get_logger(__name__)

# Extra time granted to in-flight steps before their partitions are cancelled
CANCEL_GRACE_SECONDS = 5.0


@dataclass
class DispatchReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    selected: int = 0
    resumed: int = 0
    partitions: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    deferred: int = 0
    cancelled_partitions: int = 0
    errors: List[str] = field(default_factory=list)
    retention: Optional[Dict[str, Any]] = None

    def count(self, results: List[RunResult]):
        for result in results:
            key = result.outcome.value
            self.outcomes[key] = self.outcomes.get(key, 0) + 1
            if result.outcome == RunOutcome.DEFERRED:
                self.deferred += 1
            if result.resumed:
                self.resumed += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ActionNotEligibleError(Exception):
    """The action cannot be run now (unknown, terminal, or held by another runner)."""


class Orchestrator:
    def __init__(
        self,
        store: ActionStore,
        runner: ActionRunner,
        retention: Optional[DataRetentionService] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.runner = runner
        self.retention = retention
        self.settings = settings or get_settings()
        self.clock = clock
        self._cycle_lock = asyncio.Lock()

    async def run_cycle(self) -> DispatchReport:
        """Run one dispatch cycle; returns immediately (skipped) if one is already in progress."""
        if self._cycle_lock.locked():
            logger.info("Dispatch cycle already in progress; skipping")
            return DispatchReport(started_at=self.clock(), finished_at=self.clock(), skipped=True)

        async with self._cycle_lock:
            report = DispatchReport(started_at=self.clock())
            try:
                await self._dispatch(report)
            except Exception as e:
                logger.error(f"Dispatch cycle failed: {e}", exc_info=True)
                report.errors.append(f"dispatch: {e}")

            if self.retention is not None:
                try:
                    report.retention = await self.retention.run_retention_cleanup()
                except Exception as e:
                    logger.error(f"Retention sweep failed: {e}", exc_info=True)
                    report.errors.append(f"retention: {e}")

            report.finished_at = self.clock()
            logger.info(
                f"Dispatch cycle finished: selected={report.selected} resumed={report.resumed} "
                f"partitions={report.partitions} outcomes={report.outcomes}"
            )
            return report

    async def _dispatch(self, report: DispatchReport):
        settings = self.settings
        now = self.clock()
        max_attempts = self.runner.policy.max_attempts
        batch = settings.dispatch_batch_size

        due = await self.store.select_due(now, max_attempts, batch)
        stale = await self.store.select_stale(
            now - timedelta(seconds=settings.stale_after_seconds), max_attempts, batch
        )

        selected: Dict[str, CloudActionORM] = {}
        for action in due + stale:
            selected.setdefault(action.id, action)
        report.selected = len(selected)
        if not selected:
            return

        partitions = self.partition(selected.values())
        report.partitions = len(partitions)

        deadline = now + timedelta(seconds=settings.cycle_budget_seconds)
        tasks = {
            asyncio.create_task(self.runner.run_partition(actions, deadline=deadline)): tenant_id
            for tenant_id, actions in partitions.items()
        }
        done, pending = await asyncio.wait(
            tasks.keys(), timeout=settings.cycle_budget_seconds + CANCEL_GRACE_SECONDS
        )

        for task in pending:
            logger.warning(f"Partition for tenant {tasks[task]} overran the cycle budget; cancelling")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            report.cancelled_partitions = len(pending)

        for task in done:
            exc = task.exception()
            if exc is not None:
                logger.error(f"Partition for tenant {tasks[task]} raised: {exc}", exc_info=exc)
                report.errors.append(f"tenant {tasks[task]}: {exc}")
                continue
            report.count(task.result())

    @staticmethod
    def partition(actions) -> "OrderedDict[str, List[CloudActionORM]]":
        """Group by tenant, oldest-created first within each group."""
        groups: "OrderedDict[str, List[CloudActionORM]]" = OrderedDict()
        for action in sorted(actions, key=lambda a: a.created_at):
            groups.setdefault(action.tenant_id, []).append(action)
        return groups

    async def run_now(self, action_id: str, tenant_id: str) -> RunResult:
        """Advance one action by one step immediately, ignoring ``scheduled_for``."""
        action = await self.store.get(action_id, tenant_id=tenant_id)
        if action is None:
            raise LookupError(f"Action {action_id} not found")
        if action.is_terminal:
            raise ActionNotEligibleError(f"Action {action_id} is already {action.status.value}")
        if action.attempt_count >= self.runner.policy.max_attempts:
            raise ActionNotEligibleError(f"Action {action_id} has no attempts left")

        result = await self.runner.process(action_id, ignore_schedule=True)
        if result.outcome == RunOutcome.NOT_CLAIMED:
            raise ActionNotEligibleError(f"Action {action_id} is being processed by another runner")
        return result


def build_orchestrator(
    settings: Optional[Settings] = None,
    session_factory=None,
    adapter: Optional[PlatformAdapter] = None,
    clock: Clock = utc_now,
) -> Orchestrator:
    """Wire the store, executor, runner and retention sweeper from settings."""
    settings = settings or get_settings()
    store = ActionStore(session_factory, clock=clock)
    executor = StepExecutor(
        adapter or get_platform_adapter(settings),
        CredentialResolver(session_factory),
        clock=clock,
        protected_environments=settings.protected_environments,
    )
    runner = ActionRunner(
        store,
        executor,
        RetryPolicy.from_settings(settings),
        stale_after_seconds=settings.stale_after_seconds,
        clock=clock,
    )
    retention = DataRetentionService(
        session_factory,
        action_retention_days=settings.action_retention_days,
        log_retention_days=settings.log_retention_days,
        clock=clock,
    )
    return Orchestrator(store, runner, retention=retention, settings=settings, clock=clock)
