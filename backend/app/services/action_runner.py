"""
Action Runner.

Claims actions, advances each by exactly one step per claim, and writes the
outcome back through the action store: success, advance, failure, or a
backed-off reschedule. Waiting is expressed as state, so the runner never
sleeps on the platform; the next dispatch cycle picks the action up again.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, List, Optional

from backend.app.core.clock import Clock, as_utc, utc_now
from backend.app.core.logging import action_id_ctx, get_logger, tenant_id_ctx
from backend.app.core.resilience import RetryPolicy
from backend.app.models.cloud_action_orm import CloudActionORM, LogLevel
from backend.app.services.action_store import ActionStore, Claim
from backend.app.services.step_executor import OutcomeKind, StepExecutor, StepOutcome
from backend.app.services.step_machines import get_machine

logger = get_logger(__name__)


class RunOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    ADVANCED = "advanced"
    WAITING = "waiting"
    RESCHEDULED = "rescheduled"
    FAILED = "failed"
    NOT_CLAIMED = "not_claimed"
    LOST_CLAIM = "lost_claim"
    DEFERRED = "deferred"
    ERROR = "error"


@dataclass
class RunResult:
    action_id: str
    outcome: RunOutcome
    step: Optional[str] = None
    next_step: Optional[str] = None
    message: Optional[str] = None
    resumed: bool = False


class ActionRunner:
    def __init__(
        self,
        store: ActionStore,
        executor: StepExecutor,
        policy: RetryPolicy,
        stale_after_seconds: float = 45.0,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.executor = executor
        self.policy = policy
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.clock = clock

    async def run_partition(
        self, actions: Iterable[CloudActionORM], deadline: Optional[datetime] = None
    ) -> List[RunResult]:
        """
        Process one tenant's actions in order.

        Stops picking new actions once ``deadline`` has passed; the rest are
        reported as deferred and are picked up by a later cycle.
        """
        results: List[RunResult] = []
        pending = list(actions)
        for index, action in enumerate(pending):
            if deadline is not None and self.clock() >= deadline:
                for skipped in pending[index:]:
                    results.append(RunResult(skipped.id, RunOutcome.DEFERRED, message="cycle budget exhausted"))
                logger.info(f"Cycle budget exhausted; deferring {len(pending) - index} action(s)")
                break
            results.append(await self.process(action.id))
        return results

    async def process(self, action_id: str, ignore_schedule: bool = False) -> RunResult:
        """Claim one action and advance it by one step. Never raises for engine-level failures."""
        now = self.clock()
        claim = await self.store.claim(
            action_id,
            now=now,
            stale_before=now - self.stale_after,
            max_attempts=self.policy.max_attempts,
            ignore_schedule=ignore_schedule,
        )
        if claim is None:
            logger.info(f"Action {action_id} not claimed; another runner holds it or it is no longer eligible")
            return RunResult(action_id, RunOutcome.NOT_CLAIMED)

        action_token = action_id_ctx.set(action_id)
        tenant_token = tenant_id_ctx.set(claim.action.tenant_id)
        try:
            result = await self._advance(claim)
        except Exception as e:
            logger.error(f"Runner failure while processing action {action_id}: {e}", exc_info=True)
            result = await self._record_runner_failure(claim, e)
        finally:
            action_id_ctx.reset(action_token)
            tenant_id_ctx.reset(tenant_token)
        result.resumed = claim.resumed
        return result

    async def _advance(self, claim: Claim) -> RunResult:
        action = claim.action
        step_label = action.current_step or get_machine(action.operation_type).initial_step.value
        if claim.resumed:
            await self._log(action, LogLevel.INFO, f"Resuming stale action from step '{step_label}'")
            logger.info(f"Resuming stale action {action.id} from step '{step_label}'")
        await self._log(
            action,
            LogLevel.INFO,
            f"Started processing {action.operation_type.value} action - Step: {step_label}",
        )

        outcome = await self.executor.execute(action)
        for warning in outcome.warnings:
            await self._log(action, LogLevel.WARN, warning)

        if outcome.kind == OutcomeKind.COMPLETED:
            return await self._complete(claim, outcome)
        if outcome.kind == OutcomeKind.ADVANCE:
            return await self._move(claim, outcome)
        if outcome.kind == OutcomeKind.FATAL:
            return await self._fail(claim, outcome.step.value, outcome.step_data, outcome.error or "Fatal error")
        return await self._retry_or_fail(claim, outcome.step.value, outcome.step_data, outcome.error or "Step failed")

    async def _complete(self, claim: Claim, outcome: StepOutcome) -> RunResult:
        action = claim.action
        now = self.clock()
        if not await self.store.complete(action.id, claim.token, outcome.step.value, outcome.step_data, now):
            return RunResult(action.id, RunOutcome.LOST_CLAIM, step=outcome.step.value)
        await self._log(action, LogLevel.INFO, f"Step '{outcome.step.value}' completed → action succeeded")
        logger.info(f"Action {action.id} succeeded")
        return RunResult(action.id, RunOutcome.SUCCEEDED, step=outcome.step.value)

    async def _move(self, claim: Claim, outcome: StepOutcome) -> RunResult:
        action = claim.action
        step, next_step = outcome.step.value, outcome.next_step.value
        now = self.clock()
        new_token = await self.store.advance(action.id, claim.token, next_step, outcome.step_data, now)
        if new_token is None:
            return RunResult(action.id, RunOutcome.LOST_CLAIM, step=step)
        claim.token = new_token

        if outcome.stayed:
            status = outcome.step_data.get("last_status")
            await self._log(action, LogLevel.DEBUG, f"Step '{step}' still waiting (status: {status})")
            return RunResult(action.id, RunOutcome.WAITING, step=step, next_step=next_step)

        await self._log(action, LogLevel.INFO, f"Step '{step}' completed → '{next_step}'")
        return RunResult(action.id, RunOutcome.ADVANCED, step=step, next_step=next_step)

    async def _fail(self, claim: Claim, step: str, step_data: dict, error: str) -> RunResult:
        action = claim.action
        now = self.clock()
        attempts = action.attempt_count + 1
        if not await self.store.fail(action.id, claim.token, error, attempts, step, step_data, now):
            return RunResult(action.id, RunOutcome.LOST_CLAIM, step=step, message=error)
        await self._log(action, LogLevel.ERROR, f"❌ Step '{step}' failed: {error}")
        logger.warning(f"Action {action.id} failed at step '{step}' after {attempts} attempt(s): {error}")
        return RunResult(action.id, RunOutcome.FAILED, step=step, message=error)

    async def _retry_or_fail(self, claim: Claim, step: str, step_data: dict, error: str) -> RunResult:
        action = claim.action
        now = self.clock()
        attempts = action.attempt_count + 1
        if self.policy.is_exhausted(attempts, now, as_utc(action.retry_until)):
            return await self._fail(claim, step, step_data, f"{error} (gave up after {attempts} attempt(s))")

        retry_at = now + self.policy.backoff_for(attempts)
        ok = await self.store.reschedule(action.id, claim.token, error, attempts, retry_at, step, step_data, now)
        if not ok:
            return RunResult(action.id, RunOutcome.LOST_CLAIM, step=step, message=error)
        await self._log(
            action,
            LogLevel.WARN,
            f"⚠️ Step '{step}' failed, scheduling retry {attempts}/{self.policy.max_attempts} at "
            f"{retry_at.isoformat()}: {error}",
        )
        return RunResult(action.id, RunOutcome.RESCHEDULED, step=step, message=error)

    async def _record_runner_failure(self, claim: Claim, error: Exception) -> RunResult:
        action = claim.action
        step = action.current_step or get_machine(action.operation_type).initial_step.value
        try:
            result = await self._retry_or_fail(claim, step, dict(action.step_data or {}), f"Runner error: {error}")
        except Exception as e:
            # The claim stays held; the action recovers through staleness
            logger.error(f"Could not record failure for action {action.id}: {e}", exc_info=True)
            return RunResult(action.id, RunOutcome.ERROR, step=step, message=str(error))
        return result

    async def _log(self, action: CloudActionORM, level: LogLevel, message: str):
        await self.store.append_log(action.id, action.tenant_id, level, message)
