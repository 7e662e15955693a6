"""
Step Executor.

Performs exactly one step of an action against the platform and reports the
outcome. ``execute`` never raises: platform errors, step errors, malformed
payloads and unexpected exceptions all come back as a StepOutcome the runner
can persist.

Handlers are idempotent. Start/stop steps read the environment first and
skip the command when it is already in (or moving to) the target state, and
polling steps only ever move forward once the platform confirms the target.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from backend.app.core.clock import Clock, as_utc, utc_now
from backend.app.core.logging import get_logger
from backend.app.models.cloud_action_orm import CloudActionORM
from backend.app.schemas.cloud_actions import ActionPayload
from backend.app.services.credentials import CredentialResolver, MissingCredentialsError
from backend.app.services.platform_adapter import (
    PlatformAdapter,
    PlatformCredentials,
    PlatformError,
    normalize_environment_name,
)
from backend.app.services.step_machines import Step, StepMachine, UnknownStepError, get_machine

logger = get_logger(__name__)

RUNNING_STATES = ("running", "starting")
STOPPED_STATES = ("stopped", "stopping")
PACKAGE_READY_STATES = ("succeeded", "available")


class FatalStepError(Exception):
    """Deterministic failure; retrying cannot succeed."""


class RetryableStepError(Exception):
    """Transient failure; the step may succeed on a later attempt."""


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    ADVANCE = "advance"
    FATAL = "fatal"
    RETRYABLE = "retryable"


@dataclass
class StepOutcome:
    kind: OutcomeKind
    step: Step
    next_step: Optional[Step] = None
    step_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def stayed(self) -> bool:
        return self.kind == OutcomeKind.ADVANCE and self.next_step == self.step


@dataclass
class StepResult:
    """What a handler decided: move on, keep waiting, or jump to a skip target."""
    action: str
    data: Dict[str, Any] = field(default_factory=dict)
    target: Optional[Step] = None
    warning: Optional[str] = None

    @classmethod
    def proceed(cls, **data) -> "StepResult":
        return cls("proceed", data)

    @classmethod
    def wait(cls, **data) -> "StepResult":
        return cls("wait", data)

    @classmethod
    def skip_to(cls, target: Step, warning: Optional[str] = None, **data) -> "StepResult":
        return cls("skip", data, target=target, warning=warning)


@dataclass
class StepContext:
    action: CloudActionORM
    machine: StepMachine
    step: Step
    payload: ActionPayload
    app_id: str
    environment: str
    credentials: PlatformCredentials
    step_data: Dict[str, Any]
    now: datetime

    def poll_data(self, status: str) -> Dict[str, Any]:
        return {
            "poll_started_at": self.step_data.get("poll_started_at") or self.now.isoformat(),
            "last_checked": self.now.isoformat(),
            "last_status": status,
        }


Handler = Callable[[StepContext], Awaitable[StepResult]]


class StepExecutor:
    def __init__(
        self,
        adapter: PlatformAdapter,
        credentials: CredentialResolver,
        clock: Clock = utc_now,
        protected_environments: Iterable[str] = (),
    ):
        self.adapter = adapter
        self.credentials = credentials
        self.clock = clock
        self.protected_environments = {e.strip().lower() for e in protected_environments}
        self._handlers: Dict[Step, Handler] = {
            Step.CALL_START: self._start,
            Step.START_ENVIRONMENT: self._start,
            Step.CALL_STOP: self._stop,
            Step.STOP_ENVIRONMENT: self._stop,
            Step.WAIT_RUNNING: self._wait_running,
            Step.WAIT_ENVIRONMENT_RUNNING: self._wait_running,
            Step.WAIT_STOPPED: self._wait_stopped,
            Step.WAIT_ENVIRONMENT_STOPPED: self._wait_stopped,
            Step.CREATE_PACKAGE: self._create_package,
            Step.WAIT_PACKAGE_BUILD: self._wait_package_build,
            Step.TRANSPORT_PACKAGE: self._transport_package,
            Step.CREATE_BACKUP: self._create_backup,
            Step.WAIT_BACKUP_COMPLETE: self._wait_backup_complete,
            Step.RETRIEVE_SOURCE_PACKAGE: self._retrieve_source_package,
        }

    async def execute(self, action: CloudActionORM) -> StepOutcome:
        """Run the action's current step (or its initial step) once."""
        machine = get_machine(action.operation_type)
        step_data = dict(action.step_data or {})
        try:
            step = machine.resolve(action.current_step)
        except UnknownStepError as e:
            return StepOutcome(OutcomeKind.FATAL, machine.initial_step, step_data=step_data, error=str(e))

        try:
            ctx = await self._build_context(action, machine, step, step_data)
            result = await self._handlers[step](ctx)
            return self._to_outcome(ctx, result)
        except FatalStepError as e:
            return StepOutcome(OutcomeKind.FATAL, step, step_data=step_data, error=str(e))
        except RetryableStepError as e:
            return StepOutcome(OutcomeKind.RETRYABLE, step, step_data=step_data, error=str(e))
        except PlatformError as e:
            kind = OutcomeKind.FATAL if e.fatal else OutcomeKind.RETRYABLE
            return StepOutcome(kind, step, step_data=step_data, error=f"Platform error: {e}")
        except Exception as e:
            logger.error(f"Unexpected error in step '{step.value}' of action {action.id}: {e}", exc_info=True)
            return StepOutcome(
                OutcomeKind.RETRYABLE, step, step_data=step_data, error=f"Unexpected error: {type(e).__name__}: {e}"
            )

    async def _build_context(
        self, action: CloudActionORM, machine: StepMachine, step: Step, step_data: Dict[str, Any]
    ) -> StepContext:
        try:
            payload = ActionPayload.model_validate(action.payload or {})
        except ValidationError as e:
            raise FatalStepError(f"Invalid payload: {e.error_count()} validation error(s): {e.errors()[0]['msg']}")

        environment = normalize_environment_name(action.environment_name)
        if environment.lower() in self.protected_environments:
            raise FatalStepError(f"Environment '{environment}' is protected; refusing to run {step.value}")

        try:
            credentials = await self.credentials.resolve(action.credential_id, action.tenant_id)
        except MissingCredentialsError as e:
            raise FatalStepError(f"Missing credentials: {e}")

        return StepContext(
            action=action,
            machine=machine,
            step=step,
            payload=payload,
            app_id=action.app_id,
            environment=environment,
            credentials=credentials,
            step_data=step_data,
            now=self.clock(),
        )

    def _to_outcome(self, ctx: StepContext, result: StepResult) -> StepOutcome:
        step, machine = ctx.step, ctx.machine
        data = {**ctx.step_data, **result.data}
        warnings = [result.warning] if result.warning else []

        if result.action == "wait":
            if not machine.is_poll_step(step):
                raise FatalStepError(f"Step '{step.value}' cannot wait")
            deadline = self._poll_deadline(ctx)
            if deadline is not None and ctx.now >= deadline:
                fallback = machine.skip_target(step)
                if fallback is not None:
                    return StepOutcome(
                        OutcomeKind.ADVANCE,
                        step,
                        next_step=fallback,
                        step_data=self._drop_poll_fields(data),
                        warnings=warnings + [
                            f"Step '{step.value}' did not complete in time "
                            f"(last status: {data.get('last_status')}), continuing without it"
                        ],
                    )
                return StepOutcome(
                    OutcomeKind.FATAL,
                    step,
                    step_data=data,
                    error=f"Timed out waiting in step '{step.value}' (last status: {data.get('last_status')})",
                )
            return StepOutcome(OutcomeKind.ADVANCE, step, next_step=step, step_data=data, warnings=warnings)

        if result.action == "skip":
            if result.target is None or not machine.allows(step, result.target):
                target = result.target.value if result.target else None
                raise FatalStepError(f"Invalid transition '{step.value}' -> '{target}'")
            data = self._drop_poll_fields(data)
            return StepOutcome(OutcomeKind.ADVANCE, step, next_step=result.target, step_data=data, warnings=warnings)

        data = self._drop_poll_fields(data)
        next_step = machine.next_step(step)
        if next_step is None:
            return StepOutcome(OutcomeKind.COMPLETED, step, step_data=data, warnings=warnings)
        return StepOutcome(OutcomeKind.ADVANCE, step, next_step=next_step, step_data=data, warnings=warnings)

    @staticmethod
    def _drop_poll_fields(data: Dict[str, Any]) -> Dict[str, Any]:
        # poll_started_at belongs to a single polling step
        return {k: v for k, v in data.items() if k != "poll_started_at"}

    @staticmethod
    def _poll_deadline(ctx: StepContext) -> Optional[datetime]:
        retry_until = as_utc(ctx.action.retry_until)
        if retry_until is not None:
            return retry_until
        started_at = as_utc(ctx.action.started_at)
        if started_at is None:
            return None
        return started_at + ctx.machine.poll_timeout

    # ------------------------------------------------------------------
    # Environment lifecycle
    # ------------------------------------------------------------------

    async def _start(self, ctx: StepContext) -> StepResult:
        env = await self.adapter.get_environment(ctx.app_id, ctx.environment, ctx.credentials)
        status = env.status.lower()
        if status in RUNNING_STATES:
            logger.info(f"{ctx.app_id}/{ctx.environment} already {status}; skipping start command")
            return StepResult.proceed(last_status=env.status)
        await self.adapter.start_environment(ctx.app_id, ctx.environment, ctx.credentials)
        return StepResult.proceed(last_status=env.status)

    async def _stop(self, ctx: StepContext) -> StepResult:
        env = await self.adapter.get_environment(ctx.app_id, ctx.environment, ctx.credentials)
        status = env.status.lower()
        if status in STOPPED_STATES:
            logger.info(f"{ctx.app_id}/{ctx.environment} already {status}; skipping stop command")
            return StepResult.proceed(last_status=env.status)
        await self.adapter.stop_environment(ctx.app_id, ctx.environment, ctx.credentials)
        return StepResult.proceed(last_status=env.status)

    async def _wait_for(self, ctx: StepContext, target: str) -> StepResult:
        env = await self.adapter.get_environment(ctx.app_id, ctx.environment, ctx.credentials)
        if env.status.lower() == target:
            return StepResult.proceed(last_status=env.status, last_checked=ctx.now.isoformat())
        return StepResult.wait(**ctx.poll_data(env.status))

    async def _wait_running(self, ctx: StepContext) -> StepResult:
        return await self._wait_for(ctx, "running")

    async def _wait_stopped(self, ctx: StepContext) -> StepResult:
        return await self._wait_for(ctx, "stopped")

    # ------------------------------------------------------------------
    # Packages
    # ------------------------------------------------------------------

    async def _create_package(self, ctx: StepContext) -> StepResult:
        if ctx.step_data.get("package_id"):
            return StepResult.proceed()
        payload = ctx.payload
        description = payload.description or f"Deployed from {payload.branch_name}@{payload.revision_id}"
        package_id = await self.adapter.create_package(
            ctx.app_id,
            ctx.credentials,
            branch=payload.branch_name,
            revision=payload.revision_id,
            version=payload.version,
            description=description,
        )
        return StepResult.proceed(package_id=package_id)

    @staticmethod
    def _require_package_id(ctx: StepContext) -> str:
        package_id = ctx.step_data.get("package_id")
        if not package_id:
            raise FatalStepError(f"Step '{ctx.step.value}' requires a package_id from an earlier step")
        return package_id

    async def _wait_package_build(self, ctx: StepContext) -> StepResult:
        package_id = self._require_package_id(ctx)
        package = await self.adapter.get_package(ctx.app_id, package_id, ctx.credentials)
        status = package.status.lower()
        if status in PACKAGE_READY_STATES:
            return StepResult.proceed(last_status=package.status)
        if status == "failed":
            raise FatalStepError(f"Package build {package_id} failed: {package.error_message or 'no details'}")
        return StepResult.wait(**ctx.poll_data(package.status))

    async def _transport_package(self, ctx: StepContext) -> StepResult:
        package_id = self._require_package_id(ctx)
        await self.adapter.transport_package(ctx.app_id, ctx.environment, package_id, ctx.credentials)
        return StepResult.proceed()

    async def _retrieve_source_package(self, ctx: StepContext) -> StepResult:
        source = ctx.payload.source_environment
        if not source:
            raise FatalStepError("Transport requires payload.source_environment")
        source = normalize_environment_name(source)
        env = await self.adapter.get_environment(ctx.app_id, source, ctx.credentials)
        if not env.package_id:
            raise FatalStepError(f"No package deployed in source environment '{source}'")
        return StepResult.proceed(package_id=env.package_id, source_environment=source)

    # ------------------------------------------------------------------
    # Backups (degradable)
    # ------------------------------------------------------------------

    async def _create_backup(self, ctx: StepContext) -> StepResult:
        comment = ctx.payload.comment or f"Pre-deployment backup ({ctx.now.strftime('%Y-%m-%d %H:%M UTC')})"
        try:
            backup_id = await self.adapter.create_snapshot(ctx.app_id, ctx.environment, comment, ctx.credentials)
        except PlatformError as e:
            return StepResult.skip_to(
                Step.START_ENVIRONMENT, warning=f"Backup creation failed, continuing without backup: {e}"
            )
        return StepResult.proceed(backup_id=backup_id)

    async def _wait_backup_complete(self, ctx: StepContext) -> StepResult:
        backup_id = ctx.step_data.get("backup_id")
        if not backup_id:
            return StepResult.skip_to(Step.START_ENVIRONMENT, warning="No backup to wait for, continuing")
        try:
            snapshot = await self.adapter.get_snapshot(ctx.app_id, backup_id, ctx.credentials)
        except PlatformError as e:
            return StepResult.skip_to(
                Step.START_ENVIRONMENT, warning=f"Backup status check failed, continuing without backup: {e}"
            )
        state = snapshot.state.lower()
        if state == "completed":
            return StepResult.proceed(last_status=snapshot.state)
        if state == "failed":
            return StepResult.skip_to(
                Step.START_ENVIRONMENT,
                warning=f"Backup {backup_id} failed, continuing without backup",
                last_status=snapshot.state,
            )
        return StepResult.wait(**ctx.poll_data(snapshot.state))
