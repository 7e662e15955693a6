"""
Step machine definitions, one per operation type.

Each machine is a fixed, linear transition table. Polling steps may stay put
across cycles; the only non-linear edges are the explicit skip edges that let
a deploy continue without a backup.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from backend.app.models.cloud_action_orm import OperationType


class Step(str, Enum):
    CALL_START = "call_start"
    CALL_STOP = "call_stop"
    WAIT_RUNNING = "wait_running"
    WAIT_STOPPED = "wait_stopped"
    CREATE_PACKAGE = "create_package"
    WAIT_PACKAGE_BUILD = "wait_package_build"
    TRANSPORT_PACKAGE = "transport_package"
    STOP_ENVIRONMENT = "stop_environment"
    WAIT_ENVIRONMENT_STOPPED = "wait_environment_stopped"
    CREATE_BACKUP = "create_backup"
    WAIT_BACKUP_COMPLETE = "wait_backup_complete"
    START_ENVIRONMENT = "start_environment"
    WAIT_ENVIRONMENT_RUNNING = "wait_environment_running"
    RETRIEVE_SOURCE_PACKAGE = "retrieve_source_package"


class UnknownStepError(ValueError):
    """A persisted step name that does not belong to the action's machine."""


@dataclass(frozen=True)
class StepMachine:
    operation: OperationType
    sequence: Tuple[Step, ...]
    poll_steps: FrozenSet[Step] = frozenset()
    skip_edges: FrozenSet[Tuple[Step, Step]] = frozenset()
    poll_timeout: timedelta = timedelta(minutes=30)
    _index: Dict[Step, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_index", {step: i for i, step in enumerate(self.sequence)})

    @property
    def initial_step(self) -> Step:
        return self.sequence[0]

    def contains(self, step: Step) -> bool:
        return step in self._index

    def resolve(self, step_name: Optional[str]) -> Step:
        """Map a persisted ``current_step`` to a step of this machine."""
        if not step_name:
            return self.initial_step
        try:
            step = Step(step_name)
        except ValueError:
            raise UnknownStepError(f"Unknown step '{step_name}'")
        if not self.contains(step):
            raise UnknownStepError(f"Step '{step_name}' is not part of the {self.operation.value} sequence")
        return step

    def next_step(self, step: Step) -> Optional[Step]:
        """The step after ``step``, or None when ``step`` is the last one."""
        i = self._index[step]
        if i + 1 < len(self.sequence):
            return self.sequence[i + 1]
        return None

    def is_poll_step(self, step: Step) -> bool:
        return step in self.poll_steps

    def skip_target(self, step: Step) -> Optional[Step]:
        """Where a degradable step continues when it gives up, or None if it cannot degrade."""
        for source, target in self.skip_edges:
            if source == step:
                return target
        return None

    def allows(self, source: Step, target: Step) -> bool:
        if not (self.contains(source) and self.contains(target)):
            return False
        if source == target:
            return self.is_poll_step(source)
        return self.next_step(source) == target or (source, target) in self.skip_edges


STEP_MACHINES: Dict[OperationType, StepMachine] = {
    OperationType.START: StepMachine(
        operation=OperationType.START,
        sequence=(Step.CALL_START, Step.WAIT_RUNNING),
        poll_steps=frozenset({Step.WAIT_RUNNING}),
    ),
    OperationType.STOP: StepMachine(
        operation=OperationType.STOP,
        sequence=(Step.CALL_STOP,),
    ),
    OperationType.RESTART: StepMachine(
        operation=OperationType.RESTART,
        sequence=(Step.CALL_STOP, Step.WAIT_STOPPED, Step.CALL_START, Step.WAIT_RUNNING),
        poll_steps=frozenset({Step.WAIT_STOPPED, Step.WAIT_RUNNING}),
    ),
    OperationType.DEPLOY: StepMachine(
        operation=OperationType.DEPLOY,
        sequence=(
            Step.CREATE_PACKAGE,
            Step.WAIT_PACKAGE_BUILD,
            Step.TRANSPORT_PACKAGE,
            Step.STOP_ENVIRONMENT,
            Step.WAIT_ENVIRONMENT_STOPPED,
            Step.CREATE_BACKUP,
            Step.WAIT_BACKUP_COMPLETE,
            Step.START_ENVIRONMENT,
            Step.WAIT_ENVIRONMENT_RUNNING,
        ),
        poll_steps=frozenset({
            Step.WAIT_PACKAGE_BUILD,
            Step.WAIT_ENVIRONMENT_STOPPED,
            Step.WAIT_BACKUP_COMPLETE,
            Step.WAIT_ENVIRONMENT_RUNNING,
        }),
        skip_edges=frozenset({
            (Step.CREATE_BACKUP, Step.START_ENVIRONMENT),
            (Step.WAIT_BACKUP_COMPLETE, Step.START_ENVIRONMENT),
        }),
        poll_timeout=timedelta(minutes=90),
    ),
    OperationType.TRANSPORT: StepMachine(
        operation=OperationType.TRANSPORT,
        sequence=(Step.RETRIEVE_SOURCE_PACKAGE, Step.TRANSPORT_PACKAGE),
    ),
}


def get_machine(operation: OperationType) -> StepMachine:
    return STEP_MACHINES[OperationType(operation)]
