"""
End-to-end dispatch scenarios: multi-cycle actions, stale recovery,
partition isolation and manual runs.
"""
import asyncio
from datetime import timedelta

import pytest

from backend.app.core.config import Settings
from backend.app.models.cloud_action_orm import ActionStatus, LogLevel, OperationType
from backend.app.services import orchestrator as orchestrator_module
from backend.app.services.action_runner import RunOutcome
from backend.app.services.orchestrator import ActionNotEligibleError, build_orchestrator
from backend.app.services.platform_adapter import PlatformError

APP = "orders-app"


def _finished(action):
    return action.status in (ActionStatus.SUCCEEDED, ActionStatus.FAILED, ActionStatus.CANCELED)


@pytest.mark.asyncio
async def test_start_runs_to_success_over_three_cycles(orchestrator, store, platform, make_action, run_cycles):
    platform.add_environment(APP, "Acceptance", status="Stopped")
    action = await make_action()

    first = await orchestrator.run_cycle()
    assert first.selected == 1
    assert first.outcomes == {"advanced": 1}

    action = await run_cycles(action.id, _finished)

    assert action.status == ActionStatus.SUCCEEDED
    assert action.current_step == "wait_running"
    assert action.completed_at is not None
    assert action.attempt_count == 0
    assert platform.environment_status(APP, "Acceptance") == "Running"
    assert len(platform.calls_to("start_environment")) == 1

    messages = [entry.message for entry in await store.list_logs(action.id)]
    assert "Step 'call_start' completed → 'wait_running'" in messages
    assert "Step 'wait_running' completed → action succeeded" in messages

    later = await orchestrator.run_cycle()
    assert later.selected == 0


@pytest.mark.asyncio
async def test_deploy_degrades_when_backup_fails(orchestrator, store, platform, make_action, run_cycles):
    platform.add_environment(APP, "Acceptance", status="Running")
    platform.fail_next("create_snapshot", PlatformError(500, "snapshot service unavailable"))
    action = await make_action(
        operation_type=OperationType.DEPLOY, payload={"branch_name": "release", "version": "2.1.0"}
    )

    action = await run_cycles(action.id, _finished)

    assert action.status == ActionStatus.SUCCEEDED
    assert action.current_step == "wait_environment_running"
    package_id = action.step_data["package_id"]
    assert platform.environments[(APP, "Acceptance")]["package_id"] == package_id
    assert "backup_id" not in action.step_data

    logs = await store.list_logs(action.id)
    warnings = [e.message for e in logs if e.level == LogLevel.WARN]
    assert any("Backup creation failed" in w for w in warnings)
    assert any("'create_backup' completed → 'start_environment'" in e.message for e in logs)


@pytest.mark.asyncio
async def test_deploy_with_backup_runs_every_step(orchestrator, store, platform, make_action, run_cycles):
    platform.add_environment(APP, "Acceptance", status="Running")
    action = await make_action(operation_type=OperationType.DEPLOY)

    action = await run_cycles(action.id, _finished, max_cycles=30)

    assert action.status == ActionStatus.SUCCEEDED
    assert action.step_data["backup_id"].startswith("snap-")
    assert len(platform.calls_to("create_snapshot")) == 1
    assert len(platform.calls_to("transport_package")) == 1
    assert platform.environment_status(APP, "Acceptance") == "Running"


@pytest.mark.asyncio
async def test_stop_on_missing_environment_fails_first_attempt(orchestrator, store, make_action):
    action = await make_action(operation_type=OperationType.STOP, environment_name="ghost")

    report = await orchestrator.run_cycle()

    assert report.outcomes == {"failed": 1}
    loaded = await store.get(action.id)
    assert loaded.status == ActionStatus.FAILED
    assert loaded.attempt_count == 1
    assert "404" in loaded.error_message


@pytest.mark.asyncio
async def test_transport_copies_source_package(orchestrator, platform, make_action, run_cycles):
    platform.add_environment(APP, "Acceptance", status="Running", package_id="pkg-77")
    platform.add_environment(APP, "Production", status="Running", package_id="pkg-12")
    action = await make_action(
        operation_type=OperationType.TRANSPORT,
        environment_name="production",
        payload={"source_environment": "acceptance"},
    )

    action = await run_cycles(action.id, _finished)

    assert action.status == ActionStatus.SUCCEEDED
    assert platform.environments[(APP, "Production")]["package_id"] == "pkg-77"


@pytest.mark.asyncio
async def test_cancel_has_no_effect_once_running(orchestrator, store, platform, make_action):
    platform.add_environment(APP, "Acceptance", status="Stopped")
    action = await make_action()
    await orchestrator.run_cycle()

    assert not await store.cancel(action.id, "tenant-a")
    loaded = await store.get(action.id)
    assert loaded.status == ActionStatus.RUNNING
    assert loaded.current_step == "wait_running"


@pytest.mark.asyncio
async def test_stale_action_is_resumed_once(orchestrator, store, platform, make_action, clock):
    platform.add_environment(APP, "Acceptance", status="Stopped")
    action = await make_action()
    # A runner claims the action and dies before writing anything
    t0 = clock()
    assert await store.claim(action.id, now=t0, stale_before=t0 - timedelta(seconds=45), max_attempts=3)

    clock.advance(seconds=60)
    report = await orchestrator.run_cycle()
    again = await orchestrator.run_cycle()

    assert report.selected == 1
    assert report.resumed == 1
    assert report.outcomes == {"advanced": 1}
    assert again.selected == 0

    messages = [entry.message for entry in await store.list_logs(action.id)]
    assert messages.count("Resuming stale action from step 'call_start'") == 1
    assert (await store.get(action.id)).current_step == "wait_running"


@pytest.mark.asyncio
async def test_no_resume_logged_when_another_runner_wins_the_claim(
    orchestrator, store, make_action, clock, monkeypatch
):
    action = await make_action()
    t0 = clock()
    await store.claim(action.id, now=t0, stale_before=t0 - timedelta(seconds=45), max_attempts=3)
    later = clock.advance(seconds=60)
    select_stale = store.select_stale

    async def select_then_lose(stale_before, max_attempts, limit):
        selected = await select_stale(stale_before, max_attempts, limit)
        # Another process takes the action over right after selection
        assert await store.claim(action.id, now=later, stale_before=stale_before, max_attempts=max_attempts)
        return selected

    monkeypatch.setattr(orchestrator.store, "select_stale", select_then_lose)

    report = await orchestrator.run_cycle()

    assert report.selected == 1
    assert report.resumed == 0
    assert report.outcomes == {"not_claimed": 1}
    assert await store.list_logs(action.id) == []


@pytest.mark.asyncio
async def test_fresh_running_action_is_left_alone(orchestrator, store, make_action, clock):
    action = await make_action()
    t0 = clock()
    await store.claim(action.id, now=t0, stale_before=t0 - timedelta(seconds=45), max_attempts=3)

    clock.advance(seconds=10)
    report = await orchestrator.run_cycle()

    assert report.selected == 0
    assert (await store.get(action.id)).current_step is None


@pytest.mark.asyncio
async def test_failing_partition_does_not_affect_other_tenants(
    orchestrator, store, platform, make_action, credential_id_b, monkeypatch
):
    platform.add_environment(APP, "Acceptance", status="Stopped")
    healthy = await make_action()
    broken = await make_action(tenant_id="tenant-b", credential_id=credential_id_b)
    original = orchestrator.runner.run_partition

    async def run_partition(actions, deadline=None):
        if actions[0].tenant_id == "tenant-b":
            raise RuntimeError("partition exploded")
        return await original(actions, deadline=deadline)

    monkeypatch.setattr(orchestrator.runner, "run_partition", run_partition)

    report = await orchestrator.run_cycle()

    assert report.partitions == 2
    assert report.outcomes == {"advanced": 1}
    assert any("tenant-b" in error for error in report.errors)
    assert (await store.get(healthy.id)).current_step == "wait_running"
    assert (await store.get(broken.id)).status == ActionStatus.SCHEDULED


@pytest.mark.asyncio
async def test_partitions_preserve_creation_order(orchestrator, make_action, clock, credential_id_b):
    a1 = await make_action()
    clock.advance(seconds=1)
    b1 = await make_action(tenant_id="tenant-b", credential_id=credential_id_b)
    clock.advance(seconds=1)
    a2 = await make_action()

    groups = orchestrator.partition([a2, b1, a1])

    assert list(groups) == ["tenant-a", "tenant-b"]
    assert [a.id for a in groups["tenant-a"]] == [a1.id, a2.id]
    assert [a.id for a in groups["tenant-b"]] == [b1.id]


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(orchestrator, make_action, monkeypatch):
    await make_action()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def run_partition(actions, deadline=None):
        entered.set()
        await release.wait()
        return []

    monkeypatch.setattr(orchestrator.runner, "run_partition", run_partition)

    first = asyncio.create_task(orchestrator.run_cycle())
    await entered.wait()
    overlapping = await orchestrator.run_cycle()
    release.set()
    completed = await first

    assert overlapping.skipped
    assert not completed.skipped
    assert completed.selected == 1


@pytest.mark.asyncio
async def test_overrunning_partition_is_cancelled(session_factory, platform, clock, make_action, monkeypatch):
    settings = Settings(_env_file=None, cycle_budget_seconds=0.05)
    orchestrator = build_orchestrator(settings, session_factory=session_factory, adapter=platform, clock=clock)
    monkeypatch.setattr(orchestrator_module, "CANCEL_GRACE_SECONDS", 0.0)
    await make_action()

    async def run_partition(actions, deadline=None):
        await asyncio.sleep(10)
        return []

    monkeypatch.setattr(orchestrator.runner, "run_partition", run_partition)

    report = await orchestrator.run_cycle()

    assert report.cancelled_partitions == 1
    assert report.outcomes == {}


@pytest.mark.asyncio
async def test_cycle_runs_retention_sweep(orchestrator):
    report = await orchestrator.run_cycle()

    assert report.retention["cloud_actions"]["deleted"] == 0
    assert report.retention["cloud_action_logs"]["deleted"] == 0


@pytest.mark.asyncio
async def test_terminal_actions_are_never_selected(orchestrator, store, make_action):
    failed = await make_action(operation_type=OperationType.STOP, environment_name="ghost")
    canceled = await make_action()
    await store.cancel(canceled.id, "tenant-a")

    await orchestrator.run_cycle()
    report = await orchestrator.run_cycle()

    assert report.selected == 0
    assert (await store.get(failed.id)).status == ActionStatus.FAILED
    assert (await store.get(canceled.id)).status == ActionStatus.CANCELED


@pytest.mark.asyncio
async def test_run_now_ignores_schedule(orchestrator, store, platform, make_action, clock):
    platform.add_environment(APP, "Acceptance", status="Stopped")
    action = await make_action(scheduled_for=clock() + timedelta(hours=2))

    result = await orchestrator.run_now(action.id, "tenant-a")

    assert result.outcome == RunOutcome.ADVANCED
    assert result.next_step == "wait_running"
    assert (await store.get(action.id)).status == ActionStatus.RUNNING


@pytest.mark.asyncio
async def test_run_now_rejects_terminal_and_foreign_actions(orchestrator, store, make_action):
    action = await make_action()
    await store.cancel(action.id, "tenant-a")

    with pytest.raises(ActionNotEligibleError):
        await orchestrator.run_now(action.id, "tenant-a")
    with pytest.raises(LookupError):
        await orchestrator.run_now(action.id, "tenant-b")


@pytest.mark.asyncio
async def test_run_now_rejects_action_held_by_another_runner(orchestrator, store, make_action, clock):
    action = await make_action()
    now = clock()
    await store.claim(action.id, now=now, stale_before=now - timedelta(seconds=45), max_attempts=3)

    with pytest.raises(ActionNotEligibleError):
        await orchestrator.run_now(action.id, "tenant-a")
