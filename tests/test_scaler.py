import logging
import threading
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import insert

from src.adapters import HerokuAPIError
from src.coordination import LockError
from src.database import as_naive_utc, utcnow
from src.events import EventAction, ScaleEventStore
from src.metrics import MetricsError, MetricsSnapshot
from src.scaling import (
    CooldownTracker,
    Decision,
    InMemoryCooldownStore,
    ScaleAction,
    Scaler,
)
from src.scaling.scaler import LOCK_CONTENDED_REASON


@pytest.fixture
def lock():
    lock = MagicMock()
    lock.try_lock.return_value = True
    lock.acquire_async = AsyncMock(return_value=True)
    return lock


@pytest.fixture
def collector():
    collector = MagicMock()
    collector.collect.return_value = MetricsSnapshot(queue_depth=150, oldest_job_age_seconds=20)
    return collector


@pytest.fixture
def event_store():
    return MagicMock()


@pytest.fixture
def build_scaler(make_config, lock, collector, fake_adapter, event_store):
    """Scaler wired to doubles; settings go to the configuration"""

    def _build(**settings):
        config = make_config(**settings)
        scaler = Scaler(
            config,
            lock=lock,
            metrics_collector=collector,
            adapter=fake_adapter,
            cooldown_tracker=CooldownTracker(config, store=InMemoryCooldownStore()),
            event_store=event_store,
        )
        return scaler

    return _build


def recorded_actions(event_store):
    return [call.args[0].action for call in event_store.record.call_args_list]


@pytest.mark.asyncio
async def test_scale_up_happy_path(build_scaler, fake_adapter, lock, event_store):
    scaler = build_scaler(scale_up_increment=2)

    result = await scaler.run()

    assert result.success
    assert result.scaled
    assert result.decision.action == ScaleAction.SCALE_UP
    assert result.decision.to_workers == 4
    fake_adapter.scale.assert_awaited_once_with(4)
    lock.try_lock.assert_called_once()
    lock.release.assert_called_once()

    event = event_store.record.call_args.args[0]
    assert event.action == EventAction.SCALE_UP
    assert event.from_workers == 2
    assert event.to_workers == 4
    assert event.queue_depth == 150
    assert event.metrics["queue_depth"] == 150
    assert event.dry_run is False


@pytest.mark.asyncio
async def test_scale_records_cooldown(build_scaler):
    scaler = build_scaler()

    await scaler.run()

    assert scaler.cooldown_tracker.cooldown_active_for(ScaleAction.SCALE_UP)
    assert not scaler.cooldown_tracker.cooldown_active_for(ScaleAction.SCALE_DOWN)


@pytest.mark.asyncio
async def test_disabled_skips_without_locking(build_scaler, lock, fake_adapter):
    scaler = build_scaler(enabled=False)

    result = await scaler.run()

    assert result.success
    assert result.skipped_reason == "Autoscaler is disabled"
    lock.try_lock.assert_not_called()
    fake_adapter.scale.assert_not_awaited()


@pytest.mark.asyncio
async def test_lock_contention_skips(build_scaler, lock, fake_adapter, collector):
    lock.try_lock.return_value = False
    scaler = build_scaler()

    result = await scaler.run()

    assert result.success
    assert result.skipped
    assert result.skipped_reason == LOCK_CONTENDED_REASON
    assert not result.scaled
    collector.collect.assert_not_called()
    fake_adapter.scale.assert_not_awaited()
    lock.release.assert_not_called()


@pytest.mark.asyncio
async def test_no_change_is_not_recorded_by_default(build_scaler, collector, fake_adapter, event_store):
    collector.collect.return_value = MetricsSnapshot(queue_depth=50, oldest_job_age_seconds=60, claimed_jobs=1)
    scaler = build_scaler()

    result = await scaler.run()

    assert result.success
    assert result.decision.no_change
    assert not result.scaled
    fake_adapter.scale.assert_not_awaited()
    event_store.record.assert_not_called()


@pytest.mark.asyncio
async def test_no_change_recorded_with_record_all_events(build_scaler, collector, event_store):
    collector.collect.return_value = MetricsSnapshot(queue_depth=50, oldest_job_age_seconds=60, claimed_jobs=1)
    scaler = build_scaler(record_all_events=True)

    await scaler.run()

    assert recorded_actions(event_store) == [EventAction.NO_CHANGE]


@pytest.mark.asyncio
async def test_cooldown_skips_second_scale(build_scaler, fake_adapter, event_store):
    scaler = build_scaler(cooldown_seconds=120)

    first = await scaler.run()
    second = await scaler.run()

    assert first.scaled
    assert second.success
    assert second.skipped_reason.startswith("Cooldown active (")
    assert second.skipped_reason.endswith("s remaining)")
    assert second.decision.scale_up
    assert fake_adapter.scale.await_count == 1
    assert recorded_actions(event_store) == [EventAction.SCALE_UP, EventAction.SKIPPED]


@pytest.mark.asyncio
async def test_scale_from_zero_bypasses_cooldown(build_scaler, fake_adapter, collector):
    fake_adapter.current_workers.return_value = 0
    collector.collect.return_value = MetricsSnapshot(queue_depth=1, oldest_job_age_seconds=5)
    scaler = build_scaler(scale_from_zero_queue_depth=1)
    scaler.cooldown_tracker.record(ScaleAction.SCALE_UP)

    result = await scaler.run()

    assert result.scaled
    assert result.decision.from_workers == 0
    fake_adapter.scale.assert_awaited_once_with(1)


@pytest.mark.asyncio
async def test_scale_up_aborted_when_another_instance_reached_max(build_scaler, fake_adapter):
    fake_adapter.current_workers.side_effect = [9, 10]
    scaler = build_scaler(max_workers=10)

    result = await scaler.run()

    assert result.success
    assert result.skipped_reason == "Aborted scale_up: already at max_workers (10 >= 10)"
    fake_adapter.scale.assert_not_awaited()
    assert not scaler.cooldown_tracker.cooldown_active_for(ScaleAction.SCALE_UP)


@pytest.mark.asyncio
async def test_scale_down_aborted_when_another_instance_reached_min(build_scaler, fake_adapter, collector):
    fake_adapter.current_workers.side_effect = [3, 1]
    collector.collect.return_value = MetricsSnapshot()
    scaler = build_scaler(min_workers=1)

    result = await scaler.run()

    assert result.skipped_reason == "Aborted scale_down: already at min_workers (1 <= 1)"
    fake_adapter.scale.assert_not_awaited()


@pytest.mark.asyncio
async def test_changed_worker_count_within_limits_still_scales(build_scaler, fake_adapter):
    fake_adapter.current_workers.side_effect = [2, 3]
    scaler = build_scaler()

    result = await scaler.run()

    assert result.scaled
    fake_adapter.scale.assert_awaited_once_with(3)


@pytest.mark.asyncio
async def test_target_is_clamped_before_scaling(build_scaler, fake_adapter, event_store):
    scaler = build_scaler(max_workers=10)
    scaler.decision_engine = MagicMock()
    scaler.decision_engine.decide.return_value = Decision(
        action=ScaleAction.SCALE_UP, from_workers=2, to_workers=15, reason="custom"
    )

    result = await scaler.run()

    fake_adapter.scale.assert_awaited_once_with(10)
    assert result.decision.to_workers == 10
    assert event_store.record.call_args.args[0].to_workers == 10


@pytest.mark.asyncio
async def test_metrics_failure_returns_error_result(build_scaler, collector, lock, event_store, fake_adapter):
    collector.collect.side_effect = MetricsError("Failed to collect metrics: database is down")
    scaler = build_scaler()

    result = await scaler.run()

    assert not result.success
    assert isinstance(result.error, MetricsError)
    fake_adapter.scale.assert_not_awaited()
    lock.release.assert_called_once()

    event = event_store.record.call_args.args[0]
    assert event.action == EventAction.ERROR
    assert event.from_workers == 0
    assert event.to_workers == 0
    assert event.reason == "MetricsError: Failed to collect metrics: database is down"


@pytest.mark.asyncio
async def test_adapter_failure_does_not_start_cooldown(build_scaler, fake_adapter, lock):
    fake_adapter.scale.side_effect = HerokuAPIError("Failed to scale worker to 3", status_code=422)
    scaler = build_scaler()

    result = await scaler.run()

    assert not result.success
    assert isinstance(result.error, HerokuAPIError)
    assert not scaler.cooldown_tracker.cooldown_active_for(ScaleAction.SCALE_UP)
    lock.release.assert_called_once()


@pytest.mark.asyncio
async def test_event_store_failure_does_not_fail_run(build_scaler, event_store, caplog):
    caplog.set_level(logging.WARNING)
    event_store.record.side_effect = RuntimeError("disk full")
    scaler = build_scaler()

    result = await scaler.run()

    assert result.success
    assert result.scaled
    assert "Failed to record scale_up event: disk full" in caplog.text


@pytest.mark.asyncio
async def test_record_events_disabled(build_scaler, event_store):
    scaler = build_scaler(record_events=False)

    await scaler.run()

    event_store.record.assert_not_called()


@pytest.mark.asyncio
async def test_dry_run_flag_is_recorded(build_scaler, event_store, caplog):
    caplog.set_level(logging.INFO)
    scaler = build_scaler(dry_run=True)

    result = await scaler.run()

    assert result.scaled
    assert event_store.record.call_args.args[0].dry_run is True
    assert "[DRY RUN] Scaling scale_up: 2 -> 3 workers" in caplog.text


@pytest.mark.asyncio
async def test_run_blocking_waits_for_lock(build_scaler, lock, fake_adapter):
    scaler = build_scaler()

    result = await scaler.run_blocking(timeout=5)

    lock.acquire_async.assert_awaited_once_with(5)
    lock.try_lock.assert_not_called()
    lock.release.assert_called_once()
    assert result.scaled


@pytest.mark.asyncio
async def test_run_blocking_raises_when_lock_unavailable(build_scaler, lock, fake_adapter):
    lock.acquire_async.side_effect = LockError("Could not acquire advisory lock")
    scaler = build_scaler()

    with pytest.raises(LockError):
        await scaler.run_blocking()

    fake_adapter.scale.assert_not_awaited()
    lock.release.assert_not_called()


@pytest.mark.asyncio
async def test_missing_database_is_an_error_result(make_config):
    scaler = Scaler(make_config())

    result = await scaler.run()

    assert not result.success
    assert "No database configured" in str(result.error)


@pytest.mark.asyncio
async def test_unloadable_database_url_is_an_error_result(make_config):
    scaler = Scaler(make_config(database_url="nosuchdialect://host/db"))

    result = await scaler.run()

    assert not result.success
    assert result.error is not None
    assert not result.scaled


@pytest.mark.asyncio
async def test_database_work_runs_off_the_event_loop_thread(build_scaler, collector):
    loop_thread = threading.get_ident()
    threads = []

    def collect():
        threads.append(threading.get_ident())
        return MetricsSnapshot(queue_depth=150, oldest_job_age_seconds=20)

    collector.collect.side_effect = collect
    scaler = build_scaler()

    result = await scaler.run()

    assert result.scaled
    assert threads and threads[0] != loop_thread


@pytest.mark.asyncio
async def test_end_to_end_against_sqlite(sqlite_engine, job_store, autoscaler_tables, make_config, fake_adapter):
    now = as_naive_utc(utcnow())
    with sqlite_engine.begin() as conn:
        conn.execute(
            insert(job_store.ready_executions),
            [
                {"id": i, "job_id": i, "queue_name": "default", "priority": 0, "created_at": now}
                for i in range(1, 121)
            ],
        )
    config = make_config(engine=sqlite_engine)
    scaler = Scaler(config, cooldown_store=InMemoryCooldownStore())

    result = await scaler.run()

    assert result.success, result.error
    assert result.scaled
    assert result.metrics.queue_depth == 120
    fake_adapter.scale.assert_awaited_once_with(3)

    events = ScaleEventStore(sqlite_engine).recent()
    assert [event.action for event in events] == [EventAction.SCALE_UP]
    assert events[0].worker_name == "default"

    # Lock is free again and the cooldown was persisted
    assert scaler.lock.try_lock()
    scaler.lock.release()
    assert scaler.cooldown_tracker.state()["persistent"] is True
