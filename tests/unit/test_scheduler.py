"""Unit tests for the sweeps and the daily scheduler."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from nufit.config import SchedulerConfig
from nufit.models.entitlement import EntitlementStatus, TransitionKind
from nufit.services.entitlement_store import InMemoryEntitlementStore
from nufit.services.scheduler import (
    EXPIRY_JOB,
    QUOTA_RESET_JOB,
    PeriodicTask,
    Scheduler,
    SweepRunner,
)


@pytest.fixture
def runner(service, clock) -> SweepRunner:
    return SweepRunner(service.store, service.engine, now_provider=clock.now)


async def _zero_quota(service, user_id: str) -> None:
    entitlement = await service.store.get(user_id)
    await service.store.compare_and_set(
        entitlement.model_copy(update={"quota_remaining": 0}), entitlement.version
    )


async def _drain(service, user_id: str) -> None:
    entitlement = await service.get_entitlement(user_id)
    for _ in range(entitlement.quota_remaining):
        await service.run_transition(user_id, TransitionKind.CONSUME_QUOTA)


class TestExpirySweep:
    async def test_expires_only_past_end_date(self, service, runner, clock):
        await service.activate_trial("trial-user")
        await service.activate_tier("paid-user", "monthly")
        clock.advance(timedelta(days=7))

        summary = await runner.run_expiry_sweep()

        assert summary.job == EXPIRY_JOB
        assert summary.affected == 1
        assert (await service.get_entitlement("trial-user")).status == EntitlementStatus.EXPIRED
        assert (await service.get_entitlement("paid-user")).status == EntitlementStatus.ACTIVE

    async def test_rerun_is_a_no_op(self, service, runner, clock):
        await service.activate_trial("u1")
        clock.advance(timedelta(days=8))

        first = await runner.run_expiry_sweep()
        version = (await service.get_entitlement("u1")).version
        second = await runner.run_expiry_sweep()

        assert first.affected == 1
        assert second.scanned == 0
        assert second.affected == 0
        assert (await service.get_entitlement("u1")).version == version


class TestQuotaResetSweep:
    async def test_monthly_restored_on_each_anniversary(self, service, runner, clock):
        await service.activate_tier("u1", "monthly")

        for _ in range(3):
            # Consumption is refused past end_date; zero the balance directly
            await _zero_quota(service, "u1")
            clock.advance(timedelta(days=30))

            summary = await runner.run_quota_reset_sweep()

            assert summary.affected == 1
            assert (await service.get_entitlement("u1")).quota_remaining == 4

    async def test_monthly_untouched_mid_period(self, service, runner, clock):
        await service.activate_tier("u1", "monthly")
        await service.run_transition("u1", TransitionKind.CONSUME_QUOTA)
        clock.advance(timedelta(days=15))

        summary = await runner.run_quota_reset_sweep()

        assert summary.scanned == 0
        assert (await service.get_entitlement("u1")).quota_remaining == 3

    async def test_quarterly_scenario(self, service, runner, clock):
        assert clock.now() == datetime(2026, 1, 1, tzinfo=UTC)
        entitlement = await service.activate_tier("u1", "quarterly")
        assert entitlement.end_date == datetime(2026, 4, 1, tzinfo=UTC)
        assert entitlement.quota_remaining == 12

        clock.advance(timedelta(days=30))
        await runner.run_quota_reset_sweep()
        assert (await service.get_entitlement("u1")).quota_remaining == 12

        # Four plans per 30-day period once the balance runs down
        await _drain(service, "u1")
        clock.advance(timedelta(days=30))
        await runner.run_quota_reset_sweep()
        assert (await service.get_entitlement("u1")).quota_remaining == 4

        clock.advance(timedelta(days=30))
        await runner.run_expiry_sweep()
        expired = await service.get_entitlement("u1")
        assert expired.status == EntitlementStatus.EXPIRED
        assert expired.quota_remaining == 0

    async def test_trial_is_not_reset(self, service, runner, clock):
        await service.activate_trial("u1")
        await _drain(service, "u1")
        clock.advance(timedelta(days=30))

        summary = await runner.run_quota_reset_sweep()

        assert summary.scanned == 0

    async def test_failed_writes_are_left_pending(self, service, clock):
        class FlakyStore(InMemoryEntitlementStore):
            async def bulk_compare_and_set(self, items):
                result = await super().bulk_compare_and_set(items[:1])
                result.failed_user_ids.extend(e.user_id for e, _ in items[1:])
                return result

        store = FlakyStore(now_provider=clock.now)
        store.records = service.store.records
        service.store = store
        runner = SweepRunner(store, service.engine, now_provider=clock.now)
        await service.activate_tier("a", "monthly")
        await service.activate_tier("b", "monthly")
        await _drain(service, "a")
        await _drain(service, "b")
        clock.advance(timedelta(days=30))

        summary = await runner.run_quota_reset_sweep()

        assert summary.job == QUOTA_RESET_JOB
        assert summary.affected == 1
        assert summary.pending_user_ids == ["b"]
        assert (await service.get_entitlement("b")).quota_remaining == 0

        # Next run picks the pending record up again
        plain = InMemoryEntitlementStore(now_provider=clock.now)
        plain.records = store.records
        retry = await SweepRunner(plain, service.engine, now_provider=clock.now).run_quota_reset_sweep()
        assert retry.affected == 1
        assert (await service.get_entitlement("b")).quota_remaining == 4


class FakeSleep:
    """Advances the clock instead of waiting."""

    def __init__(self, clock):
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.clock.advance(timedelta(seconds=seconds))


class TestPeriodicTask:
    def test_next_run_same_day(self):
        task = PeriodicTask("t", _noop, hour=2)

        assert task.next_run_after(datetime(2026, 1, 1, 1, 30, tzinfo=UTC)) == datetime(
            2026, 1, 1, 2, 0, tzinfo=UTC
        )

    def test_next_run_rolls_to_tomorrow(self):
        task = PeriodicTask("t", _noop, hour=2)

        assert task.next_run_after(datetime(2026, 1, 1, 2, 0, tzinfo=UTC)) == datetime(
            2026, 1, 2, 2, 0, tzinfo=UTC
        )

    async def test_runs_daily_at_configured_hour(self, clock):
        sleep = FakeSleep(clock)
        fired: list[datetime] = []

        async def handler():
            fired.append(clock.now())

        task = PeriodicTask("t", handler, hour=3, now_provider=clock.now, sleep=sleep)
        await task.run_forever(max_runs=3)

        assert fired == [
            datetime(2026, 1, 1, 3, 0, tzinfo=UTC),
            datetime(2026, 1, 2, 3, 0, tzinfo=UTC),
            datetime(2026, 1, 3, 3, 0, tzinfo=UTC),
        ]
        assert sleep.delays[0] == 3 * 3600

    async def test_handler_failure_does_not_stop_the_loop(self, clock):
        sleep = FakeSleep(clock)
        calls = 0

        async def handler():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("store down")
            return "ok"

        task = PeriodicTask("t", handler, hour=2, now_provider=clock.now, sleep=sleep)
        await task.run_forever(max_runs=2)

        assert calls == 2
        assert task.runs == 2

    async def test_run_once_returns_handler_result(self):
        async def handler():
            return 42

        task = PeriodicTask("t", handler, hour=2)

        assert await task.run_once() == 42
        assert task.runs == 1


class TestScheduler:
    async def test_drives_expiry_then_reset(self, service, runner, clock):
        await service.activate_trial("u1")
        sleep = FakeSleep(clock)
        scheduler = Scheduler(runner, SchedulerConfig(), now_provider=clock.now, sleep=sleep)
        expiry_task, reset_task = scheduler.tasks

        assert (expiry_task.name, expiry_task.hour) == (EXPIRY_JOB, 2)
        assert (reset_task.name, reset_task.hour) == (QUOTA_RESET_JOB, 3)

        clock.advance(timedelta(days=7))
        summary = await expiry_task.run_once()

        assert summary.affected == 1
        assert (await service.get_entitlement("u1")).status == EntitlementStatus.EXPIRED

    async def test_start_and_stop(self, runner, clock):
        async def never(_seconds):
            await asyncio.Event().wait()

        scheduler = Scheduler(runner, SchedulerConfig(), now_provider=clock.now, sleep=never)

        scheduler.start()
        assert all(t._task is not None for t in scheduler.tasks)

        await scheduler.stop()
        assert all(t._task is None for t in scheduler.tasks)

    async def test_disabled_scheduler_starts_nothing(self, runner):
        scheduler = Scheduler(runner, SchedulerConfig(enabled=False))

        scheduler.start()

        assert all(t._task is None for t in scheduler.tasks)


async def _noop():
    return None
