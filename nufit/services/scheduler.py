"""
Scheduled sweeps and the daily timer that drives them.

Two independent jobs run once a day, an hour apart:
- expiry sweep: active entitlements past their end date become expired
- quota reset sweep: paid entitlements get their 30-day quota tranche

Each sweep feeds matching records through the same TransitionEngine the
request path uses and commits the results in one bulk conditional write.
Records that fail are logged and picked up again by the next run; records
that no longer match (already transitioned) are skipped, which makes both
sweeps safe to re-run.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog

from nufit.config import SchedulerConfig
from nufit.errors import InvalidTransition
from nufit.models.entitlement import Entitlement, SweepSummary, Tier, TransitionKind
from nufit.services.entitlement_store import EntitlementStore
from nufit.services.lifecycle import TransitionEngine

logger = structlog.get_logger(__name__)

EXPIRY_JOB = "expiry_sweep"
QUOTA_RESET_JOB = "quota_reset_sweep"
ADMIN_RESET_JOB = "admin_quota_reset"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SweepRunner:
    """Applies time-driven transitions to every matching entitlement."""

    def __init__(
        self,
        store: EntitlementStore,
        engine: TransitionEngine,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.engine = engine
        self.now_provider = now_provider

    async def _sweep(
        self,
        job: str,
        kind: TransitionKind,
        candidates: list[Entitlement],
        now: datetime,
    ) -> SweepSummary:
        pending: list[str] = []
        writes: list[tuple[Entitlement, int]] = []

        for entitlement in candidates:
            try:
                result = self.engine.apply(entitlement, kind, now=now)
            except InvalidTransition:
                # Precondition no longer holds: nothing to do for this record.
                continue
            except Exception:
                logger.exception("sweep_record_failed", job=job, user_id=entitlement.user_id)
                pending.append(entitlement.user_id)
                continue
            writes.append((result.entitlement, entitlement.version))

        affected = 0
        if writes:
            outcome = await self.store.bulk_compare_and_set(writes)
            affected = len(outcome.committed)
            pending.extend(outcome.failed_user_ids)
            for stored in outcome.committed:
                logger.debug(
                    "sweep_record_applied",
                    job=job,
                    user_id=stored.user_id,
                    status=stored.status.value,
                    quota_remaining=stored.quota_remaining,
                )

        if pending:
            logger.warning("sweep_records_pending", job=job, user_ids=pending)

        summary = SweepSummary(
            job=job,
            scanned=len(candidates),
            affected=affected,
            timestamp=now,
            pending_user_ids=pending,
        )
        logger.info(
            "sweep_completed",
            job=job,
            scanned=summary.scanned,
            affected=summary.affected,
            pending=len(pending),
        )
        return summary

    async def run_expiry_sweep(self) -> SweepSummary:
        now = self.now_provider()
        candidates = await self.store.find_expirable(now)
        return await self._sweep(EXPIRY_JOB, TransitionKind.EXPIRE, candidates, now)

    async def run_quota_reset_sweep(self) -> SweepSummary:
        now = self.now_provider()
        candidates = await self.store.find_reset_due(now, self.engine.quota_period)
        return await self._sweep(QUOTA_RESET_JOB, TransitionKind.RESET_QUOTA, candidates, now)

    async def run_admin_quota_reset(self, tier: Tier | None = None) -> SweepSummary:
        """Restore the period grant for every active entitlement (optionally one tier)."""
        now = self.now_provider()
        candidates = await self.store.find_active(tier)
        return await self._sweep(ADMIN_RESET_JOB, TransitionKind.ADMIN_RESET_QUOTA, candidates, now)


class PeriodicTask:
    """Runs `handler` once a day at hour:minute UTC.

    Clock and sleep are injectable so tests can step through days without
    waiting. Handler failures are logged and never stop the loop.
    """

    def __init__(
        self,
        name: str,
        handler: Callable[[], Awaitable[object]],
        *,
        hour: int,
        minute: int = 0,
        now_provider=_utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.handler = handler
        self.hour = hour
        self.minute = minute
        self.now_provider = now_provider
        self.sleep = sleep
        self.runs = 0
        self._task: asyncio.Task | None = None

    def next_run_after(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    async def run_once(self) -> object | None:
        try:
            result = await self.handler()
        except Exception:
            logger.exception("periodic_task_failed", task=self.name)
            return None
        finally:
            self.runs += 1
        return result

    async def run_forever(self, max_runs: int | None = None) -> None:
        while max_runs is None or self.runs < max_runs:
            now = self.now_provider()
            next_run = self.next_run_after(now)
            delay = (next_run - now).total_seconds()
            logger.debug("periodic_task_sleeping", task=self.name, next_run=next_run.isoformat())
            await self.sleep(delay)
            await self.run_once()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name=self.name)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class Scheduler:
    """Owns the daily expiry and quota-reset tasks."""

    def __init__(
        self,
        runner: SweepRunner,
        config: SchedulerConfig,
        *,
        now_provider=_utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.tasks = [
            PeriodicTask(
                EXPIRY_JOB,
                runner.run_expiry_sweep,
                hour=config.expiry_hour_utc,
                now_provider=now_provider,
                sleep=sleep,
            ),
            PeriodicTask(
                QUOTA_RESET_JOB,
                runner.run_quota_reset_sweep,
                hour=config.quota_reset_hour_utc,
                now_provider=now_provider,
                sleep=sleep,
            ),
        ]

    def start(self) -> None:
        if not self.config.enabled:
            logger.info("scheduler_disabled")
            return
        for task in self.tasks:
            task.start()
        logger.info(
            "scheduler_started",
            tasks=[t.name for t in self.tasks],
            expiry_hour_utc=self.config.expiry_hour_utc,
            quota_reset_hour_utc=self.config.quota_reset_hour_utc,
        )

    async def stop(self) -> None:
        for task in self.tasks:
            await task.stop()
        logger.info("scheduler_stopped")
