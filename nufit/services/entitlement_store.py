"""Entitlement store contract and its implementations.

All writes are whole-record conditional writes keyed by user id and guarded by
the version the caller read. A write that finds a different version raises
VersionConflict and changes nothing.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Protocol

import httpx
import structlog
from postgrest.exceptions import APIError

from nufit.errors import StoreUnavailable, VersionConflict
from nufit.models.entitlement import (
    PAID_TIERS,
    BulkWriteResult,
    Entitlement,
    EntitlementStatus,
    Tier,
)

logger = structlog.get_logger(__name__)

# Postgres unique_violation, returned when an insert races another insert
_UNIQUE_VIOLATION = "23505"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EntitlementStore(Protocol):
    """Storage contract for entitlement records."""

    async def get(self, user_id: str) -> Entitlement | None:
        """Fetch a user's entitlement."""

    async def compare_and_set(self, entitlement: Entitlement, expected_version: int) -> Entitlement:
        """Replace the stored record if its version is `expected_version`.

        `expected_version == 0` means the record must not exist yet.
        Returns the stored record with its new version.
        """

    async def bulk_compare_and_set(
        self, items: list[tuple[Entitlement, int]]
    ) -> BulkWriteResult:
        """Conditionally write many records; failures are reported, not raised."""

    async def find_expirable(self, now: datetime) -> list[Entitlement]:
        """Active entitlements whose end date is at or before `now`."""

    async def find_reset_due(self, now: datetime, period: timedelta) -> list[Entitlement]:
        """Active paid entitlements whose last quota reset is at least `period` ago."""

    async def find_active(self, tier: Tier | None = None) -> list[Entitlement]:
        """Active entitlements, optionally filtered by tier."""

    async def mark_webhook_processed(self, event_id: str) -> bool:
        """Record payment webhook idempotency key.

        Returns True when the event is new; False if already seen.
        """

    async def release_webhook_event(self, event_id: str) -> None:
        """Forget a marked event so a redelivery is applied again."""


class InMemoryEntitlementStore:
    """In-memory store used for tests and local fallback."""

    def __init__(self, now_provider=_utcnow) -> None:
        self.records: dict[str, Entitlement] = {}
        self.processed_events: set[str] = set()
        self.now_provider = now_provider
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Entitlement | None:
        record = self.records.get(user_id)
        return record.model_copy(deep=True) if record else None

    def _write(self, entitlement: Entitlement, expected_version: int) -> Entitlement:
        current = self.records.get(entitlement.user_id)
        current_version = current.version if current else 0
        if current_version != expected_version:
            raise VersionConflict(entitlement.user_id, expected_version)

        now = self.now_provider()
        stored = entitlement.model_copy(
            update={
                "version": expected_version + 1,
                "created_at": current.created_at if current else now,
                "updated_at": now,
            },
            deep=True,
        )
        self.records[stored.user_id] = stored
        return stored.model_copy(deep=True)

    async def compare_and_set(self, entitlement: Entitlement, expected_version: int) -> Entitlement:
        async with self._lock:
            return self._write(entitlement, expected_version)

    async def bulk_compare_and_set(
        self, items: list[tuple[Entitlement, int]]
    ) -> BulkWriteResult:
        result = BulkWriteResult()
        async with self._lock:
            for entitlement, expected_version in items:
                try:
                    result.committed.append(self._write(entitlement, expected_version))
                except VersionConflict:
                    result.failed_user_ids.append(entitlement.user_id)
        return result

    async def find_expirable(self, now: datetime) -> list[Entitlement]:
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.status == EntitlementStatus.ACTIVE and r.end_date is not None and r.end_date <= now
        ]

    async def find_reset_due(self, now: datetime, period: timedelta) -> list[Entitlement]:
        cutoff = now - period
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.status == EntitlementStatus.ACTIVE
            and r.tier in PAID_TIERS
            and r.last_quota_reset_at is not None
            and r.last_quota_reset_at <= cutoff
        ]

    async def find_active(self, tier: Tier | None = None) -> list[Entitlement]:
        return [
            r.model_copy(deep=True)
            for r in self.records.values()
            if r.status == EntitlementStatus.ACTIVE and (tier is None or r.tier == tier)
        ]

    async def mark_webhook_processed(self, event_id: str) -> bool:
        if event_id in self.processed_events:
            return False
        self.processed_events.add(event_id)
        return True

    async def release_webhook_event(self, event_id: str) -> None:
        self.processed_events.discard(event_id)


class SupabaseEntitlementStore:
    """Supabase-backed store. Conditional writes filter on the version column."""

    def __init__(
        self,
        client,
        table: str,
        webhook_events_table: str,
        now_provider=_utcnow,
        write_concurrency: int = 10,
    ):
        self.client = client
        self.table = table
        self.webhook_events_table = webhook_events_table
        self.now_provider = now_provider
        self.write_concurrency = write_concurrency

    async def _execute(self, query):
        try:
            return await query.execute()
        except httpx.HTTPError as e:
            raise StoreUnavailable(str(e)) from e

    async def _select(self, query) -> list[Entitlement]:
        response = await self._execute(query)
        return [Entitlement.model_validate(row) for row in response.data or []]

    async def get(self, user_id: str) -> Entitlement | None:
        rows = await self._select(
            self.client.table(self.table).select("*").eq("user_id", user_id).limit(1)
        )
        return rows[0] if rows else None

    async def compare_and_set(self, entitlement: Entitlement, expected_version: int) -> Entitlement:
        now = self.now_provider()
        payload = entitlement.model_dump(mode="json")
        payload["version"] = expected_version + 1
        payload["updated_at"] = now.isoformat()

        if expected_version == 0:
            payload["created_at"] = now.isoformat()
            try:
                response = await self._execute(self.client.table(self.table).insert(payload))
            except APIError as e:
                if e.code == _UNIQUE_VIOLATION:
                    raise VersionConflict(entitlement.user_id, expected_version) from e
                raise
        else:
            payload.pop("created_at", None)
            response = await self._execute(
                self.client.table(self.table)
                .update(payload)
                .eq("user_id", entitlement.user_id)
                .eq("version", expected_version)
            )

        rows = response.data or []
        if not rows:
            raise VersionConflict(entitlement.user_id, expected_version)
        return Entitlement.model_validate(rows[0])

    async def bulk_compare_and_set(
        self, items: list[tuple[Entitlement, int]]
    ) -> BulkWriteResult:
        semaphore = asyncio.Semaphore(self.write_concurrency)

        async def _bounded(entitlement: Entitlement, expected_version: int) -> Entitlement:
            async with semaphore:
                return await self.compare_and_set(entitlement, expected_version)

        outcomes = await asyncio.gather(
            *(_bounded(e, v) for e, v in items),
            return_exceptions=True,
        )
        result = BulkWriteResult()
        for (entitlement, _), outcome in zip(items, outcomes):
            if isinstance(outcome, Entitlement):
                result.committed.append(outcome)
                continue
            if not isinstance(outcome, (VersionConflict, StoreUnavailable, APIError)):
                raise outcome
            logger.warning(
                "entitlement_bulk_write_failed",
                user_id=entitlement.user_id,
                error=str(outcome),
            )
            result.failed_user_ids.append(entitlement.user_id)
        return result

    async def find_expirable(self, now: datetime) -> list[Entitlement]:
        return await self._select(
            self.client.table(self.table)
            .select("*")
            .eq("status", EntitlementStatus.ACTIVE.value)
            .lte("end_date", now.isoformat())
        )

    async def find_reset_due(self, now: datetime, period: timedelta) -> list[Entitlement]:
        cutoff = now - period
        return await self._select(
            self.client.table(self.table)
            .select("*")
            .eq("status", EntitlementStatus.ACTIVE.value)
            .in_("tier", sorted(t.value for t in PAID_TIERS))
            .lte("last_quota_reset_at", cutoff.isoformat())
        )

    async def find_active(self, tier: Tier | None = None) -> list[Entitlement]:
        query = (
            self.client.table(self.table)
            .select("*")
            .eq("status", EntitlementStatus.ACTIVE.value)
        )
        if tier is not None:
            query = query.eq("tier", tier.value)
        return await self._select(query)

    async def mark_webhook_processed(self, event_id: str) -> bool:
        existing = await self._execute(
            self.client.table(self.webhook_events_table)
            .select("event_id")
            .eq("event_id", event_id)
            .limit(1)
        )
        if existing.data:
            return False

        await self._execute(
            self.client.table(self.webhook_events_table).insert(
                {"event_id": event_id, "processed_at": self.now_provider().isoformat()}
            )
        )
        return True

    async def release_webhook_event(self, event_id: str) -> None:
        await self._execute(
            self.client.table(self.webhook_events_table).delete().eq("event_id", event_id)
        )
