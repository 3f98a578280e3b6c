"""
Shared test fixtures for the NuFit entitlements test suite.
"""

from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from nufit.auth import AuthenticatedUser, get_current_user
from nufit.config import SubscriptionConfig
from nufit.services.entitlement_service import EntitlementService
from nufit.services.entitlement_store import InMemoryEntitlementStore
from nufit.services.lifecycle import TransitionEngine
from nufit.services.tier_catalog import TierCatalog


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for tests so Settings can be instantiated."""
    monkeypatch.setenv("ADMIN_API_KEY", "admin-test-key")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("SCHEDULER__ENABLED", "false")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def clock() -> MutableClock:
    """Clock starting 2026-01-01 00:00 UTC."""
    return MutableClock(datetime(2026, 1, 1, tzinfo=UTC))


@pytest.fixture
def make_service(clock: MutableClock):
    """Factory for an EntitlementService over a fresh in-memory store."""

    def _make(
        config: SubscriptionConfig | None = None,
        store: InMemoryEntitlementStore | None = None,
    ) -> EntitlementService:
        config = config or SubscriptionConfig()
        store = store or InMemoryEntitlementStore(now_provider=clock.now)
        catalog = TierCatalog()
        engine = TransitionEngine(catalog, config)
        return EntitlementService(store, engine, catalog, config, now_provider=clock.now)

    return _make


@pytest.fixture
def service(make_service) -> EntitlementService:
    return make_service()


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from nufit.config import get_settings

    get_settings.cache_clear()

    from nufit.main import app

    return TestClient(app)


@pytest.fixture
def api(client: TestClient, clock: MutableClock):
    """TestClient with in-memory services on app.state and user-1 signed in."""
    from nufit.config import get_settings
    from nufit.main import install_services

    store = InMemoryEntitlementStore(now_provider=clock.now)
    install_services(client.app, store, get_settings(), now_provider=clock.now)
    client.app.state.stripe_service = None
    client.app.state.plan_generator = None

    async def _fake_user() -> AuthenticatedUser:
        return AuthenticatedUser(id="user-1", email="user@example.com")

    client.app.dependency_overrides[get_current_user] = _fake_user
    yield client
    client.app.dependency_overrides.clear()
