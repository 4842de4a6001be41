from __future__ import annotations

from datetime import datetime, timezone

import pytest

from StagedUploads.core.broker import UploadBroker, build_broker
from StagedUploads.core.config import Settings
from StagedUploads.core.credentials import CredentialSigner
from StagedUploads.core.object_store import InMemoryObjectStore
from StagedUploads.core.ratelimit import InMemoryCounterStore
from StagedUploads.core.storage import create_db_engine

from .helpers import ADMIN_KEY, MEMBER_KEY, FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'ledger.db'}",
        STORAGE_BACKEND="memory",
        CREDENTIAL_SECRET="test-secret",
        CDN_BASE_URL="https://cdn.example.com",
        PUBLIC_BASE_URL="http://testserver",
        GRANT_TTL_SECONDS=60,
        RATE_LIMIT=100,
        RATE_WINDOW_SECONDS=60,
        RUN_SWEEPER=False,
        API_KEYS={ADMIN_KEY: "admin", MEMBER_KEY: "member"},
        WEBHOOK_TOKEN="hook-token",
    )


@pytest.fixture()
def store(clock: FakeClock) -> InMemoryObjectStore:
    return InMemoryObjectStore(
        CredentialSigner("test-secret"),
        public_base_url="http://testserver",
        clock=clock,
    )


@pytest.fixture()
def broker(settings: Settings, store: InMemoryObjectStore, clock: FakeClock) -> UploadBroker:
    engine = create_db_engine(settings.DATABASE_URL)
    instance = build_broker(settings, engine=engine, store=store, counters=InMemoryCounterStore(), clock=clock)
    yield instance
    engine.dispose()
