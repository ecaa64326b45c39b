from __future__ import annotations

from typing import AsyncIterator

import pytest

from tenantkeys.core.config import Settings, get_settings
from tenantkeys.domain.models import Base
from tenantkeys.persistence.db import SessionFactory, build_engine, build_session_factory
from tenantkeys.persistence.repos.encrypted_records import EncryptedRecordStore
from tenantkeys.persistence.repos.encryption_keys import KeyStore
from tenantkeys.services.crypto.key_manager import KeyManager
from tenantkeys.services.crypto.key_rotation import KeyRotationService
from tenantkeys.services.crypto.kms.local import LocalKmsClient
from tenantkeys.services.telemetry import reset_telemetry
from tenantkeys.tests.utils.keys import FlakyKms, FrozenClock


@pytest.fixture(autouse=True)
def isolate_process_state() -> None:
    # Settings and counters are process-wide; never let one test observe another's.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    # A file database (not :memory:) so every pooled connection sees the same schema.
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tenantkeys.db'}",
        crypto_local_master_key="00" * 32,
        crypto_reencrypt_batch_delay_ms=0,
    )


@pytest.fixture
async def session_factory(settings: Settings) -> AsyncIterator[SessionFactory]:
    engine = build_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def kms(settings: Settings) -> FlakyKms:
    return FlakyKms(LocalKmsClient(settings))


@pytest.fixture
def key_store(session_factory: SessionFactory) -> KeyStore:
    return KeyStore(session_factory)


@pytest.fixture
async def key_manager(
    key_store: KeyStore,
    kms: FlakyKms,
    settings: Settings,
    clock: FrozenClock,
) -> AsyncIterator[KeyManager]:
    manager = KeyManager(key_store, kms, settings=settings, clock=clock)
    yield manager
    # Drain near-expiry rotations before the engine is disposed.
    await manager.wait_for_background_tasks()


@pytest.fixture
def rotation_service(key_manager: KeyManager, session_factory: SessionFactory) -> KeyRotationService:
    return KeyRotationService(key_manager, EncryptedRecordStore(session_factory))
