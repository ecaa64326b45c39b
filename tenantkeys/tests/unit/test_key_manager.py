from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from tenantkeys.core.errors import (
    CREATE_KEY_FAILED,
    GET_HISTORY_FAILED,
    GET_KEY_FAILED,
    ROTATE_KEY_FAILED,
    KeyManagementError,
)
from tenantkeys.persistence.repos.encryption_keys import KeyStore
from tenantkeys.services.crypto.key_manager import KeyManager
from tenantkeys.services.telemetry import counters_snapshot
from tenantkeys.tests.utils.keys import FlakyKms, FrozenClock, set_active_key_expiry


@pytest.mark.asyncio
async def test_first_access_creates_version_one(key_manager: KeyManager, key_store: KeyStore, clock: FrozenClock) -> None:
    key = await key_manager.get_encryption_key("org-1")
    assert isinstance(key, bytes)
    assert len(key) == 32

    active = await key_store.get_active_key("org-1")
    assert active.version == 1
    assert active.is_active
    assert active.rotated_at is None
    assert active.expires_at == clock() + timedelta(days=90)

    log = await key_manager.get_rotation_log("org-1")
    assert [(entry.operation, entry.to_version, entry.success) for entry in log] == [("create", 1, True)]


@pytest.mark.asyncio
async def test_cached_key_is_served_without_kms(key_manager: KeyManager, kms: FlakyKms) -> None:
    first = await key_manager.get_encryption_key("org-1")
    decrypts = kms.decrypt_calls
    assert await key_manager.get_encryption_key("org-1") == first
    assert kms.decrypt_calls == decrypts
    assert counters_snapshot()["key_cache_hits_total"] == 1


@pytest.mark.asyncio
async def test_cache_entry_older_than_ttl_is_not_served(
    key_manager: KeyManager,
    kms: FlakyKms,
    clock: FrozenClock,
) -> None:
    first = await key_manager.get_encryption_key("org-1")
    clock.advance(seconds=3600)
    assert await key_manager.get_encryption_key("org-1") == first
    assert kms.decrypt_calls == 0

    clock.advance(seconds=1)
    assert await key_manager.get_encryption_key("org-1") == first
    assert kms.decrypt_calls == 1


@pytest.mark.asyncio
async def test_force_refresh_bypasses_cache(key_manager: KeyManager, kms: FlakyKms) -> None:
    first = await key_manager.get_encryption_key("org-1")
    assert await key_manager.get_encryption_key("org-1", force_refresh=True) == first
    assert kms.decrypt_calls == 1


@pytest.mark.asyncio
async def test_near_expiry_key_is_returned_and_rotated_in_background(
    key_manager: KeyManager,
    key_store: KeyStore,
    session_factory,
    clock: FrozenClock,
) -> None:
    original = await key_manager.get_encryption_key("org-1")
    await set_active_key_expiry(session_factory, "org-1", clock() + timedelta(days=3))
    key_manager.clear_cache("org-1")

    returned = await key_manager.get_encryption_key("org-1")
    assert returned == original

    await key_manager.wait_for_background_tasks()
    active = await key_store.get_active_key("org-1")
    assert active.version == 2
    assert (await key_store.get_key_version("org-1", 1)).is_active is False
    assert await key_manager.get_encryption_key("org-1") != original


@pytest.mark.asyncio
async def test_background_rotation_failure_is_not_surfaced(
    key_manager: KeyManager,
    key_store: KeyStore,
    kms: FlakyKms,
    session_factory,
    clock: FrozenClock,
) -> None:
    original = await key_manager.get_encryption_key("org-1")
    await set_active_key_expiry(session_factory, "org-1", clock() + timedelta(days=3))
    key_manager.clear_cache("org-1")
    clock.advance(seconds=1)
    kms.failing_generate.add("org-1")

    assert await key_manager.get_encryption_key("org-1") == original
    await key_manager.wait_for_background_tasks()

    active = await key_store.get_active_key("org-1")
    assert active.version == 1
    log = await key_manager.get_rotation_log("org-1")
    assert log[0].operation == "rotate"
    assert log[0].success is False


@pytest.mark.asyncio
async def test_expired_key_is_rotated_synchronously(
    key_manager: KeyManager,
    key_store: KeyStore,
    session_factory,
    clock: FrozenClock,
) -> None:
    original = await key_manager.get_encryption_key("org-1")
    await set_active_key_expiry(session_factory, "org-1", clock() - timedelta(days=1))
    key_manager.clear_cache("org-1")

    returned = await key_manager.get_encryption_key("org-1")
    assert returned != original

    history = await key_manager.get_key_history("org-1")
    assert [key.version for key in history] == [2, 1]
    assert history[0].is_active
    assert history[1].is_active is False
    assert history[1].rotated_at == clock()


@pytest.mark.asyncio
async def test_key_expiring_exactly_now_is_expired(
    key_manager: KeyManager,
    key_store: KeyStore,
    session_factory,
    clock: FrozenClock,
) -> None:
    original = await key_manager.get_encryption_key("org-1")
    await set_active_key_expiry(session_factory, "org-1", clock())
    key_manager.clear_cache("org-1")

    assert key_manager.is_key_expired(clock())
    assert await key_manager.get_encryption_key("org-1") != original
    assert (await key_store.get_active_key("org-1")).version == 2


@pytest.mark.asyncio
async def test_rotate_key_invalidates_cache_and_logs_both_steps(
    key_manager: KeyManager,
    kms: FlakyKms,
) -> None:
    original = await key_manager.get_encryption_key("org-1")
    rotated = await key_manager.rotate_key_with_version("org-1")
    assert (rotated.from_version, rotated.to_version) == (1, 2)
    assert rotated.key != original

    # The new key is served from cache; the superseded key is gone.
    decrypts = kms.decrypt_calls
    assert await key_manager.get_encryption_key("org-1") == rotated.key
    assert kms.decrypt_calls == decrypts

    operations = [(entry.operation, entry.from_version, entry.to_version) for entry in await key_manager.get_rotation_log("org-1")]
    assert ("rotate", 1, 2) in operations
    assert ("create", None, 2) in operations


@pytest.mark.asyncio
async def test_old_version_stays_retrievable_after_rotation(
    key_manager: KeyManager,
    clock: FrozenClock,
) -> None:
    original = await key_manager.get_encryption_key("org-1")
    await key_manager.rotate_key("org-1")
    assert await key_manager.get_encryption_key("org-1", version=1) == original

    clock.advance(days=100)
    with pytest.raises(KeyManagementError) as exc_info:
        await key_manager.get_encryption_key("org-1", version=1)
    assert exc_info.value.code == GET_KEY_FAILED
    assert await key_manager.get_encryption_key("org-1", version=1, include_expired=True) == original

    with pytest.raises(KeyManagementError):
        await key_manager.get_encryption_key("org-1", version=9, include_expired=True)


@pytest.mark.asyncio
async def test_rotate_without_active_key_is_caller_error(key_manager: KeyManager, kms: FlakyKms) -> None:
    with pytest.raises(KeyManagementError) as exc_info:
        await key_manager.rotate_key("org-missing")
    assert exc_info.value.code == ROTATE_KEY_FAILED
    assert "No active key found to rotate" in str(exc_info.value)
    assert kms.generate_calls == 0


@pytest.mark.asyncio
async def test_failed_rotation_leaves_previous_key_active(
    key_manager: KeyManager,
    key_store: KeyStore,
    kms: FlakyKms,
    clock: FrozenClock,
) -> None:
    original = await key_manager.get_encryption_key("org-1")
    clock.advance(seconds=1)
    kms.failing_generate.add("org-1")

    with pytest.raises(KeyManagementError) as exc_info:
        await key_manager.rotate_key("org-1")
    assert exc_info.value.code == ROTATE_KEY_FAILED
    assert "kms unavailable" in exc_info.value.details["original_error"]

    active = await key_store.get_active_key("org-1")
    assert active.version == 1
    assert await key_manager.get_encryption_key("org-1", force_refresh=True) == original
    log = await key_manager.get_rotation_log("org-1")
    assert (log[0].operation, log[0].success) == ("rotate", False)


@pytest.mark.asyncio
async def test_create_failure_records_unsuccessful_audit_entry(key_manager: KeyManager, kms: FlakyKms) -> None:
    kms.failing_generate.add("org-1")
    with pytest.raises(KeyManagementError) as exc_info:
        await key_manager.create_key("org-1")
    assert exc_info.value.code == CREATE_KEY_FAILED

    log = await key_manager.get_rotation_log("org-1")
    assert [(entry.operation, entry.success) for entry in log] == [("create", False)]


@pytest.mark.asyncio
async def test_get_key_wraps_kms_failures(key_manager: KeyManager, kms: FlakyKms) -> None:
    await key_manager.get_encryption_key("org-1")
    key_manager.clear_cache()
    kms.failing_decrypt.add("org-1")
    with pytest.raises(KeyManagementError) as exc_info:
        await key_manager.get_encryption_key("org-1")
    assert exc_info.value.code == GET_KEY_FAILED
    assert exc_info.value.tenant_id == "org-1"


@pytest.mark.asyncio
async def test_versions_are_gapless_under_concurrent_access(key_manager: KeyManager, key_store: KeyStore) -> None:
    keys = await asyncio.gather(*(key_manager.get_encryption_key("org-1") for _ in range(5)))
    assert len(set(keys)) == 1
    for _ in range(3):
        await key_manager.rotate_key("org-1")
    history = await key_store.list_key_history("org-1")
    assert [key.version for key in history] == [4, 3, 2, 1]
    assert sum(1 for key in history if key.is_active) == 1


@pytest.mark.asyncio
async def test_audit_log_failure_does_not_fail_key_creation(
    key_manager: KeyManager,
    key_store: KeyStore,
    monkeypatch,
) -> None:
    async def _broken_log(**kwargs):
        raise OperationalError("INSERT INTO key_rotation_log", {}, Exception("disk full"))

    monkeypatch.setattr(key_store, "append_rotation_log", _broken_log)
    key = await key_manager.get_encryption_key("org-1")
    assert len(key) == 32
    assert (await key_store.get_active_key("org-1")).version == 1


@pytest.mark.asyncio
async def test_unreachable_audit_log_never_masks_key_operations(
    key_manager: KeyManager,
    key_store: KeyStore,
    kms: FlakyKms,
    monkeypatch,
) -> None:
    async def _unreachable_log(**kwargs):
        raise ConnectionRefusedError("log db down")

    monkeypatch.setattr(key_store, "append_rotation_log", _unreachable_log)
    await key_manager.create_key("org-1")
    rotated = await key_manager.rotate_key_with_version("org-1")
    assert (rotated.from_version, rotated.to_version) == (1, 2)
    assert (await key_store.get_active_key("org-1")).version == 2

    kms.failing_generate.add("org-2")
    with pytest.raises(KeyManagementError) as create_error:
        await key_manager.create_key("org-2")
    assert create_error.value.code == CREATE_KEY_FAILED

    kms.failing_generate.add("org-1")
    with pytest.raises(KeyManagementError) as rotate_error:
        await key_manager.rotate_key("org-1")
    assert rotate_error.value.code == ROTATE_KEY_FAILED
    assert (await key_store.get_active_key("org-1")).version == 2


@pytest.mark.asyncio
async def test_tenant_locks_are_released_after_use(key_manager: KeyManager) -> None:
    await key_manager.create_key("org-1")
    await key_manager.rotate_key("org-1")
    assert "org-1" not in key_manager._locks


@pytest.mark.asyncio
async def test_rotate_keys_isolates_tenant_failures(
    key_manager: KeyManager,
    key_store: KeyStore,
    kms: FlakyKms,
) -> None:
    for tenant_id in ("org-1", "org-2", "org-3"):
        await key_manager.create_key(tenant_id)
    kms.failing_generate.add("org-2")

    result = await key_manager.rotate_tenants(["org-1", "org-2", "org-3"])
    assert result.rotated == 2
    assert result.failed == 1
    assert result.tenant_ids == ["org-1", "org-3"]
    assert result.errors[0].tenant_id == "org-2"
    assert "kms unavailable" in result.errors[0].error

    assert (await key_store.get_active_key("org-1")).version == 2
    assert (await key_store.get_active_key("org-2")).version == 1
    assert (await key_store.get_active_key("org-3")).version == 2


@pytest.mark.asyncio
async def test_rotate_keys_selects_due_tenants(
    key_manager: KeyManager,
    key_store: KeyStore,
    session_factory,
    clock: FrozenClock,
) -> None:
    for tenant_id in ("org-due", "org-expired", "org-fresh"):
        await key_manager.create_key(tenant_id)
    await set_active_key_expiry(session_factory, "org-due", clock() + timedelta(days=2))
    await set_active_key_expiry(session_factory, "org-expired", clock() - timedelta(days=2))

    assert await key_manager.get_tenants_needing_rotation() == ["org-expired", "org-due"]
    result = await key_manager.rotate_keys()
    assert sorted(result.tenant_ids) == ["org-due", "org-expired"]
    assert (await key_store.get_active_key("org-fresh")).version == 1

    single = await key_manager.rotate_keys("org-fresh")
    assert single.rotated == 1
    assert (await key_store.get_active_key("org-fresh")).version == 2


@pytest.mark.asyncio
async def test_schedule_rotation_batches_all_due_tenants(
    key_store: KeyStore,
    kms: FlakyKms,
    settings,
    session_factory,
    clock: FrozenClock,
) -> None:
    manager = KeyManager(
        key_store,
        kms,
        settings=settings.model_copy(update={"crypto_rotation_batch_size": 2}),
        clock=clock,
    )
    tenants = [f"org-{index}" for index in range(5)]
    for tenant_id in tenants:
        await manager.create_key(tenant_id)
        await set_active_key_expiry(session_factory, tenant_id, clock() + timedelta(days=1))

    result = await manager.schedule_rotation()
    assert result.rotated == 5
    assert result.failed == 0
    for tenant_id in tenants:
        assert (await key_store.get_active_key(tenant_id)).version == 2

    idle = await manager.schedule_rotation()
    assert idle.rotated == 0


@pytest.mark.asyncio
async def test_key_stats(key_manager: KeyManager, session_factory, clock: FrozenClock) -> None:
    await key_manager.create_key("org-1")
    await key_manager.create_key("org-2")
    await key_manager.rotate_key("org-1")
    await set_active_key_expiry(session_factory, "org-2", clock() + timedelta(days=3))
    clock.advance(days=10)

    stats = await key_manager.get_key_stats()
    assert stats.total_keys == 3
    assert stats.active_keys == 2
    assert stats.expired_keys == 1
    assert stats.pending_rotation == 0
    assert stats.average_key_age == pytest.approx(10.0)

    per_tenant = await key_manager.get_key_stats("org-1")
    assert per_tenant.total_keys == 2
    assert per_tenant.expired_keys == 0


@pytest.mark.asyncio
async def test_history_read_failures_are_wrapped(key_manager: KeyManager, key_store: KeyStore, monkeypatch) -> None:
    async def _broken(tenant_id):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(key_store, "list_key_history", _broken)
    with pytest.raises(KeyManagementError) as exc_info:
        await key_manager.get_key_history("org-1")
    assert exc_info.value.code == GET_HISTORY_FAILED
