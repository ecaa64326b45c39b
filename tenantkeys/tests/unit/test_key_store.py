from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from tenantkeys.core.errors import ActiveKeyConflictError
from tenantkeys.domain.models import EncryptionKey
from tenantkeys.persistence.repos.encryption_keys import KeyStore
from tenantkeys.tests.utils.keys import add_organization


NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def _insert(store: KeyStore, tenant_id: str, *, created_at: datetime = NOW, days: int = 90):
    return await store.insert_active_key(
        tenant_id=tenant_id,
        kms_key_id="local://tenant-data-key",
        encrypted_data_key=f"envelope-{tenant_id}",
        created_at=created_at,
        expires_at=created_at + timedelta(days=days),
    )


@pytest.mark.asyncio
async def test_insert_and_rotate_keep_single_active_version(key_store: KeyStore) -> None:
    first = await _insert(key_store, "org-1")
    assert first.version == 1
    assert first.is_active
    assert first.expires_at == NOW + timedelta(days=90)

    with pytest.raises(ActiveKeyConflictError):
        await _insert(key_store, "org-1")

    second = await key_store.rotate_active_key(
        tenant_id="org-1",
        from_key_id=first.id,
        kms_key_id="local://tenant-data-key",
        encrypted_data_key="envelope-2",
        rotated_at=NOW + timedelta(days=1),
        expires_at=NOW + timedelta(days=91),
    )
    assert second.version == 2

    history = await key_store.list_key_history("org-1")
    assert [key.version for key in history] == [2, 1]
    assert [key.is_active for key in history] == [True, False]
    assert history[1].rotated_at == NOW + timedelta(days=1)
    assert (await key_store.get_active_key("org-1")).version == 2
    # Superseded versions stay retrievable for decrypting old ciphertext.
    assert (await key_store.get_key_version("org-1", 1)).encrypted_data_key == "envelope-org-1"
    assert await key_store.get_next_version("org-1") == 3


@pytest.mark.asyncio
async def test_rotate_rejects_stale_active_key(key_store: KeyStore) -> None:
    first = await _insert(key_store, "org-1")
    await key_store.rotate_active_key(
        tenant_id="org-1",
        from_key_id=first.id,
        kms_key_id="k",
        encrypted_data_key="envelope-2",
        rotated_at=NOW,
        expires_at=NOW + timedelta(days=90),
    )
    with pytest.raises(ActiveKeyConflictError):
        await key_store.rotate_active_key(
            tenant_id="org-1",
            from_key_id=first.id,
            kms_key_id="k",
            encrypted_data_key="envelope-3",
            rotated_at=NOW,
            expires_at=NOW + timedelta(days=90),
        )
    # The failed attempt rolled back completely.
    assert [key.version for key in await key_store.list_key_history("org-1")] == [2, 1]


@pytest.mark.asyncio
async def test_database_rejects_second_active_key(key_store: KeyStore, session_factory) -> None:
    await _insert(key_store, "org-1")
    async with session_factory() as session:
        session.add(
            EncryptionKey(
                tenant_id="org-1",
                kms_key_id="k",
                encrypted_data_key="rogue",
                version=2,
                is_active=True,
                created_at=NOW,
                expires_at=NOW + timedelta(days=90),
            )
        )
        with pytest.raises(IntegrityError):
            await session.commit()


@pytest.mark.asyncio
async def test_tenants_needing_rotation_orders_by_urgency(key_store: KeyStore) -> None:
    await _insert(key_store, "org-late", days=5)
    await _insert(key_store, "org-expired", days=-1)
    await _insert(key_store, "org-fresh", days=80)
    await _insert(key_store, "org-old", created_at=NOW - timedelta(days=85), days=120)

    due = await key_store.list_tenants_needing_rotation(expires_before=NOW + timedelta(days=7))
    assert due == ["org-expired", "org-late"]

    aged = await key_store.list_tenants_needing_rotation(
        expires_before=NOW + timedelta(days=7),
        created_before=NOW - timedelta(days=83),
    )
    assert aged == ["org-expired", "org-late", "org-old"]


@pytest.mark.asyncio
async def test_rotation_log_is_listed_newest_first(key_store: KeyStore) -> None:
    for offset, operation in enumerate(["create", "rotate", "rotate"]):
        await key_store.append_rotation_log(
            tenant_id="org-1",
            operation=operation,
            from_version=offset or None,
            to_version=offset + 1,
            success=True,
            performed_at=NOW + timedelta(minutes=offset),
        )
    entries = await key_store.list_rotation_log("org-1", limit=2)
    assert [entry.to_version for entry in entries] == [3, 2]
    assert entries[0].performed_at == NOW + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_tenant_key_rows_include_tenants_without_keys(key_store: KeyStore, session_factory) -> None:
    await add_organization(session_factory, "org-a", "Alpha")
    await add_organization(session_factory, "org-b", "Beta")
    await _insert(key_store, "org-a")
    await key_store.append_rotation_log(
        tenant_id="org-a",
        operation="rotate",
        from_version=1,
        to_version=2,
        success=True,
        performed_at=NOW,
    )
    await key_store.append_rotation_log(
        tenant_id="org-a",
        operation="rotate",
        from_version=1,
        to_version=None,
        success=False,
        performed_at=NOW,
    )
    rows = {row.tenant_id: row for row in await key_store.list_tenant_key_rows()}
    assert rows["org-a"].tenant_name == "Alpha"
    assert rows["org-a"].active_key.version == 1
    assert rows["org-a"].total_rotations == 1
    assert rows["org-a"].last_rotation_at == NOW
    assert rows["org-b"].active_key is None
    assert rows["org-b"].total_rotations == 0
    assert await key_store.count_tenants() == 2
