from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantkeys.core.errors import ActiveKeyConflictError
from tenantkeys.domain.models import EncryptionKey, KeyRotationLog, Organization
from tenantkeys.persistence.db import SessionFactory


@dataclass(frozen=True)
class KeyVersion:
    id: str
    tenant_id: str
    kms_key_id: str
    encrypted_data_key: str
    version: int
    is_active: bool
    created_at: datetime
    expires_at: datetime
    rotated_at: datetime | None = None


@dataclass(frozen=True)
class RotationLogEntry:
    id: str
    tenant_id: str
    operation: str
    from_version: int | None
    to_version: int | None
    success: bool
    error_message: str | None
    performed_at: datetime
    performed_by: str | None = None


@dataclass(frozen=True)
class TenantKeyRow:
    tenant_id: str
    tenant_name: str
    active_key: KeyVersion | None
    total_rotations: int
    last_rotation_at: datetime | None


def as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round-trip; every stored timestamp is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_key_version(row: EncryptionKey) -> KeyVersion:
    return KeyVersion(
        id=row.id,
        tenant_id=row.tenant_id,
        kms_key_id=row.kms_key_id,
        encrypted_data_key=row.encrypted_data_key,
        version=row.version,
        is_active=bool(row.is_active),
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        rotated_at=as_utc(row.rotated_at) if row.rotated_at is not None else None,
    )


def _to_log_entry(row: KeyRotationLog) -> RotationLogEntry:
    return RotationLogEntry(
        id=row.id,
        tenant_id=row.tenant_id,
        operation=row.operation,
        from_version=row.from_version,
        to_version=row.to_version,
        success=bool(row.success),
        error_message=row.error_message,
        performed_at=as_utc(row.performed_at),
        performed_by=row.performed_by,
    )


async def _next_version(session: AsyncSession, tenant_id: str) -> int:
    current = await session.scalar(
        select(func.max(EncryptionKey.version)).where(EncryptionKey.tenant_id == tenant_id)
    )
    return int(current or 0) + 1


class KeyStore:
    """Durable key versions and the rotation audit log.

    Every call opens its own session so reads always observe the latest
    committed state, including a deactivation committed by a concurrent
    rotation.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get_active_key(self, tenant_id: str) -> KeyVersion | None:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(EncryptionKey)
                    .where(EncryptionKey.tenant_id == tenant_id, EncryptionKey.is_active.is_(True))
                    .order_by(EncryptionKey.version.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        return _to_key_version(row) if row is not None else None

    async def get_key_version(self, tenant_id: str, version: int) -> KeyVersion | None:
        # Inactive versions stay retrievable so old ciphertext remains decryptable.
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(EncryptionKey).where(
                        EncryptionKey.tenant_id == tenant_id,
                        EncryptionKey.version == version,
                    )
                )
            ).scalar_one_or_none()
        return _to_key_version(row) if row is not None else None

    async def get_next_version(self, tenant_id: str) -> int:
        async with self._session_factory() as session:
            return await _next_version(session, tenant_id)

    async def insert_active_key(
        self,
        *,
        tenant_id: str,
        kms_key_id: str,
        encrypted_data_key: str,
        created_at: datetime,
        expires_at: datetime,
    ) -> KeyVersion:
        async with self._session_factory() as session:
            existing = await session.scalar(
                select(func.count())
                .select_from(EncryptionKey)
                .where(EncryptionKey.tenant_id == tenant_id, EncryptionKey.is_active.is_(True))
            )
            if existing:
                raise ActiveKeyConflictError(f"tenant {tenant_id} already has an active key")
            row = EncryptionKey(
                tenant_id=tenant_id,
                kms_key_id=kms_key_id,
                encrypted_data_key=encrypted_data_key,
                version=await _next_version(session, tenant_id),
                is_active=True,
                created_at=created_at,
                expires_at=expires_at,
            )
            session.add(row)
            await session.commit()
            return _to_key_version(row)

    async def rotate_active_key(
        self,
        *,
        tenant_id: str,
        from_key_id: str,
        kms_key_id: str,
        encrypted_data_key: str,
        rotated_at: datetime,
        expires_at: datetime,
    ) -> KeyVersion:
        """Deactivate ``from_key_id`` and insert the next active version in one transaction."""
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    update(EncryptionKey)
                    .where(
                        EncryptionKey.id == from_key_id,
                        EncryptionKey.tenant_id == tenant_id,
                        EncryptionKey.is_active.is_(True),
                    )
                    .values(is_active=False, rotated_at=rotated_at)
                )
                if result.rowcount != 1:
                    raise ActiveKeyConflictError(
                        f"key {from_key_id} is no longer the active key for tenant {tenant_id}"
                    )
                # Flush the deactivation before the insert so the partial unique index holds.
                await session.flush()
                row = EncryptionKey(
                    tenant_id=tenant_id,
                    kms_key_id=kms_key_id,
                    encrypted_data_key=encrypted_data_key,
                    version=await _next_version(session, tenant_id),
                    is_active=True,
                    created_at=rotated_at,
                    expires_at=expires_at,
                )
                session.add(row)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            return _to_key_version(row)

    async def list_key_history(self, tenant_id: str) -> list[KeyVersion]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(EncryptionKey)
                    .where(EncryptionKey.tenant_id == tenant_id)
                    .order_by(EncryptionKey.version.desc())
                )
            ).scalars().all()
        return [_to_key_version(row) for row in rows]

    async def list_keys(self, tenant_id: str | None = None) -> list[KeyVersion]:
        query = select(EncryptionKey)
        if tenant_id is not None:
            query = query.where(EncryptionKey.tenant_id == tenant_id)
        async with self._session_factory() as session:
            rows = (await session.execute(query.order_by(EncryptionKey.tenant_id, EncryptionKey.version))).scalars().all()
        return [_to_key_version(row) for row in rows]

    async def list_active_keys(self) -> list[KeyVersion]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(EncryptionKey)
                    .where(EncryptionKey.is_active.is_(True))
                    .order_by(EncryptionKey.expires_at.asc())
                )
            ).scalars().all()
        return [_to_key_version(row) for row in rows]

    async def list_tenants_needing_rotation(
        self,
        *,
        expires_before: datetime,
        created_before: datetime | None = None,
    ) -> list[str]:
        # Active keys expiring at/before the threshold, or older than the age cutoff.
        condition = EncryptionKey.expires_at <= expires_before
        if created_before is not None:
            condition = or_(condition, EncryptionKey.created_at <= created_before)
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(EncryptionKey.tenant_id)
                    .where(EncryptionKey.is_active.is_(True), condition)
                    .order_by(EncryptionKey.expires_at.asc())
                )
            ).scalars().all()
        # Preserve most-urgent-first ordering while de-duplicating.
        return list(dict.fromkeys(rows))

    async def count_tenants(self) -> int:
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(Organization))
        return int(total or 0)

    async def append_rotation_log(
        self,
        *,
        tenant_id: str,
        operation: str,
        from_version: int | None,
        to_version: int | None,
        success: bool,
        performed_at: datetime,
        error_message: str | None = None,
        performed_by: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RotationLogEntry:
        async with self._session_factory() as session:
            row = KeyRotationLog(
                tenant_id=tenant_id,
                operation=operation,
                from_version=from_version,
                to_version=to_version,
                success=success,
                error_message=error_message,
                performed_at=performed_at,
                performed_by=performed_by,
                metadata_json=metadata or {},
            )
            session.add(row)
            await session.commit()
            return _to_log_entry(row)

    async def list_rotation_log(self, tenant_id: str, *, limit: int = 100) -> list[RotationLogEntry]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(KeyRotationLog)
                    .where(KeyRotationLog.tenant_id == tenant_id)
                    .order_by(KeyRotationLog.performed_at.desc(), KeyRotationLog.id.desc())
                    .limit(max(1, min(limit, 1000)))
                )
            ).scalars().all()
        return [_to_log_entry(row) for row in rows]

    async def list_tenant_key_rows(self) -> list[TenantKeyRow]:
        # One row per organization with its active key (if any) and rotation counters.
        async with self._session_factory() as session:
            organizations = (await session.execute(select(Organization).order_by(Organization.id))).scalars().all()
            active_rows = (
                await session.execute(select(EncryptionKey).where(EncryptionKey.is_active.is_(True)))
            ).scalars().all()
            rotation_rows = (
                await session.execute(
                    select(
                        KeyRotationLog.tenant_id,
                        func.count(KeyRotationLog.id),
                        func.max(KeyRotationLog.performed_at),
                    )
                    .where(KeyRotationLog.operation == "rotate", KeyRotationLog.success.is_(True))
                    .group_by(KeyRotationLog.tenant_id)
                )
            ).all()
        active_by_tenant = {row.tenant_id: _to_key_version(row) for row in active_rows}
        rotations = {
            tenant_id: (int(count or 0), as_utc(last) if last is not None else None)
            for tenant_id, count, last in rotation_rows
        }
        result: list[TenantKeyRow] = []
        for organization in organizations:
            total_rotations, last_rotation_at = rotations.get(organization.id, (0, None))
            result.append(
                TenantKeyRow(
                    tenant_id=organization.id,
                    tenant_name=organization.name,
                    active_key=active_by_tenant.get(organization.id),
                    total_rotations=total_rotations,
                    last_rotation_at=last_rotation_at,
                )
            )
        return result
