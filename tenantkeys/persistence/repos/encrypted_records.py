from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select, update

from tenantkeys.core.errors import ConcurrentModificationError
from tenantkeys.domain.models import ApiKey, Base, Contact, Profile, WhatsappCredential
from tenantkeys.persistence.db import SessionFactory


# Tables re-encrypted on rotation, in processing order.
REENCRYPTION_TABLES: tuple[str, ...] = ("contacts", "profiles", "api_keys", "whatsapp_credentials")

ENCRYPTED_FIELDS: dict[str, tuple[str, ...]] = {
    "contacts": ("phone_number", "whatsapp_id"),
    "profiles": ("email",),
    "api_keys": ("key_value", "secret"),
    "whatsapp_credentials": ("access_token", "phone_number_id"),
}

_TABLE_MODELS: dict[str, type[Base]] = {
    "contacts": Contact,
    "profiles": Profile,
    "api_keys": ApiKey,
    "whatsapp_credentials": WhatsappCredential,
}


@dataclass(frozen=True)
class EncryptedRecord:
    id: str
    fields: dict[str, Any]


def get_encrypted_fields(table: str) -> tuple[str, ...]:
    return ENCRYPTED_FIELDS.get(table, ())


def _model_for(table: str) -> Any:
    model = _TABLE_MODELS.get(table)
    if model is None:
        raise ValueError(f"Unsupported encrypted table: {table}")
    return model


class EncryptedRecordStore:
    """Tenant-scoped paging and write-back over tables holding ciphertext columns."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def count(self, table: str, tenant_id: str) -> int:
        model = _model_for(table)
        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(model).where(model.organization_id == tenant_id)
            )
        return int(total or 0)

    async def fetch_batch(self, table: str, tenant_id: str, *, offset: int, limit: int) -> list[EncryptedRecord]:
        # Stable id ordering keeps offset paging consistent while rows are rewritten in place.
        model = _model_for(table)
        fields = get_encrypted_fields(table)
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(model)
                    .where(model.organization_id == tenant_id)
                    .order_by(model.id.asc())
                    .offset(offset)
                    .limit(limit)
                )
            ).scalars().all()
        return [
            EncryptedRecord(id=row.id, fields={field: getattr(row, field) for field in fields})
            for row in rows
        ]

    async def replace_fields(
        self,
        table: str,
        tenant_id: str,
        record_id: str,
        *,
        expected: dict[str, Any],
        updates: dict[str, Any],
    ) -> None:
        """Write ``updates`` only if the stored values still equal ``expected``."""
        model = _model_for(table)
        conditions = [model.id == record_id, model.organization_id == tenant_id]
        conditions.extend(getattr(model, field) == expected[field] for field in updates)
        async with self._session_factory() as session:
            result = await session.execute(update(model).where(*conditions).values(**updates))
            if result.rowcount != 1:
                await session.rollback()
                raise ConcurrentModificationError(f"record {record_id} in {table} changed during re-encryption")
            await session.commit()
