from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere (sqlite test databases).
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _uuid_str() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    # Tenants are organizations; every key and encrypted row is scoped by this id.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EncryptionKey(Base):
    __tablename__ = "encryption_keys"
    __table_args__ = (
        UniqueConstraint("tenant_id", "version", name="uq_encryption_keys_tenant_version"),
        # At most one active key per tenant, enforced by the database.
        Index(
            "uq_encryption_keys_tenant_active",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_encryption_keys_tenant_version", "tenant_id", text("version DESC")),
        Index("ix_encryption_keys_active_expires", "is_active", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Master key that wrapped this data key; the plaintext data key is never stored.
    kms_key_id: Mapped[str] = mapped_column(String)
    encrypted_data_key: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Set only when a newer version supersedes this one.
    rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)


class KeyRotationLog(Base):
    __tablename__ = "key_rotation_log"
    __table_args__ = (
        Index("ix_key_rotation_log_tenant_performed", "tenant_id", text("performed_at DESC")),
    )

    # Append-only audit trail; rows are never updated or deleted.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    operation: Mapped[str] = mapped_column(String, index=True)
    from_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    to_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    performed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Encrypted field envelopes (JSON text) under the tenant data key.
    phone_number: Mapped[str | None] = mapped_column(Text, nullable=True)
    whatsapp_id: Mapped[str | None] = mapped_column(Text, nullable=True)


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    full_name: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    key_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    secret: Mapped[str | None] = mapped_column(Text, nullable=True)


class WhatsappCredential(Base):
    __tablename__ = "whatsapp_credentials"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid_str)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone_number_id: Mapped[str | None] = mapped_column(Text, nullable=True)
