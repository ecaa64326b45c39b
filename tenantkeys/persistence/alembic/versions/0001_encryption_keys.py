"""add tenant encryption key, rotation log and encrypted record tables

Revision ID: 0001_encryption_keys
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_encryption_keys"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Track tenant-scoped data key versions; plaintext keys are never stored.
    op.create_table(
        "encryption_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("kms_key_id", sa.String(), nullable=False),
        sa.Column("encrypted_data_key", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rotated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    )
    op.create_index("ix_encryption_keys_tenant_id", "encryption_keys", ["tenant_id"], unique=False)
    op.create_index(
        "ix_encryption_keys_tenant_version",
        "encryption_keys",
        ["tenant_id", sa.text("version DESC")],
        unique=False,
    )
    op.create_index(
        "ix_encryption_keys_active_expires",
        "encryption_keys",
        ["is_active", "expires_at"],
        unique=False,
    )
    op.create_unique_constraint(
        "uq_encryption_keys_tenant_version",
        "encryption_keys",
        ["tenant_id", "version"],
    )
    # At most one active key per tenant.
    op.create_index(
        "uq_encryption_keys_tenant_active",
        "encryption_keys",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    # Append-only audit trail of create/rotate operations.
    op.create_table(
        "key_rotation_log",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("from_version", sa.Integer(), nullable=True),
        sa.Column("to_version", sa.Integer(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("performed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("performed_by", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    )
    op.create_index("ix_key_rotation_log_tenant_id", "key_rotation_log", ["tenant_id"], unique=False)
    op.create_index("ix_key_rotation_log_operation", "key_rotation_log", ["operation"], unique=False)
    op.create_index("ix_key_rotation_log_performed_at", "key_rotation_log", ["performed_at"], unique=False)
    op.create_index(
        "ix_key_rotation_log_tenant_performed",
        "key_rotation_log",
        ["tenant_id", sa.text("performed_at DESC")],
        unique=False,
    )

    # Tenant tables whose columns hold encrypted field envelopes.
    op.create_table(
        "contacts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("phone_number", sa.Text(), nullable=True),
        sa.Column("whatsapp_id", sa.Text(), nullable=True),
    )
    op.create_index("ix_contacts_organization_id", "contacts", ["organization_id"], unique=False)

    op.create_table(
        "profiles",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
    )
    op.create_index("ix_profiles_organization_id", "profiles", ["organization_id"], unique=False)

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("label", sa.String(), nullable=True),
        sa.Column("key_value", sa.Text(), nullable=True),
        sa.Column("secret", sa.Text(), nullable=True),
    )
    op.create_index("ix_api_keys_organization_id", "api_keys", ["organization_id"], unique=False)

    op.create_table(
        "whatsapp_credentials",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("phone_number_id", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_whatsapp_credentials_organization_id",
        "whatsapp_credentials",
        ["organization_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_whatsapp_credentials_organization_id", table_name="whatsapp_credentials")
    op.drop_table("whatsapp_credentials")
    op.drop_index("ix_api_keys_organization_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_index("ix_profiles_organization_id", table_name="profiles")
    op.drop_table("profiles")
    op.drop_index("ix_contacts_organization_id", table_name="contacts")
    op.drop_table("contacts")

    op.drop_index("ix_key_rotation_log_tenant_performed", table_name="key_rotation_log")
    op.drop_index("ix_key_rotation_log_performed_at", table_name="key_rotation_log")
    op.drop_index("ix_key_rotation_log_operation", table_name="key_rotation_log")
    op.drop_index("ix_key_rotation_log_tenant_id", table_name="key_rotation_log")
    op.drop_table("key_rotation_log")

    op.drop_index("uq_encryption_keys_tenant_active", table_name="encryption_keys")
    op.drop_constraint("uq_encryption_keys_tenant_version", "encryption_keys", type_="unique")
    op.drop_index("ix_encryption_keys_active_expires", table_name="encryption_keys")
    op.drop_index("ix_encryption_keys_tenant_version", table_name="encryption_keys")
    op.drop_index("ix_encryption_keys_tenant_id", table_name="encryption_keys")
    op.drop_table("encryption_keys")

    op.drop_table("organizations")
