"""Rotation orchestration and re-encryption of stored ciphertext.

After a tenant's key rotates, every registered table is paged through and each
encrypted field is decrypted with the previous key version and re-encrypted
with the new one. Failures are isolated per record; a corrupt row never blocks
the rest of the tenant's data.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from cryptography.exceptions import InvalidTag

from tenantkeys.core.errors import (
    REENCRYPTION_FAILED,
    ROTATION_WITH_REENCRYPTION_FAILED,
    SCHEDULED_ROTATION_FAILED,
    KeyManagementError,
    wrap_key_error,
)
from tenantkeys.persistence.repos.encrypted_records import (
    REENCRYPTION_TABLES,
    EncryptedRecord,
    EncryptedRecordStore,
    get_encrypted_fields,
)
from tenantkeys.persistence.repos.encryption_keys import KeyStore
from tenantkeys.services.crypto.cipher import decode_field, decrypt, encode_field, encrypt
from tenantkeys.services.crypto.key_manager import KeyManager, KeyRotationResult
from tenantkeys.services.secure_logger import SecureLogger
from tenantkeys.services.telemetry import clear_gauge, increment_counter, set_gauge


logger = logging.getLogger(__name__)

ProgressStatus = Literal["pending", "in_progress", "completed", "failed", "cancelled"]
HealthStatus = Literal["EXPIRED", "MISSING", "WARNING", "NOTICE", "HEALTHY"]

_HEALTH_ORDER: dict[str, int] = {"EXPIRED": 0, "MISSING": 1, "WARNING": 2, "NOTICE": 3, "HEALTHY": 4}
_NOTICE_WINDOW = timedelta(days=30)


@dataclass
class ReEncryptionConfig:
    # None falls back to settings; 0 is honoured for batch_delay_ms.
    batch_size: int | None = None
    max_concurrent: int | None = None
    batch_delay_ms: int | None = None
    dry_run: bool = False
    tables: tuple[str, ...] | None = None
    cancel_event: asyncio.Event | None = None


@dataclass
class RecordError:
    record_id: str
    error: str


@dataclass
class ReEncryptionProgress:
    table: str
    started_at: datetime
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    status: ProgressStatus = "pending"
    estimated_completion: datetime | None = None
    completed_at: datetime | None = None
    errors: list[RecordError] = field(default_factory=list)


@dataclass
class RotationWithReEncryptionResult:
    key_rotation: KeyRotationResult
    re_encryption: dict[str, ReEncryptionProgress]
    from_version: int
    to_version: int


@dataclass
class RotationSchedule:
    interval_days: int = 90
    grace_period_days: int = 7
    auto_rotate: bool = True
    # Advisory only; the external scheduler decides when this runs.
    rotation_time: str = "02:00"


@dataclass(frozen=True)
class RotationHealthStats:
    total_tenants: int = 0
    tenants_with_keys: int = 0
    expired_keys: int = 0
    keys_near_expiration: int = 0


@dataclass(frozen=True)
class RotationHealth:
    healthy: bool
    issues: list[str]
    stats: RotationHealthStats


@dataclass(frozen=True)
class TenantKeyHealth:
    tenant_id: str
    tenant_name: str
    current_version: int | None
    key_created_at: datetime | None
    key_expires_at: datetime | None
    days_until_expiration: int | None
    health_status: HealthStatus
    total_rotations: int
    last_rotation_at: datetime | None


@dataclass(frozen=True)
class _KeyPair:
    from_version: int
    to_version: int
    old_key: bytes
    new_key: bytes


def _error_text(exc: BaseException) -> str:
    # InvalidTag carries no message.
    return str(exc) or type(exc).__name__


class KeyRotationService:
    def __init__(
        self,
        key_manager: KeyManager,
        records: EncryptedRecordStore,
        *,
        secure_logger: SecureLogger | None = None,
    ) -> None:
        self._key_manager = key_manager
        self._records = records
        self._secure_logger = secure_logger or SecureLogger()

    @property
    def _store(self) -> KeyStore:
        return self._key_manager.store

    def _resolve_config(self, config: ReEncryptionConfig | None) -> ReEncryptionConfig:
        settings = self._key_manager.settings
        config = config or ReEncryptionConfig()
        return ReEncryptionConfig(
            batch_size=max(1, config.batch_size or settings.crypto_reencrypt_batch_size),
            max_concurrent=max(1, config.max_concurrent or settings.crypto_reencrypt_max_concurrent),
            batch_delay_ms=max(
                0,
                config.batch_delay_ms if config.batch_delay_ms is not None else settings.crypto_reencrypt_batch_delay_ms,
            ),
            dry_run=config.dry_run,
            tables=tuple(config.tables) if config.tables is not None else REENCRYPTION_TABLES,
            cancel_event=config.cancel_event,
        )

    async def rotate_with_re_encryption(
        self,
        tenant_id: str,
        config: ReEncryptionConfig | None = None,
    ) -> RotationWithReEncryptionResult:
        resolved = self._resolve_config(config)
        try:
            logger.info("tenant_key_rotation_started tenant_id=%s dry_run=%s", tenant_id, resolved.dry_run)
            started = time.monotonic()
            rotated = await self._key_manager.rotate_key_with_version(tenant_id)
            key_rotation = KeyRotationResult(
                rotated=1,
                tenant_ids=[tenant_id],
                duration_ms=(time.monotonic() - started) * 1000.0,
            )
            logger.info(
                "tenant_reencryption_started tenant_id=%s from_version=%s to_version=%s",
                tenant_id,
                rotated.from_version,
                rotated.to_version,
            )
            re_encryption = await self.re_encrypt_tenant_data(
                tenant_id,
                resolved,
                from_version=rotated.from_version,
                to_version=rotated.to_version,
            )
        except Exception as exc:
            raise wrap_key_error(
                f"Key rotation with re-encryption failed for tenant {tenant_id}",
                ROTATION_WITH_REENCRYPTION_FAILED,
                exc,
                tenant_id=tenant_id,
                cause_code=getattr(exc, "code", None),
            ) from exc
        return RotationWithReEncryptionResult(
            key_rotation=key_rotation,
            re_encryption=re_encryption,
            from_version=rotated.from_version,
            to_version=rotated.to_version,
        )

    async def re_encrypt_tenant_data(
        self,
        tenant_id: str,
        config: ReEncryptionConfig | None = None,
        *,
        from_version: int | None = None,
        to_version: int | None = None,
    ) -> dict[str, ReEncryptionProgress]:
        """Re-encrypt every registered table from ``from_version`` to ``to_version``.

        Defaults to the active version and the one before it. ``max_concurrent``
        bounds how many tables run at once; pages within a table are sequential.
        """
        resolved = self._resolve_config(config)
        keys = await self._resolve_key_pair(tenant_id, from_version=from_version, to_version=to_version)
        semaphore = asyncio.Semaphore(resolved.max_concurrent or 1)

        async def _run(table: str) -> ReEncryptionProgress:
            async with semaphore:
                return await self._re_encrypt_table(tenant_id, table, keys, resolved)

        tables = list(resolved.tables or ())
        results = await asyncio.gather(*(_run(table) for table in tables))
        progress = dict(zip(tables, results))
        self._secure_logger.audit(
            "encryption_key",
            "reencrypt",
            {
                "tenant_id": tenant_id,
                "from_version": keys.from_version,
                "to_version": keys.to_version,
                "dry_run": resolved.dry_run,
                "tables": {
                    table: {"status": item.status, "successful": item.successful, "failed": item.failed}
                    for table, item in progress.items()
                },
            },
        )
        return progress

    async def _resolve_key_pair(
        self,
        tenant_id: str,
        *,
        from_version: int | None,
        to_version: int | None,
    ) -> _KeyPair:
        try:
            if to_version is None:
                active = await self._key_manager.get_active_key_version(tenant_id)
                if active is None:
                    raise KeyManagementError(
                        f"No active key for tenant {tenant_id}",
                        REENCRYPTION_FAILED,
                        tenant_id=tenant_id,
                    )
                to_version = active.version
            if from_version is None:
                from_version = to_version - 1
            if from_version < 1 or from_version >= to_version:
                raise KeyManagementError(
                    f"No previous key version to re-encrypt from for tenant {tenant_id}",
                    REENCRYPTION_FAILED,
                    tenant_id=tenant_id,
                    details={"from_version": from_version, "to_version": to_version},
                )
            # The old key is usually expired by now; it is only used to decrypt.
            old_key = await self._key_manager.get_encryption_key(
                tenant_id, version=from_version, include_expired=True
            )
            new_key = await self._key_manager.get_encryption_key(tenant_id, version=to_version)
        except KeyManagementError as exc:
            if exc.code == REENCRYPTION_FAILED:
                raise
            raise wrap_key_error(
                f"Failed to load re-encryption keys for tenant {tenant_id}",
                REENCRYPTION_FAILED,
                exc,
                tenant_id=tenant_id,
                cause_code=exc.code,
            ) from exc
        return _KeyPair(from_version=from_version, to_version=to_version, old_key=old_key, new_key=new_key)

    async def _re_encrypt_table(
        self,
        tenant_id: str,
        table: str,
        keys: _KeyPair,
        config: ReEncryptionConfig,
    ) -> ReEncryptionProgress:
        started_at = self._key_manager.now()
        progress = ReEncryptionProgress(table=table, started_at=started_at, status="in_progress")
        fields = get_encrypted_fields(table)
        if not fields:
            progress.status = "completed"
            progress.completed_at = started_at
            return progress

        batch_size = config.batch_size or 1
        batch_delay_ms = config.batch_delay_ms or 0
        gauge = f"reencryption_progress_percent.{tenant_id}.{table}"
        try:
            progress.total = await self._records.count(table, tenant_id)
            if progress.total == 0:
                progress.status = "completed"
                progress.completed_at = self._key_manager.now()
                return progress

            if batch_delay_ms > 0:
                records_per_second = batch_size / (batch_delay_ms / 1000.0)
                progress.estimated_completion = started_at + timedelta(
                    seconds=progress.total / records_per_second
                )

            offset = 0
            while offset < progress.total:
                if config.cancel_event is not None and config.cancel_event.is_set():
                    progress.status = "cancelled"
                    logger.warning(
                        "tenant_reencryption_cancelled tenant_id=%s table=%s processed=%s total=%s",
                        tenant_id,
                        table,
                        progress.processed,
                        progress.total,
                    )
                    break
                batch = await self._records.fetch_batch(table, tenant_id, offset=offset, limit=batch_size)
                if not batch:
                    break
                await self._process_batch(tenant_id, table, batch, fields, keys, config, progress)
                progress.batches += 1
                offset += batch_size
                set_gauge(gauge, progress.processed / max(progress.total, 1) * 100.0)
                if batch_delay_ms > 0 and offset < progress.total:
                    await asyncio.sleep(batch_delay_ms / 1000.0)
            if progress.status == "in_progress":
                progress.status = "completed"
        except Exception as exc:
            progress.status = "failed"
            progress.errors.append(RecordError(record_id="batch", error=_error_text(exc)))
            logger.error("tenant_reencryption_table_failed tenant_id=%s table=%s", tenant_id, table, exc_info=exc)
        finally:
            # Progress gauges only exist while a table is being worked.
            clear_gauge(gauge)
        progress.completed_at = self._key_manager.now()
        return progress

    async def _process_batch(
        self,
        tenant_id: str,
        table: str,
        batch: list[EncryptedRecord],
        fields: tuple[str, ...],
        keys: _KeyPair,
        config: ReEncryptionConfig,
        progress: ReEncryptionProgress,
    ) -> None:
        for record in batch:
            try:
                updates = self._re_encrypt_fields(record, fields, keys)
                if updates and not config.dry_run:
                    await self._records.replace_fields(
                        table,
                        tenant_id,
                        record.id,
                        expected={name: record.fields[name] for name in updates},
                        updates=updates,
                    )
                if not updates:
                    progress.skipped += 1
                progress.successful += 1
                increment_counter("reencrypted_records_total")
            except Exception as exc:  # noqa: BLE001 - one bad record must not stop the batch.
                progress.failed += 1
                progress.errors.append(RecordError(record_id=record.id, error=_error_text(exc)))
                increment_counter("reencryption_failures_total")
                logger.warning(
                    "record_reencryption_failed tenant_id=%s table=%s record_id=%s error=%s",
                    tenant_id,
                    table,
                    record.id,
                    _error_text(exc),
                )
            progress.processed += 1

    def _re_encrypt_fields(
        self,
        record: EncryptedRecord,
        fields: tuple[str, ...],
        keys: _KeyPair,
    ) -> dict[str, Any]:
        updates: dict[str, Any] = {}
        for name in fields:
            raw = record.fields.get(name)
            if not raw:
                continue
            envelope = decode_field(raw)
            try:
                plaintext = decrypt(envelope.encrypted, envelope.version, key=keys.old_key).plaintext
            except (InvalidTag, ValueError):
                # Already under the new key (an earlier run was interrupted): nothing to do.
                if self._decrypts_with(envelope.encrypted, envelope.version, keys.new_key):
                    continue
                raise
            updates[name] = encode_field(encrypt(plaintext, key=keys.new_key))
        return updates

    @staticmethod
    def _decrypts_with(encrypted: str, version: int, key: bytes) -> bool:
        try:
            decrypt(encrypted, version, key=key)
        except (InvalidTag, ValueError):
            return False
        return True

    async def schedule_automatic_rotation(self, schedule: RotationSchedule | None = None) -> KeyRotationResult:
        settings = self._key_manager.settings
        config = schedule or RotationSchedule(
            interval_days=settings.crypto_rotation_interval_days,
            grace_period_days=settings.crypto_rotation_warning_days,
            auto_rotate=settings.crypto_auto_rotate,
            rotation_time=settings.crypto_rotation_time,
        )
        if not config.auto_rotate:
            logger.info("scheduled_key_rotation_disabled")
            return KeyRotationResult()

        logger.info("scheduled_key_rotation_check_started")
        started = time.monotonic()
        try:
            threshold_days = config.interval_days - config.grace_period_days
            if threshold_days <= 0:
                raise ValueError("grace_period_days must be smaller than interval_days")
            tenant_ids = await self._key_manager.get_tenants_needing_rotation(
                warning_window=timedelta(days=config.grace_period_days),
                min_key_age=timedelta(days=threshold_days),
            )
            if not tenant_ids:
                logger.info("scheduled_key_rotation_idle no tenants need rotation")
                return KeyRotationResult(duration_ms=(time.monotonic() - started) * 1000.0)
            logger.info("scheduled_key_rotation_tenants count=%s", len(tenant_ids))
            result = await self._key_manager.rotate_tenants(tenant_ids, started=started)
        except Exception as exc:
            logger.error("scheduled_key_rotation_failed", exc_info=exc)
            raise wrap_key_error(
                "Scheduled key rotation failed",
                SCHEDULED_ROTATION_FAILED,
                exc,
                schedule={
                    "interval_days": config.interval_days,
                    "grace_period_days": config.grace_period_days,
                    "rotation_time": config.rotation_time,
                },
            ) from exc
        logger.info(
            "scheduled_key_rotation_completed rotated=%s failed=%s",
            result.rotated,
            result.failed,
        )
        if result.failed:
            self._secure_logger.security(
                "scheduled_key_rotation_partial_failure",
                {"rotated": result.rotated, "failed": result.failed, "tenant_ids": [e.tenant_id for e in result.errors]},
            )
        return result

    async def get_rotation_health(self) -> RotationHealth:
        # Diagnostic only: reports gaps, never repairs them.
        issues: list[str] = []
        try:
            total_tenants = await self._store.count_tenants()
            active_keys = await self._store.list_active_keys()
        except Exception as exc:  # noqa: BLE001
            logger.warning("key_rotation_health_check_failed", exc_info=exc)
            issues.append(f"Health check failed: {_error_text(exc)}")
            return RotationHealth(healthy=False, issues=issues, stats=RotationHealthStats())

        now = self._key_manager.now()
        warning_cutoff = now + self._key_manager.warning_window
        tenants_with_keys = len({key.tenant_id for key in active_keys})
        expired_keys = sum(1 for key in active_keys if self._key_manager.is_key_expired(key.expires_at, now))
        keys_near_expiration = sum(1 for key in active_keys if now < key.expires_at <= warning_cutoff)

        if expired_keys > 0:
            issues.append(f"{expired_keys} expired keys found")
        if keys_near_expiration > self._key_manager.settings.crypto_health_backlog_threshold:
            issues.append(f"{keys_near_expiration} keys approaching expiration")
        if total_tenants and tenants_with_keys < total_tenants:
            issues.append(f"{total_tenants - tenants_with_keys} tenants missing encryption keys")

        return RotationHealth(
            healthy=not issues,
            issues=issues,
            stats=RotationHealthStats(
                total_tenants=total_tenants,
                tenants_with_keys=tenants_with_keys,
                expired_keys=expired_keys,
                keys_near_expiration=keys_near_expiration,
            ),
        )

    async def list_tenant_key_health(self) -> list[TenantKeyHealth]:
        now = self._key_manager.now()
        rows = await self._store.list_tenant_key_rows()
        result: list[TenantKeyHealth] = []
        for row in rows:
            key = row.active_key
            if key is None:
                status: HealthStatus = "MISSING"
                days_left = None
            else:
                days_left = int((key.expires_at - now).total_seconds() / 86400)
                if self._key_manager.is_key_expired(key.expires_at, now):
                    status = "EXPIRED"
                elif key.expires_at <= now + self._key_manager.warning_window:
                    status = "WARNING"
                elif key.expires_at <= now + _NOTICE_WINDOW:
                    status = "NOTICE"
                else:
                    status = "HEALTHY"
            result.append(
                TenantKeyHealth(
                    tenant_id=row.tenant_id,
                    tenant_name=row.tenant_name,
                    current_version=key.version if key else None,
                    key_created_at=key.created_at if key else None,
                    key_expires_at=key.expires_at if key else None,
                    days_until_expiration=days_left,
                    health_status=status,
                    total_rotations=row.total_rotations,
                    last_rotation_at=row.last_rotation_at,
                )
            )
        result.sort(
            key=lambda item: (
                _HEALTH_ORDER[item.health_status],
                item.key_expires_at is None,
                item.key_expires_at or now,
            )
        )
        return result
