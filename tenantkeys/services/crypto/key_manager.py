"""Tenant data key lifecycle: issuance, caching, expiry detection and rotation.

Read path is cache -> key store -> KMS. Expiry is checked on every store read,
so an expired tenant self-heals on its next access even if the external
scheduler never runs.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from tenantkeys.core.config import Settings, get_settings
from tenantkeys.core.errors import (
    BATCH_ROTATION_FAILED,
    CREATE_KEY_FAILED,
    GET_HISTORY_FAILED,
    GET_KEY_FAILED,
    GET_STATS_FAILED,
    ROTATE_KEY_FAILED,
    KeyManagementError,
    wrap_key_error,
)
from tenantkeys.persistence.repos.encryption_keys import KeyStore, KeyVersion, RotationLogEntry
from tenantkeys.services.crypto.kms.base import KmsClient
from tenantkeys.services.secure_logger import SecureLogger
from tenantkeys.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

OPERATION_CREATE = "create"
OPERATION_ROTATE = "rotate"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RotationError:
    tenant_id: str
    error: str


@dataclass
class KeyRotationResult:
    rotated: int = 0
    failed: int = 0
    tenant_ids: list[str] = field(default_factory=list)
    errors: list[RotationError] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass(frozen=True)
class KeyStats:
    total_keys: int
    active_keys: int
    expired_keys: int
    pending_rotation: int
    average_key_age: float


@dataclass(frozen=True)
class RotatedKey:
    from_version: int
    to_version: int
    key: bytes


@dataclass
class _CachedKey:
    key: bytes
    version: int
    cached_at: datetime


class KeyManager:
    def __init__(
        self,
        store: KeyStore,
        kms: KmsClient,
        *,
        settings: Settings | None = None,
        secure_logger: SecureLogger | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._kms = kms
        self._settings = settings or get_settings()
        self._secure_logger = secure_logger or SecureLogger()
        self._clock = clock or _utc_now
        self._cache: dict[str, _CachedKey] = {}
        # Bumped on every invalidation so in-flight reads cannot re-cache a superseded key.
        self._cache_generation: dict[str, int] = defaultdict(int)
        # Locks drop out once no caller holds or waits on them.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._background: dict[str, asyncio.Task[None]] = {}

    @property
    def store(self) -> KeyStore:
        return self._store

    @property
    def settings(self) -> Settings:
        return self._settings

    def now(self) -> datetime:
        return self._clock()

    @property
    def rotation_period(self) -> timedelta:
        return timedelta(days=self._settings.crypto_rotation_interval_days)

    @property
    def warning_window(self) -> timedelta:
        return timedelta(days=self._settings.crypto_rotation_warning_days)

    def is_key_expired(self, expires_at: datetime, now: datetime | None = None) -> bool:
        # A key expiring exactly now is already expired.
        return (now or self.now()) >= expires_at

    def is_key_near_expiration(self, expires_at: datetime, now: datetime | None = None) -> bool:
        return expires_at <= (now or self.now()) + self.warning_window

    async def get_encryption_key(
        self,
        tenant_id: str,
        *,
        force_refresh: bool = False,
        include_expired: bool = False,
        version: int | None = None,
    ) -> bytes:
        """Return the tenant's plaintext data key, creating or rotating it as needed.

        With ``version`` the plaintext of that specific stored version is
        returned instead (active or not, never cached); expired versions are
        only handed out when ``include_expired`` is set.
        """
        try:
            if version is not None:
                return await self._get_key_for_version(tenant_id, version, include_expired=include_expired)

            if not force_refresh:
                cached = self._get_cached_key(tenant_id)
                if cached is not None:
                    increment_counter("key_cache_hits_total")
                    return cached
            increment_counter("key_cache_misses_total")

            generation = self._cache_generation[tenant_id]
            key_version = await self._store.get_active_key(tenant_id)

            if key_version is None:
                async with self._tenant_lock(tenant_id):
                    key_version = await self._store.get_active_key(tenant_id)
                    if key_version is None:
                        return await self._create_key(tenant_id)

            if self.is_key_expired(key_version.expires_at):
                logger.warning(
                    "tenant_key_expired tenant_id=%s version=%s, rotating",
                    tenant_id,
                    key_version.version,
                )
                async with self._tenant_lock(tenant_id):
                    current = await self._store.get_active_key(tenant_id)
                    if current is None:
                        return await self._create_key(tenant_id)
                    if self.is_key_expired(current.expires_at):
                        return (await self._rotate_key(tenant_id, current)).key
                    # Another caller rotated while we waited for the lock.
                    key_version = current
                    generation = self._cache_generation[tenant_id]

            plaintext = await self._kms.decrypt_data_key(key_version.encrypted_data_key, tenant_id)
            increment_counter("kms_decrypt_total")
            self._cache_key(tenant_id, plaintext, key_version.version, generation=generation)

            if self.is_key_near_expiration(key_version.expires_at):
                logger.info(
                    "tenant_key_near_expiration tenant_id=%s version=%s expires_at=%s",
                    tenant_id,
                    key_version.version,
                    key_version.expires_at.isoformat(),
                )
                self._schedule_background_rotation(tenant_id, key_version.version)

            return plaintext
        except KeyManagementError as exc:
            if exc.code == GET_KEY_FAILED:
                raise
            raise wrap_key_error(
                f"Failed to get encryption key for tenant {tenant_id}",
                GET_KEY_FAILED,
                exc,
                tenant_id=tenant_id,
                cause_code=exc.code,
            ) from exc
        except Exception as exc:
            raise wrap_key_error(
                f"Failed to get encryption key for tenant {tenant_id}",
                GET_KEY_FAILED,
                exc,
                tenant_id=tenant_id,
            ) from exc

    async def get_active_key_version(self, tenant_id: str) -> KeyVersion | None:
        return await self._store.get_active_key(tenant_id)

    async def _get_key_for_version(self, tenant_id: str, version: int, *, include_expired: bool) -> bytes:
        key_version = await self._store.get_key_version(tenant_id, version)
        if key_version is None:
            raise KeyManagementError(
                f"Key version {version} not found for tenant {tenant_id}",
                GET_KEY_FAILED,
                tenant_id=tenant_id,
                details={"version": version},
            )
        if not include_expired and self.is_key_expired(key_version.expires_at):
            raise KeyManagementError(
                f"Key version {version} for tenant {tenant_id} has expired",
                GET_KEY_FAILED,
                tenant_id=tenant_id,
                details={"version": version, "expires_at": key_version.expires_at.isoformat()},
            )
        plaintext = await self._kms.decrypt_data_key(key_version.encrypted_data_key, tenant_id)
        increment_counter("kms_decrypt_total")
        return plaintext

    async def create_key(self, tenant_id: str) -> bytes:
        async with self._tenant_lock(tenant_id):
            return await self._create_key(tenant_id)

    async def _create_key(self, tenant_id: str) -> bytes:
        # Caller holds the tenant lock.
        version: int | None = None
        try:
            data_key = await self._kms.generate_data_key(tenant_id)
            now = self.now()
            created = await self._store.insert_active_key(
                tenant_id=tenant_id,
                kms_key_id=data_key.key_id,
                encrypted_data_key=data_key.ciphertext,
                created_at=now,
                expires_at=now + self.rotation_period,
            )
            version = created.version
        except Exception as exc:
            increment_counter("key_create_failures_total")
            await self._log_key_operation(
                OPERATION_CREATE,
                tenant_id,
                from_version=None,
                to_version=version,
                success=False,
                error=exc,
            )
            self._secure_logger.security(
                "tenant_key_create_failed",
                {"tenant_id": tenant_id, "error": str(exc)},
            )
            raise wrap_key_error(
                f"Failed to create key for tenant {tenant_id}",
                CREATE_KEY_FAILED,
                exc,
                tenant_id=tenant_id,
            ) from exc

        await self._log_key_operation(
            OPERATION_CREATE,
            tenant_id,
            from_version=None,
            to_version=created.version,
            success=True,
        )
        self._secure_logger.audit(
            "encryption_key",
            OPERATION_CREATE,
            {
                "tenant_id": tenant_id,
                "key_version": created.version,
                "kms_key_id": created.kms_key_id,
                "expires_at": created.expires_at.isoformat(),
            },
        )
        increment_counter("keys_created_total")
        self._cache_key(tenant_id, data_key.plaintext, created.version)
        return data_key.plaintext

    async def rotate_key(self, tenant_id: str) -> bytes:
        return (await self.rotate_key_with_version(tenant_id)).key

    async def rotate_key_with_version(self, tenant_id: str) -> RotatedKey:
        """Rotate like :meth:`rotate_key` and report which versions were swapped."""
        async with self._tenant_lock(tenant_id):
            current = await self._load_active_for_rotation(tenant_id)
            return await self._rotate_key(tenant_id, current)

    async def _load_active_for_rotation(self, tenant_id: str) -> KeyVersion:
        try:
            current = await self._store.get_active_key(tenant_id)
        except Exception as exc:
            raise wrap_key_error(
                f"Failed to rotate key for tenant {tenant_id}",
                ROTATE_KEY_FAILED,
                exc,
                tenant_id=tenant_id,
            ) from exc
        if current is None:
            # Caller error: nothing to rotate, create a key first.
            raise KeyManagementError(
                f"Failed to rotate key for tenant {tenant_id}",
                ROTATE_KEY_FAILED,
                tenant_id=tenant_id,
                details={"original_error": "No active key found to rotate", "retryable": False},
            )
        return current

    async def _rotate_key(self, tenant_id: str, current: KeyVersion) -> RotatedKey:
        # Caller holds the tenant lock. The new envelope is minted before any write,
        # and deactivate + insert commit together, so a failure leaves the old key active.
        try:
            data_key = await self._kms.generate_data_key(tenant_id)
            now = self.now()
            created = await self._store.rotate_active_key(
                tenant_id=tenant_id,
                from_key_id=current.id,
                kms_key_id=data_key.key_id,
                encrypted_data_key=data_key.ciphertext,
                rotated_at=now,
                expires_at=now + self.rotation_period,
            )
        except Exception as exc:
            increment_counter("key_rotation_failures_total")
            await self._log_key_operation(
                OPERATION_ROTATE,
                tenant_id,
                from_version=current.version,
                to_version=None,
                success=False,
                error=exc,
            )
            self._secure_logger.security(
                "tenant_key_rotation_failed",
                {"tenant_id": tenant_id, "from_version": current.version, "error": str(exc)},
            )
            raise wrap_key_error(
                f"Failed to rotate key for tenant {tenant_id}",
                ROTATE_KEY_FAILED,
                exc,
                tenant_id=tenant_id,
                from_version=current.version,
            ) from exc

        await self._log_key_operation(
            OPERATION_CREATE,
            tenant_id,
            from_version=None,
            to_version=created.version,
            success=True,
        )
        await self._log_key_operation(
            OPERATION_ROTATE,
            tenant_id,
            from_version=current.version,
            to_version=created.version,
            success=True,
        )
        self._secure_logger.audit(
            "encryption_key",
            OPERATION_ROTATE,
            {
                "tenant_id": tenant_id,
                "from_version": current.version,
                "to_version": created.version,
                "kms_key_id": created.kms_key_id,
            },
        )
        increment_counter("key_rotations_total")
        self.clear_cache(tenant_id)
        self._cache_key(tenant_id, data_key.plaintext, created.version)
        return RotatedKey(from_version=current.version, to_version=created.version, key=data_key.plaintext)

    async def rotate_keys(self, tenant_id: str | None = None) -> KeyRotationResult:
        started = time.monotonic()
        try:
            tenant_ids = [tenant_id] if tenant_id else await self.get_tenants_needing_rotation()
        except Exception as exc:
            raise wrap_key_error(
                "Batch key rotation failed",
                BATCH_ROTATION_FAILED,
                exc,
                duration_ms=(time.monotonic() - started) * 1000.0,
            ) from exc
        return await self.rotate_tenants(tenant_ids, started=started)

    async def rotate_tenants(self, tenant_ids: list[str], *, started: float | None = None) -> KeyRotationResult:
        """Rotate each tenant independently, in concurrent batches with all-settled semantics."""
        started = started if started is not None else time.monotonic()
        result = KeyRotationResult()
        batch_size = max(1, self._settings.crypto_rotation_batch_size)
        for offset in range(0, len(tenant_ids), batch_size):
            batch = tenant_ids[offset : offset + batch_size]
            outcomes = await asyncio.gather(
                *(self.rotate_key(tid) for tid in batch),
                return_exceptions=True,
            )
            for tid, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    result.failed += 1
                    result.errors.append(RotationError(tenant_id=tid, error=str(outcome)))
                    logger.warning("tenant_key_rotation_failed tenant_id=%s", tid, exc_info=outcome)
                else:
                    result.rotated += 1
                    result.tenant_ids.append(tid)
        result.duration_ms = (time.monotonic() - started) * 1000.0
        set_gauge("key_rotation_last_batch_failed", float(result.failed))
        return result

    async def schedule_rotation(self) -> KeyRotationResult:
        # Entry point for an external scheduler; this class never schedules itself.
        started = time.monotonic()
        try:
            tenant_ids = await self.get_tenants_needing_rotation()
        except Exception as exc:
            logger.error("key_rotation_schedule_failed", exc_info=exc)
            raise wrap_key_error("Failed to schedule key rotation", BATCH_ROTATION_FAILED, exc) from exc
        if not tenant_ids:
            logger.info("key_rotation_schedule_idle no tenants need rotation")
            return KeyRotationResult(duration_ms=(time.monotonic() - started) * 1000.0)
        logger.info("key_rotation_schedule_started tenants=%s", len(tenant_ids))
        result = await self.rotate_tenants(tenant_ids, started=started)
        logger.info(
            "key_rotation_schedule_completed rotated=%s failed=%s duration_ms=%.1f",
            result.rotated,
            result.failed,
            result.duration_ms,
        )
        return result

    async def get_tenants_needing_rotation(
        self,
        *,
        warning_window: timedelta | None = None,
        min_key_age: timedelta | None = None,
    ) -> list[str]:
        now = self.now()
        window = warning_window if warning_window is not None else self.warning_window
        return await self._store.list_tenants_needing_rotation(
            expires_before=now + window,
            created_before=now - min_key_age if min_key_age is not None else None,
        )

    async def get_key_stats(self, tenant_id: str | None = None) -> KeyStats:
        try:
            keys = await self._store.list_keys(tenant_id)
        except Exception as exc:
            raise wrap_key_error(
                "Failed to get key statistics",
                GET_STATS_FAILED,
                exc,
                tenant_id=tenant_id,
            ) from exc
        now = self.now()
        warning_cutoff = now + self.warning_window
        average_age = 0.0
        if keys:
            total_age_s = sum((now - key.created_at).total_seconds() for key in keys)
            average_age = total_age_s / len(keys) / 86400.0
        return KeyStats(
            total_keys=len(keys),
            active_keys=sum(1 for key in keys if key.is_active),
            expired_keys=sum(1 for key in keys if self.is_key_expired(key.expires_at, now)),
            pending_rotation=sum(
                1 for key in keys if key.is_active and now < key.expires_at <= warning_cutoff
            ),
            average_key_age=average_age,
        )

    async def get_key_history(self, tenant_id: str) -> list[KeyVersion]:
        try:
            return await self._store.list_key_history(tenant_id)
        except Exception as exc:
            raise wrap_key_error(
                f"Failed to get key history for tenant {tenant_id}",
                GET_HISTORY_FAILED,
                exc,
                tenant_id=tenant_id,
            ) from exc

    async def get_rotation_log(self, tenant_id: str, *, limit: int = 100) -> list[RotationLogEntry]:
        try:
            return await self._store.list_rotation_log(tenant_id, limit=limit)
        except Exception as exc:
            raise wrap_key_error(
                f"Failed to get rotation log for tenant {tenant_id}",
                GET_HISTORY_FAILED,
                exc,
                tenant_id=tenant_id,
            ) from exc

    def clear_cache(self, tenant_id: str | None = None) -> None:
        if tenant_id is not None:
            self._cache.pop(tenant_id, None)
            self._cache_generation[tenant_id] += 1
            return
        self._cache.clear()
        for key in list(self._cache_generation):
            self._cache_generation[key] += 1

    async def wait_for_background_tasks(self) -> None:
        """Wait until pending background rotations finish (tests, graceful shutdown)."""
        while self._background:
            await asyncio.gather(*list(self._background.values()), return_exceptions=True)

    def _schedule_background_rotation(self, tenant_id: str, seen_version: int) -> None:
        existing = self._background.get(tenant_id)
        if existing is not None and not existing.done():
            return
        task = asyncio.create_task(self._rotate_in_background(tenant_id, seen_version))
        self._background[tenant_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._background.get(tenant_id) is done:
                self._background.pop(tenant_id, None)

        task.add_done_callback(_forget)

    async def _rotate_in_background(self, tenant_id: str, seen_version: int) -> None:
        # Fire-and-forget: failures are logged and dropped, never surfaced to the reader.
        try:
            async with self._tenant_lock(tenant_id):
                current = await self._store.get_active_key(tenant_id)
                if current is None or current.version != seen_version:
                    return
                if not self.is_key_near_expiration(current.expires_at):
                    return
                await self._rotate_key(tenant_id, current)
            logger.info("tenant_key_background_rotation_completed tenant_id=%s", tenant_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("tenant_key_background_rotation_failed tenant_id=%s", tenant_id, exc_info=exc)
            self._secure_logger.security(
                "tenant_key_background_rotation_failed",
                {"tenant_id": tenant_id, "from_version": seen_version, "error": str(exc)},
            )

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    def _cache_key(self, tenant_id: str, key: bytes, version: int, *, generation: int | None = None) -> None:
        if generation is not None and generation != self._cache_generation[tenant_id]:
            return
        self._cache[tenant_id] = _CachedKey(key=bytes(key), version=version, cached_at=self.now())

    def _get_cached_key(self, tenant_id: str) -> bytes | None:
        cached = self._cache.get(tenant_id)
        if cached is None:
            return None
        age_s = (self.now() - cached.cached_at).total_seconds()
        if age_s > self._settings.crypto_key_cache_ttl_s:
            self._cache.pop(tenant_id, None)
            return None
        return bytes(cached.key)

    async def _log_key_operation(
        self,
        operation: str,
        tenant_id: str,
        *,
        from_version: int | None,
        to_version: int | None,
        success: bool,
        error: BaseException | None = None,
    ) -> None:
        # Best-effort: an audit write failure never fails the key operation it describes.
        try:
            await self._store.append_rotation_log(
                tenant_id=tenant_id,
                operation=operation,
                from_version=from_version,
                to_version=to_version,
                success=success,
                error_message=str(error) if error is not None else None,
                performed_at=self.now(),
            )
        except Exception as exc:
            logger.warning(
                "key_rotation_log_write_failed tenant_id=%s operation=%s",
                tenant_id,
                operation,
                exc_info=exc,
            )
