from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from tenantkeys.core.config import Settings, get_settings
from tenantkeys.persistence.db import SessionFactory, build_engine, build_session_factory
from tenantkeys.persistence.repos.encrypted_records import EncryptedRecordStore
from tenantkeys.persistence.repos.encryption_keys import KeyStore
from tenantkeys.services.crypto.key_manager import (
    Clock,
    KeyManager,
    KeyRotationResult,
    KeyStats,
    RotatedKey,
    RotationError,
)
from tenantkeys.services.crypto.key_rotation import (
    KeyRotationService,
    ReEncryptionConfig,
    ReEncryptionProgress,
    RotationHealth,
    RotationSchedule,
    RotationWithReEncryptionResult,
    TenantKeyHealth,
)
from tenantkeys.services.crypto.kms import KmsClient, get_kms_client
from tenantkeys.services.secure_logger import SecureLogger


@dataclass(frozen=True)
class KeyServices:
    key_manager: KeyManager
    rotation: KeyRotationService
    # Set only when build_key_services created the engine itself.
    engine: AsyncEngine | None = None

    async def aclose(self) -> None:
        await self.key_manager.wait_for_background_tasks()
        if self.engine is not None:
            await self.engine.dispose()


def build_key_services(
    settings: Settings | None = None,
    *,
    session_factory: SessionFactory | None = None,
    kms: KmsClient | None = None,
    clock: Clock | None = None,
) -> KeyServices:
    # One instance per application context; the key cache lives on the KeyManager.
    settings = settings or get_settings()
    engine = None
    if session_factory is None:
        engine = build_engine(settings)
        session_factory = build_session_factory(engine)
    secure_logger = SecureLogger()
    key_manager = KeyManager(
        KeyStore(session_factory),
        kms or get_kms_client(settings),
        settings=settings,
        secure_logger=secure_logger,
        clock=clock,
    )
    rotation = KeyRotationService(
        key_manager,
        EncryptedRecordStore(session_factory),
        secure_logger=secure_logger,
    )
    return KeyServices(key_manager=key_manager, rotation=rotation, engine=engine)


__all__ = [
    "KeyManager",
    "KeyRotationResult",
    "KeyRotationService",
    "KeyServices",
    "KeyStats",
    "ReEncryptionConfig",
    "ReEncryptionProgress",
    "RotatedKey",
    "RotationError",
    "RotationHealth",
    "RotationSchedule",
    "RotationWithReEncryptionResult",
    "TenantKeyHealth",
    "build_key_services",
]
