from __future__ import annotations

import hashlib
import hmac
import os
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantkeys.core.config import Settings, get_settings
from tenantkeys.core.errors import KmsError
from tenantkeys.services.crypto.kms.base import DataKey
from tenantkeys.services.crypto.utils import b64decode_str, b64encode_bytes, decode_key_material


class LocalKmsClient:
    """Envelope KMS backed by a local master key, for development and tests.

    Envelopes look like ``<alias>:<base64(nonce + wrapped key)>`` and are bound
    to the tenant through both the derived KEK and the AEAD associated data, so
    an envelope presented under another tenant fails to open.
    """

    provider: Final[str] = "local_kms"

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._master_key = _load_master_key(self._settings)

    def _key_id(self, key_alias: str) -> str:
        return f"local://{key_alias}"

    async def generate_data_key(self, tenant_id: str) -> DataKey:
        key_alias = self._settings.crypto_default_key_alias
        dek = os.urandom(self._settings.crypto_data_key_bytes)
        kek = _derive_kek(self._master_key, tenant_id=tenant_id, key_alias=key_alias)
        nonce = os.urandom(12)
        wrapped = AESGCM(kek).encrypt(nonce, dek, _aad(tenant_id, key_alias))
        return DataKey(
            key_id=self._key_id(key_alias),
            plaintext=dek,
            ciphertext=f"{key_alias}:{b64encode_bytes(nonce + wrapped)}",
        )

    async def decrypt_data_key(self, ciphertext: str, tenant_id: str) -> bytes:
        key_alias, separator, blob = ciphertext.rpartition(":")
        if not separator or not key_alias:
            raise KmsError("malformed data key envelope")
        try:
            payload = b64decode_str(blob)
        except ValueError as exc:
            raise KmsError("malformed data key envelope") from exc
        if len(payload) <= 12:
            raise KmsError("malformed data key envelope")
        nonce, wrapped = payload[:12], payload[12:]
        kek = _derive_kek(self._master_key, tenant_id=tenant_id, key_alias=key_alias)
        try:
            return AESGCM(kek).decrypt(nonce, wrapped, _aad(tenant_id, key_alias))
        except InvalidTag as exc:
            raise KmsError(f"data key envelope rejected for tenant {tenant_id}") from exc


def _aad(tenant_id: str, key_alias: str) -> bytes:
    return f"{tenant_id}:{key_alias}".encode("utf-8")


def _load_master_key(settings: Settings) -> bytes:
    if settings.crypto_local_master_key:
        return _ensure_32_bytes(decode_key_material(settings.crypto_local_master_key))
    # Deterministic fallback for dev/test to avoid breaking local workflows.
    seed = f"{settings.app_name}-local-kms".encode("utf-8")
    return hashlib.sha256(seed).digest()


def _derive_kek(master_key: bytes, *, tenant_id: str, key_alias: str) -> bytes:
    # HMAC-based derivation keeps KEKs deterministic without persisting key material.
    message = f"{tenant_id}:{key_alias}".encode("utf-8")
    return hmac.new(master_key, message, hashlib.sha256).digest()


def _ensure_32_bytes(value: bytes) -> bytes:
    if len(value) == 32:
        return value
    return hashlib.sha256(value).digest()
