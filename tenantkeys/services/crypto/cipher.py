"""Field-level encrypt/decrypt under a tenant data key.

Stored fields carry a version tag so ciphertext written by an older
algorithm revision stays decryptable after the default moves on.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantkeys.services.crypto.utils import b64decode_str, b64encode_bytes, stable_json


ALGORITHM_AES_256_GCM = "aes-256-gcm"
CURRENT_VERSION = 1
_NONCE_BYTES = 12
# AES-GCM key sizes; data key length follows crypto_data_key_bytes.
_KEY_LENGTHS = frozenset({16, 24, 32})

# Algorithm revisions this module can still decrypt.
_ALGORITHMS: dict[int, str] = {
    1: ALGORITHM_AES_256_GCM,
}


@dataclass(frozen=True)
class EncryptedValue:
    encrypted: str
    version: int
    algorithm: str


@dataclass(frozen=True)
class DecryptedValue:
    plaintext: str


def _check_key(key: bytes) -> None:
    if len(key) not in _KEY_LENGTHS:
        raise ValueError("data key must be 16, 24 or 32 bytes")


def encrypt(plaintext: str | bytes, *, key: bytes) -> EncryptedValue:
    _check_key(key)
    payload = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext_with_tag = AESGCM(key).encrypt(nonce, payload, None)
    return EncryptedValue(
        encrypted=b64encode_bytes(nonce + ciphertext_with_tag),
        version=CURRENT_VERSION,
        algorithm=_ALGORITHMS[CURRENT_VERSION],
    )


def decrypt(encrypted: str, version: int, *, key: bytes) -> DecryptedValue:
    _check_key(key)
    if version not in _ALGORITHMS:
        raise ValueError(f"unsupported ciphertext version: {version}")
    payload = b64decode_str(encrypted)
    if len(payload) <= _NONCE_BYTES:
        raise ValueError("ciphertext is truncated")
    nonce, ciphertext_with_tag = payload[:_NONCE_BYTES], payload[_NONCE_BYTES:]
    plaintext = AESGCM(key).decrypt(nonce, ciphertext_with_tag, None)
    return DecryptedValue(plaintext=plaintext.decode("utf-8"))


def encode_field(value: EncryptedValue) -> str:
    # Column format: {"algorithm": ..., "encrypted": ..., "version": ...}
    return stable_json({"encrypted": value.encrypted, "version": value.version, "algorithm": value.algorithm})


def decode_field(raw: str | dict[str, Any]) -> EncryptedValue:
    data = json.loads(raw) if isinstance(raw, str) else raw
    if not isinstance(data, dict) or "encrypted" not in data:
        raise ValueError("field is not an encrypted envelope")
    version = int(data.get("version", CURRENT_VERSION))
    return EncryptedValue(
        encrypted=str(data["encrypted"]),
        version=version,
        algorithm=str(data.get("algorithm") or _ALGORITHMS.get(version, "")),
    )


def encrypt_field(plaintext: str, *, key: bytes) -> str:
    return encode_field(encrypt(plaintext, key=key))


def decrypt_field(raw: str | dict[str, Any], *, key: bytes) -> str:
    value = decode_field(raw)
    return decrypt(value.encrypted, value.version, key=key).plaintext
