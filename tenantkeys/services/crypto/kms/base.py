from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class DataKey:
    key_id: str
    plaintext: bytes
    # Envelope persisted alongside the key version; only the KMS can open it.
    ciphertext: str


class KmsClient(Protocol):
    provider: str

    async def generate_data_key(self, tenant_id: str) -> DataKey:
        ...

    async def decrypt_data_key(self, ciphertext: str, tenant_id: str) -> bytes:
        ...
