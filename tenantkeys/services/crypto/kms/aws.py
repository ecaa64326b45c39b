from __future__ import annotations

import asyncio
import base64
import binascii
from typing import Any, Final

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from tenantkeys.core.config import Settings, get_settings
from tenantkeys.core.errors import KmsError
from tenantkeys.services.crypto.kms.base import DataKey


class AwsKmsClient:
    """AWS KMS GenerateDataKey/Decrypt with the tenant id as encryption context.

    KMS refuses to decrypt when the encryption context differs, which is what
    keeps one tenant's envelope from opening under another tenant.
    """

    provider: Final[str] = "aws_kms"

    def __init__(self, settings: Settings | None = None, *, client: Any | None = None) -> None:
        self._settings = settings or get_settings()
        if not self._settings.crypto_aws_kms_key_id:
            raise KmsError("CRYPTO_AWS_KMS_KEY_ID is required for the aws_kms provider")
        self._key_id = self._settings.crypto_aws_kms_key_id
        timeout_s = max(1, self._settings.crypto_kms_timeout_ms) / 1000.0
        self._client = client or boto3.client(
            "kms",
            region_name=self._settings.crypto_aws_region,
            config=Config(
                connect_timeout=timeout_s,
                read_timeout=timeout_s,
                retries={"max_attempts": self._settings.crypto_kms_max_attempts, "mode": "standard"},
            ),
        )

    def _context(self, tenant_id: str) -> dict[str, str]:
        return {"tenant_id": tenant_id}

    async def generate_data_key(self, tenant_id: str) -> DataKey:
        try:
            # boto3 is blocking; keep the event loop free while KMS responds.
            resp = await asyncio.to_thread(
                self._client.generate_data_key,
                KeyId=self._key_id,
                NumberOfBytes=self._settings.crypto_data_key_bytes,
                EncryptionContext=self._context(tenant_id),
            )
        except (BotoCoreError, ClientError) as exc:
            raise KmsError(f"KMS generate_data_key failed: {exc}") from exc
        return DataKey(
            key_id=str(resp.get("KeyId") or self._key_id),
            plaintext=resp["Plaintext"],
            ciphertext=base64.b64encode(resp["CiphertextBlob"]).decode("ascii"),
        )

    async def decrypt_data_key(self, ciphertext: str, tenant_id: str) -> bytes:
        try:
            blob = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise KmsError("malformed data key envelope") from exc
        try:
            resp = await asyncio.to_thread(
                self._client.decrypt,
                CiphertextBlob=blob,
                EncryptionContext=self._context(tenant_id),
            )
        except (BotoCoreError, ClientError) as exc:
            raise KmsError(f"KMS decrypt_data_key failed: {exc}") from exc
        return resp["Plaintext"]
