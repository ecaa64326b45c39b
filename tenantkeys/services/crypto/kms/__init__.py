from __future__ import annotations

from typing import Callable

from tenantkeys.core.config import Settings, get_settings
from tenantkeys.services.crypto.kms.aws import AwsKmsClient
from tenantkeys.services.crypto.kms.base import DataKey, KmsClient
from tenantkeys.services.crypto.kms.local import LocalKmsClient


_KMS_PROVIDERS: dict[str, Callable[[Settings], KmsClient]] = {
    "local_kms": LocalKmsClient,
    "aws_kms": AwsKmsClient,
}


def get_kms_client(settings: Settings | None = None) -> KmsClient:
    settings = settings or get_settings()
    provider_name = settings.crypto_kms_provider
    provider_cls = _KMS_PROVIDERS.get(provider_name)
    if provider_cls is None:
        raise ValueError(f"Unsupported KMS provider: {provider_name}")
    return provider_cls(settings)


__all__ = ["AwsKmsClient", "DataKey", "KmsClient", "LocalKmsClient", "get_kms_client"]
