from __future__ import annotations

from typing import Any


GET_KEY_FAILED = "GET_KEY_FAILED"
CREATE_KEY_FAILED = "CREATE_KEY_FAILED"
ROTATE_KEY_FAILED = "ROTATE_KEY_FAILED"
BATCH_ROTATION_FAILED = "BATCH_ROTATION_FAILED"
GET_STATS_FAILED = "GET_STATS_FAILED"
GET_HISTORY_FAILED = "GET_HISTORY_FAILED"
ROTATION_WITH_REENCRYPTION_FAILED = "ROTATION_WITH_REENCRYPTION_FAILED"
SCHEDULED_ROTATION_FAILED = "SCHEDULED_ROTATION_FAILED"
REENCRYPTION_FAILED = "REENCRYPTION_FAILED"


class TenantKeysError(Exception):
    """Base error for tenantkeys."""


class KmsError(TenantKeysError):
    """KMS request failure or envelope rejected for the calling tenant."""


class ActiveKeyConflictError(TenantKeysError):
    """Write would leave a tenant with more than one active key, or the key being superseded is no longer active."""


class ConcurrentModificationError(TenantKeysError):
    """Encrypted record changed between read and re-encrypted write-back."""


class KeyManagementError(TenantKeysError):
    """Key lifecycle failure carrying a stable code for callers to branch on."""

    def __init__(
        self,
        message: str,
        code: str,
        *,
        tenant_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.tenant_id = tenant_id
        self.details = details or {}

    def __str__(self) -> str:
        original = self.details.get("original_error")
        if original:
            return f"{self.message}: {original}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "tenant_id": self.tenant_id,
            "details": self.details,
        }


def wrap_key_error(
    message: str,
    code: str,
    exc: BaseException,
    *,
    tenant_id: str | None = None,
    **details: Any,
) -> KeyManagementError:
    # Preserve the original cause text so callers can tell infra failures from logical ones.
    return KeyManagementError(
        message,
        code,
        tenant_id=tenant_id,
        details={**details, "original_error": str(exc), "error_type": type(exc).__name__},
    )
