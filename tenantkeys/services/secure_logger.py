"""Structured security/audit event sink with redaction and PII masking.

Payloads are sanitized before they reach any handler:

* credential-like fields (password, token, secret, ...) and fields whose name
  ends in ``key`` are replaced by ``[REDACTED]``; metadata about keys such as
  ``key_version`` or ``kms_key_id`` stays readable;
* raw ``bytes`` are always redacted;
* email, phone and IP fields are partially masked.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any

from tenantkeys.services.crypto.utils import stable_json


_REDACTED_VALUE = "[REDACTED]"
_SENSITIVE_TOKENS = frozenset(
    {
        "password",
        "passwd",
        "token",
        "secret",
        "credential",
        "credentials",
        "authorization",
        "plaintext",
        "dek",
    }
)
_KEY_SUFFIX_TOKENS = frozenset({"key", "keys"})
_EMAIL_TOKENS = frozenset({"email", "mail"})
_PHONE_TOKENS = frozenset({"phone", "msisdn", "whatsapp", "mobile"})
_IP_TOKENS = frozenset({"ip"})
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


def _tokens(name: str) -> list[str]:
    spaced = _CAMEL_BOUNDARY.sub("_", name)
    return [token for token in _TOKEN_SPLIT.split(spaced.lower()) if token]


def is_sensitive_field(name: str) -> bool:
    tokens = _tokens(name)
    if not tokens:
        return False
    if any(token in _SENSITIVE_TOKENS for token in tokens):
        return True
    return tokens[-1] in _KEY_SUFFIX_TOKENS


def mask_email(value: str) -> str:
    local, separator, domain = value.partition("@")
    if not separator:
        return mask_middle(value)
    return f"{local[:1]}***@{domain}"


def mask_middle(value: str, *, prefix: int = 3, suffix: int = 2) -> str:
    if len(value) <= prefix + suffix:
        return "****"
    return f"{value[:prefix]}****{value[-suffix:]}"


def _mask_pii(name: str, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    tokens = set(_tokens(name))
    if tokens & _EMAIL_TOKENS:
        return mask_email(value)
    if tokens & _PHONE_TOKENS or tokens & _IP_TOKENS:
        return mask_middle(value)
    return value


def sanitize(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _REDACTED_VALUE
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if is_sensitive_field(key) or isinstance(raw_value, (bytes, bytearray, memoryview)):
                sanitized[key] = _REDACTED_VALUE
            elif isinstance(raw_value, (dict, list, tuple)):
                sanitized[key] = sanitize(raw_value)
            else:
                sanitized[key] = _mask_pii(key, raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    return value


class SecureLogger:
    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("tenantkeys.security")

    def _emit(self, level: int, kind: str, record: dict[str, Any]) -> None:
        try:
            self._logger.log(
                level,
                "%s %s",
                kind,
                stable_json(record),
                extra={"security_event": record},
            )
        except Exception:  # noqa: BLE001 - event emission must never break the caller.
            logging.getLogger(__name__).warning("secure_logger_emit_failed kind=%s", kind, exc_info=True)

    def security(
        self,
        event: str,
        data: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        *,
        level: int = logging.WARNING,
    ) -> dict[str, Any]:
        record = {
            "type": "security",
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": sanitize(data or {}),
            "context": sanitize(context or {}),
        }
        self._emit(level, "security_event", record)
        return record

    def audit(
        self,
        event_type: str,
        action: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        record = {
            "type": "audit",
            "event_type": event_type,
            "action": action,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": sanitize(data or {}),
        }
        self._emit(logging.INFO, "audit_event", record)
        return record
