from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
import json
import sys
from typing import Any

from tenantkeys.core.config import get_settings
from tenantkeys.core.logging import configure_logging
from tenantkeys.services.crypto import KeyServices, ReEncryptionConfig, build_key_services


def _build_parser() -> argparse.ArgumentParser:
    # Default to the scheduled run so cron invocations need no flags.
    parser = argparse.ArgumentParser(description="Rotate tenant data encryption keys")
    parser.add_argument("--tenant-id", help="rotate one tenant now instead of running the schedule")
    parser.add_argument(
        "--no-reencrypt",
        action="store_true",
        help="rotate the key only; leave existing ciphertext under the previous version",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="rotate the key but only count re-encryption work; ciphertext is left unchanged",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="rows per re-encryption page")
    parser.add_argument("--batch-delay-ms", type=int, default=None, help="pause between re-encryption pages")
    return parser


async def _rotate_tenant(services: KeyServices, args: argparse.Namespace) -> dict[str, Any]:
    if args.no_reencrypt:
        rotated = await services.key_manager.rotate_key_with_version(args.tenant_id)
        return {
            "mode": "tenant",
            "tenant_id": args.tenant_id,
            "from_version": rotated.from_version,
            "to_version": rotated.to_version,
            "re_encryption": None,
        }
    result = await services.rotation.rotate_with_re_encryption(
        args.tenant_id,
        ReEncryptionConfig(
            batch_size=args.batch_size,
            batch_delay_ms=args.batch_delay_ms,
            dry_run=args.dry_run,
        ),
    )
    return {
        "mode": "tenant",
        "tenant_id": args.tenant_id,
        "from_version": result.from_version,
        "to_version": result.to_version,
        "key_rotation": asdict(result.key_rotation),
        "re_encryption": {table: asdict(progress) for table, progress in result.re_encryption.items()},
    }


async def run_rotation(args: argparse.Namespace, *, services: KeyServices | None = None) -> int:
    services = services or build_key_services(get_settings())
    try:
        if args.tenant_id:
            report = await _rotate_tenant(services, args)
            failed = any(
                progress["status"] != "completed" or progress["failed"]
                for progress in (report.get("re_encryption") or {}).values()
            )
        else:
            result = await services.rotation.schedule_automatic_rotation()
            report = {"mode": "scheduled", **asdict(result)}
            failed = result.failed > 0
    finally:
        await services.aclose()
    print(json.dumps(report, indent=2, sort_keys=True, default=str))
    return 1 if failed else 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(run_rotation(args))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"rotate_tenant_keys failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
