from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
import json
import sys

from tenantkeys.core.config import get_settings
from tenantkeys.core.logging import configure_logging
from tenantkeys.services.crypto import KeyServices, build_key_services


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Report tenant key rotation health")
    parser.add_argument("--tenants", action="store_true", help="include the per-tenant key listing")
    parser.add_argument("--output-json", help="also write the report to this path")
    return parser


async def run_health(
    *,
    include_tenants: bool,
    output_json: str | None = None,
    services: KeyServices | None = None,
) -> int:
    # Diagnostic only; exit status 1 lets cron/alerting flag an unhealthy fleet.
    services = services or build_key_services(get_settings())
    try:
        health = await services.rotation.get_rotation_health()
        report: dict[str, object] = asdict(health)
        if include_tenants:
            report["tenants"] = [asdict(item) for item in await services.rotation.list_tenant_key_health()]
    finally:
        await services.aclose()
    rendered = json.dumps(report, indent=2, sort_keys=True, default=str)
    print(rendered)
    if output_json:
        with open(output_json, "w", encoding="utf-8") as handle:
            handle.write(rendered)
    return 0 if health.healthy else 1


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging()
    try:
        return asyncio.run(run_health(include_tenants=args.tenants, output_json=args.output_json))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"key_rotation_health failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
