from __future__ import annotations

import argparse
import asyncio
import json
import sys

from grantline.persistence.db import SessionLocal
from grantline.services.access_grants import get_provisioning_health


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print provisioning state, grant counts and queue health")
    parser.add_argument("--json", action="store_true", help="Print the full status document as JSON")
    return parser


async def _status(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        health = await get_provisioning_health(session)
    if args.json:
        print(json.dumps(health, indent=2, sort_keys=True, default=str))
    else:
        stats = health["stats"]
        print(f"state={health['state']} incident_id={health['incident_id'] or '-'}")
        if health["reason"]:
            print(f"reason={health['reason']}")
        print(
            "pending={pending} failed={failed} granted={granted} revoked={revoked} "
            "manual_tasks={manual_task_count}".format(**stats)
        )
        credentials = health["credentials"]
        if credentials:
            print(f"credential_age_hours={credentials['age_hours']} status={credentials['age_status']}")
        else:
            print("credentials=none")
    # Non-zero while DEGRADED so the command can back a monitoring check.
    return 2 if health["state"] == "DEGRADED" else 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_status(args))
    except Exception as exc:  # noqa: BLE001 - surface failures clearly
        print(f"provisioning_status failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
