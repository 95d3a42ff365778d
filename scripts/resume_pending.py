from __future__ import annotations

import argparse
import asyncio
import sys

from grantline.core.logging import configure_logging
from grantline.persistence.db import SessionLocal
from grantline.services.provisioning_state import get_state
from grantline.services.resume import resume_pending_grants, resume_specific_grants


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-enqueue PENDING access grants with fresh job ids")
    parser.add_argument("--grant", action="append", default=[], help="Access grant id (repeatable)")
    parser.add_argument("--actor", default="cli", help="Operator identifier recorded in the audit log")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Resume even while provisioning is DEGRADED (jobs will defer again)",
    )
    return parser


async def _resume(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        state = await get_state(session)
        if state.is_degraded and not args.force:
            print(
                f"provisioning is DEGRADED ({state.incident_id}); store new credentials first or pass --force",
                file=sys.stderr,
            )
            return 2
        if args.grant:
            summary = await resume_specific_grants(session, args.grant, triggered_by=args.actor)
        else:
            summary = await resume_pending_grants(session, triggered_by=args.actor)
    print(f"requeued={summary.requeued} failed={summary.failed}")
    for error in summary.errors:
        print(f"- {error}", file=sys.stderr)
    return 0 if summary.failed == 0 else 1


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_resume(args))
    except Exception as exc:  # noqa: BLE001 - surface failures clearly
        print(f"resume_pending failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
