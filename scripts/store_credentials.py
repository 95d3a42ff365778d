from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys

from grantline.core.config import get_settings
from grantline.core.errors import CredentialValidationError, EncryptionConfigError
from grantline.core.logging import configure_logging
from grantline.persistence.db import SessionLocal
from grantline.services.credentials import store_credentials


def _build_parser() -> argparse.ArgumentParser:
    # Secrets are read from the environment or a prompt, never from argv.
    parser = argparse.ArgumentParser(
        description="Validate and store upstream session credentials, then resume provisioning"
    )
    parser.add_argument("--api-url", default=None, help="Upstream API base URL (defaults to UPSTREAM_API_URL)")
    parser.add_argument("--actor", default="cli", help="Operator identifier recorded in the audit log")
    return parser


def _read_secret(env_name: str, prompt: str) -> str:
    value = os.getenv(env_name)
    if value:
        return value
    return getpass.getpass(prompt)


async def _store(args: argparse.Namespace) -> int:
    api_url = args.api_url or get_settings().upstream_api_url
    if not api_url:
        print("store_credentials failed: --api-url or UPSTREAM_API_URL is required", file=sys.stderr)
        return 2
    session_id = _read_secret("NEW_UPSTREAM_SESSION_ID", "Session id: ").strip()
    signature = _read_secret("NEW_UPSTREAM_SIGNATURE", "Signature: ").strip()
    if not session_id or not signature:
        print("store_credentials failed: both secrets are required", file=sys.stderr)
        return 2

    async with SessionLocal() as session:
        result = await store_credentials(
            session,
            session_id=session_id,
            signature=signature,
            api_url=api_url,
            created_by=args.actor,
        )
    transition = result.transition
    print(f"credential_id={result.credential.id} state={transition.snapshot.state}")
    if transition.previous.incident_id:
        print(f"resolved_incident={transition.previous.incident_id}")
    if transition.resume is not None:
        print(f"requeued={transition.resume.requeued} failed={transition.resume.failed}")
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_store(args))
    except CredentialValidationError as exc:
        print(
            f"CREDENTIALS_INVALID: {exc} (http_status={exc.http_status} error_kind={exc.error_kind})",
            file=sys.stderr,
        )
        return 3
    except EncryptionConfigError as exc:
        print(f"ENCRYPTION_CONFIG_INVALID: {exc}", file=sys.stderr)
        return 2
    except Exception as exc:  # noqa: BLE001 - surface failures clearly
        print(f"store_credentials failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
