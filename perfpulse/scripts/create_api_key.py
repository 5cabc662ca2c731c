"""Issue an API key for programmatic test submission.

Usage:
    python -m perfpulse.scripts.create_api_key --user-id <user_id> [--label LABEL]

Prints the raw key once; only its hash is stored.
"""

from __future__ import annotations

import argparse
import secrets
import sys

from perfpulse.db.session import SessionLocal
from perfpulse.errors import StoreUnavailable
from perfpulse.services.auth import create_api_key

KEY_PREFIX = "pp_"


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a PerfPulse API key")
    parser.add_argument("--user-id", required=True, help="Owner of the new key")
    parser.add_argument("--label", default="default", help="Label shown in key listings")
    args = parser.parse_args()

    raw_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
    db = SessionLocal()
    try:
        key = create_api_key(db, args.user_id, args.label, raw_key)
    except StoreUnavailable as e:
        print(f"Could not create API key: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        db.close()
    print(f"API key '{key.label}' created for {key.user_id} (id={key.id}).")
    print(f"api_key={raw_key}")


if __name__ == "__main__":
    main()
