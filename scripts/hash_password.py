#!/usr/bin/env python3
"""Print the PHC string stored for a password, e.g. to seed a users row.

Usage:
    PASSWORD_PEPPER=... python scripts/hash_password.py 'Valid1@Pass'

    # Reject passwords that break the configured policy first:
    PASSWORD_PEPPER=... python scripts/hash_password.py --check 'Valid1@Pass'

Environment Variables:
    PASSWORD_PEPPER: Server pepper (required; must match the API's)
    PASSWORD_HASH_MEMORY, PASSWORD_HASH_ITERATIONS, PASSWORD_HASH_PARALLELISM:
        Argon2id cost, defaults as in the API
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def hash_for_storage(raw_password: str, *, check: bool = False) -> str:
    # Import here to avoid loading config before env vars are set
    from todo_api.config import get_settings
    from todo_api.service.credentials import PasswordPolicy, validate_password
    from todo_api.service.password import PasswordCodec

    settings = get_settings()
    if check:
        validate_password(raw_password, PasswordPolicy.from_settings(settings))
    return PasswordCodec.from_settings(settings).hash(raw_password)


def main():
    parser = argparse.ArgumentParser(
        description="Hash a password with the configured pepper and Argon2id cost",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("password", help="Raw password to hash")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate the password against the configured policy first",
    )
    args = parser.parse_args()

    if not os.environ.get("PASSWORD_PEPPER"):
        print("Error: PASSWORD_PEPPER environment variable required")
        sys.exit(1)

    # Hashing never signs tokens; any signing secret satisfies the settings check
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))

    from todo_api.service.errors import ValidationError

    try:
        print(hash_for_storage(args.password, check=args.check))
    except ValidationError as e:
        print(f"Error: {e.message}: {', '.join(e.detail.get('failures', []))}")
        sys.exit(1)


if __name__ == "__main__":
    main()
