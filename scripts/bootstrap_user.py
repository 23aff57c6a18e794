#!/usr/bin/env python3
"""Create a user and print a fresh token pair for local testing.

    BOOTSTRAP_EMAIL=dev@example.com BOOTSTRAP_PASSWORD=Passw0rdDev python scripts/bootstrap_user.py
    python scripts/bootstrap_user.py --email dev@example.com --password Passw0rdDev

Without DATABASE_URL the in-memory store is used, so the user only lives as
long as this process. Without JWT_SECRET a throwaway secret is generated and
the printed tokens verify nowhere else.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _default_environment() -> None:
    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
        print("Note: generated a throwaway JWT_SECRET")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: using the in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")


async def bootstrap_user(email: str, password: str, dry_run: bool = False) -> dict:
    """Register ``email`` unless it exists; ``status`` is created, exists or dry_run."""
    # settings are read on first runtime access, after _default_environment()
    from bynd.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        existing = await runtime.credentials.find_by_email(email)
        if existing:
            return {"status": "exists", "email": email, "user_id": existing.id}
        if dry_run:
            return {"status": "dry_run", "email": email, "user_id": None}
        pair = await runtime.auth.register(email, password)
    finally:
        await runtime.close()
    return {
        "status": "created",
        "email": email,
        "user_id": pair.user_id,
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "expires_at": pair.expires_at.isoformat(),
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Create a bynd-auth user and print its tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("BOOTSTRAP_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("BOOTSTRAP_PASSWORD"))
    parser.add_argument("--dry-run", action="store_true", help="only report what would happen")
    args = parser.parse_args()

    if not args.email or not args.password:
        _fail("--email/BOOTSTRAP_EMAIL and --password/BOOTSTRAP_PASSWORD are required")

    from bynd.api.schemas import check_password_strength, normalize_email

    try:
        email = normalize_email(args.email)
        check_password_strength(args.password)
    except ValueError as exc:
        _fail(str(exc))

    _default_environment()
    try:
        result = asyncio.run(bootstrap_user(email, args.password, args.dry_run))
    except Exception as exc:
        _fail(f"{type(exc).__name__}: {exc}")

    if result["status"] == "created":
        print(f"created {result['email']} ({result['user_id']})")
        print(f"  access token:  {result['access_token']}")
        print(f"  refresh token: {result['refresh_token']}")
        print(f"  expires at:    {result['expires_at']}")
    elif result["status"] == "exists":
        print(f"{email} already exists ({result['user_id']}); nothing changed")
    else:
        print(f"[dry run] would create {email}")


if __name__ == "__main__":
    main()
