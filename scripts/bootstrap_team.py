#!/usr/bin/env python3
"""Bootstrap a team and its owner account for local setup.

Usage:
    # Using environment variables:
    OWNER_EMAIL=owner@example.com OWNER_PASSWORD=SecurePass123 TEAM_NAME=Acme python scripts/bootstrap_team.py

    # Or with command line args:
    python scripts/bootstrap_team.py --email owner@example.com --password SecurePass123 --team Acme

Environment Variables:
    OWNER_EMAIL: Email for the owner account
    OWNER_PASSWORD: Password for the owner account (8-128 chars, mixed case and a digit)
    OWNER_NAME: Display name for the owner (defaults to the email local part)
    TEAM_NAME: Name of the team to create
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


def validate_password(password: str) -> bool:
    """Check password meets the same rules the API enforces."""
    if not 8 <= len(password) <= 128:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    return has_upper and has_lower and has_digit


async def bootstrap_team(
    email: str, password: str, name: str, team_name: str, dry_run: bool = False
) -> dict:
    """Create a team with its owner.

    Returns:
        dict with user_id, team_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from teamcrm.service.errors import AuthError, AuthErrorCode
    from teamcrm.service.runtime import get_runtime

    runtime = get_runtime()

    if dry_run:
        print(f"[DRY RUN] Would create team {team_name!r} owned by {email}")
        return {"user_id": None, "team_id": None, "email": email, "status": "dry_run"}

    try:
        result = await runtime.auth.register(email, password, name, team_name)
    except AuthError as exc:
        if exc.code != AuthErrorCode.EMAIL_EXISTS:
            raise
        existing = runtime.store.get_user_by_email(email.strip().lower())
        print(f"User {email} already exists (id: {existing.id if existing else '?'})")
        return {
            "user_id": existing.id if existing else None,
            "team_id": existing.team_id if existing else None,
            "email": email,
            "status": "exists",
        }

    print(f"Created team {team_name!r} with owner {email} (id: {result.user.id})")
    return {
        "user_id": result.user.id,
        "team_id": result.user.team_id,
        "email": email,
        "status": "created",
        "access_token": result.tokens.access_token,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a team and owner account for TeamCRM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("OWNER_EMAIL"),
        help="Owner email (or set OWNER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("OWNER_PASSWORD"),
        help="Owner password (or set OWNER_PASSWORD env var)",
    )
    parser.add_argument(
        "--name",
        default=os.environ.get("OWNER_NAME"),
        help="Owner display name (or set OWNER_NAME env var)",
    )
    parser.add_argument(
        "--team",
        default=os.environ.get("TEAM_NAME"),
        help="Team name (or set TEAM_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or OWNER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or OWNER_PASSWORD environment variable required")
        sys.exit(1)

    if not args.team:
        print("Error: --team or TEAM_NAME environment variable required")
        sys.exit(1)

    if not validate_password(args.password):
        print("Error: Password must be 8-128 characters with upper, lower and digit")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/teamcrm-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    name = args.name or args.email.split("@", 1)[0]

    try:
        result = asyncio.run(
            bootstrap_team(args.email, args.password, name, args.team, args.dry_run)
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nTeam created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Team ID: {result['team_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")
    elif result["status"] == "exists":
        print("\nNo changes made - the owner email is already registered.")


if __name__ == "__main__":
    main()
