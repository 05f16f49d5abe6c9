#!/usr/bin/env python3
"""Seed default roles and a bootstrap administrator.

Usage:
    # Using environment variables:
    ADMIN_CODE=admin01 ADMIN_PIN=482913 ADMIN_TEAM_ID=hq python scripts/seed_rbac.py

    # Or with command line args:
    python scripts/seed_rbac.py --code admin01 --pin 482913 --team-id hq --team-name HQ

Environment Variables:
    ADMIN_CODE: User code for the administrator
    ADMIN_PIN: Numeric PIN for the administrator
    ADMIN_TEAM_ID: Team the administrator belongs to (created when missing)
    DATABASE_URL: PostgreSQL connection string (USE_MEMORY_STORE=true for a dry local run)
"""
from __future__ import annotations

import argparse
import os
import sys

from fieldguard.service.errors import ConflictError, ServiceError
from fieldguard.service.rbac_seed import seed_default_roles


def seed(code: str, pin: str, team_id: str, team_name: str, *, dry_run: bool = False) -> dict:
    """Seed roles, then create or promote the administrator.

    Returns:
        dict with user_id, code and status ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    from fieldguard.service.runtime import get_runtime

    runtime = get_runtime()
    store = runtime.store

    if dry_run:
        existing = store.get_user_by_code(code)
        print(f"[DRY RUN] Would seed roles and {'promote' if existing else 'create'} {code}")
        return {"user_id": existing.id if existing else None, "code": code, "status": "dry_run"}

    roles = seed_default_roles(store)
    print(f"Seeded {len(roles)} roles")

    if store.get_team(team_id) is None:
        store.create_team(team_name, team_id=team_id)
        print(f"Created team {team_id}")

    user = store.get_user_by_code(code)
    status = "promoted"
    if user is None:
        if len(pin) < runtime.settings.pin_min_length or not pin.isdigit():
            raise ValueError(
                f"PIN must be numeric and at least {runtime.settings.pin_min_length} digits"
            )
        user = store.create_user(team_id, code, display_name="Administrator", role="SYSTEM_ADMIN")
        pin_hash, pin_salt = runtime.credentials.hash(pin)
        store.save_user_pin(user.id, pin_hash, pin_salt)
        status = "created"

    try:
        runtime.authorization.assign_role(user.id, "SYSTEM_ADMIN", None, team_id=user.team_id)
    except ConflictError:
        print(f"User {code} already holds SYSTEM_ADMIN (id: {user.id})")
        return {"user_id": user.id, "code": code, "status": "already_admin"}

    print(f"{status.capitalize()} administrator {code} (id: {user.id})")
    return {"user_id": user.id, "code": code, "status": status}


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed RBAC roles and a bootstrap administrator")
    parser.add_argument("--code", default=os.getenv("ADMIN_CODE"), help="Administrator user code")
    parser.add_argument("--pin", default=os.getenv("ADMIN_PIN"), help="Administrator PIN")
    parser.add_argument(
        "--team-id", default=os.getenv("ADMIN_TEAM_ID", "hq"), help="Administrator team id"
    )
    parser.add_argument("--team-name", default="Headquarters", help="Name for a newly created team")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done")
    args = parser.parse_args()

    if not args.code or not args.pin:
        print("Error: --code and --pin (or ADMIN_CODE and ADMIN_PIN) are required", file=sys.stderr)
        return 1

    try:
        seed(args.code, args.pin, args.team_id, args.team_name, dry_run=args.dry_run)
    except (ServiceError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
