"""
Script to create a capsule for an owner against the configured database.
"""

import asyncio
import argparse
import os
import sys

# Add the project root to sys.path to allow importing from 'app'
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

from app.core.config import get_settings
from app.core.database import create_tables
from app.core.errors import ServiceError
from app.main import on_shutdown, on_startup, open_services
from capsules_shared.schemas.capsules import MembershipPolicy


async def create_capsule(owner_id: str, name: str, policy: str, init_tables: bool) -> int:
    await on_startup()
    try:
        if init_tables:
            await create_tables()
            print("Ensured tables exist.")

        async with open_services() as services:
            try:
                state = await services.membership.create_capsule(
                    owner_id, name, membership_policy=policy
                )
            except ServiceError as exc:
                print(f"Could not create capsule: {exc.message}", file=sys.stderr)
                return 1

        print(f"Created capsule {state.capsule.name!r} ({state.capsule.id})")
        print(f"  slug:   {state.capsule.slug}")
        print(f"  policy: {state.capsule.membership_policy.value}")
        return 0
    finally:
        await on_shutdown()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a capsule owned by a user.")
    parser.add_argument("--owner", required=True, help="User id of the capsule owner")
    parser.add_argument("--name", required=True, help="Capsule display name")
    parser.add_argument(
        "--policy",
        default=MembershipPolicy.REQUEST_APPROVAL.value,
        choices=[p.value for p in MembershipPolicy],
        help="Membership policy",
    )
    parser.add_argument(
        "--init-tables",
        action="store_true",
        help="Create tables first (development databases only)",
    )

    args = parser.parse_args()
    print(f"Using database {get_settings().database_url.rsplit('@', 1)[-1]}")

    sys.exit(asyncio.run(create_capsule(args.owner, args.name, args.policy, args.init_tables)))
