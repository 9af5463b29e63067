#!/usr/bin/env python3
"""Provision a tenant from the command line.

    python scripts/provision_tenant.py --slug acme-capital --name "Acme Capital"
    python scripts/provision_tenant.py --slug acme-capital --name "Acme Capital" \
        --admin-email ops@acme.example --admin-password changeme

Reads DATABASE_URL / REDIS_URL from the environment or the project .env and
runs the same provisioning path as POST /api/v1/tenants: tenant schema with
users, deals and escrow tables under RLS, a shared.tenants row, and
optionally the first admin user.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

ROOT = os.path.join(os.path.dirname(__file__), "..")
sys.path.insert(0, ROOT)

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(ROOT, ".env"))

from src.app.core.database import close_db, init_db  # noqa: E402
from src.app.core.redis import close_redis  # noqa: E402
from src.app.services.tenant_provisioning import create_tenant_admin, provision_tenant  # noqa: E402


async def provision(slug: str, name: str, admin_email: str | None, admin_password: str | None) -> None:
    await init_db()
    try:
        result = await provision_tenant(slug=slug, name=name)
        print(f"Provisioned {result['slug']} ({result['name']})")
        print(f"  id:     {result['tenant_id']}")
        print(f"  schema: {result['schema_name']}")

        if admin_email and admin_password:
            user_id = await create_tenant_admin(
                result["tenant_id"], result["schema_name"], admin_email, admin_password
            )
            print(f"  admin:  {admin_email} ({user_id})")
    finally:
        await close_db()
        await close_redis()


def main() -> None:
    parser = argparse.ArgumentParser(description="Provision a new tenant")
    parser.add_argument("--slug", required=True, help="lowercase slug, e.g. acme-capital")
    parser.add_argument("--name", required=True, help="display name")
    parser.add_argument("--admin-email")
    parser.add_argument("--admin-password")
    args = parser.parse_args()

    if bool(args.admin_email) != bool(args.admin_password):
        parser.error("--admin-email and --admin-password must be provided together")

    asyncio.run(provision(args.slug, args.name, args.admin_email, args.admin_password))


if __name__ == "__main__":
    main()
