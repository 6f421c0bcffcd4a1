from __future__ import annotations

import argparse
import asyncio
import sys

from quartermaster.domain.state import Role
from quartermaster.persistence.db import SessionLocal
from quartermaster.persistence.repos import tenants as tenants_repo
from quartermaster.services import principals as principals_service


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a troop and its first admin")
    parser.add_argument("--name", required=True, help="Display name, e.g. 'Troop 7'")
    parser.add_argument("--slug", required=True, help="URL-safe selector, e.g. troop-7")
    parser.add_argument("--admin-email", required=True, help="Email of the first admin")
    parser.add_argument("--admin-username", required=True, help="Username of the first admin")
    parser.add_argument("--admin-password", required=True, help="Initial admin password")
    return parser


async def _create_tenant(args: argparse.Namespace) -> int:
    # Tenant and admin land in one transaction; a failure leaves nothing behind.
    async with SessionLocal() as session:
        tenant = await tenants_repo.create_tenant(session, name=args.name, slug=args.slug)
        admin = await principals_service.create_principal(
            session,
            tenant.id,
            username=args.admin_username,
            email=args.admin_email,
            password=args.admin_password,
            role=Role.ADMIN,
        )
        await session.commit()

    print("Troop created:")
    print(f"  tenant_id: {tenant.id}")
    print(f"  slug: {tenant.slug}")
    print(f"  admin_id: {admin.id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_tenant(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
