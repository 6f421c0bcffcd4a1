from __future__ import annotations

import argparse
import asyncio
import sys

from quartermaster.persistence.db import SessionLocal
from quartermaster.persistence.repos import tenants as tenants_repo


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Delete a troop with all of its users, items and ledger entries"
    )
    parser.add_argument("--slug", required=True, help="Troop slug to delete")
    return parser


async def _delete_tenant(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        tenant = await tenants_repo.get_by_slug(session, args.slug.strip().lower())
        if tenant is None:
            print(f"delete_tenant failed: troop not found: {args.slug}", file=sys.stderr)
            return 1
        tenant_id = tenant.id
        await tenants_repo.delete_tenant(session, tenant_id)
        await session.commit()

    print(f"deleted_tenant id={tenant_id} slug={args.slug}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_delete_tenant(args))
    except Exception as exc:  # noqa: BLE001 - surface deletion failures clearly
        print(f"delete_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
