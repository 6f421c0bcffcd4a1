from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from sqlalchemy import delete, func, select

from quartermaster.domain.models import IdempotencyRecord
from quartermaster.persistence.db import SessionLocal


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remove expired checkout/checkin replay records")
    parser.add_argument("--dry-run", action="store_true", help="Only count expired records")
    return parser


async def prune(*, dry_run: bool = False) -> int:
    cutoff = datetime.now(timezone.utc)
    expired = IdempotencyRecord.expires_at < cutoff
    async with SessionLocal() as session:
        if dry_run:
            count = await session.scalar(select(func.count()).select_from(IdempotencyRecord).where(expired))
            print(f"expired_idempotency_records={count or 0}")
            return 0
        result = await session.execute(delete(IdempotencyRecord).where(expired))
        await session.commit()
        print(f"pruned_idempotency_records={result.rowcount or 0}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    return asyncio.run(prune(dry_run=args.dry_run))


if __name__ == "__main__":
    raise SystemExit(main())
