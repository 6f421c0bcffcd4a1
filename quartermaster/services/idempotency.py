"""Replay protection for checkout and checkin.

A scanner that retries a transition with the same ``Idempotency-Key`` gets the stored
response back instead of a second ledger entry. Keys are scoped to the troop, the acting
principal and the route path, and expire after ``idempotency_ttl_hours``. Only
successful transitions are remembered, so a rejected attempt can be retried as is.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quartermaster.apps.api.response import REQUEST_ID_HEADER
from quartermaster.core.config import get_settings
from quartermaster.core.errors import IdempotencyKeyConflict, ValidationFailed
from quartermaster.domain.models import IdempotencyRecord
from quartermaster.services.auth.tokens import Claims


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotency-Replayed"
MAX_KEY_LENGTH = 128


@dataclass(frozen=True)
class TransitionKey:
    tenant_id: str
    actor_id: str
    method: str
    path: str
    key: str
    fingerprint: str


def normalize_key(raw: str) -> str:
    key = raw.strip()
    if not key:
        raise ValidationFailed(f"{IDEMPOTENCY_HEADER} is empty")
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationFailed(f"{IDEMPOTENCY_HEADER} exceeds {MAX_KEY_LENGTH} characters")
    return key


def fingerprint(item_id: str, body: dict[str, Any]) -> str:
    # Same item and same body give the same digest regardless of key order.
    canonical = json.dumps({"item_id": item_id, "body": body}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def replay_response(record: IdempotencyRecord) -> JSONResponse:
    headers = {REPLAY_HEADER: "true"}
    body = record.response_body_json
    meta = body.get("meta") if isinstance(body, dict) else None
    if isinstance(meta, dict) and isinstance(meta.get("request_id"), str):
        headers[REQUEST_ID_HEADER] = meta["request_id"]
    return JSONResponse(content=body, status_code=record.response_status, headers=headers)


async def lookup(
    db: AsyncSession,
    *,
    request: Request,
    claims: Claims,
    item_id: str,
    body: dict[str, Any],
) -> tuple[TransitionKey | None, JSONResponse | None]:
    """Return ``(key, None)`` for a fresh request or ``(None, response)`` for a replay.

    Requests without the header, or with the feature switched off, get ``(None, None)``.
    """
    settings = get_settings()
    raw_key = request.headers.get(IDEMPOTENCY_HEADER)
    if not settings.idempotency_enabled or raw_key is None:
        return None, None
    key = TransitionKey(
        tenant_id=claims.tenant_id,
        actor_id=claims.subject_id,
        method=request.method.upper(),
        path=request.url.path,
        key=normalize_key(raw_key),
        fingerprint=fingerprint(item_id, body),
    )
    try:
        result = await db.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.tenant_id == key.tenant_id,
                IdempotencyRecord.actor_id == key.actor_id,
                IdempotencyRecord.method == key.method,
                IdempotencyRecord.path == key.path,
                IdempotencyRecord.idem_key == key.key,
                IdempotencyRecord.expires_at > datetime.now(timezone.utc),
            )
        )
    except SQLAlchemyError:
        # Treat the request as fresh; the state machine still rejects a repeated transition.
        logger.exception("idempotency_lookup_failed tenant_id=%s path=%s", key.tenant_id, key.path)
        return key, None
    record = result.scalar_one_or_none()
    if record is None:
        return key, None
    if record.request_hash != key.fingerprint:
        raise IdempotencyKeyConflict()
    logger.info("idempotency_replay tenant_id=%s path=%s", key.tenant_id, key.path)
    return None, replay_response(record)


async def remember(db: AsyncSession, key: TransitionKey | None, *, status_code: int, body: Any) -> None:
    if key is None:
        return
    ttl = timedelta(hours=get_settings().idempotency_ttl_hours)
    db.add(
        IdempotencyRecord(
            tenant_id=key.tenant_id,
            actor_id=key.actor_id,
            method=key.method,
            path=key.path,
            idem_key=key.key,
            request_hash=key.fingerprint,
            response_status=status_code,
            response_body_json=body,
            expires_at=datetime.now(timezone.utc) + ttl,
        )
    )
    try:
        await db.commit()
    except SQLAlchemyError:
        # The transition itself is committed; losing the snapshot only disables replay.
        await db.rollback()
        logger.exception("idempotency_store_failed tenant_id=%s path=%s", key.tenant_id, key.path)
