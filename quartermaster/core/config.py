from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "quartermaster"
    log_level: str = "INFO"

    # SQLite keeps local development dependency-free; production points at Postgres/asyncpg.
    database_url: str = "sqlite+aiosqlite:///./quartermaster.sqlite"
    # Bounded asyncpg pool sizing for API workers (ignored for SQLite).
    api_db_pool_size: int = 10
    api_db_max_overflow: int = 5
    # Cap statement runtime on Postgres; 0 disables the server-side timeout.
    api_db_statement_timeout_ms: int = 5000
    # How long SQLite writers wait for the database lock before failing.
    sqlite_busy_timeout_s: float = 10.0

    # Header carrying the troop slug on every tenant-scoped request.
    tenant_header: str = "x-troop-slug"

    # HS256 signing secret for bearer tokens; override in every deployed environment.
    jwt_secret: str = "dev-quartermaster-secret-change-me"
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "quartermaster"
    jwt_ttl_minutes: int = 60 * 12

    password_min_length: int = 8
    # Allow walk-in account creation; new accounts start with the least-privileged role.
    self_registration_enabled: bool = True
    self_registration_role: str = "viewer"

    # Enable Idempotency-Key replay for checkout/checkin.
    idempotency_enabled: bool = True
    # Control TTL for stored idempotency responses.
    idempotency_ttl_hours: int = 24

    # Fail fast when a repository query is built without a tenant id.
    authz_require_tenant_predicate: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
