from __future__ import annotations

from passlib.context import CryptContext


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, credential_hash: str) -> bool:
    # Malformed stored hashes count as a mismatch rather than a server error.
    try:
        return pwd_context.verify(password, credential_hash)
    except (ValueError, TypeError):
        return False
