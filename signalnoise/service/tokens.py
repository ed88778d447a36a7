"""Opaque token generation and account identifier helpers."""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import unicodedata
from typing import Optional

from signalnoise.service.errors import AuthenticationError, ValidationError

TOKEN_BYTES = 32

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def generate_token(nbytes: int = TOKEN_BYTES) -> str:
    """Return a random hex token; at least 32 bytes of entropy."""
    return secrets.token_hex(max(nbytes, TOKEN_BYTES))


def normalize_account_id(email: str) -> str:
    """Canonical account key: NFKC, trimmed, lower-cased email address."""
    if not isinstance(email, str):
        raise ValidationError("email must be a string")
    normalized = unicodedata.normalize("NFKC", email).strip().lower()
    if not normalized or len(normalized) > 254 or not _EMAIL_PATTERN.match(normalized):
        raise ValidationError("valid email required", detail={"field": "email"})
    return normalized


def account_hash(account_id: str) -> str:
    """Privacy-preserving key used by the sync routes instead of the raw address."""
    return hashlib.sha256(account_id.encode("utf-8")).hexdigest()


def tokens_equal(presented: Optional[str], stored: Optional[str]) -> bool:
    if not presented or not stored:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the opaque value from an ``Authorization: Bearer`` header."""
    if not authorization:
        raise AuthenticationError("authentication required")
    scheme, _, value = authorization.partition(" ")
    value = value.strip()
    if scheme.lower() != "bearer" or not value:
        raise AuthenticationError("authentication required")
    return value
