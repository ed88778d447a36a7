from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from signalnoise.logging import get_correlation_id

# Maximum nested JSON depth accepted in a snapshot
MAX_JSON_DEPTH = 20
# Maximum items in any one snapshot array (tasks, history, badges)
MAX_ARRAY_ITEMS = 10000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized payloads.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Cf")


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "session_expired",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class MagicLinkRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class MagicLinkResponse(_CamelModel):
    success: bool = True
    message: str
    dev_link: Optional[str] = Field(default=None, alias="devLink")


class SessionPayload(_CamelModel):
    email: str
    token: str
    session_token: str = Field(alias="sessionToken")
    created: int
    last_active: int = Field(alias="lastActive")
    expires: int
    first_name: str = Field(default="", alias="firstName")
    tier: str
    payment_type: str = Field(alias="paymentType")
    synced_from_local: Optional[int] = Field(default=None, alias="syncedFromLocal")


class VerifyMagicLinkResponse(BaseModel):
    success: bool = True
    session: SessionPayload


class UserPayload(_CamelModel):
    email: str
    first_name: str = Field(default="", alias="firstName")
    tier: str
    payment_type: str = Field(alias="paymentType")
    last_active: int = Field(alias="lastActive")
    synced_from_local: Optional[int] = Field(default=None, alias="syncedFromLocal")


class SessionViewPayload(_CamelModel):
    created: int
    last_active: int = Field(alias="lastActive")
    expires: int
    renewed: bool = False


class ValidateSessionResponse(BaseModel):
    valid: bool = True
    user: UserPayload
    session: SessionViewPayload


class SignOutResponse(BaseModel):
    success: bool = True


class RevokeAccessResponse(_CamelModel):
    success: bool = True
    revoked_devices: int = Field(alias="revokedDevices")
    revoked_at: str = Field(alias="revokedAt")


class SyncPushRequest(_CamelModel):
    data: Dict[str, Any]
    timestamp: int = Field(..., ge=0)
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=128)
    language: Optional[str] = Field(default=None, max_length=16)
    sync_type: Literal["initial", "update"] = Field(default="update", alias="syncType")

    @field_validator("data")
    @classmethod
    def _validate_data(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class SyncPushResponse(BaseModel):
    success: bool = True
    timestamp: int
    version: int


class SyncSnapshotResponse(_CamelModel):
    data: Dict[str, Any]
    timestamp: int
    first_name: Optional[str] = Field(default=None, alias="firstName")
    language: Optional[str] = None


class SyncMetaResponse(_CamelModel):
    version: int
    last_modified: int = Field(alias="lastModified")
    last_device: str = Field(alias="lastDevice")
    task_count: int = Field(alias="taskCount")
