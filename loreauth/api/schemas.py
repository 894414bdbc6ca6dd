from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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
    """Standard API envelope."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


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


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# Wallet fields stay optional so the service reports missing input as a 400.
class WalletNonceRequest(BaseModel):
    address: Optional[str] = Field(default=None, max_length=64)


class WalletNonceResponse(BaseModel):
    nonce: str
    message: str
    expires_in: int


class WalletVerifyRequest(BaseModel):
    address: Optional[str] = Field(default=None, max_length=64)
    signature: Optional[str] = Field(default=None, max_length=1024)
    message: Optional[str] = Field(default=None, max_length=4096)
    nonce: Optional[str] = Field(default=None, max_length=128)


class UserResponse(BaseModel):
    id: str
    email: str
    role: Optional[str] = None
    status: str
    provider: Optional[str] = None


class WalletVerifyResponse(BaseModel):
    token: str
    user: UserResponse


class WalletIdentityResponse(BaseModel):
    user_id: str
    address: str


class SignupRequest(BaseModel):
    email: str
    password: str
    first_name: str = Field(..., min_length=1, max_length=100)
    session_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name")
    @classmethod
    def _clean_first_name(cls, value: str) -> str:
        value = _normalize_unicode(value).strip()
        if not value:
            raise ValueError("first_name must not be blank")
        return value


class SignupResponse(BaseModel):
    session_id: str
    status: str
    email: str


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)


class ForgotPasswordResponse(BaseModel):
    message: str


class SessionStatusResponse(BaseModel):
    """Session snapshot for polling clients; keys are camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    email: str
    user_id: Optional[str] = Field(default=None, serialization_alias="userId")
    token: Optional[str] = None


class CompleteLoginRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=256)


class CompleteLoginResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    email: str
    user_id: Optional[str] = Field(default=None, serialization_alias="userId")


class DeleteSessionResponse(BaseModel):
    deleted: bool


class SessionStatsResponse(BaseModel):
    total: int
    active: int
    expired: int
    failed: int
    authenticated: int
    subscribers: int = 0


class WebhookAck(BaseModel):
    success: bool = True


class HealthResponse(BaseModel):
    status: str = "ok"
    details: Dict[str, Any] = Field(default_factory=dict)
