from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from addisverify.config import get_settings

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_code",
    "invalid_token",
    "unauthorized",
    "wrong_token_kind",
    "account_suspended",
    "forbidden",
    "not_found",
    "method_not_allowed",
    "payload_too_large",
    "rate_limited",
    "server_error",
    "delivery_failed",
    "unavailable",
})

_E164_PATTERN = re.compile(r"^\+[1-9][0-9]{1,14}$")


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
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
    """Uniform API response envelope."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def normalize_phone(value: str) -> str:
    """Validate an E.164 phone number, tolerating spaces, dashes and dots."""
    if not isinstance(value, str):
        raise ValueError("phone must be a string")
    cleaned = unicodedata.normalize("NFKC", value).strip()
    cleaned = re.sub(r"[\s\-.()]", "", cleaned)
    if not _E164_PATTERN.match(cleaned):
        raise ValueError("phone must be in E.164 format, e.g. +251911223344")
    return cleaned


class SendOTPRequest(BaseModel):
    phone: str = Field(..., max_length=32)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        return normalize_phone(value)


class VerifyOTPRequest(BaseModel):
    phone: str = Field(..., max_length=32)
    otp: str = Field(..., max_length=10)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        return normalize_phone(value)

    @field_validator("otp")
    @classmethod
    def _validate_otp(cls, value: str) -> str:
        length = get_settings().otp_length
        if not re.fullmatch(rf"[0-9]{{{length}}}", value):
            raise ValueError(f"otp must be exactly {length} digits")
        return value


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class MessageResponse(BaseModel):
    message: str


class AccountResponse(BaseModel):
    id: str
    phone: str
    status: str
    created_at: datetime
    updated_at: datetime


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    account: AccountResponse
