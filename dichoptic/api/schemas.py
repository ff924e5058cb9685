from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dichoptic.config import EyeDominance, Game
from dichoptic.service.auth import MIN_PASSWORD_LENGTH

MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "email_not_verified",
    "invalid_token",
    "token_expired",
    "already_verified",
    "email_delivery_failed",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is one of a fixed set clients branch on."""

    code: str
    message: str
    details: Optional[Any] = None

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
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_HEX_COLOR = re.compile(r"^#[0-9a-fA-F]{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class EmailRequest(BaseModel):
    """Body for endpoints that only take an email (resend, forgot-password)."""

    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(EmailRequest):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password(value)


class LoginRequest(EmailRequest):
    # No policy check here; a wrong password must fail as invalid credentials
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class ResetPasswordRequest(TokenRequest):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password(value)


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=2048)


class MessageResponse(BaseModel):
    message: str


class UserSummary(BaseModel):
    id: str
    email: str


class RegisterResponse(BaseModel):
    message: str
    user: UserSummary


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: str


class RefreshResponse(BaseModel):
    access_token: str


class ProfileResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    email: str
    iat: Optional[int] = None
    exp: Optional[int] = None


class ScoreCreateRequest(BaseModel):
    score: int = Field(..., ge=0, le=10_000_000)
    game: Game
    date: str = Field(..., min_length=1, max_length=32)
    time: str = Field(..., min_length=1, max_length=32)


class ScoreEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    user_id: str = Field(..., alias="userId")
    game: Game
    score: int
    date: str
    time: str


class UserSettingsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    left_eye_color: str = Field(..., alias="leftEyeColor")
    right_eye_color: str = Field(..., alias="rightEyeColor")
    eye_dominance: EyeDominance = Field(..., alias="eyeDominance")

    @field_validator("left_eye_color", "right_eye_color")
    @classmethod
    def _validate_color(cls, value: str) -> str:
        if not _HEX_COLOR.match(value):
            raise ValueError("colour must be a #RRGGBB hex value")
        return value.upper()


class UserSettingsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    left_eye_color: str = Field(..., alias="leftEyeColor")
    right_eye_color: str = Field(..., alias="rightEyeColor")
    eye_dominance: EyeDominance = Field(..., alias="eyeDominance")
