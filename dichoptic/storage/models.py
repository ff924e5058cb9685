from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

DEFAULT_LEFT_EYE_COLOR = "#FF0000"
DEFAULT_RIGHT_EYE_COLOR = "#0000FF"
DEFAULT_EYE_DOMINANCE = "left-active"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    is_verified: bool = False
    verification_token: Optional[str] = None
    reset_token: Optional[str] = None
    reset_token_expiry: Optional[datetime] = None
    # Always written and cleared together
    refresh_token_hash: Optional[str] = None
    refresh_token_expiry: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, email: str, password_hash: str, *, verification_token: Optional[str] = None
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            verification_token=verification_token,
        )

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token_hash) and self.refresh_token_expiry is not None


@dataclass
class Score:
    id: int
    user_id: str
    game: str
    score: int
    date: str
    time: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserSettings:
    user_id: str
    left_eye_color: str = DEFAULT_LEFT_EYE_COLOR
    right_eye_color: str = DEFAULT_RIGHT_EYE_COLOR
    eye_dominance: str = DEFAULT_EYE_DOMINANCE
    updated_at: datetime = field(default_factory=utcnow)
