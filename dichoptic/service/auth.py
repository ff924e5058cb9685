from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from dichoptic.config import Settings
from dichoptic.logging import get_logger
from dichoptic.service.errors import (
    AlreadyVerifiedError,
    ConflictError,
    EmailDeliveryFailedError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    ValidationError,
)
from dichoptic.service.tokens import (
    ACCESS,
    REFRESH,
    TokenCodec,
    hash_refresh_token,
    refresh_token_matches,
)
from dichoptic.storage.errors import ConstraintViolation
from dichoptic.storage.models import User, ensure_aware

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6

REGISTERED_MESSAGE = "User created successfully"
VERIFIED_MESSAGE = "Email verified successfully"
VERIFICATION_SENT_MESSAGE = "Verification email sent"
FORGOT_PASSWORD_MESSAGE = "If an account exists for this email, a reset link has been sent"
PASSWORD_RESET_MESSAGE = "Password has been reset successfully"
LOGGED_OUT_MESSAGE = "Logged out successfully"

INVALID_CREDENTIALS = "Invalid credentials"
EMAIL_NOT_VERIFIED = "Please verify your email before logging in"
INVALID_REFRESH_TOKEN = "Invalid refresh token"
REFRESH_TOKEN_EXPIRED = "Refresh token has expired"


class CredentialStore(Protocol):
    def create_user(
        self, email: str, password_hash: str, *, verification_token: Optional[str] = None
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_verification_token(self, token: str) -> Optional[User]: ...

    def get_user_by_reset_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...


class EmailDispatcher(Protocol):
    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, token: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    claims: dict = field(default_factory=dict)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


class AuthService:
    """Registration, email verification, password reset and token sessions.

    Login checks the password before the verification flag, so a caller
    without the password learns nothing about whether an account is
    verified. Refresh tokens are never rotated: the same refresh token keeps
    minting access tokens until it expires or the user logs out.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        email: Optional[EmailDispatcher] = None,
        tokens: Optional[TokenCodec] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email
        self.tokens = tokens or TokenCodec(settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _normalize_email(email: str) -> str:
        return (email or "").strip().lower()

    def _check_password_policy(self, password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: Optional[User], password: str) -> bool:
        if user is None:
            # Burn a comparable amount of time for unknown emails
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerificationError:
                pass
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=user.id)
            return False

    async def _dispatch(self, kind: str, user: User, token: str) -> bool:
        if self.email is None:
            self.logger.warning("email_dispatcher_missing", kind=kind, user_id=user.id)
            return False
        send = (
            self.email.send_email_verification
            if kind == "verification"
            else self.email.send_password_reset
        )
        try:
            delivered = await asyncio.to_thread(send, user.email, token)
        except Exception as exc:
            self.logger.error(
                "email_dispatch_failed",
                kind=kind,
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            self.logger.warning("email_dispatch_rejected", kind=kind, user_id=user.id)
        return bool(delivered)

    # -- registration and verification -----------------------------------

    async def register(self, email: str, password: str) -> User:
        email = self._normalize_email(email)
        self._check_password_policy(password)
        if self.store.get_user_by_email(email):
            raise ConflictError("User already exists", detail={"field": "email"})
        verification_token = secrets.token_urlsafe(32)
        try:
            user = self.store.create_user(
                email,
                self._hash_password(password),
                verification_token=verification_token,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup for the same email
            raise ConflictError("User already exists", detail={"field": "email"}) from exc
        self.logger.info("user_registered", user_id=user.id)
        # Delivery problems must not fail the signup; the user can resend
        await self._dispatch("verification", user, verification_token)
        return user

    async def verify_email(self, token: str) -> User:
        user = self.store.get_user_by_verification_token(token)
        if not user:
            raise InvalidTokenError("Invalid verification token")
        updated = self.store.update_user(user.id, is_verified=True, verification_token=None)
        self.logger.info("email_verified", user_id=user.id)
        return updated or user

    async def resend_verification(self, email: str) -> None:
        user = self.store.get_user_by_email(self._normalize_email(email))
        if not user:
            raise NotFoundError("User not found")
        if user.is_verified:
            raise AlreadyVerifiedError("Email is already verified")
        token = secrets.token_urlsafe(32)
        user = self.store.update_user(user.id, verification_token=token) or user
        if not await self._dispatch("verification", user, token):
            raise EmailDeliveryFailedError("Failed to send verification email")
        self.logger.info("verification_resent", user_id=user.id)

    # -- login, refresh, logout ------------------------------------------

    async def login(self, email: str, password: str) -> TokenPair:
        user = self.store.get_user_by_email(self._normalize_email(email))
        if not self._verify_password(user, password):
            self.logger.warning("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError(INVALID_CREDENTIALS)
        if not user.is_verified:
            self.logger.warning("login_failed", reason="email_not_verified", user_id=user.id)
            raise EmailNotVerifiedError(EMAIL_NOT_VERIFIED)

        pair = TokenPair(
            access_token=self.tokens.issue_access(user),
            refresh_token=self.tokens.issue_refresh(user),
        )
        # Concurrent logins race here; the last write wins
        self.store.update_user(
            user.id,
            refresh_token_hash=hash_refresh_token(pair.refresh_token),
            refresh_token_expiry=self._now() + self.tokens.refresh_ttl,
        )
        self.logger.info("login_succeeded", user_id=user.id)
        return pair

    async def refresh_access_token(self, refresh_token: str) -> str:
        payload = self.tokens.decode(refresh_token, REFRESH)
        if not payload:
            raise InvalidTokenError(INVALID_REFRESH_TOKEN, status_code=401)
        user = self.store.get_user(payload["sub"])
        if not user or not user.has_refresh_token:
            raise InvalidTokenError(INVALID_REFRESH_TOKEN, status_code=401)
        if self._now() > ensure_aware(user.refresh_token_expiry):
            self.logger.info("refresh_token_expired", user_id=user.id)
            raise TokenExpiredError(REFRESH_TOKEN_EXPIRED)
        if not refresh_token_matches(refresh_token, user.refresh_token_hash):
            self.logger.warning("refresh_token_mismatch", user_id=user.id)
            raise InvalidTokenError(INVALID_REFRESH_TOKEN, status_code=401)
        return self.tokens.issue_access(user)

    async def logout(self, user_id: str) -> None:
        self.store.update_user(user_id, refresh_token_hash=None, refresh_token_expiry=None)
        self.logger.info("logout", user_id=user_id)

    # -- password reset ----------------------------------------------------

    async def forgot_password(self, email: str) -> None:
        user = self.store.get_user_by_email(self._normalize_email(email))
        if not user:
            # Same outcome as a known email
            self.logger.info("password_reset_unknown_email")
            return
        token = secrets.token_urlsafe(32)
        expiry = self._now() + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        user = self.store.update_user(user.id, reset_token=token, reset_token_expiry=expiry) or user
        self.logger.info("password_reset_requested", user_id=user.id)
        await self._dispatch("password_reset", user, token)

    async def reset_password(self, token: str, new_password: str) -> None:
        self._check_password_policy(new_password)
        user = self.store.get_user_by_reset_token(token, now=self._now())
        if not user:
            raise InvalidTokenError("Invalid or expired reset token")
        self.store.update_user(
            user.id,
            password_hash=self._hash_password(new_password),
            reset_token=None,
            reset_token_expiry=None,
        )
        self.logger.info("password_reset_completed", user_id=user.id)

    # -- bearer authentication --------------------------------------------

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization: Bearer`` header to the caller, or None."""
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self.tokens.decode(token, ACCESS)
        if not payload:
            return None
        return AuthContext(user_id=payload["sub"], email=payload.get("email", ""), claims=payload)
