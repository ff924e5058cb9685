from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta
from typing import Any, Optional

from dichoptic.config import Settings
from dichoptic.logging import get_logger
from dichoptic.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def hash_refresh_token(token: str) -> str:
    """Digest stored in place of the refresh token itself."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def refresh_token_matches(token: str, stored_hash: Optional[str]) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_refresh_token(token), stored_hash)


class TokenCodec:
    """Signs and verifies HS256 access and refresh tokens.

    Both token kinds carry ``sub`` (user id) and ``email``; ``token_type``
    keeps a refresh token from being accepted as an access token and the
    other way round. Lifetimes are configured independently.
    """

    def __init__(self, settings: Settings, *, leeway: timedelta = timedelta(seconds=30)) -> None:
        self.settings = settings
        self._leeway = leeway

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    def issue_access(self, user: User) -> str:
        return self._issue(user, ACCESS, self.access_ttl)

    def issue_refresh(self, user: User) -> str:
        return self._issue(user, REFRESH, self.refresh_ttl)

    def _issue(self, user: User, token_type: str, ttl: timedelta) -> str:
        now = int(time.time())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "token_type": token_type,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
            # Keeps two tokens issued in the same second distinct
            "jti": str(uuid.uuid4()),
        }
        return self._encode_jwt(payload)

    def decode(self, token: str, expected_type: str) -> Optional[dict[str, Any]]:
        """Return the verified claims, or None for any invalid token."""
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != expected_type:
            return None
        if not payload.get("sub"):
            return None
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before checking the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._leeway.total_seconds():
            return None
        return payload
