from __future__ import annotations

import base64
import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Protocol

from dichoptic.client.events import SessionEvents
from dichoptic.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_KEY = "token"
REFRESH_TOKEN_KEY = "refreshToken"


class TokenStorage(Protocol):
    def load(self) -> Dict[str, str]: ...

    def save(self, tokens: Dict[str, str]) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStorage:
    def __init__(self, tokens: Optional[Dict[str, str]] = None) -> None:
        self._tokens: Dict[str, str] = dict(tokens or {})

    def load(self) -> Dict[str, str]:
        return dict(self._tokens)

    def save(self, tokens: Dict[str, str]) -> None:
        self._tokens = dict(tokens)

    def clear(self) -> None:
        self._tokens = {}


class FileTokenStorage:
    """Keeps tokens in a small JSON file readable only by the owner."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def load(self) -> Dict[str, str]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("token_storage_unreadable", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def save(self, tokens: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(tokens, handle)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


@dataclass
class SessionUser:
    id: str
    email: str


def decode_claims(token: str) -> Optional[dict]:
    """Read a JWT payload without checking the signature (display only)."""
    try:
        payload_b64 = token.split(".")[1]
        padding = "=" * ((4 - len(payload_b64) % 4) % 4)
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + padding))
    except (IndexError, ValueError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None


class ClientSession:
    """Client-side login state with an explicit hydrate/teardown lifecycle.

    The session listens on ``events`` and tears itself down when the API
    client reports that the session can no longer be refreshed.
    """

    def __init__(
        self,
        storage: Optional[TokenStorage] = None,
        events: Optional[SessionEvents] = None,
    ) -> None:
        self.storage: TokenStorage = storage or MemoryTokenStorage()
        self.events = events or SessionEvents()
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.user: Optional[SessionUser] = None
        self._unsubscribe = self.events.subscribe(self._on_session_ended)

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    def hydrate(self) -> bool:
        """Restore tokens persisted by an earlier run; True if a session was found."""
        tokens = self.storage.load()
        access = tokens.get(ACCESS_TOKEN_KEY)
        if not access:
            return False
        self.access_token = access
        self.refresh_token = tokens.get(REFRESH_TOKEN_KEY)
        self.user = self._user_from_token(access)
        logger.info("client_session_hydrated", has_refresh=self.refresh_token is not None)
        return True

    def establish(self, access_token: str, refresh_token: str) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.user = self._user_from_token(access_token)
        self._persist()

    def update_access_token(self, access_token: str) -> None:
        self.access_token = access_token
        self.user = self._user_from_token(access_token) or self.user
        self._persist()

    def teardown(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.user = None
        self.storage.clear()

    def close(self) -> None:
        self._unsubscribe()

    def _on_session_ended(self, reason: str) -> None:
        self.teardown()

    def _persist(self) -> None:
        tokens = {ACCESS_TOKEN_KEY: self.access_token or ""}
        if self.refresh_token:
            tokens[REFRESH_TOKEN_KEY] = self.refresh_token
        self.storage.save(tokens)

    @staticmethod
    def _user_from_token(token: str) -> Optional[SessionUser]:
        claims = decode_claims(token)
        if not claims or not claims.get("sub"):
            return None
        return SessionUser(id=str(claims["sub"]), email=str(claims.get("email", "")))
