from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

import httpx

from dichoptic.client.events import REFRESH_FAILED, REFRESH_UNAVAILABLE
from dichoptic.client.session import ClientSession, SessionUser
from dichoptic.logging import get_logger
from dichoptic.storage.models import (
    DEFAULT_EYE_DOMINANCE,
    DEFAULT_LEFT_EYE_COLOR,
    DEFAULT_RIGHT_EYE_COLOR,
)

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class ApiError(Exception):
    """Non-2xx reply from the API, carrying the decoded error envelope."""

    def __init__(self, status_code: int, message: str, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.payload = payload

    @property
    def code(self) -> Optional[str]:
        if isinstance(self.payload, dict) and isinstance(self.payload.get("error"), dict):
            return self.payload["error"].get("code")
        return None

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        try:
            payload = response.json()
        except ValueError:
            payload = None
        message = response.reason_phrase or "request failed"
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and error.get("message"):
                message = str(error["message"])
            elif payload.get("message"):
                message = str(payload["message"])
        return cls(response.status_code, message, payload)


class SessionEndedError(ApiError):
    """The session cannot be refreshed and has been torn down."""


@dataclass
class PendingRequest:
    """Everything needed to send (or re-send) one API call."""

    method: str
    url: str
    json: Any = None
    future: Optional[asyncio.Future] = None
    retried: bool = False


class ApiClient:
    """Async HTTP client that transparently renews an expired access token.

    At most one refresh call is in flight. Requests that hit a 401 while
    it runs are parked in FIFO order and replayed with the new token once
    the refresh succeeds, or all rejected with the refresh error if it
    fails. A replayed request is never refreshed a second time.

    If the task driving the refresh is cancelled, parked requests are
    rejected with a 401 ``ApiError`` and the session is left intact, so
    the next 401 starts a fresh refresh.
    """

    def __init__(
        self,
        base_url: str,
        session: ClientSession,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.session = session
        self.events = session.events
        self._http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._refreshing = False
        self._queue: Deque[PendingRequest] = deque()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def request(
        self, method: str, url: str, *, json: Any = None, renew_on_401: bool = True
    ) -> Any:
        pending = PendingRequest(method=method, url=url, json=json)
        response = await self._send(pending)
        if response.status_code == 401 and renew_on_401 and not pending.retried:
            response = await self._handle_unauthorized(pending)
        return self._parse(response)

    async def _send(self, pending: PendingRequest) -> httpx.Response:
        headers: Dict[str, str] = {}
        # Token is read at send time so replays pick up the renewed one
        if self.session.access_token:
            headers["Authorization"] = f"Bearer {self.session.access_token}"
        return await self._http.request(
            pending.method, pending.url, json=pending.json, headers=headers
        )

    async def _handle_unauthorized(self, pending: PendingRequest) -> httpx.Response:
        if self._refreshing:
            pending.future = asyncio.get_running_loop().create_future()
            self._queue.append(pending)
            # Raises the refresh error; on success this task replays itself
            await pending.future
            return await self._replay(pending)

        self._refreshing = True
        try:
            access_token = await self._refresh()
        except asyncio.CancelledError:
            released = self._release_queue(ApiError(401, "Token refresh was cancelled"))
            logger.warning("token_refresh_cancelled", rejected=released)
            raise
        except Exception as exc:
            released = self._release_queue(exc)
            reason = REFRESH_UNAVAILABLE if isinstance(exc, SessionEndedError) else REFRESH_FAILED
            logger.warning(
                "token_refresh_failed",
                reason=reason,
                rejected=released + 1,
                error_type=type(exc).__name__,
            )
            self.events.publish(reason)
            raise

        self.session.update_access_token(access_token)
        released = self._release_queue()
        logger.info("token_refreshed", replayed=released + 1)
        return await self._replay(pending)

    def _release_queue(self, error: Optional[BaseException] = None) -> int:
        """Wake every queued request in FIFO order and clear the in-flight flag.

        Waiters whose callers already gave up (cancelled futures) are skipped.
        Returns the number of waiters actually released.
        """
        waiting = list(self._queue)
        self._queue.clear()
        self._refreshing = False
        released = 0
        for queued in waiting:
            if queued.future is None or queued.future.done():
                continue
            if error is None:
                queued.future.set_result(None)
            else:
                queued.future.set_exception(error)
            released += 1
        return released

    async def _replay(self, pending: PendingRequest) -> httpx.Response:
        pending.retried = True
        return await self._send(pending)

    async def _refresh(self) -> str:
        refresh_token = self.session.refresh_token
        if not refresh_token:
            raise SessionEndedError(401, "No refresh token available")
        response = await self._http.post("/auth/refresh", json={"refreshToken": refresh_token})
        if not response.is_success:
            raise ApiError.from_response(response)
        try:
            access_token = response.json().get("access_token")
        except (ValueError, AttributeError):
            access_token = None
        if not isinstance(access_token, str) or not access_token:
            raise ApiError(response.status_code, "refresh response missing access_token")
        return access_token

    @staticmethod
    def _parse(response: httpx.Response) -> Any:
        if not response.is_success:
            raise ApiError.from_response(response)
        if not response.content:
            return None
        return response.json()

    # -- auth ----------------------------------------------------------------

    async def register(self, email: str, password: str) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/auth/register",
            json={"email": email, "password": password},
            renew_on_401=False,
        )

    async def login(self, email: str, password: str) -> Optional[SessionUser]:
        data = await self.request(
            "POST",
            "/auth/login",
            json={"email": email, "password": password},
            renew_on_401=False,
        )
        self.session.establish(data["access_token"], data["refresh_token"])
        return self.session.user

    async def verify_email(self, token: str) -> Dict[str, Any]:
        return await self.request(
            "POST", "/auth/verify-email", json={"token": token}, renew_on_401=False
        )

    async def resend_verification(self, email: str) -> Dict[str, Any]:
        return await self.request(
            "POST", "/auth/resend-verification", json={"email": email}, renew_on_401=False
        )

    async def forgot_password(self, email: str) -> Dict[str, Any]:
        return await self.request(
            "POST", "/auth/forgot-password", json={"email": email}, renew_on_401=False
        )

    async def reset_password(self, token: str, password: str) -> Dict[str, Any]:
        return await self.request(
            "POST",
            "/auth/reset-password",
            json={"token": token, "password": password},
            renew_on_401=False,
        )

    async def logout(self) -> None:
        """Revoke the refresh token server-side; local state is cleared regardless."""
        try:
            await self.request("POST", "/auth/logout")
        except (ApiError, httpx.HTTPError) as exc:
            logger.warning("logout_request_failed", error_type=type(exc).__name__)
        finally:
            self.session.teardown()

    async def profile(self) -> Dict[str, Any]:
        return await self.request("GET", "/auth/profile")

    # -- scores --------------------------------------------------------------

    async def list_scores(self, game: str) -> List[Dict[str, Any]]:
        return await self.request("GET", f"/scores/{game}")

    async def submit_score(
        self,
        game: str,
        score: int,
        *,
        date: Optional[str] = None,
        time: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        now = datetime.now()
        body = {
            "game": game,
            "score": score,
            "date": date or now.strftime("%Y-%m-%d"),
            "time": time or now.strftime("%H:%M:%S"),
        }
        return await self.request("POST", "/scores", json=body)

    # -- settings ------------------------------------------------------------

    async def get_settings(self) -> Optional[Dict[str, Any]]:
        return await self.request("GET", "/settings")

    async def settings_or_defaults(self) -> Dict[str, Any]:
        """Saved colour settings, or the red/blue left-active defaults."""
        saved = await self.get_settings()
        if saved:
            return saved
        return {
            "leftEyeColor": DEFAULT_LEFT_EYE_COLOR,
            "rightEyeColor": DEFAULT_RIGHT_EYE_COLOR,
            "eyeDominance": DEFAULT_EYE_DOMINANCE,
        }

    async def update_settings(
        self, left_eye_color: str, right_eye_color: str, eye_dominance: str
    ) -> Dict[str, Any]:
        return await self.request(
            "PUT",
            "/settings",
            json={
                "leftEyeColor": left_eye_color,
                "rightEyeColor": right_eye_color,
                "eyeDominance": eye_dominance,
            },
        )
