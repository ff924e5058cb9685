from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Response

from dichoptic.api.schemas import (
    EmailRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    ScoreCreateRequest,
    ScoreEntry,
    TokenRequest,
    UserSettingsRequest,
    UserSettingsResponse,
    UserSummary,
)
from dichoptic.config import Game
from dichoptic.logging import get_logger
from dichoptic.service.auth import (
    FORGOT_PASSWORD_MESSAGE,
    LOGGED_OUT_MESSAGE,
    PASSWORD_RESET_MESSAGE,
    REGISTERED_MESSAGE,
    VERIFICATION_SENT_MESSAGE,
    VERIFIED_MESSAGE,
    AuthContext,
)
from dichoptic.service.errors import AuthenticationError, RateLimitedError
from dichoptic.service.runtime import check_rate_limit, get_runtime
from dichoptic.storage.models import Score, UserSettings

logger = get_logger(__name__)

router = APIRouter()


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise 429 once ``key`` has used up its bucket for the window."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None and limit > 0:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("rate_limit_exceeded", bucket=key.split(":", 1)[0])
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": reset_seconds}
        )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise AuthenticationError("Unauthorized")
    return ctx


def _score_to_entry(score: Score) -> ScoreEntry:
    return ScoreEntry(
        id=score.id,
        user_id=score.user_id,
        game=score.game,
        score=score.score,
        date=score.date,
        time=score.time,
    )


def _settings_to_response(prefs: UserSettings) -> UserSettingsResponse:
    return UserSettingsResponse(
        user_id=prefs.user_id,
        left_eye_color=prefs.left_eye_color,
        right_eye_color=prefs.right_eye_color,
        eye_dominance=prefs.eye_dominance,
    )


# -- auth --------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create an unverified account and send the verification link.

    Raises:
        400: If an account already exists for this email
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    user = await runtime.auth.register(body.email, body.password)
    return RegisterResponse(
        message=REGISTERED_MESSAGE, user=UserSummary(id=user.id, email=user.email)
    )


@router.post("/auth/login", response_model=LoginResponse, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If credentials are invalid or the email is not verified
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    pair = await runtime.auth.login(body.email, body.password)
    return LoginResponse(access_token=pair.access_token, refresh_token=pair.refresh_token)


@router.post("/auth/verify-email", response_model=MessageResponse, tags=["auth"])
async def verify_email(body: TokenRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "verify:email", runtime.settings.reset_rate_limit_per_minute * 10, 60
    )
    await runtime.auth.verify_email(body.token)
    return MessageResponse(message=VERIFIED_MESSAGE)


@router.post("/auth/resend-verification", response_model=MessageResponse, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"resend:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.resend_verification(body.email)
    return MessageResponse(message=VERIFICATION_SENT_MESSAGE)


@router.post("/auth/forgot-password", response_model=MessageResponse, tags=["auth"])
async def forgot_password(body: EmailRequest):
    """Start a password reset; the reply is identical whether or not the email exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.forgot_password(body.email)
    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    # Global bucket; reset tokens are not tied to an identity before lookup
    await _enforce_rate_limit(
        runtime, "reset:confirm", runtime.settings.reset_rate_limit_per_minute * 10, 60
    )
    await runtime.auth.reset_password(body.token, body.password)
    return MessageResponse(message=PASSWORD_RESET_MESSAGE)


@router.post("/auth/refresh", response_model=RefreshResponse, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Mint a new access token; the refresh token itself is returned to no one."""
    runtime = get_runtime()
    access_token = await runtime.auth.refresh_access_token(body.refresh_token)
    return RefreshResponse(access_token=access_token)


@router.post("/auth/logout", response_model=MessageResponse, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id)
    return MessageResponse(message=LOGGED_OUT_MESSAGE)


@router.get("/auth/profile", response_model=ProfileResponse, tags=["auth"])
async def profile(principal: AuthContext = Depends(get_user)):
    claims = {
        key: value
        for key, value in principal.claims.items()
        if key not in {"sub", "email", "iss", "aud", "jti"}
    }
    return ProfileResponse(id=principal.user_id, email=principal.email, **claims)


# -- scores ------------------------------------------------------------------


@router.get("/scores/{game}", response_model=List[ScoreEntry], tags=["scores"])
async def list_scores(game: Game, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return [_score_to_entry(s) for s in runtime.scores.list_top(principal.user_id, game)]


@router.post("/scores", response_model=Optional[ScoreEntry], tags=["scores"])
async def add_score(body: ScoreCreateRequest, principal: AuthContext = Depends(get_user)):
    """Record a finished game; returns null when the submission is dropped by policy."""
    runtime = get_runtime()
    entry = runtime.scores.record(
        principal.user_id, body.game, body.score, body.date, body.time
    )
    return _score_to_entry(entry) if entry else None


# -- settings ----------------------------------------------------------------


@router.get("/settings", response_model=Optional[UserSettingsResponse], tags=["settings"])
async def get_settings(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    prefs = runtime.store.get_user_settings(principal.user_id)
    return _settings_to_response(prefs) if prefs else None


@router.put("/settings", response_model=UserSettingsResponse, tags=["settings"])
async def update_settings(
    body: UserSettingsRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    prefs = runtime.store.set_user_settings(
        principal.user_id,
        left_eye_color=body.left_eye_color,
        right_eye_color=body.right_eye_color,
        eye_dominance=body.eye_dominance.value,
    )
    return _settings_to_response(prefs)
