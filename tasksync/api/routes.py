from __future__ import annotations

import asyncio
import json
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Cookie,
    Depends,
    Header,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)

from tasksync.api.schemas import (
    AuthResponse,
    EmailChangeConfirm,
    EmailChangeRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    RegisterRequest,
    StatusResponse,
    TokenRefreshRequest,
    UserResponse,
    VerifyEmailRequest,
)
from tasksync.logging import get_logger, hash_email
from tasksync.service.auth import AuthContext
from tasksync.service.errors import RateLimitedError
from tasksync.service.otp import OTPPurpose
from tasksync.service.runtime import Runtime, check_rate_limit, get_runtime
from tasksync.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int = 60
) -> None:
    """Raise a 429 once ``key`` has used up its budget for the window."""

    allowed, _remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        raise RateLimitedError(
            "too many requests, please try again later",
            retry_after=max(1, reset_seconds),
        )


async def get_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization, access_token)


async def _send_code(runtime: Runtime, email: str, code: str, purpose: OTPPurpose) -> None:
    # A failed send leaves the code valid; the user can ask for a resend
    sent = await asyncio.to_thread(runtime.email.send_otp, email, code, purpose)
    if not sent:
        logger.warning(
            "otp_email_not_sent", purpose=purpose.value, email_hash=hash_email(email)
        )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        email_verified=user.email_verified,
        created_at=user.created_at,
    )


def _auth_response(user: User, tokens: dict) -> AuthResponse:
    return AuthResponse(
        user=_user_response(user),
        access_token=tokens["access_token"],
        refresh_token=tokens["refresh_token"],
        token_type=tokens.get("token_type", "bearer"),
        expires_at=tokens["expires_at"],
        refresh_expires_at=tokens["refresh_expires_at"],
    )


def _apply_session_cookies(response: Response, runtime: Runtime, tokens: dict) -> None:
    settings = runtime.settings
    secure = settings.is_production
    samesite = "strict" if settings.is_production else "lax"
    response.set_cookie(
        ACCESS_COOKIE,
        tokens["access_token"],
        httponly=True,
        secure=secure,
        samesite=samesite,
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens["refresh_token"],
        httponly=True,
        secure=secure,
        samesite=samesite,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/")


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Stage a sign-up and email a verification code.

    The account only exists once the code is confirmed at ``/auth/verify-email``.
    Registering again before that restarts the pending window and sends a new
    code.

    Raises:
        409: If the email already belongs to a verified account
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"register:{body.email}", runtime.settings.signup_rate_limit_per_minute
    )
    code = await runtime.auth.register(body.email, body.password, body.name)
    await _send_code(runtime, body.email, code, OTPPurpose.EMAIL_VERIFICATION)
    return Envelope(
        status="ok",
        data=StatusResponse(
            status="pending_verification",
            message="verification code sent",
            expires_in=runtime.otp.expiry_seconds,
        ),
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:verify:{body.email}", runtime.settings.otp_rate_limit_per_minute
    )
    user, tokens = await runtime.auth.verify_email(body.email, body.otp)
    _apply_session_cookies(response, runtime, tokens)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:resend:{body.email}", runtime.settings.otp_rate_limit_per_minute
    )
    code = await runtime.auth.resend_verification(body.email)
    await _send_code(runtime, body.email, code, OTPPurpose.EMAIL_VERIFICATION)
    return Envelope(
        status="ok",
        data=StatusResponse(
            status="sent",
            message="verification code sent",
            expires_in=runtime.otp.expiry_seconds,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange email and password for a token pair.

    Signing in replaces the refresh token of any earlier session for this
    user; access tokens already handed out stay valid until they expire.

    Raises:
        401: Unknown email or wrong password (same message for both)
        403: Password matches a sign-up that has not been verified yet
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", runtime.settings.login_rate_limit_per_minute
    )
    user, tokens = await runtime.auth.login(body.email, body.password)
    _apply_session_cookies(response, runtime, tokens)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    await _enforce_rate_limit(
        runtime,
        f"refresh:{request.client.host if request.client else 'unknown'}",
        runtime.settings.refresh_rate_limit_per_minute,
    )
    user, tokens = await runtime.auth.refresh(presented)
    _apply_session_cookies(response, runtime, tokens)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data=StatusResponse(status="logged_out"))


@router.post("/auth/request-password-reset", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: EmailRequest, background_tasks: BackgroundTasks):
    """Email a reset code if the account exists.

    The answer and its timing are the same either way: the mail goes out as a
    background task after the response, so SMTP latency cannot reveal whether
    the address is registered.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:{body.email}", runtime.settings.reset_rate_limit_per_minute
    )
    code = await runtime.auth.request_password_reset(body.email)
    if code:
        background_tasks.add_task(
            _send_code, runtime, body.email, code, OTPPurpose.PASSWORD_RESET
        )
    # Same answer whether or not the account exists
    return Envelope(
        status="ok",
        data=StatusResponse(
            status="sent",
            message="if the account exists, a reset code has been sent",
        ),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"otp:reset:{body.email}", runtime.settings.otp_rate_limit_per_minute
    )
    await runtime.auth.reset_password(body.email, body.otp, body.new_password)
    _clear_session_cookies(response)
    return Envelope(
        status="ok",
        data=StatusResponse(status="password_reset", message="password has been reset"),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_user(principal.user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.get("/auth/whoami", response_model=Envelope, tags=["auth"])
async def whoami(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user, tokens = await runtime.auth.whoami(principal.user_id)
    _apply_session_cookies(response, runtime, tokens)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"password:change:{principal.user_id}",
        runtime.settings.reset_rate_limit_per_minute,
    )
    user, tokens = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    _apply_session_cookies(response, runtime, tokens)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/request-email-change", response_model=Envelope, tags=["auth"])
async def request_email_change(
    body: EmailChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:email-change:{principal.user_id}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    code = await runtime.auth.request_email_change(principal.user_id, body.new_email)
    await _send_code(runtime, body.new_email, code, OTPPurpose.EMAIL_CHANGE)
    return Envelope(
        status="ok",
        data=StatusResponse(
            status="sent",
            message="verification code sent to the new address",
            expires_in=runtime.otp.expiry_seconds,
        ),
    )


@router.post("/auth/verify-email-change", response_model=Envelope, tags=["auth"])
async def verify_email_change(
    body: EmailChangeConfirm,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:email-change:verify:{principal.user_id}",
        runtime.settings.otp_rate_limit_per_minute,
    )
    user, tokens = await runtime.auth.verify_email_change(
        principal.user_id, body.new_email, body.otp
    )
    _apply_session_cookies(response, runtime, tokens)
    return Envelope(status="ok", data=_auth_response(user, tokens))


def _socket_token(
    ws: WebSocket, query_token: Optional[str]
) -> Optional[str]:
    cookie_token = ws.cookies.get(ACCESS_COOKIE)
    if cookie_token:
        return cookie_token
    if query_token:
        return query_token
    header = ws.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip() or None
    return None


@router.websocket("/events")
async def account_events(ws: WebSocket, token: Optional[str] = Query(None)):
    """Push account events to every open socket of the authenticated user.

    Frames are ``{"event": <name>, "data": {...}}``. Clients may send
    ``{"event": "ping"}`` and get a ``pong`` frame back.
    """
    runtime = get_runtime()
    sub = await runtime.events.join(ws, _socket_token(ws, token))
    if sub.user_id is None:
        return
    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                logger.info("event_socket_binary_frame_ignored", user_id=sub.user_id)
                continue
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                logger.info("event_socket_invalid_json", user_id=sub.user_id)
                continue
            event = frame.get("event") if isinstance(frame, dict) else frame
            if event == "ping":
                await ws.send_json(runtime.events.pong())
    except WebSocketDisconnect:
        pass
    finally:
        runtime.events.leave(sub)
