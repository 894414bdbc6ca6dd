from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from loreauth.api.schemas import (
    CompleteLoginRequest,
    CompleteLoginResponse,
    DeleteSessionResponse,
    Envelope,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    HealthResponse,
    SessionStatsResponse,
    SessionStatusResponse,
    SignupRequest,
    SignupResponse,
    UserResponse,
    WalletIdentityResponse,
    WalletNonceRequest,
    WalletNonceResponse,
    WalletVerifyRequest,
    WalletVerifyResponse,
    WebhookAck,
)
from loreauth.logging import get_logger
from loreauth.service.errors import AuthenticationError, NotFoundError, RateLimitedError
from loreauth.service.events import build_snapshot, stream_session
from loreauth.service.rate_limit import FixedWindowRateLimiter
from loreauth.service.runtime import get_runtime
from loreauth.service.webhooks import WebhookParseError
from loreauth.storage.models import SessionStatus, utcnow

logger = get_logger(__name__)

router = APIRouter()


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _enforce_rate_limit(
    limiter: FixedWindowRateLimiter,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count one attempt against ``key`` and raise 429 once the window is full."""
    result = limiter.check_limit(key, limit, window_seconds)
    info = RateLimitInfo(limit, result.remaining, result.retry_after or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not result.allowed:
        raise RateLimitedError(retry_after=result.retry_after, detail={"limit": limit})
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


@router.get("/healthz", response_model=Envelope, tags=["system"])
async def health():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=HealthResponse(
            details={
                "sessions": runtime.sessions.stats()["total"],
                "maintenance_running": runtime.maintenance.running,
            }
        ),
    )


@router.post("/wallet/nonce", response_model=Envelope, tags=["wallet"])
async def wallet_nonce(body: WalletNonceRequest):
    """Issue (or re-issue) the live sign-in nonce for a wallet address."""
    runtime = get_runtime()
    record = runtime.wallet.issue_nonce(body.address)
    ttl = runtime.wallet.nonce_ttl_seconds
    elapsed = int((utcnow() - record.issued_at).total_seconds())
    return Envelope(
        status="ok",
        data=WalletNonceResponse(
            nonce=record.nonce,
            message=runtime.wallet.sign_message(body.address.strip(), record.nonce),
            expires_in=max(0, ttl - elapsed),
        ),
    )


@router.post("/wallet/verify", response_model=Envelope, tags=["wallet"])
async def wallet_verify(body: WalletVerifyRequest, request: Request, response: Response):
    """Verify a signed nonce and return a bearer token for the wallet's user.

    Raises:
        400: Missing or malformed fields
        401: Unknown, expired or mismatched nonce, or a bad signature
        429: Too many verification attempts from this client
        502: The identity store could not provision the user
    """
    runtime = get_runtime()
    settings = runtime.settings
    rate_key = f"wallet:{_client_ip(request)}"
    _enforce_rate_limit(
        runtime.login_limiter,
        rate_key,
        settings.login_rate_limit_attempts,
        settings.login_rate_limit_window_seconds,
        response=response,
    )
    result = await runtime.wallet.verify(body.address, body.signature, body.message, body.nonce)
    runtime.login_limiter.reset(rate_key)
    return Envelope(
        status="ok",
        data=WalletVerifyResponse(
            token=result.token,
            user=UserResponse(**result.user.public_dict()),
        ),
    )


@router.get("/wallet/me", response_model=Envelope, tags=["wallet"])
async def wallet_me(authorization: Optional[str] = Header(default=None)):
    runtime = get_runtime()
    record = runtime.wallet.resolve_token(_bearer_token(authorization))
    if record is None:
        raise AuthenticationError("invalid or expired token")
    return Envelope(
        status="ok",
        data=WalletIdentityResponse(user_id=record.user_id, address=record.address),
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Start an email/password signup tracked by a session.

    The session becomes ready for login once the identity store confirms
    the account through its webhook.
    """
    runtime = get_runtime()
    settings = runtime.settings
    _enforce_rate_limit(
        runtime.signup_limiter,
        f"signup:{body.email}",
        settings.signup_rate_limit_attempts,
        settings.signup_rate_limit_window_seconds,
        response=response,
    )
    session = await runtime.signup.begin_signup(
        body.email,
        body.password,
        body.first_name,
        session_id=body.session_id,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(
        status="ok",
        data=SignupResponse(
            session_id=session.id,
            status=session.status.value,
            email=session.email,
        ),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    _enforce_rate_limit(
        runtime.login_limiter,
        f"reset:{body.email}",
        settings.login_rate_limit_attempts,
        settings.login_rate_limit_window_seconds,
        response=response,
    )
    message = await runtime.signup.request_password_reset(body.email)
    return Envelope(status="ok", data=ForgotPasswordResponse(message=message))


@router.get("/session-stats", response_model=Envelope, tags=["sessions"])
async def session_stats():
    runtime = get_runtime()
    counts = runtime.sessions.stats()
    return Envelope(
        status="ok",
        data=SessionStatsResponse(**counts, subscribers=runtime.events.subscriber_count()),
    )


@router.get("/session/{session_id}", response_model=Envelope, tags=["sessions"])
async def get_session(session_id: str):
    """Polling view of a signup session; the login token is only shown when ready."""
    runtime = get_runtime()
    session = runtime.sessions.get_session(session_id)
    token = session.login_token if session.status == SessionStatus.READY_FOR_LOGIN else None
    return Envelope(
        status="ok",
        data=SessionStatusResponse(
            status=session.status.value,
            email=session.email,
            user_id=session.user_id,
            token=token,
        ).model_dump(by_alias=True),
    )


@router.post("/session/{session_id}/complete", response_model=Envelope, tags=["sessions"])
async def complete_session(session_id: str, body: CompleteLoginRequest, response: Response):
    runtime = get_runtime()
    settings = runtime.settings
    _enforce_rate_limit(
        runtime.login_limiter,
        f"complete:{session_id}",
        settings.login_rate_limit_attempts,
        settings.login_rate_limit_window_seconds,
        response=response,
    )
    session = runtime.signup.complete_login(session_id, body.token)
    return Envelope(
        status="ok",
        data=CompleteLoginResponse(
            status=session.status.value,
            email=session.email,
            user_id=session.user_id,
        ).model_dump(by_alias=True),
    )


@router.delete("/session/{session_id}", response_model=Envelope, tags=["sessions"])
async def delete_session(session_id: str):
    runtime = get_runtime()
    if not runtime.sessions.delete_session(session_id):
        raise NotFoundError("session not found", detail={"session_id": session_id})
    return Envelope(status="ok", data=DeleteSessionResponse(deleted=True))


@router.post("/webhook/identity-events", tags=["webhooks"])
async def identity_webhook(request: Request):
    """Acknowledge identity-store user events; only a non-JSON body is an error."""
    runtime = get_runtime()
    body = await request.body()
    try:
        outcome = runtime.webhooks.handle(body)
    except WebhookParseError as exc:
        logger.error("webhook_parse_failed", error=str(exc), body_length=len(body))
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Webhook processing failed"},
        )
    logger.info(
        "webhook_processed",
        kind=outcome.kind,
        cached=outcome.cached,
        session_id=outcome.session_id,
    )
    return WebhookAck()


@router.get("/events", tags=["sessions"])
async def session_events(request: Request, session: str = Query(..., min_length=1)):
    """Server-sent events for one signup session."""
    runtime = get_runtime()
    current = runtime.sessions.get_session(session)
    subscription = runtime.events.subscribe(current.id)
    # snapshot after subscribing so no transition falls between the two
    try:
        snapshot = build_snapshot(runtime.sessions.get_session(session))
    except NotFoundError:
        subscription.close()
        raise
    logger.info("push_stream_opened", session_id=current.id, status=snapshot.data["status"])
    return StreamingResponse(
        stream_session(
            subscription,
            snapshot,
            heartbeat_seconds=runtime.settings.sse_heartbeat_seconds,
            is_disconnected=request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
