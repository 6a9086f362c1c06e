from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from addisverify.api.schemas import (
    AccountResponse,
    AuthResponse,
    Envelope,
    MessageResponse,
    SendOTPRequest,
    TokenRefreshRequest,
    VerifyOTPRequest,
)
from addisverify.logging import get_logger
from addisverify.service.auth import AuthContext, LoginResult
from addisverify.service.runtime import check_rate_limit, get_runtime
from addisverify.storage.models import Account, AccountStatus

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a per-key token bucket and optionally add rate limit headers.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "too many requests",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )
    return info


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def _as_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _account_to_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        phone=account.phone,
        status=AccountStatus(account.status).value,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def _login_to_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        access_expires_at=_as_datetime(result.tokens.access_expires_at),
        refresh_expires_at=_as_datetime(result.tokens.refresh_expires_at),
        account=_account_to_response(result.account),
    )


@router.post("/accounts/auth/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOTPRequest, request: Request, response: Response):
    """Issue a one-time code to the given phone number.

    Raises:
        429: If a code was issued for this phone within the cool-down window
        502: If the SMS provider rejected the message
        503: If the challenge cache is unreachable
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:send-otp:{_client_key(request)}",
        runtime.settings.auth_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.auth.issue_challenge(body.phone)
    return Envelope(status="ok", data=MessageResponse(message="OTP sent successfully"))


@router.post("/accounts/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOTPRequest, request: Request, response: Response):
    """Exchange a valid one-time code for an access/refresh token pair.

    Creates the account on first login.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:verify-otp:{_client_key(request)}",
        runtime.settings.auth_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.verify_challenge(body.phone, body.otp)
    return Envelope(status="ok", data=_login_to_response(result))


@router.post("/accounts/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:refresh:{_client_key(request)}",
        runtime.settings.auth_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.refresh_session(body.refresh_token)
    return Envelope(status="ok", data=_login_to_response(result))


@router.post("/accounts/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_principal)):
    """Invalidate every token issued to the caller's account."""
    runtime = get_runtime()
    await runtime.auth.logout(principal.account_id)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.get("/accounts/me", response_model=Envelope, tags=["accounts"])
async def get_current_account(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"read:{principal.account_id}",
        runtime.settings.read_rate_limit_per_minute,
        60,
    )
    account = runtime.auth.get_account(principal.account_id)
    return Envelope(status="ok", data=_account_to_response(account))
