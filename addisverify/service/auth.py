from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from addisverify.config import Settings
from addisverify.logging import get_logger
from addisverify.service.errors import (
    AccountSuspendedError,
    DeliveryFailedError,
    InvalidOrExpiredCodeError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    RateLimitedError,
    ServiceUnavailableError,
    ValidationError,
    WrongTokenKindError,
)
from addisverify.service.messenger import DeliveryError, Messenger
from addisverify.service.otp import challenge_matches, generate_otp, hash_challenge, render_sms
from addisverify.service.tokens import (
    ACCESS,
    REFRESH,
    TokenClaims,
    TokenError,
    TokenIssuer,
    TokenPair,
)
from addisverify.storage.errors import CacheUnavailable, StoreUnavailable
from addisverify.storage.models import Account, AccountStatus

logger = get_logger(__name__)

T = TypeVar("T")


class AccountStore(Protocol):
    def get_account_by_id(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_phone(self, phone: str) -> Optional[Account]: ...

    def upsert_account_watermark(self, phone: str, now: datetime) -> Account: ...

    def update_status(
        self, account_id: str, status: AccountStatus | str
    ) -> Optional[Account]: ...


class ChallengeCache(Protocol):
    async def lock_exists(self, phone: str) -> bool: ...

    async def put_challenge_and_lock(
        self, phone: str, challenge_hash: str, challenge_ttl: int, lock_ttl: int
    ) -> bool: ...

    async def get_challenge(self, phone: str) -> Optional[str]: ...

    async def delete_challenge(self, phone: str) -> None: ...


@dataclass
class AuthContext:
    account_id: str
    phone: str
    status: str
    issued_at: float


@dataclass
class LoginResult:
    account: Account
    tokens: TokenPair


class AuthService:
    """Phone/OTP login, refresh rotation and watermark-based logout.

    Every token carries the account's session watermark as its ``iat``.
    Advancing the watermark (login, refresh, logout) invalidates all tokens
    minted before it; the check always re-reads the store.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: ChallengeCache,
        messenger: Messenger,
        settings: Settings,
        *,
        tokens: Optional[TokenIssuer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AccountStore = store
        self.cache = cache
        self.messenger = messenger
        self.settings = settings
        self.tokens = tokens or TokenIssuer(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
        )
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _cache_call(self, op: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except CacheUnavailable as exc:
            self.logger.error("challenge_cache_unavailable", op=op, error=exc.message)
            raise ServiceUnavailableError() from exc

    def _store_call(self, op: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except StoreUnavailable as exc:
            self.logger.error("account_store_call_failed", op=op, error=exc.message)
            raise ServiceUnavailableError() from exc

    async def _discard_challenge(self, phone: str) -> None:
        # Best-effort: the challenge still expires on its own TTL
        try:
            await self.cache.delete_challenge(phone)
        except CacheUnavailable as exc:
            self.logger.error("otp_delete_failed", phone=phone, error=exc.message)

    def _issue_for(self, account: Account) -> TokenPair:
        return self.tokens.issue_pair(account.id, account.session_watermark.timestamp())

    async def issue_challenge(self, phone: str) -> None:
        lock_ttl = self.settings.otp_lock_ttl_seconds
        busy_message = f"Please wait {lock_ttl} seconds before requesting a new code"
        if await self._cache_call("lock_exists", self.cache.lock_exists(phone)):
            self.logger.info("otp_rate_limited", phone=phone)
            raise RateLimitedError(busy_message)

        otp = generate_otp(self.settings.otp_length)
        challenge_hash = hash_challenge(phone, otp, self.settings.hash_pepper)
        stored = await self._cache_call(
            "put_challenge",
            self.cache.put_challenge_and_lock(
                phone, challenge_hash, self.settings.otp_ttl_seconds, lock_ttl
            ),
        )
        if not stored:
            # Lost the race to a concurrent issuer holding the lock
            self.logger.info("otp_rate_limited", phone=phone, raced=True)
            raise RateLimitedError(busy_message)

        try:
            await self.messenger.send(phone, render_sms(otp, self.settings.otp_ttl_seconds))
        except DeliveryError as exc:
            self.logger.error("otp_delivery_failed", phone=phone, error=str(exc))
            raise DeliveryFailedError() from exc
        self.logger.info("otp_issued", phone=phone)

    async def verify_challenge(self, phone: str, otp: str) -> LoginResult:
        stored = await self._cache_call("get_challenge", self.cache.get_challenge(phone))
        # Hash even when nothing is stored so both failure paths cost the same
        matched = challenge_matches(stored or "", phone, otp, self.settings.hash_pepper)
        if not stored or not matched:
            self.logger.info("otp_verification_failed", phone=phone)
            raise InvalidOrExpiredCodeError()

        existing = self._store_call("get_account_by_phone", self.store.get_account_by_phone, phone)
        if existing is not None and existing.is_blocked:
            await self._discard_challenge(phone)
            self.logger.warning(
                "login_blocked_account",
                account_id=existing.id,
                status=AccountStatus(existing.status).value,
            )
            raise AccountSuspendedError()

        account = self._store_call(
            "upsert_account_watermark", self.store.upsert_account_watermark, phone, self._now()
        )
        await self._discard_challenge(phone)
        tokens = self._issue_for(account)
        self.logger.info("login_succeeded", account_id=account.id, new_account=existing is None)
        return LoginResult(account=account, tokens=tokens)

    def _verify_token(self, token: Optional[str], *, purpose: str) -> TokenClaims:
        try:
            return self.tokens.verify(token)
        except TokenError as exc:
            self.logger.info("token_rejected", purpose=purpose, reason=exc.reason)
            raise InvalidOrExpiredTokenError() from exc

    def _load_current_account(self, claims: TokenClaims) -> Account:
        account = self._store_call("get_account_by_id", self.store.get_account_by_id, claims.account_id)
        if account is None:
            self.logger.info("token_unknown_account", account_id=claims.account_id)
            raise InvalidOrExpiredTokenError()
        if account.issued_before_watermark(claims.issued_at):
            self.logger.info("session_stale_token", account_id=account.id, kind=claims.kind)
            raise InvalidOrExpiredTokenError()
        if account.is_blocked:
            self.logger.warning(
                "session_blocked_account",
                account_id=account.id,
                status=AccountStatus(account.status).value,
            )
            raise AccountSuspendedError()
        return account

    async def refresh_session(self, refresh_token: Optional[str]) -> LoginResult:
        claims = self._verify_token(refresh_token, purpose="refresh")
        if claims.kind != REFRESH:
            # Caller misuse; rejected before touching the store
            self.logger.warning("refresh_wrong_token_kind", kind=claims.kind)
            raise WrongTokenKindError("Refresh token required")
        account = self._load_current_account(claims)
        rotated = self._store_call(
            "upsert_account_watermark",
            self.store.upsert_account_watermark,
            account.phone,
            self._now(),
        )
        tokens = self._issue_for(rotated)
        self.logger.info("session_refreshed", account_id=rotated.id)
        return LoginResult(account=rotated, tokens=tokens)

    async def logout(self, account_id: str) -> Account:
        account = self._store_call("get_account_by_id", self.store.get_account_by_id, account_id)
        if account is None:
            raise NotFoundError()
        updated = self._store_call(
            "upsert_account_watermark",
            self.store.upsert_account_watermark,
            account.phone,
            self._now(),
        )
        self.logger.info("session_logged_out", account_id=updated.id)
        return updated

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise InvalidOrExpiredTokenError("Missing bearer token")
        claims = self._verify_token(token, purpose="access")
        if claims.kind != ACCESS:
            raise WrongTokenKindError("Access token required")
        account = self._load_current_account(claims)
        return AuthContext(
            account_id=account.id,
            phone=account.phone,
            status=AccountStatus(account.status).value,
            issued_at=claims.issued_at,
        )

    def get_account(self, account_id: str) -> Account:
        account = self._store_call("get_account_by_id", self.store.get_account_by_id, account_id)
        if account is None:
            raise NotFoundError()
        return account

    def set_account_status(self, account_id: str, status: AccountStatus | str) -> Account:
        """Change an account's status without touching its watermark."""
        try:
            new_status = AccountStatus(status)
        except ValueError as exc:
            raise ValidationError(f"unknown account status: {status!r}") from exc
        account = self._store_call(
            "update_status", self.store.update_status, account_id, new_status
        )
        if account is None:
            raise NotFoundError()
        self.logger.info(
            "account_status_updated",
            account_id=account.id,
            status=AccountStatus(account.status).value,
        )
        return account
