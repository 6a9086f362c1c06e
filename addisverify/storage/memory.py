from __future__ import annotations

import json
import threading
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple, Union

from addisverify.logging import get_logger
from addisverify.storage.errors import StoreUnavailable
from addisverify.storage.models import Account, AccountStatus, next_watermark, utcnow


class MemoryStore:
    """In-memory account store for tests and local development.

    State is mirrored to ``<fs_root>/state/memory_store.json`` when ``fs_root``
    is given so a restarted dev server keeps its accounts and watermarks.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._by_phone: Dict[str, str] = {}
        # RLock so persistence helpers can run while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        return None

    def get_account_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._by_phone.get(phone)
            if not account_id:
                return None
            return replace(self.accounts[account_id])

    def upsert_account_watermark(self, phone: str, now: datetime) -> Account:
        """Create the account for ``phone`` or advance its watermark.

        The state file is written before memory changes, so a failed write
        leaves the previous watermark in place. Returns the row as it stands
        after the write.
        """
        with self._data_lock:
            account_id = self._by_phone.get(phone)
            if account_id is None:
                account = Account.new(phone, next_watermark(None, now))
            else:
                current = self.accounts[account_id]
                account = replace(
                    current,
                    session_watermark=next_watermark(current.session_watermark, now),
                    updated_at=max(current.updated_at, now),
                )
            self._persist_state({**self.accounts, account.id: account})
            self.accounts[account.id] = account
            self._by_phone[phone] = account.id
            return replace(account)

    def update_status(self, account_id: str, status: AccountStatus | str) -> Optional[Account]:
        with self._data_lock:
            current = self.accounts.get(account_id)
            if not current:
                return None
            account = replace(current, status=AccountStatus(status), updated_at=utcnow())
            self._persist_state({**self.accounts, account.id: account})
            self.accounts[account.id] = account
            return replace(account)

    def _persist_state(self, accounts: Dict[str, Account]) -> None:
        if not self.fs_root:
            return
        state = {"accounts": [self._serialize_account(a) for a in accounts.values()]}
        try:
            self._state_path().write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_state_persist_failed", error=str(exc))
            raise StoreUnavailable(
                "failed to persist in-memory state", {"error_type": type(exc).__name__}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_state_load_failed", path=str(path), error=str(exc))
            return False
        with self._data_lock:
            self.accounts = {
                a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
            }
            self._by_phone = {a.phone: a.id for a in self.accounts.values()}
        return True

    @staticmethod
    def _serialize_account(account: Account) -> dict:
        return {
            "id": account.id,
            "phone": account.phone,
            "status": AccountStatus(account.status).value,
            "session_watermark": account.session_watermark.isoformat(),
            "created_at": account.created_at.isoformat(),
            "updated_at": account.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_account(data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            phone=data["phone"],
            status=AccountStatus(data.get("status", "active")),
            session_watermark=datetime.fromisoformat(data["session_watermark"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


class MemoryChallengeCache:
    """Process-local stand-in for :class:`RedisCache`.

    Only used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Keys expire against
    an injectable monotonic clock so tests can move time forward.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._rate_limits: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _otp_key(phone: str) -> str:
        return f"otp:{phone}"

    @staticmethod
    def _lock_key(phone: str) -> str:
        return f"lock:otp:{phone}"

    def _live(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def verify_connection(self) -> None:
        return None

    async def lock_exists(self, phone: str) -> bool:
        with self._lock:
            return self._live(self._lock_key(phone)) is not None

    async def put_challenge_and_lock(
        self, phone: str, challenge_hash: str, challenge_ttl: int, lock_ttl: int
    ) -> bool:
        with self._lock:
            if self._live(self._lock_key(phone)) is not None:
                return False
            now = self._clock()
            self._entries[self._otp_key(phone)] = (challenge_hash, now + challenge_ttl)
            self._entries[self._lock_key(phone)] = ("1", now + lock_ttl)
            return True

    async def get_challenge(self, phone: str) -> Optional[str]:
        with self._lock:
            return self._live(self._otp_key(phone))

    async def delete_challenge(self, phone: str) -> None:
        with self._lock:
            self._entries.pop(self._otp_key(phone), None)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket mirroring the Redis script."""
        refill_rate = float(limit) / float(window_seconds)
        now = self._clock()
        with self._lock:
            tokens, last_ts = self._rate_limits.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._rate_limits[key] = (tokens, now)
        reset_seconds = int((1 - tokens) / refill_rate) + 1 if not allowed else 0
        if return_remaining:
            return (allowed, int(tokens), reset_seconds)
        return allowed

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._rate_limits.clear()
