from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

# Smallest step a watermark can advance by; matches timestamptz resolution
WATERMARK_RESOLUTION = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    PENDING_REVIEW = "pending_review"
    SUSPENDED = "suspended"
    DELETED = "deleted"


BLOCKED_STATUSES = frozenset({AccountStatus.SUSPENDED, AccountStatus.DELETED})


def next_watermark(previous: Optional[datetime], now: datetime) -> datetime:
    """Return the watermark to write when advancing from ``previous``.

    The result is strictly greater than ``previous`` even when the clock has
    not moved (or moved backwards), so a token minted at the old watermark is
    always superseded.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if previous is None:
        return now
    return max(now, previous + WATERMARK_RESOLUTION)


@dataclass
class Account:
    id: str
    phone: str
    session_watermark: datetime
    status: AccountStatus = AccountStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, phone: str, watermark: datetime) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            phone=phone,
            session_watermark=watermark,
            created_at=watermark,
            updated_at=watermark,
        )

    @property
    def is_blocked(self) -> bool:
        return AccountStatus(self.status) in BLOCKED_STATUSES

    def issued_before_watermark(self, issued_at: float) -> bool:
        """True when a token stamped ``issued_at`` predates the current watermark."""
        return issued_at < self.session_watermark.timestamp()
