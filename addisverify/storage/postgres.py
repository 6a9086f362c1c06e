from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from psycopg import Connection, OperationalError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from addisverify.logging import get_logger
from addisverify.storage.errors import StoreUnavailable
from addisverify.storage.models import Account, AccountStatus

SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "sql" / "001_accounts.sql"

_ACCOUNTS_DDL = """
CREATE TABLE IF NOT EXISTS accounts (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    phone TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'pending_review', 'suspended', 'deleted')),
    session_watermark TIMESTAMPTZ NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

# Single statement so concurrent advances never lose an update; the watermark
# is always pushed strictly past its previous value.
_UPSERT_WATERMARK_SQL = """
INSERT INTO accounts (phone, session_watermark)
VALUES (%s, %s)
ON CONFLICT (phone) DO UPDATE
SET session_watermark = GREATEST(
        EXCLUDED.session_watermark,
        accounts.session_watermark + interval '1 microsecond'
    ),
    updated_at = now()
RETURNING *
"""


class PostgresStore:
    """Account store backed by PostgreSQL via a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: int = 5000,
        pool_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool_timeout = pool_timeout
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=pool_timeout,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
        )
        self._ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection(timeout=self.pool_timeout) as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "account_store_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable(
                "account store unavailable", {"error_type": type(exc).__name__}
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``accounts`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(_ACCOUNTS_DDL)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT to_regclass(%s) AS oid", ("public.accounts",)
            ).fetchone()
        if not row or row.get("oid") is None:
            raise RuntimeError(
                f"Missing required table 'accounts'; apply {SCHEMA_PATH.name} first"
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            phone=row["phone"],
            status=AccountStatus(row.get("status", "active")),
            session_watermark=row["session_watermark"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _is_uuid(value: str) -> bool:
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

    def get_account_by_id(self, account_id: str) -> Optional[Account]:
        if not self._is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return self._account_from_row(row)

    def get_account_by_phone(self, phone: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE phone = %s", (phone,)
            ).fetchone()
        if not row:
            return None
        return self._account_from_row(row)

    def upsert_account_watermark(self, phone: str, now: datetime) -> Account:
        with self._connect() as conn:
            row = conn.execute(_UPSERT_WATERMARK_SQL, (phone, now)).fetchone()
        return self._account_from_row(row)

    def update_status(self, account_id: str, status: AccountStatus | str) -> Optional[Account]:
        if not self._is_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE accounts SET status = %s, updated_at = now() WHERE id = %s RETURNING *",
                (AccountStatus(status).value, account_id),
            ).fetchone()
        if not row:
            return None
        return self._account_from_row(row)
