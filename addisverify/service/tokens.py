from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from addisverify.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = frozenset({ACCESS, REFRESH})


class TokenError(Exception):
    """Base class for token verification failures."""

    reason = "invalid"


class MalformedToken(TokenError):
    reason = "malformed"


class SignatureInvalid(TokenError):
    reason = "signature_invalid"


class TokenExpired(TokenError):
    reason = "expired"


class UnexpectedAlgorithm(TokenError):
    reason = "unexpected_algorithm"


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    kind: str
    issued_at: float
    expires_at: float
    issuer: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: float
    refresh_expires_at: float
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Stateless HS256 signer for access/refresh pairs.

    ``issued_at`` is always supplied by the caller (the account's session
    watermark) so the orchestrator can later compare it with the stored value.
    Verification covers signature, structure and expiry; it never consults a
    store.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "addis_verify",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, account_id: str, kind: str, issued_at: float) -> tuple[str, float]:
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")
        ttl = self.access_ttl if kind == ACCESS else self.refresh_ttl
        expires_at = issued_at + ttl.total_seconds()
        payload = {
            "iss": self.issuer,
            "sub": account_id,
            "kind": kind,
            "iat": issued_at,
            "exp": expires_at,
        }
        return self._encode(payload), expires_at

    def issue_pair(self, account_id: str, issued_at: float) -> TokenPair:
        access_token, access_exp = self.issue(account_id, ACCESS, issued_at)
        refresh_token, refresh_exp = self.issue(account_id, REFRESH, issued_at)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def verify(self, token: Optional[str]) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise MalformedToken("empty token")
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error) as exc:
            raise MalformedToken("undecodable header") from exc
        if not isinstance(header, dict):
            raise MalformedToken("header is not an object")
        # Reject before any signature work to block algorithm substitution
        if header.get("alg") != ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise UnexpectedAlgorithm(f"unexpected algorithm: {header.get('alg')!r}")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise SignatureInvalid("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedToken("undecodable payload") from exc
        if not isinstance(payload, dict):
            raise MalformedToken("payload is not an object")

        if payload.get("iss") != self.issuer:
            raise MalformedToken("foreign issuer")
        kind = payload.get("kind")
        if kind not in TOKEN_KINDS:
            raise MalformedToken("unknown token kind")
        account_id = payload.get("sub")
        if not isinstance(account_id, str) or not account_id:
            raise MalformedToken("missing subject")
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        for value in (issued_at, expires_at):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise MalformedToken("iat and exp must be numeric")

        if self._clock() >= expires_at:
            raise TokenExpired("token expired")

        return TokenClaims(
            account_id=account_id,
            kind=kind,
            issued_at=float(issued_at),
            expires_at=float(expires_at),
            issuer=payload["iss"],
        )
