from __future__ import annotations

import hashlib
import hmac
import secrets

DEFAULT_OTP_LENGTH = 6

SMS_TEMPLATE = "Your Addis Verify code is: {otp}. Valid for {minutes} minutes."


def generate_otp(length: int = DEFAULT_OTP_LENGTH) -> str:
    """Return ``length`` digits, each drawn uniformly from the OS CSPRNG."""
    if length <= 0:
        raise ValueError("otp length must be positive")
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def hash_challenge(phone: str, otp: str, pepper: str) -> str:
    """Peppered SHA-256 of ``phone || otp || pepper`` as lowercase hex."""
    return hashlib.sha256(f"{phone}{otp}{pepper}".encode("utf-8")).hexdigest()


def challenge_matches(stored_hash: str, phone: str, submitted_otp: str, pepper: str) -> bool:
    candidate = hash_challenge(phone, submitted_otp, pepper)
    return hmac.compare_digest(candidate.encode("utf-8"), stored_hash.encode("utf-8"))


def render_sms(otp: str, ttl_seconds: int) -> str:
    return SMS_TEMPLATE.format(otp=otp, minutes=max(1, ttl_seconds // 60))
