"""Unit tests for one-time code generation and challenge hashing."""

from unittest.mock import patch

import pytest

from addisverify.service.otp import (
    SMS_TEMPLATE,
    challenge_matches,
    generate_otp,
    hash_challenge,
    render_sms,
)


class TestGenerateOtp:
    def test_default_length_is_six_digits(self):
        otp = generate_otp()
        assert len(otp) == 6
        assert otp.isdigit()

    @pytest.mark.parametrize("length", [4, 8, 10])
    def test_custom_length(self, length):
        assert len(generate_otp(length)) == length

    def test_leading_zeros_are_kept(self):
        with patch("addisverify.service.otp.secrets.randbelow", return_value=0):
            assert generate_otp(6) == "000000"

    def test_each_digit_drawn_from_csprng(self):
        with patch(
            "addisverify.service.otp.secrets.randbelow", side_effect=[4, 8, 2, 9, 1, 3]
        ) as randbelow:
            assert generate_otp(6) == "482913"
        assert randbelow.call_count == 6
        randbelow.assert_called_with(10)

    def test_rejects_non_positive_length(self):
        with pytest.raises(ValueError):
            generate_otp(0)


class TestChallengeHash:
    def test_hash_is_lowercase_hex_sha256(self):
        digest = hash_challenge("+251911223344", "482913", "pepper")
        assert len(digest) == 64
        assert digest == digest.lower()
        int(digest, 16)

    def test_hash_is_deterministic(self):
        assert hash_challenge("+251911223344", "482913", "pepper") == hash_challenge(
            "+251911223344", "482913", "pepper"
        )

    def test_hash_binds_phone_and_pepper(self):
        base = hash_challenge("+251911223344", "482913", "pepper")
        assert hash_challenge("+251911223345", "482913", "pepper") != base
        assert hash_challenge("+251911223344", "482913", "other") != base

    def test_matches_only_same_code(self):
        stored = hash_challenge("+251911223344", "482913", "pepper")
        assert challenge_matches(stored, "+251911223344", "482913", "pepper")
        assert not challenge_matches(stored, "+251911223344", "000000", "pepper")

    def test_empty_stored_hash_never_matches(self):
        assert not challenge_matches("", "+251911223344", "482913", "pepper")


def test_render_sms_includes_code_and_minutes():
    body = render_sms("482913", 300)
    assert body == SMS_TEMPLATE.format(otp="482913", minutes=5)
    assert "482913" in body


def test_render_sms_rounds_short_ttl_up_to_one_minute():
    assert "Valid for 1 minutes" in render_sms("482913", 30)
