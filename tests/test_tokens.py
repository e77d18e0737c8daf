"""Unit tests for the HS512 token codec."""

import base64
import hashlib
import hmac
import json
from datetime import timedelta

import pytest

from authflow.service.tokens import (
    BadSignature,
    ExpiredToken,
    MalformedToken,
    TokenCodec,
    UnsupportedToken,
)

SECRET = "k" * 64


def _segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _decode(segment: str) -> dict:
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def _sign(signing_input: str, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha512).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, clock=clock)


class TestIssue:
    def test_round_trip_returns_subject(self, codec):
        for subject in (1, 42, 10**12):
            token = codec.issue(subject, timedelta(minutes=5))
            assert codec.validate(token) == subject

    def test_wire_format(self, codec, clock):
        token = codec.issue(7, timedelta(minutes=10))
        header_b64, payload_b64, _ = token.split(".")

        assert _decode(header_b64) == {"alg": "HS512", "typ": "JWT"}
        payload = _decode(payload_b64)
        issued_at = int(clock().timestamp())
        assert payload == {"sub": "7", "iat": issued_at, "exp": issued_at + 600}

    def test_tokens_differ_only_by_timestamps(self, codec, clock):
        first = codec.issue(3, timedelta(minutes=1))
        assert codec.issue(3, timedelta(minutes=1)) == first
        clock.advance(seconds=1)
        assert codec.issue(3, timedelta(minutes=1)) != first

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("")


class TestValidate:
    def test_negative_ttl_is_expired(self, codec):
        token = codec.issue(1, timedelta(seconds=-1))
        with pytest.raises(ExpiredToken):
            codec.validate(token)

    def test_expires_when_clock_passes_exp(self, codec, clock):
        token = codec.issue(1, timedelta(minutes=5))
        clock.advance(minutes=5)
        assert codec.validate(token) == 1
        clock.advance(seconds=1)
        with pytest.raises(ExpiredToken):
            codec.validate(token)

    def test_tampered_payload_is_bad_signature(self, codec):
        token = codec.issue(1, timedelta(minutes=5))
        header_b64, payload_b64, sig = token.split(".")
        payload = _decode(payload_b64)
        payload["sub"] = "2"
        with pytest.raises(BadSignature):
            codec.validate(f"{header_b64}.{_segment(payload)}.{sig}")

    def test_other_secret_is_bad_signature(self, codec, clock):
        other = TokenCodec("z" * 64, clock=clock)
        with pytest.raises(BadSignature):
            codec.validate(other.issue(1, timedelta(minutes=5)))

    def test_none_algorithm_rejected(self, codec, clock):
        exp = int(clock().timestamp()) + 60
        header = _segment({"alg": "none", "typ": "JWT"})
        payload = _segment({"sub": "1", "iat": exp - 60, "exp": exp})
        with pytest.raises(UnsupportedToken):
            codec.validate(f"{header}.{payload}.")

    def test_hs256_rejected(self, codec, clock):
        exp = int(clock().timestamp()) + 60
        header = _segment({"alg": "HS256", "typ": "JWT"})
        payload = _segment({"sub": "1", "iat": exp - 60, "exp": exp})
        signing_input = f"{header}.{payload}"
        with pytest.raises(UnsupportedToken):
            codec.validate(f"{signing_input}.{_sign(signing_input)}")

    @pytest.mark.parametrize(
        "value",
        ["", "abc", "a.b", "a.b.c.d", "!!!.@@@.###", "e30.e30"],
    )
    def test_malformed_input(self, codec, value):
        with pytest.raises(MalformedToken):
            codec.validate(value)

    def test_properly_signed_token_without_subject_is_malformed(self, codec, clock):
        header = _segment({"alg": "HS512", "typ": "JWT"})
        payload = _segment({"iat": 0, "exp": int(clock().timestamp()) + 60})
        signing_input = f"{header}.{payload}"
        with pytest.raises(MalformedToken):
            codec.validate(f"{signing_input}.{_sign(signing_input)}")

    def test_non_numeric_subject_is_malformed(self, codec, clock):
        header = _segment({"alg": "HS512", "typ": "JWT"})
        payload = _segment({"sub": "alice", "exp": int(clock().timestamp()) + 60})
        signing_input = f"{header}.{payload}"
        with pytest.raises(MalformedToken):
            codec.validate(f"{signing_input}.{_sign(signing_input)}")


class TestHelpers:
    def test_is_valid(self, codec):
        assert codec.is_valid(codec.issue(1, timedelta(minutes=1)))
        assert not codec.is_valid(codec.issue(1, timedelta(seconds=-1)))
        assert not codec.is_valid("garbage")

    def test_subject_of(self, codec):
        assert codec.subject_of(codec.issue(9, timedelta(minutes=1))) == 9
        assert codec.subject_of("garbage") is None
