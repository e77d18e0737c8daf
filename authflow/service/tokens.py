from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from authflow.logging import get_logger

logger = get_logger(__name__)

ALGORITHM = "HS512"


class TokenError(Exception):
    """Base class for token decoding failures."""


class MalformedToken(TokenError):
    pass


class BadSignature(TokenError):
    pass


class ExpiredToken(TokenError):
    pass


class UnsupportedToken(TokenError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Signs and verifies HS512 JWTs carrying a numeric user id as subject.

    The payload is ``{"sub": "<user id>", "iat": <epoch>, "exp": <epoch>}``.
    The codec has no side effects: ``validate`` is a pure function of the
    secret, the clock and the presented value.
    """

    def __init__(self, secret: str, clock: Optional[Callable[[], datetime]] = None):
        if not secret:
            raise ValueError("token secret must be provided")
        self._key = secret.encode()
        self._clock = clock or _utcnow

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha512).digest()
        )

    def issue(self, subject: int, ttl: timedelta) -> str:
        issued_at = int(self._clock().timestamp())
        payload = {
            "sub": str(subject),
            "iat": issued_at,
            "exp": issued_at + int(ttl.total_seconds()),
        }
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def validate(self, value: str) -> int:
        """Return the subject of ``value`` or raise a :class:`TokenError`.

        The signature is checked before the payload is trusted; expiry is
        checked last.
        """
        if not value or not isinstance(value, str):
            raise MalformedToken("empty token")
        parts = value.split(".")
        if len(parts) != 3:
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedToken("header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise MalformedToken("header is not an object")
        # Reject "none" and any algorithm other than ours
        if header.get("alg") != ALGORITHM:
            raise UnsupportedToken(f"unsupported algorithm {header.get('alg')!r}")
        if not sig_b64:
            raise UnsupportedToken("unsigned token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise BadSignature("signature mismatch")

        try:
            payload: Any = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedToken("payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedToken("payload is not an object")
        try:
            subject = int(payload["sub"])
            exp = int(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedToken("missing or invalid claims") from exc

        if self._clock().timestamp() > exp:
            raise ExpiredToken("token expired")
        return subject

    def is_valid(self, value: str) -> bool:
        try:
            self.validate(value)
        except ExpiredToken:
            logger.warning("jwt_expired")
            return False
        except BadSignature:
            logger.warning("jwt_invalid_signature")
            return False
        except UnsupportedToken as exc:
            logger.warning("jwt_unsupported", error=str(exc))
            return False
        except MalformedToken as exc:
            logger.warning("jwt_malformed", error=str(exc))
            return False
        return True

    def subject_of(self, value: str) -> Optional[int]:
        try:
            return self.validate(value)
        except TokenError:
            return None


__all__ = [
    "ALGORITHM",
    "TokenCodec",
    "TokenError",
    "MalformedToken",
    "BadSignature",
    "ExpiredToken",
    "UnsupportedToken",
]
