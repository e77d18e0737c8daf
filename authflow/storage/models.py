from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenType(str, Enum):
    """Purposes a signed token can be issued for.

    ACCESS tokens are self-verifying and never persisted; every other type is
    recorded in the token store and consumed by deleting that record.
    """

    ACCESS = "access"
    REFRESH = "refresh"
    ACCOUNT_ACTIVATION = "account_activation"
    EMAIL_UPDATE = "email_update"
    FORGOTTEN_PASSWORD = "forgotten_password"


PERSISTED_TOKEN_TYPES = frozenset(
    {
        TokenType.REFRESH,
        TokenType.ACCOUNT_ACTIVATION,
        TokenType.EMAIL_UPDATE,
        TokenType.FORGOTTEN_PASSWORD,
    }
)

# At most one live record per (user, type) for these
SINGLE_USE_TOKEN_TYPES = frozenset(
    {
        TokenType.ACCOUNT_ACTIVATION,
        TokenType.EMAIL_UPDATE,
        TokenType.FORGOTTEN_PASSWORD,
    }
)


@dataclass
class User:
    id: int
    email: str
    name: str
    email_verified: bool = False
    two_factor_enabled: bool = False
    requested_new_email: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class StoredToken:
    id: int
    value: str
    user_id: int
    token_type: TokenType
    created_at: datetime = field(default_factory=_utcnow)
