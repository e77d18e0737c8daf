from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import threading
from dataclasses import asdict, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from authflow.logging import get_logger
from authflow.storage.errors import ConstraintViolation
from authflow.storage.models import PERSISTED_TOKEN_TYPES, StoredToken, TokenType, User


class MemoryStore:
    """In-memory user and token store, optionally snapshotted to JSON.

    Every public method runs under one re-entrant lock, so lookup-and-delete
    operations such as :meth:`pop_token` are atomic with respect to other
    threads using the same store.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.tokens: Dict[int, StoredToken] = {}
        self._user_seq: int = 1
        self._token_seq: int = 1
        # Thread lock for sequence counters to prevent race conditions
        self._seq_lock = threading.Lock()
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _next_user_id(self) -> int:
        with self._seq_lock:
            value = self._user_seq
            self._user_seq += 1
            return value

    def _next_token_id(self) -> int:
        with self._seq_lock:
            value = self._token_seq
            self._token_seq += 1
            return value

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        email_verified: bool = False,
        two_factor_enabled: bool = False,
    ) -> User:
        with self._data_lock:
            if self.email_exists(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self.name_exists(name):
                raise ConstraintViolation("name already exists", {"field": "name"})
            user = User(
                id=self._next_user_id(),
                email=email,
                name=name,
                email_verified=email_verified,
                two_factor_enabled=two_factor_enabled,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user is not None else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user is not None else None

    def email_exists(self, email: str) -> bool:
        with self._data_lock:
            return any(u.email == email for u in self.users.values())

    def name_exists(self, name: str) -> bool:
        with self._data_lock:
            return any(u.name == name for u in self.users.values())

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user.id})
            clash = next(
                (
                    u
                    for u in self.users.values()
                    if u.id != user.id and (u.email == user.email or u.name == user.name)
                ),
                None,
            )
            if clash is not None:
                field = "email" if clash.email == user.email else "name"
                raise ConstraintViolation(f"{field} already exists", {"field": field})
            self.users[user.id] = replace(user)
            self._persist_state()
            return user

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for token_id, token in list(self.tokens.items()):
                if token.user_id == user_id:
                    self.tokens.pop(token_id, None)
            self._persist_state()
            return True

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # tokens
    def save_token(self, user_id: int, value: str, token_type: TokenType) -> StoredToken:
        token_type = TokenType(token_type)
        if token_type not in PERSISTED_TOKEN_TYPES:
            raise ValueError(f"{token_type.value} tokens are not stored")
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            token = StoredToken(
                id=self._next_token_id(),
                value=value,
                user_id=user_id,
                token_type=token_type,
            )
            self.tokens[token.id] = token
            self._persist_state()
            return token

    def find_token(self, value: str, token_type: TokenType) -> Optional[StoredToken]:
        with self._data_lock:
            return next(self._match(value=value, token_type=token_type), None)

    def find_token_for_user(
        self, user_id: int, token_type: TokenType
    ) -> Optional[StoredToken]:
        """Return the most recently issued record of ``token_type`` for a user."""
        with self._data_lock:
            matches = list(self._match(user_id=user_id, token_type=token_type))
            return max(matches, key=lambda t: t.id) if matches else None

    def delete_token(self, token: StoredToken) -> None:
        with self._data_lock:
            if self.tokens.pop(token.id, None) is not None:
                self._persist_state()

    def pop_token(self, value: str, token_type: TokenType) -> Optional[StoredToken]:
        """Atomically find and delete the record matching ``value``."""
        with self._data_lock:
            token = self.find_token(value, token_type)
            if token is None:
                return None
            self.tokens.pop(token.id, None)
            self._persist_state()
            return token

    def pop_token_for_user(
        self, user_id: int, token_type: TokenType, value: str
    ) -> Optional[StoredToken]:
        """Atomically delete the user's current record if it carries ``value``."""
        with self._data_lock:
            token = self.find_token_for_user(user_id, token_type)
            if token is None or not hmac.compare_digest(
                token.value.encode(), (value or "").encode()
            ):
                return None
            self.tokens.pop(token.id, None)
            self._persist_state()
            return token

    def delete_user_tokens(
        self, user_id: int, token_type: Optional[TokenType] = None
    ) -> int:
        with self._data_lock:
            stale = [
                t.id
                for t in self.tokens.values()
                if t.user_id == user_id
                and (token_type is None or t.token_type == token_type)
            ]
            for token_id in stale:
                self.tokens.pop(token_id, None)
            if stale:
                self._persist_state()
            return len(stale)

    def _match(
        self,
        *,
        value: Optional[str] = None,
        user_id: Optional[int] = None,
        token_type: Optional[TokenType] = None,
    ) -> Iterable[StoredToken]:
        for token in self.tokens.values():
            if value is not None and token.value != value:
                continue
            if user_id is not None and token.user_id != user_id:
                continue
            if token_type is not None and token.token_type != token_type:
                continue
            yield token

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [
                {**asdict(u), "created_at": self._serialize_datetime(u.created_at)}
                for u in self.users.values()
            ],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "tokens": [
                {
                    "id": t.id,
                    "value": t.value,
                    "user_id": t.user_id,
                    "token_type": t.token_type.value,
                    "created_at": self._serialize_datetime(t.created_at),
                }
                for t in self.tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {}
        for raw in data.get("users", []):
            raw = dict(raw)
            raw["created_at"] = self._deserialize_datetime(raw["created_at"])
            user = User(**raw)
            self.users[user.id] = user
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.tokens = {}
        for raw in data.get("tokens", []):
            token = StoredToken(
                id=raw["id"],
                value=raw["value"],
                user_id=raw["user_id"],
                token_type=TokenType(raw["token_type"]),
                created_at=self._deserialize_datetime(raw["created_at"]),
            )
            self.tokens[token.id] = token
        self._user_seq = max(self.users, default=0) + 1
        self._token_seq = max(self.tokens, default=0) + 1
        return True


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


class MemoryCodeStore:
    """Process-local store for 2FA codes and recovery codes.

    Async signatures match :class:`authflow.storage.redis_cache.RedisCodeStore`
    so the service can use either without branching. Recovery codes are kept
    as SHA-256 digests.
    """

    def __init__(self, *, clock=None) -> None:
        self._lock = threading.Lock()
        self._codes: Dict[int, tuple[str, datetime]] = {}
        self._recovery: Dict[int, set[str]] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def issue_code(self, user_id: int, ttl_seconds: int) -> str:
        code = f"{secrets.randbelow(10**6):06d}"
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._codes[user_id] = (code, expires_at)
        return code

    async def is_code_valid(self, user_id: int, code: str) -> bool:
        with self._lock:
            return self._live_code_matches(user_id, code)

    async def consume_code(self, user_id: int, code: str) -> bool:
        with self._lock:
            if not self._live_code_matches(user_id, code):
                return False
            self._codes.pop(user_id, None)
            return True

    def _live_code_matches(self, user_id: int, code: str) -> bool:
        stored = self._codes.get(user_id)
        if not stored:
            return False
        expected, expires_at = stored
        if expires_at <= self._clock():
            self._codes.pop(user_id, None)
            return False
        return hmac.compare_digest(expected.encode(), (code or "").encode())

    async def set_recovery_codes(self, user_id: int, codes: List[str]) -> None:
        with self._lock:
            self._recovery[user_id] = {_digest(c) for c in codes}

    async def is_recovery_code_valid(self, user_id: int, code: str) -> bool:
        with self._lock:
            return _digest(code or "") in self._recovery.get(user_id, set())

    async def delete_recovery_code(self, user_id: int, code: str) -> None:
        with self._lock:
            self._recovery.get(user_id, set()).discard(_digest(code or ""))

    async def consume_recovery_code(self, user_id: int, code: str) -> bool:
        digest = _digest(code or "")
        with self._lock:
            remaining = self._recovery.get(user_id)
            if not remaining or digest not in remaining:
                return False
            remaining.discard(digest)
            return True

    async def recovery_code_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._recovery.get(user_id, set()))

    async def clear(self, user_id: int) -> None:
        with self._lock:
            self._codes.pop(user_id, None)
            self._recovery.pop(user_id, None)
