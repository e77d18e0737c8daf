from __future__ import annotations

import hashlib
import secrets
from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def _code_key(user_id: int) -> str:
    return f"2fa:code:{user_id}"


def _recovery_key(user_id: int) -> str:
    return f"2fa:recovery:{user_id}"


class RedisCodeStore:
    """Redis-backed store for 2FA codes and recovery codes.

    Codes expire through Redis TTLs. Consumption is atomic: a Lua
    compare-and-delete for one-time codes and ``SREM`` for recovery codes, so
    two concurrent requests presenting the same code cannot both succeed.
    """

    # Delete the key only if it still holds the presented code
    _CONSUME_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value and value == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def issue_code(self, user_id: int, ttl_seconds: int) -> str:
        code = f"{secrets.randbelow(10**6):06d}"
        await self.client.set(_code_key(user_id), code, ex=max(1, ttl_seconds))
        return code

    async def is_code_valid(self, user_id: int, code: str) -> bool:
        stored = await self.client.get(_code_key(user_id))
        return bool(stored) and secrets.compare_digest(
            stored.encode(), (code or "").encode()
        )

    async def consume_code(self, user_id: int, code: str) -> bool:
        return bool(await self._consume(keys=[_code_key(user_id)], args=[code or ""]))

    async def set_recovery_codes(self, user_id: int, codes: List[str]) -> None:
        key = _recovery_key(user_id)
        pipe = self.client.pipeline()
        pipe.delete(key)
        if codes:
            pipe.sadd(key, *[_digest(c) for c in codes])
        await pipe.execute()

    async def is_recovery_code_valid(self, user_id: int, code: str) -> bool:
        return bool(
            await self.client.sismember(_recovery_key(user_id), _digest(code or ""))
        )

    async def delete_recovery_code(self, user_id: int, code: str) -> None:
        await self.client.srem(_recovery_key(user_id), _digest(code or ""))

    async def consume_recovery_code(self, user_id: int, code: str) -> bool:
        removed = await self.client.srem(_recovery_key(user_id), _digest(code or ""))
        return removed == 1

    async def recovery_code_count(self, user_id: int) -> int:
        return int(await self.client.scard(_recovery_key(user_id)))

    async def clear(self, user_id: int) -> None:
        await self.client.delete(_code_key(user_id), _recovery_key(user_id))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCodeStore:
    """Synchronous Redis code store for use in tests and scripts.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so it can be awaited uniformly like
    :class:`RedisCodeStore`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(RedisCodeStore._CONSUME_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def issue_code(self, user_id: int, ttl_seconds: int) -> str:
        code = f"{secrets.randbelow(10**6):06d}"
        self.client.set(_code_key(user_id), code, ex=max(1, ttl_seconds))
        return code

    async def is_code_valid(self, user_id: int, code: str) -> bool:
        stored: Optional[str] = self.client.get(_code_key(user_id))
        return bool(stored) and secrets.compare_digest(
            stored.encode(), (code or "").encode()
        )

    async def consume_code(self, user_id: int, code: str) -> bool:
        return bool(self._consume(keys=[_code_key(user_id)], args=[code or ""]))

    async def set_recovery_codes(self, user_id: int, codes: List[str]) -> None:
        key = _recovery_key(user_id)
        pipe = self.client.pipeline()
        pipe.delete(key)
        if codes:
            pipe.sadd(key, *[_digest(c) for c in codes])
        pipe.execute()

    async def is_recovery_code_valid(self, user_id: int, code: str) -> bool:
        return bool(self.client.sismember(_recovery_key(user_id), _digest(code or "")))

    async def delete_recovery_code(self, user_id: int, code: str) -> None:
        self.client.srem(_recovery_key(user_id), _digest(code or ""))

    async def consume_recovery_code(self, user_id: int, code: str) -> bool:
        return self.client.srem(_recovery_key(user_id), _digest(code or "")) == 1

    async def recovery_code_count(self, user_id: int) -> int:
        return int(self.client.scard(_recovery_key(user_id)))

    async def clear(self, user_id: int) -> None:
        self.client.delete(_code_key(user_id), _recovery_key(user_id))

    async def close(self) -> None:
        self.client.close()
