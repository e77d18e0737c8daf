"""Tests for the 2FA code stores (in-memory and Redis-backed)."""

import hashlib
from unittest.mock import AsyncMock, MagicMock

import pytest

from authflow.storage.redis_cache import RedisCodeStore, SyncRedisCodeStore


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


class TestMemoryCodeStore:
    async def test_issued_code_is_six_digits_and_valid(self, code_store):
        code = await code_store.issue_code(1, 300)
        assert len(code) == 6 and code.isdigit()
        assert await code_store.is_code_valid(1, code)
        assert not await code_store.is_code_valid(2, code)

    async def test_code_expires(self, code_store, clock):
        code = await code_store.issue_code(1, 30)
        clock.advance(seconds=31)
        assert not await code_store.is_code_valid(1, code)
        assert not await code_store.consume_code(1, code)

    async def test_consume_code_is_single_use(self, code_store):
        code = await code_store.issue_code(1, 300)
        assert await code_store.consume_code(1, code)
        assert not await code_store.consume_code(1, code)

    async def test_wrong_code_is_not_consumed(self, code_store):
        code = await code_store.issue_code(1, 300)
        wrong = "000000" if code != "000000" else "111111"
        assert not await code_store.consume_code(1, wrong)
        assert await code_store.is_code_valid(1, code)

    async def test_new_code_replaces_previous(self, code_store):
        first = await code_store.issue_code(1, 300)
        second = await code_store.issue_code(1, 300)
        if first != second:
            assert not await code_store.is_code_valid(1, first)
        assert await code_store.is_code_valid(1, second)

    async def test_recovery_codes(self, code_store):
        await code_store.set_recovery_codes(1, ["aaa", "bbb"])
        assert await code_store.recovery_code_count(1) == 2
        assert await code_store.is_recovery_code_valid(1, "aaa")

        assert await code_store.consume_recovery_code(1, "aaa")
        assert not await code_store.consume_recovery_code(1, "aaa")
        assert not await code_store.is_recovery_code_valid(1, "aaa")
        assert await code_store.recovery_code_count(1) == 1

    async def test_delete_recovery_code_is_noop_when_absent(self, code_store):
        await code_store.delete_recovery_code(1, "never-set")
        await code_store.set_recovery_codes(1, ["ccc"])
        await code_store.delete_recovery_code(1, "ccc")
        await code_store.delete_recovery_code(1, "ccc")
        assert await code_store.recovery_code_count(1) == 0

    async def test_set_recovery_codes_replaces_old_set(self, code_store):
        await code_store.set_recovery_codes(1, ["old"])
        await code_store.set_recovery_codes(1, ["new"])
        assert not await code_store.is_recovery_code_valid(1, "old")
        assert await code_store.is_recovery_code_valid(1, "new")

    async def test_clear(self, code_store):
        code = await code_store.issue_code(1, 300)
        await code_store.set_recovery_codes(1, ["ddd"])
        await code_store.clear(1)
        assert not await code_store.is_code_valid(1, code)
        assert await code_store.recovery_code_count(1) == 0


class TestRedisCodeStore:
    @pytest.fixture
    def store(self):
        store = RedisCodeStore("redis://localhost:6379/15")
        store.client = MagicMock()
        return store

    async def test_issue_code_sets_ttl(self, store):
        store.client.set = AsyncMock(return_value=True)
        code = await store.issue_code(5, 120)
        store.client.set.assert_awaited_once_with("2fa:code:5", code, ex=120)

    async def test_is_code_valid_compares_stored_value(self, store):
        store.client.get = AsyncMock(return_value="123456")
        assert await store.is_code_valid(5, "123456")
        assert not await store.is_code_valid(5, "654321")

        store.client.get = AsyncMock(return_value=None)
        assert not await store.is_code_valid(5, "123456")

    async def test_consume_code_runs_compare_and_delete(self, store):
        store._consume = AsyncMock(return_value=1)
        assert await store.consume_code(5, "123456")
        store._consume.assert_awaited_once_with(keys=["2fa:code:5"], args=["123456"])

        store._consume = AsyncMock(return_value=0)
        assert not await store.consume_code(5, "123456")

    async def test_recovery_codes_stored_as_digests(self, store):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, 2])
        store.client.pipeline = MagicMock(return_value=pipe)

        await store.set_recovery_codes(5, ["aaa", "bbb"])

        pipe.delete.assert_called_once_with("2fa:recovery:5")
        pipe.sadd.assert_called_once_with("2fa:recovery:5", _digest("aaa"), _digest("bbb"))
        pipe.execute.assert_awaited_once()

    async def test_consume_recovery_code_uses_srem_result(self, store):
        store.client.srem = AsyncMock(return_value=1)
        assert await store.consume_recovery_code(5, "aaa")
        store.client.srem.assert_awaited_once_with("2fa:recovery:5", _digest("aaa"))

        store.client.srem = AsyncMock(return_value=0)
        assert not await store.consume_recovery_code(5, "aaa")


class TestSyncRedisCodeStore:
    @pytest.fixture
    def store(self):
        store = SyncRedisCodeStore("redis://localhost:6379/15")
        store.client = MagicMock()
        return store

    async def test_consume_recovery_code(self, store):
        store.client.srem.return_value = 1
        assert await store.consume_recovery_code(3, "zzz")
        store.client.srem.assert_called_once_with("2fa:recovery:3", _digest("zzz"))

    async def test_clear_removes_both_keys(self, store):
        await store.clear(3)
        store.client.delete.assert_called_once_with("2fa:code:3", "2fa:recovery:3")

    async def test_recovery_code_count(self, store):
        store.client.scard.return_value = 4
        assert await store.recovery_code_count(3) == 4
