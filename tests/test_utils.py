"""
Tests for backoff and keyed locks.
"""

import asyncio

import pytest

from alertflow.utils.locks import KeyedLock
from alertflow.utils.retry import backoff_delay, retry_with_backoff


class TestBackoff:
    """Exponential backoff delays."""

    def test_exponential_and_capped(self):
        delays = [backoff_delay(n, base=1.0, factor=2.0, maximum=5.0, jitter=False) for n in (1, 2, 3, 4)]
        assert delays == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounded(self):
        for _ in range(20):
            assert 2.0 <= backoff_delay(2, base=1.0, jitter=True) <= 2.2

    def test_zero_base_disables(self):
        assert backoff_delay(3, base=0.0) == 0.0

    @pytest.mark.asyncio
    async def test_decorator_retries_listed_exceptions(self):
        calls = []

        @retry_with_backoff(max_retries=2, base=0.0, exceptions=(ConnectionError,))
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_decorator_does_not_retry_other_exceptions(self):
        calls = []

        @retry_with_backoff(max_retries=2, base=0.0, exceptions=(ConnectionError,))
        async def broken():
            calls.append(1)
            raise KeyError("nope")

        with pytest.raises(KeyError):
            await broken()
        assert len(calls) == 1


class TestKeyedLock:
    """Per-key locking."""

    @pytest.mark.asyncio
    async def test_same_key_serialises(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold(["ip:10.0.0.5"]):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_disjoint_keys_run_concurrently(self):
        locks = KeyedLock()
        entered = asyncio.Event()

        async def first():
            async with locks.hold(["a"]):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def second():
            async with locks.hold(["b"]):
                entered.set()

        await asyncio.gather(first(), second())

    @pytest.mark.asyncio
    async def test_unused_locks_dropped(self):
        locks = KeyedLock()
        async with locks.hold(["a", "b"]):
            assert locks.locked("a") and locks.locked("b")
            assert len(locks) == 2
        assert len(locks) == 0
        assert not locks.locked("a")
