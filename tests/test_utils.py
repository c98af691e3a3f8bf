"""Tests for text interpolation and keyed locks."""
import asyncio

import pytest

from utils.interpolation import fill_placeholders, find_tokens, stringify, substitute_tokens
from utils.locks import KeyedLock


class TestInterpolation:
    def test_stringify(self):
        assert stringify(True) == "true"
        assert stringify(200.0) == "200"
        assert stringify(2.5) == "2.5"

    def test_substitute_tokens(self):
        assert substitute_tokens("Hi {{ name }}, {{ name }}!", {"name": "Ana"}) == "Hi Ana, Ana!"

    def test_missing_and_none_tokens_are_kept(self):
        assert substitute_tokens("{{a}} {{b}}", {"b": None}) == "{{a}} {{b}}"

    def test_placeholders_ignore_double_braces(self):
        text = "{{shop}}: {price} {missing}"
        assert fill_placeholders(text, {"price": 200, "shop": "x"}) == "{{shop}}: 200 {missing}"

    def test_find_tokens(self):
        assert find_tokens("{{a}} and {b} and {{ c }}") == ["a", "c"]
        assert find_tokens(None) == []


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold(("tenant-1", "111")):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("a"):
                inside.set()
                await asyncio.sleep(0.05)

        task = asyncio.create_task(holder())
        await inside.wait()
        assert locks.locked("a")
        async with locks.hold("b"):
            assert locks.locked("a")
        await task

    @pytest.mark.asyncio
    async def test_idle_keys_are_released(self):
        locks = KeyedLock()
        async with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("a")
