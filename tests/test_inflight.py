from __future__ import annotations

import asyncio

from engine.inflight import InFlightRegistry


def test_concurrent_callers_share_one_run() -> None:
    registry = InFlightRegistry()
    calls: list[str] = []

    async def _work() -> dict:
        calls.append("run")
        await asyncio.sleep(0.01)
        return {"tempo": 120.0}

    async def _main():
        return await asyncio.gather(*(registry.run("track-1", _work) for _ in range(5)))

    results = asyncio.run(_main())

    assert calls == ["run"]
    assert all(result is results[0] for result in results)
    assert registry.in_flight() == []


def test_other_keys_are_not_blocked() -> None:
    registry = InFlightRegistry()
    release = None
    order: list[str] = []

    async def _slow() -> str:
        await release.wait()
        order.append("slow")
        return "slow"

    async def _fast() -> str:
        order.append("fast")
        return "fast"

    async def _main():
        nonlocal release
        release = asyncio.Event()
        slow = asyncio.ensure_future(registry.run("a", _slow))
        await asyncio.sleep(0)
        fast = await registry.run("b", _fast)
        assert registry.in_flight() == ["a"]
        release.set()
        return fast, await slow

    assert asyncio.run(_main()) == ("fast", "slow")
    assert order == ["fast", "slow"]


def test_joiner_cancellation_does_not_cancel_shared_run() -> None:
    registry = InFlightRegistry()

    async def _work() -> str:
        await asyncio.sleep(0.02)
        return "done"

    async def _main():
        first = asyncio.ensure_future(registry.run("k", _work))
        joiner = asyncio.ensure_future(registry.run("k", _work))
        await asyncio.sleep(0)
        joiner.cancel()
        return await first

    assert asyncio.run(_main()) == "done"


def test_failure_is_shared_and_key_released() -> None:
    registry = InFlightRegistry()
    attempts: list[int] = []

    async def _boom() -> None:
        attempts.append(1)
        await asyncio.sleep(0)
        raise RuntimeError("boom")

    async def _main():
        results = await asyncio.gather(
            registry.run("k", _boom),
            registry.run("k", _boom),
            return_exceptions=True,
        )
        return results

    results = asyncio.run(_main())

    assert len(attempts) == 1
    assert all(isinstance(result, RuntimeError) for result in results)
    assert registry.in_flight() == []
