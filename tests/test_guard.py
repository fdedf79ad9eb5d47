"""Tests for the per-session concurrency guard."""

from __future__ import annotations

import asyncio

import pytest

from agentloop.ai.orchestration.guard import ConcurrencyGuard, GuardState


@pytest.mark.asyncio
async def test_hold_serializes_owners() -> None:
    guard = ConcurrencyGuard("s1")
    order: list[str] = []

    async def _work(owner: str) -> None:
        async with guard.hold(owner) as ticket:
            assert guard.holder == owner
            assert ticket.owner == owner
            order.append(f"{owner}:start")
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            order.append(f"{owner}:end")

    await asyncio.gather(_work("send"), _work("dispatch"))

    assert order == ["send:start", "send:end", "dispatch:start", "dispatch:end"]
    assert guard.state is GuardState.IDLE
    assert guard.holder is None


@pytest.mark.asyncio
async def test_try_acquire_rejects_when_busy() -> None:
    guard = ConcurrencyGuard("s1")
    ticket = await guard.acquire("first")

    assert guard.locked
    assert await guard.try_acquire("second") is None

    assert guard.release(ticket)
    second = await guard.try_acquire("second")
    assert second is not None
    assert guard.release(second)


@pytest.mark.asyncio
async def test_stale_release_is_refused(caplog: pytest.LogCaptureFixture) -> None:
    guard = ConcurrencyGuard("s1")
    first = await guard.acquire("first")
    guard.release(first)
    current = await guard.acquire("second")

    with caplog.at_level("WARNING"):
        assert not guard.release(first)

    assert guard.holder == "second"
    assert "stale release" in caplog.text
    guard.release(current)


@pytest.mark.asyncio
async def test_state_listener_sees_transitions() -> None:
    transitions: list[tuple[GuardState, str | None]] = []
    guard = ConcurrencyGuard("s1", on_state_change=lambda state, owner: transitions.append((state, owner)))

    async with guard.hold("job-1"):
        pass

    assert transitions == [(GuardState.BUSY, "job-1"), (GuardState.IDLE, None)]


@pytest.mark.asyncio
async def test_guards_of_different_sessions_are_independent() -> None:
    first, second = ConcurrencyGuard("a"), ConcurrencyGuard("b")

    async with first.hold("job-a"):
        ticket = await second.try_acquire("job-b")
        assert ticket is not None
        second.release(ticket)


@pytest.mark.asyncio
async def test_try_acquire_rejects_while_owners_are_queued() -> None:
    guard = ConcurrencyGuard("s1")
    first = await guard.acquire("first")
    queued = asyncio.create_task(guard.acquire("queued"))
    await asyncio.sleep(0)
    assert guard.waiting == 1

    guard.release(first)

    assert not guard.locked
    assert await guard.try_acquire("late") is None
    ticket = await queued
    assert guard.holder == "queued"
    assert guard.waiting == 0
    guard.release(ticket)
