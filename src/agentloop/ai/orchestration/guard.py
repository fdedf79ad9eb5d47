"""Single-flight guard for one conversation session.

The send and dispatch jobs of a session hold the guard for their entire run, so
at most one of them mutates the session's conversation at any time. Other
sessions own their own guards and proceed in parallel.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import AsyncIterator, Protocol

__all__ = ["GuardState", "GuardTicket", "GuardStateListener", "ConcurrencyGuard"]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Guard State
# -----------------------------------------------------------------------------


class GuardState(Enum):
    """State of the session guard."""

    IDLE = auto()
    BUSY = auto()


class GuardStateListener(Protocol):
    """Callback for guard state changes."""

    def __call__(self, state: GuardState, owner: str | None) -> None:
        ...


@dataclass(slots=True, frozen=True)
class GuardTicket:
    """Proof of ownership handed out on acquisition."""

    ticket_id: str
    owner: str
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# -----------------------------------------------------------------------------
# Concurrency Guard
# -----------------------------------------------------------------------------


class ConcurrencyGuard:
    """Per-session exclusion token built on :class:`asyncio.Lock`.

    ``hold()`` queues behind the current holder; ``try_acquire()`` rejects
    immediately when the guard is busy.
    """

    def __init__(self, name: str = "session", *, on_state_change: GuardStateListener | None = None) -> None:
        self._name = name
        self._on_state_change = on_state_change
        self._lock = asyncio.Lock()
        self._ticket: GuardTicket | None = None
        self._counter = 0
        self._waiting = 0

    # ------------------------------------------------------------------
    # Public State
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @property
    def waiting(self) -> int:
        """Number of owners queued in :meth:`acquire`."""
        return self._waiting

    @property
    def state(self) -> GuardState:
        return GuardState.BUSY if self._lock.locked() else GuardState.IDLE

    @property
    def holder(self) -> str | None:
        """Owner label of the current holder, if any."""
        return self._ticket.owner if self._ticket is not None else None

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------

    async def acquire(self, owner: str) -> GuardTicket:
        """Wait for the guard and take it."""
        if self._lock.locked():
            LOGGER.debug("Guard %s busy (holder=%s); %s queued", self._name, self.holder, owner)
        self._waiting += 1
        try:
            await self._lock.acquire()
        finally:
            self._waiting -= 1
        return self._grant(owner)

    async def try_acquire(self, owner: str) -> GuardTicket | None:
        """Take the guard only if it is free right now.

        Returns:
            A ticket if acquired, ``None`` if another job holds the guard.
        """
        # Right after a release the lock reads unlocked while queued owners
        # have not woken yet; they still go first.
        if self._lock.locked() or self._waiting:
            LOGGER.info("Guard %s rejected %s: held by %s", self._name, owner, self.holder)
            return None
        await self._lock.acquire()
        return self._grant(owner)

    def release(self, ticket: GuardTicket) -> bool:
        """Release the guard held under ``ticket``.

        Returns:
            True if released, False if ``ticket`` is not the current holder.
        """
        if self._ticket is None or ticket.ticket_id != self._ticket.ticket_id:
            LOGGER.warning(
                "Guard %s: stale release from %s (holder=%s)",
                self._name,
                ticket.owner,
                self.holder,
            )
            return False
        self._ticket = None
        self._lock.release()
        LOGGER.debug("Guard %s released by %s", self._name, ticket.owner)
        self._notify(GuardState.IDLE, None)
        return True

    @asynccontextmanager
    async def hold(self, owner: str) -> AsyncIterator[GuardTicket]:
        """Hold the guard for the body of an ``async with`` block."""
        ticket = await self.acquire(owner)
        try:
            yield ticket
        finally:
            self.release(ticket)

    # ------------------------------------------------------------------
    # Private Helpers
    # ------------------------------------------------------------------

    def _grant(self, owner: str) -> GuardTicket:
        self._counter += 1
        ticket = GuardTicket(ticket_id=f"{self._name}-{self._counter}", owner=owner)
        self._ticket = ticket
        LOGGER.debug("Guard %s acquired by %s", self._name, owner)
        self._notify(GuardState.BUSY, owner)
        return ticket

    def _notify(self, state: GuardState, owner: str | None) -> None:
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(state, owner)
        except Exception:
            LOGGER.debug("Guard state listener failed", exc_info=True)
