"""Demand-driven fan-out of streamed text fragments.

One producer (the send job reading the backend stream) submits fragments; any
number of subscribers pull them at their own pace. Every subscriber owns a
bounded buffer and a demand counter, so a slow consumer only ever holds back
the producer once its own buffer is full and never delays the others.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections import deque
from typing import Any, Callable, Deque, Protocol

__all__ = [
    "UNBOUNDED",
    "StreamSubscriber",
    "Subscription",
    "TokenStreamPipeline",
]

LOGGER = logging.getLogger(__name__)

UNBOUNDED = sys.maxsize


class StreamSubscriber(Protocol):
    """Consumer side of :class:`TokenStreamPipeline`.

    Callbacks run on the event loop and must not block.
    """

    def on_subscribe(self, subscription: "Subscription") -> None:
        ...

    def on_next(self, fragment: str) -> None:
        ...

    def on_error(self, error: BaseException) -> None:
        ...

    def on_complete(self) -> None:
        ...


class Subscription:
    """Link between the pipeline and one subscriber."""

    def __init__(self, pipeline: "TokenStreamPipeline", subscriber: StreamSubscriber, buffer_size: int) -> None:
        self._pipeline = pipeline
        self._subscriber = subscriber
        self._capacity = max(1, buffer_size)
        self._buffer: Deque[str] = deque()
        self._demand = 0
        self._cancelled = False
        self._completed = False
        self._error: BaseException | None = None
        self._wakeup = asyncio.Event()
        self._space = asyncio.Event()
        self._space.set()
        self._finished = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Subscriber-facing API
    # ------------------------------------------------------------------

    @property
    def subscriber(self) -> StreamSubscriber:
        return self._subscriber

    @property
    def demand(self) -> int:
        return self._demand

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def request(self, count: int) -> None:
        """Ask for ``count`` more fragments."""
        if count <= 0:
            raise ValueError("request count must be positive")
        if self._cancelled:
            return
        self._demand = min(UNBOUNDED, self._demand + count)
        self._wakeup.set()

    def cancel(self) -> None:
        """Stop delivery to this subscriber; other subscribers are unaffected."""
        if self._cancelled:
            return
        self._cancelled = True
        self._buffer.clear()
        self._space.set()
        self._wakeup.set()

    # ------------------------------------------------------------------
    # Pipeline-facing API
    # ------------------------------------------------------------------

    def _start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(
            self._deliver(), name=f"pipeline-delivery-{type(self._subscriber).__name__}"
        )

    async def _offer(self, fragment: str) -> None:
        while not self._closed and len(self._buffer) >= self._capacity:
            self._space.clear()
            await self._space.wait()
        if self._closed:
            return
        self._buffer.append(fragment)
        self._wakeup.set()

    def _complete(self) -> None:
        self._completed = True
        self._wakeup.set()

    def _fail(self, error: BaseException) -> None:
        if self._error is None:
            self._error = error
        self._space.set()
        self._wakeup.set()

    @property
    def _closed(self) -> bool:
        return self._cancelled or self._error is not None or self._finished.is_set()

    async def _wait_finished(self) -> None:
        await self._finished.wait()

    async def _deliver(self) -> None:
        try:
            while not self._cancelled:
                if self._error is not None:
                    self._buffer.clear()
                    self._space.set()
                    self._invoke(self._subscriber.on_error, self._error)
                    return
                if self._buffer and self._demand > 0:
                    fragment = self._buffer.popleft()
                    self._demand -= 1
                    self._space.set()
                    if not self._invoke(self._subscriber.on_next, fragment):
                        return
                    continue
                if self._completed and not self._buffer:
                    self._invoke(self._subscriber.on_complete)
                    return
                self._wakeup.clear()
                await self._wakeup.wait()
        finally:
            self._finished.set()
            self._space.set()
            self._pipeline._detach(self)

    def _invoke(self, callback: Callable[..., Any], *args: Any) -> bool:
        try:
            callback(*args)
        except Exception:
            LOGGER.exception(
                "Stream subscriber %s failed; cancelling its subscription",
                type(self._subscriber).__name__,
            )
            self.cancel()
            return False
        return True


class TokenStreamPipeline:
    """Broadcasts one stream of text fragments to independent subscribers.

    Example:
        >>> pipeline = TokenStreamPipeline(buffer_size=64)
        >>> pipeline.subscribe(detector)          # doctest: +SKIP
        >>> await pipeline.submit("Hello")        # doctest: +SKIP
        >>> pipeline.complete_normally()          # doctest: +SKIP
        >>> await pipeline.wait_closed()          # doctest: +SKIP
    """

    def __init__(self, buffer_size: int = 256) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")
        self._buffer_size = buffer_size
        self._live: list[Subscription] = []
        self._all: list[Subscription] = []
        self._terminated = False
        self._error: BaseException | None = None

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @property
    def closed(self) -> bool:
        return self._terminated

    @property
    def subscriber_count(self) -> int:
        return len(self._live)

    def subscribe(self, subscriber: StreamSubscriber) -> Subscription:
        """Attach ``subscriber``; must be called from a running event loop."""
        subscription = Subscription(self, subscriber, self._buffer_size)
        self._all.append(subscription)
        if not subscription._invoke(subscriber.on_subscribe, subscription):
            subscription._finished.set()
            return subscription
        self._live.append(subscription)
        if self._error is not None:
            subscription._fail(self._error)
        elif self._terminated:
            subscription._complete()
        subscription._start()
        return subscription

    async def submit(self, fragment: str) -> None:
        """Offer ``fragment`` to every live subscriber."""
        if self._terminated:
            raise RuntimeError("cannot submit to a completed pipeline")
        if not fragment:
            return
        for subscription in list(self._live):
            await subscription._offer(fragment)

    def complete_normally(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        LOGGER.debug("Pipeline complete (%d subscriber(s))", len(self._live))
        for subscription in list(self._live):
            subscription._complete()

    def complete_with_error(self, error: BaseException) -> None:
        if self._terminated:
            return
        self._terminated = True
        self._error = error
        LOGGER.debug("Pipeline failed: %s", error)
        for subscription in list(self._live):
            subscription._fail(error)

    async def wait_closed(self) -> None:
        """Wait until every subscriber received its terminal signal or detached."""
        for subscription in list(self._all):
            await subscription._wait_finished()

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._live:
            self._live.remove(subscription)
