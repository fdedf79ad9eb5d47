"""Runs jobs as asyncio tasks and drives the tool-call loop.

A finished job's follow-up is not started from inside the job. It is put on a
queue as a :class:`ContinueEvent`; the scheduler's consumer task picks it up,
checks the session's tool-iteration budget and schedules it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict

from ..errors import ToolLoopLimitError
from .dispatch_job import ToolDispatchJob
from .jobs import Job, JobResult

if TYPE_CHECKING:  # pragma: no cover
    from ...chat.context import ConversationContext

__all__ = ["ContinueEvent", "JobFinishedCallback", "JobScheduler"]

LOGGER = logging.getLogger(__name__)

JobFinishedCallback = Callable[["ConversationContext", Job, JobResult], None]


@dataclass(slots=True, frozen=True)
class ContinueEvent:
    """Request to run ``job`` as the next step after ``parent``."""

    job: Job
    parent: Job | None = None


class JobScheduler:
    """Schedules jobs on the running event loop.

    Jobs of different sessions run in parallel; jobs of one session serialize
    on that session's guard.
    """

    def __init__(
        self,
        *,
        max_tool_iterations: int = 8,
        on_job_finished: JobFinishedCallback | None = None,
    ) -> None:
        self.max_tool_iterations = max(0, int(max_tool_iterations))
        self._on_job_finished = on_job_finished
        self._tasks: Dict[asyncio.Task[None], Job] = {}
        self._events: asyncio.Queue[ContinueEvent] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._pending = 0
        self._idle: asyncio.Event | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def schedule(self, job: Job) -> asyncio.Task[None]:
        """Start ``job``; must be called from the event loop."""
        if self._closed:
            raise RuntimeError("scheduler is closed")
        self._ensure_consumer()
        self._increment()
        task = asyncio.get_running_loop().create_task(self._drive(job), name=job.job_id)
        self._tasks[task] = job
        task.add_done_callback(self._forget)
        LOGGER.debug("Scheduled %r", job)
        return task

    def active_jobs(self, session_id: str | None = None) -> list[Job]:
        return [job for job in self._tasks.values() if session_id is None or job.context.session_id == session_id]

    def cancel(self, session_id: str) -> int:
        """Cancel every running or queued job of ``session_id``.

        Running jobs stop cooperatively at their next check; jobs still
        waiting for the session guard are cancelled outright.
        """
        count = 0
        for task, job in list(self._tasks.items()):
            if job.context.session_id != session_id:
                continue
            job.cancel()
            if not job.started and not task.done():
                task.cancel()
            count += 1
        if count:
            LOGGER.info("Cancelled %d job(s) for session %s", count, session_id)
        return count

    async def wait_idle(self) -> None:
        """Wait until no job is running and no continue event is queued."""
        if self._idle is None:
            return
        await self._idle.wait()

    async def aclose(self) -> None:
        self._closed = True
        for task, job in list(self._tasks.items()):
            job.cancel()
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._consumer is not None:
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
            self._consumer = None

    # ------------------------------------------------------------------
    # Private Helpers
    # ------------------------------------------------------------------

    def _ensure_consumer(self) -> None:
        if self._events is None:
            self._events = asyncio.Queue()
            self._idle = asyncio.Event()
            self._idle.set()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self._consume(), name="job-scheduler")

    async def _drive(self, job: Job) -> None:
        result = await self._run(job)
        self._report(job, result)
        follow_up = result.follow_up
        if follow_up is None:
            return
        if job.cancelled:
            LOGGER.debug("Dropping follow-up of cancelled %s", job.job_id)
            return
        assert self._events is not None
        self._increment()
        self._events.put_nowait(ContinueEvent(follow_up, parent=job))

    async def _run(self, job: Job) -> JobResult:
        try:
            return await job.run()
        except asyncio.CancelledError:
            if job.cancelled:
                return JobResult.cancelled()
            raise

    async def _consume(self) -> None:
        assert self._events is not None
        while True:
            event = await self._events.get()
            try:
                self._continue(event)
            except Exception:
                LOGGER.exception("Failed to continue after %s", event.parent)
            finally:
                self._events.task_done()
                self._decrement()

    def _continue(self, event: ContinueEvent) -> None:
        job = event.job
        context = job.context
        if job.cancelled or (event.parent is not None and event.parent.cancelled):
            self._report(job, JobResult.cancelled())
            return
        if isinstance(job, ToolDispatchJob):
            if context.tool_iterations >= self.max_tool_iterations:
                error = ToolLoopLimitError(self.max_tool_iterations)
                LOGGER.warning("Session %s: %s", context.session_id, error)
                self._report(job, JobResult.failed(error))
                return
            context.tool_iterations += 1
        self.schedule(job)

    def _report(self, job: Job, result: JobResult) -> None:
        LOGGER.info("%s finished: %s", job.job_id, result.status.value)
        if self._on_job_finished is None:
            return
        try:
            self._on_job_finished(job.context, job, result)
        except Exception:
            LOGGER.exception("on_job_finished callback failed for %s", job.job_id)

    def _forget(self, task: asyncio.Task[None]) -> None:
        job = self._tasks.pop(task, None)
        if task.cancelled():
            if job is not None:
                self._report(job, JobResult.cancelled())
        elif task.exception() is not None:
            LOGGER.error("%s crashed", task.get_name(), exc_info=task.exception())
        self._decrement()

    def _increment(self) -> None:
        self._pending += 1
        if self._idle is not None:
            self._idle.clear()

    def _decrement(self) -> None:
        self._pending -= 1
        if self._pending <= 0 and self._idle is not None:
            self._pending = 0
            self._idle.set()
