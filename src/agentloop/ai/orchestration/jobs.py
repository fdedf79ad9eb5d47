"""Job base class, outcomes and shared turn collaborators."""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import AgentLoopError, TurnCancelledError
from ..streaming.subscribers import ChatView, NullView

if TYPE_CHECKING:  # pragma: no cover
    from ...chat.context import ConversationContext
    from ...services.settings import Settings
    from ..client import ChatBackend
    from ..resources.cache import ResourceCache
    from ..tools.registry import ToolRegistry
    from .request_builder import RequestBuilder

__all__ = ["JobStatus", "JobResult", "TurnServices", "Job"]

LOGGER = logging.getLogger(__name__)


class JobStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class JobResult:
    """Outcome of one job run.

    ``follow_up`` is the next job of the tool loop; the scheduler turns it into
    a continue event.
    """

    status: JobStatus
    error: BaseException | None = None
    follow_up: "Job | None" = None

    @classmethod
    def ok(cls, follow_up: "Job | None" = None) -> "JobResult":
        return cls(JobStatus.OK, follow_up=follow_up)

    @classmethod
    def failed(cls, error: BaseException) -> "JobResult":
        return cls(JobStatus.ERROR, error=error)

    @classmethod
    def cancelled(cls) -> "JobResult":
        return cls(JobStatus.CANCELLED)

    @property
    def is_ok(self) -> bool:
        return self.status is JobStatus.OK


@dataclass(slots=True)
class TurnServices:
    """Collaborators shared by every job of a controller."""

    backend: "ChatBackend"
    registry: "ToolRegistry"
    resource_cache: "ResourceCache"
    request_builder: "RequestBuilder"
    settings: "Settings"
    view: ChatView = field(default_factory=NullView)


class Job(ABC):
    """Unit of work bound to one session.

    :meth:`run` holds the session guard for the whole body and converts every
    failure into a :class:`JobResult`; only task cancellation escapes.
    """

    kind = "job"

    def __init__(self, context: "ConversationContext", services: TurnServices) -> None:
        self.context = context
        self.services = services
        self.job_id = f"{self.kind}-{uuid.uuid4().hex[:8]}"
        self._cancelled = False
        self._started = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def started(self) -> bool:
        """True once the job holds the session guard."""
        return self._started

    def cancel(self) -> None:
        if not self._cancelled:
            LOGGER.debug("Cancel requested for %s (session=%s)", self.job_id, self.context.session_id)
        self._cancelled = True

    async def run(self) -> JobResult:
        if self._cancelled:
            return JobResult.cancelled()
        async with self.context.guard.hold(self.job_id):
            self._started = True
            try:
                return await self._execute()
            except TurnCancelledError:
                return JobResult.cancelled()
            except AgentLoopError as exc:
                LOGGER.warning("%s failed: %s", self.job_id, exc)
                return JobResult.failed(exc)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.exception("%s failed unexpectedly", self.job_id)
                return JobResult.failed(exc)

    @abstractmethod
    async def _execute(self) -> JobResult:
        """Job body, called while the guard is held."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(job_id={self.job_id!r}, session={self.context.session_id!r})"
