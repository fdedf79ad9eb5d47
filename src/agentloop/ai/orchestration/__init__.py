"""Conversation loop orchestration: guard, jobs, scheduler and controller."""

from .guard import ConcurrencyGuard, GuardState, GuardTicket
from .jobs import Job, JobResult, JobStatus, TurnServices
from .request_builder import RequestBuilder
from .dispatch_job import ToolDispatchJob
from .send_job import ConversationSendJob
from .scheduler import ContinueEvent, JobScheduler
from .controller import AssistantController

__all__ = [
    "AssistantController",
    "ConcurrencyGuard",
    "ContinueEvent",
    "ConversationSendJob",
    "GuardState",
    "GuardTicket",
    "Job",
    "JobResult",
    "JobScheduler",
    "JobStatus",
    "RequestBuilder",
    "ToolDispatchJob",
    "TurnServices",
]
