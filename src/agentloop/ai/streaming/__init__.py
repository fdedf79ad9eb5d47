"""Streaming pipeline, function-call detection and stream subscribers."""

from .function_call_detector import (
    DetectorState,
    FunctionCallDetector,
    ProbeResult,
    SentinelProbe,
    parse_function_call,
)
from .pipeline import StreamSubscriber, Subscription, TokenStreamPipeline
from .subscribers import ChatView, NullView, StreamLogger, ViewAppender

__all__ = [
    "ChatView",
    "DetectorState",
    "FunctionCallDetector",
    "NullView",
    "ProbeResult",
    "SentinelProbe",
    "StreamLogger",
    "StreamSubscriber",
    "Subscription",
    "TokenStreamPipeline",
    "ViewAppender",
    "parse_function_call",
]
