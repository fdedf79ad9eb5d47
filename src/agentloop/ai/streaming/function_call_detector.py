"""Detection of an inline function-call request inside streamed model text.

The backend announces a tool invocation by emitting text that starts with the
``function_call`` sentinel followed by a JSON object::

    "function_call" : {"id": "1", "name": "fs.read_file", "arguments" : {"path": "a.txt"}}

The object is usually left unterminated because the stream ends right after
the argument text. Only that single level of truncation is repaired: a
dangling ``:`` receives ``{}`` and one closing brace is appended. Anything more
broken is not a call and the turn ends as plain text.
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import Callable, Optional

from ...chat.message_model import FunctionCall
from ..errors import FunctionCallParseError
from .pipeline import Subscription

__all__ = [
    "SENTINEL_NAME",
    "SENTINEL_RE",
    "ProbeResult",
    "classify",
    "SentinelProbe",
    "DetectorState",
    "FunctionCallDetector",
    "parse_function_call",
]

LOGGER = logging.getLogger(__name__)

SENTINEL_NAME = "function_call"
SENTINEL_RE = re.compile(r'\s*"?' + SENTINEL_NAME + r'"?\s*:')

_DECODER = json.JSONDecoder()


# -----------------------------------------------------------------------------
# Sentinel probing
# -----------------------------------------------------------------------------


class ProbeResult(Enum):
    MATCH = "match"
    PENDING = "pending"
    MISMATCH = "mismatch"


def classify(text: str) -> ProbeResult:
    """Decide whether ``text`` starts with, may still become, or cannot be the sentinel."""
    if SENTINEL_RE.match(text):
        return ProbeResult.MATCH
    rest = text.lstrip()
    if rest.startswith('"'):
        rest = rest[1:]
    if len(rest) < len(SENTINEL_NAME):
        return ProbeResult.PENDING if SENTINEL_NAME.startswith(rest) else ProbeResult.MISMATCH
    if not rest.startswith(SENTINEL_NAME):
        return ProbeResult.MISMATCH
    tail = rest[len(SENTINEL_NAME):]
    if tail.startswith('"'):
        tail = tail[1:]
    # Only whitespace can still precede the colon.
    return ProbeResult.PENDING if not tail.strip() else ProbeResult.MISMATCH


class SentinelProbe:
    """Recognises the sentinel even when it is split across fragments.

    Fragments that form a strict prefix of the sentinel are held back and
    probed again together with the next fragment.
    """

    __slots__ = ("_pending",)

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, fragment: str) -> tuple[ProbeResult, str]:
        """Probe ``fragment``; returns the verdict and the text it releases."""
        text = self._pending + fragment
        result = classify(text)
        if result is ProbeResult.PENDING:
            self._pending = text
            return result, ""
        self._pending = ""
        return result, text

    def flush(self) -> str:
        """Release held text; at end of stream it was ordinary text after all."""
        text, self._pending = self._pending, ""
        return text

    def reset(self) -> None:
        self._pending = ""


# -----------------------------------------------------------------------------
# Payload parsing
# -----------------------------------------------------------------------------


def parse_function_call(text: str) -> FunctionCall:
    """Decode ``text`` (sentinel included) into a :class:`FunctionCall`.

    Raises:
        FunctionCallParseError: If the sentinel is missing, the payload is not a
            JSON object after the single-level repair, or it lacks a name.
    """
    match = SENTINEL_RE.match(text)
    if match is None:
        raise FunctionCallParseError("payload does not start with the function_call sentinel", payload=text)
    payload = text[match.end():].rstrip()
    if payload.endswith(":"):
        payload += "{}"
    payload += "}"
    start = payload.find("{")
    if start < 0:
        raise FunctionCallParseError("function_call payload has no JSON object", payload=text)
    try:
        decoded, _ = _DECODER.raw_decode(payload, start)
    except json.JSONDecodeError as exc:
        raise FunctionCallParseError(f"invalid function_call JSON: {exc.msg}", payload=text) from exc
    if not isinstance(decoded, dict):
        raise FunctionCallParseError("function_call payload is not an object", payload=text)
    try:
        return FunctionCall.from_mapping(decoded)
    except ValueError as exc:
        raise FunctionCallParseError(str(exc), payload=text) from exc


# -----------------------------------------------------------------------------
# Detector
# -----------------------------------------------------------------------------


class DetectorState(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    COMPLETE = "complete"
    DISCARDED = "discarded"


class FunctionCallDetector:
    """Pipeline subscriber that accumulates and parses an inline call.

    ``on_function_call`` fires at most once per stream, after the stream
    completed normally and the payload parsed.
    """

    def __init__(self, on_function_call: Optional[Callable[[FunctionCall], None]] = None) -> None:
        self._on_function_call = on_function_call
        self._subscription: Subscription | None = None
        self._probe = SentinelProbe()
        self._buffer: list[str] = []
        self._state = DetectorState.IDLE
        self._call: FunctionCall | None = None

    @property
    def state(self) -> DetectorState:
        return self._state

    @property
    def function_call(self) -> FunctionCall | None:
        return self._call

    @property
    def buffered_text(self) -> str:
        return "".join(self._buffer)

    def on_subscribe(self, subscription: Subscription) -> None:
        self._reset()
        self._call = None
        self._subscription = subscription
        subscription.request(1)

    def on_next(self, fragment: str) -> None:
        if self._state is DetectorState.ACCUMULATING:
            self._buffer.append(fragment)
        elif self._state is DetectorState.IDLE:
            result, released = self._probe.feed(fragment)
            if result is ProbeResult.MATCH:
                self._state = DetectorState.ACCUMULATING
                self._buffer.append(released)
                LOGGER.debug("function_call sentinel detected")
        if self._subscription is not None:
            self._subscription.request(1)

    def on_complete(self) -> None:
        if self._state is not DetectorState.ACCUMULATING:
            self._probe.reset()
            self._state = DetectorState.DISCARDED
            return
        payload = self.buffered_text
        try:
            call = parse_function_call(payload)
        except FunctionCallParseError as exc:
            LOGGER.warning("Discarding function_call payload: %s", exc)
            LOGGER.debug("Unparsed function_call payload: %r", exc.payload)
            self._state = DetectorState.DISCARDED
            return
        self._state = DetectorState.COMPLETE
        if self._call is not None:
            return
        self._call = call
        LOGGER.info("Detected function call %s (id=%s)", call.name, call.id)
        if self._on_function_call is not None:
            self._on_function_call(call)

    def on_error(self, error: BaseException) -> None:
        LOGGER.debug("Detector reset after stream error: %s", error)
        self._reset()

    def _reset(self) -> None:
        self._probe.reset()
        self._buffer.clear()
        self._state = DetectorState.IDLE
