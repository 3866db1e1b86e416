"""
Telemetry - structured events emitted by the runtime.

Events are fire-and-forget: they are appended to a bounded in-memory log
and fanned out to attached handlers. A failing handler is logged and
otherwise ignored; it never affects the call that emitted the event.

Event names are dotted strings under the "agentrun" prefix, e.g.
"agentrun.call.start" or "agentrun.progressive_disclosure.sliding_window".
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

PREFIX = "agentrun"
DEFAULT_BUFFER_SIZE = 1000

CALL_START = f"{PREFIX}.call.start"
CALL_STOP = f"{PREFIX}.call.stop"
CALL_EXCEPTION = f"{PREFIX}.call.exception"
CALL_SUMMARY = f"{PREFIX}.call.summary"
STREAM_START = f"{PREFIX}.stream.start"
STREAM_STOP = f"{PREFIX}.stream.stop"
STREAM_CHUNK = f"{PREFIX}.stream.chunk"
STREAM_SUMMARY = f"{PREFIX}.stream.summary"
PROMPT_RENDERED = f"{PREFIX}.prompt.rendered"
LLM_REQUEST = f"{PREFIX}.llm.request"
LLM_RESPONSE = f"{PREFIX}.llm.response"
LLM_ERROR = f"{PREFIX}.llm.error"
HOOK_START = f"{PREFIX}.hook.start"
HOOK_STOP = f"{PREFIX}.hook.stop"
HOOK_ERROR = f"{PREFIX}.hook.error"
PROCESS_RESULTS = f"{PREFIX}.progressive_disclosure.process_results"
SLIDING_WINDOW = f"{PREFIX}.progressive_disclosure.sliding_window"
TOKEN_BASED = f"{PREFIX}.progressive_disclosure.token_based"
TOKEN_LIMIT_WARNING = f"{PREFIX}.token_limit_warning"


@dataclass
class TelemetryEvent:
    """A single emitted event."""
    timestamp: datetime
    name: str
    measurements: dict[str, Any]
    metadata: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "name": self.name,
            "measurements": self.measurements,
            "metadata": self.metadata,
        }


Handler = Callable[[TelemetryEvent], None]


@dataclass
class _Attachment:
    event_names: frozenset[str]
    handler: Handler


@dataclass
class Telemetry:
    """Event emitter with attachable handlers and a bounded event log."""
    buffer_size: int = DEFAULT_BUFFER_SIZE
    events: deque[TelemetryEvent] = field(default_factory=deque, init=False)
    _handlers: dict[str, _Attachment] = field(default_factory=dict, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def __post_init__(self) -> None:
        self.events = deque(maxlen=self.buffer_size)

    def attach(self, handler_id: str, event_names: Iterable[str], handler: Handler) -> None:
        """Attach a handler for the given event names ("*" matches everything)."""
        with self._lock:
            handlers = dict(self._handlers)
            handlers[handler_id] = _Attachment(frozenset(event_names), handler)
            self._handlers = handlers

    def detach(self, handler_id: str) -> bool:
        with self._lock:
            if handler_id not in self._handlers:
                return False
            handlers = dict(self._handlers)
            del handlers[handler_id]
            self._handlers = handlers
            return True

    def emit(
        self,
        name: str,
        measurements: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TelemetryEvent:
        event = TelemetryEvent(
            timestamp=datetime.now(UTC),
            name=name,
            measurements=measurements or {},
            metadata=metadata or {},
        )
        self.events.append(event)
        for handler_id, attachment in self._handlers.items():
            if name not in attachment.event_names and "*" not in attachment.event_names:
                continue
            try:
                attachment.handler(event)
            except Exception as e:
                logger.warning(f"Telemetry handler {handler_id} failed on {name}: {e}")
        return event

    @contextmanager
    def span(self, prefix: str, metadata: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        """
        Emit <prefix>.start, then <prefix>.stop or <prefix>.exception.

        The yielded dict is merged into the stop metadata so the caller can
        report status, usage or an error.
        """
        metadata = dict(metadata or {})
        stop_metadata: dict[str, Any] = {}
        start = time.monotonic()
        self.emit(f"{prefix}.start", {"system_time": time.time()}, metadata)
        try:
            yield stop_metadata
        except BaseException as e:
            duration_ms = (time.monotonic() - start) * 1000
            self.emit(
                f"{prefix}.exception",
                {"duration": duration_ms},
                {**metadata, "kind": type(e).__name__, "reason": str(e)},
            )
            raise
        duration_ms = (time.monotonic() - start) * 1000
        self.emit(f"{prefix}.stop", {"duration": duration_ms}, {**metadata, **stop_metadata})

    def events_named(self, name: str) -> list[TelemetryEvent]:
        return [e for e in self.events if e.name == name]

    def clear(self) -> None:
        self.events.clear()


_default = Telemetry()


def get_telemetry() -> Telemetry:
    """The process-wide telemetry instance."""
    return _default


def emit(
    name: str,
    measurements: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> TelemetryEvent:
    return _default.emit(name, measurements, metadata)
