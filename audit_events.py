"""
Batch event stream.

Events are modelled as a small tagged union and turned into wire lines in
exactly one place, ``serialize_event``. The wire format is line based:

    LOG:<HH:MM:SS> <message>
    RESULT:<json {url, result}>
    GLOBAL_RESULT:<json {analytics}>
    ERROR:<message>

A clean end of stream is the success marker, so ``DoneEvent`` has no line.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Optional, Union

from audit_models import AnalysisResult, GlobalResult
from audit_settings import BatchAborted

logger = logging.getLogger(__name__)


# --- Cancellation ---

class CancellationToken:
    """One abort signal per batch, checked cooperatively."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Aborted by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise BatchAborted(self.reason or "Aborted")

    async def wait(self) -> None:
        await self._event.wait()


# --- Events ---

@dataclass
class LogEvent:
    message: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ResultEvent:
    url: str
    result: AnalysisResult


@dataclass
class GlobalResultEvent:
    result: GlobalResult


@dataclass
class ErrorEvent:
    message: str


@dataclass
class DoneEvent:
    pass


BatchEvent = Union[LogEvent, ResultEvent, GlobalResultEvent, ErrorEvent, DoneEvent]


def _one_line(text: str) -> str:
    return " ".join(str(text).splitlines())


def serialize_event(event: BatchEvent) -> Optional[str]:
    """Render an event as a newline-terminated wire line, or None for no line."""
    if isinstance(event, LogEvent):
        return f"LOG:{event.timestamp.strftime('%H:%M:%S')} {_one_line(event.message)}\n"
    if isinstance(event, ResultEvent):
        payload = {"url": event.url, "result": event.result.to_dict()}
        return f"RESULT:{json.dumps(payload)}\n"
    if isinstance(event, GlobalResultEvent):
        return f"GLOBAL_RESULT:{json.dumps(event.result.to_dict())}\n"
    if isinstance(event, ErrorEvent):
        return f"ERROR:{_one_line(event.message)}\n"
    if isinstance(event, DoneEvent):
        return None
    raise TypeError(f"Unknown event type: {type(event).__name__}")


# --- Stream ---

_CLOSED = object()


class EventStream:
    """Queue of events for a single batch.

    ``emit`` and ``close`` never raise: emitting after close (or after the
    batch token was cancelled) is dropped, and closing twice is a no-op.
    """

    def __init__(self, token: Optional[CancellationToken] = None):
        self.token = token or CancellationToken()
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._closed = False
        self._producer: Optional["asyncio.Task[None]"] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, producer: "asyncio.Task[None]") -> None:
        self._producer = producer

    def emit(self, event: BatchEvent) -> bool:
        if self._closed or self.token.cancelled:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def wait_closed(self) -> None:
        """Wait for the producing batch to finish its cleanup."""
        if self._producer is not None and not self._producer.done():
            await asyncio.shield(self._producer)

    async def aclose(self, reason: str = "Aborted by user") -> None:
        self.token.cancel(reason)
        try:
            await self.wait_closed()
        finally:
            self.close()

    async def __aiter__(self) -> AsyncIterator[BatchEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]

    async def lines(self) -> AsyncIterator[str]:
        async for event in self:
            line = serialize_event(event)
            if line is not None:
                yield line
