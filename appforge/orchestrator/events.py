"""Lifecycle event delivery for pipeline runs.

The orchestrator only publishes events onto an EventChannel and never
waits on whoever consumes them. An EventDispatcher drains the channel on
its own thread and forwards each event to a PipelineListener, so listener
code (a UI, a web socket, a log sink) runs decoupled from the worker.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Iterator, Optional

from appforge.core.models import (
    BuildSucceededEvent,
    CancelledEvent,
    PhaseCompletedEvent,
    PhaseProgressEvent,
    PhaseStartedEvent,
    PipelineErrorEvent,
    PipelineEvent,
    PipelinePhase,
)

logger = logging.getLogger("appforge.orchestrator.events")

_CLOSED = object()


class EventChannel:
    """Thread-safe FIFO of pipeline events with an explicit close marker."""

    def __init__(self, maxsize: int = 0):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)

    def publish(self, event: PipelineEvent) -> None:
        self._queue.put(event)

    def close(self) -> None:
        self._queue.put(_CLOSED)

    def get(self, timeout: Optional[float] = None) -> Optional[PipelineEvent]:
        """Next event, or None once the channel is closed or the wait times out."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def drain(self) -> list[PipelineEvent]:
        """All events currently queued, without blocking."""
        events: list[PipelineEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is not _CLOSED:
                events.append(item)

    def __iter__(self) -> Iterator[PipelineEvent]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            yield item


class PipelineListener:
    """Receiver for pipeline lifecycle callbacks. Override what you need."""

    def on_phase_started(self, phase: PipelinePhase, detail: str) -> None:
        pass

    def on_phase_progress(self, message: str, percent: int) -> None:
        pass

    def on_phase_completed(self, phase: PipelinePhase, result: Any) -> None:
        pass

    def on_error(self, phase: PipelinePhase, message: str) -> None:
        pass

    def on_build_success(self, artifact_location: str) -> None:
        pass

    def on_cancelled(self, reason: str) -> None:
        pass


def dispatch_event(listener: PipelineListener, event: PipelineEvent) -> None:
    """Invoke the listener callback that corresponds to ``event``."""
    if isinstance(event, PhaseStartedEvent):
        listener.on_phase_started(event.phase, event.detail)
    elif isinstance(event, PhaseProgressEvent):
        listener.on_phase_progress(event.message, event.percent)
    elif isinstance(event, PhaseCompletedEvent):
        listener.on_phase_completed(event.phase, event.result)
    elif isinstance(event, PipelineErrorEvent):
        listener.on_error(event.phase, event.message)
    elif isinstance(event, BuildSucceededEvent):
        listener.on_build_success(event.artifact_location)
    elif isinstance(event, CancelledEvent):
        listener.on_cancelled(event.reason)
    else:
        raise TypeError(f"Unknown pipeline event: {type(event).__name__}")


class EventDispatcher:
    """Background thread forwarding channel events to a listener.

    Usage:
        channel = EventChannel()
        dispatcher = EventDispatcher(channel, MyListener()).start()
        orchestrator = PipelineOrchestrator(..., events=channel)
        orchestrator.run("todo app", "Todo")
        dispatcher.stop()
    """

    def __init__(self, channel: EventChannel, listener: PipelineListener):
        self.channel = channel
        self.listener = listener
        self._thread: Optional[threading.Thread] = None

    def start(self) -> EventDispatcher:
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run, name="appforge-event-dispatcher", daemon=True,
            )
            self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Close the channel and wait for already-queued events to be delivered."""
        if self._thread is None:
            return
        self.channel.close()
        self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        for event in self.channel:
            try:
                dispatch_event(self.listener, event)
            except Exception:
                logger.exception("Listener failed handling %s event", event.kind)
