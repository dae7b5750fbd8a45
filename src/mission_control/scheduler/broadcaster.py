"""In-process fan-out of progress events to live observers.

A single hub thread owns the subscriber set. Registration, removal and
publishing all travel through one bounded inbox, so the broadcast path needs
no lock and a subscription always sees every message published after its
registration was accepted. Delivery is best effort: a subscriber whose buffer
is full is dropped instead of stalling the hub.
"""

from __future__ import annotations

import itertools
import json
import logging
import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from mission_control.scheduler.models import EventView, PhaseView, StoryView
from mission_control.storage.common import utc_now

logger = logging.getLogger(__name__)

AGENT_STATUS = "agent.status"
TASK_STATUS = "task.status"
PHASE_UPDATED = "phase.updated"
STORY_UPDATED = "story.updated"
EVENT_NEW = "event.new"

_CLOSED = object()


@dataclass(slots=True, frozen=True)
class BroadcastMessage:
    """Typed progress message."""

    type: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type,
                "payload": self.payload,
                "timestamp": self.timestamp.isoformat(),
            },
            ensure_ascii=False,
            sort_keys=True,
            default=str,
        )


class Subscription:
    """Bounded per-observer buffer fed by the hub thread."""

    _ids = itertools.count(1)

    def __init__(self, broadcaster: EventBroadcaster, buffer_size: int) -> None:
        self.subscription_id = next(self._ids)
        self._broadcaster = broadcaster
        self._buffer: queue.Queue[object] = queue.Queue(maxsize=buffer_size)
        self._closed = threading.Event()
        self.dropped = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def get(self, timeout: float | None = None) -> BroadcastMessage | None:
        """Next message, or ``None`` on timeout or once closed and drained."""

        try:
            if self._closed.is_set():
                item = self._buffer.get_nowait()
            else:
                item = self._buffer.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[BroadcastMessage]:
        while True:
            message = self.get()
            if message is None:
                return
            yield message

    def close(self) -> None:
        if not self.closed:
            self._broadcaster.unsubscribe(self)

    def _deliver(self, message: BroadcastMessage) -> bool:
        try:
            self._buffer.put_nowait(message)
        except queue.Full:
            return False
        return True

    def _shutdown(self, *, dropped: bool = False) -> None:
        self.dropped = self.dropped or dropped
        self._closed.set()
        try:
            self._buffer.put_nowait(_CLOSED)
        except queue.Full:
            pass


@dataclass(slots=True)
class _Register:
    subscription: Subscription


@dataclass(slots=True)
class _Unregister:
    subscription: Subscription


@dataclass(slots=True)
class _Publish:
    message: BroadcastMessage


@dataclass(slots=True)
class _Flush:
    done: threading.Event


_STOP = object()


class EventBroadcaster:
    """Explicitly started hub distributing ``BroadcastMessage`` values."""

    def __init__(
        self,
        *,
        inbox_size: int = 1_024,
        subscriber_buffer: int = 256,
        publish_timeout_seconds: float = 0.5,
    ) -> None:
        self.subscriber_buffer = subscriber_buffer
        self.publish_timeout_seconds = publish_timeout_seconds
        self._inbox: queue.Queue[object] = queue.Queue(maxsize=inbox_size)
        self._subscribers: set[Subscription] = set()
        self._thread: threading.Thread | None = None
        self._running = threading.Event()

    @property
    def running(self) -> bool:
        return self._running.is_set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._running.set()
        self._thread = threading.Thread(
            target=self._run,
            name="event-broadcaster",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the hub and close every subscription."""

        thread = self._thread
        if thread is None:
            return
        self._running.clear()
        try:
            self._inbox.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Broadcast inbox full; event broadcaster stop request not queued")
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("Event broadcaster did not stop within %.1fs", timeout)
        self._thread = None

    def subscribe(self, buffer_size: int | None = None) -> Subscription:
        """Register an observer; the subscription is closed at once when the hub is down."""

        subscription = Subscription(self, buffer_size or self.subscriber_buffer)
        if not self.running:
            subscription._shutdown()
            return subscription
        try:
            self._inbox.put(_Register(subscription), timeout=self.publish_timeout_seconds)
        except queue.Full:
            logger.warning(
                "Broadcast inbox full; refusing subscriber %s",
                subscription.subscription_id,
            )
            subscription._shutdown(dropped=True)
            return subscription
        if not self.running:
            # stopped while registering; the hub may never see the request
            subscription._shutdown()
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if not self.running:
            subscription._shutdown()
            return
        try:
            self._inbox.put(_Unregister(subscription), timeout=self.publish_timeout_seconds)
        except queue.Full:
            subscription._shutdown()

    def publish(self, message: BroadcastMessage) -> bool:
        """Hand a message to the hub, blocking at most ``publish_timeout_seconds``."""

        if not self.running:
            return False
        try:
            self._inbox.put(_Publish(message), timeout=self.publish_timeout_seconds)
        except queue.Full:
            logger.warning("Broadcast inbox full; dropping %s message", message.type)
            return False
        return True

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every command enqueued so far has been processed."""

        if not self.running:
            return False
        done = threading.Event()
        self._inbox.put(_Flush(done), timeout=timeout)
        return done.wait(timeout)

    def publish_task_status(self, task_id: str, status: str, progress: float) -> bool:
        return self.publish(
            BroadcastMessage(
                type=TASK_STATUS,
                payload={"task_id": task_id, "status": status, "progress": progress},
            ),
        )

    def publish_agent_status(self, agent_id: str, status: str, task_id: str | None) -> bool:
        return self.publish(
            BroadcastMessage(
                type=AGENT_STATUS,
                payload={"agent_id": agent_id, "status": status, "current_task_id": task_id},
            ),
        )

    def publish_phase(self, phase: PhaseView) -> bool:
        return self.publish(
            BroadcastMessage(
                type=PHASE_UPDATED,
                payload={
                    "phase_id": phase.phase_id,
                    "task_id": phase.task_id,
                    "sequence": phase.sequence,
                    "status": phase.status.value,
                    "summary": phase.summary,
                },
            ),
        )

    def publish_story(self, story: StoryView) -> bool:
        return self.publish(
            BroadcastMessage(
                type=STORY_UPDATED,
                payload={
                    "story_id": story.story_id,
                    "task_id": story.task_id,
                    "passes": story.passes,
                    "iterations": story.iterations,
                    "last_error": story.last_error,
                },
            ),
        )

    def publish_event(self, event: EventView) -> bool:
        return self.publish(
            BroadcastMessage(
                type=EVENT_NEW,
                payload={
                    "id": event.event_id,
                    "type": event.event_type,
                    "message": event.message,
                    "task_id": event.task_id,
                    "agent_id": event.agent_id,
                    "details": event.details,
                    "created_at": event.created_at.isoformat(),
                },
            ),
        )

    def _run(self) -> None:
        try:
            while True:
                command = self._inbox.get()
                if command is _STOP:
                    return
                if isinstance(command, _Register):
                    self._subscribers.add(command.subscription)
                elif isinstance(command, _Unregister):
                    self._subscribers.discard(command.subscription)
                    command.subscription._shutdown()
                elif isinstance(command, _Publish):
                    self._fan_out(command.message)
                elif isinstance(command, _Flush):
                    command.done.set()
        finally:
            for subscription in self._subscribers:
                subscription._shutdown()
            self._subscribers.clear()
            self._drain_inbox()

    def _fan_out(self, message: BroadcastMessage) -> None:
        for subscription in list(self._subscribers):
            if subscription._deliver(message):
                continue
            self._subscribers.discard(subscription)
            subscription._shutdown(dropped=True)
            logger.warning(
                "Dropping slow subscriber %s (buffer full on %s)",
                subscription.subscription_id,
                message.type,
            )

    def _drain_inbox(self) -> None:
        while True:
            try:
                command = self._inbox.get_nowait()
            except queue.Empty:
                return
            if isinstance(command, _Register | _Unregister):
                command.subscription._shutdown()
            elif isinstance(command, _Flush):
                command.done.set()
