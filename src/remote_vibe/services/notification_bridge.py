"""Fan-out of session events to subscribed observers.

Observers are grouped by session id. Each observer owns a bounded
``asyncio.Queue``; emissions enqueue synchronously, so an observer sees events
in exactly the order the pipeline produced them. Delivery is best-effort: a
full queue drops the event with a warning, and nothing is replayed after a
reconnect (clients resync through the HTTP interface).

The external sink (Redis mirror) may block on the network, so it runs on a
single worker thread: events reach it in emission order without stalling
the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Set

from ..domain.session_models import ConversationMessage, PendingQuestion, Session, SessionEvent, TaskResult
from ..infrastructure.events import publish_event


logger = logging.getLogger(__name__)

STATUS_CHANGED = "status_changed"
MESSAGE_RECEIVED = "message_received"
QUESTION_PENDING = "question_pending"
TASK_COMPLETED = "task_completed"

EventSink = Callable[[str, Dict[str, Any]], None]


class Observer:
    def __init__(self, observer_id: str, maxsize: int = 1000) -> None:
        self.observer_id = observer_id
        self.queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, event: SessionEvent) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Observer %s queue full, dropping %s for session %s (dropped=%d)",
                self.observer_id,
                event.event,
                event.session_id,
                self.dropped,
            )
            return False

    async def next_event(self) -> SessionEvent:
        return await self.queue.get()


class NotificationBridge:
    def __init__(self, queue_size: int = 1000, sink: Optional[EventSink] = publish_event) -> None:
        self._queue_size = queue_size
        self._sink = sink
        self._observers: Dict[str, Observer] = {}
        self._groups: Dict[str, Set[str]] = {}
        self._lock = RLock()
        self._closed = False
        self._sink_pool: Optional[ThreadPoolExecutor] = None
        if sink is not None:
            self._sink_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="remote-vibe-sink")

    def _now_iso(self) -> str:
        return datetime.now(UTC).isoformat().replace("+00:00", "Z")

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------
    def register(self, observer_id: str) -> Observer:
        with self._lock:
            observer = self._observers.get(observer_id)
            if observer is None:
                observer = Observer(observer_id, maxsize=self._queue_size)
                self._observers[observer_id] = observer
            return observer

    def unregister(self, observer_id: str) -> None:
        with self._lock:
            self._observers.pop(observer_id, None)
            for session_id in list(self._groups):
                members = self._groups[session_id]
                members.discard(observer_id)
                if not members:
                    del self._groups[session_id]

    def subscribe(self, observer_id: str, session_id: str) -> Observer:
        with self._lock:
            observer = self.register(observer_id)
            self._groups.setdefault(session_id, set()).add(observer_id)
        logger.info("Observer %s joined session %s", observer_id, session_id)
        return observer

    def unsubscribe(self, observer_id: str, session_id: str) -> bool:
        with self._lock:
            members = self._groups.get(session_id)
            if not members or observer_id not in members:
                return False
            members.discard(observer_id)
            if not members:
                del self._groups[session_id]
        logger.info("Observer %s left session %s", observer_id, session_id)
        return True

    def subscribers(self, session_id: str) -> List[str]:
        with self._lock:
            return sorted(self._groups.get(session_id, set()))

    def subscriptions(self, observer_id: str) -> List[str]:
        with self._lock:
            return sorted(sid for sid, members in self._groups.items() if observer_id in members)

    def close_session(self, session_id: str) -> None:
        """Drop every subscription to ``session_id``; later emissions reach nobody."""
        with self._lock:
            self._groups.pop(session_id, None)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------
    def _emit(self, event_type: str, session_id: str, payload: Dict[str, Any]) -> int:
        event = SessionEvent(event=event_type, session_id=session_id, payload=payload, timestamp=self._now_iso())
        with self._lock:
            targets = [self._observers[oid] for oid in self._groups.get(session_id, ()) if oid in self._observers]
            delivered = sum(1 for observer in targets if observer.deliver(event))
            if self._sink_pool is not None and not self._closed:
                self._sink_pool.submit(self._publish, event_type, event.model_dump(mode="json"))
        return delivered

    def _publish(self, event_type: str, body: Dict[str, Any]) -> None:
        try:
            self._sink(event_type, body)
        except Exception:
            logger.exception("External event sink failed for %s", event_type)

    def close(self) -> None:
        """Flush events already handed to the sink and stop mirroring new ones."""
        with self._lock:
            self._closed = True
        if self._sink_pool is not None:
            self._sink_pool.shutdown(wait=True)

    def on_status_changed(self, session: Session) -> int:
        return self._emit(STATUS_CHANGED, session.session_id, session.model_dump(mode="json"))

    def on_message_added(self, message: ConversationMessage) -> int:
        return self._emit(MESSAGE_RECEIVED, message.session_id, message.model_dump(mode="json"))

    def on_question_pending(self, question: PendingQuestion) -> int:
        return self._emit(QUESTION_PENDING, question.session_id, question.model_dump(mode="json"))

    def on_task_completed(self, result: TaskResult) -> int:
        return self._emit(TASK_COMPLETED, result.session_id, result.model_dump(mode="json"))
