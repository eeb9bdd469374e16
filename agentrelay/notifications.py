"""Notification bus shared by the session, batch and group-chat layers."""

import logging
import queue
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

logger = logging.getLogger(__name__)

_MAX_BUFFER = 2000

MESSAGE_APPENDED = "message-appended"
STATE_CHANGED = "state-changed"
PARTICIPANTS_CHANGED = "participants-changed"
USAGE_UPDATED = "usage-updated"
HISTORY_ENTRY_ADDED = "history-entry-added"
PARTICIPANT_STATE_CHANGED = "participant-state-changed"
SESSION_STATE_CHANGED = "session-state-changed"

KINDS = (
    MESSAGE_APPENDED, STATE_CHANGED, PARTICIPANTS_CHANGED, USAGE_UPDATED,
    HISTORY_ENTRY_ADDED, PARTICIPANT_STATE_CHANGED, SESSION_STATE_CHANGED,
)


@dataclass(slots=True)
class Notification:
    kind: str
    scope_id: str          # chat id or session id
    payload: Any = None
    seq: int = 0
    timestamp: datetime = field(default_factory=datetime.now)


class NotificationBus:
    """Thread-safe ring buffer with queue and callback subscribers.

    Queue subscribers that fall behind lose new notifications rather than
    blocking the emitter.
    """

    def __init__(self, maxlen: int = _MAX_BUFFER):
        self._items: deque[Notification] = deque(maxlen=maxlen)
        self._counter = 0
        self._lock = threading.Lock()
        self._queues: list[tuple[Optional[str], queue.Queue]] = []
        self._callbacks: list[tuple[Optional[str], Callable[[Notification], None]]] = []

    def emit(self, kind: str, scope_id: str, payload: Any = None) -> Notification:
        with self._lock:
            self._counter += 1
            note = Notification(kind, scope_id, payload, seq=self._counter)
            self._items.append(note)
            queues = list(self._queues)
            callbacks = list(self._callbacks)

        for wanted, q in queues:
            if wanted is None or wanted == kind:
                try:
                    q.put_nowait(note)
                except queue.Full:
                    pass

        for wanted, fn in callbacks:
            if wanted is None or wanted == kind:
                try:
                    fn(note)
                except Exception:
                    logger.exception("Notification callback failed for %s", kind)

        return note

    @property
    def counter(self) -> int:
        with self._lock:
            return self._counter

    def get_since(self, since: int) -> list[Notification]:
        with self._lock:
            return [n for n in self._items if n.seq > since]

    def get_all(self, kind: Optional[str] = None) -> list[Notification]:
        with self._lock:
            return [n for n in self._items if kind is None or n.kind == kind]

    def subscribe(self, kind: Optional[str] = None) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=500)
        with self._lock:
            self._queues.append((kind, q))
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            self._queues = [(k, sq) for k, sq in self._queues if sq is not q]

    def on(self, kind: Optional[str], fn: Callable[[Notification], None]) -> Callable[[], None]:
        """Register a callback; returns a function that removes it."""
        entry = (kind, fn)
        with self._lock:
            self._callbacks.append(entry)

        def off() -> None:
            with self._lock:
                if entry in self._callbacks:
                    self._callbacks.remove(entry)

        return off
