"""SSE streaming manager for real-time session updates.

Provides an event bus that the session state machine, the discovery
pipeline and the checkout simulator write to, and that the SSE endpoint
consumes via ``async for`` iteration.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, AsyncIterator

import structlog

from multicart.models import SessionEvent, utcnow

logger = structlog.get_logger(__name__)

# Canonical event type constants
EVENT_SESSION_CREATED = "session_created"
EVENT_INTENT_PARSED = "intent_parsed"
EVENT_CLARIFICATION_PROCESSED = "clarification_processed"
EVENT_SPEC_UPDATED = "spec_updated"
EVENT_STATUS_CHANGED = "status_changed"
EVENT_PRODUCTS_FOUND = "products_found"
EVENT_CARTS_RANKED = "carts_ranked"
EVENT_CART_SELECTED = "cart_selected"
EVENT_CHECKOUT_STARTED = "checkout_started"
EVENT_CHECKOUT_COMPLETED = "checkout_completed"
EVENT_ERROR = "error"

TERMINAL_EVENTS = frozenset({EVENT_CHECKOUT_COMPLETED, EVENT_ERROR})


class SessionEventStream:
    """In-memory pub/sub for session SSE events.

    Each session gets one ``asyncio.Queue`` per live subscriber so that
    multiple SSE clients consume events independently.  Replay history is
    bounded to the newest *max_history* events per session.
    """

    def __init__(self, max_queue_size: int = 256, max_history: int = 200) -> None:
        self._queues: dict[str, list[asyncio.Queue[SessionEvent | None]]] = {}
        self._max_queue_size = max_queue_size
        self._max_history = max_history
        self._history: dict[str, deque[SessionEvent]] = {}

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def emit(
        self,
        session_id: str,
        event_type: str,
        data: dict[str, Any] | None = None,
        message: str = "",
    ) -> SessionEvent:
        """Push an event to all subscribers of *session_id*."""
        event = SessionEvent(
            event_type=event_type,
            session_id=session_id,
            data=data or {},
            message=message,
            timestamp=utcnow(),
        )

        history = self._history.get(session_id)
        if history is None:
            history = self._history[session_id] = deque(maxlen=self._max_history)
        history.append(event)

        queues = self._queues.get(session_id, [])
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "event_queue_full",
                    session_id=session_id,
                    event_type=event_type,
                )

        logger.debug(
            "event_emitted",
            session_id=session_id,
            event_type=event_type,
            subscribers=len(queues),
        )
        return event

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------

    async def subscribe(self, session_id: str) -> AsyncIterator[SessionEvent]:
        """Yield events for *session_id* as they arrive.

        Past events are replayed first.  The iterator stops after a
        terminal event (checkout completed or error) or when
        ``close(session_id)`` is called.
        """
        queue: asyncio.Queue[SessionEvent | None] = asyncio.Queue(
            maxsize=self._max_queue_size
        )
        self._queues.setdefault(session_id, []).append(queue)

        try:
            for past_event in list(self._history.get(session_id, [])):
                yield past_event
                if past_event.event_type in TERMINAL_EVENTS:
                    return

            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
                if event.event_type in TERMINAL_EVENTS:
                    break
        finally:
            session_queues = self._queues.get(session_id, [])
            if queue in session_queues:
                session_queues.remove(queue)

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self, session_id: str) -> None:
        """Signal all subscribers of *session_id* to stop iterating."""
        for queue in self._queues.get(session_id, []):
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                logger.warning("event_queue_full_on_close", session_id=session_id)
        self._queues.pop(session_id, None)

    def clear(self, session_id: str) -> None:
        """Remove all state associated with a session."""
        self.close(session_id)
        self._history.pop(session_id, None)

    def session_ids(self) -> list[str]:
        return sorted(set(self._queues) | set(self._history))

    def get_history(self, session_id: str) -> list[SessionEvent]:
        """Return the retained events for a given session, oldest first."""
        return list(self._history.get(session_id, []))

    def event_types(self, session_id: str) -> list[str]:
        return [e.event_type for e in self._history.get(session_id, [])]
