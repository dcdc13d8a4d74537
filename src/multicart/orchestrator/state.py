"""Session lifecycle states and the discovery pipeline state schema.

``ALLOWED_TRANSITIONS`` is the single source of truth for which session
status changes are legal.  ``SessionTransitions`` applies them against the
record store and announces every change on the event stream.
``DiscoveryGraphState`` describes the data flowing through the LangGraph
discovery pipeline.
"""

from __future__ import annotations

from typing import TypedDict

import structlog

from multicart.errors import InvalidTransitionError, SessionNotFoundError
from multicart.models import Product, RankedCart, Session, SessionStatus, ShoppingSpec
from multicart.store import MemoryStore
from multicart.streaming import EVENT_STATUS_CHANGED, SessionEventStream

logger = structlog.get_logger(__name__)

S = SessionStatus

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    S.BRIEFING: frozenset({S.DISCOVERING, S.FAILED}),
    S.DISCOVERING: frozenset({S.RANKING, S.FAILED}),
    S.RANKING: frozenset({S.CART, S.FAILED}),
    S.CART: frozenset({S.CHECKOUT, S.FAILED}),
    S.CHECKOUT: frozenset({S.COMPLETE, S.FAILED}),
    S.COMPLETE: frozenset(),
    S.FAILED: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """True when ``target`` is reachable from ``current`` in one step.

    Re-applying the current status counts as allowed (a no-op).
    """
    return current == target or target in ALLOWED_TRANSITIONS[current]


class SessionTransitions:
    """Applies validated status changes to stored sessions.

    Never takes the store's transaction lock itself, so it can be called
    from inside a caller's transaction.
    """

    def __init__(self, store: MemoryStore, events: SessionEventStream) -> None:
        self._store = store
        self._events = events

    async def load(self, session_id: str) -> Session:
        session = await self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def ensure_allowed(self, session: Session, target: SessionStatus) -> None:
        if not can_transition(session.status, target):
            raise InvalidTransitionError(session.id, session.status.value, target.value)

    async def transition(self, session_id: str, target: SessionStatus) -> Session:
        """Move a session to ``target``.

        Raises
        ------
        SessionNotFoundError
            The session does not exist.
        InvalidTransitionError
            ``target`` is not reachable from the current status.
        """
        session = await self.load(session_id)
        if session.status == target:
            return session
        self.ensure_allowed(session, target)

        changed = await self._store.set_session_status_if(session_id, {session.status}, target)
        if not changed:
            current = await self.load(session_id)
            if current.status == target:
                return current
            raise InvalidTransitionError(session_id, current.status.value, target.value)

        logger.info(
            "session_transition",
            session_id=session_id,
            from_status=session.status.value,
            to_status=target.value,
        )
        await self._events.emit(
            session_id,
            EVENT_STATUS_CHANGED,
            data={"from": session.status.value, "to": target.value},
            message=f"Session moved to {target.value}",
        )
        return await self.load(session_id)


class DiscoveryGraphState(TypedDict, total=False):
    """Typed dictionary describing the state flowing through the discovery graph."""

    # --- Input ----------------------------------------------------------------
    session_id: str
    spec: ShoppingSpec

    # --- Discovery ------------------------------------------------------------
    queries: list[str]
    products: list[Product]
    failed_queries: list[str]

    # --- Ranking --------------------------------------------------------------
    carts: list[RankedCart]

    # --- Outcome --------------------------------------------------------------
    status: SessionStatus
