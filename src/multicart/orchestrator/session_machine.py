"""Session state machine.

Owns the lifecycle of a shopping session: briefing (intent parsing and
clarification), the discovery -> ranking pipeline, and read access to the
session with its carts and checkouts.  Cart selection and checkout drive
the later transitions through the same :class:`SessionTransitions`.
"""

from __future__ import annotations

import structlog

from multicart.agents.discovery_agent import DiscoveryEngine
from multicart.agents.ranking_agent import RankingEngine
from multicart.config import Settings
from multicart.errors import MissingShoppingSpecError
from multicart.models import (
    ClarificationResponse,
    DiscoveryOutcome,
    ParsedIntent,
    Session,
    SessionDetails,
    SessionStatus,
    ShoppingSpec,
)
from multicart.orchestrator.graph import compile_discovery_graph
from multicart.orchestrator.planner import (
    IntentParser,
    merge_spec,
    missing_questions,
    spec_from_intent,
)
from multicart.orchestrator.state import SessionTransitions
from multicart.store import MemoryStore
from multicart.streaming import (
    EVENT_CLARIFICATION_PROCESSED,
    EVENT_ERROR,
    EVENT_INTENT_PARSED,
    EVENT_SESSION_CREATED,
    EVENT_SPEC_UPDATED,
    SessionEventStream,
)

logger = structlog.get_logger(__name__)


class SessionStateMachine:
    """Drives a session from BRIEFING to CART."""

    def __init__(
        self,
        store: MemoryStore,
        intent_parser: IntentParser,
        discovery: DiscoveryEngine,
        ranking: RankingEngine,
        transitions: SessionTransitions,
        events: SessionEventStream,
        settings: Settings,
    ) -> None:
        self._store = store
        self._intent_parser = intent_parser
        self._transitions = transitions
        self._events = events
        self._graph = compile_discovery_graph(
            discovery,
            ranking,
            transitions,
            events,
            settings.discovery_limit_per_term,
        )

    # ------------------------------------------------------------------
    # Briefing
    # ------------------------------------------------------------------

    async def create_session(
        self,
        initial_message: str | None = None,
    ) -> tuple[Session, ParsedIntent | None]:
        """Create a session in BRIEFING, parsing ``initial_message`` when given."""
        session = await self._store.create_session()
        logger.info("session_created", session_id=session.id)
        await self._events.emit(session.id, EVENT_SESSION_CREATED, message="Session created")

        if not initial_message or not initial_message.strip():
            return session, None

        session, intent = await self.apply_intent(session.id, initial_message)
        return session, intent

    async def apply_intent(self, session_id: str, message: str) -> tuple[Session, ParsedIntent]:
        """Parse ``message`` and store the resulting spec.

        An existing spec has the new intent's constraints merged into it;
        its scenario and items are replaced by the new reading.
        """
        current = await self._transitions.load(session_id)
        intent = await self._intent_parser.parse_intent(message, session_id)
        spec = spec_from_intent(intent)
        if current.shopping_spec is not None:
            spec = _overlay_intent(current.shopping_spec, spec)

        session = await self._store_spec(session_id, spec)
        await self._events.emit(
            session_id,
            EVENT_INTENT_PARSED,
            data={
                "scenario": intent.scenario,
                "confidence": intent.confidence,
                "raw_items": intent.raw_items,
                "missing": missing_questions(spec),
            },
            message=f"Understood: {intent.scenario}",
        )
        return session, intent

    async def update_spec(self, session_id: str, spec: ShoppingSpec) -> Session:
        """Replace the session's shopping spec wholesale."""
        await self._transitions.load(session_id)
        session = await self._store_spec(session_id, spec)
        await self._events.emit(
            session_id,
            EVENT_SPEC_UPDATED,
            data={"scenario": spec.scenario},
            message="Shopping specification updated",
        )
        return session

    async def clarify(self, session_id: str, response: str) -> ClarificationResponse:
        """Interpret a clarification answer and merge it into the stored spec."""
        session = await self._transitions.load(session_id)
        clarification = await self._intent_parser.process_clarification(
            session_id, session.shopping_spec, response
        )
        merged = merge_spec(session.shopping_spec, clarification.updated_spec)
        await self._store_spec(session_id, merged)

        await self._events.emit(
            session_id,
            EVENT_CLARIFICATION_PROCESSED,
            data={
                "is_complete": clarification.is_complete,
                "next_question": clarification.next_question,
            },
            message=clarification.next_question or "Thanks, that's everything I need.",
        )
        return clarification

    async def pending_questions(self, session_id: str) -> list[str]:
        """Clarifying questions still open for the session's spec."""
        session = await self._transitions.load(session_id)
        return missing_questions(session.shopping_spec)

    # ------------------------------------------------------------------
    # Discovery pipeline
    # ------------------------------------------------------------------

    async def start_discovery(self, session_id: str) -> DiscoveryOutcome:
        """Run discovery and ranking; leaves the session in CART.

        Raises
        ------
        MissingShoppingSpecError
            The session has no shopping spec yet (no transition happens).
        InvalidTransitionError
            The session is not in BRIEFING.
        """
        session = await self._transitions.load(session_id)
        if session.shopping_spec is None:
            raise MissingShoppingSpecError(session_id)

        await self._transitions.transition(session_id, SessionStatus.DISCOVERING)
        logger.info("discovery_started", session_id=session_id, scenario=session.shopping_spec.scenario)

        try:
            final_state = await self._graph.ainvoke(
                {"session_id": session_id, "spec": session.shopping_spec}
            )
        except Exception as exc:
            logger.exception("discovery_pipeline_failed", session_id=session_id)
            await self._transitions.transition(session_id, SessionStatus.FAILED)
            await self._events.emit(
                session_id,
                EVENT_ERROR,
                data={"error": str(exc)},
                message=f"Discovery failed: {exc}",
            )
            raise

        carts = final_state.get("carts", [])
        return DiscoveryOutcome(
            session_id=session_id,
            products_found=len(final_state.get("products", [])),
            carts_generated=len(carts),
            carts=carts,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Session:
        return await self._transitions.load(session_id)

    async def get_session_details(self, session_id: str) -> SessionDetails:
        session = await self._transitions.load(session_id)
        return SessionDetails(
            session=session,
            carts=await self._store.list_carts(session_id),
            checkouts=await self._store.list_checkouts(session_id),
        )

    async def _store_spec(self, session_id: str, spec: ShoppingSpec) -> Session:
        session = await self._store.update_session(session_id, shopping_spec=spec)
        if session is None:
            return await self._transitions.load(session_id)
        return session


def _overlay_intent(current: ShoppingSpec, fresh: ShoppingSpec) -> ShoppingSpec:
    """Keep constraints the new reading did not mention."""
    kept = {
        name: getattr(fresh.constraints, name)
        for name in type(fresh.constraints).model_fields
        if getattr(fresh.constraints, name) is not None
    }
    return fresh.model_copy(update={"constraints": current.constraints.model_copy(update=kept)})
