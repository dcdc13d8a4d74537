"""Service wiring.

Builds every service once from ``Settings`` and hands them out through a
single :class:`ServiceContainer`.  The API stores the container on
``app.state.container``; tests build one with fake collaborators.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

import structlog

from multicart.adapters.base import AdapterRegistry, RetailerAdapter
from multicart.adapters.registry import build_registry
from multicart.agents.cart_service import CartService
from multicart.agents.checkout_agent import CheckoutSimulator
from multicart.agents.discovery_agent import DiscoveryEngine
from multicart.agents.explanation import ExplanationGenerator
from multicart.agents.ranking_agent import RankingEngine
from multicart.catalog.catalog_factory import seed_store
from multicart.config import Settings
from multicart.models import utcnow
from multicart.orchestrator.planner import IntentParser
from multicart.orchestrator.session_machine import SessionStateMachine
from multicart.orchestrator.state import SessionTransitions
from multicart.protocols.completion_client import CompletionClient, CompletionProvider
from multicart.store import MemoryStore
from multicart.streaming import SessionEventStream

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """Holds the shared services of one application instance."""

    settings: Settings
    store: MemoryStore
    events: SessionEventStream
    completion: CompletionProvider
    registry: AdapterRegistry
    transitions: SessionTransitions
    discovery: DiscoveryEngine
    intent_parser: IntentParser
    explanations: ExplanationGenerator
    ranking: RankingEngine
    carts: CartService
    checkout: CheckoutSimulator
    sessions: SessionStateMachine

    async def startup(self) -> None:
        """Seed the store with the bundled retailer catalogs when enabled."""
        if not self.settings.seed_catalog:
            return
        await seed_store(self.store)

    async def shutdown(self) -> None:
        for session_id in self.events.session_ids():
            self.events.clear(session_id)
        for adapter in self.registry.select():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()
        await self.store.close()


def build_container(
    settings: Settings,
    store: MemoryStore | None = None,
    completion: CompletionProvider | None = None,
    adapters: Iterable[RetailerAdapter] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ServiceContainer:
    """Wire all services.

    Parameters
    ----------
    settings:
        Application settings.
    store:
        Record store; a fresh :class:`MemoryStore` by default.
    completion:
        Completion provider; a :class:`CompletionClient` by default.
    adapters:
        Retailer adapters to register instead of the ones named in
        ``settings.retailer_adapters``.
    clock:
        Source of "now" for ranking, cart dates, checkout progress and
        intent deadlines.
    """
    store = store or MemoryStore()
    clock = clock or utcnow
    completion = completion or CompletionClient(settings)
    events = SessionEventStream(max_history=settings.event_history_limit)

    if adapters is None:
        registry = build_registry(settings, store)
    else:
        registry = AdapterRegistry(adapters)

    transitions = SessionTransitions(store, events)
    discovery = DiscoveryEngine(registry, store, settings)
    intent_parser = IntentParser(completion, clock=clock)
    explanations = ExplanationGenerator(completion)
    ranking = RankingEngine(store, explanations, settings, clock=clock)
    carts = CartService(store, discovery, transitions, events, settings, clock=clock)
    checkout = CheckoutSimulator(store, transitions, events, settings, clock=clock)
    sessions = SessionStateMachine(
        store,
        intent_parser,
        discovery,
        ranking,
        transitions,
        events,
        settings,
    )

    logger.info(
        "container_built",
        adapters=registry.ids(),
        completion_configured=completion.configured,
    )
    return ServiceContainer(
        settings=settings,
        store=store,
        events=events,
        completion=completion,
        registry=registry,
        transitions=transitions,
        discovery=discovery,
        intent_parser=intent_parser,
        explanations=explanations,
        ranking=ranking,
        carts=carts,
        checkout=checkout,
        sessions=sessions,
    )
