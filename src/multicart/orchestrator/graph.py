"""LangGraph StateGraph for the discovery -> ranking pipeline.

Nodes
-----
discover   -- One discovery search per must-have item plus the scenario
rank       -- Build, score and persist the candidate carts
finalize   -- Move the session to CART and announce the carts

Edges
-----
discover -> rank -> finalize

Exceptions raised by a node propagate out of ``ainvoke``; the session state
machine turns them into a FAILED session.
"""

from __future__ import annotations

import asyncio

import structlog
from langgraph.graph import END, StateGraph

from multicart.agents.discovery_agent import DiscoveryEngine
from multicart.agents.ranking_agent import RankingEngine
from multicart.models import Product, SessionStatus, ShoppingSpec
from multicart.orchestrator.state import DiscoveryGraphState, SessionTransitions
from multicart.streaming import EVENT_CARTS_RANKED, EVENT_PRODUCTS_FOUND, SessionEventStream

logger = structlog.get_logger(__name__)


def discovery_queries(spec: ShoppingSpec) -> list[str]:
    """Must-have items followed by the scenario label, without duplicates."""
    queries: list[str] = []
    for query in [*spec.must_haves, spec.scenario]:
        query = query.strip()
        if query and query.lower() not in {q.lower() for q in queries}:
            queries.append(query)
    return queries


def merge_products(batches: list[list[Product]]) -> list[Product]:
    """Concatenate result batches, keeping the first occurrence of each product."""
    seen: set[str] = set()
    merged: list[Product] = []
    for batch in batches:
        for product in batch:
            if product.id in seen:
                continue
            seen.add(product.id)
            merged.append(product)
    return merged


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_discover_node(
    discovery: DiscoveryEngine,
    transitions: SessionTransitions,
    stream: SessionEventStream,
    limit_per_term: int,
):
    """Create the *discover* node function."""

    async def discover_node(state: DiscoveryGraphState) -> DiscoveryGraphState:
        session_id = state["session_id"]
        spec = state["spec"]
        queries = discovery_queries(spec)

        results = await asyncio.gather(
            *(
                discovery.search_products(
                    query,
                    max_price=spec.constraints.budget,
                    limit=limit_per_term,
                )
                for query in queries
            )
        )
        products = merge_products([r.products for r in results])

        await stream.emit(
            session_id,
            EVENT_PRODUCTS_FOUND,
            data={
                "queries": queries,
                "products": len(products),
                "retailers": sorted({name for r in results for name in r.retailers}),
            },
            message=f"Found {len(products)} product(s) for {len(queries)} search(es).",
        )
        await transitions.transition(session_id, SessionStatus.RANKING)
        return {
            **state,
            "queries": queries,
            "products": products,
            "status": SessionStatus.RANKING,
        }

    return discover_node


def _make_rank_node(ranking: RankingEngine):
    """Create the *rank* node function."""

    async def rank_node(state: DiscoveryGraphState) -> DiscoveryGraphState:
        carts = await ranking.generate_ranked_carts(
            state["session_id"],
            state.get("products", []),
            state["spec"],
        )
        return {**state, "carts": carts}

    return rank_node


def _make_finalize_node(transitions: SessionTransitions, stream: SessionEventStream):
    """Create the *finalize* node -- moves the session to CART."""

    async def finalize_node(state: DiscoveryGraphState) -> DiscoveryGraphState:
        session_id = state["session_id"]
        carts = state.get("carts", [])

        await transitions.transition(session_id, SessionStatus.CART)
        await stream.emit(
            session_id,
            EVENT_CARTS_RANKED,
            data={"carts": [{"id": c.id, "name": c.name, "score": c.score} for c in carts]},
            message=f"Generated {len(carts)} cart option(s).",
        )
        return {**state, "status": SessionStatus.CART}

    return finalize_node


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_discovery_graph(
    discovery: DiscoveryEngine,
    ranking: RankingEngine,
    transitions: SessionTransitions,
    stream: SessionEventStream,
    limit_per_term: int = 15,
) -> StateGraph:
    """Construct the discovery pipeline.

    Returns
    -------
    StateGraph
        An uncompiled graph.  Call ``.compile()`` before invoking.
    """
    graph = StateGraph(DiscoveryGraphState)

    graph.add_node("discover", _make_discover_node(discovery, transitions, stream, limit_per_term))
    graph.add_node("rank", _make_rank_node(ranking))
    graph.add_node("finalize", _make_finalize_node(transitions, stream))

    graph.set_entry_point("discover")
    graph.add_edge("discover", "rank")
    graph.add_edge("rank", "finalize")
    graph.add_edge("finalize", END)

    return graph


def compile_discovery_graph(
    discovery: DiscoveryEngine,
    ranking: RankingEngine,
    transitions: SessionTransitions,
    stream: SessionEventStream,
    limit_per_term: int = 15,
):
    """Build and compile the discovery graph into a runnable."""
    graph = build_discovery_graph(discovery, ranking, transitions, stream, limit_per_term)
    return graph.compile()
