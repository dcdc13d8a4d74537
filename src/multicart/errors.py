"""Error taxonomy for the shopping agent core.

``NotFoundError`` and ``InvalidInputError`` are surfaced to callers as-is.
``UpstreamProviderError`` covers the completion provider and retailer
adapters; callers fall back or isolate instead of failing the request.
``PersistenceError`` is fatal for the request that hit it.
"""

from __future__ import annotations


class ShoppingAgentError(Exception):
    """Base class for all shopping agent errors."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(ShoppingAgentError):
    """A referenced record does not exist."""

    entity = "Record"

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"{self.entity} {record_id} not found")


class SessionNotFoundError(NotFoundError):
    entity = "Session"


class CartNotFoundError(NotFoundError):
    entity = "Cart"


class ItemNotFoundError(NotFoundError):
    entity = "Cart item"


class ProductNotFoundError(NotFoundError):
    entity = "Product"


class CheckoutNotFoundError(NotFoundError):
    entity = "Checkout"


# ---------------------------------------------------------------------------
# Invalid input
# ---------------------------------------------------------------------------


class InvalidInputError(ShoppingAgentError):
    """The request is structurally valid but cannot be honoured."""


class MissingShoppingSpecError(InvalidInputError):
    """Discovery was requested before a shopping specification was set."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Shopping specification not set for session {session_id}")


class InvalidTransitionError(InvalidInputError):
    """A session status change that the state machine does not allow."""

    def __init__(self, session_id: str, current: str, target: str) -> None:
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(
            f"Session {session_id} cannot move from {current} to {target}"
        )


# ---------------------------------------------------------------------------
# Upstream providers
# ---------------------------------------------------------------------------


class UpstreamProviderError(ShoppingAgentError):
    """A completion provider or retailer source failed."""


class CompletionUnavailableError(UpstreamProviderError):
    """No completion provider is configured."""


class CompletionQuotaError(UpstreamProviderError):
    """The completion provider rejected the call for quota or rate limits."""


class IntentParseError(UpstreamProviderError):
    """The completion provider returned no usable content."""


class RetailerSearchError(UpstreamProviderError):
    """A retailer adapter failed to search its catalog."""


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class PersistenceError(ShoppingAgentError):
    """The record store is unavailable or rejected a write."""
