"""Configuration management for the multi-retailer shopping agent."""

from __future__ import annotations

from common.config import Settings as BaseSettings


class Settings(BaseSettings):
    """Shopping agent configuration.

    Inherits provider keys and logging settings from
    ``common.config.Settings`` and adds agent-specific options.
    """

    # Service identity
    service_name: str = "multicart-agent"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8030

    # LLM configuration
    default_model: str = "gpt-4o"
    anthropic_model: str = "claude-sonnet-4-20250514"

    # Retailer adapters enabled at startup, in fan-out order
    retailer_adapters: list[str] = [
        "mountain-gear-pro",
        "valuesport-outlet",
        "elite-sports-express",
    ]
    seed_catalog: bool = True

    # Discovery
    adapter_timeout_seconds: float = 10.0
    discovery_limit_per_term: int = 15
    optimize_alternatives_limit: int = 10

    # Ranking
    penalize_missed_deadline: bool = True

    # Checkout simulation
    checkout_duration_seconds: float = 10.0
    retailer_shipping_fee: float = 9.99

    # Per-session SSE replay history
    event_history_limit: int = 200


def get_settings() -> Settings:
    """Return a settings instance loaded from the environment."""
    return Settings()
