"""Human-readable explanations for ranked carts."""

from __future__ import annotations

import json
import math
from datetime import datetime, timedelta
from typing import Any

import structlog

from multicart.errors import UpstreamProviderError
from multicart.models import RankingExplanation, RankingFactor
from multicart.protocols.completion_client import CompletionProvider

logger = structlog.get_logger(__name__)

_EXPLANATION_PROMPT = """\
You are explaining why a shopping cart was ranked #1 among alternatives.

Given the cart details and ranking factors, generate a clear, friendly explanation that:
1. Highlights the main reasons this cart is recommended
2. Mentions specific products and their benefits
3. Addresses how it meets the user's constraints (budget, delivery, preferences)
4. Is conversational but informative

Keep it under 200 words.
"""

_EXPLANATION_TEMPLATE = """\
Cart Details:
{cart}

User Constraints:
{constraints}

Ranking Factors:
{factors}

Generate an explanation for why this cart is the top recommendation.
Return JSON:
{{
  "overallReason": "2-3 sentence summary",
  "factors": [
    {{
      "name": "factor name",
      "weight": 0.0-1.0,
      "score": 0.0-1.0,
      "description": "why this factor scored well"
    }}
  ],
  "alternatives": ["suggestion 1", "suggestion 2"]
}}
"""

_SECONDS_PER_DAY = 24 * 60 * 60


def days_early(deadline: datetime, delivery_date: datetime) -> int:
    """Whole days (rounded up) between the delivery date and a later deadline."""
    return math.ceil((deadline - delivery_date).total_seconds() / _SECONDS_PER_DAY)


def _list_of(raw: Any) -> list[Any]:
    if not isinstance(raw, list):
        return []
    return raw


def _describe_factor(factor: RankingFactor) -> str:
    if factor.score >= 0.75:
        level = "strong"
    elif factor.score >= 0.4:
        level = "moderate"
    else:
        level = "weak"
    return f"{factor.name} is a {level} point for this cart ({factor.score:.0%})"


class ExplanationGenerator:
    """Writes the one-line and detailed explanations attached to carts."""

    def __init__(self, completion: CompletionProvider) -> None:
        self._completion = completion

    @staticmethod
    def quick_explanation(
        score: float,
        total_cost: float,
        budget: float | None,
        delivery_days: int,
        deadline: datetime | None,
        now: datetime,
    ) -> str:
        """One-line summary of budget headroom, deadline margin and score.

        Deterministic; never calls the completion provider.
        """
        reasons: list[str] = []

        if budget and total_cost <= budget:
            reasons.append(f"${budget - total_cost:.2f} under budget")

        if deadline is not None:
            delivery_date = now + timedelta(days=delivery_days)
            if delivery_date <= deadline:
                early = days_early(deadline, delivery_date)
                if early > 0:
                    reasons.append(f"arrives {early} days early")
                else:
                    reasons.append("meets delivery deadline")

        reasons.append(f"{round(score * 100)}% match score")
        return f"Top pick: {', '.join(reasons)}."

    async def generate(
        self,
        cart_id: str,
        cart_details: dict[str, Any],
        user_constraints: dict[str, Any],
        factors: list[RankingFactor],
        alternatives: list[str],
    ) -> RankingExplanation:
        """Detailed explanation for one cart.

        Factor weights and scores are always the computed ones; the
        completion provider only contributes prose.  Without a provider the
        explanation is assembled from the factors alone.
        """
        fallback = RankingExplanation(
            cart_id=cart_id,
            overall_reason=self._fallback_reason(cart_details, factors),
            factors=[
                f.model_copy(update={"description": f.description or _describe_factor(f)})
                for f in factors
            ],
            alternatives=alternatives,
        )
        if not self._completion.configured:
            return fallback

        prompt = _EXPLANATION_TEMPLATE.format(
            cart=json.dumps(cart_details, indent=2, default=str),
            constraints=json.dumps(user_constraints, indent=2, default=str),
            factors=json.dumps(
                [f.model_dump(include={"name", "weight", "score"}) for f in factors], indent=2
            ),
        )
        try:
            data = await self._completion.complete_json(
                _EXPLANATION_PROMPT, prompt, temperature=0.5
            )
        except UpstreamProviderError as exc:
            logger.warning("explanation_fallback", cart_id=cart_id, error=str(exc))
            return fallback
        if not data:
            return fallback

        descriptions: dict[str, str] = {}
        for entry in _list_of(data.get("factors")):
            if isinstance(entry, dict) and isinstance(entry.get("description"), str):
                descriptions[str(entry.get("name", "")).lower()] = entry["description"]

        reason = data.get("overallReason", data.get("overall_reason"))
        suggested = [a for a in _list_of(data.get("alternatives")) if isinstance(a, str) and a.strip()]
        return RankingExplanation(
            cart_id=cart_id,
            overall_reason=reason if isinstance(reason, str) and reason else fallback.overall_reason,
            factors=[
                f.model_copy(update={"description": descriptions.get(f.name.lower(), fb.description)})
                for f, fb in zip(factors, fallback.factors)
            ],
            alternatives=suggested or alternatives,
        )

    @staticmethod
    def _fallback_reason(cart_details: dict[str, Any], factors: list[RankingFactor]) -> str:
        strongest = max(factors, key=lambda f: f.score * f.weight) if factors else None
        parts = [
            f"{cart_details.get('name', 'This cart')} totals "
            f"${float(cart_details.get('totalCost', 0.0)):.2f} across "
            f"{len(cart_details.get('items', []))} items "
            f"with a {round(float(cart_details.get('score', 0.0)) * 100)}% match score."
        ]
        if strongest is not None:
            parts.append(f"Its strongest factor is {strongest.name.lower()}.")
        return " ".join(parts)
