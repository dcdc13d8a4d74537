"""Natural-language intent parsing.

Turns a free-text shopping request into a :class:`ParsedIntent` and folds
clarification answers into the session's :class:`ShoppingSpec`.  The
completion provider is tried first.  When it is unconfigured or fails, a
deterministic keyword heuristic takes over, so parsing never fails for the
caller.
"""

from __future__ import annotations

import re
import string
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog
from pydantic import BaseModel, ValidationError

from multicart.errors import IntentParseError, UpstreamProviderError
from multicart.models import (
    ClarificationResponse,
    ExtractedConstraints,
    ParsedIntent,
    ShoppingConstraints,
    ShoppingSpec,
    SpecUpdate,
    utcnow,
)
from multicart.protocols.completion_client import CompletionProvider

logger = structlog.get_logger(__name__)

_INTENT_PROMPT = """\
You are an AI shopping assistant. Parse the user's shopping request and extract:
1. The shopping scenario (e.g., "skiing outfit", "party supplies", "home office setup")
2. Must-have items
3. Nice-to-have items
4. Constraints: budget, deadline, sizes, colors, brand preferences

Return ONLY a JSON object with this structure:
{
  "scenario": "string",
  "extractedConstraints": {
    "budget": number or null,
    "deadline": "ISO date string" or null,
    "sizes": { "category": "size" } or null,
    "colors": ["color1", "color2"] or null,
    "brands": ["brand1"] or null
  },
  "clarifyingQuestions": ["question1", "question2"],
  "confidence": 0.0 to 1.0,
  "rawItems": ["item1", "item2"]
}

If information is missing, add clarifying questions. Be helpful and thorough.
"""

_CLARIFY_SYSTEM = (
    "You are a helpful shopping assistant. Parse clarification responses "
    "and update the shopping specification."
)

_CLARIFY_TEMPLATE = """\
Current shopping specification:
{spec}

User's clarification response: "{response}"

Update the specification based on this response and determine if more \
clarification is needed.
Return JSON:
{{
  "updatedSpec": {{ ... only the updated fields ... }},
  "isComplete": boolean,
  "nextQuestion": "string or null"
}}
"""

# ---------------------------------------------------------------------------
# Fallback heuristics
# ---------------------------------------------------------------------------

STOP_WORDS = frozenset({"need", "want", "buy", "get", "for", "the", "and", "with", "under", "about"})

# Ordered: the first scenario with a matching keyword wins
SCENARIO_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("skiing outfit", ("ski", "skiing", "snow", "winter")),
    ("outdoor gear", ("hiking", "camping", "outdoor", "trek")),
    ("home office", ("desk", "office", "computer", "monitor")),
    ("party supplies", ("party", "birthday", "celebration")),
    ("fashion shopping", ("clothes", "dress", "shirt", "pants", "shoes")),
    ("electronics", ("phone", "laptop", "tablet", "headphones", "camera")),
)
DEFAULT_SCENARIO = "general shopping"
FALLBACK_CONFIDENCE = 0.6

COLOR_WORDS = frozenset({
    "black", "white", "red", "blue", "navy", "green", "grey", "gray",
    "yellow", "orange", "pink", "purple", "brown", "beige",
})

_BUDGET_RE = re.compile(r"\$(\d+(?:,\d{3})*(?:\.\d{2})?)")
_DAYS_RE = re.compile(r"\b(?:in|within)\s+(\d{1,3})\s+days?\b")
_SIZE_RE = re.compile(r"\bsize\s+(xxs|xs|s|m|l|xl|xxl|\d{1,2})\b", re.IGNORECASE)
_WORD_RE = re.compile(r"[a-z]+")


def fallback_parse_intent(message: str, now: datetime) -> ParsedIntent:
    """Deterministic keyword-based intent extraction.

    Tolerates any input, including an empty string.
    """
    lowered = message.lower()

    raw_items: list[str] = []
    for token in message.split():
        if len(token) <= 2 or token.lower() in STOP_WORDS:
            continue
        cleaned = token.strip(string.punctuation)
        if cleaned:
            raw_items.append(cleaned)

    budget: float | None = None
    budget_match = _BUDGET_RE.search(message)
    if budget_match:
        value = float(budget_match.group(1).replace(",", ""))
        budget = value if value > 0 else None

    deadline: datetime | None = None
    days_match = _DAYS_RE.search(lowered)
    if "tomorrow" in lowered:
        deadline = now + timedelta(days=1)
    elif "next week" in lowered:
        deadline = now + timedelta(days=7)
    elif days_match:
        deadline = now + timedelta(days=int(days_match.group(1)))

    sizes: dict[str, str] | None = None
    size_match = _SIZE_RE.search(message)
    if size_match:
        sizes = {"default": size_match.group(1).upper()}

    colors = [w for w in dict.fromkeys(_WORD_RE.findall(lowered)) if w in COLOR_WORDS]

    scenario = DEFAULT_SCENARIO
    for name, keywords in SCENARIO_KEYWORDS:
        if any(k in lowered for k in keywords):
            scenario = name
            break

    return ParsedIntent(
        scenario=scenario,
        extracted_constraints=ExtractedConstraints(
            budget=budget,
            deadline=deadline,
            sizes=sizes,
            colors=colors or None,
        ),
        clarifying_questions=[],
        confidence=FALLBACK_CONFIDENCE,
        raw_items=raw_items,
    )


# ---------------------------------------------------------------------------
# Spec completeness
# ---------------------------------------------------------------------------

CLARIFYING_QUESTIONS: tuple[tuple[str, str], ...] = (
    ("budget", "What's your budget for this purchase?"),
    ("deadline", "When do you need these items delivered by?"),
    ("sizes", "What sizes do you need? (e.g., S, M, L, or specific measurements)"),
    ("colors", "Do you have any color preferences?"),
)


def missing_questions(spec: ShoppingSpec | None) -> list[str]:
    """One fixed question per missing constraint, in budget/deadline/sizes/colors order."""
    constraints = spec.constraints if spec else ShoppingConstraints()
    missing = {
        "budget": constraints.budget is None,
        "deadline": constraints.deadline is None,
        "sizes": not constraints.sizes,
        "colors": not constraints.colors,
    }
    return [question for field, question in CLARIFYING_QUESTIONS if missing[field]]


def is_spec_complete(spec: ShoppingSpec | None) -> bool:
    return spec is not None and not missing_questions(spec)


# ---------------------------------------------------------------------------
# Spec construction and merging
# ---------------------------------------------------------------------------


def spec_from_intent(intent: ParsedIntent) -> ShoppingSpec:
    """Build a shopping spec from a parsed intent."""
    extracted = intent.extracted_constraints
    budget = extracted.budget if extracted.budget and extracted.budget > 0 else None
    return ShoppingSpec(
        scenario=intent.scenario or DEFAULT_SCENARIO,
        must_haves=list(intent.raw_items),
        nice_to_haves=[],
        constraints=ShoppingConstraints(
            budget=budget,
            currency="USD",
            deadline=extracted.deadline,
            sizes=extracted.sizes,
            colors=extracted.colors,
            brands_include=extracted.brands,
        ),
    )


def spec_update_from_intent(intent: ParsedIntent) -> SpecUpdate:
    """Partial update carrying only the constraints an intent actually found."""
    extracted = intent.extracted_constraints
    values: dict[str, Any] = {}
    if extracted.budget and extracted.budget > 0:
        values["budget"] = extracted.budget
    if extracted.deadline is not None:
        values["deadline"] = extracted.deadline
    if extracted.sizes:
        values["sizes"] = extracted.sizes
    if extracted.colors:
        values["colors"] = extracted.colors
    if extracted.brands:
        values["brands_include"] = extracted.brands
    return SpecUpdate(constraints=ShoppingConstraints(**values) if values else None)


def merge_spec(current: ShoppingSpec | None, update: SpecUpdate) -> ShoppingSpec:
    """Overlay ``update`` onto ``current``.

    Top-level fields are replaced when present in ``update``; ``constraints``
    is merged one level deep so only the constraint fields that were set
    in the update change.
    """
    base = current or ShoppingSpec(scenario=update.scenario or DEFAULT_SCENARIO)
    fields: dict[str, Any] = {}
    if update.scenario:
        fields["scenario"] = update.scenario
    if update.must_haves is not None:
        fields["must_haves"] = list(update.must_haves)
    if update.nice_to_haves is not None:
        fields["nice_to_haves"] = list(update.nice_to_haves)
    if update.constraints is not None:
        changed = {
            name: getattr(update.constraints, name)
            for name in update.constraints.model_fields_set
        }
        fields["constraints"] = base.constraints.model_copy(update=changed)
    return base.model_copy(update=fields)


# ---------------------------------------------------------------------------
# Provider response coercion
# ---------------------------------------------------------------------------

_CONSTRAINT_ALIASES = {
    "brandsInclude": "brands_include",
    "brandsExclude": "brands_exclude",
}


def _valid_fields(model: type[BaseModel], raw: Any, aliases: dict[str, str] | None = None) -> dict[str, Any]:
    """Keep only the entries of ``raw`` that individually validate against ``model``."""
    if not isinstance(raw, dict):
        return {}
    values: dict[str, Any] = {}
    for key, value in raw.items():
        name = (aliases or {}).get(key, key)
        if value is None or name not in model.model_fields:
            continue
        try:
            model.model_validate({name: value})
        except ValidationError:
            logger.debug("provider_field_dropped", model=model.__name__, field=name)
            continue
        values[name] = value
    return values


def _string_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(v) for v in raw if isinstance(v, (str, int, float)) and str(v).strip()]


def coerce_intent(data: dict[str, Any]) -> ParsedIntent:
    """Coerce a loosely-typed provider payload into a :class:`ParsedIntent`."""
    scenario = data.get("scenario")
    if not isinstance(scenario, str) or not scenario.strip():
        scenario = DEFAULT_SCENARIO

    constraints = _valid_fields(
        ExtractedConstraints,
        data.get("extractedConstraints", data.get("extracted_constraints")),
    )
    if "budget" in constraints and float(constraints["budget"]) <= 0:
        del constraints["budget"]

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5

    return ParsedIntent(
        scenario=scenario.strip(),
        extracted_constraints=ExtractedConstraints.model_validate(constraints),
        clarifying_questions=_string_list(
            data.get("clarifyingQuestions", data.get("clarifying_questions"))
        ),
        confidence=min(1.0, max(0.0, confidence)),
        raw_items=_string_list(data.get("rawItems", data.get("raw_items"))),
    )


def coerce_spec_update(raw: Any) -> SpecUpdate:
    if not isinstance(raw, dict):
        return SpecUpdate()
    scenario = raw.get("scenario")
    must_haves = raw.get("mustHaves", raw.get("must_haves"))
    nice_to_haves = raw.get("niceToHaves", raw.get("nice_to_haves"))
    constraint_values = _valid_fields(
        ShoppingConstraints, raw.get("constraints"), _CONSTRAINT_ALIASES
    )
    return SpecUpdate(
        scenario=scenario.strip() if isinstance(scenario, str) and scenario.strip() else None,
        must_haves=_string_list(must_haves) if must_haves is not None else None,
        nice_to_haves=_string_list(nice_to_haves) if nice_to_haves is not None else None,
        constraints=ShoppingConstraints(**constraint_values) if constraint_values else None,
    )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class IntentParser:
    """Parses shopping requests and clarification turns."""

    def __init__(
        self,
        completion: CompletionProvider,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._completion = completion
        self._clock = clock

    async def parse_intent(self, message: str, session_id: str | None = None) -> ParsedIntent:
        """Parse ``message``; falls back to the keyword heuristic on provider failure."""
        if not self._completion.configured:
            logger.info("using_fallback_intent_parser", reason="unconfigured", session_id=session_id)
            return fallback_parse_intent(message, self._clock())

        try:
            intent = await self.parse_with_provider(message)
        except UpstreamProviderError as exc:
            logger.warning(
                "using_fallback_intent_parser",
                reason=type(exc).__name__,
                error=str(exc),
                session_id=session_id,
            )
            return fallback_parse_intent(message, self._clock())

        logger.info(
            "intent_parsed",
            session_id=session_id,
            scenario=intent.scenario,
            confidence=intent.confidence,
        )
        return intent

    async def parse_with_provider(self, message: str) -> ParsedIntent:
        """Parse through the completion provider only.

        Raises
        ------
        IntentParseError
            The provider returned no content.
        UpstreamProviderError
            The provider is unavailable or failed.
        """
        data = await self._completion.complete_json(_INTENT_PROMPT, message, temperature=0.3)
        if not data:
            raise IntentParseError("Failed to parse intent: no response from completion provider")
        return coerce_intent(data)

    async def process_clarification(
        self,
        session_id: str,
        current_spec: ShoppingSpec | None,
        user_response: str,
    ) -> ClarificationResponse:
        """Interpret a clarification answer as a partial spec update.

        The caller merges ``updated_spec`` into the stored spec with
        :func:`merge_spec`.
        """
        if self._completion.configured:
            spec_json = (
                current_spec.model_dump_json(indent=2) if current_spec else "{}"
            )
            prompt = _CLARIFY_TEMPLATE.format(spec=spec_json, response=user_response)
            try:
                data = await self._completion.complete_json(_CLARIFY_SYSTEM, prompt, temperature=0.3)
                if not data:
                    raise IntentParseError("Failed to process clarification")
            except UpstreamProviderError as exc:
                logger.warning("using_fallback_clarification", session_id=session_id, error=str(exc))
            else:
                next_question = data.get("nextQuestion", data.get("next_question"))
                return ClarificationResponse(
                    session_id=session_id,
                    updated_spec=coerce_spec_update(data.get("updatedSpec", data.get("updated_spec"))),
                    is_complete=bool(data.get("isComplete", data.get("is_complete", False))),
                    next_question=next_question if isinstance(next_question, str) and next_question else None,
                )

        return self._fallback_clarification(session_id, current_spec, user_response)

    def _fallback_clarification(
        self,
        session_id: str,
        current_spec: ShoppingSpec | None,
        user_response: str,
    ) -> ClarificationResponse:
        intent = fallback_parse_intent(user_response, self._clock())
        update = spec_update_from_intent(intent)
        if current_spec is None:
            update = update.model_copy(
                update={"scenario": intent.scenario, "must_haves": intent.raw_items}
            )
        questions = missing_questions(merge_spec(current_spec, update))
        logger.info(
            "clarification_fallback",
            session_id=session_id,
            remaining=len(questions),
        )
        return ClarificationResponse(
            session_id=session_id,
            updated_spec=update,
            is_complete=not questions,
            next_question=questions[0] if questions else None,
        )

