"""Language-completion provider client.

Sends a system instruction plus user content to OpenAI (preferred) or
Anthropic and returns the raw text or the decoded JSON object.  Clients
are created lazily on first use.

Failures are reported through the error taxonomy:

* :class:`CompletionUnavailableError` when no provider key is configured
* :class:`CompletionQuotaError` when every provider that was tried
  rejected the call for quota or rate-limit reasons
* :class:`UpstreamProviderError` for any other provider failure
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol

import structlog

from multicart.config import Settings
from multicart.errors import (
    CompletionQuotaError,
    CompletionUnavailableError,
    UpstreamProviderError,
)

logger = structlog.get_logger(__name__)

_FENCE_OPEN_RE = re.compile(r"```json?\s*")
_FENCE_CLOSE_RE = re.compile(r"```\s*$")


def strip_code_fences(raw: str) -> str:
    """Remove markdown code fences around a JSON payload."""
    cleaned = _FENCE_OPEN_RE.sub("", raw)
    return _FENCE_CLOSE_RE.sub("", cleaned).strip()


def is_quota_error(exc: BaseException) -> bool:
    """True for provider errors signalling quota exhaustion or rate limiting."""
    if getattr(exc, "status_code", None) == 429:
        return True
    if getattr(exc, "code", None) == "insufficient_quota":
        return True
    return type(exc).__name__ == "RateLimitError"


class CompletionProvider(Protocol):
    """What the intent parser and explanation generator need from a provider."""

    @property
    def configured(self) -> bool:
        ...

    async def complete_json(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> dict[str, Any] | None:
        ...


class CompletionClient:
    """Black-box JSON completion over the configured LLM providers."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._openai_client: object | None = None
        self._anthropic_client: object | None = None

    @property
    def configured(self) -> bool:
        return bool(self._settings.openai_api_key or self._settings.anthropic_api_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def complete(
        self,
        system: str,
        user: str,
        *,
        json_output: bool = False,
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> str | None:
        """Return the provider's text response, or ``None`` when it is empty."""
        if not self.configured:
            raise CompletionUnavailableError("No completion provider configured")

        errors: list[BaseException] = []

        if self._settings.openai_api_key:
            try:
                return await self._complete_with_openai(
                    system, user, json_output, temperature, max_tokens
                )
            except Exception as exc:
                logger.warning("openai_completion_failed", error=str(exc))
                errors.append(exc)

        if self._settings.anthropic_api_key:
            try:
                return await self._complete_with_anthropic(
                    system, user, temperature, max_tokens
                )
            except Exception as exc:
                logger.warning("anthropic_completion_failed", error=str(exc))
                errors.append(exc)

        if errors and all(is_quota_error(e) for e in errors):
            raise CompletionQuotaError("Completion provider quota exceeded") from errors[-1]
        raise UpstreamProviderError(f"Completion provider failed: {errors[-1]}") from errors[-1]

    async def complete_json(
        self,
        system: str,
        user: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> dict[str, Any] | None:
        """Return the decoded JSON object, or ``None`` when the response is empty.

        Raises ``UpstreamProviderError`` when the response is not a JSON object.
        """
        raw = await self.complete(
            system,
            user,
            json_output=True,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        if not raw or not raw.strip():
            return None

        try:
            data = json.loads(strip_code_fences(raw))
        except json.JSONDecodeError as exc:
            logger.warning("completion_json_parse_failed", raw_snippet=raw[:200])
            raise UpstreamProviderError("Completion provider returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise UpstreamProviderError("Completion provider returned a non-object JSON value")
        return data

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    async def _complete_with_openai(
        self,
        system: str,
        user: str,
        json_output: bool,
        temperature: float,
        max_tokens: int,
    ) -> str | None:
        from openai import AsyncOpenAI

        if self._openai_client is None:
            self._openai_client = AsyncOpenAI(api_key=self._settings.openai_api_key)

        client: AsyncOpenAI = self._openai_client  # type: ignore[assignment]
        kwargs: dict[str, Any] = {}
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}
        response = await client.chat.completions.create(
            model=self._settings.default_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        return response.choices[0].message.content

    async def _complete_with_anthropic(
        self,
        system: str,
        user: str,
        temperature: float,
        max_tokens: int,
    ) -> str | None:
        from anthropic import AsyncAnthropic

        if self._anthropic_client is None:
            self._anthropic_client = AsyncAnthropic(api_key=self._settings.anthropic_api_key)

        client: AsyncAnthropic = self._anthropic_client  # type: ignore[assignment]
        response = await client.messages.create(
            model=self._settings.anthropic_model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=[{"role": "user", "content": user}],
        )
        return response.content[0].text if response.content else None
