"""
Anthropic LLM client wrapper.

Gives the classifier one awaitable call, `complete()`, that:
- retries timeouts, rate limits, 5xx and connection failures with
  capped exponential backoff
- fails fast on other 4xx (bad key, bad request), which retrying won't fix
- logs token counts, cost and latency for every call, never content

Usage:
    from mailpilot.llm.client import LLMClient

    client = LLMClient(api_key="sk-...")
    result = await client.complete(
        system="You triage admissions email.",
        user="Classify this email: ...",
        max_tokens=600,
        purpose="classify",
    )
    print(result.text)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import anthropic

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

# USD per 1M tokens.
PRICING = {
    "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
}
DEFAULT_PRICING = {"input": 3.00, "output": 15.00}


@dataclass
class LLMResult:
    """One completed LLM call."""
    text: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float
    latency_ms: int
    model: str


class LLMError(Exception):
    """The LLM call failed and will not succeed by retrying now."""


class LLMClient:
    """
    Async Anthropic client with our own retry policy and usage accounting.

    The SDK's built-in retries are disabled so every attempt is logged
    here. A hung call ends at `timeout_seconds` and counts as one attempt.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        max_retries: int = 3,
        timeout_seconds: float = 60.0,
        retry_wait_cap: float = 30.0,
    ):
        self._model = model
        self._max_retries = max(1, max_retries)
        self._timeout = timeout_seconds
        self._retry_wait_cap = retry_wait_cap
        self._pricing = PRICING.get(model, DEFAULT_PRICING)

        self._client = anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout_seconds,
            max_retries=0,
        )

        self.session_total_cost = 0.0
        self.session_total_input_tokens = 0
        self.session_total_output_tokens = 0
        self.session_call_count = 0

        logger.info(
            "llm_client.initialized",
            extra={
                "action": "llm_client.initialized",
                "model": model,
                "max_retries": self._max_retries,
                "timeout_seconds": timeout_seconds,
            },
        )

    @property
    def model(self) -> str:
        return self._model

    async def complete(
        self,
        system: str,
        user: str,
        max_tokens: int = 600,
        purpose: str = "unknown",
    ) -> LLMResult:
        """
        Run one completion, retrying transient failures.

        `purpose` labels the call in logs ("classify", "classify_batch").
        Never put message content in it.

        Raises:
            LLMError: on a non-retryable error, or once retries run out.
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self._max_retries + 1):
            start = time.monotonic()
            try:
                response = await self._client.messages.create(
                    model=self._model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
            except anthropic.APIError as e:
                last_error = e
                wait = self._retry_wait(e, attempt, purpose)
                if wait > 0 and attempt < self._max_retries:
                    await asyncio.sleep(wait)
                continue

            return self._to_result(response, start, attempt, purpose)

        logger.error(
            "llm.call.failed",
            extra={
                "action": "llm.call.failed",
                "purpose": purpose,
                "attempts": self._max_retries,
                "error_type": type(last_error).__name__,
            },
        )
        raise LLMError(
            f"LLM call failed after {self._max_retries} attempts: {last_error}"
        ) from last_error

    def _retry_wait(self, error: anthropic.APIError, attempt: int, purpose: str) -> float:
        """
        Seconds to wait before the next attempt.

        Raises:
            LLMError: if the error is not worth retrying.
        """
        backoff = min(2 ** attempt, self._retry_wait_cap)
        status = getattr(error, "status_code", None)

        # Timeout subclasses connection error, so it goes first.
        if isinstance(error, anthropic.APITimeoutError):
            kind, wait = "timeout", 0.0
        elif isinstance(error, anthropic.APIConnectionError):
            kind, wait = "connection_error", backoff
        elif isinstance(error, anthropic.RateLimitError):
            kind, wait = "rate_limited", backoff
        elif status is not None and status >= 500:
            kind, wait = "server_error", backoff
        else:
            logger.error(
                "llm.call.client_error",
                extra={
                    "action": "llm.call.client_error",
                    "purpose": purpose,
                    "status_code": status,
                    "error_type": type(error).__name__,
                },
            )
            raise LLMError(f"Anthropic API error (HTTP {status}): {error}") from error

        logger.warning(
            f"llm.call.{kind}",
            extra={
                "action": f"llm.call.{kind}",
                "purpose": purpose,
                "attempt": attempt,
                "status_code": status,
                "wait_seconds": wait,
            },
        )
        return wait

    def _to_result(self, response, start: float, attempt: int, purpose: str) -> LLMResult:
        latency_ms = int((time.monotonic() - start) * 1000)
        usage = response.usage
        cost = (
            usage.input_tokens * self._pricing["input"]
            + usage.output_tokens * self._pricing["output"]
        ) / 1_000_000

        self.session_total_cost += cost
        self.session_total_input_tokens += usage.input_tokens
        self.session_total_output_tokens += usage.output_tokens
        self.session_call_count += 1

        logger.info(
            "llm.call.success",
            extra={
                "action": "llm.call.success",
                "purpose": purpose,
                "attempt": attempt,
                "model": self._model,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "cost_usd": round(cost, 6),
                "latency_ms": latency_ms,
            },
        )

        text = "".join(getattr(block, "text", "") for block in response.content)
        return LLMResult(
            text=text.strip(),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.input_tokens + usage.output_tokens,
            cost=cost,
            latency_ms=latency_ms,
            model=self._model,
        )

    def get_session_stats(self) -> dict:
        return {
            "total_cost_usd": round(self.session_total_cost, 4),
            "total_input_tokens": self.session_total_input_tokens,
            "total_output_tokens": self.session_total_output_tokens,
            "total_calls": self.session_call_count,
            "model": self._model,
        }

    async def aclose(self) -> None:
        await self._client.close()
