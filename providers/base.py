"""
Shared prompt, reply types and base class for all AI providers.

Every backend implements the same two low-level requests (_request_image,
_request_text). The public contract — analyse_image() and generate_text() —
lives here once, so all providers share:

  • the fixed instruction prompt
  • a wall-clock timeout per attempt (config.PROVIDER_TIMEOUT_SECS)
  • bounded retries on transient failures (config.PROVIDER_MAX_RETRIES)
  • usage accounting: exact counts when the backend reports them, otherwise
    ceil(chars / 4) applied separately to the outbound prompt and the reply
  • the failure policy: errors become a value, they never propagate
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import config
from analysis import AnalysisFailure, AnalysisOutcome, Timing, Usage, interpret
from errors import ProviderCallError

logger = logging.getLogger(__name__)

# ── Prompts (shared across all providers) ─────────────────────────────────────

ANALYSIS_PROMPT = """Analyze this garage sale item image and return ONLY a JSON object in this format:
{
  "title": "Brief, descriptive title for the item",
  "description": "Detailed description including condition, features, and any notable details",
  "category": "Category (e.g. Electronics, Furniture, Clothing, Books, Toys, Kitchen, Sports)",
  "estimated_price": 0,
  "condition": "Excellent | Good | Fair | Poor",
  "tags": ["array", "of", "relevant", "keywords"]
}

estimated_price is a number in USD. Focus on garage sale pricing - items should be
priced to sell, typically much lower than retail. Consider the condition and
desirability for garage sale shoppers."""

DESCRIPTION_PROMPT = """Write a compelling garage sale item description for:
Title: {title}
Category: {category}
Additional Info: {additional_info}

Make it appealing to garage sale shoppers, mention condition and any key features.
Keep it concise but descriptive (2-3 sentences)."""


def build_description_prompt(title: str, category: str, additional_info: str = "") -> str:
    return DESCRIPTION_PROMPT.format(
        title=title, category=category, additional_info=additional_info or "none",
    )


def estimate_tokens(text: str) -> int:
    """Rough token count for backends that don't report usage: ceil(chars / 4)."""
    return math.ceil(len(text or "") / 4)


# ── Reply types ───────────────────────────────────────────────────────────────

@dataclass
class ProviderReply:
    """Raw text returned by a backend. usage is None when the backend gave no counts."""
    text: str
    usage: Optional[Usage] = None


@dataclass
class TextResult:
    """Result of generate_text(): either ok with text, or an error message."""
    ok: bool
    text: str = ""
    error: str = ""
    timing: Timing = field(default_factory=Timing)
    usage: Usage = field(default_factory=Usage)
    provider: str = ""
    model: str = ""

    def to_dict(self) -> dict:
        return {
            "success":  self.ok,
            "text":     self.text,
            "error":    self.error,
            "provider": self.provider,
            "model":    self.model,
            "timing":   self.timing.to_dict(),
            "usage":    self.usage.to_dict(),
        }


# ── Abstract base ─────────────────────────────────────────────────────────────

class VisionProvider(ABC):
    """Base class all providers must implement."""

    name: str                       # e.g. "openai"
    default_model: str              # used when the configured model is blank
    models: tuple[str, ...] = ()    # catalogue; empty = any model id accepted
    transient_errors: tuple[type[BaseException], ...] = ()

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        self.api_key = api_key
        self.model_id = model or self.default_model
        self.timeout = config.PROVIDER_TIMEOUT_SECS if timeout is None else timeout
        self.max_retries = config.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = (
            config.PROVIDER_RETRY_BACKOFF_SECS if retry_backoff is None else retry_backoff
        )

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"

    # ── Backend-specific requests ────────────────────────────────────────────

    @abstractmethod
    async def _request_image(self, image_bytes: bytes, mime_type: str, prompt: str) -> ProviderReply:
        """Send one image plus *prompt* to the backend; return its raw reply."""
        ...

    @abstractmethod
    async def _request_text(self, prompt: str) -> ProviderReply:
        """Send a text-only prompt to the backend; return its raw reply."""
        ...

    def _is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, self.transient_errors)

    # ── Public contract ──────────────────────────────────────────────────────

    async def analyse_image(self, image_bytes: bytes, mime_type: str) -> AnalysisOutcome:
        """Run vision inference. Always returns an outcome, never raises."""
        t0 = time.monotonic()
        try:
            reply = await self._with_retries(
                lambda: self._request_image(image_bytes, mime_type, ANALYSIS_PROMPT)
            )
        except ProviderCallError as exc:
            elapsed = _ms_since(t0)
            logger.error("[%s] Image analysis failed: %s", self.full_name, exc)
            return AnalysisFailure(
                reason=exc.message,
                error_type=type(exc.__cause__ or exc).__name__,
                timing=Timing(total_ms=elapsed, provider_call_ms=elapsed),
                usage=Usage(),
                provider=self.name,
                model=self.model_id,
            )

        elapsed = _ms_since(t0)
        usage = self._usage_for(ANALYSIS_PROMPT, reply)
        outcome = interpret(
            reply.text,
            usage=usage,
            timing=Timing(total_ms=elapsed, provider_call_ms=elapsed),
            provider=self.name,
            model=self.model_id,
        )
        logger.info(
            "[%s] analysis %s — tokens=%d latency=%dms",
            self.full_name, "OK" if outcome.success else "unparseable",
            usage.total_tokens, elapsed,
        )
        return outcome

    async def generate_text(self, prompt: str) -> TextResult:
        """Text completion. Always returns a TextResult, never raises."""
        t0 = time.monotonic()
        try:
            reply = await self._with_retries(lambda: self._request_text(prompt))
        except ProviderCallError as exc:
            elapsed = _ms_since(t0)
            logger.error("[%s] Text generation failed: %s", self.full_name, exc)
            return TextResult(
                ok=False,
                error=exc.message,
                timing=Timing(total_ms=elapsed, provider_call_ms=elapsed),
                provider=self.name,
                model=self.model_id,
            )
        elapsed = _ms_since(t0)
        return TextResult(
            ok=True,
            text=(reply.text or "").strip(),
            timing=Timing(total_ms=elapsed, provider_call_ms=elapsed),
            usage=self._usage_for(prompt, reply),
            provider=self.name,
            model=self.model_id,
        )

    # ── Internals ────────────────────────────────────────────────────────────

    @staticmethod
    def _usage_for(prompt: str, reply: ProviderReply) -> Usage:
        if reply.usage is not None:
            return reply.usage
        return Usage(
            prompt_tokens=estimate_tokens(prompt),
            completion_tokens=estimate_tokens(reply.text),
            estimated=True,
        )

    async def _with_retries(self, make_request: Callable[[], Awaitable[ProviderReply]]) -> ProviderReply:
        """
        Run make_request() under the timeout, retrying transient failures.
        Non-transient failures (auth, bad request) are not retried.
        Raises ProviderCallError when every attempt failed.
        """
        attempts = self.max_retries + 1
        last_error: Optional[ProviderCallError] = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(make_request(), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                last_error = ProviderCallError(
                    f"{self.full_name} timed out after {self.timeout:g}s", transient=True,
                )
                last_error.__cause__ = exc
            except Exception as exc:
                if not self._is_transient(exc):
                    raise ProviderCallError(f"{self.full_name}: {exc}") from exc
                last_error = ProviderCallError(f"{self.full_name}: {exc}", transient=True)
                last_error.__cause__ = exc

            if attempt < attempts:
                delay = self.retry_backoff * 2 ** (attempt - 1)
                logger.warning(
                    "[%s] attempt %d/%d failed (%s) — retrying in %.1fs",
                    self.full_name, attempt, attempts, last_error, delay,
                )
                await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error


def _ms_since(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)
