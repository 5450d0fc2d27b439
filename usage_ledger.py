"""
usage_ledger.py — token and cost accounting for every provider call.

record() prices a call and appends one immutable row to the usage_ledger table.
aggregate() is a pure reduction over ledger rows; session totals are always
recomputed from the stored rows, never kept as running counters.

Cost = prompt_tokens × input_rate + completion_tokens × output_rate, with rates
looked up by model name. Unknown models are priced at zero (with a warning) so
an unlisted model can never break the pipeline.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import config
import database as db
import events
from analysis import Usage

logger = logging.getLogger(__name__)

IMAGE_ANALYSIS = "image_analysis"
TEXT_GENERATION = "text_generation"

CURRENCY = "USD"

# model → ($ per 1k input tokens, $ per 1k output tokens)
PRICING: dict[str, tuple[float, float]] = {
    # OpenAI
    "gpt-4o":                     (0.005,    0.015),
    "gpt-4o-mini":                (0.00015,  0.0006),
    "gpt-4":                      (0.03,     0.06),
    "gpt-3.5-turbo":              (0.0005,   0.0015),
    # Anthropic
    "claude-3-5-sonnet-20241022": (0.003,    0.015),
    "claude-3-haiku-20240307":    (0.00025,  0.00125),
    # Google
    "gemini-1.5-pro":             (0.0035,   0.0105),
    "gemini-1.5-flash":           (0.000075, 0.0003),
    "gemini-2.0-flash":           (0.0001,   0.0004),
    # Groq
    "meta-llama/llama-3.2-11b-vision-preview":   (0.00018, 0.00018),
    "meta-llama/llama-3.2-90b-vision-preview":   (0.00079, 0.00079),
    "meta-llama/llama-4-scout-17b-16e-instruct": (0.00011, 0.00034),
    # OpenRouter (upstream ids)
    "openai/gpt-4o":              (0.005,    0.015),
    "openai/gpt-4o-mini":         (0.00015,  0.0006),
}


@dataclass
class CostBreakdown:
    input_cost: float
    output_cost: float
    currency: str = CURRENCY

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost

    def to_dict(self) -> dict:
        return {
            "input_cost":  self.input_cost,
            "output_cost": self.output_cost,
            "total_cost":  self.total_cost,
            "currency":    self.currency,
        }


def compute_cost(
    model: str,
    usage: Usage,
    pricing: Optional[dict[str, tuple[float, float]]] = None,
) -> CostBreakdown:
    table = PRICING if pricing is None else pricing
    rates = table.get(model)
    if rates is None:
        logger.warning("No pricing for model %r — recording zero cost", model)
        return CostBreakdown(0.0, 0.0)
    input_per_1k, output_per_1k = rates
    return CostBreakdown(
        input_cost=usage.prompt_tokens / 1000 * input_per_1k,
        output_cost=usage.completion_tokens / 1000 * output_per_1k,
    )


async def record(
    operation: str,
    usage: Usage,
    provider: str,
    model: str,
    pricing: Optional[dict[str, tuple[float, float]]] = None,
    item_id: Optional[str] = None,
) -> db.UsageRecord:
    """Price one call and append it to the ledger."""
    cost = compute_cost(model, usage, pricing)
    entry = await db.append_usage(
        operation=operation,
        provider=provider,
        model=model,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        estimated=usage.estimated,
        input_cost=cost.input_cost,
        output_cost=cost.output_cost,
        currency=cost.currency,
        item_id=item_id,
    )
    events.record(
        "AI_COST",
        operation=operation,
        provider=provider,
        model=model,
        tokens=usage.to_dict(),
        estimated_cost_usd=cost.to_dict(),
        item_id=item_id,
    )
    return entry


def aggregate(records: Iterable[db.UsageRecord]) -> dict:
    """Pure reduction: totals plus a per-operation breakdown."""
    operations: dict[str, dict] = {
        IMAGE_ANALYSIS:  {"count": 0, "cost": 0.0, "tokens": 0},
        TEXT_GENERATION: {"count": 0, "cost": 0.0, "tokens": 0},
    }
    total_cost = 0.0
    total_tokens = 0
    total_requests = 0
    session_start: Optional[str] = None

    for r in records:
        if session_start is None or r.ts < session_start:
            session_start = r.ts
        total_cost += r.total_cost
        total_tokens += r.total_tokens
        total_requests += 1
        op = operations.setdefault(r.operation, {"count": 0, "cost": 0.0, "tokens": 0})
        op["count"] += 1
        op["cost"] += r.total_cost
        op["tokens"] += r.total_tokens

    return {
        "total_cost":     total_cost,
        "total_tokens":   total_tokens,
        "total_requests": total_requests,
        "currency":       CURRENCY,
        "operations":     operations,
        "session_start":  session_start,
    }


async def session_usage(window_hours: Optional[int] = None) -> dict:
    """Aggregate the ledger over the rolling session window (default config.USAGE_WINDOW_HOURS)."""
    hours = config.USAGE_WINDOW_HOURS if window_hours is None else window_hours
    now = datetime.now(timezone.utc)
    since = now - timedelta(hours=hours)
    result = aggregate(await db.get_usage_since(since))
    result["window_hours"] = hours
    if result["session_start"] is None:
        result["session_start"] = now.isoformat()
    return result
