"""
analysis.py — analysis outcome types and the response interpreter.

A provider reply is free-form text that *usually* contains a JSON object.
interpret() is the only place that knows how to dig that object out and
validate it; providers and the pipeline only ever see an AnalysisOutcome:

  AnalysisSuccess  — all structured fields present, price numeric
  AnalysisFailure  — reason + raw_text (raw text is never discarded)

Both always carry timing and usage.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional, Union

from errors import ResponseParseError

logger = logging.getLogger(__name__)

UNPARSEABLE = "unparseable response"

DEFAULT_CATEGORY = "Miscellaneous"
DEFAULT_CONDITION = "Unknown"


# ── Value types ───────────────────────────────────────────────────────────────

@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated: bool = False     # True when derived from the ceil(chars / 4) heuristic

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict:
        return {
            "prompt_tokens":     self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens":      self.total_tokens,
            "estimated":         self.estimated,
        }


@dataclass
class Timing:
    total_ms: int = 0
    provider_call_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AnalysisSuccess:
    title: str
    description: str
    category: str
    estimated_price: float
    condition: str
    tags: list[str] = field(default_factory=list)
    timing: Timing = field(default_factory=Timing)
    usage: Usage = field(default_factory=Usage)
    provider: str = ""
    model: str = ""

    success = True

    def to_dict(self) -> dict:
        return {
            "success":         True,
            "title":           self.title,
            "description":     self.description,
            "category":        self.category,
            "estimated_price": self.estimated_price,
            "condition":       self.condition,
            "tags":            list(self.tags),
            "provider":        self.provider,
            "model":           self.model,
            "timing":          self.timing.to_dict(),
            "usage":           self.usage.to_dict(),
        }


@dataclass
class AnalysisFailure:
    reason: str
    raw_text: str = ""
    error_type: str = ""
    timing: Timing = field(default_factory=Timing)
    usage: Usage = field(default_factory=Usage)
    provider: str = ""
    model: str = ""

    success = False

    def to_dict(self) -> dict:
        return {
            "success":    False,
            "error":      self.reason,
            "error_type": self.error_type,
            "raw_text":   self.raw_text,
            "provider":   self.provider,
            "model":      self.model,
            "timing":     self.timing.to_dict(),
            "usage":      self.usage.to_dict(),
        }


AnalysisOutcome = Union[AnalysisSuccess, AnalysisFailure]


def outcome_from_dict(data: dict) -> AnalysisOutcome:
    """Rebuild an outcome from the JSON stored on an image row."""
    usage_d  = data.get("usage") or {}
    timing_d = data.get("timing") or {}
    usage = Usage(
        prompt_tokens=int(usage_d.get("prompt_tokens", 0)),
        completion_tokens=int(usage_d.get("completion_tokens", 0)),
        estimated=bool(usage_d.get("estimated", False)),
    )
    timing = Timing(
        total_ms=int(timing_d.get("total_ms", 0)),
        provider_call_ms=int(timing_d.get("provider_call_ms", 0)),
    )
    if data.get("success"):
        return AnalysisSuccess(
            title=data["title"],
            description=data.get("description", ""),
            category=data.get("category", DEFAULT_CATEGORY),
            estimated_price=float(data["estimated_price"]),
            condition=data.get("condition", DEFAULT_CONDITION),
            tags=list(data.get("tags", [])),
            timing=timing,
            usage=usage,
            provider=data.get("provider", ""),
            model=data.get("model", ""),
        )
    return AnalysisFailure(
        reason=data.get("error", UNPARSEABLE),
        raw_text=data.get("raw_text", ""),
        error_type=data.get("error_type", ""),
        timing=timing,
        usage=usage,
        provider=data.get("provider", ""),
        model=data.get("model", ""),
    )


# ── JSON extraction ───────────────────────────────────────────────────────────

def _balanced_end(text: str, start: int) -> Optional[int]:
    """
    Return the index of the '}' closing the '{' at *start*, or None if it never
    closes. Braces inside JSON string literals are ignored.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def extract_json_block(text: str) -> Optional[str]:
    """
    Find the largest balanced {...} span in *text*.

    Handles prose before/after the object and ```json fences. Spans nested
    inside a larger balanced span are never candidates.
    """
    best: Optional[tuple[int, int]] = None
    pos = text.find("{")
    while pos != -1:
        end = _balanced_end(text, pos)
        if end is None:
            pos = text.find("{", pos + 1)
            continue
        if best is None or end - pos > best[1] - best[0]:
            best = (pos, end)
        pos = text.find("{", end + 1)
    if best is None:
        return None
    return text[best[0]:best[1] + 1]


def _coerce_price(value: Any) -> float:
    """Accept 12, 12.5, "12", "$12.50", "1,200". Anything else raises ValueError."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a price")
    if isinstance(value, (int, float)):
        price = float(value)
    elif isinstance(value, str):
        cleaned = value.strip().lstrip("$").replace(",", "").strip()
        price = float(cleaned)
    else:
        raise ValueError(f"unsupported price type {type(value).__name__}")
    if price != price or price < 0:      # NaN or negative
        raise ValueError(f"invalid price {value!r}")
    return price


def _coerce_tags(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(t).strip() for t in value if str(t).strip()]
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return []


def parse_analysis(raw: str) -> dict:
    """
    Extract and validate the analysis object from a provider reply.
    Raises ResponseParseError (carrying the raw text) on any failure.
    """
    block = extract_json_block(raw or "")
    if block is None:
        raise ResponseParseError("No JSON object found in response", raw_text=raw)
    try:
        data = json.loads(block)
    except json.JSONDecodeError as exc:
        raise ResponseParseError(f"JSON parse error: {exc}", raw_text=raw) from exc
    if not isinstance(data, dict):
        raise ResponseParseError("JSON block is not an object", raw_text=raw)

    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ResponseParseError("Missing title", raw_text=raw)
    if "estimated_price" not in data:
        raise ResponseParseError("Missing estimated_price", raw_text=raw)
    try:
        price = _coerce_price(data["estimated_price"])
    except (TypeError, ValueError) as exc:
        raise ResponseParseError(f"estimated_price is not numeric: {exc}", raw_text=raw) from exc

    return {
        "title":           title.strip(),
        "description":     str(data.get("description") or "").strip(),
        "category":        str(data.get("category") or DEFAULT_CATEGORY).strip(),
        "estimated_price": price,
        "condition":       str(data.get("condition") or DEFAULT_CONDITION).strip(),
        "tags":            _coerce_tags(data.get("tags")),
    }


def interpret(
    raw: str,
    usage: Usage,
    timing: Timing,
    provider: str = "",
    model: str = "",
) -> AnalysisOutcome:
    """Turn a provider reply into an AnalysisOutcome. Never raises."""
    try:
        fields = parse_analysis(raw)
    except ResponseParseError as exc:
        logger.warning("[%s/%s] %s — raw: %s", provider, model, exc, (raw or "")[:300])
        return AnalysisFailure(
            reason=UNPARSEABLE,
            raw_text=raw or "",
            error_type=type(exc).__name__,
            timing=timing,
            usage=usage,
            provider=provider,
            model=model,
        )
    return AnalysisSuccess(
        timing=timing,
        usage=usage,
        provider=provider,
        model=model,
        **fields,
    )
