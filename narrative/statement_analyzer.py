"""
statement_analyzer.py
----------------------
Behavioural analysis of a pasted bank statement via the text-generation
collaborator.

The collaborator is asked for a JSON object (summary, patterns, insights,
transactions). The reply is handled defensively:

    1. strip a ```json ... ``` or ``` ... ``` fence if present;
    2. parse the JSON;
    3. validate the expected shape;
    4. recompute every pattern's confidence from its occurrence count.

If any of steps 1-3 fails the analysis is not discarded: the raw reply is
returned as a single "parse-error" insight with raw_analysis set.
Rate-limit and quota errors propagate as TextGenerationError so the caller
can surface a retry.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.confidence import get_confidence
from narrative.text_client import TextGenerationClient

logger = logging.getLogger(__name__)


PARSE_ERROR_ID = "parse-error"

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCED_RE = re.compile(r"```\s*([\s\S]*?)\s*```")

SYSTEM_PROMPT = """You are a financial behavioral analyst AI that specializes in analyzing bank statements and spending documents. Your task is to:

1. Extract transaction data from the provided document text
2. Identify spending patterns (temporal, behavioral, contextual)
3. Generate insights using non-judgmental, speculative language

Use language like "It looks like...", "You tend to...", "This might suggest...", "We noticed...".
Identify patterns with confidence levels: Strong (6+ occurrences), Emerging (3-5), Weak (1-2).

Return your analysis as a valid JSON object with this exact structure:
{
  "summary": {
    "totalTransactions": number,
    "totalSpent": number,
    "dateRange": { "start": "YYYY-MM-DD", "end": "YYYY-MM-DD" },
    "topCategories": [{ "name": string, "amount": number, "percentage": number }]
  },
  "patterns": [{ "id": string, "title": string, "description": string,
                 "confidence": "strong" | "emerging" | "weak", "category": string,
                 "occurrences": number, "averageAmount": number, "timeRange": string,
                 "trend": "increasing" | "stable" | "decreasing" }],
  "insights": [{ "id": string, "title": string, "description": string,
                 "confidence": "strong" | "emerging" | "weak", "category": string,
                 "actionable": string }],
  "transactions": [{ "date": "YYYY-MM-DD", "description": string, "amount": number, "category": string }]
}"""


class AnalysisShapeError(ValueError):
    """The collaborator's JSON does not have the expected shape."""


@dataclass
class StatementSummary:
    total_transactions: int = 0
    total_spent: float = 0.0
    date_range: Dict[str, str] = field(default_factory=lambda: {"start": "", "end": ""})
    top_categories: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AnalyzedPattern:
    id: str
    title: str
    description: str
    category: str
    occurrences: int
    average_amount: float
    time_range: str
    trend: str

    @property
    def confidence(self) -> str:
        return get_confidence(self.occurrences)


@dataclass
class AnalyzedInsight:
    id: str
    title: str
    description: str
    confidence: str
    category: str
    actionable: str = ""


@dataclass
class StatementAnalysis:
    summary: StatementSummary
    patterns: List[AnalyzedPattern] = field(default_factory=list)
    insights: List[AnalyzedInsight] = field(default_factory=list)
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    raw_analysis: Optional[str] = None

    @property
    def parse_failed(self) -> bool:
        return self.raw_analysis is not None


def extract_json_payload(content: str) -> Any:
    """
    Parses JSON from a reply that may be wrapped in a markdown code fence.

    Raises:
        json.JSONDecodeError: If no valid JSON is found.
    """
    match = _FENCED_JSON_RE.search(content) or _FENCED_RE.search(content)
    payload = match.group(1) if match else content
    return json.loads(payload.strip())


def _require(obj: Dict[str, Any], key: str, kind) -> Any:
    if key not in obj:
        raise AnalysisShapeError(f"Missing key '{key}'")
    value = obj[key]
    if not isinstance(value, kind) or isinstance(value, bool) and kind is not bool:
        raise AnalysisShapeError(f"Key '{key}' has unexpected type {type(value).__name__}")
    return value


def _require_number(obj: Dict[str, Any], key: str) -> float:
    value = _require(obj, key, (int, float))
    if not math.isfinite(value):
        raise AnalysisShapeError(f"Key '{key}' is not a finite number")
    return value


def _optional(obj: Dict[str, Any], key: str, kind, default: Any) -> Any:
    """Like _require, but a missing or null key yields default."""
    if obj.get(key) is None:
        return default
    if kind is float:
        return float(_require_number(obj, key))
    return _require(obj, key, kind)


def parse_analysis(data: Any) -> StatementAnalysis:
    """
    Validates a decoded payload and builds a StatementAnalysis.

    Raises:
        AnalysisShapeError: On any missing key or wrong type.
    """
    if not isinstance(data, dict):
        raise AnalysisShapeError("Top-level value is not an object")

    raw_summary = _require(data, "summary", dict)
    summary = StatementSummary(
        total_transactions=int(_require_number(raw_summary, "totalTransactions")),
        total_spent=float(_require_number(raw_summary, "totalSpent")),
        date_range=dict(_optional(raw_summary, "dateRange", dict, {"start": "", "end": ""})),
        top_categories=list(_optional(raw_summary, "topCategories", list, [])),
    )

    patterns = []
    for raw in _require(data, "patterns", list):
        if not isinstance(raw, dict):
            raise AnalysisShapeError("Pattern entry is not an object")
        patterns.append(AnalyzedPattern(
            id=str(_require(raw, "id", (str, int))),
            title=_require(raw, "title", str),
            description=_require(raw, "description", str),
            category=_require(raw, "category", str),
            occurrences=int(_require_number(raw, "occurrences")),
            average_amount=_optional(raw, "averageAmount", float, 0.0),
            time_range=str(raw.get("timeRange") or ""),
            trend=raw.get("trend") if raw.get("trend") in ("increasing", "stable", "decreasing") else "stable",
        ))

    insights = []
    for raw in _require(data, "insights", list):
        if not isinstance(raw, dict):
            raise AnalysisShapeError("Insight entry is not an object")
        insights.append(AnalyzedInsight(
            id=str(_require(raw, "id", (str, int))),
            title=_require(raw, "title", str),
            description=_require(raw, "description", str),
            confidence=str(raw.get("confidence") or "emerging"),
            category=str(raw.get("category") or "general"),
            actionable=str(raw.get("actionable") or ""),
        ))

    transactions = _require(data, "transactions", list)
    return StatementAnalysis(summary=summary, patterns=patterns, insights=insights, transactions=transactions)


def fallback_analysis(content: str) -> StatementAnalysis:
    """Analysis carrying the unparsed reply as a single insight."""
    return StatementAnalysis(
        summary=StatementSummary(),
        insights=[AnalyzedInsight(
            id=PARSE_ERROR_ID,
            title="Analysis Complete",
            description=content,
            confidence="emerging",
            category="general",
            actionable="Please upload a clearer document for more detailed analysis.",
        )],
        raw_analysis=content,
    )


class StatementAnalyzer:
    """
    Usage:
        analyzer = StatementAnalyzer(TextGenerationClient.from_config())
        analysis = analyzer.analyze(document_text)
    """

    def __init__(self, client: TextGenerationClient, max_tokens: int = 4000):
        self.client = client
        self.max_tokens = max_tokens

    def analyze(self, document_text: str) -> StatementAnalysis:
        if not isinstance(document_text, str) or not document_text.strip():
            raise ValueError("Document text is required")

        content = self.client.generate(
            SYSTEM_PROMPT,
            "Please analyze the following bank statement/spending document and provide "
            f"behavioral insights:\n\n{document_text}",
            max_tokens=self.max_tokens,
        )

        try:
            return parse_analysis(extract_json_payload(content))
        except (json.JSONDecodeError, AnalysisShapeError) as e:
            logger.warning(f"Failed to parse statement analysis as JSON: {e}")
            return fallback_analysis(content)
