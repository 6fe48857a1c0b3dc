"""Core types and DTOs for the scoring pipeline."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Sentiment
# ---------------------------------------------------------------------------


class SentimentLabel(str, Enum):
    POSITIVE = "POSITIVE"
    NEUTRAL = "NEUTRAL"
    NEGATIVE = "NEGATIVE"


DEFAULT_SENTIMENT_SCORE = 60.0
NEGATIVE_BELOW = 55
POSITIVE_ABOVE = 65


def normalize_score(value: Any) -> float:
    """Bring an engine score onto the 1..100 scale.

    Engines answer either on -1..1 or 1..100. A non-zero score within
    [-1, 1] is rescaled; anything else is clamped. A missing or zero score
    means the engine had no opinion and maps to the neutral default.
    """
    try:
        score = float(value)
    except (TypeError, ValueError):
        return DEFAULT_SENTIMENT_SCORE
    if not score:
        return DEFAULT_SENTIMENT_SCORE
    if -1 <= score <= 1:
        return float(round(((score + 1) / 2) * 99) + 1)
    return float(min(max(round(score), 1), 100))


def label_for_score(score: float) -> SentimentLabel:
    if score < NEGATIVE_BELOW:
        return SentimentLabel.NEGATIVE
    if score > POSITIVE_ABOVE:
        return SentimentLabel.POSITIVE
    return SentimentLabel.NEUTRAL


def _sentences(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [s.strip() for s in value if isinstance(s, str) and s.strip()]


@dataclass
class EntitySentiment:
    label: SentimentLabel = SentimentLabel.NEUTRAL
    score: float = DEFAULT_SENTIMENT_SCORE
    positive_sentences: list[str] = field(default_factory=list)
    negative_sentences: list[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Any) -> EntitySentiment:
        """Normalize whatever the engine returned for one entity."""
        if not isinstance(raw, dict):
            return cls()
        score = normalize_score(raw.get("score", DEFAULT_SENTIMENT_SCORE))
        return cls(
            label=label_for_score(score),
            score=score,
            positive_sentences=_sentences(raw.get("positive_sentences")),
            negative_sentences=_sentences(raw.get("negative_sentences")),
        )

    @classmethod
    def from_stored(cls, stored: dict) -> EntitySentiment:
        """Rebuild from to_dict() output; the score is already on the 1..100 scale."""
        try:
            score = float(stored.get("score", DEFAULT_SENTIMENT_SCORE))
        except (TypeError, ValueError):
            score = DEFAULT_SENTIMENT_SCORE
        return cls(
            label=label_for_score(score),
            score=score,
            positive_sentences=_sentences(stored.get("positive_sentences")),
            negative_sentences=_sentences(stored.get("negative_sentences")),
        )

    def to_dict(self) -> dict:
        return {
            "label": self.label.value,
            "score": self.score,
            "positive_sentences": self.positive_sentences,
            "negative_sentences": self.negative_sentences,
        }


# ---------------------------------------------------------------------------
# Consolidated analysis (stage 1 output)
# ---------------------------------------------------------------------------

MAX_BRAND_PRODUCTS = 12
MAX_COMPETITOR_PRODUCTS = 8


def _products(value: Any, limit: int) -> list[str]:
    if not isinstance(value, list):
        return []
    seen: list[str] = []
    for item in value:
        if isinstance(item, str) and item.strip() and item.strip() not in seen:
            seen.append(item.strip())
    return seen[:limit]


@dataclass
class AnalysisResult:
    """Products, citation hints and sentiment for brand + competitors.

    Competitor keys are competitor names as the engine returned them;
    they are resolved to competitor ids later, case-insensitively.
    """

    brand_products: list[str] = field(default_factory=list)
    competitor_products: dict[str, list[str]] = field(default_factory=dict)
    brand_sentiment: EntitySentiment | None = None
    competitor_sentiment: dict[str, EntitySentiment] = field(default_factory=dict)
    citations: dict[str, dict] = field(default_factory=dict)  # url -> {"category", "pageName"}

    @classmethod
    def from_engine(cls, data: dict, competitor_names: list[str]) -> AnalysisResult:
        """Normalize a parsed engine JSON document."""
        products = data.get("products") if isinstance(data.get("products"), dict) else {}
        sentiment = data.get("sentiment") if isinstance(data.get("sentiment"), dict) else {}
        citations = data.get("citations") if isinstance(data.get("citations"), dict) else {}

        raw_competitor_products = products.get("competitors") if isinstance(products.get("competitors"), dict) else {}
        raw_competitor_sentiment = (
            sentiment.get("competitors") if isinstance(sentiment.get("competitors"), dict) else {}
        )

        known = {name.lower(): name for name in competitor_names}
        competitor_products = {}
        for name, items in raw_competitor_products.items():
            canonical = known.get(str(name).lower())
            if canonical:
                competitor_products[canonical] = _products(items, MAX_COMPETITOR_PRODUCTS)
        competitor_sentiment = {}
        for name, raw in raw_competitor_sentiment.items():
            canonical = known.get(str(name).lower())
            if canonical:
                competitor_sentiment[canonical] = EntitySentiment.from_raw(raw)

        return cls(
            brand_products=_products(products.get("brand"), MAX_BRAND_PRODUCTS),
            competitor_products=competitor_products,
            brand_sentiment=EntitySentiment.from_raw(sentiment.get("brand")),
            competitor_sentiment=competitor_sentiment,
            citations={
                url: hint for url, hint in citations.items() if isinstance(url, str) and isinstance(hint, dict)
            },
        )

    @classmethod
    def from_cache(cls, products: dict | None, sentiment: dict | None, citations: dict | None) -> AnalysisResult:
        """Rebuild from a consolidated_analysis_cache row."""
        products = products or {}
        sentiment = sentiment or {}
        brand_sentiment = sentiment.get("brand")
        return cls(
            brand_products=list(products.get("brand") or []),
            competitor_products={k: list(v) for k, v in (products.get("competitors") or {}).items()},
            brand_sentiment=EntitySentiment.from_stored(brand_sentiment) if isinstance(brand_sentiment, dict) else None,
            competitor_sentiment={
                k: EntitySentiment.from_stored(v)
                for k, v in (sentiment.get("competitors") or {}).items()
                if isinstance(v, dict)
            },
            citations=dict(citations or {}),
        )

    @property
    def has_sentiment(self) -> bool:
        return self.brand_sentiment is not None or bool(self.competitor_sentiment)

    def products_document(self) -> dict:
        return {"brand": self.brand_products, "competitors": self.competitor_products}

    def sentiment_document(self) -> dict:
        return {
            "brand": self.brand_sentiment.to_dict() if self.brand_sentiment else None,
            "competitors": {k: v.to_dict() for k, v in self.competitor_sentiment.items()},
        }


# ---------------------------------------------------------------------------
# Brand context (resolved once per scoring run)
# ---------------------------------------------------------------------------


@dataclass
class CompetitorRef:
    id: uuid.UUID
    name: str
    aliases: list[str] = field(default_factory=list)


@dataclass
class BrandContext:
    """Brand and its active competitors, indexed by competitor id."""

    brand_id: uuid.UUID
    customer_id: uuid.UUID
    name: str
    aliases: list[str] = field(default_factory=list)
    competitors: list[CompetitorRef] = field(default_factory=list)

    @property
    def competitor_names(self) -> list[str]:
        return [c.name for c in self.competitors]

    def competitor_by_name(self, name: str) -> CompetitorRef | None:
        lowered = name.strip().lower()
        for competitor in self.competitors:
            if competitor.name.lower() == lowered:
                return competitor
        return None


# ---------------------------------------------------------------------------
# Positions (stage 2 output)
# ---------------------------------------------------------------------------


@dataclass
class EntityPositions:
    positions: list[int] = field(default_factory=list)  # char offsets of merged mentions
    first_word_position: int | None = None  # 1-based word index of the first mention
    visibility_index: float | None = None
    share_of_answers: float | None = None

    @property
    def mentions(self) -> int:
        return len(self.positions)

    @property
    def first_position(self) -> int | None:
        return self.positions[0] if self.positions else None


@dataclass
class PositionReport:
    word_count: int
    brand: EntityPositions
    competitors: dict[uuid.UUID, EntityPositions] = field(default_factory=dict)
