from __future__ import annotations

"""
Domain model for the Product Library engine.

Reference data (age ranges, wrappers, categories, products) is curated
elsewhere and only read here.  Curation entities (sets, cards, evidence,
pool items) are mutated through :mod:`pl_engine.curation_store`.  A
:class:`Pick` is derived per call and never persisted.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

Lane = Literal["obvious", "nearby", "surprise"]
SetStatus = Literal["draft", "published"]


class AgeRange(BaseModel):
    id: str
    min_months: Optional[int] = None
    max_months: Optional[int] = None
    label: Optional[str] = None


class Wrapper(BaseModel):
    id: str
    slug: str
    label: str = ""
    age_range_id: str
    need_id: str
    rank: int = 0


class Category(BaseModel):
    id: str
    slug: str = ""
    label: str = ""
    age_range_id: Optional[str] = None
    need_id: Optional[str] = None
    rank: int = 0


class Product(BaseModel):
    id: str
    name: str
    brand: Optional[str] = None
    category_id: Optional[str] = None
    age_range_id: Optional[str] = None
    rank: int = 0
    # default "because" text copied onto a card when the product is placed
    rationale: Optional[str] = None
    confidence_score: Optional[float] = None
    quality_score: Optional[float] = None
    stage_anchor_month: Optional[int] = None

    def display_name(self) -> str:
        return f"{self.name} ({self.brand})" if self.brand else self.name


class Pick(BaseModel):
    product: Product
    category: Category


class CurationSet(BaseModel):
    id: str
    age_range_id: str
    moment_id: str
    status: SetStatus = "draft"
    published_at: Optional[datetime] = None
    version: int = 0


class Card(BaseModel):
    id: str
    set_id: str
    lane: Lane
    rank: int
    category_id: Optional[str] = None
    product_id: Optional[str] = None
    rationale: str = ""


class Evidence(BaseModel):
    id: str
    card_id: str
    source_type: str
    url: Optional[str] = None
    quote: Optional[str] = None
    confidence: int = Field(ge=1, le=5)


class PoolItem(BaseModel):
    id: str
    age_range_id: str
    moment_id: str
    category_id: str
    note: Optional[str] = None


class CardWithEvidence(Card):
    evidence: List[Evidence] = []


class SetGraph(BaseModel):
    """A set together with its cards and each card's evidence."""

    curation_set: CurationSet
    cards: List[CardWithEvidence] = []


class Violation(BaseModel):
    rule: str
    message: str
    card_rank: Optional[int] = None
    product_id: Optional[str] = None


class GateResult(BaseModel):
    ok: bool
    violations: List[Violation] = []
