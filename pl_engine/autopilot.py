from __future__ import annotations

"""
Deterministic slot suggestions for a curation set ("autopilot").

Each product of the set's age range gets a score in roughly ``[0, 1.15]``:
a weighted blend of its normalised confidence and quality scores and of
how close its stage anchor month sits to the middle of the age band,
plus small bonuses for being publish-ready and for already having
evidence.  :func:`suggest_slots` then fills the three card slots with the
best products while keeping the categories apart, and returns a few
alternatives for the curator.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Sequence

import numpy as np
from loguru import logger

from .config import (
    ANCHOR_MAX_DISTANCE_MONTHS,
    ANCHOR_NEUTRAL_SCORE,
    AUTOPILOT_ALTERNATIVES,
    AUTOPILOT_ANCHOR_WEIGHT,
    AUTOPILOT_CONFIDENCE_WEIGHT,
    AUTOPILOT_QUALITY_WEIGHT,
    AUTOPILOT_SCORE_MAX,
    EVIDENCE_BONUS,
    READY_BONUS,
    REQUIRED_CARD_COUNT,
)
from .models import AgeRange, Product


@dataclass
class ScoredProduct:
    product: Product
    score: float
    is_ready: bool
    evidence_count: int = 0


@dataclass
class SlotSuggestion:
    slots: List[Optional[ScoredProduct]] = field(default_factory=list)
    alternatives: List[ScoredProduct] = field(default_factory=list)


def age_range_midpoint(age_range: Optional[AgeRange]) -> Optional[float]:
    if age_range is None or age_range.min_months is None or age_range.max_months is None:
        return None
    return (age_range.min_months + age_range.max_months) / 2.0


def _normalised(values: Sequence[Optional[float]]) -> np.ndarray:
    arr = np.array([np.nan if v is None else float(v) for v in values], dtype=float)
    arr = np.nan_to_num(arr, nan=0.0) / AUTOPILOT_SCORE_MAX
    return np.clip(arr, 0.0, 1.0)


def _anchor_scores(anchors: Sequence[Optional[int]], midpoint: Optional[float]) -> np.ndarray:
    """1.0 at the midpoint, falling linearly to the neutral score at the max distance."""
    arr = np.array([np.nan if a is None else float(a) for a in anchors], dtype=float)
    if midpoint is None:
        return np.full(arr.shape, ANCHOR_NEUTRAL_SCORE)
    dist = np.minimum(np.abs(arr - midpoint), ANCHOR_MAX_DISTANCE_MONTHS)
    scores = 1.0 - (1.0 - ANCHOR_NEUTRAL_SCORE) * dist / ANCHOR_MAX_DISTANCE_MONTHS
    return np.where(np.isnan(arr), ANCHOR_NEUTRAL_SCORE, scores)


def score_products(
    products: Sequence[Product],
    readiness: Mapping[str, bool],
    age_range: Optional[AgeRange],
    evidence_counts: Optional[Mapping[str, int]] = None,
) -> List[ScoredProduct]:
    """Score ``products`` and return them best first (ties by product id)."""
    if not products:
        return []
    evidence_counts = evidence_counts or {}
    confidence = _normalised([p.confidence_score for p in products])
    quality = _normalised([p.quality_score for p in products])
    anchor = _anchor_scores([p.stage_anchor_month for p in products], age_range_midpoint(age_range))
    ready = np.array([readiness.get(p.id) is True for p in products])
    evidence = np.array([evidence_counts.get(p.id, 0) for p in products])

    scores = (
        AUTOPILOT_CONFIDENCE_WEIGHT * confidence
        + AUTOPILOT_QUALITY_WEIGHT * quality
        + AUTOPILOT_ANCHOR_WEIGHT * anchor
        + np.where(ready, READY_BONUS, 0.0)
        + np.where(evidence >= 1, EVIDENCE_BONUS, 0.0)
    )
    scored = [
        ScoredProduct(product=p, score=round(float(s), 6), is_ready=bool(r), evidence_count=int(e))
        for p, s, r, e in zip(products, scores, ready, evidence)
    ]
    scored.sort(key=lambda sp: (-sp.score, sp.product.id))
    return scored


def _first(
    scored: Sequence[ScoredProduct],
    taken: set,
    excluded_categories: Iterable[Optional[str]] = (),
    prefer_ready: bool = True,
) -> Optional[ScoredProduct]:
    excluded = set(excluded_categories)
    eligible = [
        sp for sp in scored
        if sp.product.id not in taken and sp.product.category_id not in excluded
    ]
    if not eligible:
        return None
    if prefer_ready:
        for sp in eligible:
            if sp.is_ready:
                return sp
    return eligible[0]


def suggest_slots(
    scored: Sequence[ScoredProduct],
    pool_category_ids: Optional[Iterable[str]] = None,
) -> SlotSuggestion:
    """Fill the card slots from already-sorted ``scored`` products.

    Slot 1 is the best ready product (else the best overall), slot 2 the
    best from another category, slot 3 the best from a category used by
    neither.  Slots stay ``None`` when nothing qualifies.
    """
    pool = set(pool_category_ids or [])
    if pool:
        scored = [sp for sp in scored if sp.product.category_id in pool]

    taken: set = set()
    slots: List[Optional[ScoredProduct]] = []
    used_categories: List[Optional[str]] = []
    for _ in range(REQUIRED_CARD_COUNT):
        pick = _first(scored, taken, used_categories)
        slots.append(pick)
        if pick is not None:
            taken.add(pick.product.id)
            used_categories.append(pick.product.category_id)

    alternatives = [sp for sp in scored if sp.product.id not in taken][:AUTOPILOT_ALTERNATIVES]
    logger.info(
        "Autopilot filled {}/{} slots from {} candidates (pool filter: {})",
        sum(1 for s in slots if s is not None),
        REQUIRED_CARD_COUNT,
        len(scored),
        sorted(pool) if pool else "none",
    )
    return SlotSuggestion(slots=slots, alternatives=alternatives)
