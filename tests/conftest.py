from __future__ import annotations

from datetime import datetime, timezone

import pandas as pd
import pytest

from pl_engine.curation_store import CurationStore
from pl_engine.models import Category, Product
from pl_engine.taxonomy import TaxonomyStore

AGE_RANGES = [
    {"id": "0-6m", "min_months": 0, "max_months": 6, "label": "Newborn"},
    {"id": "6-12m", "min_months": 6, "max_months": 12, "label": "Sitter"},
    {"id": "12-24m", "min_months": 12, "max_months": 24, "label": "Toddler"},
]

WRAPPERS = [
    {"id": "w1", "slug": "grasping", "label": "Grasping", "age_range_id": "6-12m", "need_id": "n-motor", "rank": 1},
    {"id": "w2", "slug": "first-words", "label": "First words", "age_range_id": "6-12m", "need_id": "n-lang", "rank": 2},
    {"id": "w3", "slug": "empty-need", "label": "Nothing yet", "age_range_id": "6-12m", "need_id": "n-none", "rank": 3},
]

CATEGORIES = [
    {"id": "C1", "slug": "rattles", "label": "Rattles", "age_range_id": "6-12m", "need_id": "n-motor", "rank": 1},
    {"id": "C2", "slug": "stacking", "label": "Stacking", "age_range_id": "6-12m", "need_id": "n-motor", "rank": 2},
    {"id": "C3", "slug": "board-books", "label": "Board books", "age_range_id": "6-12m", "need_id": "n-lang", "rank": 1},
]

PRODUCTS = [
    {"id": "P1", "name": "Ring Rattle", "brand": "Lovevery", "category_id": "C1", "age_range_id": "6-12m",
     "rank": 1, "rationale": "Easy to grip", "confidence_score": 8, "quality_score": 9, "stage_anchor_month": 9},
    {"id": "P2", "name": "Bell Rattle", "brand": None, "category_id": "C1", "age_range_id": "6-12m",
     "rank": 2, "rationale": "Makes a soft sound", "confidence_score": 6, "quality_score": 6, "stage_anchor_month": 7},
    {"id": "P3", "name": "Stacking Cups", "brand": "Green Toys", "category_id": "C2", "age_range_id": "6-12m",
     "rank": 1, "rationale": "Nesting and stacking", "confidence_score": 7, "quality_score": 8, "stage_anchor_month": 10},
    {"id": "P4", "name": "Touch and Feel", "brand": "DK", "category_id": "C3", "age_range_id": "6-12m",
     "rank": 1, "rationale": "Textures to name", "confidence_score": 5, "quality_score": 7, "stage_anchor_month": None},
]

READY = {"P1": True, "P2": False, "P3": True, "P4": True}

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def taxonomy() -> TaxonomyStore:
    return TaxonomyStore(
        pd.DataFrame(AGE_RANGES),
        pd.DataFrame(WRAPPERS),
        pd.DataFrame(CATEGORIES),
        pd.DataFrame(PRODUCTS),
    )


@pytest.fixture
def products() -> dict:
    return {row["id"]: Product(**row) for row in PRODUCTS}


@pytest.fixture
def store(tmp_path) -> CurationStore:
    s = CurationStore(tmp_path / "curation.sqlite")
    s.init_schema()
    for row in CATEGORIES:
        s.upsert_category(Category(**row))
    for row in PRODUCTS:
        s.upsert_product(Product(**row))
    for pid, ready in READY.items():
        s.set_readiness("6-12m", pid, ready)
    return s


def fill_publishable(store: CurationStore, set_id: str, product_slugs=None) -> None:
    """Place a ready product and one evidence row on every card of the set."""
    product_slugs = product_slugs or [("P1", "rattles"), ("P3", "stacking"), ("P4", "board-books")]
    graph = store.load_graph(set_id)
    for card, (pid, slug) in zip(graph.cards, product_slugs):
        store.place_product(card.id, pid, slug)
        store.add_evidence(card.id, source_type="study", confidence=4, url="https://example.org/s")


@pytest.fixture
def draft_set(store):
    curation_set, _ = store.ensure_draft_set("6-12m", "bath-time")
    return curation_set
