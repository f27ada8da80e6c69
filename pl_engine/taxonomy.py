from __future__ import annotations

"""
Read-only taxonomy store: age ranges, wrappers, categories and products.

The taxonomy is curated elsewhere and exported as one snapshot table per
entity (Parquet, with CSV accepted).  This module loads those tables into
pandas DataFrames, normalises their columns and hands out ranked lists
as pydantic objects.  All ordering is ``rank`` ascending with ``id``
ascending as the tie-break, so callers can rely on the sequences being
pre-sorted.
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from loguru import logger

from .config import (
    AGE_RANGES_SNAPSHOT,
    CATEGORIES_SNAPSHOT,
    PRODUCTS_SNAPSHOT,
    TAXONOMY_DIR,
    WRAPPERS_SNAPSHOT,
)
from .models import AgeRange, Category, Product, Wrapper
from .ranges import parse_range

REQUIRED_COLUMNS: Dict[str, List[str]] = {
    AGE_RANGES_SNAPSHOT: ["id", "min_months", "max_months"],
    WRAPPERS_SNAPSHOT: ["id", "slug", "age_range_id", "need_id", "rank"],
    CATEGORIES_SNAPSHOT: ["id", "slug", "age_range_id", "need_id", "rank"],
    PRODUCTS_SNAPSHOT: ["id", "name", "category_id", "age_range_id", "rank"],
}

OPTIONAL_COLUMNS: Dict[str, List[str]] = {
    AGE_RANGES_SNAPSHOT: ["label"],
    WRAPPERS_SNAPSHOT: ["label"],
    CATEGORIES_SNAPSHOT: ["label"],
    PRODUCTS_SNAPSHOT: [
        "brand",
        "rationale",
        "confidence_score",
        "quality_score",
        "stage_anchor_month",
    ],
}

_SORT_KEYS = ["rank", "id"]


# ---------------------------
# Snapshot IO
# ---------------------------

def load_snapshot_table(name: str, directory: Path = TAXONOMY_DIR) -> pd.DataFrame:
    """Load one taxonomy table, preferring Parquet and falling back to CSV."""
    parquet_path = directory / f"{name}.parquet"
    csv_path = directory / f"{name}.csv"
    if parquet_path.exists():
        try:
            df = pd.read_parquet(parquet_path)
            logger.info("Loaded {} with {} rows from {}", name, len(df), parquet_path)
            return df
        except Exception as e:
            logger.warning("Failed to read {} ({}). Trying CSV fallback.", parquet_path, e)
    if not csv_path.exists():
        raise FileNotFoundError(
            f"No snapshot for '{name}' under {directory} (expected {name}.parquet or {name}.csv)"
        )
    df = pd.read_csv(csv_path, dtype=str)
    logger.info("Loaded {} (CSV) with {} rows from {}", name, len(df), csv_path)
    return df


def _normalise_frame(df: pd.DataFrame, name: str) -> pd.DataFrame:
    """Check required columns, add optional ones, coerce ids and ranks."""
    missing = [c for c in REQUIRED_COLUMNS[name] if c not in df.columns]
    if missing:
        raise ValueError(f"Expected columns {missing} in '{name}' snapshot. Found: {list(df.columns)}")
    df = df.copy()
    for col in OPTIONAL_COLUMNS[name]:
        if col not in df.columns:
            df[col] = None
    # age range bounds stay raw: the resolver owns malformed-row handling
    for col in ("id", "slug", "age_range_id", "need_id", "category_id"):
        if col in df.columns:
            df[col] = df[col].map(lambda v: None if pd.isna(v) else str(v).strip())
    if "rank" in df.columns:
        df["rank"] = pd.to_numeric(df["rank"], errors="coerce").fillna(0).astype(int)
    for col in ("confidence_score", "quality_score", "stage_anchor_month"):
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.astype(object).where(pd.notna(df), None)
    if "rank" in df.columns:
        df = df.sort_values(_SORT_KEYS, kind="mergesort").reset_index(drop=True)
    return df


def _records(df: pd.DataFrame) -> List[Dict[str, Any]]:
    return df.to_dict(orient="records")


# ---------------------------
# Row mapping
# ---------------------------

def _to_wrapper(row: Dict[str, Any]) -> Wrapper:
    return Wrapper(
        id=row["id"],
        slug=row["slug"],
        label=str(row.get("label") or ""),
        age_range_id=row["age_range_id"],
        need_id=row["need_id"],
        rank=int(row["rank"]),
    )


def _to_category(row: Dict[str, Any]) -> Category:
    return Category(
        id=row["id"],
        slug=row.get("slug") or "",
        label=str(row.get("label") or ""),
        age_range_id=row.get("age_range_id"),
        need_id=row.get("need_id"),
        rank=int(row["rank"]),
    )


def _to_product(row: Dict[str, Any]) -> Product:
    try:
        anchor = row.get("stage_anchor_month")
        return Product(
            id=row["id"],
            name=str(row.get("name") or "").strip(),
            brand=row.get("brand") or None,
            category_id=row.get("category_id"),
            age_range_id=row.get("age_range_id"),
            rank=int(row["rank"]),
            rationale=row.get("rationale") or None,
            confidence_score=row.get("confidence_score"),
            quality_score=row.get("quality_score"),
            stage_anchor_month=int(anchor) if anchor is not None else None,
        )
    except Exception as e:
        logger.exception("Error mapping product row {}: {}", row.get("id"), e)
        raise


class TaxonomyStore:
    """In-memory view over the four taxonomy tables."""

    def __init__(
        self,
        age_ranges: pd.DataFrame,
        wrappers: pd.DataFrame,
        categories: pd.DataFrame,
        products: pd.DataFrame,
    ) -> None:
        self._age_ranges = _normalise_frame(age_ranges, AGE_RANGES_SNAPSHOT)
        self._wrappers = _normalise_frame(wrappers, WRAPPERS_SNAPSHOT)
        self._categories = _normalise_frame(categories, CATEGORIES_SNAPSHOT)
        self._products = _normalise_frame(products, PRODUCTS_SNAPSHOT)

    @classmethod
    def from_snapshot_dir(cls, directory: Path = TAXONOMY_DIR) -> "TaxonomyStore":
        logger.info("Loading taxonomy snapshot from {}", directory)
        return cls(
            load_snapshot_table(AGE_RANGES_SNAPSHOT, directory),
            load_snapshot_table(WRAPPERS_SNAPSHOT, directory),
            load_snapshot_table(CATEGORIES_SNAPSHOT, directory),
            load_snapshot_table(PRODUCTS_SNAPSHOT, directory),
        )

    # -- age ranges -----------------------------------------------------

    def age_range_rows(self) -> List[Dict[str, Any]]:
        """Raw age range rows, possibly malformed; feed to the resolver."""
        return _records(self._age_ranges)

    def age_range(self, age_range_id: str) -> Optional[AgeRange]:
        for row in self.age_range_rows():
            if row.get("id") != age_range_id:
                continue
            bounds = parse_range(row)
            if bounds is None:
                return None
            return AgeRange(
                id=bounds.id,
                min_months=bounds.min_months,
                max_months=bounds.max_months,
                label=row.get("label"),
            )
        return None

    # -- wrappers -------------------------------------------------------

    def wrappers(self, age_range_id: str) -> List[Wrapper]:
        df = self._wrappers[self._wrappers["age_range_id"] == age_range_id]
        return [_to_wrapper(r) for r in _records(df)]

    def wrapper_for_slug(self, age_range_id: str, slug: str) -> Optional[Wrapper]:
        matches = [w for w in self.wrappers(age_range_id) if w.slug == slug]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "Wrapper slug {} maps to {} rows in age range {}; using rank {}",
                slug,
                len(matches),
                age_range_id,
                matches[0].rank,
            )
        return matches[0]

    # -- categories -----------------------------------------------------

    def categories_for_need(self, age_range_id: str, need_id: str) -> List[Category]:
        df = self._categories
        df = df[(df["age_range_id"] == age_range_id) & (df["need_id"] == need_id)]
        return [_to_category(r) for r in _records(df)]

    def category(self, age_range_id: str, category_id: str) -> Optional[Category]:
        df = self._categories
        df = df[(df["age_range_id"] == age_range_id) & (df["id"] == category_id)]
        rows = _records(df)
        return _to_category(rows[0]) if rows else None

    # -- products -------------------------------------------------------

    def products_for_categories(
        self, age_range_id: str, category_ids: Iterable[str]
    ) -> List[Product]:
        wanted = list(category_ids)
        if not wanted:
            return []
        df = self._products
        df = df[(df["age_range_id"] == age_range_id) & (df["category_id"].isin(wanted))]
        return [_to_product(r) for r in _records(df)]

    def products_for_age_range(self, age_range_id: str) -> List[Product]:
        df = self._products[self._products["age_range_id"] == age_range_id]
        return [_to_product(r) for r in _records(df)]
