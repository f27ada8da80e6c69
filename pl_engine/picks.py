from __future__ import annotations

"""
Allocation of product picks across a need's categories.

Given the ranked categories of a development need and the ranked products
of each category, :func:`pick_from_ranked` assembles a short list that
prefers topical diversity: one product per category first, then a fill
pass over the same ordering when the taxonomy is too sparse to reach the
limit.  A product is never picked twice even when several categories
list it.

:func:`select_picks` and :func:`select_category_picks` are the adapters
that read the taxonomy store and delegate to the pure core.
"""

import numbers
from collections import OrderedDict
from typing import Dict, List, Sequence

from loguru import logger

from .config import CATEGORY_PICK_LIMIT, DEFAULT_PICK_LIMIT
from .errors import InputError
from .models import Category, Pick, Product
from .taxonomy import TaxonomyStore


def _check_limit(limit) -> int:
    if isinstance(limit, bool) or not isinstance(limit, numbers.Integral):
        raise InputError(f"limit must be an integer, got {limit!r}")
    if limit < 0:
        raise InputError(f"limit must be >= 0, got {limit}")
    return int(limit)


def _group_by_category(products: Sequence[Product]) -> Dict[str, List[Product]]:
    grouped: Dict[str, List[Product]] = {}
    for p in products:
        if p.category_id is None:
            continue
        grouped.setdefault(p.category_id, []).append(p)
    return grouped


def pick_from_ranked(
    categories: Sequence[Category],
    products: Sequence[Product],
    limit: int = DEFAULT_PICK_LIMIT,
) -> List[Pick]:
    """Select up to ``limit`` picks from pre-sorted categories and products.

    ``categories`` must be in rank order and ``products`` in rank order
    (their relative order within each category is preserved).  Pass 1
    takes the first unused product of each category; pass 2 only runs if
    pass 1 came up short and appends the remaining unused products,
    category by category.
    """
    limit = _check_limit(limit)
    if limit == 0 or not categories:
        return []
    # a category listed twice keeps its first (best-ranked) position
    ordered = list(OrderedDict((c.id, c) for c in categories).values())
    by_category = _group_by_category(products)

    picks: List[Pick] = []
    used = set()

    # Pass 1: one idea per category
    for cat in ordered:
        if len(picks) >= limit:
            break
        for p in by_category.get(cat.id, []):
            if p.id not in used:
                picks.append(Pick(product=p, category=cat))
                used.add(p.id)
                break

    # Pass 2: fill from the same ordering
    if len(picks) < limit:
        for cat in ordered:
            if len(picks) >= limit:
                break
            for p in by_category.get(cat.id, []):
                if len(picks) >= limit:
                    break
                if p.id not in used:
                    picks.append(Pick(product=p, category=cat))
                    used.add(p.id)
    return picks


def select_picks(
    taxonomy: TaxonomyStore,
    age_range_id: str,
    wrapper_slug: str,
    limit: int = DEFAULT_PICK_LIMIT,
) -> List[Pick]:
    """Top picks for the need behind ``wrapper_slug`` in one age range."""
    limit = _check_limit(limit)
    wrapper = taxonomy.wrapper_for_slug(age_range_id, wrapper_slug)
    if wrapper is None:
        logger.info("No wrapper {} in age range {}; no picks", wrapper_slug, age_range_id)
        return []
    categories = taxonomy.categories_for_need(age_range_id, wrapper.need_id)
    if not categories:
        logger.info("Need {} has no categories in age range {}", wrapper.need_id, age_range_id)
        return []
    products = taxonomy.products_for_categories(age_range_id, [c.id for c in categories])
    picks = pick_from_ranked(categories, products, limit)
    logger.info(
        "Selected {} picks for {}/{} from {} categories",
        len(picks),
        age_range_id,
        wrapper_slug,
        len(categories),
    )
    return picks


def select_category_picks(
    taxonomy: TaxonomyStore,
    age_range_id: str,
    category_id: str,
    limit: int = CATEGORY_PICK_LIMIT,
) -> List[Pick]:
    """Top products of a single category, in rank order."""
    limit = _check_limit(limit)
    category = taxonomy.category(age_range_id, category_id)
    if category is None:
        return []
    products = taxonomy.products_for_categories(age_range_id, [category_id])
    return pick_from_ranked([category], products, limit)
