from __future__ import annotations

"""
Publish gate and card consistency helpers.

A set moves ``draft -> published`` only when every rule in
:data:`PUBLISH_RULES` passes.  Rules run in order and the first rule
that reports anything stops the chain, so a curator always gets one
specific thing to fix.  Rules 1-3 name the first offending card; the
consistency and readiness rules collect every violation at once.

Readiness is an external signal: callers pass ``readiness`` as a
``product_id -> bool`` mapping for the set's age range.  A product that
is missing from the mapping is not ready.

Everything here is pure.  Loading the graph and writing the new status
inside one transaction is the job of :mod:`pl_engine.curation_store`.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence

from loguru import logger
from pydantic import ValidationError

from .config import REQUIRED_CARD_COUNT
from .errors import ConsistencyError, InputError, NotFoundError, PublishRejected
from .models import (
    Card,
    CardWithEvidence,
    Category,
    CurationSet,
    GateResult,
    PoolItem,
    Product,
    SetGraph,
    Violation,
)

Products = Mapping[str, Product]
Readiness = Mapping[str, bool]

UPDATABLE_CARD_FIELDS = {"lane", "rank", "rationale", "category_id", "product_id"}


def _by_rank(cards: Sequence[CardWithEvidence]) -> List[CardWithEvidence]:
    return sorted(cards, key=lambda c: (c.rank, c.id))


def _product_label(product_id: str, products: Products) -> str:
    product = products.get(product_id)
    return product.display_name() if product is not None else product_id


# ---------------------------
# Publish rules
# ---------------------------

def check_cardinality(graph: SetGraph, products: Products, readiness: Readiness) -> List[Violation]:
    n = len(graph.cards)
    if n == REQUIRED_CARD_COUNT:
        return []
    return [
        Violation(
            rule="cardinality",
            message=f"Set must have exactly {REQUIRED_CARD_COUNT} cards, found {n}",
        )
    ]


def check_evidence(graph: SetGraph, products: Products, readiness: Readiness) -> List[Violation]:
    for card in _by_rank(graph.cards):
        if not card.evidence:
            return [
                Violation(
                    rule="evidence",
                    message=(
                        f"Card at rank {card.rank} has no evidence. "
                        "All cards must have at least 1 evidence to publish."
                    ),
                    card_rank=card.rank,
                )
            ]
    return []


def check_completeness(graph: SetGraph, products: Products, readiness: Readiness) -> List[Violation]:
    for card in _by_rank(graph.cards):
        if not card.rationale or not card.rationale.strip():
            return [
                Violation(
                    rule="completeness",
                    message=f"Card at rank {card.rank} must have a rationale",
                    card_rank=card.rank,
                )
            ]
        if not card.category_id and not card.product_id:
            return [
                Violation(
                    rule="completeness",
                    message=f"Card at rank {card.rank} must have either a category or a product",
                    card_rank=card.rank,
                )
            ]
    return []


def check_consistency(graph: SetGraph, products: Products, readiness: Readiness) -> List[Violation]:
    violations: List[Violation] = []
    for card in _by_rank(graph.cards):
        if not (card.category_id and card.product_id):
            continue
        product = products.get(card.product_id)
        if product is None:
            violations.append(
                Violation(
                    rule="consistency",
                    message=f"Card at rank {card.rank} references unknown product {card.product_id}",
                    card_rank=card.rank,
                    product_id=card.product_id,
                )
            )
        elif product.category_id != card.category_id:
            violations.append(
                Violation(
                    rule="consistency",
                    message=(
                        f"Card at rank {card.rank}: product {product.display_name()} belongs to "
                        f"category {product.category_id}, not {card.category_id}"
                    ),
                    card_rank=card.rank,
                    product_id=card.product_id,
                )
            )
    return violations


def check_readiness(graph: SetGraph, products: Products, readiness: Readiness) -> List[Violation]:
    not_ready = [
        card
        for card in _by_rank(graph.cards)
        if card.product_id and readiness.get(card.product_id) is not True
    ]
    if not not_ready:
        return []
    names = ", ".join(_product_label(c.product_id, products) for c in not_ready)
    message = f"Products not ready for publish: {names}"
    return [
        Violation(rule="readiness", message=message, card_rank=c.rank, product_id=c.product_id)
        for c in not_ready
    ]


Rule = Callable[[SetGraph, Products, Readiness], List[Violation]]

PUBLISH_RULES: Sequence[Rule] = (
    check_cardinality,
    check_evidence,
    check_completeness,
    check_consistency,
    check_readiness,
)


def evaluate_publish(graph: SetGraph, products: Products, readiness: Readiness) -> GateResult:
    """Run the publish rules in order; stop at the first that fails."""
    for rule in PUBLISH_RULES:
        violations = rule(graph, products, readiness)
        if violations:
            return GateResult(ok=False, violations=violations)
    return GateResult(ok=True)


# ---------------------------
# State transitions
# ---------------------------

def publish(
    graph: SetGraph,
    products: Products,
    readiness: Readiness,
    now: Optional[datetime] = None,
) -> CurationSet:
    """Return the published copy of ``graph.curation_set`` or raise."""
    current = graph.curation_set
    if current.status == "published":
        raise InputError(f"Set {current.id} is already published")
    result = evaluate_publish(graph, products, readiness)
    if not result.ok:
        raise PublishRejected(result.violations)
    published_at = now or datetime.now(timezone.utc)
    return current.model_copy(update={"status": "published", "published_at": published_at})


def unpublish(curation_set: CurationSet) -> CurationSet:
    return curation_set.model_copy(update={"status": "draft", "published_at": None})


# ---------------------------
# Card consistency helpers
# ---------------------------

def validate_card_consistency(card: Card, product: Optional[Product]) -> None:
    """Raise if ``card`` holds both ids and they disagree."""
    if not (card.category_id and card.product_id):
        return
    if product is None or product.id != card.product_id:
        raise NotFoundError("Product", card.product_id)
    if product.category_id != card.category_id:
        violation = Violation(
            rule="consistency",
            message=(
                f"Product {product.display_name()} belongs to category "
                f"{product.category_id}, not {card.category_id}"
            ),
            card_rank=card.rank,
            product_id=product.id,
        )
        raise ConsistencyError(violation.message, [violation])


def guard_card_update(card: Card, changes: Mapping[str, Any], products: Products) -> Card:
    """Apply ``changes`` to ``card``, refusing invalid category/product pairs.

    The consistency rule only runs when ``category_id`` or ``product_id``
    is among the written fields and both are set afterwards.
    """
    unknown = set(changes) - UPDATABLE_CARD_FIELDS
    if unknown:
        raise InputError(f"Cannot update card fields: {sorted(unknown)}")
    try:
        updated = Card.model_validate({**card.model_dump(), **dict(changes)})
    except ValidationError as e:
        raise InputError(f"Invalid card update: {e.errors()}") from e
    if "category_id" in changes or "product_id" in changes:
        if updated.category_id and updated.product_id:
            validate_card_consistency(updated, products.get(updated.product_id))
    return updated


def resolve_category_id_for_slug(categories: Iterable[Category], slug: str) -> str:
    for cat in categories:
        if cat.slug == slug:
            return cat.id
    raise NotFoundError("Category", slug)


def auto_align_card_to_product(card: Card, product: Product, category_id: str) -> Card:
    """Place ``product`` on ``card``.

    Sets the category and product together and overwrites the card's
    rationale with the product's default rationale, even when the curator
    already wrote one.
    """
    if product.category_id and product.category_id != category_id:
        logger.warning(
            "Aligning card {} to category {} but product {} is in {}",
            card.id,
            category_id,
            product.id,
            product.category_id,
        )
    return card.model_copy(
        update={
            "category_id": category_id,
            "product_id": product.id,
            "rationale": product.rationale or "",
        }
    )


def promote_pool_item(card: Card, pool_item: PoolItem) -> Card:
    """Copy a pool item's category onto ``card``; ``product_id`` is kept.

    No consistency check runs here, so a card can briefly hold a product
    from another category.  The publish gate catches that.
    """
    return card.model_copy(update={"category_id": pool_item.category_id})
