from __future__ import annotations

import pytest

from pl_engine import gate
from pl_engine.errors import ConsistencyError, InputError, NotFoundError, PublishRejected
from pl_engine.models import (
    Card,
    CardWithEvidence,
    Category,
    CurationSet,
    Evidence,
    PoolItem,
    SetGraph,
)

from .conftest import FIXED_NOW, READY

LANES = ["obvious", "nearby", "surprise"]


def _evidence(card_id: str) -> Evidence:
    return Evidence(id=f"e-{card_id}", card_id=card_id, source_type="study", confidence=3)


def _card(rank: int, product_id=None, category_id=None, rationale="Because", evidence=True) -> CardWithEvidence:
    cid = f"card{rank}"
    return CardWithEvidence(
        id=cid,
        set_id="s1",
        lane=LANES[(rank - 1) % 3],
        rank=rank,
        product_id=product_id,
        category_id=category_id,
        rationale=rationale,
        evidence=[_evidence(cid)] if evidence else [],
    )


def _graph(*cards, status="draft") -> SetGraph:
    return SetGraph(
        curation_set=CurationSet(id="s1", age_range_id="6-12m", moment_id="bath-time", status=status),
        cards=list(cards),
    )


def _good_graph(**kw) -> SetGraph:
    return _graph(
        _card(1, "P1", "C1"),
        _card(2, "P3", "C2"),
        _card(3, "P4", "C3"),
        **kw,
    )


def test_valid_set_passes(products):
    result = gate.evaluate_publish(_good_graph(), products, READY)
    assert result.ok
    assert result.violations == []


def test_cardinality_message_has_count(products):
    result = gate.evaluate_publish(_graph(_card(1, "P1", "C1"), _card(2, "P3", "C2")), products, READY)
    assert not result.ok
    assert result.violations[0].rule == "cardinality"
    assert "2" in result.violations[0].message


def test_cardinality_checked_before_evidence(products):
    result = gate.evaluate_publish(_graph(_card(1, "P1", "C1", evidence=False)), products, READY)
    assert [v.rule for v in result.violations] == ["cardinality"]


def test_missing_evidence_names_first_rank(products):
    graph = _graph(_card(1, "P1", "C1"), _card(3, "P4", "C3", evidence=False), _card(2, "P3", "C2", evidence=False))
    result = gate.evaluate_publish(graph, products, READY)
    assert len(result.violations) == 1
    assert result.violations[0].rule == "evidence"
    assert result.violations[0].card_rank == 2
    assert "rank 2" in result.violations[0].message


def test_missing_rationale(products):
    graph = _graph(_card(1, "P1", "C1"), _card(2, "P3", "C2", rationale="  "), _card(3, "P4", "C3"))
    result = gate.evaluate_publish(graph, products, READY)
    assert result.violations[0].rule == "completeness"
    assert "rank 2" in result.violations[0].message
    assert "rationale" in result.violations[0].message


def test_card_without_category_or_product(products):
    graph = _graph(_card(1, "P1", "C1"), _card(2, "P3", "C2"), _card(3))
    result = gate.evaluate_publish(graph, products, READY)
    assert result.violations[0].rule == "completeness"
    assert "category or a product" in result.violations[0].message


def test_category_only_card_is_complete(products):
    graph = _graph(_card(1, "P1", "C1"), _card(2, "P3", "C2"), _card(3, category_id="C3"))
    assert gate.evaluate_publish(graph, products, READY).ok


def test_consistency_collects_all_mismatches(products):
    graph = _graph(_card(1, "P1", "C2"), _card(2, "P3", "C1"), _card(3, "P4", "C3"))
    result = gate.evaluate_publish(graph, products, READY)
    assert [v.rule for v in result.violations] == ["consistency", "consistency"]
    assert [v.product_id for v in result.violations] == ["P1", "P3"]


def test_unknown_product_is_a_violation(products):
    graph = _graph(_card(1, "P1", "C1"), _card(2, "GHOST", "C2"), _card(3, "P4", "C3"))
    result = gate.evaluate_publish(graph, products, READY)
    assert not result.ok
    assert result.violations[0].rule == "consistency"
    assert "GHOST" in result.violations[0].message


def test_readiness_lists_every_unready_product(products):
    graph = _graph(_card(1, "P2", "C1"), _card(2, "P3", "C2"), _card(3, "GHOST"))
    result = gate.evaluate_publish(graph, products, READY)
    assert [v.rule for v in result.violations] == ["readiness", "readiness"]
    message = result.violations[0].message
    assert "Bell Rattle" in message
    assert "GHOST" in message


def test_unknown_readiness_means_not_ready(products):
    result = gate.evaluate_publish(_good_graph(), products, {"P1": True, "P3": True})
    assert [v.product_id for v in result.violations] == ["P4"]


def test_publish_sets_status_and_timestamp(products):
    published = gate.publish(_good_graph(), products, READY, now=FIXED_NOW)
    assert published.status == "published"
    assert published.published_at == FIXED_NOW


def test_publish_defaults_to_utc_now(products):
    published = gate.publish(_good_graph(), products, READY)
    assert published.published_at is not None
    assert published.published_at.tzinfo is not None


def test_publish_rejected_carries_violations(products):
    with pytest.raises(PublishRejected) as exc:
        gate.publish(_graph(_card(1, "P1", "C1")), products, READY)
    assert exc.value.violations[0].rule == "cardinality"
    assert exc.value.to_dict()["code"] == "PUBLISH_REJECTED"


def test_publish_already_published(products):
    with pytest.raises(InputError):
        gate.publish(_good_graph(status="published"), products, READY)


def test_unpublish_is_idempotent(products):
    published = gate.publish(_good_graph(), products, READY, now=FIXED_NOW)
    once = gate.unpublish(published)
    twice = gate.unpublish(once)
    assert once.status == twice.status == "draft"
    assert once.published_at is None and twice.published_at is None


def test_validate_card_consistency(products):
    card = Card(id="c", set_id="s1", lane="obvious", rank=1, category_id="C2", product_id="P1")
    with pytest.raises(ConsistencyError) as exc:
        gate.validate_card_consistency(card, products["P1"])
    assert exc.value.violations[0].product_id == "P1"
    with pytest.raises(NotFoundError):
        gate.validate_card_consistency(card, None)
    ok = card.model_copy(update={"category_id": "C1"})
    assert gate.validate_card_consistency(ok, products["P1"]) is None


def test_guard_runs_only_for_written_ids(products):
    bad = Card(id="c", set_id="s1", lane="obvious", rank=1, category_id="C2", product_id="P1")
    # rationale-only edits leave an existing mismatch alone
    updated = gate.guard_card_update(bad, {"rationale": "new"}, products)
    assert updated.rationale == "new"
    with pytest.raises(ConsistencyError):
        gate.guard_card_update(bad, {"category_id": "C3"}, products)
    fixed = gate.guard_card_update(bad, {"category_id": "C1"}, products)
    assert fixed.category_id == "C1"


def test_guard_allows_single_field(products):
    card = Card(id="c", set_id="s1", lane="obvious", rank=1)
    assert gate.guard_card_update(card, {"product_id": "P1"}, products).product_id == "P1"


def test_guard_rejects_unknown_fields_and_bad_values(products):
    card = Card(id="c", set_id="s1", lane="obvious", rank=1)
    with pytest.raises(InputError):
        gate.guard_card_update(card, {"set_id": "other"}, products)
    with pytest.raises(InputError):
        gate.guard_card_update(card, {"lane": "sideways"}, products)


def test_auto_align_overwrites_rationale(products):
    card = Card(id="c", set_id="s1", lane="obvious", rank=1, rationale="Curator wrote this")
    aligned = gate.auto_align_card_to_product(card, products["P3"], "C2")
    assert aligned.product_id == "P3"
    assert aligned.category_id == "C2"
    assert aligned.rationale == "Nesting and stacking"


def test_resolve_category_id_for_slug():
    cats = [Category(id="C1", slug="rattles"), Category(id="C2", slug="stacking")]
    assert gate.resolve_category_id_for_slug(cats, "stacking") == "C2"
    with pytest.raises(NotFoundError):
        gate.resolve_category_id_for_slug(cats, "missing")


def test_promote_pool_item_keeps_product():
    card = Card(id="c", set_id="s1", lane="nearby", rank=2, category_id="C1", product_id="P1")
    item = PoolItem(id="pi", age_range_id="6-12m", moment_id="bath-time", category_id="C3")
    promoted = gate.promote_pool_item(card, item)
    assert promoted.category_id == "C3"
    assert promoted.product_id == "P1"
