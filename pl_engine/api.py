from __future__ import annotations

"""
FastAPI application for the Product Library engine.

- Read side: month -> age range resolution and pick selection over the
  taxonomy snapshot
- Curation side: draft set population (inline or as a background task on
  lookup), guarded card edits, evidence and pool item edits and the
  transactional publish gate over the SQLite curation store
- Published read path: live sets for an age range, newest first
- Autopilot: scored slot suggestions for a set

Engine errors map to HTTP as: not found -> 404, version conflict -> 409,
store I/O -> 503, any other validation or input problem -> 422.
"""

from collections import Counter
from typing import Dict, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from . import autopilot
from .config import (
    DB_PATH,
    DEFAULT_PICK_LIMIT,
    CATEGORY_PICK_LIMIT,
    LOG_DIR,
    LOG_ROTATION,
    LOG_TO_FILE,
    TAXONOMY_DIR,
    AutopilotResponse,
    CardResponse,
    CardUpdateRequest,
    EnsureSetRequest,
    EvidenceRequest,
    EvidenceResponse,
    EvidenceUpdateRequest,
    HealthResponse,
    PicksResponse,
    PlaceProductRequest,
    PublishedSetsResponse,
    PublishRequest,
    ResolveResponse,
    SetLookupResponse,
    SetResponse,
    SlotItem,
    UsePoolItemRequest,
)
from .curation_store import CurationStore
from .errors import ConflictError, EngineError, NotFoundError, StoreError
from .picks import select_category_picks, select_picks
from .ranges import format_resolution_badge, resolve_range, surface_resolution
from .taxonomy import TaxonomyStore

app = FastAPI(title="Product Library engine")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_taxonomy: Optional[TaxonomyStore] = None
_store: Optional[CurationStore] = None
_log_sink_id: Optional[int] = None


def configure(taxonomy: Optional[TaxonomyStore], store: Optional[CurationStore]) -> None:
    """Install the taxonomy and curation store the endpoints use."""
    global _taxonomy, _store
    _taxonomy = taxonomy
    _store = store


def _install_file_sink() -> int:
    """Add the rotating file sink once per process."""
    global _log_sink_id
    if _log_sink_id is None:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        _log_sink_id = logger.add(LOG_DIR / "pl_engine.log", rotation=LOG_ROTATION, enqueue=True)
    return _log_sink_id


@app.on_event("startup")
def startup_event() -> None:
    global _taxonomy, _store
    logger.info("Starting app warmup...")
    if LOG_TO_FILE:
        _install_file_sink()
    if _taxonomy is None:
        try:
            _taxonomy = TaxonomyStore.from_snapshot_dir(TAXONOMY_DIR)
        except (FileNotFoundError, ValueError) as e:
            logger.warning("Taxonomy snapshot unavailable: {}", e)
    if _store is None:
        _store = CurationStore(DB_PATH)
        _store.init_schema()
    logger.info("Warmup complete.")


def _http_error(e: EngineError) -> HTTPException:
    if isinstance(e, NotFoundError):
        status = 404
    elif isinstance(e, ConflictError):
        status = 409
    elif isinstance(e, StoreError):
        status = 503
    else:
        status = 422
    if status >= 500:
        logger.error("Store failure: {}", e.message)
    return HTTPException(status_code=status, detail=e.to_dict())


def _require_taxonomy() -> TaxonomyStore:
    if _taxonomy is None:
        raise HTTPException(status_code=503, detail="Taxonomy not loaded")
    return _taxonomy


def _require_store() -> CurationStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="Curation store not configured")
    return _store


def _slot_item(sp: autopilot.ScoredProduct) -> SlotItem:
    return SlotItem(
        product_id=sp.product.id,
        name=sp.product.name,
        category_id=sp.product.category_id,
        score=sp.score,
        is_ready=sp.is_ready,
    )


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy")


# ---------------------------
# Read side
# ---------------------------

@app.get("/resolve", response_model=ResolveResponse)
def resolve(month: int) -> ResolveResponse:
    taxonomy = _require_taxonomy()
    resolution = surface_resolution(month, resolve_range(month, taxonomy.age_range_rows()))
    return ResolveResponse(
        month=month,
        bucket_id=resolution.bucket_id,
        reason=resolution.reason,
        candidates=resolution.candidate_ids,
        badge=format_resolution_badge(month, resolution),
    )


@app.get("/picks", response_model=PicksResponse)
def picks(age_range_id: str, wrapper_slug: str, limit: int = DEFAULT_PICK_LIMIT) -> PicksResponse:
    taxonomy = _require_taxonomy()
    try:
        result = select_picks(taxonomy, age_range_id, wrapper_slug, limit)
    except EngineError as e:
        raise _http_error(e) from e
    return PicksResponse(age_range_id=age_range_id, picks=result)


@app.get("/picks/category", response_model=PicksResponse)
def category_picks(age_range_id: str, category_id: str, limit: int = CATEGORY_PICK_LIMIT) -> PicksResponse:
    taxonomy = _require_taxonomy()
    try:
        result = select_category_picks(taxonomy, age_range_id, category_id, limit)
    except EngineError as e:
        raise _http_error(e) from e
    return PicksResponse(age_range_id=age_range_id, picks=result)


# ---------------------------
# Sets
# ---------------------------

@app.post("/sets/ensure", response_model=SetResponse)
def ensure_set(req: EnsureSetRequest) -> SetResponse:
    store = _require_store()
    try:
        curation_set, created = store.ensure_draft_set(req.age_range_id, req.moment_id)
    except EngineError as e:
        raise _http_error(e) from e
    return SetResponse(set=curation_set, created=created)


@app.get("/sets", response_model=SetLookupResponse)
def lookup_set(age_range_id: str, moment_id: str, background_tasks: BackgroundTasks) -> SetLookupResponse:
    """Return the set for a moment; schedule its draft if it does not exist yet."""
    store = _require_store()
    try:
        curation_set = store.find_set(age_range_id, moment_id)
    except EngineError as e:
        raise _http_error(e) from e
    if curation_set is not None:
        return SetLookupResponse(set=curation_set)
    background_tasks.add_task(store.populate_draft_set_best_effort, age_range_id, moment_id)
    return SetLookupResponse(pending=True)


@app.get("/sets/published", response_model=PublishedSetsResponse)
def published_sets(age_range_id: str) -> PublishedSetsResponse:
    store = _require_store()
    try:
        graphs = store.published_sets_for_age_range(age_range_id)
    except EngineError as e:
        raise _http_error(e) from e
    return PublishedSetsResponse(age_range_id=age_range_id, sets=graphs)


@app.post("/sets/{set_id}/publish", response_model=SetResponse)
def publish_set(set_id: str, req: Optional[PublishRequest] = None) -> SetResponse:
    store = _require_store()
    expected = req.expected_version if req is not None else None
    try:
        published = store.publish_set(set_id, expected_version=expected)
    except EngineError as e:
        logger.info("Publish of set {} refused: {}", set_id, e.message)
        raise _http_error(e) from e
    return SetResponse(set=published)


@app.post("/sets/{set_id}/unpublish", response_model=SetResponse)
def unpublish_set(set_id: str) -> SetResponse:
    store = _require_store()
    try:
        return SetResponse(set=store.unpublish_set(set_id))
    except EngineError as e:
        raise _http_error(e) from e


@app.get("/sets/{set_id}/autopilot", response_model=AutopilotResponse)
def set_autopilot(set_id: str) -> AutopilotResponse:
    store = _require_store()
    try:
        graph = store.load_graph(set_id)
        age_range_id = graph.curation_set.age_range_id
        products = store.products_for_age_range(age_range_id)
        readiness = store.readiness_for(age_range_id, [p.id for p in products])
        pool = store.pool_category_ids(age_range_id, graph.curation_set.moment_id)
    except EngineError as e:
        raise _http_error(e) from e

    evidence_counts: Dict[str, int] = Counter()
    for card in graph.cards:
        if card.product_id:
            evidence_counts[card.product_id] += len(card.evidence)
    age_range = _taxonomy.age_range(age_range_id) if _taxonomy is not None else None

    scored = autopilot.score_products(products, readiness, age_range, evidence_counts)
    suggestion = autopilot.suggest_slots(scored, pool)
    return AutopilotResponse(
        set_id=set_id,
        slots=[_slot_item(s) if s is not None else None for s in suggestion.slots],
        alternatives=[_slot_item(s) for s in suggestion.alternatives],
    )


# ---------------------------
# Cards, pool items, evidence
# ---------------------------

@app.patch("/cards/{card_id}", response_model=CardResponse)
def update_card(card_id: str, req: CardUpdateRequest) -> CardResponse:
    store = _require_store()
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=422, detail="No card fields to update")
    try:
        return CardResponse(card=store.update_card(card_id, changes))
    except EngineError as e:
        raise _http_error(e) from e


@app.post("/cards/{card_id}/place-product", response_model=CardResponse)
def place_product(card_id: str, req: PlaceProductRequest) -> CardResponse:
    store = _require_store()
    try:
        return CardResponse(card=store.place_product(card_id, req.product_id, req.category_slug))
    except EngineError as e:
        raise _http_error(e) from e


@app.post("/pool-items/{pool_item_id}/use", response_model=CardResponse)
def use_pool_item(pool_item_id: str, req: UsePoolItemRequest) -> CardResponse:
    store = _require_store()
    try:
        return CardResponse(card=store.use_pool_item(pool_item_id, req.card_id))
    except EngineError as e:
        raise _http_error(e) from e


@app.post("/cards/{card_id}/evidence", response_model=EvidenceResponse)
def add_evidence(card_id: str, req: EvidenceRequest) -> EvidenceResponse:
    store = _require_store()
    try:
        evidence = store.add_evidence(
            card_id,
            source_type=req.source_type,
            confidence=req.confidence,
            url=req.url,
            quote=req.quote,
        )
    except EngineError as e:
        raise _http_error(e) from e
    return EvidenceResponse(evidence=evidence)


@app.patch("/evidence/{evidence_id}", response_model=EvidenceResponse)
def update_evidence(evidence_id: str, req: EvidenceUpdateRequest) -> EvidenceResponse:
    store = _require_store()
    changes = req.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=422, detail="No evidence fields to update")
    try:
        return EvidenceResponse(evidence=store.update_evidence(evidence_id, changes))
    except EngineError as e:
        raise _http_error(e) from e


@app.delete("/evidence/{evidence_id}", status_code=204)
def delete_evidence(evidence_id: str) -> None:
    store = _require_store()
    try:
        store.delete_evidence(evidence_id)
    except EngineError as e:
        raise _http_error(e) from e


@app.delete("/pool-items/{pool_item_id}", status_code=204)
def remove_pool_item(pool_item_id: str) -> None:
    store = _require_store()
    try:
        store.remove_pool_item(pool_item_id)
    except EngineError as e:
        raise _http_error(e) from e
