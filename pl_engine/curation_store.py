from __future__ import annotations

"""
SQLite-backed curation store.

Holds the mutable curation graph (sets, cards, evidence, pool items)
together with the product rows and the externally computed readiness
view the publish gate reads.  Every public method opens its own
connection, so the store is safe to share between request handlers.

Publishing runs read -> validate -> write inside a single
``BEGIN IMMEDIATE`` transaction: the write lock is held from the first
read, so no other writer can change the set's cards, evidence or products
between the checks and the status update.  Each set also carries a
``version`` that is bumped whenever the set or anything under it changes;
callers can pass the version they reviewed and get a
:class:`~pl_engine.errors.ConflictError` if someone else got there first.
"""

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from . import gate
from .config import DB_PATH, DEFAULT_LANES, SQLITE_TIMEOUT
from .errors import ConflictError, InputError, NotFoundError, StoreError
from .models import (
    Card,
    CardWithEvidence,
    Category,
    CurationSet,
    Evidence,
    PoolItem,
    Product,
    SetGraph,
)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pl_products (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  brand TEXT,
  category_id TEXT,
  age_range_id TEXT,
  rank INTEGER NOT NULL DEFAULT 0,
  rationale TEXT,
  confidence_score REAL,
  quality_score REAL,
  stage_anchor_month INTEGER
);

CREATE TABLE IF NOT EXISTS pl_categories (
  id TEXT PRIMARY KEY,
  slug TEXT NOT NULL UNIQUE,
  label TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS pl_product_readiness (
  age_range_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  is_ready INTEGER NOT NULL,
  PRIMARY KEY (age_range_id, product_id)
);

CREATE TABLE IF NOT EXISTS pl_sets (
  id TEXT PRIMARY KEY,
  age_range_id TEXT NOT NULL,
  moment_id TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ('draft', 'published')),
  published_at TEXT,
  version INTEGER NOT NULL DEFAULT 0,
  UNIQUE (age_range_id, moment_id)
);

CREATE TABLE IF NOT EXISTS pl_cards (
  id TEXT PRIMARY KEY,
  set_id TEXT NOT NULL REFERENCES pl_sets(id) ON DELETE CASCADE,
  lane TEXT NOT NULL CHECK (lane IN ('obvious', 'nearby', 'surprise')),
  rank INTEGER NOT NULL,
  category_id TEXT,
  product_id TEXT,
  rationale TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS pl_evidence (
  id TEXT PRIMARY KEY,
  card_id TEXT NOT NULL REFERENCES pl_cards(id) ON DELETE CASCADE,
  source_type TEXT NOT NULL,
  url TEXT,
  quote TEXT,
  confidence INTEGER NOT NULL CHECK (confidence BETWEEN 1 AND 5)
);

CREATE TABLE IF NOT EXISTS pl_pool_items (
  id TEXT PRIMARY KEY,
  age_range_id TEXT NOT NULL,
  moment_id TEXT NOT NULL,
  category_id TEXT NOT NULL,
  note TEXT
);

CREATE INDEX IF NOT EXISTS idx_pl_cards_set ON pl_cards (set_id);
CREATE INDEX IF NOT EXISTS idx_pl_evidence_card ON pl_evidence (card_id);
"""

_CARD_COLUMNS = "id, set_id, lane, rank, category_id, product_id, rationale"
_PRODUCT_COLUMNS = (
    "id, name, brand, category_id, age_range_id, rank, rationale, "
    "confidence_score, quality_score, stage_anchor_month"
)
UPDATABLE_EVIDENCE_FIELDS = {"source_type", "url", "quote", "confidence"}


def _new_id() -> str:
    return uuid.uuid4().hex


def _placeholders(n: int) -> str:
    return ",".join("?" for _ in range(n))


class CurationStore:
    def __init__(self, db_path: Path | str = DB_PATH, timeout: float = SQLITE_TIMEOUT) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout

    # ---------------------------
    # Connections
    # ---------------------------

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        return con

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        try:
            con = self._connect()
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open curation store at {self.db_path}: {e}") from e
        try:
            yield con
        except sqlite3.Error as e:
            raise StoreError(f"Curation store error: {e}") from e
        finally:
            con.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction; any exception rolls everything back."""
        with self._connection() as con:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")

    def init_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as con:
            con.executescript(SCHEMA_SQL)
        logger.info("Curation store schema ready at {}", self.db_path)

    # ---------------------------
    # Row helpers
    # ---------------------------

    @staticmethod
    def _fetch_set(con: sqlite3.Connection, set_id: str) -> CurationSet:
        row = con.execute(
            "SELECT id, age_range_id, moment_id, status, published_at, version FROM pl_sets WHERE id = ?",
            (set_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError("Set", set_id)
        return CurationSet(**dict(row))

    @staticmethod
    def _fetch_card(con: sqlite3.Connection, card_id: str) -> Card:
        row = con.execute(f"SELECT {_CARD_COLUMNS} FROM pl_cards WHERE id = ?", (card_id,)).fetchone()
        if row is None:
            raise NotFoundError("Card", card_id)
        return Card(**dict(row))

    @staticmethod
    def _fetch_products(con: sqlite3.Connection, product_ids: Iterable[Optional[str]]) -> Dict[str, Product]:
        ids = sorted({pid for pid in product_ids if pid})
        if not ids:
            return {}
        rows = con.execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM pl_products WHERE id IN ({_placeholders(len(ids))})",
            ids,
        ).fetchall()
        return {r["id"]: Product(**dict(r)) for r in rows}

    @staticmethod
    def _fetch_readiness(
        con: sqlite3.Connection, age_range_id: str, product_ids: Iterable[Optional[str]]
    ) -> Dict[str, bool]:
        ids = sorted({pid for pid in product_ids if pid})
        if not ids:
            return {}
        rows = con.execute(
            "SELECT product_id, is_ready FROM pl_product_readiness "
            f"WHERE age_range_id = ? AND product_id IN ({_placeholders(len(ids))})",
            [age_range_id, *ids],
        ).fetchall()
        return {r["product_id"]: bool(r["is_ready"]) for r in rows}

    @staticmethod
    def _fetch_graph(con: sqlite3.Connection, curation_set: CurationSet) -> SetGraph:
        card_rows = con.execute(
            f"SELECT {_CARD_COLUMNS} FROM pl_cards WHERE set_id = ? ORDER BY rank, id",
            (curation_set.id,),
        ).fetchall()
        cards: List[CardWithEvidence] = []
        for row in card_rows:
            ev_rows = con.execute(
                "SELECT id, card_id, source_type, url, quote, confidence "
                "FROM pl_evidence WHERE card_id = ? ORDER BY id",
                (row["id"],),
            ).fetchall()
            cards.append(
                CardWithEvidence(**dict(row), evidence=[Evidence(**dict(e)) for e in ev_rows])
            )
        return SetGraph(curation_set=curation_set, cards=cards)

    @staticmethod
    def _touch_set(con: sqlite3.Connection, set_id: str) -> None:
        con.execute("UPDATE pl_sets SET version = version + 1 WHERE id = ?", (set_id,))
        status = con.execute("SELECT status FROM pl_sets WHERE id = ?", (set_id,)).fetchone()
        if status is not None and status["status"] == "published":
            # edits after publish are allowed and not re-validated
            logger.info("Set {} edited while published; publish gate not re-run", set_id)

    @staticmethod
    def _write_card(con: sqlite3.Connection, card: Card) -> None:
        con.execute(
            "UPDATE pl_cards SET lane = ?, rank = ?, category_id = ?, product_id = ?, rationale = ? "
            "WHERE id = ?",
            (card.lane, card.rank, card.category_id, card.product_id, card.rationale, card.id),
        )

    # ---------------------------
    # Reference data
    # ---------------------------

    def upsert_product(self, product: Product) -> None:
        with self._transaction() as con:
            con.execute(
                f"INSERT INTO pl_products ({_PRODUCT_COLUMNS}) VALUES ({_placeholders(10)}) "
                "ON CONFLICT(id) DO UPDATE SET name = excluded.name, brand = excluded.brand, "
                "category_id = excluded.category_id, age_range_id = excluded.age_range_id, "
                "rank = excluded.rank, rationale = excluded.rationale, "
                "confidence_score = excluded.confidence_score, quality_score = excluded.quality_score, "
                "stage_anchor_month = excluded.stage_anchor_month",
                (
                    product.id,
                    product.name,
                    product.brand,
                    product.category_id,
                    product.age_range_id,
                    product.rank,
                    product.rationale,
                    product.confidence_score,
                    product.quality_score,
                    product.stage_anchor_month,
                ),
            )

    def upsert_category(self, category: Category) -> None:
        with self._transaction() as con:
            con.execute(
                "INSERT INTO pl_categories (id, slug, label) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET slug = excluded.slug, label = excluded.label",
                (category.id, category.slug, category.label),
            )

    def set_readiness(self, age_range_id: str, product_id: str, ready: bool) -> None:
        with self._transaction() as con:
            con.execute(
                "INSERT INTO pl_product_readiness (age_range_id, product_id, is_ready) VALUES (?, ?, ?) "
                "ON CONFLICT(age_range_id, product_id) DO UPDATE SET is_ready = excluded.is_ready",
                (age_range_id, product_id, 1 if ready else 0),
            )

    def readiness_for(self, age_range_id: str, product_ids: Iterable[str]) -> Dict[str, bool]:
        with self._connection() as con:
            return self._fetch_readiness(con, age_range_id, product_ids)

    def products_for_age_range(self, age_range_id: str) -> List[Product]:
        with self._connection() as con:
            rows = con.execute(
                f"SELECT {_PRODUCT_COLUMNS} FROM pl_products WHERE age_range_id = ? ORDER BY rank, id",
                (age_range_id,),
            ).fetchall()
        return [Product(**dict(r)) for r in rows]

    # ---------------------------
    # Sets
    # ---------------------------

    def ensure_draft_set(self, age_range_id: str, moment_id: str) -> Tuple[CurationSet, bool]:
        """Create the (age range, moment) set with its 3 default cards if absent.

        Safe under concurrent first visits: the UNIQUE constraint decides
        which caller creates the set, and only that caller adds cards.
        """
        with self._transaction() as con:
            cur = con.execute(
                "INSERT INTO pl_sets (id, age_range_id, moment_id, status, version) "
                "VALUES (?, ?, ?, 'draft', 0) ON CONFLICT(age_range_id, moment_id) DO NOTHING",
                (_new_id(), age_range_id, moment_id),
            )
            created = cur.rowcount == 1
            row = con.execute(
                "SELECT id FROM pl_sets WHERE age_range_id = ? AND moment_id = ?",
                (age_range_id, moment_id),
            ).fetchone()
            set_id = row["id"]
            if created:
                for rank, lane in enumerate(DEFAULT_LANES, start=1):
                    con.execute(
                        f"INSERT INTO pl_cards ({_CARD_COLUMNS}) VALUES (?, ?, ?, ?, NULL, NULL, '')",
                        (_new_id(), set_id, lane, rank),
                    )
                logger.info("Created draft set {} for {}/{}", set_id, age_range_id, moment_id)
            curation_set = self._fetch_set(con, set_id)
        return curation_set, created

    def populate_draft_set_best_effort(self, age_range_id: str, moment_id: str) -> Optional[CurationSet]:
        """Fire-and-forget wrapper around :meth:`ensure_draft_set`; never raises."""
        try:
            curation_set, _ = self.ensure_draft_set(age_range_id, moment_id)
            return curation_set
        except Exception as e:
            logger.warning("Draft set population failed for {}/{}: {}", age_range_id, moment_id, e)
            return None

    def find_set(self, age_range_id: str, moment_id: str) -> Optional[CurationSet]:
        with self._connection() as con:
            row = con.execute(
                "SELECT id FROM pl_sets WHERE age_range_id = ? AND moment_id = ?",
                (age_range_id, moment_id),
            ).fetchone()
            return self._fetch_set(con, row["id"]) if row is not None else None

    def get_set(self, set_id: str) -> CurationSet:
        with self._connection() as con:
            return self._fetch_set(con, set_id)

    def load_graph(self, set_id: str) -> SetGraph:
        with self._connection() as con:
            return self._fetch_graph(con, self._fetch_set(con, set_id))

    def published_sets_for_age_range(self, age_range_id: str) -> List[SetGraph]:
        """Published sets with their cards and evidence, newest first.

        This is the public read path; drafts never leave the store here.
        """
        with self._connection() as con:
            rows = con.execute(
                "SELECT id, age_range_id, moment_id, status, published_at, version FROM pl_sets "
                "WHERE age_range_id = ? AND status = 'published' "
                "ORDER BY published_at DESC, id",
                (age_range_id,),
            ).fetchall()
            return [self._fetch_graph(con, CurationSet(**dict(r))) for r in rows]

    def publish_set(
        self,
        set_id: str,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CurationSet:
        """Validate and publish atomically.

        Raises :class:`PublishRejected` (nothing written) when a rule fails
        and :class:`ConflictError` when ``expected_version`` is stale.
        """
        with self._transaction() as con:
            current = self._fetch_set(con, set_id)
            if expected_version is not None and current.version != expected_version:
                raise ConflictError(set_id, expected_version, current.version)
            graph = self._fetch_graph(con, current)
            product_ids = [c.product_id for c in graph.cards]
            products = self._fetch_products(con, product_ids)
            readiness = self._fetch_readiness(con, current.age_range_id, product_ids)

            published = gate.publish(graph, products, readiness, now=now)

            cur = con.execute(
                "UPDATE pl_sets SET status = 'published', published_at = ?, version = version + 1 "
                "WHERE id = ? AND version = ?",
                (published.published_at.isoformat(), set_id, current.version),
            )
            if cur.rowcount != 1:
                raise ConflictError(set_id, current.version, None)
            result = self._fetch_set(con, set_id)
        logger.info("Published set {} (version {})", set_id, result.version)
        return result

    def unpublish_set(self, set_id: str) -> CurationSet:
        with self._transaction() as con:
            current = self._fetch_set(con, set_id)
            draft = gate.unpublish(current)
            con.execute(
                "UPDATE pl_sets SET status = ?, published_at = NULL, version = version + 1 WHERE id = ?",
                (draft.status, set_id),
            )
            result = self._fetch_set(con, set_id)
        logger.info("Unpublished set {}", set_id)
        return result

    # ---------------------------
    # Cards
    # ---------------------------

    def add_card(
        self,
        set_id: str,
        lane: str,
        rank: int,
        rationale: str = "",
        category_id: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Card:
        try:
            card = Card(
                id=_new_id(),
                set_id=set_id,
                lane=lane,
                rank=rank,
                rationale=rationale,
                category_id=category_id,
                product_id=product_id,
            )
        except ValidationError as e:
            raise InputError(f"Invalid card: {e.errors()}") from e
        with self._transaction() as con:
            self._fetch_set(con, set_id)
            products = self._fetch_products(con, [card.product_id])
            gate.validate_card_consistency(card, products.get(card.product_id or ""))
            con.execute(
                f"INSERT INTO pl_cards ({_CARD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (card.id, card.set_id, card.lane, card.rank, card.category_id, card.product_id, card.rationale),
            )
            self._touch_set(con, set_id)
        return card

    def get_card(self, card_id: str) -> Card:
        with self._connection() as con:
            return self._fetch_card(con, card_id)

    def update_card(self, card_id: str, changes: Mapping[str, Any]) -> Card:
        """Write ``changes`` through the incremental consistency guard."""
        with self._transaction() as con:
            card = self._fetch_card(con, card_id)
            product_id = changes.get("product_id", card.product_id)
            products = self._fetch_products(con, [product_id])
            updated = gate.guard_card_update(card, changes, products)
            self._write_card(con, updated)
            self._touch_set(con, card.set_id)
        return updated

    def place_product(self, card_id: str, product_id: str, category_slug: str) -> Card:
        """Put a product on a card, aligning category and rationale with it."""
        with self._transaction() as con:
            card = self._fetch_card(con, card_id)
            product = self._fetch_products(con, [product_id]).get(product_id)
            if product is None:
                raise NotFoundError("Product", product_id)
            rows = con.execute(
                "SELECT id, slug, label FROM pl_categories WHERE slug = ?", (category_slug,)
            ).fetchall()
            category_id = gate.resolve_category_id_for_slug(
                [Category(**dict(r)) for r in rows], category_slug
            )
            aligned = gate.auto_align_card_to_product(card, product, category_id)
            self._write_card(con, aligned)
            self._touch_set(con, card.set_id)
        return aligned

    # ---------------------------
    # Pool items
    # ---------------------------

    def add_pool_item(
        self, age_range_id: str, moment_id: str, category_id: str, note: Optional[str] = None
    ) -> PoolItem:
        item = PoolItem(
            id=_new_id(),
            age_range_id=age_range_id,
            moment_id=moment_id,
            category_id=category_id,
            note=note or None,
        )
        with self._transaction() as con:
            con.execute(
                "INSERT INTO pl_pool_items (id, age_range_id, moment_id, category_id, note) "
                "VALUES (?, ?, ?, ?, ?)",
                (item.id, item.age_range_id, item.moment_id, item.category_id, item.note),
            )
        return item

    def pool_category_ids(self, age_range_id: str, moment_id: str) -> List[str]:
        with self._connection() as con:
            rows = con.execute(
                "SELECT DISTINCT category_id FROM pl_pool_items "
                "WHERE age_range_id = ? AND moment_id = ? ORDER BY category_id",
                (age_range_id, moment_id),
            ).fetchall()
        return [r["category_id"] for r in rows]

    def remove_pool_item(self, pool_item_id: str) -> None:
        with self._transaction() as con:
            cur = con.execute("DELETE FROM pl_pool_items WHERE id = ?", (pool_item_id,))
            if cur.rowcount == 0:
                raise NotFoundError("PoolItem", pool_item_id)

    def use_pool_item(self, pool_item_id: str, card_id: str) -> Card:
        """Copy a pool item's category onto a card without touching its product."""
        with self._transaction() as con:
            row = con.execute(
                "SELECT id, age_range_id, moment_id, category_id, note FROM pl_pool_items WHERE id = ?",
                (pool_item_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError("PoolItem", pool_item_id)
            card = self._fetch_card(con, card_id)
            promoted = gate.promote_pool_item(card, PoolItem(**dict(row)))
            self._write_card(con, promoted)
            self._touch_set(con, card.set_id)
        return promoted

    # ---------------------------
    # Evidence
    # ---------------------------

    def add_evidence(
        self,
        card_id: str,
        source_type: str,
        confidence: int,
        url: Optional[str] = None,
        quote: Optional[str] = None,
    ) -> Evidence:
        try:
            evidence = Evidence(
                id=_new_id(),
                card_id=card_id,
                source_type=source_type,
                url=url or None,
                quote=quote or None,
                confidence=confidence,
            )
        except ValidationError as e:
            raise InputError(f"Invalid evidence: {e.errors()}") from e
        with self._transaction() as con:
            card = self._fetch_card(con, card_id)
            con.execute(
                "INSERT INTO pl_evidence (id, card_id, source_type, url, quote, confidence) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (evidence.id, card_id, evidence.source_type, evidence.url, evidence.quote, evidence.confidence),
            )
            self._touch_set(con, card.set_id)
        return evidence

    def update_evidence(self, evidence_id: str, changes: Mapping[str, Any]) -> Evidence:
        unknown = set(changes) - UPDATABLE_EVIDENCE_FIELDS
        if unknown:
            raise InputError(f"Cannot update evidence fields: {sorted(unknown)}")
        with self._transaction() as con:
            row = con.execute(
                "SELECT e.id, e.card_id, e.source_type, e.url, e.quote, e.confidence, c.set_id "
                "FROM pl_evidence e JOIN pl_cards c ON c.id = e.card_id WHERE e.id = ?",
                (evidence_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError("Evidence", evidence_id)
            merged = {**dict(row), **dict(changes)}
            set_id = merged.pop("set_id")
            merged["url"] = merged["url"] or None
            merged["quote"] = merged["quote"] or None
            try:
                updated = Evidence.model_validate(merged)
            except ValidationError as e:
                raise InputError(f"Invalid evidence update: {e.errors()}") from e
            con.execute(
                "UPDATE pl_evidence SET source_type = ?, url = ?, quote = ?, confidence = ? WHERE id = ?",
                (updated.source_type, updated.url, updated.quote, updated.confidence, evidence_id),
            )
            self._touch_set(con, set_id)
        return updated

    def delete_evidence(self, evidence_id: str) -> None:
        with self._transaction() as con:
            row = con.execute(
                "SELECT c.set_id FROM pl_evidence e JOIN pl_cards c ON c.id = e.card_id WHERE e.id = ?",
                (evidence_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError("Evidence", evidence_id)
            con.execute("DELETE FROM pl_evidence WHERE id = ?", (evidence_id,))
            self._touch_set(con, row["set_id"])
