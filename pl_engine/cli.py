"""
Batch runner for the Product Library engine.
Resolves months, exports picks and drives the curation workflow without
starting FastAPI.

- resolve: one line per month, with the debug badge
- picks: prints the picks, optionally writes them to CSV
- ensure-set / publish / unpublish: curation store operations
"""

from __future__ import annotations
import argparse
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from pl_engine.config import DB_PATH, DEFAULT_PICK_LIMIT, TAXONOMY_DIR
from pl_engine.curation_store import CurationStore
from pl_engine.errors import EngineError, PublishRejected
from pl_engine.models import Pick
from pl_engine.picks import select_picks
from pl_engine.ranges import (
    format_resolution_badge,
    nearest_supported_month,
    resolve_range,
    surface_resolution,
)
from pl_engine.taxonomy import TaxonomyStore


def write_picks_csv(picks: List[Pick], out_path: Path) -> None:
    """
    Write one row per pick:
      rank, product_id, product_name, brand, category_id, category_slug
    """
    rows = [
        (i, p.product.id, p.product.name, p.product.brand or "", p.category.id, p.category.slug)
        for i, p in enumerate(picks, 1)
    ]
    df = pd.DataFrame(
        rows,
        columns=["rank", "product_id", "product_name", "brand", "category_id", "category_slug"],
    )
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=False)


def _run_resolve(taxonomy: TaxonomyStore, months: List[int]) -> int:
    rows = taxonomy.age_range_rows()
    for month in months:
        resolution = surface_resolution(month, resolve_range(month, rows))
        print(format_resolution_badge(month, resolution))
        if resolution.bucket_id is None:
            nearest = nearest_supported_month(month, rows)
            if nearest is not None:
                print(f"  nearest supported month: {nearest}")
    return 0


def _run_picks(taxonomy: TaxonomyStore, age_range_id: str, wrapper_slug: str, limit: int, out: Optional[str]) -> int:
    picks = select_picks(taxonomy, age_range_id, wrapper_slug, limit)
    print(f"{len(picks)} picks for {age_range_id}/{wrapper_slug}")
    for i, p in enumerate(picks, 1):
        print(f"{i}. {p.product.display_name()} [{p.category.slug or p.category.id}]")
    if out:
        write_picks_csv(picks, Path(out))
        print(f"Wrote {len(picks)} rows to {out}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--mode", required=True, choices=["resolve", "picks", "ensure-set", "publish", "unpublish"])
    ap.add_argument("--taxonomy", type=str, default=str(TAXONOMY_DIR), help="taxonomy snapshot directory")
    ap.add_argument("--db", type=str, default=str(DB_PATH), help="curation SQLite database")
    ap.add_argument("--month", type=int, action="append", default=[], help="month to resolve (repeatable)")
    ap.add_argument("--age-range", dest="age_range", type=str, default=None)
    ap.add_argument("--wrapper", type=str, default=None, help="wrapper slug")
    ap.add_argument("--moment", type=str, default=None)
    ap.add_argument("--set", dest="set_id", type=str, default=None)
    ap.add_argument("--expected-version", dest="expected_version", type=int, default=None)
    ap.add_argument("--limit", type=int, default=DEFAULT_PICK_LIMIT)
    ap.add_argument("--out", dest="out", type=str, default=None, help="optional CSV output for picks")
    args = ap.parse_args(argv)

    try:
        if args.mode == "resolve":
            if not args.month:
                ap.error("--month is required for resolve")
            return _run_resolve(TaxonomyStore.from_snapshot_dir(Path(args.taxonomy)), args.month)

        if args.mode == "picks":
            if not args.age_range or not args.wrapper:
                ap.error("--age-range and --wrapper are required for picks")
            taxonomy = TaxonomyStore.from_snapshot_dir(Path(args.taxonomy))
            return _run_picks(taxonomy, args.age_range, args.wrapper, args.limit, args.out)

        store = CurationStore(Path(args.db))
        store.init_schema()

        if args.mode == "ensure-set":
            if not args.age_range or not args.moment:
                ap.error("--age-range and --moment are required for ensure-set")
            curation_set, created = store.ensure_draft_set(args.age_range, args.moment)
            print(f"{'Created' if created else 'Found'} set {curation_set.id} ({curation_set.status})")
            return 0

        if not args.set_id:
            ap.error(f"--set is required for {args.mode}")
        if args.mode == "publish":
            published = store.publish_set(args.set_id, expected_version=args.expected_version)
            print(f"Published set {published.id} at {published.published_at.isoformat()}")
        else:
            draft = store.unpublish_set(args.set_id)
            print(f"Set {draft.id} is now {draft.status}")
        return 0
    except PublishRejected as e:
        print("[ERROR] Publish rejected:")
        for v in e.violations:
            print(f"  - {v.message}")
        return 1
    except EngineError as e:
        print(f"[ERROR] {e.code}: {e.message}")
        return 1
    except FileNotFoundError as e:
        print(f"[ERROR] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
