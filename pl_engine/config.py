from __future__ import annotations
"""
Configuration for the Product Library engine.
"""

import os
import re
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field

from .models import Card, CurationSet, Evidence, Pick, SetGraph

# Paths
PROJECT_ROOT = Path(__file__).resolve().parents[1]
DATA_DIR = PROJECT_ROOT / "data"
TAXONOMY_DIR = Path(os.getenv("PL_TAXONOMY_DIR", str(DATA_DIR / "taxonomy")))
DB_PATH = Path(os.getenv("PL_DB_PATH", str(DATA_DIR / "curation.sqlite")))

# Taxonomy snapshot files (parquet preferred, CSV accepted)
AGE_RANGES_SNAPSHOT = "age_ranges"
WRAPPERS_SNAPSHOT = "wrappers"
CATEGORIES_SNAPSHOT = "categories"
PRODUCTS_SNAPSHOT = "products"

# Range resolution
# Fallback bounds parse for rows like "6-12m"
RANGE_ID_PATTERN = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*m\s*$", re.IGNORECASE)

# Pick selection
DEFAULT_PICK_LIMIT = int(os.getenv("PL_DEFAULT_PICK_LIMIT", "3"))
CATEGORY_PICK_LIMIT = 12

# Publish gate
REQUIRED_CARD_COUNT = 3
DEFAULT_LANES: List[str] = ["obvious", "nearby", "surprise"]
EVIDENCE_CONFIDENCE_MIN = 1
EVIDENCE_CONFIDENCE_MAX = 5

# Autopilot scoring
AUTOPILOT_CONFIDENCE_WEIGHT = 0.45
AUTOPILOT_QUALITY_WEIGHT = 0.45
AUTOPILOT_ANCHOR_WEIGHT = 0.10
AUTOPILOT_SCORE_MAX = 10.0
ANCHOR_MAX_DISTANCE_MONTHS = 12
ANCHOR_NEUTRAL_SCORE = 0.5
READY_BONUS = 0.10
EVIDENCE_BONUS = 0.05
AUTOPILOT_ALTERNATIVES = 3

# Store
SQLITE_TIMEOUT = float(os.getenv("PL_SQLITE_TIMEOUT", "5.0"))

# Logging dir
LOG_DIR = PROJECT_ROOT / "logs"
LOG_TO_FILE = os.getenv("PL_LOG_TO_FILE", "0") == "1"
LOG_ROTATION = "10 MB"


# Pydantic schemas
class HealthResponse(BaseModel):
    status: str


class ResolveResponse(BaseModel):
    month: int
    bucket_id: Optional[str] = None
    reason: str
    candidates: List[str]
    badge: str


class PicksResponse(BaseModel):
    age_range_id: str
    picks: List[Pick]


class EnsureSetRequest(BaseModel):
    age_range_id: str = Field(..., min_length=1)
    moment_id: str = Field(..., min_length=1)


class PublishRequest(BaseModel):
    expected_version: Optional[int] = None


class CardUpdateRequest(BaseModel):
    lane: Optional[str] = None
    rank: Optional[int] = None
    rationale: Optional[str] = None
    category_id: Optional[str] = None
    product_id: Optional[str] = None


class PlaceProductRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    category_slug: str = Field(..., min_length=1)


class UsePoolItemRequest(BaseModel):
    card_id: str = Field(..., min_length=1)


class EvidenceRequest(BaseModel):
    source_type: str = Field(..., min_length=1)
    url: Optional[str] = None
    quote: Optional[str] = None
    confidence: int = Field(ge=EVIDENCE_CONFIDENCE_MIN, le=EVIDENCE_CONFIDENCE_MAX)


class EvidenceUpdateRequest(BaseModel):
    source_type: Optional[str] = Field(None, min_length=1)
    url: Optional[str] = None
    quote: Optional[str] = None
    confidence: Optional[int] = Field(None, ge=EVIDENCE_CONFIDENCE_MIN, le=EVIDENCE_CONFIDENCE_MAX)


class SetResponse(BaseModel):
    set: CurationSet
    created: bool = False


class SetLookupResponse(BaseModel):
    set: Optional[CurationSet] = None
    # true when a draft was scheduled for creation by this request
    pending: bool = False


class PublishedSetsResponse(BaseModel):
    age_range_id: str
    sets: List[SetGraph]


class CardResponse(BaseModel):
    card: Card


class EvidenceResponse(BaseModel):
    evidence: Evidence


class SlotItem(BaseModel):
    product_id: str
    name: str
    category_id: Optional[str] = None
    score: float
    is_ready: bool


class AutopilotResponse(BaseModel):
    set_id: str
    slots: List[Optional[SlotItem]]
    alternatives: List[SlotItem]
