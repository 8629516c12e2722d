"""
Core domain types for shelf product resolution.

Plain dataclasses shared by every service. ORM rows are converted to these at
the ResultStore boundary and provider payloads at the CatalogClient boundary,
so nothing downstream sees a storage or vendor shape.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from shelfmatch.config import NORMALIZED_SCALE

UNKNOWN = "Unknown"

_SIZE_NUMBER_RE = re.compile(r"(\d+\.?\d*)")


def parse_size_number(size: Optional[str]) -> Optional[float]:
    """Leading numeric token of a size string ("8 oz" → 8.0, "2.5 lbs" → 2.5)."""
    if not size or size == UNKNOWN:
        return None
    match = _SIZE_NUMBER_RE.search(size)
    return float(match.group(1)) if match else None


class Stage(str, Enum):
    SEARCH = "search"
    PRE_FILTER = "pre_filter"
    VISUAL_COMPARE = "visual_compare"

    @property
    def rank(self) -> int:
        return _STAGE_RANK[self]


_STAGE_RANK = {Stage.SEARCH: 1, Stage.PRE_FILTER: 2, Stage.VISUAL_COMPARE: 3}


class MatchStatus(str, Enum):
    IDENTICAL = "identical"
    ALMOST_SAME = "almost_same"
    NOT_MATCH = "not_match"

    @property
    def is_candidate(self) -> bool:
        return self in (MatchStatus.IDENTICAL, MatchStatus.ALMOST_SAME)


class SelectionMethod(str, Enum):
    AUTO_SELECT = "auto_select"
    VISUAL_MATCHING = "visual_matching"


class ConsolidationState(str, Enum):
    SEARCHING = "searching"
    PRE_FILTERING = "pre_filtering"
    COMPARING = "comparing"
    ARBITRATING = "arbitrating"
    AUTO_SELECTED = "auto_selected"
    SELECTED = "selected"
    NEEDS_REVIEW = "needs_review"
    NO_MATCH = "no_match"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ConsolidationState.AUTO_SELECTED,
            ConsolidationState.SELECTED,
            ConsolidationState.NEEDS_REVIEW,
            ConsolidationState.NO_MATCH,
        )


class Outcome(str, Enum):
    """Per-item result status reported by the batch driver."""
    SUCCEEDED = "succeeded"
    NO_MATCH = "no_match"
    NEEDS_REVIEW = "needs_review"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReasonCode(str, Enum):
    SELECTED = "selected"
    AUTO_SELECTED = "auto_selected"
    NO_CATALOG_RESULTS = "no_catalog_results"
    NO_PREFILTER_MATCH = "no_prefilter_match"
    NO_CANDIDATE_IMAGES = "no_candidate_images"
    NO_VISUAL_MATCH = "no_visual_match"
    NEEDS_REVIEW = "needs_review"
    CORRECTED = "corrected"
    NOT_IMPROVED = "not_improved"
    NO_NEIGHBORS = "no_neighbors"
    SEARCH_FAILED = "search_failed"
    IMAGE_FAILED = "image_failed"
    PARSE_FAILED = "parse_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    MODEL_FAILED = "model_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNEXPECTED_ERROR = "unexpected_error"


class CorrectionMode(str, Enum):
    IMPROVE_ONLY = "improve_only"   # overwrite only when the new confidence is higher
    FORCE = "force"                 # always overwrite (nightly batch)


@dataclass(frozen=True)
class BoundingBox:
    """[y0, x0, y1, x1] in the normalized 0–1000 space, independent per axis."""
    y0: float
    x0: float
    y1: float
    x1: float

    def __post_init__(self):
        for name in ("y0", "x0", "y1", "x1"):
            value = getattr(self, name)
            if not 0 <= value <= NORMALIZED_SCALE:
                raise ValueError(f"{name}={value} outside 0–{NORMALIZED_SCALE}")
        if not (self.x0 < self.x1 and self.y0 < self.y1):
            raise ValueError(f"Degenerate box {self.as_list()}")

    @property
    def center_y(self) -> float:
        return (self.y0 + self.y1) / 2

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    def as_list(self) -> list[float]:
        return [self.y0, self.x0, self.y1, self.x1]

    def as_dict(self) -> dict:
        return {"y0": self.y0, "x0": self.x0, "y1": self.y1, "x1": self.x1}

    @classmethod
    def from_value(cls, value) -> "BoundingBox":
        """Accept either a {y0,x0,y1,x1} mapping or a [y0,x0,y1,x1] sequence."""
        if isinstance(value, BoundingBox):
            return value
        if isinstance(value, dict):
            return cls(value["y0"], value["x0"], value["y1"], value["x1"])
        y0, x0, y1, x1 = value
        return cls(y0, x0, y1, x1)

    def contains(self, other: "BoundingBox") -> bool:
        return (
            self.y0 <= other.y0 and self.x0 <= other.x0
            and self.y1 >= other.y1 and self.x1 >= other.x1
        )

    @staticmethod
    def union(*boxes: "BoundingBox") -> "BoundingBox":
        if not boxes:
            raise ValueError("union() needs at least one box")
        return BoundingBox(
            y0=min(b.y0 for b in boxes),
            x0=min(b.x0 for b in boxes),
            y1=max(b.y1 for b in boxes),
            x1=max(b.x1 for b in boxes),
        )

    def to_pixels(self, width: int, height: int) -> tuple[int, int, int, int]:
        """(left, top, right, bottom) pixel edges: round(normalized/1000 × dimension)."""
        return (
            round(self.x0 / NORMALIZED_SCALE * width),
            round(self.y0 / NORMALIZED_SCALE * height),
            round(self.x1 / NORMALIZED_SCALE * width),
            round(self.y1 / NORMALIZED_SCALE * height),
        )


@dataclass
class Detection:
    """One located product instance on one source image."""
    id: str
    image_id: str
    box: BoundingBox
    detection_index: int = 0
    brand: Optional[str] = None
    brand_confidence: float = 0.0
    product_name: Optional[str] = None
    product_name_confidence: float = 0.0
    category: Optional[str] = None
    category_confidence: float = 0.0
    flavor: Optional[str] = None
    flavor_confidence: float = 0.0
    size: Optional[str] = None
    size_confidence: float = 0.0
    is_product: Optional[bool] = None
    # resolution state
    resolved: bool = False
    selected_candidate_key: Optional[str] = None
    selection_method: Optional[SelectionMethod] = None
    selection_confidence: Optional[float] = None
    resolved_at: Optional[datetime] = None
    fully_analyzed: bool = False
    # correction provenance
    corrected_by_context: bool = False
    correction_notes: Optional[str] = None

    def __post_init__(self):
        for name in (
            "brand_confidence", "product_name_confidence", "category_confidence",
            "flavor_confidence", "size_confidence",
        ):
            value = getattr(self, name)
            if value is None:
                setattr(self, name, 0.0)
            elif not 0.0 <= value <= 1.0:
                raise ValueError(f"{name}={value} outside [0, 1]")

    @property
    def size_value(self) -> Optional[float]:
        """Numeric form of the canonical text size."""
        return parse_size_number(self.size)

    @property
    def brand_known(self) -> bool:
        return bool(self.brand) and self.brand.strip().lower() != UNKNOWN.lower()

    @property
    def label(self) -> str:
        return self.brand or f"Product #{self.detection_index}"

    def copy(self, **changes) -> "Detection":
        return replace(self, **changes)


@dataclass(frozen=True)
class ShelfImage:
    """Source photograph metadata needed by the pipeline (read-only)."""
    id: str
    project_id: Optional[str] = None
    store_name: Optional[str] = None
    image_url: Optional[str] = None
    image_base64: Optional[str] = None
    mime_type: str = "image/jpeg"


@dataclass(frozen=True)
class CandidateMatch:
    """One catalog entry, already normalized from the provider shape."""
    key: str
    title: str = ""
    brand: Optional[str] = None
    manufacturer: Optional[str] = None
    size: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    retailers: tuple[str, ...] = ()
    rank: int = 0

    @property
    def size_value(self) -> Optional[float]:
        return parse_size_number(self.size)


@dataclass
class StageResult:
    """One row per (detection, candidate) pair, advanced monotonically by stage."""
    detection_id: str
    candidate_key: str
    stage: Stage
    candidate: Optional[CandidateMatch] = None
    search_term: Optional[str] = None
    result_rank: Optional[int] = None
    similarity_score: Optional[float] = None
    match_status: Optional[MatchStatus] = None
    confidence: Optional[float] = None
    visual_similarity: Optional[float] = None
    arbitration_similarity: Optional[float] = None
    reason: Optional[str] = None
    is_selected: bool = False


@dataclass(frozen=True)
class NeighborContext:
    left: tuple[Detection, ...] = ()
    right: tuple[Detection, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.left and not self.right

    @property
    def all(self) -> tuple[Detection, ...]:
        return self.left + self.right


@dataclass
class ScoredCandidate:
    candidate: CandidateMatch
    similarity_score: float
    brand_score: float = 0.0
    size_score: float = 0.0
    retailer_score: float = 0.0
    reasons: list[str] = field(default_factory=list)
    accepted: bool = False


@dataclass
class Verdict:
    """Pairwise visual comparison result for one candidate."""
    candidate: CandidateMatch
    match_status: MatchStatus
    confidence: float
    visual_similarity: float
    reason: str
    errored: bool = False


@dataclass
class ItemOutcome:
    """Terminal result of one funnel or correction run, as the batch driver reports it."""
    detection_id: str
    detection_index: int
    status: Outcome
    reason_code: ReasonCode
    reason: str = ""
    selected_key: Optional[str] = None
    stage: str = "done"
