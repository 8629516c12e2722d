"""Exception taxonomy for the resolution pipeline."""
from typing import Optional


class ShelfMatchError(Exception):
    """Base class for all pipeline failures."""


class SearchError(ShelfMatchError):
    """Catalog search unavailable or rejected the request. Aborts the detection."""


class ParseError(ShelfMatchError):
    """Model output was not valid JSON or did not match its response contract."""

    def __init__(self, message: str, raw_text: Optional[str] = None):
        super().__init__(message)
        self.raw_text = raw_text


class ComparisonError(ShelfMatchError):
    """One pairwise comparison failed; the candidate is treated as not_match."""


class PersistenceError(ShelfMatchError):
    """Store write failed. Aborts the detection, never retried automatically."""


class ImageError(ShelfMatchError):
    """Source or candidate image could not be loaded or cropped."""


class ArbitrationAmbiguous(ShelfMatchError):
    """
    Arbitration declined or returned low confidence.

    Not a failure: the consolidator converts it into the NeedsReview state.
    """

    def __init__(self, message: str, confidence: float = 0.0, selected_key: Optional[str] = None,
                 scores: Optional[dict[str, float]] = None):
        super().__init__(message)
        self.confidence = confidence
        self.selected_key = selected_key
        # per-candidate visual similarity from the model, when it answered
        self.scores = scores or {}


class ModelError(ShelfMatchError):
    """Both vision-model providers failed for one call."""
