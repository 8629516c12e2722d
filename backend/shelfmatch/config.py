"""
Resolution pipeline configuration — single source of truth for thresholds,
scoring weights, batch pacing and external-call timeouts.

Import from here in all services rather than hardcoding values. The empirical
constants live on FunnelSettings so callers can override them per run with
dataclasses.replace().
"""
from __future__ import annotations

import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


# ── Coordinate space ──────────────────────────────────────────────────────────
# Bounding boxes are [y0, x0, y1, x1] normalized to 0–1000 per axis.
NORMALIZED_SCALE: int = 1000


# ── Pre-filter ────────────────────────────────────────────────────────────────

# Only candidates scoring at or above this go to pairwise image comparison
PREFILTER_THRESHOLD: float = _env_float("PREFILTER_THRESHOLD", 0.85)

BRAND_WEIGHT: float = 0.35
SIZE_WEIGHT: float = 0.35
RETAILER_WEIGHT: float = 0.30

# Fraction of SIZE_WEIGHT granted when only a text containment match is possible
SIZE_TEXT_PARTIAL_CREDIT: float = 0.65

# Relative size difference is multiplied by this; 20% difference → zero credit
SIZE_DIFF_PENALTY: float = 5.0


# ── Consolidation ─────────────────────────────────────────────────────────────

# Arbitration result is accepted at or above this confidence
ARBITRATION_CONFIDENCE_THRESHOLD: float = _env_float("ARBITRATION_CONFIDENCE_THRESHOLD", 0.6)


# ── Contextual correction ─────────────────────────────────────────────────────

# Brand confidence below this makes a detection eligible for correction
CONTEXT_CONFIDENCE_THRESHOLD: float = _env_float("CONTEXT_CONFIDENCE_THRESHOLD", 0.91)

NEIGHBOR_Y_TOLERANCE_RATIO: float = 0.3
NEIGHBOR_MAX_GAP: float = 500.0
MAX_NEIGHBORS_PER_SIDE: int = 3


# ── Catalog ───────────────────────────────────────────────────────────────────

CATALOG_BASE_URL: str = os.getenv("CATALOG_BASE_URL", "https://api.foodgraph.com")
CATALOG_RESULT_CAP: int = _env_int("CATALOG_RESULT_CAP", 100)
# Tokens are valid 24h upstream; refresh an hour early
CATALOG_TOKEN_TTL_S: int = 23 * 60 * 60
CATALOG_UPDATED_AT_FROM: str = os.getenv("CATALOG_UPDATED_AT_FROM", "2025-07-01T00:00:00Z")


# ── Batch driver ──────────────────────────────────────────────────────────────

BATCH_DEFAULT_CONCURRENCY: int = _env_int("BATCH_DEFAULT_CONCURRENCY", 10)
BATCH_MAX_CONCURRENCY: int = _env_int("BATCH_MAX_CONCURRENCY", 100)
BATCH_GROUP_DELAY_S: float = _env_float("BATCH_GROUP_DELAY_S", 5.0)
BATCH_ITEM_TIMEOUT_S: float = _env_float("BATCH_ITEM_TIMEOUT_S", 240.0)


# ── External-call timeouts (seconds) ──────────────────────────────────────────
# One slow dependency must not stall a whole batch group.
CATALOG_TIMEOUT_S: float = _env_float("CATALOG_TIMEOUT_S", 30.0)
VLM_TIMEOUT_S: float = _env_float("VLM_TIMEOUT_S", 90.0)
IMAGE_FETCH_TIMEOUT_S: float = _env_float("IMAGE_FETCH_TIMEOUT_S", 20.0)


# ── Vision-language model routing ─────────────────────────────────────────────
VLM_PRIMARY_MODEL: str = os.getenv("VLM_PRIMARY_MODEL", "gemini/gemini-2.5-flash")
VLM_FALLBACK_MODEL: str = os.getenv("VLM_FALLBACK_MODEL", "gemini/gemini-2.0-flash")


@dataclass(frozen=True)
class FunnelSettings:
    """Overridable knobs for one resolution or correction run."""
    prefilter_threshold: float = PREFILTER_THRESHOLD
    arbitration_confidence_threshold: float = ARBITRATION_CONFIDENCE_THRESHOLD
    context_confidence_threshold: float = CONTEXT_CONFIDENCE_THRESHOLD
    neighbor_y_tolerance_ratio: float = NEIGHBOR_Y_TOLERANCE_RATIO
    neighbor_max_gap: float = NEIGHBOR_MAX_GAP
    max_neighbors_per_side: int = MAX_NEIGHBORS_PER_SIDE
    catalog_result_cap: int = CATALOG_RESULT_CAP
    brand_weight: float = BRAND_WEIGHT
    size_weight: float = SIZE_WEIGHT
    retailer_weight: float = RETAILER_WEIGHT
    size_text_partial_credit: float = SIZE_TEXT_PARTIAL_CREDIT
    size_diff_penalty: float = SIZE_DIFF_PENALTY

    @classmethod
    def from_env(cls) -> "FunnelSettings":
        return cls(
            prefilter_threshold=_env_float("PREFILTER_THRESHOLD", PREFILTER_THRESHOLD),
            arbitration_confidence_threshold=_env_float(
                "ARBITRATION_CONFIDENCE_THRESHOLD", ARBITRATION_CONFIDENCE_THRESHOLD
            ),
            context_confidence_threshold=_env_float(
                "CONTEXT_CONFIDENCE_THRESHOLD", CONTEXT_CONFIDENCE_THRESHOLD
            ),
            catalog_result_cap=_env_int("CATALOG_RESULT_CAP", CATALOG_RESULT_CAP),
        )


def validate_concurrency(
    concurrency: int | None,
    default: int = BATCH_DEFAULT_CONCURRENCY,
    maximum: int = BATCH_MAX_CONCURRENCY,
) -> int:
    """Clamp a caller-supplied concurrency into [1, maximum]."""
    value = default if concurrency is None else concurrency
    return max(1, min(int(value), maximum))
