"""
Pre-Filter — cheap text/metadata gate before pairwise image comparison.

score = brand × 0.35 + size × 0.35 + retailer × 0.30

Only candidates at or above the threshold (0.85 by default) are promoted, which
bounds the number of vision-model calls made per detection.
"""
import logging
from typing import Optional, Sequence

from shelfmatch.config import FunnelSettings
from shelfmatch.models.domain import UNKNOWN, CandidateMatch, Detection, ScoredCandidate
from shelfmatch.services.similarity import (
    retailer_from_store,
    size_similarity,
    string_similarity,
)

logger = logging.getLogger("shelfmatch-prefilter")


class PreFilter:

    def __init__(self, settings: Optional[FunnelSettings] = None):
        self.settings = settings or FunnelSettings()

    def score_candidate(
        self,
        detection: Detection,
        candidate: CandidateMatch,
        retailer: Optional[str] = None,
    ) -> ScoredCandidate:
        s = self.settings
        reasons: list[str] = []

        brand_score = 0.0
        if detection.brand_known:
            brand_sim = max(
                string_similarity(detection.brand, candidate.brand),
                string_similarity(detection.brand, candidate.manufacturer),
                string_similarity(detection.brand, candidate.title),
            )
            brand_score = brand_sim * s.brand_weight
            if brand_sim > 0.5:
                reasons.append(f"Brand match: {brand_sim * 100:.0f}%")

        size_score = 0.0
        if detection.size and detection.size != UNKNOWN:
            size_sim = size_similarity(
                detection.size, candidate.size, s.size_text_partial_credit, s.size_diff_penalty
            )
            size_score = size_sim * s.size_weight
            if detection.size_value is not None and candidate.size_value is not None:
                if size_sim > 0.5:
                    reasons.append(f"Size match: {detection.size} ≈ {candidate.size}")
            elif size_sim > 0:
                reasons.append("Size text match")

        retailer_score = 0.0
        if retailer and retailer in candidate.retailers:
            retailer_score = s.retailer_weight
            reasons.append(f"Retailer match: {retailer}")

        total = min(1.0, max(0.0, brand_score + size_score + retailer_score))
        return ScoredCandidate(
            candidate=candidate,
            similarity_score=total,
            brand_score=brand_score,
            size_score=size_score,
            retailer_score=retailer_score,
            reasons=reasons,
            accepted=total >= s.prefilter_threshold,
        )

    def score_all(
        self,
        detection: Detection,
        candidates: Sequence[CandidateMatch],
        store_name: Optional[str] = None,
    ) -> list[ScoredCandidate]:
        """Every candidate scored, sorted by descending score (stable on ties)."""
        retailer = retailer_from_store(store_name)
        scored = [self.score_candidate(detection, c, retailer) for c in candidates]
        scored.sort(key=lambda sc: sc.similarity_score, reverse=True)
        accepted = sum(1 for sc in scored if sc.accepted)
        logger.debug(
            f"Pre-filter {detection.label}: {accepted}/{len(scored)} at or above "
            f"{self.settings.prefilter_threshold:.2f} (retailer={retailer})"
        )
        return scored

    def promote(
        self,
        detection: Detection,
        candidates: Sequence[CandidateMatch],
        store_name: Optional[str] = None,
    ) -> list[ScoredCandidate]:
        return [sc for sc in self.score_all(detection, candidates, store_name) if sc.accepted]
