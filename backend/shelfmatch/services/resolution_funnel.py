"""
Resolution Funnel — search → pre-filter → visual compare → consolidate.

One run resolves one detection and persists a StageResult per candidate after
every stage. Every scored candidate is written at the pre-filter stage, rejected
ones with their score and a "Rejected" reason. Short-circuits:
  - zero catalog results     → NoMatch (no_catalog_results), pre-filter never runs
  - zero promoted candidates → NoMatch (no_prefilter_match)
  - no promoted candidate has an image → NoMatch (no_candidate_images)

SearchError, ImageError, ParseError and PersistenceError propagate so the
batch driver can report the item as failed with the matching reason code.
"""
import logging
import time
from typing import Optional

from shelfmatch.config import FunnelSettings
from shelfmatch.models.domain import (
    UNKNOWN,
    ConsolidationState,
    Detection,
    ItemOutcome,
    Outcome,
    ReasonCode,
    ShelfImage,
    Stage,
    StageResult,
)
from shelfmatch.services.consolidator import Consolidator
from shelfmatch.services.perf_monitor import tracker
from shelfmatch.services.prefilter_engine import PreFilter
from shelfmatch.services.prompts import PromptLibrary
from shelfmatch.services.visual_comparator import VisualComparator

logger = logging.getLogger("shelfmatch-funnel")

_STATE_OUTCOME = {
    ConsolidationState.AUTO_SELECTED: (Outcome.SUCCEEDED, "done"),
    ConsolidationState.SELECTED: (Outcome.SUCCEEDED, "done"),
    ConsolidationState.NEEDS_REVIEW: (Outcome.NEEDS_REVIEW, "needs_review"),
    ConsolidationState.NO_MATCH: (Outcome.NO_MATCH, "no_match"),
}


def search_hints(detection: Detection) -> dict:
    return {
        "brand": detection.brand,
        "product_name": detection.product_name,
        "flavor": detection.flavor,
        "size": detection.size,
    }


def prefilter_reason(scored, threshold: float) -> Optional[str]:
    """Pre-filter row reason: the match reasons, prefixed when the candidate was rejected."""
    details = "; ".join(scored.reasons)
    if scored.accepted:
        return details or None
    rejected = f"Rejected: score {scored.similarity_score:.2f} below {threshold:.2f}"
    return f"{rejected} ({details})" if details else rejected


def unique_by_key(candidates):
    """First occurrence of each catalog key, provider order preserved."""
    seen = set()
    unique = []
    for c in candidates:
        if c.key not in seen:
            seen.add(c.key)
            unique.append(c)
    return unique


class ResolutionFunnel:

    def __init__(
        self,
        catalog,
        llm,
        images,
        store,
        prompts: Optional[PromptLibrary] = None,
        settings: Optional[FunnelSettings] = None,
    ):
        self.catalog = catalog
        self.images = images
        self.store = store
        self.settings = settings or FunnelSettings()
        prompts = prompts or PromptLibrary()
        self.prefilter = PreFilter(self.settings)
        self.comparator = VisualComparator(llm, images, prompts)
        self.consolidator = Consolidator(llm, images, prompts, self.settings)

    async def _finish(
        self,
        detection: Detection,
        state: ConsolidationState,
        reason_code: ReasonCode,
        reason: str,
        selected_key: Optional[str] = None,
        selection_method=None,
        confidence: Optional[float] = None,
        arbitration_scores: Optional[dict[str, float]] = None,
    ) -> ItemOutcome:
        await self.store.save_resolution(
            detection.id, state, reason=reason,
            selected_key=selected_key, selection_method=selection_method,
            confidence=confidence, arbitration_scores=arbitration_scores,
        )
        status, stage = _STATE_OUTCOME[state]
        logger.info(
            f"{detection.label}: {state.value} ({reason_code.value})",
            extra={"detection_id": detection.id, "stage": state.value},
        )
        return ItemOutcome(
            detection_id=detection.id,
            detection_index=detection.detection_index,
            status=status,
            reason_code=reason_code,
            reason=reason,
            selected_key=selected_key,
            stage=stage,
        )

    async def resolve(self, detection: Detection, image: ShelfImage) -> ItemOutcome:
        start = time.perf_counter()
        status = Outcome.FAILED.value
        try:
            outcome = await self._resolve(detection, image)
            status = outcome.status.value
            return outcome
        finally:
            tracker.record_detection_complete((time.perf_counter() - start) * 1000, status)

    async def _resolve(self, detection: Detection, image: ShelfImage) -> ItemOutcome:
        project_id = image.project_id

        # ── Stage 1: search ──────────────────────────────────────────────────
        with tracker.track_stage(Stage.SEARCH.value):
            search = await self.catalog.search(detection.brand or UNKNOWN, search_hints(detection))
        candidates = unique_by_key(search.candidates)[: self.settings.catalog_result_cap]
        if not candidates:
            return await self._finish(
                detection, ConsolidationState.NO_MATCH, ReasonCode.NO_CATALOG_RESULTS,
                f"No catalog results for '{search.resolved_query}'",
            )
        await self.store.upsert_stage_results(detection.id, [
            StageResult(
                detection_id=detection.id,
                candidate_key=c.key,
                stage=Stage.SEARCH,
                candidate=c,
                search_term=search.resolved_query,
                result_rank=c.rank,
            )
            for c in candidates
        ])

        # ── Stage 2: pre-filter ──────────────────────────────────────────────
        with tracker.track_stage(Stage.PRE_FILTER.value):
            scored = self.prefilter.score_all(detection, candidates, image.store_name)
        threshold = self.settings.prefilter_threshold
        await self.store.upsert_stage_results(detection.id, [
            StageResult(
                detection_id=detection.id,
                candidate_key=sc.candidate.key,
                stage=Stage.PRE_FILTER,
                candidate=sc.candidate,
                search_term=search.resolved_query,
                result_rank=sc.candidate.rank,
                similarity_score=sc.similarity_score,
                reason=prefilter_reason(sc, threshold),
            )
            for sc in scored
        ])
        promoted = [sc for sc in scored if sc.accepted]
        if not promoted:
            return await self._finish(
                detection, ConsolidationState.NO_MATCH, ReasonCode.NO_PREFILTER_MATCH,
                f"{len(candidates)} catalog results, none scored at or above {threshold:.2f}",
            )
        scores = {sc.candidate.key: sc.similarity_score for sc in promoted}

        # ── Stage 3: pairwise visual comparison ──────────────────────────────
        comparable = [sc.candidate for sc in promoted if sc.candidate.image_url]
        if not comparable:
            return await self._finish(
                detection, ConsolidationState.NO_MATCH, ReasonCode.NO_CANDIDATE_IMAGES,
                f"{len(promoted)} candidates passed the pre-filter but none has an image",
            )
        crop_b64 = await self.images.crop(image, detection.box)
        with tracker.track_stage(Stage.VISUAL_COMPARE.value):
            verdicts = await self.comparator.compare_all(crop_b64, comparable, project_id)
        await self.store.upsert_stage_results(detection.id, [
            StageResult(
                detection_id=detection.id,
                candidate_key=v.candidate.key,
                stage=Stage.VISUAL_COMPARE,
                candidate=v.candidate,
                search_term=search.resolved_query,
                result_rank=v.candidate.rank,
                similarity_score=scores.get(v.candidate.key),
                match_status=v.match_status,
                confidence=v.confidence,
                visual_similarity=v.visual_similarity,
                reason=v.reason,
            )
            for v in verdicts
        ])

        # ── Stage 4: consolidation ───────────────────────────────────────────
        with tracker.track_stage("consolidate"):
            decision = await self.consolidator.consolidate(detection, crop_b64, verdicts, project_id)
        return await self._finish(
            detection, decision.state, decision.reason_code, decision.reason,
            selected_key=decision.selected_key,
            selection_method=decision.selection_method,
            confidence=decision.confidence,
            arbitration_scores=decision.arbitration_scores,
        )
