"""
Contextual Corrector — re-infers brand and size from same-row neighbors.

Products of one brand are usually faced together, so a crop that spans the
target plus up to three neighbors per side, together with the neighbors'
extracted brand/size, lets the vision model recover a label that is hidden
or unreadable on the target itself.

Two write policies:
  improve_only  overwrite a field only when the new confidence is higher
  force         always overwrite brand and size (nightly batch)
"""
import logging
from typing import Optional, Sequence

from shelfmatch.config import FunnelSettings
from shelfmatch.models.domain import (
    UNKNOWN,
    CorrectionMode,
    Detection,
    ItemOutcome,
    NeighborContext,
    Outcome,
    ReasonCode,
    ShelfImage,
)
from shelfmatch.models.llm_schemas import ContextualInferenceResponse
from shelfmatch.services.neighbor_locator import expanded_box, find_neighbors
from shelfmatch.services.perf_monitor import tracker
from shelfmatch.services.prompts import STEP_CONTEXTUAL, PromptLibrary, render

logger = logging.getLogger("shelfmatch-context")


def needs_correction(detection: Detection, threshold: float) -> bool:
    """Product detections whose brand is unknown or below the confidence threshold."""
    if detection.is_product is False:
        return False
    return not detection.brand_known or detection.brand_confidence < threshold


def _pct(value: Optional[float]) -> int:
    return round((value or 0.0) * 100)


def neighbor_summary(context: NeighborContext) -> str:
    def _side(items: Sequence[Detection]) -> str:
        if not items:
            return "  None visible"
        return "\n".join(
            f"  {i}. Brand: {d.brand or 'unknown'}, Size: {d.size or 'unknown'}"
            for i, d in enumerate(items, start=1)
        )
    return f"LEFT of target:\n{_side(context.left)}\nRIGHT of target:\n{_side(context.right)}"


def apply_inference(
    detection: Detection,
    inference: ContextualInferenceResponse,
    mode: CorrectionMode,
) -> tuple[Detection, bool]:
    """Return the updated detection and whether anything was overwritten."""
    old_brand = detection.brand or UNKNOWN
    old_size = detection.size or UNKNOWN

    if mode == CorrectionMode.FORCE:
        new_brand = inference.inferred_brand or UNKNOWN
        new_size = inference.inferred_size or UNKNOWN
        notes = (
            f'Brand: "{old_brand}" ({_pct(detection.brand_confidence)}%) → '
            f'"{new_brand}" ({_pct(inference.brand_confidence)}%); '
            f'Size: "{old_size}" → "{new_size}"'
        )
        return detection.copy(
            brand=new_brand,
            brand_confidence=inference.brand_confidence,
            size=new_size,
            size_confidence=inference.size_confidence,
            corrected_by_context=True,
            correction_notes=notes,
        ), True

    changes: dict = {}
    details: list[str] = []
    if inference.inferred_brand and inference.brand_confidence > detection.brand_confidence:
        changes["brand"] = inference.inferred_brand
        changes["brand_confidence"] = inference.brand_confidence
        details.append(
            f'Brand: "{old_brand}" ({_pct(detection.brand_confidence)}%) → '
            f'"{inference.inferred_brand}" ({_pct(inference.brand_confidence)}%)'
        )
    if inference.inferred_size and inference.size_confidence > detection.size_confidence:
        changes["size"] = inference.inferred_size
        changes["size_confidence"] = inference.size_confidence
        details.append(
            f'Size: "{old_size}" ({_pct(detection.size_confidence)}%) → '
            f'"{inference.inferred_size}" ({_pct(inference.size_confidence)}%)'
        )
    if not changes:
        return detection, False
    return detection.copy(
        corrected_by_context=True,
        correction_notes="; ".join(details),
        **changes,
    ), True


class ContextualCorrector:

    def __init__(self, llm, images, store, prompts: Optional[PromptLibrary] = None,
                 settings: Optional[FunnelSettings] = None):
        self.llm = llm
        self.images = images
        self.store = store
        self.prompts = prompts or PromptLibrary()
        self.settings = settings or FunnelSettings()

    def neighbors_of(self, detection: Detection, peers: Sequence[Detection]) -> NeighborContext:
        s = self.settings
        return find_neighbors(
            detection, peers,
            tolerance_ratio=s.neighbor_y_tolerance_ratio,
            max_gap=s.neighbor_max_gap,
            max_per_side=s.max_neighbors_per_side,
        )

    async def infer(
        self,
        detection: Detection,
        context: NeighborContext,
        image: ShelfImage,
    ) -> ContextualInferenceResponse:
        """Expanded crop + neighbor summary → validated inference (raises ParseError)."""
        crop_b64 = await self.images.crop(image, expanded_box(detection, context))
        template = await self.prompts.get(image.project_id, STEP_CONTEXTUAL)
        prompt = render(
            template,
            brand=detection.brand or "UNKNOWN or partially hidden",
            brandConfidence=f"{_pct(detection.brand_confidence)}%",
            size=detection.size or UNKNOWN,
            sizeConfidence=f"{_pct(detection.size_confidence)}%",
            productName=detection.product_name or UNKNOWN,
            neighborSummary=neighbor_summary(context),
        )
        with tracker.track_stage("contextual"):
            return await self.llm.vision_json([crop_b64], prompt, ContextualInferenceResponse)

    async def correct(
        self,
        detection: Detection,
        peers: Sequence[Detection],
        image: ShelfImage,
        mode: CorrectionMode = CorrectionMode.IMPROVE_ONLY,
    ) -> ItemOutcome:
        context = self.neighbors_of(detection, peers)
        if context.is_empty:
            logger.info(f"{detection.label}: no same-row neighbors, skipping",
                        extra={"detection_id": detection.id})
            return ItemOutcome(
                detection_id=detection.id,
                detection_index=detection.detection_index,
                status=Outcome.SKIPPED,
                reason_code=ReasonCode.NO_NEIGHBORS,
                reason="No same-row neighbors to infer from",
                stage="skipped",
            )

        inference = await self.infer(detection, context, image)
        updated, changed = apply_inference(detection, inference, mode)
        await self.store.save_correction(updated, inference.model_dump(by_alias=True))

        if changed:
            logger.info(f"{detection.label}: corrected ({mode.value}) {updated.correction_notes}",
                        extra={"detection_id": detection.id})
            return ItemOutcome(
                detection_id=detection.id,
                detection_index=detection.detection_index,
                status=Outcome.SUCCEEDED,
                reason_code=ReasonCode.CORRECTED,
                reason=updated.correction_notes or "",
                stage="done",
            )
        return ItemOutcome(
            detection_id=detection.id,
            detection_index=detection.detection_index,
            status=Outcome.SUCCEEDED,
            reason_code=ReasonCode.NOT_IMPROVED,
            reason="Contextual confidence did not exceed the original",
            stage="done",
        )
