"""
Consolidator — turns pairwise verdicts into a single decision.

    Comparing → NoMatch         (no identical/almost_same candidate)
              → AutoSelected    (exactly one)
              → Arbitrating → Selected     (model picks one of them, confidence ≥ threshold)
                            → NeedsReview  (declined, unknown key or low confidence)

Single-candidate outcomes never call the model a second time.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from shelfmatch.config import FunnelSettings
from shelfmatch.models.domain import (
    UNKNOWN,
    CandidateMatch,
    ConsolidationState,
    Detection,
    ReasonCode,
    SelectionMethod,
    Verdict,
)
from shelfmatch.models.llm_schemas import ArbitrationResponse
from shelfmatch.services.errors import ArbitrationAmbiguous, ImageError
from shelfmatch.services.prompts import STEP_VISUAL_MATCH, PromptLibrary, render

logger = logging.getLogger("shelfmatch-consolidator")


@dataclass
class Consolidation:
    state: ConsolidationState
    reason_code: ReasonCode
    reason: str = ""
    selected: Optional[CandidateMatch] = None
    selection_method: Optional[SelectionMethod] = None
    confidence: Optional[float] = None
    # identical/almost_same candidates, kept as open options for review
    options: list[Verdict] = field(default_factory=list)
    arbitration_scores: dict[str, float] = field(default_factory=dict)

    @property
    def selected_key(self) -> Optional[str]:
        return self.selected.key if self.selected else None


def _scores(response: ArbitrationResponse) -> dict[str, float]:
    return {entry.key: entry.visual_similarity for entry in response.per_candidate}


def _describe(verdicts: Sequence[Verdict]) -> str:
    lines = []
    for i, v in enumerate(verdicts, start=1):
        c = v.candidate
        lines.append(
            f"Candidate {i} (key: {c.key}):\n"
            f"- Product Name: {c.title or 'N/A'}\n"
            f"- Brand: {c.brand or 'N/A'}\n"
            f"- Size: {c.size or 'N/A'}\n"
            f"- Category: {c.category or 'N/A'}\n"
            f"- Match Status from pairwise comparison: {v.match_status.value}"
        )
    return "\n\n".join(lines)


class Consolidator:

    def __init__(self, llm, images, prompts: Optional[PromptLibrary] = None,
                 settings: Optional[FunnelSettings] = None):
        self.llm = llm
        self.images = images
        self.prompts = prompts or PromptLibrary()
        self.settings = settings or FunnelSettings()

    async def consolidate(
        self,
        detection: Detection,
        crop_b64: str,
        verdicts: Sequence[Verdict],
        project_id: Optional[str] = None,
    ) -> Consolidation:
        matches = [v for v in verdicts if v.match_status.is_candidate]

        if not matches:
            return Consolidation(
                state=ConsolidationState.NO_MATCH,
                reason_code=ReasonCode.NO_VISUAL_MATCH,
                reason=f"None of {len(verdicts)} compared candidates matched visually",
            )

        if len(matches) == 1:
            only = matches[0]
            return Consolidation(
                state=ConsolidationState.AUTO_SELECTED,
                reason_code=ReasonCode.AUTO_SELECTED,
                reason=f"Single {only.match_status.value} candidate: {only.reason}",
                selected=only.candidate,
                selection_method=SelectionMethod.AUTO_SELECT,
                confidence=only.confidence,
                options=matches,
            )

        try:
            response = await self._arbitrate(detection, crop_b64, matches, project_id)
        except ArbitrationAmbiguous as e:
            logger.info(f"{detection.label}: arbitration ambiguous ({e})")
            return Consolidation(
                state=ConsolidationState.NEEDS_REVIEW,
                reason_code=ReasonCode.NEEDS_REVIEW,
                reason=str(e),
                confidence=e.confidence,
                options=matches,
                arbitration_scores=e.scores,
            )

        chosen = next(v for v in matches if v.candidate.key == response.selected_key)
        return Consolidation(
            state=ConsolidationState.SELECTED,
            reason_code=ReasonCode.SELECTED,
            reason=response.reasoning,
            selected=chosen.candidate,
            selection_method=SelectionMethod.VISUAL_MATCHING,
            confidence=response.confidence,
            options=matches,
            arbitration_scores=_scores(response),
        )

    async def _arbitrate(
        self,
        detection: Detection,
        crop_b64: str,
        matches: Sequence[Verdict],
        project_id: Optional[str],
    ) -> ArbitrationResponse:
        """Second-pass selection; raises ArbitrationAmbiguous when no pick is accepted."""
        try:
            candidate_images = [
                await self.images.candidate_base64(v.candidate.image_url) for v in matches
            ]
        except ImageError as e:
            raise ArbitrationAmbiguous(f"Candidate image unavailable for arbitration: {e}")

        template = await self.prompts.get(project_id, STEP_VISUAL_MATCH)
        prompt = render(
            template,
            brand=detection.brand or UNKNOWN,
            productName=detection.product_name or UNKNOWN,
            size=detection.size or UNKNOWN,
            flavor=detection.flavor or UNKNOWN,
            category=detection.category or UNKNOWN,
            candidateCount=len(matches),
            candidateDescriptions=_describe(matches),
            candidateImageCount=len(matches) + 1,
        )
        response = await self.llm.vision_json(
            [crop_b64, *candidate_images], prompt, ArbitrationResponse
        )

        keys = {v.candidate.key for v in matches}
        if response.selected_key is None:
            raise ArbitrationAmbiguous(
                f"Model declined to choose among {len(matches)} candidates: {response.reasoning}",
                confidence=response.confidence,
                scores=_scores(response),
            )
        if response.selected_key not in keys:
            raise ArbitrationAmbiguous(
                f"Model selected unknown key {response.selected_key}",
                confidence=response.confidence,
                selected_key=response.selected_key,
                scores=_scores(response),
            )
        if response.confidence < self.settings.arbitration_confidence_threshold:
            raise ArbitrationAmbiguous(
                f"Selection confidence {response.confidence:.2f} below "
                f"{self.settings.arbitration_confidence_threshold:.2f}",
                confidence=response.confidence,
                selected_key=response.selected_key,
                scores=_scores(response),
            )
        return response
