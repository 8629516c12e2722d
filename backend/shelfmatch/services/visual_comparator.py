"""
Visual Comparator — pairwise shelf-crop vs. catalog-image classification.

All candidates for a detection are compared concurrently. A failure in one
comparison (image fetch, model transport, malformed output) turns that
candidate into not_match with confidence 0 and never fails the others.
"""
import asyncio
import logging
import time
from typing import Optional, Sequence

from shelfmatch.models.domain import CandidateMatch, MatchStatus, Verdict
from shelfmatch.models.llm_schemas import PairwiseComparisonResponse
from shelfmatch.services.errors import ComparisonError, ImageError, ModelError, ParseError
from shelfmatch.services.prompts import STEP_VISUAL_COMPARE, PromptLibrary

logger = logging.getLogger("shelfmatch-visual")


class VisualComparator:

    def __init__(self, llm, images, prompts: Optional[PromptLibrary] = None):
        self.llm = llm
        self.images = images
        self.prompts = prompts or PromptLibrary()

    async def _compare_one(self, crop_b64: str, candidate: CandidateMatch, prompt: str) -> Verdict:
        try:
            candidate_b64 = await self.images.candidate_base64(candidate.image_url)
        except ImageError as e:
            raise ComparisonError(f"Candidate image unavailable: {e}") from e
        try:
            response = await self.llm.vision_json(
                [crop_b64, candidate_b64], prompt, PairwiseComparisonResponse
            )
        except ParseError as e:
            raise ComparisonError(f"Malformed comparison response: {e}") from e
        except ModelError as e:
            raise ComparisonError(f"Vision model unavailable: {e}") from e
        return Verdict(
            candidate=candidate,
            match_status=MatchStatus(response.match_status),
            confidence=response.confidence,
            visual_similarity=response.visual_similarity,
            reason=response.reason,
        )

    async def _safe_compare(self, crop_b64: str, candidate: CandidateMatch, prompt: str) -> Verdict:
        try:
            return await self._compare_one(crop_b64, candidate, prompt)
        except ComparisonError as e:
            logger.warning(f"Comparison failed for candidate {candidate.key}: {e}")
            return Verdict(
                candidate=candidate,
                match_status=MatchStatus.NOT_MATCH,
                confidence=0.0,
                visual_similarity=0.0,
                reason=f"Comparison failed: {e}",
                errored=True,
            )

    async def compare_all(
        self,
        crop_b64: str,
        candidates: Sequence[CandidateMatch],
        project_id: Optional[str] = None,
    ) -> list[Verdict]:
        """One verdict per candidate, in input order."""
        if not candidates:
            return []
        prompt = await self.prompts.get(project_id, STEP_VISUAL_COMPARE)
        start = time.perf_counter()
        verdicts = await asyncio.gather(
            *(self._safe_compare(crop_b64, c, prompt) for c in candidates)
        )
        matched = sum(1 for v in verdicts if v.match_status.is_candidate)
        logger.info(
            f"Compared {len(candidates)} candidates in {time.perf_counter() - start:.1f}s, "
            f"{matched} identical/almost_same"
        )
        return list(verdicts)
