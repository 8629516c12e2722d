"""
Response contracts for every vision-language model call in the pipeline.

These Pydantic models are the strict parse-or-fail boundary: the model client
validates raw output against one of them and raises ParseError when it does
not conform. Field aliases follow the camelCase JSON the model is asked for.

Usage:
    from shelfmatch.models.llm_schemas import PairwiseComparisonResponse

    verdict = PairwiseComparisonResponse.model_validate_json(raw)
"""
from __future__ import annotations

from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class _Contract(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ── Pairwise compare ──────────────────────────────────────────────────────────

class PairwiseComparisonResponse(_Contract):
    """Shelf crop vs. one catalog image."""
    match_status: Literal["identical", "almost_same", "not_match"] = Field(..., alias="matchStatus")
    confidence: float = Field(..., ge=0.0, le=1.0)
    visual_similarity: float = Field(
        0.0, ge=0.0, le=1.0, alias="visualSimilarity",
        description="Raw visual resemblance, independent of match_status",
    )
    reason: str = ""


# ── Multi-candidate arbitration ───────────────────────────────────────────────

class CandidateScoreEntry(_Contract):
    key: str
    visual_similarity: float = Field(0.0, ge=0.0, le=1.0, alias="visualSimilarity")
    passed_threshold: bool = Field(False, alias="passedThreshold")


class ArbitrationResponse(_Contract):
    """Selection among two or more identical/almost_same candidates."""
    selected_key: Optional[str] = Field(None, alias="selectedKey")
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    per_candidate: List[CandidateScoreEntry] = Field(default_factory=list, alias="perCandidate")


# ── Contextual correction ─────────────────────────────────────────────────────

class ContextualInferenceResponse(_Contract):
    """Brand/size inferred for the centre product of an expanded shelf crop."""
    inferred_brand: Optional[str] = Field(None, alias="inferredBrand")
    brand_confidence: float = Field(0.0, ge=0.0, le=1.0, alias="brandConfidence")
    brand_reasoning: str = Field("", alias="brandReasoning")
    inferred_size: Optional[str] = Field(None, alias="inferredSize")
    size_confidence: float = Field(0.0, ge=0.0, le=1.0, alias="sizeConfidence")
    size_reasoning: str = Field("", alias="sizeReasoning")
    overall_confidence: float = Field(0.0, ge=0.0, le=1.0, alias="overallConfidence")
    notes: str = ""
