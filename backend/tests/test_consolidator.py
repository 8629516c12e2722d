"""
test_consolidator.py — Pairwise verdicts → single decision.

Tests cover:
  - zero / one / many identical-or-almost_same candidates
  - the arbitration confidence threshold (0.6, inclusive)
  - arbitration declining, or naming a key that was not offered → NeedsReview
  - a missing candidate image during arbitration → NeedsReview
  - the model is never called a second time for a single candidate
"""

import pytest

from conftest import FakeImageLoader, FakeLLM, make_candidate, make_detection
from shelfmatch.models.domain import ConsolidationState, MatchStatus, ReasonCode, SelectionMethod, Verdict
from shelfmatch.services.consolidator import Consolidator
from shelfmatch.services.errors import ParseError


def _verdict(key, status=MatchStatus.IDENTICAL, confidence=0.9):
    return Verdict(
        candidate=make_candidate(key, title=f"Product {key}", brand="Tide", size="92 oz"),
        match_status=status,
        confidence=confidence,
        visual_similarity=0.9,
        reason=f"verdict for {key}",
    )


def _arbitration(selected_key, confidence, keys=("A", "B")):
    return {
        "selectedKey": selected_key,
        "confidence": confidence,
        "reasoning": "label colours match",
        "perCandidate": [
            {"key": k, "visualSimilarity": 0.9 if k == selected_key else 0.6, "passedThreshold": True}
            for k in keys
        ],
    }


def _consolidator(llm, images=None):
    return Consolidator(llm, images or FakeImageLoader())


DETECTION = make_detection(brand="Tide", size="92 oz")


class TestSingleOrNoCandidate:

    @pytest.mark.asyncio
    async def test_no_matches_is_no_match_without_model_call(self):
        llm = FakeLLM()
        verdicts = [_verdict("A", MatchStatus.NOT_MATCH), _verdict("B", MatchStatus.NOT_MATCH)]
        decision = await _consolidator(llm).consolidate(DETECTION, "crop", verdicts)
        assert decision.state == ConsolidationState.NO_MATCH
        assert decision.reason_code == ReasonCode.NO_VISUAL_MATCH
        assert decision.selected is None
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_empty_verdicts_is_no_match(self):
        decision = await _consolidator(FakeLLM()).consolidate(DETECTION, "crop", [])
        assert decision.state == ConsolidationState.NO_MATCH

    @pytest.mark.asyncio
    async def test_single_match_auto_selected(self):
        llm = FakeLLM()
        verdicts = [_verdict("A", MatchStatus.NOT_MATCH), _verdict("B", MatchStatus.ALMOST_SAME, 0.8)]
        decision = await _consolidator(llm).consolidate(DETECTION, "crop", verdicts)
        assert decision.state == ConsolidationState.AUTO_SELECTED
        assert decision.selected_key == "B"
        assert decision.selection_method == SelectionMethod.AUTO_SELECT
        assert decision.confidence == 0.8
        assert llm.calls == []


class TestArbitration:

    @pytest.mark.asyncio
    async def test_two_identical_candidates_are_arbitrated(self):
        llm = FakeLLM(ArbitrationResponse=_arbitration("B", 0.82))
        decision = await _consolidator(llm).consolidate(DETECTION, "crop", [_verdict("A"), _verdict("B")])

        assert decision.state == ConsolidationState.SELECTED
        assert decision.selected_key == "B"
        assert decision.selection_method == SelectionMethod.VISUAL_MATCHING
        assert decision.arbitration_scores == {"A": 0.6, "B": 0.9}

        (_, images, prompt), = llm.calls
        assert images == ["crop", "cand:https://img.test/A.jpg", "cand:https://img.test/B.jpg"]
        assert "Candidate 1 (key: A)" in prompt and "Candidate 2 (key: B)" in prompt
        assert "{{" not in prompt

    @pytest.mark.asyncio
    async def test_confidence_at_threshold_is_accepted(self):
        llm = FakeLLM(ArbitrationResponse=_arbitration("A", 0.6))
        decision = await _consolidator(llm).consolidate(DETECTION, "crop", [_verdict("A"), _verdict("B")])
        assert decision.state == ConsolidationState.SELECTED
        assert decision.selected_key == "A"

    @pytest.mark.asyncio
    async def test_low_confidence_needs_review(self):
        llm = FakeLLM(ArbitrationResponse=_arbitration("A", 0.59))
        decision = await _consolidator(llm).consolidate(DETECTION, "crop", [_verdict("A"), _verdict("B")])
        assert decision.state == ConsolidationState.NEEDS_REVIEW
        assert decision.reason_code == ReasonCode.NEEDS_REVIEW
        assert decision.selected is None
        assert [v.candidate.key for v in decision.options] == ["A", "B"]
        assert decision.confidence == 0.59
        assert decision.arbitration_scores == {"A": 0.9, "B": 0.6}

    @pytest.mark.asyncio
    async def test_declined_selection_needs_review(self):
        llm = FakeLLM(ArbitrationResponse=_arbitration(None, 0.3))
        decision = await _consolidator(llm).consolidate(DETECTION, "crop", [_verdict("A"), _verdict("B")])
        assert decision.state == ConsolidationState.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_unknown_key_needs_review(self):
        """A confident pick of a key that was never offered is not accepted."""
        llm = FakeLLM(ArbitrationResponse=_arbitration("Z", 0.95))
        decision = await _consolidator(llm).consolidate(DETECTION, "crop", [_verdict("A"), _verdict("B")])
        assert decision.state == ConsolidationState.NEEDS_REVIEW
        assert "unknown key Z" in decision.reason

    @pytest.mark.asyncio
    async def test_candidate_image_failure_needs_review(self):
        llm = FakeLLM(ArbitrationResponse=_arbitration("A", 0.95))
        images = FakeImageLoader(failing_urls={"https://img.test/B.jpg"})
        decision = await _consolidator(llm, images).consolidate(
            DETECTION, "crop", [_verdict("A"), _verdict("B")]
        )
        assert decision.state == ConsolidationState.NEEDS_REVIEW
        assert llm.calls == []
        assert decision.arbitration_scores == {}

    @pytest.mark.asyncio
    async def test_malformed_arbitration_output_propagates(self):
        llm = FakeLLM(ArbitrationResponse=ParseError("not json", raw_text="oops"))
        with pytest.raises(ParseError):
            await _consolidator(llm).consolidate(DETECTION, "crop", [_verdict("A"), _verdict("B")])

    @pytest.mark.asyncio
    async def test_only_matching_candidates_reach_arbitration(self):
        llm = FakeLLM(ArbitrationResponse=_arbitration("C", 0.9, keys=("A", "C")))
        verdicts = [_verdict("A"), _verdict("B", MatchStatus.NOT_MATCH), _verdict("C", MatchStatus.ALMOST_SAME)]
        decision = await _consolidator(llm).consolidate(DETECTION, "crop", verdicts)
        assert decision.selected_key == "C"
        (_, images, _), = llm.calls
        assert len(images) == 3
