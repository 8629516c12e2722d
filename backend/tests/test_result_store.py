"""
test_result_store.py — Stage-result upsert semantics against a real SQL engine.

Runs on in-memory SQLite (aiosqlite) through the same dialect-native
INSERT ... ON CONFLICT path used on PostgreSQL.

Tests cover:
  - one row per (detection, candidate), never duplicated
  - the stored stage only advances; an earlier-stage write is a no-op
  - fields left empty by a later stage keep their earlier value
  - resolution and correction writes on the detection row
  - SQL failures surface as PersistenceError
"""

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from conftest import make_candidate, make_detection, make_image, seed
from shelfmatch.models.domain import (
    ConsolidationState,
    MatchStatus,
    SelectionMethod,
    Stage,
    StageResult,
)
from shelfmatch.models.orm_models import DetectionRow, StageResultRow
from shelfmatch.services.errors import PersistenceError
from shelfmatch.services.result_store import ResultStore

DET = "det-1"


def _row(key, stage, **fields):
    return StageResult(
        detection_id=DET,
        candidate_key=key,
        stage=stage,
        candidate=make_candidate(key, title=f"Product {key}", brand="Tide", size="92 oz"),
        **fields,
    )


@pytest_asyncio.fixture
async def seeded(sqlite_sessions, sqlite_store):
    await seed(
        sqlite_sessions,
        images=[make_image(id="img-1"), make_image(id="img-2", project_id="proj-2")],
        detections=[
            make_detection(id=DET, image_id="img-1", index=0, brand="Tide", brand_confidence=0.4),
            make_detection(id="det-2", image_id="img-1", index=1, brand=None),
            make_detection(id="det-3", image_id="img-1", index=2, brand="Dove", fully_analyzed=True),
            make_detection(id="det-4", image_id="img-2", index=0, brand="Axe"),
        ],
    )
    return sqlite_store


async def _count(sessions):
    async with sessions() as session:
        return (await session.execute(
            select(func.count()).select_from(StageResultRow).where(StageResultRow.detection_id == DET)
        )).scalar_one()


class TestUpsertStageResults:

    @pytest.mark.asyncio
    async def test_same_stage_twice_does_not_duplicate(self, seeded, sqlite_sessions):
        rows = [_row("A", Stage.SEARCH, search_term="Tide", result_rank=0),
                _row("B", Stage.SEARCH, search_term="Tide", result_rank=1)]
        await seeded.upsert_stage_results(DET, rows)
        await seeded.upsert_stage_results(DET, rows)
        assert await _count(sqlite_sessions) == 2

    @pytest.mark.asyncio
    async def test_stage_advances_and_keeps_earlier_fields(self, seeded):
        await seeded.upsert_stage_results(DET, [_row("A", Stage.SEARCH, search_term="Tide 92 oz", result_rank=3)])
        await seeded.upsert_stage_results(DET, [_row("A", Stage.PRE_FILTER, similarity_score=0.9,
                                                      reason="Brand match: 100%")])
        await seeded.upsert_stage_results(DET, [_row("A", Stage.VISUAL_COMPARE,
                                                      match_status=MatchStatus.IDENTICAL,
                                                      confidence=0.95, visual_similarity=0.97,
                                                      reason="Same label")])

        (result,) = await seeded.list_stage_results(DET)
        assert result.stage == Stage.VISUAL_COMPARE
        assert result.search_term == "Tide 92 oz"
        assert result.result_rank == 3
        assert result.similarity_score == pytest.approx(0.9)
        assert result.match_status == MatchStatus.IDENTICAL
        assert result.reason == "Same label"

    @pytest.mark.asyncio
    async def test_earlier_stage_never_regresses(self, seeded):
        await seeded.upsert_stage_results(DET, [_row("A", Stage.PRE_FILTER, similarity_score=0.9)])
        await seeded.upsert_stage_results(DET, [_row("A", Stage.SEARCH, search_term="late write")])

        (result,) = await seeded.list_stage_results(DET)
        assert result.stage == Stage.PRE_FILTER
        assert result.search_term is None
        assert result.similarity_score == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_rerun_of_whole_funnel_is_idempotent(self, seeded, sqlite_sessions):
        for _ in range(2):
            await seeded.upsert_stage_results(DET, [_row("A", Stage.SEARCH), _row("B", Stage.SEARCH)])
            await seeded.upsert_stage_results(DET, [_row("A", Stage.PRE_FILTER, similarity_score=1.0)])
            await seeded.upsert_stage_results(DET, [_row("A", Stage.VISUAL_COMPARE,
                                                          match_status=MatchStatus.IDENTICAL)])
        stages = {r.candidate_key: r.stage for r in await seeded.list_stage_results(DET)}
        assert stages == {"A": Stage.VISUAL_COMPARE, "B": Stage.SEARCH}
        assert await _count(sqlite_sessions) == 2

    @pytest.mark.asyncio
    async def test_rows_for_another_detection_rejected(self, seeded):
        foreign = StageResult(detection_id="det-2", candidate_key="A", stage=Stage.SEARCH)
        with pytest.raises(ValueError):
            await seeded.upsert_stage_results(DET, [foreign])

    @pytest.mark.asyncio
    async def test_empty_write_is_noop(self, seeded, sqlite_sessions):
        await seeded.upsert_stage_results(DET, [])
        assert await _count(sqlite_sessions) == 0


class TestDetectionWrites:

    @pytest.mark.asyncio
    async def test_save_resolution_marks_selected_row(self, seeded, sqlite_sessions):
        await seeded.upsert_stage_results(DET, [_row("A", Stage.VISUAL_COMPARE), _row("B", Stage.VISUAL_COMPARE)])
        await seeded.save_resolution(DET, ConsolidationState.SELECTED, reason="picked",
                                     selected_key="B", selection_method=SelectionMethod.VISUAL_MATCHING)

        selected = {r.candidate_key: r.is_selected for r in await seeded.list_stage_results(DET)}
        assert selected == {"A": False, "B": True}

        detection = await seeded.load_detection(DET)
        assert detection.resolved and detection.fully_analyzed
        assert detection.selected_candidate_key == "B"
        assert detection.selection_method == SelectionMethod.VISUAL_MATCHING
        async with sqlite_sessions() as session:
            row = await session.get(DetectionRow, DET)
            assert row.resolution_state == "selected"
            assert row.resolution_reason == "picked"

    @pytest.mark.asyncio
    async def test_save_resolution_stores_arbitration_scores(self, seeded):
        await seeded.upsert_stage_results(DET, [_row("A", Stage.VISUAL_COMPARE), _row("B", Stage.VISUAL_COMPARE)])
        await seeded.save_resolution(DET, ConsolidationState.NEEDS_REVIEW, reason="low confidence",
                                     confidence=0.45, arbitration_scores={"A": 0.7, "B": 0.65})

        scores = {r.candidate_key: r.arbitration_similarity for r in await seeded.list_stage_results(DET)}
        assert scores == {"A": pytest.approx(0.7), "B": pytest.approx(0.65)}
        assert (await seeded.load_detection(DET)).selection_confidence == pytest.approx(0.45)

        # a later resolution without arbitration clears the stale scores
        await seeded.save_resolution(DET, ConsolidationState.AUTO_SELECTED, selected_key="A",
                                     selection_method=SelectionMethod.AUTO_SELECT, confidence=0.9)
        scores = {r.candidate_key: r.arbitration_similarity for r in await seeded.list_stage_results(DET)}
        assert scores == {"A": None, "B": None}

    @pytest.mark.asyncio
    async def test_save_resolution_rejects_non_terminal_state(self, seeded):
        with pytest.raises(ValueError):
            await seeded.save_resolution(DET, ConsolidationState.COMPARING)

    @pytest.mark.asyncio
    async def test_save_correction_persists_provenance(self, seeded, sqlite_sessions):
        detection = await seeded.load_detection(DET)
        corrected = detection.copy(brand="Tide", brand_confidence=0.92, size="92 oz",
                                   size_confidence=0.8, corrected_by_context=True,
                                   correction_notes='Brand: "Tide" (40%) → "Tide" (92%)')
        await seeded.save_correction(corrected, {"inferredBrand": "Tide"})

        reloaded = await seeded.load_detection(DET)
        assert reloaded.brand_confidence == pytest.approx(0.92)
        assert reloaded.size == "92 oz"
        assert reloaded.corrected_by_context
        async with sqlite_sessions() as session:
            row = await session.get(DetectionRow, DET)
            assert row.contextual_analysis_json == {"inferredBrand": "Tide"}
            assert row.contextual_analyzed_at is not None


class TestReads:

    @pytest.mark.asyncio
    async def test_project_images_and_ids(self, seeded):
        assert [i.id for i in await seeded.load_project_images("proj-1")] == ["img-1"]
        assert await seeded.list_project_ids() == ["proj-1", "proj-2"]
        assert await seeded.load_image("missing") is None

    @pytest.mark.asyncio
    async def test_load_detections_filters(self, seeded):
        everything = await seeded.load_detections(["img-1"])
        assert [d.id for d in everything] == ["det-1", "det-2", "det-3"]

        pending = await seeded.load_detections(["img-1"], unanalyzed_only=True, with_brand_only=True)
        assert [d.id for d in pending] == ["det-1"]

        assert await seeded.load_detections([]) == []


class TestFailures:

    @pytest.mark.asyncio
    async def test_missing_tables_raise_persistence_error(self):
        from sqlalchemy.ext.asyncio import async_sessionmaker
        from sqlalchemy.pool import StaticPool
        from shelfmatch.db import build_engine

        engine = build_engine("sqlite+aiosqlite://", poolclass=StaticPool)
        store = ResultStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            with pytest.raises(PersistenceError):
                await store.upsert_stage_results(DET, [_row("A", Stage.SEARCH)])
            with pytest.raises(PersistenceError):
                await store.load_detection(DET)
        finally:
            await engine.dispose()
