"""
Result Store — the only shared mutable resource of the pipeline.

Stage results are written with a dialect-native upsert keyed by
(detection_id, candidate_key) that only advances the stored stage:

    INSERT ... ON CONFLICT (detection_id, candidate_key)
    DO UPDATE SET ... WHERE stage_results.stage_rank < excluded.stage_rank

so concurrent writers commute and re-runs never duplicate or regress a row.
Every SQLAlchemyError is re-raised as PersistenceError.
"""
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from shelfmatch.models.domain import (
    BoundingBox,
    CandidateMatch,
    ConsolidationState,
    Detection,
    MatchStatus,
    SelectionMethod,
    ShelfImage,
    Stage,
    StageResult,
)
from shelfmatch.models.orm_models import DetectionRow, ShelfImageRow, StageResultRow
from shelfmatch.services.errors import PersistenceError

logger = logging.getLogger("shelfmatch-store")

# Columns that keep their previous value when the advancing row leaves them empty
_COALESCED = (
    "search_term", "result_rank", "title", "brand", "size", "category", "image_url",
    "similarity_score", "match_status", "confidence", "visual_similarity", "reason",
)

_RESOLVED_STATES = {
    ConsolidationState.AUTO_SELECTED,
    ConsolidationState.SELECTED,
    ConsolidationState.NEEDS_REVIEW,
    ConsolidationState.NO_MATCH,
}


def _image_from_row(row: ShelfImageRow) -> ShelfImage:
    return ShelfImage(
        id=row.id,
        project_id=row.project_id,
        store_name=row.store_name,
        image_url=row.image_url,
        image_base64=row.image_base64,
        mime_type=row.mime_type or "image/jpeg",
    )


def _detection_from_row(row: DetectionRow) -> Detection:
    return Detection(
        id=row.id,
        image_id=row.image_id,
        box=BoundingBox.from_value(row.bounding_box),
        detection_index=row.detection_index or 0,
        brand=row.brand_name,
        brand_confidence=row.brand_confidence,
        product_name=row.product_name,
        product_name_confidence=row.product_name_confidence,
        category=row.category,
        category_confidence=row.category_confidence,
        flavor=row.flavor,
        flavor_confidence=row.flavor_confidence,
        size=row.size,
        size_confidence=row.size_confidence,
        is_product=row.is_product,
        resolved=bool(row.resolved),
        selected_candidate_key=row.selected_candidate_key,
        selection_method=SelectionMethod(row.selection_method) if row.selection_method else None,
        selection_confidence=row.selection_confidence,
        resolved_at=row.resolved_at,
        fully_analyzed=bool(row.fully_analyzed),
        corrected_by_context=bool(row.corrected_by_context),
        correction_notes=row.correction_notes,
    )


def _stage_result_from_row(row: StageResultRow) -> StageResult:
    return StageResult(
        detection_id=row.detection_id,
        candidate_key=row.candidate_key,
        stage=Stage(row.stage),
        candidate=CandidateMatch(
            key=row.candidate_key,
            title=row.title or "",
            brand=row.brand,
            size=row.size,
            category=row.category,
            image_url=row.image_url,
            rank=row.result_rank or 0,
        ),
        search_term=row.search_term,
        result_rank=row.result_rank,
        similarity_score=row.similarity_score,
        match_status=MatchStatus(row.match_status) if row.match_status else None,
        confidence=row.confidence,
        visual_similarity=row.visual_similarity,
        arbitration_similarity=row.arbitration_similarity,
        reason=row.reason,
        is_selected=bool(row.is_selected),
    )


def _row_values(result: StageResult) -> dict:
    c = result.candidate
    return {
        "detection_id": result.detection_id,
        "candidate_key": result.candidate_key,
        "stage": result.stage.value,
        "stage_rank": result.stage.rank,
        "search_term": result.search_term,
        "result_rank": result.result_rank,
        "title": c.title if c else None,
        "brand": c.brand if c else None,
        "size": c.size if c else None,
        "category": c.category if c else None,
        "image_url": c.image_url if c else None,
        "similarity_score": result.similarity_score,
        "match_status": result.match_status.value if result.match_status else None,
        "confidence": result.confidence,
        "visual_similarity": result.visual_similarity,
        "reason": result.reason,
        "is_selected": result.is_selected,
    }


class ResultStore:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    # ── Reads ────────────────────────────────────────────────────────────────

    async def load_image(self, image_id: str) -> Optional[ShelfImage]:
        try:
            async with self._session_factory() as session:
                row = await session.get(ShelfImageRow, image_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load image {image_id}: {e}") from e
        return _image_from_row(row) if row else None

    async def load_project_images(self, project_id: str) -> list[ShelfImage]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ShelfImageRow)
                    .where(ShelfImageRow.project_id == project_id)
                    .order_by(ShelfImageRow.created_at, ShelfImageRow.id)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load images for project {project_id}: {e}") from e
        return [_image_from_row(r) for r in rows]

    async def list_project_ids(self) -> list[str]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ShelfImageRow.project_id)
                    .where(ShelfImageRow.project_id.is_not(None))
                    .distinct()
                    .order_by(ShelfImageRow.project_id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list projects: {e}") from e

    async def load_detections(
        self,
        image_ids: Iterable[str],
        unanalyzed_only: bool = False,
        with_brand_only: bool = False,
    ) -> list[Detection]:
        """Detections of the given images, ordered by image then detection index."""
        image_ids = list(image_ids)
        if not image_ids:
            return []
        stmt = select(DetectionRow).where(DetectionRow.image_id.in_(image_ids))
        if unanalyzed_only:
            stmt = stmt.where(DetectionRow.fully_analyzed.is_not(True))
        if with_brand_only:
            stmt = stmt.where(DetectionRow.brand_name.is_not(None))
        stmt = stmt.order_by(DetectionRow.image_id, DetectionRow.detection_index)
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load detections: {e}") from e

        detections = []
        for row in rows:
            try:
                detections.append(_detection_from_row(row))
            except ValueError as e:
                logger.warning(f"Skipping detection {row.id} with invalid data: {e}")
        return detections

    async def load_detection(self, detection_id: str) -> Optional[Detection]:
        try:
            async with self._session_factory() as session:
                row = await session.get(DetectionRow, detection_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load detection {detection_id}: {e}") from e
        return _detection_from_row(row) if row else None

    async def list_stage_results(self, detection_id: str) -> list[StageResult]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(StageResultRow)
                    .where(StageResultRow.detection_id == detection_id)
                    .order_by(StageResultRow.stage_rank.desc(), StageResultRow.result_rank)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list stage results for {detection_id}: {e}") from e
        return [_stage_result_from_row(r) for r in rows]

    # ── Writes ───────────────────────────────────────────────────────────────

    def _upsert_statement(self, dialect: str, values: list[dict]):
        if dialect == "postgresql":
            stmt = pg_insert(StageResultRow).values(values)
        elif dialect == "sqlite":
            stmt = sqlite_insert(StageResultRow).values(values)
        else:
            raise PersistenceError(f"Unsupported database dialect for upsert: {dialect}")
        excluded = stmt.excluded
        set_ = {
            "stage": excluded.stage,
            "stage_rank": excluded.stage_rank,
            "updated_at": func.now(),
        }
        for col in _COALESCED:
            set_[col] = func.coalesce(getattr(excluded, col), getattr(StageResultRow, col))
        return stmt.on_conflict_do_update(
            index_elements=["detection_id", "candidate_key"],
            set_=set_,
            where=StageResultRow.stage_rank < excluded.stage_rank,
        )

    async def upsert_stage_results(self, detection_id: str, results: Sequence[StageResult]):
        """Insert or advance one row per candidate; same-or-earlier stage is a no-op."""
        if not results:
            return
        values = []
        for r in results:
            if r.detection_id != detection_id:
                raise ValueError(f"Stage result for {r.detection_id} passed with {detection_id}")
            values.append(_row_values(r))
        try:
            async with self._session_factory() as session:
                dialect = session.bind.dialect.name
                await session.execute(self._upsert_statement(dialect, values))
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to upsert {len(values)} stage results for {detection_id}: {e}"
            ) from e
        logger.debug(
            f"Upserted {len(values)} stage results",
            extra={"detection_id": detection_id, "stage": results[0].stage.value},
        )

    async def save_resolution(
        self,
        detection_id: str,
        state: ConsolidationState,
        reason: str = "",
        selected_key: Optional[str] = None,
        selection_method: Optional[SelectionMethod] = None,
        confidence: Optional[float] = None,
        arbitration_scores: Optional[dict[str, float]] = None,
    ):
        """
        Mark the detection resolved and flag its selected stage result.

        ``confidence`` is the selection confidence (pairwise for auto-select,
        arbitration otherwise); ``arbitration_scores`` maps candidate key to
        the per-candidate visual similarity returned by arbitration.
        """
        if state not in _RESOLVED_STATES:
            raise ValueError(f"{state.value} is not a terminal state")
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(DetectionRow)
                    .where(DetectionRow.id == detection_id)
                    .values(
                        resolved=True,
                        selected_candidate_key=selected_key,
                        selection_method=selection_method.value if selection_method else None,
                        selection_confidence=confidence,
                        resolution_state=state.value,
                        resolution_reason=reason,
                        resolved_at=now,
                        fully_analyzed=True,
                    )
                )
                await session.execute(
                    update(StageResultRow)
                    .where(StageResultRow.detection_id == detection_id)
                    .values(is_selected=False, arbitration_similarity=None)
                )
                for key, score in (arbitration_scores or {}).items():
                    await session.execute(
                        update(StageResultRow)
                        .where(
                            StageResultRow.detection_id == detection_id,
                            StageResultRow.candidate_key == key,
                        )
                        .values(arbitration_similarity=score)
                    )
                if selected_key is not None:
                    await session.execute(
                        update(StageResultRow)
                        .where(
                            StageResultRow.detection_id == detection_id,
                            StageResultRow.candidate_key == selected_key,
                        )
                        .values(is_selected=True)
                    )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save resolution for {detection_id}: {e}") from e

    async def save_correction(self, detection: Detection, analysis: Optional[dict] = None):
        """Persist corrected brand/size plus provenance."""
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(DetectionRow)
                    .where(DetectionRow.id == detection.id)
                    .values(
                        brand_name=detection.brand,
                        brand_confidence=detection.brand_confidence,
                        size=detection.size,
                        size_confidence=detection.size_confidence,
                        corrected_by_context=detection.corrected_by_context,
                        correction_notes=detection.correction_notes,
                        contextual_analysis_json=analysis,
                        contextual_analyzed_at=now,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to save correction for {detection.id}: {e}") from e
