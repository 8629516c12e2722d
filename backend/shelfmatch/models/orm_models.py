"""ORM Models for shelf product resolution — SQLAlchemy 2.0"""
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy import (
    JSON, String, Text, Boolean, Integer, Float, DateTime,
    ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from shelfmatch.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def gen_uuid():
    return str(uuid.uuid4())


# ── SOURCE IMAGES ─────────────────────────────────────────────────────────────
# Written by the upload service; the pipeline only reads them.
class ShelfImageRow(Base):
    __tablename__ = "shelf_images"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    project_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    store_name: Mapped[Optional[str]] = mapped_column(String(255))
    image_url: Mapped[Optional[str]] = mapped_column(Text)
    image_base64: Mapped[Optional[str]] = mapped_column(Text)
    mime_type: Mapped[str] = mapped_column(String(50), default="image/jpeg")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    detections: Mapped[list["DetectionRow"]] = relationship("DetectionRow", back_populates="image")


# ── DETECTIONS ────────────────────────────────────────────────────────────────
class DetectionRow(Base):
    __tablename__ = "detections"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    image_id: Mapped[str] = mapped_column(String(36), ForeignKey("shelf_images.id", ondelete="CASCADE"))
    detection_index: Mapped[int] = mapped_column(Integer, default=0)
    # [y0, x0, y1, x1] normalized 0–1000
    bounding_box: Mapped[dict] = mapped_column(JSONType, nullable=False)
    # Extracted attributes: size is stored once, as text
    brand_name: Mapped[Optional[str]] = mapped_column(String(255))
    brand_confidence: Mapped[Optional[float]] = mapped_column(Float)
    product_name: Mapped[Optional[str]] = mapped_column(Text)
    product_name_confidence: Mapped[Optional[float]] = mapped_column(Float)
    category: Mapped[Optional[str]] = mapped_column(String(255))
    category_confidence: Mapped[Optional[float]] = mapped_column(Float)
    flavor: Mapped[Optional[str]] = mapped_column(String(255))
    flavor_confidence: Mapped[Optional[float]] = mapped_column(Float)
    size: Mapped[Optional[str]] = mapped_column(String(100))
    size_confidence: Mapped[Optional[float]] = mapped_column(Float)
    is_product: Mapped[Optional[bool]] = mapped_column(Boolean)
    # Resolution state
    resolved: Mapped[bool] = mapped_column(Boolean, default=False)
    selected_candidate_key: Mapped[Optional[str]] = mapped_column(String(64))
    selection_method: Mapped[Optional[str]] = mapped_column(String(30))  # "auto_select" | "visual_matching"
    selection_confidence: Mapped[Optional[float]] = mapped_column(Float)
    resolution_state: Mapped[Optional[str]] = mapped_column(String(30))
    resolution_reason: Mapped[Optional[str]] = mapped_column(Text)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    fully_analyzed: Mapped[bool] = mapped_column(Boolean, default=False)
    # Contextual correction provenance
    corrected_by_context: Mapped[bool] = mapped_column(Boolean, default=False)
    correction_notes: Mapped[Optional[str]] = mapped_column(Text)
    contextual_analysis_json: Mapped[Optional[dict]] = mapped_column(JSONType)
    contextual_analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    image: Mapped["ShelfImageRow"] = relationship("ShelfImageRow", back_populates="detections")

    __table_args__ = (
        Index("ix_detections_image_index", "image_id", "detection_index"),
    )


# ── STAGE RESULTS ─────────────────────────────────────────────────────────────
# One row per (detection, candidate); the upsert only ever advances stage_rank.
class StageResultRow(Base):
    __tablename__ = "stage_results"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    detection_id: Mapped[str] = mapped_column(String(36), ForeignKey("detections.id", ondelete="CASCADE"))
    candidate_key: Mapped[str] = mapped_column(String(64), nullable=False)
    stage: Mapped[str] = mapped_column(String(30), nullable=False)  # search | pre_filter | visual_compare
    stage_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    search_term: Mapped[Optional[str]] = mapped_column(Text)
    result_rank: Mapped[Optional[int]] = mapped_column(Integer)
    title: Mapped[Optional[str]] = mapped_column(Text)
    brand: Mapped[Optional[str]] = mapped_column(String(255))
    size: Mapped[Optional[str]] = mapped_column(String(100))
    category: Mapped[Optional[str]] = mapped_column(String(255))
    image_url: Mapped[Optional[str]] = mapped_column(Text)
    similarity_score: Mapped[Optional[float]] = mapped_column(Float)
    match_status: Mapped[Optional[str]] = mapped_column(String(20))
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    visual_similarity: Mapped[Optional[float]] = mapped_column(Float)
    # per-candidate score from multi-candidate arbitration
    arbitration_similarity: Mapped[Optional[float]] = mapped_column(Float)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    is_selected: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("detection_id", "candidate_key", name="uq_stage_results_detection_candidate"),
    )


# ── PROMPT TEMPLATES ──────────────────────────────────────────────────────────
class PromptTemplateRow(Base):
    __tablename__ = "prompt_templates"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[str] = mapped_column(String(36), nullable=False)
    step_name: Mapped[str] = mapped_column(String(50), nullable=False)  # visual_compare | visual_match | contextual
    prompt_text: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_prompt_templates_lookup", "project_id", "step_name", "is_active"),
    )
