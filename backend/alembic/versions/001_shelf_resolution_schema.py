"""shelf_resolution_schema

Revision ID: 001_shelf_resolution
Revises:
Create Date: 2026-10-19

Creates the tables used by the resolution pipeline:
- shelf_images (read-only source photo metadata)
- detections (extracted attributes, resolution state, correction provenance)
- stage_results (one row per detection/candidate, unique on the pair)
- prompt_templates (per-project prompt overrides)

All DDL checks for existing tables first so the migration is idempotent —
safe to run even when Base.metadata.create_all() already created them.
"""
import logging
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql

revision = '001_shelf_resolution'
down_revision = None
branch_labels = None
depends_on = None

logger = logging.getLogger("alembic.001")

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _table_exists(conn, table_name: str) -> bool:
    return inspect(conn).has_table(table_name)


def upgrade() -> None:
    conn = op.get_bind()

    # ── shelf_images ──────────────────────────────────────────────────────────
    if not _table_exists(conn, 'shelf_images'):
        op.create_table(
            'shelf_images',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('project_id', sa.String(36), nullable=True, index=True),
            sa.Column('store_name', sa.String(255), nullable=True),
            sa.Column('image_url', sa.Text, nullable=True),
            sa.Column('image_base64', sa.Text, nullable=True),
            sa.Column('mime_type', sa.String(50), nullable=False, server_default='image/jpeg'),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        logger.info("Created table: shelf_images")
    else:
        logger.info("Table shelf_images already exists — skipping create")

    # ── detections ────────────────────────────────────────────────────────────
    if not _table_exists(conn, 'detections'):
        op.create_table(
            'detections',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('image_id', sa.String(36),
                      sa.ForeignKey('shelf_images.id', ondelete='CASCADE'), nullable=False),
            sa.Column('detection_index', sa.Integer, nullable=False, server_default='0'),
            sa.Column('bounding_box', JSONType, nullable=False),
            sa.Column('brand_name', sa.String(255), nullable=True),
            sa.Column('brand_confidence', sa.Float, nullable=True),
            sa.Column('product_name', sa.Text, nullable=True),
            sa.Column('product_name_confidence', sa.Float, nullable=True),
            sa.Column('category', sa.String(255), nullable=True),
            sa.Column('category_confidence', sa.Float, nullable=True),
            sa.Column('flavor', sa.String(255), nullable=True),
            sa.Column('flavor_confidence', sa.Float, nullable=True),
            sa.Column('size', sa.String(100), nullable=True),
            sa.Column('size_confidence', sa.Float, nullable=True),
            sa.Column('is_product', sa.Boolean, nullable=True),
            sa.Column('resolved', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('selected_candidate_key', sa.String(64), nullable=True),
            sa.Column('selection_method', sa.String(30), nullable=True),
            sa.Column('selection_confidence', sa.Float, nullable=True),
            sa.Column('resolution_state', sa.String(30), nullable=True),
            sa.Column('resolution_reason', sa.Text, nullable=True),
            sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('fully_analyzed', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('corrected_by_context', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('correction_notes', sa.Text, nullable=True),
            sa.Column('contextual_analysis_json', JSONType, nullable=True),
            sa.Column('contextual_analyzed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index('ix_detections_image_index', 'detections', ['image_id', 'detection_index'])
        logger.info("Created table: detections")
    else:
        logger.info("Table detections already exists — skipping create")

    # ── stage_results ─────────────────────────────────────────────────────────
    if not _table_exists(conn, 'stage_results'):
        op.create_table(
            'stage_results',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('detection_id', sa.String(36),
                      sa.ForeignKey('detections.id', ondelete='CASCADE'), nullable=False),
            sa.Column('candidate_key', sa.String(64), nullable=False),
            sa.Column('stage', sa.String(30), nullable=False),
            sa.Column('stage_rank', sa.Integer, nullable=False),
            sa.Column('search_term', sa.Text, nullable=True),
            sa.Column('result_rank', sa.Integer, nullable=True),
            sa.Column('title', sa.Text, nullable=True),
            sa.Column('brand', sa.String(255), nullable=True),
            sa.Column('size', sa.String(100), nullable=True),
            sa.Column('category', sa.String(255), nullable=True),
            sa.Column('image_url', sa.Text, nullable=True),
            sa.Column('similarity_score', sa.Float, nullable=True),
            sa.Column('match_status', sa.String(20), nullable=True),
            sa.Column('confidence', sa.Float, nullable=True),
            sa.Column('visual_similarity', sa.Float, nullable=True),
            sa.Column('arbitration_similarity', sa.Float, nullable=True),
            sa.Column('reason', sa.Text, nullable=True),
            sa.Column('is_selected', sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint('detection_id', 'candidate_key',
                                name='uq_stage_results_detection_candidate'),
        )
        logger.info("Created table: stage_results")
    else:
        logger.info("Table stage_results already exists — skipping create")

    # ── prompt_templates ──────────────────────────────────────────────────────
    if not _table_exists(conn, 'prompt_templates'):
        op.create_table(
            'prompt_templates',
            sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
            sa.Column('project_id', sa.String(36), nullable=False),
            sa.Column('step_name', sa.String(50), nullable=False),
            sa.Column('prompt_text', sa.Text, nullable=False),
            sa.Column('version', sa.Integer, nullable=False, server_default='1'),
            sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index('ix_prompt_templates_lookup', 'prompt_templates',
                        ['project_id', 'step_name', 'is_active'])
        logger.info("Created table: prompt_templates")
    else:
        logger.info("Table prompt_templates already exists — skipping create")


def downgrade() -> None:
    conn = op.get_bind()
    for table in ('prompt_templates', 'stage_results', 'detections', 'shelf_images'):
        if _table_exists(conn, table):
            op.drop_table(table)
