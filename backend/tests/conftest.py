"""
conftest.py — Shared pytest fixtures for the ShelfMatch backend test suite.

External services are replaced by small in-process fakes:
  FakeLLM          — answers ``vision_json`` from per-contract handlers
  FakeCatalog      — returns canned CandidateMatch lists
  FakeImageLoader  — records crop boxes, returns deterministic base64 stand-ins
  FakeStore        — records writes without a database

Tests that need real SQL use the ``sqlite_store`` fixture: an in-memory
aiosqlite database created from the ORM metadata.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``shelfmatch.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import pytest
import pytest_asyncio

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any shelfmatch imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

from shelfmatch.models.domain import BoundingBox, CandidateMatch, Detection, ShelfImage  # noqa: E402
from shelfmatch.services.catalog_client import CatalogSearchResult, build_query  # noqa: E402
from shelfmatch.services.errors import ImageError  # noqa: E402


# ---------------------------------------------------------------------------
# Domain factories
# ---------------------------------------------------------------------------

def make_detection(
    id="det-1",
    image_id="img-1",
    box=(400, 400, 600, 500),
    index=0,
    **attrs,
) -> Detection:
    """Detection with a [y0, x0, y1, x1] box; remaining attributes as keywords."""
    return Detection(
        id=id,
        image_id=image_id,
        box=BoundingBox.from_value(box),
        detection_index=index,
        **attrs,
    )


def make_candidate(key, title="", image_url="default", **attrs) -> CandidateMatch:
    if image_url == "default":
        image_url = f"https://img.test/{key}.jpg"
    return CandidateMatch(key=key, title=title, image_url=image_url, **attrs)


def make_image(id="img-1", project_id="proj-1", store_name="Target Store #1234", **attrs) -> ShelfImage:
    return ShelfImage(id=id, project_id=project_id, store_name=store_name,
                      image_base64=attrs.pop("image_base64", "aGVsbG8="), **attrs)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeLLM:
    """
    ``handlers`` maps a contract class name to either a payload, a callable
    ``(images, prompt) -> payload`` or an exception instance. Payloads may be
    dicts (validated by alias) or contract instances.
    """

    def __init__(self, **handlers):
        self.handlers = handlers
        self.calls = []

    def calls_for(self, schema_name):
        return [c for c in self.calls if c[0] == schema_name]

    async def vision_json(self, images_base64, prompt, schema):
        self.calls.append((schema.__name__, list(images_base64), prompt))
        handler = self.handlers.get(schema.__name__)
        if handler is None:
            raise AssertionError(f"Unexpected model call for {schema.__name__}")
        result = handler(images_base64, prompt) if callable(handler) else handler
        if isinstance(result, Exception):
            raise result
        if isinstance(result, schema):
            return result
        return schema.model_validate(result)


class FakeCatalog:

    def __init__(self, candidates=None, error=None):
        self.candidates = list(candidates or [])
        self.error = error
        self.calls = []

    async def search(self, query, hints=None):
        self.calls.append((query, hints))
        if self.error is not None:
            raise self.error
        return CatalogSearchResult(candidates=list(self.candidates),
                                   resolved_query=build_query(query, hints))


class FakeImageLoader:
    """Crops become ``crop:<box>``; candidate images become ``cand:<url>``."""

    def __init__(self, failing_urls=()):
        self.failing_urls = set(failing_urls)
        self.crop_boxes = []
        self.closed = False

    async def crop(self, image, box):
        self.crop_boxes.append(box)
        return f"crop:{box.as_list()}"

    async def candidate_base64(self, url):
        if url in self.failing_urls:
            raise ImageError(f"Failed to fetch image {url}: 404")
        return f"cand:{url}"

    async def aclose(self):
        self.closed = True


class FakeStore:
    """Write-recording store used where SQL behaviour is not under test."""

    def __init__(self):
        self.stage_writes = []
        self.resolutions = []
        self.corrections = []

    async def upsert_stage_results(self, detection_id, results):
        self.stage_writes.append((detection_id, list(results)))

    async def save_resolution(self, detection_id, state, reason="", selected_key=None,
                              selection_method=None, confidence=None, arbitration_scores=None):
        self.resolutions.append((detection_id, state, reason, selected_key, selection_method))

    async def save_correction(self, detection, analysis=None):
        self.corrections.append((detection, analysis))


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_images():
    return FakeImageLoader()


# ---------------------------------------------------------------------------
# SQL-backed store (in-memory aiosqlite)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def sqlite_sessions():
    """async_sessionmaker over a fresh in-memory database with every table created."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from sqlalchemy.pool import StaticPool
    from shelfmatch.db import build_engine, init_db

    engine = build_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await init_db(target_engine=engine)
    sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield sessions
    await engine.dispose()


@pytest_asyncio.fixture
async def sqlite_store(sqlite_sessions):
    from shelfmatch.services.result_store import ResultStore
    return ResultStore(sqlite_sessions)


async def seed(sessions, images=(), detections=()):
    """
    Insert source images and detections.

    ``images`` are ShelfImage; ``detections`` are Detection. Only the columns
    the pipeline reads are written.
    """
    from shelfmatch.models.orm_models import DetectionRow, ShelfImageRow

    async with sessions() as session:
        for img in images:
            session.add(ShelfImageRow(
                id=img.id,
                project_id=img.project_id,
                store_name=img.store_name,
                image_url=img.image_url,
                image_base64=img.image_base64,
                mime_type=img.mime_type,
            ))
        await session.flush()
        for d in detections:
            session.add(DetectionRow(
                id=d.id,
                image_id=d.image_id,
                detection_index=d.detection_index,
                bounding_box=d.box.as_dict(),
                brand_name=d.brand,
                brand_confidence=d.brand_confidence,
                product_name=d.product_name,
                size=d.size,
                size_confidence=d.size_confidence,
                is_product=d.is_product,
                fully_analyzed=d.fully_analyzed,
            ))
        await session.commit()


# ---------------------------------------------------------------------------
# Shared payloads
# ---------------------------------------------------------------------------

IDENTICAL = {"matchStatus": "identical", "confidence": 0.95, "visualSimilarity": 0.97,
             "reason": "Same front label"}
NOT_MATCH = {"matchStatus": "not_match", "confidence": 0.9, "visualSimilarity": 0.2,
             "reason": "Different flavor"}


def by_candidate_url(mapping, default=NOT_MATCH):
    """Pairwise handler answering per candidate image URL (second image)."""
    def _handler(images, prompt):
        url = images[1].split("cand:", 1)[-1]
        return mapping.get(url, default)
    return _handler

