"""
Celery Tasks — project batch runs executed off the API process.

Each task runs the async pipeline on a fresh event loop with its own engine
(NullPool), so no connection is ever shared between loops.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from shelfmatch.workers.celery_app import celery_app

logger = logging.getLogger("shelfmatch-celery")


def _run_async(coro):
    """Run an async coroutine in a sync Celery task context (new event loop)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@asynccontextmanager
async def _pipeline():
    """BatchJobs wired to a task-local engine; yields (jobs, store)."""
    from shelfmatch.config import FunnelSettings
    from shelfmatch.db import DATABASE_URL, build_engine
    from shelfmatch.services.batch_jobs import BatchJobs
    from shelfmatch.services.catalog_client import CatalogClient
    from shelfmatch.services.llm_client import VisionLLMClient
    from shelfmatch.services.prompts import PromptLibrary
    from shelfmatch.services.result_store import ResultStore

    engine = build_engine(DATABASE_URL, poolclass=NullPool)
    sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    settings = FunnelSettings.from_env()
    catalog = CatalogClient(result_cap=settings.catalog_result_cap)
    store = ResultStore(sessions)
    jobs = BatchJobs(
        store=store,
        catalog=catalog,
        llm=VisionLLMClient(),
        prompts=PromptLibrary(sessions),
        settings=settings,
    )
    try:
        yield jobs, store
    finally:
        await catalog.aclose()
        await engine.dispose()


def _progress_reporter(task):
    from shelfmatch.models.progress_models import ProgressEvent

    def emit(event):
        if isinstance(event, ProgressEvent):
            task.update_state(state="PROGRESS", meta=event.model_dump(by_alias=True))
    return emit


@celery_app.task(bind=True, name="tasks.resolve_project")
def resolve_project(self, project_id: str, concurrency: Optional[int] = None):
    """Run the matching funnel over every unanalyzed detection of a project."""
    async def _run():
        async with _pipeline() as (jobs, _):
            run = await jobs.resolve_project(project_id, concurrency=concurrency,
                                             emit=_progress_reporter(self))
            return run.summary().model_dump(by_alias=True)

    try:
        return _run_async(_run())
    except Exception as e:
        logger.error(f"Resolution batch failed for project {project_id}: {e}")
        raise


@celery_app.task(bind=True, name="tasks.correct_project")
def correct_project(self, project_id: str, mode: str = "improve_only", concurrency: Optional[int] = None):
    """Contextual correction for every low-confidence detection of a project."""
    from shelfmatch.models.domain import CorrectionMode

    async def _run():
        async with _pipeline() as (jobs, _):
            run = await jobs.correct_project(project_id, mode=CorrectionMode(mode),
                                             concurrency=concurrency,
                                             emit=_progress_reporter(self))
            return run.summary().model_dump(by_alias=True)

    try:
        return _run_async(_run())
    except Exception as e:
        logger.error(f"Contextual batch failed for project {project_id}: {e}")
        raise


@celery_app.task(name="tasks.nightly_forced_correction")
def nightly_forced_correction():
    """Beat task: forced contextual correction across every project, one project at a time."""
    from shelfmatch.models.domain import CorrectionMode

    async def _run():
        totals = {}
        async with _pipeline() as (jobs, store):
            for project_id in await store.list_project_ids():
                try:
                    run = await jobs.correct_project(project_id, mode=CorrectionMode.FORCE)
                except Exception as e:
                    logger.error(f"Nightly correction failed for project {project_id}: {e}")
                    totals[project_id] = {"error": str(e)}
                    continue
                totals[project_id] = {
                    "processed": run.processed,
                    "succeeded": run.succeeded,
                    "skipped": run.skipped,
                    "failed": run.failed,
                }
        logger.info(f"Nightly forced correction finished for {len(totals)} projects")
        return totals

    return _run_async(_run())
