"""
test_import_safety.py — Module import and circular-import checks.

Verifies that:
  1. Every shelfmatch module imports without ImportError or a circular import
     (only the module itself is imported; no DB connection is made).
  2. The Celery app registers the batch tasks and the nightly beat entry.

No database, network, or external services are required.
"""

import importlib

import pytest

SHELFMATCH_MODULES = [
    "shelfmatch.config",
    "shelfmatch.db",
    "shelfmatch.models.domain",
    "shelfmatch.models.llm_schemas",
    "shelfmatch.models.orm_models",
    "shelfmatch.models.progress_models",
    "shelfmatch.services.errors",
    "shelfmatch.services.logging_config",
    "shelfmatch.services.perf_monitor",
    "shelfmatch.services.middleware",
    "shelfmatch.services.similarity",
    "shelfmatch.services.neighbor_locator",
    "shelfmatch.services.prompts",
    "shelfmatch.services.llm_client",
    "shelfmatch.services.image_processor",
    "shelfmatch.services.catalog_client",
    "shelfmatch.services.prefilter_engine",
    "shelfmatch.services.visual_comparator",
    "shelfmatch.services.consolidator",
    "shelfmatch.services.result_store",
    "shelfmatch.services.resolution_funnel",
    "shelfmatch.services.contextual_corrector",
    "shelfmatch.services.batch_driver",
    "shelfmatch.services.batch_jobs",
    "shelfmatch.api.deps",
    "shelfmatch.api.batch_routes",
    "shelfmatch.workers.celery_app",
    "shelfmatch.workers.tasks",
    "shelfmatch.main",
]


class TestModuleImports:
    """Each module must import cleanly in isolation."""

    @pytest.mark.parametrize("module_name", SHELFMATCH_MODULES)
    def test_module_imports(self, module_name):
        module = importlib.import_module(module_name)
        assert module is not None


class TestCeleryRegistration:

    def test_tasks_registered(self):
        from shelfmatch.workers import tasks  # noqa: F401
        from shelfmatch.workers.celery_app import celery_app

        for name in ("tasks.resolve_project", "tasks.correct_project", "tasks.nightly_forced_correction"):
            assert name in celery_app.tasks

    def test_nightly_beat_entry(self):
        from shelfmatch.workers.celery_app import celery_app

        entry = celery_app.conf.beat_schedule["forced-contextual-correction-nightly"]
        assert entry["task"] == "tasks.nightly_forced_correction"
