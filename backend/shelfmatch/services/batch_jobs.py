"""
Project-level batch jobs shared by the HTTP routes and the Celery tasks.

Each job builds a fresh ImageLoader so source photos and candidate images are
fetched once per run and shared by every detection in it.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Optional

from shelfmatch.config import BATCH_GROUP_DELAY_S, BATCH_ITEM_TIMEOUT_S, FunnelSettings
from shelfmatch.models.domain import CorrectionMode, ItemOutcome
from shelfmatch.services.batch_driver import BatchDriver, BatchRun, Emit
from shelfmatch.services.contextual_corrector import ContextualCorrector, needs_correction
from shelfmatch.services.image_processor import ImageLoader
from shelfmatch.services.prompts import PromptLibrary
from shelfmatch.services.resolution_funnel import ResolutionFunnel

logger = logging.getLogger("shelfmatch-jobs")


class BatchJobs:

    def __init__(
        self,
        store,
        catalog,
        llm,
        prompts: Optional[PromptLibrary] = None,
        settings: Optional[FunnelSettings] = None,
        image_loader_factory=ImageLoader,
        group_delay: float = BATCH_GROUP_DELAY_S,
        item_timeout: Optional[float] = BATCH_ITEM_TIMEOUT_S,
    ):
        self.store = store
        self.catalog = catalog
        self.llm = llm
        self.prompts = prompts or PromptLibrary()
        self.settings = settings or FunnelSettings()
        self.image_loader_factory = image_loader_factory
        self.group_delay = group_delay
        self.item_timeout = item_timeout

    def _driver(self, concurrency: Optional[int]) -> BatchDriver:
        return BatchDriver(
            concurrency=concurrency,
            group_delay=self.group_delay,
            item_timeout=self.item_timeout,
        )

    async def resolve_project(
        self,
        project_id: str,
        concurrency: Optional[int] = None,
        emit: Optional[Emit] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> BatchRun:
        """Run the matching funnel over every unanalyzed detection with an extracted brand."""
        images = {img.id: img for img in await self.store.load_project_images(project_id)}
        detections = [
            d for d in await self.store.load_detections(
                images.keys(), unanalyzed_only=True, with_brand_only=True
            )
            if d.is_product is not False
        ]
        logger.info(f"Project {project_id}: {len(detections)} detections to resolve",
                    extra={"project_id": project_id})

        loader = self.image_loader_factory()
        funnel = ResolutionFunnel(
            self.catalog, self.llm, loader, self.store,
            prompts=self.prompts, settings=self.settings,
        )
        try:
            return await self._driver(concurrency).run(
                detections,
                lambda d: funnel.resolve(d, images[d.image_id]),
                emit=emit,
                cancel=cancel,
            )
        finally:
            await loader.aclose()

    async def correct_project(
        self,
        project_id: str,
        mode: CorrectionMode = CorrectionMode.IMPROVE_ONLY,
        concurrency: Optional[int] = None,
        emit: Optional[Emit] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> BatchRun:
        """Contextual correction for every detection with an unknown or low-confidence brand."""
        images = {img.id: img for img in await self.store.load_project_images(project_id)}
        all_detections = await self.store.load_detections(images.keys())
        peers = defaultdict(list)
        for d in all_detections:
            peers[d.image_id].append(d)
        threshold = self.settings.context_confidence_threshold
        eligible = [d for d in all_detections if needs_correction(d, threshold)]
        logger.info(
            f"Project {project_id}: {len(eligible)}/{len(all_detections)} detections "
            f"need contextual correction ({mode.value})",
            extra={"project_id": project_id},
        )

        loader = self.image_loader_factory()
        corrector = ContextualCorrector(
            self.llm, loader, self.store, prompts=self.prompts, settings=self.settings,
        )
        try:
            return await self._driver(concurrency).run(
                eligible,
                lambda d: corrector.correct(d, peers[d.image_id], images[d.image_id], mode),
                emit=emit,
                cancel=cancel,
            )
        finally:
            await loader.aclose()

    async def correct_detection(
        self,
        detection_id: str,
        mode: CorrectionMode = CorrectionMode.IMPROVE_ONLY,
    ) -> ItemOutcome:
        """Single-detection correction; raises LookupError when it does not exist."""
        detection = await self.store.load_detection(detection_id)
        if detection is None:
            raise LookupError(f"Detection {detection_id} not found")
        image = await self.store.load_image(detection.image_id)
        if image is None:
            raise LookupError(f"Image {detection.image_id} not found")
        peers = await self.store.load_detections([detection.image_id])

        loader = self.image_loader_factory()
        corrector = ContextualCorrector(
            self.llm, loader, self.store, prompts=self.prompts, settings=self.settings,
        )
        try:
            return await corrector.correct(detection, peers, image, mode)
        finally:
            await loader.aclose()
