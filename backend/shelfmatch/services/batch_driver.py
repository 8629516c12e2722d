"""
Batch Driver — bounded-concurrency runner with progress streaming.

Detections are partitioned into groups of ``concurrency``; a group runs fully
concurrently and groups run one after another with ``group_delay`` seconds in
between to respect third-party rate limits. Exactly one progress event is
emitted per completed detection, and the counters in each event cover exactly
the detections completed so far.

Failures are isolated per detection: every exception is converted into a
failed ItemOutcome with a reason code, and the run always ends with a
complete event carrying the summary.

Cancellation: setting ``cancel`` interrupts the inter-group delay, cancels
in-flight detections (reported as failed/cancelled) and skips dispatching the
remaining groups. Each detection is also bounded by ``item_timeout``.
"""
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from shelfmatch.config import (
    BATCH_DEFAULT_CONCURRENCY,
    BATCH_GROUP_DELAY_S,
    BATCH_ITEM_TIMEOUT_S,
    BATCH_MAX_CONCURRENCY,
    validate_concurrency,
)
from shelfmatch.models.domain import Detection, ItemOutcome, Outcome, ReasonCode
from shelfmatch.models.progress_models import (
    BatchSummary,
    CompleteEvent,
    ItemResult,
    ProgressEvent,
)
from shelfmatch.services.errors import (
    ImageError,
    ModelError,
    ParseError,
    PersistenceError,
    SearchError,
)

logger = logging.getLogger("shelfmatch-batch")

Worker = Callable[[Detection], Awaitable[ItemOutcome]]
Emit = Callable[[object], Optional[Awaitable[None]]]

_ERROR_REASONS = (
    (SearchError, ReasonCode.SEARCH_FAILED),
    (ParseError, ReasonCode.PARSE_FAILED),
    (PersistenceError, ReasonCode.PERSISTENCE_FAILED),
    (ImageError, ReasonCode.IMAGE_FAILED),
    (ModelError, ReasonCode.MODEL_FAILED),
)


def failed_outcome(detection: Detection, reason_code: ReasonCode, reason: str) -> ItemOutcome:
    return ItemOutcome(
        detection_id=detection.id,
        detection_index=detection.detection_index,
        status=Outcome.FAILED,
        reason_code=reason_code,
        reason=reason,
        stage="error",
    )


def outcome_from_error(detection: Detection, exc: BaseException) -> ItemOutcome:
    for exc_type, code in _ERROR_REASONS:
        if isinstance(exc, exc_type):
            return failed_outcome(detection, code, str(exc))
    return failed_outcome(detection, ReasonCode.UNEXPECTED_ERROR, f"{type(exc).__name__}: {exc}")


def partition(items: Sequence, size: int) -> list[Sequence]:
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class BatchRun:
    """Running totals for one batch; ``processed`` only ever grows by one."""
    total: int
    concurrency: int
    group_delay: float
    processed: int = 0
    succeeded: int = 0
    no_match: int = 0
    needs_review: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    group_sizes: list[int] = field(default_factory=list)
    outcomes: list[ItemOutcome] = field(default_factory=list)

    def record(self, outcome: ItemOutcome):
        self.processed += 1
        self.outcomes.append(outcome)
        if outcome.status == Outcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome.status == Outcome.NO_MATCH:
            self.no_match += 1
        elif outcome.status == Outcome.NEEDS_REVIEW:
            self.needs_review += 1
        elif outcome.status == Outcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1

    def record_not_started(self, detections: Sequence[Detection]):
        """Detections left undispatched by a cancellation: reported as failed, not processed."""
        for detection in detections:
            self.outcomes.append(failed_outcome(
                detection, ReasonCode.CANCELLED, "Batch cancelled before this detection started"
            ))
            self.failed += 1

    @property
    def completed_ok(self) -> int:
        """Items that finished without error (selected, no match or awaiting review)."""
        return self.succeeded + self.no_match + self.needs_review

    def progress_event(self, outcome: ItemOutcome) -> ProgressEvent:
        return ProgressEvent(
            detection_index=outcome.detection_index,
            stage=outcome.stage,
            message=outcome.reason or outcome.status.value,
            processed=self.processed,
            total=self.total,
            succeeded=self.completed_ok,
            failed=self.failed,
            skipped=self.skipped,
        )

    def summary(self) -> BatchSummary:
        return BatchSummary(
            succeeded=self.succeeded,
            no_match=self.no_match,
            needs_review=self.needs_review,
            skipped=self.skipped,
            failed=self.failed,
            cancelled=self.cancelled,
            results=[
                ItemResult(
                    detection_id=o.detection_id,
                    detection_index=o.detection_index,
                    status=o.status.value,
                    reason_code=o.reason_code.value,
                    reason=o.reason,
                    selected_key=o.selected_key,
                )
                for o in self.outcomes
            ],
        )

    def complete_event(self) -> CompleteEvent:
        return CompleteEvent(processed=self.processed, total=self.total, summary=self.summary())


class BatchDriver:

    def __init__(
        self,
        concurrency: Optional[int] = None,
        group_delay: float = BATCH_GROUP_DELAY_S,
        item_timeout: Optional[float] = BATCH_ITEM_TIMEOUT_S,
        max_concurrency: int = BATCH_MAX_CONCURRENCY,
    ):
        self.concurrency = validate_concurrency(concurrency, BATCH_DEFAULT_CONCURRENCY, max_concurrency)
        self.group_delay = max(0.0, group_delay)
        self.item_timeout = item_timeout

    async def _emit(self, emit: Optional[Emit], event):
        if emit is None:
            return
        result = emit(event)
        if inspect.isawaitable(result):
            await result

    async def _run_item(self, worker: Worker, detection: Detection) -> ItemOutcome:
        try:
            if self.item_timeout:
                return await asyncio.wait_for(worker(detection), timeout=self.item_timeout)
            return await worker(detection)
        except asyncio.TimeoutError:
            logger.warning(f"{detection.label}: timed out after {self.item_timeout}s",
                           extra={"detection_id": detection.id})
            return failed_outcome(detection, ReasonCode.TIMEOUT,
                                  f"Timed out after {self.item_timeout:.0f}s")
        except Exception as e:
            if isinstance(e, (SearchError, ParseError, PersistenceError, ImageError, ModelError)):
                logger.warning(f"{detection.label}: {type(e).__name__}: {e}",
                               extra={"detection_id": detection.id})
            else:
                logger.exception(f"{detection.label}: unexpected error",
                                 extra={"detection_id": detection.id})
            return outcome_from_error(detection, e)

    async def _pause(self, cancel: asyncio.Event) -> bool:
        """Sleep between groups; True when cancellation arrived during the pause."""
        if self.group_delay <= 0:
            return cancel.is_set()
        try:
            await asyncio.wait_for(cancel.wait(), timeout=self.group_delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _finish(self, run: BatchRun, outcome: ItemOutcome, emit: Optional[Emit]):
        run.record(outcome)
        await self._emit(emit, run.progress_event(outcome))

    async def run(
        self,
        detections: Sequence[Detection],
        worker: Worker,
        emit: Optional[Emit] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> BatchRun:
        cancel = cancel or asyncio.Event()
        run = BatchRun(total=len(detections), concurrency=self.concurrency, group_delay=self.group_delay)
        start = time.perf_counter()
        logger.info(f"Batch start: {run.total} detections, concurrency {self.concurrency}, "
                    f"{self.group_delay:.1f}s between groups")

        groups = partition(detections, self.concurrency)
        for group_no, group in enumerate(groups):
            if cancel.is_set() or (group_no > 0 and await self._pause(cancel)):
                run.cancelled = True
                run.record_not_started([d for g in groups[group_no:] for d in g])
                break
            run.group_sizes.append(len(group))
            await self._run_group(run, group, worker, emit, cancel)
            if run.cancelled:
                run.record_not_started([d for g in groups[group_no + 1:] for d in g])
                break

        logger.info(
            f"Batch finished in {time.perf_counter() - start:.1f}s: {run.processed}/{run.total} processed, "
            f"{run.succeeded} selected, {run.no_match} no match, {run.needs_review} review, "
            f"{run.skipped} skipped, {run.failed} failed" + (" (cancelled)" if run.cancelled else "")
        )
        await self._emit(emit, run.complete_event())
        return run

    async def _run_group(
        self,
        run: BatchRun,
        group: Sequence[Detection],
        worker: Worker,
        emit: Optional[Emit],
        cancel: asyncio.Event,
    ):
        tasks = {asyncio.create_task(self._run_item(worker, d)): d for d in group}
        waiter = asyncio.create_task(cancel.wait())
        pending = set(tasks)
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {waiter}, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is waiter:
                        continue
                    pending.discard(task)
                    await self._finish(run, task.result(), emit)
                if waiter in done and pending:
                    run.cancelled = True
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    for task in pending:
                        detection = tasks[task]
                        if task.cancelled():
                            outcome = failed_outcome(detection, ReasonCode.CANCELLED,
                                                     "Cancelled before completion")
                        else:
                            outcome = task.result()
                        await self._finish(run, outcome, emit)
                    pending = set()
        finally:
            waiter.cancel()
            for task in tasks:
                if not task.done():
                    task.cancel()
