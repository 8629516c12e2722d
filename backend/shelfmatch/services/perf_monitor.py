"""Performance monitoring for the resolution pipeline."""
import time
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

logger = logging.getLogger("shelfmatch-api.perf")


class PerformanceTracker:
    """
    Thread-safe in-memory tracker for funnel metrics.

    Tracks:
    - Detections finished, by outcome
    - Average per-detection duration
    - Average duration per funnel stage
    - Error count broken down by stage
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._detections_processed: int = 0
        self._total_duration_ms: float = 0.0
        self._outcomes: Dict[str, int] = {}
        self._stage_durations: Dict[str, list] = {}   # stage -> [duration_ms, ...]
        self._error_counts: Dict[str, int] = {}        # stage -> count
        self._slowest_stage: Optional[str] = None
        self._slowest_stage_ms: float = 0.0

    def record_detection_complete(self, duration_ms: float, outcome: str) -> None:
        with self._lock:
            self._detections_processed += 1
            self._total_duration_ms += duration_ms
            self._outcomes[outcome] = self._outcomes.get(outcome, 0) + 1

    def record_stage_duration(self, stage: str, duration_ms: float) -> None:
        with self._lock:
            self._stage_durations.setdefault(stage, []).append(duration_ms)
            if duration_ms > self._slowest_stage_ms:
                self._slowest_stage_ms = duration_ms
                self._slowest_stage = stage

    def record_stage_error(self, stage: str) -> None:
        with self._lock:
            self._error_counts[stage] = self._error_counts.get(stage, 0) + 1

    @contextmanager
    def track_stage(self, stage: str):
        """Time a block as one stage; exceptions count as a stage error and propagate."""
        start = time.perf_counter()
        try:
            yield
        except Exception:
            self.record_stage_error(stage)
            raise
        finally:
            self.record_stage_duration(stage, (time.perf_counter() - start) * 1000)

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            avg = (
                round(self._total_duration_ms / self._detections_processed, 2)
                if self._detections_processed > 0
                else 0.0
            )
            stage_avgs = {
                stage: round(sum(d) / len(d), 2) if d else 0.0
                for stage, d in self._stage_durations.items()
            }
            return {
                "detections_processed": self._detections_processed,
                "avg_detection_duration_ms": avg,
                "outcomes": dict(self._outcomes),
                "slowest_stage": self._slowest_stage,
                "slowest_stage_ms": round(self._slowest_stage_ms, 2),
                "error_count": sum(self._error_counts.values()),
                "error_count_by_stage": dict(self._error_counts),
                "stage_avg_durations_ms": stage_avgs,
            }

    def reset(self) -> None:
        """Reset all counters (useful in tests)."""
        with self._lock:
            self._detections_processed = 0
            self._total_duration_ms = 0.0
            self._outcomes.clear()
            self._stage_durations.clear()
            self._error_counts.clear()
            self._slowest_stage = None
            self._slowest_stage_ms = 0.0


# Module-level singleton; import this instance everywhere else.
tracker = PerformanceTracker()
