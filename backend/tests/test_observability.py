"""
test_observability.py — PerformanceTracker metrics and the JSON log formatter.
"""

import json
import logging

import pytest

from shelfmatch.services.logging_config import JSONFormatter
from shelfmatch.services.perf_monitor import PerformanceTracker


class TestPerformanceTracker:

    def test_detection_outcomes_and_average(self):
        tracker = PerformanceTracker()
        tracker.record_detection_complete(100.0, "succeeded")
        tracker.record_detection_complete(300.0, "no_match")
        tracker.record_detection_complete(200.0, "succeeded")

        metrics = tracker.get_metrics()
        assert metrics["detections_processed"] == 3
        assert metrics["avg_detection_duration_ms"] == 200.0
        assert metrics["outcomes"] == {"succeeded": 2, "no_match": 1}

    def test_track_stage_records_duration_and_errors(self):
        tracker = PerformanceTracker()
        with tracker.track_stage("search"):
            pass
        with pytest.raises(RuntimeError):
            with tracker.track_stage("visual_compare"):
                raise RuntimeError("model down")

        metrics = tracker.get_metrics()
        assert set(metrics["stage_avg_durations_ms"]) == {"search", "visual_compare"}
        assert metrics["error_count"] == 1
        assert metrics["error_count_by_stage"] == {"visual_compare": 1}

    def test_reset(self):
        tracker = PerformanceTracker()
        tracker.record_detection_complete(50.0, "failed")
        tracker.reset()
        metrics = tracker.get_metrics()
        assert metrics["detections_processed"] == 0
        assert metrics["slowest_stage"] is None


class TestJSONFormatter:

    def test_structured_extras_are_copied(self):
        record = logging.LogRecord("shelfmatch-funnel", logging.INFO, __file__, 10,
                                   "Tide: auto_selected", None, None)
        record.detection_id = "det-1"
        record.stage = "auto_selected"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Tide: auto_selected"
        assert entry["level"] == "INFO"
        assert entry["detection_id"] == "det-1"
        assert entry["stage"] == "auto_selected"
        assert "project_id" not in entry
