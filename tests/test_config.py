import json
import logging

from live_vision.config import LiveVisionSettings
from live_vision.inference_port import InferencePort
from live_vision.logger import JsonFormatter
from live_vision.metrics import PerformanceTracker


def test_settings_from_env_parse_and_clamp(monkeypatch, tmp_path):
    monkeypatch.setenv("LIVE_VISION_POLL_INTERVAL_MS", "1")
    monkeypatch.setenv("LIVE_VISION_MATCH_THRESHOLD", "0.45")
    monkeypatch.setenv("LIVE_VISION_MAX_CONSECUTIVE_FAILURES", "not-a-number")
    monkeypatch.setenv("LIVE_VISION_AUTO_START", "off")
    monkeypatch.setenv("LIVE_VISION_GALLERY_PATH", str(tmp_path / "faces.db"))

    settings = LiveVisionSettings.from_env()

    assert settings.polling_interval_ms == 10
    assert settings.match_threshold == 0.45
    assert settings.max_consecutive_failures == 25
    assert settings.auto_start_detection is False
    assert settings.gallery_path == tmp_path / "faces.db"


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("live_vision.test", logging.INFO, __file__, 1, "tick %s", ("ok",), None)
    record.pipeline = "face"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "tick ok"
    assert payload["level"] == "INFO"
    assert payload["pipeline"] == "face"


def test_performance_tracker_smooths_latency():
    tracker = PerformanceTracker(alpha=0.5)
    tracker.update("face", 10.0)
    tracker.update("face", 20.0)
    tracker.record_failure("face")

    stats = tracker.snapshot()["face"]
    assert stats["latency_ms"] == 15.0
    assert stats["calls"] == 2.0
    assert stats["failures"] == 1.0


def test_inference_port_loads_in_background():
    port = InferencePort("object", lambda: "model")
    assert port.status == "pending"

    port.load()
    assert port.ready.result(timeout=2.0) == "model"
    assert port.is_ready
    assert port.get() == "model"
