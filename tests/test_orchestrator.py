import logging

import numpy as np
import pytest

from conftest import MANUAL_INTERVAL_MS, blank_image, unit_vector, wait_until
from live_vision.exceptions import ModelUnavailable
from live_vision.inference_port import InferencePort
from live_vision.orchestrator import DetectionOrchestrator, PipelineKind


@pytest.fixture
def orchestrator(capture, object_port, face_port, gallery):
    instance = DetectionOrchestrator(
        capture=capture,
        object_port=object_port,
        face_port=face_port,
        gallery=gallery,
        interval_ms=MANUAL_INTERVAL_MS,
    )
    yield instance
    instance.close()


def _tick(pipeline):
    assert pipeline.tick() is True
    assert pipeline.wait_idle(2.0)


def test_detection_starts_automatically_with_stream(capture, orchestrator):
    assert not orchestrator.is_detecting

    capture.start()

    assert orchestrator.object_pipeline.is_polling
    assert orchestrator.face_pipeline.is_polling


def test_manual_stop_holds_until_next_session(capture, orchestrator):
    capture.start(0)
    orchestrator.stop_detection()

    capture.switch(1)
    assert not orchestrator.is_detecting

    capture.stop()
    capture.start(0)
    assert orchestrator.is_detecting


def test_auto_start_waits_for_models(capture, gallery, object_port, face_model):
    face_port = InferencePort("face", lambda: face_model)
    orchestrator = DetectionOrchestrator(capture, object_port, face_port, gallery, interval_ms=MANUAL_INTERVAL_MS)
    try:
        capture.start()
        assert not orchestrator.is_detecting
        with pytest.raises(ModelUnavailable):
            orchestrator.start_detection()
        assert not orchestrator.object_pipeline.is_polling

        face_port.load(background=False)
        assert orchestrator.is_detecting
    finally:
        orchestrator.close()


def test_failed_model_blocks_detection(capture, gallery, object_port):
    def broken():
        raise RuntimeError("weights missing")

    face_port = InferencePort("face", broken)
    face_port.load(background=False)
    orchestrator = DetectionOrchestrator(capture, object_port, face_port, gallery, interval_ms=MANUAL_INTERVAL_MS)
    try:
        capture.start()
        assert face_port.status == "error"
        assert not orchestrator.is_detecting
        with pytest.raises(ModelUnavailable):
            orchestrator.start_pipeline(PipelineKind.FACE)
    finally:
        orchestrator.close()


def test_face_results_are_labelled_from_gallery(capture, orchestrator, gallery, face_model):
    face_model.embeddings = [unit_vector(8, 0)]
    gallery.enroll("Alice", blank_image())
    capture.start()

    face_model.embeddings = [unit_vector(8, 0), unit_vector(8, 1)]
    _tick(orchestrator.face_pipeline)
    _tick(orchestrator.object_pipeline)

    snapshot = orchestrator.current_detections()
    assert [face.name for face in snapshot.faces] == ["Alice", "unknown"]
    assert snapshot.faces[0].confidence == pytest.approx(1.0)
    assert [item.label for item in snapshot.objects] == ["person"]
    assert snapshot.known_face_count == 1
    assert snapshot.total_detections == 2
    assert snapshot.face_state == "polling"


def test_gallery_change_applies_to_next_tick(capture, orchestrator, gallery, face_model):
    capture.start()
    face_model.embeddings = [unit_vector(8, 2)]
    _tick(orchestrator.face_pipeline)
    assert orchestrator.current_detections().faces[0].name == "unknown"

    gallery.enroll("Bob", blank_image())
    _tick(orchestrator.face_pipeline)
    assert orchestrator.current_detections().faces[0].name == "Bob"


def test_stopping_stream_stops_and_clears_pipelines(capture, orchestrator):
    capture.start()
    _tick(orchestrator.object_pipeline)
    assert orchestrator.current_detections().objects

    capture.stop()

    snapshot = orchestrator.current_detections()
    assert not orchestrator.is_detecting
    assert snapshot.objects == ()
    assert snapshot.faces == ()
    assert snapshot.object_state == "idle"


def test_switching_device_keeps_pipelines_polling(capture, orchestrator):
    capture.start(0)
    capture.switch(1)

    assert orchestrator.is_detecting
    _tick(orchestrator.object_pipeline)
    assert orchestrator.current_detections().objects


def test_camera_disconnect_stops_detection(cameras, capture, orchestrator):
    capture.start(0)
    cameras.current.fail_reads = True

    for _ in range(capture.read_fail_threshold):
        _tick(orchestrator.object_pipeline)

    assert wait_until(lambda: not orchestrator.is_detecting)
    assert not capture.is_streaming


def test_pipelines_run_independently(capture, orchestrator, object_model, face_model):
    capture.start()
    object_model.hold()
    orchestrator.object_pipeline.tick()
    assert object_model.entered.wait(2.0)

    face_model.embeddings = [unit_vector(8, 0)]
    _tick(orchestrator.face_pipeline)
    assert len(orchestrator.current_detections().faces) == 1

    object_model.release()
    assert orchestrator.object_pipeline.wait_idle(2.0)


def test_listeners_receive_snapshots(capture, orchestrator):
    received = []
    orchestrator.add_listener(received.append)
    capture.start()

    _tick(orchestrator.object_pipeline)

    assert received
    assert received[-1].objects[0].label == "person"


def test_switch_during_inflight_call_never_overlaps(capture, orchestrator, object_model):
    capture.start(0)
    pipeline = orchestrator.object_pipeline
    object_model.hold()
    assert pipeline.tick() is True
    assert object_model.entered.wait(2.0)

    assert capture.switch(1) is True

    assert pipeline.tick() is False
    object_model.release()
    assert pipeline.wait_idle(2.0)
    assert object_model.max_active == 1
    assert pipeline.is_polling
    _tick(pipeline)
    assert object_model.max_active == 1
    assert orchestrator.current_detections().objects


def test_model_ready_after_close_does_not_start_detection(capture, gallery, object_port, face_model, caplog):
    face_port = InferencePort("face", lambda: face_model)
    orchestrator = DetectionOrchestrator(capture, object_port, face_port, gallery, interval_ms=MANUAL_INTERVAL_MS)
    capture.start()
    orchestrator.close()

    with caplog.at_level(logging.ERROR):
        face_port.load(background=False)

    assert face_port.is_ready
    assert not orchestrator.is_detecting
    assert [record for record in caplog.records if record.levelno >= logging.ERROR] == []


def test_gallery_dimension_mismatch_is_reported_once(capture, orchestrator, gallery, face_model, caplog):
    face_model.embeddings = [np.ones(4, dtype=np.float32)]
    gallery.enroll("Alice", blank_image())
    capture.start()
    face_model.embeddings = [unit_vector(8, 0)]

    with caplog.at_level(logging.ERROR):
        _tick(orchestrator.face_pipeline)
        _tick(orchestrator.face_pipeline)

    status = orchestrator.face_pipeline.status()
    assert "re-enroll" in status.last_error
    assert status.consecutive_failures == 2
    mismatch_logs = [
        record for record in caplog.records if record.levelno >= logging.ERROR and "re-enroll" in record.getMessage()
    ]
    assert len(mismatch_logs) == 1
