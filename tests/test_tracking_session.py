"""Tests for the tracking session lifecycle, configuration and dispatch."""

import logging

import numpy as np
import pytest

from artrack.errors import CaptureError, ConfigurationError, InitializationError
from artrack.layers import LayerAllocator
from artrack.marker_binding import MarkerBinding, MarkerConfig, ShadowMaterialRegistry
from artrack.pose_transform import Orientation
from artrack.scene_graph import CameraComponent, SceneGraph
from artrack.tracking_session import (
    DetectionEvent,
    DetectionMode,
    MarkerType,
    ProcessingMode,
    RenderSurface,
    SessionConfig,
    SessionState,
    ThresholdMode,
    TrackerResolution,
    TrackingSession,
    clamp_threshold,
)

from conftest import FakeFactory, FakeFrameSource, RecordingSink, make_frame, projection_for_fov


def _started(factory, width=640, height=480, **kwargs):
    session = TrackingSession(factory, **kwargs)
    assert session.start("camera_para.dat", width, height)
    return session


# --- Configuration -----------------------------------------------------------

def test_default_config():
    config = SessionConfig()
    assert config.threshold == 100
    assert config.threshold_mode == ThresholdMode.MANUAL
    assert config.detection_mode == DetectionMode.COLOR_TEMPLATE
    assert config.tracker_resolution == TrackerResolution.FULL
    assert not config.track_alternate_frames


def test_threshold_clamped_before_start_then_applied(factory):
    session = TrackingSession(factory)
    assert session.set_threshold(300)
    assert session.config.threshold == 255

    session.start("camera_para.dat", 640, 480)
    assert factory.library.settings["set_threshold"] == 255


def test_clamp_threshold():
    assert clamp_threshold(-5) == 0
    assert clamp_threshold(12.7) == 12
    assert clamp_threshold(255.9) == 255
    for bad in (True, "100", None, float("nan")):
        with pytest.raises(ConfigurationError):
            clamp_threshold(bad)


def test_config_cached_while_awaiting_calibration():
    factory = FakeFactory(deferred=True)
    sink = RecordingSink()
    session = TrackingSession(factory)
    session.subscribe(sink)

    assert session.start("camera_para.dat", 640, 480)
    assert session.state == SessionState.AWAITING_CALIBRATION
    assert session.set_threshold(42)
    assert session.set_processing_mode(ProcessingMode.FIELD)
    assert factory.created == []

    factory.complete()
    assert session.poll() == SessionState.READY
    library = factory.library
    assert library.settings["set_threshold"] == 42
    assert library.settings["set_image_proc_mode"] == ProcessingMode.FIELD
    assert sink.handles == [library]

    session.poll()
    assert sink.handles == [library]


def test_config_replayed_in_order(factory):
    _started(factory)
    names = [name for name, _ in factory.library.calls]
    assert names == [
        "set_projection_near_plane",
        "set_projection_far_plane",
        "set_debug_mode",
        "set_image_proc_mode",
        "set_labeling_mode",
        "set_matrix_code_type",
        "set_pattern_detection_mode",
        "set_threshold",
        "set_threshold_mode",
    ]


def test_near_far_planes_from_camera(factory):
    camera = CameraComponent(near_clip=0.05, far_clip=50.0)
    _started(factory, camera=camera)
    assert factory.library.settings["set_projection_near_plane"] == 0.05
    assert factory.library.settings["set_projection_far_plane"] == 50.0


def test_invalid_threshold_mode_keeps_previous(factory, caplog):
    session = _started(factory)
    assert session.set_threshold_mode(ThresholdMode.AUTO_OTSU)
    library = factory.library

    with caplog.at_level(logging.ERROR, logger="TrackingSession"):
        assert not session.set_threshold_mode(99)

    assert session.config.threshold_mode == ThresholdMode.AUTO_OTSU
    assert library.settings["set_threshold_mode"] == ThresholdMode.AUTO_OTSU
    assert any("invalid threshold mode" in r.getMessage() for r in caplog.records)


def test_invalid_value_before_start_is_not_cached(factory):
    session = TrackingSession(factory)
    assert not session.set_detection_mode("hologram")
    assert not session.set_track_alternate_frames("yes")
    assert session.config.detection_mode == DetectionMode.COLOR_TEMPLATE
    assert not session.config.track_alternate_frames


def test_enum_options_accept_names_and_values(factory):
    session = TrackingSession(factory)
    assert session.set_detection_mode("matrix")
    assert session.config.detection_mode == DetectionMode.MATRIX
    assert session.set_threshold_mode(3)
    assert session.config.threshold_mode == ThresholdMode.AUTO_ADAPTIVE


def test_unknown_option_rejected(factory):
    session = TrackingSession(factory)
    assert not session.set_config("bogus", 1)


def test_session_config_validates_on_construction():
    with pytest.raises(ConfigurationError):
        SessionConfig(threshold_mode=42)
    assert SessionConfig(threshold=999).threshold == 255


# --- Lifecycle ---------------------------------------------------------------

def test_start_without_calibration_fails(factory):
    session = TrackingSession(factory)
    assert not session.start(None, 640, 480)
    assert session.state == SessionState.UNINITIALIZED
    assert isinstance(session.last_error, InitializationError)
    assert factory.calibration_urls == []


def test_calibration_failure_reported():
    factory = FakeFactory(calibration_error=IOError("404"))
    sink = RecordingSink()
    session = TrackingSession(factory)
    session.subscribe(sink)

    assert not session.start("missing.dat", 640, 480)

    assert session.state == SessionState.UNINITIALIZED
    assert isinstance(session.last_error, InitializationError)
    assert not session.is_tracking
    assert sink.handles == []
    assert not session.process_frame(make_frame())


def test_deferred_calibration_failure():
    factory = FakeFactory(deferred=True)
    session = TrackingSession(factory)
    session.start("camera_para.dat", 640, 480)
    factory.fail(IOError("corrupt"))

    assert session.poll() == SessionState.UNINITIALIZED
    assert isinstance(session.last_error, InitializationError)


def test_create_failure_releases_calibration():
    factory = FakeFactory(create_error=RuntimeError("bad size"))
    session = TrackingSession(factory)
    session.start("camera_para.dat", 640, 480)

    assert session.state == SessionState.UNINITIALIZED
    assert factory.calibrations[0].disposed


def test_tracker_resolution_scales_handle(factory):
    session = TrackingSession(factory, config=SessionConfig(tracker_resolution=TrackerResolution.HALF))
    session.start("camera_para.dat", 640, 480)
    assert (factory.library.width, factory.library.height) == (320, 240)


def test_start_twice_refused(factory):
    session = _started(factory)
    assert not session.start("camera_para.dat", 640, 480)
    assert len(factory.created) == 1


def test_stop_is_idempotent(factory):
    session = _started(factory)
    library = factory.library

    session.stop()
    session.stop()

    assert session.state == SessionState.STOPPED
    assert library.disposed
    assert factory.calibrations[0].disposed
    assert not session.process_frame(make_frame())


def test_stop_cancels_pending_calibration():
    factory = FakeFactory(deferred=True)
    session = TrackingSession(factory)
    session.start("camera_para.dat", 640, 480)
    session.stop()

    assert factory.pending.cancelled()
    assert session.state == SessionState.STOPPED
    assert factory.created == []


def test_restart_after_stop(factory):
    session = _started(factory)
    session.stop()
    assert session.start("camera_para.dat", 640, 480)
    assert len(factory.created) == 2
    assert session.is_tracking


# --- Frames ------------------------------------------------------------------

def test_process_before_start_is_noop(factory):
    session = TrackingSession(factory)
    assert not session.process_frame(make_frame())


def test_detections_dispatched_with_orientation(factory):
    sink = RecordingSink()
    session = _started(factory, 480, 640)
    session.subscribe(sink)
    factory.library.detections = [
        DetectionEvent(MarkerType.BARCODE, 3, np.eye(4)),
        DetectionEvent(MarkerType.PATTERN, 0, np.eye(4)),
    ]

    assert session.process_frame(make_frame(480, 640))

    assert [(e.marker_type, e.marker_id) for e in sink.events] == [
        (MarkerType.BARCODE, 3),
        (MarkerType.PATTERN, 0),
    ]
    assert all(e.orientation == Orientation.PORTRAIT for e in sink.events)
    assert session.state == SessionState.IDLE
    assert session.frames_processed == 1


def test_alternate_frames(factory):
    session = _started(factory)
    session.set_track_alternate_frames(True)

    results = [session.process_frame(make_frame()) for _ in range(4)]

    assert results == [True, False, True, False]
    assert factory.library.process_count == 2


def test_library_failure_is_terminal_until_stop(factory):
    session = _started(factory)
    factory.library.fail_on_process = True

    assert not session.process_frame(make_frame())
    assert session.state == SessionState.FAILED
    assert session.last_error is not None

    factory.library.fail_on_process = False
    assert not session.process_frame(make_frame())
    assert not session.start("camera_para.dat", 640, 480)

    session.stop()
    assert session.start("camera_para.dat", 640, 480)


# --- Resize ------------------------------------------------------------------

def test_fov_limited_by_wide_surface(factory):
    camera = CameraComponent()
    session = _started(factory, camera=camera, surface=RenderSurface(1920, 1080))
    assert camera.fov == pytest.approx(45.0)

    session.on_resize(render_width=800, render_height=800)
    assert camera.fov == pytest.approx(60.0)


def test_fov_portrait(factory):
    camera = CameraComponent()
    session = _started(factory, 480, 640, camera=camera, surface=RenderSurface(1000, 1000))
    assert session.orientation == Orientation.PORTRAIT
    assert camera.fov == pytest.approx(45.0)


def test_fov_uses_library_projection(factory):
    camera = CameraComponent()
    session = _started(factory, camera=camera, surface=RenderSurface(640, 480))
    factory.library.projection = projection_for_fov(40.0)
    session.on_resize()
    assert camera.fov == pytest.approx(40.0)


def test_resize_before_start_updates_orientation_only(factory):
    camera = CameraComponent()
    session = TrackingSession(factory, camera=camera)
    session.on_resize(video_width=480, video_height=640)
    assert session.orientation == Orientation.PORTRAIT
    assert camera.fov == 45.0


# --- Frame sources -----------------------------------------------------------

def test_enter_ar_capture_failure():
    factory = FakeFactory()
    session = TrackingSession(factory)
    errors, successes = [], []

    ok = session.enter_ar(FakeFrameSource(start_result=False), "camera_para.dat",
                          on_success=lambda: successes.append(True), on_error=errors.append)

    assert not ok
    assert successes == []
    assert len(errors) == 1 and isinstance(errors[0], CaptureError)
    assert session.state == SessionState.UNINITIALIZED


def test_enter_ar_source_exception():
    session = TrackingSession(FakeFactory())
    errors = []
    source = FakeFrameSource(start_result=PermissionError("denied"))
    assert not session.enter_ar(source, "camera_para.dat", on_error=errors.append)
    assert "denied" in str(errors[0])


def test_enter_ar_then_update(factory):
    sink = RecordingSink()
    session = TrackingSession(factory)
    session.subscribe(sink)
    source = FakeFrameSource(640, 480)
    successes = []

    assert session.enter_ar(source, "camera_para.dat", on_success=lambda: successes.append(True))
    assert successes == [True]
    assert session.video_size == (640, 480)

    factory.library.detections = [DetectionEvent(MarkerType.BARCODE, 1, np.eye(4))]
    assert session.update()
    assert len(sink.events) == 1

    source.resize(480, 640)
    assert session.orientation == Orientation.PORTRAIT

    session.exit_ar()
    assert source.stopped
    assert factory.library.disposed


# --- Subscribers -------------------------------------------------------------

def test_late_subscriber_told_about_handle(factory):
    session = _started(factory)
    sink = RecordingSink()
    session.subscribe(sink)
    session.subscribe(sink)
    assert sink.handles == [factory.library]
    assert session.subscriber_count == 1


def test_unsubscribed_sink_gets_nothing(factory):
    session = _started(factory)
    sink = RecordingSink()
    session.subscribe(sink)
    assert session.unsubscribe(sink)
    assert not session.unsubscribe(sink)

    factory.library.detections = [DetectionEvent(MarkerType.BARCODE, 1, np.eye(4))]
    session.process_frame(make_frame())
    assert sink.events == []


# --- Failure isolation -------------------------------------------------------

class RaisingSink(RecordingSink):
    def on_tracking_initialized(self, handle):
        raise RuntimeError("sink setup failed")

    def on_marker_detected(self, event):
        raise ValueError("bad pose")


def test_setup_failure_after_create_disposes_handle():
    factory = FakeFactory(failing_setter="set_threshold_mode")
    session = TrackingSession(factory)

    assert not session.start("camera_para.dat", 640, 480)

    assert session.state == SessionState.UNINITIALIZED
    assert isinstance(session.last_error, InitializationError)
    assert not session.is_tracking
    assert factory.library.disposed
    assert factory.calibrations[0].disposed

    factory.failing_setter = None
    assert session.start("camera_para.dat", 640, 480)
    assert session.is_tracking


def test_failing_sink_does_not_stop_delivery(factory):
    bad, good = RaisingSink(), RecordingSink()
    session = TrackingSession(factory)
    session.subscribe(bad)
    session.subscribe(good)

    assert session.start("camera_para.dat", 640, 480)
    assert session.state == SessionState.READY
    assert good.handles == [factory.library]

    factory.library.detections = [DetectionEvent(MarkerType.BARCODE, 1, np.zeros((3, 3)))]
    assert session.process_frame(make_frame())

    assert len(good.events) == 1
    assert isinstance(session.last_error, ValueError)
    assert session.state == SessionState.IDLE


def test_malformed_pose_reaches_binding_without_escaping(factory):
    graph = SceneGraph()
    marker = graph.create_node("Marker", parent=graph.root)
    binding = MarkerBinding(graph, marker, LayerAllocator(), ShadowMaterialRegistry(),
                            MarkerConfig(matrix_id=1))
    session = TrackingSession(factory)
    binding.attach(session)
    session.start("camera_para.dat", 640, 480)

    factory.library.detections = [DetectionEvent(MarkerType.BARCODE, 1, np.zeros((3, 3)))]
    assert session.process_frame(make_frame())
    assert not binding.active
    assert isinstance(session.last_error, ValueError)


def test_degenerate_projection_keeps_fov(factory, caplog):
    camera = CameraComponent(fov=50.0)
    session = _started(factory, camera=camera, surface=RenderSurface(640, 480))
    fov = camera.fov
    factory.library.projection = np.zeros((4, 4))

    session.on_resize(render_width=800, render_height=600)

    assert camera.fov == fov
    assert any("Degenerate projection" in r.getMessage() for r in caplog.records)
