"""Shared fakes for the tracking library, its factory and frame sources."""

import math
from concurrent.futures import Future
from typing import List, Optional

import numpy as np
import pytest

from artrack.tracking_session import (
    CalibrationData,
    DetectionEvent,
    DetectionSink,
    TrackingLibrary,
    TrackingLibraryFactory,
)
from artrack.video_pipeline import FrameSource, VideoFrame


def make_frame(width: int = 640, height: int = 480) -> VideoFrame:
    return VideoFrame.from_image(np.zeros((height, width, 3), dtype=np.uint8))


def projection_for_fov(fovy_degrees: float) -> np.ndarray:
    p = np.eye(4)
    p[1, 1] = 1.0 / math.tan(math.radians(fovy_degrees) / 2.0)
    return p


class FakeCalibration(CalibrationData):
    def __init__(self):
        self.disposed = False

    def dispose(self):
        self.disposed = True


class FakeLibrary(TrackingLibrary):
    """Records every call; returns queued detections from ``process``."""

    def __init__(self, width: int, height: int, calibration, fovy: float = 60.0,
                 failing_setter: Optional[str] = None):
        self.width = width
        self.height = height
        self.calibration = calibration
        self.calls: List[tuple] = []
        self.settings = {}
        self.detections: List[DetectionEvent] = []
        self.process_count = 0
        self.fail_on_process = False
        self.disposed = False
        self.projection = projection_for_fov(fovy)
        self.marker_futures: List[Future] = []
        self.failing_setter = failing_setter

    def _record(self, name, value):
        if name == self.failing_setter:
            raise RuntimeError(f"native {name} failed")
        self.calls.append((name, value))
        self.settings[name] = value

    def process(self, frame):
        self.process_count += 1
        if self.fail_on_process:
            raise RuntimeError("native detection crashed")
        return list(self.detections)

    def get_camera_matrix(self):
        return self.projection

    def load_marker(self, url):
        future = Future()
        self.marker_futures.append(future)
        self.calls.append(("load_marker", url))
        return future

    def set_threshold(self, value):
        self._record("set_threshold", value)

    def set_threshold_mode(self, mode):
        self._record("set_threshold_mode", mode)

    def set_pattern_detection_mode(self, mode):
        self._record("set_pattern_detection_mode", mode)

    def set_image_proc_mode(self, mode):
        self._record("set_image_proc_mode", mode)

    def set_labeling_mode(self, mode):
        self._record("set_labeling_mode", mode)

    def set_matrix_code_type(self, code_type):
        self._record("set_matrix_code_type", code_type)

    def set_debug_mode(self, enabled):
        self._record("set_debug_mode", enabled)

    def set_projection_near_plane(self, value):
        self._record("set_projection_near_plane", value)

    def set_projection_far_plane(self, value):
        self._record("set_projection_far_plane", value)

    def dispose(self):
        self.disposed = True


class FakeFactory(TrackingLibraryFactory):
    """
    Calibration completes immediately unless ``deferred``; then the test
    calls ``complete()`` or ``fail()``.
    """

    def __init__(self, deferred: bool = False, calibration_error: Optional[Exception] = None,
                 create_error: Optional[Exception] = None, failing_setter: Optional[str] = None):
        self.deferred = deferred
        self.failing_setter = failing_setter
        self.calibration_error = calibration_error
        self.create_error = create_error
        self.calibration_urls: List[str] = []
        self.calibrations: List[FakeCalibration] = []
        self.created: List[FakeLibrary] = []
        self.pending: Optional[Future] = None

    def load_calibration(self, url):
        self.calibration_urls.append(url)
        future = Future()
        calibration = FakeCalibration()
        self.calibrations.append(calibration)
        if self.deferred:
            self.pending = future
            self._pending_calibration = calibration
        elif self.calibration_error is not None:
            future.set_exception(self.calibration_error)
        else:
            future.set_result(calibration)
        return future

    def complete(self):
        self.pending.set_result(self._pending_calibration)

    def fail(self, error: Exception):
        self.pending.set_exception(error)

    def create(self, width, height, calibration):
        if self.create_error is not None:
            raise self.create_error
        library = FakeLibrary(width, height, calibration, failing_setter=self.failing_setter)
        self.created.append(library)
        return library

    @property
    def library(self) -> FakeLibrary:
        return self.created[-1]


class RecordingSink(DetectionSink):
    def __init__(self):
        self.handles = []
        self.events: List[DetectionEvent] = []

    def on_tracking_initialized(self, handle):
        self.handles.append(handle)

    def on_marker_detected(self, event):
        self.events.append(event)


class FakeFrameSource(FrameSource):
    def __init__(self, width: int = 640, height: int = 480, start_result=True):
        super().__init__()
        self.width = width
        self.height = height
        self.start_result = start_result
        self.started = False
        self.stopped = False

    def start(self):
        if isinstance(self.start_result, Exception):
            raise self.start_result
        self.started = self.start_result
        return self.start_result

    def stop(self):
        self.stopped = True

    @property
    def latest_frame(self):
        if not self.started:
            return None
        return make_frame(self.width, self.height)

    @property
    def frame_size(self):
        return (self.width, self.height)

    def resize(self, width: int, height: int):
        self.width, self.height = width, height
        self._notify_resize(width, height)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def factory():
    return FakeFactory()


@pytest.fixture
def clock():
    return FakeClock()
