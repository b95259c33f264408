"""
ARTrack Tracking Session - Camera Feed + Tracking Library Lifecycle

One session owns one tracking-library handle. It loads calibration,
creates the handle, forwards configuration, pushes one video frame per
tick through the library and fans the resulting detections out to every
subscribed marker binding.

State Machine:
┌───────────────┐ start()  ┌──────────────────────┐ calibration ┌───────┐
│ UNINITIALIZED │ ───────→ │ AWAITING_CALIBRATION │ ──────────→ │ READY │
└───────────────┘          └──────────────────────┘   loaded    └───┬───┘
        ↑                        │ load/create failed               │
        └────────────────────────┘                     process_frame()
                                                                    ↓
┌─────────┐  stop()   ┌────────┐  native failure   ┌────────────────────┐
│ STOPPED │ ←──────── │ FAILED │ ←──────────────── │ PROCESSING ↔ IDLE  │
└─────────┘           └────────┘                   └────────────────────┘
     ↑                                                      │ stop()
     └──────────────────────────────────────────────────────┘

Everything runs on the caller's tick thread. Calibration arrives as a
``concurrent.futures.Future`` that is only polled from ``poll()`` /
``update()``, so no callback ever races the render loop.

Configuration set before the handle exists is cached in ``SessionConfig``
and replayed verbatim when the handle is created.
"""

import math
import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Optional, List, Callable, Any

import numpy as np

from .errors import ConfigurationError, InitializationError, CaptureError
from .pose_transform import Orientation
from .scene_graph import CameraComponent
from .video_pipeline import FrameSource, VideoFrame


# =============================================================================
# Option values
# =============================================================================

class ThresholdMode(IntEnum):
    """How the labeling threshold is chosen each frame."""
    MANUAL = 0
    AUTO_MEDIAN = 1
    AUTO_OTSU = 2
    AUTO_ADAPTIVE = 3
    AUTO_BRACKETING = 4


class DetectionMode(IntEnum):
    """Which marker families the library matches against."""
    COLOR_TEMPLATE = 0
    MONO_TEMPLATE = 1
    MATRIX = 2
    COLOR_TEMPLATE_AND_MATRIX = 3
    MONO_TEMPLATE_AND_MATRIX = 4


class ProcessingMode(IntEnum):
    """FRAME processes every pixel; FIELD every second row and column."""
    FRAME = 0
    FIELD = 1


class LabelingMode(IntEnum):
    """Marker border polarity."""
    WHITE_REGION = 0
    BLACK_REGION = 1


class MatrixCodeType(IntEnum):
    """Barcode size and error correction of matrix markers."""
    CODE_3X3 = 0
    CODE_3X3_HAMMING63 = 1
    CODE_3X3_PARITY65 = 2
    CODE_4X4 = 3
    CODE_4X4_BCH_13_9_3 = 4
    CODE_4X4_BCH_13_5_5 = 5


class TrackerResolution(IntEnum):
    """Size of the tracker image relative to the video frame."""
    FULL = 0
    THREE_QUARTERS = 1
    HALF = 2
    QUARTER = 3

    @property
    def scale(self) -> float:
        return 1.0 - self.value / 4.0


class ConfigOption(Enum):
    """Named options of the configuration surface."""
    THRESHOLD = "threshold"
    THRESHOLD_MODE = "threshold_mode"
    DETECTION_MODE = "detection_mode"
    PROCESSING_MODE = "processing_mode"
    LABELING_MODE = "labeling_mode"
    MATRIX_CODE_TYPE = "matrix_code_type"
    TRACKER_RESOLUTION = "tracker_resolution"
    TRACK_ALTERNATE_FRAMES = "track_alternate_frames"
    DEBUG_OVERLAY = "debug_overlay"


_ENUM_OPTIONS = {
    ConfigOption.THRESHOLD_MODE: ThresholdMode,
    ConfigOption.DETECTION_MODE: DetectionMode,
    ConfigOption.PROCESSING_MODE: ProcessingMode,
    ConfigOption.LABELING_MODE: LabelingMode,
    ConfigOption.MATRIX_CODE_TYPE: MatrixCodeType,
    ConfigOption.TRACKER_RESOLUTION: TrackerResolution,
}


def clamp_threshold(value) -> int:
    """Clamp to [0, 255] and floor. Raises ConfigurationError for non-numbers."""
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise ConfigurationError(f"{value!r} is an invalid threshold")
    if math.isnan(value):
        raise ConfigurationError(f"{value!r} is an invalid threshold")
    return int(math.floor(min(max(value, 0), 255)))


def coerce_option(option: ConfigOption, value) -> Any:
    """
    Validate ``value`` for ``option``.

    Enum options accept a member, its integer value or its name.

    Raises:
        ConfigurationError: if the value is not valid for the option
    """
    if option == ConfigOption.THRESHOLD:
        return clamp_threshold(value)

    if option in (ConfigOption.TRACK_ALTERNATE_FRAMES, ConfigOption.DEBUG_OVERLAY):
        if isinstance(value, (bool, np.bool_)):
            return bool(value)
        raise ConfigurationError(f"{value!r} is an invalid {option.value.replace('_', ' ')} flag")

    enum_type = _ENUM_OPTIONS[option]
    label = option.value.replace("_", " ")
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str):
        try:
            return enum_type[value.upper()]
        except KeyError:
            raise ConfigurationError(f"{value!r} is an invalid {label}") from None
    if isinstance(value, bool):
        raise ConfigurationError(f"{value!r} is an invalid {label}")
    try:
        return enum_type(value)
    except (ValueError, TypeError):
        raise ConfigurationError(f"{value!r} is an invalid {label}") from None


@dataclass
class SessionConfig:
    """Cached configuration; the source of truth replayed onto new handles."""
    threshold: int = 100
    threshold_mode: ThresholdMode = ThresholdMode.MANUAL
    detection_mode: DetectionMode = DetectionMode.COLOR_TEMPLATE
    processing_mode: ProcessingMode = ProcessingMode.FRAME
    labeling_mode: LabelingMode = LabelingMode.BLACK_REGION
    matrix_code_type: MatrixCodeType = MatrixCodeType.CODE_3X3
    tracker_resolution: TrackerResolution = TrackerResolution.FULL
    track_alternate_frames: bool = False
    debug_overlay: bool = False

    def __post_init__(self):
        for option in ConfigOption:
            setattr(self, option.value, coerce_option(option, getattr(self, option.value)))


# =============================================================================
# Events and collaborator interfaces
# =============================================================================

class MarkerType(Enum):
    """Type tag of a detection."""
    PATTERN = "pattern"  # Template marker, id issued by load_marker()
    BARCODE = "barcode"  # Matrix-code marker, id encoded in the marker


@dataclass(frozen=True)
class DetectionEvent:
    """One sighting of one marker in one frame."""
    marker_type: MarkerType
    marker_id: int
    matrix: Any  # 4x4, 3x4 or flat column-major 16
    orientation: Orientation = Orientation.LANDSCAPE
    confidence: float = 1.0


class CalibrationData(ABC):
    """Opaque camera calibration owned by the session."""

    def dispose(self):
        """Release any native resources."""


class TrackingLibrary(ABC):
    """Handle of an initialised tracking library instance."""

    @abstractmethod
    def process(self, frame: VideoFrame) -> List[DetectionEvent]:
        """Run detection on one frame and return every sighting."""

    @abstractmethod
    def get_camera_matrix(self) -> np.ndarray:
        """4x4 row-major projection matrix derived from the calibration."""

    @abstractmethod
    def load_marker(self, url: str) -> "Future[int]":
        """Register a template pattern; resolves to its marker id."""

    @abstractmethod
    def set_threshold(self, value: int): ...

    @abstractmethod
    def set_threshold_mode(self, mode: ThresholdMode): ...

    @abstractmethod
    def set_pattern_detection_mode(self, mode: DetectionMode): ...

    @abstractmethod
    def set_image_proc_mode(self, mode: ProcessingMode): ...

    @abstractmethod
    def set_labeling_mode(self, mode: LabelingMode): ...

    @abstractmethod
    def set_matrix_code_type(self, code_type: MatrixCodeType): ...

    @abstractmethod
    def set_debug_mode(self, enabled: bool): ...

    @abstractmethod
    def set_projection_near_plane(self, value: float): ...

    @abstractmethod
    def set_projection_far_plane(self, value: float): ...

    @abstractmethod
    def dispose(self): ...


class TrackingLibraryFactory(ABC):
    """Creates calibration data and library handles."""

    @abstractmethod
    def load_calibration(self, url: str) -> "Future[CalibrationData]":
        """Start loading calibration; the future may already be complete."""

    @abstractmethod
    def create(self, width: int, height: int, calibration: CalibrationData) -> TrackingLibrary:
        """Create a handle for a tracker image of ``width`` x ``height``."""


class DetectionSink(ABC):
    """Receiver of session notifications (implemented by marker bindings)."""

    @abstractmethod
    def on_tracking_initialized(self, handle: TrackingLibrary): ...

    @abstractmethod
    def on_marker_detected(self, event: DetectionEvent): ...


@dataclass
class RenderSurface:
    """Current size of the surface the scene is drawn to."""
    width: int = 0
    height: int = 0


class SessionState(Enum):
    """Lifecycle state of a tracking session."""
    UNINITIALIZED = "uninitialized"
    AWAITING_CALIBRATION = "awaiting_calibration"
    READY = "ready"
    PROCESSING = "processing"
    IDLE = "idle"
    FAILED = "failed"
    STOPPED = "stopped"


# =============================================================================
# Session
# =============================================================================

class TrackingSession:
    """
    Orchestrates one tracking library instance.

    Usage:
        session = TrackingSession(factory, camera=camera_component)
        session.subscribe(binding)
        session.set_threshold(120)          # cached until the handle exists
        session.start("camera_para.dat", 640, 480)

        while running:
            session.update()                # poll calibration, process a frame
            binding.update()
    """

    _ACTIVE_STATES = (SessionState.READY, SessionState.PROCESSING, SessionState.IDLE)

    # Option -> library setter, in the order they are replayed on creation
    _REPLAY_ORDER = (
        (ConfigOption.DEBUG_OVERLAY, "set_debug_mode"),
        (ConfigOption.PROCESSING_MODE, "set_image_proc_mode"),
        (ConfigOption.LABELING_MODE, "set_labeling_mode"),
        (ConfigOption.MATRIX_CODE_TYPE, "set_matrix_code_type"),
        (ConfigOption.DETECTION_MODE, "set_pattern_detection_mode"),
        (ConfigOption.THRESHOLD, "set_threshold"),
        (ConfigOption.THRESHOLD_MODE, "set_threshold_mode"),
    )
    _SETTERS = dict(_REPLAY_ORDER)

    def __init__(
        self,
        factory: TrackingLibraryFactory,
        camera: Optional[CameraComponent] = None,
        surface: Optional[RenderSurface] = None,
        config: Optional[SessionConfig] = None
    ):
        """
        Args:
            factory: Creates calibration data and library handles
            camera: Render camera whose near/far planes feed the library
                and whose fov is recomputed on resize
            surface: Render surface; its aspect ratio constrains the fov
            config: Initial configuration (defaults otherwise)
        """
        self._factory = factory
        self.camera = camera if camera is not None else CameraComponent()
        self.surface = surface if surface is not None else RenderSurface()
        self.config = config if config is not None else SessionConfig()

        self._state = SessionState.UNINITIALIZED
        self._handle: Optional[TrackingLibrary] = None
        self._calibration: Optional[CalibrationData] = None
        self._pending_calibration: Optional[Future] = None
        self._calibration_url: Optional[str] = None
        self._sinks: List[DetectionSink] = []
        self._source: Optional[FrameSource] = None

        self._video_size = (0, 0)
        self._orientation = Orientation.LANDSCAPE
        self._process_next = True
        self._frames_processed = 0
        self.last_error: Optional[Exception] = None

        self.logger = logging.getLogger("TrackingSession")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def enter_ar(
        self,
        source: FrameSource,
        calibration_url: Optional[str],
        on_success: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None
    ) -> bool:
        """
        Start a frame source and begin tracking on it.

        A source that fails to start is reported through ``on_error`` and
        leaves the session UNINITIALIZED.

        Returns:
            True if the source started and tracking was requested
        """
        if not calibration_url:
            self.logger.error(
                "No camera calibration file set. Try assigning camera_para.dat."
            )

        cause: Optional[Exception] = None
        try:
            started = source.start()
        except Exception as e:
            started = False
            cause = e

        if not started:
            error = CaptureError(
                f"Unable to acquire camera stream: {cause if cause else 'source failed to start'}"
            )
            self.logger.error(str(error))
            self.last_error = error
            if on_error is not None:
                on_error(error)
            return False

        self._attach_source(source)
        width, height = source.frame_size
        started_tracking = self.start(calibration_url, width, height)
        if on_success is not None:
            on_success()
        return started_tracking

    def exit_ar(self):
        """Stop tracking and release the frame source."""
        source = self._source
        self.stop()
        if source is not None:
            self._detach_source()
            source.stop()

    def start(self, calibration_url: Optional[str], frame_width: int, frame_height: int) -> bool:
        """
        Begin loading calibration for a ``frame_width`` x ``frame_height`` feed.

        Returns:
            True if loading was requested and has not already failed
            (it may complete later)
        """
        if not calibration_url:
            self.logger.warning(
                "Unable to start tracking until a valid camera calibration asset has been set."
            )
            self.last_error = InitializationError("No camera calibration asset set")
            return False

        if self._state in self._ACTIVE_STATES or self._state == SessionState.AWAITING_CALIBRATION:
            self.logger.warning("Tracking already started; call stop() first")
            return False
        if self._state == SessionState.FAILED:
            self.logger.warning("Session failed; call stop() before starting again")
            return False

        self._video_size = (int(frame_width), int(frame_height))
        self._calibration_url = calibration_url
        self._process_next = True
        self.last_error = None

        try:
            self._pending_calibration = self._factory.load_calibration(calibration_url)
        except Exception as e:
            self._fail_initialization(f"Failed to load camera calibration '{calibration_url}': {e}")
            return False

        self._state = SessionState.AWAITING_CALIBRATION
        self.logger.info(f"Loading camera calibration from {calibration_url}")
        return self.poll() != SessionState.UNINITIALIZED

    def poll(self) -> SessionState:
        """Finish initialisation if the calibration load has completed."""
        future = self._pending_calibration
        if self._state != SessionState.AWAITING_CALIBRATION or future is None:
            return self._state
        if not future.done():
            return self._state

        self._pending_calibration = None
        if future.cancelled():
            self._fail_initialization("Camera calibration load was cancelled")
            return self._state
        error = future.exception()
        if error is not None:
            self._fail_initialization(
                f"Failed to load camera calibration '{self._calibration_url}': {error}"
            )
            return self._state

        self._calibration = future.result()
        self._create_handle()
        return self._state

    def _create_handle(self):
        vw, vh = self._video_size
        scale = self.config.tracker_resolution.scale
        width, height = int(vw * scale), int(vh * scale)

        handle: Optional[TrackingLibrary] = None
        try:
            handle = self._factory.create(width, height, self._calibration)
            handle.set_projection_near_plane(self.camera.near_clip)
            handle.set_projection_far_plane(self.camera.far_clip)
            self._handle = handle
            self._replay_config()
            self._state = SessionState.READY
            self.on_resize()
        except Exception as e:
            self._handle = None
            if handle is not None:
                handle.dispose()
            self._release_calibration()
            self._fail_initialization(f"Failed to create tracking library ({width}x{height}): {e}")
            return

        self.logger.info(
            f"Tracking initialized: tracker image {width}x{height}, "
            f"orientation={self._orientation.value}"
        )

        for sink in list(self._sinks):
            self._deliver(sink, "on_tracking_initialized", handle)

    def _deliver(self, sink: DetectionSink, callback: str, payload) -> bool:
        """Call one sink; its failure is logged and never reaches the tick loop."""
        try:
            getattr(sink, callback)(payload)
        except Exception as e:
            self.logger.error(f"{type(sink).__name__}.{callback} failed: {e}")
            self.last_error = e
            return False
        return True

    def _replay_config(self):
        for option, setter in self._REPLAY_ORDER:
            getattr(self._handle, setter)(getattr(self.config, option.value))

    def _fail_initialization(self, message: str):
        self.logger.error(message)
        self.last_error = InitializationError(message)
        self._state = SessionState.UNINITIALIZED

    def _release_calibration(self):
        if self._calibration is not None:
            self._calibration.dispose()
            self._calibration = None

    def stop(self):
        """Release the handle and calibration. Safe to call repeatedly."""
        released = False
        if self._pending_calibration is not None:
            self._pending_calibration.cancel()
            self._pending_calibration = None
            released = True
        if self._handle is not None:
            self._handle.dispose()
            self._handle = None
            released = True
        if self._calibration is not None:
            self._release_calibration()
            released = True

        self._state = SessionState.STOPPED
        if released:
            self.logger.info("Tracking stopped")

    # ------------------------------------------------------------------
    # Per-frame
    # ------------------------------------------------------------------

    def process_frame(self, frame: VideoFrame) -> bool:
        """
        Run detection on ``frame`` and dispatch every sighting.

        Returns:
            True if the frame was passed to the tracking library
        """
        if self._handle is None or self._state not in (SessionState.READY, SessionState.IDLE):
            return False

        if self.config.track_alternate_frames:
            run = self._process_next
            self._process_next = not run
            if not run:
                return False

        self._state = SessionState.PROCESSING
        try:
            detections = self._handle.process(frame)
        except Exception as e:
            message = f"Tracking library failed while processing frame: {e}"
            self.logger.error(message)
            self.last_error = InitializationError(message)
            self._state = SessionState.FAILED
            return False

        try:
            for detection in detections:
                event = replace(detection, orientation=self._orientation)
                for sink in list(self._sinks):
                    self._deliver(sink, "on_marker_detected", event)
        finally:
            if self._state == SessionState.PROCESSING:
                self._state = SessionState.IDLE

        self._frames_processed += 1
        return True

    def update(self) -> bool:
        """
        One render tick: poll initialisation, then process the freshest frame.

        Returns:
            True if a frame was processed
        """
        self.poll()
        if self._source is None:
            return False
        frame = self._source.latest_frame
        if frame is None:
            return False
        return self.process_frame(frame)

    # ------------------------------------------------------------------
    # Resize / orientation
    # ------------------------------------------------------------------

    def on_resize(
        self,
        video_width: Optional[int] = None,
        video_height: Optional[int] = None,
        render_width: Optional[int] = None,
        render_height: Optional[int] = None
    ):
        """Recompute orientation and camera fov after a video or surface resize."""
        if video_width is not None and video_height is not None:
            self._video_size = (int(video_width), int(video_height))
        if render_width is not None and render_height is not None:
            self.surface.width = int(render_width)
            self.surface.height = int(render_height)

        vw, vh = self._video_size
        if vw <= 0 or vh <= 0:
            return

        previous = self._orientation
        self._orientation = Orientation.from_frame_size(vw, vh)
        if self._orientation != previous:
            self.logger.info(f"Orientation changed to {self._orientation.value}")

        if self._handle is None:
            return

        projection = np.asarray(self._handle.get_camera_matrix(), dtype=np.float64)
        focal = projection[1, 1]
        if focal == 0 or not math.isfinite(focal):
            self.logger.error(f"Degenerate projection matrix (P[1][1] = {focal}); fov unchanged")
            return
        fovy = math.degrees(2.0 * math.atan(1.0 / focal))

        video_aspect = vw / vh
        cw, ch = self.surface.width, self.surface.height
        render_aspect = cw / ch if cw > 0 and ch > 0 else video_aspect

        if render_aspect > video_aspect:
            # Video Y fov is limited so the 3D camera fov must match it
            self.camera.fov = abs(fovy) * (video_aspect / render_aspect)
        else:
            self.camera.fov = abs(fovy)

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, sink: DetectionSink):
        """Add a detection sink; it is told about an existing handle right away."""
        if sink in self._sinks:
            return
        self._sinks.append(sink)
        if self._handle is not None and self._state in self._ACTIVE_STATES:
            self._deliver(sink, "on_tracking_initialized", self._handle)

    def unsubscribe(self, sink: DetectionSink) -> bool:
        if sink not in self._sinks:
            return False
        self._sinks.remove(sink)
        return True

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_config(self, option, value) -> bool:
        """
        Set one option, applying it now or caching it for the next handle.

        Invalid values are logged and ignored; the previous value stays.

        Returns:
            True if the value was accepted
        """
        try:
            option = ConfigOption(option)
        except ValueError:
            self.logger.error(f"ERROR: {option!r} is not a configuration option.")
            return False

        try:
            value = coerce_option(option, value)
        except ConfigurationError as e:
            self.logger.error(f"ERROR: {e}.")
            return False

        setattr(self.config, option.value, value)

        if self._handle is None:
            return True
        setter = self._SETTERS.get(option)
        if setter is not None:
            getattr(self._handle, setter)(value)
        elif option == ConfigOption.TRACKER_RESOLUTION:
            self.logger.info("Tracker resolution change takes effect on the next start()")
        return True

    def set_threshold(self, value) -> bool:
        return self.set_config(ConfigOption.THRESHOLD, value)

    def set_threshold_mode(self, mode) -> bool:
        return self.set_config(ConfigOption.THRESHOLD_MODE, mode)

    def set_detection_mode(self, mode) -> bool:
        return self.set_config(ConfigOption.DETECTION_MODE, mode)

    def set_processing_mode(self, mode) -> bool:
        return self.set_config(ConfigOption.PROCESSING_MODE, mode)

    def set_labeling_mode(self, mode) -> bool:
        return self.set_config(ConfigOption.LABELING_MODE, mode)

    def set_matrix_code_type(self, code_type) -> bool:
        return self.set_config(ConfigOption.MATRIX_CODE_TYPE, code_type)

    def set_tracker_resolution(self, resolution) -> bool:
        return self.set_config(ConfigOption.TRACKER_RESOLUTION, resolution)

    def set_track_alternate_frames(self, enabled: bool) -> bool:
        return self.set_config(ConfigOption.TRACK_ALTERNATE_FRAMES, enabled)

    def set_debug_overlay(self, enabled: bool) -> bool:
        return self.set_config(ConfigOption.DEBUG_OVERLAY, enabled)

    # ------------------------------------------------------------------
    # Frame source plumbing
    # ------------------------------------------------------------------

    def _attach_source(self, source: FrameSource):
        if self._source is not None:
            self._detach_source()
        self._source = source
        source.add_resize_listener(self._on_source_resize)

    def _detach_source(self):
        if self._source is not None:
            self._source.remove_resize_listener(self._on_source_resize)
            self._source = None

    def _on_source_resize(self, width: int, height: int):
        self.on_resize(video_width=width, video_height=height)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def orientation(self) -> Orientation:
        return self._orientation

    @property
    def is_tracking(self) -> bool:
        return self._handle is not None and self._state in self._ACTIVE_STATES

    @property
    def video_size(self):
        return self._video_size

    @property
    def frames_processed(self) -> int:
        return self._frames_processed

    @property
    def subscriber_count(self) -> int:
        return len(self._sinks)
