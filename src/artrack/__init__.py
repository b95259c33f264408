"""
ARTrack - Marker Tracking Bindings for a Scene Graph

Binds an optical marker-tracking library to a 3D scene graph:
one TrackingSession per camera feed, one MarkerBinding per printed marker.

Features:
- Pose correction from tracking-library space (camera-relative, Z-up)
  to scene space (Y-up), aware of portrait/landscape video
- Debounced show/hide of marker content across detection dropouts
- One exclusive render/light layer bit per marker
- Configuration cached until the tracking library is ready
- OpenCV ArUco backend for running against a real camera

Quick Start:
    from artrack import (
        ArucoLibraryFactory, LayerAllocator, MarkerBinding, MarkerConfig,
        SceneGraph, ShadowMaterialRegistry, ThreadedVideoCapture, TrackingSession,
    )

    graph = SceneGraph()
    marker = graph.create_node("Marker", parent=graph.root)

    session = TrackingSession(ArucoLibraryFactory())
    session.set_detection_mode("matrix")

    binding = MarkerBinding(graph, marker, LayerAllocator(),
                            ShadowMaterialRegistry(), MarkerConfig(matrix_id=0))
    binding.attach(session)

    session.enter_ar(ThreadedVideoCapture(0), "camera_calibration.npz")

    # Update loop
    while True:
        session.update()
        binding.update()
"""

__version__ = "1.0.0"

from .errors import (
    ArTrackError,
    ConfigurationError,
    InitializationError,
    CaptureError,
    LayerCapacityError,
)

# Scene
from .scene_graph import (
    SceneGraph,
    Node,
    RenderComponent,
    LightComponent,
    CameraComponent,
)
from .layers import LayerAllocator

# Pose & visibility
from .pose_transform import (
    Orientation,
    Pose,
    PoseTransform,
    euler_to_matrix,
    matrix_to_euler,
    uniform_scale,
)
from .visibility import VisibilityTracker, MarkerStatus

# Video
from .video_pipeline import (
    VideoFrame,
    FrameSource,
    ThreadedVideoCapture,
    VideoFileReader,
)

# Session & markers
from .tracking_session import (
    TrackingSession,
    SessionState,
    SessionConfig,
    ConfigOption,
    ThresholdMode,
    DetectionMode,
    ProcessingMode,
    LabelingMode,
    MatrixCodeType,
    TrackerResolution,
    MarkerType,
    DetectionEvent,
    DetectionSink,
    CalibrationData,
    TrackingLibrary,
    TrackingLibraryFactory,
    RenderSurface,
)
from .marker_binding import (
    MarkerBinding,
    MarkerConfig,
    ShadowMaterial,
    ShadowMaterialRegistry,
)
from .aruco_backend import (
    ArucoCalibration,
    ArucoTrackingLibrary,
    ArucoLibraryFactory,
    load_calibration_file,
)

__all__ = [
    # Version
    "__version__",

    # Errors
    "ArTrackError",
    "ConfigurationError",
    "InitializationError",
    "CaptureError",
    "LayerCapacityError",

    # Scene
    "SceneGraph",
    "Node",
    "RenderComponent",
    "LightComponent",
    "CameraComponent",
    "LayerAllocator",

    # Pose & visibility
    "Orientation",
    "Pose",
    "PoseTransform",
    "euler_to_matrix",
    "matrix_to_euler",
    "uniform_scale",
    "VisibilityTracker",
    "MarkerStatus",

    # Video
    "VideoFrame",
    "FrameSource",
    "ThreadedVideoCapture",
    "VideoFileReader",

    # Session & markers
    "TrackingSession",
    "SessionState",
    "SessionConfig",
    "ConfigOption",
    "ThresholdMode",
    "DetectionMode",
    "ProcessingMode",
    "LabelingMode",
    "MatrixCodeType",
    "TrackerResolution",
    "MarkerType",
    "DetectionEvent",
    "DetectionSink",
    "CalibrationData",
    "TrackingLibrary",
    "TrackingLibraryFactory",
    "RenderSurface",
    "MarkerBinding",
    "MarkerConfig",
    "ShadowMaterial",
    "ShadowMaterialRegistry",

    # OpenCV backend
    "ArucoCalibration",
    "ArucoTrackingLibrary",
    "ArucoLibraryFactory",
    "load_calibration_file",
]
