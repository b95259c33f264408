"""
ARTrack ArUco Backend - OpenCV as the Tracking Library

A ``TrackingLibrary`` implementation built on OpenCV's ArUco detector so
the session can run against a real camera without a native AR toolkit.

Pipeline (per frame):
┌────────────┐   ┌───────────────┐   ┌──────────────┐   ┌──────────────┐
│ resize to  │ → │ gray + field  │ → │ binarize by  │ → │ detect +     │
│ tracker    │   │ (every other  │   │ threshold    │   │ solvePnP     │
│ resolution │   │ row / column) │   │ mode         │   │ (IPPE)       │
└────────────┘   └───────────────┘   └──────────────┘   └──────────────┘

Poses are returned in OpenCV camera coordinates (x right, y down,
z forward), which is the convention ``PoseTransform`` corrects for.

Only matrix (barcode) markers are supported; template registration
resolves to an error.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Tuple, List

import cv2
import numpy as np

from .tracking_session import (
    CalibrationData,
    DetectionEvent,
    DetectionMode,
    LabelingMode,
    MarkerType,
    MatrixCodeType,
    ProcessingMode,
    ThresholdMode,
    TrackingLibrary,
    TrackingLibraryFactory,
)
from .video_pipeline import VideoFrame, resize_for_tracking


FILE_STORAGE_SUFFIXES = (".yaml", ".yml", ".xml")


class ArucoCalibration(CalibrationData):
    """Pinhole intrinsics and distortion from an OpenCV calibration run."""

    def __init__(
        self,
        camera_matrix: np.ndarray,
        dist_coeffs: np.ndarray,
        image_size: Optional[Tuple[int, int]] = None
    ):
        self.camera_matrix = np.asarray(camera_matrix, dtype=np.float64).reshape(3, 3)
        self.dist_coeffs = np.asarray(dist_coeffs, dtype=np.float64).ravel()
        self.image_size = image_size  # (width, height) the intrinsics were measured at

    def scaled_to(self, width: int, height: int) -> np.ndarray:
        """Intrinsics for a tracker image of ``width`` x ``height``."""
        k = self.camera_matrix.copy()
        if self.image_size is None:
            return k
        sx = width / float(self.image_size[0])
        sy = height / float(self.image_size[1])
        k[0, :] *= sx
        k[1, :] *= sy
        return k


def _load_file_storage(file_path: Path) -> ArucoCalibration:
    fs = cv2.FileStorage(str(file_path), cv2.FILE_STORAGE_READ)
    try:
        camera_matrix = fs.getNode("camera_matrix").mat()
        dist_coeffs = fs.getNode("dist_coeffs").mat()
        width_node = fs.getNode("image_width")
        height_node = fs.getNode("image_height")
        image_size = None
        if not width_node.empty() and not height_node.empty():
            image_size = (int(width_node.real()), int(height_node.real()))
    finally:
        fs.release()

    if camera_matrix is None or dist_coeffs is None:
        raise ValueError(f"{file_path} lacks camera_matrix/dist_coeffs")
    return ArucoCalibration(camera_matrix, dist_coeffs, image_size)


def load_calibration_file(path: str) -> ArucoCalibration:
    """
    Load ``camera_matrix`` / ``dist_coeffs`` (and optional image size).

    ``.npz`` files are read as written by ``np.savez`` (``image_size`` key);
    ``.yaml`` / ``.yml`` / ``.xml`` through ``cv2.FileStorage``
    (``image_width`` / ``image_height`` nodes).
    """
    file_path = Path(path).expanduser()
    if not file_path.is_file():
        raise FileNotFoundError(f"Calibration file not found: {file_path}")

    if file_path.suffix.lower() in FILE_STORAGE_SUFFIXES:
        return _load_file_storage(file_path)

    with np.load(file_path) as data:
        if "camera_matrix" not in data.files or "dist_coeffs" not in data.files:
            raise ValueError(f"{file_path} lacks camera_matrix/dist_coeffs")
        image_size = None
        if "image_size" in data.files:
            w, h = (int(v) for v in data["image_size"][:2])
            image_size = (w, h)
        return ArucoCalibration(data["camera_matrix"], data["dist_coeffs"], image_size)


class ArucoTrackingLibrary(TrackingLibrary):
    """Detects ArUco markers and estimates their camera-relative pose."""

    MATRIX_MODES = (
        DetectionMode.MATRIX,
        DetectionMode.COLOR_TEMPLATE_AND_MATRIX,
        DetectionMode.MONO_TEMPLATE_AND_MATRIX,
    )

    def __init__(
        self,
        width: int,
        height: int,
        calibration: ArucoCalibration,
        dictionary: int = cv2.aruco.DICT_4X4_50,
        marker_length: float = 1.0
    ):
        """
        Args:
            width, height: Tracker image size
            calibration: Camera intrinsics
            dictionary: OpenCV predefined ArUco dictionary id
            marker_length: Marker side length in output units
        """
        self.width = int(width)
        self.height = int(height)
        self.calibration = calibration
        self.camera_matrix = calibration.scaled_to(self.width, self.height)
        self.marker_length = marker_length

        self._detector = cv2.aruco.ArucoDetector(
            cv2.aruco.getPredefinedDictionary(dictionary),
            cv2.aruco.DetectorParameters()
        )

        half = marker_length / 2.0
        self._object_points = np.array([
            [-half, half, 0],
            [half, half, 0],
            [half, -half, 0],
            [-half, -half, 0]
        ], dtype=np.float32)

        self.threshold = 100
        self.threshold_mode = ThresholdMode.MANUAL
        self.detection_mode = DetectionMode.COLOR_TEMPLATE
        self.processing_mode = ProcessingMode.FRAME
        self.labeling_mode = LabelingMode.BLACK_REGION
        self.matrix_code_type = MatrixCodeType.CODE_3X3
        self.debug_mode = False
        self.debug_image: Optional[np.ndarray] = None
        self.near_plane = 0.1
        self.far_plane = 1000.0
        self._disposed = False

        self.logger = logging.getLogger("ArucoTrackingLibrary")

    # === Detection ===

    def _binarize(self, gray: np.ndarray) -> np.ndarray:
        if self.threshold_mode == ThresholdMode.MANUAL:
            _, binary = cv2.threshold(gray, self.threshold, 255, cv2.THRESH_BINARY)
        elif self.threshold_mode == ThresholdMode.AUTO_MEDIAN:
            _, binary = cv2.threshold(gray, float(np.median(gray)), 255, cv2.THRESH_BINARY)
        elif self.threshold_mode == ThresholdMode.AUTO_OTSU:
            _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
        else:
            # Adaptive / bracketing: the detector's own adaptive thresholding
            binary = gray
        if self.labeling_mode == LabelingMode.WHITE_REGION:
            binary = cv2.bitwise_not(binary)
        return binary

    def process(self, frame: VideoFrame) -> List[DetectionEvent]:
        if self._disposed:
            raise RuntimeError("process() called on a disposed tracking library")

        image = resize_for_tracking(frame.image, self.width, self.height)
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image

        factor = 1.0
        if self.processing_mode == ProcessingMode.FIELD:
            gray = gray[::2, ::2]
            factor = 2.0

        binary = self._binarize(gray)
        if self.debug_mode:
            self.debug_image = binary

        if self.detection_mode not in self.MATRIX_MODES:
            return []

        corners, ids, _ = self._detector.detectMarkers(binary)
        if ids is None or len(ids) == 0:
            return []

        events = []
        for corner, marker_id in zip(corners, ids.ravel()):
            image_points = corner.reshape(4, 2).astype(np.float32) * factor
            ok, rvec, tvec = cv2.solvePnP(
                self._object_points,
                image_points,
                self.camera_matrix,
                self.calibration.dist_coeffs,
                flags=cv2.SOLVEPNP_IPPE_SQUARE
            )
            if not ok:
                continue
            rotation, _ = cv2.Rodrigues(rvec)
            pose = np.eye(4)
            pose[:3, :3] = rotation
            pose[:3, 3] = tvec.ravel()
            events.append(DetectionEvent(MarkerType.BARCODE, int(marker_id), pose))
        return events

    def get_camera_matrix(self) -> np.ndarray:
        """OpenGL-style projection built from the scaled intrinsics."""
        fx, fy = self.camera_matrix[0, 0], self.camera_matrix[1, 1]
        cx, cy = self.camera_matrix[0, 2], self.camera_matrix[1, 2]
        w, h = float(self.width), float(self.height)
        n, f = self.near_plane, self.far_plane
        return np.array([
            [2 * fx / w, 0.0, 1.0 - 2 * cx / w, 0.0],
            [0.0, 2 * fy / h, 2 * cy / h - 1.0, 0.0],
            [0.0, 0.0, -(f + n) / (f - n), -2 * f * n / (f - n)],
            [0.0, 0.0, -1.0, 0.0]
        ])

    def load_marker(self, url: str) -> "Future[int]":
        future: Future = Future()
        future.set_exception(
            NotImplementedError(f"Template patterns are not supported by the ArUco backend: {url}")
        )
        return future

    # === Configuration ===

    def set_threshold(self, value: int):
        self.threshold = int(value)

    def set_threshold_mode(self, mode: ThresholdMode):
        self.threshold_mode = mode

    def set_pattern_detection_mode(self, mode: DetectionMode):
        self.detection_mode = mode
        if mode not in self.MATRIX_MODES:
            self.logger.warning(f"Detection mode {mode.name} finds no markers with the ArUco backend")

    def set_image_proc_mode(self, mode: ProcessingMode):
        self.processing_mode = mode

    def set_labeling_mode(self, mode: LabelingMode):
        self.labeling_mode = mode

    def set_matrix_code_type(self, code_type: MatrixCodeType):
        # The ArUco dictionary is fixed at construction
        self.matrix_code_type = code_type

    def set_debug_mode(self, enabled: bool):
        self.debug_mode = enabled
        if not enabled:
            self.debug_image = None

    def set_projection_near_plane(self, value: float):
        self.near_plane = float(value)

    def set_projection_far_plane(self, value: float):
        self.far_plane = float(value)

    def dispose(self):
        self._disposed = True
        self.debug_image = None


class ArucoLibraryFactory(TrackingLibraryFactory):
    """Loads calibration on a worker thread and builds ArUco handles."""

    def __init__(self, dictionary: int = cv2.aruco.DICT_4X4_50, marker_length: float = 1.0):
        self.dictionary = dictionary
        self.marker_length = marker_length
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="calibration")

    def load_calibration(self, url: str) -> "Future[ArucoCalibration]":
        return self._executor.submit(load_calibration_file, url)

    def create(self, width: int, height: int, calibration: ArucoCalibration) -> ArucoTrackingLibrary:
        return ArucoTrackingLibrary(
            width,
            height,
            calibration,
            dictionary=self.dictionary,
            marker_length=self.marker_length
        )

    def close(self):
        self._executor.shutdown(wait=False)
