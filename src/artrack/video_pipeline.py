"""
ARTrack Video Pipeline - Frame Sources for the Tracking Session

The session only needs three things from a video source:
- the freshest frame (never a backlog)
- the current frame size
- a notification when that size changes (e.g. device rotation)

``ThreadedVideoCapture`` grabs frames on a daemon thread and always hands
out the most recent one. Resize listeners are fired from the consumer
side (inside ``latest_frame``) so they run on the render thread, never on
the capture thread.
"""

import threading
import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple, Callable, List, Union

import cv2
import numpy as np


ResizeListener = Callable[[int, int], None]


@dataclass
class VideoFrame:
    """One video frame handed to the tracking library."""
    image: np.ndarray
    width: int
    height: int
    timestamp: float = 0.0
    frame_number: int = 0

    @classmethod
    def from_image(cls, image: np.ndarray, timestamp: float = 0.0, frame_number: int = 0) -> "VideoFrame":
        h, w = image.shape[:2]
        return cls(image=image, width=w, height=h, timestamp=timestamp, frame_number=frame_number)


class FrameSource(ABC):
    """
    A supplier of video frames and resize notifications.

    Subclasses call ``_notify_resize`` whenever the frame size changes.
    """

    def __init__(self):
        self._resize_listeners: List[ResizeListener] = []

    @abstractmethod
    def start(self) -> bool:
        """Begin producing frames. Returns False if the stream is unavailable."""

    @abstractmethod
    def stop(self):
        """Stop producing frames and release the device."""

    @property
    @abstractmethod
    def latest_frame(self) -> Optional[VideoFrame]:
        """Freshest frame, or None before the first one arrives."""

    @property
    @abstractmethod
    def frame_size(self) -> Tuple[int, int]:
        """Current (width, height)."""

    def add_resize_listener(self, listener: ResizeListener):
        if listener not in self._resize_listeners:
            self._resize_listeners.append(listener)

    def remove_resize_listener(self, listener: ResizeListener):
        if listener in self._resize_listeners:
            self._resize_listeners.remove(listener)

    def _notify_resize(self, width: int, height: int):
        for listener in list(self._resize_listeners):
            listener(width, height)


class ThreadedVideoCapture(FrameSource):
    """
    Ultra-low latency threaded video capture.

    Key Optimizations:
    - Daemon thread continuously captures frames
    - ALWAYS returns the freshest frame (no buffering lag)
    - Automatically drops old frames

    Usage:
        cap = ThreadedVideoCapture(source=0)
        cap.start()

        while True:
            frame = cap.latest_frame
            if frame is not None:
                session.process_frame(frame)
    """

    def __init__(
        self,
        source: Union[int, str] = 0,
        resolution: Optional[Tuple[int, int]] = None
    ):
        """
        Args:
            source: Camera index (int) or video file path / stream URL (str)
            resolution: Requested (width, height), None = native
        """
        super().__init__()
        self.source = source
        self.resolution = resolution

        self._cap: Optional[cv2.VideoCapture] = None
        self._frame: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self._running = False
        self._thread: Optional[threading.Thread] = None

        self._frame_count = 0
        self._capture_timestamp = 0.0
        self._native_fps = 0.0

        # Size reported to listeners; only touched on the consumer side
        self._width = 0
        self._height = 0

        self.logger = logging.getLogger(__name__)

    def _open(self) -> Optional[cv2.VideoCapture]:
        return cv2.VideoCapture(self.source)

    def _init_capture(self) -> bool:
        """Open the device and read its actual properties."""
        self._cap = self._open()
        if self._cap is None or not self._cap.isOpened():
            self.logger.error(f"Failed to open video source: {self.source}")
            return False

        if self.resolution:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])

        # Minimum latency: never queue more than one frame
        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        self._width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self._height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self._native_fps = self._cap.get(cv2.CAP_PROP_FPS) or 30.0

        self.logger.info(
            f"Video source initialized: {self._width}x{self._height} @ {self._native_fps:.1f}fps"
        )
        return True

    def _capture_loop(self):
        """Background loop: keep only the newest frame."""
        while self._running:
            ret, frame = self._cap.read()
            if ret:
                with self._frame_lock:
                    self._frame = frame
                    self._capture_timestamp = time.perf_counter()
                    self._frame_count += 1
            elif isinstance(self.source, str):
                self.logger.info("End of video file reached")
                self._running = False
            else:
                # Brief sleep on error to prevent CPU spin
                time.sleep(0.001)

    def start(self) -> bool:
        if self._running:
            return True
        if not self._init_capture():
            return False

        self._running = True
        self._thread = threading.Thread(target=self._capture_loop, daemon=True)
        self._thread.start()
        self.logger.info("Video capture thread started")
        return True

    def stop(self):
        self._running = False
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        if self._cap:
            self._cap.release()
            self._cap = None
        self.logger.info("Video capture stopped")

    @property
    def latest_frame(self) -> Optional[VideoFrame]:
        with self._frame_lock:
            if self._frame is None:
                return None
            image = self._frame.copy()
            timestamp = self._capture_timestamp
            number = self._frame_count

        frame = VideoFrame.from_image(image, timestamp=timestamp, frame_number=number)
        if (frame.width, frame.height) != (self._width, self._height):
            self._width, self._height = frame.width, frame.height
            self.logger.info(f"Video resized to {frame.width}x{frame.height}")
            self._notify_resize(frame.width, frame.height)
        return frame

    @property
    def frame_size(self) -> Tuple[int, int]:
        return (self._width, self._height)

    @property
    def is_running(self) -> bool:
        return self._running

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False


class VideoFileReader(ThreadedVideoCapture):
    """Plays a video file at its native rate, optionally looping."""

    def __init__(self, filepath: str, loop: bool = False, **kwargs):
        super().__init__(source=filepath, **kwargs)
        self.loop = loop

    def _capture_loop(self):
        while self._running:
            ret, frame = self._cap.read()
            if ret:
                with self._frame_lock:
                    self._frame = frame
                    self._capture_timestamp = time.perf_counter()
                    self._frame_count += 1
            elif self.loop:
                self._cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
            else:
                self._running = False
                break

            if self._native_fps > 0:
                time.sleep(1.0 / self._native_fps)


def resize_for_tracking(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize ``image`` to the tracker image size; no-op when it already matches."""
    h, w = image.shape[:2]
    if (w, h) == (width, height):
        return image
    return cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)
