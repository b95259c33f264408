#!/usr/bin/env python3
"""
ARTrack - Proof of Concept Demo

Demonstrates marker tracking bound to a scene graph:
1. Opens a webcam feed (or a video file)
2. Loads an OpenCV camera calibration (.npz or .yaml)
3. Tracks ArUco markers with the given ids
4. Shows each marker's corrected scene pose and visibility state
5. Content stays visible through short detection dropouts

Usage:
    python main_demo.py --calibration camera_calibration.npz --markers 0 1 2

Controls:
    - A: Toggle alternate-frame tracking
    - T / G: Raise / lower the manual threshold
    - M: Cycle threshold mode
    - Q/ESC: Quit
"""

import sys
import time
import logging
import argparse
from pathlib import Path
from typing import List, Optional

import cv2  # pyright: ignore[reportMissingImports]
import numpy as np  # pyright: ignore[reportMissingImports]

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from artrack.aruco_backend import ArucoLibraryFactory
from artrack.layers import LayerAllocator
from artrack.marker_binding import MarkerBinding, MarkerConfig, ShadowMaterialRegistry
from artrack.scene_graph import SceneGraph, RenderComponent, LightComponent, CameraComponent
from artrack.tracking_session import (
    TrackingSession,
    SessionConfig,
    DetectionMode,
    ThresholdMode,
    TrackerResolution,
    RenderSurface,
)
from artrack.video_pipeline import ThreadedVideoCapture, VideoFileReader

ACTIVE_COLOR = (0, 255, 0)
INACTIVE_COLOR = (0, 0, 255)
ARUCO_DICTIONARIES = {
    "4x4_50": cv2.aruco.DICT_4X4_50,
    "5x5_100": cv2.aruco.DICT_5X5_100,
    "6x6_250": cv2.aruco.DICT_6X6_250,
}


class ArTrackDemo:
    """Interactive demo of the ARTrack session and marker bindings."""

    WINDOW_NAME = "ARTrack Demo"
    THRESHOLD_STEP = 5

    def __init__(
            self,
            source,
            calibration: str,
            marker_ids: List[int],
            marker_width: float = 1.0,
            dictionary: int = cv2.aruco.DICT_4X4_50,
            config: Optional[SessionConfig] = None,
            loop: bool = False
    ):
        self.source = source
        self.calibration = calibration
        self.loop = loop

        self.graph = SceneGraph()
        self.camera = CameraComponent()
        self.graph.create_node("Camera", parent=self.graph.root, camera=self.camera)

        self.factory = ArucoLibraryFactory(dictionary=dictionary)
        self.session = TrackingSession(
            self.factory,
            camera=self.camera,
            surface=RenderSurface(),
            config=config
        )

        layers = LayerAllocator()
        shadows = ShadowMaterialRegistry()
        self.bindings: List[MarkerBinding] = []
        for marker_id in marker_ids:
            node = self.graph.create_node(f"Marker {marker_id}", parent=self.graph.root)
            self.graph.create_node("Model", parent=node, render=RenderComponent())
            self.graph.create_node("Light", parent=node, light=LightComponent())
            binding = MarkerBinding(
                self.graph, node, layers, shadows,
                MarkerConfig(matrix_id=marker_id, width=marker_width)
            )
            binding.attach(self.session)
            self.bindings.append(binding)

        self.video = None
        self._running = False
        self.logger = logging.getLogger("ArTrackDemo")

    def _open_video(self):
        if isinstance(self.source, str) and Path(self.source).expanduser().is_file():
            return VideoFileReader(filepath=str(Path(self.source).expanduser()), loop=self.loop)
        if self.loop:
            self.logger.warning("Loop option ignored for camera source")
        return ThreadedVideoCapture(source=self.source)

    def _on_capture_error(self, error: Exception):
        self.logger.error(f"Camera unavailable: {error}")

    def _handle_key(self, key: int):
        config = self.session.config
        if key in (ord('q'), 27):
            self._running = False
        elif key == ord('a'):
            self.session.set_track_alternate_frames(not config.track_alternate_frames)
            self.logger.info(f"Alternate frames: {config.track_alternate_frames}")
        elif key == ord('t'):
            self.session.set_threshold(config.threshold + self.THRESHOLD_STEP)
            self.logger.info(f"Threshold: {config.threshold}")
        elif key == ord('g'):
            self.session.set_threshold(config.threshold - self.THRESHOLD_STEP)
            self.logger.info(f"Threshold: {config.threshold}")
        elif key == ord('m'):
            modes = list(ThresholdMode)
            next_mode = modes[(modes.index(config.threshold_mode) + 1) % len(modes)]
            self.session.set_threshold_mode(next_mode)
            self.logger.info(f"Threshold mode: {next_mode.name}")

    def _draw_status(self, image: np.ndarray) -> np.ndarray:
        config = self.session.config
        lines = [
            f"{self.session.state.value}  {self.session.orientation.value}  fov={self.camera.fov:.1f}",
            f"threshold={config.threshold} ({config.threshold_mode.name})"
            f"{'  alt-frames' if config.track_alternate_frames else ''}",
        ]
        for binding in self.bindings:
            node = self.graph.node(binding.root)
            pos = ", ".join(f"{v:+.2f}" for v in node.position)
            rot = ", ".join(f"{v:+.0f}" for v in node.euler_angles)
            state = "ACTIVE" if binding.active else "lost"
            lines.append(f"id {binding.config.matrix_id} [{binding.layer_mask:#x}] {state}  pos=({pos}) rot=({rot})")

        for i, line in enumerate(lines):
            color = (255, 255, 255)
            if i >= 2:
                color = ACTIVE_COLOR if self.bindings[i - 2].active else INACTIVE_COLOR
            cv2.putText(image, line, (10, 24 + i * 22), cv2.FONT_HERSHEY_SIMPLEX, 0.55, color, 1, cv2.LINE_AA)
        return image

    def run(self):
        """Run the demo."""
        self.logger.info("Starting ARTrack Demo...")
        self.video = self._open_video()

        if not self.session.enter_ar(self.video, self.calibration, on_error=self._on_capture_error):
            self.logger.error("Failed to start tracking")
            self.session.exit_ar()
            return

        cv2.namedWindow(self.WINDOW_NAME)
        self._running = True
        fps_time = time.perf_counter()
        frames = 0

        try:
            while self._running:
                frame = self.video.latest_frame
                if frame is None:
                    if not self.video.is_running:
                        self.logger.error("No frames received from video source")
                        break
                    time.sleep(0.01)
                    continue

                self.session.poll()
                self.session.process_frame(frame)
                for binding in self.bindings:
                    binding.update()

                self.session.on_resize(render_width=frame.width, render_height=frame.height)
                output = self._draw_status(frame.image)
                cv2.imshow(self.WINDOW_NAME, output)

                frames += 1
                if time.perf_counter() - fps_time >= 5.0:
                    self.logger.debug(f"{frames / (time.perf_counter() - fps_time):.1f} fps")
                    fps_time = time.perf_counter()
                    frames = 0

                self._handle_key(cv2.waitKey(1) & 0xFF)
        except KeyboardInterrupt:
            self.logger.info("Interrupted by user")
        finally:
            self.session.exit_ar()
            self.factory.close()
            cv2.destroyAllWindows()
            self.logger.info("Demo stopped.")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="ARTrack Marker Tracking Demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Controls:
  A            Toggle alternate-frame tracking
  T / G        Raise / lower manual threshold
  M            Cycle threshold mode
  Q/ESC        Quit

Examples:
  python main_demo.py -c calib.npz                     # Webcam 0, marker 0
  python main_demo.py -c calib.npz --markers 3 7       # Track ids 3 and 7
  python main_demo.py -c calib.npz --source clip.mp4 --loop
        """
    )
    parser.add_argument(
        "--source", "-s",
        default=0,
        help="Video source: camera index (0, 1, ...) or file path"
    )
    parser.add_argument(
        "--calibration", "-c",
        required=True,
        help="Camera calibration (.npz, or OpenCV .yaml/.xml) with camera_matrix and dist_coeffs"
    )
    parser.add_argument(
        "--markers", "-m",
        type=int,
        nargs="+",
        default=[0],
        help="Matrix marker ids to track"
    )
    parser.add_argument(
        "--width",
        type=float,
        default=1.0,
        help="Physical marker width (content is scaled by 1/width)"
    )
    parser.add_argument(
        "--dictionary",
        choices=sorted(ARUCO_DICTIONARIES),
        default="4x4_50",
        help="ArUco dictionary"
    )
    parser.add_argument(
        "--threshold",
        type=int,
        default=100,
        help="Manual labeling threshold (0-255)"
    )
    parser.add_argument(
        "--threshold-mode",
        choices=[m.name.lower() for m in ThresholdMode],
        default="auto_adaptive",
        help="Threshold mode"
    )
    parser.add_argument(
        "--resolution",
        choices=[r.name.lower() for r in TrackerResolution],
        default="full",
        help="Tracker image resolution"
    )
    parser.add_argument(
        "--alternate-frames",
        action="store_true",
        help="Only track every other frame"
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Loop video files when they reach the end"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        source = int(args.source)
    except ValueError:
        source = args.source  # Treat as file path

    config = SessionConfig(
        threshold=args.threshold,
        threshold_mode=ThresholdMode[args.threshold_mode.upper()],
        detection_mode=DetectionMode.MATRIX,
        tracker_resolution=TrackerResolution[args.resolution.upper()],
        track_alternate_frames=args.alternate_frames
    )

    print("\n" + "=" * 60)
    print("  ARTrack Marker Tracking Demo")
    print("=" * 60)
    print(f"  Source: {source}")
    print(f"  Calibration: {args.calibration}")
    print(f"  Markers: {', '.join(str(m) for m in args.markers)}")
    print(f"  Dictionary: {args.dictionary}")
    print("=" * 60 + "\n")

    demo = ArTrackDemo(
        source=source,
        calibration=args.calibration,
        marker_ids=args.markers,
        marker_width=args.width,
        dictionary=ARUCO_DICTIONARIES[args.dictionary],
        config=config,
        loop=args.loop
    )
    demo.run()


if __name__ == "__main__":
    main()
