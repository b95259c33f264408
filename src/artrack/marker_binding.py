"""
ARTrack Marker Binding - One Physical Marker, One Scene Subtree

A binding listens to a TrackingSession, keeps the detections that belong
to its marker and turns them into scene transforms:

    DetectionEvent ──(type, id) filter──→ PoseTransform.correct()
                                              │
                         root node position / rotation / 1/width scale
                                              │
                                   VisibilityTracker.on_detected()

Template markers get their id from the library asynchronously (a Future
polled on the tick thread). Matrix markers know their id up front.

At creation the binding takes one render-layer bit, stamps it on its
subtree (including the optional ground shadow) and hides its children
until the marker is first seen.
"""

import time
import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Optional, Callable

from .layers import LayerAllocator
from .pose_transform import PoseTransform, uniform_scale
from .scene_graph import SceneGraph, RenderComponent
from .tracking_session import (
    DetectionEvent,
    DetectionSink,
    MarkerType,
    TrackingLibrary,
    TrackingSession,
)
from .visibility import VisibilityTracker


@dataclass
class ShadowMaterial:
    """
    Flat black material blended over the camera feed.

    Alpha is ``opacity * (1 - diffuse light)``, so the quad only darkens
    where scene lights are blocked.
    """
    opacity: float = 0.5
    diffuse: tuple = (0.0, 0.0, 0.0)
    blend_type: str = "normal"
    depth_write: bool = False
    use_fog: bool = False
    use_skybox: bool = False
    version: int = 0

    def update(self):
        self.version += 1


class ShadowMaterialRegistry:
    """Owns the one shadow material shared by every binding of a scene."""

    def __init__(self):
        self._material: Optional[ShadowMaterial] = None

    def get(self, strength: float) -> ShadowMaterial:
        """Return the shared material, creating it with ``strength`` on first use."""
        if self._material is None:
            self._material = ShadowMaterial(opacity=_clamp_unit(strength))
            self._material.update()
        return self._material

    def set_strength(self, strength: float):
        if self._material is None:
            return
        self._material.opacity = _clamp_unit(strength)
        self._material.update()

    @property
    def material(self) -> Optional[ShadowMaterial]:
        return self._material


def _clamp_unit(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


@dataclass
class MarkerConfig:
    """Per-marker settings."""
    pattern_url: Optional[str] = None  # Template pattern; None = matrix marker
    matrix_id: int = 0
    width: float = 1.0
    deactivation_time: float = 0.25
    shadow: bool = True
    shadow_strength: float = 0.5


class MarkerBinding(DetectionSink):
    """
    Binds one marker to a scene subtree.

    Usage:
        layers = LayerAllocator()
        shadows = ShadowMaterialRegistry()
        binding = MarkerBinding(graph, marker_node, layers, shadows,
                                MarkerConfig(matrix_id=5))
        binding.attach(session)

        # per tick
        session.update()
        binding.update()
    """

    SHADOW_NAME = "Shadow"
    SHADOW_SCALE = (5.0, 5.0, 5.0)

    def __init__(
        self,
        graph: SceneGraph,
        root: int,
        layers: LayerAllocator,
        shadows: ShadowMaterialRegistry,
        config: Optional[MarkerConfig] = None,
        pose_transform: Optional[PoseTransform] = None,
        clock: Callable[[], float] = time.perf_counter
    ):
        """
        Args:
            graph: Scene graph holding the marker subtree
            root: Node whose transform follows the marker
            layers: Allocator for this scene's render-layer bits
            shadows: Registry of the scene's shared shadow material
            config: Marker settings (defaults to matrix id 0)
            pose_transform: Pose corrector, shared between bindings if given
            clock: Time source for visibility ageing
        """
        self.graph = graph
        self.root = root
        self.config = config if config is not None else MarkerConfig()
        self._shadows = shadows
        self._pose = pose_transform if pose_transform is not None else PoseTransform()
        self._session: Optional[TrackingSession] = None

        self.marker_id: int = -1
        self._pending_id: Optional[Future] = None
        self.shadow_node: Optional[int] = None

        label = self.config.pattern_url or f"matrix-{self.config.matrix_id}"
        self.logger = logging.getLogger(f"MarkerBinding-{label}")

        self.visibility = VisibilityTracker(
            deactivation_time=self.config.deactivation_time,
            on_show=self.show_children,
            on_hide=self.hide_children,
            clock=clock,
            name=label
        )

        self.layer_mask = layers.allocate()
        if self.config.shadow:
            self._create_shadow()
        LayerAllocator.apply(self.layer_mask, graph, root)
        self.hide_children()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def attach(self, session: TrackingSession):
        if self._session is not None:
            self.detach()
        self._session = session
        session.subscribe(self)

    def detach(self):
        """Stop listening; content is hidden and the tracker reset."""
        if self._session is not None:
            self._session.unsubscribe(self)
            self._session = None
        self._pending_id = None
        self.visibility.reset()
        self.hide_children()

    @property
    def is_template(self) -> bool:
        return bool(self.config.pattern_url)

    def on_tracking_initialized(self, handle: TrackingLibrary):
        if not self.is_template:
            self.marker_id = self.config.matrix_id
            return

        self.marker_id = -1
        try:
            self._pending_id = handle.load_marker(self.config.pattern_url)
        except Exception as e:
            self.logger.error(f"Failed to register pattern {self.config.pattern_url}: {e}")
            self._pending_id = None
            return
        self._resolve_pending_id()

    def _resolve_pending_id(self):
        future = self._pending_id
        if future is None or not future.done():
            return
        self._pending_id = None
        if future.cancelled():
            self.logger.warning(f"Pattern registration cancelled: {self.config.pattern_url}")
            return
        error = future.exception()
        if error is not None:
            self.logger.error(f"Failed to register pattern {self.config.pattern_url}: {error}")
            return
        self.marker_id = int(future.result())
        self.logger.info(f"Pattern {self.config.pattern_url} registered as id {self.marker_id}")

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def accepts(self, event: DetectionEvent) -> bool:
        if self.marker_id < 0:
            return False
        expected = MarkerType.PATTERN if self.is_template else MarkerType.BARCODE
        return event.marker_type == expected and event.marker_id == self.marker_id

    def on_marker_detected(self, event: DetectionEvent):
        self._resolve_pending_id()
        if not self.accepts(event):
            return

        pose = self._pose.correct(event.matrix, event.orientation)
        self.graph.set_position(self.root, pose.position)
        self.graph.set_euler_angles(self.root, pose.euler_angles)

        scale = uniform_scale(self.config.width)
        if scale is not None:
            self.graph.set_local_scale(self.root, scale)

        if self.visibility.on_detected():
            self.logger.debug(f"Marker {self.marker_id} found")

    def update(self, now: Optional[float] = None) -> bool:
        """
        Per-tick housekeeping.

        Returns:
            True if the marker was hidden on this tick
        """
        self._resolve_pending_id()
        hidden = self.visibility.tick(now)
        if hidden:
            self.logger.debug(f"Marker {self.marker_id} lost")
        return hidden

    # ------------------------------------------------------------------
    # Subtree visibility
    # ------------------------------------------------------------------

    def show_children(self):
        self.graph.set_children_enabled(self.root, True)

    def hide_children(self):
        self.graph.set_children_enabled(self.root, False)

    @property
    def active(self) -> bool:
        return self.visibility.active

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def set_width(self, width: float):
        self.config.width = float(width)

    def set_deactivation_time(self, seconds: float):
        self.visibility.deactivation_time = seconds
        self.config.deactivation_time = self.visibility.deactivation_time

    def set_shadow(self, enabled: bool):
        self.config.shadow = bool(enabled)
        if enabled:
            self._create_shadow()
        else:
            self._destroy_shadow()

    def set_shadow_strength(self, strength: float):
        self.config.shadow_strength = _clamp_unit(strength)
        self._shadows.set_strength(strength)

    def _create_shadow(self):
        if self.shadow_node is not None:
            return
        material = self._shadows.get(self.config.shadow_strength)
        node = self.graph.create_node(
            self.SHADOW_NAME,
            parent=self.root,
            render=RenderComponent(
                mask=self.layer_mask,
                material=material,
                primitive="plane",
                cast_shadows=False
            ),
            enabled=self.active
        )
        self.graph.set_local_scale(node, self.SHADOW_SCALE)
        self.shadow_node = node

    def _destroy_shadow(self):
        if self.shadow_node is None:
            return
        self.graph.remove_subtree(self.shadow_node)
        self.shadow_node = None
