"""
ARTrack Pose Transform - Tracking Space to Scene Space

The tracking library reports each marker as a camera-relative transform
whose marker-local Z axis is the marker plane's normal. The scene wants a
Y-up world with content standing on the marker. Two fixed corrections get
us there:

    1. BASIS CORRECTION (orientation dependent)
         landscape: inverse(R(180, 0, 0))        camera flip
         portrait:  inverse(R(180, 0, 90))       camera flip + 90° roll
       premultiplied onto the raw pose.

    2. MARKER UP-AXIS CORRECTION
         R(90, 0, 0) applied in marker-local space (Z-up -> Y-up).

Euler angles use the engine convention: degrees, R = Rz · Ry · Rx.

Known limitation: decomposition at gimbal lock (pitch = ±90°) is not
unique; like the engine's own matrix-to-Euler routine we pin Z to 0 there
and make no further attempt to stabilise it.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import numpy as np


class Orientation(Enum):
    """Device orientation derived from the video frame aspect ratio."""
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"

    @classmethod
    def from_frame_size(cls, width: float, height: float) -> "Orientation":
        return cls.PORTRAIT if width < height else cls.LANDSCAPE


def euler_to_matrix(ex: float, ey: float, ez: float) -> np.ndarray:
    """Build a 4x4 rotation from XYZ Euler angles in degrees (R = Rz · Ry · Rx)."""
    x, y, z = math.radians(ex), math.radians(ey), math.radians(ez)
    cx, sx = math.cos(x), math.sin(x)
    cy, sy = math.cos(y), math.sin(y)
    cz, sz = math.cos(z), math.sin(z)

    rx = np.array([[1, 0, 0], [0, cx, -sx], [0, sx, cx]])
    ry = np.array([[cy, 0, sy], [0, 1, 0], [-sy, 0, cy]])
    rz = np.array([[cz, -sz, 0], [sz, cz, 0], [0, 0, 1]])

    m = np.eye(4)
    m[:3, :3] = rz @ ry @ rx
    return m


def matrix_to_euler(matrix: np.ndarray) -> np.ndarray:
    """
    Extract XYZ Euler angles in degrees from a 4x4 (or 3x3) transform.

    Scale is divided out per axis first. A zero-scale matrix yields zeros.
    """
    m = np.asarray(matrix, dtype=np.float64)[:3, :3]
    scale = np.linalg.norm(m, axis=0)
    if np.any(scale == 0):
        return np.zeros(3)
    r = m / scale

    y = math.asin(float(np.clip(-r[2, 0], -1.0, 1.0)))
    half_pi = math.pi * 0.5
    if y < half_pi:
        if y > -half_pi:
            x = math.atan2(r[2, 1], r[2, 2])
            z = math.atan2(r[1, 0], r[0, 0])
        else:
            # Not a unique solution
            z = 0.0
            x = -math.atan2(r[0, 1], r[1, 1])
    else:
        # Not a unique solution
        z = 0.0
        x = math.atan2(r[0, 1], r[1, 1])

    return np.degrees(np.array([x, y, z]))


def as_pose_matrix(raw) -> np.ndarray:
    """
    Normalise a tracking-library pose to a row-major 4x4 matrix.

    Accepts:
        - 4x4 matrix
        - 3x4 matrix (bottom row [0, 0, 0, 1] is appended)
        - flat 16 values in column-major order, as GL-style libraries emit
    """
    m = np.asarray(raw, dtype=np.float64)
    if m.shape == (16,):
        return m.reshape(4, 4).T.copy()
    if m.shape == (3, 4):
        return np.vstack([m, [0.0, 0.0, 0.0, 1.0]])
    if m.shape == (4, 4):
        return m.copy()
    raise ValueError(f"Unsupported pose matrix shape {m.shape}")


@dataclass(frozen=True)
class Pose:
    """Scene-space pose of a marker."""
    position: np.ndarray      # (3,) translation
    euler_angles: np.ndarray  # (3,) degrees, XYZ
    matrix: np.ndarray        # (4, 4) composed transform including the up-axis fix


class PoseTransform:
    """
    Converts raw marker poses into scene-space position and rotation.

    Stateless: every call is a pure function of its inputs. The correction
    matrices are computed once per instance.
    """

    MARKER_UP_FIX = (90.0, 0.0, 0.0)
    LANDSCAPE_BASIS = (180.0, 0.0, 0.0)
    PORTRAIT_BASIS = (180.0, 0.0, 90.0)

    def __init__(self):
        self._landscape = np.linalg.inv(euler_to_matrix(*self.LANDSCAPE_BASIS))
        self._portrait = np.linalg.inv(euler_to_matrix(*self.PORTRAIT_BASIS))
        self._up_fix = euler_to_matrix(*self.MARKER_UP_FIX)

    def basis_correction(self, orientation: Orientation) -> np.ndarray:
        if orientation == Orientation.PORTRAIT:
            return self._portrait.copy()
        return self._landscape.copy()

    def correct(self, raw_matrix, orientation: Orientation) -> Pose:
        """
        Map a raw tracking-library pose to scene space.

        Args:
            raw_matrix: 4x4, 3x4 or flat column-major 16-element pose
            orientation: Current device orientation

        Returns:
            Pose with translation taken after the basis correction and
            Euler angles taken after the marker up-axis correction
        """
        marker = as_pose_matrix(raw_matrix)
        composed = self.basis_correction(orientation) @ marker
        position = composed[:3, 3].copy()

        # Local rotation about X leaves the translation untouched
        final = composed @ self._up_fix
        return Pose(
            position=position,
            euler_angles=matrix_to_euler(final),
            matrix=final
        )


def uniform_scale(width: float) -> Optional[Tuple[float, float, float]]:
    """Scale that normalises a marker of physical ``width`` to one unit; None disables."""
    if width <= 0:
        return None
    s = 1.0 / width
    return (s, s, s)
