"""Landmark normalization: raw 21-point hand landmarks to pose-invariant features."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

# Hand landmark indices (MediaPipe / handpose layout)
WRIST = 0
THUMB_CMC, THUMB_MCP, THUMB_IP, THUMB_TIP = 1, 2, 3, 4
INDEX_MCP, INDEX_PIP, INDEX_DIP, INDEX_TIP = 5, 6, 7, 8
MIDDLE_MCP, MIDDLE_PIP, MIDDLE_DIP, MIDDLE_TIP = 9, 10, 11, 12
RING_MCP, RING_PIP, RING_DIP, RING_TIP = 13, 14, 15, 16
PINKY_MCP, PINKY_PIP, PINKY_DIP, PINKY_TIP = 17, 18, 19, 20

NUM_LANDMARKS = 21


class NormalizationMode(Enum):
    """How much of the hand pose is factored out of the features."""
    TRANSLATION = "translation"  # wrist-relative only; NOT scale/rotation invariant
    SCALE = "scale"              # translation + hand-size scaling
    FULL = "full"                # translation + scaling + in-plane rotation


class ScaleReference(Enum):
    """Which distance is used as the hand-size reference."""
    MAX_DISTANCE = "max_distance"  # farthest landmark from the wrist
    PALM = "palm"                  # wrist to middle-finger base


@dataclass(frozen=True)
class FeatureConfig:
    """Feature extraction parameters.

    `dims` and `include_wrist` decide the vector length:
    (21 if include_wrist else 20) * dims.
    """
    mode: NormalizationMode = NormalizationMode.SCALE
    scale_reference: Optional[ScaleReference] = None
    dims: int = 2
    include_wrist: bool = False
    min_scale: float = 1.0
    mirror: bool = False

    def __post_init__(self):
        if self.dims not in (2, 3):
            raise ValueError(f"dims must be 2 or 3, got {self.dims}")
        if self.min_scale <= 0:
            raise ValueError("min_scale must be positive")

    @property
    def reference(self) -> ScaleReference:
        """Scale reference in effect (mode default when unset)."""
        if self.scale_reference is not None:
            return self.scale_reference
        if self.mode == NormalizationMode.FULL:
            return ScaleReference.PALM
        return ScaleReference.MAX_DISTANCE

    @property
    def length(self) -> int:
        return feature_length(self.dims, self.include_wrist)


def feature_length(dims: int = 2, include_wrist: bool = False) -> int:
    """Number of scalars in a feature vector for the given layout."""
    points = NUM_LANDMARKS if include_wrist else NUM_LANDMARKS - 1
    return points * dims


def as_landmarks(landmarks) -> np.ndarray:
    """Validate a Landmark Set and return it as a (21, 3) float64 array.

    Accepts nested sequences or arrays of shape (21, 3) or (21, 2);
    a missing z axis is filled with zeros.
    """
    try:
        arr = np.asarray(landmarks, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValueError(f"landmarks are not numeric: {e}") from e
    if arr.ndim != 2 or arr.shape[0] != NUM_LANDMARKS or arr.shape[1] not in (2, 3):
        raise ValueError(
            f"expected landmarks of shape (21, 3) or (21, 2), got {arr.shape}"
        )
    if not np.all(np.isfinite(arr)):
        raise ValueError("landmarks contain non-finite coordinates")
    if arr.shape[1] == 2:
        arr = np.hstack([arr, np.zeros((NUM_LANDMARKS, 1))])
    return arr


def hand_scale(centered: np.ndarray, reference: ScaleReference, min_scale: float = 1.0) -> float:
    """Hand-size reference of wrist-centered landmarks, floored at `min_scale`.

    A degenerate hand (all points on the wrist, or the middle-finger base on
    top of it) falls back to the floor.
    """
    if reference == ScaleReference.PALM:
        scale = float(np.linalg.norm(centered[MIDDLE_MCP]))
    else:
        scale = float(np.max(np.linalg.norm(centered, axis=1)))
    return max(scale, min_scale)


def palm_angle(centered: np.ndarray) -> Optional[float]:
    """Angle (radians) of the wrist→middle-base vector from straight up.

    Image y grows downward, so "up" is (0, -1). Returns None when the
    vector has no length.
    """
    vx, vy = float(centered[MIDDLE_MCP, 0]), float(centered[MIDDLE_MCP, 1])
    if math.hypot(vx, vy) < 1e-9:
        return None
    return math.atan2(vx, -vy)


def rotate_upright(centered: np.ndarray) -> np.ndarray:
    """Rotate points in the image plane so the palm vector points up."""
    angle = palm_angle(centered)
    if angle is None:
        return centered
    c, s = math.cos(angle), math.sin(angle)
    rotation = np.array([[c, s], [-s, c]])
    rotated = centered.copy()
    rotated[:, :2] = centered[:, :2] @ rotation.T
    return rotated


def normalize(landmarks, config: FeatureConfig = FeatureConfig()) -> np.ndarray:
    """Map a Landmark Set to a fixed-length feature vector.

    Steps: wrist-centering, optional horizontal mirror, hand-size scaling
    (SCALE/FULL) and palm alignment (FULL). The output slot of each
    landmark axis is stable across calls.

    Args:
        landmarks: 21 points as (x, y, z) in camera pixel space.
        config: Feature layout and normalization mode.

    Returns:
        Feature vector, shape (config.length,).
    """
    points = as_landmarks(landmarks)[:, :config.dims]
    centered = points - points[WRIST]

    if config.mirror:
        centered[:, 0] = -centered[:, 0]

    if config.mode != NormalizationMode.TRANSLATION:
        centered = centered / hand_scale(centered, config.reference, config.min_scale)

    if config.mode == NormalizationMode.FULL:
        centered = rotate_upright(centered)

    if not config.include_wrist:
        centered = centered[1:]

    return centered.reshape(-1)
