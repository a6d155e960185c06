"""Finger bend estimation from joint triplets.

Each finger is reduced to the angle at its middle joint, measured in the
image plane only. Monocular depth estimates are too noisy to help here,
so z is ignored.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from gesture_link.landmarks import (
    INDEX_MCP, INDEX_PIP, INDEX_TIP,
    MIDDLE_MCP, MIDDLE_PIP, MIDDLE_TIP,
    PINKY_MCP, PINKY_PIP, PINKY_TIP,
    RING_MCP, RING_PIP, RING_TIP,
    THUMB_IP, THUMB_MCP, THUMB_TIP,
    as_landmarks,
)

# (base, middle, tip) landmark indices per finger
FINGER_JOINTS = {
    "thumb": (THUMB_MCP, THUMB_IP, THUMB_TIP),
    "index": (INDEX_MCP, INDEX_PIP, INDEX_TIP),
    "middle": (MIDDLE_MCP, MIDDLE_PIP, MIDDLE_TIP),
    "ring": (RING_MCP, RING_PIP, RING_TIP),
    "pinky": (PINKY_MCP, PINKY_PIP, PINKY_TIP),
}

STRAIGHT_DEGREES = 170.0
BENT_DEGREES = 80.0


def joint_angle(a, b, c) -> float:
    """Angle at vertex `b` between rays b→a and b→c, in degrees [0, 180]."""
    a, b, c = (np.asarray(p, dtype=np.float64)[:2] for p in (a, b, c))
    ba = a - b
    bc = c - b
    cos_angle = np.dot(ba, bc) / (np.linalg.norm(ba) * np.linalg.norm(bc) + 1e-8)
    return math.degrees(math.acos(float(np.clip(cos_angle, -1.0, 1.0))))


def _map_range(value, in_lo, in_hi, out_lo, out_hi, within_bounds=False):
    mapped = out_lo + (value - in_lo) * (out_hi - out_lo) / (in_hi - in_lo)
    if within_bounds:
        lo, hi = min(out_lo, out_hi), max(out_lo, out_hi)
        mapped = min(max(mapped, lo), hi)
    return mapped


def bend_angle(
    a,
    b,
    c,
    straight: float = STRAIGHT_DEGREES,
    bent: float = BENT_DEGREES,
) -> float:
    """Finger extension on a 0 (curled) to 100 (straight) scale.

    The joint angle is interpolated from [bent, straight] degrees onto
    [0, 100] with clamping, then clamped to [0, 100] a second time.
    """
    degrees = joint_angle(a, b, c)
    value = _map_range(degrees, bent, straight, 0.0, 100.0, within_bounds=True)
    return float(np.clip(value, 0.0, 100.0))


@dataclass
class FingerBends:
    """Per-finger extension values in [0, 100]."""
    thumb: float = 0.0
    index: float = 0.0
    middle: float = 0.0
    ring: float = 0.0
    pinky: float = 0.0

    def as_list(self) -> list[float]:
        return [self.thumb, self.index, self.middle, self.ring, self.pinky]

    def extended(self, threshold: float = 50.0) -> list[bool]:
        """Which fingers are above the extension threshold."""
        return [v > threshold for v in self.as_list()]

    def to_dict(self) -> dict[str, float]:
        return dict(zip(FINGER_JOINTS, self.as_list()))


def finger_bends(
    landmarks,
    straight: float = STRAIGHT_DEGREES,
    bent: float = BENT_DEGREES,
) -> FingerBends:
    """Compute the bend state of all five fingers from a Landmark Set."""
    points = as_landmarks(landmarks)
    values = {
        finger: bend_angle(points[i], points[j], points[k], straight, bent)
        for finger, (i, j, k) in FINGER_JOINTS.items()
    }
    return FingerBends(**values)
