"""Session configuration, loadable from YAML."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Optional

import yaml

from gesture_link.landmarks import FeatureConfig, NormalizationMode, ScaleReference
from gesture_link.protocol import ProtocolVariant

logger = logging.getLogger("gesture_link.config")


@dataclass
class SessionConfig:
    """Tunable parameters of a recognition session.

    Usage:
        config = SessionConfig.from_yaml("session.yml")
        config.update(confidence_threshold=0.8)
    """
    mode: str = "gesture_knn"
    normalization: str = "scale"
    scale_reference: Optional[str] = None
    dims: int = 2
    include_wrist: bool = False
    min_scale: float = 1.0
    k: int = 3
    confidence_threshold: float = 0.85
    finger_protocol: str = "analog"
    gesture_protocol: str = "id"
    digital_threshold: float = 50.0
    bend_straight: float = 170.0
    bend_bent: float = 80.0
    send_interval: float = 0.1
    flip: bool = True
    link_url: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise ValueError on out-of-range or unknown values."""
        NormalizationMode(self.normalization)
        if self.scale_reference is not None:
            ScaleReference(self.scale_reference)
        if not ProtocolVariant(self.finger_protocol).is_finger:
            raise ValueError(f"{self.finger_protocol} is not a finger protocol")
        if ProtocolVariant(self.gesture_protocol).is_finger:
            raise ValueError(f"{self.gesture_protocol} is not a gesture protocol")
        if self.mode not in ("gesture_knn", "finger_sync"):
            raise ValueError(f"unknown mode: {self.mode}")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")
        if self.k < 1:
            raise ValueError("k must be at least 1")
        if self.send_interval < 0:
            raise ValueError("send_interval must not be negative")
        if self.bend_straight <= self.bend_bent:
            raise ValueError("bend_straight must be greater than bend_bent")
        self.feature_config()

    def feature_config(self, mirror: Optional[bool] = None) -> FeatureConfig:
        return FeatureConfig(
            mode=NormalizationMode(self.normalization),
            scale_reference=ScaleReference(self.scale_reference) if self.scale_reference else None,
            dims=self.dims,
            include_wrist=self.include_wrist,
            min_scale=self.min_scale,
            mirror=self.flip if mirror is None else mirror,
        )

    def update(self, **kwargs) -> SessionConfig:
        """Set known fields. Unknown keys are ignored.

        Nothing changes if the result would be invalid.
        """
        known = {f.name for f in fields(self)}
        changes = {}
        for k, v in kwargs.items():
            if k in known:
                changes[k] = v
            else:
                logger.warning("Ignoring unknown config key: %s", k)
        replace(self, **changes)  # raises ValueError via __post_init__
        for k, v in changes.items():
            setattr(self, k, v)
        return self

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> SessionConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        for k in sorted(unknown):
            logger.warning("Ignoring unknown config key: %s", k)
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_yaml(cls, path: str | Path) -> SessionConfig:
        """Load from a YAML file. Missing keys keep their defaults."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
        return cls.from_dict(data)

    def to_yaml(self, path: str | Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
