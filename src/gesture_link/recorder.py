"""Landmark session recording and replay.

Recordings make sessions reproducible without a camera or a pose model:
each frame holds the landmark set the estimator produced (or nothing when
no hand was visible) and, optionally, the label the user was holding the
train button for.

The control server records frames arriving on `/ws/landmarks` between
`POST /api/recording/start` and `POST /api/recording/stop`;
`gesture-link replay` plays them back.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

from gesture_link.landmarks import as_landmarks

FORMAT_VERSION = 1


@dataclass
class RecordedFrame:
    """A single frame in a recording."""
    timestamp: float  # seconds from recording start
    landmarks: Optional[list[list[float]]]  # (21, 3) as nested lists, None if no hand
    train: Optional[str] = None  # label held for training during this frame


class LandmarkRecorder:
    """Records landmark sets to a JSON file.

    Usage:
        recorder = LandmarkRecorder()
        recorder.start()
        recorder.add_frame(landmarks)             # or None when no hand
        recorder.add_frame(landmarks, train="fist")
        recorder.save("session.json")
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._frames: list[RecordedFrame] = []
        self._start_time: Optional[float] = None
        self._recording = False

    def start(self):
        self._frames = []
        self._start_time = self._clock()
        self._recording = True

    def stop(self) -> int:
        """Stop recording. Returns number of frames captured."""
        self._recording = False
        return len(self._frames)

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    def add_frame(self, landmarks=None, train: Optional[str] = None):
        if not self._recording:
            return
        points = as_landmarks(landmarks).tolist() if landmarks is not None else None
        self._frames.append(RecordedFrame(
            timestamp=self._clock() - self._start_time,
            landmarks=points,
            train=train or None,
        ))

    def save(self, path: str | Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "version": FORMAT_VERSION,
            "frame_count": len(self._frames),
            "frames": [asdict(f) for f in self._frames],
        }
        with open(path, "w") as f:
            json.dump(data, f)


class LandmarkPlayer:
    """Iterates over a saved recording."""

    def __init__(self, frames: list[RecordedFrame]):
        self._frames = frames

    @classmethod
    def load(cls, path: str | Path) -> LandmarkPlayer:
        with open(path) as f:
            data = json.load(f)

        version = data.get("version", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise ValueError(f"{path}: unsupported recording version {version}")

        frames = [
            RecordedFrame(
                timestamp=float(f.get("timestamp", i)),
                landmarks=f.get("landmarks"),
                train=f.get("train"),
            )
            for i, f in enumerate(data["frames"])
        ]
        return cls(frames)

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def duration(self) -> float:
        if not self._frames:
            return 0.0
        return self._frames[-1].timestamp

    @property
    def labels(self) -> list[str]:
        """Training labels in order of first appearance."""
        seen: dict[str, None] = {}
        for f in self._frames:
            if f.train:
                seen.setdefault(f.train)
        return list(seen)

    def play(self) -> Iterator[RecordedFrame]:
        """Yield frames with landmarks converted back to arrays."""
        for frame in self._frames:
            yield RecordedFrame(
                timestamp=frame.timestamp,
                landmarks=np.array(frame.landmarks, dtype=np.float64) if frame.landmarks is not None else None,
                train=frame.train,
            )
