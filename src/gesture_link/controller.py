"""Recognition controller: per-frame training, classification and transmission.

Each frame runs strictly in order: normalize (or estimate finger bends),
classify, gate on confidence, then offer the encoded message to the
transport gateway.

States per mode:

    IDLE --hold + label text + hand--> TRAINING --release--> IDLE
    IDLE --labels exist + hand, not holding--> CLASSIFYING

Switching modes returns to IDLE and suspends transmission.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

import numpy as np

from gesture_link.bend import FingerBends, finger_bends
from gesture_link.config import SessionConfig
from gesture_link.knn import (
    ClassificationResult,
    ClassifierQueryError,
    ExampleStore,
    Label,
    NoLabelsError,
)
from gesture_link.landmarks import normalize
from gesture_link.protocol import ProtocolVariant, encode_fingers, encode_gesture
from gesture_link.transport import TransportGateway

logger = logging.getLogger("gesture_link.controller")


class Mode(Enum):
    GESTURE_KNN = "gesture_knn"
    FINGER_SYNC = "finger_sync"


class ControllerState(Enum):
    IDLE = "idle"
    TRAINING = "training"
    CLASSIFYING = "classifying"


@dataclass
class FrameReport:
    """What happened in one frame."""
    state: ControllerState
    mode: Mode
    hand_present: bool
    status: str
    result: Optional[ClassificationResult] = None
    bends: Optional[FingerBends] = None
    message: Optional[str] = None
    accepted: bool = False
    sent: bool = False

    def to_dict(self) -> dict:
        data = {
            "state": self.state.value,
            "mode": self.mode.value,
            "hand_present": self.hand_present,
            "status": self.status,
            "message": self.message,
            "accepted": self.accepted,
            "sent": self.sent,
        }
        if self.result is not None:
            data["result"] = {
                "label": self.result.label,
                "name": self.result.name,
                "confidence": self.result.confidence,
                "confidences": self.result.confidences,
            }
        if self.bends is not None:
            data["bends"] = self.bends.to_dict()
        return data


@dataclass
class ControllerStats:
    frames: int = 0
    hands: int = 0
    examples_added: int = 0
    classifications: int = 0
    accepted: int = 0
    rejected: int = 0
    query_failures: int = 0
    messages_offered: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class RecognitionController:
    """Mode-scoped frame loop between the pose estimator and the gateway.

    `process_frame` is synchronous. When a gateway is attached it must be
    called from the event loop, because accepted frames schedule a write.

    Usage:
        controller = RecognitionController(gateway=TransportGateway(link))
        await controller.connect()
        controller.hold_train(True, "fist")
        controller.process_frame(landmarks)   # adds an example
        controller.hold_train(False)
        controller.start_transmission()
        controller.process_frame(landmarks)   # classifies and sends "IDfist"
    """

    def __init__(
        self,
        store: Optional[ExampleStore] = None,
        gateway: Optional[TransportGateway] = None,
        config: Optional[SessionConfig] = None,
    ):
        self.config = config or SessionConfig()
        self.store = store or ExampleStore(k=self.config.k)
        self.gateway = gateway

        self.mode = Mode(self.config.mode)
        self.state = ControllerState.IDLE
        self.tracking = False
        self.label_text = ""
        self.finger_protocol = ProtocolVariant(self.config.finger_protocol)
        self.gesture_protocol = ProtocolVariant(self.config.gesture_protocol)
        self.bends = FingerBends()
        self.last_result: Optional[ClassificationResult] = None
        self.stats = ControllerStats()

        self._hold = False
        self._features: Optional[np.ndarray] = None  # last frame's features
        self._feature_config = self.config.feature_config()
        self._background: set[asyncio.Task] = set()

    @property
    def flip(self) -> bool:
        return self.config.flip

    @property
    def holding(self) -> bool:
        """Whether the hold-to-train signal is pressed."""
        return self._hold

    @property
    def threshold(self) -> float:
        return self.config.confidence_threshold

    # --- per frame ---

    def process_frame(self, landmarks=None) -> FrameReport:
        """Run one frame. `None` means no hand was detected this frame."""
        self.stats.frames += 1

        if landmarks is None:
            self._features = None
            if self.state != ControllerState.TRAINING:
                self.state = ControllerState.IDLE
            return self._report(False, "no hand")

        self.stats.hands += 1
        try:
            if self.mode == Mode.FINGER_SYNC:
                return self._finger_frame(landmarks)
            features = normalize(landmarks, self._feature_config)
        except ValueError as e:
            logger.warning("Skipping frame with invalid landmarks: %s", e)
            self._features = None
            return self._report(False, "invalid landmarks")

        self._features = features

        if self._hold and self.label_text:
            return self._train_frame(features)
        return self._classify_frame(features)

    def _train_frame(self, features: np.ndarray) -> FrameReport:
        label = self.label_text
        try:
            self.store.add_example(features, label)
        except ValueError as e:
            logger.warning("Example for %s rejected: %s", label, e)
            self.state = ControllerState.IDLE
            return self._report(True, "example rejected")
        self.state = ControllerState.TRAINING
        self.stats.examples_added += 1
        return self._report(True, f"training {label}")

    def _classify_frame(self, features: np.ndarray) -> FrameReport:
        if self.store.num_labels == 0:
            self.state = ControllerState.IDLE
            return self._report(True, "no labels")

        self.state = ControllerState.CLASSIFYING
        try:
            result = self.store.classify(features)
        except (NoLabelsError, ClassifierQueryError) as e:
            self.stats.query_failures += 1
            logger.warning("Classification failed: %s", e)
            return self._report(True, "query failed")

        self.stats.classifications += 1
        self.last_result = result
        message = encode_gesture(result.label, self.gesture_protocol)

        if result.confidence <= self.threshold:
            self.stats.rejected += 1
            return self._report(True, "below threshold", result=result, message=message)

        self.stats.accepted += 1
        sent = self._transmit(message)
        return self._report(
            True, f"classified {result.label}",
            result=result, message=message, accepted=True, sent=sent,
        )

    def _finger_frame(self, landmarks) -> FrameReport:
        self.state = ControllerState.CLASSIFYING
        self.bends = finger_bends(landmarks, self.config.bend_straight, self.config.bend_bent)
        message = encode_fingers(
            self.bends.as_list(), self.finger_protocol, self.config.digital_threshold
        )
        sent = self._transmit(message)
        return self._report(
            True, "fingers", bends=self.bends, message=message, accepted=True, sent=sent,
        )

    def _transmit(self, message: str) -> bool:
        if not self.tracking or self.gateway is None:
            return False
        self.stats.messages_offered += 1
        return self.gateway.offer(message)

    def _report(self, hand_present: bool, status: str, **kwargs) -> FrameReport:
        return FrameReport(
            state=self.state,
            mode=self.mode,
            hand_present=hand_present,
            status=status,
            **kwargs,
        )

    # --- control surface ---

    def hold_train(self, active: bool, label: Optional[str] = None):
        """Press or release the hold-to-train signal."""
        if label is not None:
            self.set_label_text(label)
        self._hold = bool(active)
        if not self._hold and self.state == ControllerState.TRAINING:
            self.state = ControllerState.IDLE

    def set_label_text(self, text: str):
        self.label_text = (text or "").strip()

    def add_example(self, label: str, name: Optional[str] = None) -> bool:
        """Add one example for `label` from the last frame's hand.

        Returns False when no hand is available.
        """
        label = (label or "").strip()
        if not label or self._features is None or self.mode != Mode.GESTURE_KNN:
            return False
        self.store.add_example(self._features, label, name=name)
        self.stats.examples_added += 1
        logger.info("Added example for %s (%d total)", label, self.store.count_by_label()[label])
        return True

    def remove_label(self, label: str) -> int:
        removed = self.store.clear_label(label)
        if self.last_result is not None and self.last_result.label == label:
            self.last_result = None
        return removed

    def reset_all(self):
        """Forget every label and example."""
        self.store.clear_all()
        self.last_result = None
        if self.state != ControllerState.TRAINING:
            self.state = ControllerState.IDLE
        logger.info("All labels cleared")

    def labels(self) -> list[Label]:
        return self.store.labels()

    def set_mode(self, mode: Mode | str):
        """Switch mode. Always returns to IDLE and suspends transmission."""
        mode = Mode(mode)
        if mode == self.mode:
            return
        was_tracking = self.tracking
        self.mode = mode
        self.config.mode = mode.value
        self.state = ControllerState.IDLE
        self.tracking = False
        self._hold = False
        self._features = None
        logger.info("Mode -> %s (transmission suspended)", mode.value)
        if was_tracking:
            self._schedule_stop()

    def set_protocol_variant(self, variant: ProtocolVariant | str):
        variant = ProtocolVariant(variant)
        if variant.is_finger:
            self.finger_protocol = variant
            self.config.finger_protocol = variant.value
        else:
            self.gesture_protocol = variant
            self.config.gesture_protocol = variant.value
        logger.info("Protocol -> %s", variant.value)

    def set_threshold(self, threshold: float):
        self.config.update(confidence_threshold=float(threshold))

    def start_transmission(self):
        self.tracking = True
        logger.info("Transmission started")

    def stop_transmission(self):
        """Halt transmission and tell the peripheral to stop."""
        self.tracking = False
        logger.info("Transmission stopped")
        self._schedule_stop()

    def set_flip(self, flip: bool):
        self.config.flip = bool(flip)
        self._feature_config = self.config.feature_config()

    async def connect(self) -> bool:
        if self.gateway is None:
            return False
        return await self.gateway.connect()

    async def disconnect(self):
        if self.gateway is not None:
            await self.gateway.disconnect()

    def _schedule_stop(self):
        if self.gateway is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; stop message not sent")
            return
        task = loop.create_task(self.gateway.send_stop())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self):
        """Wait for scheduled stop messages and the in-flight write."""
        if self._background:
            await asyncio.gather(*self._background)
        if self.gateway is not None:
            await self.gateway.drain()

    def status(self) -> dict:
        return {
            "mode": self.mode.value,
            "state": self.state.value,
            "tracking": self.tracking,
            "flip": self.flip,
            "label_text": self.label_text,
            "threshold": self.threshold,
            "finger_protocol": self.finger_protocol.value,
            "gesture_protocol": self.gesture_protocol.value,
            "labels": [lbl.to_dict() for lbl in self.labels()],
            "bends": self.bends.to_dict(),
            "stats": self.stats.to_dict(),
            "link": self.gateway.to_dict() if self.gateway else None,
        }
