"""gesture-link - Teach a hand gesture in seconds, drive a peripheral with it."""

__version__ = "0.1.0"

from gesture_link.landmarks import FeatureConfig, NormalizationMode, ScaleReference, normalize
from gesture_link.bend import FingerBends, bend_angle, finger_bends
from gesture_link.knn import ClassificationResult, ExampleStore, Label, NoLabelsError
from gesture_link.protocol import ProtocolVariant, encode_fingers, encode_gesture
from gesture_link.transport import LinkState, MemoryLink, TransportGateway, WebSocketLink
from gesture_link.controller import ControllerState, FrameReport, Mode, RecognitionController
from gesture_link.config import SessionConfig
from gesture_link.recorder import LandmarkPlayer, LandmarkRecorder
