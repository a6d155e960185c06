"""Line-oriented text protocol spoken to the peripheral.

One message per line, ASCII, newline-terminated. No checksum, no length
prefix and no acknowledgment:

    T80I10M90R5P0   analog finger extension (0-100 each)
    T1I0M1R1P0      digital finger state
    3               count of extended fingers
    IDfist / Gfist  gesture label
    stop            transmission halted
"""

from __future__ import annotations

from enum import Enum
from typing import Sequence

STOP_MESSAGE = "stop"
FINGER_PREFIXES = ("T", "I", "M", "R", "P")
DEFAULT_THRESHOLD = 50.0


class ProtocolError(ValueError):
    """Raised when a message cannot be put on the wire."""


class ProtocolVariant(Enum):
    # finger sync
    ANALOG = "analog"
    DIGITAL = "digital"
    COUNT = "count"
    # gesture labels
    ID = "id"
    GESTURE = "gesture"
    RAW = "raw"

    @property
    def is_finger(self) -> bool:
        return self in (ProtocolVariant.ANALOG, ProtocolVariant.DIGITAL, ProtocolVariant.COUNT)


def encode_fingers(
    values: Sequence[float],
    variant: ProtocolVariant = ProtocolVariant.ANALOG,
    threshold: float = DEFAULT_THRESHOLD,
) -> str:
    """Encode five finger values (thumb..pinky, 0-100) as a message."""
    if len(values) != len(FINGER_PREFIXES):
        raise ProtocolError(f"expected 5 finger values, got {len(values)}")

    if variant == ProtocolVariant.ANALOG:
        levels = [min(100, max(0, int(round(v)))) for v in values]
        return "".join(f"{p}{v}" for p, v in zip(FINGER_PREFIXES, levels))
    if variant == ProtocolVariant.DIGITAL:
        return "".join(f"{p}{int(v > threshold)}" for p, v in zip(FINGER_PREFIXES, values))
    if variant == ProtocolVariant.COUNT:
        return str(sum(1 for v in values if v > threshold))
    raise ProtocolError(f"{variant.value} is not a finger protocol")


def encode_gesture(label: str, variant: ProtocolVariant = ProtocolVariant.ID) -> str:
    """Encode a classified gesture label as a message."""
    if variant == ProtocolVariant.ID:
        return f"ID{label}"
    if variant == ProtocolVariant.GESTURE:
        return f"G{label}"
    if variant == ProtocolVariant.RAW:
        return str(label)
    raise ProtocolError(f"{variant.value} is not a gesture protocol")


def frame_message(message: str) -> bytes:
    """Terminate a message with a newline and encode it as ASCII bytes."""
    if "\n" in message or "\r" in message:
        raise ProtocolError(f"message contains a line break: {message!r}")
    try:
        return (message + "\n").encode("ascii")
    except UnicodeEncodeError as e:
        raise ProtocolError(f"message is not ASCII: {message!r}") from e
