"""Internal data model."""

import enum
import math
from typing import FrozenSet, Optional, Tuple

import pydantic
from pydantic import BaseModel, field_validator, model_validator


class ActivityType(str, enum.Enum):
    """The closed set of activities a label can carry."""

    pass_ = "pass"
    shot = "shot"
    dribble = "dribble"
    touch = "touch"
    no_possession = "no_possession"


ACTIVITIES: Tuple[ActivityType, ...] = tuple(ActivityType)


class LabelSource(str, enum.Enum):
    """Where a label came from."""

    inferred = "inferred"
    human_corrected = "human_corrected"


class DeviceState(str, enum.Enum):
    """Connection states of a paired wearable."""

    discovered = "discovered"
    pairing = "pairing"
    connected = "connected"
    reconnecting = "reconnecting"
    disconnected = "disconnected"
    unpaired = "unpaired"


class Capability(str, enum.Enum):
    """Sensors a device can offer."""

    motion = "motion"
    gyroscope = "gyroscope"
    heart_rate = "heart_rate"
    location = "location"


class Device(BaseModel):
    """A wearable known to the connection manager.

    Instances are snapshots; the manager replaces them on every transition.
    """

    model_config = pydantic.ConfigDict(frozen=True)

    device_id: str
    state: DeviceState = DeviceState.discovered
    last_seen: float = 0.0
    capabilities: FrozenSet[Capability] = frozenset({Capability.motion})


class SensorSample(BaseModel):
    """A single timestamped reading of all channels of a device."""

    model_config = pydantic.ConfigDict(frozen=True)

    device_id: str
    timestamp: float
    channels: Tuple[float, ...]
    sequence: int = pydantic.Field(ge=0)

    @field_validator("timestamp")
    def validate_timestamp(cls, v: float) -> float:
        """Validate that the timestamp is a finite, non-negative number.

        Args:
            cls: The class.
            v: The timestamp to validate.

        Returns:
            v: The timestamp if it is valid.

        Raises:
            ValueError: If the timestamp is negative, NaN or infinite.
        """
        if not math.isfinite(v) or v < 0:
            raise ValueError("timestamp must be finite and non-negative")
        return v

    @field_validator("channels")
    def validate_channels(cls, v: Tuple[float, ...]) -> Tuple[float, ...]:
        """Validate that at least one finite channel reading is present.

        Args:
            cls: The class.
            v: The channel readings to validate.

        Returns:
            v: The channel readings if they are valid.

        Raises:
            ValueError: If there are no readings or a reading is not finite.
        """
        if not v:
            raise ValueError("channels must not be empty")
        if not all(math.isfinite(value) for value in v):
            raise ValueError("channel readings must be finite")
        return v


class ActivityLabel(BaseModel):
    """An activity applied to the half-open interval [start, end)."""

    model_config = pydantic.ConfigDict(frozen=True)

    activity: ActivityType
    start: float
    end: float
    source: LabelSource = LabelSource.inferred
    confidence: Optional[float] = pydantic.Field(default=None, ge=0, le=1)

    @model_validator(mode="after")
    def validate_interval(self) -> "ActivityLabel":
        """Validate that the interval is not empty.

        Raises:
            ValueError: If start is not strictly before end.
        """
        if not self.start < self.end:
            raise ValueError(
                f"label interval [{self.start}, {self.end}) must have start < end"
            )
        return self

    @property
    def duration(self) -> float:
        """Length of the interval in seconds."""
        return self.end - self.start

    def overlaps(self, other: "ActivityLabel") -> bool:
        """Whether the two half-open intervals share any time."""
        return self.start < other.end and other.start < self.end

    def clip(self, start: float, end: float) -> Optional["ActivityLabel"]:
        """Restrict the label to [start, end).

        Returns:
            A copy of the label on the intersection, or None if the intersection
            is empty.
        """
        new_start = max(self.start, start)
        new_end = min(self.end, end)
        if new_start >= new_end:
            return None
        return self.model_copy(update={"start": new_start, "end": new_end})
