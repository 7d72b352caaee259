"""Decode raw device telemetry into sensor samples."""

import struct
from typing import Any, Mapping, Union

import pydantic

from kinepy.core import exceptions, models

HEADER = struct.Struct("<Id")

RawPayload = Union[bytes, bytearray, memoryview, Mapping[str, Any]]


class SampleCodec:
    """Stateless decoder for one device family.

    Two payload layouts are understood. Mappings carry the keys 'sequence',
    'timestamp' and 'channels'. Binary frames are a little-endian uint32
    sequence number and float64 timestamp followed by one float32 per channel.

    Attributes:
        channel_count: Number of channel readings every sample must carry.
    """

    def __init__(self, channel_count: int = 6) -> None:
        """Initialize the codec.

        Args:
            channel_count: Number of channel readings every sample must carry.

        Raises:
            ValueError: If channel_count is smaller than 1.
        """
        if channel_count < 1:
            raise ValueError("channel_count must be at least 1")
        self.channel_count = channel_count
        self._channels = struct.Struct(f"<{channel_count}f")

    @property
    def frame_size(self) -> int:
        """Size in bytes of a binary frame."""
        return HEADER.size + self._channels.size

    def decode(self, device_id: str, payload: RawPayload) -> models.SensorSample:
        """Decode a raw payload.

        Args:
            device_id: The device the payload was received from.
            payload: A binary frame or a mapping.

        Returns:
            The decoded sample.

        Raises:
            MalformedSampleError: If the payload does not match the schema.
        """
        if isinstance(payload, (bytes, bytearray, memoryview)):
            return self._decode_frame(device_id, bytes(payload))
        if isinstance(payload, Mapping):
            return self._decode_mapping(device_id, payload)
        raise exceptions.MalformedSampleError(
            f"Unsupported payload type {type(payload).__name__}.",
            device_id=device_id,
        )

    def encode(self, sample: models.SensorSample) -> bytes:
        """Encode a sample as a binary frame.

        Channels are stored as float32, so readings lose precision.

        Raises:
            ValueError: If the sample's channel count does not match the codec.
        """
        if len(sample.channels) != self.channel_count:
            raise ValueError(
                f"Expected {self.channel_count} channels, "
                f"got {len(sample.channels)}."
            )
        return HEADER.pack(sample.sequence, sample.timestamp) + self._channels.pack(
            *sample.channels
        )

    def _decode_frame(self, device_id: str, frame: bytes) -> models.SensorSample:
        if len(frame) != self.frame_size:
            raise exceptions.MalformedSampleError(
                f"Expected a frame of {self.frame_size} bytes, got {len(frame)}.",
                device_id=device_id,
            )
        sequence, timestamp = HEADER.unpack_from(frame)
        channels = self._channels.unpack_from(frame, HEADER.size)
        return self._build(device_id, sequence, timestamp, channels)

    def _decode_mapping(
        self, device_id: str, payload: Mapping[str, Any]
    ) -> models.SensorSample:
        missing = {"sequence", "timestamp", "channels"} - set(payload)
        if missing:
            raise exceptions.MalformedSampleError(
                f"Payload is missing fields: {sorted(missing)}.",
                device_id=device_id,
            )
        sequence = payload["sequence"]
        timestamp = payload["timestamp"]
        channels = payload["channels"]
        if isinstance(sequence, bool) or not isinstance(sequence, int):
            raise exceptions.MalformedSampleError(
                f"Sequence must be an integer, got {type(sequence).__name__}.",
                device_id=device_id,
            )
        if not _is_number(timestamp):
            raise exceptions.MalformedSampleError(
                f"Timestamp must be a number, got {type(timestamp).__name__}.",
                device_id=device_id,
                sequence=sequence,
            )
        if isinstance(channels, (str, bytes)) or not hasattr(channels, "__len__"):
            raise exceptions.MalformedSampleError(
                "Channels must be a sequence of numbers.",
                device_id=device_id,
                sequence=sequence,
            )
        if len(channels) != self.channel_count:
            raise exceptions.MalformedSampleError(
                f"Expected {self.channel_count} channels, got {len(channels)}.",
                device_id=device_id,
                sequence=sequence,
            )
        if not all(_is_number(value) for value in channels):
            raise exceptions.MalformedSampleError(
                "Channels must be a sequence of numbers.",
                device_id=device_id,
                sequence=sequence,
            )
        return self._build(device_id, sequence, timestamp, channels)

    def _build(
        self, device_id: str, sequence: Any, timestamp: Any, channels: Any
    ) -> models.SensorSample:
        try:
            return models.SensorSample(
                device_id=device_id,
                sequence=sequence,
                timestamp=timestamp,
                channels=tuple(channels),
            )
        except pydantic.ValidationError as e:
            raise exceptions.MalformedSampleError(
                f"Invalid sample: {e.errors()[0]['msg']}",
                device_id=device_id,
                sequence=sequence if isinstance(sequence, int) else None,
                timestamp=timestamp if isinstance(timestamp, (int, float)) else None,
            ) from e


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
