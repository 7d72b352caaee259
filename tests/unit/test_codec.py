"""Test the sample codec."""

import struct

import pytest

from kinepy.core import exceptions, models
from kinepy.io.readers import codec


@pytest.fixture
def sample_codec() -> codec.SampleCodec:
    """Codec for three channel devices."""
    return codec.SampleCodec(channel_count=3)


def test_decode_mapping(sample_codec: codec.SampleCodec) -> None:
    """Test decoding a mapping payload."""
    sample = sample_codec.decode(
        "D1", {"sequence": 7, "timestamp": 1.5, "channels": [0.1, 0.2, 1.0]}
    )

    assert sample == models.SensorSample(
        device_id="D1", sequence=7, timestamp=1.5, channels=(0.1, 0.2, 1.0)
    )


def test_decode_frame(sample_codec: codec.SampleCodec) -> None:
    """Test decoding a binary frame."""
    frame = struct.pack("<Id3f", 12, 3.25, 0.5, -1.0, 2.0)

    sample = sample_codec.decode("D1", frame)

    assert sample.sequence == 12
    assert sample.timestamp == 3.25
    assert sample.channels == (0.5, -1.0, 2.0)


def test_encode_decode_frame(sample_codec: codec.SampleCodec) -> None:
    """Test that an encoded frame decodes to the same sample."""
    sample = models.SensorSample(
        device_id="D1", sequence=3, timestamp=10.0, channels=(0.5, 0.25, 1.0)
    )

    frame = sample_codec.encode(sample)

    assert len(frame) == sample_codec.frame_size == 24
    assert sample_codec.decode("D1", frame) == sample


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"sequence": 1, "timestamp": 0.0, "channels": [1.0, 2.0]}, "Expected 3"),
        ({"sequence": 1, "channels": [1.0, 2.0, 3.0]}, "missing fields"),
        ({"sequence": 1, "timestamp": -5.0, "channels": [1, 2, 3]}, "Invalid"),
        ({"sequence": 1, "timestamp": "x", "channels": [1, 2, 3]}, "Timestamp must"),
        ({"sequence": 1, "timestamp": "1.0", "channels": [1, 2, 3]}, "Timestamp must"),
        ({"sequence": True, "timestamp": 1.0, "channels": [1, 2, 3]}, "Sequence must"),
        ({"sequence": "2", "timestamp": 1.0, "channels": [1, 2, 3]}, "Sequence must"),
        ({"sequence": 1, "timestamp": 1.0, "channels": [1, "2", 3]}, "sequence of"),
        ({"sequence": 1, "timestamp": 1.0, "channels": [1, False, 3]}, "sequence of"),
        ({"sequence": 1, "timestamp": 0.0, "channels": "abc"}, "sequence of"),
        (b"\x00\x01", "Expected a frame"),
        (42, "Unsupported payload"),
    ],
)
def test_decode_malformed(
    sample_codec: codec.SampleCodec, payload: object, message: str
) -> None:
    """Test that schema mismatches raise MalformedSampleError with context."""
    with pytest.raises(exceptions.MalformedSampleError, match=message) as exc_info:
        sample_codec.decode("D1", payload)  # type: ignore[arg-type]

    assert exc_info.value.device_id == "D1"


def test_decode_nan_timestamp_frame(sample_codec: codec.SampleCodec) -> None:
    """Test that a corrupt binary timestamp is rejected."""
    frame = struct.pack("<Id3f", 4, float("nan"), 0.0, 0.0, 1.0)

    with pytest.raises(exceptions.MalformedSampleError) as exc_info:
        sample_codec.decode("D1", frame)

    assert exc_info.value.sequence == 4


def test_invalid_channel_count() -> None:
    """Test that a codec needs at least one channel."""
    with pytest.raises(ValueError):
        codec.SampleCodec(channel_count=0)
