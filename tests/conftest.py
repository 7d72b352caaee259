"""Fixtures used by pytest."""

import asyncio
import json
import pathlib
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import pytest

from kinepy.core import models
from kinepy.devices import manager

Outcome = Union[None, str, Exception]


class FakeTransport(manager.DeviceTransport):
    """Transport whose connect outcomes are scripted per device.

    An outcome of None succeeds, an exception instance is raised and 'hang' never
    returns.
    """

    def __init__(self, outcomes: Optional[Dict[str, List[Outcome]]] = None) -> None:
        """Initialize with the scripted outcomes."""
        self.outcomes = outcomes or {}
        self.connects: List[str] = []
        self.disconnects: List[str] = []

    async def connect(self, device_id: str) -> None:
        """Play the next scripted outcome for the device."""
        self.connects.append(device_id)
        scripted = self.outcomes.get(device_id, [])
        outcome = scripted.pop(0) if scripted else None
        if outcome == "hang":
            await asyncio.sleep(3600)
        elif isinstance(outcome, Exception):
            raise outcome

    async def disconnect(self, device_id: str) -> None:
        """Record the disconnect."""
        self.disconnects.append(device_id)


class FakeSleep:
    """Records requested delays and returns immediately."""

    def __init__(self) -> None:
        """Initialize with no recorded delays."""
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        """Record the delay and yield to the event loop."""
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    """A manually advanced clock."""

    def __init__(self, now: float = 0.0) -> None:
        """Initialize at the given time."""
        self.now = now

    def __call__(self) -> float:
        """Return the current time."""
        return self.now


@pytest.fixture
def fake_sleep() -> FakeSleep:
    """Sleep that does not wait."""
    return FakeSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Clock starting at zero."""
    return FakeClock()


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    """Factory of scripted transports."""
    return FakeTransport


@pytest.fixture
def make_samples() -> Callable[..., List[models.SensorSample]]:
    """Factory of samples with one timestamp per sequence number."""

    def _make(
        device_id: str = "D1",
        sequences: Sequence[int] = (1, 2, 3, 4, 5),
        timestamps: Optional[Sequence[float]] = None,
        channel_count: int = 3,
    ) -> List[models.SensorSample]:
        if timestamps is None:
            timestamps = [float(sequence - 1) for sequence in sequences]
        return [
            models.SensorSample(
                device_id=device_id,
                sequence=sequence,
                timestamp=timestamp,
                channels=tuple([float(timestamp)] * channel_count),
            )
            for sequence, timestamp in zip(sequences, timestamps)
        ]

    return _make


@pytest.fixture
def sensor_logger_data() -> dict:
    """Two seconds of a wearable at rest, recorded at 100 Hz in milliseconds."""
    n_rows = 200
    timestamps = (np.arange(n_rows) * 10).tolist()
    zeros = np.zeros(n_rows).tolist()
    return {
        "accelerometer": {
            "x": zeros,
            "y": zeros,
            "z": np.ones(n_rows).tolist(),
            "timestamps": timestamps,
        },
        "gyroscope": {
            "x": zeros,
            "y": zeros,
            "z": zeros,
            "timestamps": timestamps,
        },
    }


@pytest.fixture
def sensor_logger_file(tmp_path: pathlib.Path, sensor_logger_data: dict) -> pathlib.Path:
    """The at-rest recording written to a .json file."""
    path = tmp_path / "recordings" / "session_1.json"
    path.parent.mkdir()
    path.write_text(json.dumps(sensor_logger_data))
    return path
