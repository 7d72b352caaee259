"""Test the sensor stream buffer."""

from typing import Callable, List

import numpy as np
import polars as pl
import pytest

from kinepy.core import exceptions, models
from kinepy.devices import events
from kinepy.processing import buffer

MakeSamples = Callable[..., List[models.SensorSample]]


def _filled(make_samples: MakeSamples, **kwargs: object) -> buffer.SensorStreamBuffer:
    stream = buffer.SensorStreamBuffer(retention_seconds=100.0)
    for sample in make_samples(**kwargs):
        stream.push(sample)
    return stream


def test_window_in_range(make_samples: MakeSamples) -> None:
    """Test that window returns the samples in the closed interval, in order."""
    stream = _filled(make_samples)

    window = stream.window("D1", 1.0, 3.0)

    assert [sample.sequence for sample in window] == [2, 3, 4]
    assert len(window) == 3


def test_window_is_restartable(make_samples: MakeSamples) -> None:
    """Test that a window can be iterated more than once."""
    window = _filled(make_samples).window("D1", 0.0, 5.0)

    assert list(window) == list(window)
    assert len(list(window)) == 5


def test_window_is_a_snapshot(make_samples: MakeSamples) -> None:
    """Test that samples pushed after creating a window are not observed."""
    stream = _filled(make_samples)
    window = stream.window("D1", 0.0, 100.0)

    stream.push(make_samples(sequences=[6])[0])

    assert len(window) == 5
    assert len(stream.window("D1", 0.0, 100.0)) == 6


@pytest.mark.parametrize(
    "device_id, start, end",
    [("D1", 10.0, 20.0), ("D2", 0.0, 5.0), ("D1", 3.0, 1.0)],
)
def test_window_empty(
    make_samples: MakeSamples, device_id: str, start: float, end: float
) -> None:
    """Test windows with no overlap, unknown devices and reversed bounds."""
    window = _filled(make_samples).window(device_id, start, end)

    assert list(window) == []
    assert not window
    assert window.channels().size == 0


def test_out_of_order_rejected(make_samples: MakeSamples) -> None:
    """Test pushing sequence 3 after 5 was accepted."""
    stream = _filled(make_samples)
    late = models.SensorSample(
        device_id="D1", sequence=3, timestamp=5.0, channels=(0.0, 0.0, 0.0)
    )

    with pytest.raises(exceptions.OutOfOrderError) as exc_info:
        stream.push(late)

    assert exc_info.value.last_sequence == 5
    assert exc_info.value.sequence == 3
    assert exc_info.value.device_id == "D1"
    assert [s.sequence for s in stream.window("D1", 0.0, 10.0)] == [1, 2, 3, 4, 5]
    assert stream.diagnostics("D1").rejected == 1
    assert stream.diagnostics("D1").accepted == 5


def test_timestamp_behind_rejected(make_samples: MakeSamples) -> None:
    """Test that a newer sequence with an older timestamp is rejected."""
    stream = _filled(make_samples)
    sample = models.SensorSample(
        device_id="D1", sequence=6, timestamp=3.5, channels=(0.0, 0.0, 0.0)
    )

    with pytest.raises(exceptions.OutOfOrderError):
        stream.push(sample)


def test_devices_are_independent(make_samples: MakeSamples) -> None:
    """Test that sequence numbers are tracked per device."""
    stream = _filled(make_samples)

    stream.push(make_samples(device_id="D2", sequences=[1])[0])

    assert len(stream.window("D2", 0.0, 10.0)) == 1


def test_accepted_order_fuzz(make_samples: MakeSamples) -> None:
    """Test that accepted samples are always ordered, for random push orders."""
    rng = np.random.default_rng(42)
    for _ in range(50):
        sequences = rng.permutation(40) + 1
        timestamps = np.sort(rng.uniform(0, 10, size=40))[rng.permutation(40)]
        samples = make_samples(
            sequences=sequences.tolist(), timestamps=timestamps.tolist()
        )
        stream = buffer.SensorStreamBuffer(retention_seconds=100.0)
        rejected = 0
        for sample in samples:
            try:
                stream.push(sample)
            except exceptions.OutOfOrderError:
                rejected += 1

        accepted = list(stream.window("D1", 0.0, 10.0))
        accepted_sequences = [sample.sequence for sample in accepted]
        accepted_times = [sample.timestamp for sample in accepted]
        assert all(np.diff(accepted_sequences) > 0)
        assert all(np.diff(accepted_times) >= 0)
        assert len(accepted) + rejected == 40
        assert stream.diagnostics("D1").rejected == rejected


def test_retention_eviction(make_samples: MakeSamples) -> None:
    """Test that samples older than the retention window are purged on push."""
    stream = buffer.SensorStreamBuffer(retention_seconds=5.0)
    for sample in make_samples(sequences=range(1, 12)):
        stream.push(sample)

    timestamps = [s.timestamp for s in stream.window("D1", 0.0, 100.0)]

    assert timestamps == [5.0, 6.0, 7.0, 8.0, 9.0, 10.0]
    assert stream.diagnostics("D1").evicted == 5


def test_eviction_keeps_last_sequence(make_samples: MakeSamples) -> None:
    """Test that evicted samples still define the last accepted sequence."""
    stream = buffer.SensorStreamBuffer(retention_seconds=1.0)
    for sample in make_samples(sequences=[1, 2, 3], timestamps=[0.0, 5.0, 10.0]):
        stream.push(sample)

    with pytest.raises(exceptions.OutOfOrderError):
        stream.push(make_samples(sequences=[2], timestamps=[11.0])[0])


def test_latest(make_samples: MakeSamples) -> None:
    """Test the window over the newest samples."""
    stream = _filled(make_samples)

    assert [s.sequence for s in stream.latest("D1", 2)] == [4, 5]
    assert len(stream.latest("D2", 2)) == 0


def test_device_lost_grace_period(
    make_samples: MakeSamples, fake_clock: Callable[[], float]
) -> None:
    """Test that a lost device's buffer is kept for the grace period only."""
    stream = buffer.SensorStreamBuffer(
        retention_seconds=100.0, grace_seconds=10.0, clock=fake_clock
    )
    for sample in make_samples():
        stream.push(sample)

    stream.handle_event(events.DeviceLost(device_id="D1", at=0.0, attempts=3))
    fake_clock.now = 9.0  # type: ignore[attr-defined]
    retained = len(stream.window("D1", 0.0, 10.0))
    fake_clock.now = 10.0  # type: ignore[attr-defined]
    cleared = len(stream.window("D1", 0.0, 10.0))

    assert retained == 5
    assert cleared == 0


def test_reconnect_cancels_clear(
    make_samples: MakeSamples, fake_clock: Callable[[], float]
) -> None:
    """Test that reconnecting within the grace period keeps the buffer."""
    stream = buffer.SensorStreamBuffer(
        retention_seconds=100.0, grace_seconds=10.0, clock=fake_clock
    )
    for sample in make_samples():
        stream.push(sample)

    stream.handle_event(events.DeviceLost(device_id="D1", at=0.0, attempts=3))
    stream.handle_event(
        events.StateChanged(
            device_id="D1",
            previous=models.DeviceState.disconnected,
            current=models.DeviceState.connected,
            at=1.0,
        )
    )
    fake_clock.now = 50.0  # type: ignore[attr-defined]

    assert len(stream.window("D1", 0.0, 10.0)) == 5


def test_unpaired_clears_immediately(make_samples: MakeSamples) -> None:
    """Test that unpairing drops the buffer."""
    stream = _filled(make_samples)

    stream.handle_event(
        events.StateChanged(
            device_id="D1",
            previous=models.DeviceState.connected,
            current=models.DeviceState.unpaired,
            at=1.0,
        )
    )

    assert len(stream.window("D1", 0.0, 10.0)) == 0
    assert stream.diagnostics("D1") == buffer.BufferDiagnostics()


def test_window_to_data_frame(make_samples: MakeSamples) -> None:
    """Test converting a window to a DataFrame."""
    window = _filled(make_samples).window("D1", 0.0, 1.0)

    frame = window.to_data_frame()

    assert frame.columns == [
        "device_id",
        "sequence",
        "timestamp",
        "channel_0",
        "channel_1",
        "channel_2",
    ]
    assert frame["sequence"].to_list() == [1, 2]
    assert frame["channel_0"].dtype == pl.Float64
    assert window.channels().shape == (2, 3)


def test_invalid_retention() -> None:
    """Test that the retention window must be positive."""
    with pytest.raises(ValueError):
        buffer.SensorStreamBuffer(retention_seconds=0.0)
