"""Per-device, time-ordered buffer of the most recent sensor samples."""

import bisect
import collections
import dataclasses
import time
from typing import Callable, Deque, Dict, Iterator, Optional, Sequence, Tuple

import numpy as np
import polars as pl

from kinepy.core import config, exceptions, models
from kinepy.devices import events

logger = config.get_logger()


class SampleWindow:
    """An immutable, restartable view of samples between two timestamps.

    The window holds a snapshot of the buffer taken when it was created, so later
    pushes to the buffer are never observed. Filtering happens on iteration.
    """

    def __init__(
        self,
        samples: Sequence[models.SensorSample],
        start: float,
        end: float,
        device_id: Optional[str] = None,
    ) -> None:
        """Initialize the window.

        Args:
            samples: Samples ordered by timestamp. They are copied.
            start: Inclusive lower bound on the timestamp.
            end: Inclusive upper bound on the timestamp.
            device_id: The device the samples belong to.
        """
        self._snapshot: Tuple[models.SensorSample, ...] = tuple(samples)
        self._times = [sample.timestamp for sample in self._snapshot]
        self.start = start
        self.end = end
        self.device_id = device_id

    def _bounds(self) -> Tuple[int, int]:
        if self.start > self.end:
            return 0, 0
        low = bisect.bisect_left(self._times, self.start)
        high = bisect.bisect_right(self._times, self.end)
        return low, high

    def __iter__(self) -> Iterator[models.SensorSample]:
        """Yield the samples in the window ordered by timestamp."""
        low, high = self._bounds()
        for index in range(low, high):
            yield self._snapshot[index]

    def __len__(self) -> int:
        """Number of samples in the window."""
        low, high = self._bounds()
        return high - low

    def __bool__(self) -> bool:
        """Whether the window holds any sample."""
        return len(self) > 0

    @property
    def timestamps(self) -> np.ndarray:
        """The sample timestamps as a float array."""
        low, high = self._bounds()
        return np.asarray(self._times[low:high], dtype=float)

    def channels(self) -> np.ndarray:
        """The channel readings as an (n_samples, n_channels) array."""
        samples = list(self)
        if not samples:
            return np.empty((0, 0))
        return np.asarray([sample.channels for sample in samples], dtype=float)

    def to_data_frame(self) -> pl.DataFrame:
        """Converts the window to a DataFrame.

        Returns:
            A DataFrame with columns 'device_id', 'sequence', 'timestamp' and one
            column per channel named 'channel_0', 'channel_1', etc.
        """
        samples = list(self)
        channels = self.channels()
        frame = pl.DataFrame(
            {
                "device_id": pl.Series([s.device_id for s in samples], dtype=pl.Utf8),
                "sequence": pl.Series([s.sequence for s in samples], dtype=pl.Int64),
                "timestamp": pl.Series(
                    [s.timestamp for s in samples], dtype=pl.Float64
                ),
            }
        )
        if samples:
            frame = frame.with_columns(
                [
                    pl.Series(f"channel_{index}", channels[:, index])
                    for index in range(channels.shape[1])
                ]
            )
        return frame


@dataclasses.dataclass
class BufferDiagnostics:
    """Counters of one device's buffer.

    Attributes:
        accepted: Samples accepted by push.
        rejected: Samples rejected as out of order.
        evicted: Samples purged after leaving the retention window.
    """

    accepted: int = 0
    rejected: int = 0
    evicted: int = 0


@dataclasses.dataclass
class _DeviceStream:
    samples: Deque[models.SensorSample] = dataclasses.field(
        default_factory=collections.deque
    )
    last_sequence: Optional[int] = None
    last_timestamp: Optional[float] = None
    clear_at: Optional[float] = None
    diagnostics: BufferDiagnostics = dataclasses.field(
        default_factory=BufferDiagnostics
    )


class SensorStreamBuffer:
    """Bounded buffer keeping the newest retention window of samples per device.

    Samples are never reordered; a sample whose sequence number does not exceed the
    last accepted one, or whose timestamp is behind the last accepted one, is
    rejected. Old samples are purged lazily on push. Buffers of lost devices are
    kept for a grace period and cleared on the next access after it expires.
    """

    def __init__(
        self,
        retention_seconds: float = 30.0,
        grace_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the buffer.

        Args:
            retention_seconds: Span of sample time kept per device.
            grace_seconds: How long a lost device's samples are kept.
            clock: Source of the current time used for the grace period.

        Raises:
            ValueError: If retention_seconds is not positive or grace_seconds is
                negative.
        """
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be greater than 0")
        if grace_seconds < 0:
            raise ValueError("grace_seconds must not be negative")
        self.retention_seconds = retention_seconds
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._streams: Dict[str, _DeviceStream] = {}

    def push(self, sample: models.SensorSample) -> None:
        """Append a sample to its device's buffer.

        Args:
            sample: The sample to append.

        Raises:
            OutOfOrderError: If the sample is not strictly after the last accepted
                sample of its device. The buffer is left unchanged.
        """
        stream = self._stream(sample.device_id, create=True)
        if stream.last_sequence is not None and (
            sample.sequence <= stream.last_sequence
            or sample.timestamp < stream.last_timestamp
        ):
            stream.diagnostics.rejected += 1
            raise exceptions.OutOfOrderError(
                f"Sample {sample.sequence} at {sample.timestamp} from "
                f"{sample.device_id} is behind the last accepted sample "
                f"{stream.last_sequence} at {stream.last_timestamp}.",
                device_id=sample.device_id,
                sequence=sample.sequence,
                timestamp=sample.timestamp,
                last_sequence=stream.last_sequence,
                last_timestamp=stream.last_timestamp,
            )

        stream.samples.append(sample)
        stream.last_sequence = sample.sequence
        stream.last_timestamp = sample.timestamp
        stream.diagnostics.accepted += 1
        self._evict(stream, sample.timestamp)

    def window(self, device_id: str, start: float, end: float) -> SampleWindow:
        """Samples of a device with start <= timestamp <= end.

        Args:
            device_id: The device to read.
            start: Inclusive lower bound.
            end: Inclusive upper bound.

        Returns:
            A window over a snapshot of the buffer. Empty when the device is unknown
            or nothing overlaps.
        """
        stream = self._stream(device_id)
        samples = stream.samples if stream is not None else ()
        return SampleWindow(samples, start, end, device_id=device_id)

    def latest(self, device_id: str, count: int) -> SampleWindow:
        """Window over the newest count samples of a device."""
        stream = self._stream(device_id)
        if stream is None or not stream.samples or count <= 0:
            return SampleWindow((), 0.0, -1.0, device_id=device_id)
        samples = list(stream.samples)[-count:]
        return SampleWindow(
            samples, samples[0].timestamp, samples[-1].timestamp, device_id=device_id
        )

    def clear(self, device_id: str) -> None:
        """Drop all samples and counters of a device."""
        if self._streams.pop(device_id, None) is not None:
            logger.debug("Cleared buffer of %s.", device_id)

    def diagnostics(self, device_id: str) -> BufferDiagnostics:
        """Counters of a device's buffer, zero for unknown devices."""
        stream = self._stream(device_id)
        if stream is None:
            return BufferDiagnostics()
        return dataclasses.replace(stream.diagnostics)

    def handle_event(self, event: events.DeviceEvent) -> None:
        """React to device lifecycle events.

        A lost device's buffer is scheduled for clearing after the grace period, a
        reconnected device cancels that schedule, and an unpaired device is
        cleared immediately.

        Args:
            event: The event emitted by the connection manager.
        """
        if isinstance(event, events.DeviceLost):
            stream = self._streams.get(event.device_id)
            if stream is not None:
                stream.clear_at = self._clock() + self.grace_seconds
                logger.debug(
                    "Buffer of %s will be cleared in %s s.",
                    event.device_id,
                    self.grace_seconds,
                )
        elif isinstance(event, events.StateChanged):
            if event.current == models.DeviceState.unpaired:
                self.clear(event.device_id)
            elif event.current == models.DeviceState.connected:
                stream = self._streams.get(event.device_id)
                if stream is not None:
                    stream.clear_at = None

    def _stream(
        self, device_id: str, create: bool = False
    ) -> Optional[_DeviceStream]:
        stream = self._streams.get(device_id)
        if (
            stream is not None
            and stream.clear_at is not None
            and self._clock() >= stream.clear_at
        ):
            self.clear(device_id)
            stream = None
        if stream is None and create:
            stream = self._streams[device_id] = _DeviceStream()
        return stream

    def _evict(self, stream: _DeviceStream, newest: float) -> None:
        cutoff = newest - self.retention_seconds
        while stream.samples and stream.samples[0].timestamp < cutoff:
            stream.samples.popleft()
            stream.diagnostics.evicted += 1
