"""Custom exceptions for kinepy."""

from typing import Optional, Tuple

from kinepy.core import config

logger = config.get_logger()


class LoggedException(Exception):
    """Base class that automatically logs messages."""

    def __init__(self, message: str) -> None:
        """Initialize a new instance of the LoggedException class.

        Args:
            message: The message to display.
        """
        logger.exception(message)
        super().__init__(message)


class DeviceConnectionError(LoggedException, ConnectionError):
    """A device could not be reached."""

    def __init__(self, message: str, device_id: str) -> None:
        """Initialize the error with the device it concerns.

        Args:
            message: The message to display.
            device_id: The identifier of the unreachable device.
        """
        self.device_id = device_id
        super().__init__(message)


class ConnectionTimeoutError(DeviceConnectionError):
    """A connection attempt did not complete within its timeout."""

    pass


class InvalidTransitionError(LoggedException):
    """The requested transition is not allowed from the device's current state."""

    def __init__(self, message: str, device_id: str) -> None:
        """Initialize the error with the device it concerns.

        Args:
            message: The message to display.
            device_id: The identifier of the device.
        """
        self.device_id = device_id
        super().__init__(message)


class UnknownDeviceError(LoggedException):
    """No device with the given identifier is registered."""

    def __init__(self, message: str, device_id: str) -> None:
        """Initialize the error with the device it concerns.

        Args:
            message: The message to display.
            device_id: The unknown identifier.
        """
        self.device_id = device_id
        super().__init__(message)


class InferenceTimeoutError(LoggedException):
    """Activity inference did not complete within its timeout."""

    pass


class IncompleteSessionError(LoggedException):
    """An annotation session without labels cannot be exported."""

    pass


class InvalidFileTypeError(LoggedException):
    """kinepy did not expect this file extension."""

    pass


class EmptyDirectoryError(LoggedException):
    """No recordings were found in the directory."""

    pass


class StreamError(Exception):
    """Base class for per-sample errors that are counted instead of logged.

    These never end a device's stream, the caller drops the sample or waits for
    more data.
    """

    def __init__(
        self,
        message: str,
        device_id: Optional[str] = None,
        sequence: Optional[int] = None,
        timestamp: Optional[float] = None,
        interval: Optional[Tuple[float, float]] = None,
    ) -> None:
        """Initialize the error with the context needed to explain it.

        Args:
            message: The message to display.
            device_id: The device the sample came from, if known.
            sequence: The sequence number of the sample, if known.
            timestamp: The timestamp of the sample, if known.
            interval: The time interval involved, if any.
        """
        self.device_id = device_id
        self.sequence = sequence
        self.timestamp = timestamp
        self.interval = interval
        super().__init__(message)


class MalformedSampleError(StreamError):
    """A raw payload did not match the expected sample schema."""

    pass


class OutOfOrderError(StreamError):
    """A sample arrived with a sequence or timestamp behind the last one accepted."""

    def __init__(
        self,
        message: str,
        device_id: str,
        sequence: int,
        timestamp: float,
        last_sequence: int,
        last_timestamp: float,
    ) -> None:
        """Initialize the error with the rejected and last accepted positions.

        Args:
            message: The message to display.
            device_id: The device the sample came from.
            sequence: The sequence number of the rejected sample.
            timestamp: The timestamp of the rejected sample.
            last_sequence: The last accepted sequence number.
            last_timestamp: The last accepted timestamp.
        """
        self.last_sequence = last_sequence
        self.last_timestamp = last_timestamp
        super().__init__(
            message, device_id=device_id, sequence=sequence, timestamp=timestamp
        )


class InsufficientDataError(StreamError):
    """The window holds too few samples for a reliable inference."""

    def __init__(
        self,
        message: str,
        sample_count: int,
        required: int,
        device_id: Optional[str] = None,
        interval: Optional[Tuple[float, float]] = None,
    ) -> None:
        """Initialize the error with the available and required sample counts.

        Args:
            message: The message to display.
            sample_count: Number of samples in the window.
            required: Minimum number of samples needed.
            device_id: The device the window belongs to, if known.
            interval: The bounds of the window, if known.
        """
        self.sample_count = sample_count
        self.required = required
        super().__init__(message, device_id=device_id, interval=interval)
