"""Functions to read recorded motion data from files."""

import json
import pathlib
from typing import Any, List, Mapping, Union

import numpy as np
import pydantic

from kinepy.core import config, exceptions, models

logger = config.get_logger()

AXES = ("x", "y", "z", "timestamps")


def read_sensor_logger(
    source: Union[pathlib.Path, str, Mapping[str, Any]],
    device_id: str,
    time_unit: float = 1e-3,
) -> List[models.SensorSample]:
    """Read a Sensor Logger recording into six-channel samples.

    The recording holds 'accelerometer' and 'gyroscope' objects, each with equally
    long 'x', 'y', 'z' and 'timestamps' arrays. Gyroscope rows are paired with
    accelerometer rows by index and the accelerometer timestamps are used. An
    optional 'location' object is validated but not returned.

    Args:
        source: Path to a .json recording, or the already parsed recording.
        device_id: The device identifier given to every sample.
        time_unit: Seconds per timestamp unit. Defaults to milliseconds.

    Returns:
        The samples in recording order with sequence numbers starting at 1.

    Raises:
        InvalidFileTypeError: If the path does not point to a .json file.
        MalformedSampleError: If the recording does not have the expected layout.
    """
    if isinstance(source, Mapping):
        data = source
    else:
        path = pathlib.Path(source)
        if path.suffix != ".json":
            raise exceptions.InvalidFileTypeError(
                f"File type {path.suffix} is not supported."
            )
        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise exceptions.MalformedSampleError(
                    f"{path.name} is not valid JSON: {e}", device_id=device_id
                ) from e

    validate_sensor_logger_data(data, device_id)

    accelerometer = _stack(data["accelerometer"])
    gyroscope = _stack(data["gyroscope"])
    n_rows = min(len(accelerometer), len(gyroscope))
    if len(accelerometer) != len(gyroscope):
        logger.warning(
            "Accelerometer has %s rows and gyroscope %s, keeping the first %s.",
            len(accelerometer),
            len(gyroscope),
            n_rows,
        )

    timestamps = accelerometer[:n_rows, 3] * time_unit
    channels = np.hstack([accelerometer[:n_rows, :3], gyroscope[:n_rows, :3]])

    samples = []
    for index in range(n_rows):
        try:
            samples.append(
                models.SensorSample(
                    device_id=device_id,
                    sequence=index + 1,
                    timestamp=float(timestamps[index]),
                    channels=tuple(float(value) for value in channels[index]),
                )
            )
        except pydantic.ValidationError as e:
            raise exceptions.MalformedSampleError(
                f"Invalid reading in row {index}: {e.errors()[0]['msg']}",
                device_id=device_id,
                sequence=index + 1,
            ) from e
    logger.debug("Read %s samples for device %s.", len(samples), device_id)
    return samples


def validate_sensor_logger_data(data: Mapping[str, Any], device_id: str) -> None:
    """Validate the layout of a Sensor Logger recording.

    Args:
        data: The parsed recording.
        device_id: The device the recording belongs to, used for error context.

    Raises:
        MalformedSampleError: If a sensor is missing, an axis is not a list, or the
            axes of one sensor differ in length.
    """
    if not isinstance(data, Mapping):
        raise exceptions.MalformedSampleError(
            "Recording must be a JSON object.", device_id=device_id
        )
    for sensor in ("accelerometer", "gyroscope"):
        if not isinstance(data.get(sensor), Mapping):
            raise exceptions.MalformedSampleError(
                f"Missing {sensor} data.", device_id=device_id
            )
        _validate_axes(data[sensor], AXES, sensor, device_id)

    if "location" in data:
        _validate_axes(
            data["location"], ("latitude", "longitude", "timestamps"), "GPS", device_id
        )


def _validate_axes(
    sensor_data: Mapping[str, Any],
    keys: tuple,
    name: str,
    device_id: str,
) -> None:
    if not isinstance(sensor_data, Mapping) or not all(
        isinstance(sensor_data.get(key), list) for key in keys
    ):
        raise exceptions.MalformedSampleError(
            f"Invalid {name} data format.", device_id=device_id
        )
    lengths = {len(sensor_data[key]) for key in keys}
    if len(lengths) != 1:
        raise exceptions.MalformedSampleError(
            f"Inconsistent {name} data lengths.", device_id=device_id
        )


def _stack(sensor_data: Mapping[str, Any]) -> np.ndarray:
    """Stack x, y, z and timestamps into an (n, 4) float array."""
    try:
        return np.column_stack(
            [np.asarray(sensor_data[key], dtype=float) for key in AXES]
        ).reshape(-1, 4)
    except (TypeError, ValueError) as e:
        raise exceptions.MalformedSampleError(f"Non-numeric sensor data: {e}") from e
