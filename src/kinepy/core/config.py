"""Configuration module for kinepy."""

import json
import logging
import pathlib
from importlib import metadata
from typing import Union

import pydantic


def get_version() -> str:
    """Return kinepy version."""
    try:
        return metadata.version("kinepy")
    except metadata.PackageNotFoundError:
        return "Version unknown"


def get_logger() -> logging.Logger:
    """Gets the kinepy logger."""
    logger = logging.getLogger("kinepy")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)s - %(funcName)s - %(message)s",  # noqa: E501
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger


class Settings(pydantic.BaseModel):
    """Tunable parameters of the connectivity and classification engine.

    Attributes:
        connect_timeout: Seconds a single connection attempt may take.
        reconnect_initial_delay: Delay in seconds before the first reconnect try.
        reconnect_max_delay: Upper bound in seconds for the backoff delay.
        reconnect_backoff_factor: Multiplier applied to the delay after each try.
        reconnect_max_retries: Number of reconnect tries before giving up.
        retention_seconds: Span of the newest samples kept per device.
        lost_grace_seconds: How long a lost device's buffer is kept.
        confidence_threshold: Minimum class probability for a label to be emitted.
        segment_size: Number of samples per classifier segment.
        step_size: Number of samples between the starts of two segments.
        min_samples: Minimum window size the classifier accepts.
        inference_timeout: Seconds an asynchronous inference may take.
        channel_count: Number of channels per sample expected from devices.
    """

    model_config = pydantic.ConfigDict(frozen=True)

    connect_timeout: float = pydantic.Field(10.0, gt=0)
    reconnect_initial_delay: float = pydantic.Field(1.0, gt=0)
    reconnect_max_delay: float = pydantic.Field(20.0, gt=0)
    reconnect_backoff_factor: float = pydantic.Field(2.0, ge=1)
    reconnect_max_retries: int = pydantic.Field(5, ge=0)
    retention_seconds: float = pydantic.Field(30.0, gt=0)
    lost_grace_seconds: float = pydantic.Field(60.0, ge=0)
    confidence_threshold: float = pydantic.Field(0.7, ge=0, le=1)
    segment_size: int = pydantic.Field(100, ge=1)
    step_size: int = pydantic.Field(20, ge=1)
    min_samples: int = pydantic.Field(100, ge=1)
    inference_timeout: float = pydantic.Field(5.0, gt=0)
    channel_count: int = pydantic.Field(6, ge=1)

    @pydantic.model_validator(mode="after")
    def validate_delays(self) -> "Settings":
        """Validate that the backoff bounds are consistent.

        Raises:
            ValueError: If the initial delay exceeds the maximum delay.
        """
        if self.reconnect_initial_delay > self.reconnect_max_delay:
            raise ValueError(
                "reconnect_initial_delay must not exceed reconnect_max_delay"
            )
        return self

    @classmethod
    def from_json(cls, path: Union[pathlib.Path, str]) -> "Settings":
        """Load settings from a JSON file.

        Keys that are absent from the file keep their default value.

        Args:
            path: Path to the JSON file.

        Returns:
            The validated settings.
        """
        with open(path) as f:
            values = json.load(f)
        return cls(**values)
