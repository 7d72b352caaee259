"""CLI for kinepy."""

import logging
import pathlib
from enum import Enum
from typing import Any, Dict, Optional

import pydantic
import typer

from kinepy.core import config, exceptions

logger = config.get_logger()
app = typer.Typer(
    help="Annotate recorded motion data with activity labels.",
)


class OutputFileType(str, Enum):
    """Valid output file types for saving data."""

    csv = ".csv"
    parquet = ".parquet"


def version_check(version: bool) -> None:
    """Print the current version of kinepy and exit."""
    if version:
        typer.echo(f"kinepy version: {config.get_version()}")
        raise typer.Exit()


def _build_settings(
    settings_file: Optional[pathlib.Path], overrides: Dict[str, Any]
) -> config.Settings:
    """Merge command line overrides into the settings file or the defaults.

    Raises:
        typer.BadParameter: If the merged settings are invalid.
    """
    try:
        base = (
            config.Settings.from_json(settings_file)
            if settings_file is not None
            else config.Settings()
        )
        values = base.model_dump()
        values.update(
            {key: value for key, value in overrides.items() if value is not None}
        )
        return config.Settings(**values)
    except pydantic.ValidationError as e:
        raise typer.BadParameter(f"Invalid settings: {e}")


@app.command()
def main(
    input: pathlib.Path = typer.Argument(
        ..., help="Path to a Sensor Logger .json recording or a directory.", exists=True
    ),
    output: pathlib.Path = typer.Option(
        None,
        "-o",
        "--output",
        help="Path where data will be saved. Supports .csv and .parquet formats.",
    ),
    output_filetype: OutputFileType = typer.Option(
        ".csv",
        "-O",
        "--output-filetype",
        help="Format for save files when processing directories. ",
    ),
    device_id: str = typer.Option(
        "device",
        "-d",
        "--device-id",
        help="Device identifier stored with the samples.",
    ),
    threshold: float = typer.Option(
        None,
        "-t",
        "--threshold",
        help="Minimum confidence for a label to be emitted, between 0 and 1.",
        min=0.0,
        max=1.0,
    ),
    segment_size: int = typer.Option(
        None,
        "-s",
        "--segment-size",
        help="Number of samples per classified segment. Also sets the minimum "
        "recording length.",
        min=1,
    ),
    step_size: int = typer.Option(
        None,
        "--step",
        help="Number of samples between the starts of two segments.",
        min=1,
    ),
    settings_file: pathlib.Path = typer.Option(
        None,
        "-c",
        "--config",
        help="JSON file with engine settings. Command line options take precedence.",
        exists=True,
    ),
    verbosity: bool = typer.Option(
        False,
        "-v",
        "--verbosity",
        help="Determines the level of verbosity. Use -v for DEBUG. "
        "Defaults to INFO if not included.",
    ),
    version: bool = typer.Option(
        False,
        "-V",
        "--version",
        help="Print the current version of kinepy and exit.",
        is_eager=True,
        callback=version_check,
    ),
) -> None:
    """Run the kinepy annotation pipeline with command line arguments."""
    from kinepy.core import orchestrator

    log_level = logging.INFO
    if verbosity:
        log_level = logging.DEBUG
    logger.setLevel(log_level)

    settings = _build_settings(
        settings_file,
        {
            "confidence_threshold": threshold,
            "segment_size": segment_size,
            "min_samples": segment_size,
            "step_size": step_size,
        },
    )

    logger.debug("Running kinepy. arguments given: %s", locals())
    try:
        orchestrator.run(
            input=input,
            output=output,
            device_id=device_id,
            settings=settings,
            verbosity=log_level,
            output_filetype=output_filetype.value,
        )
    except (
        exceptions.EmptyDirectoryError,
        exceptions.InsufficientDataError,
        exceptions.IncompleteSessionError,
        exceptions.MalformedSampleError,
    ) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
