"""Module containing the annotation record and functions to save and load it."""

import datetime
import json
import pathlib
from typing import Any, Dict, List, Optional, Tuple, Union

import polars as pl
import pydantic

from kinepy.core import config, exceptions, models
from kinepy.processing import buffer

VALID_FILE_TYPES = (".csv", ".parquet")

logger = config.get_logger()


class AnnotationRecord(pydantic.BaseModel):
    """A finalized annotation session, ready to be used as training data."""

    model_config = pydantic.ConfigDict(frozen=True)

    session_id: str
    labels: Tuple[models.ActivityLabel, ...]
    samples: Tuple[models.SensorSample, ...]
    device_id: Optional[str] = None
    model_version: Optional[str] = None

    @pydantic.model_validator(mode="after")
    def validate_labels(self) -> "AnnotationRecord":
        """Validate that the labels are ordered and do not overlap.

        Raises:
            ValueError: If a label starts before the previous one ends.
        """
        for previous, current in zip(self.labels, self.labels[1:]):
            if current.start < previous.end:
                raise ValueError(
                    f"label [{current.start}, {current.end}) starts before "
                    f"[{previous.start}, {previous.end}) ends"
                )
        return self

    def to_data_frame(self) -> pl.DataFrame:
        """Convert the samples to a DataFrame with the label of every sample.

        Returns:
            The sample table with 'activity' and 'label_source' columns added. Both
            are null for samples that fall in a gap between labels.
        """
        samples = buffer.SampleWindow(
            self.samples, float("-inf"), float("inf"), device_id=self.device_id
        )
        frame = samples.to_data_frame()
        activity: List[Optional[str]] = []
        source: List[Optional[str]] = []
        label_index = 0
        for sample in self.samples:
            while (
                label_index < len(self.labels)
                and self.labels[label_index].end <= sample.timestamp
            ):
                label_index += 1
            if (
                label_index < len(self.labels)
                and self.labels[label_index].start <= sample.timestamp
            ):
                activity.append(self.labels[label_index].activity.value)
                source.append(self.labels[label_index].source.value)
            else:
                activity.append(None)
                source.append(None)
        return frame.with_columns(
            pl.Series("activity", activity, dtype=pl.Utf8),
            pl.Series("label_source", source, dtype=pl.Utf8),
        )

    def save(self, output: pathlib.Path) -> None:
        """Save the sample table as a csv or parquet file with a JSON label sidecar.

        Args:
            output: The path and file name of the sample table, either a .csv or a
                .parquet file. The sidecar uses the same name with a .json suffix.
        """
        logger.debug("Saving annotation record %s.", self.session_id)
        self.validate_output(output=output)
        output.parent.mkdir(parents=True, exist_ok=True)

        frame = self.to_data_frame()
        if output.suffix == ".csv":
            frame.write_csv(output, separator=",")
        elif output.suffix == ".parquet":
            frame.write_parquet(output)

        self.save_labels_as_json(output)
        logger.info("Annotation record saved in: %s", output)

    def save_labels_as_json(self, output_path: pathlib.Path) -> None:
        """Save the labels and session metadata as a JSON file.

        Args:
            output_path: Path where the sample table was saved. The JSON file will
                use the same name but with .json extension.
        """
        sidecar = {
            "exported_at": datetime.datetime.now().isoformat(timespec="seconds"),
            "kinepy_version": config.get_version(),
            "session_id": self.session_id,
            "device_id": self.device_id,
            "model_version": self.model_version,
            "samples_file": output_path.name,
            "labels": [label.model_dump(mode="json") for label in self.labels],
        }
        sidecar_path = output_path.with_suffix(".json")
        with open(sidecar_path, "w") as f:
            json.dump(sidecar, f, indent=4)

        logger.debug("Labels saved in: %s", sidecar_path)

    @classmethod
    def validate_output(cls, output: pathlib.Path) -> None:
        """Validates that the output path is a valid format.

        Args:
            output: the name of the file to be saved, and the directory it will
                be saved in. Must be a .csv or .parquet file.

        Raises:
            InvalidFileTypeError: If the output file path ends with any extension
                other than csv or parquet.
        """
        if output.suffix not in VALID_FILE_TYPES:
            raise exceptions.InvalidFileTypeError(
                f"The extension: {output.suffix} is not supported."
                "Please save the file as .csv or .parquet",
            )


def read_record(path: Union[pathlib.Path, str]) -> AnnotationRecord:
    """Load an annotation record saved with AnnotationRecord.save.

    Labels with an unknown activity or an invalid interval are skipped with a
    warning, so records written by other tools can still be imported. A label
    overlapping an earlier starting one is skipped the same way.

    Args:
        path: Path to the .csv or .parquet sample table. The JSON sidecar must sit
            next to it.

    Returns:
        The loaded record.

    Raises:
        InvalidFileTypeError: If the file is not a .csv or .parquet file.
    """
    path = pathlib.Path(path)
    AnnotationRecord.validate_output(path)
    frame = pl.read_csv(path) if path.suffix == ".csv" else pl.read_parquet(path)
    with open(path.with_suffix(".json")) as f:
        sidecar: Dict[str, Any] = json.load(f)

    parsed = []
    for entry in sidecar.get("labels", []):
        try:
            parsed.append(models.ActivityLabel.model_validate(entry))
        except pydantic.ValidationError:
            logger.warning("Skipping invalid label entry: %s", entry)

    labels: List[models.ActivityLabel] = []
    for label in sorted(parsed, key=lambda label: label.start):
        if labels and labels[-1].overlaps(label):
            logger.warning(
                "Skipping label %s on [%s, %s), it overlaps %s on [%s, %s).",
                label.activity.value,
                label.start,
                label.end,
                labels[-1].activity.value,
                labels[-1].start,
                labels[-1].end,
            )
            continue
        labels.append(label)

    channel_columns = sorted(
        (column for column in frame.columns if column.startswith("channel_")),
        key=lambda column: int(column.split("_")[1]),
    )
    samples = tuple(
        models.SensorSample(
            device_id=str(row["device_id"]),
            sequence=int(row["sequence"]),
            timestamp=float(row["timestamp"]),
            channels=tuple(float(row[column]) for column in channel_columns),
        )
        for row in frame.iter_rows(named=True)
    )
    return AnnotationRecord(
        session_id=sidecar["session_id"],
        device_id=sidecar.get("device_id"),
        model_version=sidecar.get("model_version"),
        labels=tuple(labels),
        samples=samples,
    )
