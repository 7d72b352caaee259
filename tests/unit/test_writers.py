"""Test the writers module."""

import json
import logging
import pathlib
from typing import Callable, List

import polars as pl
import pydantic
import pytest

from kinepy.core import exceptions, models
from kinepy.io.writers import writers

MakeSamples = Callable[..., List[models.SensorSample]]


@pytest.fixture
def record(make_samples: MakeSamples) -> writers.AnnotationRecord:
    """A record with a gap between an inferred and a corrected label."""
    return writers.AnnotationRecord(
        session_id="task-1",
        device_id="D1",
        model_version="motion-threshold-1",
        labels=(
            models.ActivityLabel(
                activity=models.ActivityType.pass_,
                start=0.0,
                end=2.0,
                source=models.LabelSource.inferred,
                confidence=0.8,
            ),
            models.ActivityLabel(
                activity=models.ActivityType.shot,
                start=3.0,
                end=4.0,
                source=models.LabelSource.human_corrected,
            ),
        ),
        samples=tuple(make_samples(sequences=[1, 2, 3, 4, 5])),
    )


def test_to_data_frame(record: writers.AnnotationRecord) -> None:
    """Test that every sample carries the label covering it."""
    frame = record.to_data_frame()

    assert frame.columns == [
        "device_id",
        "sequence",
        "timestamp",
        "channel_0",
        "channel_1",
        "channel_2",
        "activity",
        "label_source",
    ]
    assert frame["activity"].to_list() == ["pass", "pass", None, "shot", None]
    assert frame["label_source"].to_list() == [
        "inferred",
        "inferred",
        None,
        "human_corrected",
        None,
    ]


@pytest.mark.parametrize("file_name", ["record.csv", "record.parquet"])
def test_save(
    record: writers.AnnotationRecord, tmp_path: pathlib.Path, file_name: str
) -> None:
    """Test saving the sample table with its JSON sidecar."""
    output = tmp_path / "out" / file_name

    record.save(output)

    frame = (
        pl.read_csv(output) if output.suffix == ".csv" else pl.read_parquet(output)
    )
    with open(output.with_suffix(".json")) as f:
        sidecar = json.load(f)
    assert frame.height == 5
    assert sidecar["session_id"] == "task-1"
    assert sidecar["device_id"] == "D1"
    assert sidecar["model_version"] == "motion-threshold-1"
    assert sidecar["samples_file"] == file_name
    assert [label["activity"] for label in sidecar["labels"]] == ["pass", "shot"]
    assert "kinepy_version" in sidecar
    assert "exported_at" in sidecar


@pytest.mark.parametrize("file_name", ["record.csv", "record.parquet"])
def test_read_record(
    record: writers.AnnotationRecord, tmp_path: pathlib.Path, file_name: str
) -> None:
    """Test loading a saved record."""
    output = tmp_path / file_name
    record.save(output)

    loaded = writers.read_record(output)

    assert loaded.session_id == record.session_id
    assert loaded.device_id == record.device_id
    assert loaded.model_version == record.model_version
    assert loaded.labels == record.labels
    assert loaded.samples == record.samples


def test_read_record_skips_invalid_labels(
    record: writers.AnnotationRecord,
    tmp_path: pathlib.Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Test that labels with unknown activities are skipped with a warning."""
    output = tmp_path / "record.csv"
    record.save(output)
    sidecar_path = output.with_suffix(".json")
    sidecar = json.loads(sidecar_path.read_text())
    sidecar["labels"].append(
        {"activity": "header", "start": 5.0, "end": 6.0, "source": "inferred"}
    )
    sidecar_path.write_text(json.dumps(sidecar))
    caplog.set_level(logging.WARNING)

    loaded = writers.read_record(output)

    assert len(loaded.labels) == 2
    assert "Skipping invalid label entry" in caplog.text


def test_invalid_file_type(
    record: writers.AnnotationRecord, tmp_path: pathlib.Path
) -> None:
    """Test that only csv and parquet outputs are accepted."""
    with pytest.raises(exceptions.InvalidFileTypeError):
        record.save(tmp_path / "record.txt")


def test_read_record_skips_overlapping_labels(
    record: writers.AnnotationRecord,
    tmp_path: pathlib.Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Test that imported labels overlapping an earlier one are skipped."""
    output = tmp_path / "record.csv"
    record.save(output)
    sidecar_path = output.with_suffix(".json")
    sidecar = json.loads(sidecar_path.read_text())
    sidecar["labels"].append(
        {"activity": "touch", "start": 1.5, "end": 2.5, "source": "inferred"}
    )
    sidecar_path.write_text(json.dumps(sidecar))
    caplog.set_level(logging.WARNING)

    loaded = writers.read_record(output)

    assert [label.activity for label in loaded.labels] == [
        models.ActivityType.pass_,
        models.ActivityType.shot,
    ]
    assert "overlaps" in caplog.text


def test_record_rejects_overlapping_labels(make_samples: MakeSamples) -> None:
    """Test that a record cannot hold overlapping labels."""
    labels = (
        models.ActivityLabel(activity=models.ActivityType.pass_, start=0.0, end=2.0),
        models.ActivityLabel(activity=models.ActivityType.shot, start=1.0, end=3.0),
    )

    with pytest.raises(pydantic.ValidationError):
        writers.AnnotationRecord(
            session_id="task-1", labels=labels, samples=tuple(make_samples())
        )
