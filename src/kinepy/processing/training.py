"""Summaries and augmentation of exported annotation records for model training."""

from typing import Dict, List, Optional, Sequence

import numpy as np
import polars as pl

from kinepy.core import config, models
from kinepy.io.writers import writers

logger = config.get_logger()


def label_table(records: Sequence[writers.AnnotationRecord]) -> pl.DataFrame:
    """Flatten the labels of several records into one table.

    Args:
        records: The exported records.

    Returns:
        A DataFrame with one row per label and the columns 'session_id',
        'activity', 'source', 'start', 'end' and 'duration'.
    """
    rows = [
        {
            "session_id": record.session_id,
            "activity": label.activity.value,
            "source": label.source.value,
            "start": label.start,
            "end": label.end,
            "duration": label.duration,
        }
        for record in records
        for label in record.labels
    ]
    return pl.DataFrame(
        rows,
        schema={
            "session_id": pl.Utf8,
            "activity": pl.Utf8,
            "source": pl.Utf8,
            "start": pl.Float64,
            "end": pl.Float64,
            "duration": pl.Float64,
        },
    )


def group_by_activity(
    records: Sequence[writers.AnnotationRecord],
) -> Dict[models.ActivityType, List[models.ActivityLabel]]:
    """Labels of all records grouped by activity, every activity present."""
    groups: Dict[models.ActivityType, List[models.ActivityLabel]] = {
        activity: [] for activity in models.ACTIVITIES
    }
    for record in records:
        for label in record.labels:
            groups[label.activity].append(label)
    return groups


def _per_activity(
    records: Sequence[writers.AnnotationRecord], aggregation: pl.Expr
) -> Dict[models.ActivityType, float]:
    summary = (
        label_table(records).group_by("activity").agg(aggregation.alias("value"))
    )
    values = dict(zip(summary["activity"].to_list(), summary["value"].to_list()))
    return {
        activity: values.get(activity.value, 0) for activity in models.ACTIVITIES
    }


def count_by_activity(
    records: Sequence[writers.AnnotationRecord],
) -> Dict[models.ActivityType, int]:
    """Number of labels per activity, zero for activities without labels."""
    counts = _per_activity(records, pl.len())
    return {activity: int(count) for activity, count in counts.items()}


def duration_by_activity(
    records: Sequence[writers.AnnotationRecord],
) -> Dict[models.ActivityType, float]:
    """Labeled seconds per activity, zero for activities without labels."""
    durations = _per_activity(records, pl.col("duration").sum())
    return {activity: float(seconds) for activity, seconds in durations.items()}


def total_duration(records: Sequence[writers.AnnotationRecord]) -> float:
    """Labeled seconds over all records."""
    return float(sum(label.duration for record in records for label in record.labels))


def class_weights(
    records: Sequence[writers.AnnotationRecord],
) -> Dict[models.ActivityType, float]:
    """Inverse frequency weights that balance the activities during training.

    The most frequent activity gets weight 1 and every other activity the ratio
    of the largest count to its own. Activities without labels get weight 1.

    Args:
        records: The exported records.

    Returns:
        The weight of every activity.
    """
    counts = count_by_activity(records)
    max_count = max(counts.values())
    return {
        activity: max_count / count if count > 0 else 1.0
        for activity, count in counts.items()
    }


def time_shift(
    record: writers.AnnotationRecord,
    rng: np.random.Generator,
    max_shift: float = 0.05,
) -> writers.AnnotationRecord:
    """Shift the sample timestamps against the labels by one random offset.

    Args:
        record: The record to augment.
        rng: Source of randomness.
        max_shift: Largest shift in seconds, in either direction. Timestamps are
            clipped at zero.

    Returns:
        A copy of the record with shifted samples.
    """
    shift = float(rng.uniform(-max_shift, max_shift))
    samples = tuple(
        sample.model_copy(update={"timestamp": max(0.0, sample.timestamp + shift)})
        for sample in record.samples
    )
    return record.model_copy(update={"samples": samples})


def add_noise(
    record: writers.AnnotationRecord,
    rng: np.random.Generator,
    noise_factor: float = 0.05,
) -> writers.AnnotationRecord:
    """Add uniform noise proportional to each reading.

    Args:
        record: The record to augment.
        rng: Source of randomness.
        noise_factor: Largest noise as a fraction of the reading's magnitude.

    Returns:
        A copy of the record with noisy channels.
    """
    samples = []
    for sample in record.samples:
        channels = np.asarray(sample.channels, dtype=float)
        noise = rng.uniform(-1, 1, size=channels.shape) * noise_factor
        noisy = channels + noise * np.abs(channels)
        samples.append(
            sample.model_copy(update={"channels": tuple(noisy.tolist())})
        )
    return record.model_copy(update={"samples": tuple(samples)})


def scale(
    record: writers.AnnotationRecord,
    rng: np.random.Generator,
    min_scale: float = 0.9,
    max_scale: float = 1.1,
) -> writers.AnnotationRecord:
    """Multiply all readings of the record by one random factor.

    Args:
        record: The record to augment.
        rng: Source of randomness.
        min_scale: Smallest factor.
        max_scale: Largest factor.

    Returns:
        A copy of the record with scaled channels.

    Raises:
        ValueError: If min_scale is greater than max_scale.
    """
    if min_scale > max_scale:
        raise ValueError("min_scale must not exceed max_scale")
    factor = float(rng.uniform(min_scale, max_scale))
    samples = tuple(
        sample.model_copy(
            update={"channels": tuple(value * factor for value in sample.channels)}
        )
        for sample in record.samples
    )
    return record.model_copy(update={"samples": samples})


def augment(
    record: writers.AnnotationRecord,
    count: int = 3,
    seed: Optional[int] = None,
) -> List[writers.AnnotationRecord]:
    """Generate augmented copies of a record.

    Each copy applies time shifting, noise and scaling, each with a probability
    of one half. Labels are kept as they are.

    Args:
        record: The record to augment.
        count: Number of copies.
        seed: Seed of the random generator. Equal seeds give equal copies.

    Returns:
        The copies, with session ids suffixed by '-aug' and their index.
    """
    rng = np.random.default_rng(seed)
    augmented = []
    for index in range(count):
        variant = record
        if rng.random() > 0.5:
            variant = time_shift(variant, rng)
        if rng.random() > 0.5:
            variant = add_noise(variant, rng)
        if rng.random() > 0.5:
            variant = scale(variant, rng)
        augmented.append(
            variant.model_copy(update={"session_id": f"{record.session_id}-aug{index}"})
        )
    return augmented


def augment_records(
    records: Sequence[writers.AnnotationRecord],
    factor: int = 2,
    seed: Optional[int] = None,
) -> List[writers.AnnotationRecord]:
    """The records followed by factor augmented copies of each of them."""
    rng = np.random.default_rng(seed)
    dataset = list(records)
    for record in records:
        dataset.extend(
            augment(record, count=factor, seed=int(rng.integers(0, 2**32)))
        )
    logger.info(
        "Augmented %s records into a dataset of %s.", len(records), len(dataset)
    )
    return dataset
