"""Infer activity labels from windows of motion samples."""

import abc
import asyncio
from typing import Any, List, Optional, Protocol

import numpy as np
from scipy import signal

from kinepy.core import config, exceptions, models
from kinepy.processing import buffer

logger = config.get_logger()


class Inferrer(Protocol):
    """Anything that turns a sample window into activity labels."""

    def infer(self, window: buffer.SampleWindow) -> List[models.ActivityLabel]:
        """Return non-overlapping labels ordered by start time."""
        ...


class ActivityModel(abc.ABC):
    """Abstract class defining the interface for activity recognition models.

    Attributes:
        version: Identifies the model; equal versions must give equal outputs.
    """

    version: str

    @abc.abstractmethod
    def predict_proba(self, segment: np.ndarray) -> np.ndarray:
        """Class probabilities of one segment.

        Args:
            segment: Channel readings, shaped (n_samples, n_channels).

        Returns:
            One probability per activity, in the order of models.ACTIVITIES.
        """
        pass


def impact_force(segment: np.ndarray) -> np.ndarray:
    """Magnitude of the acceleration vector, taken from the first three channels."""
    return np.linalg.norm(segment[:, :3], axis=1)


def _softmax(scores: np.ndarray) -> np.ndarray:
    shifted = np.exp(scores - scores.max())
    return shifted / shifted.sum()


class MotionThresholdModel(ActivityModel):
    """Deterministic heuristic on the low-pass filtered impact force.

    Acceleration is expected in g. The peak impact force of a segment is compared
    against the touch, pass and shot thresholds, and repeated peaks above the touch
    threshold are evidence of dribbling. The resulting scores are turned into
    probabilities with a softmax.
    """

    version = "motion-threshold-1"

    def __init__(
        self,
        sampling_rate: float = 100.0,
        cutoff_hz: float = 20.0,
        touch_g: float = 1.5,
        pass_g: float = 3.0,
        shot_g: float = 5.0,
        temperature: float = 0.25,
    ) -> None:
        """Initialize the model.

        Args:
            sampling_rate: Sampling rate of the device in Hz.
            cutoff_hz: Cutoff of the low-pass filter. No filtering is done when it
                is not below the Nyquist frequency.
            touch_g: Peak impact force of a touch.
            pass_g: Peak impact force of a pass.
            shot_g: Peak impact force of a shot.
            temperature: Softmax temperature, lower values are more confident.

        Raises:
            ValueError: If the thresholds are not positive and ascending, or the
                temperature or sampling rate are not positive.
        """
        if not 0 < touch_g < pass_g < shot_g:
            raise ValueError("Thresholds must be > 0, unique, and in ascending order.")
        if temperature <= 0 or sampling_rate <= 0:
            raise ValueError("temperature and sampling_rate must be greater than 0")
        self.sampling_rate = sampling_rate
        self.touch_g = touch_g
        self.pass_g = pass_g
        self.shot_g = shot_g
        self.temperature = temperature
        nyquist = sampling_rate / 2
        self._filter = (
            signal.butter(N=2, Wn=cutoff_hz / nyquist, btype="lowpass")
            if 0 < cutoff_hz < nyquist
            else None
        )

    def _smooth(self, force: np.ndarray) -> np.ndarray:
        if self._filter is None:
            return force
        b, a = self._filter
        initial_conditions = signal.lfilter_zi(b, a) * force[0]
        filtered, _ = signal.lfilter(b, a, force, zi=initial_conditions)
        return filtered

    def predict_proba(self, segment: np.ndarray) -> np.ndarray:
        """Class probabilities of one segment.

        Args:
            segment: Channel readings, shaped (n_samples, n_channels), with at least
                three acceleration channels.

        Returns:
            One probability per activity, in the order of models.ACTIVITIES.
        """
        force = self._smooth(impact_force(np.atleast_2d(segment)))
        peak = float(force.max())
        n_peaks = len(
            signal.find_peaks(
                force,
                height=self.touch_g,
                distance=max(1, int(0.1 * self.sampling_rate)),
            )[0]
        )

        scores = {
            models.ActivityType.shot: peak - self.shot_g,
            models.ActivityType.pass_: min(peak - self.pass_g, self.shot_g - peak),
            models.ActivityType.dribble: (n_peaks - 2) * 0.5,
            models.ActivityType.touch: min(peak - self.touch_g, self.pass_g - peak),
            models.ActivityType.no_possession: self.touch_g - peak,
        }
        return _softmax(
            np.array([scores[activity] for activity in models.ACTIVITIES])
            / self.temperature
        )


class EstimatorModel(ActivityModel):
    """Adapter for fitted estimators with a scikit-learn style interface.

    The estimator must expose predict_proba and classes_, with the classes being
    activity names. Each segment is summarized by the mean, standard deviation,
    minimum and maximum of every channel followed by the peak impact force.
    """

    def __init__(self, estimator: Any, version: str) -> None:
        """Initialize the adapter.

        Args:
            estimator: The fitted estimator.
            version: The version of the trained model.

        Raises:
            ValueError: If the estimator has a class that is not an activity.
        """
        self.estimator = estimator
        self.version = version
        self._columns = [models.ActivityType(str(c)) for c in estimator.classes_]

    @staticmethod
    def features(segment: np.ndarray) -> np.ndarray:
        """Summary features of a segment as a 1-D array."""
        segment = np.atleast_2d(segment)
        return np.concatenate(
            [
                segment.mean(axis=0),
                segment.std(axis=0),
                segment.min(axis=0),
                segment.max(axis=0),
                [impact_force(segment).max()],
            ]
        )

    def predict_proba(self, segment: np.ndarray) -> np.ndarray:
        """Class probabilities of one segment, in the order of models.ACTIVITIES."""
        raw = np.asarray(
            self.estimator.predict_proba(self.features(segment)[None, :])[0],
            dtype=float,
        )
        probabilities = np.zeros(len(models.ACTIVITIES))
        for column, activity in zip(raw, self._columns):
            probabilities[models.ACTIVITIES.index(activity)] = column
        return probabilities


class ActivityClassifier:
    """Slides an activity model over a window and emits confident labels.

    The window is cut into segments of segment_size samples whose starts are
    step_size samples apart. Each segment owns the time from its first sample to
    the first sample of the next segment; the last one ends one sample period after
    its last sample. Segments whose top probability is below the confidence
    threshold are left unlabeled, and touching segments with the same activity are
    merged.
    """

    def __init__(
        self,
        model: ActivityModel,
        confidence_threshold: float = 0.7,
        segment_size: int = 100,
        step_size: int = 20,
        min_samples: Optional[int] = None,
        timeout: float = 5.0,
    ) -> None:
        """Initialize the classifier.

        Args:
            model: The activity model to apply.
            confidence_threshold: Minimum probability for a label to be emitted.
            segment_size: Number of samples per segment.
            step_size: Number of samples between segment starts.
            min_samples: Minimum window size. Defaults to segment_size.
            timeout: Default timeout of infer_async in seconds.

        Raises:
            ValueError: If a parameter is out of range.
        """
        if not 0 <= confidence_threshold <= 1:
            raise ValueError("confidence_threshold must be between 0 and 1")
        if segment_size < 1 or step_size < 1:
            raise ValueError("segment_size and step_size must be at least 1")
        self.model = model
        self.confidence_threshold = confidence_threshold
        self.segment_size = segment_size
        self.step_size = step_size
        self.min_samples = segment_size if min_samples is None else max(1, min_samples)
        self.timeout = timeout

    @classmethod
    def from_settings(
        cls, model: ActivityModel, settings: config.Settings
    ) -> "ActivityClassifier":
        """Create a classifier configured by the engine settings."""
        return cls(
            model,
            confidence_threshold=settings.confidence_threshold,
            segment_size=settings.segment_size,
            step_size=settings.step_size,
            min_samples=settings.min_samples,
            timeout=settings.inference_timeout,
        )

    @property
    def version(self) -> str:
        """Version of the underlying model."""
        return self.model.version

    def infer(self, window: buffer.SampleWindow) -> List[models.ActivityLabel]:
        """Label the window.

        Args:
            window: The samples to classify.

        Returns:
            Non-overlapping inferred labels ordered by start time.

        Raises:
            InsufficientDataError: If the window holds fewer than min_samples
                samples.
        """
        n_samples = len(window)
        if n_samples < self.min_samples:
            raise exceptions.InsufficientDataError(
                f"Window holds {n_samples} samples, {self.min_samples} are required.",
                sample_count=n_samples,
                required=self.min_samples,
                device_id=window.device_id,
                interval=(window.start, window.end),
            )

        times = window.timestamps
        data = window.channels()
        size = min(self.segment_size, n_samples)
        period = float(np.median(np.diff(times))) if n_samples > 1 else 0.0
        starts = list(range(0, n_samples - size + 1, self.step_size))

        labels: List[models.ActivityLabel] = []
        confidences: List[List[float]] = []
        for index, first in enumerate(starts):
            segment_start = float(times[first])
            if index + 1 < len(starts):
                segment_end = float(times[starts[index + 1]])
            else:
                segment_end = float(times[first + size - 1]) + period
            if segment_end <= segment_start:
                continue

            probabilities = np.asarray(
                self.model.predict_proba(data[first : first + size]), dtype=float
            )
            if probabilities.shape != (len(models.ACTIVITIES),):
                raise ValueError(
                    f"Model {self.version} returned shape {probabilities.shape}, "
                    f"expected ({len(models.ACTIVITIES)},)."
                )
            best = int(np.argmax(probabilities))
            confidence = float(np.clip(probabilities[best], 0.0, 1.0))
            if confidence < self.confidence_threshold:
                continue

            activity = models.ACTIVITIES[best]
            previous = labels[-1] if labels else None
            if (
                previous is not None
                and previous.activity == activity
                and previous.end == segment_start
            ):
                confidences[-1].append(confidence)
                labels[-1] = previous.model_copy(
                    update={
                        "end": segment_end,
                        "confidence": float(np.mean(confidences[-1])),
                    }
                )
            else:
                confidences.append([confidence])
                labels.append(
                    models.ActivityLabel(
                        activity=activity,
                        start=segment_start,
                        end=segment_end,
                        source=models.LabelSource.inferred,
                        confidence=confidence,
                    )
                )

        logger.debug(
            "Inferred %s labels from %s samples with model %s.",
            len(labels),
            n_samples,
            self.version,
        )
        return labels

    async def infer_async(
        self, window: buffer.SampleWindow, timeout: Optional[float] = None
    ) -> List[models.ActivityLabel]:
        """Label the window in a worker thread.

        Args:
            window: The samples to classify.
            timeout: Seconds to wait. Defaults to the classifier's timeout.

        Returns:
            The same labels as infer.

        Raises:
            InferenceTimeoutError: If inference did not finish in time.
            InsufficientDataError: If the window is too small.
        """
        timeout = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.infer, window), timeout=timeout
            )
        except asyncio.TimeoutError:
            raise exceptions.InferenceTimeoutError(
                f"Inference over [{window.start}, {window.end}] of "
                f"{window.device_id} timed out after {timeout} s."
            ) from None

