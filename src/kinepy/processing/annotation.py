"""Reconcile inferred labels and user corrections on a window of samples."""

import bisect
import threading
import uuid
from typing import Iterable, List, Optional, Tuple

from kinepy.core import config, exceptions, models
from kinepy.io.writers import writers
from kinepy.processing import buffer, classifier

logger = config.get_logger()


class AnnotationSession:
    """An editable overlay of activity labels on a window of samples.

    Labels never overlap. Inferred labels only fill time that is not labeled yet,
    while a correction replaces whatever it overlaps, truncating or splitting the
    labels around it. Gaps between labels are unlabeled time.
    """

    def __init__(
        self,
        window: buffer.SampleWindow,
        inferrer: Optional[classifier.Inferrer] = None,
        session_id: Optional[str] = None,
    ) -> None:
        """Initialize an empty session.

        Args:
            window: The samples being annotated.
            inferrer: Produces inferred labels for run_inference.
            session_id: Identifier of the labeling task. A random one is generated
                if None.
        """
        self.window = window
        self.inferrer = inferrer
        self.session_id = session_id or uuid.uuid4().hex
        self._labels: List[models.ActivityLabel] = []
        self._lock = threading.Lock()

    @property
    def labels(self) -> Tuple[models.ActivityLabel, ...]:
        """The labels ordered by start time."""
        with self._lock:
            return tuple(self._labels)

    def label_at(self, timestamp: float) -> Optional[models.ActivityLabel]:
        """The label covering a timestamp, or None if it is unlabeled."""
        with self._lock:
            starts = [label.start for label in self._labels]
            index = bisect.bisect_right(starts, timestamp) - 1
            if index >= 0 and timestamp < self._labels[index].end:
                return self._labels[index]
            return None

    def apply_inference(
        self, labels: Iterable[models.ActivityLabel]
    ) -> List[models.ActivityLabel]:
        """Insert inferred labels where nothing is labeled yet.

        A label overlapping any existing label, corrected or inferred, is dropped.

        Args:
            labels: The inferred labels.

        Returns:
            The labels that were inserted.
        """
        inserted = []
        with self._lock:
            for label in sorted(labels, key=lambda label: label.start):
                if label.source != models.LabelSource.inferred:
                    label = label.model_copy(
                        update={"source": models.LabelSource.inferred}
                    )
                if any(existing.overlaps(label) for existing in self._labels):
                    logger.debug(
                        "Skipping inferred %s on [%s, %s), time is already labeled.",
                        label.activity.value,
                        label.start,
                        label.end,
                    )
                    continue
                self._insert(label)
                inserted.append(label)
        return inserted

    def run_inference(self) -> List[models.ActivityLabel]:
        """Infer labels for the session window and apply them.

        Returns:
            The labels that were inserted.

        Raises:
            ValueError: If the session has no inferrer.
            InsufficientDataError: If the window is too small for the inferrer.
        """
        if self.inferrer is None:
            raise ValueError("Session has no inferrer.")
        return self.apply_inference(self.inferrer.infer(self.window))

    def apply_correction(self, label: models.ActivityLabel) -> models.ActivityLabel:
        """Replace everything on the label's interval with the label.

        Overlapped labels keep the parts outside the interval, so a label that
        encloses the correction is split in two.

        Args:
            label: The corrected label.

        Returns:
            The stored label, marked as human corrected.
        """
        corrected = label.model_copy(
            update={"source": models.LabelSource.human_corrected, "confidence": None}
        )
        with self._lock:
            kept = []
            for existing in self._labels:
                if not existing.overlaps(corrected):
                    kept.append(existing)
                    continue
                for part in (
                    existing.clip(existing.start, corrected.start),
                    existing.clip(corrected.end, existing.end),
                ):
                    if part is not None:
                        kept.append(part)
            self._labels = kept
            self._insert(corrected)
        logger.debug(
            "Corrected [%s, %s) to %s.",
            corrected.start,
            corrected.end,
            corrected.activity.value,
        )
        return corrected

    def export(self) -> writers.AnnotationRecord:
        """Produce the training record of the session.

        Returns:
            The ordered labels with the samples of the window.

        Raises:
            IncompleteSessionError: If the session has no labels.
        """
        labels = self.labels
        if not labels:
            raise exceptions.IncompleteSessionError(
                f"Session {self.session_id} has no labels to export."
            )
        return writers.AnnotationRecord(
            session_id=self.session_id,
            device_id=self.window.device_id,
            model_version=getattr(self.inferrer, "version", None),
            labels=labels,
            samples=tuple(self.window),
        )

    def _insert(self, label: models.ActivityLabel) -> None:
        starts = [existing.start for existing in self._labels]
        self._labels.insert(bisect.bisect_left(starts, label.start), label)
