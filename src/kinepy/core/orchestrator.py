"""Wiring of the connectivity, buffering, classification and annotation stages."""

import asyncio
import dataclasses
import logging
import pathlib
import time
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Union

import numpy as np
from rich import progress

from kinepy.core import config, exceptions, models
from kinepy.devices import events, manager
from kinepy.io.readers import codec, readers
from kinepy.io.writers import writers
from kinepy.processing import annotation, buffer, classifier

logger = config.get_logger()

VALID_FILE_TYPES = (".csv", ".parquet")


@dataclasses.dataclass
class StreamDiagnostics:
    """Counters of one device's stream, for display.

    Attributes:
        accepted: Samples accepted into the buffer.
        malformed: Payloads that could not be decoded.
        out_of_order: Samples rejected by the buffer.
        insufficient_data: Classification requests on too small windows.
        evicted: Samples purged from the buffer.
    """

    accepted: int = 0
    malformed: int = 0
    out_of_order: int = 0
    insufficient_data: int = 0
    evicted: int = 0


class StreamEngine:
    """Runs the live pipeline for any number of devices.

    Every device gets its own queue of raw payloads and a worker task that is the
    only writer of that device's buffer. Malformed and out-of-order samples are
    dropped and counted, they never stop the stream.
    """

    def __init__(
        self,
        transport: manager.DeviceTransport,
        settings: Optional[config.Settings] = None,
        model: Optional[classifier.ActivityModel] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the engine.

        Args:
            transport: The hardware layer used by the connection manager.
            settings: Engine settings. Defaults are used if None.
            model: The activity model. A MotionThresholdModel is used if None.
            clock: Source of the current time.
            sleep: Coroutine function used between reconnect tries.
        """
        self.settings = settings or config.Settings()
        self.manager = manager.DeviceConnectionManager(
            transport, settings=self.settings, clock=clock, sleep=sleep
        )
        self.buffer = buffer.SensorStreamBuffer(
            retention_seconds=self.settings.retention_seconds,
            grace_seconds=self.settings.lost_grace_seconds,
            clock=clock,
        )
        self.codec = codec.SampleCodec(channel_count=self.settings.channel_count)
        self.classifier = classifier.ActivityClassifier.from_settings(
            model or classifier.MotionThresholdModel(), self.settings
        )
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._counters: Dict[str, StreamDiagnostics] = {}
        self._retired: List[asyncio.Task] = []
        self.manager.add_listener(self.buffer.handle_event)
        self.manager.add_listener(self._on_device_event)

    async def feed(self, device_id: str, payload: codec.RawPayload) -> None:
        """Queue a raw payload received from a device."""
        queue = self._queues.get(device_id)
        if queue is None:
            queue = self._queues[device_id] = asyncio.Queue()
            self._workers[device_id] = asyncio.create_task(
                self._worker(device_id, queue)
            )
        await queue.put(payload)

    async def drain(self, device_id: Optional[str] = None) -> None:
        """Wait until queued payloads are processed, for one or all devices."""
        device_ids = [device_id] if device_id is not None else list(self._queues)
        for current in device_ids:
            queue = self._queues.get(current)
            if queue is not None:
                await queue.join()

    async def link_lost(self, device_id: str) -> Optional[asyncio.Task]:
        """Forward a hardware link-lost callback to the connection manager."""
        return await self.manager.on_link_lost(device_id)

    def ingest(
        self, device_id: str, payload: codec.RawPayload
    ) -> Optional[models.SensorSample]:
        """Decode a payload and append it to the device's buffer.

        Args:
            device_id: The device the payload came from.
            payload: The raw payload.

        Returns:
            The accepted sample, or None if it was dropped.
        """
        counters = self._counters.setdefault(device_id, StreamDiagnostics())
        try:
            sample = self.codec.decode(device_id, payload)
            self.buffer.push(sample)
        except exceptions.MalformedSampleError as e:
            counters.malformed += 1
            logger.debug("Dropped malformed sample from %s: %s", device_id, e)
            return None
        except exceptions.OutOfOrderError as e:
            counters.out_of_order += 1
            logger.debug("Dropped out of order sample from %s: %s", device_id, e)
            return None
        return sample

    async def classify(
        self, device_id: str, start: float, end: float
    ) -> List[models.ActivityLabel]:
        """Infer labels on a window of a device's buffer.

        Raises:
            InsufficientDataError: If the window is too small. Counted, retry once
                more samples arrived.
            InferenceTimeoutError: If inference did not finish in time.
        """
        window = self.buffer.window(device_id, start, end)
        try:
            return await self.classifier.infer_async(window)
        except exceptions.InsufficientDataError:
            self._counters.setdefault(
                device_id, StreamDiagnostics()
            ).insufficient_data += 1
            raise

    def open_session(
        self,
        device_id: str,
        start: float,
        end: float,
        session_id: Optional[str] = None,
    ) -> annotation.AnnotationSession:
        """Start a labeling task over a window of a device's buffer."""
        window = self.buffer.window(device_id, start, end)
        logger.info(
            "Opened annotation session on %s samples of %s.", len(window), device_id
        )
        return annotation.AnnotationSession(
            window, inferrer=self.classifier, session_id=session_id
        )

    def diagnostics(self, device_id: str) -> StreamDiagnostics:
        """Counters of a device's stream."""
        counters = self._counters.get(device_id, StreamDiagnostics())
        buffered = self.buffer.diagnostics(device_id)
        return dataclasses.replace(
            counters, accepted=buffered.accepted, evicted=buffered.evicted
        )

    async def close(self) -> None:
        """Stop all workers and reconnect loops."""
        workers = list(self._workers.values()) + self._retired
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.wait(workers)
        self._workers.clear()
        self._retired.clear()
        self._queues.clear()
        await self.manager.close()

    async def _worker(self, device_id: str, queue: asyncio.Queue) -> None:
        while True:
            payload = await queue.get()
            try:
                self.ingest(device_id, payload)
            finally:
                queue.task_done()

    def _on_device_event(self, event: events.DeviceEvent) -> None:
        if (
            isinstance(event, events.StateChanged)
            and event.current == models.DeviceState.unpaired
        ):
            worker = self._workers.pop(event.device_id, None)
            if worker is not None:
                worker.cancel()
                self._retired.append(worker)
            self._queues.pop(event.device_id, None)
            self._counters.pop(event.device_id, None)


def run(
    input: Union[pathlib.Path, str],
    output: Optional[Union[pathlib.Path, str]] = None,
    device_id: str = "device",
    settings: Optional[config.Settings] = None,
    model: Optional[classifier.ActivityModel] = None,
    verbosity: int = logging.WARNING,
    output_filetype: Literal[".csv", ".parquet"] = ".csv",
) -> Union[writers.AnnotationRecord, Dict[str, writers.AnnotationRecord]]:
    """Annotate recorded files or directories of recordings.

    When the input is a file, the record is saved to the given output path (if
    any). When the input is a directory the output must be a directory as well and
    file names are derived from the recordings.

    Args:
        input: Path to a Sensor Logger .json recording, or a directory of them.
        output: Path to save to. For a single file it must end in .csv or .parquet.
        device_id: Device identifier given to the samples.
        settings: Classification settings. Defaults are used if None.
        model: The activity model. A MotionThresholdModel matched to the recording's
            sampling rate is used if None.
        verbosity: The logging level for the logger.
        output_filetype: The format of save files when processing directories.

    Returns:
        The annotation record, or a dictionary of records keyed by file name.
    """
    logger.setLevel(verbosity)

    input = pathlib.Path(input)
    output = pathlib.Path(output) if output is not None else None
    settings = settings or config.Settings()

    if input.is_file():
        return _run_file(
            input=input,
            output=output,
            device_id=device_id,
            settings=settings,
            model=model,
        )

    return _run_directory(
        input=input,
        output=output,
        device_id=device_id,
        settings=settings,
        model=model,
        output_filetype=output_filetype,
    )


def _run_directory(
    input: pathlib.Path,
    output: Optional[pathlib.Path],
    device_id: str,
    settings: config.Settings,
    model: Optional[classifier.ActivityModel],
    output_filetype: Literal[".csv", ".parquet"] = ".csv",
) -> Dict[str, writers.AnnotationRecord]:
    """Annotate every .json recording of a directory.

    Recordings that are too short or yield no confident label are skipped.

    Raises:
        ValueError: If the output is a file or the output_filetype is invalid.
        EmptyDirectoryError: If the directory holds no .json recordings.
    """
    if output is not None:
        if output.is_file():
            raise ValueError(
                "Output is a file, but must be a directory when input is a directory."
            )
        if output_filetype not in VALID_FILE_TYPES:
            raise ValueError(
                "Invalid output_filetype: "
                f"{output_filetype}. Valid options are: {VALID_FILE_TYPES}."
            )

    file_names = sorted(input.glob("*.json"))
    if not file_names:
        raise exceptions.EmptyDirectoryError(
            f"Directory {input} contains no .json recordings."
        )

    results_dict = {}
    with progress.Progress(
        progress.SpinnerColumn(),
        progress.TextColumn("[progress.description]{task.description}"),
        progress.BarColumn(),
        progress.TaskProgressColumn(),
        console=None,
    ) as progress_bar:
        task = progress_bar.add_task(
            f"[cyan]Annotating files in {input.name}...", total=len(file_names)
        )
        for file in file_names:
            output_file_path = (
                output / pathlib.Path(file.stem).with_suffix(output_filetype)
                if output
                else None
            )
            try:
                results_dict[str(file)] = _run_file(
                    input=file,
                    output=output_file_path,
                    device_id=device_id,
                    settings=settings,
                    model=model,
                )
            except (
                exceptions.StreamError,
                exceptions.IncompleteSessionError,
            ) as e:
                logger.error("Did not annotate %s: %s", file, e)
            finally:
                progress_bar.update(task, advance=1)

    return results_dict


def _run_file(
    input: pathlib.Path,
    output: Optional[pathlib.Path],
    device_id: str,
    settings: config.Settings,
    model: Optional[classifier.ActivityModel],
) -> writers.AnnotationRecord:
    """Annotate a single recording.

    Raises:
        InvalidFileTypeError: If the output is not a .csv or .parquet file.
        InsufficientDataError: If the recording is shorter than min_samples.
        IncompleteSessionError: If no segment reached the confidence threshold.
    """
    if output is not None:
        writers.AnnotationRecord.validate_output(output=output)

    samples = readers.read_sensor_logger(input, device_id=device_id)
    stream = buffer.SensorStreamBuffer(retention_seconds=float("inf"))
    rejected = 0
    for sample in samples:
        try:
            stream.push(sample)
        except exceptions.OutOfOrderError as e:
            rejected += 1
            logger.debug("Dropped out of order sample: %s", e)
    if rejected:
        logger.warning("Dropped %s out of order samples from %s.", rejected, input)

    window = stream.window(device_id, float("-inf"), float("inf"))
    if model is None:
        model = classifier.MotionThresholdModel(
            sampling_rate=estimate_sampling_rate(window)
        )
    session = annotation.AnnotationSession(
        window,
        inferrer=classifier.ActivityClassifier.from_settings(model, settings),
        session_id=input.stem,
    )
    session.run_inference()
    record = session.export()

    if output is not None:
        record.save(output=output)
    return record


def estimate_sampling_rate(window: buffer.SampleWindow, default: float = 100.0) -> float:
    """Sampling rate in Hz from the median sample period of a window.

    Returns the default when the window holds fewer than two distinct timestamps.
    """
    periods = np.diff(window.timestamps)
    periods = periods[periods > 0]
    if periods.size == 0:
        return default
    return float(1 / np.median(periods))

