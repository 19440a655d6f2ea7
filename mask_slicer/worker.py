# (c) 2024 Niels Provos
#

import logging
import queue
import threading
from enum import Enum

from . import constants as C
from .instance import CachedSegmenter
from .segmentation import extract_slices

logger = logging.getLogger(__name__)


class EventType(Enum):
    PROGRESS = "progress"
    SUCCESS = "success"
    ERROR = "error"


class ProgressEvent:
    __slots__ = ("type", "stage", "fraction", "payload")

    def __init__(self, type, stage, fraction, payload=None):
        self.type = type
        self.stage = stage
        self.fraction = fraction
        self.payload = payload

    @property
    def is_terminal(self):
        return self.type != EventType.PROGRESS

    def __repr__(self):
        return f"ProgressEvent({self.type.value}, {self.stage!r}, {self.fraction:.2f})"


class ProgressChannel:
    """
    Best-effort delivery of progress events from a worker to a consumer.

    Publishing never blocks. When the queue is full the oldest queued event
    is dropped, so a slow consumer only misses stale progress. Fractions are
    clamped to [0, 1] and never decrease. The stream ends with exactly one
    success or error event.
    """

    def __init__(self, maxsize=C.PROGRESS_QUEUE_SIZE):
        self._queue = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self._fraction = 0.0
        self._closed = False
        self.dropped = 0

    @property
    def closed(self):
        return self._closed

    @property
    def fraction(self):
        return self._fraction

    def _put(self, event):
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def publish(self, stage, fraction):
        """Queues a progress event. Returns False once the stream has ended."""
        with self._lock:
            if self._closed:
                return False
            fraction = min(1.0, max(0.0, float(fraction)))
            self._fraction = max(self._fraction, fraction)
            self._put(ProgressEvent(EventType.PROGRESS, stage, self._fraction))
            return True

    def _finish(self, type, stage, payload):
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            if type == EventType.SUCCESS:
                self._fraction = 1.0
            self._put(ProgressEvent(type, stage, self._fraction, payload))
            return True

    def succeed(self, slices):
        return self._finish(EventType.SUCCESS, C.STAGE_DONE, slices)

    def fail(self, message):
        return self._finish(EventType.ERROR, "Error", message)

    def get(self, timeout=None):
        return self._queue.get(timeout=timeout)

    def __iter__(self):
        while True:
            event = self.get()
            yield event
            if event.is_terminal:
                return


class ExtractionJob:
    """
    Runs the automatic slicing path on a background thread.

    The job reports through its ProgressChannel and always ends the stream
    with a success event carrying the slices or an error event carrying the
    message. There is no cancellation.
    """

    def __init__(
        self,
        image,
        min_area_ratio=C.DEFAULT_MIN_AREA_RATIO,
        segment=None,
        channel=None,
        max_dimension=C.MAX_INFERENCE_DIMENSION,
    ):
        self.image = image
        self.min_area_ratio = min_area_ratio
        self.segment = segment if segment is not None else CachedSegmenter()
        self.channel = channel if channel is not None else ProgressChannel()
        self.max_dimension = max_dimension
        self.result = None
        self.error = None
        self._thread = threading.Thread(
            target=self._run, name="mask-slicer-extraction", daemon=True
        )

    def _run(self):
        try:
            slices = extract_slices(
                self.image,
                min_area_ratio=self.min_area_ratio,
                segment=self.segment,
                progress=self.channel.publish,
                max_dimension=self.max_dimension,
            )
        except Exception as e:
            logger.exception("Slice extraction failed")
            self.error = e
            self.channel.fail(str(e) or type(e).__name__)
            return

        self.result = slices
        self.channel.succeed(slices)

    def start(self):
        self._thread.start()
        return self

    def join(self, timeout=None):
        self._thread.join(timeout)
        return self.result

    def is_alive(self):
        return self._thread.is_alive()

    def events(self):
        return iter(self.channel)
