"""Progress estimation for running conversions.

A conversion reports progress through several signals of varying
reliability: explicit percentages, processed/total character counts and
processed/total chunk counts. Between reports nothing is known except the
elapsed time. :class:`ProgressTracker` folds all of these into a single
monotonic percentage and an ETA:

* Real signals are preferred in the order explicit progress, characters,
  chunks. Progress never goes backwards.
* While no real signal has arrived, a time based simulation assumes eight
  seconds per chunk and keeps the bar between 5 and 90 percent.
* After ten seconds without any update the tracker enters *auto-increment*
  mode and creeps forward, slower the higher it is, never past 95 percent.
  A real value has to beat the speculative one by more than five points
  before it is trusted again.
* The ETA extrapolates from the average time per processed chunk (or from
  the percentage when chunk counts are unknown), is bounded by the size of
  the text and exponentially smoothed so it does not jump around.

All time arithmetic goes through an injectable ``clock`` returning
seconds, which keeps the tracker deterministic under test.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .chunker import estimate_chunk_count

logger = logging.getLogger(__name__)

SIMULATION_IDLE_SECONDS = 5
SIMULATION_CEILING = 90.0
SECONDS_PER_CHUNK = 8

AUTO_INCREMENT_IDLE_SECONDS = 10
AUTO_INCREMENT_CEILING = 95.0
AUTO_MODE_EXIT_JUMP = 5.0

SPEED_WINDOW = 5

ETA_WARMUP_SECONDS = 5
ETA_SMOOTHING = 0.7
ETA_MIN_DISPLAY_SECONDS = 5

DISPLAY_JUMP = 30.0
DISPLAY_MIN_STEP = 0.5

WORDS_PER_MINUTE = 150
BASE_PROCESSING_SECONDS = 5

STATUS_CONVERTING = "converting"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"


@dataclass
class ProgressUpdate:
    progress: Optional[float] = None
    processed_chunks: Optional[int] = None
    total_chunks: Optional[int] = None
    processed_characters: Optional[int] = None
    total_characters: Optional[int] = None
    current_chunk: Optional[str] = None
    is_completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProgressSnapshot:
    status: str
    progress: float
    display_progress: float
    processed_chunks: int
    total_chunks: int
    processed_characters: int
    total_characters: int
    speed: float
    elapsed_seconds: float
    time_remaining: Optional[int]
    time_remaining_text: Optional[str]
    auto_increment: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_time_remaining(seconds: Optional[float]) -> str:
    """Format seconds as ``"42 sec"``, ``"3 min 5 sec"`` or ``"1 hr 2 min"``."""
    if seconds is None or (isinstance(seconds, float) and math.isnan(seconds)):
        return ""
    rounded = int(math.floor(seconds + 0.5))
    if rounded < 60:
        return f"{rounded} sec"
    if rounded < 3600:
        minutes, remaining = divmod(rounded, 60)
        if remaining == 0:
            return f"{minutes} min"
        return f"{minutes} min {remaining} sec"
    hours = rounded // 3600
    minutes = (rounded % 3600) // 60
    if minutes == 0:
        return f"{hours} hr"
    return f"{hours} hr {minutes} min"


def estimate_conversion_seconds(text: str) -> int:
    """Rough wall-clock estimate for converting ``text``: reading time plus overhead."""
    if not text:
        return 0
    words = len(text.split())
    return math.ceil(words / WORDS_PER_MINUTE * 60 + BASE_PROCESSING_SECONDS)


def calculate_simulated_progress(
    elapsed: float, total_chunks: int, processed_chunks: int, real_progress: float
) -> float:
    """Best guess at the percentage when real updates are sparse.

    Real progress always wins. With chunk counts the first 5 percent are
    reserved for setup and the chunks fill up to 90. Without them the
    percentage is simulated from elapsed time at eight seconds per chunk.
    """
    if real_progress > 0:
        return min(real_progress, 100.0)
    if total_chunks > 0 and processed_chunks > 0:
        chunk_progress = processed_chunks / total_chunks * 85
        return min(chunk_progress + 5, SIMULATION_CEILING)
    if total_chunks <= 0:
        return 5.0
    base_progress = min(elapsed / (total_chunks * SECONDS_PER_CHUNK) * 100, SIMULATION_CEILING)
    return min(max(5.0, base_progress), SIMULATION_CEILING)


def calculate_progress_data(
    processed_chunks: int,
    total_chunks: int,
    processed_characters: int,
    total_characters: int,
    current_chunk: Optional[str] = None,
) -> ProgressUpdate:
    """Build the update emitted after each chunk.

    The percentage is chunk based once a chunk has finished and character
    based before that. It stays within 1-99; only an explicit completion
    reaches 100.
    """
    safe_characters = min(processed_characters, total_characters)
    if total_characters > 0:
        character_progress = min(99.0, max(1.0, round(safe_characters / total_characters * 1000) / 10))
    else:
        character_progress = 1.0
    if total_chunks > 0:
        chunk_progress = float(min(99, max(1, round(processed_chunks / total_chunks * 100))))
    else:
        chunk_progress = 1.0
    progress = chunk_progress if processed_chunks > 0 else character_progress
    return ProgressUpdate(
        progress=progress,
        processed_chunks=processed_chunks,
        total_chunks=total_chunks,
        processed_characters=safe_characters,
        total_characters=total_characters,
        current_chunk=current_chunk or "",
    )


class PerformanceMetrics:
    """Learned processing speed used for up-front time estimates.

    Keeps the last five measurements of milliseconds per character. The
    estimate adds a base latency and a fixed overhead per chunk.
    """

    def __init__(
        self,
        time_per_character_ms: float = 20.0,
        base_latency_ms: float = 2000.0,
        chunk_overhead_ms: float = 500.0,
        window: int = 5,
    ) -> None:
        self.average_time_per_character = time_per_character_ms
        self.base_latency = base_latency_ms
        self.chunk_overhead = chunk_overhead_ms
        self.last_measurements: Deque[float] = deque(maxlen=window)

    def record(self, text_length: int, execution_time_ms: float) -> None:
        if text_length <= 0:
            return
        self.last_measurements.append(execution_time_ms / text_length)
        self.average_time_per_character = sum(self.last_measurements) / len(self.last_measurements)
        logger.debug("Performance metrics updated: %.3f ms/char", self.average_time_per_character)

    def estimate_ms(self, text: str) -> int:
        characters = len(text)
        overhead = estimate_chunk_count(characters) * self.chunk_overhead
        return math.ceil(characters * self.average_time_per_character + self.base_latency + overhead)


class ProgressTracker:
    """Combined progress and ETA for one conversion."""

    def __init__(
        self,
        total_characters: int = 0,
        total_chunks: int = 0,
        estimated_seconds: Optional[float] = None,
        initial_progress: float = 0.0,
        elapsed_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        now = clock()
        # Resuming a conversion keeps its elapsed time.
        self.start_time = now - elapsed_seconds
        self.last_update = now
        self.elapsed = elapsed_seconds

        self.status = STATUS_CONVERTING
        self.error: Optional[str] = None
        self.progress = max(1.0, initial_progress)
        self.display_progress = self.progress
        self.real_progress = 0.0
        self.auto_increment = False
        self.history: List[Tuple[float, float]] = []

        self.processed_chunks = 0
        self.total_chunks = total_chunks
        self.processed_characters = 0
        self.total_characters = total_characters

        self.speed = 0.0
        self._recent_speeds: Deque[float] = deque(maxlen=SPEED_WINDOW)
        self._speed_mark = (self.start_time, 0)

        self.estimated_seconds = estimated_seconds or max(30, math.ceil(total_characters / 15))
        self.time_remaining: Optional[float] = None
        self._update_time_remaining()

    @property
    def effective_total_chunks(self) -> int:
        return self.total_chunks or estimate_chunk_count(self.total_characters)

    @property
    def finished(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_ERROR)

    def _record_speed(self, now: float, processed_characters: int) -> None:
        mark_time, mark_characters = self._speed_mark
        delta_time = now - mark_time
        delta_characters = processed_characters - mark_characters
        if delta_time > 0 and delta_characters > 0:
            self._recent_speeds.append(delta_characters / delta_time)
            self.speed = sum(self._recent_speeds) / len(self._recent_speeds)
        self._speed_mark = (now, processed_characters)

    def _set_progress(self, value: float, now: float) -> None:
        self.progress = value
        self.history.append((now, value))

    def update(self, data: ProgressUpdate) -> float:
        """Apply a progress report and return the resulting percentage."""
        if self.finished:
            return self.progress
        now = self._clock()
        self.last_update = now
        self.elapsed = now - self.start_time

        if data.is_completed:
            self.complete()
            return self.progress

        if data.processed_chunks is not None and data.total_chunks is not None:
            self.processed_chunks = data.processed_chunks
            self.total_chunks = data.total_chunks
        if data.processed_characters is not None:
            self._record_speed(now, data.processed_characters)
            self.processed_characters = data.processed_characters
        if data.total_characters:
            self.total_characters = data.total_characters

        candidate: Optional[float] = None
        if data.progress is not None and not math.isnan(data.progress):
            candidate = float(data.progress)
        elif self.processed_characters > 0 and self.total_characters > 0:
            candidate = float(round(self.processed_characters / self.total_characters * 100))
        elif data.processed_chunks and data.total_chunks:
            candidate = float(round(data.processed_chunks / data.total_chunks * 100))

        if candidate is not None:
            candidate = max(1.0, min(100.0, candidate))
            self.real_progress = max(self.real_progress, candidate)
            threshold = self.progress + AUTO_MODE_EXIT_JUMP if self.auto_increment else self.progress
            if candidate > threshold:
                if self.auto_increment:
                    logger.info("Exiting auto-increment mode with real progress: %.1f%%", candidate)
                    self.auto_increment = False
                self._set_progress(candidate, now)

        self._update_time_remaining()
        self._step_display()
        return self.progress

    def tick(self) -> float:
        """Advance time based estimates; call roughly once per second."""
        if self.finished:
            return self.progress
        now = self._clock()
        self.elapsed = now - self.start_time
        idle = now - self.last_update

        if idle > SIMULATION_IDLE_SECONDS and self.progress < SIMULATION_CEILING:
            simulated = calculate_simulated_progress(
                self.elapsed, self.effective_total_chunks, self.processed_chunks, self.real_progress
            )
            if simulated > self.progress:
                self._set_progress(simulated, now)

        if idle > AUTO_INCREMENT_IDLE_SECONDS and self.progress < AUTO_INCREMENT_CEILING:
            increment = max(0.5, (100 - self.progress) / 100)
            if not self.auto_increment:
                logger.info("Activating auto-increment mode after %.0fs without updates", idle)
                self.auto_increment = True
            self._set_progress(min(AUTO_INCREMENT_CEILING, self.progress + increment), now)

        self._update_time_remaining()
        self._step_display()
        return self.progress

    def _update_time_remaining(self) -> None:
        if self.progress >= 100 or self.status == STATUS_COMPLETED:
            self.time_remaining = 0
            return
        elapsed = self.elapsed
        if elapsed < ETA_WARMUP_SECONDS:
            self.time_remaining = max(0.0, self.estimated_seconds - elapsed)
            return

        total_chunks = self.effective_total_chunks
        if self.processed_chunks > 0 and total_chunks > 0:
            per_chunk = elapsed / self.processed_chunks
            raw = max(0, total_chunks - self.processed_chunks) * per_chunk
        else:
            fraction = max(0.01, self.progress / 100)
            raw = elapsed / fraction * (1 - fraction)

        length = self.total_characters
        lower = max(1.0, min(10.0, length / 1000))
        upper = max(30.0, min(3600.0, length / 5))
        bounded = max(lower, min(upper, raw))

        previous = self.time_remaining or bounded
        self.time_remaining = round(previous * ETA_SMOOTHING + bounded * (1 - ETA_SMOOTHING))

    def _step_display(self) -> None:
        if self.finished:
            self.display_progress = 100.0
            return
        target = self.progress
        gap = target - self.display_progress
        if abs(gap) > DISPLAY_JUMP or abs(gap) <= DISPLAY_MIN_STEP:
            self.display_progress = target
            return
        step = max(DISPLAY_MIN_STEP, abs(gap) * 0.3)
        self.display_progress += step if gap > 0 else -step

    def time_remaining_text(self) -> Optional[str]:
        if self.progress >= 100 or self.finished:
            return None
        if self.processed_chunks == 0 or self.effective_total_chunks == 0 or self.elapsed == 0:
            return "Calculating..."
        return format_time_remaining(max(self.time_remaining or 0, ETA_MIN_DISPLAY_SECONDS))

    def complete(self) -> None:
        now = self._clock()
        self.elapsed = now - self.start_time
        self.last_update = now
        self.status = STATUS_COMPLETED
        self.auto_increment = False
        total_chunks = self.effective_total_chunks
        self.processed_chunks = total_chunks
        self.total_chunks = total_chunks
        self.processed_characters = self.total_characters
        self._set_progress(100.0, now)
        self.time_remaining = 0
        self.display_progress = 100.0

    def fail(self, message: str) -> None:
        self.status = STATUS_ERROR
        self.error = message
        self.auto_increment = False
        self.display_progress = 100.0

    def snapshot(self) -> ProgressSnapshot:
        remaining = None if self.time_remaining is None else int(round(self.time_remaining))
        return ProgressSnapshot(
            status=self.status,
            progress=round(self.progress, 1),
            display_progress=round(self.display_progress, 1),
            processed_chunks=self.processed_chunks,
            total_chunks=self.effective_total_chunks,
            processed_characters=self.processed_characters,
            total_characters=self.total_characters,
            speed=round(self.speed, 1),
            elapsed_seconds=round(self.elapsed, 1),
            time_remaining=remaining,
            time_remaining_text=self.time_remaining_text(),
            auto_increment=self.auto_increment,
            error=self.error,
        )


class ProgressRegistry:
    """Trackers of the conversions currently running in this process."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._trackers: Dict[str, ProgressTracker] = {}

    def start(self, conversion_id: str, **kwargs: Any) -> ProgressTracker:
        kwargs.setdefault("clock", self._clock)
        tracker = ProgressTracker(**kwargs)
        self._trackers[conversion_id] = tracker
        return tracker

    def get(self, conversion_id: str) -> Optional[ProgressTracker]:
        return self._trackers.get(conversion_id)

    def discard(self, conversion_id: str) -> None:
        self._trackers.pop(conversion_id, None)

    def __contains__(self, conversion_id: str) -> bool:
        return conversion_id in self._trackers
