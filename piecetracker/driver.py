"""
Frame driver: turns a stream of camera frames into throttled `detect()` calls.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

import numpy as np

from . import imaging
from .config import (
    CACHE_CLEANUP_FRAMES,
    FRAME_SKIP,
    PERFORMANCE_HISTORY,
    PERFORMANCE_UPDATE_INTERVAL,
    PIECE_SCALE,
    SearchConfig,
)
from .detector import DetectorState, MatchCandidate, SearchController
from .imaging import SearchRegion

logger = logging.getLogger(__name__)

NO_MATCH_STATUS = "No match found"


@dataclass
class FrameResult:
    match: Optional[MatchCandidate]
    status: str
    region: Optional[SearchRegion]
    state: DetectorState
    elapsed_ms: float
    error: Optional[str] = None


@dataclass
class PerformanceStats:
    """Rolling processing time and frame rate over the last `history` frames."""

    history: int = PERFORMANCE_HISTORY
    processing_ms: Deque[float] = field(default_factory=deque)
    fps: Deque[float] = field(default_factory=deque)
    last_frame_time: Optional[float] = None

    def record(self, elapsed_ms: float, now: float) -> None:
        self.processing_ms.append(elapsed_ms)
        if self.last_frame_time is not None and now > self.last_frame_time:
            self.fps.append(1.0 / (now - self.last_frame_time))
        self.last_frame_time = now
        while len(self.processing_ms) > self.history:
            self.processing_ms.popleft()
        while len(self.fps) > self.history:
            self.fps.popleft()

    @property
    def avg_processing_ms(self) -> float:
        if not self.processing_ms:
            return 0.0
        return sum(self.processing_ms) / len(self.processing_ms)

    @property
    def avg_fps(self) -> float:
        if not self.fps:
            return 0.0
        return sum(self.fps) / len(self.fps)

    def reset(self, now: Optional[float] = None) -> None:
        self.processing_ms.clear()
        self.fps.clear()
        self.last_frame_time = now


def format_status(match: Optional[MatchCandidate]) -> str:
    if match is None:
        return NO_MATCH_STATUS
    return (
        f"Match: {match.confidence * 100:.1f}%, "
        f"Rot: {match.rotation:.0f}°, "
        f"Scale: {match.scale:.2f}x"
    )


def capture_probe(frame: np.ndarray, piece_scale: float = PIECE_SCALE) -> Optional[np.ndarray]:
    """Centred crop covering `piece_scale` of the frame in each axis."""
    if imaging.is_empty(frame):
        return None
    h, w = frame.shape[:2]
    pw = int(math.floor(w * piece_scale))
    ph = int(math.floor(h * piece_scale))
    if pw <= 0 or ph <= 0:
        return None
    x0 = max(0, w // 2 - pw // 2)
    y0 = max(0, h // 2 - ph // 2)
    return frame[y0 : y0 + ph, x0 : x0 + pw]


class FrameDriver:
    """
    Feeds live frames to a `SearchController`.

    Only every `frame_skip`-th frame is processed, and a frame that arrives
    while the previous one is still being processed is dropped, so the
    controller never sees concurrent `detect()` calls.
    """

    def __init__(
        self,
        controller: Optional[SearchController] = None,
        config: Optional[SearchConfig] = None,
        *,
        frame_skip: int = FRAME_SKIP,
        piece_scale: float = PIECE_SCALE,
        color_order: str = "bgr",
        cleanup_every: int = CACHE_CLEANUP_FRAMES,
        stats_every: int = PERFORMANCE_UPDATE_INTERVAL,
        clock: Callable[[], float] = time.perf_counter,
    ):
        for name, value in (
            ("frame_skip", frame_skip),
            ("cleanup_every", cleanup_every),
            ("stats_every", stats_every),
        ):
            if value < 1:
                raise ValueError(f"{name} must be at least 1")
        if not 0.0 < piece_scale <= 1.0:
            raise ValueError("piece_scale must be within (0, 1]")
        if controller is None:
            # no rotation cache: live probes never repeat byte for byte
            controller = SearchController(config)
        self.controller = controller
        self.frame_skip = frame_skip
        self.piece_scale = piece_scale
        self.color_order = color_order
        self.cleanup_every = cleanup_every
        self.stats_every = stats_every
        self._clock = clock
        self._lock = threading.Lock()
        self._skip_counter = 0
        self.detecting = False
        self.frame_count = 0
        self.dropped_frames = 0
        self.stats = PerformanceStats()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def stats_due(self) -> bool:
        return self.frame_count > 0 and self.frame_count % self.stats_every == 0

    def capture_reference(self, frame: np.ndarray) -> None:
        """
        Install `frame` as the new reference and start detecting.

        Raises:
            RuntimeError: If the frame is empty.
        """
        self.controller.initialize_session(frame, color_order=self.color_order)
        cache = self.controller.rotation_cache
        if cache is not None:
            cache.clear()
        self._skip_counter = 0
        self.frame_count = 0
        self.dropped_frames = 0
        self.stats.reset(self._clock())
        self.detecting = True

    def capture_probe(self, frame: np.ndarray) -> Optional[np.ndarray]:
        return capture_probe(frame, self.piece_scale)

    def pause(self) -> None:
        if self.detecting:
            self.detecting = False
            logger.info("Detection paused")

    def resume(self) -> bool:
        if not self.detecting and self.controller.has_reference:
            self.detecting = True
            logger.info("Detection resumed")
        return self.detecting

    def reset(self) -> None:
        self.detecting = False
        self.controller.reset()
        self._skip_counter = 0
        self.frame_count = 0
        self.dropped_frames = 0
        self.stats.reset()

    def process_frame(self, frame: np.ndarray) -> Optional[FrameResult]:
        """
        Run one throttled detection on a live frame.

        Returns None for frames that are skipped, dropped, or arrive while
        detection is paused; otherwise a `FrameResult`. Errors are reported
        in the result rather than raised.
        """
        if not self.detecting:
            return None
        self._skip_counter = (self._skip_counter + 1) % self.frame_skip
        if self._skip_counter != 0:
            return None
        if not self._lock.acquire(blocking=False):
            self.dropped_frames += 1
            return None

        start = self._clock()
        try:
            cache = self.controller.rotation_cache
            if cache is not None and self.frame_count % self.cleanup_every == 0:
                cache.prune()

            probe = self.capture_probe(frame)
            if probe is None:
                logger.warning("Frame %d produced no probe", self.frame_count)
                return None

            match = self.controller.detect(imaging.preprocess(probe, self.color_order))
            now = self._clock()
            elapsed_ms = (now - start) * 1000.0
            self.stats.record(elapsed_ms, now)
            self.frame_count += 1
            if self.stats_due:
                logger.info(
                    "Frames: %d | avg %.1f ms | %.1f fps | dropped %d",
                    self.frame_count,
                    self.stats.avg_processing_ms,
                    self.stats.avg_fps,
                    self.dropped_frames,
                )
            state = self.controller.get_state()
            return FrameResult(
                match=match,
                status=format_status(match),
                region=state.active_region,
                state=state,
                elapsed_ms=elapsed_ms,
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Frame processing failed")
            return FrameResult(
                match=None,
                status=f"Detection error: {exc}",
                region=None,
                state=self.controller.get_state(),
                elapsed_ms=(self._clock() - start) * 1000.0,
                error=str(exc),
            )
        finally:
            self._lock.release()
