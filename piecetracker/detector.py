"""
Adaptive search controller for live probe tracking.

For every probe the controller picks a search region of the cached reference,
picks the rotation/scale grid to try, sweeps it with rotation as the outer
loop, and folds the outcome into a small stability state machine that widens
or narrows the next search.

Callers must not invoke `SearchController.detect` re-entrantly on the same
controller: the frame driver serialises calls, the controller itself does not.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from . import imaging
from .config import DEFAULT_CONFIG, SearchConfig, SearchMode, profiling_enabled
from .imaging import ReferenceCache, RotationCache, SearchRegion

logger = logging.getLogger(__name__)

RotateFn = Callable[[np.ndarray, float], np.ndarray]
ResizeFn = Callable[[np.ndarray, float], np.ndarray]
CorrelateFn = Callable[[np.ndarray, np.ndarray], Tuple[float, Tuple[int, int]]]

STOP_EXHAUSTED = "exhausted"
STOP_EARLY = "early_termination"
STOP_ITERATION_CAP = "iteration_cap"


# ---------- result and state types ----------
@dataclass(frozen=True)
class MatchCandidate:
    confidence: float
    scale: float
    rotation: int
    x: int
    y: int
    width: int
    height: int

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    @property
    def region(self) -> SearchRegion:
        return SearchRegion(self.x, self.y, self.width, self.height)


@dataclass
class DetectorState:
    """Per-session tracking state, rewritten once per `detect()` call."""

    mode: SearchMode = SearchMode.COARSE
    last_confidence: float = 0.0
    last_match: Optional[MatchCandidate] = None
    stable_count: int = 0
    active_region: Optional[SearchRegion] = None


@dataclass(frozen=True)
class SweepResult:
    best: Optional[MatchCandidate]
    evaluated: int
    correlated: int
    failures: int
    stop_reason: str


# ---------- controller ----------
class SearchController:
    """
    Owns one `DetectorState` and the reference it tracks against.

    The transform and correlation collaborators default to the OpenCV
    implementations in `piecetracker.imaging` and can be swapped for any
    callables with the same signatures.
    """

    def __init__(
        self,
        config: Optional[SearchConfig] = None,
        *,
        rotate: Optional[RotateFn] = None,
        resize: Optional[ResizeFn] = None,
        correlate: Optional[CorrelateFn] = None,
        rotation_cache: Optional[RotationCache] = None,
    ):
        self.config = config if config is not None else DEFAULT_CONFIG
        self.rotation_cache = rotation_cache
        if rotate is None:
            rotate = rotation_cache.rotate if rotation_cache is not None else imaging.rotate_image
        self._rotate = rotate
        self._resize = resize if resize is not None else imaging.resize_template
        self._correlate = correlate if correlate is not None else imaging.correlate
        self._reference: Optional[ReferenceCache] = None
        self._state = DetectorState()
        self.last_sweep: Optional[SweepResult] = None

    # ----- session -----
    @property
    def reference(self) -> Optional[ReferenceCache]:
        return self._reference

    @property
    def has_reference(self) -> bool:
        return self._reference is not None

    def initialize_session(
        self,
        reference_image: np.ndarray,
        *,
        preprocessed: bool = False,
        color_order: str = "bgr",
    ) -> ReferenceCache:
        """
        Install a new reference image and start a fresh tracking session.

        Args:
            reference_image: Raw capture (gray/BGR/BGRA), or an already
                preprocessed single-channel image when `preprocessed` is set.
            preprocessed: Skip grayscale conversion and blurring.
            color_order: Channel order of a raw colour capture.

        Returns:
            The reference cache the controller now searches.

        Raises:
            RuntimeError: If the reference image is missing or empty.
        """
        if imaging.is_empty(reference_image):
            raise RuntimeError("Reference image is empty")
        if preprocessed:
            reference = ReferenceCache(reference_image)
        else:
            reference = ReferenceCache.from_image(reference_image, color_order)
        self._reference = reference
        self._reset_state()
        logger.info(
            "Reference installed (%dx%d), detector state reset",
            reference.width,
            reference.height,
        )
        return reference

    def reset(self) -> None:
        """Drop the reference and return to the initial state."""
        self._reference = None
        self._reset_state()
        if self.rotation_cache is not None:
            self.rotation_cache.clear()
        logger.info("Detector reset")

    def _reset_state(self) -> None:
        self._state = DetectorState()
        self.last_sweep = None

    def get_state(self) -> DetectorState:
        return replace(self._state)

    # ----- planning -----
    def compute_search_region(self) -> SearchRegion:
        """
        Region for the next sweep: a margin around the last match, or everything.

        The margin is `max(width, height)` of the last match times the high or
        low margin factor, depending on whether the last confidence exceeds the
        high-confidence threshold.

        Raises:
            RuntimeError: If no reference is installed.
        """
        if self._reference is None:
            raise RuntimeError("No reference image installed")
        cfg = self.config
        state = self._state
        last = state.last_match
        ref_w, ref_h = self._reference.width, self._reference.height
        if cfg.roi_enabled and last is not None and state.last_confidence > cfg.match_threshold:
            factor = (
                cfg.roi_margin_high
                if state.last_confidence > cfg.high_confidence_threshold
                else cfg.roi_margin_low
            )
            margin = int(math.floor(max(last.width, last.height) * factor))
            expanded = SearchRegion(
                last.x - margin,
                last.y - margin,
                last.width + 2 * margin,
                last.height + 2 * margin,
            )
            return expanded.clip(ref_w, ref_h)
        return SearchRegion.full(ref_w, ref_h)

    def is_locked(self) -> bool:
        """True when the track is stable and confident enough to narrow the grid."""
        cfg = self.config
        state = self._state
        return (
            state.last_match is not None
            and state.last_confidence > cfg.high_confidence_threshold
            and state.stable_count > cfg.max_stable_count / 2
        )

    def candidate_sets(self) -> Tuple[Tuple[int, ...], Tuple[float, ...]]:
        """Rotation and scale lists for the next sweep, in sweep order."""
        state = self._state
        if self.is_locked():
            last = state.last_match
            rotations = (int(round(last.rotation)) % 360,)
            scales = tuple(last.scale * f for f in self.config.stable_scale_factors)
            return rotations, scales
        return self.config.rotations_for(state.mode), self.config.scales_for(state.mode)

    # ----- detection -----
    def detect(self, probe: np.ndarray) -> Optional[MatchCandidate]:
        """
        Search the reference for one preprocessed probe.

        Returns the best candidate at or above the detection threshold, or
        None. Never raises for per-candidate failures; a missing reference or
        an empty probe returns None without touching the state.
        """
        if self._reference is None:
            logger.warning("detect() called without a reference image")
            return None
        if imaging.is_empty(probe):
            logger.warning("detect() called with an empty probe")
            return None

        profile = profiling_enabled()
        if profile:
            t0 = time.perf_counter()
            marks: List[Tuple[str, float]] = []

        region = self.compute_search_region()
        region_img = self._reference.extract_region(region)
        if profile:
            marks.append(("region", time.perf_counter()))

        rotations, scales = self.candidate_sets()
        if profile:
            marks.append(("candidates", time.perf_counter()))

        sweep = self._sweep(probe, region, region_img, rotations, scales)
        if profile:
            marks.append(("sweep", time.perf_counter()))

        self._update_stability(sweep.best)
        self._state.active_region = region
        self.last_sweep = sweep
        if profile:
            marks.append(("stability", time.perf_counter()))

        logger.debug(
            "Sweep over %s: %d pairs (%d correlated, %d failed), stop=%s, best=%s",
            region.as_tuple(),
            sweep.evaluated,
            sweep.correlated,
            sweep.failures,
            sweep.stop_reason,
            None if sweep.best is None else f"{sweep.best.confidence:.3f}",
        )

        if profile:
            t_end = time.perf_counter()
            prev = t0
            parts = []
            for label, ts in marks:
                parts.append(f"{label}={((ts - prev) * 1000.0):.2f}ms")
                prev = ts
            parts.append(f"total={((t_end - t0) * 1000.0):.2f}ms")
            print("detector profile:", " ".join(parts))

        return sweep.best

    def _sweep(
        self,
        probe: np.ndarray,
        region: SearchRegion,
        region_img: np.ndarray,
        rotations: Sequence[int],
        scales: Sequence[float],
    ) -> SweepResult:
        cfg = self.config
        rh, rw = region_img.shape[:2]
        best: Optional[MatchCandidate] = None
        evaluated = 0
        correlated = 0
        failures = 0
        stop_reason = STOP_EXHAUSTED

        for rot in rotations:
            if evaluated >= cfg.max_search_iterations:
                stop_reason = STOP_ITERATION_CAP
                break
            # one rotation per angle, shared by all scales
            try:
                rotated = self._rotate(probe, rot)
            except Exception as exc:  # pylint: disable=broad-except
                failures += 1
                logger.warning("Rotation by %d deg failed: %s", rot, exc)
                continue

            for scale in scales:
                if evaluated >= cfg.max_search_iterations:
                    stop_reason = STOP_ITERATION_CAP
                    break
                evaluated += 1
                try:
                    template = self._resize(rotated, scale)
                    th, tw = template.shape[:2]
                    if (
                        tw >= rw
                        or th >= rh
                        or tw <= cfg.min_template_size
                        or th <= cfg.min_template_size
                    ):
                        continue
                    score, (loc_x, loc_y) = self._correlate(region_img, template)
                    correlated += 1
                except Exception as exc:  # pylint: disable=broad-except
                    failures += 1
                    logger.warning(
                        "Candidate rot=%d scale=%.3f failed: %s", rot, scale, exc
                    )
                    continue

                score = float(score)
                if score < cfg.detection_threshold:
                    continue
                if best is not None and score <= best.confidence:
                    continue
                loc_x = min(max(int(loc_x), 0), rw - tw)
                loc_y = min(max(int(loc_y), 0), rh - th)
                best = MatchCandidate(
                    confidence=score,
                    scale=float(scale),
                    rotation=int(rot) % 360,
                    x=region.x + loc_x,
                    y=region.y + loc_y,
                    width=int(tw),
                    height=int(th),
                )
                if best.confidence > cfg.early_termination_threshold:
                    stop_reason = STOP_EARLY
                    break

            if stop_reason != STOP_EXHAUSTED:
                break

        return SweepResult(
            best=best,
            evaluated=evaluated,
            correlated=correlated,
            failures=failures,
            stop_reason=stop_reason,
        )

    # ----- stability tracker -----
    def _is_stable(self, previous: MatchCandidate, current: MatchCandidate) -> bool:
        cfg = self.config
        return (
            abs(current.x - previous.x) < cfg.position_tolerance
            and abs(current.y - previous.y) < cfg.position_tolerance
            and abs(current.width - previous.width) < cfg.size_tolerance
            and abs(current.rotation - previous.rotation) < cfg.rotation_tolerance
        )

    def _update_stability(self, match: Optional[MatchCandidate]) -> None:
        cfg = self.config
        state = self._state
        if match is not None:
            if state.last_match is not None:
                if self._is_stable(state.last_match, match):
                    state.stable_count = min(cfg.max_stable_count, state.stable_count + 1)
                else:
                    state.stable_count = max(0, state.stable_count - 1)
            state.last_match = match
            state.last_confidence = match.confidence
            self._escalate_mode()
            return

        # last_match is kept as the seed for the next search region
        state.last_confidence = max(0.0, state.last_confidence - cfg.confidence_decay)
        state.stable_count = max(0, state.stable_count - 1)
        if state.stable_count == 0 and state.mode is not SearchMode.COARSE:
            logger.info("Track lost in %s mode, back to COARSE", state.mode.name)
            state.mode = SearchMode.COARSE

    def _escalate_mode(self) -> None:
        cfg = self.config
        state = self._state
        previous = state.mode
        threshold = {
            SearchMode.COARSE: cfg.medium_mode_threshold,
            SearchMode.MEDIUM: cfg.fine_mode_threshold,
        }.get(previous)
        if threshold is not None and state.last_confidence > threshold:
            state.mode = previous.next()
        if state.mode is not previous:
            logger.info(
                "Search mode %s -> %s (confidence %.3f)",
                previous.name,
                state.mode.name,
                state.last_confidence,
            )


def format_state_summary(state: DetectorState) -> str:
    lines = [
        f"Mode: {state.mode.name} | Stable: {state.stable_count} | "
        f"Confidence: {state.last_confidence:.3f}",
    ]
    if state.last_match is not None:
        m = state.last_match
        lines.append(
            f"Last match: ({m.x}, {m.y}) {m.width}x{m.height} | "
            f"Rotation: {m.rotation}° | Scale: {m.scale:.2f}"
        )
    if state.active_region is not None:
        r = state.active_region
        lines.append(f"Search region: ({r.x}, {r.y}) {r.width}x{r.height}")
    return "  \n".join(lines)
