"""
Search configuration for the live piece tracker.

The constants below are the defaults the detector, frame driver and UI use.
`SearchConfig` bundles the detector-facing subset into an immutable value so
every session carries its own copy instead of reading module globals.
"""

from __future__ import annotations

import enum
import os
import types
from dataclasses import dataclass, field, fields, replace
from typing import Dict, Iterable, Mapping, Optional, Tuple

# ---------- thresholds ----------
DETECTION_THRESHOLD = 0.40
MATCH_CONFIDENCE_THRESHOLD = 0.60
HIGH_CONFIDENCE_THRESHOLD = 0.75
EARLY_TERMINATION_THRESHOLD = 0.85
MEDIUM_MODE_THRESHOLD = 0.80
FINE_MODE_THRESHOLD = 0.85
CONFIDENCE_DECAY = 0.1

# ---------- stability ----------
MAX_STABLE_COUNT = 10
STABLE_POSITION_THRESHOLD = 20
STABLE_SIZE_THRESHOLD = 20
STABLE_ROTATION_THRESHOLD = 15
STABLE_SCALE_FACTORS = (0.95, 1.0, 1.05)

# ---------- sweep ----------
MAX_SEARCH_ITERATIONS = 96
MIN_TEMPLATE_SIZE = 20
ROI_ENABLED = True
ROI_MARGIN_FACTOR_HIGH = 0.5
ROI_MARGIN_FACTOR_LOW = 0.7

COARSE_ROTATIONS = (0, 90, 180, 270)
MEDIUM_ROTATIONS = tuple(range(0, 360, 45))
FINE_ROTATIONS = tuple(range(0, 360, 15))
COARSE_SCALES = (0.3, 0.5, 0.7, 1.0)
MEDIUM_SCALES = (0.4, 0.6, 0.8, 1.0)
FINE_SCALES = (0.5, 0.7, 0.9, 1.1)

# ---------- preprocessing ----------
BLUR_KSIZE = (3, 3)
BLUR_SIGMA = 0
COMMON_ROTATION_ANGLES = frozenset(range(0, 360, 15))
ROTATION_CACHE_MAX_ENTRIES = 256
CACHE_CLEANUP_INTERVAL_S = 60.0

# ---------- frame driver ----------
FRAME_SKIP = 3
PIECE_SCALE = 0.50
PERFORMANCE_HISTORY = 30
PERFORMANCE_UPDATE_INTERVAL = 15
CACHE_CLEANUP_FRAMES = 300

# ---------- presentation ----------
MATCH_COLORS = {"high": "lime", "medium": "yellow", "low": "orange"}
ROI_COLOR = "red"

ENV_PREFIX = "PIECETRACKER_"
PROFILE_ENV = ENV_PREFIX + "PROFILE"
_TRUTHY = ("1", "true", "yes", "on")


class SearchMode(enum.IntEnum):
    """Breadth of the rotation/scale grid. Ordered COARSE < MEDIUM < FINE."""

    COARSE = 0
    MEDIUM = 1
    FINE = 2

    def next(self) -> "SearchMode":
        if self is SearchMode.FINE:
            return self
        return SearchMode(self + 1)


def _default_rotations() -> Dict[SearchMode, Tuple[int, ...]]:
    return {
        SearchMode.COARSE: COARSE_ROTATIONS,
        SearchMode.MEDIUM: MEDIUM_ROTATIONS,
        SearchMode.FINE: FINE_ROTATIONS,
    }


def _default_scales() -> Dict[SearchMode, Tuple[float, ...]]:
    return {
        SearchMode.COARSE: COARSE_SCALES,
        SearchMode.MEDIUM: MEDIUM_SCALES,
        SearchMode.FINE: FINE_SCALES,
    }


def _as_bool(value: str) -> bool:
    return value.strip().lower() in _TRUTHY


def profiling_enabled() -> bool:
    return _as_bool(os.getenv(PROFILE_ENV, ""))


@dataclass(frozen=True)
class SearchConfig:
    """
    Immutable detector configuration.

    Rotation and scale grids are keyed by `SearchMode` and tried in the
    listed order. Threshold comparisons follow the detector's rules: the
    detection threshold is inclusive, every other threshold is a strict
    "exceeds".
    """

    rotations: Mapping[SearchMode, Tuple[int, ...]] = field(
        default_factory=_default_rotations
    )
    scales: Mapping[SearchMode, Tuple[float, ...]] = field(
        default_factory=_default_scales
    )
    detection_threshold: float = DETECTION_THRESHOLD
    match_threshold: float = MATCH_CONFIDENCE_THRESHOLD
    high_confidence_threshold: float = HIGH_CONFIDENCE_THRESHOLD
    early_termination_threshold: float = EARLY_TERMINATION_THRESHOLD
    medium_mode_threshold: float = MEDIUM_MODE_THRESHOLD
    fine_mode_threshold: float = FINE_MODE_THRESHOLD
    confidence_decay: float = CONFIDENCE_DECAY
    position_tolerance: int = STABLE_POSITION_THRESHOLD
    size_tolerance: int = STABLE_SIZE_THRESHOLD
    rotation_tolerance: int = STABLE_ROTATION_THRESHOLD
    max_stable_count: int = MAX_STABLE_COUNT
    max_search_iterations: int = MAX_SEARCH_ITERATIONS
    min_template_size: int = MIN_TEMPLATE_SIZE
    stable_scale_factors: Tuple[float, ...] = STABLE_SCALE_FACTORS
    roi_enabled: bool = ROI_ENABLED
    roi_margin_high: float = ROI_MARGIN_FACTOR_HIGH
    roi_margin_low: float = ROI_MARGIN_FACTOR_LOW

    def __post_init__(self) -> None:
        rotations = {}
        scales = {}
        for mode in SearchMode:
            angles = tuple(int(round(a)) % 360 for a in self.rotations.get(mode, ()))
            factors = tuple(float(s) for s in self.scales.get(mode, ()))
            if not angles:
                raise ValueError(f"No rotations configured for {mode.name}")
            if not factors or min(factors) <= 0:
                raise ValueError(f"Scales for {mode.name} must be non-empty and positive")
            rotations[mode] = angles
            scales[mode] = factors
        # frozen: write the normalised tables through object.__setattr__
        object.__setattr__(self, "rotations", types.MappingProxyType(rotations))
        object.__setattr__(self, "scales", types.MappingProxyType(scales))

        for name in (
            "detection_threshold",
            "match_threshold",
            "high_confidence_threshold",
            "early_termination_threshold",
            "medium_mode_threshold",
            "fine_mode_threshold",
            "confidence_decay",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        for name in ("position_tolerance", "size_tolerance", "rotation_tolerance"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if self.max_stable_count <= 0:
            raise ValueError("max_stable_count must be positive")
        if self.max_search_iterations <= 0:
            raise ValueError("max_search_iterations must be positive")
        if self.min_template_size < 0:
            raise ValueError("min_template_size must not be negative")
        if not self.stable_scale_factors or min(self.stable_scale_factors) <= 0:
            raise ValueError("stable_scale_factors must be non-empty and positive")

    def rotations_for(self, mode: SearchMode) -> Tuple[int, ...]:
        return self.rotations[mode]

    def scales_for(self, mode: SearchMode) -> Tuple[float, ...]:
        return self.scales[mode]

    def with_overrides(self, **overrides) -> "SearchConfig":
        return replace(self, **overrides)

    @classmethod
    def from_env(
        cls, environ: Optional[Dict[str, str]] = None, **overrides
    ) -> "SearchConfig":
        """
        Build a config from defaults, `PIECETRACKER_*` variables and overrides.

        Scalar fields map to upper-cased variable names, e.g.
        `PIECETRACKER_DETECTION_THRESHOLD=0.5` or
        `PIECETRACKER_ROI_ENABLED=0`. Explicit keyword overrides win over the
        environment.

        Raises:
            ValueError: If a variable cannot be parsed or the result is invalid.
        """
        env = os.environ if environ is None else environ
        values = {}
        for f in _scalar_fields():
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw.strip() == "":
                continue
            try:
                values[f.name] = _parse_scalar(f.type, raw)
            except ValueError as exc:
                raise ValueError(
                    f"Invalid value for {ENV_PREFIX + f.name.upper()}: {raw!r}"
                ) from exc
        values.update(overrides)
        return cls(**values)


def _scalar_fields() -> Iterable:
    return [
        f
        for f in fields(SearchConfig)
        if f.name not in ("rotations", "scales", "stable_scale_factors")
    ]


def _parse_scalar(type_name, raw: str):
    # annotations are strings under `from __future__ import annotations`
    name = type_name if isinstance(type_name, str) else type_name.__name__
    if name == "bool":
        return _as_bool(raw)
    if name == "int":
        return int(raw)
    return float(raw)


DEFAULT_CONFIG = SearchConfig()
