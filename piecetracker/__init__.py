"""Real-time localisation of a live probe patch inside a captured reference image."""

from .config import DEFAULT_CONFIG, SearchConfig, SearchMode
from .detector import DetectorState, MatchCandidate, SearchController
from .driver import FrameDriver, FrameResult
from .imaging import ReferenceCache, RotationCache, SearchRegion

__version__ = "0.1.0"

__all__ = [
    "DEFAULT_CONFIG",
    "DetectorState",
    "FrameDriver",
    "FrameResult",
    "MatchCandidate",
    "ReferenceCache",
    "RotationCache",
    "SearchConfig",
    "SearchController",
    "SearchMode",
    "SearchRegion",
    "__version__",
]
