"""Drawing helpers for showing matches on the reference image."""

from __future__ import annotations

from typing import Optional, Tuple

import cv2
import numpy as np

from .config import DEFAULT_CONFIG, MATCH_COLORS, ROI_COLOR, SearchConfig
from .detector import MatchCandidate
from .imaging import SearchRegion

COLOR_RGB = {
    "lime": (0, 255, 0),
    "yellow": (255, 255, 0),
    "orange": (255, 165, 0),
    "red": (255, 0, 0),
}


def match_color(confidence: float, config: SearchConfig = DEFAULT_CONFIG) -> str:
    if confidence > config.high_confidence_threshold:
        return MATCH_COLORS["high"]
    if confidence > config.match_threshold:
        return MATCH_COLORS["medium"]
    return MATCH_COLORS["low"]


def _ensure_rgb(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2RGB)
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_RGBA2RGB)
    return img.copy()


def match_corners(match: MatchCandidate) -> np.ndarray:
    """Corners of the match box rotated by `match.rotation` about its centre."""
    box = (match.center, (float(match.width), float(match.height)), float(match.rotation))
    return cv2.boxPoints(box).astype(np.int32)


def draw_match(
    reference_rgb: np.ndarray,
    match: Optional[MatchCandidate],
    region: Optional[SearchRegion] = None,
    config: SearchConfig = DEFAULT_CONFIG,
    thickness: int = 2,
) -> np.ndarray:
    """
    Return a copy of the reference with the match outline and search region.

    Matches below the detection threshold are not drawn.
    """
    canvas = _ensure_rgb(np.asarray(reference_rgb))
    if region is not None and region.area > 0:
        cv2.rectangle(
            canvas,
            (region.x, region.y),
            (region.x1 - 1, region.y1 - 1),
            COLOR_RGB[ROI_COLOR],
            1,
        )
    if match is not None and match.confidence >= config.detection_threshold:
        color: Tuple[int, int, int] = COLOR_RGB[match_color(match.confidence, config)]
        cv2.polylines(canvas, [match_corners(match)], True, color, thickness)
        cx, cy = match.center
        cv2.circle(canvas, (int(round(cx)), int(round(cy))), 3, color, -1)
    return canvas
