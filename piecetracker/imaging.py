"""
OpenCV building blocks used by the search controller.

Everything here is a plain function over numpy arrays, except the two small
caches: `ReferenceCache` (the preprocessed reference for one session) and
`RotationCache` (memoised probe rotations).
"""

from __future__ import annotations

import hashlib
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional, Tuple

import cv2
import numpy as np

from .config import (
    BLUR_KSIZE,
    BLUR_SIGMA,
    CACHE_CLEANUP_INTERVAL_S,
    COMMON_ROTATION_ANGLES,
    ROTATION_CACHE_MAX_ENTRIES,
)

RotationKey = Tuple[int, int, int, bytes]


@dataclass(frozen=True)
class SearchRegion:
    """Axis-aligned rectangle in reference-image coordinates."""

    x: int
    y: int
    width: int
    height: int

    @classmethod
    def full(cls, width: int, height: int) -> "SearchRegion":
        return cls(0, 0, max(0, int(width)), max(0, int(height)))

    def clip(self, width: int, height: int) -> "SearchRegion":
        """Intersect with `[0, width) x [0, height)`; never yields negative sizes."""
        x0 = min(max(0, self.x), width)
        y0 = min(max(0, self.y), height)
        x1 = min(max(x0, self.x + self.width), width)
        y1 = min(max(y0, self.y + self.height), height)
        return SearchRegion(int(x0), int(y0), int(x1 - x0), int(y1 - y0))

    @property
    def x1(self) -> int:
        return self.x + self.width

    @property
    def y1(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    def as_tuple(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.width, self.height


# ---------- preprocessing ----------
def is_empty(image: Optional[np.ndarray]) -> bool:
    if image is None:
        return True
    arr = np.asarray(image)
    return arr.ndim < 2 or arr.size == 0 or arr.shape[0] == 0 or arr.shape[1] == 0


def to_gray(image: np.ndarray, color_order: str = "bgr") -> np.ndarray:
    """
    Convert a gray, 3-channel or 4-channel image to single-channel uint8.

    Args:
        image: Input array (H x W, H x W x 3 or H x W x 4).
        color_order: Channel order of colour inputs, "bgr" (OpenCV) or "rgb"
            (PIL / Gradio).

    Raises:
        ValueError: If the array shape or colour order is not supported.
    """
    img = np.asarray(image)
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    if img.ndim == 2:
        return img
    if img.ndim == 3 and img.shape[2] == 1:
        return img[:, :, 0]
    order = color_order.lower()
    if order not in ("bgr", "rgb"):
        raise ValueError(f"Unsupported colour order: {color_order}")
    if img.ndim == 3 and img.shape[2] == 3:
        code = cv2.COLOR_BGR2GRAY if order == "bgr" else cv2.COLOR_RGB2GRAY
        return cv2.cvtColor(img, code)
    if img.ndim == 3 and img.shape[2] == 4:
        code = cv2.COLOR_BGRA2GRAY if order == "bgr" else cv2.COLOR_RGBA2GRAY
        return cv2.cvtColor(img, code)
    raise ValueError(f"Unsupported image shape: {img.shape}")


def preprocess(
    image: np.ndarray,
    color_order: str = "bgr",
    blur_ksz: Optional[Tuple[int, int]] = BLUR_KSIZE,
    blur_sigma: float = BLUR_SIGMA,
) -> np.ndarray:
    """Grayscale + Gaussian blur, identical for reference and probes."""
    gray = to_gray(image, color_order)
    if blur_ksz is None:
        return gray.copy()
    return cv2.GaussianBlur(gray, blur_ksz, blur_sigma)


# ---------- transforms ----------
def _normalize_angle(angle: float) -> int:
    return int(round(angle)) % 360


def rotate_image(
    img: np.ndarray,
    angle: float,
    interpolation: int = cv2.INTER_LINEAR,
    border_value: int = 0,
) -> np.ndarray:
    """
    Rotate clockwise about the centre onto a canvas large enough for the result.

    The angle is rounded to a whole degree. Right angles use exact
    transposition/flips; other angles use an affine warp with a constant
    border.
    """
    angle = _normalize_angle(angle)
    if angle == 0:
        return img.copy()
    if angle == 90:
        return cv2.rotate(img, cv2.ROTATE_90_CLOCKWISE)
    if angle == 180:
        return cv2.rotate(img, cv2.ROTATE_180)
    if angle == 270:
        return cv2.rotate(img, cv2.ROTATE_90_COUNTERCLOCKWISE)
    h, w = img.shape[:2]
    M = cv2.getRotationMatrix2D((w / 2, h / 2), -angle, 1.0)
    cos = abs(M[0, 0])
    sin = abs(M[0, 1])
    nw = int(h * sin + w * cos)
    nh = int(h * cos + w * sin)
    M[0, 2] += nw / 2 - w / 2
    M[1, 2] += nh / 2 - h / 2
    return cv2.warpAffine(
        img,
        M,
        (nw, nh),
        flags=interpolation,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=border_value,
    )


def resize_template(img: np.ndarray, scale: float) -> np.ndarray:
    """
    Scale uniformly, `INTER_AREA` when shrinking and `INTER_CUBIC` otherwise.

    A scale that collapses either side to zero returns an empty array rather
    than raising, so callers can size-check it like any other template.
    """
    h, w = img.shape[:2]
    ws = int(math.floor(w * scale))
    hs = int(math.floor(h * scale))
    if ws <= 0 or hs <= 0:
        return np.empty((max(hs, 0), max(ws, 0)), dtype=img.dtype)
    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_CUBIC
    return cv2.resize(img, (ws, hs), interpolation=interpolation)


def correlate(
    region: np.ndarray, template: np.ndarray
) -> Tuple[float, Tuple[int, int]]:
    """
    Best `TM_CCOEFF_NORMED` alignment of `template` inside `region`.

    Returns:
        `(score, (x, y))` with the score clamped to [0, 1] and the location
        relative to the region's top-left corner. A template that is not
        strictly smaller than the region in both axes scores 0.
    """
    if is_empty(region) or is_empty(template):
        return 0.0, (0, 0)
    rh, rw = region.shape[:2]
    th, tw = template.shape[:2]
    if tw >= rw or th >= rh:
        return 0.0, (0, 0)
    res = cv2.matchTemplate(region, template, cv2.TM_CCOEFF_NORMED)
    _, max_val, _, max_loc = cv2.minMaxLoc(res)
    score = float(max_val)
    if not math.isfinite(score) or score < 0.0:
        score = 0.0
    return min(score, 1.0), (int(max_loc[0]), int(max_loc[1]))


# ---------- caches ----------
class ReferenceCache:
    """Read-only preprocessed reference image for one tracking session."""

    def __init__(self, reference_gray: np.ndarray):
        if is_empty(reference_gray):
            raise RuntimeError("Reference image is empty")
        image = np.array(reference_gray, dtype=np.uint8, order="C", copy=True)
        if image.ndim != 2:
            raise RuntimeError(
                f"Reference cache expects a single-channel image, got {image.shape}"
            )
        image.setflags(write=False)
        self._image = image

    @classmethod
    def from_image(
        cls,
        image: np.ndarray,
        color_order: str = "bgr",
        blur_ksz: Optional[Tuple[int, int]] = BLUR_KSIZE,
        blur_sigma: float = BLUR_SIGMA,
    ) -> "ReferenceCache":
        if is_empty(image):
            raise RuntimeError("Reference image is empty")
        return cls(preprocess(image, color_order, blur_ksz, blur_sigma))

    @property
    def image(self) -> np.ndarray:
        return self._image

    @property
    def width(self) -> int:
        return int(self._image.shape[1])

    @property
    def height(self) -> int:
        return int(self._image.shape[0])

    def full_region(self) -> SearchRegion:
        return SearchRegion.full(self.width, self.height)

    def extract_region(self, region: SearchRegion) -> np.ndarray:
        """Return a view of `region`, clipped to the reference bounds."""
        r = region.clip(self.width, self.height)
        return self._image[r.y : r.y1, r.x : r.x1]


class RotationCache:
    """
    Memoise `rotate_image` results.

    Any angle is cached; `prune` periodically evicts angles outside
    `common_angles` so only the frequently used ones stay resident. Entries
    are keyed by angle, source size and a digest of the source
    pixels, and are stored as read-only arrays so a cached rotation can be
    handed out to any number of sweeps.
    """

    def __init__(
        self,
        common_angles: FrozenSet[int] = COMMON_ROTATION_ANGLES,
        max_entries: int = ROTATION_CACHE_MAX_ENTRIES,
        cleanup_interval_s: float = CACHE_CLEANUP_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.common_angles = frozenset(int(a) % 360 for a in common_angles)
        self.max_entries = max_entries
        self.cleanup_interval_s = cleanup_interval_s
        self._clock = clock
        self._entries: Dict[RotationKey, np.ndarray] = {}
        self._last_cleanup = clock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def _key(img: np.ndarray, angle: int) -> RotationKey:
        digest = hashlib.blake2b(
            np.ascontiguousarray(img).tobytes(), digest_size=16
        ).digest()
        h, w = img.shape[:2]
        return angle, int(w), int(h), digest

    def rotate(self, img: np.ndarray, angle: float) -> np.ndarray:
        angle = _normalize_angle(angle)
        if self.max_entries <= 0:
            self.misses += 1
            return rotate_image(img, angle)
        key = self._key(img, angle)
        cached = self._entries.get(key)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        rotated = rotate_image(img, angle)
        rotated.setflags(write=False)
        if len(self._entries) >= self.max_entries:
            # dicts keep insertion order: drop the oldest entry
            del self._entries[next(iter(self._entries))]
        self._entries[key] = rotated
        return rotated

    def prune(self, force: bool = False) -> int:
        """
        Drop entries for angles outside `common_angles` once the interval elapsed.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        if not force and now - self._last_cleanup <= self.cleanup_interval_s:
            return 0
        stale = [key for key in self._entries if key[0] not in self.common_angles]
        for key in stale:
            del self._entries[key]
        self._last_cleanup = now
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0
