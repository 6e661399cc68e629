import cv2
import numpy as np
import pytest

from piecetracker import imaging
from piecetracker.imaging import ReferenceCache, RotationCache, SearchRegion

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _ramp(h=40, w=60):
    return (np.arange(h * w, dtype=np.uint32) % 251).astype(np.uint8).reshape(h, w)


# ---------- SearchRegion ----------
def test_region_clip_is_intersection():
    r = SearchRegion(-10, -5, 50, 30).clip(100, 100)
    assert r == SearchRegion(0, 0, 40, 25)
    r = SearchRegion(80, 90, 50, 50).clip(100, 100)
    assert r == SearchRegion(80, 90, 20, 10)


def test_region_clip_outside_is_empty():
    r = SearchRegion(150, 150, 10, 10).clip(100, 100)
    assert r.width == 0 and r.height == 0
    r = SearchRegion(-50, -50, 10, 10).clip(100, 100)
    assert r.area == 0


def test_region_helpers():
    r = SearchRegion(5, 6, 10, 20)
    assert (r.x1, r.y1, r.area) == (15, 26, 200)
    assert r.as_tuple() == (5, 6, 10, 20)
    assert SearchRegion.full(64, 48) == SearchRegion(0, 0, 64, 48)


# ---------- preprocessing ----------
@pytest.mark.parametrize(
    "image",
    [None, np.zeros((0, 10), np.uint8), np.zeros((10, 0, 3), np.uint8), np.zeros(5)],
)
def test_is_empty(image):
    assert imaging.is_empty(image)


def test_to_gray_handles_channel_layouts():
    bgr = np.zeros((4, 4, 3), np.uint8)
    bgr[..., 2] = 255  # red in BGR
    assert imaging.to_gray(bgr).shape == (4, 4)
    # red weighs more than blue in luma
    assert imaging.to_gray(bgr)[0, 0] > imaging.to_gray(bgr, "rgb")[0, 0]
    bgra = np.zeros((4, 4, 4), np.uint8)
    assert imaging.to_gray(bgra).shape == (4, 4)
    single = np.full((4, 4, 1), 7, np.uint8)
    assert imaging.to_gray(single)[0, 0] == 7


def test_to_gray_rejects_unknown_layout():
    with pytest.raises(ValueError):
        imaging.to_gray(np.zeros((4, 4, 2), np.uint8))
    with pytest.raises(ValueError):
        imaging.to_gray(np.zeros((4, 4, 3), np.uint8), "hsv")


def test_preprocess_blurs_single_channel():
    img = np.zeros((9, 9, 3), np.uint8)
    img[4, 4] = 255
    out = imaging.preprocess(img)
    assert out.ndim == 2 and out.dtype == np.uint8
    assert out[4, 4] < 255
    assert out[4, 5] > 0


# ---------- transforms ----------
def test_rotate_right_angles_are_exact():
    img = _ramp()
    np.testing.assert_array_equal(imaging.rotate_image(img, 90), np.rot90(img, k=-1))
    np.testing.assert_array_equal(imaging.rotate_image(img, 180), np.rot90(img, k=2))
    np.testing.assert_array_equal(imaging.rotate_image(img, -90), np.rot90(img, k=1))
    np.testing.assert_array_equal(imaging.rotate_image(img, 360), img)


def test_rotate_zero_returns_copy():
    img = _ramp()
    out = imaging.rotate_image(img, 0)
    out[0, 0] = 255 - out[0, 0]
    assert out[0, 0] != img[0, 0]


def test_rotate_arbitrary_angle_enlarges_canvas():
    img = np.full((40, 60), 200, np.uint8)
    out = imaging.rotate_image(img, 45)
    side = int(40 * np.sin(np.radians(45)) + 60 * np.cos(np.radians(45)))
    assert abs(out.shape[1] - side) <= 1
    assert abs(out.shape[0] - side) <= 1
    # corners of the enlarged canvas are black fill
    assert out[0, 0] == 0


@pytest.mark.parametrize(
    "scale,expected", [(0.5, (20, 30)), (0.75, (30, 45)), (1.1, (44, 66))]
)
def test_resize_template_floors(scale, expected):
    out = imaging.resize_template(_ramp(), scale)
    assert out.shape == expected


def test_resize_template_degenerate_is_empty():
    out = imaging.resize_template(_ramp(), 0.01)
    assert out.size == 0
    assert imaging.is_empty(out)


def test_correlate_finds_exact_crop():
    rng = np.random.default_rng(3)
    region = rng.integers(0, 256, size=(80, 120), dtype=np.uint8)
    template = region[20:50, 35:75].copy()
    score, (x, y) = imaging.correlate(region, template)
    assert score == pytest.approx(1.0, abs=1e-4)
    assert (x, y) == (35, 20)


def test_correlate_rejects_oversized_template():
    region = np.zeros((30, 30), np.uint8)
    assert imaging.correlate(region, np.zeros((30, 10), np.uint8)) == (0.0, (0, 0))
    assert imaging.correlate(region, np.zeros((10, 31), np.uint8)) == (0.0, (0, 0))


def test_correlate_flat_template_score_in_range():
    rng = np.random.default_rng(4)
    region = rng.integers(0, 256, size=(60, 60), dtype=np.uint8)
    score, _ = imaging.correlate(region, np.full((20, 20), 128, np.uint8))
    assert 0.0 <= score <= 1.0


# ---------- ReferenceCache ----------
def test_reference_cache_is_read_only_copy():
    src = _ramp()
    cache = ReferenceCache(src)
    src[0, 0] = 99
    assert cache.image[0, 0] == 0
    assert not cache.image.flags.writeable
    assert (cache.width, cache.height) == (60, 40)
    assert cache.full_region() == SearchRegion(0, 0, 60, 40)


def test_reference_cache_rejects_empty_and_color():
    with pytest.raises(RuntimeError):
        ReferenceCache(np.zeros((0, 0), np.uint8))
    with pytest.raises(RuntimeError):
        ReferenceCache(np.zeros((4, 4, 3), np.uint8))
    with pytest.raises(RuntimeError):
        ReferenceCache.from_image(None)


def test_reference_cache_from_color_image():
    bgr = cv2.cvtColor(_ramp(), cv2.COLOR_GRAY2BGR)
    cache = ReferenceCache.from_image(bgr)
    assert cache.image.shape == (40, 60)


def test_extract_region_clips():
    cache = ReferenceCache(_ramp())
    view = cache.extract_region(SearchRegion(50, 30, 40, 40))
    assert view.shape == (10, 10)
    np.testing.assert_array_equal(view, _ramp()[30:40, 50:60])


# ---------- RotationCache ----------
def test_rotation_cache_hits_on_same_content():
    cache = RotationCache()
    img = _ramp()
    first = cache.rotate(img, 90)
    second = cache.rotate(img.copy(), 90)
    assert first is second
    assert (cache.hits, cache.misses) == (1, 1)
    assert not first.flags.writeable


def test_rotation_cache_distinguishes_content():
    cache = RotationCache()
    a = _ramp()
    b = a.copy()
    b[0, 0] = 255 - b[0, 0]
    ra = cache.rotate(a, 90)
    rb = cache.rotate(b, 90)
    assert ra is not rb
    np.testing.assert_array_equal(rb, np.rot90(b, k=-1))


def test_rotation_cache_evicts_oldest_when_full():
    cache = RotationCache(max_entries=2)
    img = _ramp()
    cache.rotate(img, 0)
    cache.rotate(img, 90)
    cache.rotate(img, 180)
    assert len(cache) == 2
    cache.rotate(img, 0)
    assert cache.misses == 4


def test_rotation_cache_prune_drops_uncommon_after_interval():
    clock = FakeClock()
    cache = RotationCache(common_angles={0, 90}, cleanup_interval_s=60.0, clock=clock)
    img = _ramp()
    cache.rotate(img, 90)
    cache.rotate(img, 37)
    assert len(cache) == 2

    clock.now = 30.0
    assert cache.prune() == 0
    assert len(cache) == 2

    clock.now = 61.0
    assert cache.prune() == 1
    assert len(cache) == 1
    assert cache.prune(force=True) == 0


def test_rotation_cache_clear():
    cache = RotationCache()
    cache.rotate(_ramp(), 90)
    cache.clear()
    assert len(cache) == 0
    assert (cache.hits, cache.misses) == (0, 0)
