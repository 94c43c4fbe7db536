import random

import pytest

from flowodom.px4flow import (
    FLOW_INVALID,
    IMAGE_HEIGHT,
    IMAGE_WIDTH,
    TILE_SIZE,
    compute_diff,
    compute_flow,
    compute_sad_8x8,
    compute_subpixel,
)
from flowodom.types import Point2D

W, H = IMAGE_WIDTH, IMAGE_HEIGHT


def flat(value):
    return bytearray([value] * (W * H))


def textured(seed=7):
    rng = random.Random(seed)
    return [rng.randrange(256) for _ in range(W * H)]


def shifted(frame, dx, dy):
    return [frame[((y - dy) % H) * W + (x - dx) % W] for y in range(H) for x in range(W)]


POINTS = [Point2D(23, 23), Point2D(59, 41), Point2D(95, 77)]


def test_sad_of_identical_windows_is_zero():
    frame = textured()
    assert compute_sad_8x8(frame, frame, 30, 30, 30, 30, W) == 0


def test_sad_of_constant_offset():
    assert compute_sad_8x8(flat(10), flat(13), 20, 20, 21, 19, W) == TILE_SIZE * TILE_SIZE * 3


def test_sad_is_symmetric():
    a, b = textured(1), textured(2)
    assert compute_sad_8x8(a, b, 10, 12, 14, 16, W) == compute_sad_8x8(b, a, 14, 16, 10, 12, W)


def test_sad_outside_image_raises():
    with pytest.raises(IndexError):
        compute_sad_8x8(flat(0), flat(0), 0, 0, -5, 0, W)


def test_diff_of_flat_image_is_zero():
    assert compute_diff(flat(90), 40, 40, W) == 0


def test_diff_is_symmetric_under_transpose():
    size = 16
    ramp = [5 * x + (y * y) % 7 for y in range(size) for x in range(size)]
    transposed = [ramp[x * size + y] for y in range(size) for x in range(size)]
    assert compute_diff(ramp, 2, 3, size) == compute_diff(transposed, 3, 2, size)


def test_subpixel_of_constant_images_matches_integer_sad():
    a, b = flat(40), flat(100)
    expected = compute_sad_8x8(a, b, 30, 30, 30, 30, W)
    assert compute_subpixel(a, b, 30, 30, 30, 30, W) == [expected] * 8


def test_subpixel_of_identical_constant_images_is_zero():
    frame = flat(17)
    assert compute_subpixel(frame, frame, 50, 50, 51, 49, W) == [0] * 8


@pytest.mark.parametrize("dx,dy", [(0, 0), (3, -2), (-4, 4), (1, 1)])
def test_flow_recovers_integer_shift(dx, dy):
    frame1 = textured()
    frame2 = shifted(frame1, dx, dy)
    assert compute_flow(frame1, frame2, POINTS) == [(2 * dx, 2 * dy)] * len(POINTS)


def test_flow_on_flat_frames_is_invalid():
    assert compute_flow(flat(50), flat(50), POINTS) == [FLOW_INVALID] * len(POINTS)


def test_flow_with_no_points_is_empty():
    assert compute_flow(textured(), textured(), []) == []


def test_flow_rejects_wrong_frame_size():
    with pytest.raises(ValueError):
        compute_flow(bytearray(100), flat(0), POINTS)


@pytest.mark.parametrize("point", [Point2D(4, 50), Point2D(148, 50), Point2D(50, 108)])
def test_flow_rejects_points_too_close_to_border(point):
    with pytest.raises(ValueError):
        compute_flow(textured(), textured(), [point])