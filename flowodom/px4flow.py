"""Block-matching optical flow in the style of the PX4FLOW sensor.

Frames are flat, row-major sequences of 8-bit pixels. Flow results are in
half-pixel units; points that cannot be tracked report ``FLOW_INVALID``.
"""

from __future__ import annotations

from typing import Sequence

from flowodom.types import Point2D

IMAGE_WIDTH = 160
IMAGE_HEIGHT = 120
SEARCH_SIZE = 4
TILE_SIZE = 8
NUM_BLOCKS = 8
NUM_CORES = 8
HIST_SIZE = 2 * (2 * SEARCH_SIZE + 1) + 1

BOTTOM_FLOW_FEATURE_THRESHOLD = 40
BOTTOM_FLOW_VALUE_THRESHOLD = 5000

FLOW_INVALID = (-128, -128)

# Sub-pixel search directions around the best integer match:
#   5 6 7
#   4 X 0
#   3 2 1
_X_STEP = {0: 1, 1: 1, 7: 1, 3: -1, 4: -1, 5: -1}
_Y_STEP = {1: 1, 2: 1, 3: 1, 5: -1, 6: -1, 7: -1}


def _span(image: Sequence[int], start: int, length: int) -> Sequence[int]:
    if start < 0 or start + length > len(image):
        raise IndexError(f"pixels {start}..{start + length - 1} lie outside the image")
    return image[start:start + length]


def _sad(a: Sequence[int], b: Sequence[int]) -> int:
    return sum(abs(p - q) for p, q in zip(a, b))


def _half(a: Sequence[int], b: Sequence[int]) -> list[int]:
    return [(p + q) >> 1 for p, q in zip(a, b)]


def compute_sad_8x8(
    image1: Sequence[int],
    image2: Sequence[int],
    off1_x: int,
    off1_y: int,
    off2_x: int,
    off2_y: int,
    row_size: int,
) -> int:
    """Sum of absolute differences between two 8x8 windows."""
    off1 = off1_y * row_size + off1_x
    off2 = off2_y * row_size + off2_x
    return sum(
        _sad(
            _span(image1, off1 + row * row_size, TILE_SIZE),
            _span(image2, off2 + row * row_size, TILE_SIZE),
        )
        for row in range(TILE_SIZE)
    )


def compute_diff(image: Sequence[int], off_x: int, off_y: int, row_size: int) -> int:
    """Gradient energy of the central 4x4 patch of an 8x8 window.

    Higher values mean the window is better suited for tracking.
    """
    off = (off_y + 2) * row_size + (off_x + 2)
    rows = [_span(image, off + r * row_size, 4) for r in range(4)]
    vertical = sum(_sad(upper, lower) for upper, lower in zip(rows, rows[1:]))
    cols = list(zip(*rows))
    horizontal = sum(_sad(left, right) for left, right in zip(cols, cols[1:]))
    return vertical + horizontal


def _interpolated_row(image: Sequence[int], start: int) -> list[int]:
    """Average of each pixel with its left neighbour, for nine positions."""
    return _half(_span(image, start - 1, TILE_SIZE + 1), _span(image, start, TILE_SIZE + 1))


def compute_subpixel(
    image1: Sequence[int],
    image2: Sequence[int],
    off1_x: int,
    off1_y: int,
    off2_x: int,
    off2_y: int,
    row_size: int,
) -> list[int]:
    """SAD of the window in ``image1`` against eight half-pixel shifts in ``image2``.

    Index ``k`` of the result is direction ``k``: 0 right, then clockwise
    through bottom-right, bottom, bottom-left, left, top-left, top, top-right.
    """
    off1 = off1_y * row_size + off1_x
    off2 = off2_y * row_size + off2_x
    acc = [0] * 8

    right_upper = _interpolated_row(image2, off2 - row_size)
    for i in range(TILE_SIZE + 1):
        right_lower = right_upper
        right_upper = _interpolated_row(image2, off2 + i * row_size)
        diag = _half(right_upper, right_lower)
        below = _half(
            _span(image2, off2 + (i - 1) * row_size - 1, TILE_SIZE + 1),
            _span(image2, off2 + i * row_size - 1, TILE_SIZE + 1),
        )

        if i < TILE_SIZE:
            line = _span(image1, off1 + i * row_size, TILE_SIZE)
            acc[0] += _sad(line, right_upper[1:])
            acc[4] += _sad(line, right_upper[:TILE_SIZE])
            acc[5] += _sad(line, diag[:TILE_SIZE])
            acc[7] += _sad(line, diag[1:])
            acc[6] += _sad(line, below[1:])
        if i > 0:
            line = _span(image1, off1 + (i - 1) * row_size, TILE_SIZE)
            acc[1] += _sad(line, diag[1:])
            acc[3] += _sad(line, diag[:TILE_SIZE])
            acc[2] += _sad(line, below[1:])
    return acc


def _check_point(point: Point2D) -> None:
    low = SEARCH_SIZE + 1
    if not (low <= point.x < IMAGE_WIDTH - TILE_SIZE - SEARCH_SIZE):
        raise ValueError(f"x coordinate {point.x} leaves no room for the search window")
    if not (low <= point.y < IMAGE_HEIGHT - TILE_SIZE - SEARCH_SIZE):
        raise ValueError(f"y coordinate {point.y} leaves no room for the search window")


def _track_point(frame1: Sequence[int], frame2: Sequence[int], x: int, y: int) -> tuple[int, int]:
    row = IMAGE_WIDTH
    if compute_diff(frame1, x, y, row) < BOTTOM_FLOW_FEATURE_THRESHOLD:
        return FLOW_INVALID

    dist = 0xFFFFFFFF
    best_x = best_y = 0
    window = range(-SEARCH_SIZE, SEARCH_SIZE + 1)
    for jj in window:
        for ii in window:
            candidate = compute_sad_8x8(frame1, frame2, x, y, x + ii, y + jj, row)
            if candidate < dist:
                best_x, best_y, dist = ii, jj, candidate

    if dist >= BOTTOM_FLOW_VALUE_THRESHOLD:
        return FLOW_INVALID

    acc = compute_subpixel(frame1, frame2, x, y, x + best_x, y + best_y, row)
    min_dist = dist
    min_dir = 8
    for direction, value in enumerate(acc):
        if value < min_dist:
            min_dist, min_dir = value, direction

    return (
        2 * best_x + _X_STEP.get(min_dir, 0),
        2 * best_y + _Y_STEP.get(min_dir, 0),
    )


def compute_flow(
    frame1: Sequence[int],
    frame2: Sequence[int],
    coordinates: Sequence[Point2D],
) -> list[tuple[int, int]]:
    """Track each 8x8 window at ``coordinates`` from ``frame1`` into ``frame2``.

    Returns one ``(x, y)`` displacement in half pixels per coordinate, or
    ``FLOW_INVALID`` for windows lacking texture or a good match.
    """
    size = IMAGE_WIDTH * IMAGE_HEIGHT
    for frame in (frame1, frame2):
        if len(frame) != size:
            raise ValueError(f"expected frames of {size} pixels, got {len(frame)}")
    for point in coordinates:
        _check_point(point)
    return [_track_point(frame1, frame2, point.x, point.y) for point in coordinates]