"""ORB keypoint detection and rotated BRIEF description on 8-bit images."""

from __future__ import annotations

import logging
import math
import struct
from dataclasses import dataclass, field
from itertools import chain
from typing import Callable, Sequence

from flowodom.orb_pattern import BIT_PATTERN_31
from flowodom.types import ImageData, Point2D

logger = logging.getLogger(__name__)

PATCH_RADIUS = 15
FAST_THRESHOLD = 20
HARRIS_BLOCK_SIZE = 7
HARD_HARRIS_THRESHOLD = 10000
FAST_ARC_LENGTH = 9
DESCRIPTOR_WORDS = 8

_FAST_TARGET = 300
_MIN_FAST_THRESHOLD = 5
_MIN_KEYPOINTS = 150
_MAX_KEYPOINTS = 200
_MIN_HARRIS_THRESHOLD = 2
_FAST_BORDER = 3
_HARRIS_BORDER = HARRIS_BLOCK_SIZE // 2 + 1

_GAUSS_1D = (1, 4, 6, 4, 1)
_GAUSS_SCALE = 256

# (dx, dy) of the Bresenham circle of radius 3 used by FAST.
_FAST_CIRCLE = (
    (-3, 0), (-3, 1), (-2, 2), (-1, 3),
    (0, 3), (1, 3), (2, 2), (3, 1),
    (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1),
)

_DISK = tuple(
    (dx, dy)
    for dy in range(-PATCH_RADIUS + 1, PATCH_RADIUS)
    for dx in range(-PATCH_RADIUS + 1, PATCH_RADIUS)
    if dx * dx + dy * dy < PATCH_RADIUS * PATCH_RADIUS
)

Descriptor = tuple[int, ...]


@dataclass
class OrbFeatures:
    """Keypoints with their descriptors, limited to ``capacity`` entries."""

    kpts: list[Point2D] = field(default_factory=list)
    descs: list[Descriptor] = field(default_factory=list)
    capacity: int = 512

    def __post_init__(self) -> None:
        if len(self.descs) != len(self.kpts):
            raise ValueError("keypoints and descriptors differ in number")
        if len(self.kpts) > self.capacity:
            raise ValueError("more keypoints than the capacity allows")

    def __len__(self) -> int:
        return len(self.kpts)


def fast_offsets(step: int) -> tuple[int, ...]:
    """Flat-buffer offsets of the 16 FAST circle pixels for rows of ``step`` pixels."""
    return tuple(dy * step + dx for dx, dy in _FAST_CIRCLE)


def harris_offsets(step: int) -> tuple[int, ...]:
    """Flat-buffer offsets of the Harris block pixels, row by row."""
    half = HARRIS_BLOCK_SIZE // 2
    return tuple(
        (k % HARRIS_BLOCK_SIZE - half) + (k // HARRIS_BLOCK_SIZE - half) * step
        for k in range(HARRIS_BLOCK_SIZE * HARRIS_BLOCK_SIZE)
    )


def _tdiv(num: int, den: int) -> int:
    """Integer division truncating toward zero."""
    quotient = abs(num) // abs(den)
    return quotient if (num < 0) == (den < 0) else -quotient


def _wrap32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def _f32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


def _has_arc(flags: Sequence[bool]) -> bool:
    run = 0
    for flag in chain(flags, flags[:8]):
        run = run + 1 if flag else 0
        if run >= FAST_ARC_LENGTH:
            return True
    return False


class OrbDetector:
    """FAST plus Harris detector with self-adjusting thresholds.

    The soft thresholds adapt after every detection run so that the number of
    FAST candidates and keypoints drifts toward fixed targets.
    """

    def __init__(self, image_width: int) -> None:
        if image_width <= 0:
            raise ValueError("image width must be positive")
        self.image_width = image_width
        self.fast_offsets = fast_offsets(image_width)
        self.harris_offsets = harris_offsets(image_width)
        self.soft_fast_threshold = FAST_THRESHOLD
        self.soft_harris_threshold = HARD_HARRIS_THRESHOLD // 10

    def _check(self, img: ImageData, x: int, y: int, border: int) -> None:
        if img.width != self.image_width:
            raise ValueError(
                f"detector set up for width {self.image_width}, image has {img.width}"
            )
        if not (border <= x < img.width - border and border <= y < img.height - border):
            raise IndexError(f"pixel ({x}, {y}) is too close to the image border")

    def fast_score(self, img: ImageData, x: int, y: int, fast_threshold: int) -> int:
        """Sum of absolute circle differences if (x, y) is a FAST corner, else 0."""
        self._check(img, x, y, _FAST_BORDER)
        pixels = img.pixels
        centre_index = y * img.width + x
        centre = pixels[centre_index]
        diffs = [pixels[centre_index + off] - centre for off in self.fast_offsets]
        total = sum(abs(d) for d in diffs)
        bigger = [d > fast_threshold for d in diffs]
        smaller = [d < -fast_threshold for d in diffs]
        return total if _has_arc(bigger) or _has_arc(smaller) else 0

    def harris_score(self, img: ImageData, x: int, y: int) -> int:
        """Integer Harris response over a 7x7 block with k = 0.04."""
        self._check(img, x, y, _HARRIS_BORDER)
        p = img.pixels
        step = img.width
        base = y * step + x
        a = b = c = 0
        for off in self.harris_offsets:
            i = base + off
            ix = (
                (p[i + 1] - p[i - 1]) * 2
                + (p[i - step + 1] - p[i - step - 1])
                + (p[i + step + 1] - p[i + step - 1])
            )
            iy = (
                (p[i + step] - p[i - step]) * 2
                + (p[i + step - 1] - p[i - step - 1])
                + (p[i + step + 1] - p[i - step + 1])
            )
            a += ix * ix
            b += iy * iy
            c += ix * iy
        a //= 1 << 11
        b //= 1 << 11
        c = _tdiv(c, 1 << 11)
        return _wrap32(a * b - c * c - _tdiv(_wrap32((a + b) * (a + b)), 25))

    def detect(
        self,
        img: ImageData,
        start_row: int,
        end_row: int,
        fast_threshold: int = FAST_THRESHOLD,
        capacity: int = 512,
    ) -> list[Point2D]:
        """Find keypoints in rows ``start_row`` to ``end_row`` (exclusive), row by row.

        ``fast_threshold`` caps how far the soft FAST threshold may rise.
        Detection stops once ``capacity`` keypoints are found.
        """
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if img.width != self.image_width:
            raise ValueError(
                f"detector set up for width {self.image_width}, image has {img.width}"
            )
        keypoints: list[Point2D] = []
        fast_count = 0
        for y in range(start_row, end_row):
            for x in range(PATCH_RADIUS, img.width - PATCH_RADIUS):
                if self.fast_score(img, x, y, self.soft_fast_threshold) == 0:
                    continue
                fast_count += 1
                if self.harris_score(img, x, y) > self.soft_harris_threshold:
                    keypoints.append(Point2D(x, y))
                    if len(keypoints) == capacity:
                        logger.debug("Max keypoints reached")
                        self.soft_harris_threshold = min(
                            HARD_HARRIS_THRESHOLD, self.soft_harris_threshold * 2
                        )
                        return keypoints
        self._adapt(fast_count, len(keypoints), fast_threshold)
        logger.debug("Fast counter %d, soft thresh %d", fast_count, self.soft_fast_threshold)
        logger.debug(
            "Keypoint counter %d, soft thresh %d", len(keypoints), self.soft_harris_threshold
        )
        return keypoints

    def _adapt(self, fast_count: int, keypoint_count: int, fast_threshold: int) -> None:
        if fast_count < _FAST_TARGET:
            self.soft_fast_threshold = max(_MIN_FAST_THRESHOLD, self.soft_fast_threshold - 1)
        if fast_count > _FAST_TARGET:
            self.soft_fast_threshold = min(fast_threshold, self.soft_fast_threshold + 1)
        if keypoint_count < _MIN_KEYPOINTS:
            self.soft_harris_threshold = max(
                _MIN_HARRIS_THRESHOLD, self.soft_harris_threshold // 2
            )
        if keypoint_count > _MAX_KEYPOINTS:
            self.soft_harris_threshold = min(
                HARD_HARRIS_THRESHOLD,
                self.soft_harris_threshold + self.soft_harris_threshold // 2,
            )


def apply_gaussian_blur(
    img_in: ImageData, img_out: ImageData, start_row: int, end_row: int
) -> None:
    """Blur rows ``start_row`` to ``end_row`` of ``img_in`` into ``img_out``.

    A 5x5 binomial kernel is used; the two outermost rows and columns are
    copied unchanged.
    """
    if (img_in.width, img_in.height) != (img_out.width, img_out.height):
        raise ValueError("input and output images differ in size")
    width, height = img_in.width, img_in.height
    if width < 4 or height < 4:
        raise ValueError("image must be at least 4x4 pixels")
    if start_row < 0 or end_row > height:
        raise ValueError("row range lies outside the image")
    src, dst = img_in.pixels, img_out.pixels

    def copy_row(y: int) -> None:
        dst[y * width:(y + 1) * width] = src[y * width:(y + 1) * width]

    if start_row < 2:
        copy_row(0)
        copy_row(1)
        start_row = 2
    if end_row >= height - 2:
        copy_row(height - 2)
        copy_row(height - 1)
        end_row = height - 2

    for y in range(start_row, end_row):
        row = y * width
        dst[row:row + 2] = src[row:row + 2]
        dst[row + width - 2:row + width] = src[row + width - 2:row + width]
        column_sums = [
            sum(k * src[(y + d) * width + x] for k, d in zip(_GAUSS_1D, range(-2, 3)))
            for x in range(width)
        ]
        for x in range(2, width - 2):
            total = sum(k * column_sums[x + d] for k, d in zip(_GAUSS_1D, range(-2, 3)))
            dst[row + x] = total // _GAUSS_SCALE


def _clip_offset(first: int, second: int) -> int:
    """Scale a rotated pattern offset by 1/256; magnitudes below 15 become 15."""
    if first + second < 0:
        return -max((-first + second + 128) // 256, 15)
    return max((first + second + 128) // 256, 15)


def _sampler(img: ImageData, kpt: Point2D) -> Callable[[int, int], int]:
    pixels = img.pixels
    step = img.width
    base = kpt.y * step + kpt.x
    last = len(pixels) - 1

    def sample(dx: int, dy: int) -> int:
        return pixels[min(max(base + dy * step + dx, 0), last)]

    return sample


def _describe(img: ImageData, kpt: Point2D) -> Descriptor:
    sample = _sampler(img, kpt)
    sum_ix = sum_iy = 0
    for dx, dy in _DISK:
        value = sample(dx, dy)
        sum_ix += dx * value
        sum_iy += dy * value
    alpha = _f32(math.atan2(_f32(sum_iy), _f32(sum_ix)))
    a = int(_f32(_f32(math.cos(alpha)) * 256))
    b = int(_f32(_f32(math.sin(alpha)) * 256))

    words = []
    for word_index in range(DESCRIPTOR_WORDS):
        word = 0
        pairs = BIT_PATTERN_31[word_index * 32:(word_index + 1) * 32]
        for bit, (x0o, y0o, x1o, y1o) in enumerate(pairs):
            y0 = _clip_offset(x0o * b, y0o * a)
            x0 = _clip_offset(x0o * a, -y0o * b)
            x1 = _clip_offset(x1o * a, -y1o * b)
            y1 = _clip_offset(x1o * b, y1o * a)
            if sample(x0, y0) < sample(x1, y1):
                word |= 1 << bit
        words.append(word)
    return tuple(words)


def calculate_orb_descriptors(
    blurred_img: ImageData, keypoints: Sequence[Point2D]
) -> list[Descriptor]:
    """Compute an 8-word rotated BRIEF descriptor for each keypoint.

    Samples falling outside the pixel buffer read the nearest pixel in it.
    """
    return [_describe(blurred_img, kpt) for kpt in keypoints]