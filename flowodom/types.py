"""Image, keypoint and match records shared by the feature pipelines."""

from __future__ import annotations

from dataclasses import dataclass
from typing import MutableSequence


@dataclass
class ImageData:
    """A grayscale image stored row by row, one byte per pixel."""

    width: int
    height: int
    pixels: MutableSequence[int]

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError("image dimensions must not be negative")
        if len(self.pixels) != self.width * self.height:
            raise ValueError(
                f"expected {self.width * self.height} pixels, got {len(self.pixels)}"
            )

    def at(self, x: int, y: int) -> int:
        """Return the pixel value at column ``x`` and row ``y``."""
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"pixel ({x}, {y}) lies outside the image")
        return self.pixels[y * self.width + x]


@dataclass(frozen=True)
class Point2D:
    """A keypoint location in pixel coordinates."""

    x: int
    y: int


@dataclass(frozen=True)
class FeatureMatch:
    """A correspondence between feature ``feat_idx0`` and feature ``feat_idx1``."""

    feat_idx0: int
    feat_idx1: int
    match_score: int