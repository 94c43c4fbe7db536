"""Keypoint extraction and descriptor matching on SuperPoint network outputs.

The keypoint heatmap holds, per cell of ``reduction`` x ``reduction`` pixels,
65 quantised scores (64 pixel positions plus a dustbin). The descriptor grid
holds 256 quantised values per cell.
"""

from __future__ import annotations

import logging
import math
import struct
from typing import Sequence

from flowodom.types import FeatureMatch, Point2D

logger = logging.getLogger(__name__)

IMAGE_BORDER = 4
DESCRIPTOR_SIZE = 256
HEATMAP_CHANNELS = 65
DUSTBIN = 64
KEYPOINT_SCORE_THRESHOLD = 115


def _f32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


def _norm(vector: Sequence[int]) -> int:
    """Truncated single-precision Euclidean norm."""
    return int(_f32(math.sqrt(_f32(sum(v * v for v in vector)))))


def extract_kpts(
    features: Sequence[int],
    img_width: int,
    img_height: int,
    reduction: int,
) -> list[Point2D]:
    """Pick at most one keypoint per cell: its highest score, if above threshold."""
    if reduction <= 0:
        raise ValueError("reduction must be positive")
    cells_x = img_width // reduction
    cells_y = img_height // reduction
    keypoints = []
    for cell_y in range(cells_y):
        for cell_x in range(cells_x):
            base = (cell_y * cells_x + cell_x) * HEATMAP_CHANNELS
            best_score = 0
            best_feature = 0
            best_coord = None
            for feature_i in range(reduction * reduction):
                x = cell_x * reduction + feature_i % reduction
                y = cell_y * reduction + feature_i // reduction
                # x is also held against the height, trimming the right side
                # of landscape images.
                if (
                    x < IMAGE_BORDER
                    or y < IMAGE_BORDER
                    or x >= img_width - IMAGE_BORDER
                    or x >= img_height - IMAGE_BORDER
                ):
                    continue
                score = features[base + feature_i]
                if score > best_score:
                    best_score = score
                    best_feature = feature_i
                    best_coord = Point2D(x, y)
            if best_score > KEYPOINT_SCORE_THRESHOLD and best_feature != DUSTBIN:
                keypoints.append(best_coord)
    return keypoints


def _cell(descs: Sequence[int], index_x: int, index_y: int, reduced_width: int) -> Sequence[int]:
    start = (index_x + index_y * reduced_width) * DESCRIPTOR_SIZE
    if start + DESCRIPTOR_SIZE > len(descs):
        raise IndexError(f"descriptor cell ({index_x}, {index_y}) lies outside the grid")
    return descs[start:start + DESCRIPTOR_SIZE]


def interpolate_desc(
    descs: Sequence[int],
    kpt: Point2D,
    reduced_width: int,
    reduced_height: int,
    reduction: int,
) -> list[int]:
    """Bilinearly interpolate the 256-value descriptor at a keypoint."""
    if reduction <= 0:
        raise ValueError("reduction must be positive")
    if kpt.x < IMAGE_BORDER or kpt.y < IMAGE_BORDER:
        raise ValueError(f"keypoint ({kpt.x}, {kpt.y}) lies inside the image border")
    idx_x = (kpt.x - IMAGE_BORDER) // reduction
    idx_y = (kpt.y - IMAGE_BORDER) // reduction
    off_x = kpt.x * 2 - idx_x * reduction * 2 - 7
    off_y = kpt.y * 2 - idx_y * reduction * 2 - 7
    w_tl = ((16 - off_x) * (16 - off_y)) & 0xFFFF
    w_tr = (off_x * (16 - off_y)) & 0xFFFF
    w_bl = ((16 - off_x) * off_y) & 0xFFFF
    w_br = (off_x * off_y) & 0xFFFF
    tl = _cell(descs, idx_x, idx_y, reduced_width)
    tr = _cell(descs, idx_x + 1, idx_y, reduced_width)
    bl = _cell(descs, idx_x, idx_y + 1, reduced_width)
    br = _cell(descs, idx_x + 1, idx_y + 1, reduced_width)
    return [
        ((w_tl * a + w_tr * b + w_bl * c + w_br * d) & 0xFFFF) // 256
        for a, b, c, d in zip(tl, tr, bl, br)
    ]


def calculate_cosine_similarity(
    descs0: Sequence[int],
    desc1: Sequence[int],
    feat_sum1: int,
    kpt0: Point2D,
    reduced_width: int,
    reduced_height: int,
    reduction: int,
) -> int:
    """Similarity in 0..255 between the descriptor at ``kpt0`` and ``desc1``.

    ``feat_sum1`` is the truncated norm of ``desc1``. A zero descriptor has
    similarity 0.
    """
    if len(desc1) != DESCRIPTOR_SIZE:
        raise ValueError(f"descriptor must hold {DESCRIPTOR_SIZE} values")
    features0 = interpolate_desc(descs0, kpt0, reduced_width, reduced_height, reduction)
    feat_sum0 = _norm(features0)
    if feat_sum0 == 0 or feat_sum1 == 0:
        return 0
    dot = sum(a * b for a, b in zip(features0, desc1)) & 0xFFFFFFFF
    return ((((dot // feat_sum0) * 255) & 0xFFFFFFFF) // feat_sum1) & 0xFF


def inplace_match_one_way_max_flow(
    descs0: Sequence[int],
    descs1: Sequence[int],
    keypoints0: Sequence[Point2D],
    keypoints1: Sequence[Point2D],
    max_flow: int,
    img_width: int,
    img_height: int,
    reduction: int,
    cosine_sim_threshold: int,
) -> list[FeatureMatch]:
    """Match every keypoint of the second frame to its most similar one in the first.

    Only candidates within ``max_flow`` pixels on both axes and above the
    similarity threshold qualify.
    """
    if reduction <= 0:
        raise ValueError("reduction must be positive")
    reduced_width = img_width // reduction
    reduced_height = img_height // reduction
    matches = []
    for idx1, kpt1 in enumerate(keypoints1):
        desc1 = interpolate_desc(descs1, kpt1, reduced_width, reduced_height, reduction)
        feat_sum1 = _norm(desc1)
        best_similarity = cosine_sim_threshold
        best_idx0 = None
        for idx0, kpt0 in enumerate(keypoints0):
            similarity = calculate_cosine_similarity(
                descs0, desc1, feat_sum1, kpt0, reduced_width, reduced_height, reduction
            )
            if (
                similarity > best_similarity
                and abs(kpt0.x - kpt1.x) <= max_flow
                and abs(kpt0.y - kpt1.y) <= max_flow
            ):
                best_similarity = similarity
                best_idx0 = idx0
        if best_idx0 is not None:
            matches.append(FeatureMatch(best_idx0, idx1, best_similarity))
    logger.debug("Match counter %d", len(matches))
    return matches


def inplace_match_two_way_max_flow(
    descs0: Sequence[int],
    descs1: Sequence[int],
    keypoints0: Sequence[Point2D],
    keypoints1: Sequence[Point2D],
    max_flow: int,
    img_width: int,
    img_height: int,
    reduction: int,
    cosine_sim_threshold: int,
) -> list[FeatureMatch]:
    """One-way matching followed by removal of matches sharing a first-frame keypoint.

    A match survives only if its score is below that of every other match to
    the same first-frame keypoint. Survivors are compacted into the front of
    the list while it is scanned, so later matches are compared against the
    compacted entries.
    """
    matches = inplace_match_one_way_max_flow(
        descs0, descs1, keypoints0, keypoints1, max_flow,
        img_width, img_height, reduction, cosine_sim_threshold,
    )
    kept = 0
    # Index-based on purpose: survivors overwrite earlier slots mid-scan.
    for i in range(len(matches)):
        match = matches[i]
        keep = not any(
            j != i
            and other.feat_idx0 == match.feat_idx0
            and match.match_score >= other.match_score
            for j, other in enumerate(matches)
        )
        if keep:
            matches[kept] = match
            kept += 1
    logger.debug("Two Way Match counter %d", kept)
    return matches[:kept]