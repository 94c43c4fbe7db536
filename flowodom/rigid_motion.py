"""Planar rigid body motion (rotation and translation) from matched keypoints."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from flowodom.types import FeatureMatch, Point2D

logger = logging.getLogger(__name__)

INITIAL_OUTLIER_TOLERANCE = 5
ITERATIVE_OUTLIER_TOLERANCE = 1.5

Matrix2 = tuple[float, float, float, float]


@dataclass
class RigidBodyMotion:
    """Translation in pixels and rotation about the optical axis in radians."""

    flow_x: float = 0.0
    flow_y: float = 0.0
    rot_z: float = 0.0


def _div(num: float, den: float) -> float:
    if den:
        return num / den
    if num == 0 or math.isnan(num):
        return math.nan
    return math.copysign(math.inf, num)


def svd2x2(a: Sequence[float]) -> tuple[Matrix2, tuple[float, float], Matrix2]:
    """Decompose a row-major 2x2 matrix as ``U diag(S) V^T``.

    Returns ``(U, S, V)`` with ``U`` and ``V`` row-major.
    """
    a00, a01, a10, a11 = a
    b0 = a00 * a00 + a10 * a10
    b1 = a00 * a01 + a10 * a11
    b3 = a01 * a01 + a11 * a11

    trace = b0 + b3
    det = b0 * b3 - b1 * b1
    root = math.sqrt(max(trace * trace - 4 * det, 0.0))
    eigen1 = (trace + root) / 2.0
    eigen2 = (trace - root) / 2.0
    s = (math.sqrt(max(eigen1, 0.0)), math.sqrt(max(eigen2, 0.0)))

    if b1 != 0:
        v1 = (b1, eigen1 - b0)
        v2 = (b1, eigen2 - b0)
        norm1 = math.hypot(*v1)
        norm2 = math.hypot(*v2)
        v = (v1[0] / norm1, v2[0] / norm2, v1[1] / norm1, v2[1] / norm2)
    else:
        v = (1.0, 0.0, 0.0, 1.0)

    u = (
        _div(a00 * v[0] + a01 * v[2], s[0]),
        _div(a00 * v[1] + a01 * v[3], s[1]),
        _div(a10 * v[0] + a11 * v[2], s[0]),
        _div(a10 * v[1] + a11 * v[3], s[1]),
    )
    return u, s, v


def rigid_body_motion_estimation(
    keypoints0: Sequence[Point2D],
    keypoints1: Sequence[Point2D],
    matches: Sequence[FeatureMatch],
    inlier_mask: Sequence[bool],
    img_width: int,
    img_height: int,
) -> RigidBodyMotion:
    """Fit a rotation about the image centre plus translation to the inlier matches."""
    if len(inlier_mask) != len(matches):
        raise ValueError("inlier mask and matches differ in length")

    pairs = [
        (keypoints0[m.feat_idx0], keypoints1[m.feat_idx1])
        for m, keep in zip(matches, inlier_mask)
        if keep
    ]
    if not pairs:
        return RigidBodyMotion()

    count = len(pairs)
    cx0 = sum(p0.x for p0, _ in pairs) / count
    cy0 = sum(p0.y for p0, _ in pairs) / count
    cx1 = sum(p1.x for _, p1 in pairs) / count
    cy1 = sum(p1.y for _, p1 in pairs) / count

    h = [0.0, 0.0, 0.0, 0.0]
    for p0, p1 in pairs:
        dx0, dy0 = p0.x - cx0, p0.y - cy0
        dx1, dy1 = p1.x - cx1, p1.y - cy1
        h[0] += dx0 * dx1
        h[1] += dx0 * dy1
        h[2] += dy0 * dx1
        h[3] += dy0 * dy1

    u, s, v = svd2x2(h)
    if s[1] > 0:
        rot = (
            v[0] * u[0] + v[1] * u[1],
            v[0] * u[2] + v[1] * u[3],
            v[2] * u[0] + v[3] * u[1],
            v[2] * u[2] + v[3] * u[3],
        )
        if rot[0] * rot[3] - rot[1] * rot[2] < 0:
            rot = (
                v[0] * u[0] - v[1] * u[1],
                v[0] * u[2] - v[1] * u[3],
                v[2] * u[0] - v[3] * u[1],
                v[2] * u[2] - v[3] * u[3],
            )
    else:
        logger.debug("No full rank in SVD, solving only for linear motion.")
        rot = (1.0, 0.0, 0.0, 1.0)

    width_offset = img_width // 2
    height_offset = img_height // 2
    tx = cx1 - width_offset - (rot[0] * (cx0 - width_offset) + rot[1] * (cy0 - height_offset))
    ty = cy1 - height_offset - (rot[2] * (cx0 - width_offset) + rot[3] * (cy0 - height_offset))
    motion = RigidBodyMotion(tx, ty, math.asin(min(1.0, max(-1.0, rot[2]))))

    logger.debug("Inlier count %d", count)
    logger.debug("t0 %f, t1 %f, yaw %f", tx, ty, motion.rot_z)
    return motion


def robust_rigid_body_motion_estimation(
    keypoints0: Sequence[Point2D],
    keypoints1: Sequence[Point2D],
    matches: Sequence[FeatureMatch],
    img_width: int,
    img_height: int,
    max_flow: int,
) -> RigidBodyMotion:
    """Estimate rigid motion after rejecting outliers by a flow histogram and a refit."""
    if max_flow < 0:
        raise ValueError("max_flow must not be negative")

    displacements = []
    for m in matches:
        p0 = keypoints0[m.feat_idx0]
        p1 = keypoints1[m.feat_idx1]
        displacements.append((int(p1.x - p0.x), int(p1.y - p0.y)))

    bins = 2 * max_flow + 1
    x_buckets = [0] * bins
    y_buckets = [0] * bins
    for dx, dy in displacements:
        if abs(dx) <= max_flow and abs(dy) <= max_flow:
            x_buckets[dx + max_flow] += 1
            y_buckets[dy + max_flow] += 1

    dominant_x = max(range(bins), key=x_buckets.__getitem__) - max_flow
    dominant_y = max(range(bins), key=y_buckets.__getitem__) - max_flow

    tol = INITIAL_OUTLIER_TOLERANCE
    inlier_mask = [
        abs(dx - dominant_x) <= tol and abs(dy - dominant_y) <= tol
        for dx, dy in displacements
    ]
    motion = rigid_body_motion_estimation(
        keypoints0, keypoints1, matches, inlier_mask, img_width, img_height
    )

    cos_r = math.cos(motion.rot_z)
    sin_r = math.sin(motion.rot_z)
    limit = ITERATIVE_OUTLIER_TOLERANCE * ITERATIVE_OUTLIER_TOLERANCE
    inlier_mask = []
    for m in matches:
        p0 = keypoints0[m.feat_idx0]
        p1 = keypoints1[m.feat_idx1]
        proj_x = cos_r * p0.x - sin_r * p0.y + motion.flow_x
        proj_y = sin_r * p0.x + cos_r * p0.y + motion.flow_y
        inlier_mask.append((proj_x - p1.x) ** 2 + (proj_y - p1.y) ** 2 < limit)

    if sum(inlier_mask) <= 3:
        logger.debug("Skipping motion estimation refinement, not enough inliers")
        return motion
    return rigid_body_motion_estimation(
        keypoints0, keypoints1, matches, inlier_mask, img_width, img_height
    )