import math

import pytest

from flowodom.rigid_motion import (
    RigidBodyMotion,
    rigid_body_motion_estimation,
    robust_rigid_body_motion_estimation,
    svd2x2,
)
from flowodom.types import FeatureMatch, Point2D


def _reconstruct(u, s, v):
    return (
        u[0] * s[0] * v[0] + u[1] * s[1] * v[1],
        u[0] * s[0] * v[2] + u[1] * s[1] * v[3],
        u[2] * s[0] * v[0] + u[3] * s[1] * v[1],
        u[2] * s[0] * v[2] + u[3] * s[1] * v[3],
    )


def _grid():
    return [Point2D(x, y) for x in range(40, 121, 20) for y in range(30, 91, 15)]


def _identity_matches(n):
    return [FeatureMatch(i, i, 0) for i in range(n)]


@pytest.mark.parametrize("a", [(2.0, 1.0, 0.5, 3.0), (-1.0, 4.0, 2.0, 0.5), (1.0, 2.0, 3.0, 4.0)])
def test_svd_reconstructs_matrix(a):
    u, s, v = svd2x2(a)
    assert _reconstruct(u, s, v) == pytest.approx(a, abs=1e-9)
    assert s[0] >= s[1] >= 0


def test_svd_of_diagonal():
    u, s, v = svd2x2((3.0, 0.0, 0.0, 2.0))
    assert s == pytest.approx((3.0, 2.0))
    assert v == (1.0, 0.0, 0.0, 1.0)


def test_pure_translation():
    kp0 = _grid()
    kp1 = [Point2D(p.x + 3, p.y - 2) for p in kp0]
    motion = rigid_body_motion_estimation(kp0, kp1, _identity_matches(len(kp0)), [True] * len(kp0), 160, 120)
    assert motion.flow_x == pytest.approx(3.0, abs=1e-9)
    assert motion.flow_y == pytest.approx(-2.0, abs=1e-9)
    assert motion.rot_z == pytest.approx(0.0, abs=1e-9)


def test_rotation_about_centre():
    theta = 0.1
    cx, cy = 80, 60
    kp0 = _grid()
    kp1 = []
    for p in kp0:
        dx, dy = p.x - cx, p.y - cy
        kp1.append(
            Point2D(
                round(cx + math.cos(theta) * dx - math.sin(theta) * dy),
                round(cy + math.sin(theta) * dx + math.cos(theta) * dy),
            )
        )
    motion = rigid_body_motion_estimation(kp0, kp1, _identity_matches(len(kp0)), [True] * len(kp0), 160, 120)
    assert motion.rot_z == pytest.approx(theta, abs=0.01)
    assert motion.flow_x == pytest.approx(0.0, abs=0.5)
    assert motion.flow_y == pytest.approx(0.0, abs=0.5)


def test_no_inliers_gives_zero_motion():
    kp0 = _grid()
    kp1 = [Point2D(p.x + 1, p.y) for p in kp0]
    motion = rigid_body_motion_estimation(kp0, kp1, _identity_matches(len(kp0)), [False] * len(kp0), 160, 120)
    assert motion == RigidBodyMotion(0.0, 0.0, 0.0)


def test_mask_length_mismatch_raises():
    kp0 = _grid()
    with pytest.raises(ValueError):
        rigid_body_motion_estimation(kp0, kp0, _identity_matches(len(kp0)), [True], 160, 120)


def test_collinear_points_give_identity_rotation():
    kp0 = [Point2D(x, 60) for x in range(20, 141, 20)]
    kp1 = [Point2D(p.x + 4, p.y) for p in kp0]
    motion = rigid_body_motion_estimation(kp0, kp1, _identity_matches(len(kp0)), [True] * len(kp0), 160, 120)
    assert motion.rot_z == 0.0
    assert motion.flow_x == pytest.approx(4.0)
    assert motion.flow_y == pytest.approx(0.0)


def test_robust_rejects_outlier():
    kp0 = _grid()
    kp1 = [Point2D(p.x + 2, p.y + 1) for p in kp0]
    kp0.append(Point2D(50, 50))
    kp1.append(Point2D(70, 70))
    motion = robust_rigid_body_motion_estimation(kp0, kp1, _identity_matches(len(kp0)), 160, 120, 32)
    assert motion.flow_x == pytest.approx(2.0, abs=1e-6)
    assert motion.flow_y == pytest.approx(1.0, abs=1e-6)
    assert motion.rot_z == pytest.approx(0.0, abs=1e-6)


def test_robust_without_matches_is_zero():
    motion = robust_rigid_body_motion_estimation([], [], [], 160, 120, 32)
    assert motion == RigidBodyMotion()


def test_robust_negative_max_flow_raises():
    with pytest.raises(ValueError):
        robust_rigid_body_motion_estimation([], [], [], 160, 120, -1)