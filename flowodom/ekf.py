"""Simplified extended Kalman filter fusing optical flow with IMU readings."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Sequence

from flowodom.rigid_motion import RigidBodyMotion

logger = logging.getLogger(__name__)

DT = 0.01
K_FLOW = 0.3
K_ACCEL = 0.9
K_SCALAR = 0.01
IMU_WEIGHT = 0.7

# Rotation from the IMU frame to the camera frame, obtained by calibration.
R_CAM_IMU = (
    (0.011066192829442545, -0.9999378844759764, -0.001329122255283725),
    (0.9997516704710715, 0.011089824322592534, -0.0193290762012916),
    (0.019342615297908816, -0.0011148929105217024, 0.9998122925065656),
)


def _zeros() -> list[float]:
    return [0.0, 0.0, 0.0]


@dataclass
class EkfState:
    """Position, velocity, acceleration, yaw and metres-per-pixel scale."""

    p: list[float] = field(default_factory=_zeros)
    v: list[float] = field(default_factory=_zeros)
    a: list[float] = field(default_factory=_zeros)
    yaw: float = 0.0
    scalar: float = 0.0


@dataclass(frozen=True)
class ImuMeasurement:
    """Raw accelerometer and gyroscope reading in the IMU frame."""

    x_lin_acc: float
    y_lin_acc: float
    z_lin_acc: float
    x_rot_vel: float
    y_rot_vel: float
    z_rot_vel: float
    tof_idx: int = 0


@dataclass(frozen=True)
class ImuData:
    """Acceleration and angular velocity expressed in the camera frame."""

    accel: tuple[float, float, float]
    gyro: tuple[float, float, float]


def initial_state() -> EkfState:
    """Return the starting state used by the odometry pipelines."""
    state = EkfState(scalar=0.0017)
    state.v[1] = -0.3
    return state


def quaternion_multiply(q1: Sequence[float], q2: Sequence[float]) -> tuple[float, float, float, float]:
    """Multiply two ``(x, y, z, w)`` quaternions and normalise the product."""
    x = q1[3] * q2[0] + q1[0] * q2[3] + q1[1] * q2[2] - q1[2] * q2[1]
    y = q1[3] * q2[1] + q1[1] * q2[3] + q1[2] * q2[0] - q1[0] * q2[2]
    z = q1[3] * q2[2] + q1[2] * q2[3] + q1[0] * q2[1] - q1[1] * q2[0]
    w = q1[3] * q2[3] - q1[0] * q2[0] - q1[1] * q2[1] - q1[2] * q2[2]
    norm = math.sqrt(x * x + y * y + z * z + w * w)
    if norm == 0:
        raise ValueError("quaternion product has zero norm")
    return (x / norm, y / norm, z / norm, w / norm)


def euler_to_quaternion(euler: Sequence[float]) -> tuple[float, float, float, float]:
    """Convert roll, pitch, yaw to an ``(x, y, z, w)`` quaternion."""
    cr, sr = math.cos(euler[0] * 0.5), math.sin(euler[0] * 0.5)
    cp, sp = math.cos(euler[1] * 0.5), math.sin(euler[1] * 0.5)
    cy, sy = math.cos(euler[2] * 0.5), math.sin(euler[2] * 0.5)
    return (
        sr * cp * cy - cr * sp * sy,
        cr * sp * cy + sr * cp * sy,
        cr * cp * sy - sr * sp * cy,
        cr * cp * cy + sr * sp * sy,
    )


def transform_absolute(q: Sequence[float], v: Sequence[float]) -> tuple[float, float, float]:
    """Rotate ``v`` by the ``(w, x, y, z)`` quaternion ``q`` as ``q v q*``."""
    qc = (q[0], -q[1], -q[2], -q[3])
    qv = (0.0, v[0], v[1], v[2])
    t = (
        q[0] * qv[0] - q[1] * qv[1] - q[2] * qv[2] - q[3] * qv[3],
        q[0] * qv[1] + q[1] * qv[0] + q[2] * qv[3] - q[3] * qv[2],
        q[0] * qv[2] - q[1] * qv[3] + q[2] * qv[0] + q[3] * qv[1],
        q[0] * qv[3] + q[1] * qv[2] - q[2] * qv[1] + q[3] * qv[0],
    )
    return (
        t[0] * qc[1] + t[1] * qc[0] + t[2] * qc[3] - t[3] * qc[2],
        t[0] * qc[2] - t[1] * qc[3] + t[2] * qc[0] + t[3] * qc[1],
        t[0] * qc[3] + t[1] * qc[2] - t[2] * qc[1] + t[3] * qc[0],
    )


def _rotate(vec: Sequence[float]) -> tuple[float, float, float]:
    x, y, z = vec
    r0, r1, r2 = (row[0] * x + row[1] * y + row[2] * z for row in R_CAM_IMU)
    return (r0, r1, r2)


def transform_imu_to_cam_frame(measurement: ImuMeasurement) -> ImuData:
    """Express an IMU reading in the camera frame."""
    return ImuData(
        accel=_rotate((measurement.x_lin_acc, measurement.y_lin_acc, measurement.z_lin_acc)),
        gyro=_rotate((measurement.x_rot_vel, measurement.y_rot_vel, measurement.z_rot_vel)),
    )


def ekf_predict(state: EkfState, imu: ImuData) -> None:
    """Propagate the state one time step using the IMU acceleration."""
    dp = [state.v[i] * DT + state.a[i] * DT * DT / 2 for i in range(3)]
    state.v = [v + acc * DT for v, acc in zip(state.v, imu.accel)]
    cos_y, sin_y = math.cos(state.yaw), math.sin(state.yaw)
    state.p[0] += cos_y * dp[0] - sin_y * dp[1]
    state.p[1] += sin_y * dp[0] + cos_y * dp[1]
    state.p[2] = 0.0


def ekf_update(state: EkfState, flow: RigidBodyMotion, imu: ImuData) -> None:
    """Correct velocity, acceleration and yaw with the flow measurement."""
    y_vx = -(flow.flow_x * state.scalar) / DT - state.v[0]
    y_vy = -(flow.flow_y * state.scalar) / DT - state.v[1]

    state.yaw += -flow.rot_z * (1 - IMU_WEIGHT) + imu.gyro[2] * DT * IMU_WEIGHT

    state.a = [a + K_ACCEL * (acc - a) for a, acc in zip(state.a, imu.accel)]

    state.v[0] += K_FLOW * y_vx
    state.v[1] += K_FLOW * y_vy


def ekf_iteration(
    state: EkfState,
    imu_measurement: ImuMeasurement,
    motion_estimation: RigidBodyMotion,
) -> None:
    """Run one predict and update cycle, modifying ``state`` in place."""
    imu = transform_imu_to_cam_frame(imu_measurement)
    logger.debug("Accel %s Gyro %s", imu.accel, imu.gyro)
    logger.debug("Flow x %f, flow y %f", motion_estimation.flow_x, motion_estimation.flow_y)

    ekf_predict(state, imu)
    ekf_update(state, motion_estimation, imu)

    logger.debug("p = %s", state.p)
    logger.debug("v = %s", state.v)
    logger.debug("a = %s", state.a)
    logger.debug("y = %f", state.yaw)
    logger.debug("s = %f", state.scalar)