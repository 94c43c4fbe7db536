"""Block-matching flow, ORB and SuperPoint features, rigid motion fitting and an IMU-fused Kalman filter."""

__version__ = "0.1.0"

__all__ = [
    "types",
    "rigid_motion",
    "ekf",
    "px4flow",
    "superpoint",
    "orb_pattern",
    "orb",
]