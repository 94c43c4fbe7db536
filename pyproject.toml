[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flowodom"
version = "0.1.0"
description = "Optical-flow and feature building blocks for planar visual odometry with an IMU-fused Kalman filter"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "optical-flow",
    "odometry",
    "orb",
    "px4flow",
    "superpoint",
    "kalman-filter",
    "rigid-body-motion",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["flowodom"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
