# flowodom

Building blocks for planar visual odometry on small grey-scale frames
(160×120 by default). The package is pure Python and has no runtime
dependencies.

It contains:

- `flowodom.types`: `ImageData` (row-major 8-bit image with an `at(x, y)`
  accessor), `Point2D` and `FeatureMatch`.
- `flowodom.px4flow`: block-matching optical flow. `compute_flow` tracks
  8×8 windows between two 160×120 frames by a ±4 pixel sum-of-absolute-
  differences search followed by half-pixel refinement. Results are in
  half-pixel units; untextured or badly matched windows report
  `FLOW_INVALID` (`(-128, -128)`). The lower-level `compute_sad_8x8`,
  `compute_diff` and `compute_subpixel` are exposed as well.
- `flowodom.orb` and `flowodom.orb_pattern`: ORB features. `OrbDetector`
  combines a FAST test and an integer Harris score with soft thresholds
  that adapt after each `detect` call; `apply_gaussian_blur` applies a 5×5
  binomial blur; `calculate_orb_descriptors` computes 8×32-bit rotated
  BRIEF descriptors from `BIT_PATTERN_31`. `OrbFeatures` holds keypoints and
  descriptors together.
- `flowodom.superpoint`: post-processing of SuperPoint network outputs.
  `extract_kpts` picks at most one keypoint per 8×8 cell from the
  65-channel heat-map; `inplace_match_two_way_max_flow` matches bilinearly
  interpolated 256-value descriptors by cosine similarity within a maximum
  flow and drops matches that share a first-frame keypoint.
- `flowodom.rigid_motion`: `robust_rigid_body_motion_estimation` fits a
  rotation about the image centre plus a translation to matched keypoints,
  rejecting outliers first with a displacement histogram and then by
  reprojection error. It returns a `RigidBodyMotion` (`flow_x`, `flow_y`,
  `rot_z`).
- `flowodom.ekf`: a simplified Kalman filter. `ekf_iteration` rotates an
  `ImuMeasurement` into the camera frame, predicts with the acceleration and
  corrects velocity, acceleration and yaw with a `RigidBodyMotion`.

Diagnostic output goes to the standard `logging` module at debug level.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Usage

### Block-matching flow to motion

```python
from flowodom.px4flow import FLOW_INVALID, compute_flow
from flowodom.rigid_motion import robust_rigid_body_motion_estimation
from flowodom.types import FeatureMatch, Point2D

# prev_frame and curr_frame: 160*120 bytes each, row-major
points = [Point2D(x, y) for y in range(5, 108, 13) for x in range(5, 148, 18)]
flows = compute_flow(prev_frame, curr_frame, points)

tracked = [(p, f) for p, f in zip(points, flows) if f != FLOW_INVALID]
kpts0 = [Point2D(2 * p.x, 2 * p.y) for p, _ in tracked]
kpts1 = [Point2D(2 * p.x + dx, 2 * p.y + dy) for p, (dx, dy) in tracked]
matches = [FeatureMatch(i, i, 1) for i in range(len(tracked))]

# Work in half pixels, then scale the translation back.
motion = robust_rigid_body_motion_estimation(kpts0, kpts1, matches, 320, 240, 64)
motion.flow_x /= 2
motion.flow_y /= 2
```

### ORB detection and description

```python
from flowodom.orb import (
    OrbDetector, OrbFeatures, apply_gaussian_blur, calculate_orb_descriptors,
)
from flowodom.types import ImageData

img = ImageData(160, 120, bytearray(frame))
detector = OrbDetector(img.width)
kpts = detector.detect(img, 16, img.height - 16, capacity=512)

blurred = ImageData(img.width, img.height, bytearray(len(img.pixels)))
apply_gaussian_blur(img, blurred, 0, img.height)
features = OrbFeatures(kpts, calculate_orb_descriptors(blurred, kpts), capacity=512)
```

The same `OrbDetector` should be reused across frames so that its soft
thresholds keep adapting.

### SuperPoint post-processing

```python
from flowodom.superpoint import extract_kpts, inplace_match_two_way_max_flow
from flowodom.rigid_motion import robust_rigid_body_motion_estimation

kpts0 = extract_kpts(heatmap0, 160, 120, 8)
kpts1 = extract_kpts(heatmap1, 160, 120, 8)
matches = inplace_match_two_way_max_flow(
    descs0, descs1, kpts0, kpts1, 10, 160, 120, 8, 166
)
motion = robust_rigid_body_motion_estimation(kpts0, kpts1, matches, 160, 120, 32)
```

### Kalman filter

```python
from flowodom.ekf import ImuMeasurement, ekf_iteration, initial_state

state = initial_state()  # scale 0.0017 m/px, initial y velocity -0.3
imu = ImuMeasurement(0.0, 0.0, 9.81, 0.0, 0.0, 0.0)
ekf_iteration(state, imu, motion)  # updates state in place
print(state.p, state.v, state.yaw)
```

## What the package does not do

- It has no command-line program and no driver that loads image sequences
  or IMU logs from disk; frames and measurements are passed in by the
  caller.
- It does not match ORB descriptors: there is no Hamming-distance matcher
  for `OrbFeatures`, so pairing ORB keypoints between frames is left to the
  caller.
- It does not reduce block-matching flows by a displacement histogram;
  `compute_flow` results are turned into motion only through
  `robust_rigid_body_motion_estimation`, as shown above.
- It does not run the SuperPoint network; it only post-processes its
  outputs.