# slamtools

Building blocks for feature-based and direct visual odometry and for
bundle adjustment, written on top of NumPy and SciPy. Images are plain
single-channel NumPy arrays.

## What is inside

| Module | Purpose |
| --- | --- |
| `slamtools.rotation` | Angle-axis / quaternion conversion and Rodrigues point rotation |
| `slamtools.sampling` | `rand_double` and `rand_normal` (polar method), optionally from a given `random.Random` |
| `slamtools.bal` | `BALProblem`: reading, normalising, perturbing and writing BAL datasets |
| `slamtools.reprojection` | The Snavely camera model with radial distortion and its residual |
| `slamtools.lie` | `so3_hat`, `so3_exp`, `so3_log` and the `SE3` rigid motion |
| `slamtools.bundle_adjustment` | `solve_ba`: Levenberg–Marquardt bundle adjustment with a Huber kernel |
| `slamtools.orb` | FAST-9 corners, steered BRIEF descriptors, brute-force Hamming matching |
| `slamtools.twoview` | Fundamental and essential matrices, pose recovery, triangulation |
| `slamtools.icp` | 3D–3D alignment by SVD and Levenberg–Marquardt refinement |
| `slamtools.pnp` | 3D–2D pose estimation by Gauss–Newton and by a projection-edge solver |
| `slamtools.imageops` | Bilinear sampling, resizing and image pyramids |
| `slamtools.optical_flow` | Single- and multi-level Lucas–Kanade tracking |
| `slamtools.direct_method` | Photometric (direct) pose estimation on image pyramids |

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Bundle adjustment from the command line

Given a dataset in the BAL text format:

```
slamtools-ba problem.txt
```

The problem is normalised and perturbed (rotation sigma 0.1, translation
and point sigma 0.5), the starting state is written to `initial.ply`, the
problem is solved for up to 40 iterations while the robust cost of each
step is printed, and the result is written to `final.ply`. Both files are
ASCII PLY point clouds: camera centres are green, points are white.

## Using the library

```python
from slamtools.bal import BALProblem
from slamtools.bundle_adjustment import solve_ba

problem = BALProblem("problem.txt")
problem.normalize()
problem.write_to_ply_file("before.ply")
costs = solve_ba(problem, max_iterations=40)
problem.write_to_ply_file("after.ply")
problem.write_to_file("solved.txt")
```

`solve_ba` works on problems loaded with angle-axis cameras (the default);
a problem loaded with `use_quaternions=True` is refused with `ValueError`.
It updates the problem in place and returns the cost before and after each
accepted iteration.

Matching ORB features between two grayscale images:

```python
from slamtools.orb import detect_fast, compute_orb, bf_match, filter_good_matches

kp1 = detect_fast(image1, 40)
kp2 = detect_fast(image2, 40)
desc1 = compute_orb(image1, kp1)
desc2 = compute_orb(image2, kp2)
matches = bf_match(desc1, desc2)
good = filter_good_matches(matches)
```

Keypoints closer than 16 pixels to the image border get `None` instead of
a descriptor and are skipped by the matcher; matches are only kept below
a Hamming distance of 40.

Relative pose from matched pixels and triangulation:

```python
from slamtools.twoview import find_essential, recover_pose, triangulation

E = find_essential(points1, points2)          # RANSAC over 8-point samples
R, t = recover_pose(E, points1, points2)      # unit-length t
points_3d = triangulation(kp1, kp2, matches, R, t)
```

Aligning two sets of corresponding 3D points:

```python
from slamtools.icp import pose_estimation_3d3d, refine_pose_3d3d

R, t = pose_estimation_3d3d(pts1, pts2)   # pts1 ≈ R @ pts2 + t
pose = refine_pose_3d3d(pts1, pts2)       # an SE3
```

Tracking keypoints with optical flow, and direct pose estimation:

```python
from slamtools.optical_flow import optical_flow_multi_level
from slamtools.direct_method import direct_pose_estimation_multi_layer

tracked, success = optical_flow_multi_level(img1, img2, kp1, inverse=True)
T21 = direct_pose_estimation_multi_layer(img1, img2, pixels, depths)
```

When no intrinsics are given, `twoview` and `pnp` use the TUM Freiburg2
camera (`TUM_K`) and `direct_method` uses `CameraIntrinsics()` with the
KITTI values.

## What this package does not do

- It does not read, write, draw on or display image files; all image
  functions take and return NumPy arrays.
- Bundle adjustment is the only command. Feature matching, two-view
  geometry, ICP, PnP, optical flow and the direct method are library
  functions only.
- The command's perturbation draws from Python's global random generator,
  so runs are not repeatable unless that generator is seeded first.