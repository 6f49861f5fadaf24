# slamgeom

Geometry building blocks for feature-based visual SLAM, built on NumPy.

## Modules

### `slamgeom.matching`

Shared primitives for ORB feature matching.

- `KeyPoint`: a frozen record of an undistorted keypoint (`x`, `y`,
  `octave`, `angle`, `movable`).
- `descriptor_distance(a, b)`: Hamming distance over the first 256 bits
  (32 bytes) of two descriptors, given as bytes or arrays of `uint8`.
  Shorter descriptors raise `ValueError`.
- `rotation_bin(angle1, angle2)`: the bin (of 30) that the orientation
  difference of two keypoints falls into.
- `RotationHistogram`: collects match indices with `add(angle1, angle2,
  index)`; `inconsistent()` lists the indices outside the three dominant
  bins.
- `compute_three_maxima(histogram)`: indices of the three fullest bins,
  with `-1` for bins that hold fewer than a tenth of the fullest one.
- `check_dist_epipolar_line(kp1, kp2, f12, sigma2)`: whether `kp2` lies
  close enough to the epipolar line of `kp1` under a 3x3 fundamental matrix.
- `radius_by_viewing_cos(view_cos)`: search radius factor, 2.5 for nearly
  frontal views and 4.0 otherwise.

### `slamgeom.bow_matching`

Matching restricted to features that share a bag-of-words vocabulary node.

- `BowView`: the keypoints, descriptors and feature vector (node id to
  keypoint indices) of one image, with optional per-keypoint map points,
  right-image coordinates (negative for monocular) and an `is_bad`
  predicate. Lengths and feature indices are checked on construction.
- `match_by_bow(view1, view2, nn_ratio, check_orientation)`: for each
  keypoint of `view1`, the map point of `view2` matched to it, or `None`.
- `search_for_initialization(...)`: matches finest-level keypoints of two
  frames in a window around their previous positions; returns the matched
  index in frame 2 per keypoint of frame 1 (`-1` where none) and the
  updated previous positions.
- `search_for_triangulation(...)`: pairs keypoints that have no map point
  yet and satisfy the epipolar constraint, returning `(index1, index2)`
  pairs ordered by the first index.

### `slamgeom.projection_matching`

Matching by projecting points with known 3D positions into an image.

- `Camera`: a pinhole camera with intrinsics, inclusive image bounds and a
  world-to-camera pose; `to_camera(point)`, `is_in_image(u, v)` and
  `project(point)`, which returns `None` for points behind the camera or
  outside the image.
- `Candidate`: a map point offered for matching, with its position,
  descriptor, predicted pyramid level, viewing cosine and depth limits.
- `features_in_area(keypoints, x, y, radius, min_level, max_level)`:
  indices of keypoints in a square window, optionally limited by level.
- `search_by_projection(...)`: matches candidates to free keypoints near
  their projections and returns the updated matches and the number of new
  ones.
- `search_by_sim3(...)`: mutual matches between two keyframes related by a
  similarity `(s12, r12, t12)`, checked in both directions.

### `slamgeom.epnp`

Closed-form camera pose from n >= 4 correspondences between 3D points and
their image projections.

- `Intrinsics(fu, fv, uc, vc)` and `EPnP(intrinsics)`;
  `EPnP.compute_pose(points3d, points2d)` returns the rotation matrix, the
  translation vector and the mean reprojection error of the best of three
  approximations.
- `reprojection_error(intrinsics, r, t, points3d, points2d)`: mean pixel
  distance between observed and reprojected points.
- `qr_solve(a, b)`: least-squares solve by Householder QR; raises
  `numpy.linalg.LinAlgError` on a zero column.
- `mat_to_quat(r)`: unit quaternion `(x, y, z, w)` of a rotation matrix.
- `relative_error(r_true, t_true, r_est, t_est)`: relative rotation and
  translation errors.

Poses take world coordinates into the camera frame.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Examples

```python
import numpy as np
from slamgeom.matching import descriptor_distance

a = np.zeros(32, dtype=np.uint8)
b = np.zeros(32, dtype=np.uint8)
b[0] = 0b1011
print(descriptor_distance(a, b))  # 3
```

Estimating a pose with EPnP:

```python
import numpy as np
from slamgeom.epnp import EPnP, Intrinsics

intrinsics = Intrinsics(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
points3d = np.random.default_rng(0).uniform(-1, 1, (20, 3)) + [0, 0, 5]
points2d = np.column_stack([
    320 + 500 * points3d[:, 0] / points3d[:, 2],
    240 + 500 * points3d[:, 1] / points3d[:, 2],
])
r, t, error = EPnP(intrinsics).compute_pose(points3d, points2d)
```

## What the package does not do

- `EPnP` fits a pose to all the correspondences it is given; there is no
  RANSAC loop that samples minimal sets, rejects outliers and refines the
  pose on the inliers.
- There is no estimator for the similarity transform between two sets of
  3D points; `search_by_sim3` expects that transform to be supplied.
- It does not detect features, compute descriptors or build vocabularies;
  keypoints, descriptors and feature vectors are inputs.
- It offers no command-line program.