"""
Seed and anchor points for ellipsoid growth.

Seeds sit on the medial ridge of the foreground: local maxima of the
Euclidean distance transform. Anchors are boundary voxels that no
ellipsoid covers yet.
"""

import numpy
import scipy.ndimage


#============================================
def _check_mask(mask) -> numpy.ndarray:
	mask = numpy.asarray(mask)
	if mask.ndim != 3:
		raise ValueError(f"mask must be 3D, got {mask.ndim} dimensions")
	return mask > 0


#============================================
def find_seed_points(mask, spacing=(1.0, 1.0, 1.0), skip_ratio: int = 1,
	min_distance: float = 0.0) -> numpy.ndarray:
	"""
	Local maxima of the distance transform inside the foreground.

	Args:
		mask: 3D array indexed [z, y, x], non-zero is foreground
		spacing: voxel size (x, y, z)
		skip_ratio: keep every n-th seed after sorting
		min_distance: ignore maxima closer than this to the background

	Returns:
		Nx3 array of voxel-centre coordinates (x, y, z) in calibrated
		units, deepest seeds first
	"""
	mask = _check_mask(mask)
	if skip_ratio < 1:
		raise ValueError("skip_ratio must be at least 1")
	spacing = numpy.asarray(spacing, dtype=float)
	if not numpy.any(mask):
		return numpy.zeros((0, 3))

	# sampling is per array axis, i.e. (z, y, x)
	distance = scipy.ndimage.distance_transform_edt(mask, sampling=spacing[::-1])
	peaks = scipy.ndimage.maximum_filter(distance, size=3, mode='constant')
	ridge = mask & (distance >= peaks) & (distance > min_distance)

	z, y, x = numpy.nonzero(ridge)
	depth = distance[z, y, x]
	# stable sort keeps the scan order for equal depths
	order = numpy.argsort(-depth, kind='stable')[::skip_ratio]
	voxels = numpy.column_stack([x, y, z])[order]
	return (voxels + 0.5) * spacing


#============================================
def boundary_voxels(mask) -> numpy.ndarray:
	"""Foreground voxels with at least one background face neighbour."""
	mask = _check_mask(mask)
	return mask & ~scipy.ndimage.binary_erosion(mask)


#============================================
def find_anchors(ellipsoids, mask, spacing=(1.0, 1.0, 1.0)) -> numpy.ndarray:
	"""
	Boundary voxels not contained in any of the ellipsoids.

	Args:
		ellipsoids: sequence of Ellipsoid
		mask: 3D array indexed [z, y, x]
		spacing: voxel size (x, y, z)

	Returns:
		Nx3 array of voxel-centre coordinates (x, y, z)
	"""
	spacing = numpy.asarray(spacing, dtype=float)
	z, y, x = numpy.nonzero(boundary_voxels(mask))
	centres = (numpy.column_stack([x, y, z]) + 0.5) * spacing
	uncovered = numpy.ones(len(centres), dtype=bool)
	for ellipsoid in ellipsoids:
		if not numpy.any(uncovered):
			break
		uncovered[uncovered] = ~ellipsoid.contains(centres[uncovered])
	return centres[uncovered]
