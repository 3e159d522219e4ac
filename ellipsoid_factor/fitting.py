"""
Find an ellipsoid from oriented boundary points.

Every boundary point comes with its surface normal. A quadric surface X
(symmetric 4x4 matrix in homogeneous coordinates) that passes through a
point p with tangent plane P = (n, -n.p) satisfies the linear conditions

	p^T X p = 0            (on the surface)
	t^T X p = 0            (for two directions t in the tangent plane)

Two families of candidates are ranked:

1. The conditions of all points summed into a 10x10 scatter matrix over
   the independent quadric coefficients. Its near-null eigenvectors,
   measured in the Frobenius metric through a generalized symmetric
   eigenproblem, are the candidate quadrics, with the sphere around the
   seed picking a member when the fit is under-determined.
2. For every ordered pair of points, the pencil Q1 + alpha Q2 + F: Q1 the
   sphere tangent at the first point through the second, Q2 the plane
   pair of both points and F the remaining freedom. Only the first
   point's normal is enforced, the other points just lie on the surface.
"""

import itertools
from typing import Optional

import numpy
import scipy.linalg

from .ellipsoid import Ellipsoid, DEFAULT_TOLERANCE

MIN_POINTS = 4
DEFAULT_RANK_TOLERANCE = 1e-10

# Frobenius metric over (A00, A11, A22, A01, A02, A12, b0, b1, b2, d):
# off-diagonal entries appear twice in the symmetric matrix
_FROBENIUS = numpy.diag([1.0, 1.0, 1.0, 2.0, 2.0, 2.0, 2.0, 2.0, 2.0, 1.0])
_ROOT_WEIGHTS = numpy.sqrt(numpy.diag(_FROBENIUS))
_UPPER = ((0, 0), (1, 1), (2, 2), (0, 1), (0, 2), (1, 2), (0, 3), (1, 3), (2, 3), (3, 3))


#============================================
def sphere_quadric(centre, radius: float) -> numpy.ndarray:
	"""
	Homogeneous matrix of the sphere |x - c|^2 - r^2 = 0.

	Args:
		centre: sphere centre
		radius: sphere radius

	Returns:
		4x4 symmetric matrix [[I, -c], [-c^T, c.c - r^2]]
	"""
	centre = numpy.asarray(centre, dtype=float)
	quadric = numpy.eye(4)
	quadric[:3, 3] = -centre
	quadric[3, :3] = -centre
	quadric[3, 3] = numpy.dot(centre, centre) - radius * radius
	return quadric


#============================================
def tangent_sphere_quadric(first, position) -> Optional[numpy.ndarray]:
	"""
	Sphere tangent to a boundary point's plane that passes through a position.

	The centre lies on the normal line, p + rho n, with
	rho = |q - p|^2 / (2 n.(q - p)).

	Args:
		first: (position, normal) of the tangent point
		position: second point on the sphere

	Returns:
		4x4 sphere matrix, or None when the position lies in the
		tangent plane (the sphere degenerates to that plane)
	"""
	point = numpy.asarray(first[0], dtype=float)
	normal = _unit(first[1])
	gap = numpy.asarray(position, dtype=float) - point
	distance = numpy.linalg.norm(gap)
	height = numpy.dot(normal, gap)
	if distance == 0 or abs(height) <= DEFAULT_TOLERANCE * distance:
		return None
	rho = numpy.dot(gap, gap) / (2.0 * height)
	return sphere_quadric(point + rho * normal, abs(rho))


#============================================
def plane_pair_quadric(first, second) -> numpy.ndarray:
	"""
	Degenerate quadric made of the tangent planes of two boundary points.

	Args:
		first: (position, normal) of the first point
		second: (position, normal) of the second point

	Returns:
		4x4 symmetric matrix -(P Q^T + Q P^T) / 2
	"""
	plane_p = _tangent_plane(*first)
	plane_q = _tangent_plane(*second)
	return -0.5 * (numpy.outer(plane_p, plane_q) + numpy.outer(plane_q, plane_p))


#============================================
def _tangent_plane(position, normal) -> numpy.ndarray:
	position = numpy.asarray(position, dtype=float)
	normal = numpy.asarray(normal, dtype=float)
	return numpy.append(normal, -numpy.dot(normal, position))


#============================================
def _unit(normal) -> numpy.ndarray:
	normal = numpy.asarray(normal, dtype=float)
	length = numpy.linalg.norm(normal)
	if length == 0 or not numpy.isfinite(length):
		raise ValueError("boundary point normals must be finite and non-zero")
	return normal / length


#============================================
def quadric_matrix(coefficients) -> numpy.ndarray:
	"""Symmetric 4x4 matrix from the ten quadric coefficients."""
	coefficients = numpy.asarray(coefficients, dtype=float)
	matrix = numpy.zeros((4, 4))
	for value, (i, j) in zip(coefficients, _UPPER):
		matrix[i, j] = value
		matrix[j, i] = value
	return matrix


#============================================
def quadric_coefficients(matrix) -> numpy.ndarray:
	"""The ten independent entries of a symmetric 4x4 matrix."""
	matrix = numpy.asarray(matrix, dtype=float)
	return numpy.array([matrix[i, j] for i, j in _UPPER])


#============================================
def _bilinear_row(u: numpy.ndarray, w: numpy.ndarray) -> numpy.ndarray:
	# coefficients of u^T X w, linear in the quadric coefficients
	return numpy.array([
		u[0] * w[0],
		u[1] * w[1],
		u[2] * w[2],
		u[0] * w[1] + u[1] * w[0],
		u[0] * w[2] + u[2] * w[0],
		u[1] * w[2] + u[2] * w[1],
		u[0] * w[3] + u[3] * w[0],
		u[1] * w[3] + u[3] * w[1],
		u[2] * w[3] + u[3] * w[2],
		u[3] * w[3],
	])


#============================================
def _tangent_directions(normal: numpy.ndarray) -> tuple:
	helper = numpy.zeros(3)
	helper[numpy.argmin(numpy.abs(normal))] = 1.0
	first = numpy.cross(normal, helper)
	first /= numpy.linalg.norm(first)
	second = numpy.cross(normal, first)
	return first, second


#============================================
def _surface_row(position) -> numpy.ndarray:
	point = numpy.append(numpy.asarray(position, dtype=float), 1.0)
	return _bilinear_row(point, point)


#============================================
def _point_rows(position, normal) -> numpy.ndarray:
	"""On-surface row followed by the two tangency rows of one point."""
	point = numpy.append(numpy.asarray(position, dtype=float), 1.0)
	rows = [_bilinear_row(point, point)]
	for direction in _tangent_directions(_unit(normal)):
		rows.append(_bilinear_row(numpy.append(direction, 0.0), point))
	return numpy.array(rows)


#============================================
def _point_system(position, normal) -> numpy.ndarray:
	rows = _point_rows(position, normal)
	return rows.T @ rows


#============================================
def _split_points(points) -> tuple:
	"""Validate boundary points and return (positions, normals)."""
	if len(points) == 0:
		empty = numpy.zeros((0, 3))
		return empty, empty
	array = numpy.asarray(points, dtype=float)
	if array.ndim != 3 or array.shape[1:] != (2, 3):
		raise ValueError(
			f"boundary points must be (position, normal) pairs of 3-vectors, "
			f"got shape {array.shape}")
	if not numpy.all(numpy.isfinite(array)):
		raise ValueError("boundary points must be finite")
	return array[:, 0, :], array[:, 1, :]


#============================================
def quadric_to_ellipsoid(matrix) -> Optional[Ellipsoid]:
	"""
	Decompose a quadric matrix into an ellipsoid.

	The centre solves the linear part, the normalised quadratic form is
	diagonalised for the orientation and radii = 1/sqrt(eigenvalue).

	Args:
		matrix: symmetric 4x4 quadric matrix (either sign)

	Returns:
		Ellipsoid, or None if the quadric is not a real ellipsoid
	"""
	matrix = numpy.asarray(matrix, dtype=float)
	quadratic = matrix[:3, :3]
	linear = matrix[:3, 3]
	try:
		centre = -numpy.linalg.solve(quadratic, linear)
	except numpy.linalg.LinAlgError:
		return None
	if not numpy.all(numpy.isfinite(centre)):
		return None

	# value of the quadric at the centre
	k = matrix[3, 3] + numpy.dot(linear, centre)
	if k == 0 or not numpy.isfinite(k):
		return None
	form = quadratic / -k
	eigenvalues, eigenvectors = numpy.linalg.eigh(form)
	if not numpy.all(numpy.isfinite(eigenvalues)) or numpy.any(eigenvalues <= 0):
		return None
	radii = 1.0 / numpy.sqrt(eigenvalues)
	if not numpy.all(numpy.isfinite(radii)):
		return None
	if numpy.linalg.det(eigenvectors) < 0:
		eigenvectors[:, 2] = -eigenvectors[:, 2]
	return Ellipsoid(radii, centre, eigenvectors)


#============================================
def surface_residuals(ellipsoid: Ellipsoid, positions) -> numpy.ndarray:
	"""|(p - c)^T R D R^T (p - c) - 1| for each position."""
	positions = numpy.atleast_2d(numpy.asarray(positions, dtype=float))
	return numpy.abs(ellipsoid.surface_value(positions) - 1.0)


#============================================
def _candidates(scatter: numpy.ndarray, rank_tolerance: float) -> list:
	"""
	Ranked candidate coefficient vectors from the generalized eigenproblem.

	The first candidate is the unit sphere about the origin projected
	onto the near-null eigenvectors, the rest are the eigenvectors
	themselves by ascending eigenvalue.
	"""
	eigenvalues, eigenvectors = scipy.linalg.eigh(scatter, _FROBENIUS)
	threshold = eigenvalues[0] + rank_tolerance * max(abs(eigenvalues[-1]), 1.0)
	null_basis = eigenvectors[:, eigenvalues <= threshold]

	candidates = []
	reference = quadric_coefficients(sphere_quadric(numpy.zeros(3), 1.0))
	# eigenvectors are orthonormal in the Frobenius metric
	weights = null_basis.T @ _FROBENIUS @ reference
	if numpy.linalg.norm(weights) > 0:
		candidates.append(null_basis @ weights)
	for k in range(eigenvectors.shape[1]):
		candidates.append(eigenvectors[:, k])
	return candidates


#============================================
def _null_space(rows: numpy.ndarray, rank_tolerance: float) -> numpy.ndarray:
	"""Orthonormal columns spanning the null space of `rows`."""
	_, singular, vt = numpy.linalg.svd(rows)
	rank = int(numpy.count_nonzero(singular > rank_tolerance * max(singular[0], 1.0)))
	return vt[rank:].T


#============================================
def pencil_quadric(first, second, others=(),
	rank_tolerance: float = DEFAULT_RANK_TOLERANCE) -> Optional[numpy.ndarray]:
	"""
	Quadric Q1 + alpha Q2 + F tangent at one point and through the others.

	Every quadric through both points that keeps the first point's
	tangent plane is Q1 plus a member of a linear space that contains Q2.
	alpha and the rest F of that member are the smallest correction, in
	the Frobenius norm, that puts `others` on the surface. With more
	positions than free coefficients the correction is a least-squares
	solution instead.

	Args:
		first: (position, normal) whose tangent plane is kept
		second: (position, normal) of the second point
		others: further positions that should lie on the surface
		rank_tolerance: relative singular value below which a
			condition counts as dependent

	Returns:
		4x4 quadric matrix, or None when the second point lies in the
		first point's tangent plane
	"""
	sphere = tangent_sphere_quadric(first, second[0])
	if sphere is None:
		return None
	planes = plane_pair_quadric((first[0], _unit(first[1])), (second[0], _unit(second[1])))

	# work in coordinates where the Frobenius metric is Euclidean
	rows = numpy.vstack([_point_rows(*first), _surface_row(second[0])]) / _ROOT_WEIGHTS
	space = _null_space(rows, rank_tolerance)
	direction = quadric_coefficients(planes) * _ROOT_WEIGHTS
	direction /= numpy.linalg.norm(direction)
	remainder = space - numpy.outer(direction, direction @ space)
	u, singular, _ = numpy.linalg.svd(remainder, full_matrices=False)
	basis = numpy.column_stack([direction, u[:, singular > 0.5]])

	solution = quadric_coefficients(sphere) * _ROOT_WEIGHTS
	others = numpy.asarray(others, dtype=float).reshape(-1, 3)
	if len(others):
		constraints = numpy.array([_surface_row(p) for p in others]) / _ROOT_WEIGHTS
		# weights[0] is alpha for the normalised plane pair
		weights = numpy.linalg.lstsq(constraints @ basis, -constraints @ solution, rcond=None)[0]
		solution = solution + basis @ weights
	return quadric_matrix(solution / _ROOT_WEIGHTS)


#============================================
def _pencil_candidates(positions: numpy.ndarray, normals: numpy.ndarray,
	rank_tolerance: float) -> list:
	candidates = []
	for i, j in itertools.permutations(range(len(positions)), 2):
		others = numpy.delete(positions, (i, j), axis=0)
		quadric = pencil_quadric((positions[i], normals[i]), (positions[j], normals[j]),
			others, rank_tolerance)
		if quadric is not None:
			candidates.append(quadric_coefficients(quadric))
	return candidates


#============================================
def fit(points, seed, tolerance: Optional[float] = DEFAULT_TOLERANCE,
	rank_tolerance: float = DEFAULT_RANK_TOLERANCE) -> Optional[Ellipsoid]:
	"""
	Fit an ellipsoid to oriented boundary points around an interior seed.

	Candidates are filtered: the quadric must be a real ellipsoid, the
	seed must lie strictly inside and, unless `tolerance` is None, every
	boundary point must lie on the surface within `tolerance`. The
	admissible candidate with the smallest total surface residual wins.
	Scores closer than `tolerance` per point count as a tie, and ties
	keep the higher-ranked candidate: the all-normals fit ranks before
	the pencils, and pencils follow the order of their point pairs.

	Reordering the points does not change the result unless several
	different ellipsoids fit them equally well. Duplicated points are
	counted again, which shifts the least-squares balance towards them.

	Args:
		points: sequence of (position, normal) pairs
		seed: a point that must end up inside the ellipsoid
		tolerance: on-surface tolerance for the boundary points, or None
			to accept the best least-squares fit
		rank_tolerance: relative eigenvalue gap below which eigenvectors
			count as exact solutions

	Returns:
		Ellipsoid, or None when fewer than 4 points are given or no
		admissible ellipsoid exists
	"""
	positions, normals = _split_points(points)
	seed = numpy.asarray(seed, dtype=float)
	if seed.shape != (3,):
		raise ValueError(f"seed must be a 3-vector, got shape {seed.shape}")
	if len(positions) < MIN_POINTS:
		return None

	# condition the system: seed at the origin, unit mean distance
	offsets = positions - seed
	scale = float(numpy.mean(numpy.linalg.norm(offsets, axis=1)))
	if scale == 0:
		return None
	local = offsets / scale

	scatter = numpy.zeros((10, 10))
	for position, normal in zip(local, normals):
		scatter += _point_system(position, normal)
	candidates = _candidates(scatter, rank_tolerance)
	candidates += _pencil_candidates(local, normals, rank_tolerance)

	best = None
	best_score = numpy.inf
	margin = DEFAULT_TOLERANCE if tolerance is None else tolerance
	tie = margin * len(positions)
	for coefficients in candidates:
		quadric = quadric_matrix(coefficients)
		# the seed sits at the origin, where the quadric equals d
		if quadric[3, 3] == 0:
			continue
		if quadric[3, 3] > 0:
			quadric = -quadric
		candidate = quadric_to_ellipsoid(quadric)
		if candidate is None or candidate.surface_value(numpy.zeros(3)) >= 1.0:
			continue
		ellipsoid = Ellipsoid(candidate.radii * scale,
			seed + candidate.centre * scale, candidate.orientation)
		residuals = surface_residuals(ellipsoid, positions)
		if tolerance is not None and numpy.max(residuals) > tolerance:
			continue
		score = float(numpy.sum(residuals))
		if score < best_score - tie:
			best = ellipsoid
			best_score = score
	return best
