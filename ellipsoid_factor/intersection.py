"""
Intersect an ellipsoid with a plane.

The plane is moved into the ellipsoid's centred, axis-aligned frame,
where the intersection curve is parametrised with a pair of unit vectors
r, s that are orthogonal to each other and to the plane normal and, in
addition, conjugate with respect to the ellipsoid:

	r_x s_x / a^2 + r_y s_y / b^2 + r_z s_z / c^2 = 0

With such a basis the ellipse axes are simply multiples of r and s.
See P. P. Klein, "On the Ellipsoid and Plane Intersection Equation",
Applied Mathematics 3 (2012).
"""

from typing import NamedTuple, Optional

import numpy

from .ellipsoid import DEFAULT_TOLERANCE


#============================================
class IntersectionEllipse(NamedTuple):
	"""Intersection curve: centre plus two orthogonal semi-axis vectors."""
	centre: numpy.ndarray
	axis_a: numpy.ndarray
	axis_b: numpy.ndarray

	def semi_axis_lengths(self) -> tuple:
		return (float(numpy.linalg.norm(self.axis_a)),
			float(numpy.linalg.norm(self.axis_b)))

	def points(self, n: int = 64) -> numpy.ndarray:
		"""Sample n points along the ellipse."""
		t = numpy.linspace(0.0, 2.0 * numpy.pi, n, endpoint=False)
		return (self.centre + numpy.cos(t)[:, None] * self.axis_a
			+ numpy.sin(t)[:, None] * self.axis_b)


#============================================
def _unit_normal(normal) -> numpy.ndarray:
	normal = numpy.asarray(normal, dtype=float)
	if normal.shape != (3,):
		raise ValueError(f"plane normal must be a 3-vector, got shape {normal.shape}")
	length = numpy.linalg.norm(normal)
	if length == 0 or not numpy.isfinite(length):
		raise ValueError("plane normal must be a finite, non-zero vector")
	return normal / length


#============================================
def classify_normal(normal, tolerance: float = DEFAULT_TOLERANCE) -> tuple:
	"""
	Tag a unit normal for basis completion.

	Returns:
		('axis', i) when the normal is parallel to principal axis i,
		otherwise ('general', None)
	"""
	small = numpy.abs(normal) < tolerance
	if numpy.count_nonzero(small) == 2:
		return ('axis', int(numpy.flatnonzero(~small)[0]))
	return ('general', None)


#============================================
def _axis_basis(axis: int) -> tuple:
	# the other two principal axes are orthogonal and conjugate already
	identity = numpy.eye(3)
	r = identity[(axis + 1) % 3]
	s = identity[(axis + 2) % 3]
	return r, s


#============================================
def _general_basis(semi_axes: numpy.ndarray, normal: numpy.ndarray) -> tuple:
	"""
	Rotate an arbitrary in-plane orthonormal pair until it is conjugate.

	With r = cos(w) r0 + sin(w) s0 and s = -sin(w) r0 + cos(w) s0 the
	conjugacy condition becomes tan(2w) = 2 r0.D.s0 / (r0.D.r0 - s0.D.s0).
	"""
	# start from the coordinate axis least aligned with the normal
	helper = numpy.zeros(3)
	helper[numpy.argmin(numpy.abs(normal))] = 1.0
	r0 = numpy.cross(normal, helper)
	r0 /= numpy.linalg.norm(r0)
	s0 = numpy.cross(normal, r0)

	d = 1.0 / semi_axes ** 2
	rdr = numpy.sum(r0 * d * r0)
	sds = numpy.sum(s0 * d * s0)
	rds = numpy.sum(r0 * d * s0)
	omega = 0.5 * numpy.arctan2(2.0 * rds, rdr - sds)

	cos_w = numpy.cos(omega)
	sin_w = numpy.sin(omega)
	r = cos_w * r0 + sin_w * s0
	s = -sin_w * r0 + cos_w * s0
	return r, s


#============================================
def complete_basis(semi_axes, normal, tolerance: float = DEFAULT_TOLERANCE) -> tuple:
	"""
	Complete a plane normal to an orthonormal, conjugate basis.

	Args:
		semi_axes: (a, b, c) of an axis-aligned ellipsoid
		normal: plane normal (normalised here)
		tolerance: components below this count as zero when testing
			for a normal along a principal axis

	Returns:
		Tuple (r, s) of unit vectors orthogonal to the normal and to each
		other that satisfy the conjugacy condition
	"""
	semi_axes = numpy.asarray(semi_axes, dtype=float)
	if semi_axes.shape != (3,) or numpy.any(semi_axes <= 0):
		raise ValueError(f"semi-axes must be three positive lengths, got {semi_axes}")
	normal = _unit_normal(normal)
	kind, axis = classify_normal(normal, tolerance)
	if kind == 'axis':
		return _axis_basis(axis)
	return _general_basis(semi_axes, normal)


#============================================
def axis_aligned_intersection(semi_axes, plane_point, plane_normal,
	tolerance: float = DEFAULT_TOLERANCE) -> Optional[IntersectionEllipse]:
	"""
	Intersect a centred, axis-aligned ellipsoid with a plane.

	Writing points of the plane as q + u r + v s, with q the point of
	the plane closest to the origin, the ellipsoid equation separates
	into two squares because r and s are conjugate. Completing them
	gives the ellipse centre and the semi-axis lengths.

	Args:
		semi_axes: (a, b, c)
		plane_point: any point on the plane
		plane_normal: plane normal, need not be unit length

	Returns:
		IntersectionEllipse, or None if the plane misses the ellipsoid
	"""
	semi_axes = numpy.asarray(semi_axes, dtype=float)
	normal = _unit_normal(plane_normal)
	plane_point = numpy.asarray(plane_point, dtype=float)
	r, s = complete_basis(semi_axes, normal, tolerance)

	q = numpy.dot(normal, plane_point) * normal
	d = 1.0 / semi_axes ** 2
	rdr = numpy.sum(r * d * r)
	sds = numpy.sum(s * d * s)
	qdr = numpy.sum(q * d * r)
	qds = numpy.sum(q * d * s)
	qdq = numpy.sum(q * d * q)

	delta = qdq - qdr * qdr / rdr - qds * qds / sds
	if delta > 1.0:
		return None
	# a tangent plane leaves a single point
	remainder = max(1.0 - delta, 0.0)

	centre = q - (qdr / rdr) * r - (qds / sds) * s
	axis_a = numpy.sqrt(remainder / rdr) * r
	axis_b = numpy.sqrt(remainder / sds) * s
	return IntersectionEllipse(centre, axis_a, axis_b)


#============================================
def intersect(ellipsoid, plane_point, plane_normal,
	tolerance: float = DEFAULT_TOLERANCE) -> Optional[IntersectionEllipse]:
	"""
	Intersect an arbitrary ellipsoid with a plane.

	Args:
		ellipsoid: Ellipsoid (radii, centre, orientation)
		plane_point: any point on the plane
		plane_normal: non-zero plane normal

	Returns:
		IntersectionEllipse in world coordinates, or None when the plane
		does not meet the ellipsoid
	"""
	normal = _unit_normal(plane_normal)
	plane_point = numpy.asarray(plane_point, dtype=float)
	if plane_point.shape != (3,):
		raise ValueError(f"plane point must be a 3-vector, got shape {plane_point.shape}")

	rotation = ellipsoid.orientation
	centre = ellipsoid.centre
	# orthonormal orientation: the inverse is the transpose
	local_normal = rotation.T @ normal
	local_point = rotation.T @ (plane_point - centre)

	local = axis_aligned_intersection(ellipsoid.radii, local_point, local_normal, tolerance)
	if local is None:
		return None
	return IntersectionEllipse(
		centre + rotation @ local.centre,
		rotation @ local.axis_a,
		rotation @ local.axis_b,
	)


#============================================
def slice_ellipses(ellipsoids, z: float) -> list:
	"""
	Intersect every ellipsoid with the plane z = const.

	Returns:
		List aligned with `ellipsoids`; None where a plane misses
	"""
	point = numpy.array([0.0, 0.0, z])
	normal = numpy.array([0.0, 0.0, 1.0])
	return [intersect(e, point, normal) for e in ellipsoids]
