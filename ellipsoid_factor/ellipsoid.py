"""
Ellipsoid values used by the fitting, intersection and growth code.

Ellipsoid is an immutable result value. QuickEllipsoid is the mutable
state that the growth loop recentres, rescales and reorients in place.
Both store the orientation as a rotation matrix whose columns are the
principal axis directions.
"""

import numpy

DEFAULT_TOLERANCE = 1e-12
# Knud Thomsen exponent for the surface area approximation
_THOMSEN_P = 1.6075


#============================================
def _as_vector(value, name: str) -> numpy.ndarray:
	"""Convert to a float 3-vector or raise ValueError."""
	vector = numpy.asarray(value, dtype=float)
	if vector.shape != (3,):
		raise ValueError(f"{name} must be a 3-vector, got shape {vector.shape}")
	return vector


#============================================
def orthonormalize(rotation) -> numpy.ndarray:
	"""
	Project a 3x3 matrix onto the nearest rotation.

	Uses the polar decomposition (via SVD) so repeated small rotations
	cannot drift away from orthonormality. A reflection is turned into a
	rotation by flipping the last column.

	Args:
		rotation: 3x3 matrix, approximately orthonormal

	Returns:
		3x3 rotation matrix with det = +1
	"""
	matrix = numpy.asarray(rotation, dtype=float)
	if matrix.shape != (3, 3):
		raise ValueError(f"rotation must be 3x3, got shape {matrix.shape}")
	u, _, vt = numpy.linalg.svd(matrix)
	result = u @ vt
	if numpy.linalg.det(result) < 0:
		u[:, 2] = -u[:, 2]
		result = u @ vt
	return result


#============================================
def ellipsoid_factor(radii) -> float:
	"""
	Ellipsoid factor EF = a/b - b/c for sorted radii a <= b <= c.

	EF is -1 for a flat disc, 0 for a sphere-like shape and +1 for a
	long rod.
	"""
	a, b, c = numpy.sort(numpy.asarray(radii, dtype=float))
	return float(a / b - b / c)


#============================================
def _thomsen_area(a: float, b: float, c: float) -> float:
	p = _THOMSEN_P
	mean = ((a * b) ** p + (a * c) ** p + (b * c) ** p) / 3.0
	return float(4.0 * numpy.pi * mean ** (1.0 / p))


#============================================
class Ellipsoid:
	"""
	Immutable ellipsoid: semi-axis lengths, centroid and orientation.

	The columns of `orientation` are the unit directions of the semi-axes
	with lengths `radii[0]`, `radii[1]`, `radii[2]`.
	"""

	def __init__(self, radii, centre=(0.0, 0.0, 0.0), orientation=None,
		tolerance: float = 1e-9):
		radii = _as_vector(radii, 'radii')
		if not numpy.all(numpy.isfinite(radii)) or numpy.any(radii <= 0):
			raise ValueError(f"radii must be finite and positive, got {radii}")
		centre = _as_vector(centre, 'centre')
		if orientation is None:
			orientation = numpy.eye(3)
		orientation = numpy.array(orientation, dtype=float)
		if orientation.shape != (3, 3):
			raise ValueError(f"orientation must be 3x3, got shape {orientation.shape}")
		if not numpy.allclose(orientation.T @ orientation, numpy.eye(3), atol=tolerance):
			raise ValueError("orientation columns must be orthonormal")
		if numpy.linalg.det(orientation) < 0:
			orientation[:, 2] = -orientation[:, 2]

		for array in (radii, centre, orientation):
			array.flags.writeable = False
		self._radii = radii
		self._centre = centre
		self._orientation = orientation

	@classmethod
	def axis_aligned(cls, a: float, b: float, c: float, centre=(0.0, 0.0, 0.0)) -> 'Ellipsoid':
		"""Ellipsoid with its semi-axes along x, y and z."""
		return cls((a, b, c), centre, numpy.eye(3))

	@property
	def radii(self) -> numpy.ndarray:
		return self._radii

	@property
	def centre(self) -> numpy.ndarray:
		return self._centre

	@property
	def orientation(self) -> numpy.ndarray:
		return self._orientation

	def semi_axes(self) -> list:
		"""Semi-axis vectors: orientation columns scaled by the radii."""
		return [self._orientation[:, i] * self._radii[i] for i in range(3)]

	def sorted_radii(self) -> numpy.ndarray:
		return numpy.sort(self._radii)

	def volume(self) -> float:
		return float(4.0 / 3.0 * numpy.pi * numpy.prod(self._radii))

	def surface_area(self) -> float:
		"""Approximate surface area (Knud Thomsen, relative error < 1.1%)."""
		return _thomsen_area(*self._radii)

	def ellipsoid_factor(self) -> float:
		return ellipsoid_factor(self._radii)

	def quadratic_form(self) -> numpy.ndarray:
		"""The matrix R D R^T with D = diag(1/a^2, 1/b^2, 1/c^2)."""
		scale = numpy.diag(1.0 / self._radii ** 2)
		return self._orientation @ scale @ self._orientation.T

	def surface_value(self, points) -> numpy.ndarray:
		"""
		Evaluate (p - c)^T R D R^T (p - c) for one or more points.

		The value is 1 on the surface, below 1 inside and above 1 outside.

		Args:
			points: 3-vector or Nx3 array

		Returns:
			float for a single point, otherwise an N-vector
		"""
		points = numpy.asarray(points, dtype=float)
		if points.shape[-1] != 3:
			raise ValueError(f"points must have 3 coordinates, got shape {points.shape}")
		# local coordinates scaled by the radii
		local = (points - self._centre) @ self._orientation / self._radii
		values = numpy.sum(local * local, axis=-1)
		if values.ndim == 0:
			return float(values)
		return values

	def contains(self, points):
		"""True for points on or inside the ellipsoid."""
		return self.surface_value(points) <= 1.0

	def is_on_surface(self, point, tolerance: float = DEFAULT_TOLERANCE) -> bool:
		return abs(self.surface_value(point) - 1.0) < tolerance

	def __repr__(self):
		r = self._radii
		c = self._centre
		return (f"Ellipsoid(radii=({r[0]:.4g}, {r[1]:.4g}, {r[2]:.4g}), "
			f"centre=({c[0]:.4g}, {c[1]:.4g}, {c[2]:.4g}))")


#============================================
class QuickEllipsoid:
	"""
	Mutable ellipsoid for the growth loop.

	Stores radii, centre and a rotation matrix (columns are the axis
	directions) and exposes the cheap queries and in-place mutators the
	optimiser needs. Every change of orientation is followed by an
	orthonormalization so the rotation never drifts.
	"""

	def __init__(self, a: float, b: float, c: float,
		cx: float, cy: float, cz: float, rotation=None):
		self.radii = numpy.array([a, b, c], dtype=float)
		self.centre = numpy.array([cx, cy, cz], dtype=float)
		if rotation is None:
			rotation = numpy.eye(3)
		self.rotation = orthonormalize(rotation)

	@classmethod
	def from_ellipsoid(cls, ellipsoid: Ellipsoid) -> 'QuickEllipsoid':
		a, b, c = ellipsoid.radii
		cx, cy, cz = ellipsoid.centre
		return cls(a, b, c, cx, cy, cz, ellipsoid.orientation)

	def to_ellipsoid(self) -> Ellipsoid:
		return Ellipsoid(self.radii, self.centre, self.rotation)

	def copy(self) -> 'QuickEllipsoid':
		a, b, c = self.radii
		cx, cy, cz = self.centre
		return QuickEllipsoid(a, b, c, cx, cy, cz, self.rotation)

	#-- queries -------------------------------------------------------------

	def get_centre(self) -> numpy.ndarray:
		return self.centre.copy()

	def get_radii(self) -> numpy.ndarray:
		return self.radii.copy()

	def get_rotation(self) -> numpy.ndarray:
		return self.rotation.copy()

	def get_sorted_radii(self) -> numpy.ndarray:
		return numpy.sort(self.radii)

	def get_volume(self) -> float:
		return float(4.0 / 3.0 * numpy.pi * numpy.prod(self.radii))

	def get_surface_area(self) -> float:
		return _thomsen_area(*self.radii)

	def get_surface_points(self, vectors) -> numpy.ndarray:
		"""
		Map direction vectors onto the ellipsoid surface.

		Each direction is normalised, scaled per axis by the radii in the
		ellipsoid's local frame and rotated back: p = c + R (radii * v).

		Args:
			vectors: Nx3 array of directions

		Returns:
			Nx3 array of surface points, same order as `vectors`
		"""
		vectors = numpy.asarray(vectors, dtype=float)
		if vectors.ndim != 2 or vectors.shape[1] != 3:
			raise ValueError(f"vectors must be an Nx3 array, got shape {vectors.shape}")
		lengths = numpy.linalg.norm(vectors, axis=1)
		if numpy.any(lengths == 0):
			raise ValueError("direction vectors must be non-zero")
		unit = vectors / lengths[:, None]
		return self.centre + (unit * self.radii) @ self.rotation.T

	def get_axis_aligned_surface_points(self) -> numpy.ndarray:
		"""Surface points at the ends of the three principal axes."""
		return self.get_surface_points(axis_vectors())

	def surface_value(self, point) -> float:
		local = self.rotation.T @ (numpy.asarray(point, dtype=float) - self.centre)
		return float(numpy.sum((local / self.radii) ** 2))

	def contains(self, x: float, y: float, z: float) -> bool:
		return self.surface_value((x, y, z)) <= 1.0

	def local_coordinates(self, point) -> numpy.ndarray:
		"""Point expressed in the centred, derotated frame."""
		return self.rotation.T @ (numpy.asarray(point, dtype=float) - self.centre)

	def surface_normal(self, point) -> numpy.ndarray:
		"""Outward unit normal of the level surface through `point`."""
		gradient = self.local_coordinates(point) / self.radii ** 2
		length = numpy.linalg.norm(gradient)
		if length == 0:
			raise ValueError("surface normal is undefined at the centre")
		return self.rotation @ (gradient / length)

	#-- mutators ------------------------------------------------------------

	def set_centroid(self, cx: float, cy: float, cz: float) -> None:
		self.centre = numpy.array([cx, cy, cz], dtype=float)

	def translate(self, offset) -> None:
		self.centre = self.centre + _as_vector(offset, 'offset')

	def set_radii(self, a: float, b: float, c: float) -> None:
		self.radii = numpy.array([a, b, c], dtype=float)

	def dilate(self, da: float, db: float, dc: float) -> None:
		"""Add the increments to the three radii."""
		self.radii = self.radii + numpy.array([da, db, dc], dtype=float)

	def contract(self, fraction: float) -> None:
		"""Shrink every radius by `fraction` of its length."""
		self.radii = self.radii * (1.0 - fraction)

	def scale(self, factor: float) -> None:
		self.radii = self.radii * factor

	def set_rotation(self, rotation) -> None:
		self.rotation = orthonormalize(rotation)

	def rotate(self, rotation) -> None:
		"""Apply a rotation (in world coordinates) to the orientation."""
		rotation = numpy.asarray(rotation, dtype=float)
		self.rotation = orthonormalize(rotation @ self.rotation)

	def __repr__(self):
		r = self.radii
		c = self.centre
		return (f"QuickEllipsoid(radii=({r[0]:.4g}, {r[1]:.4g}, {r[2]:.4g}), "
			f"centre=({c[0]:.4g}, {c[1]:.4g}, {c[2]:.4g}))")


#============================================
def axis_vectors() -> numpy.ndarray:
	"""The six axis directions, ordered +x, +y, +z, -x, -y, -z."""
	identity = numpy.eye(3)
	return numpy.vstack([identity, -identity])


#============================================
def regular_vectors(n: int) -> numpy.ndarray:
	"""
	Near-uniform unit vectors on the sphere (golden spiral).

	Args:
		n: number of vectors, at least 1

	Returns:
		nx3 array of unit vectors
	"""
	if n < 1:
		raise ValueError("Need at least 1 vector")
	index = numpy.arange(n, dtype=float) + 0.5
	z = 1.0 - 2.0 * index / n
	radius = numpy.sqrt(1.0 - z * z)
	golden_angle = numpy.pi * (3.0 - numpy.sqrt(5.0))
	theta = golden_angle * index
	return numpy.column_stack([radius * numpy.cos(theta), radius * numpy.sin(theta), z])


#============================================
def random_surface_points(radii, n: int, rng: numpy.random.Generator = None) -> numpy.ndarray:
	"""
	Uniformly distributed random points on an axis-aligned ellipsoid.

	Points drawn uniformly on the unit sphere are stretched onto the
	ellipsoid and accepted with probability proportional to the local
	area element, which removes the bias towards the poles of the
	long axes.

	Args:
		radii: semi-axis lengths (a, b, c)
		n: number of points
		rng: optional numpy random Generator

	Returns:
		nx3 array of points on the surface
	"""
	a, b, c = _as_vector(radii, 'radii')
	if min(a, b, c) <= 0:
		raise ValueError("radii must be positive")
	if rng is None:
		rng = numpy.random.default_rng()
	# largest possible value of the area element g below
	g_max = max(a * b, a * c, b * c)

	accepted = []
	count = 0
	while count < n:
		batch = max(2 * (n - count), 16)
		sphere = rng.normal(size=(batch, 3))
		sphere /= numpy.linalg.norm(sphere, axis=1)[:, None]
		x, y, z = sphere.T
		g = numpy.sqrt((b * c * x) ** 2 + (a * c * y) ** 2 + (a * b * z) ** 2)
		keep = rng.uniform(0.0, g_max, size=batch) < g
		points = sphere[keep] * numpy.array([a, b, c])
		accepted.append(points)
		count += len(points)
	return numpy.vstack(accepted)[:n]
