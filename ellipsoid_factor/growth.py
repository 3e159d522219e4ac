"""
Grow an ellipsoid inside a foreground region.

A small sphere at a seed point is inflated until it touches background,
then cycles of wiggle, shrink, inflate, bump and turn search for the
largest ellipsoid that still fits. Contact points are surface points of
the ellipsoid that fall in background voxels; their torque drives the
turns.

Every mutator optionally pins a surface point: after the change the
centre is re-solved so that point keeps its position on the surface.
"""

import enum
import time

import numpy
import scipy.spatial.transform

from .ellipsoid import QuickEllipsoid, regular_vectors, DEFAULT_TOLERANCE

# lengths are in units of the smallest voxel spacing
DEFAULT_SETTINGS = {
	'vector_increment': 1.0 / 2.3,
	'n_vectors': 100,
	'contact_sensitivity': 1,
	'max_iterations': 100,
	'max_drift': numpy.sqrt(3.0),
	'min_radius': 0.1,
	'wiggle_angle': 0.1,
	'turn_angle': 0.1,
	'improvement_tolerance': 1e-9,
	'max_seconds': None,
	'random_seed': None,
	'tolerance': DEFAULT_TOLERANCE,
}


#============================================
class DegenerateEllipsoidError(ValueError):
	"""A mutation would leave the ellipsoid without a valid shape."""


#============================================
class GrowthState(enum.Enum):
	GROWING = 'growing'
	STALLED = 'stalled'
	TERMINATED = 'terminated'


#============================================
def merge_settings(overrides: dict = None) -> dict:
	"""Defaults updated with `overrides`; unknown keys raise ValueError."""
	settings = dict(DEFAULT_SETTINGS)
	if overrides:
		unknown = set(overrides) - set(DEFAULT_SETTINGS)
		if unknown:
			raise ValueError(f"Unknown growth settings: {sorted(unknown)}")
		settings.update(overrides)
	return settings


#============================================
class VoxelGrid:
	"""
	Read-only foreground occupancy of a 3D image.

	The mask is indexed [z, y, x] (a stack of row-major slices). Points
	are in calibrated units; a point belongs to voxel floor(p / spacing).
	"""

	def __init__(self, mask, spacing=(1.0, 1.0, 1.0)):
		mask = numpy.array(mask, dtype=bool)
		if mask.ndim != 3:
			raise ValueError(f"mask must be 3D, got {mask.ndim} dimensions")
		spacing = numpy.asarray(spacing, dtype=float)
		if spacing.shape != (3,) or numpy.any(spacing <= 0):
			raise ValueError(f"spacing must be three positive numbers, got {spacing}")
		mask.flags.writeable = False
		self.mask = mask
		self.spacing = spacing

	@property
	def shape(self) -> tuple:
		"""Image size as (nx, ny, nz)."""
		nz, ny, nx = self.mask.shape
		return nx, ny, nz

	def extent(self) -> numpy.ndarray:
		return numpy.array(self.shape, dtype=float) * self.spacing

	def is_out_of_bounds(self, x: int, y: int, z: int) -> bool:
		nx, ny, nz = self.shape
		return x < 0 or y < 0 or z < 0 or x >= nx or y >= ny or z >= nz

	def is_foreground(self, x: int, y: int, z: int) -> bool:
		if self.is_out_of_bounds(x, y, z):
			return False
		return bool(self.mask[z, y, x])

	def voxel_index(self, point) -> tuple:
		index = numpy.floor(numpy.asarray(point, dtype=float) / self.spacing).astype(int)
		return int(index[0]), int(index[1]), int(index[2])


#============================================
def find_contact_points(ellipsoid: QuickEllipsoid, vectors, grid: VoxelGrid) -> list:
	"""
	Surface points of the ellipsoid that lie in background.

	Directions whose surface point falls outside the image give no
	contact: a region touching the image border cannot be resolved there.
	Zero-length directions are skipped.

	Args:
		ellipsoid: current ellipsoid
		vectors: Nx3 search directions
		grid: voxel occupancy

	Returns:
		List of contact points (3-vectors) in the order of `vectors`
	"""
	vectors = numpy.asarray(vectors, dtype=float)
	if vectors.ndim != 2 or vectors.shape[1] != 3:
		raise ValueError(f"vectors must be an Nx3 array, got shape {vectors.shape}")
	# a zero direction points at the centre, which is never a contact
	vectors = vectors[numpy.linalg.norm(vectors, axis=1) > 0]
	points = ellipsoid.get_surface_points(vectors)
	voxels = numpy.floor(points / grid.spacing).astype(int)
	contacts = []
	for point, (x, y, z) in zip(points, voxels):
		if grid.is_out_of_bounds(x, y, z):
			continue
		if not grid.mask[z, y, x]:
			contacts.append(point)
	return contacts


#============================================
def calculate_torque(ellipsoid: QuickEllipsoid, contact_points) -> numpy.ndarray:
	"""
	Net torque of unit forces acting along the surface normals.

	Each contact point pushes along the outward unit normal of the
	ellipsoid at that point; the moment about the centre is summed and
	returned negated, so rotating about it reduces the imbalance.
	"""
	torque = numpy.zeros(3)
	for point in contact_points:
		point = numpy.asarray(point, dtype=float)
		normal = ellipsoid.surface_normal(point)
		torque += numpy.cross(point - ellipsoid.centre, normal)
	return -torque


#============================================
def contact_point_unit_vector(ellipsoid: QuickEllipsoid, contact_points) -> numpy.ndarray:
	"""
	Mean direction from the centre to the contact points.

	Returns the zero vector when the contacts balance out.
	"""
	if len(contact_points) < 1:
		raise ValueError("Need at least one contact point")
	offsets = numpy.asarray(contact_points, dtype=float) - ellipsoid.centre
	units = offsets / numpy.linalg.norm(offsets, axis=1)[:, None]
	mean = numpy.mean(units, axis=0)
	length = numpy.linalg.norm(mean)
	if length == 0:
		return numpy.zeros(3)
	return mean / length


#============================================
def _scaled_local(ellipsoid: QuickEllipsoid, point) -> numpy.ndarray:
	return ellipsoid.local_coordinates(point) / ellipsoid.radii


#============================================
def _pin(ellipsoid: QuickEllipsoid, point, scaled_local: numpy.ndarray) -> None:
	# re-solve the centre so `point` has the given scaled local coordinates
	ellipsoid.centre = numpy.asarray(point, dtype=float) - ellipsoid.rotation @ (ellipsoid.radii * scaled_local)


#============================================
def _rotate(ellipsoid: QuickEllipsoid, rotation: numpy.ndarray, surface_point=None) -> None:
	if surface_point is None:
		ellipsoid.rotate(rotation)
		return
	scaled = _scaled_local(ellipsoid, surface_point)
	ellipsoid.rotate(rotation)
	_pin(ellipsoid, surface_point, scaled)


#============================================
def _check_radii(ellipsoid: QuickEllipsoid) -> None:
	radii = ellipsoid.radii
	if not numpy.all(numpy.isfinite(radii)) or numpy.any(radii <= 0):
		raise DegenerateEllipsoidError(f"radii collapsed to {radii}")


#============================================
def contract(ellipsoid: QuickEllipsoid, fraction: float, surface_point=None) -> None:
	"""Shrink all radii by `fraction`, keeping `surface_point` on the surface."""
	if surface_point is None:
		ellipsoid.contract(fraction)
	else:
		scaled = _scaled_local(ellipsoid, surface_point)
		ellipsoid.contract(fraction)
		_pin(ellipsoid, surface_point, scaled)
	_check_radii(ellipsoid)


#============================================
def dilate(ellipsoid: QuickEllipsoid, increments, surface_point=None) -> None:
	"""Add `increments` to the radii, keeping `surface_point` on the surface."""
	if surface_point is None:
		ellipsoid.dilate(*increments)
	else:
		scaled = _scaled_local(ellipsoid, surface_point)
		ellipsoid.dilate(*increments)
		_pin(ellipsoid, surface_point, scaled)
	_check_radii(ellipsoid)


#============================================
def wiggle(ellipsoid: QuickEllipsoid, surface_point=None,
	rng: numpy.random.Generator = None, max_angle: float = 0.1) -> None:
	"""
	Rotate by a small random amount to escape local optima.

	Args:
		ellipsoid: ellipsoid to change in place
		surface_point: optional point to hold fixed on the surface
		rng: numpy random Generator
		max_angle: largest rotation angle in radians
	"""
	if rng is None:
		rng = numpy.random.default_rng()
	axis = rng.normal(size=3)
	axis /= numpy.linalg.norm(axis)
	angle = rng.uniform(-max_angle, max_angle)
	rotation = scipy.spatial.transform.Rotation.from_rotvec(axis * angle).as_matrix()
	_rotate(ellipsoid, rotation, surface_point)


#============================================
def bump(ellipsoid: QuickEllipsoid, contact_points, seed, surface_point=None,
	displacement: float = 0.5 / 2.3, max_drift: float = numpy.sqrt(3.0)) -> None:
	"""
	Move the centre away from the contact points.

	The step is skipped if it would take the centre further than
	`max_drift` from the seed. With a `surface_point` the radii are then
	rescaled uniformly so the point stays on the surface.
	"""
	if len(contact_points) == 0:
		return
	direction = contact_point_unit_vector(ellipsoid, contact_points)
	centre = ellipsoid.centre - direction * displacement
	if numpy.linalg.norm(centre - numpy.asarray(seed, dtype=float)) >= max_drift:
		return
	ellipsoid.centre = centre
	if surface_point is None:
		return
	factor = numpy.sqrt(numpy.sum(_scaled_local(ellipsoid, surface_point) ** 2))
	if factor == 0 or not numpy.isfinite(factor):
		raise DegenerateEllipsoidError("surface point coincides with the centre")
	ellipsoid.scale(factor)
	_check_radii(ellipsoid)


#============================================
def turn(ellipsoid: QuickEllipsoid, grid: VoxelGrid, vectors, surface_point=None,
	angle: float = 0.1, tolerance: float = DEFAULT_TOLERANCE) -> list:
	"""
	Rotate about the torque axis of the current contact points.

	Returns:
		The contact points found before turning
	"""
	contacts = find_contact_points(ellipsoid, vectors, grid)
	if not contacts:
		return contacts
	torque = calculate_torque(ellipsoid, contacts)
	length = numpy.linalg.norm(torque)
	if length < tolerance:
		return contacts
	rotation = scipy.spatial.transform.Rotation.from_rotvec(torque / length * angle).as_matrix()
	_rotate(ellipsoid, rotation, surface_point)
	return contacts


#============================================
def shrink_to_fit(ellipsoid: QuickEllipsoid, grid: VoxelGrid, vectors,
	surface_point=None, max_iterations: int = 100) -> None:
	"""Contract until no surface point touches background, then a bit more."""
	contacts = find_contact_points(ellipsoid, vectors, grid)
	safety = 0
	while contacts and safety < max_iterations:
		contract(ellipsoid, 0.01, surface_point)
		contacts = find_contact_points(ellipsoid, vectors, grid)
		safety += 1
	contract(ellipsoid, 0.05, surface_point)


#============================================
def inflate_to_fit(ellipsoid: QuickEllipsoid, grid: VoxelGrid, vectors, increments,
	contact_sensitivity: int = 1, surface_point=None, max_iterations: int = 100) -> list:
	"""
	Dilate by `increments` until enough surface points touch background.

	Returns:
		The final contact points
	"""
	contacts = find_contact_points(ellipsoid, vectors, grid)
	safety = 0
	while len(contacts) < contact_sensitivity and safety < max_iterations:
		dilate(ellipsoid, increments, surface_point)
		contacts = find_contact_points(ellipsoid, vectors, grid)
		safety += 1
	return contacts


#============================================
def three_way_shuffle(rng: numpy.random.Generator) -> numpy.ndarray:
	"""One-hot vector picking a random axis."""
	choice = numpy.zeros(3)
	choice[rng.integers(3)] = 1.0
	return choice


#============================================
def is_invalid(ellipsoid: QuickEllipsoid, grid: VoxelGrid, min_radius: float) -> bool:
	"""
	Degenerate-ellipsoid guard.

	Invalid when a radius is not finite or below `min_radius`, when a
	radius exceeds the image diagonal, or when more than half of the
	axis end points lie outside the image.
	"""
	radii = ellipsoid.radii
	if not numpy.all(numpy.isfinite(radii)) or not numpy.all(numpy.isfinite(ellipsoid.centre)):
		return True
	if numpy.min(radii) < min_radius:
		return True
	if numpy.max(radii) > numpy.linalg.norm(grid.extent()):
		return True
	points = ellipsoid.get_axis_aligned_surface_points()
	outside = sum(1 for p in points if grid.is_out_of_bounds(*grid.voxel_index(p)))
	return outside > len(points) // 2


#============================================
class GrowthOptimizer:
	"""
	Stateful search for a maximal ellipsoid around one seed.

	Each cycle mutates a copy of the current ellipsoid; the copy is only
	committed when it is still valid, otherwise the previous state is
	kept and the search terminates. The largest committed ellipsoid is
	the result.
	"""

	def __init__(self, grid: VoxelGrid, seed, settings: dict = None, anchor=None):
		self.grid = grid
		self.seed = numpy.asarray(seed, dtype=float)
		if self.seed.shape != (3,):
			raise ValueError(f"seed must be a 3-vector, got shape {self.seed.shape}")
		self.anchor = None if anchor is None else numpy.asarray(anchor, dtype=float)
		self.settings = merge_settings(settings)

		unit = float(numpy.min(grid.spacing))
		self.increment = self.settings['vector_increment'] * unit
		self.min_radius = self.settings['min_radius'] * unit
		self.max_drift = self.settings['max_drift'] * unit
		self.rng = numpy.random.default_rng(self.settings['random_seed'])
		self.vectors = regular_vectors(self.settings['n_vectors'])

		radius = self.increment
		if self.anchor is not None:
			radius = float(numpy.linalg.norm(self.anchor - self.seed))
			if radius == 0:
				raise ValueError("anchor must differ from the seed")
		self.ellipsoid = QuickEllipsoid(radius, radius, radius, *self.seed)
		self.maximal = None
		self.contacts = []
		self.state = GrowthState.GROWING
		self.reason = None
		self.iterations = 0
		self.no_improvement = 0

	#-- state transitions -----------------------------------------------------

	def terminate(self, reason: str) -> None:
		self.state = GrowthState.TERMINATED
		self.reason = reason

	def commit(self, candidate: QuickEllipsoid) -> bool:
		"""Accept `candidate` as the current state if it is valid."""
		if is_invalid(candidate, self.grid, self.min_radius):
			self.terminate('degenerate ellipsoid')
			return False
		self.ellipsoid = candidate
		return True

	#-- search ----------------------------------------------------------------

	def initialise(self) -> None:
		"""Inflate a sphere to first contact and align its short axis."""
		if not self.grid.is_foreground(*self.grid.voxel_index(self.seed)):
			self.terminate('seed is not in foreground')
			return
		max_iterations = self.settings['max_iterations']
		candidate = self.ellipsoid.copy()
		step = (self.increment,) * 3
		contacts = find_contact_points(candidate, self.vectors, self.grid)
		try:
			while not contacts:
				dilate(candidate, step, self.anchor)
				if is_invalid(candidate, self.grid, self.min_radius):
					self.terminate('sphere never touched background')
					return
				contacts = find_contact_points(candidate, self.vectors, self.grid)

			short_axis = contact_point_unit_vector(candidate, contacts)
			if numpy.linalg.norm(short_axis) == 0:
				short_axis = numpy.array([1.0, 0.0, 0.0])
			helper = numpy.zeros(3)
			helper[numpy.argmin(numpy.abs(short_axis))] = 1.0
			middle_axis = numpy.cross(short_axis, helper)
			middle_axis /= numpy.linalg.norm(middle_axis)
			long_axis = numpy.cross(short_axis, middle_axis)
			_rotate(candidate, numpy.column_stack([short_axis, middle_axis, long_axis])
				@ candidate.rotation.T, self.anchor)

			shrink_to_fit(candidate, self.grid, self.vectors, self.anchor, max_iterations)
			contacts = inflate_to_fit(candidate, self.grid, self.vectors,
				(0.0, self.increment, self.increment),
				self.settings['contact_sensitivity'], self.anchor, max_iterations)
		except DegenerateEllipsoidError as error:
			self.terminate(str(error))
			return
		if self.commit(candidate):
			self.contacts = contacts
			self.maximal = candidate.copy()

	def step(self) -> None:
		"""One wiggle, shrink, inflate, bump and turn cycle."""
		settings = self.settings
		max_iterations = settings['max_iterations']
		candidate = self.ellipsoid.copy()
		try:
			wiggle(candidate, self.anchor, self.rng, settings['wiggle_angle'])
			shrink_to_fit(candidate, self.grid, self.vectors, self.anchor, max_iterations)
			increments = three_way_shuffle(self.rng) * self.increment
			inflate_to_fit(candidate, self.grid, self.vectors, increments,
				settings['contact_sensitivity'], self.anchor, max_iterations)
			contacts = find_contact_points(candidate, self.vectors, self.grid)
			bump(candidate, contacts, self.seed, self.anchor,
				self.increment / 2.0, self.max_drift)
			contacts = turn(candidate, self.grid, self.vectors, self.anchor,
				settings['turn_angle'], settings['tolerance'])
		except DegenerateEllipsoidError as error:
			self.terminate(str(error))
			return
		if not self.commit(candidate):
			return
		self.contacts = contacts
		self.iterations += 1

		best = self.maximal.get_volume()
		if candidate.get_volume() > best * (1.0 + settings['improvement_tolerance']):
			self.maximal = candidate.copy()
			self.no_improvement = 0
			return
		self.no_improvement += 1
		if self.no_improvement % 10 == 0:
			# go back to the best ellipsoid found so far
			self.ellipsoid = self.maximal.copy()
		if self.no_improvement >= max_iterations:
			self.state = GrowthState.STALLED
			self.reason = 'no further improvement'

	def run(self) -> dict:
		"""
		Run the search until it stalls or a budget runs out.

		Returns:
			Dict with ellipsoid (Ellipsoid or None), state, reason,
			iterations, contact_count, volume
		"""
		start = time.monotonic()
		max_seconds = self.settings['max_seconds']
		absolute_max = self.settings['max_iterations'] * 10
		self.initialise()
		while self.state is GrowthState.GROWING:
			if self.iterations >= absolute_max:
				self.terminate('iteration budget exhausted')
			elif max_seconds is not None and time.monotonic() - start > max_seconds:
				self.terminate('time budget exhausted')
			else:
				self.step()
		return self.result()

	def result(self) -> dict:
		ellipsoid = None if self.maximal is None else self.maximal.to_ellipsoid()
		return {
			'ellipsoid': ellipsoid,
			'state': self.state.value,
			'reason': self.reason,
			'iterations': self.iterations,
			'contact_count': len(self.contacts),
			'volume': 0.0 if ellipsoid is None else ellipsoid.volume(),
		}


#============================================
def optimise_ellipsoid(grid: VoxelGrid, seed, settings: dict = None, anchor=None) -> dict:
	"""Grow one ellipsoid from `seed`; see GrowthOptimizer.run."""
	return GrowthOptimizer(grid, seed, settings, anchor).run()
