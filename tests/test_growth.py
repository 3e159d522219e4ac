"""
Unit tests for growth module.
"""

import numpy
import pytest
from ellipsoid_factor import ellipsoid
from ellipsoid_factor import growth


def _cuboid_grid():
	"""6x6x6 stack: foreground cuboid one voxel from the border except at z = 0."""
	mask = numpy.zeros((6, 6, 6), dtype=bool)
	# indexed [z, y, x]
	mask[0:5, 1:5, 1:5] = True
	return growth.VoxelGrid(mask)


def _box_grid(shape_zyx, margin=2):
	mask = numpy.zeros(shape_zyx, dtype=bool)
	mask[margin:-margin, margin:-margin, margin:-margin] = True
	return growth.VoxelGrid(mask)


def _on_surface(e, point):
	return abs(e.surface_value(point) - 1.0) < 1e-12


def test_voxel_grid():
	"""Test occupancy queries and bounds."""
	grid = _cuboid_grid()

	assert grid.shape == (6, 6, 6)
	assert grid.is_foreground(1, 1, 0)
	assert not grid.is_foreground(0, 1, 1)
	assert not grid.is_foreground(3, 3, 5)
	assert grid.is_out_of_bounds(-1, 0, 0)
	assert grid.is_out_of_bounds(0, 6, 0)
	assert not grid.is_foreground(3, 3, -1)
	assert numpy.allclose(grid.extent(), [6.0, 6.0, 6.0])


def test_voxel_grid_spacing():
	"""Test mapping of calibrated points to voxels."""
	grid = growth.VoxelGrid(numpy.ones((4, 3, 2)), spacing=(0.5, 1.0, 2.0))

	assert grid.shape == (2, 3, 4)
	assert grid.voxel_index((0.9, 2.5, 7.9)) == (1, 2, 3)
	assert numpy.allclose(grid.extent(), [1.0, 3.0, 8.0])


def test_voxel_grid_invalid():
	"""Test that malformed masks and spacings raise ValueError."""
	with pytest.raises(ValueError):
		growth.VoxelGrid(numpy.ones((4, 4)))
	with pytest.raises(ValueError):
		growth.VoxelGrid(numpy.ones((4, 4, 4)), spacing=(1.0, 0.0, 1.0))


def test_find_contact_points():
	"""Test contact points of an ellipsoid in a cuboid touching the image border."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.1, 3.1, 3.0, 3.0, 2.0)

	contacts = growth.find_contact_points(e, ellipsoid.axis_vectors(), _cuboid_grid())

	# narrower than the foreground in x; -z leaves the image
	expected = [[3.0, 5.1, 2.0], [3.0, 3.0, 5.1], [3.0, 0.9, 2.0]]
	assert len(contacts) == 3
	assert numpy.allclose(contacts, expected, atol=1e-12, rtol=0.0)


def test_calculate_torque():
	"""Test that contacts at the axis ends give no torque."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.1, 3.1, 3.0, 3.0, 2.0)
	contacts = growth.find_contact_points(e, ellipsoid.axis_vectors(), _cuboid_grid())

	torque = growth.calculate_torque(e, contacts)

	assert numpy.allclose(torque, [0.0, 0.0, 0.0], atol=1e-12)


def test_calculate_torque_with_zero_search_vector():
	"""Test that a zero direction among the search vectors adds no contact."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.1, 3.1, 3.0, 3.0, 2.0)
	vectors = numpy.vstack([ellipsoid.axis_vectors(), numpy.zeros(3)])

	contacts = growth.find_contact_points(e, vectors, _cuboid_grid())
	torque = growth.calculate_torque(e, contacts)

	expected = [[3.0, 5.1, 2.0], [3.0, 3.0, 5.1], [3.0, 0.9, 2.0]]
	assert len(contacts) == 3
	assert numpy.allclose(contacts, expected, atol=1e-12, rtol=0.0)
	assert numpy.allclose(torque, [0.0, 0.0, 0.0], atol=1e-12)


def test_calculate_torque_off_axis():
	"""Test that an off-axis contact produces a torque about the right axis."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.0, 3.0, 0.0, 0.0, 0.0)
	point = e.get_surface_points(numpy.array([[1.0, 1.0, 0.0]]))[0]

	torque = growth.calculate_torque(e, [point])

	# the point and its normal lie in the xy plane
	assert abs(torque[0]) < 1e-12
	assert abs(torque[1]) < 1e-12
	assert abs(torque[2]) > 1e-3


def test_contact_point_unit_vector():
	"""Test the mean contact direction."""
	e = ellipsoid.QuickEllipsoid(1.0, 1.0, 1.0, 0.0, 0.0, 0.0)

	direction = growth.contact_point_unit_vector(e, [(0.0, 0.0, 2.0), (0.0, 3.0, 0.0)])
	assert numpy.allclose(direction, numpy.array([0.0, 1.0, 1.0]) / numpy.sqrt(2.0))

	balanced = growth.contact_point_unit_vector(e, [(1.0, 0.0, 0.0), (-1.0, 0.0, 0.0)])
	assert numpy.allclose(balanced, [0.0, 0.0, 0.0])

	with pytest.raises(ValueError):
		growth.contact_point_unit_vector(e, [])


def test_wiggle_preserves_surface_point():
	"""Test that a random wiggle keeps the pinned point on the surface."""
	rng = numpy.random.default_rng(0)
	for _ in range(20):
		e = ellipsoid.QuickEllipsoid(1.0, 2.0, 3.0, 0.0, 0.0, 0.0)
		growth.wiggle(e, numpy.array([1.0, 0.0, 0.0]), rng)
		assert _on_surface(e, (1.0, 0.0, 0.0))


def test_bump_preserves_surface_point():
	"""Test that bumping away from a contact keeps the pinned point on the surface."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.0, 3.0, 0.0, 0.0, 0.0)

	growth.bump(e, [numpy.array([0.0, 0.0, 3.0])], e.get_centre(), numpy.array([1.0, 0.0, 0.0]))

	assert _on_surface(e, (1.0, 0.0, 0.0))
	# moved away from the contact
	assert e.centre[2] < 0.0


def test_bump_respects_max_drift():
	"""Test that the centre does not leave the drift radius around the seed."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.0, 3.0, 0.0, 0.0, 0.0)

	growth.bump(e, [numpy.array([0.0, 0.0, 3.0])], (0.0, 0.0, 1.0),
		displacement=0.5, max_drift=1.2)

	assert numpy.allclose(e.centre, [0.0, 0.0, 0.0])


def test_turn_preserves_surface_point():
	"""Test that turning pivots on the pinned point."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.0, 3.0, 0.0, 0.0, 0.0)

	growth.turn(e, _cuboid_grid(), ellipsoid.regular_vectors(50), numpy.array([1.0, 0.0, 0.0]))

	assert _on_surface(e, (1.0, 0.0, 0.0))


def test_turn_without_torque_is_noop():
	"""Test that balanced contacts leave the ellipsoid unchanged."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.1, 3.1, 3.0, 3.0, 2.0)
	before = e.get_rotation()

	contacts = growth.turn(e, _cuboid_grid(), ellipsoid.axis_vectors())

	assert len(contacts) == 3
	assert numpy.array_equal(e.get_rotation(), before)
	assert numpy.array_equal(e.get_centre(), [3.0, 3.0, 2.0])


def test_pinned_dilate_and_contract():
	"""Test that resizing with a pinned point keeps it on the surface."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.0, 3.0, 0.0, 0.0, 0.0)
	point = e.get_surface_points(numpy.array([[1.0, 2.0, -1.0]]))[0]

	growth.dilate(e, (0.5, 0.0, 1.0), point)
	assert _on_surface(e, point)
	growth.contract(e, 0.2, point)
	assert _on_surface(e, point)


def test_contract_to_nothing_raises():
	"""Test that collapsing the radii is reported as degenerate."""
	e = ellipsoid.QuickEllipsoid(1.0, 2.0, 3.0, 0.0, 0.0, 0.0)

	with pytest.raises(growth.DegenerateEllipsoidError):
		growth.contract(e, 1.0)


def test_shrink_and_inflate_to_fit():
	"""Test shrinking out of contact and inflating back into it."""
	grid = _box_grid((12, 12, 12))
	vectors = ellipsoid.regular_vectors(60)
	e = ellipsoid.QuickEllipsoid(6.0, 6.0, 6.0, 6.0, 6.0, 6.0)
	assert growth.find_contact_points(e, vectors, grid)

	growth.shrink_to_fit(e, grid, vectors)
	assert not growth.find_contact_points(e, vectors, grid)

	contacts = growth.inflate_to_fit(e, grid, vectors, (0.1, 0.1, 0.1))
	assert len(contacts) >= 1


def test_three_way_shuffle():
	"""Test that exactly one axis is picked."""
	rng = numpy.random.default_rng(2)
	picks = [growth.three_way_shuffle(rng) for _ in range(30)]

	assert all(p.sum() == 1.0 for p in picks)
	assert len({int(numpy.argmax(p)) for p in picks}) == 3


def test_is_invalid():
	"""Test the degenerate ellipsoid guard."""
	grid = _box_grid((12, 12, 12))

	assert not growth.is_invalid(ellipsoid.QuickEllipsoid(2.0, 2.0, 2.0, 6.0, 6.0, 6.0), grid, 0.1)
	assert growth.is_invalid(ellipsoid.QuickEllipsoid(0.01, 2.0, 2.0, 6.0, 6.0, 6.0), grid, 0.1)
	assert growth.is_invalid(ellipsoid.QuickEllipsoid(2.0, 2.0, 50.0, 6.0, 6.0, 6.0), grid, 0.1)
	assert growth.is_invalid(ellipsoid.QuickEllipsoid(2.0, 2.0, 2.0, -6.0, -6.0, -6.0), grid, 0.1)
	assert growth.is_invalid(ellipsoid.QuickEllipsoid(numpy.nan, 2.0, 2.0, 6.0, 6.0, 6.0), grid, 0.1)


def test_merge_settings():
	"""Test default settings and rejection of unknown keys."""
	settings = growth.merge_settings({'n_vectors': 20})

	assert settings['n_vectors'] == 20
	assert settings['max_iterations'] == growth.DEFAULT_SETTINGS['max_iterations']
	with pytest.raises(ValueError):
		growth.merge_settings({'vector_count': 20})


def test_optimiser_in_box():
	"""Test growing an ellipsoid inside a cube."""
	grid = _box_grid((16, 16, 16))
	settings = {'n_vectors': 50, 'max_iterations': 10, 'random_seed': 1}

	result = growth.optimise_ellipsoid(grid, (8.0, 8.0, 8.0), settings)

	e = result['ellipsoid']
	assert e is not None
	assert result['state'] in ('stalled', 'terminated')
	assert result['volume'] == pytest.approx(e.volume())
	# the foreground cube spans 2..14 in every direction
	assert numpy.max(e.radii) < 12.0
	assert numpy.min(e.radii) > 1.0
	assert grid.is_foreground(*grid.voxel_index(e.centre))


def test_optimiser_is_reproducible():
	"""Test that a fixed random seed gives the same ellipsoid."""
	grid = _box_grid((14, 14, 14))
	settings = {'n_vectors': 40, 'max_iterations': 5, 'random_seed': 3}

	first = growth.optimise_ellipsoid(grid, (7.0, 7.0, 7.0), settings)
	second = growth.optimise_ellipsoid(grid, (7.0, 7.0, 7.0), settings)

	assert numpy.array_equal(first['ellipsoid'].radii, second['ellipsoid'].radii)
	assert first['iterations'] == second['iterations']


def test_optimiser_in_rod_is_prolate():
	"""Test that a long rod gives an elongated ellipsoid."""
	mask = numpy.zeros((40, 10, 10), dtype=bool)
	mask[2:38, 2:8, 2:8] = True
	grid = growth.VoxelGrid(mask)
	settings = {'n_vectors': 60, 'max_iterations': 20, 'random_seed': 4}

	result = growth.optimise_ellipsoid(grid, (5.0, 5.0, 20.0), settings)

	a, b, c = result['ellipsoid'].sorted_radii()
	assert c > 1.5 * a


def test_optimiser_background_seed():
	"""Test that a background seed terminates without an ellipsoid."""
	grid = _box_grid((10, 10, 10))

	result = growth.optimise_ellipsoid(grid, (0.5, 0.5, 0.5), {'random_seed': 0})

	assert result['ellipsoid'] is None
	assert result['state'] == 'terminated'
	assert result['reason'] == 'seed is not in foreground'
	assert result['volume'] == 0.0


def test_optimiser_time_budget():
	"""Test that an exhausted time budget stops after initialisation."""
	grid = _box_grid((12, 12, 12))
	optimiser = growth.GrowthOptimizer(grid, (6.0, 6.0, 6.0), {'max_seconds': 0.0, 'n_vectors': 30})

	result = optimiser.run()

	assert result['state'] == 'terminated'
	assert result['reason'] == 'time budget exhausted'
	assert result['iterations'] == 0
	assert result['ellipsoid'] is not None


def test_optimiser_with_anchor_keeps_it_on_surface():
	"""Test growth pinned to a boundary anchor."""
	grid = _box_grid((14, 14, 14))
	anchor = numpy.array([7.0, 7.0, 4.0])
	optimiser = growth.GrowthOptimizer(grid, (7.0, 7.0, 7.0),
		{'n_vectors': 40, 'max_iterations': 5, 'random_seed': 2}, anchor=anchor)

	result = optimiser.run()

	assert result['ellipsoid'] is not None
	assert abs(result['ellipsoid'].surface_value(anchor) - 1.0) < 1e-9


def test_optimiser_invalid_seed():
	"""Test that a malformed seed raises ValueError."""
	with pytest.raises(ValueError):
		growth.GrowthOptimizer(_box_grid((10, 10, 10)), (1.0, 2.0))
