"""
Unit tests for intersection module.
"""

import numpy
import pytest
from ellipsoid_factor import ellipsoid
from ellipsoid_factor import intersection

TOLERANCE = 1e-12


def _on_plane(point, plane_point, plane_normal):
	return abs(numpy.dot(plane_normal, point) - numpy.dot(plane_normal, plane_point)) < TOLERANCE


def _check_ellipse(result, e, plane_point, plane_normal):
	"""Both axis end points lie on the plane and on the ellipsoid."""
	assert result is not None
	assert abs(numpy.dot(result.axis_a, result.axis_b)) < TOLERANCE
	for end in (result.centre + result.axis_a, result.centre + result.axis_b):
		assert _on_plane(end, plane_point, plane_normal)
		assert abs(e.surface_value(end) - 1.0) < TOLERANCE


def test_general_ellipsoid_and_plane():
	"""Test a rotated ellipsoid cut by a horizontal plane."""
	first = numpy.ones(3) / numpy.sqrt(3.0)
	second = numpy.array([-1.0, 0.0, 1.0]) / numpy.sqrt(2.0)
	third = numpy.cross(first, second)
	e = ellipsoid.Ellipsoid((1.0, 2.0, 3.0), orientation=numpy.column_stack([first, second, third]))
	plane_point = numpy.array([0.0, 0.0, 0.5])
	plane_normal = numpy.array([0.0, 0.0, 1.0])

	result = intersection.intersect(e, plane_point, plane_normal)

	_check_ellipse(result, e, plane_point, plane_normal)


def test_translated_ellipsoid_and_oblique_plane():
	"""Test an off-centre rotated ellipsoid with an oblique plane."""
	c, s = numpy.cos(0.8), numpy.sin(0.8)
	rotation = numpy.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])
	e = ellipsoid.Ellipsoid((2.0, 3.0, 5.0), (10.0, -4.0, 2.0), rotation)
	plane_point = numpy.array([10.5, -4.0, 3.0])
	plane_normal = numpy.array([1.0, -2.0, 0.5])

	result = intersection.intersect(e, plane_point, plane_normal)

	_check_ellipse(result, e, plane_point, plane_normal / numpy.linalg.norm(plane_normal))
	# every sampled point of the curve is on the ellipsoid
	assert numpy.all(numpy.abs(e.surface_value(result.points(32)) - 1.0) < TOLERANCE)


def test_axis_aligned_ellipsoid_with_oblique_plane():
	"""Test the centred axis-aligned case with an oblique plane."""
	semi_axes = (1.0, 2.0, 3.0)
	plane_point = numpy.array([0.0, 0.0, 0.5])
	plane_normal = numpy.ones(3) / numpy.sqrt(3.0)

	result = intersection.axis_aligned_intersection(semi_axes, plane_point, plane_normal)

	_check_ellipse(result, ellipsoid.Ellipsoid(semi_axes), plane_point, plane_normal)


def test_axis_aligned_ellipsoid_with_parallel_plane():
	"""Test a plane parallel to the xy plane."""
	semi_axes = (1.0, 2.0, 3.0)
	plane_point = numpy.array([0.0, 0.0, 0.25])
	plane_normal = numpy.array([0.0, 0.0, 1.0])

	result = intersection.axis_aligned_intersection(semi_axes, plane_point, plane_normal)

	assert numpy.allclose(result.centre, [0.0, 0.0, 0.25], atol=1e-12)
	_check_ellipse(result, ellipsoid.Ellipsoid(semi_axes), plane_point, plane_normal)


def test_axis_lengths_through_centre_and_offset():
	"""Test semi-axis lengths for a plane through the centre and an offset plane."""
	semi_axes = (1.0, 2.0, 3.0)
	normal = numpy.array([0.0, 0.0, 1.0])

	through = intersection.axis_aligned_intersection(semi_axes, numpy.zeros(3), normal)
	assert numpy.allclose(sorted(through.semi_axis_lengths()), [1.0, 2.0], atol=1e-12)

	# at height d the xy section shrinks by sqrt(1 - (d/c)^2)
	offset = intersection.axis_aligned_intersection(semi_axes, numpy.array([0.0, 0.0, 1.5]), normal)
	factor = numpy.sqrt(1.0 - (1.5 / 3.0) ** 2)
	assert numpy.allclose(sorted(offset.semi_axis_lengths()), [factor, 2.0 * factor], atol=1e-12)


def test_plane_missing_ellipsoid():
	"""Test that a plane beyond the ellipsoid gives no intersection."""
	e = ellipsoid.Ellipsoid((1.0, 2.0, 3.0), (1.0, 1.0, 1.0))

	assert intersection.intersect(e, (0.0, 0.0, 4.5), (0.0, 0.0, 1.0)) is None
	assert intersection.intersect(e, (2.5, 0.0, 0.0), (1.0, 0.0, 0.0)) is None


def test_tangent_plane_gives_point():
	"""Test that a tangent plane gives a zero-size ellipse."""
	result = intersection.axis_aligned_intersection((1.0, 2.0, 3.0), (0.0, 0.0, 3.0), (0.0, 0.0, 1.0))

	assert result is not None
	assert numpy.allclose(result.centre, [0.0, 0.0, 3.0])
	assert numpy.allclose(result.semi_axis_lengths(), [0.0, 0.0])


def test_zero_normal_raises():
	"""Test that a degenerate plane normal is rejected."""
	e = ellipsoid.Ellipsoid((1.0, 2.0, 3.0))

	with pytest.raises(ValueError):
		intersection.intersect(e, (0.0, 0.0, 0.0), (0.0, 0.0, 0.0))


def test_classify_normal():
	"""Test tagging of axis-parallel and general normals."""
	assert intersection.classify_normal(numpy.array([0.0, 1.0, 0.0])) == ('axis', 1)
	assert intersection.classify_normal(numpy.array([0.0, 0.0, -1.0])) == ('axis', 2)
	assert intersection.classify_normal(numpy.array([0.6, 0.8, 0.0])) == ('general', None)


def test_generation_of_basis():
	"""Test basis completion for random plane normals."""
	rng = numpy.random.default_rng(1234)
	semi_axes = numpy.array([1.0, 2.0, 3.0])
	normals = [rng.normal(size=3) for _ in range(10)]
	normals.append(numpy.array([1.0, 0.0, 0.0]))
	normals.append(numpy.array([0.0, 1.0, 1.0]))

	for normal in normals:
		normal = normal / numpy.linalg.norm(normal)
		r, s = intersection.complete_basis(semi_axes, normal)

		assert abs(numpy.linalg.norm(r) - 1.0) < 1e-12
		assert abs(numpy.linalg.norm(s) - 1.0) < 1e-12
		assert abs(numpy.dot(r, normal)) < 1e-12
		assert abs(numpy.dot(s, normal)) < 1e-12
		assert abs(numpy.dot(r, s)) < 1e-12
		assert abs(numpy.sum(r * s / semi_axes ** 2)) < 1e-12


def test_basis_for_axis_normals():
	"""Test that a normal along a principal axis keeps the other two axes."""
	semi_axes = (1.0, 2.0, 3.0)
	identity = numpy.eye(3)

	for axis in range(3):
		for sign in (1.0, -1.0):
			r, s = intersection.complete_basis(semi_axes, sign * identity[axis])

			assert numpy.array_equal(r, identity[(axis + 1) % 3])
			assert numpy.array_equal(s, identity[(axis + 2) % 3])


def test_slice_ellipses():
	"""Test intersecting several ellipsoids with one z plane."""
	near = ellipsoid.Ellipsoid((1.0, 1.0, 1.0), (0.0, 0.0, 0.0))
	far = ellipsoid.Ellipsoid((1.0, 1.0, 1.0), (0.0, 0.0, 10.0))

	sections = intersection.slice_ellipses([near, far], 0.5)

	assert len(sections) == 2
	assert sections[0] is not None
	assert sections[1] is None
	assert abs(sections[0].centre[2] - 0.5) < 1e-12
