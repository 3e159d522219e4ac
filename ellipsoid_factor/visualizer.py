"""
Generate diagnostic visualizations (PNG).

Shows one z slice of the stack: the binary mask with the ellipsoid
cross-sections, and the ellipsoid factor map.
"""

import numpy
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot
import matplotlib.patches

from . import intersection


#============================================
def densest_slice(mask: numpy.ndarray) -> int:
	"""Index of the z slice with the most foreground voxels."""
	counts = numpy.count_nonzero(numpy.asarray(mask).reshape(mask.shape[0], -1), axis=1)
	return int(numpy.argmax(counts))


#============================================
def create_diagnostic_plot(
	mask: numpy.ndarray,
	ef_map: numpy.ndarray,
	ellipsoids: list,
	output_path: str,
	z_index: int = None,
	spacing=(1.0, 1.0, 1.0),
) -> None:
	"""
	Create a two-panel diagnostic PNG for one slice of a stack.

	Panels:
		1. Binary mask with ellipsoid cross-sections (red)
		2. Ellipsoid factor map, -1 (disc) to +1 (rod)

	Args:
		mask: 3D binary stack indexed [z, y, x]
		ef_map: EF per voxel, NaN where unassigned
		ellipsoids: list of Ellipsoid or None
		output_path: Path to save the PNG
		z_index: slice to show, default the densest slice
		spacing: voxel size (x, y, z)
	"""
	if z_index is None:
		z_index = densest_slice(mask)
	sx, sy, sz = (float(v) for v in spacing)
	ny, nx = mask.shape[1], mask.shape[2]
	# calibrated coordinates, y downwards as in the stack
	extent = (0.0, nx * sx, ny * sy, 0.0)
	z = (z_index + 0.5) * sz

	fig, axes = matplotlib.pyplot.subplots(1, 2, figsize=(14, 7))
	fig.suptitle(f"Slice z = {z_index}", fontsize=16, fontweight='bold')

	# Panel 1: mask + cross-sections
	ax = axes[0]
	ax.imshow(mask[z_index].astype(numpy.uint8), cmap='gray', origin='upper', extent=extent)
	valid = [e for e in ellipsoids if e is not None]
	drawn = 0
	for ellipse in intersection.slice_ellipses(valid, z):
		if ellipse is None:
			continue
		_draw_ellipse_on_axis(ax, ellipse, 'red')
		drawn += 1
	ax.set_title(f'Mask + {drawn} ellipsoid sections')
	ax.set_xlim(extent[0], extent[1])
	ax.set_ylim(extent[2], extent[3])
	ax.set_aspect('equal')

	# Panel 2: EF map
	ax = axes[1]
	image = ax.imshow(numpy.ma.masked_invalid(ef_map[z_index]), cmap='RdBu',
		vmin=-1.0, vmax=1.0, origin='upper', extent=extent)
	fig.colorbar(image, ax=ax, fraction=0.046, pad=0.04, label='EF')
	ax.set_title('Ellipsoid Factor')
	ax.set_aspect('equal')

	values = ef_map[numpy.isfinite(ef_map)]
	if len(values):
		summary = (f"Ellipsoids: {len(valid)}  "
			f"EF median: {numpy.median(values):.3f}  "
			f"mean: {numpy.mean(values):.3f}")
	else:
		summary = f"Ellipsoids: {len(valid)}  no voxels assigned"
	fig.text(0.5, 0.02, summary, ha='center', fontsize=9, family='monospace',
		bbox=dict(boxstyle='round', facecolor='wheat', alpha=0.5))

	matplotlib.pyplot.tight_layout(rect=[0, 0.06, 1, 0.96])
	matplotlib.pyplot.savefig(output_path, dpi=150, bbox_inches='tight')
	matplotlib.pyplot.close()


#============================================
def _draw_ellipse_on_axis(ax, ellipse: intersection.IntersectionEllipse, color: str) -> None:
	"""
	Draw an intersection ellipse on a matplotlib axis.

	Args:
		ax: Matplotlib axis
		ellipse: IntersectionEllipse in a z = const plane
		color: Color for the ellipse
	"""
	semi_a, semi_b = ellipse.semi_axis_lengths()
	angle = numpy.degrees(numpy.arctan2(ellipse.axis_a[1], ellipse.axis_a[0]))
	# matplotlib Ellipse takes full width/height, not semi-axes
	patch = matplotlib.patches.Ellipse(
		xy=(ellipse.centre[0], ellipse.centre[1]), width=2.0 * semi_a, height=2.0 * semi_b,
		angle=angle, fill=False, edgecolor=color, linewidth=1
	)
	ax.add_patch(patch)
