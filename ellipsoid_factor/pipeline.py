"""
End-to-end ellipsoid factor processing.

Loads a binary stack, finds seed points, grows one ellipsoid per seed,
assigns every foreground voxel the ellipsoid factor of the largest
ellipsoid containing it, and writes results, summaries and a diagnostic
image.
"""

import os
import json
import glob
import concurrent.futures

import numpy

from . import growth
from . import seeds
from . import visualizer

_SUPERSCRIPTS = {
	2: '²',
	3: '³',
	4: '⁴',
	5: '⁵',
	6: '⁶',
	7: '⁷',
	8: '⁸',
	9: '⁹',
}


#============================================
def exponent_character(dimensions: int) -> str:
	"""Superscript for a space of the given dimension, e.g. '³' for 3D."""
	return _SUPERSCRIPTS.get(dimensions, '')


#============================================
def unit_header(unit: str, exponent: str = '') -> str:
	"""
	Column header suffix for a calibration unit.

	Returns "(mm³)" for unit "mm" and exponent "³"; default units
	("pixel", "unit" or empty) give an empty string.
	"""
	if unit is None:
		return ''
	if unit == '' or unit.lower() in ('pixel', 'unit'):
		return ''
	return f"({unit}{exponent})"


#============================================
def _label(name: str, header: str) -> str:
	return f"{name} {header}" if header else name


#============================================
def load_stack(path: str) -> numpy.ndarray:
	"""
	Load a .npy stack as a boolean mask indexed [z, y, x].

	Args:
		path: Path to a .npy file

	Returns:
		3D boolean array, True where the value is > 0
	"""
	array = numpy.load(path, allow_pickle=False)
	if array.ndim != 3:
		raise ValueError(f"{path}: expected a 3D stack, got {array.ndim} dimensions")
	return array > 0


#============================================
def optimise_all(grid: growth.VoxelGrid, seed_points, settings: dict = None,
	workers: int = 1, verbose: bool = False) -> list:
	"""
	Grow one ellipsoid per seed.

	Each seed is independent; with workers > 1 they run in a thread pool
	and every result lands in the slot of its seed.

	Args:
		grid: voxel occupancy
		seed_points: Nx3 seed coordinates
		settings: growth setting overrides
		workers: number of worker threads
		verbose: Print progress

	Returns:
		List of growth result dicts, one per seed, in seed order
	"""
	seed_points = numpy.asarray(seed_points, dtype=float).reshape(-1, 3)
	settings = growth.merge_settings(settings)
	results = [None] * len(seed_points)

	def run_one(index: int) -> None:
		overrides = dict(settings)
		if settings['random_seed'] is not None:
			# distinct but reproducible stream per seed
			overrides['random_seed'] = settings['random_seed'] + index
		results[index] = growth.optimise_ellipsoid(grid, seed_points[index], overrides)

	if workers <= 1:
		for index in range(len(seed_points)):
			run_one(index)
	else:
		with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
			futures = [executor.submit(run_one, i) for i in range(len(seed_points))]
			for future in concurrent.futures.as_completed(futures):
				future.result()

	if verbose:
		found = len([r for r in results if r['ellipsoid'] is not None])
		print(f"  Grew {found}/{len(results)} ellipsoids")
	return results


#============================================
def _bounding_box(ellipsoid, spacing: numpy.ndarray, shape_zyx: tuple) -> tuple:
	"""Voxel index ranges (x, y, z) that can hold centres inside the ellipsoid."""
	# half extent along each world axis
	half = numpy.sqrt(numpy.sum((ellipsoid.orientation * ellipsoid.radii) ** 2, axis=1))
	low = numpy.floor((ellipsoid.centre - half) / spacing - 0.5).astype(int)
	high = numpy.ceil((ellipsoid.centre + half) / spacing - 0.5).astype(int) + 1
	limits = (shape_zyx[2], shape_zyx[1], shape_zyx[0])
	return tuple(
		(max(int(lo), 0), min(int(hi), limit))
		for lo, hi, limit in zip(low, high, limits)
	)


#============================================
def assign_ellipsoid_factor(mask, ellipsoids, spacing=(1.0, 1.0, 1.0)) -> dict:
	"""
	Give every foreground voxel the EF of the largest ellipsoid containing it.

	Args:
		mask: 3D boolean array indexed [z, y, x]
		ellipsoids: list of Ellipsoid or None
		spacing: voxel size (x, y, z)

	Returns:
		Dict with 'id_map' (index into `ellipsoids`, -1 where unassigned),
		'ef_map' (NaN where unassigned), 'volume_map' and
		'filling_fraction' (assigned / foreground voxels)
	"""
	mask = numpy.asarray(mask) > 0
	spacing = numpy.asarray(spacing, dtype=float)
	id_map = numpy.full(mask.shape, -1, dtype=int)
	ef_map = numpy.full(mask.shape, numpy.nan)
	volume_map = numpy.full(mask.shape, numpy.nan)

	indexed = [(i, e) for i, e in enumerate(ellipsoids) if e is not None]
	# largest first, so a voxel keeps the first ellipsoid that claims it
	indexed.sort(key=lambda item: item[1].volume(), reverse=True)

	for index, ellipsoid in indexed:
		(x0, x1), (y0, y1), (z0, z1) = _bounding_box(ellipsoid, spacing, mask.shape)
		if x0 >= x1 or y0 >= y1 or z0 >= z1:
			continue
		zz, yy, xx = numpy.mgrid[z0:z1, y0:y1, x0:x1]
		centres = (numpy.column_stack([xx.ravel(), yy.ravel(), zz.ravel()]) + 0.5) * spacing
		inside = ellipsoid.contains(centres).reshape(xx.shape)
		free = inside & mask[z0:z1, y0:y1, x0:x1] & (id_map[z0:z1, y0:y1, x0:x1] < 0)
		id_map[z0:z1, y0:y1, x0:x1][free] = index
		ef_map[z0:z1, y0:y1, x0:x1][free] = ellipsoid.ellipsoid_factor()
		volume_map[z0:z1, y0:y1, x0:x1][free] = ellipsoid.volume()

	foreground = int(numpy.count_nonzero(mask))
	assigned = int(numpy.count_nonzero(id_map >= 0))
	filling = assigned / foreground if foreground > 0 else 0.0
	return {
		'id_map': id_map,
		'ef_map': ef_map,
		'volume_map': volume_map,
		'filling_fraction': filling,
	}


#============================================
def _ellipsoid_record(index: int, seed, result: dict) -> dict:
	record = {
		'index': index,
		'seed': [float(v) for v in seed],
		'state': result['state'],
		'iterations': result['iterations'],
	}
	ellipsoid = result['ellipsoid']
	if ellipsoid is None:
		record['error'] = result['reason'] or 'no ellipsoid'
		return record
	record.update({
		'centre': ellipsoid.centre.tolist(),
		'radii': ellipsoid.radii.tolist(),
		'orientation': ellipsoid.orientation.tolist(),
		'volume': ellipsoid.volume(),
		'ellipsoid_factor': ellipsoid.ellipsoid_factor(),
		'contact_count': result['contact_count'],
		'reason': result['reason'],
	})
	return record


#============================================
def process_stack(
	stack_path: str,
	output_dir: str,
	spacing=(1.0, 1.0, 1.0),
	unit: str = 'pixel',
	settings: dict = None,
	skip_ratio: int = 1,
	max_seeds: int = None,
	workers: int = 1,
	verbose: bool = False,
) -> dict:
	"""
	Run the ellipsoid factor analysis on one stack.

	Args:
		stack_path: Path to a .npy stack
		output_dir: Output directory
		spacing: voxel size (x, y, z)
		unit: calibration unit for the reports
		settings: growth setting overrides
		skip_ratio: keep every n-th seed
		max_seeds: cap on the number of seeds, deepest first
		workers: worker threads for growing ellipsoids
		verbose: Print progress

	Returns:
		Dict with per-ellipsoid records and summary statistics
	"""
	stack_name = os.path.splitext(os.path.basename(stack_path))[0]

	if verbose:
		print(f"\nProcessing: {stack_name}")

	stack_output_dir = os.path.join(output_dir, stack_name)
	os.makedirs(stack_output_dir, exist_ok=True)

	try:
		mask = load_stack(stack_path)
	except ValueError as error:
		if verbose:
			print(f"  x {error}")
		return {'stack': stack_name, 'error': str(error)}

	grid = growth.VoxelGrid(mask, spacing)
	seed_points = seeds.find_seed_points(mask, spacing, skip_ratio)
	if max_seeds is not None:
		seed_points = seed_points[:max_seeds]
	if len(seed_points) == 0:
		if verbose:
			print("  x No foreground voxels")
		return {'stack': stack_name, 'error': 'No foreground voxels'}

	if verbose:
		print(f"  Found {len(seed_points)} seed points")

	results = optimise_all(grid, seed_points, settings, workers, verbose)
	ellipsoids = [r['ellipsoid'] for r in results]
	assignment = assign_ellipsoid_factor(mask, ellipsoids, spacing)
	anchors = seeds.find_anchors([e for e in ellipsoids if e is not None], mask, spacing)

	ef_values = assignment['ef_map'][numpy.isfinite(assignment['ef_map'])]
	records = [_ellipsoid_record(i, s, r) for i, (s, r) in enumerate(zip(seed_points, results))]

	results_data = {
		'stack': stack_name,
		'shape': list(mask.shape),
		'spacing': [float(v) for v in spacing],
		'unit': unit,
		'seed_count': len(seed_points),
		'ellipsoid_count': len([e for e in ellipsoids if e is not None]),
		'filling_fraction': assignment['filling_fraction'],
		'uncovered_boundary_voxels': int(len(anchors)),
		'median_ef': float(numpy.median(ef_values)) if len(ef_values) else None,
		'mean_ef': float(numpy.mean(ef_values)) if len(ef_values) else None,
		'ellipsoids': records,
	}

	results_path = os.path.join(stack_output_dir, 'results.json')
	with open(results_path, 'w') as f:
		json.dump(results_data, f, indent=2)
	numpy.save(os.path.join(stack_output_dir, 'ef_map.npy'), assignment['ef_map'])

	if verbose:
		print(f"  + Saved results: {results_path}")
		print(f"  Filling fraction: {assignment['filling_fraction']:.1%}")

	summary_path = os.path.join(stack_output_dir, 'summary.txt')
	_write_summary_text(summary_path, results_data)

	diag_filename = f'{stack_name}_diagnostic.png'
	visualizer.create_diagnostic_plot(
		mask, assignment['ef_map'], ellipsoids,
		os.path.join(stack_output_dir, diag_filename), spacing=spacing
	)
	results_data['diagnostic_file'] = diag_filename

	if verbose:
		print(f"  + Saved diagnostic: {diag_filename}")

	return results_data


#============================================
def batch_process(
	input_dir: str,
	output_dir: str,
	spacing=(1.0, 1.0, 1.0),
	unit: str = 'pixel',
	settings: dict = None,
	skip_ratio: int = 1,
	max_seeds: int = None,
	workers: int = 1,
	verbose: bool = False,
) -> dict:
	"""
	Process every .npy stack in a directory.

	Args:
		input_dir: Directory containing .npy stacks
		output_dir: Output directory
		(remaining arguments as for process_stack)

	Returns:
		Dict with aggregate statistics
	"""
	stack_files = sorted(glob.glob(os.path.join(input_dir, '*.npy')))

	if len(stack_files) == 0:
		print(f"No .npy stacks found in {input_dir}")
		return {'error': 'No .npy stacks found', 'files_processed': 0}

	if verbose:
		print(f"Found {len(stack_files)} stacks")

	os.makedirs(output_dir, exist_ok=True)

	all_results = []
	for stack_path in stack_files:
		result = process_stack(
			stack_path, output_dir, spacing, unit, settings,
			skip_ratio, max_seeds, workers, verbose
		)
		all_results.append(result)

	failed = len([r for r in all_results if 'error' in r])
	stats = {
		'files_processed': len(stack_files),
		'successful_stacks': len(stack_files) - failed,
		'failed_stacks': failed,
		'total_ellipsoids': sum(r.get('ellipsoid_count', 0) for r in all_results),
	}

	volume_label = _label('max volume', unit_header(unit, exponent_character(3)))
	report_path = os.path.join(output_dir, 'summary_report.txt')
	with open(report_path, 'w', encoding='utf-8') as f:
		f.write("Ellipsoid Factor Summary\n")
		f.write("=" * 50 + "\n\n")
		f.write(f"Files processed: {stats['files_processed']}\n")
		f.write(f"Successful: {stats['successful_stacks']}\n")
		f.write(f"Failed: {stats['failed_stacks']}\n")
		f.write(f"Total ellipsoids: {stats['total_ellipsoids']}\n\n")

		for result in all_results:
			if 'error' in result:
				f.write(f"{result['stack']}: ERROR - {result['error']}\n")
				continue
			volumes = [e['volume'] for e in result['ellipsoids'] if 'error' not in e]
			largest = max(volumes) if volumes else 0.0
			median = result['median_ef']
			median_text = 'n/a' if median is None else f"{median:.3f}"
			f.write(f"{result['stack']}: ellipsoids={result['ellipsoid_count']} "
				f"filling={result['filling_fraction']:.1%} "
				f"median EF={median_text} "
				f"{volume_label}={largest:.2f}\n")

	if verbose:
		print(f"\n+ Summary report: {report_path}")

	return stats


#============================================
def _write_summary_text(output_path: str, results_data: dict) -> None:
	"""
	Write human-readable summary for one stack.

	Args:
		output_path: Path to summary file
		results_data: Results dict
	"""
	unit = results_data['unit']
	length_header = unit_header(unit)
	volume_header = unit_header(unit, exponent_character(3))
	centre_label = _label('Centre', length_header)
	radii_label = _label('Radii', length_header)
	volume_label = _label('Volume', volume_header)
	with open(output_path, 'w', encoding='utf-8') as f:
		f.write(f"Ellipsoid Factor Results: {results_data['stack']}\n")
		f.write("=" * 60 + "\n\n")
		f.write(f"Seeds: {results_data['seed_count']}  "
			f"Ellipsoids: {results_data['ellipsoid_count']}\n")
		f.write(f"Filling fraction: {results_data['filling_fraction']:.1%}\n")
		f.write(f"Uncovered boundary voxels: {results_data['uncovered_boundary_voxels']}\n")
		if results_data['median_ef'] is not None:
			f.write(f"EF median: {results_data['median_ef']:.4f}  "
				f"mean: {results_data['mean_ef']:.4f}\n")
		f.write("\n" + "-" * 60 + "\n\n")

		for record in results_data['ellipsoids']:
			if 'error' in record:
				f.write(f"#{record['index']}: ERROR - {record['error']}\n\n")
				continue
			a, b, c = sorted(record['radii'])
			cx, cy, cz = record['centre']
			f.write(f"#{record['index']}:\n")
			f.write(f"  {centre_label}: ({cx:.3f}, {cy:.3f}, {cz:.3f})\n")
			f.write(f"  {radii_label}: a={a:.3f}  b={b:.3f}  c={c:.3f}\n")
			f.write(f"  {volume_label}: {record['volume']:.3f}\n")
			f.write(f"  EF: {record['ellipsoid_factor']:.4f}\n")
			f.write(f"  Iterations: {record['iterations']}  ({record['state']})\n\n")
