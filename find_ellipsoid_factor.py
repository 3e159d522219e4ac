#!/usr/bin/env python3

"""
Measure the ellipsoid factor of binary 3D stacks.

Grows maximal inscribed ellipsoids from seed points and maps every
foreground voxel to the shape (disc to rod) of the largest one that
contains it.
"""

import sys
import os
import argparse

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ellipsoid_factor import pipeline


def parse_args(argv=None):
	"""Parse command-line arguments."""
	parser = argparse.ArgumentParser(
		description="Ellipsoid factor analysis of binary .npy stacks",
		formatter_class=argparse.RawDescriptionHelpFormatter,
		epilog="""
Examples:
  %(prog)s -i stacks/ -o output/
  %(prog)s -i stacks/trabeculae.npy -o output/ --spacing 0.5 0.5 1.0 --unit mm -v
  %(prog)s -i stacks/ -o output/ --vectors 200 --workers 4 --seed 7
		"""
	)

	parser.add_argument(
		'-i', '--input',
		dest='input_path',
		default='stacks/',
		help='Input .npy stack or directory (default: stacks/)'
	)

	parser.add_argument(
		'-o', '--output',
		dest='output_dir',
		default='output/',
		help='Output directory for results (default: output/)'
	)

	parser.add_argument(
		'--spacing',
		dest='spacing',
		type=float,
		nargs=3,
		metavar=('X', 'Y', 'Z'),
		default=[1.0, 1.0, 1.0],
		help='Voxel size in x, y and z (default: 1 1 1)'
	)

	parser.add_argument(
		'--unit',
		dest='unit',
		default='pixel',
		help='Calibration unit for reports (default: pixel)'
	)

	parser.add_argument(
		'--vectors',
		dest='n_vectors',
		type=int,
		default=100,
		help='Search directions per ellipsoid (default: 100)'
	)

	parser.add_argument(
		'--iterations',
		dest='max_iterations',
		type=int,
		default=100,
		help='Iterations without improvement before stopping (default: 100)'
	)

	parser.add_argument(
		'--skip-ratio',
		dest='skip_ratio',
		type=int,
		default=1,
		help='Use every n-th seed point (default: 1)'
	)

	parser.add_argument(
		'--max-seeds',
		dest='max_seeds',
		type=int,
		default=None,
		help='Maximum number of seed points per stack (default: all)'
	)

	parser.add_argument(
		'--workers',
		dest='workers',
		type=int,
		default=1,
		help='Worker threads for growing ellipsoids (default: 1)'
	)

	parser.add_argument(
		'--seed',
		dest='random_seed',
		type=int,
		default=None,
		help='Random seed for reproducible runs'
	)

	parser.add_argument(
		'-v', '--verbose',
		dest='verbose',
		action='store_true',
		help='Verbose output'
	)

	return parser.parse_args(argv)


def main(argv=None):
	"""Main entry point."""
	args = parse_args(argv)

	# Validate input path
	if not os.path.exists(args.input_path):
		print(f"Error: Input path does not exist: {args.input_path}", file=sys.stderr)
		return 1

	if any(v <= 0 for v in args.spacing):
		print(f"Error: Voxel spacing must be positive: {args.spacing}", file=sys.stderr)
		return 1

	# Create output directory
	os.makedirs(args.output_dir, exist_ok=True)

	settings = {
		'n_vectors': args.n_vectors,
		'max_iterations': args.max_iterations,
		'random_seed': args.random_seed,
	}
	options = dict(
		spacing=tuple(args.spacing),
		unit=args.unit,
		settings=settings,
		skip_ratio=args.skip_ratio,
		max_seeds=args.max_seeds,
		workers=args.workers,
		verbose=args.verbose,
	)

	# Determine if input is file or directory
	if os.path.isfile(args.input_path):
		# Process single file
		if args.verbose:
			print(f"Processing single file: {args.input_path}")

		result = pipeline.process_stack(args.input_path, args.output_dir, **options)

		if 'error' in result:
			print(f"\nError: {result['error']}", file=sys.stderr)
			return 1

		# Print summary
		print(f"\nProcessed: {result['stack']}")
		print(f"Ellipsoids: {result['ellipsoid_count']}/{result['seed_count']}")
		print(f"Filling fraction: {result['filling_fraction']:.1%}")
		if result['median_ef'] is not None:
			print(f"Median EF: {result['median_ef']:.3f}")

	elif os.path.isdir(args.input_path):
		# Process directory
		if args.verbose:
			print(f"Processing directory: {args.input_path}")

		stats = pipeline.batch_process(args.input_path, args.output_dir, **options)

		if 'error' in stats:
			print(f"\nError: {stats['error']}", file=sys.stderr)
			return 1

		# Print summary
		print("\n" + "=" * 60)
		print("SUMMARY")
		print("=" * 60)
		print(f"Files processed: {stats['files_processed']}")
		print(f"Successful: {stats['successful_stacks']}")
		print(f"Failed: {stats['failed_stacks']}")
		print(f"Total ellipsoids: {stats['total_ellipsoids']}")
		print(f"\nResults saved to: {args.output_dir}")

	else:
		print(f"Error: Input path is neither file nor directory: {args.input_path}", file=sys.stderr)
		return 1

	return 0


if __name__ == '__main__':
	sys.exit(main())
