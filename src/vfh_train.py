"""
Build a VFH view library from a directory of object views.

For every `<name>.pcd` / `<name>.ply` in the data directory (with angle file
`<name>.txt`), a 308-bin VFH descriptor is computed. The descriptors, their
angles and a chi-square nearest-neighbour index are saved to the output
directory:

    training_features.h5    training_angles.list    training_kdtree.idx

Usage:
    vfh-train -d views/ [-o out/] [-r 0.005] [--viewpoint 1 0 0]
"""

import argparse
import logging
import sys
from typing import List, Optional

from logging_config import setup_logging
from similarity_index import save_training_data
from training_set import BuildConfig, BuildReport, build_training_set
from vfh_descriptor import DEFAULT_VIEWPOINT, VFH_LAYOUT
from vfh_errors import VFHSearchError

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="vfh-train",
        description="Compute VFH descriptors for a directory of object views and build a search index."
    )
    parser.add_argument("-d", "--data-dir", required=True,
                        help="directory holding .pcd/.ply views and their .txt angle files")
    parser.add_argument("-o", "--output-dir", default=".",
                        help="directory receiving the feature, angle and index files (default: .)")
    parser.add_argument("-r", "--radius", type=float, default=BuildConfig.normal_radius,
                        help="normal estimation radius (default: %(default)s)")
    parser.add_argument("--viewpoint", type=float, nargs=3, metavar=("X", "Y", "Z"),
                        default=list(DEFAULT_VIEWPOINT),
                        help="sensor viewpoint used by the descriptor (default: 1 0 0)")
    parser.add_argument("-j", "--jobs", type=int, default=1,
                        help="worker threads for normal estimation (default: 1)")
    parser.add_argument("--no-progress", action="store_true", help="hide the progress bar")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--log-file", default=None, help="also write the log to this file")
    return parser.parse_args(argv)


def print_build_summary(report: BuildReport, paths: dict):
    """Print a formatted summary of a training run."""
    print(f"\n{'='*60}")
    print("VFH TRAINING SUMMARY")
    print(f"{'='*60}")
    print(f"  Views processed:      {report.n_views:,}")
    print(f"  Points processed:     {report.n_points:,}")
    print(f"  Descriptor layout:    {VFH_LAYOUT.describe()} ({VFH_LAYOUT.size} bins)")
    print(f"  Mean curvature:       {report.mean_curvature:.4f}")
    print(f"  Elapsed:              {report.elapsed:.2f}s")

    if report.degenerate:
        print(f"\n  Degenerate neighbourhoods: {report.n_degenerate:,} points in {len(report.degenerate)} views")
        for source, count in report.degenerate.items():
            print(f"    - {source}: {count:,}")

    print("\n  Output:")
    print(f"    - Features: {paths['features']}")
    print(f"    - Angles:   {paths['angles']}")
    print(f"    - Index:    {paths['index']}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    try:
        config = BuildConfig(
            normal_radius=args.radius,
            viewpoint=tuple(args.viewpoint),
            n_jobs=args.jobs,
            progress=not args.no_progress
        )
        records, report = build_training_set(args.data_dir, config)
        paths = save_training_data(
            records,
            args.output_dir,
            features_file=config.features_file,
            angles_file=config.angles_file,
            index_file=config.index_file,
            layout=config.layout
        )
    except VFHSearchError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    print_build_summary(report, paths)
    return 0


if __name__ == "__main__":
    sys.exit(main())
