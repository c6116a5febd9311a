"""
Training set construction: one VFH descriptor per object view.

Each view is demeaned, its normals are estimated over a k-d tree and its
VFH descriptor is computed. The records come back in processing order,
which is the row order of the feature matrix built from them.
"""

import logging
import time
import warnings
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from normal_estimation import MIN_NEIGHBOURS, NormalEstimate, estimate_normals
from pointcloud_io import ViewAngles, discover_views
from similarity_index import ANGLES_FILE, FEATURES_FILE, INDEX_FILE
from spatial_index import SpatialIndex
from vfh_descriptor import DEFAULT_VIEWPOINT, VFH_LAYOUT, DescriptorLayout, compute_vfh
from vfh_errors import (
    DegenerateNeighborhood, InvalidArgument, SourceError, UnreadableSource, VFHSearchError
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildConfig:
    """Parameters shared by every view of one run."""
    normal_radius: float = 0.005
    viewpoint: Tuple[float, float, float] = DEFAULT_VIEWPOINT
    n_jobs: int = 1
    layout: DescriptorLayout = VFH_LAYOUT
    features_file: str = FEATURES_FILE
    angles_file: str = ANGLES_FILE
    index_file: str = INDEX_FILE
    progress: bool = True

    def __post_init__(self):
        if not self.normal_radius > 0:
            raise InvalidArgument(f"normal radius must be positive, got {self.normal_radius}")
        if self.n_jobs < 1:
            raise InvalidArgument(f"n_jobs must be at least 1, got {self.n_jobs}")
        if len(self.viewpoint) != 3:
            raise InvalidArgument(f"viewpoint must have 3 coordinates, got {self.viewpoint}")


@dataclass(frozen=True, eq=False)
class TrainingRecord:
    angles: ViewAngles
    source_path: str
    descriptor: np.ndarray = field(repr=False)


@dataclass
class BuildReport:
    """Summary of a training set build."""
    n_views: int = 0
    n_points: int = 0
    degenerate: Dict[str, int] = field(default_factory=dict)
    curvature: Dict[str, float] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def n_degenerate(self) -> int:
        return sum(self.degenerate.values())

    @property
    def mean_curvature(self) -> float:
        """Average of the per-view mean surface variation."""
        return sum(self.curvature.values()) / len(self.curvature) if self.curvature else 0.0


def demean_point_cloud(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Move a point cloud so its centroid is at the origin.

    Returns:
    --------
    centred : np.ndarray
        Nx3 float32 copy of the cloud with the centroid subtracted
    centroid : np.ndarray
        The subtracted centroid (float64)
    """
    points = np.asarray(points)
    centroid = points.astype(np.float64).mean(axis=0)
    centred = (points.astype(np.float64) - centroid).astype(np.float32)
    return centred, centroid


def compute_view_descriptor(
    points: np.ndarray,
    config: BuildConfig = BuildConfig()
) -> Tuple[np.ndarray, NormalEstimate]:
    """
    Demean one view and compute its VFH descriptor.

    Returns the descriptor together with the normal estimate it was built
    from.
    """
    centred, _ = demean_point_cloud(points)
    tree = SpatialIndex(centred)
    estimate = estimate_normals(centred, config.normal_radius, tree=tree, n_jobs=config.n_jobs)

    if estimate.n_degenerate == len(centred):
        raise InvalidArgument(
            f"no valid normals, no point has {MIN_NEIGHBOURS} neighbours within radius {config.normal_radius} "
            f"(mean point spacing {tree.mean_spacing():.6g})"
        )

    descriptor = compute_vfh(
        centred, estimate.normals,
        viewpoint=config.viewpoint,
        degenerate=estimate.degenerate,
        layout=config.layout
    )
    return descriptor, estimate


class TrainingSetBuilder:
    """
    Turns (points, angles, source) triples into TrainingRecords.

    The first failing view aborts the build; the error names the source.
    """

    def __init__(self, config: Optional[BuildConfig] = None):
        self.config = config or BuildConfig()

    def build_record(
        self,
        points: np.ndarray,
        angles: ViewAngles,
        source: str
    ) -> Tuple[TrainingRecord, NormalEstimate]:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", DegenerateNeighborhood)
            try:
                descriptor, estimate = compute_view_descriptor(points, self.config)
            except SourceError:
                raise
            except (VFHSearchError, ValueError, np.linalg.LinAlgError) as e:
                raise UnreadableSource(source, f"descriptor computation failed ({e})") from e

        for w in caught:
            if issubclass(w.category, DegenerateNeighborhood):
                logger.warning(f"{source}: {w.message}")
            else:
                warnings.warn_explicit(w.message, w.category, w.filename, w.lineno)

        descriptor.setflags(write=False)
        record = TrainingRecord(
            angles=ViewAngles(float(angles[0]), float(angles[1])),
            source_path=str(source),
            descriptor=descriptor
        )
        return record, estimate

    def build(
        self,
        views: Iterable[Tuple[np.ndarray, ViewAngles, str]]
    ) -> Tuple[List[TrainingRecord], BuildReport]:
        """
        Compute one TrainingRecord per view, in input order.

        Parameters:
        -----------
        views : iterable
            (points, angles, source) triples, e.g. from discover_views()

        Returns:
        --------
        records : list of TrainingRecord
            One record per view in processing order
        report : BuildReport
            View and point counts, degenerate-neighbourhood tallies and
            per-view mean curvature
        """
        start = time.perf_counter()
        records = []
        report = BuildReport()

        for points, angles, source in tqdm(views, desc="Computing VFH", unit="view",
                                           disable=not self.config.progress):
            record, estimate = self.build_record(points, angles, source)
            records.append(record)
            report.n_views += 1
            report.n_points += len(points)
            report.curvature[record.source_path] = estimate.mean_curvature
            if estimate.n_degenerate:
                report.degenerate[record.source_path] = estimate.n_degenerate
            logger.debug(f"Processed: {source} ({len(points)} points)")

        report.elapsed = time.perf_counter() - start
        logger.info(f"Computed {report.n_views} descriptors in {report.elapsed:.2f}s")
        return records, report


def build_training_set(
    data_dir: str,
    config: Optional[BuildConfig] = None
) -> Tuple[List[TrainingRecord], BuildReport]:
    """Discover the views in `data_dir` and compute their training records."""
    logger.info(f"Scanning views in: {data_dir}")
    return TrainingSetBuilder(config).build(discover_views(data_dir))
