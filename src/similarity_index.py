"""
Chi-square similarity index over VFH descriptors and its on-disk form.

A training run persists three row-aligned artifacts:

- training_features.h5   HDF5 dataset 'training_data', float32, rows x 308
- training_angles.list   one 'theta phi sourcePath' line per row
- training_kdtree.idx    HDF5 blob describing the search index

The index is a linear (exhaustive) index: it is rebuilt deterministically
from the feature matrix, and the blob records the metric, layout and a
digest of the matrix it was built over so a mismatching feature file is
refused on load.
"""

import hashlib
import logging
import os
import shutil
import tempfile
from typing import Callable, Dict, List, NamedTuple, Sequence, Tuple

import h5py
import numpy as np

from pointcloud_io import ViewAngles
from vfh_descriptor import VFH_LAYOUT, DescriptorLayout
from vfh_errors import (
    EmptyInput, EmptyTrainingSet, IndexBuildFailure, InvalidArgument,
    PersistenceFailure, UnreadableSource
)

logger = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = 1
FEATURES_DATASET = "training_data"

FEATURES_FILE = "training_features.h5"
ANGLES_FILE = "training_angles.list"
INDEX_FILE = "training_kdtree.idx"


# =============================================================================
# DISTANCE METRICS
# =============================================================================

def chi_square_distance(hist1: np.ndarray, hist2: np.ndarray) -> float:
    """
    Chi-square distance between two histograms.

    Sum over bins with h1 + h2 > 0 of (h1 - h2)^2 / (h1 + h2). Zero for
    identical histograms and symmetric in its arguments.
    """
    h1 = np.asarray(hist1, dtype=np.float64)
    h2 = np.asarray(hist2, dtype=np.float64)
    if h1.shape != h2.shape:
        raise InvalidArgument(f"histogram shapes differ: {h1.shape} vs {h2.shape}")
    total = h1 + h2
    nonzero = total > 0
    return float(np.sum((h1[nonzero] - h2[nonzero]) ** 2 / total[nonzero]))


def chi_square_distances(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Chi-square distance from `vector` to every row of `matrix`."""
    matrix = np.asarray(matrix, dtype=np.float64)
    vector = np.asarray(vector, dtype=np.float64)
    total = matrix + vector
    diff_sq = (matrix - vector) ** 2
    terms = np.divide(diff_sq, total, out=np.zeros_like(total), where=total > 0)
    return terms.sum(axis=1)


def euclidean_distances(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=np.float64)
    return np.linalg.norm(matrix - np.asarray(vector, dtype=np.float64), axis=1)


DISTANCE_METRICS: Dict[str, Callable[[np.ndarray, np.ndarray], np.ndarray]] = {
    'chi_square': chi_square_distances,
    'euclidean': euclidean_distances,
}


# =============================================================================
# FEATURE MATRIX
# =============================================================================

def build_feature_matrix(records: Sequence, layout: DescriptorLayout = VFH_LAYOUT) -> np.ndarray:
    """
    Stack record descriptors into a rows x bins float32 matrix.

    Row i is records[i].descriptor.
    """
    if len(records) == 0:
        raise EmptyTrainingSet("no training records reached the indexing stage")
    matrix = np.empty((len(records), layout.size), dtype=np.float32)
    for i, record in enumerate(records):
        descriptor = np.asarray(record.descriptor, dtype=np.float32)
        if descriptor.shape != (layout.size,):
            raise IndexBuildFailure(
                f"{record.source_path}: descriptor has shape {descriptor.shape}, expected ({layout.size},)"
            )
        matrix[i] = descriptor
    return matrix


def feature_digest(matrix: np.ndarray) -> str:
    """SHA-256 over the shape and float32 contents of a feature matrix."""
    data = np.ascontiguousarray(matrix, dtype=np.float32)
    h = hashlib.sha256()
    h.update(np.asarray(data.shape, dtype=np.int64).tobytes())
    h.update(data.tobytes())
    return h.hexdigest()


# =============================================================================
# INDEX
# =============================================================================

class SimilarityIndex:
    """
    Exhaustive nearest-neighbour index under a histogram distance.

    Queries return (row, distance) pairs in increasing distance, ties broken
    by row, so results are reproducible across rebuilds.
    """

    algorithm = 'linear'

    def __init__(self, matrix: np.ndarray, metric: str, layout: DescriptorLayout):
        self._matrix = matrix
        self.metric = metric
        self.layout = layout
        self.digest = feature_digest(matrix)
        self._distance = DISTANCE_METRICS[metric]

    @property
    def n_rows(self) -> int:
        return self._matrix.shape[0]

    @property
    def n_cols(self) -> int:
        return self._matrix.shape[1]

    @classmethod
    def build(
        cls,
        matrix: np.ndarray,
        metric: str = 'chi_square',
        layout: DescriptorLayout = VFH_LAYOUT
    ) -> "SimilarityIndex":
        """
        Build an index over a feature matrix.

        Parameters:
        -----------
        matrix : np.ndarray
            rows x layout.size matrix of non-negative histograms
        metric : str
            Key of DISTANCE_METRICS
        layout : DescriptorLayout
            Bin layout the rows were computed with

        Returns:
        --------
        index : SimilarityIndex
        """
        if metric not in DISTANCE_METRICS:
            raise IndexBuildFailure(f"unknown distance metric '{metric}'")
        matrix = np.array(matrix, dtype=np.float32)
        if matrix.ndim != 2:
            raise IndexBuildFailure(f"feature matrix must be 2D, got shape {matrix.shape}")
        if matrix.shape[0] == 0:
            raise EmptyInput("cannot build an index over zero rows")
        if matrix.shape[1] != layout.size:
            raise IndexBuildFailure(f"feature matrix has {matrix.shape[1]} columns, layout needs {layout.size}")
        if not np.all(np.isfinite(matrix)):
            raise IndexBuildFailure("feature matrix contains non-finite values")
        if metric == 'chi_square' and np.any(matrix < 0):
            raise IndexBuildFailure("chi-square distance requires non-negative histograms")

        matrix.setflags(write=False)
        logger.info(f"Building {cls.algorithm} {metric} index for {matrix.shape[0]} elements")
        return cls(matrix, metric, layout)

    def query(self, vector: np.ndarray, k: int = 1) -> List[Tuple[int, float]]:
        """The `k` rows closest to `vector` as (row, distance) pairs."""
        vector = np.asarray(vector, dtype=np.float32)
        if vector.shape != (self.n_cols,):
            raise InvalidArgument(f"query must have {self.n_cols} bins, got shape {vector.shape}")
        if k <= 0:
            raise InvalidArgument(f"k must be positive, got {k}")

        distances = self._distance(self._matrix, vector)
        rows = np.arange(self.n_rows)
        order = np.lexsort((rows, distances))[:k]
        return [(int(r), float(distances[r])) for r in order]

    def save(self, path: str):
        """Write the index blob to `path`."""
        try:
            with h5py.File(path, "w") as f:
                f.attrs["format_version"] = INDEX_FORMAT_VERSION
                f.attrs["algorithm"] = self.algorithm
                f.attrs["metric"] = self.metric
                f.attrs["layout"] = self.layout.describe()
                f.attrs["n_rows"] = self.n_rows
                f.attrs["n_cols"] = self.n_cols
                f.attrs["feature_digest"] = self.digest
        except OSError as e:
            raise PersistenceFailure(path, f"could not write index ({e})", e) from e

    @classmethod
    def load(cls, path: str, matrix: np.ndarray, layout: DescriptorLayout = VFH_LAYOUT) -> "SimilarityIndex":
        """
        Re-open a saved index over the feature matrix it was built from.

        The matrix must be the one the index was saved with (same shape and
        digest); a mismatch raises IndexBuildFailure.
        """
        if not os.path.isfile(path) or not h5py.is_hdf5(path):
            raise UnreadableSource(path, "not an HDF5 index file")
        try:
            with h5py.File(path, "r") as f:
                attrs = dict(f.attrs)
        except OSError as e:
            raise UnreadableSource(path, f"could not read index ({e})") from e

        if int(attrs.get("format_version", -1)) != INDEX_FORMAT_VERSION:
            raise UnreadableSource(path, f"unsupported index format version {attrs.get('format_version')}")
        if attrs.get("algorithm") != cls.algorithm:
            raise UnreadableSource(path, f"unsupported index algorithm '{attrs.get('algorithm')}'")
        if attrs.get("layout") != layout.describe():
            raise IndexBuildFailure(f"index layout {attrs.get('layout')} differs from {layout.describe()}")

        index = cls.build(matrix, metric=str(attrs.get("metric")), layout=layout)
        if index.digest != attrs.get("feature_digest"):
            raise IndexBuildFailure(f"{path}: index was built over a different feature matrix")
        return index


# =============================================================================
# PERSISTENCE
# =============================================================================

class TrainingData(NamedTuple):
    features: np.ndarray
    metadata: List[Tuple[ViewAngles, str]]
    index: SimilarityIndex

    def nearest_views(self, descriptor: np.ndarray, k: int = 1) -> List[Tuple[ViewAngles, str, float]]:
        """(angles, source, distance) of the `k` training views closest to `descriptor`."""
        return [(*self.metadata[row], dist) for row, dist in self.index.query(descriptor, k)]


def format_metadata_line(angles: ViewAngles, source_path: str) -> str:
    return f"{float(angles[0])!r} {float(angles[1])!r} {source_path}"


def _write_features(matrix: np.ndarray, path: str, layout: DescriptorLayout):
    with h5py.File(path, "w") as f:
        dset = f.create_dataset(FEATURES_DATASET, data=matrix, dtype=np.float32)
        dset.attrs["layout"] = layout.describe()


def _write_metadata(records: Sequence, path: str):
    with open(path, "w") as f:
        for record in records:
            f.write(format_metadata_line(record.angles, record.source_path) + "\n")


def _verify_written(tmp_dir: str, names: Dict[str, str], n_rows: int, n_cols: int):
    # Detect short or partial writes before anything is published
    with h5py.File(os.path.join(tmp_dir, names["features"]), "r") as f:
        shape = f[FEATURES_DATASET].shape
    if shape != (n_rows, n_cols):
        raise OSError(f"feature file holds shape {shape}, expected {(n_rows, n_cols)}")
    with open(os.path.join(tmp_dir, names["angles"]), "r") as f:
        n_lines = sum(1 for _ in f)
    if n_lines != n_rows:
        raise OSError(f"angle file holds {n_lines} lines, expected {n_rows}")


def save_training_data(
    records: Sequence,
    output_dir: str = ".",
    features_file: str = FEATURES_FILE,
    angles_file: str = ANGLES_FILE,
    index_file: str = INDEX_FILE,
    metric: str = 'chi_square',
    layout: DescriptorLayout = VFH_LAYOUT
) -> Dict[str, str]:
    """
    Build the index over `records` and persist all three artifacts.

    Everything is written into a temporary directory inside `output_dir`,
    checked, and only then moved into place. On failure no artifact of
    this run is left behind.

    Parameters:
    -----------
    records : sequence of TrainingRecord
        Records in row order
    output_dir : str
        Directory receiving the artifacts
    features_file, angles_file, index_file : str
        Artifact file names
    metric : str
        Distance metric of the index

    Returns:
    --------
    paths : dict
        Published paths keyed by 'features', 'angles' and 'index'
    """
    # Validate before any write
    matrix = build_feature_matrix(records, layout)
    index = SimilarityIndex.build(matrix, metric=metric, layout=layout)

    names = {"features": features_file, "angles": angles_file, "index": index_file}
    final_paths = {key: os.path.join(output_dir, name) for key, name in names.items()}

    try:
        os.makedirs(output_dir, exist_ok=True)
        tmp_dir = tempfile.mkdtemp(prefix=".vfh-train-", dir=output_dir)
    except OSError as e:
        raise PersistenceFailure(output_dir, f"could not prepare output directory ({e})", e) from e

    published = []
    try:
        _write_features(matrix, os.path.join(tmp_dir, features_file), layout)
        _write_metadata(records, os.path.join(tmp_dir, angles_file))
        index.save(os.path.join(tmp_dir, index_file))
        _verify_written(tmp_dir, names, index.n_rows, index.n_cols)

        for key, name in names.items():
            os.replace(os.path.join(tmp_dir, name), final_paths[key])
            published.append(final_paths[key])
    except (OSError, PersistenceFailure) as e:
        for path in published:
            try:
                os.remove(path)
            except OSError:
                logger.warning(f"Could not remove partially published file '{path}'")
        if isinstance(e, PersistenceFailure):
            raise
        raise PersistenceFailure(output_dir, f"writing training data failed ({e})", e) from e
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)

    logger.info(f"Saved {index.n_rows} rows to {final_paths['features']}, "
                f"{final_paths['angles']} and {final_paths['index']}")
    return final_paths


def load_metadata(path: str) -> List[Tuple[ViewAngles, str]]:
    metadata = []
    try:
        with open(path, "r") as f:
            for lineno, line in enumerate(f, 1):
                parts = line.rstrip("\n").split(" ", 2)
                if len(parts) != 3:
                    raise UnreadableSource(path, f"line {lineno} is not 'theta phi sourcePath'")
                try:
                    angles = ViewAngles(float(parts[0]), float(parts[1]))
                except ValueError:
                    raise UnreadableSource(path, f"line {lineno} has non-numeric angles") from None
                metadata.append((angles, parts[2]))
    except OSError as e:
        raise UnreadableSource(path, f"could not read metadata ({e})") from e
    return metadata


def load_features(path: str) -> np.ndarray:
    if not os.path.isfile(path) or not h5py.is_hdf5(path):
        raise UnreadableSource(path, "not an HDF5 feature file")
    try:
        with h5py.File(path, "r") as f:
            return np.asarray(f[FEATURES_DATASET][...], dtype=np.float32)
    except (OSError, KeyError) as e:
        raise UnreadableSource(path, f"could not read '{FEATURES_DATASET}' ({e})") from e


def load_training_data(
    output_dir: str = ".",
    features_file: str = FEATURES_FILE,
    angles_file: str = ANGLES_FILE,
    index_file: str = INDEX_FILE,
    layout: DescriptorLayout = VFH_LAYOUT
) -> TrainingData:
    """Reload the three artifacts of a training run and check they are row-aligned."""
    features = load_features(os.path.join(output_dir, features_file))
    metadata = load_metadata(os.path.join(output_dir, angles_file))
    if len(metadata) != len(features):
        raise UnreadableSource(
            os.path.join(output_dir, angles_file),
            f"{len(metadata)} metadata lines for {len(features)} feature rows"
        )
    index = SimilarityIndex.load(os.path.join(output_dir, index_file), features, layout)
    return TrainingData(features, metadata, index)
