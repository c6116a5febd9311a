import os

import h5py
import numpy as np
import pytest

import similarity_index
from pointcloud_io import ViewAngles
from similarity_index import (
    SimilarityIndex, chi_square_distance, chi_square_distances, format_metadata_line,
    load_metadata, load_training_data, save_training_data
)
from training_set import TrainingRecord
from vfh_descriptor import HIST_LENGTH
from vfh_errors import (
    EmptyInput, EmptyTrainingSet, IndexBuildFailure, InvalidArgument, PersistenceFailure
)


def random_histograms(n_rows, seed=0):
    rng = np.random.default_rng(seed)
    matrix = rng.uniform(0, 1, (n_rows, HIST_LENGTH)).astype(np.float32)
    return matrix * np.float32(100.0) / matrix.sum(axis=1, keepdims=True)


def make_records(n_rows, seed=0):
    matrix = random_histograms(n_rows, seed)
    return [
        TrainingRecord(ViewAngles(0.1 * i, -0.2 * i), f"view_{i:03d}.pcd", matrix[i])
        for i in range(n_rows)
    ]


# =============================================================================
# DISTANCE
# =============================================================================

def test_chi_square_identity_and_symmetry():
    a, b = random_histograms(2)
    assert chi_square_distance(a, a) == 0.0
    assert chi_square_distance(a, b) == pytest.approx(chi_square_distance(b, a))
    assert chi_square_distance(a, b) > 0


def test_chi_square_known_value():
    # Bins 0 and 1 each contribute 1, bin 2 is equal, bin 3 is empty in both
    assert chi_square_distance([1, 0, 1, 0], [0, 1, 1, 0]) == pytest.approx(2.0)


def test_chi_square_rejects_shape_mismatch():
    with pytest.raises(InvalidArgument):
        chi_square_distance(np.zeros(3), np.zeros(4))


def test_vectorised_distances_match_scalar():
    matrix = random_histograms(5)
    query = random_histograms(1, seed=3)[0]
    expected = [chi_square_distance(row, query) for row in matrix]
    assert np.allclose(chi_square_distances(matrix, query), expected)


# =============================================================================
# INDEX
# =============================================================================

def test_build_over_zero_rows_fails():
    with pytest.raises(EmptyInput):
        SimilarityIndex.build(np.empty((0, HIST_LENGTH)))


def test_build_rejects_bad_matrices():
    with pytest.raises(IndexBuildFailure):
        SimilarityIndex.build(np.ones((3, 300)))
    negative = random_histograms(3)
    negative[1, 5] = -1
    with pytest.raises(IndexBuildFailure):
        SimilarityIndex.build(negative)
    with pytest.raises(IndexBuildFailure):
        SimilarityIndex.build(random_histograms(3), metric='cosine')


def test_query_returns_self_first():
    matrix = random_histograms(6)
    index = SimilarityIndex.build(matrix)
    results = index.query(matrix[4], k=3)
    assert results[0] == (4, 0.0)
    distances = [d for _, d in results]
    assert distances == sorted(distances)
    assert len(index.query(matrix[0], k=50)) == 6


def test_query_ties_are_broken_by_row():
    matrix = random_histograms(2)
    duplicated = np.vstack([matrix[1], matrix[0], matrix[1], matrix[0]])
    index = SimilarityIndex.build(duplicated)
    assert [row for row, _ in index.query(matrix[0], k=4)] == [1, 3, 0, 2]


def test_query_rejects_bad_input():
    index = SimilarityIndex.build(random_histograms(2))
    with pytest.raises(InvalidArgument):
        index.query(np.zeros(10))
    with pytest.raises(InvalidArgument):
        index.query(np.zeros(HIST_LENGTH), k=0)


def test_index_blob_round_trip(tmp_path):
    matrix = random_histograms(4)
    index = SimilarityIndex.build(matrix)
    path = str(tmp_path / "index.idx")
    index.save(path)

    with h5py.File(path, "r") as f:
        assert f.attrs["algorithm"] == "linear"
        assert f.attrs["metric"] == "chi_square"
        assert int(f.attrs["n_rows"]) == 4

    reloaded = SimilarityIndex.load(path, matrix)
    assert reloaded.query(matrix[2], k=4) == index.query(matrix[2], k=4)

    with pytest.raises(IndexBuildFailure):
        SimilarityIndex.load(path, random_histograms(4, seed=9))


# =============================================================================
# PERSISTENCE
# =============================================================================

def test_metadata_line_format():
    assert format_metadata_line(ViewAngles(0.0, 0.0), "cube.pcd") == "0.0 0.0 cube.pcd"
    assert format_metadata_line(ViewAngles(0.5, -1.25), "a b.ply") == "0.5 -1.25 a b.ply"


def test_save_training_data_writes_aligned_artifacts(tmp_path):
    records = make_records(3)
    paths = save_training_data(records, str(tmp_path))

    assert sorted(os.listdir(tmp_path)) == sorted(
        ["training_features.h5", "training_angles.list", "training_kdtree.idx"]
    )
    with h5py.File(paths["features"], "r") as f:
        features = f["training_data"][...]
    assert features.shape == (3, HIST_LENGTH)
    assert features.dtype == np.float32
    for i, record in enumerate(records):
        assert np.array_equal(features[i], record.descriptor)

    metadata = load_metadata(paths["angles"])
    assert [source for _, source in metadata] == [r.source_path for r in records]
    assert [angles for angles, _ in metadata] == [r.angles for r in records]


def test_load_training_data_and_nearest_views(tmp_path):
    records = make_records(4)
    save_training_data(records, str(tmp_path))

    data = load_training_data(str(tmp_path))
    assert data.features.shape == (4, HIST_LENGTH)
    angles, source, distance = data.nearest_views(records[2].descriptor, k=1)[0]
    assert source == "view_002.pcd"
    assert angles == records[2].angles
    assert distance == 0.0


def test_empty_training_set_writes_nothing(tmp_path):
    with pytest.raises(EmptyTrainingSet):
        save_training_data([], str(tmp_path))
    assert os.listdir(tmp_path) == []


def test_write_failure_leaves_no_artifacts(tmp_path, monkeypatch):
    def failing_write(records, path):
        raise OSError("disk full")

    monkeypatch.setattr(similarity_index, "_write_metadata", failing_write)
    with pytest.raises(PersistenceFailure) as excinfo:
        save_training_data(make_records(2), str(tmp_path))

    assert "disk full" in str(excinfo.value)
    assert os.listdir(tmp_path) == []


def test_failed_publish_removes_earlier_files(tmp_path, monkeypatch):
    real_replace = os.replace
    calls = []

    def flaky_replace(src, dst):
        calls.append(dst)
        if len(calls) == 2:
            raise OSError("rename failed")
        real_replace(src, dst)

    monkeypatch.setattr(similarity_index.os, "replace", flaky_replace)
    with pytest.raises(PersistenceFailure):
        save_training_data(make_records(2), str(tmp_path))
    assert os.listdir(tmp_path) == []
