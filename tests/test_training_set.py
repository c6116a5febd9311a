import numpy as np
import pytest

from conftest import RADIUS
from pointcloud_io import ViewAngles, save_angle_data, save_pointcloud_pcd
from similarity_index import ANGLES_FILE, FEATURES_FILE, INDEX_FILE
from training_set import (
    BuildConfig, TrainingSetBuilder, build_training_set, compute_view_descriptor, demean_point_cloud
)
from vfh_errors import InvalidArgument, UnreadableSource


def test_demean_point_cloud(cube_view):
    shifted = cube_view + np.float32(5.0)
    centred, centroid = demean_point_cloud(shifted)
    assert centred.dtype == np.float32
    assert np.allclose(centred.mean(axis=0), 0, atol=1e-5)
    assert np.allclose(centroid, shifted.astype(np.float64).mean(axis=0))


def test_descriptor_ignores_translation(cube_view):
    config = BuildConfig(normal_radius=RADIUS)
    first, _ = compute_view_descriptor(cube_view, config)
    moved, _ = compute_view_descriptor(cube_view + np.float32(0.25), config)
    assert np.allclose(first, moved, atol=1.0)


def test_build_config_validation():
    with pytest.raises(InvalidArgument):
        BuildConfig(normal_radius=0)
    with pytest.raises(InvalidArgument):
        BuildConfig(n_jobs=0)
    with pytest.raises(InvalidArgument):
        BuildConfig(viewpoint=(1.0, 0.0))


def test_build_keeps_input_order(cube_view, sphere_view):
    builder = TrainingSetBuilder(BuildConfig(normal_radius=RADIUS, progress=False))
    views = [
        (sphere_view, ViewAngles(1.0, 0.2), "sphere.pcd"),
        (cube_view, ViewAngles(0.4, 0.3), "cube.pcd"),
    ]
    records, report = builder.build(views)

    assert [r.source_path for r in records] == ["sphere.pcd", "cube.pcd"]
    assert records[1].angles == ViewAngles(0.4, 0.3)
    assert records[0].descriptor.shape == (308,)
    assert not records[0].descriptor.flags.writeable
    assert report.n_views == 2
    assert report.n_points == len(cube_view) + len(sphere_view)


def test_build_is_deterministic(cube_view):
    builder = TrainingSetBuilder(BuildConfig(normal_radius=RADIUS, progress=False))
    first, _ = builder.build([(cube_view, ViewAngles(0, 0), "cube.pcd")])
    second, _ = builder.build([(cube_view.copy(), ViewAngles(0, 0), "cube.pcd")])
    assert np.array_equal(first[0].descriptor, second[0].descriptor)


def test_degenerate_points_are_reported(cube_view):
    outlier = np.array([[1.0, 1.0, 1.0]], dtype=np.float32)
    cloud = np.vstack([cube_view, outlier])
    builder = TrainingSetBuilder(BuildConfig(normal_radius=RADIUS, progress=False))

    records, report = builder.build([(cloud, ViewAngles(0, 0), "noisy.pcd")])

    assert len(records) == 1
    assert report.degenerate == {"noisy.pcd": 1}


def test_failing_view_names_its_source(cube_view):
    builder = TrainingSetBuilder(BuildConfig(normal_radius=RADIUS, progress=False))
    bad = np.zeros((4, 2), dtype=np.float32)
    with pytest.raises(UnreadableSource) as excinfo:
        builder.build([
            (cube_view, ViewAngles(0, 0), "good.pcd"),
            (bad, ViewAngles(0, 0), "bad.pcd"),
        ])
    assert excinfo.value.source == "bad.pcd"


def test_build_training_set_from_directory(tmp_path, cube_view):
    save_pointcloud_pcd(cube_view, str(tmp_path / "cube.pcd"))
    save_angle_data((0.4, 0.3), str(tmp_path / "cube.txt"))

    records, report = build_training_set(str(tmp_path), BuildConfig(normal_radius=RADIUS, progress=False))
    assert [r.source_path for r in records] == ["cube.pcd"]
    assert records[0].angles == ViewAngles(0.4, 0.3)
    assert report.n_views == 1


def test_single_point_view_aborts():
    builder = TrainingSetBuilder(BuildConfig(normal_radius=RADIUS, progress=False))
    with pytest.raises(UnreadableSource, match="no valid normals") as excinfo:
        builder.build([(np.array([[1.0, 2.0, 3.0]]), ViewAngles(0, 0), "dot.pcd")])
    assert excinfo.value.source == "dot.pcd"


def test_radius_below_point_spacing_aborts(cube_view):
    builder = TrainingSetBuilder(BuildConfig(normal_radius=1e-6, progress=False))
    with pytest.raises(UnreadableSource, match="no valid normals") as excinfo:
        builder.build([(cube_view, ViewAngles(0, 0), "sparse.pcd")])
    assert excinfo.value.source == "sparse.pcd"


def test_report_carries_mean_curvature(cube_view, sphere_view):
    builder = TrainingSetBuilder(BuildConfig(normal_radius=RADIUS, progress=False))
    _, report = builder.build([
        (cube_view, ViewAngles(0, 0), "cube.pcd"),
        (sphere_view, ViewAngles(0, 0), "sphere.pcd"),
    ])
    assert set(report.curvature) == {"cube.pcd", "sphere.pcd"}
    assert all(0 < value < 1 / 3 for value in report.curvature.values())
    assert report.mean_curvature == pytest.approx(sum(report.curvature.values()) / 2)


def test_default_artifact_names_match_persistence():
    config = BuildConfig()
    assert (config.features_file, config.angles_file, config.index_file) == (
        FEATURES_FILE, ANGLES_FILE, INDEX_FILE
    )
