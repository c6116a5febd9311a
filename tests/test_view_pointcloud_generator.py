import os

import numpy as np
import pytest

from pointcloud_io import load_angle_data, load_point_cloud
from view_pointcloud_generator import SHAPES, generate_view, generate_view_set, sample_object_surface


@pytest.mark.parametrize("shape", SHAPES)
def test_surface_normals_are_unit(shape):
    points, normals = sample_object_surface(shape, 500, size=0.1, seed=0)
    assert points.shape == normals.shape == (500, 3)
    assert np.allclose(np.linalg.norm(normals, axis=1), 1.0)
    assert np.all(np.abs(points) <= 0.05 + 1e-12)


def test_front_view_of_cube_is_one_face():
    view = generate_view('cube', 0.0, 0.0, n_points=2000, seed=0)
    assert view.dtype == np.float32
    assert np.allclose(view[:, 0], 0.05)


def test_unknown_shape():
    with pytest.raises(ValueError):
        sample_object_surface('torus', 10)


def test_generate_view_set_writes_pairs(tmp_path):
    names = generate_view_set(str(tmp_path), 'sphere', angles=[(0.0, 0.0), (1.0, 0.5)], n_points=500)
    assert names == ["sphere_000.pcd", "sphere_001.pcd"]
    assert len(load_point_cloud(os.path.join(tmp_path, names[1]))) > 0
    assert load_angle_data(os.path.join(tmp_path, "sphere_001.txt")) == (1.0, 0.5)
