import numpy as np
import pytest

from view_pointcloud_generator import generate_view

# Normal radius suited to the 0.1 m objects produced by the generator
RADIUS = 0.02


@pytest.fixture
def cube_view():
    """Partial view of a 10 cm cube showing three faces."""
    return generate_view('cube', theta=0.4, phi=0.3, n_points=3000, size=0.1, seed=1)


@pytest.fixture
def sphere_view():
    return generate_view('sphere', theta=1.0, phi=0.2, n_points=3000, size=0.1, seed=2)


@pytest.fixture
def plane_grid():
    """10x10 grid in the z = 0 plane with 0.1 spacing."""
    xs, ys = np.meshgrid(np.arange(10) * 0.1, np.arange(10) * 0.1)
    return np.column_stack([xs.ravel(), ys.ravel(), np.zeros(100)])
