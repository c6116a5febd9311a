"""
Synthetic Object View Generator

Generates partial point clouds of simple objects as seen by a depth sensor
from a given camera orientation:
- Objects: cube, sphere, cylinder (closed)
- Camera placed on a sphere around the object at (theta, phi)
- Only the surface facing the camera is kept (self-occlusion)
- Optional Gaussian measurement noise

Output: one `<name>.pcd` per view and a companion `<name>.txt` holding theta
and phi, the directory layout read by vfh_train.
"""

import os
from typing import List, Optional, Sequence, Tuple

import numpy as np

from pointcloud_io import save_angle_data, save_pointcloud_pcd

SHAPES = ('cube', 'sphere', 'cylinder')


def sample_object_surface(
    shape: str,
    n_points: int,
    size: float = 0.1,
    seed: Optional[int] = None
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Sample points uniformly over the surface of a simple object.

    Parameters:
    -----------
    shape : str
        One of 'cube', 'sphere', 'cylinder'
    n_points : int
        Number of surface samples
    size : float
        Edge length (cube) or diameter (sphere, cylinder; cylinder height = size)
    seed : int, optional
        Random seed for reproducibility

    Returns:
    --------
    points : np.ndarray
        Nx3 surface points centred on the origin
    normals : np.ndarray
        Nx3 outward unit normals
    """
    if seed is not None:
        np.random.seed(seed)

    half = size / 2

    if shape == 'cube':
        # Face index -> (axis, sign); all faces have equal area
        face = np.random.randint(0, 6, n_points)
        axis = face // 2
        sign = np.where(face % 2 == 0, 1.0, -1.0)
        points = np.random.uniform(-half, half, (n_points, 3))
        points[np.arange(n_points), axis] = sign * half
        normals = np.zeros((n_points, 3))
        normals[np.arange(n_points), axis] = sign

    elif shape == 'sphere':
        normals = np.random.normal(size=(n_points, 3))
        normals /= np.linalg.norm(normals, axis=1, keepdims=True)
        points = normals * half

    elif shape == 'cylinder':
        # Split samples between side and caps proportionally to area
        side_area = np.pi * size * size
        cap_area = 2 * np.pi * half ** 2
        on_side = np.random.uniform(0, side_area + cap_area, n_points) < side_area
        angle = np.random.uniform(0, 2 * np.pi, n_points)
        # sqrt for uniform density over the cap disk
        r = np.where(on_side, half, half * np.sqrt(np.random.uniform(0, 1, n_points)))
        z = np.where(on_side, np.random.uniform(-half, half, n_points),
                     np.where(np.random.uniform(0, 1, n_points) < 0.5, half, -half))
        points = np.column_stack([r * np.cos(angle), r * np.sin(angle), z])
        normals = np.where(
            on_side[:, None],
            np.column_stack([np.cos(angle), np.sin(angle), np.zeros(n_points)]),
            np.column_stack([np.zeros(n_points), np.zeros(n_points), np.sign(z)])
        )

    else:
        raise ValueError(f"unknown shape '{shape}', expected one of {SHAPES}")

    return points, normals


def camera_position(theta: float, phi: float, distance: float) -> np.ndarray:
    """Camera location for azimuth `theta` (about z) and elevation `phi`, in radians."""
    return distance * np.array([
        np.cos(phi) * np.cos(theta),
        np.cos(phi) * np.sin(theta),
        np.sin(phi)
    ])


def visible_points(points: np.ndarray, normals: np.ndarray, camera: np.ndarray) -> np.ndarray:
    """Keep the points whose surface faces the camera (convex objects only)."""
    facing = np.einsum('ij,ij->i', normals, camera - points) > 0
    return points[facing]


def add_measurement_noise(
    points: np.ndarray,
    noise_std: float,
    seed: Optional[int] = None
) -> np.ndarray:
    """
    Add isotropic Gaussian measurement noise to a point cloud.

    Parameters:
    -----------
    points : np.ndarray
        Nx3 array of points
    noise_std : float
        Standard deviation of the noise
    seed : int, optional
        Random seed

    Returns:
    --------
    noisy_points : np.ndarray
        Points with added noise
    """
    if seed is not None:
        np.random.seed(seed)

    return points + np.random.normal(0, noise_std, points.shape)


def generate_view(
    shape: str,
    theta: float,
    phi: float,
    n_points: int = 4000,
    size: float = 0.1,
    noise_std: float = 0.0,
    seed: Optional[int] = None
) -> np.ndarray:
    """Generate the camera-facing part of `shape` seen from (theta, phi)."""
    points, normals = sample_object_surface(shape, n_points, size, seed)
    view = visible_points(points, normals, camera_position(theta, phi, distance=5 * size))
    if noise_std > 0:
        view = add_measurement_noise(view, noise_std, seed=None if seed is None else seed + 1)
    return view.astype(np.float32)


def generate_view_set(
    output_dir: str,
    shape: str = 'cube',
    angles: Optional[Sequence[Tuple[float, float]]] = None,
    n_points: int = 4000,
    size: float = 0.1,
    noise_std: float = 0.0,
    seed: int = 0
) -> List[str]:
    """
    Write one `.pcd` + `.txt` pair per camera orientation.

    Parameters:
    -----------
    output_dir : str
        Directory for the view files (created if missing)
    shape : str
        Object to sample
    angles : sequence of (theta, phi), optional
        Camera orientations in radians. Default: 8 azimuths at 2 elevations.
    n_points, size, noise_std : see generate_view
    seed : int
        Base seed; view i uses seed + 2 * i

    Returns:
    --------
    names : list of str
        File names of the written clouds
    """
    if angles is None:
        angles = [(t, p) for p in (0.0, np.pi / 6) for t in np.linspace(0, 2 * np.pi, 8, endpoint=False)]

    os.makedirs(output_dir, exist_ok=True)

    names = []
    for i, (theta, phi) in enumerate(angles):
        name = f"{shape}_{i:03d}"
        view = generate_view(shape, theta, phi, n_points, size, noise_std, seed=seed + 2 * i)
        save_pointcloud_pcd(view, os.path.join(output_dir, f"{name}.pcd"))
        save_angle_data((theta, phi), os.path.join(output_dir, f"{name}.txt"))
        names.append(f"{name}.pcd")

    print(f"Saved {len(names)} {shape} views to {os.path.abspath(output_dir)}/")
    return names


if __name__ == "__main__":
    for shape in SHAPES:
        generate_view_set("data", shape=shape, noise_std=0.0005)
