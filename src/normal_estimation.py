"""
Surface normal estimation by local plane fitting.

For every point, the neighbours within a fixed radius are gathered and the
normal is the eigenvector of their covariance matrix with the smallest
eigenvalue (direction of least variance = perpendicular to the surface).
Normals are left unoriented; the descriptor stage orients them towards its
viewpoint.
"""

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from typing import List, NamedTuple, Optional, Tuple

import numpy as np

from spatial_index import SpatialIndex
from vfh_errors import DegenerateNeighborhood, InvalidArgument

logger = logging.getLogger(__name__)

# A plane needs at least three points
MIN_NEIGHBOURS = 3


class NormalEstimate(NamedTuple):
    normals: np.ndarray      # (N, 3) unit normals, zero rows where degenerate
    curvature: np.ndarray    # (N,) surface variation lambda_0 / sum(lambda)
    degenerate: np.ndarray   # (N,) True where the neighbourhood was too small

    @property
    def n_degenerate(self) -> int:
        return int(self.degenerate.sum())

    @property
    def mean_curvature(self) -> float:
        """Mean surface variation over the points that have a normal (0 if none)."""
        valid = ~self.degenerate
        return float(self.curvature[valid].mean()) if valid.any() else 0.0


def fit_plane_normal(neighbours: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Fit a plane to a neighbourhood with PCA.

    Parameters:
    -----------
    neighbours : np.ndarray
        Kx3 array of neighbour coordinates, K >= 3

    Returns:
    --------
    normal : np.ndarray
        Unit eigenvector of the smallest covariance eigenvalue
    curvature : float
        Surface variation lambda_0 / (lambda_0 + lambda_1 + lambda_2)
    """
    centroid = neighbours.mean(axis=0)
    centered = neighbours - centroid
    cov = np.dot(centered.T, centered) / len(neighbours)

    # eigh: symmetric solver, eigenvalues in ascending order
    eigenvalues, eigenvectors = np.linalg.eigh(cov)
    eigenvalues = np.clip(eigenvalues, 0.0, None)

    total = eigenvalues.sum()
    curvature = float(eigenvalues[0] / total) if total > 0 else 0.0
    return eigenvectors[:, 0], curvature


def _estimate_block(
    points: np.ndarray,
    neighbourhoods: List[np.ndarray],
    block: np.ndarray,
    normals: np.ndarray,
    curvature: np.ndarray,
    degenerate: np.ndarray
):
    # Each call writes only the output rows listed in `block`
    for i in block:
        idx = neighbourhoods[i]
        if len(idx) < MIN_NEIGHBOURS:
            degenerate[i] = True
            continue
        normals[i], curvature[i] = fit_plane_normal(points[idx])


def estimate_normals(
    points: np.ndarray,
    radius: float,
    tree: Optional[SpatialIndex] = None,
    n_jobs: int = 1
) -> NormalEstimate:
    """
    Estimate one unoriented surface normal per point.

    Parameters:
    -----------
    points : np.ndarray
        Nx3 array of points
    radius : float
        Neighbourhood radius, identical for every point
    tree : SpatialIndex, optional
        Index over `points`; built here if not given
    n_jobs : int
        Number of worker threads splitting the points between them

    Returns:
    --------
    estimate : NormalEstimate
        Normals, surface variation and degenerate mask
    """
    if not radius > 0:
        raise InvalidArgument(f"normal radius must be positive, got {radius}")
    if n_jobs < 1:
        raise InvalidArgument(f"n_jobs must be at least 1, got {n_jobs}")

    points = np.asarray(points, dtype=np.float64)
    if tree is None:
        tree = SpatialIndex(points)
    elif len(tree) != len(points):
        raise InvalidArgument(f"spatial index holds {len(tree)} points, cloud has {len(points)}")

    n_points = len(points)
    normals = np.zeros((n_points, 3))
    curvature = np.zeros(n_points)
    degenerate = np.zeros(n_points, dtype=bool)

    neighbourhoods = tree.radius_query_all(radius)

    if n_jobs == 1 or n_points < 2 * n_jobs:
        _estimate_block(points, neighbourhoods, np.arange(n_points), normals, curvature, degenerate)
    else:
        blocks = np.array_split(np.arange(n_points), n_jobs)
        with ThreadPoolExecutor(max_workers=n_jobs) as pool:
            futures = [
                pool.submit(_estimate_block, points, neighbourhoods, block, normals, curvature, degenerate)
                for block in blocks
            ]
            for future in futures:
                future.result()

    estimate = NormalEstimate(normals, curvature, degenerate)
    if estimate.n_degenerate:
        warnings.warn(
            f"{estimate.n_degenerate} of {n_points} points have fewer than "
            f"{MIN_NEIGHBOURS} neighbours within radius {radius}",
            DegenerateNeighborhood,
            stacklevel=2
        )
    logger.debug(f"Estimated {n_points - estimate.n_degenerate} normals ({estimate.n_degenerate} degenerate)")
    return estimate
