"""
K-d tree over a fixed 3D point set.

Thin, validated wrapper around scipy's cKDTree providing the two queries the
normal estimator needs: self-inclusive radius search and ordered k-nearest.
"""

import logging
from typing import List, Union

import numpy as np
from scipy.spatial import cKDTree

from vfh_errors import InvalidArgument

logger = logging.getLogger(__name__)

Query = Union[int, np.integer, np.ndarray, tuple, list]

_EMPTY = np.empty(0, dtype=np.int64)


class SpatialIndex:
    """
    Immutable spatial index over an Nx3 point array.

    A query is either the index of a cloud point or an arbitrary xyz
    coordinate. Results are point indices; a cloud point queried against
    itself is part of its own radius neighbourhood.
    """

    def __init__(self, points: np.ndarray, leafsize: int = 16):
        points = np.array(points, dtype=np.float64)
        if points.size == 0:
            points = np.empty((0, 3))
        if points.ndim != 2 or points.shape[1] != 3:
            raise InvalidArgument(f"points must be an Nx3 array, got shape {points.shape}")
        self._points = points
        self._points.setflags(write=False)
        # cKDTree builds a balanced tree (median splits) by default
        self._tree = cKDTree(self._points, leafsize=leafsize) if len(self._points) else None

    def __len__(self) -> int:
        return len(self._points)

    @property
    def points(self) -> np.ndarray:
        return self._points

    def _resolve(self, query: Query) -> np.ndarray:
        if isinstance(query, (int, np.integer)) and not isinstance(query, bool):
            if not 0 <= query < len(self._points):
                raise InvalidArgument(f"point index {query} out of range for {len(self._points)} points")
            return self._points[query]
        xyz = np.asarray(query, dtype=np.float64)
        if xyz.shape != (3,):
            raise InvalidArgument(f"query must be a point index or an xyz coordinate, got shape {xyz.shape}")
        return xyz

    def radius_query(self, query: Query, radius: float) -> np.ndarray:
        """
        Indices of all points within `radius` of the query (inclusive).

        Parameters:
        -----------
        query : int or array-like
            Point index into the cloud, or an (x, y, z) coordinate
        radius : float
            Search radius, must be > 0

        Returns:
        --------
        indices : np.ndarray
            Sorted int64 point indices
        """
        if not radius > 0:
            raise InvalidArgument(f"radius must be positive, got {radius}")
        if self._tree is None:
            return _EMPTY.copy()
        xyz = self._resolve(query)
        idx = self._tree.query_ball_point(xyz, radius, return_sorted=True)
        return np.asarray(idx, dtype=np.int64)

    def radius_query_all(self, radius: float) -> List[np.ndarray]:
        """Self-inclusive radius neighbourhood of every cloud point, in point order."""
        if not radius > 0:
            raise InvalidArgument(f"radius must be positive, got {radius}")
        if self._tree is None:
            return []
        neighbourhoods = self._tree.query_ball_point(self._points, radius, return_sorted=True)
        return [np.asarray(idx, dtype=np.int64) for idx in neighbourhoods]

    def k_nearest(self, query: Query, k: int) -> np.ndarray:
        """
        The `k` nearest points ordered by increasing distance.

        Ties are broken by point index. Fewer than `k` indices are returned
        when the cloud is smaller than `k`.
        """
        if k <= 0:
            raise InvalidArgument(f"k must be positive, got {k}")
        if self._tree is None:
            return _EMPTY.copy()
        xyz = self._resolve(query)
        k = min(int(k), len(self._points))
        dists, idx = self._tree.query(xyz, k=k)
        dists = np.atleast_1d(dists)
        idx = np.atleast_1d(idx).astype(np.int64)
        order = np.lexsort((idx, dists))
        return idx[order]

    def mean_spacing(self) -> float:
        """Average distance from each point to its nearest other point."""
        if len(self._points) < 2:
            return 0.0
        dists, _ = self._tree.query(self._points, k=2)
        return float(np.mean(dists[:, 1]))
