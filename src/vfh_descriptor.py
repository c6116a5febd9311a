"""
Viewpoint Feature Histogram (VFH) descriptor for one object view.

The 308-bin descriptor concatenates five fixed-size segments:

    segment   bins   content
    f1         45    Darboux angle atan2(w.n2, u.n2), range [-pi, pi]
    f2         45    v.n2, range [-1, 1]
    f3         45    u.d, range [-1, 1]
    f4         45    shape distribution: |p - centroid| / max distance
    vp        128    viewpoint component (n.d_vp + 1) / 2

f1-f3 form the extended 3-angle point feature histogram computed between
every point and the cloud centroid (carrying the mean normal), which keeps
the cost linear in the cloud size. Each non-empty segment is scaled to sum
to HISTOGRAM_SCALE, so clouds with different point counts stay comparable.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from vfh_errors import InvalidArgument

logger = logging.getLogger(__name__)

HISTOGRAM_SCALE = 100.0
DEFAULT_VIEWPOINT = (1.0, 0.0, 0.0)


@dataclass(frozen=True)
class DescriptorLayout:
    """Bin counts of the descriptor segments, in storage order."""
    f1_bins: int = 45
    f2_bins: int = 45
    f3_bins: int = 45
    f4_bins: int = 45
    vp_bins: int = 128

    @property
    def size(self) -> int:
        return self.f1_bins + self.f2_bins + self.f3_bins + self.f4_bins + self.vp_bins

    def segments(self) -> Dict[str, slice]:
        bounds = {}
        start = 0
        for name in ('f1', 'f2', 'f3', 'f4', 'vp'):
            stop = start + getattr(self, f'{name}_bins')
            bounds[name] = slice(start, stop)
            start = stop
        return bounds

    def describe(self) -> str:
        return ','.join(f'{name}:{s.stop - s.start}' for name, s in self.segments().items())


VFH_LAYOUT = DescriptorLayout()
HIST_LENGTH = VFH_LAYOUT.size  # 308


# =============================================================================
# PAIR FEATURES
# =============================================================================

def compute_pair_features(
    p1: np.ndarray,
    n1: np.ndarray,
    p2: np.ndarray,
    n2: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Darboux-frame features between one reference point and many points.

    For each pair the source point is the one whose normal makes the
    smaller angle with the connecting line, so (p, q) and (q, p) give the
    same features. With u the source normal, d the unit connecting line,
    v = d x u / |d x u| and w = u x v:

    - f1 = atan2(w . n_target, u . n_target)
    - f2 = v . n_target
    - f3 = u . d
    - f4 = |p2 - p1|

    Parameters:
    -----------
    p1, n1 : np.ndarray
        Reference point and its unit normal, shape (3,)
    p2, n2 : np.ndarray
        Mx3 points and their unit normals

    Returns:
    --------
    f1, f2, f3, f4 : np.ndarray
        Features per pair, shape (M,)
    valid : np.ndarray
        False where the pair is coincident or the frame is undefined
    """
    dp = p2 - p1
    f4 = np.linalg.norm(dp, axis=1)
    valid = f4 > 0
    safe_f4 = np.where(valid, f4, 1.0)

    angle1 = (dp @ n1) / safe_f4
    angle2 = np.einsum('ij,ij->i', dp, n2) / safe_f4

    # Make sure the same point is selected as source for each pair
    swap = np.abs(angle1) < np.abs(angle2)
    n1_all = np.broadcast_to(n1, n2.shape)
    u = np.where(swap[:, None], n2, n1_all)
    target = np.where(swap[:, None], n1_all, n2)
    dp = np.where(swap[:, None], -dp, dp)
    f3 = np.where(swap, -angle2, angle1)

    v = np.cross(dp, u)
    v_norm = np.linalg.norm(v, axis=1)
    valid &= v_norm > 0
    v = v / np.where(v_norm > 0, v_norm, 1.0)[:, None]
    w = np.cross(u, v)

    f2 = np.einsum('ij,ij->i', v, target)
    f1 = np.arctan2(np.einsum('ij,ij->i', w, target), np.einsum('ij,ij->i', u, target))

    return f1, f2, f3, f4, valid


def bin_values(values: np.ndarray, low: float, high: float, n_bins: int) -> np.ndarray:
    """Count `values` into `n_bins` equal bins over [low, high]; out-of-range values clamp to the end bins."""
    if len(values) == 0:
        return np.zeros(n_bins)
    idx = np.floor(n_bins * (values - low) / (high - low)).astype(np.int64)
    idx = np.clip(idx, 0, n_bins - 1)
    return np.bincount(idx, minlength=n_bins).astype(np.float64)


def normalize_histogram(hist: np.ndarray, scale: float = HISTOGRAM_SCALE) -> np.ndarray:
    total = hist.sum()
    return hist * (scale / total) if total > 0 else hist


def orient_normals(points: np.ndarray, normals: np.ndarray, viewpoint: np.ndarray) -> np.ndarray:
    """Flip normals so that each one faces the viewpoint."""
    facing = np.einsum('ij,ij->i', normals, viewpoint - points)
    return np.where((facing < 0)[:, None], -normals, normals)


# =============================================================================
# VFH
# =============================================================================

def compute_vfh(
    points: np.ndarray,
    normals: np.ndarray,
    viewpoint: Sequence[float] = DEFAULT_VIEWPOINT,
    degenerate: Optional[np.ndarray] = None,
    layout: DescriptorLayout = VFH_LAYOUT
) -> np.ndarray:
    """
    Compute the VFH descriptor of a centred point cloud.

    The cloud must already be demeaned; it is not re-centred here.
    Degenerate points (zero normals) are left out of the angle and
    viewpoint segments and of the mean normal, but still count in the
    shape distribution since it only depends on position. A cloud that
    cannot fill every segment (no valid normal, no valid pair with the
    centroid, or all points at the centroid) raises InvalidArgument, so a
    returned descriptor always has each segment summing to HISTOGRAM_SCALE.

    Parameters:
    -----------
    points : np.ndarray
        Nx3 centred point cloud
    normals : np.ndarray
        Nx3 normals, unoriented
    viewpoint : sequence of float
        Sensor position used to orient normals and for the viewpoint segment
    degenerate : np.ndarray, optional
        (N,) mask of points without a valid normal. Defaults to zero-length normals.
    layout : DescriptorLayout
        Segment bin counts

    Returns:
    --------
    descriptor : np.ndarray
        float32 vector of length layout.size
    """
    points = np.asarray(points, dtype=np.float64)
    normals = np.asarray(normals, dtype=np.float64)
    viewpoint = np.asarray(viewpoint, dtype=np.float64)

    if points.ndim != 2 or points.shape[1] != 3 or len(points) == 0:
        raise InvalidArgument(f"points must be a non-empty Nx3 array, got shape {points.shape}")
    if normals.shape != points.shape:
        raise InvalidArgument(f"normals shape {normals.shape} does not match points {points.shape}")
    if viewpoint.shape != (3,):
        raise InvalidArgument(f"viewpoint must be an xyz coordinate, got shape {viewpoint.shape}")

    if degenerate is None:
        degenerate = np.linalg.norm(normals, axis=1) == 0
    valid = ~np.asarray(degenerate, dtype=bool)

    oriented = orient_normals(points, normals, viewpoint)
    centroid = points.mean(axis=0)

    # ---[ Step 1: angle features between the centroid and every point
    pts, nrm = points[valid], oriented[valid]
    mean_normal = nrm.sum(axis=0)
    mean_norm = np.linalg.norm(mean_normal)
    if len(pts) == 0:
        raise InvalidArgument(f"none of the {len(points)} points has a valid normal")
    if mean_norm == 0:
        raise InvalidArgument("oriented normals cancel out, the mean normal is undefined")
    f1, f2, f3, _, ok = compute_pair_features(centroid, mean_normal / mean_norm, pts, nrm)
    if not ok.any():
        raise InvalidArgument("no point forms a valid pair with the centroid")
    f1, f2, f3 = f1[ok], f2[ok], f3[ok]

    hist_f1 = normalize_histogram(bin_values(f1, -np.pi, np.pi, layout.f1_bins))
    hist_f2 = normalize_histogram(bin_values(f2, -1.0, 1.0, layout.f2_bins))
    hist_f3 = normalize_histogram(bin_values(f3, -1.0, 1.0, layout.f3_bins))

    # ---[ Step 2: shape distribution, distances to the centroid
    distances = np.linalg.norm(points - centroid, axis=1)
    max_distance = distances.max()
    if max_distance == 0:
        raise InvalidArgument("all points coincide with the centroid")
    hist_f4 = normalize_histogram(bin_values(distances / max_distance, 0.0, 1.0, layout.f4_bins))

    # ---[ Step 3: viewpoint component
    to_vp = viewpoint - pts
    vp_norm = np.linalg.norm(to_vp, axis=1)
    seen = vp_norm > 0
    if not seen.any():
        raise InvalidArgument("every point with a normal lies on the viewpoint")
    cos_vp = np.einsum('ij,ij->i', nrm[seen], to_vp[seen]) / vp_norm[seen]
    hist_vp = normalize_histogram(bin_values((cos_vp + 1.0) * 0.5, 0.0, 1.0, layout.vp_bins))

    descriptor = np.concatenate([hist_f1, hist_f2, hist_f3, hist_f4, hist_vp]).astype(np.float32)
    logger.debug(f"VFH over {len(points)} points ({int(valid.sum())} with normals), {len(f1)} valid pairs")
    return descriptor


def split_segments(descriptor: np.ndarray, layout: DescriptorLayout = VFH_LAYOUT) -> Dict[str, np.ndarray]:
    """Split a descriptor into its named segments."""
    descriptor = np.asarray(descriptor)
    if descriptor.shape != (layout.size,):
        raise InvalidArgument(f"descriptor must have {layout.size} bins, got shape {descriptor.shape}")
    return {name: descriptor[s] for name, s in layout.segments().items()}
