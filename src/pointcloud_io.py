"""
Point cloud and view-angle I/O for the VFH view library.

Readers turn files on disk into plain (N, 3) float32 arrays and ViewAngles;
the descriptor pipeline never touches files itself.

Supported clouds:
- PCD (DATA ascii / binary). binary_compressed is rejected.
- PLY (format ascii / binary_little_endian / binary_big_endian), vertex x, y, z.

Each cloud `<name>.pcd` is accompanied by `<name>.txt` holding theta on the
first line and phi on the second.
"""

import logging
import os
from typing import Iterator, List, NamedTuple, Tuple

import numpy as np

from vfh_errors import MalformedMetadata, UnreadableSource

logger = logging.getLogger(__name__)

CLOUD_EXTENSIONS = ('.pcd', '.ply')
ANGLE_EXTENSION = '.txt'

_PCD_TYPES = {'F': 'f', 'I': 'i', 'U': 'u'}

_PLY_TYPES = {
    'char': 'i1', 'int8': 'i1',
    'uchar': 'u1', 'uint8': 'u1',
    'short': 'i2', 'int16': 'i2',
    'ushort': 'u2', 'uint16': 'u2',
    'int': 'i4', 'int32': 'i4',
    'uint': 'u4', 'uint32': 'u4',
    'float': 'f4', 'float32': 'f4',
    'double': 'f8', 'float64': 'f8',
}


class ViewAngles(NamedTuple):
    """Camera orientation of one view: theta about z, phi about x."""
    theta: float
    phi: float


# =============================================================================
# POINT CLOUD READERS
# =============================================================================

def _finalize_points(xyz: np.ndarray, filepath: str) -> np.ndarray:
    points = np.asarray(xyz, dtype=np.float32).reshape(-1, 3)
    finite = np.all(np.isfinite(points), axis=1)
    if not finite.all():
        logger.debug(f"Dropping {int((~finite).sum())} non-finite points from {filepath}")
        points = points[finite]
    if len(points) == 0:
        raise UnreadableSource(filepath, "point cloud contains no valid points")
    return np.ascontiguousarray(points)


def _read_header(f, filepath: str, terminator: str) -> Tuple[List[str], bytes]:
    """Read text header lines up to and including the line starting with `terminator`."""
    lines = []
    while True:
        raw = f.readline()
        if not raw:
            raise UnreadableSource(filepath, f"header is missing the '{terminator}' line")
        line = raw.decode('ascii', errors='replace').strip()
        lines.append(line)
        if line.lower().startswith(terminator):
            break
    return lines, f.read()


def load_pcd(filepath: str) -> np.ndarray:
    """
    Load the x, y, z fields of a PCD file.

    Parameters:
    -----------
    filepath : str
        Path to .pcd file

    Returns:
    --------
    points : np.ndarray
        Nx3 float32 array of finite (x, y, z) coordinates
    """
    try:
        with open(filepath, 'rb') as f:
            lines, body = _read_header(f, filepath, 'data')
    except OSError as e:
        raise UnreadableSource(filepath, f"could not read file ({e})") from e

    header = {}
    for line in lines:
        if not line or line.startswith('#'):
            continue
        parts = line.split()
        header[parts[0].upper()] = parts[1:]

    fields = header.get('FIELDS', [])
    if not all(axis in fields for axis in ('x', 'y', 'z')):
        raise UnreadableSource(filepath, "PCD file has no x, y, z fields")

    try:
        sizes = [int(s) for s in header.get('SIZE', ['4'] * len(fields))]
        types = header.get('TYPE', ['F'] * len(fields))
        counts = [int(c) for c in header.get('COUNT', ['1'] * len(fields))]
        if 'POINTS' in header:
            n_points = int(header['POINTS'][0])
        else:
            n_points = int(header['WIDTH'][0]) * int(header['HEIGHT'][0])
        data_kind = header['DATA'][0].lower()
    except (KeyError, IndexError, ValueError) as e:
        raise UnreadableSource(filepath, f"malformed PCD header ({e})") from e

    if not (len(sizes) == len(types) == len(counts) == len(fields)):
        raise UnreadableSource(filepath, "PCD header field descriptions disagree in length")

    # Column offset of each field in a flattened record
    offsets = np.concatenate([[0], np.cumsum(counts)[:-1]])
    columns = [int(offsets[fields.index(axis)]) for axis in ('x', 'y', 'z')]

    if data_kind == 'ascii':
        try:
            values = np.array(body.decode('ascii').split(), dtype=np.float64)
            values = values.reshape(-1, int(sum(counts)))
        except (UnicodeDecodeError, ValueError) as e:
            raise UnreadableSource(filepath, f"malformed ASCII point data ({e})") from e
        if len(values) < n_points:
            raise UnreadableSource(filepath, f"expected {n_points} points, found {len(values)}")
        xyz = values[:n_points, columns]

    elif data_kind == 'binary':
        dtype_fields = []
        for i, (name, size, kind, count) in enumerate(zip(fields, sizes, types, counts)):
            if kind.upper() not in _PCD_TYPES:
                raise UnreadableSource(filepath, f"unknown PCD field type '{kind}'")
            # Padding fields are all called '_'
            field_name = name if name != '_' else f'_pad{i}'
            fmt = f'<{_PCD_TYPES[kind.upper()]}{size}'
            dtype_fields.append((field_name, fmt) if count == 1 else (field_name, fmt, (count,)))
        try:
            records = np.frombuffer(body, dtype=np.dtype(dtype_fields), count=n_points)
        except (TypeError, ValueError) as e:
            raise UnreadableSource(filepath, f"truncated binary point data ({e})") from e
        xyz = np.column_stack([records['x'], records['y'], records['z']])

    else:
        raise UnreadableSource(filepath, f"unsupported PCD DATA encoding '{data_kind}'")

    return _finalize_points(xyz, filepath)


def load_ply(filepath: str) -> np.ndarray:
    """
    Load vertex positions from a PLY file (ASCII or binary).

    Parameters:
    -----------
    filepath : str
        Path to PLY file

    Returns:
    --------
    points : np.ndarray
        Nx3 float32 array of (x, y, z) coordinates
    """
    try:
        with open(filepath, 'rb') as f:
            if f.readline().strip() != b'ply':
                raise UnreadableSource(filepath, "missing 'ply' magic line")
            lines, body = _read_header(f, filepath, 'end_header')
    except OSError as e:
        raise UnreadableSource(filepath, f"could not read file ({e})") from e

    fmt = None
    elements = []  # [name, count, [(prop_name, type or None for lists)]]
    for line in lines:
        parts = line.split()
        if not parts:
            continue
        if parts[0] == 'format':
            fmt = parts[1] if len(parts) > 1 else None
        elif parts[0] == 'element' and len(parts) == 3:
            try:
                count = int(parts[2])
            except ValueError:
                raise UnreadableSource(filepath, f"malformed PLY header, bad element count in '{line}'") from None
            if count < 0:
                raise UnreadableSource(filepath, f"malformed PLY header, negative element count in '{line}'")
            elements.append([parts[1], count, []])
        elif parts[0] == 'property' and elements:
            if len(parts) > 1 and parts[1] == 'list':
                elements[-1][2].append((parts[-1], None))
            elif len(parts) == 3 and parts[1] in _PLY_TYPES:
                elements[-1][2].append((parts[2], _PLY_TYPES[parts[1]]))
            else:
                raise UnreadableSource(filepath, f"unsupported PLY property '{line}'")

    if fmt not in ('ascii', 'binary_little_endian', 'binary_big_endian'):
        raise UnreadableSource(filepath, f"unsupported PLY format '{fmt}'")

    names = [e[0] for e in elements]
    if 'vertex' not in names:
        raise UnreadableSource(filepath, "PLY file has no vertex element")
    vertex_pos = names.index('vertex')
    n_vertices = elements[vertex_pos][1]
    vertex_props = [p[0] for p in elements[vertex_pos][2]]
    if not all(axis in vertex_props for axis in ('x', 'y', 'z')):
        raise UnreadableSource(filepath, "PLY vertex element has no x, y, z properties")

    if fmt == 'ascii':
        text_lines = body.decode('ascii', errors='replace').splitlines()
        # Elements are stored in header order, one line per item
        start = sum(e[1] for e in elements[:vertex_pos])
        rows = text_lines[start:start + n_vertices]
        if len(rows) < n_vertices:
            raise UnreadableSource(filepath, f"expected {n_vertices} vertices, found {len(rows)}")
        columns = [vertex_props.index(axis) for axis in ('x', 'y', 'z')]
        try:
            xyz = np.array([[float(row.split()[c]) for c in columns] for row in rows])
        except (IndexError, ValueError) as e:
            raise UnreadableSource(filepath, f"malformed vertex data ({e})") from e
    else:
        endian = '<' if fmt == 'binary_little_endian' else '>'
        offset = 0
        for name, count, props in elements[:vertex_pos + 1]:
            if any(t is None for _, t in props):
                raise UnreadableSource(filepath, f"list properties in element '{name}' are not supported")
            dtype = np.dtype([(p, endian + t) for p, t in props])
            if name == 'vertex':
                try:
                    records = np.frombuffer(body, dtype=dtype, count=count, offset=offset)
                except ValueError as e:
                    raise UnreadableSource(filepath, f"truncated vertex data ({e})") from e
                xyz = np.column_stack([records['x'], records['y'], records['z']])
            offset += dtype.itemsize * count

    return _finalize_points(xyz, filepath)


def load_point_cloud(filepath: str) -> np.ndarray:
    """Load a .pcd or .ply file, dispatching on the extension."""
    logger.debug(f"Loading: {os.path.basename(filepath)}")
    ext = os.path.splitext(filepath)[1].lower()
    if ext == '.pcd':
        return load_pcd(filepath)
    if ext == '.ply':
        return load_ply(filepath)
    raise UnreadableSource(filepath, "file must have extension .ply or .pcd")


# =============================================================================
# ANGLE DATA
# =============================================================================

def load_angle_data(filepath: str) -> ViewAngles:
    """
    Load the (theta, phi) pair stored one value per line.

    Raises UnreadableSource if the file cannot be opened and MalformedMetadata
    if it is not ASCII text or either of the first two lines is missing or
    not a float.
    """
    logger.debug(f"Loading: {os.path.basename(filepath)}")
    try:
        with open(filepath, 'r', encoding='ascii') as f:
            lines = f.read().splitlines()
    except UnicodeDecodeError as e:
        raise MalformedMetadata(filepath, f"angle file is not plain text ({e.reason} at byte {e.start})") from None
    except OSError as e:
        raise UnreadableSource(filepath, f"could not read angle file ({e})") from e

    if len(lines) < 2:
        raise MalformedMetadata(filepath, f"expected 2 angle lines (theta, phi), found {len(lines)}")

    values = []
    for label, line in zip(('theta', 'phi'), lines[:2]):
        try:
            values.append(float(line.strip()))
        except ValueError:
            raise MalformedMetadata(filepath, f"{label} line {line!r} is not a number") from None
    return ViewAngles(*values)


def angle_file_for(cloud_path: str) -> str:
    return os.path.splitext(cloud_path)[0] + ANGLE_EXTENSION


def discover_views(
    data_dir: str,
    extensions: Tuple[str, ...] = CLOUD_EXTENSIONS
) -> Iterator[Tuple[np.ndarray, ViewAngles, str]]:
    """
    Yield (points, angles, source) for every cloud file in `data_dir`.

    Files are visited in sorted name order; files with other extensions
    (including the angle .txt files themselves) are skipped. `source` is
    the file name relative to `data_dir`.
    """
    try:
        names = sorted(os.listdir(data_dir))
    except OSError as e:
        raise UnreadableSource(data_dir, f"could not list data directory ({e})") from e

    for name in names:
        path = os.path.join(data_dir, name)
        if os.path.splitext(name)[1].lower() not in extensions or not os.path.isfile(path):
            continue
        points = load_point_cloud(path)
        angles = load_angle_data(angle_file_for(path))
        yield points, angles, name


# =============================================================================
# WRITERS
# =============================================================================

def _xyz_rows(points: np.ndarray) -> np.ndarray:
    points = np.asarray(points, dtype=np.float32)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"points must be an Nx3 array, got shape {points.shape}")
    return points


def _write_cloud(filepath: str, header: List[str], points: np.ndarray, binary: bool):
    with open(filepath, 'wb') as f:
        f.write(('\n'.join(header) + '\n').encode('ascii'))
        if binary:
            f.write(points.astype('<f4').tobytes())
        else:
            np.savetxt(f, points, fmt='%.6f')


def save_pointcloud_pcd(points: np.ndarray, filepath: str, binary: bool = False):
    """
    Save the x, y, z coordinates of a point cloud as PCD v0.7.

    Parameters:
    -----------
    points : np.ndarray
        Nx3 array of points, stored as float32
    filepath : str
        Output .pcd path
    binary : bool
        Write DATA binary instead of DATA ascii
    """
    points = _xyz_rows(points)
    n_points = len(points)
    header = [
        "# .PCD v0.7 - Point Cloud Data file format",
        "VERSION 0.7",
        "FIELDS x y z",
        "SIZE 4 4 4",
        "TYPE F F F",
        "COUNT 1 1 1",
        f"WIDTH {n_points}",
        "HEIGHT 1",
        "VIEWPOINT 0 0 0 1 0 0 0",
        f"POINTS {n_points}",
        f"DATA {'binary' if binary else 'ascii'}",
    ]
    _write_cloud(filepath, header, points, binary)


def save_pointcloud_ply(points: np.ndarray, filepath: str, binary: bool = False):
    """Save a point cloud as a PLY vertex list (ASCII or little-endian binary)."""
    points = _xyz_rows(points)
    header = [
        "ply",
        f"format {'binary_little_endian' if binary else 'ascii'} 1.0",
        f"element vertex {len(points)}",
        *(f"property float {axis}" for axis in 'xyz'),
        "end_header",
    ]
    _write_cloud(filepath, header, points, binary)


def save_angle_data(angles: Tuple[float, float], filepath: str):
    theta, phi = angles
    with open(filepath, 'w') as f:
        f.write(f"{float(theta)!r}\n{float(phi)!r}\n")
