"""
Triangle / Voxel Intersection Kernels with Numba JIT Compilation

All kernels work in continuous grid space, where voxel (i, j, k) is the unit
cube [i, i+1] x [j, j+1] x [k, k+1].

Algorithm Overview:
1. Overlap: Separating Axis Test (Akenine-Moller) between a triangle and a
   voxel cube: 3 box normals, the triangle normal and the 9 edge/box-axis
   cross products. Touching counts as overlap.
2. Candidate walk: voxels are visited column by column along the dominant
   axis of the triangle normal, so the work is proportional to the triangle
   area instead of its bounding box volume. Collinear triangles (segments)
   are walked slab by slab along their direction.
3. Crossings: for the interior fill, the vertical lines through voxel
   centres are intersected with the triangle projected on the XY plane.
"""

from typing import Tuple
import math
import numpy as np
from numba import njit


@njit(cache=True)
def _grow(buffer: np.ndarray, count: int) -> np.ndarray:
    """Double the capacity of an (N, 3) output buffer when it is full."""
    if count < buffer.shape[0]:
        return buffer
    grown = np.empty((buffer.shape[0] * 2, buffer.shape[1]), dtype=buffer.dtype)
    grown[:count] = buffer[:count]
    return grown


@njit(cache=True)
def _axis_separates(
    p0: float, p1: float, p2: float,
    ax: float, ay: float, az: float
) -> bool:
    """Check whether projected triangle extents miss the unit box on an axis."""
    mn = min(p0, p1, p2)
    mx = max(p0, p1, p2)
    rad = 0.5 * (abs(ax) + abs(ay) + abs(az))
    return mn > rad or mx < -rad


@njit(cache=True)
def _edge_separates(
    v0x: float, v0y: float, v0z: float,
    v1x: float, v1y: float, v1z: float,
    v2x: float, v2y: float, v2z: float,
    ex: float, ey: float, ez: float
) -> bool:
    """
    Test the three cross products of one edge with the box axes.

    cross(e, X) = (0, ez, -ey)
    cross(e, Y) = (-ez, 0, ex)
    cross(e, Z) = (ey, -ex, 0)
    """
    if _axis_separates(
        v0y * ez - v0z * ey, v1y * ez - v1z * ey, v2y * ez - v2z * ey,
        0.0, ez, -ey
    ):
        return True
    if _axis_separates(
        -v0x * ez + v0z * ex, -v1x * ez + v1z * ex, -v2x * ez + v2z * ex,
        -ez, 0.0, ex
    ):
        return True
    return _axis_separates(
        v0x * ey - v0y * ex, v1x * ey - v1y * ex, v2x * ey - v2y * ex,
        ey, -ex, 0.0
    )


@njit(cache=True)
def triangle_box_overlap(
    cx: float, cy: float, cz: float,
    ax: float, ay: float, az: float,
    bx: float, by: float, bz: float,
    qx: float, qy: float, qz: float
) -> bool:
    """
    Separating axis test between a triangle and a unit cube.

    Args:
        cx, cy, cz: Cube centre
        ax..qz: The three triangle vertices

    Returns:
        True if the triangle touches or intersects the cube
    """
    h = 0.5

    # Move everything so the box is centred at the origin
    v0x = ax - cx
    v0y = ay - cy
    v0z = az - cz
    v1x = bx - cx
    v1y = by - cy
    v1z = bz - cz
    v2x = qx - cx
    v2y = qy - cy
    v2z = qz - cz

    # Box normals (triangle AABB against the box)
    if min(v0x, v1x, v2x) > h or max(v0x, v1x, v2x) < -h:
        return False
    if min(v0y, v1y, v2y) > h or max(v0y, v1y, v2y) < -h:
        return False
    if min(v0z, v1z, v2z) > h or max(v0z, v1z, v2z) < -h:
        return False

    e0x = v1x - v0x
    e0y = v1y - v0y
    e0z = v1z - v0z
    e1x = v2x - v1x
    e1y = v2y - v1y
    e1z = v2z - v1z
    e2x = v0x - v2x
    e2y = v0y - v2y
    e2z = v0z - v2z

    if _edge_separates(v0x, v0y, v0z, v1x, v1y, v1z, v2x, v2y, v2z, e0x, e0y, e0z):
        return False
    if _edge_separates(v0x, v0y, v0z, v1x, v1y, v1z, v2x, v2y, v2z, e1x, e1y, e1z):
        return False
    if _edge_separates(v0x, v0y, v0z, v1x, v1y, v1z, v2x, v2y, v2z, e2x, e2y, e2z):
        return False

    # Triangle plane against the box
    nx = e0y * e1z - e0z * e1y
    ny = e0z * e1x - e0x * e1z
    nz = e0x * e1y - e0y * e1x

    if nx > 0.0:
        minx, maxx = -h - v0x, h - v0x
    else:
        minx, maxx = h - v0x, -h - v0x
    if ny > 0.0:
        miny, maxy = -h - v0y, h - v0y
    else:
        miny, maxy = h - v0y, -h - v0y
    if nz > 0.0:
        minz, maxz = -h - v0z, h - v0z
    else:
        minz, maxz = h - v0z, -h - v0z

    if nx * minx + ny * miny + nz * minz > 0.0:
        return False
    return nx * maxx + ny * maxy + nz * maxz >= 0.0


@njit(cache=True)
def _emit(
    out: np.ndarray, count: int,
    i: int, j: int, k: int,
    tri: np.ndarray
) -> Tuple[np.ndarray, int]:
    """Run the overlap test for one voxel and append it on a hit."""
    if triangle_box_overlap(
        i + 0.5, j + 0.5, k + 0.5,
        tri[0, 0], tri[0, 1], tri[0, 2],
        tri[1, 0], tri[1, 1], tri[1, 2],
        tri[2, 0], tri[2, 1], tri[2, 2]
    ):
        out = _grow(out, count)
        out[count, 0] = i
        out[count, 1] = j
        out[count, 2] = k
        count += 1
    return out, count


@njit(cache=True)
def _cell(a: int, b: int, w: int, axis: int) -> Tuple[int, int, int]:
    """Build (x, y, z) from two in-plane indices and one index along `axis`."""
    if axis == 0:
        return w, a, b
    elif axis == 1:
        return a, w, b
    return a, b, w


@njit(cache=True)
def _other_axes(axis: int) -> Tuple[int, int]:
    if axis == 0:
        return 1, 2
    elif axis == 1:
        return 0, 2
    return 0, 1


@njit(cache=True)
def triangle_voxels(tri: np.ndarray, lo: np.ndarray, hi: np.ndarray) -> np.ndarray:
    """
    Find all voxels overlapped by a triangle.

    Args:
        tri: (3, 3) float64 triangle in grid coordinates
        lo: (3,) int64 inclusive lower corner of the candidate range
        hi: (3,) int64 inclusive upper corner of the candidate range

    Returns:
        (K, 3) int64 array of voxel coordinates
    """
    out = np.empty((64, 3), dtype=np.int64)
    count = 0

    e0 = tri[1] - tri[0]
    e1 = tri[2] - tri[1]
    n = np.empty(3, dtype=np.float64)
    n[0] = e0[1] * e1[2] - e0[2] * e1[1]
    n[1] = e0[2] * e1[0] - e0[0] * e1[2]
    n[2] = e0[0] * e1[1] - e0[1] * e1[0]

    if n[0] != 0.0 or n[1] != 0.0 or n[2] != 0.0:
        # Walk columns along the dominant normal axis
        w = 0
        if abs(n[1]) > abs(n[w]):
            w = 1
        if abs(n[2]) > abs(n[w]):
            w = 2
        u, v = _other_axes(w)
        d = n[0] * tri[0, 0] + n[1] * tri[0, 1] + n[2] * tri[0, 2]

        for a in range(lo[u], hi[u] + 1):
            for b in range(lo[v], hi[v] + 1):
                # Plane height over the four corners of the column
                wmin = math.inf
                wmax = -math.inf
                for du in range(2):
                    for dv in range(2):
                        pw = (d - n[u] * (a + du) - n[v] * (b + dv)) / n[w]
                        wmin = min(wmin, pw)
                        wmax = max(wmax, pw)
                k0 = max(lo[w], int(math.floor(wmin)) - 1)
                k1 = min(hi[w], int(math.floor(wmax)) + 1)
                for k in range(k0, k1 + 1):
                    i, j, kk = _cell(a, b, k, w)
                    out, count = _emit(out, count, i, j, kk, tri)
        return out[:count]

    # Collinear: walk slabs along the longest edge
    best = -1.0
    p = 0
    q = 1
    for s in range(3):
        t = (s + 1) % 3
        length = 0.0
        for c in range(3):
            length += (tri[t, c] - tri[s, c]) ** 2
        if length > best:
            best = length
            p = s
            q = t

    if best == 0.0:
        # Single point
        for i in range(lo[0], hi[0] + 1):
            for j in range(lo[1], hi[1] + 1):
                for k in range(lo[2], hi[2] + 1):
                    out, count = _emit(out, count, i, j, k, tri)
        return out[:count]

    seg = tri[q] - tri[p]
    w = 0
    if abs(seg[1]) > abs(seg[w]):
        w = 1
    if abs(seg[2]) > abs(seg[w]):
        w = 2
    u, v = _other_axes(w)

    for k in range(lo[w], hi[w] + 1):
        t0 = (k - tri[p, w]) / seg[w]
        t1 = (k + 1 - tri[p, w]) / seg[w]
        if t0 > t1:
            t0, t1 = t1, t0
        t0 = max(t0, 0.0)
        t1 = min(t1, 1.0)
        if t0 > t1:
            continue
        ua = tri[p, u] + seg[u] * t0
        ub = tri[p, u] + seg[u] * t1
        va = tri[p, v] + seg[v] * t0
        vb = tri[p, v] + seg[v] * t1
        a0 = max(lo[u], int(math.floor(min(ua, ub))) - 1)
        a1 = min(hi[u], int(math.floor(max(ua, ub))) + 1)
        b0 = max(lo[v], int(math.floor(min(va, vb))) - 1)
        b1 = min(hi[v], int(math.floor(max(va, vb))) + 1)
        for a in range(a0, a1 + 1):
            for b in range(b0, b1 + 1):
                i, j, kk = _cell(a, b, k, w)
                out, count = _emit(out, count, i, j, kk, tri)

    return out[:count]


@njit(cache=True)
def _owns_edge(dx: float, dy: float) -> bool:
    """
    Tie-break for samples lying exactly on an edge.

    Of the two opposite directions of a shared edge exactly one is owned, so
    a sample on a shared edge is counted by exactly one triangle.
    """
    return dy > 0.0 or (dy == 0.0 and dx < 0.0)


@njit(cache=True)
def _inside(
    px: float, py: float,
    sx: float, sy: float,
    ex: float, ey: float
) -> bool:
    dx = ex - sx
    dy = ey - sy
    # Evaluate from the lexicographically smaller endpoint so both triangles
    # sharing an edge compute the same value with opposite signs
    if ex < sx or (ex == sx and ey < sy):
        w = -((sx - ex) * (py - ey) - (sy - ey) * (px - ex))
    else:
        w = dx * (py - sy) - dy * (px - sx)
    return w > 0.0 or (w == 0.0 and _owns_edge(dx, dy))


@njit(cache=True)
def column_crossings(tri: np.ndarray, resolution: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Intersect the vertical lines through voxel centres with a triangle.

    The line of column (i, j) is x = i + 0.5, y = j + 0.5.

    Args:
        tri: (3, 3) float64 triangle in grid coordinates
        resolution: Grid resolution D

    Returns:
        Tuple of (columns, heights) where:
        - columns: (K, 2) int64 array of (i, j)
        - heights: (K,) float64 array of the z value of each crossing
    """
    ax, ay, az = tri[0, 0], tri[0, 1], tri[0, 2]
    bx, by, bz = tri[1, 0], tri[1, 1], tri[1, 2]
    qx, qy, qz = tri[2, 0], tri[2, 1], tri[2, 2]

    area = (bx - ax) * (qy - ay) - (by - ay) * (qx - ax)
    if area == 0.0:
        # Parallel to the columns, never crossed
        return np.empty((0, 2), dtype=np.int64), np.empty(0, dtype=np.float64)

    if area < 0.0:
        # Counter-clockwise in XY from here on
        bx, by, bz, qx, qy, qz = qx, qy, qz, bx, by, bz
        area = -area

    # Normal of the (possibly reordered) triangle; nz == area
    nx = (by - ay) * (qz - az) - (bz - az) * (qy - ay)
    ny = (bz - az) * (qx - ax) - (bx - ax) * (qz - az)

    i0 = max(0, int(math.ceil(min(ax, bx, qx) - 0.5)))
    i1 = min(resolution - 1, int(math.floor(max(ax, bx, qx) - 0.5)))
    j0 = max(0, int(math.ceil(min(ay, by, qy) - 0.5)))
    j1 = min(resolution - 1, int(math.floor(max(ay, by, qy) - 0.5)))

    if i1 < i0 or j1 < j0:
        return np.empty((0, 2), dtype=np.int64), np.empty(0, dtype=np.float64)

    size = (i1 - i0 + 1) * (j1 - j0 + 1)
    columns = np.empty((size, 2), dtype=np.int64)
    heights = np.empty(size, dtype=np.float64)
    count = 0

    for i in range(i0, i1 + 1):
        px = i + 0.5
        for j in range(j0, j1 + 1):
            py = j + 0.5
            if not _inside(px, py, ax, ay, bx, by):
                continue
            if not _inside(px, py, bx, by, qx, qy):
                continue
            if not _inside(px, py, qx, qy, ax, ay):
                continue
            columns[count, 0] = i
            columns[count, 1] = j
            heights[count] = az - (nx * (px - ax) + ny * (py - ay)) / area
            count += 1

    return columns[:count], heights[:count]
