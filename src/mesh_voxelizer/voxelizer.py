"""
Mesh Voxelization Engine

Converts a triangle soup into occupied voxels of a VoxelStore.

Triangles are written one at a time in input order. When two triangles
touch the same voxel the later one sets its color (last writer wins): only
the visible surface color matters, so no blending is attempted.

The optional solid fill assumes a watertight mesh. Each grid column along Z
is intersected with the surface; the spans between the 1st and 2nd, 3rd and
4th, ... crossing are interior. Columns with an odd number of crossings come
from holes in the mesh: their last crossing is dropped and the column is
counted in `open_columns`.
"""

from enum import Enum
from typing import Optional, List, Tuple
import logging
import numpy as np

from .color import pack_rgba, to_rgba, ColorLike
from .errors import DegenerateTriangleError
from .grid import GridTransform
from .ingestion import TriangleMesh
from .intersect import triangle_voxels, column_crossings
from .store import VoxelStore, create_store

logger = logging.getLogger(__name__)

# Grid coordinates beyond this magnitude overflow the integer kernels
_COORD_LIMIT = float(2 ** 31)


def _normal(tri: np.ndarray) -> np.ndarray:
    """Unnormalized triangle normal (counter-clockwise winding)."""
    return np.cross(tri[1] - tri[0], tri[2] - tri[0])


class VoxelizationMode(Enum):
    """What part of each triangle gets voxelized."""
    TRIANGLES = "triangles"     # Full surface
    LINES = "lines"             # Wireframe of the triangle edges
    POINTS = "points"           # Vertices only


class Voxelizer:
    """
    Engine for converting triangle meshes to voxel stores.

    The voxelizer handles:
    - Mapping vertices into grid space
    - Triangle / voxel overlap tests
    - Optional interior fill
    """

    def __init__(
        self,
        transform: GridTransform,
        store: Optional[VoxelStore] = None,
        mode: VoxelizationMode = VoxelizationMode.TRIANGLES,
        solid: bool = False,
        fill_color: Optional[ColorLike] = None
    ):
        """
        Initialize the voxelizer.

        Args:
            transform: World to grid mapping
            store: Target store (a sparse store is created if None)
            mode: Voxelization mode
            solid: If True, fill the interior of closed meshes
            fill_color: Constant interior color; if None the interior takes
                the color of the surface where the column enters the mesh
        """
        self.transform = transform
        self.store = store if store is not None else create_store(transform.resolution)
        if self.store.resolution != transform.resolution:
            raise ValueError(
                f"Store resolution {self.store.resolution} does not match "
                f"grid resolution {transform.resolution}"
            )
        self.mode = VoxelizationMode(mode)
        self.solid = solid
        self.fill_color = to_rgba(fill_color) if fill_color is not None else None

        self.skipped_triangles = 0
        self.open_columns = 0
        self.filled_voxels = 0

    @property
    def resolution(self) -> int:
        return self.transform.resolution

    def voxelize(self, mesh: TriangleMesh) -> VoxelStore:
        """
        Voxelize all triangles of a mesh into the store.

        Args:
            mesh: Triangle soup with per-triangle colors

        Returns:
            The populated store
        """
        grid_triangles = self.transform.to_grid(mesh.triangles)
        packed = pack_rgba(mesh.colors)

        accepted = np.ones(len(grid_triangles), dtype=bool)

        for index in range(len(grid_triangles)):
            tri = grid_triangles[index]
            try:
                self._check_triangle(index, tri)
            except DegenerateTriangleError as e:
                logger.warning("Skipping triangle: %s", e)
                self.skipped_triangles += 1
                accepted[index] = False
                continue

            if self.mode == VoxelizationMode.TRIANGLES:
                coords = self._triangle_voxels(tri)
            elif self.mode == VoxelizationMode.LINES:
                coords = self._edge_voxels(tri)
            else:
                coords = self._point_voxels(tri)

            self.store.set_many(coords, int(packed[index]))

        if self.skipped_triangles:
            logger.warning(
                "Skipped %d of %d triangles with invalid coordinates",
                self.skipped_triangles, len(grid_triangles)
            )

        if self.solid:
            self._fill_interior(grid_triangles[accepted], packed[accepted])

        logger.info(
            "Voxelized %d triangles into %d voxels at resolution %d",
            int(accepted.sum()), len(self.store), self.resolution
        )
        return self.store

    def _check_triangle(self, index: int, tri: np.ndarray):
        """
        Reject triangles the integer kernels cannot handle.

        Raises:
            DegenerateTriangleError: On NaN/infinite or overflowing coordinates
        """
        if not np.all(np.isfinite(tri)):
            raise DegenerateTriangleError(
                f"Triangle {index} has non-finite coordinates at resolution "
                f"{self.resolution}",
                index, self.resolution
            )
        if np.any(np.abs(tri) >= _COORD_LIMIT):
            raise DegenerateTriangleError(
                f"Triangle {index} overflows the grid at resolution {self.resolution}",
                index, self.resolution
            )

    def _candidate_range(
        self,
        tri: np.ndarray,
        normal: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Voxel range covered by the triangle bounding box, clamped to the grid.

        Voxels that only touch the bounding box from outside are excluded.
        A triangle lying exactly on a voxel boundary selects the voxel behind
        its face (opposite to the normal), so the faces of a closed mesh
        with outward normals stay inside the mesh bounds.
        """
        lo = np.floor(tri.min(axis=0))
        hi = np.ceil(tri.max(axis=0)) - 1

        flat = hi < lo
        if np.any(flat):
            behind = flat & (normal > 0)
            lo[behind] = hi[behind]
            hi[flat & ~behind] = lo[flat & ~behind]

        top = self.resolution - 1
        return (
            np.clip(lo, 0, top).astype(np.int64),
            np.clip(hi, 0, top).astype(np.int64)
        )

    def _triangle_voxels(self, tri: np.ndarray) -> np.ndarray:
        lo, hi = self._candidate_range(tri, _normal(tri))
        return triangle_voxels(np.ascontiguousarray(tri), lo, hi)

    def _edge_voxels(self, tri: np.ndarray) -> np.ndarray:
        """Voxelize the three edges as degenerate triangles."""
        normal = _normal(tri)
        parts = []
        for a, b in ((0, 1), (1, 2), (2, 0)):
            segment = np.ascontiguousarray(tri[[a, b, b]])
            lo, hi = self._candidate_range(segment, normal)
            parts.append(triangle_voxels(segment, lo, hi))
        return np.concatenate(parts)

    def _point_voxels(self, tri: np.ndarray) -> np.ndarray:
        return np.clip(np.floor(tri), 0, self.resolution - 1).astype(np.int64)

    def _fill_interior(self, triangles: np.ndarray, packed: np.ndarray):
        """
        Mark interior voxels using crossing parity along the Z axis.

        Args:
            triangles: (N, 3, 3) accepted triangles in grid coordinates
            packed: (N,) packed triangle colors
        """
        d = self.resolution
        column_parts: List[np.ndarray] = []
        height_parts: List[np.ndarray] = []
        color_parts: List[np.ndarray] = []

        for index in range(len(triangles)):
            columns, heights = column_crossings(
                np.ascontiguousarray(triangles[index]), d
            )
            if len(heights) == 0:
                continue
            column_parts.append(columns)
            height_parts.append(heights)
            color_parts.append(np.full(len(heights), packed[index], dtype=np.uint32))

        if not height_parts:
            logger.info("Solid fill found no surface crossings")
            return

        columns = np.concatenate(column_parts)
        heights = np.concatenate(height_parts)
        colors = np.concatenate(color_parts)

        # Sort crossings by column, then by height
        key = columns[:, 0] * d + columns[:, 1]
        order = np.lexsort((heights, key))
        key = key[order]
        heights = heights[order]
        colors = colors[order]

        # Rank of each crossing within its column
        starts = np.flatnonzero(np.r_[True, key[1:] != key[:-1]])
        counts = np.diff(np.r_[starts, len(key)])
        rank = np.arange(len(key)) - np.repeat(starts, counts)
        usable = np.repeat(counts - counts % 2, counts)

        self.open_columns = int(np.count_nonzero(counts % 2))
        if self.open_columns:
            logger.warning(
                "%d columns cross the surface an odd number of times; "
                "the mesh is not watertight and the fill is partial",
                self.open_columns
            )

        keep = rank < usable
        key = key[keep]
        heights = heights[keep]
        colors = colors[keep]

        entry_key = key[0::2]
        z_in = heights[0::2]
        z_out = heights[1::2]
        span_colors = colors[0::2]

        # Voxels whose centre lies within [z_in, z_out]
        first = np.maximum(np.ceil(z_in - 0.5), 0).astype(np.int64)
        last = np.minimum(np.floor(z_out - 0.5), d - 1).astype(np.int64)
        lengths = np.maximum(last - first + 1, 0)

        total = int(lengths.sum())
        if total == 0:
            return

        span_start = np.repeat(np.cumsum(lengths) - lengths, lengths)
        z = np.repeat(first, lengths) + (np.arange(total) - span_start)
        column = np.repeat(entry_key, lengths)
        coords = np.column_stack([column // d, column % d, z])

        if self.fill_color is not None:
            fill = int(pack_rgba(self.fill_color))
        else:
            fill = np.repeat(span_colors, lengths)

        before = len(self.store)
        self.store.set_many(coords, fill, overwrite=False)
        self.filled_voxels = len(self.store) - before

        logger.info("Solid fill added %d interior voxels", self.filled_voxels)


def voxelize_mesh(
    mesh: TriangleMesh,
    transform: GridTransform,
    sparse: bool = True,
    mode: VoxelizationMode = VoxelizationMode.TRIANGLES,
    solid: bool = False,
    fill_color: Optional[ColorLike] = None
) -> VoxelStore:
    """
    Voxelize a mesh into a new store.

    Args:
        mesh: Triangle soup with per-triangle colors
        transform: World to grid mapping
        sparse: Store backend selection
        mode: Voxelization mode
        solid: Fill the interior
        fill_color: Constant interior color

    Returns:
        Populated VoxelStore
    """
    store = create_store(transform.resolution, sparse=sparse)
    voxelizer = Voxelizer(transform, store, mode=mode, solid=solid, fill_color=fill_color)
    return voxelizer.voxelize(mesh)
