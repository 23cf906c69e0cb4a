"""
Voxel Storage

This module provides:
- VoxelStore: the storage contract shared by every backend
- DenseVoxelStore: flat D^3 arrays, O(1) access, only viable for small D
- SparseVoxelStore: dict of occupied voxels only

Memory consideration: a dense store keeps 5 bytes per cell, so D = 512
already needs ~640 MB while a sparse store grows with the surface area.

Colors are stored packed as uint32 (see color.pack_rgba). Both backends key
voxels by their C-order linear index (x * D + y) * D + z.
"""

from abc import ABC, abstractmethod
from typing import Optional, Tuple, Iterator, Union
import logging
import numpy as np

from .color import pack_rgba, unpack_rgba, to_rgba, ColorLike

logger = logging.getLogger(__name__)

# Dense stores above this resolution get a memory warning
DENSE_WARNING_RESOLUTION = 512

Coord = Tuple[int, int, int]
RGBA = Tuple[int, int, int, int]


def _packed_colors(colors: Union[int, np.ndarray, ColorLike], count: int) -> np.ndarray:
    """
    Normalize colors for a batch write to (count,) packed uint32.

    An int is one packed color, a tuple/list or uint8 vector is one RGB(A)
    color, a (count, 4) array holds RGBA rows and any other vector holds
    packed colors.
    """
    if isinstance(colors, (int, np.integer)):
        return np.full(count, colors, dtype=np.uint32)
    if isinstance(colors, (tuple, list)):
        return np.full(count, int(pack_rgba(to_rgba(colors))), dtype=np.uint32)

    colors = np.asarray(colors)
    if colors.ndim == 1 and colors.dtype == np.uint8:
        return np.full(count, int(pack_rgba(to_rgba(colors))), dtype=np.uint32)
    if colors.ndim == 2:
        packed = pack_rgba(colors)
    else:
        packed = colors.astype(np.uint32)
    if packed.shape != (count,):
        raise ValueError(f"Expected {count} colors, got shape {colors.shape}")
    return packed


class VoxelStore(ABC):
    """
    Mapping from voxel coordinates in [0, D)^3 to RGBA colors.

    Callers must not depend on iteration order.
    """

    def __init__(self, resolution: int):
        if resolution <= 0:
            raise ValueError(f"Resolution must be > 0, got {resolution}")
        self.resolution = int(resolution)

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Get grid dimensions (x, y, z)."""
        d = self.resolution
        return (d, d, d)

    def _index(self, coord: Coord) -> int:
        """Linear index of a coordinate; raises IndexError when out of range."""
        x, y, z = (int(c) for c in coord)
        d = self.resolution
        if not (0 <= x < d and 0 <= y < d and 0 <= z < d):
            raise IndexError(f"Voxel {coord} outside grid of resolution {d}")
        return (x * d + y) * d + z

    def _indices(self, coords: np.ndarray) -> np.ndarray:
        """Vectorized linear indices; raises IndexError when any is out of range."""
        coords = np.asarray(coords, dtype=np.int64).reshape(-1, 3)
        d = self.resolution
        if len(coords) and (coords.min() < 0 or coords.max() >= d):
            raise IndexError(f"Voxel coordinates outside grid of resolution {d}")
        return (coords[:, 0] * d + coords[:, 1]) * d + coords[:, 2]

    def _coords(self, indices: np.ndarray) -> np.ndarray:
        """Inverse of _indices."""
        return np.column_stack(
            np.unravel_index(np.asarray(indices, dtype=np.int64), self.shape)
        ).astype(np.int64).reshape(-1, 3)

    def set(self, coord: Coord, color: ColorLike):
        """
        Mark a voxel as occupied.

        Args:
            coord: (x, y, z) voxel coordinates
            color: RGB or RGBA color (0-255)
        """
        self._set_packed(self._index(coord), int(pack_rgba(to_rgba(color))))

    def get(self, coord: Coord) -> Optional[RGBA]:
        """
        Get the color of a voxel.

        Args:
            coord: (x, y, z) voxel coordinates

        Returns:
            RGBA tuple or None if the voxel is empty
        """
        packed = self._get_packed(self._index(coord))
        if packed is None:
            return None
        return tuple(int(c) for c in unpack_rgba(np.uint32(packed)))

    def __contains__(self, coord) -> bool:
        try:
            return self._get_packed(self._index(coord)) is not None
        except IndexError:
            return False

    def set_many(
        self,
        coords: np.ndarray,
        colors: Union[int, np.ndarray, ColorLike],
        overwrite: bool = True
    ):
        """
        Mark many voxels as occupied.

        Later entries win over earlier ones when coordinates repeat.

        Args:
            coords: Array of shape (N, 3) with voxel coordinates
            colors: One packed color, one RGB(A) color, or (N,) packed colors
            overwrite: If False, voxels that are already occupied keep their color
        """
        indices = self._indices(coords)
        if len(indices) == 0:
            return
        self._set_many_packed(indices, _packed_colors(colors, len(indices)), overwrite)

    def iterate(self) -> Iterator[Tuple[Coord, RGBA]]:
        """
        Iterate over all occupied voxels.

        Yields:
            Tuples of ((x, y, z), (r, g, b, a))
        """
        coords, colors = self.to_arrays()
        rgba = unpack_rgba(colors)
        for i in range(len(coords)):
            x, y, z = coords[i]
            r, g, b, a = rgba[i]
            yield (int(x), int(y), int(z)), (int(r), int(g), int(b), int(a))

    def to_arrays(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Export the occupied voxels as arrays.

        Voxels are ordered by linear index whatever the backend.

        Returns:
            Tuple of (coords, colors) where:
            - coords: Array of shape (N, 3) with int64 xyz indices
            - colors: Array of shape (N,) with packed uint32 colors
        """
        indices, colors = self._packed_items()
        return self._coords(indices), colors

    def count_voxels(self) -> int:
        """Count the number of occupied voxels."""
        return len(self)

    @property
    def occupied_bounds(self) -> Tuple[Coord, Coord]:
        """Get tight bounds (min, exclusive max) around occupied voxels."""
        coords, _ = self.to_arrays()
        if len(coords) == 0:
            return ((0, 0, 0), (0, 0, 0))
        lo = coords.min(axis=0)
        hi = coords.max(axis=0) + 1
        return (tuple(int(v) for v in lo), tuple(int(v) for v in hi))

    @abstractmethod
    def __len__(self) -> int:
        ...

    @abstractmethod
    def _set_packed(self, index: int, packed: int):
        ...

    @abstractmethod
    def _get_packed(self, index: int) -> Optional[int]:
        ...

    @abstractmethod
    def _set_many_packed(self, indices: np.ndarray, packed: np.ndarray, overwrite: bool):
        ...

    @abstractmethod
    def _packed_items(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return (linear_indices, packed_colors) of all occupied voxels, ascending by index."""


class DenseVoxelStore(VoxelStore):
    """
    Dense voxel storage backed by flat numpy arrays.

    Uses an occupancy mask next to the color array so that fully
    transparent colors are still distinguishable from empty space.
    """

    def __init__(self, resolution: int):
        super().__init__(resolution)
        if self.resolution > DENSE_WARNING_RESOLUTION:
            logger.warning(
                "Dense store at resolution %d needs %.1f GB; use a sparse store",
                self.resolution, 5 * self.resolution ** 3 / 1e9
            )
        cells = self.resolution ** 3
        self._colors = np.zeros(cells, dtype=np.uint32)
        self._mask = np.zeros(cells, dtype=bool)

    def __len__(self) -> int:
        return int(np.count_nonzero(self._mask))

    def _set_packed(self, index: int, packed: int):
        self._colors[index] = packed
        self._mask[index] = True

    def _get_packed(self, index: int) -> Optional[int]:
        if not self._mask[index]:
            return None
        return int(self._colors[index])

    def _set_many_packed(self, indices: np.ndarray, packed: np.ndarray, overwrite: bool):
        if overwrite:
            # Last writer wins for repeated indices
            indices, last = np.unique(indices[::-1], return_index=True)
            packed = packed[::-1][last]
        else:
            free = ~self._mask[indices]
            indices = indices[free]
            packed = packed[free]
            # First writer wins among the new entries as well
            indices, first = np.unique(indices, return_index=True)
            packed = packed[first]
        self._colors[indices] = packed
        self._mask[indices] = True

    def _packed_items(self) -> Tuple[np.ndarray, np.ndarray]:
        indices = np.flatnonzero(self._mask)
        return indices, self._colors[indices]

    @property
    def data(self) -> np.ndarray:
        """Get the packed colors as a (D, D, D) array (0 where empty)."""
        return np.where(self._mask, self._colors, 0).reshape(self.shape)

    @property
    def occupancy(self) -> np.ndarray:
        """Get the binary occupancy mask as a (D, D, D) array."""
        return self._mask.reshape(self.shape)


class SparseVoxelStore(VoxelStore):
    """
    Sparse voxel storage holding only occupied voxels.

    Memory grows with the number of occupied voxels, which for surface
    voxelization is proportional to D^2 rather than D^3.
    """

    def __init__(self, resolution: int):
        super().__init__(resolution)
        self._data = {}

    def __len__(self) -> int:
        return len(self._data)

    def _set_packed(self, index: int, packed: int):
        self._data[index] = packed

    def _get_packed(self, index: int) -> Optional[int]:
        return self._data.get(index)

    def _set_many_packed(self, indices: np.ndarray, packed: np.ndarray, overwrite: bool):
        items = zip(indices.tolist(), packed.tolist())
        if overwrite:
            self._data.update(items)
        else:
            data = self._data
            for index, color in items:
                data.setdefault(index, color)

    def _packed_items(self) -> Tuple[np.ndarray, np.ndarray]:
        count = len(self._data)
        indices = np.fromiter(self._data.keys(), dtype=np.int64, count=count)
        colors = np.fromiter(self._data.values(), dtype=np.uint32, count=count)
        order = np.argsort(indices, kind="stable")
        return indices[order], colors[order]


def create_store(resolution: int, sparse: bool = True) -> VoxelStore:
    """
    Create a voxel store.

    Args:
        resolution: Grid resolution D
        sparse: If True, use the sparse backend

    Returns:
        Empty VoxelStore
    """
    if sparse:
        return SparseVoxelStore(resolution)
    return DenseVoxelStore(resolution)
