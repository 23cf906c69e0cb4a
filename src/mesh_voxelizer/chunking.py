"""
Chunk partitioning for the .vox model size limit.

A single .vox model holds at most 256 voxels per axis, so larger grids are
split into 256^3 tiles. Each tile becomes one model; its offset is placed in
the scene graph by the exporter.
"""

from dataclasses import dataclass
from typing import List, Tuple
import logging
import numpy as np

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256


@dataclass
class Chunk:
    """
    One .vox model.

    Attributes:
        offset: Grid position of the local origin, multiples of the chunk size
        size: Model dimensions, each <= 256
        voxels: (K, 4) uint8 array of local (x, y, z, palette_slot)
    """
    offset: Tuple[int, int, int]
    size: Tuple[int, int, int]
    voxels: np.ndarray

    def __len__(self) -> int:
        return len(self.voxels)

    def to_global(self) -> np.ndarray:
        """Get the voxel coordinates in grid space as (K, 3) int64."""
        return self.voxels[:, :3].astype(np.int64) + np.asarray(self.offset, dtype=np.int64)


def partition_chunks(
    coords: np.ndarray,
    slots: np.ndarray,
    resolution: int,
    chunk_size: int = CHUNK_SIZE
) -> List[Chunk]:
    """
    Split occupied voxels into chunks.

    Args:
        coords: (N, 3) voxel coordinates in [0, resolution)
        slots: (N,) palette slots (1-255)
        resolution: Grid resolution D
        chunk_size: Tile edge length (at most 256)

    Returns:
        Chunks ordered by offset (x, then y, then z). A grid that fits in one
        tile always gives exactly one chunk, even when empty; otherwise empty
        tiles are omitted.
    """
    if not 1 <= chunk_size <= CHUNK_SIZE:
        raise ValueError(f"chunk_size must be in [1, {CHUNK_SIZE}], got {chunk_size}")

    coords = np.asarray(coords, dtype=np.int64).reshape(-1, 3)
    slots = np.asarray(slots, dtype=np.uint8).reshape(-1)
    if len(coords) != len(slots):
        raise ValueError(f"Got {len(coords)} coordinates but {len(slots)} palette slots")
    if len(coords) and (coords.min() < 0 or coords.max() >= resolution):
        raise IndexError(f"Voxel coordinates outside grid of resolution {resolution}")

    if resolution <= chunk_size:
        voxels = np.column_stack([coords, slots]).astype(np.uint8).reshape(-1, 4)
        return [Chunk((0, 0, 0), (resolution, resolution, resolution), voxels)]

    tiles = coords // chunk_size
    tiles_per_axis = -(-resolution // chunk_size)
    tile_key = (tiles[:, 0] * tiles_per_axis + tiles[:, 1]) * tiles_per_axis + tiles[:, 2]

    order = np.argsort(tile_key, kind="stable")
    tile_key = tile_key[order]
    coords = coords[order]
    slots = slots[order]

    keys, starts = np.unique(tile_key, return_index=True)
    ends = np.r_[starts[1:], len(tile_key)]

    chunks = []
    for key, start, end in zip(keys, starts, ends):
        tile = np.unravel_index(key, (tiles_per_axis,) * 3)
        offset = tuple(int(t) * chunk_size for t in tile)
        size = tuple(min(chunk_size, resolution - o) for o in offset)
        local = coords[start:end] - np.asarray(offset, dtype=np.int64)
        voxels = np.column_stack([local, slots[start:end]]).astype(np.uint8)
        chunks.append(Chunk(offset, size, voxels))

    logger.info(
        "Partitioned %d voxels into %d chunks (at most %d)",
        len(coords), len(chunks), tiles_per_axis ** 3
    )
    return chunks
