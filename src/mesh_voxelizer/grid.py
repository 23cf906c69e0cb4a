"""
Grid Mapping

Computes the cubic voxel-space transform for a target resolution D.

The longest axis of the mesh bounding box maps to exactly D voxels. The other
two axes use the same voxel size (no anisotropic distortion) and are centred
inside the D^3 cube.
"""

from dataclasses import dataclass
from typing import Tuple
import logging
import numpy as np

from .errors import InvalidGeometryError

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTION = 1022

# ceil(4094 / 256) = 16 chunks per axis keeps scene offsets inside the
# coordinate range MagicaVoxel accepts
MAX_RESOLUTION = 4094


@dataclass(frozen=True)
class GridTransform:
    """
    Mapping between world space and voxel grid space.

    Grid space is continuous: voxel (i, j, k) covers [i, i+1) x [j, j+1) x [k, k+1).
    """

    origin: Tuple[float, float, float]
    voxel_size: float
    resolution: int

    def to_grid(self, points: np.ndarray) -> np.ndarray:
        """Map world-space points (..., 3) to continuous grid coordinates."""
        origin = np.asarray(self.origin, dtype=np.float64)
        return (np.asarray(points, dtype=np.float64) - origin) / self.voxel_size

    def to_world(self, coords: np.ndarray) -> np.ndarray:
        """Map voxel indices (..., 3) to the world-space centre of each voxel."""
        origin = np.asarray(self.origin, dtype=np.float64)
        return origin + (np.asarray(coords, dtype=np.float64) + 0.5) * self.voxel_size

    @property
    def extent(self) -> float:
        """World-space edge length of the whole cube."""
        return self.voxel_size * self.resolution


def validate_resolution(resolution: int) -> int:
    """Check that a resolution is a positive integer within the format limits."""
    if isinstance(resolution, bool) or not isinstance(resolution, (int, np.integer)):
        raise TypeError(f"Resolution must be an integer, got {resolution!r}")
    if resolution <= 0:
        raise ValueError(f"Resolution must be > 0, got {resolution}")
    if resolution > MAX_RESOLUTION:
        raise ValueError(
            f"Resolution {resolution} exceeds the maximum of {MAX_RESOLUTION}"
        )
    return int(resolution)


def compute_grid_transform(
    bounds_min: np.ndarray,
    bounds_max: np.ndarray,
    resolution: int = DEFAULT_RESOLUTION
) -> GridTransform:
    """
    Compute the voxel grid transform for a mesh bounding box.

    Args:
        bounds_min: Minimum corner of the mesh bounding box
        bounds_max: Maximum corner of the mesh bounding box
        resolution: Number of voxels along the longest axis

    Returns:
        GridTransform for the mesh

    Raises:
        InvalidGeometryError: If the bounding box is empty or not finite
    """
    resolution = validate_resolution(resolution)

    bounds_min = np.asarray(bounds_min, dtype=np.float64).reshape(3)
    bounds_max = np.asarray(bounds_max, dtype=np.float64).reshape(3)
    bounds = (tuple(bounds_min.tolist()), tuple(bounds_max.tolist()))

    if not (np.all(np.isfinite(bounds_min)) and np.all(np.isfinite(bounds_max))):
        raise InvalidGeometryError(
            f"Mesh bounds are not finite: {bounds}", bounds, resolution
        )

    extent = bounds_max - bounds_min
    if np.any(extent < 0):
        raise InvalidGeometryError(
            f"Mesh bounds are inverted: {bounds}", bounds, resolution
        )

    longest = float(extent.max())
    if longest <= 0.0:
        raise InvalidGeometryError(
            f"Mesh has zero extent on every axis: {bounds}", bounds, resolution
        )

    voxel_size = longest / resolution

    # Centre the shorter axes; the longest axis gets zero padding
    padding = (resolution * voxel_size - extent) / 2.0
    origin = bounds_min - padding

    logger.debug(
        "Grid transform: origin=%s voxel_size=%g resolution=%d",
        origin.tolist(), voxel_size, resolution
    )

    return GridTransform(
        origin=tuple(float(v) for v in origin),
        voxel_size=voxel_size,
        resolution=resolution
    )
