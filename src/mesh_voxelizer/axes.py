"""
Coordinate Systems

glTF scenes are Y-up, MagicaVoxel scenes are Z-up. Both are right-handed, so
the conversion is a rotation about X rather than a plain axis swap (a swap
would mirror the model).

Coordinate Systems:
- GLTF: Right-handed, Y-up (+X Right, +Y Up, +Z Front)
- MAGICAVOXEL: Right-handed, Z-up (+X Right, +Y Back, +Z Up)
"""

from enum import Enum
import numpy as np


class CoordinateSystem(Enum):
    """Up-axis convention of a vertex array."""
    GLTF = "y"           # Y-up
    MAGICAVOXEL = "z"    # Z-up


def get_coordinate_transform(
    source: CoordinateSystem,
    target: CoordinateSystem
) -> np.ndarray:
    """
    Get the 3x3 transformation matrix between coordinate systems.

    Args:
        source: Source coordinate system
        target: Target coordinate system

    Returns:
        3x3 rotation matrix
    """
    if source == target:
        return np.eye(3, dtype=np.float64)

    # Y-up to Z-up: x' = x, y' = -z, z' = y
    gltf_to_magicavoxel = np.array([
        [1, 0, 0],
        [0, 0, -1],
        [0, 1, 0]
    ], dtype=np.float64)

    if (source, target) == (CoordinateSystem.GLTF, CoordinateSystem.MAGICAVOXEL):
        return gltf_to_magicavoxel

    # Rotation, so the inverse is the transpose
    if (source, target) == (CoordinateSystem.MAGICAVOXEL, CoordinateSystem.GLTF):
        return gltf_to_magicavoxel.T

    raise ValueError(f"No transform defined from {source} to {target}")


def transform_vertices(
    vertices: np.ndarray,
    source: CoordinateSystem,
    target: CoordinateSystem
) -> np.ndarray:
    """
    Transform an array of points between coordinate systems.

    Args:
        vertices: Array of shape (..., 3) containing positions
        source: Source coordinate system
        target: Target coordinate system

    Returns:
        Transformed array with the same shape
    """
    matrix = get_coordinate_transform(source, target)
    return np.asarray(vertices, dtype=np.float64) @ matrix.T
