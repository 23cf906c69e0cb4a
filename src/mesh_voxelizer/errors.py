"""
Error Taxonomy

Failures raised by the voxelization pipeline. Only DegenerateTriangleError is
recovered from (the triangle is skipped); every other error aborts the run.
"""

from pathlib import Path
from typing import Optional, Tuple, Union


class VoxelizerError(Exception):
    """Base class for all pipeline failures."""


class InvalidGeometryError(VoxelizerError, ValueError):
    """The mesh bounding box is empty, degenerate or not finite."""

    def __init__(
        self,
        message: str,
        bounds: Optional[Tuple[tuple, tuple]] = None,
        resolution: Optional[int] = None
    ):
        super().__init__(message)
        self.bounds = bounds
        self.resolution = resolution


class DegenerateTriangleError(VoxelizerError, ValueError):
    """A single triangle has NaN/infinite or overflowing coordinates."""

    def __init__(self, message: str, triangle_index: int, resolution: int):
        super().__init__(message)
        self.triangle_index = triangle_index
        self.resolution = resolution


class PaletteOverflowError(VoxelizerError, RuntimeError):
    """Palette reduction left more colors than the format can hold."""

    def __init__(self, message: str, color_count: int):
        super().__init__(message)
        self.color_count = color_count


class ExportIOError(VoxelizerError, OSError):
    """Writing the output file failed; no output file is left behind."""

    def __init__(self, message: str, path: Union[str, Path]):
        super().__init__(message)
        self.path = Path(path)
