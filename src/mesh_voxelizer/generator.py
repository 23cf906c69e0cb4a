"""
Main MeshVoxelizer Class

This is the primary interface for the mesh to .vox pipeline.
It orchestrates:
1. Mesh loading and flattening
2. Grid mapping
3. Voxelization (surface, optional solid fill)
4. Palette building
5. Chunk partitioning and .vox export

Example Usage:
    voxelizer = MeshVoxelizer(ConversionConfig(resolution=512))
    voxelizer.load_mesh("model.glb")
    voxelizer.voxelize()
    voxelizer.export_vox("model.vox")
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Union, Optional, List, Tuple
import logging
import time
import numpy as np

from .axes import CoordinateSystem, get_coordinate_transform
from .chunking import Chunk, partition_chunks
from .color import Palette, ColorQuantizer, PALETTE_METHODS, to_rgba
from .exporters import VoxExporter
from .grid import GridTransform, compute_grid_transform, validate_resolution, DEFAULT_RESOLUTION
from .ingestion import MeshLoader, TriangleMesh
from .store import VoxelStore, create_store
from .voxelizer import Voxelizer, VoxelizationMode

logger = logging.getLogger(__name__)


@dataclass
class ConversionConfig:
    """
    Settings for one conversion run.

    Attributes:
        resolution: Voxels along the longest mesh axis
        sparse: Use the sparse store (the dense one is only viable for small grids)
        solid: Fill the interior of watertight meshes
        fill_color: Constant interior color, None to use the surface color
        mode: Voxelization mode
        palette_method: "merge", "rgb332" or "kmeans"
        up_axis: Up axis of the input mesh; Y-up input is rotated to Z-up
        workers: Mesh loader threads
    """
    resolution: int = DEFAULT_RESOLUTION
    sparse: bool = True
    solid: bool = False
    fill_color: Optional[Tuple[int, ...]] = None
    mode: VoxelizationMode = VoxelizationMode.TRIANGLES
    palette_method: str = "merge"
    up_axis: CoordinateSystem = CoordinateSystem.GLTF
    workers: int = 1

    def __post_init__(self):
        self.resolution = validate_resolution(self.resolution)
        self.mode = VoxelizationMode(self.mode)
        self.up_axis = CoordinateSystem(self.up_axis)
        if self.fill_color is not None:
            self.fill_color = to_rgba(self.fill_color)
        if self.palette_method not in PALETTE_METHODS:
            raise ValueError(
                f"Unknown palette method {self.palette_method!r}, "
                f"expected one of {', '.join(PALETTE_METHODS)}"
            )
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")


class MeshVoxelizer:
    """
    High-level interface for mesh voxelization.

    Attributes:
        config: Conversion settings
        mesh: The loaded mesh, in MagicaVoxel (Z-up) orientation
        transform: World to grid mapping
        store: The current voxel store
        palette: The current palette
        chunks: The current .vox models
    """

    def __init__(self, config: Optional[ConversionConfig] = None):
        """
        Initialize the MeshVoxelizer.

        Args:
            config: Conversion settings (defaults if None)
        """
        self.config = config if config is not None else ConversionConfig()

        self._mesh: Optional[TriangleMesh] = None
        self._geometry_count = 0
        self._transform: Optional[GridTransform] = None
        self._voxelizer: Optional[Voxelizer] = None
        self._store: Optional[VoxelStore] = None
        self._palette: Optional[Palette] = None
        self._slots: Optional[np.ndarray] = None
        self._coords: Optional[np.ndarray] = None
        self._chunks: Optional[List[Chunk]] = None
        self._timings = {}

    def load_mesh(self, mesh_path: Union[str, Path]) -> "MeshVoxelizer":
        """
        Load a mesh file.

        Args:
            mesh_path: Path to the mesh (glTF/GLB recommended)

        Returns:
            self for method chaining
        """
        start = time.perf_counter()
        loader = MeshLoader(workers=self.config.workers).load(mesh_path)
        self._set_mesh(loader.mesh, loader.geometry_count)
        self._timed("load", start)
        return self

    def load_triangles(
        self,
        triangles: np.ndarray,
        colors: Optional[np.ndarray] = None
    ) -> "MeshVoxelizer":
        """
        Load a triangle soup from arrays.

        Args:
            triangles: (N, 3, 3) vertex positions in the configured up-axis convention
            colors: Optional (N, 4) uint8 colors

        Returns:
            self for method chaining
        """
        self._set_mesh(TriangleMesh.from_triangles(triangles, colors), 1)
        return self

    def _set_mesh(self, mesh: TriangleMesh, geometry_count: int):
        matrix = get_coordinate_transform(self.config.up_axis, CoordinateSystem.MAGICAVOXEL)
        if not np.array_equal(matrix, np.eye(3)):
            mesh = mesh.transformed(matrix)
        self._mesh = mesh
        self._geometry_count = geometry_count
        self._transform = None
        self._store = None
        self._voxelizer = None
        self._palette = None
        self._chunks = None
        self._slots = None
        self._coords = None

    def voxelize(self) -> "MeshVoxelizer":
        """
        Convert the loaded mesh to voxels.

        Returns:
            self for method chaining
        """
        if self._mesh is None:
            raise RuntimeError("No mesh loaded. Call load_mesh() first.")

        start = time.perf_counter()
        self._transform = compute_grid_transform(
            self._mesh.bounds_min, self._mesh.bounds_max, self.config.resolution
        )
        self._voxelizer = Voxelizer(
            self._transform,
            create_store(self.config.resolution, sparse=self.config.sparse),
            mode=self.config.mode,
            solid=self.config.solid,
            fill_color=self.config.fill_color
        )
        self._store = self._voxelizer.voxelize(self._mesh)
        self._palette = None
        self._slots = None
        self._coords = None
        self._chunks = None
        self._timed("voxelize", start)
        return self

    def build_palette(self) -> "MeshVoxelizer":
        """
        Reduce the voxel colors to a .vox palette.

        Returns:
            self for method chaining
        """
        if self._store is None:
            raise RuntimeError("No voxels. Call voxelize() first.")

        start = time.perf_counter()
        coords, colors = self._store.to_arrays()
        quantizer = ColorQuantizer(method=self.config.palette_method)
        self._palette, self._slots = quantizer.build_palette(colors)
        self._coords = coords
        self._chunks = None
        logger.info("Built %d-color palette (%s)", len(self._palette), self.config.palette_method)
        self._timed("palette", start)
        return self

    def partition(self) -> "MeshVoxelizer":
        """
        Split the voxels into .vox models.

        Returns:
            self for method chaining
        """
        if self._palette is None:
            self.build_palette()

        start = time.perf_counter()
        self._chunks = partition_chunks(self._coords, self._slots, self.config.resolution)
        self._timed("partition", start)
        return self

    def encode(self) -> bytes:
        """Serialize the current voxels to .vox bytes."""
        if self._chunks is None:
            self.partition()
        return VoxExporter().encode(self._palette, self._chunks)

    def export_vox(self, output_path: Union[str, Path]) -> Path:
        """
        Export to MagicaVoxel .vox format.

        Args:
            output_path: Output file path

        Returns:
            The written path
        """
        if self._store is None:
            raise RuntimeError("No voxels. Call voxelize() first.")
        if self._chunks is None:
            self.partition()

        start = time.perf_counter()
        path = VoxExporter().export(self._palette, self._chunks, output_path)
        self._timed("export", start)
        return path

    def _timed(self, stage: str, start: float):
        self._timings[stage] = time.perf_counter() - start
        logger.debug("%s took %.3fs", stage, self._timings[stage])

    @property
    def mesh(self) -> Optional[TriangleMesh]:
        """Get the loaded mesh."""
        return self._mesh

    @property
    def transform(self) -> Optional[GridTransform]:
        """Get the world to grid mapping."""
        return self._transform

    @property
    def store(self) -> Optional[VoxelStore]:
        """Get the current voxel store."""
        return self._store

    @property
    def palette(self) -> Optional[Palette]:
        """Get the current palette."""
        return self._palette

    @property
    def chunks(self) -> Optional[List[Chunk]]:
        """Get the current .vox models."""
        return self._chunks

    @property
    def voxel_count(self) -> int:
        """Get the number of occupied voxels."""
        if self._store is None:
            return 0
        return self._store.count_voxels()

    @property
    def triangle_count(self) -> int:
        """Get the number of input triangles."""
        if self._mesh is None:
            return 0
        return len(self._mesh)

    def get_stats(self) -> dict:
        """
        Get statistics about the current run.

        Returns:
            Dictionary with run statistics
        """
        stats = {
            "triangles": self.triangle_count,
            "geometries": self._geometry_count,
            "resolution": self.config.resolution,
            "voxels": self.voxel_count,
        }

        if self._transform is not None:
            stats["voxel_size"] = self._transform.voxel_size

        if self._voxelizer is not None:
            stats["skipped_triangles"] = self._voxelizer.skipped_triangles
            if self.config.solid:
                stats["filled_voxels"] = self._voxelizer.filled_voxels
                stats["open_columns"] = self._voxelizer.open_columns

        if self._palette is not None:
            stats["palette_colors"] = len(self._palette)

        if self._chunks is not None:
            stats["chunks"] = len(self._chunks)

        stats["timings"] = dict(self._timings)
        return stats


def convert(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    config: Optional[ConversionConfig] = None
) -> MeshVoxelizer:
    """
    Convert a mesh file to a .vox file.

    Args:
        input_path: Mesh file
        output_path: Output .vox path
        config: Conversion settings

    Returns:
        The MeshVoxelizer used, for statistics
    """
    voxelizer = MeshVoxelizer(config)
    voxelizer.load_mesh(input_path)
    voxelizer.voxelize()
    voxelizer.export_vox(output_path)
    return voxelizer
