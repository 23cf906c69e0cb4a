"""
Mesh Voxelizer
==============

Converts triangle meshes (glTF/GLB and other formats) into MagicaVoxel .vox scenes.

Key Features:
- Separating-axis triangle/voxel overlap tests with Numba JIT compilation
- Dense or sparse voxel storage
- Optional solid interior fill for watertight meshes
- Deterministic palette reduction to the 255 usable .vox colors
- Large grids split into 256^3 models placed by a scene graph

Example Usage:
    from mesh_voxelizer import MeshVoxelizer, ConversionConfig

    voxelizer = MeshVoxelizer(ConversionConfig(resolution=512, solid=True))
    voxelizer.load_mesh("model.glb")
    voxelizer.voxelize()
    voxelizer.export_vox("model.vox")
"""

__version__ = "1.0.0"

from .generator import MeshVoxelizer, ConversionConfig, convert
from .axes import CoordinateSystem
from .grid import GridTransform, compute_grid_transform
from .ingestion import TriangleMesh, MeshLoader, load_mesh
from .store import VoxelStore, DenseVoxelStore, SparseVoxelStore, create_store
from .voxelizer import Voxelizer, VoxelizationMode
from .color import Palette, ColorQuantizer, build_palette
from .chunking import Chunk, partition_chunks
from .exporters import VoxExporter, load_vox
from .errors import (
    VoxelizerError,
    InvalidGeometryError,
    DegenerateTriangleError,
    PaletteOverflowError,
    ExportIOError,
)

__all__ = [
    "MeshVoxelizer",
    "ConversionConfig",
    "convert",
    "CoordinateSystem",
    "GridTransform",
    "compute_grid_transform",
    "TriangleMesh",
    "MeshLoader",
    "load_mesh",
    "VoxelStore",
    "DenseVoxelStore",
    "SparseVoxelStore",
    "create_store",
    "Voxelizer",
    "VoxelizationMode",
    "Palette",
    "ColorQuantizer",
    "build_palette",
    "Chunk",
    "partition_chunks",
    "VoxExporter",
    "load_vox",
    "VoxelizerError",
    "InvalidGeometryError",
    "DegenerateTriangleError",
    "PaletteOverflowError",
    "ExportIOError",
]
