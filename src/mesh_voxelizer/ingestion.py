"""
Mesh Ingestion Module

This module handles:
- Loading glTF/GLB (and any other format trimesh reads) into a flat triangle soup
- Applying scene graph transforms to every geometry instance
- Resolving one RGBA color per triangle from textures, materials or colors
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union
import logging
import numpy as np
import trimesh
from PIL import Image

from .errors import InvalidGeometryError

logger = logging.getLogger(__name__)

# Color of triangles without any material or color information
DEFAULT_COLOR = (200, 200, 200, 255)


@dataclass(frozen=True)
class TriangleMesh:
    """
    Triangle soup with one color per triangle.

    Attributes:
        triangles: (N, 3, 3) float64 vertex positions
        colors: (N, 4) uint8 RGBA colors
        bounds_min: (3,) minimum corner over all finite vertices
        bounds_max: (3,) maximum corner over all finite vertices
    """
    triangles: np.ndarray
    colors: np.ndarray
    bounds_min: np.ndarray
    bounds_max: np.ndarray

    def __len__(self) -> int:
        return len(self.triangles)

    @classmethod
    def from_triangles(
        cls,
        triangles: np.ndarray,
        colors: Optional[np.ndarray] = None
    ) -> "TriangleMesh":
        """
        Build a read-only mesh from triangle positions.

        Args:
            triangles: (N, 3, 3) vertex positions
            colors: (N, 4) or (N, 3) uint8 colors, a single color, or None for
                    the default color

        Returns:
            TriangleMesh with computed bounds

        Raises:
            InvalidGeometryError: If there are no finite vertices
        """
        triangles = np.array(triangles, dtype=np.float64).reshape(-1, 3, 3)
        colors = _normalize_colors(colors, len(triangles))

        vertices = triangles.reshape(-1, 3)
        finite = vertices[np.all(np.isfinite(vertices), axis=1)]
        if len(finite) == 0:
            raise InvalidGeometryError("Mesh has no finite vertices")

        bounds_min = finite.min(axis=0)
        bounds_max = finite.max(axis=0)

        for array in (triangles, colors, bounds_min, bounds_max):
            array.setflags(write=False)

        return cls(triangles, colors, bounds_min, bounds_max)

    @classmethod
    def from_arrays(
        cls,
        vertices: np.ndarray,
        faces: np.ndarray,
        colors: Optional[np.ndarray] = None
    ) -> "TriangleMesh":
        """Build a mesh from indexed vertices and faces."""
        vertices = np.asarray(vertices, dtype=np.float64)
        faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)
        return cls.from_triangles(vertices[faces], colors)

    def transformed(self, matrix: np.ndarray) -> "TriangleMesh":
        """Get a copy with every vertex multiplied by a 3x3 matrix."""
        return TriangleMesh.from_triangles(self.triangles @ np.asarray(matrix).T, self.colors)


def _normalize_colors(colors, count: int) -> np.ndarray:
    """Broadcast colors to a fresh (count, 4) uint8 array."""
    if colors is None:
        return np.tile(np.array(DEFAULT_COLOR, dtype=np.uint8), (count, 1))

    colors = np.asarray(colors)
    if colors.ndim == 1:
        colors = np.tile(colors, (count, 1))
    if colors.ndim != 2 or len(colors) != count or colors.shape[1] not in (3, 4):
        raise ValueError(f"Expected {count} RGB or RGBA colors, got shape {colors.shape}")
    if colors.shape[1] == 3:
        colors = np.column_stack([colors, np.full(count, 255)])
    return np.clip(colors, 0, 255).astype(np.uint8)


def sample_texture(image: Image.Image, uv: np.ndarray) -> np.ndarray:
    """
    Sample an image at UV coordinates with nearest-neighbor lookup.

    UVs wrap (repeat); v = 0 is the bottom row of the image.

    Args:
        image: PIL image
        uv: (N, 2) texture coordinates

    Returns:
        (N, 4) uint8 RGBA samples
    """
    pixels = np.array(image.convert("RGBA"), dtype=np.uint8)
    h, w = pixels.shape[:2]

    uv = np.mod(np.nan_to_num(np.asarray(uv, dtype=np.float64)), 1.0)
    cols = np.clip(np.rint(uv[:, 0] * (w - 1)), 0, w - 1).astype(np.int64)
    rows = np.clip(np.rint((1.0 - uv[:, 1]) * (h - 1)), 0, h - 1).astype(np.int64)

    return pixels[rows, cols]


def face_colors(geometry: trimesh.Trimesh) -> np.ndarray:
    """
    Resolve one RGBA color per face of a trimesh geometry.

    Textured meshes are sampled at the UV centroid of every face and
    multiplied by the material base color. Untextured materials use their
    main color; color visuals use the per-face colors.

    Args:
        geometry: Source mesh

    Returns:
        (F, 4) uint8 RGBA colors
    """
    count = len(geometry.faces)
    visual = geometry.visual

    if isinstance(visual, trimesh.visual.TextureVisuals):
        material = visual.material
        image = getattr(material, "baseColorTexture", None)
        if image is None:
            image = getattr(material, "image", None)

        factor = getattr(material, "baseColorFactor", None)
        if factor is None:
            factor = np.array([255, 255, 255, 255])
        factor = np.asarray(factor, dtype=np.float64).reshape(-1)
        if len(factor) == 3:
            factor = np.append(factor, 255.0)

        if image is not None and visual.uv is not None and len(visual.uv) == len(geometry.vertices):
            centroids = np.asarray(visual.uv, dtype=np.float64)[geometry.faces].mean(axis=1)
            texels = sample_texture(image, centroids).astype(np.float64)
            return np.clip(np.rint(texels * factor / 255.0), 0, 255).astype(np.uint8)

        if material is not None:
            return _normalize_colors(np.asarray(material.main_color), count)
        return _normalize_colors(None, count)

    if isinstance(visual, trimesh.visual.ColorVisuals) and visual.kind is not None:
        return _normalize_colors(visual.face_colors, count)

    return _normalize_colors(None, count)


class MeshLoader:
    """
    Mesh loader that flattens a scene into a colored triangle soup.

    Key features:
    - Scene graph transforms applied to every geometry instance
    - Per-triangle color resolution from textures and materials
    - Optional worker threads for scenes with many geometries
    """

    def __init__(self, workers: int = 1):
        """
        Initialize the mesh loader.

        Args:
            workers: Number of threads resolving geometries in parallel
        """
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self.workers = workers
        self._mesh: Optional[TriangleMesh] = None
        self._geometry_count = 0

    def load(self, mesh_path: Union[str, Path]) -> "MeshLoader":
        """
        Load a mesh file.

        Args:
            mesh_path: Path to a glTF/GLB/OBJ/PLY/STL file

        Returns:
            self for method chaining
        """
        mesh_path = Path(mesh_path)
        if not mesh_path.exists():
            raise FileNotFoundError(f"Mesh not found: {mesh_path}")

        scene = trimesh.load(str(mesh_path), force="scene")
        logger.info("Loaded %s (%d geometries)", mesh_path, len(scene.geometry))
        return self.load_scene(scene)

    def load_scene(self, scene: Union[trimesh.Scene, trimesh.Trimesh]) -> "MeshLoader":
        """
        Flatten an in-memory trimesh scene or mesh.

        Args:
            scene: trimesh Scene or Trimesh

        Returns:
            self for method chaining
        """
        if isinstance(scene, trimesh.Trimesh):
            scene = trimesh.Scene(scene)

        instances = []
        for node in scene.graph.nodes_geometry:
            transform, geometry_name = scene.graph[node]
            geometry = scene.geometry[geometry_name]
            if not isinstance(geometry, trimesh.Trimesh):
                logger.debug("Skipping non-triangle geometry %s", geometry_name)
                continue
            instances.append((transform, geometry))

        if self.workers > 1 and len(instances) > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                parts = list(executor.map(lambda item: self._flatten(*item), instances))
        else:
            parts = [self._flatten(transform, geometry) for transform, geometry in instances]

        if not parts or sum(len(tris) for tris, _ in parts) == 0:
            raise InvalidGeometryError("Mesh contains no triangles")

        triangles = np.concatenate([tris for tris, _ in parts])
        colors = np.concatenate([cols for _, cols in parts])

        self._mesh = TriangleMesh.from_triangles(triangles, colors)
        self._geometry_count = len(parts)

        logger.info(
            "Flattened %d geometry instances into %d triangles",
            len(parts), len(triangles)
        )
        return self

    def load_triangles(
        self,
        triangles: np.ndarray,
        colors: Optional[np.ndarray] = None
    ) -> "MeshLoader":
        """
        Load a triangle soup directly from arrays.

        Args:
            triangles: (N, 3, 3) vertex positions
            colors: Optional per-triangle colors

        Returns:
            self for method chaining
        """
        self._mesh = TriangleMesh.from_triangles(triangles, colors)
        self._geometry_count = 1
        return self

    @staticmethod
    def _flatten(transform: np.ndarray, geometry: trimesh.Trimesh) -> Tuple[np.ndarray, np.ndarray]:
        """Transform one geometry instance into world-space triangles and colors."""
        vertices = trimesh.transformations.transform_points(geometry.vertices, transform)
        triangles = vertices[np.asarray(geometry.faces, dtype=np.int64)]
        return triangles, face_colors(geometry)

    @property
    def mesh(self) -> TriangleMesh:
        """Get the flattened triangle mesh."""
        if self._mesh is None:
            raise RuntimeError("No mesh loaded")
        return self._mesh

    @property
    def geometry_count(self) -> int:
        """Get the number of geometry instances that contributed triangles."""
        return self._geometry_count

    @property
    def triangle_count(self) -> int:
        """Get the number of triangles."""
        return len(self.mesh)


def load_mesh(mesh_path: Union[str, Path], workers: int = 1) -> TriangleMesh:
    """
    Convenience function to load a mesh file.

    Args:
        mesh_path: Path to the mesh file
        workers: Number of loader threads

    Returns:
        Flattened TriangleMesh
    """
    return MeshLoader(workers=workers).load(mesh_path).mesh
