"""
Unit tests for grid mapping, voxel stores and rasterization.
"""

import sys
from pathlib import Path
import numpy as np
import unittest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import trimesh

from mesh_voxelizer.errors import InvalidGeometryError
from mesh_voxelizer.grid import GridTransform, compute_grid_transform, MAX_RESOLUTION
from mesh_voxelizer.ingestion import TriangleMesh
from mesh_voxelizer.intersect import triangle_box_overlap, column_crossings
from mesh_voxelizer.store import DenseVoxelStore, SparseVoxelStore, create_store
from mesh_voxelizer.voxelizer import Voxelizer, VoxelizationMode, voxelize_mesh


def unit_transform(resolution: int) -> GridTransform:
    """Grid where world units are voxels."""
    return GridTransform(origin=(0.0, 0.0, 0.0), voxel_size=1.0, resolution=resolution)


def box_mesh(extents=(1.0, 1.0, 1.0), color=(255, 0, 0, 255)) -> TriangleMesh:
    box = trimesh.creation.box(extents=extents)
    return TriangleMesh.from_arrays(box.vertices, box.faces, color)


class TestGridMapper(unittest.TestCase):
    """Tests for compute_grid_transform."""

    def test_vertices_map_into_grid(self):
        """Test every vertex lands in [0, D] on every axis."""
        rng = np.random.default_rng(7)
        for resolution in (1, 4, 37, 256, 1022):
            points = rng.normal(size=(50, 3)) * rng.uniform(0.1, 100, size=3)
            transform = compute_grid_transform(points.min(axis=0), points.max(axis=0), resolution)
            grid = transform.to_grid(points)

            assert transform.voxel_size > 0
            assert grid.min() >= -1e-9
            assert grid.max() <= resolution + 1e-9

    def test_longest_axis_spans_grid(self):
        """Test the longest axis maps to exactly D voxels and others are centred."""
        transform = compute_grid_transform((0, 0, 0), (10, 2, 4), 100)
        assert transform.voxel_size == 0.1

        corners = transform.to_grid(np.array([[0, 0, 0], [10, 2, 4]], dtype=float))
        np.testing.assert_allclose(corners[:, 0], [0, 100])
        np.testing.assert_allclose(corners[:, 1], [40, 60])
        np.testing.assert_allclose(corners[:, 2], [30, 70])

    def test_flat_mesh_is_valid(self):
        """Test a mesh with zero extent on one axis still maps."""
        transform = compute_grid_transform((0, 0, 0), (1, 1, 0), 8)
        assert transform.voxel_size == 0.125

    def test_invalid_bounds(self):
        """Test degenerate bounding boxes are rejected."""
        with self.assertRaises(InvalidGeometryError) as ctx:
            compute_grid_transform((1, 1, 1), (1, 1, 1), 8)
        assert ctx.exception.resolution == 8

        with self.assertRaises(InvalidGeometryError):
            compute_grid_transform((0, 0, 0), (1, -1, 1), 8)

        with self.assertRaises(InvalidGeometryError):
            compute_grid_transform((0, 0, 0), (np.nan, 1, 1), 8)

    def test_invalid_resolution(self):
        """Test resolution validation."""
        with self.assertRaises(ValueError):
            compute_grid_transform((0, 0, 0), (1, 1, 1), 0)
        with self.assertRaises(ValueError):
            compute_grid_transform((0, 0, 0), (1, 1, 1), MAX_RESOLUTION + 1)
        with self.assertRaises(TypeError):
            compute_grid_transform((0, 0, 0), (1, 1, 1), 8.5)

    def test_voxel_centres(self):
        """Test to_world returns voxel centres."""
        transform = compute_grid_transform((0, 0, 0), (4, 4, 4), 4)
        centre = transform.to_world(np.array([1, 2, 3]))
        np.testing.assert_allclose(centre, [1.5, 2.5, 3.5])


class TestVoxelStore(unittest.TestCase):
    """Tests for the dense and sparse stores."""

    def test_set_get_voxel(self):
        """Test setting and getting voxels."""
        for store in (DenseVoxelStore(8), SparseVoxelStore(8)):
            store.set((1, 2, 3), (255, 128, 64))

            assert store.get((1, 2, 3)) == (255, 128, 64, 255)
            assert store.get((0, 0, 0)) is None
            assert (1, 2, 3) in store
            assert (9, 0, 0) not in store
            assert len(store) == 1

    def test_out_of_bounds(self):
        """Test out-of-range coordinates raise IndexError."""
        for store in (DenseVoxelStore(4), SparseVoxelStore(4)):
            with self.assertRaises(IndexError):
                store.set((4, 0, 0), (1, 2, 3))
            with self.assertRaises(IndexError):
                store.get((0, -1, 0))
            with self.assertRaises(IndexError):
                store.set_many(np.array([[0, 0, 0], [0, 0, 4]]), (1, 2, 3))

    def test_last_writer_wins(self):
        """Test repeated coordinates keep the last color."""
        coords = np.array([[1, 1, 1], [2, 2, 2], [1, 1, 1]])
        colors = np.array([[255, 0, 0, 255], [0, 255, 0, 255], [0, 0, 255, 255]], dtype=np.uint8)

        for store in (DenseVoxelStore(4), SparseVoxelStore(4)):
            store.set_many(coords, colors)
            assert store.get((1, 1, 1)) == (0, 0, 255, 255)
            assert store.get((2, 2, 2)) == (0, 255, 0, 255)
            assert store.count_voxels() == 2

    def test_no_overwrite(self):
        """Test overwrite=False keeps existing colors."""
        for store in (DenseVoxelStore(4), SparseVoxelStore(4)):
            store.set((0, 0, 0), (10, 10, 10))
            store.set_many(np.array([[0, 0, 0], [0, 0, 1]]), (99, 99, 99), overwrite=False)

            assert store.get((0, 0, 0)) == (10, 10, 10, 255)
            assert store.get((0, 0, 1)) == (99, 99, 99, 255)

    def test_iterate(self):
        """Test iteration yields every voxel once."""
        store = create_store(8, sparse=True)
        store.set((0, 0, 0), (1, 2, 3, 4))
        store.set((7, 7, 7), (5, 6, 7, 8))

        items = dict(store.iterate())
        assert items == {(0, 0, 0): (1, 2, 3, 4), (7, 7, 7): (5, 6, 7, 8)}
        assert store.occupied_bounds == ((0, 0, 0), (8, 8, 8))

    def test_dense_sparse_equivalence(self):
        """Test both backends produce identical contents for the same mesh."""
        sphere = trimesh.creation.icosphere(subdivisions=2)
        rng = np.random.default_rng(3)
        colors = rng.integers(0, 256, size=(len(sphere.faces), 4), dtype=np.uint8)
        mesh = TriangleMesh.from_arrays(sphere.vertices, sphere.faces, colors)
        transform = compute_grid_transform(mesh.bounds_min, mesh.bounds_max, 24)

        dense = voxelize_mesh(mesh, transform, sparse=False, solid=True)
        sparse = voxelize_mesh(mesh, transform, sparse=True, solid=True)

        assert isinstance(dense, DenseVoxelStore)
        assert isinstance(sparse, SparseVoxelStore)
        assert len(dense) > 0
        assert dict(dense.iterate()) == dict(sparse.iterate())

    def test_array_order_independent_of_backend(self):
        """Test to_arrays lists voxels in the same order for both backends."""
        rng = np.random.default_rng(11)
        coords = rng.integers(0, 16, size=(200, 3))
        colors = rng.integers(0, 256, size=(200, 4), dtype=np.uint8)

        dense = DenseVoxelStore(16)
        sparse = SparseVoxelStore(16)
        dense.set_many(coords, colors)
        for index in rng.permutation(len(coords)):
            sparse.set(tuple(coords[index].tolist()), tuple(colors[index].tolist()))
        # Rewrite in input order so both hold the same last-written colors
        sparse.set_many(coords, colors)

        dense_coords, dense_colors = dense.to_arrays()
        sparse_coords, sparse_colors = sparse.to_arrays()
        np.testing.assert_array_equal(dense_coords, sparse_coords)
        np.testing.assert_array_equal(dense_colors, sparse_colors)


class TestTriangleBoxOverlap(unittest.TestCase):
    """Tests for the separating axis kernel."""

    def test_inside(self):
        """Test a triangle inside the box."""
        assert triangle_box_overlap(0.5, 0.5, 0.5, 0.2, 0.2, 0.5, 0.8, 0.2, 0.5, 0.2, 0.8, 0.5)

    def test_touching_counts(self):
        """Test a triangle touching a box face overlaps."""
        assert triangle_box_overlap(0.5, 0.5, 0.5, 0, 0, 1, 1, 0, 1, 0, 1, 1)

    def test_separated_by_edge_axis(self):
        """Test a triangle whose AABB overlaps the box but which does not touch it."""
        # All vertices lie on x + y = 2.2, past the box corner at x + y = 2
        assert not triangle_box_overlap(0.5, 0.5, 0.5, 2.2, 0.0, 0.5, 0.0, 2.2, 0.5, 1.1, 1.1, 0.2)

    def test_far_away(self):
        """Test a distant triangle."""
        assert not triangle_box_overlap(0.5, 0.5, 0.5, 5, 5, 5, 6, 5, 5, 5, 6, 5)


class TestVoxelizer(unittest.TestCase):
    """Tests for the rasterizer."""

    def test_axis_aligned_triangle(self):
        """Test a triangle in the z = 0 plane at D = 4 marks exactly the touched voxels."""
        mesh = TriangleMesh.from_triangles([[[0, 0, 0], [4, 0, 0], [0, 4, 0]]])
        store = Voxelizer(unit_transform(4), create_store(4)).voxelize(mesh)

        coords, _ = store.to_arrays()
        actual = {tuple(c) for c in coords.tolist()}
        # Closed voxel (i, j) touches x + y <= 4 when its lower corner does
        expected = {(i, j, 0) for i in range(4) for j in range(4) if i + j <= 4}
        assert actual == expected

    def test_boundary_triangle_marks_voxel_behind_face(self):
        """Test a triangle on a voxel face marks one layer, behind its normal."""
        up = TriangleMesh.from_triangles([[[1.2, 1.2, 2], [1.8, 1.2, 2], [1.2, 1.8, 2]]])
        down = TriangleMesh.from_triangles([[[1.2, 1.2, 2], [1.2, 1.8, 2], [1.8, 1.2, 2]]])

        store = Voxelizer(unit_transform(4), create_store(4)).voxelize(up)
        coords, _ = store.to_arrays()
        assert {tuple(c) for c in coords.tolist()} == {(1, 1, 1)}

        store = Voxelizer(unit_transform(4), create_store(4)).voxelize(down)
        coords, _ = store.to_arrays()
        assert {tuple(c) for c in coords.tolist()} == {(1, 1, 2)}

    def test_colors_last_writer_wins(self):
        """Test overlapping triangles keep the later color."""
        tri = [[0.1, 0.1, 0.5], [0.9, 0.1, 0.5], [0.1, 0.9, 0.5]]
        mesh = TriangleMesh.from_triangles(
            [tri, tri],
            np.array([[255, 0, 0, 255], [0, 0, 255, 255]], dtype=np.uint8)
        )
        store = Voxelizer(unit_transform(2), create_store(2)).voxelize(mesh)
        assert store.get((0, 0, 0)) == (0, 0, 255, 255)

    def test_solid_cube(self):
        """Test a closed cube at D = 8 with solid fill marks the full 8^3 block."""
        mesh = box_mesh()
        transform = compute_grid_transform(mesh.bounds_min, mesh.bounds_max, 8)
        voxelizer = Voxelizer(transform, create_store(8, sparse=False), solid=True)
        store = voxelizer.voxelize(mesh)

        assert (3, 3, 3) in store
        assert (4, 4, 4) in store
        assert store.count_voxels() == 512
        assert voxelizer.open_columns == 0
        assert voxelizer.filled_voxels == 216

    def test_hollow_cube(self):
        """Test surface-only voxelization leaves the interior empty."""
        mesh = box_mesh()
        transform = compute_grid_transform(mesh.bounds_min, mesh.bounds_max, 8)
        store = voxelize_mesh(mesh, transform, sparse=True)

        assert (3, 3, 3) not in store
        assert store.count_voxels() == 512 - 216

    def test_fill_color(self):
        """Test a constant interior color."""
        mesh = box_mesh(color=(255, 0, 0, 255))
        transform = compute_grid_transform(mesh.bounds_min, mesh.bounds_max, 8)
        store = voxelize_mesh(mesh, transform, solid=True, fill_color=(0, 255, 0))

        assert store.get((3, 3, 3)) == (0, 255, 0, 255)
        assert store.get((0, 3, 3)) == (255, 0, 0, 255)

    def test_solid_cube_inside_larger_grid(self):
        """Test no voxel is marked outside the cube bounds."""
        mesh = box_mesh()
        transform = GridTransform(origin=(-2.0, -2.0, -2.0), voxel_size=0.25, resolution=16)
        store = voxelize_mesh(mesh, transform, solid=True)

        coords, _ = store.to_arrays()
        assert coords.min() >= 6
        assert coords.max() <= 9
        assert store.count_voxels() == 64

    def test_solid_rotated_cube(self):
        """Test a tilted closed cube has no open columns and no interior holes."""
        rotation = trimesh.transformations.rotation_matrix(0.5, [1, 1, 0])
        box = trimesh.creation.box(transform=rotation)
        mesh = TriangleMesh.from_arrays(box.vertices, box.faces)
        transform = compute_grid_transform(mesh.bounds_min, mesh.bounds_max, 33)
        voxelizer = Voxelizer(transform, create_store(33), solid=True)
        store = voxelizer.voxelize(mesh)

        assert voxelizer.open_columns == 0

        # Voxel centres strictly inside the cube, tested in its own frame
        grid = np.stack(np.meshgrid(*[np.arange(33)] * 3, indexing="ij"), axis=-1).reshape(-1, 3)
        local = transform.to_world(grid) @ rotation[:3, :3]
        inside = np.all(np.abs(local) < 0.5 - 1e-6, axis=1)

        filled = set(map(tuple, store.to_arrays()[0].tolist()))
        missing = [tuple(c) for c in grid[inside].tolist() if tuple(c) not in filled]
        assert inside.any()
        assert missing == []

    def test_shared_edge_crossed_once(self):
        """Test a column through a shared edge is counted by one triangle only."""
        # Two triangles sharing a diagonal through the centre of column (1, 1)
        a = np.array([0.1, 0.3, 0.7])
        b = np.array([2.9, 2.7, 0.2])
        top = np.array([a, b, [0.1, 2.9, 0.4]])
        bottom = np.array([b, a, [2.9, 0.1, 0.5]])

        centre = np.array([1.5, 1.5])
        # Sanity: the centre sits on the diagonal up to rounding
        dx, dy = b[:2] - a[:2]
        px, py = centre - a[:2]
        assert abs(dx * py - dy * px) < 1e-12

        hits = 0
        for tri in (top, bottom, top[::-1].copy(), bottom[::-1].copy()):
            columns, _ = column_crossings(np.ascontiguousarray(tri), 3)
            hits += sum(1 for i, j in columns if (i, j) == (1, 1))
        assert hits == 2

    def test_open_mesh_partial_fill(self):
        """Test a cube missing its top face counts open columns instead of failing."""
        box = trimesh.creation.box(extents=(1, 1, 1))
        top = box.triangles_center[:, 2] > 0.49
        mesh = TriangleMesh.from_triangles(box.triangles[~top])
        transform = compute_grid_transform(mesh.bounds_min, mesh.bounds_max, 8)
        voxelizer = Voxelizer(transform, create_store(8), solid=True)
        voxelizer.voxelize(mesh)

        assert voxelizer.open_columns == 64
        assert voxelizer.filled_voxels == 0

    def test_degenerate_triangle_skipped(self):
        """Test a NaN triangle is skipped and the rest are voxelized."""
        mesh = TriangleMesh.from_triangles([
            [[np.nan, 0, 0], [1, 0, 0], [0, 1, 0]],
            [[0.1, 0.1, 0.5], [0.9, 0.1, 0.5], [0.1, 0.9, 0.5]],
        ])
        voxelizer = Voxelizer(unit_transform(2), create_store(2))
        store = voxelizer.voxelize(mesh)

        assert voxelizer.skipped_triangles == 1
        assert (0, 0, 0) in store

    def test_overflowing_triangle_skipped(self):
        """Test a triangle too far away for the integer kernels is skipped."""
        mesh = TriangleMesh.from_triangles([
            [[0, 0, 0], [2.0 ** 40, 0, 0], [0, 1, 0]],
            [[0.1, 0.1, 0.5], [0.9, 0.1, 0.5], [0.1, 0.9, 0.5]],
        ])
        voxelizer = Voxelizer(unit_transform(2), create_store(2))
        voxelizer.voxelize(mesh)
        assert voxelizer.skipped_triangles == 1

    def test_points_mode(self):
        """Test points mode marks the vertex voxels only."""
        mesh = TriangleMesh.from_triangles([[[0, 0, 0], [3.5, 0, 0], [0, 4, 0]]])
        store = Voxelizer(unit_transform(4), create_store(4), mode=VoxelizationMode.POINTS).voxelize(mesh)

        coords, _ = store.to_arrays()
        assert {tuple(c) for c in coords.tolist()} == {(0, 0, 0), (3, 0, 0), (0, 3, 0)}

    def test_lines_mode(self):
        """Test lines mode marks the edges but not the interior."""
        mesh = TriangleMesh.from_triangles([[[0.5, 0.5, 0.5], [7.5, 0.5, 0.5], [0.5, 7.5, 0.5]]])
        store = Voxelizer(unit_transform(8), create_store(8), mode=VoxelizationMode.LINES).voxelize(mesh)

        assert (0, 0, 0) in store
        assert (7, 0, 0) in store
        assert (0, 7, 0) in store
        assert (4, 0, 0) in store
        assert (0, 4, 0) in store
        assert (2, 2, 0) not in store

    def test_store_resolution_mismatch(self):
        """Test a store of the wrong size is rejected."""
        with self.assertRaises(ValueError):
            Voxelizer(unit_transform(4), create_store(8))


if __name__ == "__main__":
    unittest.main()
