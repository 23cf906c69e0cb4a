"""
Unit tests for palette building, chunk partitioning and .vox export.
"""

import os
import sys
import struct
import tempfile
from pathlib import Path
from unittest import mock
import numpy as np
import unittest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mesh_voxelizer.chunking import Chunk, partition_chunks
from mesh_voxelizer.color import (
    ColorQuantizer, Palette, build_palette, pack_rgba, unpack_rgba,
    rgb332_encode, rgb332_decode
)
from mesh_voxelizer.errors import ExportIOError
from mesh_voxelizer.exporters import VoxExporter, load_vox
from mesh_voxelizer.grid import GridTransform
from mesh_voxelizer.ingestion import TriangleMesh
from mesh_voxelizer.store import create_store
from mesh_voxelizer.voxelizer import Voxelizer


def random_colors(count: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    colors = rng.integers(0, 256, size=(count, 4), dtype=np.uint8)
    colors[:, 3] = 255
    return colors


def simple_palette(count: int) -> Palette:
    return Palette(random_colors(count, seed=count))


class TestColorPacking(unittest.TestCase):
    """Tests for packed colors."""

    def test_pack_unpack(self):
        """Test packing keeps every channel."""
        colors = random_colors(100)
        colors[:, 3] = np.arange(100)
        np.testing.assert_array_equal(unpack_rgba(pack_rgba(colors)), colors)

    def test_rgb332(self):
        """Test the 3-3-2 encoding of primary colors."""
        rgb = np.array([[0, 0, 0], [255, 0, 0], [0, 255, 0], [0, 0, 255]], dtype=np.uint8)
        codes = rgb332_encode(rgb)
        assert codes.tolist() == [0, 0x07, 0x38, 0xC0]
        decoded = rgb332_decode(codes)
        assert decoded[1].tolist() == [224, 0, 0]


class TestPalette(unittest.TestCase):
    """Tests for palette building."""

    def test_exact_palette(self):
        """Test few colors are kept exactly in first-seen order."""
        colors = np.array([
            [0, 0, 255, 255],
            [255, 0, 0, 255],
            [0, 0, 255, 255],
        ], dtype=np.uint8)
        palette, slots = build_palette(colors)

        assert len(palette) == 2
        assert slots.tolist() == [1, 2, 1]
        assert palette.slot_color(1).tolist() == [0, 0, 255, 255]
        assert palette.slot_color(2).tolist() == [255, 0, 0, 255]

    def test_merge_nearest_pair(self):
        """Test the closest colors merge into the earlier one."""
        colors = np.array([
            [255, 0, 0, 255],
            [0, 0, 255, 255],
            [250, 0, 0, 255],
        ], dtype=np.uint8)
        palette, slots = ColorQuantizer(max_colors=2).build_palette(colors)

        assert len(palette) == 2
        assert slots.tolist() == [1, 2, 1]
        assert palette.colors[0].tolist() == [255, 0, 0, 255]

    def test_palette_limit(self):
        """Test many colors reduce to at most 255 with valid slots."""
        for method in ("merge", "rgb332", "kmeans"):
            colors = random_colors(2000, seed=1)
            palette, slots = build_palette(colors, method=method)

            assert 1 <= len(palette) <= 255, method
            assert slots.dtype == np.uint8
            assert slots.min() >= 1, method
            assert slots.max() <= len(palette), method
            assert len(palette.to_vox_rgba()) == 256

    def test_bit_depth_reduction(self):
        """Test more distinct colors than the merge limit still reduce."""
        colors = random_colors(6000, seed=2)
        palette, slots = build_palette(pack_rgba(colors))

        assert len(palette) == 255
        assert slots.max() <= 255

    def test_deterministic(self):
        """Test identical input gives identical palettes."""
        colors = random_colors(1000, seed=3)
        first = build_palette(colors)
        second = build_palette(colors.copy())

        np.testing.assert_array_equal(first[0].colors, second[0].colors)
        np.testing.assert_array_equal(first[1], second[1])

    def test_empty(self):
        """Test an empty color list."""
        palette, slots = build_palette(np.zeros(0, dtype=np.uint32))
        assert len(palette) == 0
        assert len(slots) == 0

    def test_invalid_method(self):
        """Test unknown methods are rejected."""
        with self.assertRaises(ValueError):
            ColorQuantizer(method="median_cut")
        with self.assertRaises(ValueError):
            ColorQuantizer(max_colors=256)


class TestChunking(unittest.TestCase):
    """Tests for chunk partitioning."""

    def test_small_grid_single_chunk(self):
        """Test D <= 256 always gives one chunk covering the grid."""
        for resolution in (1, 8, 256):
            chunks = partition_chunks(np.zeros((0, 3)), np.zeros(0), resolution)
            assert len(chunks) == 1
            assert chunks[0].offset == (0, 0, 0)
            assert chunks[0].size == (resolution,) * 3

    def test_single_octant(self):
        """Test D = 512 with voxels in one octant gives exactly one chunk."""
        mesh = TriangleMesh.from_triangles([[[10, 10, 10], [200, 30, 40], [50, 250, 100]]])
        transform = GridTransform(origin=(0.0, 0.0, 0.0), voxel_size=1.0, resolution=512)
        store = Voxelizer(transform, create_store(512)).voxelize(mesh)

        coords, colors = store.to_arrays()
        _, slots = build_palette(colors)
        chunks = partition_chunks(coords, slots, 512)

        assert len(chunks) == 1
        assert chunks[0].offset == (0, 0, 0)
        assert chunks[0].size == (256, 256, 256)
        assert len(chunks[0]) == len(coords)

    def test_chunk_count_bound(self):
        """Test chunk count equals the occupied tiles and stays within ceil(D/256)^3."""
        rng = np.random.default_rng(4)
        resolution = 600
        coords = rng.integers(0, resolution, size=(500, 3))
        slots = rng.integers(1, 256, size=500)
        chunks = partition_chunks(coords, slots, resolution)

        tiles = {tuple(t) for t in (coords // 256).tolist()}
        assert len(chunks) == len(tiles)
        assert len(chunks) <= 27

        offsets = [c.offset for c in chunks]
        assert offsets == sorted(offsets)
        for chunk in chunks:
            assert all(s == min(256, resolution - o) for o, s in zip(chunk.offset, chunk.size))
            assert np.all(chunk.voxels[:, :3] < np.array(chunk.size))

        restored = np.concatenate([c.to_global() for c in chunks])
        assert {tuple(c) for c in restored.tolist()} == {tuple(c) for c in coords.tolist()}

    def test_empty_tiles_omitted(self):
        """Test voxels in two far corners give two chunks."""
        coords = np.array([[0, 0, 0], [1000, 1000, 1000]])
        chunks = partition_chunks(coords, np.array([1, 2]), 1022)

        assert [c.offset for c in chunks] == [(0, 0, 0), (768, 768, 768)]
        assert chunks[1].size == (254, 254, 254)
        assert chunks[1].voxels.tolist() == [[232, 232, 232, 2]]


class TestVoxExport(unittest.TestCase):
    """Tests for the .vox encoder and decoder."""

    def test_single_model_roundtrip(self):
        """Test a single model file decodes to the same voxels and palette."""
        palette = simple_palette(3)
        voxels = np.array([[0, 0, 0, 1], [1, 2, 3, 2], [7, 7, 7, 3]], dtype=np.uint8)
        data = VoxExporter().encode(palette, [Chunk((0, 0, 0), (8, 8, 8), voxels)])

        assert data[:4] == b'VOX '
        assert struct.unpack('<I', data[4:8])[0] == 150
        assert b'nTRN' not in data

        scene = load_vox(data)
        assert len(scene.models) == 1
        assert scene.models[0].size == (8, 8, 8)
        assert scene.models[0].offset == (0, 0, 0)
        np.testing.assert_array_equal(scene.models[0].voxels, voxels)
        for slot in (1, 2, 3):
            np.testing.assert_array_equal(scene.palette[slot], palette.slot_color(slot))

    def test_multi_model_roundtrip(self):
        """Test chunk offsets survive the scene graph."""
        rng = np.random.default_rng(5)
        resolution = 700
        coords = rng.integers(0, resolution, size=(300, 3))
        palette, slots = build_palette(random_colors(300, seed=6))
        chunks = partition_chunks(coords, slots, resolution)
        assert len(chunks) > 1

        scene = load_vox(VoxExporter().encode(palette, chunks))

        assert len(scene.models) == len(chunks)
        for model, chunk in zip(scene.models, chunks):
            assert model.size == chunk.size
            assert model.offset == chunk.offset
            np.testing.assert_array_equal(model.voxels, chunk.voxels)

        decoded = {tuple(v) for v in scene.global_voxels().tolist()}
        expected = {tuple(c) + (int(s),) for c, s in zip(coords.tolist(), slots)}
        assert decoded == expected
        np.testing.assert_array_equal(scene.palette[1:len(palette) + 1], palette.colors)

    def test_invalid_chunks(self):
        """Test oversized chunks and out-of-range voxels are rejected."""
        palette = simple_palette(2)
        exporter = VoxExporter()

        with self.assertRaises(ValueError):
            exporter.encode(palette, [Chunk((0, 0, 0), (300, 8, 8), np.zeros((0, 4), np.uint8))])
        with self.assertRaises(ValueError):
            exporter.encode(palette, [Chunk((0, 0, 0), (4, 4, 4), np.array([[4, 0, 0, 1]], np.uint8))])
        with self.assertRaises(ValueError):
            exporter.encode(palette, [Chunk((0, 0, 0), (4, 4, 4), np.array([[0, 0, 0, 0]], np.uint8))])
        with self.assertRaises(ValueError):
            exporter.encode(palette, [Chunk((0, 0, 0), (4, 4, 4), np.array([[0, 0, 0, 3]], np.uint8))])
        with self.assertRaises(ValueError):
            exporter.encode(palette, [])

    def test_export_file(self):
        """Test writing to disk leaves only the target file."""
        palette = simple_palette(1)
        chunk = Chunk((0, 0, 0), (2, 2, 2), np.array([[1, 1, 1, 1]], np.uint8))

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "model.vox"
            written = VoxExporter().export(palette, [chunk], path)

            assert written == path
            assert os.listdir(tmp) == ["model.vox"]
            assert load_vox(path).models[0].voxels.tolist() == [[1, 1, 1, 1]]

    def test_missing_directory(self):
        """Test an unwritable destination raises ExportIOError."""
        palette = simple_palette(1)
        chunk = Chunk((0, 0, 0), (2, 2, 2), np.zeros((0, 4), np.uint8))

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "missing" / "model.vox"
            with self.assertRaises(ExportIOError) as ctx:
                VoxExporter().export(palette, [chunk], path)

            assert ctx.exception.path == path
            assert isinstance(ctx.exception, OSError)

    def test_failed_write_leaves_no_partial_file(self):
        """Test a failure while replacing the target keeps the old file and removes the temp file."""
        palette = simple_palette(1)
        chunk = Chunk((0, 0, 0), (2, 2, 2), np.array([[0, 0, 0, 1]], np.uint8))

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "model.vox"
            path.write_bytes(b"old")

            with mock.patch(
                "mesh_voxelizer.exporters.vox_exporter.os.replace",
                side_effect=OSError("disk full")
            ):
                with self.assertRaises(ExportIOError):
                    VoxExporter().export(palette, [chunk], path)

            assert path.read_bytes() == b"old"
            assert os.listdir(tmp) == ["model.vox"]


if __name__ == "__main__":
    unittest.main()
