#!/usr/bin/env python3
"""
Mesh Voxelizer Demo Script

This script demonstrates the full voxelization pipeline by:
1. Creating synthetic test meshes (no external files needed)
2. Voxelizing them as hollow shells and as solids
3. Exporting to MagicaVoxel .vox
4. Printing statistics and timings

Run with: python examples/demo.py
"""

import sys
from pathlib import Path
import numpy as np
import time

import trimesh

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mesh_voxelizer import MeshVoxelizer, ConversionConfig, CoordinateSystem
from mesh_voxelizer.voxelizer import VoxelizationMode


def create_test_mesh_sphere() -> trimesh.Trimesh:
    """Create an icosphere colored by height."""
    sphere = trimesh.creation.icosphere(subdivisions=3, radius=1.0)
    heights = sphere.triangles_center[:, 2]
    t = (heights - heights.min()) / np.ptp(heights)
    colors = np.column_stack([
        (255 * t).astype(np.uint8),
        np.full(len(t), 120, dtype=np.uint8),
        (255 * (1 - t)).astype(np.uint8),
        np.full(len(t), 255, dtype=np.uint8),
    ])
    sphere.visual.face_colors = colors
    return sphere


def create_test_mesh_tree() -> trimesh.Trimesh:
    """Create a simple tree: a brown trunk under a green cone."""
    trunk = trimesh.creation.cylinder(radius=0.15, height=1.0)
    trunk.apply_translation([0, 0, 0.5])
    trunk.visual.face_colors = [101, 67, 33, 255]

    foliage = trimesh.creation.cone(radius=0.6, height=1.5)
    foliage.apply_translation([0, 0, 0.8])
    foliage.visual.face_colors = [34, 139, 34, 255]

    return trimesh.util.concatenate([trunk, foliage])


def create_test_mesh_torus() -> trimesh.Trimesh:
    """Create a torus with random face colors."""
    torus = trimesh.creation.torus(major_radius=1.0, minor_radius=0.3)
    rng = np.random.default_rng(0)
    colors = rng.integers(0, 256, size=(len(torus.faces), 4), dtype=np.uint8)
    colors[:, 3] = 255
    torus.visual.face_colors = colors
    return torus


def run_demo():
    """Run the demonstration."""
    print("=" * 60)
    print("Mesh Voxelizer - Demo")
    print("=" * 60)
    print()

    # Create output directory
    output_dir = Path(__file__).parent / "output"
    output_dir.mkdir(exist_ok=True)

    test_meshes = [
        ("sphere", create_test_mesh_sphere()),
        ("tree", create_test_mesh_tree()),
        ("torus", create_test_mesh_torus()),
    ]

    total_start = time.time()

    for name, source in test_meshes:
        print(f"\n--- Processing: {name} ---")
        print(f"Input: {len(source.faces)} triangles")

        for solid in (False, True):
            config = ConversionConfig(
                resolution=128,
                solid=solid,
                up_axis=CoordinateSystem.MAGICAVOXEL
            )
            voxelizer = MeshVoxelizer(config)
            voxelizer.load_triangles(source.triangles, source.visual.face_colors)

            vox_start = time.time()
            voxelizer.voxelize()
            vox_time = time.time() - vox_start

            label = "solid" if solid else "surface"
            print(f"  {label}:")
            print(f"    Voxelization: {vox_time*1000:.1f}ms")
            print(f"    Voxel count: {voxelizer.voxel_count}")

            path = output_dir / f"{name}_{label}.vox"
            voxelizer.export_vox(path)

            stats = voxelizer.get_stats()
            print(f"    Palette colors: {stats['palette_colors']}")
            print(f"    Saved: {path}")

    total_time = time.time() - total_start

    print("\n" + "=" * 60)
    print(f"Demo complete! Total time: {total_time:.2f}s")
    print(f"Output files in: {output_dir}")
    print("=" * 60)

    return 0


def benchmark_resolution():
    """Benchmark voxelization at increasing resolutions."""
    print("\n--- Resolution Benchmark ---\n")

    sphere = trimesh.creation.icosphere(subdivisions=4)

    for resolution in (64, 128, 256, 512, 1022):
        for mode in (VoxelizationMode.TRIANGLES, VoxelizationMode.LINES):
            voxelizer = MeshVoxelizer(ConversionConfig(
                resolution=resolution,
                mode=mode,
                up_axis=CoordinateSystem.MAGICAVOXEL
            ))
            voxelizer.load_triangles(sphere.triangles)

            start = time.time()
            voxelizer.voxelize().partition()
            elapsed = time.time() - start

            print(f"D={resolution} {mode.value}: {elapsed*1000:.1f}ms, "
                  f"{voxelizer.voxel_count} voxels, {len(voxelizer.chunks)} models")
        print()


if __name__ == "__main__":
    run_demo()

    # Uncomment to run benchmark
    # benchmark_resolution()
