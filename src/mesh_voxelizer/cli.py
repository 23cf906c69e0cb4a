"""
Command-Line Interface for Mesh Voxelizer

Usage:
    mesh2vox model.glb model.vox
    mesh2vox model.glb model.vox --dim 512 --solid
    mesh2vox model.glb model.vox --dim 256 --sparse false --palette rgb332

"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple
import time

from . import __version__
from .axes import CoordinateSystem
from .color import PALETTE_METHODS
from .generator import MeshVoxelizer, ConversionConfig
from .grid import DEFAULT_RESOLUTION, MAX_RESOLUTION
from .voxelizer import VoxelizationMode


def parse_bool(value: str) -> bool:
    """Parse a true/false option value."""
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "1"):
        return True
    if lowered in ("false", "no", "0"):
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got {value!r}")


def parse_color(value: str) -> Tuple[int, ...]:
    """Parse an R,G,B or R,G,B,A option value."""
    try:
        parts = tuple(int(p) for p in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected R,G,B integers, got {value!r}")
    if len(parts) not in (3, 4) or any(p < 0 or p > 255 for p in parts):
        raise argparse.ArgumentTypeError(f"expected 3 or 4 values in 0-255, got {value!r}")
    return parts


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="mesh2vox",
        description="Mesh Voxelizer - Convert triangle meshes to MagicaVoxel .vox scenes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  mesh2vox model.glb model.vox
      Surface voxelization at the default resolution ({DEFAULT_RESOLUTION})

  mesh2vox model.glb model.vox --dim 256 --solid
      Solid model in a single 256^3 .vox model

  mesh2vox model.glb model.vox --dim 2048 --fill-color 128,64,32
      Solid fill with a constant interior color, split into 256^3 models

Modes:
  triangles  - Full triangle surfaces (default)
  lines      - Triangle edges only (wireframe)
  points     - Triangle vertices only

Palettes:
  merge      - Merge nearest colors until 255 remain (default)
  rgb332     - Fixed 3-3-2 bit color cube
  kmeans     - K-Means clustering
        """
    )

    # Input / output
    parser.add_argument(
        "input",
        help="Input mesh file (glTF/GLB recommended)"
    )

    parser.add_argument(
        "output",
        help="Output .vox file"
    )

    # Voxelization settings
    parser.add_argument(
        "--dim",
        type=int,
        default=DEFAULT_RESOLUTION,
        help=f"Voxels along the longest axis (1-{MAX_RESOLUTION}, default: {DEFAULT_RESOLUTION})"
    )

    parser.add_argument(
        "--sparse",
        type=parse_bool,
        default=True,
        metavar="{true,false}",
        help="Use sparse voxel storage (default: true)"
    )

    parser.add_argument(
        "--mode",
        choices=[m.value for m in VoxelizationMode],
        default=VoxelizationMode.TRIANGLES.value,
        help="Voxelization mode (default: triangles)"
    )

    parser.add_argument(
        "--solid",
        action="store_true",
        help="Fill the interior of watertight meshes"
    )

    parser.add_argument(
        "--fill-color",
        type=parse_color,
        metavar="R,G,B",
        help="Interior color for --solid (default: surface color)"
    )

    parser.add_argument(
        "--palette",
        choices=list(PALETTE_METHODS),
        default="merge",
        help="Palette reduction method (default: merge)"
    )

    parser.add_argument(
        "--up-axis",
        choices=[c.value for c in CoordinateSystem],
        default=CoordinateSystem.GLTF.value,
        help="Up axis of the input mesh (default: y, as in glTF)"
    )

    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Threads used to load scene geometries (default: 1)"
    )

    # Misc
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="More log output (-vv for debug)"
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only log errors"
    )

    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print conversion statistics"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    return parser


def configure_logging(verbose: int, quiet: bool):
    """Set up the root logger from the verbosity flags."""
    if quiet:
        level = logging.ERROR
    elif verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def print_stats(stats: dict):
    """Print the statistics block."""
    print("\nConversion Statistics:")
    print(f"  Triangles: {stats['triangles']} ({stats['geometries']} geometries)")
    print(f"  Resolution: {stats['resolution']}")
    if "voxel_size" in stats:
        print(f"  Voxel size: {stats['voxel_size']:.6g}")
    print(f"  Voxels: {stats['voxels']}")
    if stats.get("skipped_triangles"):
        print(f"  Skipped triangles: {stats['skipped_triangles']}")
    if "filled_voxels" in stats:
        print(f"  Interior voxels: {stats['filled_voxels']}")
        print(f"  Open columns: {stats['open_columns']}")
    if "palette_colors" in stats:
        print(f"  Palette colors: {stats['palette_colors']}")
    if "chunks" in stats:
        print(f"  Models: {stats['chunks']}")


def process_single(args) -> int:
    """Convert one mesh file."""
    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: Input file not found: {input_path}", file=sys.stderr)
        return 1

    output_path = Path(args.output)
    if output_path.suffix.lower() != ".vox":
        print(f"Error: Output file must end in .vox: {output_path}", file=sys.stderr)
        return 1

    start_time = time.time()

    try:
        config = ConversionConfig(
            resolution=args.dim,
            sparse=args.sparse,
            solid=args.solid or args.fill_color is not None,
            fill_color=args.fill_color,
            mode=VoxelizationMode(args.mode),
            palette_method=args.palette,
            up_axis=CoordinateSystem(args.up_axis),
            workers=args.workers
        )

        voxelizer = MeshVoxelizer(config)
        voxelizer.load_mesh(input_path)
        voxelizer.voxelize()
        voxelizer.export_vox(output_path)

        if args.stats:
            print_stats(voxelizer.get_stats())

        elapsed = time.time() - start_time
        if args.verbose:
            print(f"\nCompleted in {elapsed:.2f}s")

        return 0

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    return process_single(args)


if __name__ == "__main__":
    sys.exit(main())
