"""
Export modules.

Supported formats:
- MagicaVoxel (.vox), split into 256^3 models placed by a scene graph
"""

from .vox_exporter import VoxExporter, VoxScene, VoxModel, load_vox

__all__ = ["VoxExporter", "VoxScene", "VoxModel", "load_vox"]
