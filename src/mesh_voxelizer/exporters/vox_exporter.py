"""
MagicaVoxel .vox Format Exporter

The .vox format is a RIFF-style chunk-based binary format used by MagicaVoxel.
It stores voxels as sparse data with a 256-color palette.

File Structure:
- Header: "VOX " (4 bytes) + version (4 bytes, int32)
- MAIN chunk (container)
  - SIZE chunk: dimensions (x, y, z)            } once per model
  - XYZI chunk: voxel data (x, y, z, color_index) }
  - nTRN / nGRP / nSHP chunks: scene graph placing the models
    (only written when there is more than one model)
  - RGBA chunk: 256-color palette

Limitations:
- Maximum 255 colors (index 0 is empty space)
- Maximum 256x256x256 dimensions per model
- Coordinates are uint8

Scene graph layout for N models:
    nTRN(0) -> nGRP(1) -> [nTRN(2 + 2k) -> nSHP(3 + 2k) -> model k]
Each model transform stores its translation in the "_t" frame attribute.
MagicaVoxel pivots a model on its centre, so "_t" is offset + size // 2.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Union, List, Dict, Tuple, Sequence
import logging
import os
import struct
import tempfile
import numpy as np

from ..chunking import Chunk
from ..color import Palette
from ..errors import ExportIOError

logger = logging.getLogger(__name__)


# VOX format constants
VOX_MAGIC = b'VOX '
VOX_VERSION = 150  # Current version
MAX_MODEL_SIZE = 256


def pack_string(value: str) -> bytes:
    """Pack a STRING: int32 length followed by the bytes."""
    data = value.encode('utf-8')
    return struct.pack('<i', len(data)) + data


def pack_dict(values: Dict[str, str]) -> bytes:
    """Pack a DICT: int32 pair count followed by key/value STRINGs."""
    out = struct.pack('<i', len(values))
    for key, value in values.items():
        out += pack_string(key) + pack_string(value)
    return out


class VoxChunk:
    """Base class for VOX chunks."""

    def __init__(self, chunk_id: bytes):
        self.chunk_id = chunk_id
        self.content = b''
        self.children = b''

    def pack(self) -> bytes:
        """Pack the chunk into bytes."""
        content_size = len(self.content)
        children_size = len(self.children)

        return (
            self.chunk_id +
            struct.pack('<II', content_size, children_size) +
            self.content +
            self.children
        )


class SizeChunk(VoxChunk):
    """SIZE chunk containing model dimensions."""

    def __init__(self, size_x: int, size_y: int, size_z: int):
        super().__init__(b'SIZE')
        # Note: VOX uses x, y, z where z is up
        self.content = struct.pack('<III', size_x, size_y, size_z)


class XYZIChunk(VoxChunk):
    """XYZI chunk containing voxel positions and color indices."""

    def __init__(self, voxels: np.ndarray):
        """
        Args:
            voxels: Array of shape (N, 4) with (x, y, z, color_index)
        """
        super().__init__(b'XYZI')
        voxels = np.ascontiguousarray(voxels, dtype=np.uint8).reshape(-1, 4)
        self.content = struct.pack('<I', len(voxels)) + voxels.tobytes()


class RGBAChunk(VoxChunk):
    """RGBA chunk containing the 256-color palette."""

    def __init__(self, palette: Palette):
        super().__init__(b'RGBA')
        # Entry i holds palette slot i + 1
        self.content = palette.to_vox_rgba().tobytes()


class TransformNodeChunk(VoxChunk):
    """nTRN chunk: a scene graph transform with a single frame."""

    def __init__(
        self,
        node_id: int,
        child_id: int,
        layer_id: int,
        translation: Sequence[int] = None
    ):
        super().__init__(b'nTRN')
        frame = {}
        if translation is not None:
            frame['_t'] = ' '.join(str(int(t)) for t in translation)
        self.content = (
            struct.pack('<i', node_id) +
            pack_dict({}) +
            struct.pack('<iii', child_id, -1, layer_id) +
            struct.pack('<i', 1) +
            pack_dict(frame)
        )


class GroupNodeChunk(VoxChunk):
    """nGRP chunk: a scene graph group."""

    def __init__(self, node_id: int, child_ids: Sequence[int]):
        super().__init__(b'nGRP')
        self.content = (
            struct.pack('<i', node_id) +
            pack_dict({}) +
            struct.pack('<i', len(child_ids)) +
            struct.pack(f'<{len(child_ids)}i', *child_ids)
        )


class ShapeNodeChunk(VoxChunk):
    """nSHP chunk: a scene graph leaf referencing one model."""

    def __init__(self, node_id: int, model_id: int):
        super().__init__(b'nSHP')
        self.content = (
            struct.pack('<i', node_id) +
            pack_dict({}) +
            struct.pack('<i', 1) +
            struct.pack('<i', model_id) +
            pack_dict({})
        )


class MainChunk(VoxChunk):
    """MAIN container chunk."""

    def __init__(self):
        super().__init__(b'MAIN')

    def add_child(self, chunk: VoxChunk):
        """Add a child chunk."""
        self.children += chunk.pack()


class VoxExporter:
    """
    Export palette-indexed chunks to MagicaVoxel .vox format.

    Usage:
        exporter = VoxExporter()
        exporter.export(palette, chunks, "output.vox")
    """

    def encode(self, palette: Palette, chunks: List[Chunk]) -> bytes:
        """
        Serialize chunks and palette to .vox bytes.

        Args:
            palette: Palette of at most 255 colors
            chunks: Models to write, in order

        Returns:
            Complete file contents

        Raises:
            ValueError: If a chunk is too large or a voxel lies outside its chunk
        """
        if not chunks:
            raise ValueError("Cannot export a scene without models")

        for index, chunk in enumerate(chunks):
            self._validate_chunk(index, chunk, palette)

        main_chunk = MainChunk()
        for chunk in chunks:
            main_chunk.add_child(SizeChunk(*(int(s) for s in chunk.size)))
            main_chunk.add_child(XYZIChunk(chunk.voxels))

        if len(chunks) > 1:
            for node in self._scene_graph(chunks):
                main_chunk.add_child(node)

        main_chunk.add_child(RGBAChunk(palette))

        return VOX_MAGIC + struct.pack('<I', VOX_VERSION) + main_chunk.pack()

    def export(
        self,
        palette: Palette,
        chunks: List[Chunk],
        output_path: Union[str, Path]
    ) -> Path:
        """
        Write a .vox file.

        The file is written to a temporary name next to the target and
        renamed on success, so a failed export never leaves a partial file.

        Args:
            palette: Palette of at most 255 colors
            chunks: Models to write
            output_path: Output file path

        Returns:
            The written path

        Raises:
            ExportIOError: If the file cannot be written
        """
        output_path = Path(output_path)
        data = self.encode(palette, chunks)

        directory = output_path.parent
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                prefix=f'.{output_path.name}.', suffix='.tmp', dir=directory
            )
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
            os.replace(tmp_path, output_path)
        except OSError as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise ExportIOError(f"Cannot write {output_path}: {e}", output_path) from e

        logger.info(
            "Wrote %s (%d models, %d colors, %d bytes)",
            output_path, len(chunks), len(palette), len(data)
        )
        return output_path

    @staticmethod
    def _validate_chunk(index: int, chunk: Chunk, palette: Palette):
        size = np.asarray(chunk.size, dtype=np.int64)
        if size.shape != (3,) or size.min() < 1 or size.max() > MAX_MODEL_SIZE:
            raise ValueError(
                f"Chunk {index}: VOX models are limited to "
                f"{MAX_MODEL_SIZE}x{MAX_MODEL_SIZE}x{MAX_MODEL_SIZE}, got {tuple(chunk.size)}"
            )
        voxels = np.asarray(chunk.voxels).reshape(-1, 4)
        if len(voxels) == 0:
            return
        local = voxels[:, :3].astype(np.int64)
        if local.min() < 0 or np.any(local.max(axis=0) >= size):
            raise ValueError(f"Chunk {index}: voxel coordinates outside size {tuple(chunk.size)}")
        slots = voxels[:, 3].astype(np.int64)
        if slots.min() < 1 or slots.max() > len(palette):
            raise ValueError(
                f"Chunk {index}: palette slots must be in [1, {len(palette)}]"
            )

    @staticmethod
    def _scene_graph(chunks: List[Chunk]) -> List[VoxChunk]:
        """Build the transform/group/shape nodes placing every model."""
        model_nodes = [2 + 2 * k for k in range(len(chunks))]
        nodes = [
            TransformNodeChunk(0, 1, -1),
            GroupNodeChunk(1, model_nodes),
        ]
        for k, chunk in enumerate(chunks):
            translation = [int(o) + int(s) // 2 for o, s in zip(chunk.offset, chunk.size)]
            nodes.append(TransformNodeChunk(2 + 2 * k, 3 + 2 * k, 0, translation))
            nodes.append(ShapeNodeChunk(3 + 2 * k, k))
        return nodes


@dataclass
class VoxModel:
    """One decoded model."""
    size: Tuple[int, int, int]
    voxels: np.ndarray  # (N, 4) uint8 (x, y, z, color_index)
    offset: Tuple[int, int, int] = (0, 0, 0)


@dataclass
class VoxScene:
    """
    Decoded contents of a .vox file.

    Attributes:
        version: File format version
        models: Models in file order, with offsets from the scene graph
        palette: (256, 4) RGBA colors indexed by palette slot (slot 0 unused)
    """
    version: int
    models: List[VoxModel] = field(default_factory=list)
    palette: np.ndarray = field(default_factory=lambda: np.zeros((256, 4), dtype=np.uint8))

    def global_voxels(self) -> np.ndarray:
        """Get every voxel as (N, 4) int64 (x, y, z, color_index) in scene space."""
        parts = []
        for model in self.models:
            voxels = model.voxels.astype(np.int64)
            voxels[:, :3] += np.asarray(model.offset, dtype=np.int64)
            parts.append(voxels)
        if not parts:
            return np.zeros((0, 4), dtype=np.int64)
        return np.concatenate(parts)


class _Reader:
    """Cursor over little-endian .vox bytes."""

    def __init__(self, data: bytes, pos: int = 0):
        self.data = data
        self.pos = pos

    def unpack(self, fmt: str):
        values = struct.unpack_from(fmt, self.data, self.pos)
        self.pos += struct.calcsize(fmt)
        return values

    def int32(self) -> int:
        return self.unpack('<i')[0]

    def string(self) -> str:
        length = self.int32()
        value = self.data[self.pos:self.pos + length].decode('utf-8')
        self.pos += length
        return value

    def dict(self) -> Dict[str, str]:
        return {self.string(): self.string() for _ in range(self.int32())}


def load_vox(source: Union[str, Path, bytes]) -> VoxScene:
    """
    Load a .vox file.

    Args:
        source: Path to a .vox file, or its contents

    Returns:
        VoxScene with models, offsets and palette
    """
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    else:
        with open(Path(source), 'rb') as f:
            data = f.read()

    if data[:4] != VOX_MAGIC:
        raise ValueError(f"Invalid VOX file: bad magic {data[:4]!r}")

    reader = _Reader(data, 4)
    scene = VoxScene(version=reader.unpack('<I')[0])

    main_id = data[reader.pos:reader.pos + 4]
    if main_id != b'MAIN':
        raise ValueError("Expected MAIN chunk")
    content_size, children_size = struct.unpack_from('<II', data, reader.pos + 4)
    pos = reader.pos + 12 + content_size
    end = pos + children_size

    sizes = []
    translations = {}     # transform child id -> _t
    shape_models = {}     # shape node id -> model id

    while pos < end:
        chunk_id = data[pos:pos + 4]
        content_size, children_size = struct.unpack_from('<II', data, pos + 4)
        content = data[pos + 12:pos + 12 + content_size]
        pos += 12 + content_size + children_size

        if chunk_id == b'SIZE':
            sizes.append(struct.unpack('<III', content[:12]))

        elif chunk_id == b'XYZI':
            num_voxels = struct.unpack('<I', content[:4])[0]
            voxels = np.frombuffer(content, dtype=np.uint8, count=num_voxels * 4, offset=4)
            scene.models.append(VoxModel(sizes[-1], voxels.reshape(-1, 4).copy()))

        elif chunk_id == b'nTRN':
            node = _Reader(content)
            node.int32()
            node.dict()
            child_id, _, _, num_frames = node.unpack('<iiii')
            frames = [node.dict() for _ in range(num_frames)]
            if frames and '_t' in frames[0]:
                translations[child_id] = tuple(int(v) for v in frames[0]['_t'].split())

        elif chunk_id == b'nSHP':
            node = _Reader(content)
            node_id = node.int32()
            node.dict()
            if node.int32() > 0:
                shape_models[node_id] = node.int32()

        elif chunk_id == b'RGBA':
            table = np.frombuffer(content[:1024], dtype=np.uint8).reshape(256, 4)
            scene.palette[1:] = table[:255]

    for node_id, model_id in shape_models.items():
        if node_id in translations and model_id < len(scene.models):
            model = scene.models[model_id]
            model.offset = tuple(
                t - s // 2 for t, s in zip(translations[node_id], model.size)
            )

    return scene
