"""
Color Management Module

Handles:
- Packing RGBA colors into uint32 values for compact voxel storage
- Palette generation for the 255 usable slots of a .vox palette
  (slot 0 is reserved for empty space)

Palette Methods:
- merge: exact dedupe, then deterministic nearest-pair merging in RGB space
- rgb332: fixed 3-3-2 bit encoding, independent of the input colors
- kmeans: K-Means clustering with a fixed seed
"""

from dataclasses import dataclass
from typing import Tuple, Union, Sequence
import logging
import numpy as np
from numba import njit

from .errors import PaletteOverflowError

logger = logging.getLogger(__name__)

# Usable .vox palette slots (1..255)
MAX_PALETTE_COLORS = 255

# Largest distinct-color count handed to the pairwise merge
MERGE_LIMIT = 4096

PALETTE_METHODS = ("merge", "rgb332", "kmeans")

ColorLike = Union[Sequence[int], np.ndarray]


def pack_rgba(colors: np.ndarray) -> np.ndarray:
    """
    Pack RGBA colors into uint32 values (r | g << 8 | b << 16 | a << 24).

    Args:
        colors: Array of shape (N, 4) or (4,) with uint8 RGBA values

    Returns:
        Array of shape (N,) or a 0-d array with packed colors
    """
    colors = np.asarray(colors, dtype=np.uint32)
    return (
        colors[..., 0]
        | (colors[..., 1] << 8)
        | (colors[..., 2] << 16)
        | (colors[..., 3] << 24)
    ).astype(np.uint32)


def unpack_rgba(packed: np.ndarray) -> np.ndarray:
    """
    Unpack uint32 colors into RGBA.

    Args:
        packed: Array of shape (N,) with packed colors

    Returns:
        Array of shape (N, 4) with uint8 RGBA values
    """
    packed = np.asarray(packed, dtype=np.uint32)
    return np.stack([
        packed & 0xFF,
        (packed >> 8) & 0xFF,
        (packed >> 16) & 0xFF,
        (packed >> 24) & 0xFF,
    ], axis=-1).astype(np.uint8)


def to_rgba(color: ColorLike) -> Tuple[int, int, int, int]:
    """
    Normalize an RGB or RGBA color to an (r, g, b, a) tuple of ints.

    Args:
        color: 3 or 4 components in 0-255

    Returns:
        RGBA tuple, alpha defaults to 255
    """
    values = [int(c) for c in color]
    if len(values) == 3:
        values.append(255)
    if len(values) != 4:
        raise ValueError(f"Expected an RGB or RGBA color, got {color!r}")
    if any(c < 0 or c > 255 for c in values):
        raise ValueError(f"Color components must be in 0-255, got {color!r}")
    return tuple(values)


@dataclass(frozen=True)
class Palette:
    """
    Ordered palette of at most 255 colors.

    Entry i of `colors` lives in .vox palette slot i + 1.
    """

    colors: np.ndarray  # (M, 4) uint8 RGBA

    def __len__(self) -> int:
        return len(self.colors)

    def to_vox_rgba(self) -> np.ndarray:
        """
        Get the 256-entry RGBA table as stored in a .vox RGBA chunk.

        Entry i of the table is slot i + 1; unused entries are zero.
        """
        table = np.zeros((256, 4), dtype=np.uint8)
        table[:len(self.colors)] = self.colors
        return table

    def slot_color(self, slot: int) -> np.ndarray:
        """Get the RGBA color stored in a .vox palette slot (1-255)."""
        if not 1 <= slot <= len(self.colors):
            raise IndexError(f"Palette slot {slot} out of range [1, {len(self.colors)}]")
        return self.colors[slot - 1]


def _unique_first_seen(packed: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Deduplicate values keeping first-seen order.

    Returns:
        Tuple of (unique, inverse, first) where unique[inverse] == packed
        and first[k] is the position where unique[k] first appears
    """
    unique, first, inverse = np.unique(packed, return_index=True, return_inverse=True)
    order = np.argsort(first, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(len(order))
    return unique[order], rank[inverse.reshape(-1)], first[order]


def _rgb_key(rgb: np.ndarray) -> np.ndarray:
    """Pack RGB colors into uint32 keys, ignoring alpha."""
    rgb = rgb.astype(np.uint32)
    return rgb[:, 0] | (rgb[:, 1] << 8) | (rgb[:, 2] << 16)


@njit(cache=True)
def _nearest(rgb: np.ndarray, alive: np.ndarray, i: int) -> Tuple[int, float]:
    """Find the closest live color to color i (lowest index on ties)."""
    best = -1
    best_dist = np.inf
    for j in range(rgb.shape[0]):
        if j == i or not alive[j]:
            continue
        d = 0.0
        for c in range(3):
            diff = rgb[i, c] - rgb[j, c]
            d += diff * diff
        if d < best_dist:
            best_dist = d
            best = j
    return best, best_dist


@njit(cache=True)
def _merge_nearest(rgb: np.ndarray, target: int) -> np.ndarray:
    """
    Merge the closest pair of colors until `target` colors remain.

    Colors are in first-seen order. The pair with the smallest squared
    distance is merged first; ties go to the pair with the lowest
    (earlier, later) indices. The later color is folded into the earlier
    one, which keeps its value.

    Returns:
        (N,) int64 array mapping every color to its surviving color
    """
    n = rgb.shape[0]
    alive = np.ones(n, dtype=np.bool_)
    parent = np.arange(n)
    neighbor = np.empty(n, dtype=np.int64)
    distance = np.empty(n, dtype=np.float64)

    for i in range(n):
        nb, dist = _nearest(rgb, alive, i)
        neighbor[i] = nb
        distance[i] = dist

    remaining = n
    while remaining > target:
        # Closest pair, earliest survivor first
        best_i = -1
        best_d = np.inf
        best_j = n
        for i in range(n):
            if not alive[i]:
                continue
            j = neighbor[i]
            lo = min(i, j)
            hi = max(i, j)
            d = distance[i]
            if d < best_d or (d == best_d and (lo < best_i or (lo == best_i and hi < best_j))):
                best_d = d
                best_i = lo
                best_j = hi

        alive[best_j] = False
        parent[best_j] = best_i
        remaining -= 1

        for i in range(n):
            if alive[i] and (neighbor[i] == best_j or i == best_i):
                nb, dist = _nearest(rgb, alive, i)
                neighbor[i] = nb
                distance[i] = dist

    # Resolve chains of merges
    for i in range(n):
        root = i
        while parent[root] != root:
            root = parent[root]
        parent[i] = root

    return parent


def _reduce_bit_depth(rgb: np.ndarray, limit: int) -> Tuple[np.ndarray, int]:
    """
    Drop low bits per channel until at most `limit` distinct colors remain.

    Returns:
        Tuple of (reduced_rgb, dropped_bits)
    """
    for bits in range(1, 8):
        mask = np.uint8((0xFF << bits) & 0xFF)
        reduced = rgb & mask
        if len(np.unique(_rgb_key(reduced))) <= limit:
            return reduced, bits
    return rgb & np.uint8(0x80), 7


def rgb332_encode(rgb: np.ndarray) -> np.ndarray:
    """
    Encode RGB colors into one byte: 3 bits red, 3 bits green, 2 bits blue.

    Args:
        rgb: Array of shape (N, 3) with uint8 values

    Returns:
        Array of shape (N,) with uint8 codes
    """
    rgb = np.asarray(rgb, dtype=np.uint8)
    return (
        (rgb[:, 0] >> 5)
        | ((rgb[:, 1] >> 5) << 3)
        | ((rgb[:, 2] >> 6) << 6)
    ).astype(np.uint8)


def rgb332_decode(codes: np.ndarray) -> np.ndarray:
    """
    Decode 3-3-2 bit color codes back to RGB.

    Args:
        codes: Array of shape (N,) with uint8 codes

    Returns:
        Array of shape (N, 3) with uint8 RGB values
    """
    codes = np.asarray(codes, dtype=np.uint8)
    r = (codes & 0x07) << 5
    g = ((codes >> 3) & 0x07) << 5
    b = ((codes >> 6) & 0x03) << 6
    return np.stack([r, g, b], axis=-1).astype(np.uint8)


class ColorQuantizer:
    """
    Color quantization for palette-limited formats.

    The .vox format is limited to 255 colors. This class reduces
    the color count deterministically: identical input gives identical
    palettes and indices.
    """

    def __init__(self, max_colors: int = MAX_PALETTE_COLORS, method: str = "merge"):
        """
        Initialize the quantizer.

        Args:
            max_colors: Maximum number of colors in output palette (1-255)
            method: Quantization method ("merge", "rgb332", "kmeans")
        """
        if not 1 <= max_colors <= MAX_PALETTE_COLORS:
            raise ValueError(f"max_colors must be in [1, {MAX_PALETTE_COLORS}], got {max_colors}")
        if method not in PALETTE_METHODS:
            raise ValueError(f"Unknown quantization method: {method}")
        self.max_colors = max_colors
        self.method = method

    def build_palette(self, colors: np.ndarray) -> Tuple[Palette, np.ndarray]:
        """
        Build a palette for a set of voxel colors.

        Args:
            colors: Array of shape (N,) with packed uint32 colors, or
                    (N, 4) with uint8 RGBA values

        Returns:
            Tuple of (palette, slots) where slots[i] is the .vox palette
            slot (1-255) of colors[i]

        Raises:
            PaletteOverflowError: If reduction left too many colors
        """
        colors = np.asarray(colors)
        packed = pack_rgba(colors) if colors.ndim == 2 else colors.astype(np.uint32)

        if len(packed) == 0:
            return Palette(np.zeros((0, 4), dtype=np.uint8)), np.zeros(0, dtype=np.uint8)

        if self.method == "merge":
            palette_rgba, indices = self._merge_quantize(packed)
        elif self.method == "rgb332":
            palette_rgba, indices = self._rgb332_quantize(packed)
        else:
            palette_rgba, indices = self._kmeans_quantize(packed)

        if len(palette_rgba) > self.max_colors:
            raise PaletteOverflowError(
                f"Palette reduction left {len(palette_rgba)} colors "
                f"(limit {self.max_colors})",
                len(palette_rgba)
            )
        if len(indices) and (indices.min() < 0 or indices.max() >= len(palette_rgba)):
            raise PaletteOverflowError(
                "Palette index out of range after reduction",
                len(palette_rgba)
            )

        return Palette(palette_rgba.astype(np.uint8)), (indices + 1).astype(np.uint8)

    def _merge_quantize(self, packed: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Deduplicate, then merge nearest colors.

        Returns:
            (palette, indices) with 0-based indices
        """
        unique, inverse, _ = _unique_first_seen(packed)
        rgba = unpack_rgba(unique)

        if len(unique) <= self.max_colors:
            return rgba, inverse

        logger.warning(
            "Reducing %d distinct colors to a %d-color palette",
            len(unique), self.max_colors
        )

        rgb = rgba[:, :3]
        if len(unique) > MERGE_LIMIT:
            rgb, bits = _reduce_bit_depth(rgb, MERGE_LIMIT)
            logger.debug("Dropped %d low bits per channel before merging", bits)
            # Dedupe again on the reduced colors; each group keeps the
            # full-precision color that was seen first
            _, reduced_inverse, first = _unique_first_seen(_rgb_key(rgb))
            rgba = rgba[first]
            rgb = rgb[first]
            inverse = reduced_inverse[inverse]

        parent = _merge_nearest(rgb.astype(np.float64), self.max_colors)

        survivors = np.unique(parent)
        slot_of = np.full(len(parent), -1, dtype=np.int64)
        slot_of[survivors] = np.arange(len(survivors))

        return rgba[survivors], slot_of[parent][inverse]

    def _rgb332_quantize(self, packed: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Fixed 3-3-2 bit palette.

        Code 255 (white) shares a slot with code 254 so the palette fits
        the 255 usable slots.
        """
        rgba = unpack_rgba(packed)
        codes = rgb332_encode(rgba[:, :3]).astype(np.int64)
        codes = np.minimum(codes, MAX_PALETTE_COLORS - 1)

        table = np.column_stack([
            rgb332_decode(np.arange(MAX_PALETTE_COLORS, dtype=np.uint8)),
            np.full(MAX_PALETTE_COLORS, 255, dtype=np.uint8)
        ])

        if self.max_colors < MAX_PALETTE_COLORS:
            # Only keep the codes that are actually used
            used, inverse, _ = _unique_first_seen(codes.astype(np.uint32))
            return table[used], inverse

        return table, codes

    def _kmeans_quantize(self, packed: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        K-Means color quantization.

        Returns:
            (palette, indices)
        """
        from scipy.cluster.vq import kmeans2

        unique, inverse, _ = _unique_first_seen(packed)
        rgba = unpack_rgba(unique)

        if len(unique) <= self.max_colors:
            return rgba, inverse

        k = min(self.max_colors, len(unique))
        centroids, labels = kmeans2(
            rgba[:, :3].astype(np.float64),
            k,
            minit="++",
            iter=20,
            seed=0
        )

        # Drop clusters that ended up empty
        used, remap = np.unique(labels, return_inverse=True)
        palette = np.column_stack([
            np.clip(np.rint(centroids[used]), 0, 255).astype(np.uint8),
            np.full(len(used), 255, dtype=np.uint8)
        ])
        return palette, remap.reshape(-1)[inverse]


def build_palette(
    colors: np.ndarray,
    method: str = "merge",
    max_colors: int = MAX_PALETTE_COLORS
) -> Tuple[Palette, np.ndarray]:
    """
    Build a palette and per-voxel palette slots.

    Args:
        colors: Packed uint32 colors (N,) or RGBA (N, 4)
        method: Quantization method
        max_colors: Palette size limit

    Returns:
        Tuple of (palette, slots)
    """
    return ColorQuantizer(max_colors=max_colors, method=method).build_palette(colors)
