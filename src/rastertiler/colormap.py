"""Colormap parsing and palettes for indexed PNG tiles.

A colormap maps raw integer band values to RGBA colors. It is given as
comma-delimited ``value:hex`` pairs, e.g. ``"1:#686868,2:#fbb4b9"``, or as a
sequence of ``(value, hex)`` pairs. Index 0 of every palette is reserved for
transparency: nodata pixels and values missing from the colormap map to it.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

TRANSPARENT_INDEX = 0
MAX_ENTRIES = 255

# (bit depth, largest number of mapped values it accepts), searched in order
DEPTH_CAPACITY = ((1, 1), (2, 3), (4, 14))

_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{8})$")

RGBA = Tuple[int, int, int, int]


def select_bit_depth(n_entries: int) -> int:
    """Return the smallest PNG bit depth for a palette of ``n_entries`` values.

    Parameters
    ----------
    n_entries : int
        Number of distinct mapped values, not counting the transparent entry.

    Returns
    -------
    int
        One of 1, 2, 4 or 8.

    Raises
    ------
    ConfigurationError
        If the palette holds more than 255 values.
    """
    if n_entries > MAX_ENTRIES:
        raise ConfigurationError(
            f"colormap has {n_entries} values; at most {MAX_ENTRIES} fit in an 8-bit palette")
    for depth, capacity in DEPTH_CAPACITY:
        if n_entries <= capacity:
            return depth
    return 8


def parse_hex_color(text: str) -> RGBA:
    """Parse ``#RRGGBB`` or ``#RRGGBBAA`` into an RGBA tuple."""
    match = _HEX_COLOR.match(text.strip())
    if match is None:
        raise ConfigurationError(f"unsupported hex color: {text!r}")
    channels = bytes.fromhex(match.group(1))
    if len(channels) == 3:
        channels += b"\xff"
    return tuple(channels)


@dataclass(frozen=True)
class Palette:
    """Ordered value to color mapping, shared read-only by render workers.

    Entry ``i`` of ``values`` is written at palette index ``i + 1``.
    """

    values: Tuple[int, ...]
    colors: Tuple[RGBA, ...]
    _sorted_values: np.ndarray = field(init=False, repr=False, compare=False)
    _sorted_indices: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if len(self.values) != len(self.colors):
            raise ConfigurationError("palette values and colors differ in length")
        if len(set(self.values)) != len(self.values):
            raise ConfigurationError("palette values must be unique")
        select_bit_depth(len(self.values))

        order = np.argsort(np.asarray(self.values, dtype=np.int64), kind="stable")
        object.__setattr__(self, "_sorted_values",
                           np.asarray(self.values, dtype=np.int64)[order])
        object.__setattr__(self, "_sorted_indices", (order + 1).astype(np.uint8))

    @classmethod
    def from_pairs(cls, pairs) -> "Palette":
        """Build a palette, keeping the first color given for a repeated value."""
        values, colors = [], []
        for value, color in pairs:
            if value in values:
                logger.warning("colormap value %s listed more than once; keeping first", value)
                continue
            color = tuple(int(c) for c in color)
            if len(color) == 3:
                color += (255,)
            values.append(value)
            colors.append(color)
        return cls(tuple(values), tuple(colors))

    def __len__(self):
        return len(self.values)

    @property
    def bit_depth(self) -> int:
        return select_bit_depth(len(self.values))

    def validate_dtype(self, dtype) -> None:
        """Check that every value is representable in the band's integer type.

        Raises
        ------
        ConfigurationError
            If ``dtype`` is not an integer type or a value falls outside it.
        """
        dtype = np.dtype(dtype)
        if dtype.kind not in "iu":
            raise ConfigurationError(
                f"colormap requires integer band data, got {dtype.name}")
        info = np.iinfo(dtype)
        for value in self.values:
            if value < info.min or value > info.max:
                raise ConfigurationError(
                    f"colormap value {value} is outside the {dtype.name} range "
                    f"[{info.min}, {info.max}]")

    def lookup(self, data, nodata=None) -> np.ndarray:
        """Map raw values to palette indices.

        Values missing from the palette and nodata pixels map to the
        transparent index.
        """
        data = np.asarray(data)
        if not self.values:
            return np.full(data.shape, TRANSPARENT_INDEX, dtype=np.uint8)

        pos = np.searchsorted(self._sorted_values, data)
        pos = np.clip(pos, 0, len(self._sorted_values) - 1)
        found = self._sorted_values[pos] == data
        indices = np.where(found, self._sorted_indices[pos], TRANSPARENT_INDEX).astype(np.uint8)
        if nodata is not None:
            indices[data == nodata] = TRANSPARENT_INDEX
        return indices

    def plte(self) -> bytes:
        """Return the PLTE payload: transparent entry first, then each color."""
        table = bytearray(b"\x00\x00\x00")
        for r, g, b, _ in self.colors:
            table.extend((r, g, b))
        return bytes(table)

    def trns(self) -> bytes:
        """Return the tRNS payload, omitting trailing opaque entries."""
        alphas = [0] + [color[3] for color in self.colors]
        while len(alphas) > 1 and alphas[-1] == 255:
            alphas.pop()
        return bytes(alphas)


def _split_entries(text: str):
    for entry in text.split(","):
        entry = entry.strip()
        if not entry:
            continue
        value, sep, color = entry.partition(":")
        if not sep:
            raise ConfigurationError(f"colormap entry must be value:hex, got {entry!r}")
        yield value.strip(), color.strip()


def parse_colormap(colormap: Union[str, Mapping, Sequence], dtype=None) -> Palette:
    """Parse a colormap into a Palette.

    Parameters
    ----------
    colormap : str, mapping or sequence of pairs
        ``"value:hex,..."`` text, a ``{value: hex}`` mapping, or
        ``(value, hex)`` pairs.
    dtype : numpy dtype, optional
        Band data type; when given, every value must be representable in it.

    Returns
    -------
    Palette
        Palette in the order the values were given.

    Raises
    ------
    ConfigurationError
        On malformed entries, more than 255 values, or values outside
        the band's range.
    """
    if isinstance(colormap, str):
        entries = list(_split_entries(colormap))
    elif isinstance(colormap, Mapping):
        entries = list(colormap.items())
    else:
        entries = list(colormap)
    if not entries:
        raise ConfigurationError("colormap is empty")

    pairs = []
    for value, color in entries:
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"colormap value is not an integer: {value!r}") from None
        if isinstance(color, str):
            color = parse_hex_color(color)
        pairs.append((value, color))

    palette = Palette.from_pairs(pairs)
    if dtype is not None:
        palette.validate_dtype(dtype)
    logger.info("colormap has %d values; using %d-bit palette", len(palette), palette.bit_depth)
    return palette


def parse_optional_colormap(colormap, dtype=None) -> Optional[Palette]:
    """Like parse_colormap, but return None when no colormap is given."""
    if colormap is None or (isinstance(colormap, str) and not colormap.strip()):
        return None
    return parse_colormap(colormap, dtype=dtype)
