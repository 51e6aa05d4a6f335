"""Tile encoders for the supported rendering modes.

``PaletteEncoder``
    Applies a colormap and writes an indexed PNG at the palette's bit depth.
``GrayscaleEncoder``
    Passes 8-bit values through as gray, with alpha from the nodata mask.
``RGBEncoder``
    Splits 16/32-bit values into 24-bit RGB. Tiles with at most 255 distinct
    values are written as indexed PNGs with a palette built for that tile;
    busier tiles are written as RGBA. Value bits above 23 are discarded.

Categorical encoders (palette and RGB) must be fed nearest-neighbor
resampled data: interpolated values would be missing from the colormap
and silently become transparent.
"""
import numpy as np

from . import png
from .colormap import MAX_ENTRIES, Palette
from .errors import ConfigurationError


def nodata_mask(data: np.ndarray, nodata) -> np.ndarray:
    """Return a boolean mask that is True where ``data`` holds nodata."""
    if nodata is None:
        return np.zeros(np.shape(data), dtype=bool)
    return np.asarray(data) == nodata


class PaletteEncoder:
    """Encode raw values through a colormap palette."""

    categorical = True

    def __init__(self, palette: Palette, nodata=None):
        self.palette = palette
        self.nodata = nodata
        self._plte = palette.plte()
        self._trns = palette.trns()

    def encode(self, data: np.ndarray) -> bytes:
        indices = self.palette.lookup(data, self.nodata)
        return png.encode_indexed(indices, self.palette.bit_depth, self._plte, self._trns)


class GrayscaleEncoder:
    """Encode 8-bit values as grayscale plus alpha."""

    categorical = False

    def __init__(self, nodata=None):
        self.nodata = nodata

    def encode(self, data: np.ndarray) -> bytes:
        alpha = np.where(nodata_mask(data, self.nodata), 0, 255).astype(np.uint8)
        return png.encode_gray_alpha(np.asarray(data, dtype=np.uint8), alpha)


def split_rgb(values: np.ndarray) -> np.ndarray:
    """Split integer values into an (..., 3) array of R, G, B bytes."""
    values = np.asarray(values, dtype=np.uint32)
    return np.stack([(values >> 16) & 0xFF, (values >> 8) & 0xFF, values & 0xFF],
                    axis=-1).astype(np.uint8)


class RGBEncoder:
    """Encode 16/32-bit values as packed 24-bit colors."""

    categorical = True

    def __init__(self, nodata=None):
        self.nodata = nodata

    def encode(self, data: np.ndarray) -> bytes:
        data = np.asarray(data)
        empty = nodata_mask(data, self.nodata)
        values = np.unique(data[~empty])

        if len(values) <= MAX_ENTRIES:
            colors = [tuple(rgb) + (255,) for rgb in split_rgb(values).tolist()]
            palette = Palette(tuple(int(v) for v in values), tuple(colors))
            return PaletteEncoder(palette, self.nodata).encode(data)

        rgba = np.empty(data.shape + (4,), dtype=np.uint8)
        rgba[..., :3] = split_rgb(data)
        rgba[..., 3] = np.where(empty, 0, 255)
        return png.encode_rgba(rgba)


def build_encoder(dtype, nodata=None, palette=None):
    """Select the encoder for a band.

    Parameters
    ----------
    dtype : numpy dtype
        Band data type; must be an integer type.
    nodata : int, optional
        Band nodata value.
    palette : Palette, optional
        Colormap palette; its values are checked against ``dtype``.

    Raises
    ------
    ConfigurationError
        If the data type is not supported for the requested mode.
    """
    dtype = np.dtype(dtype)
    if dtype.kind not in "iu":
        raise ConfigurationError(f"data type is not supported: {dtype.name}")
    if palette is not None:
        palette.validate_dtype(dtype)
        return PaletteEncoder(palette, nodata)
    if dtype == np.uint8:
        return GrayscaleEncoder(nodata)
    if dtype in (np.uint16, np.uint32):
        return RGBEncoder(nodata)
    raise ConfigurationError(f"data type {dtype.name} requires a colormap")
