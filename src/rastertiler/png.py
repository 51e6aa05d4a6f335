"""PNG tile writing with Pillow.

Tiles are written non-interlaced at zlib level 9. Indexed images may use 1,
2, 4 or 8 bits per pixel; the PLTE chunk holds exactly the palette given,
and the tRNS chunk the alpha values given.
"""
import io

import numpy as np
from PIL import Image

COMPRESSION_LEVEL = 9


def _save(image: Image.Image, **options) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG", optimize=False, compress_level=COMPRESSION_LEVEL, **options)
    return buf.getvalue()


def _inferred_depth(entries: int) -> int:
    """Bit depth Pillow picks for a palette with ``entries`` colors."""
    if entries <= 2:
        return 1
    if entries <= 4:
        return 2
    if entries <= 16:
        return 4
    return 8


def encode_indexed(indices: np.ndarray, bit_depth: int, plte: bytes, trns: bytes = b"") -> bytes:
    """Encode a palette image.

    Parameters
    ----------
    indices : numpy.ndarray
        2D array of palette indices.
    bit_depth : int
        Bits per pixel: 1, 2, 4 or 8.
    plte : bytes
        Packed RGB triplets, one per palette entry.
    trns : bytes, optional
        Alpha for the leading palette entries.

    Returns
    -------
    bytes
        Complete PNG file contents.
    """
    if bit_depth not in (1, 2, 4, 8):
        raise ValueError(f"unsupported bit depth: {bit_depth}")
    image = Image.fromarray(np.ascontiguousarray(indices, dtype=np.uint8))
    image.putpalette(plte)

    options = {}
    # an explicit depth pads PLTE to 2**bits entries, so only force it when
    # the palette size alone would pick another depth
    if _inferred_depth(len(plte) // 3) != bit_depth:
        options["bits"] = bit_depth
    if trns:
        options["transparency"] = trns
    return _save(image, **options)


def encode_gray_alpha(gray: np.ndarray, alpha: np.ndarray) -> bytes:
    """Encode an 8-bit grayscale image with an 8-bit alpha channel."""
    pixels = np.stack([np.asarray(gray, dtype=np.uint8), np.asarray(alpha, dtype=np.uint8)],
                      axis=-1)
    return _save(Image.fromarray(pixels))


def encode_rgba(rgba: np.ndarray) -> bytes:
    """Encode an 8-bit RGBA image given as a (height, width, 4) array."""
    return _save(Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8)))
