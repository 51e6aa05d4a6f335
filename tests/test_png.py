"""Tests for the rastertiler.png and rastertiler.encoders modules.

Encoded tiles are decoded with Pillow to check they are standard PNGs.
"""

import io
import struct
import zlib

import numpy as np
import pytest
from PIL import Image

from rastertiler import png
from rastertiler.colormap import parse_colormap
from rastertiler.encoders import (
    GrayscaleEncoder,
    PaletteEncoder,
    RGBEncoder,
    build_encoder,
    split_rgb,
)
from rastertiler.errors import ConfigurationError

SAMPLE_COLORMAP = "1:#686868,2:#fbb4b9,3:#c51b8a,4:#49006a"

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
COLOR_GRAYSCALE_ALPHA = 4
COLOR_INDEXED = 3
COLOR_RGBA = 6


def read_chunks(data):
    """Return the list of (tag, payload) chunks of a PNG file."""
    assert data[:8] == PNG_SIGNATURE
    chunks = []
    pos = 8
    while pos < len(data):
        length, = struct.unpack(">I", data[pos:pos + 4])
        tag = data[pos + 4:pos + 8]
        payload = data[pos + 8:pos + 8 + length]
        crc, = struct.unpack(">I", data[pos + 8 + length:pos + 12 + length])
        assert crc == zlib.crc32(tag + payload) & 0xFFFFFFFF
        chunks.append((tag, payload))
        pos += 12 + length
    return chunks


def header(data):
    """Return (width, height, bit depth, color type) from IHDR."""
    tag, payload = read_chunks(data)[0]
    assert tag == b"IHDR"
    return struct.unpack(">IIBB", payload[:10])


def decode(data):
    return Image.open(io.BytesIO(data))


class TestEncodeIndexed:
    """Tests for png.encode_indexed."""

    def test_explicit_depth_keeps_indices(self):
        """A 2-bit image with two colors should be written at 2 bits."""
        indices = np.array([[0, 1, 1], [1, 0, 0]], dtype=np.uint8)

        data = png.encode_indexed(indices, 2, b"\x00\x00\x00\xff\x00\x00", b"\x00")

        assert header(data) == (3, 2, 2, COLOR_INDEXED)
        np.testing.assert_array_equal(np.array(decode(data)), indices)

    def test_rejects_unknown_depth(self):
        """Depths other than 1, 2, 4 and 8 should be rejected."""
        with pytest.raises(ValueError):
            png.encode_indexed(np.zeros((2, 2)), 3, b"\x00\x00\x00")


class TestPaletteEncoder:
    """Tests for indexed tile encoding."""

    def test_nodata_window_is_transparent(self):
        """An 8x8 nodata-only window should encode to a fully transparent tile."""
        encoder = PaletteEncoder(parse_colormap(SAMPLE_COLORMAP), nodata=0)
        data = encoder.encode(np.zeros((8, 8), dtype=np.uint8))

        image = decode(data).convert("RGBA")
        assert image.size == (8, 8)
        assert np.array(image)[..., 3].max() == 0
        assert header(data)[2] == 4

    def test_sample_colormap_layout(self):
        """Four colors should give a 4-bit image with a five entry PLTE."""
        palette = parse_colormap(SAMPLE_COLORMAP)
        data = PaletteEncoder(palette, nodata=0).encode(np.ones((8, 8), dtype=np.uint8))
        chunks = dict(read_chunks(data))

        assert header(data) == (8, 8, 4, COLOR_INDEXED)
        assert len(chunks[b"PLTE"]) == 5 * 3
        assert chunks[b"tRNS"] == b"\x00"
        assert list(chunks)[-1] == b"IEND"

    @pytest.mark.parametrize("n_values", [1, 3, 14, 200])
    def test_decodes_to_all_indices(self, n_values):
        """A window holding every value plus nodata should decode to K+1 indices."""
        colormap = [(v, f"#{v:02x}{v:02x}{v:02x}") for v in range(1, n_values + 1)]
        palette = parse_colormap(colormap)
        values = np.arange(0, n_values + 1, dtype=np.uint8)
        window = np.resize(values, (16, 16))

        data = PaletteEncoder(palette, nodata=0).encode(window)
        image = decode(data)

        assert image.mode == "P"
        assert header(data)[2] == palette.bit_depth
        assert len(dict(read_chunks(data))[b"PLTE"]) == (n_values + 1) * 3
        np.testing.assert_array_equal(np.unique(np.array(image)), values)
        np.testing.assert_array_equal(np.array(image), window)

    def test_fifteen_values_use_eight_bits(self):
        """Fifteen colors should be written at 8 bits even though 4 would fit."""
        colormap = [(v, "#ffffff") for v in range(1, 16)]
        window = np.resize(np.arange(0, 16, dtype=np.uint8), (4, 8))

        data = PaletteEncoder(parse_colormap(colormap), nodata=0).encode(window)

        assert header(data)[2:] == (8, COLOR_INDEXED)
        np.testing.assert_array_equal(np.array(decode(data)), window)

    def test_odd_width_rows(self):
        """Rows whose width is not a multiple of the pixels per byte should decode."""
        palette = parse_colormap("1:#ff0000")
        window = np.array([[1, 0, 1, 1, 0], [0, 1, 0, 0, 1], [1, 1, 1, 1, 1]], dtype=np.uint8)

        image = decode(PaletteEncoder(palette, nodata=0).encode(window))

        assert image.size == (5, 3)
        np.testing.assert_array_equal(np.array(image), window)

    def test_colors_decode(self):
        """Mapped pixels should decode to their colormap colors."""
        palette = parse_colormap("1:#ff0000,2:#00ff0080")
        window = np.array([[1, 2, 9]], dtype=np.uint8)

        rgba = np.array(decode(PaletteEncoder(palette, nodata=0).encode(window)).convert("RGBA"))

        assert rgba[0, 0].tolist() == [255, 0, 0, 255]
        assert rgba[0, 1].tolist() == [0, 255, 0, 128]
        assert rgba[0, 2, 3] == 0

    def test_is_idempotent(self):
        """Encoding the same window twice should give identical bytes."""
        encoder = PaletteEncoder(parse_colormap(SAMPLE_COLORMAP), nodata=0)
        window = np.random.default_rng(0).integers(0, 5, (64, 64), dtype=np.uint8)

        assert encoder.encode(window) == encoder.encode(window.copy())


class TestGrayscaleEncoder:
    """Tests for grayscale plus alpha encoding."""

    def test_values_and_alpha(self):
        """Values should pass through and nodata should be transparent."""
        window = np.array([[0, 10], [128, 255]], dtype=np.uint8)

        data = GrayscaleEncoder(nodata=0).encode(window)
        image = decode(data)

        assert header(data)[2:] == (8, COLOR_GRAYSCALE_ALPHA)
        assert image.mode == "LA"
        pixels = np.array(image)
        np.testing.assert_array_equal(pixels[..., 0], window)
        np.testing.assert_array_equal(pixels[..., 1], [[0, 255], [255, 255]])

    def test_no_nodata_is_opaque(self):
        """Without nodata every pixel should be opaque."""
        image = decode(GrayscaleEncoder().encode(np.zeros((4, 4), dtype=np.uint8)))

        assert np.array(image)[..., 1].min() == 255


class TestRGBEncoder:
    """Tests for packed 24-bit RGB encoding."""

    def test_split_rgb(self):
        """Values should split into R, G and B bytes."""
        assert split_rgb(np.array([0x123456])).tolist() == [[0x12, 0x34, 0x56]]

    def test_few_values_use_palette(self):
        """Tiles with few distinct values should be written indexed."""
        window = np.array([[0, 0x010203], [0x0A0B0C, 0x010203]], dtype=np.uint32)

        data = RGBEncoder(nodata=0).encode(window)
        rgba = np.array(decode(data).convert("RGBA"))

        assert header(data)[3] == COLOR_INDEXED
        assert rgba[0, 0, 3] == 0
        assert rgba[0, 1].tolist() == [1, 2, 3, 255]
        assert rgba[1, 0].tolist() == [10, 11, 12, 255]

    def test_many_values_use_rgba(self):
        """Tiles with more than 255 distinct values should be written as RGBA."""
        window = np.arange(1, 1025, dtype=np.uint16).reshape(32, 32)
        window[0, 0] = 0

        data = RGBEncoder(nodata=0).encode(window)
        rgba = np.array(decode(data))

        assert header(data)[2:] == (8, COLOR_RGBA)
        assert rgba[0, 0, 3] == 0
        assert rgba[0, 1].tolist() == [0, 0, 2, 255]
        assert rgba[31, 31].tolist() == [0, 4, 0, 255]

    def test_drops_high_bits(self):
        """Bits above 23 should be discarded."""
        window = np.array([[0x01FFFFFF]], dtype=np.uint32)

        rgba = np.array(decode(RGBEncoder(nodata=0).encode(window)).convert("RGBA"))

        assert rgba[0, 0].tolist() == [255, 255, 255, 255]

    def test_empty_tile_is_transparent(self):
        """A nodata-only window should be fully transparent."""
        data = RGBEncoder(nodata=0).encode(np.zeros((8, 8), dtype=np.uint16))

        assert np.array(decode(data).convert("RGBA"))[..., 3].max() == 0


class TestBuildEncoder:
    """Tests for encoder selection."""

    def test_uint8_without_colormap_is_grayscale(self):
        """uint8 bands without a colormap should render grayscale."""
        assert isinstance(build_encoder(np.uint8, 0), GrayscaleEncoder)

    @pytest.mark.parametrize("dtype", [np.uint16, np.uint32])
    def test_wide_unsigned_is_rgb(self, dtype):
        """16 and 32 bit unsigned bands should render packed RGB."""
        assert isinstance(build_encoder(dtype, 0), RGBEncoder)

    @pytest.mark.parametrize("dtype", [np.uint8, np.int16, np.uint32])
    def test_colormap_selects_palette(self, dtype):
        """Any integer band with a colormap should render indexed."""
        encoder = build_encoder(dtype, 0, parse_colormap("1:#ffffff"))

        assert isinstance(encoder, PaletteEncoder)

    @pytest.mark.parametrize("dtype", [np.float32, np.float64])
    def test_rejects_float(self, dtype):
        """Float bands should raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="not supported"):
            build_encoder(dtype, 0)

    def test_signed_without_colormap_is_rejected(self):
        """Signed bands need a colormap."""
        with pytest.raises(ConfigurationError, match="colormap"):
            build_encoder(np.int16, 0)

    def test_colormap_out_of_range(self):
        """Colormap values outside the band range should raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            build_encoder(np.uint8, 0, parse_colormap("1000:#ffffff"))
