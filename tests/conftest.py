"""Shared pytest fixtures for rastertiler tests."""

import io
import tempfile
from pathlib import Path

import numpy as np
import pytest
import rasterio
from PIL import Image
from rasterio.transform import from_bounds

from rastertiler.mbtiles import TilesetMetadata, TileStore
from rastertiler.tilegrid import TileKey

# 4000 km square centered on the origin, in Web Mercator meters
SAMPLE_BOUNDS = (-2_000_000.0, -2_000_000.0, 2_000_000.0, 2_000_000.0)


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that is cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_raster(temp_dir):
    """Provide a factory writing single-band GeoTIFFs into temp_dir."""

    def _make(data, name="source.tif", nodata=0, bounds=SAMPLE_BOUNDS, crs="EPSG:3857"):
        data = np.asarray(data)
        height, width = data.shape
        path = temp_dir / name
        profile = {
            "driver": "GTiff",
            "width": width,
            "height": height,
            "count": 1,
            "dtype": data.dtype.name,
            "crs": crs,
            "transform": from_bounds(*bounds, width, height),
        }
        if nodata is not None:
            profile["nodata"] = nodata
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(data, 1)
        return path

    return _make


@pytest.fixture
def class_raster(make_raster):
    """Provide a 64x64 uint8 raster with classes 1-4 in quadrants and a nodata border."""
    data = np.zeros((64, 64), dtype=np.uint8)
    data[4:32, 4:32] = 1
    data[4:32, 32:60] = 2
    data[32:60, 4:32] = 3
    data[32:60, 32:60] = 4
    return make_raster(data)


@pytest.fixture
def png_tile():
    """Provide a factory for small solid-color PNG tiles."""

    def _make(color, size=8):
        buffer = io.BytesIO()
        Image.new("RGBA", (size, size), color).save(buffer, format="PNG")
        return buffer.getvalue()

    return _make


@pytest.fixture
def make_tileset(temp_dir):
    """Provide a factory writing finalized MBTiles files from {TileKey: bytes}."""

    def _make(name, tiles, bounds=(-10.0, -10.0, 10.0, 10.0), **fields):
        path = temp_dir / name
        zooms = [TileKey(*key).zoom for key in tiles] or [0]
        metadata = TilesetMetadata(
            name=fields.pop("title", Path(name).stem),
            minzoom=min(zooms),
            maxzoom=max(zooms),
            bounds=bounds,
            **fields,
        )
        with TileStore.create(path) as store:
            for key, data in tiles.items():
                store.put(TileKey(*key), data)
            store.finalize(metadata)
        return path

    return _make
