"""Tile grid derivation for Web Mercator tile pyramids.

This module computes, for each zoom level, which tiles overlap a raster's
extent and which window of source pixels covers each tile. Tiles are
addressed with mercantile for footprint math, but stored keys use the
south-up (TMS) row convention of the MBTiles format: row 0 is the southern
edge of the world. ``SCHEME`` names that convention and ``flip_row`` is the
only place rows are converted between conventions.
"""
import math
from dataclasses import dataclass
from typing import Iterator, List, NamedTuple, Optional

import mercantile
from affine import Affine

from .errors import ConfigurationError

EARTH_RADIUS = 6378137.0
WORLD_SIZE = 2 * math.pi * EARTH_RADIUS
ORIGIN = WORLD_SIZE / 2
MAX_ZOOM = 24
SCHEME = "tms"

# tolerance in tile units when snapping extents to tile edges
EPSILON = 1e-9


def flip_row(zoom: int, row: int) -> int:
    """Convert a tile row between north-up (XYZ) and south-up (TMS) numbering."""
    return (1 << zoom) - 1 - row


def zoom_to_resolution_m(zoom: int, tile_size: int = 256) -> float:
    """Convert a zoom level to resolution in meters per pixel.

    Parameters
    ----------
    zoom : int
        Web Mercator zoom level; each level halves the tile footprint.
    tile_size : int, optional
        Tile size in pixels, by default 256.

    Returns
    -------
    float
        Resolution in meters per pixel at the equator.
    """
    return WORLD_SIZE / (tile_size * 2**zoom)


class TileKey(NamedTuple):
    """Address of a tile in a tileset; ``row`` counts from the south."""

    zoom: int
    column: int
    row: int

    @classmethod
    def from_xyz(cls, tile: mercantile.Tile) -> "TileKey":
        return cls(tile.z, tile.x, flip_row(tile.z, tile.y))

    def to_xyz(self) -> mercantile.Tile:
        return mercantile.Tile(self.column, flip_row(self.zoom, self.row), self.zoom)

    def mercator_bounds(self) -> mercantile.Bbox:
        """Return the tile footprint in Web Mercator meters."""
        return mercantile.xy_bounds(self.to_xyz())

    def __str__(self):
        return f"{self.zoom}/{self.column}/{self.row}"


class SourceWindow(NamedTuple):
    """Window of source pixels; offsets and sizes may be fractional."""

    col_off: float
    row_off: float
    width: float
    height: float


@dataclass(frozen=True)
class TileJob:
    """Unit of work for a render worker."""

    key: TileKey
    window: SourceWindow
    tile_size: int


class TileRange(NamedTuple):
    """Inclusive range of XYZ tile columns and rows at one zoom level."""

    zoom: int
    xmin: int
    ymin: int
    xmax: int
    ymax: int

    def count(self) -> int:
        return (self.xmax - self.xmin + 1) * (self.ymax - self.ymin + 1)

    def tiles(self) -> Iterator[mercantile.Tile]:
        for x in range(self.xmin, self.xmax + 1):
            for y in range(self.ymin, self.ymax + 1):
                yield mercantile.Tile(x, y, self.zoom)


class ReadPlan(NamedTuple):
    """Clipped source window and where its pixels land inside the tile."""

    window: SourceWindow
    dst_col: int
    dst_row: int
    dst_width: int
    dst_height: int


def _clamp(value, low, high):
    return min(max(value, low), high)


def validate_zoom_range(min_zoom: int, max_zoom: int) -> None:
    """Raise ConfigurationError unless ``0 <= min_zoom <= max_zoom <= MAX_ZOOM``."""
    for label, zoom in (("min_zoom", min_zoom), ("max_zoom", max_zoom)):
        if not isinstance(zoom, int) or zoom < 0 or zoom > MAX_ZOOM:
            raise ConfigurationError(
                f"{label} must be an integer between 0 and {MAX_ZOOM}: {zoom!r}")
    if min_zoom > max_zoom:
        raise ConfigurationError(
            f"min_zoom ({min_zoom}) must not exceed max_zoom ({max_zoom})")


class TileGrid:
    """Tiles overlapping a raster for a range of zoom levels.

    Parameters
    ----------
    bounds : sequence of float
        Raster extent in Web Mercator meters as (left, bottom, right, top).
    transform : affine.Affine or sequence of float
        Geotransform mapping raster pixel coordinates to Web Mercator meters.
    min_zoom, max_zoom : int
        Inclusive zoom range.
    tile_size : int
        Tile width and height in pixels.

    Raises
    ------
    ConfigurationError
        If the zoom range, tile size, extent or transform is invalid.
    """

    def __init__(self, bounds, transform, min_zoom: int, max_zoom: int, tile_size: int):
        validate_zoom_range(min_zoom, max_zoom)
        if not isinstance(tile_size, int) or tile_size <= 0:
            raise ConfigurationError(f"tile size must be a positive integer: {tile_size!r}")

        left, bottom, right, top = (float(v) for v in bounds)
        if not all(math.isfinite(v) for v in (left, bottom, right, top)) \
                or right <= left or top <= bottom:
            raise ConfigurationError(
                f"raster extent is empty or inverted: {(left, bottom, right, top)}")

        if not isinstance(transform, Affine):
            transform = Affine(*list(transform)[:6])
        if transform.is_degenerate:
            raise ConfigurationError(f"geotransform is degenerate: {tuple(transform)[:6]}")

        left, right = max(left, -ORIGIN), min(right, ORIGIN)
        bottom, top = max(bottom, -ORIGIN), min(top, ORIGIN)
        if right <= left or top <= bottom:
            raise ConfigurationError(
                "raster extent does not overlap the Web Mercator world extent")

        self.bounds = mercantile.Bbox(left, bottom, right, top)
        self.transform = transform
        self.min_zoom = min_zoom
        self.max_zoom = max_zoom
        self.tile_size = tile_size
        self._inverse = ~transform

    @property
    def zooms(self) -> List[int]:
        return list(range(self.min_zoom, self.max_zoom + 1))

    def tile_range(self, zoom: int) -> TileRange:
        """Return the XYZ tile range overlapping the extent at ``zoom``.

        Tiles that only touch the extent along an edge are excluded.
        """
        n = 1 << zoom
        size = WORLD_SIZE / n
        left, bottom, right, top = self.bounds

        xmin = math.floor((left + ORIGIN) / size + EPSILON)
        xmax = math.ceil((right + ORIGIN) / size - EPSILON) - 1
        ymin = math.floor((ORIGIN - top) / size + EPSILON)
        ymax = math.ceil((ORIGIN - bottom) / size - EPSILON) - 1

        xmin, xmax = _clamp(xmin, 0, n - 1), _clamp(xmax, 0, n - 1)
        ymin, ymax = _clamp(ymin, 0, n - 1), _clamp(ymax, 0, n - 1)
        return TileRange(zoom, xmin, ymin, max(xmax, xmin), max(ymax, ymin))

    def count(self, zoom: Optional[int] = None) -> int:
        zooms = self.zooms if zoom is None else [zoom]
        return sum(self.tile_range(z).count() for z in zooms)

    def __len__(self):
        return self.count()

    def keys(self, zoom: int) -> Iterator[TileKey]:
        for tile in self.tile_range(zoom).tiles():
            yield TileKey.from_xyz(tile)

    def window(self, key: TileKey) -> SourceWindow:
        """Return the source pixel window covering the footprint of ``key``."""
        left, bottom, right, top = key.mercator_bounds()
        corners = [self._inverse * (x, y) for x in (left, right) for y in (bottom, top)]
        cols = [c for c, _ in corners]
        rows = [r for _, r in corners]
        return SourceWindow(min(cols), min(rows), max(cols) - min(cols), max(rows) - min(rows))

    def jobs(self, zoom: Optional[int] = None) -> Iterator[TileJob]:
        """Yield a job for every tile, one zoom level at a time."""
        zooms = self.zooms if zoom is None else [zoom]
        for z in zooms:
            for key in self.keys(z):
                yield TileJob(key, self.window(key), self.tile_size)


def read_plan(window: SourceWindow, raster_width: int, raster_height: int,
              tile_size: int) -> Optional[ReadPlan]:
    """Map a tile's source window onto the pixels actually available.

    Parameters
    ----------
    window : SourceWindow
        Window covering the full tile footprint, possibly extending past
        the raster edges.
    raster_width, raster_height : int
        Size of the raster being read.
    tile_size : int
        Output tile size in pixels.

    Returns
    -------
    ReadPlan or None
        The window clipped to the raster and the destination rectangle in
        tile pixels, or None when less than one tile pixel has data.
    """
    scale_x = window.width / tile_size
    scale_y = window.height / tile_size

    col0 = _clamp(window.col_off, 0, raster_width)
    col1 = _clamp(window.col_off + window.width, 0, raster_width)
    row0 = _clamp(window.row_off, 0, raster_height)
    row1 = _clamp(window.row_off + window.height, 0, raster_height)
    if col1 <= col0 or row1 <= row0:
        return None

    dst_col = _clamp(int(round((col0 - window.col_off) / scale_x)), 0, tile_size)
    dst_col_end = _clamp(int(round((col1 - window.col_off) / scale_x)), 0, tile_size)
    dst_row = _clamp(int(round((row0 - window.row_off) / scale_y)), 0, tile_size)
    dst_row_end = _clamp(int(round((row1 - window.row_off) / scale_y)), 0, tile_size)
    if dst_col_end <= dst_col or dst_row_end <= dst_row:
        return None

    return ReadPlan(
        SourceWindow(col0, row0, col1 - col0, row1 - row0),
        dst_col,
        dst_row,
        dst_col_end - dst_col,
        dst_row_end - dst_row,
    )
