"""rastertiler: render single-band rasters into MBTiles tile pyramids.

The package reads a georeferenced raster with rasterio, cuts it into Web
Mercator tiles, encodes each tile as a PNG (indexed with a colormap,
grayscale with alpha, or packed 24-bit RGB) and stores the tiles in an
MBTiles container. Tilesets can also be merged.

Modules
-------
tilegrid
    Tile ranges and source windows per zoom level.
colormap
    Colormap parsing and PNG palettes.
png, encoders
    PNG serialization and per-mode tile encoders.
raster
    Thread-safe windowed reads from the warped source raster.
pipeline
    Worker pool with a single store writer.
mbtiles, merge
    MBTiles storage and tileset merging.
render
    Rendering entry point used by the command line.
"""

__version__ = "0.1.0"

from .errors import ConfigurationError, RasterTilerError, StorageError, TileReadError
from .merge import merge_tilesets
from .render import RenderOptions, render_tileset
