"""Render a single-band raster into an MBTiles tile pyramid."""
import logging
import pathlib
from dataclasses import asdict, dataclass, replace
from typing import Callable, Optional, Sequence

import numpy as np

from . import config
from .colormap import parse_optional_colormap
from .encoders import build_encoder
from .errors import ConfigurationError
from .mbtiles import TilesetMetadata, TileStore
from .pipeline import Pipeline
from .raster import Raster, resampling_method
from .tilegrid import TileGrid, validate_zoom_range

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RenderOptions:
    """Options for ``render_tileset``.

    ``name`` defaults to the destination file stem. ``colormap`` is
    ``"value:hex,..."`` text; without it 8-bit bands render as grayscale and
    16/32-bit bands as packed RGB.
    """

    min_zoom: int = 0
    max_zoom: int = 0
    tile_size: int = 512
    name: Optional[str] = None
    description: str = ""
    attribution: str = ""
    workers: int = 4
    colormap: Optional[str] = None
    use_overviews: bool = True
    skip_empty: bool = False
    batch_size: int = 1000
    queue_size: int = 0
    palette_resampling: str = "nearest"
    grayscale_resampling: str = "bilinear"

    @classmethod
    def from_config(cls, **overrides) -> "RenderOptions":
        """Build options from the active settings; non-None overrides win."""
        values = {key: config.get(key) for key in asdict(cls()) if key in config.DEFAULTS}
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def validate(self) -> "RenderOptions":
        """Raise ConfigurationError on the first invalid option."""
        validate_zoom_range(self.min_zoom, self.max_zoom)
        for label in ("tile_size", "workers", "batch_size"):
            value = getattr(self, label)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationError(f"{label} must be a positive integer: {value!r}")
        if not isinstance(self.queue_size, int) or self.queue_size < 0:
            raise ConfigurationError(f"queue_size must not be negative: {self.queue_size!r}")
        resampling_method(self.palette_resampling)
        resampling_method(self.grayscale_resampling)
        return self

    def with_name(self, destination) -> "RenderOptions":
        if self.name:
            return self
        return replace(self, name=pathlib.Path(destination).stem)


class TileRenderer:
    """Read and encode one tile; shared by all pipeline workers.

    Returns None for tiles without valid pixels when ``skip_empty`` is set.
    """

    def __init__(self, raster: Raster, encoder, resampling: str, skip_empty: bool = False):
        self.raster = raster
        self.encoder = encoder
        self.resampling = resampling_method(resampling)
        self.skip_empty = skip_empty

    def __call__(self, job) -> Optional[bytes]:
        data = self.raster.read_tile(job, self.resampling)
        if self.skip_empty and np.all(data == self.raster.nodata):
            logger.debug("skipping empty tile %s", job.key)
            return None
        return self.encoder.encode(data)


def render_tileset(source, destination, options: Optional[RenderOptions] = None,
                   observers: Sequence[Callable] = (),
                   on_start: Optional[Callable[[int], None]] = None) -> TilesetMetadata:
    """Render ``source`` into a new MBTiles file at ``destination``.

    Parameters
    ----------
    source : str or pathlib.Path
        Single-band integer raster.
    destination : str or pathlib.Path
        Output tileset; replaced only if rendering succeeds.
    options : RenderOptions, optional
        Defaults to ``RenderOptions.from_config()``.
    observers : sequence of callable, optional
        Called with each EncodedTile by the store writer.
    on_start : callable, optional
        Called with the total number of tiles before rendering starts.

    Returns
    -------
    TilesetMetadata
        Metadata written to the finalized tileset.

    Raises
    ------
    ConfigurationError
        On invalid options or input, before any tile is rendered.
    TileReadError, StorageError
        If rendering fails; the destination is left untouched.
    """
    destination = pathlib.Path(destination)
    options = (options or RenderOptions.from_config()).validate().with_name(destination)
    if pathlib.Path(source).resolve() == destination.resolve():
        raise ConfigurationError(f"destination must differ from the source raster: {destination}")

    with Raster(source, use_overviews=options.use_overviews) as raster:
        palette = parse_optional_colormap(options.colormap, dtype=raster.dtype)
        encoder = build_encoder(raster.dtype, raster.nodata, palette)
        resampling = (options.palette_resampling if encoder.categorical
                      else options.grayscale_resampling)
        grid = TileGrid(raster.mercator_bounds, raster.transform,
                        options.min_zoom, options.max_zoom, options.tile_size)

        for zoom in grid.zooms:
            logger.info("zoom %d: %d tiles", zoom, grid.count(zoom))
        logger.info("rendering %d tiles with %s using %d workers (%s resampling)",
                    len(grid), type(encoder).__name__, options.workers, resampling)

        metadata = TilesetMetadata(
            name=options.name,
            description=options.description,
            attribution=options.attribution,
            minzoom=options.min_zoom,
            maxzoom=options.max_zoom,
            bounds=tuple(raster.geographic_bounds),
            tilesize=options.tile_size,
        )
        if on_start is not None:
            on_start(len(grid))

        with TileStore.create(destination, batch_size=options.batch_size) as store:
            pipeline = Pipeline(
                TileRenderer(raster, encoder, resampling, options.skip_empty),
                store,
                workers=options.workers,
                queue_size=options.queue_size,
                observers=observers,
            )
            written = pipeline.run(grid.jobs())
            store.finalize(metadata)

    logger.info("wrote %d of %d tiles to %s", written, len(grid), destination)
    return metadata
