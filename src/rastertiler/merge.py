"""Merge two MBTiles tilesets into a new one.

Every tile of both sources is copied; where both hold the same key the
right-hand source wins. Sources must agree on tile format, tile size and
row scheme, which is checked before anything is written.
"""
import contextlib
import io
import logging
import pathlib
from typing import Callable, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from .errors import ConfigurationError
from .mbtiles import TilesetMetadata, TileStore
from .pipeline import EncodedTile, notify
from .tilegrid import SCHEME

logger = logging.getLogger(__name__)


def sniff_tile(data: bytes):
    """Return ``(format, tile size)`` of an encoded tile using Pillow."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.format.lower(), image.size[0]
    except (UnidentifiedImageError, OSError) as err:
        raise ConfigurationError(f"stored tile is not a readable image: {err}") from err


class SourceInfo:
    """Layout and metadata of one merge source."""

    def __init__(self, store: TileStore):
        self.path = store.path
        self.rows = store.metadata()
        self.metadata = TilesetMetadata.from_rows(self.rows)
        self.scheme = self.rows.get("scheme") or SCHEME
        self.format = self.rows.get("format")
        self.tilesize = int(self.rows["tilesize"]) if self.rows.get("tilesize") else None

        if self.format is None or self.tilesize is None:
            first = next(store.tiles(), None)
            if first is not None:
                fmt, size = sniff_tile(first[1])
                self.format = self.format or fmt
                self.tilesize = self.tilesize or size
                logger.info("inferred %s tiles of %d pixels in %s", fmt, size, self.path)

        self.zoom_range = store.zoom_range()
        if self.zoom_range is None and "minzoom" in self.rows and "maxzoom" in self.rows:
            self.zoom_range = (self.metadata.minzoom, self.metadata.maxzoom)
        self.bounds = self.metadata.bounds if self.rows.get("bounds") else None


def check_compatible(left: SourceInfo, right: SourceInfo) -> None:
    """Raise ConfigurationError unless two sources can be merged."""
    for source in (left, right):
        if source.scheme != SCHEME:
            raise ConfigurationError(
                f"{source.path} uses the {source.scheme!r} row scheme; only {SCHEME!r} is supported")
    for label in ("format", "tilesize"):
        a, b = getattr(left, label), getattr(right, label)
        if a is not None and b is not None and a != b:
            raise ConfigurationError(
                f"cannot merge tilesets with different {label}: {a} ({left.path}) "
                f"and {b} ({right.path})")


def _union_bounds(*bounds):
    bounds = [b for b in bounds if b is not None]
    if not bounds:
        return None
    return (min(b[0] for b in bounds), min(b[1] for b in bounds),
            max(b[2] for b in bounds), max(b[3] for b in bounds))


def merged_metadata(left: SourceInfo, right: SourceInfo, name=None, description=None,
                    attribution=None) -> TilesetMetadata:
    """Combine source metadata: union of zooms and bounds, left's descriptions."""
    zooms = [z for z in (left.zoom_range, right.zoom_range) if z is not None] or [(0, 0)]
    bounds = _union_bounds(left.bounds, right.bounds) or left.metadata.bounds
    base = left.metadata
    return TilesetMetadata(
        name=name if name is not None else base.name,
        description=description if description is not None else base.description,
        attribution=attribution if attribution is not None else base.attribution,
        minzoom=min(z[0] for z in zooms),
        maxzoom=max(z[1] for z in zooms),
        bounds=bounds,
        format=left.format or right.format or "png",
        tilesize=left.tilesize or right.tilesize or base.tilesize,
        type=base.type,
        version=base.version,
    )


def merge_tilesets(left, right, destination, name: Optional[str] = None,
                   description: Optional[str] = None, attribution: Optional[str] = None,
                   batch_size: int = 1000,
                   observers: Sequence[Callable] = ()) -> TilesetMetadata:
    """Merge ``left`` and ``right`` into a new tileset at ``destination``.

    Parameters
    ----------
    left, right : str or pathlib.Path
        Source tilesets; ``right`` takes precedence for keys in both.
    destination : str or pathlib.Path
        Output tileset; must differ from both sources.
    name, description, attribution : str, optional
        Override the descriptive fields taken from ``left``.
    batch_size : int, optional
        Tile inserts per transaction.
    observers : sequence of callable, optional
        Called with an EncodedTile for every copied tile; their errors are
        logged and ignored.

    Returns
    -------
    TilesetMetadata
        Metadata written to the destination.

    Raises
    ------
    ConfigurationError
        If the sources are incompatible or the destination is a source.
    StorageError
        If a source cannot be read or the destination cannot be written.
    """
    destination = pathlib.Path(destination)
    for source in (left, right):
        if pathlib.Path(source).resolve() == destination.resolve():
            raise ConfigurationError(f"destination must differ from the sources: {destination}")

    with contextlib.ExitStack() as stack:
        sources = [stack.enter_context(TileStore.open(path)) for path in (left, right)]
        infos = [SourceInfo(store) for store in sources]
        check_compatible(*infos)
        metadata = merged_metadata(*infos, name=name, description=description,
                                   attribution=attribution)

        with TileStore.create(destination, batch_size=batch_size) as target:
            for store, replace in zip(sources, (False, True)):
                copied = 0
                for key, data in store.tiles():
                    target.put(key, data, replace=replace)
                    copied += 1
                    notify(observers, EncodedTile(key, data))
                logger.info("copied %d tiles from %s", copied, store.path)
            target.finalize(metadata)

    logger.info("merged %s and %s into %s (zoom %d-%d)", left, right, destination,
                metadata.minzoom, metadata.maxzoom)
    return metadata
