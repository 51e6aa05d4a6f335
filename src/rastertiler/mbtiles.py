"""MBTiles tile container backed by sqlite3.

Tiles are stored content-addressed: ``images`` holds each distinct PNG once,
keyed by its SHA-1 digest, and ``map`` points tile keys at images. The
``tiles`` view joins the two into the standard MBTiles layout. Rows follow
the TMS convention (see ``rastertiler.tilegrid.SCHEME``).

A new store is written to ``<destination>.partial`` and only renamed to the
destination by ``finalize``; ``abort`` discards it.
"""
import contextlib
import hashlib
import logging
import os
import pathlib
import sqlite3
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Tuple

from .errors import StorageError
from .tilegrid import SCHEME, TileKey

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"

SCHEMA = """
CREATE TABLE IF NOT EXISTS metadata (name TEXT NOT NULL PRIMARY KEY, value TEXT);
CREATE TABLE IF NOT EXISTS map (
    zoom_level INTEGER,
    tile_column INTEGER,
    tile_row INTEGER,
    tile_id TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS map_index ON map (zoom_level, tile_column, tile_row);
CREATE TABLE IF NOT EXISTS images (tile_id TEXT NOT NULL PRIMARY KEY, tile_data BLOB);
CREATE VIEW IF NOT EXISTS tiles AS
    SELECT zoom_level, tile_column, tile_row, tile_data
    FROM map JOIN images ON images.tile_id = map.tile_id;
"""

INSERT_IMAGE = "INSERT OR IGNORE INTO images (tile_id, tile_data) VALUES (?, ?)"
INSERT_TILE = "INSERT INTO map (zoom_level, tile_column, tile_row, tile_id) VALUES (?, ?, ?, ?)"
REPLACE_TILE = ("INSERT OR REPLACE INTO map (zoom_level, tile_column, tile_row, tile_id) "
                "VALUES (?, ?, ?, ?)")
PURGE_IMAGES = "DELETE FROM images WHERE tile_id NOT IN (SELECT tile_id FROM map)"


@contextlib.contextmanager
def storage_errors(action: str):
    """Re-raise sqlite and filesystem errors as StorageError."""
    try:
        yield
    except (sqlite3.Error, OSError) as err:
        raise StorageError(f"{action}: {err}") from err


@dataclass
class TilesetMetadata:
    """Descriptive record written once when a tileset is finalized.

    ``bounds`` is (west, south, east, north) in degrees.
    """

    name: str
    minzoom: int
    maxzoom: int
    bounds: Tuple[float, float, float, float]
    description: str = ""
    attribution: str = ""
    format: str = "png"
    tilesize: int = 512
    scheme: str = SCHEME
    type: str = "overlay"
    version: str = "1.0.0"

    @property
    def center(self) -> Tuple[float, float, int]:
        west, south, east, north = self.bounds
        return ((west + east) / 2, (south + north) / 2, self.minzoom)

    def to_rows(self):
        """Return ``(name, value)`` text pairs for the metadata table."""
        rows = [
            ("name", self.name),
            ("description", self.description),
            ("attribution", self.attribution),
            ("type", self.type),
            ("version", self.version),
            ("format", self.format),
            ("tilesize", str(self.tilesize)),
            ("scheme", self.scheme),
            ("minzoom", str(self.minzoom)),
            ("maxzoom", str(self.maxzoom)),
            ("bounds", ",".join(f"{v:.5f}" for v in self.bounds)),
            ("center", "{:.5f},{:.5f},{}".format(*self.center)),
        ]
        return [(name, value) for name, value in rows if value is not None]

    @classmethod
    def from_rows(cls, rows) -> "TilesetMetadata":
        """Build metadata from a name to value mapping read from a store.

        Missing zooms default to 0 and missing bounds to the whole world.
        """
        rows = dict(rows)
        bounds = rows.get("bounds")
        if bounds:
            bounds = tuple(float(v) for v in bounds.split(","))
        else:
            bounds = (-180.0, -85.05113, 180.0, 85.05113)
        return cls(
            name=rows.get("name", ""),
            description=rows.get("description", ""),
            attribution=rows.get("attribution", ""),
            minzoom=int(rows.get("minzoom", 0)),
            maxzoom=int(rows.get("maxzoom", 0)),
            bounds=bounds,
            format=rows.get("format", "png"),
            tilesize=int(rows.get("tilesize", 512)),
            scheme=rows.get("scheme", SCHEME),
            type=rows.get("type", "overlay"),
            version=rows.get("version", "1.0.0"),
        )


def partial_path(path) -> pathlib.Path:
    path = pathlib.Path(path)
    return path.with_name(path.name + PARTIAL_SUFFIX)


class TileStore:
    """An MBTiles file, opened either for writing or for reading.

    Use ``TileStore.create`` to build a new tileset and ``TileStore.open``
    to read an existing one. Only one thread may write to a store at a
    time; the connection is not bound to the thread that created it so a
    dedicated writer thread can own it.
    """

    def __init__(self, path, connection, writable=False, batch_size=1000):
        self.path = pathlib.Path(path)
        self.writable = writable
        self.batch_size = batch_size
        self.closed = False
        self._connection = connection
        self._pending = 0
        self._finalized = False

    @classmethod
    def create(cls, path, batch_size: int = 1000) -> "TileStore":
        """Create an empty store that becomes ``path`` on finalize.

        Parameters
        ----------
        path : str or pathlib.Path
            Destination tileset; left untouched until finalize.
        batch_size : int, optional
            Number of tile inserts per transaction.
        """
        partial = partial_path(path)
        with storage_errors(f"cannot create {partial}"):
            partial.parent.mkdir(parents=True, exist_ok=True)
            if partial.exists():
                partial.unlink()
            connection = sqlite3.connect(str(partial), check_same_thread=False)
            connection.executescript(SCHEMA)
        logger.debug("created tile store %s", partial)
        return cls(path, connection, writable=True, batch_size=max(1, int(batch_size)))

    @classmethod
    def open(cls, path) -> "TileStore":
        """Open an existing tileset read-only."""
        path = pathlib.Path(path)
        if not path.is_file():
            raise StorageError(f"tileset does not exist: {path}")
        with storage_errors(f"cannot open {path}"):
            connection = sqlite3.connect(path.absolute().as_uri() + "?mode=ro", uri=True,
                                         check_same_thread=False)
            connection.execute("SELECT 1 FROM tiles LIMIT 1").fetchall()
            connection.execute("SELECT 1 FROM metadata LIMIT 1").fetchall()
        return cls(path, connection)

    def _check_writable(self):
        if not self.writable or self.closed:
            raise StorageError(f"tile store is not open for writing: {self.path}")

    def put(self, key: TileKey, data: bytes, replace: bool = False) -> None:
        """Store the image for ``key``.

        With ``replace`` an existing tile for the key is overwritten;
        otherwise inserting a key twice is an error.
        """
        self._check_writable()
        tile_id = hashlib.sha1(data).hexdigest()
        with storage_errors(f"cannot write tile {key}"):
            self._connection.execute(INSERT_IMAGE, (tile_id, sqlite3.Binary(data)))
            self._connection.execute(REPLACE_TILE if replace else INSERT_TILE,
                                     (key.zoom, key.column, key.row, tile_id))
            self._pending += 1
            if self._pending >= self.batch_size:
                self._connection.commit()
                self._pending = 0

    def finalize(self, metadata: TilesetMetadata) -> pathlib.Path:
        """Write metadata, commit, and publish the store at its destination."""
        self._check_writable()
        partial = partial_path(self.path)
        with storage_errors(f"cannot finalize {self.path}"):
            self._connection.executemany(
                "INSERT OR REPLACE INTO metadata (name, value) VALUES (?, ?)",
                metadata.to_rows())
            self._connection.execute(PURGE_IMAGES)
            self._connection.commit()
            self._connection.close()
            self.closed = True
            os.replace(partial, self.path)
        self._finalized = True
        logger.info("wrote %s", self.path)
        return self.path

    def abort(self) -> None:
        """Discard an unfinished store."""
        if not self.closed:
            self._connection.close()
            self.closed = True
        if self.writable and not self._finalized:
            partial = partial_path(self.path)
            with storage_errors(f"cannot remove {partial}"):
                if partial.exists():
                    partial.unlink()
            logger.debug("discarded %s", partial)

    def close(self) -> None:
        """Close a read-only store; an unfinished writable store is aborted."""
        if self.writable and not self._finalized:
            self.abort()
        elif not self.closed:
            self._connection.close()
            self.closed = True

    def tiles(self) -> Iterator[Tuple[TileKey, bytes]]:
        """Yield every tile ordered by zoom, column and row."""
        with storage_errors(f"cannot read tiles from {self.path}"):
            cursor = self._connection.execute(
                "SELECT zoom_level, tile_column, tile_row, tile_data FROM tiles "
                "ORDER BY zoom_level, tile_column, tile_row")
            for zoom, column, row, data in cursor:
                yield TileKey(zoom, column, row), bytes(data)

    def keys(self) -> Iterator[TileKey]:
        with storage_errors(f"cannot read tiles from {self.path}"):
            cursor = self._connection.execute(
                "SELECT zoom_level, tile_column, tile_row FROM map "
                "ORDER BY zoom_level, tile_column, tile_row")
            for row in cursor:
                yield TileKey(*row)

    def get(self, key: TileKey) -> Optional[bytes]:
        with storage_errors(f"cannot read tile {key}"):
            row = self._connection.execute(
                "SELECT tile_data FROM tiles "
                "WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?",
                tuple(key)).fetchone()
        return None if row is None else bytes(row[0])

    def metadata(self) -> Dict[str, str]:
        """Return the raw metadata table as a dict."""
        with storage_errors(f"cannot read metadata from {self.path}"):
            return dict(self._connection.execute("SELECT name, value FROM metadata"))

    def zoom_range(self) -> Optional[Tuple[int, int]]:
        """Return the (min, max) zoom of stored tiles, or None when empty."""
        with storage_errors(f"cannot read tiles from {self.path}"):
            low, high = self._connection.execute(
                "SELECT MIN(zoom_level), MAX(zoom_level) FROM map").fetchone()
        return None if low is None else (low, high)

    def count(self) -> int:
        with storage_errors(f"cannot read tiles from {self.path}"):
            return self._connection.execute("SELECT COUNT(*) FROM map").fetchone()[0]

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.writable and not self._finalized and not self.closed and exc_type is None:
            logger.warning("tile store %s closed without finalize; discarding", self.path)
        self.close()
