"""Exceptions raised by rastertiler.

Configuration problems are detected before any tile is rendered; read and
storage failures abort a run without publishing the destination tileset.
"""


class RasterTilerError(Exception):
    """Base class for all rastertiler errors."""


class ConfigurationError(RasterTilerError, ValueError):
    """Invalid input or options, detected before expensive work starts."""


class TileReadError(RasterTilerError):
    """Reading the source window for a single tile failed.

    Parameters
    ----------
    key : rastertiler.tilegrid.TileKey
        Tile whose window could not be read.
    message : str
        Description of the underlying failure.
    """

    def __init__(self, key, message):
        super().__init__(f"failed to read tile {key}: {message}")
        self.key = key


class StorageError(RasterTilerError):
    """The tile container could not be written or read."""
