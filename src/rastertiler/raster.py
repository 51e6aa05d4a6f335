"""Windowed access to the source raster, reprojected to Web Mercator.

Sources in any other CRS are wrapped in a rasterio ``WarpedVRT`` in EPSG:3857
so tile windows can be computed directly from the geotransform. GDAL dataset
handles are not safe to share between threads, so every thread that reads
tiles lazily opens its own handle; all of them are closed by ``close``.
"""
import logging
import threading

import numpy as np
import rasterio
from rasterio.enums import Resampling
from rasterio.errors import RasterioError
from rasterio.vrt import WarpedVRT
from rasterio.warp import transform_bounds
from rasterio.windows import Window

from .errors import ConfigurationError, TileReadError
from .tilegrid import ORIGIN, read_plan

logger = logging.getLogger(__name__)

MERCATOR = "EPSG:3857"
GEOGRAPHIC = "EPSG:4326"
DEFAULT_NODATA = 0


def resampling_method(name: str) -> Resampling:
    """Look up a rasterio resampling algorithm by name."""
    try:
        return Resampling[name]
    except KeyError:
        raise ConfigurationError(f"unknown resampling method: {name!r}") from None


class Raster:
    """Single-band raster opened for concurrent tile reads.

    Parameters
    ----------
    path : str or pathlib.Path
        Raster file readable by GDAL.
    use_overviews : bool, optional
        When False, overviews are ignored and every read samples the
        full-resolution band.

    Attributes
    ----------
    dtype : numpy.dtype
        Band data type.
    nodata : int or float
        Band nodata value; 0 when the band does not define one.
    width, height : int
        Size of the warped raster in pixels.
    transform : affine.Affine
        Geotransform of the warped raster in Web Mercator meters.
    mercator_bounds : tuple of float
        Warped extent clipped to the Web Mercator world.
    geographic_bounds : tuple of float
        ``mercator_bounds`` as (west, south, east, north) degrees.
    overviews : list of int
        Overview decimation factors of the source band.
    """

    def __init__(self, path, use_overviews: bool = True):
        self.path = str(path)
        self.use_overviews = use_overviews
        self._local = threading.local()
        self._handles = []
        self._lock = threading.Lock()

        try:
            src = self._open_source()
        except (RasterioError, OSError) as err:
            raise ConfigurationError(f"cannot open raster {self.path}: {err}") from err

        try:
            if src.count != 1:
                raise ConfigurationError(
                    f"expected a single-band raster, {self.path} has {src.count} bands")
            if src.crs is None:
                raise ConfigurationError(f"raster has no coordinate reference system: {self.path}")

            self.dtype = np.dtype(src.dtypes[0])
            self.nodata = src.nodata if src.nodata is not None else DEFAULT_NODATA
            self._check_nodata()
            self.overviews = src.overviews(1)

            vrt = self._warp(src)
            self.width, self.height = vrt.width, vrt.height
            self.transform = vrt.transform
            left, bottom, right, top = vrt.bounds
            self.mercator_bounds = (max(left, -ORIGIN), max(bottom, -ORIGIN),
                                    min(right, ORIGIN), min(top, ORIGIN))
            self.geographic_bounds = transform_bounds(
                MERCATOR, GEOGRAPHIC, *self.mercator_bounds, densify_pts=21)
        except RasterioError as err:
            src.close()
            raise ConfigurationError(f"cannot warp raster {self.path}: {err}") from err
        except ConfigurationError:
            src.close()
            raise

        self._local.handle = (src, vrt)
        self._handles.append((src, vrt))
        logger.info("opened %s: %dx%d %s, nodata=%s, overviews=%s",
                    self.path, self.width, self.height, self.dtype.name, self.nodata,
                    self.overviews if use_overviews else "disabled")

    def _open_source(self):
        if self.use_overviews:
            return rasterio.open(self.path)
        return rasterio.open(self.path, OVERVIEW_LEVEL="NONE")

    def _warp(self, src):
        """Return ``src`` itself when it is already in Web Mercator."""
        if src.crs.to_epsg() == 3857:
            return src
        return WarpedVRT(src, crs=MERCATOR, resampling=Resampling.nearest,
                         src_nodata=self.nodata, nodata=self.nodata)

    def _check_nodata(self):
        if self.dtype.kind not in "iu":
            return
        info = np.iinfo(self.dtype)
        if self.nodata != int(self.nodata) or not info.min <= self.nodata <= info.max:
            raise ConfigurationError(
                f"nodata value {self.nodata} is not representable as {self.dtype.name}")
        self.nodata = int(self.nodata)

    def _dataset(self):
        """Return the warped dataset owned by the calling thread."""
        handle = getattr(self._local, "handle", None)
        if handle is None:
            src = self._open_source()
            handle = (src, self._warp(src))
            self._local.handle = handle
            with self._lock:
                self._handles.append(handle)
        return handle[1]

    def read_tile(self, job, resampling="nearest") -> np.ndarray:
        """Read the source pixels for one tile.

        Parameters
        ----------
        job : rastertiler.tilegrid.TileJob
            Tile to read.
        resampling : str or rasterio.enums.Resampling, optional
            Algorithm used when the window and tile resolutions differ.

        Returns
        -------
        numpy.ndarray
            ``(tile_size, tile_size)`` array; pixels outside the raster hold
            ``nodata``.

        Raises
        ------
        TileReadError
            If GDAL fails to read the window.
        """
        size = job.tile_size
        tile = np.full((size, size), self.nodata, dtype=self.dtype)
        plan = read_plan(job.window, self.width, self.height, size)
        if plan is None:
            return tile

        if isinstance(resampling, str):
            resampling = resampling_method(resampling)
        try:
            data = self._dataset().read(
                1,
                window=Window(*plan.window),
                out_shape=(plan.dst_height, plan.dst_width),
                resampling=resampling,
            )
        except (RasterioError, OSError) as err:
            raise TileReadError(job.key, str(err)) from err

        tile[plan.dst_row:plan.dst_row + plan.dst_height,
             plan.dst_col:plan.dst_col + plan.dst_width] = data
        return tile

    def close(self):
        with self._lock:
            handles, self._handles = self._handles, []
        for src, vrt in handles:
            if vrt is not src:
                vrt.close()
            src.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
