"""Read-only terrain elevation grids (DEM / DSM) addressed by northing/easting."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import numpy as np
import rasterio

from src.recording.models import UNKNOWN_VALUE, Location

logger = logging.getLogger(__name__)


class TerrainGrid:
    """Elevation lookup over a regular north-up grid.

    Row 0 is the northern edge. Cells outside the grid, and nodata cells,
    report UNKNOWN_VALUE.
    """

    def __init__(self, elevations: np.ndarray, origin_northing_m: float,
                 origin_easting_m: float, cell_size_m: float = 1.0,
                 vertical_unit_m: float = 0.2):
        self._elev = np.asarray(elevations, dtype=np.float64)
        self._north = origin_northing_m
        self._east = origin_easting_m
        self._cell = cell_size_m
        self.vertical_unit_m = vertical_unit_m

    @classmethod
    def flat(cls, elevation_m: float, min_northing_m: float = -2000.0,
             min_easting_m: float = -2000.0, size_m: float = 4000.0,
             cell_size_m: float = 10.0, vertical_unit_m: float = 0.2) -> TerrainGrid:
        """Constant-elevation grid covering a square area."""
        cells = int(np.ceil(size_m / cell_size_m))
        grid = np.full((cells, cells), elevation_m, dtype=np.float64)
        return cls(grid, min_northing_m + size_m, min_easting_m, cell_size_m, vertical_unit_m)

    @classmethod
    def from_raster(cls, path: str | Path, vertical_unit_m: float = 0.2) -> TerrainGrid:
        """Load band 1 of a north-up GeoTIFF. Projected coordinates are metres."""
        with rasterio.open(path) as ds:
            band = ds.read(1).astype(np.float64)
            if ds.nodata is not None:
                band[band == ds.nodata] = UNKNOWN_VALUE
            transform = ds.transform
        band[~np.isfinite(band)] = UNKNOWN_VALUE
        logger.info("Terrain loaded: %s (%dx%d, %.2fm cells)",
                    path, band.shape[1], band.shape[0], transform.a)
        return cls(band, transform.f, transform.c, transform.a, vertical_unit_m)

    @property
    def shape(self) -> tuple[int, int]:
        return self._elev.shape

    def elevation(self, location: Location) -> float:
        """Elevation at a world location, or UNKNOWN_VALUE outside coverage."""
        row = int(np.floor((self._north - location.northing_m) / self._cell))
        col = int(np.floor((location.easting_m - self._east) / self._cell))
        if row < 0 or col < 0 or row >= self._elev.shape[0] or col >= self._elev.shape[1]:
            return UNKNOWN_VALUE
        return float(self._elev[row, col])


class GroundData:
    """Bundles the optional bare-earth and surface models of a flight area."""

    def __init__(self, dem: Optional[TerrainGrid] = None, dsm: Optional[TerrainGrid] = None):
        self.dem = dem
        self.dsm = dsm

    @property
    def surface(self) -> Optional[TerrainGrid]:
        """Surface model preferred over the elevation model."""
        return self.dsm if self.dsm is not None else self.dem

    @classmethod
    def load(cls, dem_path: str = "", dsm_path: str = "") -> GroundData:
        dem = TerrainGrid.from_raster(dem_path) if dem_path and Path(dem_path).exists() else None
        dsm = TerrainGrid.from_raster(dsm_path) if dsm_path and Path(dsm_path).exists() else None
        if dem is None and dsm is None:
            logger.warning("No terrain models available; terrain-based methods disabled")
        return cls(dem, dsm)
