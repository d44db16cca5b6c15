"""
geokrige.grid
=============
Regular prediction lattice over the study-area boundary.

The lattice starts one cell inside the lower-left corner of the boundary's
bounding extent, i.e. at ``(xmin + cell_size, ymin + cell_size)``, and
steps by ``cell_size`` up to (and including) ``xmax`` / ``ymax``.  Only
lattice locations covered by the dissolved boundary geometry become
prediction cells.

Public API
----------
build_grid(boundary, cell_size)  → PredictionGrid
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.transform import Affine, from_origin
from shapely.ops import unary_union

from .config import PipelineError


class GridError(PipelineError, ValueError):
    """Raised when no prediction lattice can be built over the boundary."""


@dataclass
class PredictionGrid:
    """
    Lattice of prediction locations.

    Attributes
    ----------
    xs, ys : np.ndarray
        Ascending lattice axis coordinates.
    cell_size : float
    crs :
        CRS of the boundary the grid was derived from (may be ``None``).
    cells : pd.DataFrame
        Indexed by lattice-cell coordinates ``(row, col)``, with columns
        ``x`` and ``y``.  Row 0 is the *southernmost* lattice line.
    """
    xs: np.ndarray
    ys: np.ndarray
    cell_size: float
    crs: Any
    cells: pd.DataFrame

    def __len__(self) -> int:
        return len(self.cells)

    @property
    def shape(self) -> Tuple[int, int]:
        """(n_rows, n_cols) of the full lattice."""
        return len(self.ys), len(self.xs)

    def coords(self) -> Tuple[np.ndarray, np.ndarray]:
        """Cell centre coordinates in cell order."""
        return self.cells["x"].to_numpy(), self.cells["y"].to_numpy()

    def transform(self) -> Affine:
        """North-up affine transform with lattice points at pixel centres."""
        half = self.cell_size / 2.0
        return from_origin(
            self.xs[0] - half, self.ys[-1] + half, self.cell_size, self.cell_size
        )

    def to_array(self, values: np.ndarray) -> np.ndarray:
        """
        Scatter per-cell *values* into a north-up ``(n_rows, n_cols)`` array.
        Lattice positions outside the study area are NaN.
        """
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (len(self),):
            raise ValueError(
                f"Expected {len(self)} values, got array of shape {values.shape}"
            )
        n_rows, _ = self.shape
        out = np.full(self.shape, np.nan, dtype=np.float64)
        rows = self.cells.index.get_level_values("row").to_numpy()
        cols = self.cells.index.get_level_values("col").to_numpy()
        out[n_rows - 1 - rows, cols] = values
        return out

    def to_geodataframe(self) -> gpd.GeoDataFrame:
        x, y = self.coords()
        return gpd.GeoDataFrame(
            self.cells.reset_index(),
            geometry=gpd.points_from_xy(x, y),
            crs=self.crs,
        )


def _axis(lo: float, hi: float, cell_size: float) -> np.ndarray:
    """Lattice coordinates lo + k*cell_size for k = 1, 2, … while ≤ hi."""
    tol = 1e-9 * cell_size
    n = int(np.floor((hi - lo + tol) / cell_size))
    return lo + cell_size * np.arange(1, n + 1, dtype=np.float64)


def build_grid(boundary: gpd.GeoDataFrame, cell_size: float = 1.0) -> PredictionGrid:
    """
    Sample the boundary on a regular lattice.

    Parameters
    ----------
    boundary : gpd.GeoDataFrame
        Polygon / multipolygon features; they are dissolved into one
        study-area geometry.
    cell_size : float
        Lattice spacing in CRS units.

    Returns
    -------
    PredictionGrid

    Raises
    ------
    GridError
        If *cell_size* is not positive or no lattice location falls inside
        the boundary.
    """
    if not cell_size > 0:
        raise GridError(f"cell_size must be positive, got {cell_size}")

    area = unary_union(list(boundary.geometry))
    xmin, ymin, xmax, ymax = area.bounds

    xs = _axis(xmin, xmax, cell_size)
    ys = _axis(ymin, ymax, cell_size)
    if len(xs) == 0 or len(ys) == 0:
        raise GridError(
            f"cell_size={cell_size} is larger than the boundary extent "
            f"({xmax - xmin:g} × {ymax - ymin:g})"
        )

    rr, cc = np.meshgrid(np.arange(len(ys)), np.arange(len(xs)), indexing="ij")
    rr, cc = rr.ravel(), cc.ravel()
    px, py = xs[cc], ys[rr]

    inside = gpd.GeoSeries(gpd.points_from_xy(px, py)).covered_by(area).to_numpy()
    if not inside.any():
        raise GridError("No lattice location falls inside the boundary")

    cells = pd.DataFrame(
        {"x": px[inside], "y": py[inside]},
        index=pd.MultiIndex.from_arrays([rr[inside], cc[inside]], names=["row", "col"]),
    )

    return PredictionGrid(
        xs=xs, ys=ys, cell_size=float(cell_size), crs=boundary.crs, cells=cells
    )
