"""
geokrige.interpolation
======================
Two independent prediction surfaces over the grid.

* **Ordinary kriging**: best linear unbiased predictor under the fitted
  variogram (``pykrige.ok.OrdinaryKriging`` with fixed parameters), with the
  kriging variance per cell.
* **Inverse distance weighting**: weighted mean with weights ``1/d^p``
  (default p = 2); no variogram involved.

Public API
----------
ordinary_kriging(x, y, z, model, xi, yi)   → (prediction, variance)
idw(x, y, z, xi, yi, power, max_neighbors) → prediction
krige_surface(points, target, grid, model) → PredictionSurface
idw_surface(points, target, grid, ...)     → PredictionSurface
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import xarray as xr
from pykrige.ok import OrdinaryKriging
from scipy.spatial.distance import cdist

from .grid import PredictionGrid
from .variogram import VariogramFitError, VariogramModel


@dataclass
class PredictionSurface:
    """Predicted value (and optional variance) for every grid cell."""
    method: str
    grid: PredictionGrid
    values: np.ndarray
    variance: Optional[np.ndarray] = None

    def to_frame(self) -> pd.DataFrame:
        x, y = self.grid.coords()
        frame = {"x": x, "y": y, "predicted": self.values}
        if self.variance is not None:
            frame["variance"] = self.variance
        return pd.DataFrame(frame)

    def to_dataarray(self) -> xr.DataArray:
        """North-up ``(y, x)`` array; NaN outside the study area."""
        return xr.DataArray(
            self.grid.to_array(self.values).astype(np.float32),
            dims=("y", "x"),
            coords={"y": self.grid.ys[::-1], "x": self.grid.xs},
            name=self.method,
        )


# ======================================================================== #
#  1.  Ordinary kriging                                                     #
# ======================================================================== #

def ordinary_kriging(
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    model: VariogramModel,
    xi: np.ndarray,
    yi: np.ndarray,
    backend: str = "vectorized",
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Ordinary kriging at arbitrary locations.

    Parameters
    ----------
    x, y, z : array-like, shape (n,)
        Observation coordinates and values.
    model : VariogramModel
        Fitted variogram; its parameters are used as-is (no refit).
    xi, yi : array-like, shape (m,)
        Prediction locations.
    backend : str
        pykrige execution backend.

    Returns
    -------
    (prediction, variance) : two arrays of shape (m,)

    Notes
    -----
    When every observation has the same value the predictor is that value
    with zero variance: any set of unbiased weights gives the same answer,
    so no kriging system is solved.
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    z = np.asarray(z, dtype=np.float64)
    xi = np.atleast_1d(np.asarray(xi, dtype=np.float64))
    yi = np.atleast_1d(np.asarray(yi, dtype=np.float64))

    if len(z) == 0:
        raise ValueError("Ordinary kriging needs at least one observation")
    if np.ptp(z) == 0:
        return np.full(len(xi), z[0]), np.zeros(len(xi))
    if not model.sill > 0:
        raise VariogramFitError(
            f"Variogram model has a non-positive sill ({model.sill}); "
            "cannot krige non-constant data"
        )

    duplicated = len(np.unique(np.column_stack([x, y]), axis=0)) < len(x)
    ok = OrdinaryKriging(
        x, y, z,
        variogram_model=model.model,
        variogram_parameters=model.to_pykrige(),
        exact_values=True,
        pseudo_inv=duplicated,
        verbose=False,
        enable_plotting=False,
    )
    pred, var = ok.execute("points", xi, yi, backend=backend)
    pred = np.asarray(pred, dtype=np.float64)
    var = np.clip(np.asarray(var, dtype=np.float64), 0.0, None)
    return pred, var


def krige_surface(
    points: pd.DataFrame,
    target: str,
    grid: PredictionGrid,
    model: VariogramModel,
    x_col: str = "X",
    y_col: str = "Y",
) -> PredictionSurface:
    """Kriging prediction and variance at every grid cell."""
    gx, gy = grid.coords()
    pred, var = ordinary_kriging(
        points[x_col].to_numpy(),
        points[y_col].to_numpy(),
        points[target].to_numpy(),
        model,
        gx, gy,
    )
    return PredictionSurface(method="krig", grid=grid, values=pred, variance=var)


# ======================================================================== #
#  2.  Inverse distance weighting                                           #
# ======================================================================== #

def idw(
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    xi: np.ndarray,
    yi: np.ndarray,
    power: float = 2.0,
    max_neighbors: Optional[int] = None,
    chunk_size: int = 4096,
) -> np.ndarray:
    """
    Inverse-distance-weighted prediction.

    A prediction location that coincides with one or more observations
    takes the mean of the coincident values.  With *max_neighbors* only the
    nearest observations contribute.  Predictions always lie between the
    minimum and maximum observed value.
    """
    obs = np.column_stack([np.asarray(x, dtype=np.float64), np.asarray(y, dtype=np.float64)])
    z = np.asarray(z, dtype=np.float64)
    targets = np.column_stack([
        np.atleast_1d(np.asarray(xi, dtype=np.float64)),
        np.atleast_1d(np.asarray(yi, dtype=np.float64)),
    ])
    if len(z) == 0:
        raise ValueError("IDW needs at least one observation")
    if not power > 0:
        raise ValueError(f"IDW power must be positive, got {power}")

    k = len(z) if max_neighbors is None else max(1, min(int(max_neighbors), len(z)))
    out = np.empty(len(targets), dtype=np.float64)

    for start in range(0, len(targets), chunk_size):
        d = cdist(targets[start:start + chunk_size], obs)
        if k < len(z):
            idx = np.argpartition(d, k - 1, axis=1)[:, :k]
            d = np.take_along_axis(d, idx, axis=1)
            zz = z[idx]
        else:
            zz = np.broadcast_to(z, d.shape)

        exact = d == 0
        with np.errstate(divide="ignore", invalid="ignore"):
            w = np.where(exact, 0.0, 1.0 / d ** power)
            pred = (w * zz).sum(axis=1) / w.sum(axis=1)

        hit = exact.any(axis=1)
        if hit.any():
            pred[hit] = (exact[hit] * zz[hit]).sum(axis=1) / exact[hit].sum(axis=1)

        out[start:start + chunk_size] = pred

    return out


def idw_surface(
    points: pd.DataFrame,
    target: str,
    grid: PredictionGrid,
    power: float = 2.0,
    max_neighbors: Optional[int] = None,
    x_col: str = "X",
    y_col: str = "Y",
) -> PredictionSurface:
    """IDW prediction at every grid cell (no variance)."""
    gx, gy = grid.coords()
    pred = idw(
        points[x_col].to_numpy(),
        points[y_col].to_numpy(),
        points[target].to_numpy(),
        gx, gy,
        power=power,
        max_neighbors=max_neighbors,
    )
    return PredictionSurface(method="idw", grid=grid, values=pred)
