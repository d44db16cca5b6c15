"""
geokrige.evaluation
===================
k-fold cross-validation of the kriging model and error summaries.

Every observation is held out exactly once: the points are partitioned
into k folds (``sklearn.model_selection.KFold``, shuffled with a fixed
seed so runs are reproducible) and each fold is predicted from the
remaining folds under the chosen variogram model.  The variogram is *not*
refitted per fold.

Metrics
-------
* **ME**   : mean residual (observed − predicted); ≈ 0 for an unbiased model.
* **RMSE** : sqrt(mean residual²).
* **MAE**  : mean |residual|.
* **MSDR** : mean squared z-score (residual / kriging s.d.); ≈ 1 when the
  kriging variance is well calibrated.
* **R²**   : coefficient of determination of predicted vs observed.

Public API
----------
make_folds(n, n_folds, random_seed)                 → np.ndarray of fold ids
cross_validate(points, target, model, n_folds, ...) → pd.DataFrame (one row per observation)
compute_metrics(records)                            → dict
format_report(metrics)                              → str
"""

from __future__ import annotations

from typing import Dict

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score
from sklearn.model_selection import KFold

from .interpolation import ordinary_kriging
from .variogram import VariogramModel


# ======================================================================== #
#  1.  Fold assignment                                                      #
# ======================================================================== #

def make_folds(n: int, n_folds: int = 5, random_seed: int = 42) -> np.ndarray:
    """
    Assign each of *n* observations to one of *n_folds* folds.

    ``n_folds`` is clipped to ``n`` (leave-one-out at most).

    Returns
    -------
    np.ndarray, shape (n,)
        Fold id in ``0 .. k-1`` for every observation.
    """
    if n_folds < 2:
        raise ValueError(f"n_folds must be >= 2, got {n_folds}")
    if n < 2:
        raise ValueError(f"Cross-validation needs at least 2 observations, got {n}")

    k = min(n_folds, n)
    folds = np.empty(n, dtype=int)
    splitter = KFold(n_splits=k, shuffle=True, random_state=random_seed)
    for fold, (_, held_out) in enumerate(splitter.split(np.arange(n))):
        folds[held_out] = fold
    return folds


# ======================================================================== #
#  2.  Cross-validation                                                     #
# ======================================================================== #

def cross_validate(
    points: pd.DataFrame,
    target: str,
    model: VariogramModel,
    n_folds: int = 5,
    random_seed: int = 42,
    x_col: str = "X",
    y_col: str = "Y",
) -> pd.DataFrame:
    """
    k-fold cross-validation of ordinary kriging under *model*.

    Returns
    -------
    pd.DataFrame
        One row per observation, in input order, with columns
        ``x, y, observed, predicted, variance, residual, zscore, fold``.
    """
    x = points[x_col].to_numpy(dtype=np.float64)
    y = points[y_col].to_numpy(dtype=np.float64)
    z = points[target].to_numpy(dtype=np.float64)

    folds = make_folds(len(z), n_folds=n_folds, random_seed=random_seed)
    pred = np.full(len(z), np.nan)
    var = np.full(len(z), np.nan)

    for fold in np.unique(folds):
        held_out = folds == fold
        train = ~held_out
        pred[held_out], var[held_out] = ordinary_kriging(
            x[train], y[train], z[train], model, x[held_out], y[held_out]
        )

    residual = z - pred
    with np.errstate(divide="ignore", invalid="ignore"):
        zscore = np.where(var > 0, residual / np.sqrt(var), np.nan)

    return pd.DataFrame({
        "x": x,
        "y": y,
        "observed": z,
        "predicted": pred,
        "variance": var,
        "residual": residual,
        "zscore": zscore,
        "fold": folds,
    })


# ======================================================================== #
#  3.  Metrics                                                              #
# ======================================================================== #

def compute_metrics(records: pd.DataFrame) -> Dict[str, float]:
    """
    Error summary of cross-validation records.

    Returns
    -------
    dict
        Keys: ``n, me, rmse, mae, msdr, r2``.
    """
    observed = records["observed"].to_numpy(dtype=np.float64)
    predicted = records["predicted"].to_numpy(dtype=np.float64)
    residual = records["residual"].to_numpy(dtype=np.float64)
    zscore = records["zscore"].to_numpy(dtype=np.float64)

    metrics: Dict[str, float] = {}
    metrics["n"] = int(len(records))
    metrics["me"] = float(np.mean(residual))
    metrics["rmse"] = float(np.sqrt(mean_squared_error(observed, predicted)))
    metrics["mae"] = float(mean_absolute_error(observed, predicted))

    finite_z = zscore[np.isfinite(zscore)]
    metrics["msdr"] = float(np.mean(finite_z ** 2)) if len(finite_z) else float("nan")

    # R² is undefined for a constant observed series
    if np.ptp(observed) > 0:
        metrics["r2"] = float(r2_score(observed, predicted))
    else:
        metrics["r2"] = float("nan")

    return metrics


def format_report(metrics: Dict[str, float]) -> str:
    """Terminal report: RMSE and ME first, then the supporting metrics."""
    lines = [
        f"  RMSE : {metrics['rmse']:.6g}",
        f"  ME   : {metrics['me']:.6g}",
        f"  MAE  : {metrics['mae']:.6g}",
        f"  MSDR : {metrics['msdr']:.6g}",
        f"  R²   : {metrics['r2']:.6g}",
        f"  n    : {metrics['n']}",
    ]
    return "\n".join(lines)
