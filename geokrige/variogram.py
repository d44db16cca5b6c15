"""
geokrige.variogram
==================
Empirical semivariance under three estimators and parametric model fitting.

Estimators
----------
=========  ==========================================================
Name       Semivariance in lag bin h with N(h) pairs
=========  ==========================================================
matheron   Σ (zi − zj)² / 2N(h)
pairwise   Σ (zi − zj)² / ((zi + zj) / 2)² / 2N(h)   (pairwise-relative)
cressie    (mean |zi − zj|^½)⁴ / 2(0.457 + 0.494/N + 0.045/N²)
=========  ==========================================================

Binning defaults: cutoff = one third of the bounding-box diagonal of the
observations, 15 equal-width lags.  The reported lag distance of a bin is
the mean distance of its pairs.

Fitting
-------
Weighted nonlinear least squares (``scipy.optimize.curve_fit``, trust
region reflective, non-negative bounds) with weights N(h)/h².  The model
curves are pykrige's own variogram functions so the fitted parameters mean
exactly what the kriging step expects.

A fit that fails never raises: it returns a :class:`VariogramFit` whose
``model`` is ``None``.  :func:`select_model` walks an ordered candidate list
and raises :class:`VariogramFitError` only when every candidate failed.

Public API
----------
empirical_variogram(coords, values, estimator, ...)   → EmpiricalVariogram
compute_empirical_variograms(points, target, ...)     → {estimator: EmpiricalVariogram}
fit_variogram(empirical, model, sill, range, nugget)  → VariogramFit
fit_all(empiricals, variogram_config, sample_variance) → {estimator: VariogramFit}
select_model(fits, preference)                        → VariogramModel
fit_variograms(points, target, variogram_config, ...) → (empiricals, fits, model)
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pykrige import variogram_models
from scipy.optimize import OptimizeWarning, curve_fit
from scipy.spatial.distance import pdist

from .config import ESTIMATORS, PipelineError, VariogramConfig


MODEL_FUNCTIONS = {
    "spherical": variogram_models.spherical_variogram_model,
    "exponential": variogram_models.exponential_variogram_model,
    "gaussian": variogram_models.gaussian_variogram_model,
}

_MIN_DISTINCT_LOCATIONS = 3
_MIN_FIT_BINS = 3


class VariogramFitError(PipelineError):
    """Raised when no usable variogram model can be produced."""


# ======================================================================== #
#  Data classes                                                             #
# ======================================================================== #

@dataclass
class EmpiricalVariogram:
    """(lag, semivariance, pair count) triples for one estimator."""
    estimator: str
    lag: np.ndarray
    gamma: np.ndarray
    n_pairs: np.ndarray
    cutoff: float

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "estimator": self.estimator,
            "dist": self.lag,
            "gamma": self.gamma,
            "np": self.n_pairs,
        })


@dataclass
class VariogramModel:
    """Fitted parametric variogram (partial sill, range, nugget)."""
    model: str
    psill: float
    range: float
    nugget: float
    estimator: str = ""

    @property
    def sill(self) -> float:
        """Total sill = partial sill + nugget."""
        return self.psill + self.nugget

    def __call__(self, h) -> np.ndarray:
        h = np.asarray(h, dtype=np.float64)
        return MODEL_FUNCTIONS[self.model]([self.psill, self.range, self.nugget], h)

    def to_pykrige(self) -> Dict[str, float]:
        return {"psill": self.psill, "range": self.range, "nugget": self.nugget}

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "psill": self.psill,
            "range": self.range,
            "nugget": self.nugget,
            "sill": self.sill,
            "estimator": self.estimator,
        }


@dataclass
class VariogramFit:
    """Result of fitting one empirical variogram; ``model`` is None on failure."""
    empirical: EmpiricalVariogram
    model: Optional[VariogramModel] = None
    error: Optional[str] = None

    @property
    def estimator(self) -> str:
        return self.empirical.estimator

    @property
    def has_sill(self) -> bool:
        """
        True when the fit produced a usable model: a positive sill, or a
        zero sill fitted to an all-zero (constant field) variogram.
        """
        if self.model is None:
            return False
        return self.model.sill > 0 or not np.any(self.empirical.gamma > 0)

    @property
    def failure(self) -> str:
        if self.error is not None:
            return self.error
        return f"non-positive sill ({self.model.sill:g})"

    def to_dict(self) -> dict:
        return {
            "estimator": self.estimator,
            "model": self.model.to_dict() if self.model is not None else None,
            "error": None if self.has_sill else self.failure,
            "n_bins": int(len(self.empirical.lag)),
        }


# ======================================================================== #
#  1.  Empirical variograms                                                 #
# ======================================================================== #

def check_distinct_locations(coords: np.ndarray) -> None:
    """Raise VariogramFitError when fewer than 3 distinct locations exist."""
    n_distinct = len(np.unique(np.asarray(coords, dtype=np.float64), axis=0))
    if n_distinct < _MIN_DISTINCT_LOCATIONS:
        raise VariogramFitError(
            f"Variogram needs at least {_MIN_DISTINCT_LOCATIONS} distinct point "
            f"locations, got {n_distinct}"
        )


def default_binning(
    coords: np.ndarray,
    cutoff: Optional[float] = None,
    n_lags: int = 15,
) -> np.ndarray:
    """
    Equal-width lag bin edges from 0 to *cutoff*.

    The default cutoff is one third of the bounding-box diagonal.
    """
    coords = np.asarray(coords, dtype=np.float64)
    if cutoff is None:
        span = coords.max(axis=0) - coords.min(axis=0)
        cutoff = float(np.hypot(*span)) / 3.0
    if not cutoff > 0:
        raise VariogramFitError(f"Variogram cutoff must be positive, got {cutoff}")
    if n_lags < 1:
        raise ValueError(f"n_lags must be >= 1, got {n_lags}")
    return np.linspace(0.0, cutoff, n_lags + 1)


def empirical_variogram(
    coords: np.ndarray,
    values: np.ndarray,
    estimator: str = "matheron",
    cutoff: Optional[float] = None,
    n_lags: int = 15,
) -> EmpiricalVariogram:
    """
    Compute an empirical variogram.

    Parameters
    ----------
    coords : array, shape (n, 2)
    values : array, shape (n,)
    estimator : str
        ``'matheron'``, ``'pairwise'`` or ``'cressie'``.
    cutoff : float, optional
        Maximum pair distance; default one third of the bbox diagonal.
    n_lags : int
        Number of equal-width lag bins.

    Returns
    -------
    EmpiricalVariogram
        Empty bins are dropped.

    Raises
    ------
    VariogramFitError
        If fewer than 3 distinct locations are given.
    """
    if estimator not in ESTIMATORS:
        raise ValueError(f"Unknown estimator '{estimator}'. Choose from {list(ESTIMATORS)}")

    coords = np.asarray(coords, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    check_distinct_locations(coords)

    edges = default_binning(coords, cutoff=cutoff, n_lags=n_lags)
    n_bins = len(edges) - 1

    dist = pdist(coords)
    i, j = np.triu_indices(len(values), k=1)
    zi, zj = values[i], values[j]

    keep = dist <= edges[-1]
    if estimator == "pairwise":
        keep &= (zi + zj) != 0
    dist, zi, zj = dist[keep], zi[keep], zj[keep]

    bins = np.digitize(dist, edges[1:-1], right=True)
    counts = np.bincount(bins, minlength=n_bins).astype(np.float64)
    lag_sum = np.bincount(bins, weights=dist, minlength=n_bins)

    diff = zi - zj
    with np.errstate(divide="ignore", invalid="ignore"):
        if estimator == "matheron":
            gamma = np.bincount(bins, weights=diff ** 2, minlength=n_bins) / (2.0 * counts)
        elif estimator == "pairwise":
            rel = diff ** 2 / ((zi + zj) / 2.0) ** 2
            gamma = np.bincount(bins, weights=rel, minlength=n_bins) / (2.0 * counts)
        else:
            mean_root = np.bincount(bins, weights=np.sqrt(np.abs(diff)), minlength=n_bins) / counts
            gamma = mean_root ** 4 / (2.0 * (0.457 + 0.494 / counts + 0.045 / counts ** 2))
        lag = lag_sum / counts

    filled = counts > 0
    return EmpiricalVariogram(
        estimator=estimator,
        lag=lag[filled],
        gamma=gamma[filled],
        n_pairs=counts[filled].astype(int),
        cutoff=float(edges[-1]),
    )


def compute_empirical_variograms(
    points: pd.DataFrame,
    target: str,
    x_col: str = "X",
    y_col: str = "Y",
    cutoff: Optional[float] = None,
    n_lags: int = 15,
    estimators: Sequence[str] = ESTIMATORS,
) -> Dict[str, EmpiricalVariogram]:
    """One empirical variogram per estimator for the *target* column."""
    coords = points[[x_col, y_col]].to_numpy(dtype=np.float64)
    values = points[target].to_numpy(dtype=np.float64)
    return {
        name: empirical_variogram(coords, values, name, cutoff=cutoff, n_lags=n_lags)
        for name in estimators
    }


# ======================================================================== #
#  2.  Model fitting                                                        #
# ======================================================================== #

def fit_variogram(
    empirical: EmpiricalVariogram,
    model: str = "spherical",
    sill: float = 1.0,
    range: float = 400.0,
    nugget: float = 0.0,
    maxfev: int = 10000,
) -> VariogramFit:
    """
    Fit a parametric model to an empirical variogram.

    Parameters
    ----------
    empirical : EmpiricalVariogram
    model : str
        ``'spherical'`` | ``'exponential'`` | ``'gaussian'``.
    sill, range, nugget : float
        Initial partial sill, range, and nugget.
    maxfev : int
        Maximum function evaluations before giving up.

    Returns
    -------
    VariogramFit
        ``model`` is None (with ``error`` set) when fitting failed.
    """
    func = MODEL_FUNCTIONS.get(model)
    if func is None:
        raise ValueError(f"Unknown variogram model '{model}'. Choose from {list(MODEL_FUNCTIONS)}")

    valid = (empirical.n_pairs > 0) & (empirical.lag > 0) & np.isfinite(empirical.gamma)
    h = empirical.lag[valid]
    g = empirical.gamma[valid]
    n = empirical.n_pairs[valid].astype(np.float64)

    if len(h) < _MIN_FIT_BINS:
        return VariogramFit(
            empirical,
            error=f"only {len(h)} usable lag bin(s); need {_MIN_FIT_BINS}",
        )

    def curve(d, psill, rng, nug):
        return func([psill, rng, nug], d)

    p0 = [max(float(sill), 0.0), float(range), max(float(nugget), 0.0)]
    lower = [0.0, np.finfo(np.float64).eps, 0.0]
    upper = [np.inf, np.inf, np.inf]

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            popt, _ = curve_fit(
                curve, h, g,
                p0=p0,
                sigma=h / np.sqrt(n),
                bounds=(lower, upper),
                method="trf",
                maxfev=maxfev,
            )
    except (RuntimeError, ValueError) as e:
        return VariogramFit(empirical, error=f"least-squares fit failed: {e}")

    if not np.all(np.isfinite(popt)):
        return VariogramFit(empirical, error=f"non-finite parameters {popt.tolist()}")

    psill, rng, nug = (float(v) for v in popt)
    if psill + nug <= 0 and np.any(g > 0):
        return VariogramFit(
            empirical, error=f"non-positive sill ({psill + nug:g}) for a non-flat variogram"
        )
    return VariogramFit(
        empirical,
        model=VariogramModel(
            model=model, psill=psill, range=rng, nugget=nug,
            estimator=empirical.estimator,
        ),
    )


def fit_all(
    empiricals: Dict[str, EmpiricalVariogram],
    variogram_config: VariogramConfig,
    sample_variance: float,
) -> Dict[str, VariogramFit]:
    """Fit the configured model to every empirical variogram."""
    sill0 = variogram_config.sill if variogram_config.sill is not None else sample_variance
    return {
        name: fit_variogram(
            emp,
            model=variogram_config.model,
            sill=sill0,
            range=variogram_config.range,
            nugget=variogram_config.nugget,
            maxfev=variogram_config.maxfev,
        )
        for name, emp in empiricals.items()
    }


# ======================================================================== #
#  3.  Selection (ordered fallback chain)                                   #
# ======================================================================== #

def select_model(
    fits: Dict[str, VariogramFit],
    preference: Sequence[str] = ("cressie", "matheron"),
) -> VariogramModel:
    """
    Return the model of the first candidate in *preference* that has a sill.

    Raises
    ------
    VariogramFitError
        When no candidate produced a usable model.  The message lists why
        each candidate was rejected.
    """
    failures = []
    for name in preference:
        fit = fits.get(name)
        if fit is None:
            failures.append(f"{name}: not computed")
            continue
        if fit.has_sill:
            if failures:
                warnings.warn(
                    f"Falling back to the '{name}' variogram fit ({'; '.join(failures)})"
                )
            return fit.model
        failures.append(f"{name}: {fit.failure}")

    raise VariogramFitError(
        "No usable variogram model among candidates "
        f"{list(preference)}: " + "; ".join(failures)
    )


def fit_variograms(
    points: pd.DataFrame,
    target: str,
    variogram_config: VariogramConfig,
    x_col: str = "X",
    y_col: str = "Y",
) -> Tuple[Dict[str, EmpiricalVariogram], Dict[str, VariogramFit], VariogramModel]:
    """
    Full variogram stage: three empirical variograms, a fit for each, and
    the chosen model.
    """
    empiricals = compute_empirical_variograms(
        points, target,
        x_col=x_col, y_col=y_col,
        cutoff=variogram_config.cutoff,
        n_lags=variogram_config.n_lags,
    )
    z = points[target].to_numpy(dtype=np.float64)
    sample_variance = float(np.var(z, ddof=1)) if len(z) > 1 else 0.0
    fits = fit_all(empiricals, variogram_config, sample_variance)
    chosen = select_model(fits, variogram_config.preference)
    return empiricals, fits, chosen
