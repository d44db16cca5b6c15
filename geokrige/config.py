"""
geokrige.config
===============
Central configuration: constants, dataclasses, and sane defaults.

Every run is fully described by a `PipelineConfig` dataclass that is
serialised alongside the results for reproducibility.
"""

from __future__ import annotations

import hashlib
import platform
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

import json


# ---------------------------------------------------------------------------
# Input discovery patterns
# ---------------------------------------------------------------------------
BOUNDARY_PATTERNS: List[str] = ["*.shp", "*.gpkg", "*.geojson"]
POINTS_PATTERNS: List[str] = ["*.txt", "*.csv"]

# Default target variable (column in the point table)
DEFAULT_TARGET: str = "layer5"

# Variogram families understood by both the fitter and pykrige
SUPPORTED_MODELS: List[str] = ["spherical", "exponential", "gaussian"]

# Empirical semivariance estimators (classical, pairwise-relative, robust)
ESTIMATORS: Tuple[str, ...] = ("matheron", "pairwise", "cressie")


class PipelineError(Exception):
    """Base class for every fatal pipeline error."""


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------
@dataclass
class VariogramConfig:
    """
    Initial values and binning for the variogram fit.

    ``sill=None`` means "use the sample variance of the target".  The
    ``preference`` list is the ordered fallback chain used to pick the
    model that drives kriging.
    """
    model: str = "spherical"
    sill: Optional[float] = None
    range: float = 400.0
    nugget: float = 0.0
    n_lags: int = 15
    cutoff: Optional[float] = None       # None → 1/3 of the bbox diagonal
    preference: List[str] = field(default_factory=lambda: ["cressie", "matheron"])
    maxfev: int = 10000

    def __post_init__(self):
        if self.model not in SUPPORTED_MODELS:
            raise ValueError(
                f"Unknown variogram model '{self.model}'. "
                f"Choose from {SUPPORTED_MODELS}"
            )
        if not self.range > 0:
            raise ValueError(f"Initial range must be positive, got {self.range}")
        if self.nugget < 0 or (self.sill is not None and self.sill < 0):
            raise ValueError("Initial sill and nugget must be non-negative")
        unknown = [e for e in self.preference if e not in ESTIMATORS]
        if unknown or not self.preference:
            raise ValueError(
                f"preference must be a non-empty list drawn from {list(ESTIMATORS)}, "
                f"got {self.preference}"
            )

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "sill": self.sill,
            "range": self.range,
            "nugget": self.nugget,
            "n_lags": self.n_lags,
            "cutoff": self.cutoff,
            "preference": self.preference,
            "maxfev": self.maxfev,
        }


@dataclass
class CrossValidationConfig:
    """k-fold cross-validation of the kriging model."""
    n_folds: int = 5
    random_seed: int = 42

    def to_dict(self) -> dict:
        return {"n_folds": self.n_folds, "random_seed": self.random_seed}


@dataclass
class IDWConfig:
    """Inverse-distance weighting parameters."""
    power: float = 2.0
    max_neighbors: Optional[int] = None   # None → use every observation

    def to_dict(self) -> dict:
        return {"power": self.power, "max_neighbors": self.max_neighbors}


@dataclass
class PipelineConfig:
    """Master configuration for one run."""

    # -- Inputs --
    input_dir: str = "data"
    boundary_file: Optional[str] = None   # explicit path wins over discovery
    points_file: Optional[str] = None
    output_dir: str = "results"

    # -- Point table schema --
    target: str = DEFAULT_TARGET
    x_col: str = "X"
    y_col: str = "Y"
    points_crs: Optional[str] = None      # None → assign the boundary CRS

    # -- Grid --
    cell_size: float = 1.0

    # -- Sub-configs --
    variogram_config: VariogramConfig = field(default_factory=VariogramConfig)
    cv_config: CrossValidationConfig = field(default_factory=CrossValidationConfig)
    idw_config: IDWConfig = field(default_factory=IDWConfig)

    # -- Outputs --
    write_cv_records: bool = True

    # -- Reproducibility --
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    # ----- helpers -----
    def to_dict(self) -> dict:
        return {
            "input_dir": self.input_dir,
            "boundary_file": self.boundary_file,
            "points_file": self.points_file,
            "output_dir": self.output_dir,
            "target": self.target,
            "x_col": self.x_col,
            "y_col": self.y_col,
            "points_crs": self.points_crs,
            "cell_size": self.cell_size,
            "variogram_config": self.variogram_config.to_dict(),
            "cv_config": self.cv_config.to_dict(),
            "idw_config": self.idw_config.to_dict(),
            "write_cv_records": self.write_cv_records,
            "created_at": self.created_at,
        }

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def load(cls, path: str | Path) -> "PipelineConfig":
        raw = json.loads(Path(path).read_text())
        raw["variogram_config"] = VariogramConfig(**raw.get("variogram_config", {}))
        raw["cv_config"] = CrossValidationConfig(**raw.get("cv_config", {}))
        raw["idw_config"] = IDWConfig(**raw.get("idw_config", {}))
        return cls(**raw)


# ---------------------------------------------------------------------------
# Environment / reproducibility snapshot
# ---------------------------------------------------------------------------
def get_environment_info() -> dict:
    """Capture runtime environment for metadata."""
    info = {
        "python": platform.python_version(),
        "platform": platform.platform(),
        "timestamp": datetime.now().isoformat(),
    }
    try:
        info["git_commit"] = (
            subprocess.check_output(
                ["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL
            )
            .decode()
            .strip()
        )
    except (OSError, subprocess.CalledProcessError):
        info["git_commit"] = None
    return info


def file_hash(filepath: str | Path, algo: str = "sha256") -> str:
    """Compute hash of a file for provenance tracking."""
    h = hashlib.new(algo)
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()
