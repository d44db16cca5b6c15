"""
geokrige.ingestion
==================
Locate, read, and validate the study-area boundary and the point table.

Public API
----------
find_input_files(input_dir)          → (boundary_path, points_path)
resolve_input_files(config)          → (boundary_path, points_path)
load_boundary(path)                  → gpd.GeoDataFrame
read_point_table(path)               → pd.DataFrame
load_points(path, boundary_crs, ...) → gpd.GeoDataFrame
describe_target(points, target)      → dict
"""

from __future__ import annotations

import glob
import os
import warnings
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd

from .config import BOUNDARY_PATTERNS, POINTS_PATTERNS, PipelineConfig, PipelineError


class MissingInputError(PipelineError):
    """Raised when a required boundary or point file cannot be found."""


class SchemaError(PipelineError):
    """Raised when an input file lacks required columns or geometries."""


# ======================================================================== #
#  1.  File discovery                                                       #
# ======================================================================== #

def _first_match(input_dir: str, patterns: Sequence[str], kind: str) -> str:
    matches: List[str] = []
    for pattern in patterns:
        matches.extend(glob.glob(os.path.join(input_dir, pattern)))
    matches = sorted(set(matches))

    if not matches:
        raise MissingInputError(
            f"No {kind} file matching {list(patterns)} found in {input_dir}"
        )
    if len(matches) > 1:
        warnings.warn(
            f"Several {kind} files found in {input_dir}; using "
            f"{os.path.basename(matches[0])} (candidates: "
            f"{[os.path.basename(m) for m in matches]})"
        )
    return matches[0]


def find_input_files(
    input_dir: str | Path,
    boundary_patterns: Sequence[str] = BOUNDARY_PATTERNS,
    points_patterns: Sequence[str] = POINTS_PATTERNS,
) -> Tuple[str, str]:
    """
    Locate one boundary file and one point table inside *input_dir*.

    Returns
    -------
    (boundary_path, points_path)

    Raises
    ------
    MissingInputError
        If the directory does not exist or either file is absent.
    """
    boundary = _discover(input_dir, boundary_patterns, "boundary")
    points = _discover(input_dir, points_patterns, "point table")
    return boundary, points


def resolve_input_files(config: PipelineConfig) -> Tuple[str, str]:
    """
    Explicit paths from *config* take precedence; anything left unset is
    discovered in ``config.input_dir``.
    """
    for label, explicit in (("boundary", config.boundary_file),
                            ("point table", config.points_file)):
        if explicit is not None and not os.path.isfile(explicit):
            raise MissingInputError(f"Configured {label} file not found: {explicit}")

    boundary = config.boundary_file
    if boundary is None:
        boundary = _discover(config.input_dir, BOUNDARY_PATTERNS, "boundary")
    points = config.points_file
    if points is None:
        points = _discover(config.input_dir, POINTS_PATTERNS, "point table")
    return boundary, points


def _discover(input_dir: str | Path, patterns: Sequence[str], kind: str) -> str:
    input_dir = str(input_dir)
    if not os.path.isdir(input_dir):
        raise MissingInputError(f"Input directory not found: {input_dir}")
    return _first_match(input_dir, patterns, kind)


# ======================================================================== #
#  2.  Boundary                                                             #
# ======================================================================== #

def load_boundary(path: str | Path) -> gpd.GeoDataFrame:
    """
    Read the study-area boundary.

    Raises
    ------
    MissingInputError
        If *path* does not exist.
    SchemaError
        If the file holds no polygon / multipolygon geometry.
    """
    path = Path(path)
    if not path.exists():
        raise MissingInputError(f"Boundary file not found: {path}")

    boundary = gpd.read_file(path)
    boundary = boundary[~boundary.geometry.is_empty & boundary.geometry.notna()]
    polygonal = boundary.geometry.geom_type.isin(["Polygon", "MultiPolygon"])

    if boundary.empty or not polygonal.any():
        raise SchemaError(f"Boundary file {path.name} contains no polygon geometry")
    if not polygonal.all():
        warnings.warn(
            f"Ignoring {int((~polygonal).sum())} non-polygon feature(s) in {path.name}"
        )
        boundary = boundary[polygonal]

    return boundary.reset_index(drop=True)


# ======================================================================== #
#  3.  Point table                                                          #
# ======================================================================== #

def read_point_table(path: str | Path) -> pd.DataFrame:
    """
    Parse a comma- or whitespace-delimited table with a header row.

    ``.csv`` files are read as comma-separated.  Anything else is
    whitespace-separated unless its header line contains a comma.
    """
    path = Path(path)
    if not path.exists():
        raise MissingInputError(f"Point table not found: {path}")

    if path.suffix.lower() == ".csv":
        return pd.read_csv(path)

    with open(path, "r", encoding="utf-8") as fh:
        header = fh.readline()
    if "," in header:
        return pd.read_csv(path)
    return pd.read_csv(path, sep=r"\s+")


def load_points(
    path: str | Path,
    boundary_crs,
    target: str,
    x_col: str = "X",
    y_col: str = "Y",
    points_crs: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Load the point table as a GeoDataFrame in the boundary CRS.

    Parameters
    ----------
    path : str or Path
        Tabular file with at least *x_col*, *y_col* and *target*.
    boundary_crs :
        CRS of the study-area boundary (may be ``None``).
    target : str
        Name of the variable to interpolate.
    points_crs : str, optional
        CRS the coordinates are expressed in.  ``None`` means "same as the
        boundary"; otherwise the points are reprojected to the boundary CRS.

    Raises
    ------
    SchemaError
        If required columns are missing or non-numeric, or no complete
        observation remains.
    """
    df = read_point_table(path)

    required = [x_col, y_col, target]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise SchemaError(
            f"Point table {Path(path).name} is missing required column(s) "
            f"{missing}; available: {list(df.columns)}"
        )

    for col in required:
        if not pd.api.types.is_numeric_dtype(df[col]):
            raise SchemaError(f"Column '{col}' in {Path(path).name} is not numeric")

    complete = df[required].notna().all(axis=1)
    if not complete.all():
        warnings.warn(
            f"Dropping {int((~complete).sum())} row(s) with missing "
            f"{required} values"
        )
        df = df[complete]
    if df.empty:
        raise SchemaError(f"Point table {Path(path).name} has no complete observations")

    geometry = gpd.points_from_xy(df[x_col], df[y_col])
    points = gpd.GeoDataFrame(
        df.reset_index(drop=True),
        geometry=geometry,
        crs=points_crs if points_crs is not None else boundary_crs,
    )

    if points_crs is not None and boundary_crs is not None and points.crs != boundary_crs:
        points = points.to_crs(boundary_crs)
        points[x_col] = points.geometry.x
        points[y_col] = points.geometry.y

    return points


def describe_target(points: pd.DataFrame, target: str) -> Dict[str, float]:
    """Summary statistics of the target variable (sample variance, ddof=1)."""
    z = np.asarray(points[target], dtype=np.float64)
    var = float(np.var(z, ddof=1)) if len(z) > 1 else 0.0
    return {
        "n": int(len(z)),
        "mean": float(np.mean(z)),
        "variance": var,
        "std": float(np.sqrt(var)),
        "min": float(np.min(z)),
        "max": float(np.max(z)),
    }
