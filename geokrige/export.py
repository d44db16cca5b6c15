"""
geokrige.export
===============
Write prediction surfaces, cross-validation records, and run metadata.

Responsibilities
----------------
* Tab-delimited tables of grid coordinates + predicted value (+ variance).
* Single-band float32 GeoTIFF rasters aligned to the prediction grid.
* Run metadata JSON (config, chosen model, fits, metrics, input hashes).

Every file is written to a hidden temporary sibling first and moved into
place with ``os.replace``, so a failed write never leaves a half-written
output behind and an existing file is only replaced by a complete one.

Folder layout
-------------
::

    results/
        pipeline_config.json
        run_metadata.json
        kriged_<target>.txt
        idw_<target>.txt
        cv_<target>.txt
        <target>_krig.tif
        <target>_idw.tif
"""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Type

import numpy as np
import pandas as pd
import rioxarray  # noqa: F401  (registers .rio accessor)
from rasterio.errors import RasterioError

from .config import PipelineConfig, PipelineError, file_hash, get_environment_info
from .interpolation import PredictionSurface
from .variogram import VariogramFit, VariogramModel


class ExportError(PipelineError):
    """Raised when an output file cannot be written."""


class RasterWriteError(ExportError):
    """Raised when a GeoTIFF cannot be written (missing directory, permissions, …)."""


class TableWriteError(ExportError):
    """Raised when a tabular output cannot be written."""


# ======================================================================== #
#  Naming                                                                   #
# ======================================================================== #

def output_paths(output_dir: str | Path, target: str) -> Dict[str, Path]:
    """Fixed output file names relative to *output_dir*."""
    out = Path(output_dir)
    return {
        "krig_table": out / f"kriged_{target}.txt",
        "idw_table": out / f"idw_{target}.txt",
        "krig_raster": out / f"{target}_krig.tif",
        "idw_raster": out / f"{target}_idw.tif",
        "cv_table": out / f"cv_{target}.txt",
        "metadata": out / "run_metadata.json",
        "config": out / "pipeline_config.json",
    }


# ======================================================================== #
#  Atomic writes                                                            #
# ======================================================================== #

@contextmanager
def _atomic_target(path: Path, error_cls: Type[ExportError]) -> Iterator[Path]:
    """Yield a temporary path; move it onto *path* once the body succeeds."""
    if not path.parent.is_dir():
        raise error_cls(f"Destination directory does not exist: {path.parent}")

    tmp = path.with_name(f".{path.stem}.tmp{path.suffix}")
    try:
        yield tmp
        os.replace(tmp, path)
    except (OSError, RasterioError) as e:
        raise error_cls(f"Could not write {path}: {e}") from e
    finally:
        if tmp.exists():
            tmp.unlink()


# ======================================================================== #
#  Results directory and configuration                                      #
# ======================================================================== #

def prepare_output_dir(output_dir: str | Path) -> Path:
    """Create *output_dir* (and parents); any OS failure becomes ExportError."""
    out = Path(output_dir)
    try:
        out.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ExportError(f"Cannot create results directory {out}: {e}") from e
    return out


def write_config(config: PipelineConfig, path: str | Path) -> str:
    """Write ``pipeline_config.json`` atomically."""
    path = Path(path)
    with _atomic_target(path, ExportError) as tmp:
        tmp.write_text(json.dumps(config.to_dict(), indent=2))
    return str(path)


# ======================================================================== #
#  Tables                                                                   #
# ======================================================================== #

def write_table(df: pd.DataFrame, path: str | Path) -> str:
    """
    Write *df* as a tab-delimited text file (header, no index).

    Returns
    -------
    str  – path written.
    """
    path = Path(path)
    with _atomic_target(path, TableWriteError) as tmp:
        df.to_csv(tmp, sep="\t", index=False)
    return str(path)


def write_surface_table(surface: PredictionSurface, path: str | Path) -> str:
    """Grid coordinates + predicted value (+ variance for kriging)."""
    return write_table(surface.to_frame(), path)


# ======================================================================== #
#  Rasters                                                                  #
# ======================================================================== #

def write_surface_raster(surface: PredictionSurface, path: str | Path) -> str:
    """
    Write a surface as a single-band float32 GeoTIFF.

    The raster uses the grid's transform (lattice points at pixel centres),
    NaN as nodata, and the boundary CRS when one is known.

    Raises
    ------
    RasterWriteError
        If the destination directory is missing or the file cannot be
        written.
    """
    path = Path(path)
    da = surface.to_dataarray()
    da = da.rio.write_transform(surface.grid.transform())
    if surface.grid.crs is not None:
        da = da.rio.write_crs(surface.grid.crs)
    da = da.rio.write_nodata(np.nan, encoded=False)

    with _atomic_target(path, RasterWriteError) as tmp:
        da.rio.to_raster(tmp, driver="GTiff", dtype="float32", recalc_transform=False)
    return str(path)


# ======================================================================== #
#  Run metadata                                                             #
# ======================================================================== #

def save_run_metadata(
    path: str | Path,
    config: PipelineConfig,
    model: VariogramModel,
    fits: Dict[str, VariogramFit],
    metrics: Dict[str, float],
    target_summary: Optional[Dict] = None,
    files_used: Optional[List[str]] = None,
    outputs: Optional[Dict[str, str]] = None,
) -> str:
    """
    Write a ``run_metadata.json`` describing one run.

    Returns the path of the written file.
    """
    path = Path(path)
    meta = {
        "timestamp": datetime.now().isoformat(),
        "pipeline_config": config.to_dict(),
        "target_summary": _make_serialisable(target_summary or {}),
        "chosen_model": model.to_dict(),
        "fits": {name: fit.to_dict() for name, fit in fits.items()},
        "cv_metrics": _make_serialisable(metrics),
        "environment": get_environment_info(),
    }

    if files_used:
        meta["files_used"] = {
            os.path.basename(f): file_hash(f)
            for f in files_used
            if os.path.exists(f)
        }

    if outputs:
        meta["outputs"] = {k: os.path.basename(v) for k, v in outputs.items()}

    with _atomic_target(path, ExportError) as tmp:
        tmp.write_text(json.dumps(_make_serialisable(meta), indent=2, default=str))
    return str(path)


# ======================================================================== #
#  Internal helpers                                                         #
# ======================================================================== #

def _make_serialisable(obj: Any) -> Any:
    """Recursively convert numpy types (and NaN) for JSON serialisation."""
    if isinstance(obj, dict):
        return {k: _make_serialisable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_make_serialisable(v) for v in obj]
    if isinstance(obj, (np.integer,)):
        return int(obj)
    if isinstance(obj, (float, np.floating)):
        return float(obj) if np.isfinite(obj) else None
    if isinstance(obj, np.ndarray):
        return _make_serialisable(obj.tolist())
    if isinstance(obj, (np.bool_,)):
        return bool(obj)
    return obj
