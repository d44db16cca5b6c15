"""
geokrige.runner
===============
Pipeline orchestrator: runs every stage once, in order, and exports the
documented artefacts.

.. code-block:: text

    load boundary + points
        → build grid
        → empirical variograms (matheron, pairwise, cressie) → fit each
        → select model (cressie, else matheron, else VariogramFitError)
        → kriging surface + IDW surface
        → k-fold cross-validation → RMSE / ME
        → export tables, rasters, metadata

Nothing is written until every computation has succeeded, so a fatal error
in any stage leaves the results directory untouched; an export failure
removes the files this run had already written.

Public API
----------
KrigingPipeline(config) – instantiate once, call .run()
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

import geopandas as gpd
import pandas as pd

from .config import PipelineConfig
from .evaluation import compute_metrics, cross_validate, format_report
from .export import (
    ExportError,
    output_paths,
    prepare_output_dir,
    save_run_metadata,
    write_config,
    write_surface_raster,
    write_surface_table,
    write_table,
)
from .grid import PredictionGrid, build_grid
from .ingestion import describe_target, load_boundary, load_points, resolve_input_files
from .interpolation import PredictionSurface, idw_surface, krige_surface
from .variogram import EmpiricalVariogram, VariogramFit, VariogramModel, fit_variograms


@dataclass
class PipelineResult:
    """Everything one run produced."""
    boundary: gpd.GeoDataFrame
    points: gpd.GeoDataFrame
    grid: PredictionGrid
    empiricals: Dict[str, EmpiricalVariogram]
    fits: Dict[str, VariogramFit]
    model: VariogramModel
    kriging: PredictionSurface
    idw: PredictionSurface
    cv_records: pd.DataFrame
    metrics: Dict[str, float]
    outputs: Dict[str, str] = field(default_factory=dict)


class KrigingPipeline:
    """
    End-to-end interpolation run.

    Parameters
    ----------
    config : PipelineConfig
        Master configuration.
    write_outputs : bool
        If False, compute everything but skip the export stage.
    """

    def __init__(self, config: PipelineConfig, write_outputs: bool = True):
        self.cfg = config
        self.write_outputs = write_outputs

    # ------------------------------------------------------------------ #
    #  Main entry point                                                    #
    # ------------------------------------------------------------------ #

    def run(self) -> PipelineResult:
        """
        Execute every stage.

        Returns
        -------
        PipelineResult
        """
        t0 = time.time()
        cfg = self.cfg

        # 1. Load inputs
        boundary_path, points_path = resolve_input_files(cfg)
        print("Loading inputs...")
        boundary = load_boundary(boundary_path)
        points = load_points(
            points_path,
            boundary_crs=boundary.crs,
            target=cfg.target,
            x_col=cfg.x_col,
            y_col=cfg.y_col,
            points_crs=cfg.points_crs,
        )
        summary = describe_target(points, cfg.target)
        print(f"  ✓ Boundary: {Path(boundary_path).name} "
              f"({len(boundary)} feature(s), CRS: {boundary.crs})")
        print(f"  ✓ Points  : {Path(points_path).name} ({summary['n']} observations)")
        print(f"  {cfg.target}: mean={summary['mean']:.4g}  var={summary['variance']:.4g}  "
              f"min={summary['min']:.4g}  max={summary['max']:.4g}")

        # 2. Grid
        grid = build_grid(boundary, cell_size=cfg.cell_size)
        n_rows, n_cols = grid.shape
        print(f"  ✓ Grid: {len(grid):,} cells (lattice {n_rows}×{n_cols}, "
              f"cell size {grid.cell_size:g})")

        # 3. Variograms
        print("Fitting variograms...")
        empiricals, fits, model = fit_variograms(
            points, cfg.target, cfg.variogram_config,
            x_col=cfg.x_col, y_col=cfg.y_col,
        )
        for name, fit in fits.items():
            if fit.has_sill:
                m = fit.model
                print(f"    {name:<9} psill={m.psill:.4g}  range={m.range:.4g}  "
                      f"nugget={m.nugget:.4g}")
            else:
                print(f"    {name:<9} FAILED: {fit.failure}")
        print(f"  ✓ Using the {model.estimator} fit ({model.model})")

        # 4. Surfaces
        print("Interpolating...")
        kriging = krige_surface(
            points, cfg.target, grid, model, x_col=cfg.x_col, y_col=cfg.y_col
        )
        idw = idw_surface(
            points, cfg.target, grid,
            power=cfg.idw_config.power,
            max_neighbors=cfg.idw_config.max_neighbors,
            x_col=cfg.x_col, y_col=cfg.y_col,
        )
        print(f"  ✓ Kriging and IDW surfaces over {len(grid):,} cells")

        # 5. Cross-validation
        print(f"Cross-validating ({cfg.cv_config.n_folds}-fold)...")
        cv_records = cross_validate(
            points, cfg.target, model,
            n_folds=cfg.cv_config.n_folds,
            random_seed=cfg.cv_config.random_seed,
            x_col=cfg.x_col, y_col=cfg.y_col,
        )
        metrics = compute_metrics(cv_records)

        result = PipelineResult(
            boundary=boundary,
            points=points,
            grid=grid,
            empiricals=empiricals,
            fits=fits,
            model=model,
            kriging=kriging,
            idw=idw,
            cv_records=cv_records,
            metrics=metrics,
        )

        # 6. Export
        if self.write_outputs:
            result.outputs = self._export(result, summary, [boundary_path, points_path])

        elapsed = time.time() - t0
        print(f"\n✓ Run completed in {elapsed:.1f}s")
        print(format_report(metrics))
        return result

    # ------------------------------------------------------------------ #
    #  Export                                                              #
    # ------------------------------------------------------------------ #

    def _export(
        self,
        result: PipelineResult,
        target_summary: Dict,
        files_used: List[str],
    ) -> Dict[str, str]:
        """Write every artefact; on failure remove whatever this run wrote."""
        cfg = self.cfg
        paths = output_paths(cfg.output_dir, cfg.target)

        print(f"Writing outputs to {cfg.output_dir}...")
        written: Dict[str, str] = {}
        try:
            prepare_output_dir(cfg.output_dir)
            written["config"] = write_config(cfg, paths["config"])
            written["krig_table"] = write_surface_table(result.kriging, paths["krig_table"])
            written["idw_table"] = write_surface_table(result.idw, paths["idw_table"])
            written["krig_raster"] = write_surface_raster(result.kriging, paths["krig_raster"])
            written["idw_raster"] = write_surface_raster(result.idw, paths["idw_raster"])
            if cfg.write_cv_records:
                written["cv_table"] = write_table(result.cv_records, paths["cv_table"])

            written["metadata"] = save_run_metadata(
                paths["metadata"],
                config=cfg,
                model=result.model,
                fits=result.fits,
                metrics=result.metrics,
                target_summary=target_summary,
                files_used=files_used,
                outputs=written,
            )
        except ExportError:
            for path in written.values():
                Path(path).unlink(missing_ok=True)
            raise

        for key, path in written.items():
            print(f"    {key:<12} {Path(path).name}")
        return written
