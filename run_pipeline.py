#!/usr/bin/env python3
"""
run_pipeline.py
===============
Main entry point for the geokrige interpolation pipeline.

Usage
-----
  # Discover the boundary (*.shp) and point table (*.txt / *.csv) in data/
  python run_pipeline.py

  # Explicit inputs, different target column and cell size
  python run_pipeline.py --boundary data/area.shp --points data/points.txt \
      --target layer3 --cell-size 5

  # Custom config from JSON
  python run_pipeline.py --config results/pipeline_config.json

Pipeline Flow
-------------
::

  boundary + point table  ──→  validate schema / CRS
       │
       ▼
  regular grid over the boundary  (first node at xmin+cell, ymin+cell)
       │
       ▼
  empirical variograms  (matheron, pairwise-relative, cressie)
       │
       ▼
  fit spherical model to each  (sill=var, range=400, nugget=0)
       │
       ▼
  choose model  (cressie → matheron → fail)
       │
       ▼
  ordinary kriging surface  +  IDW surface
       │
       ▼
  k-fold cross-validation  →  RMSE, ME
       │
       ▼
  kriged_<t>.txt  idw_<t>.txt  <t>_krig.tif  <t>_idw.tif  run_metadata.json
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure the project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from geokrige.config import SUPPORTED_MODELS, PipelineConfig, PipelineError
from geokrige.runner import KrigingPipeline


# ======================================================================== #
#  CLI                                                                      #
# ======================================================================== #

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="geokrige: kriging / IDW interpolation pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=str, default=None,
                        help="Path to a pipeline_config.json file.")
    parser.add_argument("--input-dir", type=str, default=None,
                        help="Directory searched for the boundary and point table.")
    parser.add_argument("--boundary", type=str, default=None,
                        help="Explicit boundary file (overrides discovery).")
    parser.add_argument("--points", type=str, default=None,
                        help="Explicit point table (overrides discovery).")
    parser.add_argument("--output-dir", type=str, default=None,
                        help="Results directory.")
    parser.add_argument("--target", type=str, default=None,
                        help="Target column to interpolate (default: layer5).")
    parser.add_argument("--cell-size", type=float, default=None,
                        help="Grid cell size in CRS units (default: 1).")
    parser.add_argument("--model", type=str, default=None, choices=SUPPORTED_MODELS,
                        help="Variogram model family (default: spherical).")
    parser.add_argument("--sill", type=float, default=None,
                        help="Initial partial sill (default: sample variance).")
    parser.add_argument("--range", type=float, default=None,
                        help="Initial range (default: 400).")
    parser.add_argument("--nugget", type=float, default=None,
                        help="Initial nugget (default: 0).")
    parser.add_argument("--folds", type=int, default=None,
                        help="Cross-validation folds (default: 5).")
    parser.add_argument("--seed", type=int, default=None,
                        help="Fold assignment seed (default: 42).")
    parser.add_argument("--idw-power", type=float, default=None,
                        help="IDW power parameter (default: 2).")
    return parser.parse_args(argv)


def build_config(args) -> PipelineConfig:
    """Start from --config (or defaults) and apply command-line overrides."""
    cfg = PipelineConfig.load(args.config) if args.config else PipelineConfig()

    overrides = {
        "input_dir": args.input_dir,
        "boundary_file": args.boundary,
        "points_file": args.points,
        "output_dir": args.output_dir,
        "target": args.target,
        "cell_size": args.cell_size,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(cfg, key, value)

    vc = cfg.variogram_config
    if args.model is not None:
        vc.model = args.model
    if args.sill is not None:
        vc.sill = args.sill
    if args.range is not None:
        vc.range = args.range
    if args.nugget is not None:
        vc.nugget = args.nugget
    # re-run validation after overrides
    vc.__post_init__()

    if args.folds is not None:
        cfg.cv_config.n_folds = args.folds
    if args.seed is not None:
        cfg.cv_config.random_seed = args.seed
    if args.idw_power is not None:
        cfg.idw_config.power = args.idw_power
    return cfg


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        cfg = build_config(args)
    except (ValueError, OSError) as e:
        print(f"✖ Invalid configuration: {e}", file=sys.stderr)
        return 2

    vc = cfg.variogram_config
    print("\nPipeline Configuration:")
    print(f"  Input dir    : {cfg.input_dir}")
    print(f"  Boundary     : {cfg.boundary_file or '(discover)'}")
    print(f"  Points       : {cfg.points_file or '(discover)'}")
    print(f"  Output dir   : {cfg.output_dir}")
    print(f"  Target       : {cfg.target}")
    print(f"  Cell size    : {cfg.cell_size}")
    print(f"  Variogram    : {vc.model} (sill={vc.sill if vc.sill is not None else 'var'}, "
          f"range={vc.range}, nugget={vc.nugget})")
    print(f"  Preference   : {' → '.join(vc.preference)}")
    print(f"  CV folds     : {cfg.cv_config.n_folds} (seed {cfg.cv_config.random_seed})")
    print(f"  IDW power    : {cfg.idw_config.power}")
    print()

    try:
        result = KrigingPipeline(cfg).run()
    except PipelineError as e:
        print(f"\n✖ {type(e).__name__}: {e}", file=sys.stderr)
        return 1

    if result.outputs:
        print(f"\nResults saved to: {cfg.output_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
