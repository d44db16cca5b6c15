"""
geokrige: Point-to-surface geostatistical interpolation pipeline.

Flow:
  boundary + point table → prediction grid → empirical variograms
  → model fit & selection → kriging + IDW surfaces → k-fold CV → export

Modules
-------
config        : Configuration dataclasses, constants, reproducibility helpers
ingestion     : find_input_files, load_boundary, load_points
grid          : build_grid (regular lattice over the study area)
variogram     : Empirical estimators, model fitting, fallback selection
interpolation : Ordinary kriging and inverse-distance weighting surfaces
evaluation    : k-fold cross-validation and error metrics
export        : Tab-delimited tables, GeoTIFF rasters, run metadata
runner        : KrigingPipeline: runs every stage in order
"""

__version__ = "0.1.0"
