"""
tests/test_pipeline.py
======================
Unit tests for the geokrige modules.
Run with:  python -m pytest tests/ -v
"""

from __future__ import annotations

import sys
from pathlib import Path

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Polygon, box

# Ensure project root is importable
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

CRS = "EPSG:3857"


# ======================================================================== #
#  Helpers                                                                  #
# ======================================================================== #

def write_boundary(path: Path, geometry=None, crs: str = CRS) -> Path:
    """Write a single-feature boundary shapefile (default: 10 × 10 square)."""
    geometry = geometry if geometry is not None else box(0, 0, 10, 10)
    gpd.GeoDataFrame({"id": [1]}, geometry=[geometry], crs=crs).to_file(path)
    return path


def write_points(path: Path, df: pd.DataFrame, sep: str = "\t") -> Path:
    df.to_csv(path, sep=sep, index=False)
    return path


def random_points(n: int = 20, value=None, seed: int = 0, extent: float = 10.0) -> pd.DataFrame:
    """n distinct points strictly inside [0, extent]²; constant *value* if given."""
    rng = np.random.default_rng(seed)
    xy = rng.uniform(0.5, extent - 0.5, size=(n, 2))
    z = np.full(n, float(value)) if value is not None else rng.normal(10.0, 2.0, n)
    return pd.DataFrame({"X": xy[:, 0], "Y": xy[:, 1], "layer1": rng.normal(size=n), "layer5": z})


# ======================================================================== #
#  Config tests                                                             #
# ======================================================================== #

class TestConfig:
    def test_pipeline_config_roundtrip(self, tmp_path):
        from geokrige.config import PipelineConfig
        cfg = PipelineConfig(target="layer3", cell_size=5.0)
        cfg.variogram_config.range = 250.0
        cfg.cv_config.n_folds = 4
        path = tmp_path / "cfg.json"
        cfg.save(path)
        loaded = PipelineConfig.load(path)
        assert loaded.target == "layer3"
        assert loaded.cell_size == 5.0
        assert loaded.variogram_config.range == 250.0
        assert loaded.cv_config.n_folds == 4
        assert loaded.created_at == cfg.created_at

    def test_defaults(self):
        from geokrige.config import PipelineConfig
        cfg = PipelineConfig()
        assert cfg.target == "layer5"
        assert (cfg.x_col, cfg.y_col) == ("X", "Y")
        vc = cfg.variogram_config
        assert vc.model == "spherical"
        assert vc.sill is None
        assert vc.range == 400.0
        assert vc.nugget == 0.0
        assert vc.preference == ["cressie", "matheron"]
        assert cfg.cv_config.n_folds == 5
        assert cfg.idw_config.power == 2.0

    @pytest.mark.parametrize("kwargs", [
        {"model": "cubic"},
        {"range": 0.0},
        {"nugget": -1.0},
        {"sill": -0.5},
        {"preference": []},
        {"preference": ["cressie", "median"]},
    ])
    def test_variogram_config_validation(self, kwargs):
        from geokrige.config import VariogramConfig
        with pytest.raises(ValueError):
            VariogramConfig(**kwargs)

    def test_file_hash(self, tmp_path):
        from geokrige.config import file_hash
        f = tmp_path / "dummy.txt"
        f.write_text("hello")
        h = file_hash(f)
        assert isinstance(h, str) and len(h) == 64  # sha256 hex digest


# ======================================================================== #
#  Ingestion tests                                                          #
# ======================================================================== #

class TestIngestion:
    def test_missing_input_dir(self, tmp_path):
        from geokrige.ingestion import MissingInputError, find_input_files
        with pytest.raises(MissingInputError):
            find_input_files(tmp_path / "nope")

    def test_missing_point_table(self, tmp_path):
        from geokrige.ingestion import MissingInputError, find_input_files
        write_boundary(tmp_path / "area.shp")
        with pytest.raises(MissingInputError, match="point table"):
            find_input_files(tmp_path)

    def test_discovery(self, tmp_path):
        from geokrige.ingestion import find_input_files
        write_boundary(tmp_path / "area.shp")
        write_points(tmp_path / "obs.txt", random_points())
        boundary, points = find_input_files(tmp_path)
        assert Path(boundary).name == "area.shp"
        assert Path(points).name == "obs.txt"

    def test_explicit_path_must_exist(self, tmp_path):
        from geokrige.config import PipelineConfig
        from geokrige.ingestion import MissingInputError, resolve_input_files
        cfg = PipelineConfig(input_dir=str(tmp_path), points_file=str(tmp_path / "x.txt"))
        with pytest.raises(MissingInputError):
            resolve_input_files(cfg)

    def test_explicit_boundary_with_discovered_points(self, tmp_path):
        from geokrige.config import PipelineConfig
        from geokrige.ingestion import resolve_input_files
        data = tmp_path / "data"
        data.mkdir()
        write_points(data / "obs.txt", random_points())
        shp = write_boundary(tmp_path / "elsewhere.shp")
        cfg = PipelineConfig(input_dir=str(data), boundary_file=str(shp))
        boundary, points = resolve_input_files(cfg)
        assert boundary == str(shp)
        assert Path(points).name == "obs.txt"

    def test_missing_boundary_file(self, tmp_path):
        from geokrige.ingestion import MissingInputError, load_boundary
        with pytest.raises(MissingInputError):
            load_boundary(tmp_path / "absent.shp")

    def test_missing_target_raises_schema_error(self, tmp_path):
        from geokrige.ingestion import SchemaError, load_points
        path = write_points(tmp_path / "obs.txt", random_points().drop(columns="layer5"))
        with pytest.raises(SchemaError, match="layer5"):
            load_points(path, CRS, target="layer5")

    def test_missing_coordinate_raises_schema_error(self, tmp_path):
        from geokrige.ingestion import SchemaError, load_points
        path = write_points(tmp_path / "obs.txt", random_points().drop(columns="X"))
        with pytest.raises(SchemaError):
            load_points(path, CRS, target="layer5")

    def test_whitespace_table(self, tmp_path):
        from geokrige.ingestion import load_points
        path = tmp_path / "obs.txt"
        path.write_text("X   Y  layer5\n1.0 2.0 3.5\n4.0  5.0 6.5\n7.0 8.0 9.5\n")
        points = load_points(path, CRS, target="layer5")
        assert list(points["layer5"]) == [3.5, 6.5, 9.5]
        assert points.geometry.x.tolist() == [1.0, 4.0, 7.0]

    def test_points_take_boundary_crs(self, tmp_path):
        from geokrige.ingestion import load_points
        path = write_points(tmp_path / "obs.csv", random_points(), sep=",")
        points = load_points(path, CRS, target="layer5")
        assert points.crs == CRS
        assert len(points) == 20

    def test_points_are_reprojected(self, tmp_path):
        from geokrige.ingestion import load_points
        df = pd.DataFrame({"X": [0.0, 1.0], "Y": [0.0, 0.0], "layer5": [1.0, 2.0]})
        path = write_points(tmp_path / "obs.txt", df)
        points = load_points(path, CRS, target="layer5", points_crs="EPSG:4326")
        assert points.crs == CRS
        assert points["X"].iloc[1] == pytest.approx(111319.49, rel=1e-4)

    def test_incomplete_rows_dropped(self, tmp_path):
        from geokrige.ingestion import load_points
        df = random_points(5)
        df.loc[2, "layer5"] = np.nan
        path = write_points(tmp_path / "obs.txt", df)
        with pytest.warns(UserWarning, match="Dropping 1"):
            points = load_points(path, CRS, target="layer5")
        assert len(points) == 4

    def test_describe_target(self):
        from geokrige.ingestion import describe_target
        stats = describe_target(pd.DataFrame({"v": [1.0, 2.0, 3.0, 4.0]}), "v")
        assert stats["n"] == 4
        assert stats["mean"] == 2.5
        assert stats["variance"] == pytest.approx(5.0 / 3.0)


# ======================================================================== #
#  Grid tests                                                               #
# ======================================================================== #

class TestGrid:
    @pytest.fixture
    def square(self):
        return gpd.GeoDataFrame(geometry=[box(0, 0, 10, 10)], crs=CRS)

    def test_square_lattice(self, square):
        from geokrige.grid import build_grid
        grid = build_grid(square, cell_size=1.0)
        assert len(grid) == 100
        assert grid.shape == (10, 10)
        x, y = grid.coords()
        assert (x[0], y[0]) == (1.0, 1.0)
        assert (x.max(), y.max()) == (10.0, 10.0)
        assert grid.crs == CRS

    def test_determinism(self, square):
        from geokrige.grid import build_grid
        a = build_grid(square, cell_size=1.0)
        b = build_grid(square, cell_size=1.0)
        pd.testing.assert_frame_equal(a.cells, b.cells)

    def test_cells_inside_concave_boundary(self):
        from geokrige.grid import build_grid
        ell = Polygon([(0, 0), (10, 0), (10, 5), (5, 5), (5, 10), (0, 10)])
        grid = build_grid(gpd.GeoDataFrame(geometry=[ell], crs=CRS), cell_size=1.0)
        x, y = grid.coords()
        assert len(grid) == 75
        assert np.all((x <= 5) | (y <= 5))

    def test_to_array_is_north_up(self):
        from geokrige.grid import build_grid
        ell = Polygon([(0, 0), (10, 0), (10, 5), (5, 5), (5, 10), (0, 10)])
        grid = build_grid(gpd.GeoDataFrame(geometry=[ell], crs=CRS), cell_size=1.0)
        _, y = grid.coords()
        arr = grid.to_array(y)
        assert arr.shape == (10, 10)
        assert arr[0, 0] == 10.0       # north-west corner
        assert arr[-1, 0] == 1.0       # south-west corner
        assert np.isnan(arr[0, -1])    # outside the L
        assert np.isfinite(arr).sum() == 75

    def test_transform_centres_pixels_on_lattice(self, square):
        from geokrige.grid import build_grid
        grid = build_grid(square, cell_size=1.0)
        assert grid.transform() * (0.5, 0.5) == (1.0, 10.0)

    def test_bad_cell_size(self, square):
        from geokrige.config import PipelineError
        from geokrige.grid import GridError, build_grid
        with pytest.raises(GridError):
            build_grid(square, cell_size=0.0)
        with pytest.raises(PipelineError):
            build_grid(square, cell_size=50.0)


# ======================================================================== #
#  Variogram tests                                                          #
# ======================================================================== #

class TestVariogram:
    @pytest.fixture
    def line(self):
        """Three collinear points: pairs at distance 1, 1 and 2."""
        coords = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0]])
        values = np.array([1.0, 2.0, 4.0])
        return coords, values

    def test_matheron_known_values(self, line):
        from geokrige.variogram import empirical_variogram
        ev = empirical_variogram(*line, estimator="matheron", cutoff=2.0, n_lags=2)
        np.testing.assert_allclose(ev.lag, [1.0, 2.0])
        np.testing.assert_allclose(ev.gamma, [(1 + 4) / 4, 9 / 2])
        assert ev.n_pairs.tolist() == [2, 1]

    def test_pairwise_known_values(self, line):
        from geokrige.variogram import empirical_variogram
        ev = empirical_variogram(*line, estimator="pairwise", cutoff=2.0, n_lags=2)
        # (1-2)²/1.5² , (2-4)²/3² , (1-4)²/2.5²
        expected = [(1 / 2.25 + 4 / 9) / 4, (9 / 6.25) / 2]
        np.testing.assert_allclose(ev.gamma, expected)

    def test_cressie_known_values(self, line):
        from geokrige.variogram import empirical_variogram
        ev = empirical_variogram(*line, estimator="cressie", cutoff=2.0, n_lags=2)
        # single pair at lag 2 with |diff| = 3
        assert ev.gamma[1] == pytest.approx(9.0 / (2 * (0.457 + 0.494 + 0.045)))

    def test_empty_bins_dropped(self, line):
        from geokrige.variogram import empirical_variogram
        ev = empirical_variogram(*line, estimator="matheron", cutoff=2.0, n_lags=8)
        assert len(ev.lag) == 2
        assert np.all(ev.n_pairs > 0)

    def test_fewer_than_three_locations(self):
        from geokrige.variogram import VariogramFitError, empirical_variogram
        coords = np.array([[0.0, 0.0], [0.0, 0.0], [1.0, 1.0]])
        with pytest.raises(VariogramFitError, match="distinct"):
            empirical_variogram(coords, np.array([1.0, 2.0, 3.0]))

    def test_fit_recovers_spherical(self):
        from pykrige.variogram_models import spherical_variogram_model
        from geokrige.variogram import EmpiricalVariogram, fit_variogram
        lag = np.linspace(10.0, 300.0, 15)
        gamma = spherical_variogram_model([2.0, 200.0, 0.5], lag)
        ev = EmpiricalVariogram("cressie", lag, gamma, np.full(15, 50), 300.0)
        fit = fit_variogram(ev, model="spherical", sill=1.0, range=400.0, nugget=0.0)
        assert fit.has_sill
        m = fit.model
        assert m.model == "spherical"
        assert m.estimator == "cressie"
        assert m.psill == pytest.approx(2.0, rel=0.05)
        assert m.range == pytest.approx(200.0, rel=0.05)
        assert m.nugget == pytest.approx(0.5, abs=0.05)
        assert m.sill == pytest.approx(m.psill + m.nugget)

    def test_fit_with_too_few_bins_fails_softly(self):
        from geokrige.variogram import EmpiricalVariogram, fit_variogram
        ev = EmpiricalVariogram("cressie", np.array([1.0, 2.0]), np.array([0.5, 1.0]),
                                np.array([3, 3]), 2.0)
        fit = fit_variogram(ev)
        assert not fit.has_sill
        assert "lag bin" in fit.error

    def test_selection_prefers_cressie(self):
        from geokrige.variogram import VariogramFit, VariogramModel, select_model
        ev = _dummy_empirical()
        fits = {
            "cressie": VariogramFit(ev, model=VariogramModel("spherical", 1.0, 10.0, 0.0, "cressie")),
            "matheron": VariogramFit(ev, model=VariogramModel("spherical", 2.0, 10.0, 0.0, "matheron")),
        }
        assert select_model(fits).estimator == "cressie"

    def test_selection_falls_back_to_matheron(self):
        from geokrige.variogram import VariogramFit, VariogramModel, select_model
        ev = _dummy_empirical()
        fits = {
            "cressie": VariogramFit(ev, error="least-squares fit failed"),
            "matheron": VariogramFit(ev, model=VariogramModel("spherical", 2.0, 10.0, 0.0, "matheron")),
        }
        with pytest.warns(UserWarning, match="matheron"):
            chosen = select_model(fits, ["cressie", "matheron"])
        assert chosen.estimator == "matheron"

    def test_selection_total_failure(self):
        from geokrige.variogram import VariogramFit, VariogramFitError, select_model
        ev = _dummy_empirical()
        fits = {
            "cressie": VariogramFit(ev, error="boom"),
            "matheron": VariogramFit(ev, error="bang"),
        }
        with pytest.raises(VariogramFitError, match="cressie: boom"):
            select_model(fits)

    def test_zero_sill_fit_falls_back_to_matheron(self):
        from geokrige.variogram import VariogramFit, VariogramModel, select_model
        ev = _dummy_empirical()
        fits = {
            "cressie": VariogramFit(ev, model=VariogramModel("spherical", 0.0, 10.0, 0.0, "cressie")),
            "matheron": VariogramFit(ev, model=VariogramModel("spherical", 1.0, 10.0, 0.0, "matheron")),
        }
        assert not fits["cressie"].has_sill
        with pytest.warns(UserWarning, match="non-positive sill"):
            chosen = select_model(fits, ["cressie", "matheron"])
        assert chosen.estimator == "matheron"
        assert chosen.sill == 1.0

    def test_zero_sill_kept_for_flat_variogram(self):
        from geokrige.variogram import EmpiricalVariogram, VariogramFit, VariogramModel, select_model
        flat = EmpiricalVariogram("cressie", np.array([1.0, 2.0]), np.zeros(2), np.array([4, 4]), 2.0)
        fit = VariogramFit(flat, model=VariogramModel("spherical", 0.0, 10.0, 0.0, "cressie"))
        assert fit.has_sill
        assert select_model({"cressie": fit}, ["cressie"]).sill == 0.0

    def test_fit_variograms_stage(self):
        from geokrige.config import VariogramConfig
        from geokrige.variogram import fit_variograms
        pts = random_points(60, seed=3, extent=1000.0)
        empiricals, fits, chosen = fit_variograms(pts, "layer5", VariogramConfig())
        assert set(empiricals) == {"matheron", "pairwise", "cressie"}
        assert set(fits) == set(empiricals)
        assert chosen.estimator in ("cressie", "matheron")
        assert chosen.model == "spherical"


def _dummy_empirical():
    from geokrige.variogram import EmpiricalVariogram
    return EmpiricalVariogram("x", np.array([1.0]), np.array([1.0]), np.array([1]), 1.0)


# ======================================================================== #
#  Interpolation tests                                                      #
# ======================================================================== #

class TestInterpolation:
    @pytest.fixture
    def obs(self):
        rng = np.random.default_rng(7)
        x, y = rng.uniform(0, 100, (2, 15))
        z = rng.normal(5.0, 1.0, 15)
        return x, y, z

    @pytest.fixture
    def model(self):
        from geokrige.variogram import VariogramModel
        return VariogramModel("spherical", psill=1.0, range=50.0, nugget=0.0)

    def test_kriging_exact_at_observations(self, obs, model):
        from geokrige.interpolation import ordinary_kriging
        x, y, z = obs
        pred, var = ordinary_kriging(x, y, z, model, x, y)
        np.testing.assert_allclose(pred, z, atol=1e-6)
        np.testing.assert_allclose(var, 0.0, atol=1e-6)

    def test_kriging_variance_non_negative(self, obs, model):
        from geokrige.interpolation import ordinary_kriging
        x, y, z = obs
        gx, gy = np.meshgrid(np.linspace(0, 100, 7), np.linspace(0, 100, 7))
        pred, var = ordinary_kriging(x, y, z, model, gx.ravel(), gy.ravel())
        assert pred.shape == (49,)
        assert np.all(var >= 0)

    def test_kriging_constant_field(self, model):
        from geokrige.interpolation import ordinary_kriging
        pred, var = ordinary_kriging([0, 1, 2], [0, 1, 0], [3.0, 3.0, 3.0], model, [0.5, 9.0], [0.5, 9.0])
        np.testing.assert_array_equal(pred, [3.0, 3.0])
        np.testing.assert_array_equal(var, [0.0, 0.0])

    def test_kriging_rejects_zero_sill(self, obs):
        from geokrige.interpolation import ordinary_kriging
        from geokrige.variogram import VariogramFitError, VariogramModel
        x, y, z = obs
        flat = VariogramModel("spherical", psill=0.0, range=50.0, nugget=0.0)
        with pytest.raises(VariogramFitError):
            ordinary_kriging(x, y, z, flat, x[:2], y[:2])

    def test_idw_within_observed_range(self, obs):
        from geokrige.interpolation import idw
        x, y, z = obs
        gx, gy = np.meshgrid(np.linspace(-20, 120, 15), np.linspace(-20, 120, 15))
        pred = idw(x, y, z, gx.ravel(), gy.ravel())
        assert np.all(pred >= z.min() - 1e-12)
        assert np.all(pred <= z.max() + 1e-12)

    def test_idw_exact_at_observations(self, obs):
        from geokrige.interpolation import idw
        x, y, z = obs
        np.testing.assert_allclose(idw(x, y, z, x, y), z)

    def test_idw_known_weights(self):
        from geokrige.interpolation import idw
        # weights 1/0.5² = 4 and 1/1.5² = 4/9
        pred = idw([0.0, 2.0], [0.0, 0.0], [1.0, 3.0], [0.5, 1.0], [0.0, 0.0])
        np.testing.assert_allclose(pred, [1.2, 2.0])

    def test_idw_nearest_neighbour(self):
        from geokrige.interpolation import idw
        pred = idw([0.0, 2.0, 10.0], [0.0, 0.0, 0.0], [1.0, 3.0, 9.0], [1.8], [0.0], max_neighbors=1)
        assert pred[0] == pytest.approx(3.0)

    def test_idw_coincident_observations(self):
        from geokrige.interpolation import idw
        pred = idw([0.0, 0.0, 5.0], [0.0, 0.0, 5.0], [2.0, 4.0, 10.0], [0.0], [0.0])
        assert pred[0] == 3.0

    def test_idw_rejects_bad_power(self, obs):
        from geokrige.interpolation import idw
        x, y, z = obs
        with pytest.raises(ValueError):
            idw(x, y, z, x, y, power=0)

    def test_surfaces_cover_grid(self, obs, model):
        from geokrige.grid import build_grid
        from geokrige.interpolation import idw_surface, krige_surface
        x, y, z = obs
        pts = pd.DataFrame({"X": x, "Y": y, "v": z})
        grid = build_grid(gpd.GeoDataFrame(geometry=[box(0, 0, 100, 100)], crs=CRS), cell_size=10.0)
        krig = krige_surface(pts, "v", grid, model)
        inv = idw_surface(pts, "v", grid)
        assert len(krig.values) == len(grid) == len(inv.values)
        assert list(krig.to_frame().columns) == ["x", "y", "predicted", "variance"]
        assert list(inv.to_frame().columns) == ["x", "y", "predicted"]
        assert krig.to_dataarray().dtype == np.float32


# ======================================================================== #
#  Evaluation tests                                                         #
# ======================================================================== #

class TestEvaluation:
    def test_folds_partition_every_point_once(self):
        from geokrige.evaluation import make_folds
        folds = make_folds(23, n_folds=5, random_seed=1)
        assert folds.shape == (23,)
        assert set(folds) == {0, 1, 2, 3, 4}
        assert sorted(np.bincount(folds)) == [4, 4, 5, 5, 5]

    def test_folds_reproducible(self):
        from geokrige.evaluation import make_folds
        np.testing.assert_array_equal(make_folds(30, 5, 42), make_folds(30, 5, 42))

    def test_folds_clipped_to_n(self):
        from geokrige.evaluation import make_folds
        folds = make_folds(3, n_folds=5)
        assert sorted(folds) == [0, 1, 2]

    def test_folds_validation(self):
        from geokrige.evaluation import make_folds
        with pytest.raises(ValueError):
            make_folds(10, n_folds=1)
        with pytest.raises(ValueError):
            make_folds(1, n_folds=5)

    def test_cross_validate_records(self):
        from geokrige.evaluation import cross_validate
        from geokrige.variogram import VariogramModel
        pts = random_points(25, seed=5)
        model = VariogramModel("spherical", psill=4.0, range=5.0, nugget=0.1)
        records = cross_validate(pts, "layer5", model, n_folds=5)
        assert len(records) == 25
        assert set(records["fold"]) == {0, 1, 2, 3, 4}
        assert records["predicted"].notna().all()
        np.testing.assert_allclose(records["observed"], pts["layer5"])
        np.testing.assert_allclose(records["residual"], records["observed"] - records["predicted"])

    def test_metrics_exact(self):
        from geokrige.evaluation import compute_metrics
        records = pd.DataFrame({
            "observed": [1.0, 2.0, 3.0, 4.0],
            "predicted": [1.5, 2.0, 2.0, 5.0],
            "residual": [-0.5, 0.0, 1.0, -1.0],
            "zscore": [-0.5, 0.0, 1.0, -1.0],
        })
        m = compute_metrics(records)
        assert m["n"] == 4
        assert m["me"] == pytest.approx(-0.125)
        assert m["rmse"] == pytest.approx(0.75)
        assert m["mae"] == pytest.approx(0.625)
        assert m["msdr"] == pytest.approx(0.5625)

    def test_r2_undefined_for_constant(self):
        from geokrige.evaluation import compute_metrics
        records = pd.DataFrame({
            "observed": [2.0, 2.0], "predicted": [2.0, 2.0],
            "residual": [0.0, 0.0], "zscore": [np.nan, np.nan],
        })
        m = compute_metrics(records)
        assert np.isnan(m["r2"])
        assert np.isnan(m["msdr"])
        assert m["rmse"] == 0.0

    def test_report_lists_rmse_and_me(self):
        from geokrige.evaluation import format_report
        text = format_report({"n": 4, "me": 0.1, "rmse": 0.2, "mae": 0.3, "msdr": 1.0, "r2": 0.9})
        assert "RMSE" in text and "ME" in text


# ======================================================================== #
#  Export tests                                                             #
# ======================================================================== #

class TestExport:
    @pytest.fixture
    def surface(self):
        from geokrige.grid import build_grid
        from geokrige.interpolation import PredictionSurface
        grid = build_grid(gpd.GeoDataFrame(geometry=[box(0, 0, 4, 4)], crs=CRS), cell_size=1.0)
        _, y = grid.coords()
        return PredictionSurface("krig", grid, values=y.astype(float), variance=np.zeros(len(grid)))

    def test_output_names(self, tmp_path):
        from geokrige.export import output_paths
        paths = output_paths(tmp_path, "layer5")
        assert paths["krig_table"].name == "kriged_layer5.txt"
        assert paths["idw_table"].name == "idw_layer5.txt"
        assert paths["krig_raster"].name == "layer5_krig.tif"
        assert paths["idw_raster"].name == "layer5_idw.tif"

    def test_table_is_tab_delimited(self, tmp_path, surface):
        from geokrige.export import write_surface_table
        path = write_surface_table(surface, tmp_path / "kriged_v.txt")
        df = pd.read_csv(path, sep="\t")
        assert list(df.columns) == ["x", "y", "predicted", "variance"]
        assert len(df) == 16

    def test_raster_roundtrip(self, tmp_path, surface):
        import rasterio
        from geokrige.export import write_surface_raster
        path = write_surface_raster(surface, tmp_path / "v_krig.tif")
        with rasterio.open(path) as src:
            band = src.read(1)
            assert src.count == 1
            assert band.dtype == np.float32
            assert band.shape == (4, 4)
            assert src.transform == surface.grid.transform()
            assert src.crs == CRS
            assert np.isnan(src.nodata)
        assert band[0, 0] == 4.0
        assert band[-1, 0] == 1.0

    def test_overwrite_leaves_no_temp_files(self, tmp_path, surface):
        from geokrige.export import write_surface_raster
        write_surface_raster(surface, tmp_path / "v_krig.tif")
        write_surface_raster(surface, tmp_path / "v_krig.tif")
        assert [p.name for p in tmp_path.iterdir()] == ["v_krig.tif"]

    def test_missing_directory_raises(self, tmp_path, surface):
        from geokrige.export import RasterWriteError, write_surface_raster
        target = tmp_path / "missing" / "v_krig.tif"
        with pytest.raises(RasterWriteError):
            write_surface_raster(surface, target)
        assert not target.parent.exists()

    def test_results_dir_below_a_file_raises(self, tmp_path):
        from geokrige.export import ExportError, prepare_output_dir
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(ExportError):
            prepare_output_dir(blocker / "results")

    def test_metadata_serialises_nan(self, tmp_path):
        import json
        from geokrige.config import PipelineConfig
        from geokrige.export import save_run_metadata
        from geokrige.variogram import VariogramModel
        model = VariogramModel("spherical", 1.0, 10.0, 0.0, "cressie")
        path = save_run_metadata(tmp_path / "run_metadata.json", PipelineConfig(), model,
                                 fits={}, metrics={"rmse": 0.0, "r2": float("nan")})
        meta = json.loads(Path(path).read_text())
        assert meta["cv_metrics"]["r2"] is None
        assert meta["chosen_model"]["estimator"] == "cressie"


# ======================================================================== #
#  End-to-end tests                                                         #
# ======================================================================== #

class TestEndToEnd:
    @pytest.fixture
    def inputs(self, tmp_path):
        data = tmp_path / "data"
        data.mkdir()
        write_boundary(data / "area.shp")
        return data

    def _config(self, inputs, tmp_path):
        from geokrige.config import PipelineConfig
        return PipelineConfig(input_dir=str(inputs), output_dir=str(tmp_path / "results"))

    def test_constant_field(self, inputs, tmp_path):
        from geokrige.runner import KrigingPipeline
        v = 7.5
        write_points(inputs / "points.txt", random_points(20, value=v, seed=11))
        cfg = self._config(inputs, tmp_path)

        rng_state = np.random.get_state()[1].copy()
        result = KrigingPipeline(cfg).run()
        np.testing.assert_array_equal(np.random.get_state()[1], rng_state)

        out = Path(cfg.output_dir)
        for name in ("kriged_layer5.txt", "idw_layer5.txt", "layer5_krig.tif", "layer5_idw.tif"):
            assert (out / name).exists(), name
        for name in ("kriged_layer5.txt", "idw_layer5.txt"):
            df = pd.read_csv(out / name, sep="\t")
            assert len(df) == 100
            np.testing.assert_allclose(df["predicted"], v)
        assert result.metrics["rmse"] == pytest.approx(0.0, abs=1e-9)
        assert result.metrics["me"] == pytest.approx(0.0, abs=1e-9)

    def test_random_field_outputs(self, inputs, tmp_path):
        import rasterio
        from geokrige.runner import KrigingPipeline
        write_points(inputs / "points.txt", random_points(40, seed=2))
        cfg = self._config(inputs, tmp_path)
        result = KrigingPipeline(cfg).run()
        assert result.model.estimator in ("cressie", "matheron")
        assert len(result.cv_records) == 40
        with rasterio.open(Path(cfg.output_dir) / "layer5_idw.tif") as src:
            band = src.read(1)
        obs = result.points["layer5"]
        assert np.nanmin(band) >= obs.min() - 1e-4
        assert np.nanmax(band) <= obs.max() + 1e-4

    def test_missing_target_fails_before_interpolation(self, inputs, tmp_path, monkeypatch):
        from geokrige import runner
        from geokrige.ingestion import SchemaError

        def boom(*args, **kwargs):
            raise AssertionError("interpolation must not run")

        monkeypatch.setattr(runner, "krige_surface", boom)
        monkeypatch.setattr(runner, "idw_surface", boom)
        write_points(inputs / "points.txt", random_points().drop(columns="layer5"))
        cfg = self._config(inputs, tmp_path)
        with pytest.raises(SchemaError):
            runner.KrigingPipeline(cfg).run()
        assert not Path(cfg.output_dir).exists()

    def test_degenerate_locations(self, inputs, tmp_path):
        from geokrige.runner import KrigingPipeline
        from geokrige.variogram import VariogramFitError
        df = pd.DataFrame({"X": [2.0, 2.0, 5.0], "Y": [2.0, 2.0, 5.0], "layer5": [1.0, 2.0, 3.0]})
        write_points(inputs / "points.txt", df)
        cfg = self._config(inputs, tmp_path)
        with pytest.raises(VariogramFitError):
            KrigingPipeline(cfg).run()
        assert not Path(cfg.output_dir).exists()

    def test_cli(self, inputs, tmp_path):
        from run_pipeline import main
        write_points(inputs / "points.txt", random_points(20, value=3.0, seed=4))
        out = tmp_path / "cli_results"
        assert main(["--input-dir", str(inputs), "--output-dir", str(out)]) == 0
        assert (out / "layer5_krig.tif").exists()
        assert main(["--input-dir", str(inputs), "--output-dir", str(out), "--target", "nope"]) == 1

    def test_failed_raster_write_leaves_no_outputs(self, inputs, tmp_path, monkeypatch):
        from geokrige import runner
        from geokrige.export import RasterWriteError

        def fail(*args, **kwargs):
            raise RasterWriteError("disk full")

        monkeypatch.setattr(runner, "write_surface_raster", fail)
        write_points(inputs / "points.txt", random_points(20, value=1.0, seed=8))
        cfg = self._config(inputs, tmp_path)
        with pytest.raises(RasterWriteError):
            runner.KrigingPipeline(cfg).run()
        assert list(Path(cfg.output_dir).iterdir()) == []

    def test_cli_unwritable_output_dir(self, inputs, tmp_path):
        from run_pipeline import main
        write_points(inputs / "points.txt", random_points(20, seed=6))
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        assert main(["--input-dir", str(inputs), "--output-dir", str(blocker / "results")]) == 1
        assert blocker.is_file()

    def test_cli_missing_config_file(self, tmp_path):
        from run_pipeline import main
        assert main(["--config", str(tmp_path / "absent.json")]) == 2
