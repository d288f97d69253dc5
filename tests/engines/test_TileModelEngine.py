import pytest
import pathlib
import numpy as np
import pandas as pd
import xarray as xr
import shapely
import rioxarray

GEDI_ESTIMATION_MODULE = pathlib.Path(__file__).parents[2] / 'src'

import sys
sys.path.append(str(GEDI_ESTIMATION_MODULE))


from gedi_estimation.engines.TileModelEngine import TileModelEngine
from gedi_estimation.helpers.modeling import Hyperparameters, ResponseVariableContext


def make_layer(values, size=30.0):
    values = np.asarray(values, dtype=float)
    height, width = values.shape
    x = size * (np.arange(width) + 0.5)
    y = size * height - size * (np.arange(height) + 0.5)
    return xr.DataArray(values, coords={'y': y, 'x': x}, dims=('y', 'x')).rio.write_crs(5070)


@pytest.fixture
def victim():
    return TileModelEngine('local')


@pytest.fixture
def context():
    return ResponseVariableContext('rh98', 3, Hyperparameters(2, 1, 0.8, 10), ('Elevation', 'Slope'))


@pytest.fixture
def tile_samples():
    rng = np.random.default_rng(2)
    frame = pd.DataFrame({'Sample_ID': np.arange(1, 101), 'Tile_ID': 4, 'Elevation': rng.random(100), 'Slope': rng.random(100)})
    frame['rh98'] = 30 * frame['Elevation'] + rng.normal(0, 0.5, 100)
    return frame


@pytest.fixture
def stack():
    rng = np.random.default_rng(3)
    land_cover = np.full((6, 6), 2.0)
    land_cover[0, 0] = 1
    layers = {'Elevation': make_layer(rng.random((6, 6))), 'Slope': make_layer(rng.random((6, 6))),
              'LandCover_ESRI': make_layer(land_cover), 'LandCover_GLC': make_layer(np.full((6, 6), 30.0))}
    return xr.Dataset(layers).rio.write_crs(5070)


def test_get_batches(victim):
    victim.batch_size = 2
    assert victim.get_batches([5, 1, 3, 2, 4]) == [[1, 2], [3, 4], [5]]


def test_get_mask_layers(victim, context):
    assert victim.get_mask_layers(context) == ['LandCover_ESRI', 'LandCover_GLC']


def test_model_tile(victim, tile_samples, context):
    model, record = victim.model_tile(4, tile_samples, context)
    assert model is not None
    assert record['Training_Count'] + record['Testing_Count'] == 100
    assert record['R_squared'] > 0.5
    assert record['Var1_Name'] == 'Elevation'
    assert 'Var3_Name' not in record

    _, again = victim.model_tile(4, tile_samples.iloc[::-1], context)
    assert again['RMSE'] == record['RMSE']


def test_model_tile_too_few_samples(victim, tile_samples, context):
    model, record = victim.model_tile(4, tile_samples.head(1), context)
    assert model is None
    assert np.isnan(record['RMSE'])


def test_predict_fragment(victim, tile_samples, context, stack):
    model, _ = victim.model_tile(4, tile_samples, context)
    fragment = victim.predict_fragment(model, stack, context)
    assert fragment.shape == (6, 6)
    assert fragment.name == 'Est_rh98'
    assert np.isnan(fragment.values[0, 0])
    assert np.isfinite(fragment.values).sum() == 35


def test_process_tile(victim, tile_samples, context, stack, tmp_path):
    tile_geometry = shapely.box(0, 0, 90, 90)
    record = victim.process_tile(4, tile_geometry, 5070, tile_samples, context, stack, tmp_path)
    fragment_path = tmp_path / 'prediction' / 'rh98' / 'Est_rh98_4.tif'
    assert record['Fragment'] == str(fragment_path)
    written = rioxarray.open_rasterio(fragment_path, masked=True).squeeze('band', drop=True)
    assert written.shape == (3, 3)


def test_model_tile_constant_predictor(victim, tile_samples, context):
    tile_samples = tile_samples.assign(Slope=1.0)
    model, record = victim.model_tile(4, tile_samples, context)
    assert model is not None
    assert np.isfinite(record['RMSE'])
    assert record['Var2_Name'] == 'Slope'
    assert record['Var2_Importance'] == pytest.approx(0.0)


def test_process_tile_repeatable(victim, tile_samples, context, stack, tmp_path):
    tile_geometry = shapely.box(0, 0, 90, 90)
    first = victim.process_tile(4, tile_geometry, 5070, tile_samples, context, stack, tmp_path / 'first')
    second = victim.process_tile(4, tile_geometry, 5070, tile_samples.iloc[::-1], context, stack, tmp_path / 'second')
    assert first['R_squared'] == second['R_squared']
    assert first['RMSE'] == second['RMSE']
    first_fragment = rioxarray.open_rasterio(first['Fragment'], masked=True).values
    second_fragment = rioxarray.open_rasterio(second['Fragment'], masked=True).values
    assert np.array_equal(first_fragment, second_fragment, equal_nan=True)


def test_clear_prediction_folder(victim, tmp_path):
    response_folder = tmp_path / 'prediction' / 'rh98'
    response_folder.mkdir(parents=True)
    for name in ['Est_rh98_3.tif', 'Accuracy_Tiles1to50.parquet', 'notes.txt']:
        (response_folder / name).write_text('old run')
    result = victim.clear_prediction_folder(tmp_path, 'rh98')
    assert result == response_folder
    assert [path.name for path in response_folder.iterdir()] == ['notes.txt']
    assert victim.clear_prediction_folder(tmp_path, 'pai').exists()
