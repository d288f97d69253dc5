import pytest
import pathlib
import numpy as np
import xarray as xr
import rioxarray

GEDI_ESTIMATION_MODULE = pathlib.Path(__file__).parents[2] / 'src'

import sys
sys.path.append(str(GEDI_ESTIMATION_MODULE))


from gedi_estimation.helpers import rasters


def make_raster(values, xmin=0.0, ymax=150.0, size=30.0):
    values = np.asarray(values, dtype=float)
    height, width = values.shape
    x = xmin + size * (np.arange(width) + 0.5)
    y = ymax - size * (np.arange(height) + 0.5)
    return xr.DataArray(values, coords={'y': y, 'x': x}, dims=('y', 'x')).rio.write_crs(5070)


@pytest.fixture
def victim():
    return rasters


def test_distance_to_point(victim):
    template = make_raster(np.zeros((5, 5)))
    result = victim.distance_to_point(template, 75.0, 75.0)
    assert result[2, 2] == 0
    assert result[2, 4] == pytest.approx(2)
    assert result[0, 0] == pytest.approx(np.sqrt(8))


def test_distance_to_point_outside_window(victim):
    template = make_raster(np.zeros((3, 3)))
    result = victim.distance_to_point(template, 75.0, 15.0)
    assert result.shape == (3, 3)
    assert result[2, 2] == pytest.approx(2)
    assert result[0, 0] == pytest.approx(np.sqrt(20))


def test_block_reduce(victim):
    values = np.array([[1, 1, 2, 2],
                       [1, 3, 2, 2],
                       [4, 4, 5, 6],
                       [4, 5, 6, 6]])
    stack = xr.Dataset({'LandCover_ESRI': make_raster(values), 'Elevation': make_raster(values)}).rio.write_crs(5070)
    result = victim.block_reduce(stack, 2, ['LandCover_ESRI'])
    assert result['LandCover_ESRI'].values.tolist() == [[1, 2], [4, 6]]
    assert result['Elevation'].values[0, 0] == pytest.approx(1.5)
    assert victim.block_reduce(stack, 1, []) is stack


def test_window_offsets(victim):
    domain = make_raster(np.zeros((10, 10)), xmin=0.0, ymax=300.0)
    fragment = make_raster(np.zeros((3, 3)), xmin=60.0, ymax=210.0)
    assert victim.window_offsets(domain, fragment) == (3, 2)


def test_write_raster(victim, tmp_path):
    raster = make_raster(np.array([[1.0, np.nan], [3.0, 4.0]]))
    output_path = victim.write_raster(raster, tmp_path / 'nested' / 'raster.tif')
    written = rioxarray.open_rasterio(output_path, masked=True).squeeze('band', drop=True)
    assert np.isnan(written.values[0, 1])
    assert written.values[1, 1] == 4.0


def test_load_raster_stack_missing_layer(victim, tmp_path):
    with pytest.raises(FileNotFoundError):
        victim.load_raster_stack(tmp_path, ['Elevation'])
