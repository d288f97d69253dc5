import pytest
import pathlib
import pandas as pd
import geopandas as gpd
import shapely

GEDI_ESTIMATION_MODULE = pathlib.Path(__file__).parents[3] / 'src'

import sys
sys.path.append(str(GEDI_ESTIMATION_MODULE))


from gedi_estimation.engines.tiling.TileSelectionEngine import TileSelectionEngine


@pytest.fixture
def victim():
    return TileSelectionEngine('local')


@pytest.fixture
def layout():
    grid_cells = gpd.GeoDataFrame({'Tile_ID': [1, 2]},
                                  geometry=[shapely.box(30, 30, 60, 60), shapely.box(60, 30, 90, 60)], crs=5070)
    tiles = gpd.GeoDataFrame({'Tile_ID': [1, 2, 3]},
                             geometry=[shapely.box(15, 15, 75, 75), shapely.box(45, 15, 105, 75), shapely.box(0, 0, 10, 10)], crs=5070)
    # tile 1: 4 samples, 3 inside its cell; tile 2: 4 samples, 1 inside its cell
    points = [(40, 40), (45, 45), (50, 50), (20, 20), (70, 40), (100, 20), (100, 70), (50, 70)]
    samples = gpd.GeoDataFrame({'Tile_ID': [1, 1, 1, 1, 2, 2, 2, 2], 'Sample_ID': range(1, 9)},
                               geometry=[shapely.Point(x, y) for x, y in points], crs=5070)
    return tiles, grid_cells, samples


def test_apply_thresholds(victim):
    counted = pd.DataFrame({'Tile_ID': [1, 2, 3], 'Sample_Count': [1000, 2000, 2000], 'SampleCount_Ratio': [0.5, 0.05, 0.2]})
    result = victim.apply_thresholds(counted)
    assert list(result['Tile_ID']) == [3]


def test_apply_thresholds_monotonic(victim):
    counted = pd.DataFrame({'Tile_ID': range(1, 7), 'Sample_Count': [100, 900, 1250, 1300, 5000, 20000],
                            'SampleCount_Ratio': [0.3, 0.1, 0.1, 0.09, 0.5, 0.12]})
    loose = set(victim.apply_thresholds(counted, 1000, 0.1)['Tile_ID'])
    strict = set(victim.apply_thresholds(counted, 1250, 0.1)['Tile_ID'])
    stricter = set(victim.apply_thresholds(counted, 1250, 0.2)['Tile_ID'])
    assert stricter <= strict <= loose


def test_attach_counts(victim, layout):
    tiles, grid_cells, samples = layout
    result = victim.attach_counts(grid_cells, samples).set_index('Tile_ID')
    assert result.loc[1, 'Sample_Count'] == 4
    assert result.loc[1, 'GridCell_SampleSize'] == 3
    assert result.loc[1, 'SampleCount_Ratio'] == pytest.approx(0.75)
    assert result.loc[2, 'SampleCount_Ratio'] == pytest.approx(0.25)


def test_select(victim, layout):
    tiles, grid_cells, samples = layout
    victim.min_sample_count = 4
    victim.min_ratio = 0.5
    selected_tiles, selected_cells = victim.select(tiles, grid_cells, samples)
    assert list(selected_tiles['Tile_ID']) == [1]
    assert list(selected_cells['Tile_ID']) == [1]
    assert selected_tiles['Sample_Count'].iloc[0] == 4
    assert selected_tiles.geometry.iloc[0].equals(tiles.geometry.iloc[0])


def test_summarize(victim):
    result = victim.summarize(pd.DataFrame({'Sample_Count': [1300, 1500, 2000]}))
    assert result['Tile_Count'] == 3
    assert result['Median'] == 1500
    assert result['Min'] == 1300
    assert result['Max'] == 2000
