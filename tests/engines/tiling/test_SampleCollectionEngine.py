import pytest
import pathlib
import numpy as np
import geopandas as gpd
import shapely

GEDI_ESTIMATION_MODULE = pathlib.Path(__file__).parents[3] / 'src'

import sys
sys.path.append(str(GEDI_ESTIMATION_MODULE))


from gedi_estimation.engines.tiling.SampleCollectionEngine import SampleCollectionEngine


@pytest.fixture
def victim():
    engine = SampleCollectionEngine('local')
    engine.drawing_count = 3
    engine.drawing_size = 4
    engine.ablation_min_count = 10
    engine.ablation_tile_count = 2
    return engine


@pytest.fixture
def samples():
    rng = np.random.default_rng(4)
    x = rng.uniform(0, 90, 60)
    y = rng.uniform(0, 90, 60)
    return gpd.GeoDataFrame({'Tile_ID': np.repeat([1, 2], 30), 'Sample_ID': rng.permutation(60) + 1, 'rh98': rng.random(60)},
                            geometry=[shapely.Point(px, py) for px, py in zip(x, y)], crs=5070)


def test_collect_gridcell_samples(victim, samples):
    selected_cells = gpd.GeoDataFrame({'Tile_ID': [1, 2]}, geometry=[shapely.box(0, 0, 90, 90), shapely.box(0, 0, 45, 45)], crs=5070)
    result = victim.collect_gridcell_samples(samples, selected_cells, limit=5)
    tile_1 = result[result['Tile_ID'] == 1]
    assert len(tile_1) == 5
    assert list(tile_1['Sample_ID']) == sorted(samples[samples['Tile_ID'] == 1]['Sample_ID'])[:5]
    tile_2 = result[result['Tile_ID'] == 2]
    assert len(tile_2) <= 5
    assert tile_2.geometry.within(shapely.box(0, 0, 45, 45)).all()
    assert 'index_right' not in result.columns


def test_collect_tile_samples(victim, samples):
    result = victim.collect_tile_samples(samples, 2, limit=4)
    assert list(result['Sample_ID']) == sorted(samples[samples['Tile_ID'] == 2]['Sample_ID'])[:4]


def test_select_ablation_tiles(victim):
    selected_tiles = gpd.GeoDataFrame(
        {'Tile_ID': [1, 2, 3, 4], 'Sample_Count': [50, 40, 30, 5]},
        geometry=[shapely.box(0, 0, 60, 60), shapely.box(30, 0, 90, 60), shapely.box(60, 0, 120, 60), shapely.box(120, 0, 180, 60)],
        crs=5070
    )
    result = victim.select_ablation_tiles(selected_tiles)
    # tile 2 overlaps tile 1, tile 3 only touches it, tile 4 is too sparse
    assert list(result['Tile_ID']) == [1, 3]


def test_draw_and_split_samples(victim, samples):
    drawn = victim.draw_samples(samples, [1, 2])
    assert len(drawn) == 24
    assert drawn.groupby(['Tile_ID', 'Drawing_ID']).size().eq(4).all()
    assert not drawn.duplicated(subset=['Tile_ID', 'Sample_ID']).any()

    split = victim.split_drawings(drawn)
    assert set(split['Category']) <= {0, 1}
    assert (split.loc[split['Category'] == 1, 'Split_OneTile'] < victim.training_ratio).all()
    again = victim.split_drawings(drawn.iloc[::-1])
    merged = split.merge(again, on=['Tile_ID', 'Sample_ID'], suffixes=('', '_again'))
    assert np.array_equal(merged['Split_OneTile'], merged['Split_OneTile_again'])
