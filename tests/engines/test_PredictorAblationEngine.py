import pytest
import pathlib
import numpy as np
import pandas as pd

GEDI_ESTIMATION_MODULE = pathlib.Path(__file__).parents[2] / 'src'

import sys
sys.path.append(str(GEDI_ESTIMATION_MODULE))


from gedi_estimation.engines.PredictorAblationEngine import PredictorAblationEngine


@pytest.fixture
def victim():
    engine = PredictorAblationEngine('local')
    engine.number_of_trees = 10
    return engine


@pytest.fixture
def optima():
    return pd.DataFrame({
        'Response_Var': ['rh98'] * 3,
        'Round_ID': [3, 3, 3],
        'HP_Name': ['variablesPerSplit', 'minLeafPopulation', 'bagFraction'],
        'HP_Value': [2, 1, 0.6]
    })


@pytest.fixture
def drawings():
    rng = np.random.default_rng(8)
    frames = []
    for tile_id in [3, 7]:
        for drawing_id in [1, 2]:
            frame = pd.DataFrame({'Tile_ID': tile_id, 'Drawing_ID': drawing_id, 'Sample_ID': rng.permutation(40) + 1,
                                  'Elevation': rng.random(40), 'VV_median': rng.random(40), 'SLA': rng.random(40)})
            frame['rh98'] = 20 * frame['Elevation'] + rng.normal(0, 0.2, 40)
            frame['Category'] = np.where(np.arange(40) < 30, 1, 0)
            frames.append(frame)
    return pd.concat(frames, ignore_index=True)


def test_get_model_predictors(victim):
    result = victim.get_model_predictors(['Elevation', 'VV_median', 'SLA'])
    assert result['Complete'] == ['Elevation', 'VV_median', 'SLA']
    assert result['Topography'] == ['VV_median', 'SLA']
    assert 'Optical' not in result


def test_evaluate_drawings(victim, drawings, optima):
    result = victim.evaluate_drawings(drawings, optima, ['rh98'])
    assert len(result) == 16
    assert set(result['Model']) == {'Complete', 'Topography', 'Radar', 'LeafTraits'}

    again = victim.evaluate_drawings(drawings, optima, ['rh98'])
    assert np.allclose(again['RMSE'], result['RMSE'])


def test_compare_and_aggregate(victim, drawings, optima):
    comparisons = victim.compare_models(victim.evaluate_drawings(drawings, optima, ['rh98']))
    assert len(comparisons) == 12
    topography = comparisons[comparisons['Pred_Grp'] == 'Topography']
    assert (topography['d_R2'] > 0).all()

    aggregated = victim.aggregate(comparisons)
    assert len(aggregated) == 6
    assert aggregated['Drawing_Count'].eq(2).all()
    assert {'d_R2_Mean', 'd_R2_SD', 'd_RMSE_Mean', 'd_RMSE_SD'} <= set(aggregated.columns)


def test_compare_models_difference():
    results = pd.DataFrame({
        'Tile_ID': [1, 1], 'Drawing_ID': [1, 1], 'Response_Var': ['pai', 'pai'],
        'Model': ['Complete', 'Radar'], 'RMSE': [1.0, 1.5], 'R_squared': [0.7, 0.6]
    })
    result = PredictorAblationEngine('local').compare_models(results)
    assert result['d_R2'].iloc[0] == pytest.approx(0.1)
    assert result['d_RMSE'].iloc[0] == pytest.approx(-0.5)


def test_global_model(victim, drawings, optima):
    global_results = victim.evaluate_global_model(drawings, optima, ['rh98'])
    assert list(global_results['Drawing_ID']) == [1, 2]
    local_results = victim.evaluate_drawings(drawings, optima, ['rh98'])
    result = victim.compare_global_local(global_results, local_results)
    assert set(result['Model']) == {'Global', 'Local'}
