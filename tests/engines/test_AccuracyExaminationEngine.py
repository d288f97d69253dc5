import os
import pytest
import pathlib
import numpy as np
import pandas as pd

GEDI_ESTIMATION_MODULE = pathlib.Path(__file__).parents[2] / 'src'

import sys
sys.path.append(str(GEDI_ESTIMATION_MODULE))


from gedi_estimation.engines.AccuracyExaminationEngine import AccuracyExaminationEngine


@pytest.fixture
def victim():
    return AccuracyExaminationEngine('local')


@pytest.fixture
def accuracy():
    return pd.DataFrame({
        'Tile_ID': [1, 2, 3, 4, 1, 2],
        'Response_Var': ['rh98'] * 4 + ['pai'] * 2,
        'RMSE': [1.0, 2.0, 3.0, np.nan, 0.5, 0.7],
        'R_squared': [0.6, 0.7, 0.8, np.nan, 0.2, np.nan]
    })


def test_merge_accuracy(victim, accuracy, tmp_path):
    rh98_folder = tmp_path / 'prediction' / 'rh98'
    pai_folder = tmp_path / 'prediction' / 'pai'
    rh98_folder.mkdir(parents=True)
    pai_folder.mkdir(parents=True)
    accuracy[accuracy['Response_Var'] == 'rh98'].to_parquet(rh98_folder / 'Accuracy_Tiles1to4.parquet')
    accuracy[accuracy['Response_Var'] == 'pai'].to_parquet(pai_folder / 'Accuracy_Tiles1to2.parquet')
    result = victim.merge_accuracy(tmp_path)
    assert len(result) == 6
    assert not result.duplicated(subset=['Tile_ID', 'Response_Var']).any()


def test_merge_accuracy_missing(victim, tmp_path):
    with pytest.raises(FileNotFoundError):
        victim.merge_accuracy(tmp_path)


def test_summarize(victim, accuracy):
    result = victim.summarize(accuracy).set_index('Response_Var')
    assert result.loc['rh98', 'Tile_Count'] == 4
    assert result.loc['rh98', 'R_squared_Count'] == 3
    assert result.loc['rh98', 'R_squared_Median'] == pytest.approx(0.7)
    assert result.loc['rh98', 'RMSE_P_Lower'] == pytest.approx(1.1)
    assert result.loc['pai', 'R_squared_Median'] == pytest.approx(0.2)


def test_get_well_modeled(victim, accuracy):
    assert victim.get_well_modeled(victim.summarize(accuracy)) == ['rh98']


def test_merge_accuracy_selected_tiles(victim, tmp_path):
    folder = tmp_path / 'prediction' / 'rh98'
    folder.mkdir(parents=True)
    pd.DataFrame({'Tile_ID': [7], 'Response_Var': ['rh98'], 'RMSE': [0.1], 'R_squared': [0.9]}).to_parquet(folder / 'Accuracy_Tiles7to7.parquet')
    pd.DataFrame({'Tile_ID': [1, 2], 'Response_Var': ['rh98'] * 2, 'RMSE': [1.0, 2.0], 'R_squared': [0.5, 0.4]}).to_parquet(folder / 'Accuracy_Tiles1to2.parquet')
    result = victim.merge_accuracy(tmp_path, {1, 2})
    assert list(result['Tile_ID']) == [1, 2]


def test_merge_accuracy_newest_wins(victim, tmp_path):
    folder = tmp_path / 'prediction' / 'rh98'
    folder.mkdir(parents=True)
    newer = folder / 'Accuracy_Tiles1to50.parquet'
    older = folder / 'Accuracy_Tiles100to149.parquet'
    pd.DataFrame({'Tile_ID': [1], 'Response_Var': ['rh98'], 'RMSE': [1.0], 'R_squared': [0.5]}).to_parquet(newer)
    pd.DataFrame({'Tile_ID': [1], 'Response_Var': ['rh98'], 'RMSE': [9.0], 'R_squared': [0.1]}).to_parquet(older)
    os.utime(older, (1000, 1000))
    os.utime(newer, (2000, 2000))
    result = victim.merge_accuracy(tmp_path)
    assert len(result) == 1
    assert result['RMSE'].iloc[0] == 1.0
