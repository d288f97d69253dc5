import pytest
import pathlib

GEDI_ESTIMATION_MODULE = pathlib.Path(__file__).parents[2] / 'src'

import sys
sys.path.append(str(GEDI_ESTIMATION_MODULE))


from gedi_estimation.helpers import predictors
from gedi_estimation.helpers.predictors import PredictorGroup


@pytest.fixture
def victim():
    return predictors


def test_predictor_counts(victim):
    assert len(victim.ALL_PREDICTORS) == 93
    assert len(set(victim.ALL_PREDICTORS)) == 93
    assert len(victim.RESPONSE_VARS) == 14
    assert len(victim.get_group_predictors(PredictorGroup.SOIL_PROPERTIES)) == 31
    assert len(victim.get_group_predictors(PredictorGroup.OPTICAL)) == 42


def test_get_group(victim):
    assert victim.get_group('VH_VV_ratio') == PredictorGroup.RADAR
    assert victim.get_group('LandCover_GLC') == PredictorGroup.LAND_COVER
    with pytest.raises(KeyError):
        victim.get_group('not_a_predictor')


def test_get_group_predictors(victim):
    result = victim.get_group_predictors(PredictorGroup.LEAF_TRAITS, ['SLA', 'Elevation', 'LDMC'])
    assert result == ['SLA', 'LDMC']


def test_get_response_var_index(victim):
    assert victim.get_response_var_index('RHD_25to50') == 0
    assert victim.get_response_var_index('fhd_normal') == 5
    with pytest.raises(ValueError):
        victim.get_response_var_index('rh100')
