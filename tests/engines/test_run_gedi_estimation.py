import pytest
import pathlib
import yaml

GEDI_ESTIMATION_MODULE = pathlib.Path(__file__).parents[2] / 'src'

import sys
sys.path.append(str(GEDI_ESTIMATION_MODULE))


from gedi_estimation.engines import run_gedi_estimation
from gedi_estimation.helpers import runners


@pytest.fixture
def victim():
    return run_gedi_estimation


def test_session_config_steps(victim):
    with open(victim.INPUTS / 'lookups' / 'run_configs' / 'gedi_estimation_session.yaml', 'r') as lookup:
        config = yaml.safe_load(lookup)
    assert len(config['response_vars']) == 14
    for step in config['steps']:
        assert hasattr(runners, step['tool'])


def test_run_step_unknown(victim, tmp_path):
    with pytest.raises(ValueError):
        victim.run_step('run_missing_engine', [], str(tmp_path), 'local')


def test_run_step_missing_input(victim, tmp_path):
    with pytest.raises(FileNotFoundError):
        victim.run_step('run_tile_selection_engine', [], str(tmp_path), 'local')


def test_update_config_runtime(victim, tmp_path):
    config_path = tmp_path / 'session.yaml'
    config = {'steps': [], 'runtimes': []}
    victim.update_config_runtime(config_path, config)
    with open(config_path, 'r') as lookup:
        assert len(yaml.safe_load(lookup)['runtimes']) == 1
