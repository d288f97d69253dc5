import os
import pathlib
import time
import sys
import logging
import yaml

from datetime import datetime

GEDI_MODEL = pathlib.Path(__file__).parents[2]
sys.path.append(str(GEDI_MODEL))

from gedi_estimation.helpers import tools, runners


INPUTS = pathlib.Path(__file__).parents[3] / 'inputs'


def run_step(tool: str, response_vars: list[str], outputs: str, env: str) -> None:
    """Dispatch one configured step to its runner"""

    if tool == 'run_grid_partition_engine':
        runners.run_grid_partition_engine(outputs, env)
    elif tool == 'run_sample_vectorization_engine':
        runners.run_sample_vectorization_engine(outputs, env)
    elif tool == 'run_tile_selection_engine':
        runners.run_tile_selection_engine(outputs, env)
    elif tool == 'run_sample_collection_engine':
        runners.run_sample_collection_engine(outputs, env)
    elif tool == 'run_hyperparameter_tuning_engine':
        runners.run_hyperparameter_tuning_engine(response_vars, outputs, env)
    elif tool == 'run_tile_model_engine':
        runners.run_tile_model_engine(response_vars, outputs, env)
    elif tool == 'run_accuracy_examination_engine':
        runners.run_accuracy_examination_engine(outputs, env)
    elif tool == 'run_weighted_composition_engine':
        runners.run_weighted_composition_engine(response_vars, outputs, env)
    elif tool == 'run_predictor_importance_engine':
        runners.run_predictor_importance_engine(outputs, env)
    elif tool == 'run_predictor_ablation_engine':
        runners.run_predictor_ablation_engine(response_vars, outputs, env)
    else:
        raise ValueError(f'Unknown step: {tool}')


def run_gedi_estimation(config_name: str) -> None:
    start = time.time()
    env = tools.get_environment()
    print('Environment:', env)

    output_directory = tools.make_output_folders(tools.get_output_folder(env))
    if os.path.exists(output_directory / 'log_prints.txt'):
        now = time.time()
        os.rename(output_directory / 'log_prints.txt', output_directory / f'log_prints_{now}.txt')
    print('Output folder:', output_directory)
    log_file = output_directory / tools.get_config_item('SHARED', 'LOG_FILE', env)
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s', filename=log_file, filemode='w')

    config_path = INPUTS / 'lookups' / 'run_configs' / config_name
    with open(config_path, 'r') as lookup:
        config = yaml.safe_load(lookup)
    print(f'Script has been run {len(config["runtimes"])} time(s)')
    response_vars = config['response_vars']
    print(f'Running GEDI estimation for {len(response_vars)} response variables')
    for step in config['steps']:
        if step['run']:
            step_start = time.time()
            logging.info(f'Starting {step["tool"]}')
            run_step(step['tool'], response_vars, str(output_directory), env)
            logging.info(f'Finished {step["tool"]} in {(time.time() - step_start) / 60:.2f} minutes')
    update_config_runtime(config_path, config)
    end = time.time()
    print(f'Total Runtime: {(end - start) / 60}')
    print('done')


def update_config_runtime(config_path: pathlib.Path, config: dict[list]) -> None:
    """Update run config with run time"""

    with open(config_path, 'w') as config_file:
        current_day = datetime.now()
        timestamp = current_day.strftime('%m%d%Y')
        config['runtimes'].append(str(timestamp))
        print(f'Updating config runtimes for date: {timestamp}')
        yaml.safe_dump(config, config_file, sort_keys=False)


if __name__ == '__main__':
    config_name = 'gedi_estimation_session.yaml'
    run_gedi_estimation(config_name)
