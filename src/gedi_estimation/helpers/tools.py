import yaml
import pathlib
import numpy as np
import pandas as pd
import geopandas as gpd

from socket import gethostname


INPUTS = pathlib.Path(__file__).parents[3] / 'inputs'
OUTPUTS = pathlib.Path(__file__).parents[3] / 'outputs'

OUTPUT_SUBFOLDERS = ['grids', 'samples', 'tuning', 'prediction', 'composition', 'importance', 'ablation', 'reports']


def assign_random_rank_ids(frame: pd.DataFrame, id_column: str, seed: int, order_by: list[str]) -> pd.DataFrame:
    """
    Attach a unique integer ID to every row from the rank of a seeded random number
    :param pd.DataFrame frame: Rows needing an ID
    :param str id_column: Name of the new ID column
    :param int seed: Random seed
    :param list[str] order_by: Columns giving a canonical row order before drawing
    :returns pd.DataFrame: Copy of frame with the ID column, in canonical order
    """

    ordered = frame.sort_values(order_by, kind='mergesort').reset_index(drop=True)
    random_numbers = np.random.default_rng(seed).random(len(ordered))
    # rank 1..N of the random draw
    ranks = np.empty(len(ordered), dtype=np.int64)
    ranks[np.argsort(random_numbers, kind='mergesort')] = np.arange(1, len(ordered) + 1)
    ordered[id_column] = ranks
    return ordered


def get_environment() -> str:
    """Determine current environment running code"""

    hostname = gethostname()
    if 'L' in hostname:
        return 'local'
    else:
        return 'remote'


def get_config_item(parent: str, child: str=False, env_string: str=False) -> str:
    """
    Load config and return speciific key
    :param str parent: Primary key in config
    :param str child: Secondary key in config
    :param str env_string: Optional explicit value of "local" or "remote"
    :returns str: Value from local or remote YAML config
    """

    env = env_string if env_string else None
    if env is None:
        env = get_environment()

    with open(str(INPUTS / 'lookups' / f'{env}_path_config.yaml'), 'r') as lookup:
        config = yaml.safe_load(lookup)
        parent_item = config[parent]
        if child:
            return parent_item[child]
        else:
            return parent_item


def get_output_folder(env: str) -> pathlib.Path:
    """Local runs write beside the repo, remote runs to the configured share"""

    if env == 'local':
        return OUTPUTS
    return pathlib.Path(get_config_item('SHARED', 'OUTPUT_FOLDER', env_string=env))


def get_study_area(env_string: str=False) -> gpd.GeoDataFrame:
    """Load the study area polygon in the grid CRS"""

    study_area = gpd.read_file(INPUTS / get_config_item('SHARED', 'STUDY_AREA', env_string),
                               layer=get_config_item('SHARED', 'STUDY_AREA_LAYER', env_string))
    return study_area.to_crs(get_config_item('GRID', 'CRS', env_string))


def make_output_folders(output_folder: str|pathlib.Path) -> pathlib.Path:
    """Create the stage folders under the main output folder"""

    output_folder = pathlib.Path(output_folder)
    for subfolder in OUTPUT_SUBFOLDERS:
        (output_folder / subfolder).mkdir(parents=True, exist_ok=True)
    return output_folder


def random_column(frame: pd.DataFrame, seed: int, order_by: str='Sample_ID') -> np.ndarray:
    """Uniform [0, 1) value per row, drawn in the order of a stable key so row order never matters"""

    order = np.argsort(frame[order_by].to_numpy(), kind='mergesort')
    draws = np.random.default_rng(seed).random(len(frame))
    values = np.empty(len(frame))
    values[order] = draws
    return values


def split_samples(samples: pd.DataFrame, seed: int, training_ratio: float, column_name: str='Split_ID') -> tuple[pd.DataFrame, pd.DataFrame]:
    """Randomly split samples into training (< ratio) and testing (>= ratio) subsets"""

    # row order feeds the forest's bootstrap
    ordered = samples.sort_values('Sample_ID', kind='mergesort')
    randomized = ordered.assign(**{column_name: random_column(ordered, seed)})
    training = randomized[randomized[column_name] < training_ratio]
    testing = randomized[randomized[column_name] >= training_ratio]
    return training, testing
