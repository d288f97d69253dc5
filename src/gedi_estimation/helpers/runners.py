import pathlib
import pandas as pd
import geopandas as gpd

from gedi_estimation.engines.tiling.GridPartitionEngine import GridPartitionEngine
from gedi_estimation.engines.tiling.SampleVectorizationEngine import SampleVectorizationEngine
from gedi_estimation.engines.tiling.TileSelectionEngine import TileSelectionEngine
from gedi_estimation.engines.tiling.SampleCollectionEngine import SampleCollectionEngine
from gedi_estimation.engines.HyperparameterTuningEngine import HyperparameterTuningEngine
from gedi_estimation.engines.TileModelEngine import TileModelEngine
from gedi_estimation.engines.AccuracyExaminationEngine import AccuracyExaminationEngine
from gedi_estimation.engines.WeightedCompositionEngine import WeightedCompositionEngine
from gedi_estimation.engines.PredictorImportanceEngine import PredictorImportanceEngine
from gedi_estimation.engines.PredictorAblationEngine import PredictorAblationEngine

from gedi_estimation.helpers.tools import get_config_item, get_study_area


def _read_output(outputs: str, *parts: str) -> gpd.GeoDataFrame:
    """Load a stage output written by an earlier run"""

    output_path = pathlib.Path(outputs).joinpath(*parts)
    if not output_path.exists():
        raise FileNotFoundError(f'Missing {output_path}, run the step that creates it first')
    return gpd.read_parquet(output_path)


def _read_table(outputs: str, *parts: str) -> pd.DataFrame:
    output_path = pathlib.Path(outputs).joinpath(*parts)
    if not output_path.exists():
        raise FileNotFoundError(f'Missing {output_path}, run the step that creates it first')
    return pd.read_parquet(output_path)


def _grid_names(env_string: str) -> tuple[str, str]:
    gridcell_size = int(float(get_config_item('GRID', 'GRIDCELL_SIZE', env_string)) / 1000)
    return f'GridCells_{gridcell_size}km.parquet', f'Tiles_{gridcell_size * 2}km.parquet'


def run_grid_partition_engine(outputs: str, env_string: str=False) -> None:
    """Entry point for building grid cells and tiles over the study area"""

    engine = GridPartitionEngine(env_string)
    engine.run(get_study_area(env_string), outputs)


def run_sample_vectorization_engine(outputs: str, env_string: str=False) -> None:
    """Entry point for turning GEDI and predictor rasters into point samples"""

    _, tile_name = _grid_names(env_string)
    engine = SampleVectorizationEngine(env_string)
    engine.run(_read_output(outputs, 'grids', tile_name), outputs)


def run_tile_selection_engine(outputs: str, env_string: str=False) -> None:
    """Entry point for keeping tiles with enough samples"""

    gridcell_name, tile_name = _grid_names(env_string)
    engine = TileSelectionEngine(env_string)
    engine.run(_read_output(outputs, 'grids', tile_name),
               _read_output(outputs, 'grids', gridcell_name),
               _read_output(outputs, 'samples', 'VectorizedSamples_NonWater.parquet'),
               outputs)


def run_sample_collection_engine(outputs: str, env_string: str=False) -> None:
    """Entry point for collecting tuning samples and ablation drawings"""

    engine = SampleCollectionEngine(env_string)
    engine.run(_read_output(outputs, 'samples', 'VectorizedSamples_NonWater.parquet'),
               _read_output(outputs, 'grids', 'Selected_Tiles.parquet'),
               _read_output(outputs, 'grids', 'Selected_GridCells.parquet'),
               outputs)


def run_hyperparameter_tuning_engine(response_vars: list[str], outputs: str, env_string: str=False) -> None:
    """Entry point for tuning Random Forest settings per response variable"""

    engine = HyperparameterTuningEngine(env_string)
    engine.run(_read_output(outputs, 'samples', 'Collected_Samples.parquet'), response_vars, outputs)


def run_tile_model_engine(response_vars: list[str], outputs: str, env_string: str=False) -> None:
    """Entry point for parallel modeling of every selected tile"""

    engine = TileModelEngine(env_string)
    engine.run(_read_output(outputs, 'grids', 'Selected_Tiles.parquet'),
               _read_output(outputs, 'samples', 'VectorizedSamples_NonWater.parquet'),
               _read_table(outputs, 'tuning', 'Optimal_HPs.parquet'),
               response_vars,
               outputs)


def run_accuracy_examination_engine(outputs: str, env_string: str=False) -> None:
    """Entry point for merging and summarizing tile accuracy"""

    engine = AccuracyExaminationEngine(env_string)
    engine.run(outputs, _read_output(outputs, 'grids', 'Selected_Tiles.parquet'))


def run_weighted_composition_engine(response_vars: list[str], outputs: str, env_string: str=False) -> None:
    """Entry point for compositing tile estimates"""

    engine = WeightedCompositionEngine(env_string)
    engine.run(_read_output(outputs, 'grids', 'Selected_Tiles.parquet'),
               _read_table(outputs, 'prediction', 'Accuracy_AllTiles.parquet'),
               _read_output(outputs, 'samples', 'Collected_Samples.parquet'),
               response_vars,
               outputs)


def run_predictor_importance_engine(outputs: str, env_string: str=False) -> None:
    """Entry point for summarizing predictor group importance"""

    engine = PredictorImportanceEngine(env_string)
    engine.run(_read_table(outputs, 'prediction', 'Accuracy_AllTiles.parquet'), outputs)


def run_predictor_ablation_engine(response_vars: list[str], outputs: str, env_string: str=False) -> None:
    """Entry point for the predictor group exclusion experiment"""

    drawing_count = get_config_item('ABLATION', 'DRAWING_COUNT', env_string)
    engine = PredictorAblationEngine(env_string)
    engine.run(_read_table(outputs, 'samples', f'AllCollectedSamples_{drawing_count}drawings.parquet'),
               _read_table(outputs, 'tuning', 'Optimal_HPs.parquet'),
               response_vars,
               outputs)
