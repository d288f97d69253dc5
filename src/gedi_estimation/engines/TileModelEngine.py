"""Class for training, testing and applying one model per tile"""

import pathlib
import logging
import numpy as np
import pandas as pd
import geopandas as gpd
import xarray as xr

from shapely.geometry.base import BaseGeometry
from gedi_estimation.engines.Engine import Engine
from gedi_estimation.engines.HyperparameterTuningEngine import get_optimal_hyperparameters
from gedi_estimation.helpers import modeling, rasters
from gedi_estimation.helpers.modeling import ResponseVariableContext
from gedi_estimation.helpers.predictors import ALL_PREDICTORS, DISCRETE_PREDICTORS, get_response_var_index
from gedi_estimation.helpers.tools import INPUTS, split_samples


def _process_tile(param_inputs: list) -> dict:
    """Static function for pickling that handles modeling of a single tile"""

    tile_id, tile_geometry, crs, tile_samples, context, predictor_folder, outputs, env_string = param_inputs
    try:
        engine = TileModelEngine(env_string)
        stack = rasters.load_raster_stack(predictor_folder, list(context.predictors) + engine.get_mask_layers(context))
        return engine.process_tile(tile_id, tile_geometry, crs, tile_samples, context, stack, outputs)
    except Exception:
        logging.error(f'Tile {tile_id} failed for {context.response_var}', exc_info=True)
        raise


class TileModelEngine(Engine):
    """Per-tile Random Forest estimation of each response variable"""

    def __init__(self, env_string: str=False):
        super().__init__(env_string)
        modeling_config = self.config('MODELING')
        self.training_ratio = float(modeling_config['TRAINING_RATIO'])
        self.number_of_trees = int(modeling_config['TREE_NUMBER'])
        self.top_k = int(modeling_config['TOP_K'])
        self.batch_size = int(modeling_config['BATCH_SIZE'])
        self.batch_retries = int(modeling_config['BATCH_RETRIES'])
        self.resolution = float(modeling_config['RESOLUTION'])
        self.n_workers = int(modeling_config['N_WORKERS'])
        self.water_classes = self.config('SAMPLES', 'WATER_CLASSES')

    def build_context(self, response_var: str, optima: pd.DataFrame, predictors: list[str]) -> ResponseVariableContext:
        """Fresh, immutable modeling context for one response variable"""

        return ResponseVariableContext(
            response_var=response_var,
            response_var_index=get_response_var_index(response_var),
            hyperparameters=get_optimal_hyperparameters(optima, response_var, self.number_of_trees),
            predictors=tuple(predictors)
        )

    def get_batches(self, tile_ids: list[int]) -> list[list[int]]:
        """Sorted tile IDs in fixed size groups"""

        tile_ids = sorted(int(tile_id) for tile_id in tile_ids)
        return [tile_ids[start:start + self.batch_size] for start in range(0, len(tile_ids), self.batch_size)]

    def get_fragment_path(self, outputs: str|pathlib.Path, context: ResponseVariableContext, tile_id: int) -> pathlib.Path:
        return pathlib.Path(outputs) / 'prediction' / context.response_var / f'{context.estimate_name}_{tile_id}.tif'

    def clear_prediction_folder(self, outputs: str|pathlib.Path, response_var: str) -> pathlib.Path:
        """Remove fragments and accuracy tables of an earlier run for one response variable"""

        response_folder = pathlib.Path(outputs) / 'prediction' / response_var
        response_folder.mkdir(parents=True, exist_ok=True)
        stale_files = list(response_folder.glob(f'Est_{response_var}_*.tif')) + list(response_folder.glob('Accuracy_Tiles*.parquet'))
        for stale_file in stale_files:
            stale_file.unlink()
        if stale_files:
            logging.info(f'Removed {len(stale_files)} outputs of an earlier {response_var} run')
        return response_folder

    def get_mask_layers(self, context: ResponseVariableContext) -> list[str]:
        """Water mask layers that are not already predictors"""

        return [name for name in self.water_classes if name not in context.predictors]

    def model_tile(self, tile_id: int, tile_samples: pd.DataFrame, context: ResponseVariableContext) -> tuple[object, dict]:
        """
        Train on 80% of a tile's samples and score on the rest
        :param int tile_id: Tile_ID
        :param pd.DataFrame tile_samples: All samples of the tile
        :param ResponseVariableContext context: Response variable, tuned settings and predictors
        :returns tuple: Fitted model or None, accuracy record
        """

        predictors = list(context.predictors)
        usable = tile_samples.dropna(subset=predictors + [context.response_var])
        seed = int(tile_id) * (context.response_var_index + 1)
        training, testing = split_samples(usable, seed, self.training_ratio, 'Split_OneTile')
        record = {
            'Tile_ID': int(tile_id),
            'Response_Var': context.response_var,
            'Training_Count': len(training),
            'Testing_Count': len(testing),
            'RMSE': np.nan,
            'R_squared': np.nan
        }
        if len(training) < 2 or len(testing) < 1:
            logging.warning(f'Tile {tile_id} has too few samples to model {context.response_var}')
            return None, record

        model = modeling.train_random_forest(training, context.response_var, predictors, context.hyperparameters, seed, n_jobs=1)
        estimates = modeling.predict(model, testing, predictors)
        record['RMSE'], record['R_squared'] = modeling.assess_accuracy(testing[context.response_var].to_numpy(), estimates)
        if np.isnan(record['R_squared']):
            logging.warning(f'Tile {tile_id} has a constant testing {context.response_var}, R-squared is undefined')
        record.update(modeling.top_importances(modeling.explain(model, predictors), self.top_k))
        return model, record

    def predict_fragment(self, model, stack: xr.Dataset, context: ResponseVariableContext) -> xr.DataArray:
        """Apply a model to every complete, non-water cell of a clipped predictor stack"""

        predictors = list(context.predictors)
        template = stack[predictors[0]]
        features = np.column_stack([stack[name].values.ravel() for name in predictors]).astype(float)
        valid = np.isfinite(features).all(axis=1)
        for name, water_class in self.water_classes.items():
            if name in stack:
                valid &= stack[name].values.ravel() != water_class
        estimates = np.full(features.shape[0], np.nan)
        if valid.any():
            estimates[valid] = modeling.predict(model, features[valid])
        fragment = xr.DataArray(estimates.reshape(template.shape), coords=template.coords, dims=template.dims,
                                name=context.estimate_name)
        return fragment.rio.write_crs(stack.rio.crs)

    def process_tile(self, tile_id: int, tile_geometry: BaseGeometry, crs, tile_samples: pd.DataFrame,
                     context: ResponseVariableContext, stack: xr.Dataset, outputs: str|pathlib.Path=None) -> dict:
        """Model one (tile, response variable) pair, write its fragment, return its accuracy record"""

        model, record = self.model_tile(tile_id, tile_samples, context)
        record['Fragment'] = None
        if model is None:
            return record
        clipped = rasters.clip_to_geometry(stack, tile_geometry, crs)
        fragment = self.predict_fragment(model, clipped, context)
        if outputs is not None:
            fragment_path = self.get_fragment_path(outputs, context, tile_id)
            rasters.write_raster(fragment, fragment_path)
            record['Fragment'] = str(fragment_path)
        return record

    def prepare_predictor_folder(self, outputs: str|pathlib.Path, predictors: list[str]) -> pathlib.Path:
        """Predictor rasters at the prediction scale, reprojected once when needed"""

        source_folder = INPUTS / self.config('SHARED', 'PREDICTOR_FOLDER')
        layers = list(dict.fromkeys(predictors + list(self.water_classes)))
        stack = rasters.load_raster_stack(source_folder, layers)
        if np.isclose(abs(stack.rio.resolution()[0]), self.resolution):
            return source_folder
        target_folder = pathlib.Path(outputs) / 'prediction' / f'predictors_{int(self.resolution)}m'
        prediction_stack = rasters.reproject_stack(stack, stack.rio.crs, self.resolution, DISCRETE_PREDICTORS)
        for name in prediction_stack.data_vars:
            rasters.write_raster(prediction_stack[name], target_folder / f'{name}.tif')
        return target_folder

    def run_batch(self, param_inputs: list[list]) -> list[dict]:
        """Run one batch of tiles, retrying the whole batch on failure"""

        for attempt in range(1, self.batch_retries + 2):
            try:
                future_tiles = self.client.map(_process_tile, param_inputs, pure=False)
                return self.client.gather(future_tiles)
            except Exception:
                logging.error(f'Batch attempt {attempt} failed', exc_info=True)
                if attempt > self.batch_retries:
                    raise

    def run(self, selected_tiles: gpd.GeoDataFrame, samples: pd.DataFrame, optima: pd.DataFrame,
            response_vars: list[str], outputs: str|pathlib.Path, processes: bool=True) -> pd.DataFrame:
        print('Modeling tiles')
        predictors = [name for name in ALL_PREDICTORS if name in samples.columns]
        predictor_folder = self.prepare_predictor_folder(outputs, predictors)
        prediction_folder = pathlib.Path(outputs) / 'prediction'
        tile_geometries = selected_tiles.set_index('Tile_ID').geometry
        samples = pd.DataFrame(samples.drop(columns='geometry', errors='ignore'))
        samples_by_tile = {tile_id: group for tile_id, group in samples.groupby('Tile_ID')}

        self.setup_dask(self.n_workers, processes=processes)
        accuracy = []
        try:
            for response_var in response_vars:
                context = self.build_context(response_var, optima, predictors)
                self.clear_prediction_folder(outputs, response_var)
                for batch in self.get_batches(tile_geometries.index):
                    param_inputs = [[tile_id, tile_geometries.loc[tile_id], selected_tiles.crs,
                                     samples_by_tile.get(tile_id, samples.iloc[0:0]), context, predictor_folder, outputs, self.env_string]
                                    for tile_id in batch]
                    records = pd.DataFrame(self.run_batch(param_inputs))
                    records.to_parquet(prediction_folder / response_var / f'Accuracy_Tiles{batch[0]}to{batch[-1]}.parquet')
                    accuracy.append(records)
                    self.print_async_results([f'{response_var}: tiles {batch[0]} to {batch[-1]} complete'], outputs)
                logging.info(f'Modeled {len(tile_geometries)} tiles for {response_var}')
        finally:
            self.close_dask()
        return pd.concat(accuracy, ignore_index=True) if accuracy else pd.DataFrame()
