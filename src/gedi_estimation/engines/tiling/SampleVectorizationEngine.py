import pathlib
import logging
import numpy as np
import pandas as pd
import geopandas as gpd
import xarray as xr

from rasterio.enums import Resampling
from gedi_estimation.engines.Engine import Engine
from gedi_estimation.helpers import rasters
from gedi_estimation.helpers.predictors import ALL_PREDICTORS, DISCRETE_PREDICTORS, RELATIVE_HEIGHT_DIFFERENCES, RESPONSE_VARS
from gedi_estimation.helpers.tools import INPUTS, assign_random_rank_ids


class SampleVectorizationEngine(Engine):
    """Turn valid GEDI pixels into point samples carrying predictors and response variables"""

    def __init__(self, env_string: str=False):
        super().__init__(env_string)
        self.seed = int(self.config('SAMPLES', 'SEED'))
        self.scale_factor = int(self.config('SAMPLES', 'SCALE_FACTOR'))
        self.water_classes = self.config('SAMPLES', 'WATER_CLASSES')
        self.geographic_crs = self.config('GRID', 'GEOGRAPHIC_CRS')

    def derive_response_vars(self, gedi: xr.Dataset) -> xr.Dataset:
        """Add relative height differences and keep the modeled response variables"""

        derived = gedi.copy()
        for name, (upper, lower) in RELATIVE_HEIGHT_DIFFERENCES.items():
            if name not in derived and upper in derived and lower in derived:
                derived[name] = derived[upper] - derived[lower]
        missing = [name for name in RESPONSE_VARS if name not in derived]
        if missing:
            raise KeyError(f'GEDI stack is missing response variables: {missing}')
        return derived[RESPONSE_VARS]

    def align_predictors(self, predictors: xr.Dataset, gedi: xr.Dataset) -> xr.Dataset:
        """Reduce predictors to the sampling scale and snap them onto the GEDI grid"""

        reduced = rasters.block_reduce(predictors, self.scale_factor, DISCRETE_PREDICTORS)
        template = gedi[RESPONSE_VARS[0]]
        return reduced.rio.reproject_match(template, resampling=Resampling.nearest)

    def get_valid_pixels(self, gedi: xr.Dataset, predictors: xr.Dataset) -> pd.DataFrame:
        """Pixels with a complete predictor and response vector that are not water"""

        xs, ys = np.meshgrid(gedi['x'].values, gedi['y'].values)
        pixels = {'x': xs.ravel(), 'y': ys.ravel()}
        for name in predictors.data_vars:
            pixels[name] = predictors[name].values.ravel()
        for name in RESPONSE_VARS:
            pixels[name] = gedi[name].values.ravel()
        pixels = pd.DataFrame(pixels)

        valid = np.isfinite(pixels[list(predictors.data_vars) + RESPONSE_VARS].to_numpy(dtype=float)).all(axis=1)
        for name, water_class in self.water_classes.items():
            if name in pixels:
                valid &= pixels[name].to_numpy() != water_class
        print(f' - {int(valid.sum())} of {len(pixels)} pixels are valid samples')
        return pixels[valid].reset_index(drop=True)

    def load_stacks(self) -> tuple[xr.Dataset, xr.Dataset]:
        gedi_folder = INPUTS / self.config('SHARED', 'GEDI_FOLDER')
        predictor_folder = INPUTS / self.config('SHARED', 'PREDICTOR_FOLDER')
        gedi_names = sorted(path.stem for path in gedi_folder.glob('*.tif'))
        gedi = self.derive_response_vars(rasters.load_raster_stack(gedi_folder, gedi_names))
        predictors = rasters.load_raster_stack(predictor_folder, ALL_PREDICTORS)
        return gedi, predictors

    def vectorize(self, gedi: xr.Dataset, predictors: xr.Dataset, tiles: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """
        Create one sample per valid pixel and covering tile
        :param xr.Dataset gedi: Response variable rasters
        :param xr.Dataset predictors: Predictor rasters on the GEDI grid
        :param gpd.GeoDataFrame tiles: Tiles with Tile_ID
        :returns gpd.GeoDataFrame: Samples with Sample_ID, Tile_ID and Pixel_Label
        """

        pixels = self.get_valid_pixels(gedi, predictors)
        points = gpd.GeoDataFrame(pixels, geometry=gpd.points_from_xy(pixels['x'], pixels['y']), crs=gedi.rio.crs)
        geographic = points.geometry.to_crs(self.geographic_crs)
        # scaled longitude times scaled latitude
        points['Pixel_Label'] = (np.trunc(geographic.x.to_numpy() * 1e6).astype(np.int64)
                                 * np.trunc(geographic.y.to_numpy() * 1e6).astype(np.int64))

        samples = gpd.sjoin(points, tiles[['Tile_ID', 'geometry']].to_crs(points.crs), how='inner', predicate='within')
        samples = samples.drop(columns=['index_right'])
        samples = assign_random_rank_ids(samples, 'Sample_ID', self.seed, ['Tile_ID', 'y', 'x'])
        samples = gpd.GeoDataFrame(samples, geometry='geometry', crs=points.crs)
        if samples.empty:
            logging.warning('No samples fell inside any tile')
        return samples

    def run(self, tiles: gpd.GeoDataFrame, outputs: str|pathlib.Path) -> gpd.GeoDataFrame:
        print('Vectorizing GEDI samples')
        gedi, predictors = self.load_stacks()
        samples = self.vectorize(gedi, self.align_predictors(predictors, gedi), tiles)
        sample_folder = pathlib.Path(outputs) / 'samples'
        sample_folder.mkdir(parents=True, exist_ok=True)
        samples.to_parquet(sample_folder / 'VectorizedSamples_NonWater.parquet')
        self.write_message(f'Vectorized samples: {len(samples)}', outputs)
        logging.info(f'Vectorized {len(samples)} samples')
        return samples
