import re
import pathlib
import logging
import dask
import numpy as np
import pandas as pd
import geopandas as gpd
import xarray as xr
import rioxarray as rxr

from rasterio.transform import rowcol
from gedi_estimation.engines.Engine import Engine
from gedi_estimation.helpers import modeling, rasters


def _divide_masked(numerator: np.ndarray, denominator: np.ndarray) -> np.ndarray:
    """numerator / denominator, NaN wherever nothing contributed"""

    result = np.full(numerator.shape, np.nan)
    covered = denominator > 0
    result[covered] = numerator[covered] / denominator[covered]
    return result


def get_location_weights(fragment: xr.DataArray, centroid: tuple[float, float], pseudo_max_distance: float) -> np.ndarray:
    """Reversed, normalized distance to the tile centroid, NaN where the tile has no estimate"""

    distance = rasters.distance_to_point(fragment, *centroid)
    weight = 1 - distance / pseudo_max_distance
    return np.where(np.isfinite(fragment.values), weight, np.nan)


def _tile_contribution(fragment: xr.DataArray, centroid: tuple[float, float], reliability: float,
                       pseudo_max_distance: float) -> dict:
    """Weighted and plain sums of one tile, on the tile's own window"""

    estimates = fragment.values.astype(float)
    covered = np.isfinite(estimates)
    location_weight = get_location_weights(fragment, centroid, pseudo_max_distance)
    outside = covered & (location_weight <= 0)
    if outside.any():
        logging.warning(f'{int(outside.sum())} cells lie beyond the pseudo max distance and get no location weight')
    weight = np.where(covered & (location_weight > 0), location_weight * reliability, 0)
    return {
        'weighted_sum': np.where(weight > 0, estimates * weight, 0),
        'weight_sum': weight,
        'plain_sum': np.where(covered, estimates, 0),
        'plain_count': covered.astype(int)
    }


class WeightedCompositionEngine(Engine):
    """Blend overlapping tile estimates into one surface per response variable"""

    def __init__(self, env_string: str=False):
        super().__init__(env_string)
        self.pseudo_max_distance = float(self.config('COMPOSITION', 'PSEUDO_MAX_DISTANCE'))

    def build_domain(self, fragments: dict[int, xr.DataArray]) -> xr.DataArray:
        """Empty raster spanning every fragment on their shared pixel grid"""

        transforms = {tile_id: fragment.rio.transform() for tile_id, fragment in fragments.items()}
        first = next(iter(transforms.values()))
        x_size, y_size = first.a, first.e
        xmin = min(transform.c for transform in transforms.values())
        ymax = max(transform.f for transform in transforms.values())
        xmax = max(transforms[tile_id].c + x_size * fragment.shape[-1] for tile_id, fragment in fragments.items())
        ymin = min(transforms[tile_id].f + y_size * fragment.shape[-2] for tile_id, fragment in fragments.items())
        width = int(round((xmax - xmin) / x_size))
        height = int(round((ymin - ymax) / y_size))
        x = xmin + x_size * (np.arange(width) + 0.5)
        y = ymax + y_size * (np.arange(height) + 0.5)
        domain = xr.DataArray(np.full((height, width), np.nan), coords={'y': y, 'x': x}, dims=('y', 'x'))
        return domain.rio.write_crs(next(iter(fragments.values())).rio.crs)

    def get_reliability_weights(self, accuracy: pd.DataFrame, response_var: str, tile_ids=None) -> pd.Series:
        """
        Inverse MSE of each tile over the largest inverse MSE, so the best tile weighs 1
        :param pd.DataFrame accuracy: Tile accuracy records
        :param str response_var: Response variable
        :param tile_ids: Selected Tile_IDs, records of other tiles are ignored
        :returns pd.Series: Weight in (0, 1] by Tile_ID, tiles with undefined or zero MSE left out
        """

        records = accuracy[accuracy['Response_Var'] == response_var]
        if tile_ids is not None:
            records = records[records['Tile_ID'].isin(tile_ids)]
        records = records.set_index('Tile_ID')
        mse = records['RMSE'].astype(float) ** 2
        usable = np.isfinite(mse) & (mse > 0)
        if (~usable).any():
            logging.warning(f'Excluding tiles without a usable MSE from {response_var} weights: {sorted(mse.index[~usable])}')
        inverse_mse = 1 / mse[usable]
        if inverse_mse.empty:
            return inverse_mse.rename('Reliability_Weight')
        return (inverse_mse / inverse_mse.max()).rename('Reliability_Weight')

    def compose(self, fragments: dict[int, xr.DataArray], tiles: gpd.GeoDataFrame,
                reliability: pd.Series, domain: xr.DataArray=None) -> tuple[xr.DataArray, xr.DataArray]:
        """Weighted and unweighted composites of a response variable's fragments"""

        centroids = tiles.set_index('Tile_ID').geometry.centroid
        unknown = sorted(set(fragments) - set(centroids.index))
        if unknown:
            logging.warning(f'Ignoring fragments of tiles that are not selected: {unknown}')
            fragments = {tile_id: fragment for tile_id, fragment in fragments.items() if tile_id in centroids.index}
        if domain is None:
            domain = self.build_domain(fragments)
        # map over tiles, then reduce onto the domain
        tasks = []
        for tile_id, fragment in fragments.items():
            tile_reliability = float(reliability.get(tile_id, 0.0))
            centroid = centroids.loc[tile_id]
            tasks.append(dask.delayed(_tile_contribution)(fragment, (centroid.x, centroid.y), tile_reliability, self.pseudo_max_distance))
        contributions = dask.compute(*tasks)

        sums = {name: np.zeros(domain.shape) for name in ['weighted_sum', 'weight_sum', 'plain_sum', 'plain_count']}
        for fragment, contribution in zip(fragments.values(), contributions):
            row, col = rasters.window_offsets(domain, fragment)
            height, width = fragment.shape[-2:]
            for name, values in contribution.items():
                sums[name][row:row + height, col:col + width] += values

        weighted = domain.copy(data=_divide_masked(sums['weighted_sum'], sums['weight_sum']))
        unweighted = domain.copy(data=_divide_masked(sums['plain_sum'], sums['plain_count']))
        return weighted, unweighted

    def load_fragments(self, outputs: str|pathlib.Path, response_var: str, tile_ids=None) -> dict[int, xr.DataArray]:
        fragment_folder = pathlib.Path(outputs) / 'prediction' / response_var
        pattern = re.compile(rf'Est_{re.escape(response_var)}_(\d+)$')
        fragments = {}
        for fragment_path in sorted(fragment_folder.glob(f'Est_{response_var}_*.tif')):
            match = pattern.match(fragment_path.stem)
            if not match:
                continue
            tile_id = int(match.group(1))
            if tile_ids is not None and tile_id not in tile_ids:
                continue
            fragments[tile_id] = rxr.open_rasterio(fragment_path, masked=True).squeeze('band', drop=True)
        return fragments

    def sample_composites(self, composites: dict[str, tuple[xr.DataArray, xr.DataArray]], samples: gpd.GeoDataFrame) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Read composited values at sample points and score them against the observations"""

        sampled = pd.DataFrame(samples.drop(columns='geometry', errors='ignore'))[['Sample_ID', 'Tile_ID']].copy()
        scores = []
        for response_var, (weighted, unweighted) in composites.items():
            points = samples.geometry.to_crs(weighted.rio.crs)
            rows, cols = rowcol(weighted.rio.transform(), points.x.to_numpy(), points.y.to_numpy())
            rows, cols = np.asarray(rows), np.asarray(cols)
            inside = (rows >= 0) & (rows < weighted.shape[0]) & (cols >= 0) & (cols < weighted.shape[1])
            for prefix, composite in [('W', weighted), ('U', unweighted)]:
                values = np.full(len(samples), np.nan)
                values[inside] = composite.values[rows[inside], cols[inside]]
                sampled[f'{prefix}_{response_var}'] = values
            sampled[response_var] = samples[response_var].to_numpy()
            for prefix in ['W', 'U']:
                compared = sampled[[response_var, f'{prefix}_{response_var}']].dropna()
                rmse, r_squared = modeling.assess_accuracy(compared[response_var].to_numpy(), compared[f'{prefix}_{response_var}'].to_numpy())
                scores.append({'Response_Var': response_var, 'Composite': 'Weighted' if prefix == 'W' else 'Unweighted',
                               'Sample_Count': len(compared), 'RMSE': rmse, 'R_squared': r_squared})
        return sampled, pd.DataFrame(scores)

    def run(self, selected_tiles: gpd.GeoDataFrame, accuracy: pd.DataFrame, collected: gpd.GeoDataFrame,
            response_vars: list[str], outputs: str|pathlib.Path) -> pd.DataFrame:
        print('Compositing tile estimates')
        composition_folder = pathlib.Path(outputs) / 'composition'
        composition_folder.mkdir(parents=True, exist_ok=True)
        composites = {}
        tile_ids = set(selected_tiles['Tile_ID'])
        for response_var in response_vars:
            fragments = self.load_fragments(outputs, response_var, tile_ids)
            if not fragments:
                logging.warning(f'No fragments found for {response_var}, skipping composition')
                continue
            reliability = self.get_reliability_weights(accuracy, response_var, tile_ids)
            weighted, unweighted = self.compose(fragments, selected_tiles, reliability)
            rasters.write_raster(weighted, composition_folder / f'Composite_Weighted_{response_var}.tif')
            rasters.write_raster(unweighted, composition_folder / f'Composite_Unweighted_{response_var}.tif')
            composites[response_var] = (weighted, unweighted)
            self.write_message(f'Composited {len(fragments)} tiles for {response_var}', outputs)

        sampled, scores = self.sample_composites(composites, collected)
        sampled.to_parquet(composition_folder / 'Composite_Sampling.parquet')
        scores.to_parquet(composition_folder / 'Composite_Accuracy.parquet')
        logging.info(f'Composited {len(composites)} response variables')
        return scores
