import pathlib
import logging
import numpy as np
import pandas as pd
import geopandas as gpd

from gedi_estimation.engines.Engine import Engine
from gedi_estimation.helpers.tools import random_column


class SampleCollectionEngine(Engine):
    """Bounded, reproducible sample subsets for tuning, evaluation and ablation"""

    def __init__(self, env_string: str=False):
        super().__init__(env_string)
        self.samples_per_gridcell = int(self.config('COLLECTION', 'SAMPLES_PER_GRIDCELL'))
        self.training_ratio = float(self.config('MODELING', 'TRAINING_RATIO'))
        ablation = self.config('ABLATION')
        self.ablation_min_count = int(ablation['MIN_SAMPLE_COUNT'])
        self.ablation_tile_count = int(ablation['TILE_COUNT'])
        self.drawing_count = int(ablation['DRAWING_COUNT'])
        self.drawing_size = int(ablation['DRAWING_SIZE'])
        self.excluded_tiles = list(ablation.get('EXCLUDED_TILES') or [])

    def collect_gridcell_samples(self, samples: gpd.GeoDataFrame, selected_cells: gpd.GeoDataFrame, limit: int=None) -> gpd.GeoDataFrame:
        """
        First samples by Sample_ID of each tile that fall inside its grid cell
        :param gpd.GeoDataFrame samples: Vectorized samples
        :param gpd.GeoDataFrame selected_cells: Grid cells of the selected tiles
        :param int limit: Samples kept per grid cell
        :returns gpd.GeoDataFrame: Collected samples
        """

        limit = self.samples_per_gridcell if limit is None else limit
        candidates = samples[samples['Tile_ID'].isin(selected_cells['Tile_ID'])]
        joined = gpd.sjoin(
            candidates,
            selected_cells[['Tile_ID', 'geometry']].to_crs(candidates.crs),
            how='inner',
            predicate='within',
            lsuffix='sample',
            rsuffix='gridcell'
        )
        inside = joined[joined['Tile_ID_sample'] == joined['Tile_ID_gridcell']]
        inside = inside.drop(columns=['index_gridcell', 'Tile_ID_gridcell']).rename(columns={'Tile_ID_sample': 'Tile_ID'})
        collected = (inside.sort_values(['Tile_ID', 'Sample_ID'], kind='mergesort')
                     .groupby('Tile_ID', sort=True)
                     .head(limit))
        return collected.reset_index(drop=True)

    def collect_tile_samples(self, samples: pd.DataFrame, tile_id: int, limit: int=None) -> pd.DataFrame:
        """All samples of a tile, optionally truncated after sorting by Sample_ID"""

        tile_samples = samples[samples['Tile_ID'] == tile_id].sort_values('Sample_ID', kind='mergesort')
        if limit is not None:
            tile_samples = tile_samples.head(limit)
        return tile_samples.reset_index(drop=True)

    def select_ablation_tiles(self, selected_tiles: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Greedy pick of non-overlapping, densely sampled tiles"""

        candidates = selected_tiles[(selected_tiles['Sample_Count'] >= self.ablation_min_count)
                                    & ~selected_tiles['Tile_ID'].isin(self.excluded_tiles)]
        candidates = candidates.sort_values(['Sample_Count', 'Tile_ID'], ascending=[False, True])
        chosen = []
        for index, tile in candidates.iterrows():
            if len(chosen) == self.ablation_tile_count:
                break
            # shared edges are fine, shared area is not
            if any(tile.geometry.intersection(candidates.geometry.loc[other]).area > 0 for other in chosen):
                continue
            chosen.append(index)
        if not chosen:
            logging.warning('No tiles qualify for the predictor ablation')
        return candidates.loc[chosen].sort_values('Tile_ID').reset_index(drop=True)

    def draw_samples(self, samples: pd.DataFrame, tile_ids: list[int]) -> pd.DataFrame:
        """Assign consecutive blocks of samples to drawings, without replacement"""

        total = self.drawing_count * self.drawing_size
        drawing_ids = np.repeat(np.arange(1, self.drawing_count + 1), self.drawing_size)
        drawn = []
        for tile_id in tile_ids:
            tile_samples = self.collect_tile_samples(samples, tile_id, total)
            if len(tile_samples) < total:
                logging.warning(f'Tile {tile_id} has {len(tile_samples)} samples, fewer than {total} for all drawings')
            tile_samples = tile_samples.assign(Drawing_ID=drawing_ids[:len(tile_samples)])
            drawn.append(tile_samples)
        if not drawn:
            return samples.iloc[0:0].assign(Drawing_ID=pd.Series(dtype='int64'))
        return pd.concat(drawn, ignore_index=True)

    def split_drawings(self, drawn: pd.DataFrame) -> pd.DataFrame:
        """Category 1 for training and 0 for testing, seeded by tile and drawing"""

        split = []
        for (tile_id, drawing_id), drawing in drawn.groupby(['Tile_ID', 'Drawing_ID'], sort=True):
            values = random_column(drawing, int(tile_id) * int(drawing_id))
            split.append(drawing.assign(Split_OneTile=values, Category=np.where(values < self.training_ratio, 1, 0)))
        if not split:
            return drawn.assign(Split_OneTile=pd.Series(dtype=float), Category=pd.Series(dtype='int64'))
        return pd.concat(split, ignore_index=True)

    def run(self, samples: gpd.GeoDataFrame, selected_tiles: gpd.GeoDataFrame, selected_cells: gpd.GeoDataFrame,
            outputs: str|pathlib.Path) -> tuple[gpd.GeoDataFrame, pd.DataFrame]:
        print('Collecting samples')
        sample_folder = pathlib.Path(outputs) / 'samples'
        sample_folder.mkdir(parents=True, exist_ok=True)

        collected = self.collect_gridcell_samples(samples, selected_cells)
        collected.to_parquet(sample_folder / 'Collected_Samples.parquet')

        ablation_tiles = self.select_ablation_tiles(selected_tiles)
        ablation_tiles.to_parquet(sample_folder / 'NonOverlapping_Tiles.parquet')
        drawings = self.split_drawings(self.draw_samples(samples, list(ablation_tiles['Tile_ID'])))
        pd.DataFrame(drawings.drop(columns='geometry', errors='ignore')).to_parquet(
            sample_folder / f'AllCollectedSamples_{self.drawing_count}drawings.parquet')

        self.write_message(f'Collected samples: {len(collected)}, ablation tiles: {len(ablation_tiles)}', outputs)
        logging.info(f'Collected {len(collected)} samples from {collected["Tile_ID"].nunique()} tiles')
        return collected, drawings
