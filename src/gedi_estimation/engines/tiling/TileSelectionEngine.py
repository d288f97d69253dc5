import pathlib
import logging
import pandas as pd
import geopandas as gpd

from gedi_estimation.engines.Engine import Engine


class TileSelectionEngine(Engine):
    """Count samples per tile and grid cell and keep the well sampled tiles"""

    def __init__(self, env_string: str=False):
        super().__init__(env_string)
        self.min_sample_count = int(self.config('SELECTION', 'MIN_SAMPLE_COUNT'))
        self.min_ratio = float(self.config('SELECTION', 'MIN_SAMPLECOUNT_RATIO'))

    def count_tile_samples(self, samples: pd.DataFrame) -> pd.DataFrame:
        """Total samples per Tile_ID"""

        return samples.groupby('Tile_ID').size().rename('Sample_Count').reset_index()

    def count_gridcell_samples(self, samples: gpd.GeoDataFrame, grid_cells: gpd.GeoDataFrame) -> pd.DataFrame:
        """Samples of each tile that also fall inside the tile's paired grid cell"""

        joined = gpd.sjoin(
            samples[['Tile_ID', 'geometry']],
            grid_cells[['Tile_ID', 'geometry']].to_crs(samples.crs),
            how='inner',
            predicate='within',
            lsuffix='sample',
            rsuffix='gridcell'
        )
        paired = joined[joined['Tile_ID_sample'] == joined['Tile_ID_gridcell']]
        counts = paired.groupby('Tile_ID_gridcell').size().rename('GridCell_SampleSize')
        return counts.rename_axis('Tile_ID').reset_index()

    def attach_counts(self, grid_cells: gpd.GeoDataFrame, samples: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Grid cells with Sample_Count, GridCell_SampleSize and SampleCount_Ratio"""

        counted = grid_cells.merge(self.count_tile_samples(samples), on='Tile_ID', how='left')
        counted = counted.merge(self.count_gridcell_samples(samples, grid_cells), on='Tile_ID', how='left')
        counted[['Sample_Count', 'GridCell_SampleSize']] = counted[['Sample_Count', 'GridCell_SampleSize']].fillna(0).astype('int64')
        empty = counted['Sample_Count'] == 0
        if empty.any():
            logging.info(f'Excluding {int(empty.sum())} tiles without samples')
        counted = counted[~empty].copy()
        counted['SampleCount_Ratio'] = counted['GridCell_SampleSize'] / counted['Sample_Count']
        return counted

    def apply_thresholds(self, counted: pd.DataFrame, min_sample_count: int=None, min_ratio: float=None) -> pd.DataFrame:
        """Keep rows meeting both the absolute count and the grid cell ratio thresholds"""

        min_sample_count = self.min_sample_count if min_sample_count is None else min_sample_count
        min_ratio = self.min_ratio if min_ratio is None else min_ratio
        keep = (counted['Sample_Count'] >= min_sample_count) & (counted['SampleCount_Ratio'] >= min_ratio)
        return counted[keep]

    def pair_tiles(self, selected_cells: gpd.GeoDataFrame, tiles: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Carry the selected grid cell counts onto the tiles with the same Tile_ID"""

        attributes = selected_cells[['Tile_ID', 'Sample_Count', 'GridCell_SampleSize', 'SampleCount_Ratio']]
        attributes = attributes.drop_duplicates(subset='Tile_ID', keep='first')
        paired = tiles.merge(attributes, on='Tile_ID', how='inner')
        unmatched = sorted(set(attributes['Tile_ID']) - set(paired['Tile_ID']))
        if unmatched:
            logging.warning(f'Dropping grid cells with no matching tile: {unmatched}')
        return paired.sort_values('Tile_ID').reset_index(drop=True)

    def select(self, tiles: gpd.GeoDataFrame, grid_cells: gpd.GeoDataFrame, samples: gpd.GeoDataFrame) -> tuple[gpd.GeoDataFrame, gpd.GeoDataFrame]:
        """
        Select tiles with enough samples overall and inside their grid cell
        :param gpd.GeoDataFrame tiles: All tiles
        :param gpd.GeoDataFrame grid_cells: All grid cells
        :param gpd.GeoDataFrame samples: Vectorized samples with Tile_ID
        :returns tuple: Selected tiles and their paired grid cells
        """

        orphan_tiles = sorted(set(tiles['Tile_ID']) - set(grid_cells['Tile_ID']))
        if orphan_tiles:
            logging.warning(f'Dropping tiles with no paired grid cell: {orphan_tiles}')
        counted = self.attach_counts(grid_cells, samples)
        selected_cells = self.apply_thresholds(counted)
        selected_tiles = self.pair_tiles(selected_cells, tiles)
        selected_cells = selected_cells[selected_cells['Tile_ID'].isin(selected_tiles['Tile_ID'])]
        selected_cells = selected_cells.sort_values('Tile_ID').reset_index(drop=True)
        return selected_tiles, selected_cells

    def summarize(self, selected_tiles: pd.DataFrame) -> dict[str, float]:
        """Distribution of Sample_Count over the selected tiles"""

        counts = selected_tiles['Sample_Count']
        return {
            'Tile_Count': int(len(counts)),
            'Mean': float(counts.mean()),
            'Median': float(counts.median()),
            'Min': int(counts.min()) if len(counts) else 0,
            'Max': int(counts.max()) if len(counts) else 0,
        }

    def run(self, tiles: gpd.GeoDataFrame, grid_cells: gpd.GeoDataFrame, samples: gpd.GeoDataFrame,
            outputs: str|pathlib.Path) -> tuple[gpd.GeoDataFrame, gpd.GeoDataFrame]:
        print('Selecting tiles')
        selected_tiles, selected_cells = self.select(tiles, grid_cells, samples)
        grid_folder = pathlib.Path(outputs) / 'grids'
        grid_folder.mkdir(parents=True, exist_ok=True)
        selected_tiles.to_parquet(grid_folder / 'Selected_Tiles.parquet')
        selected_cells.to_parquet(grid_folder / 'Selected_GridCells.parquet')
        summary = self.summarize(selected_tiles)
        pd.DataFrame([summary]).to_parquet(grid_folder / 'Selected_Tiles_Summary.parquet')
        self.write_message(f'Selected tiles: {summary}', outputs)
        logging.info(f'Selected {len(selected_tiles)} of {len(tiles)} tiles')
        return selected_tiles, selected_cells
