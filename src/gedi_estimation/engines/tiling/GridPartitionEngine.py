import math
import pathlib
import logging
import numpy as np
import geopandas as gpd
import shapely

from gedi_estimation.engines.Engine import Engine
from gedi_estimation.helpers.tools import assign_random_rank_ids


class GridPartitionEngine(Engine):
    """Build the grid cells and overlapping tiles covering the study area"""

    def __init__(self, env_string: str=False):
        super().__init__(env_string)
        self.crs = self.config('GRID', 'CRS')
        self.gridcell_size = float(self.config('GRID', 'GRIDCELL_SIZE'))
        self.seed = int(self.config('GRID', 'SEED'))

    def assign_ids(self, grid: gpd.GeoDataFrame, id_column: str='Tile_ID') -> gpd.GeoDataFrame:
        """Random-then-rank IDs so numbering never follows scan order"""

        numbered = assign_random_rank_ids(grid, id_column, self.seed, ['grid_row', 'grid_col'])
        return gpd.GeoDataFrame(numbered, geometry='geometry', crs=grid.crs)

    def create_grid(self, study_area: gpd.GeoDataFrame, cell_size: float) -> gpd.GeoDataFrame:
        """
        Create square cells covering the study area, aligned to multiples of the cell size
        :param gpd.GeoDataFrame study_area: Study area polygons
        :param float cell_size: Cell width in CRS units
        :returns gpd.GeoDataFrame: Cells intersecting the study area with their row/column index
        """

        study_area = study_area.to_crs(self.crs)
        domain = study_area.union_all()
        xmin, ymin, xmax, ymax = domain.bounds
        cols = np.arange(math.floor(xmin / cell_size), math.ceil(xmax / cell_size))
        rows = np.arange(math.floor(ymin / cell_size), math.ceil(ymax / cell_size))
        grid_col, grid_row = [index.ravel() for index in np.meshgrid(cols, rows)]
        cells = shapely.box(grid_col * cell_size, grid_row * cell_size, (grid_col + 1) * cell_size, (grid_row + 1) * cell_size)
        grid = gpd.GeoDataFrame({'grid_row': grid_row, 'grid_col': grid_col}, geometry=cells, crs=self.crs)
        grid = grid[grid.intersects(domain)].reset_index(drop=True)
        print(f' - {len(grid)} cells of {cell_size / 1000:g} km')
        return grid

    def create_tiles(self, grid_cells: gpd.GeoDataFrame, fine_grid: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
        """Union the fine cells around each grid cell into a tile sharing its Tile_ID"""

        fine_size = self.gridcell_size / 2
        bounds = grid_cells.bounds
        # reaching halfway into the neighbouring fine cells picks up one ring of them
        margin = fine_size / 2
        search_areas = gpd.GeoDataFrame(
            grid_cells[['Tile_ID']],
            geometry=shapely.box(bounds['minx'] - margin, bounds['miny'] - margin, bounds['maxx'] + margin, bounds['maxy'] + margin),
            crs=grid_cells.crs
        )
        joined = gpd.sjoin(fine_grid[['geometry']], search_areas, how='inner', predicate='intersects')
        tiles = joined[['Tile_ID', 'geometry']].dissolve(by='Tile_ID').reset_index()
        missing = set(grid_cells['Tile_ID']) - set(tiles['Tile_ID'])
        if missing:
            logging.warning(f'No fine cells found for grid cells: {sorted(missing)}')
        return tiles.sort_values('Tile_ID').reset_index(drop=True)

    def partition(self, study_area: gpd.GeoDataFrame) -> tuple[gpd.GeoDataFrame, gpd.GeoDataFrame, gpd.GeoDataFrame]:
        """Grid cells, fine cells and tiles for the study area"""

        grid_cells = self.assign_ids(self.create_grid(study_area, self.gridcell_size))
        fine_grid = self.assign_ids(self.create_grid(study_area, self.gridcell_size / 2), id_column='Cell_ID')
        tiles = self.create_tiles(grid_cells, fine_grid)
        return grid_cells, fine_grid, tiles

    def run(self, study_area: gpd.GeoDataFrame, outputs: str|pathlib.Path) -> tuple[gpd.GeoDataFrame, gpd.GeoDataFrame]:
        print('Partitioning study area')
        grid_cells, fine_grid, tiles = self.partition(study_area)
        grid_folder = pathlib.Path(outputs) / 'grids'
        grid_folder.mkdir(parents=True, exist_ok=True)
        tile_size = int(self.gridcell_size * 2 / 1000)
        gridcell_size = int(self.gridcell_size / 1000)
        grid_cells.to_parquet(grid_folder / f'GridCells_{gridcell_size}km.parquet')
        fine_grid.to_parquet(grid_folder / f'GridCells_{gridcell_size / 2:g}km.parquet')
        tiles.to_parquet(grid_folder / f'Tiles_{tile_size}km.parquet')
        self.write_message(f'Grid cells: {len(grid_cells)}, tiles: {len(tiles)}', outputs)
        logging.info(f'Created {len(grid_cells)} grid cells and {len(tiles)} tiles')
        return grid_cells, tiles
