import pathlib
import numpy as np
import xarray as xr
import rioxarray as rxr

from rasterio.enums import Resampling
from rasterio.transform import rowcol
from scipy.ndimage import distance_transform_edt
from shapely.geometry.base import BaseGeometry


def _block_mode(values: np.ndarray, axis: tuple[int, ...]) -> np.ndarray:
    """Most frequent non-NaN value of each coarsened block, smallest value on ties"""

    axis = tuple(a % values.ndim for a in axis)
    kept = [a for a in range(values.ndim) if a not in axis]
    moved = np.moveaxis(values, kept + list(axis), list(range(values.ndim)))
    blocks = moved.reshape(moved.shape[:len(kept)] + (-1,))
    result = np.full(blocks.shape[:-1], np.nan)
    for index in np.ndindex(result.shape):
        block = blocks[index]
        block = block[np.isfinite(block)]
        if block.size:
            uniques, counts = np.unique(block, return_counts=True)
            result[index] = uniques[np.argmax(counts)]
    return result


def block_reduce(stack: xr.Dataset, factor: int, discrete_names: list[str]) -> xr.Dataset:
    """Reduce a raster stack to a coarser scale, mode for discrete layers and mean for continuous"""

    if factor == 1:
        return stack
    coarsened = {}
    for name in stack.data_vars:
        window = stack[name].coarsen(x=factor, y=factor, boundary='trim')
        if name in discrete_names:
            coarsened[name] = window.reduce(_block_mode)
        else:
            coarsened[name] = window.mean(skipna=True)
    reduced = xr.Dataset(coarsened)
    if stack.rio.crs is not None:
        reduced = reduced.rio.write_crs(stack.rio.crs)
    return reduced


def clip_to_geometry(stack: xr.Dataset|xr.DataArray, geometry: BaseGeometry, crs) -> xr.Dataset|xr.DataArray:
    """Clip to a polygon, cells outside the polygon become NaN"""

    return stack.rio.clip([geometry], crs=crs, drop=True, all_touched=False)


def distance_to_point(template: xr.DataArray, x: float, y: float) -> np.ndarray:
    """Distance in pixels from every cell to the cell holding a point"""

    row, col = rowcol(template.rio.transform(), x, y)
    height, width = template.shape[-2:]
    # the point may sit outside a clipped window
    pad_top, pad_left = max(0, -row), max(0, -col)
    pad_bottom, pad_right = max(0, row - height + 1), max(0, col - width + 1)
    seeds = np.ones((height + pad_top + pad_bottom, width + pad_left + pad_right), dtype=bool)
    seeds[row + pad_top, col + pad_left] = False
    distances = distance_transform_edt(seeds)
    return distances[pad_top:pad_top + height, pad_left:pad_left + width]


def load_raster_stack(folder: str|pathlib.Path, names: list[str]) -> xr.Dataset:
    """Load single band GeoTIFFs named {layer}.tif into one Dataset"""

    folder = pathlib.Path(folder)
    layers = {}
    for name in names:
        raster_path = folder / f'{name}.tif'
        if not raster_path.exists():
            raise FileNotFoundError(f'Missing raster layer: {raster_path}')
        layers[name] = rxr.open_rasterio(raster_path, masked=True).squeeze('band', drop=True)
    stack = xr.Dataset(layers)
    return stack.rio.write_crs(layers[names[0]].rio.crs)


def reproject_stack(stack: xr.Dataset, crs, resolution: float, discrete_names: list[str]) -> xr.Dataset:
    """Reproject to the prediction scale, nearest for discrete layers and bilinear for continuous"""

    current_resolution = abs(stack.rio.resolution()[0])
    if stack.rio.crs == crs and np.isclose(current_resolution, resolution):
        return stack
    continuous = [name for name in stack.data_vars if name not in discrete_names]
    discrete = [name for name in stack.data_vars if name in discrete_names]
    reprojected = []
    if continuous:
        reprojected.append(stack[continuous].rio.reproject(crs, resolution=resolution, resampling=Resampling.bilinear))
    if discrete:
        reprojected.append(stack[discrete].rio.reproject(crs, resolution=resolution, resampling=Resampling.nearest))
    if len(reprojected) == 2:
        reprojected[1] = reprojected[1].rio.reproject_match(reprojected[0], resampling=Resampling.nearest)
    return xr.merge(reprojected).rio.write_crs(crs)


def window_offsets(domain: xr.DataArray, fragment: xr.DataArray) -> tuple[int, int]:
    """Row and column of a fragment's upper left cell on the domain grid"""

    domain_transform = domain.rio.transform()
    fragment_transform = fragment.rio.transform()
    row = int(round((fragment_transform.f - domain_transform.f) / domain_transform.e))
    col = int(round((fragment_transform.c - domain_transform.c) / domain_transform.a))
    return row, col


def write_raster(raster: xr.DataArray, output_path: str|pathlib.Path) -> pathlib.Path:
    output_path = pathlib.Path(output_path)
    output_path.parents[0].mkdir(parents=True, exist_ok=True)
    raster.astype('float32').rio.write_nodata(np.nan, encoded=False).rio.to_raster(output_path, compress='DEFLATE')
    return output_path
