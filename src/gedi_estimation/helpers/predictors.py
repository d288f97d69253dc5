"""Predictor and response variable lookups"""

from enum import Enum


class PredictorGroup(Enum):
    OPTICAL = 'Optical'
    RADAR = 'Radar'
    TOPOGRAPHY = 'Topography'
    LAND_COVER = 'LandCover'
    LEAF_TRAITS = 'LeafTraits'
    SOIL_PROPERTIES = 'SoilProperties'


RESPONSE_VARS = [
    'RHD_25to50', 'RHD_50to75', 'RHD_75to98', 'rh98',
    'cover', 'fhd_normal', 'pai',
    'PAVD_0_10m', 'PAVD_10_20m', 'PAVD_20_30m', 'PAVD_30_40m', 'PAVD_40_50m', 'PAVD_50_60m', 'PAVD_over60m'
]

# GEDI percentiles used to derive relative height differences
RELATIVE_HEIGHT_DIFFERENCES = {
    'RHD_25to50': ('rh50', 'rh25'),
    'RHD_50to75': ('rh75', 'rh50'),
    'RHD_75to98': ('rh98', 'rh75'),
}

DISCRETE_PREDICTORS = ['Aspect', 'LandCover_ESRI', 'LandCover_GLC', 'Landform']

_OPTICAL_INDICES = ['NDVI', 'kNDVI', 'NIRv', 'EVI', 'NDWI', 'mNDWI', 'NBR', 'BSI', 'SI', 'BU', 'Brightness', 'Greenness', 'Wetness']
_HLS_PREDICTORS = ['B2', 'B3', 'B4', 'B5', 'B6', 'B7'] + _OPTICAL_INDICES
_S2_PREDICTORS = ['SR_B2', 'SR_B3', 'SR_B4', 'SR_B8', 'S2_B5', 'S2_B6', 'S2_B7', 'S2_B8A', 'S2_B11', 'S2_B12'] \
    + [f'S2_{index}' for index in _OPTICAL_INDICES]
_S1_PREDICTORS = ['VV_median', 'VH_median', 'VH_VV_ratio', 'NDRI', 'RVI']
_TOPOGRAPHY_PREDICTORS = ['Elevation', 'Slope', 'Aspect', 'East-westness', 'North-southness', 'CHILI', 'mTPI', 'Topo_Diversity', 'Landform']
_LAND_COVER_PREDICTORS = ['LandCover_ESRI', 'LandCover_GLC']
_LEAF_TRAIT_PREDICTORS = ['SLA', 'LNC', 'LPC', 'LDMC']
_SOIL_PREDICTORS = [f'{prop}_{depth}_mean'
                    for depth in ['0-5cm', '5-15cm', '15-30cm']
                    for prop in ['bdod', 'cec', 'cfvo', 'clay', 'sand', 'silt', 'nitrogen', 'phh2o', 'soc', 'ocd']] \
    + ['ocs_0-30cm_mean']

PREDICTOR_GROUPS = {
    **{name: PredictorGroup.OPTICAL for name in _HLS_PREDICTORS + _S2_PREDICTORS},
    **{name: PredictorGroup.RADAR for name in _S1_PREDICTORS},
    **{name: PredictorGroup.TOPOGRAPHY for name in _TOPOGRAPHY_PREDICTORS},
    **{name: PredictorGroup.LAND_COVER for name in _LAND_COVER_PREDICTORS},
    **{name: PredictorGroup.LEAF_TRAITS for name in _LEAF_TRAIT_PREDICTORS},
    **{name: PredictorGroup.SOIL_PROPERTIES for name in _SOIL_PREDICTORS},
}

ALL_PREDICTORS = list(PREDICTOR_GROUPS)


def get_group(predictor: str) -> PredictorGroup:
    """Look up the group of a predictor name"""

    try:
        return PREDICTOR_GROUPS[predictor]
    except KeyError:
        raise KeyError(f'Unknown predictor: {predictor}') from None


def get_group_predictors(group: PredictorGroup, predictors: list[str]=None) -> list[str]:
    """Predictors of a group, limited to the given predictor set if provided"""

    candidates = ALL_PREDICTORS if predictors is None else predictors
    return [name for name in candidates if PREDICTOR_GROUPS.get(name) == group]


def get_response_var_index(response_var: str) -> int:
    """Position of the response variable, the base of its random seeds"""

    if response_var not in RESPONSE_VARS:
        raise ValueError(f'Unknown response variable: {response_var}')
    return RESPONSE_VARS.index(response_var)
