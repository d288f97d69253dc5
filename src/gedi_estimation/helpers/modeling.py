import numpy as np
import pandas as pd

from dataclasses import dataclass
from typing import NamedTuple
from sklearn.ensemble import RandomForestRegressor
from sklearn.metrics import mean_squared_error, r2_score


class Hyperparameters(NamedTuple):
    variables_per_split: int
    min_leaf_population: int = 1
    bag_fraction: float = 0.5
    number_of_trees: int = 100


@dataclass(frozen=True)
class ResponseVariableContext:
    """Everything a tile worker needs to model one response variable"""

    response_var: str
    response_var_index: int
    hyperparameters: Hyperparameters
    predictors: tuple[str, ...]

    @property
    def estimate_name(self) -> str:
        return f'Est_{self.response_var}'


def train_random_forest(training: pd.DataFrame, response_var: str, predictors: list[str],
                        hyperparameters: Hyperparameters, seed: int, n_jobs: int=-1) -> RandomForestRegressor:
    """
    Train a Random Forest regressor on a sample table
    :param pd.DataFrame training: Training samples
    :param str response_var: Column to model
    :param list[str] predictors: Predictor columns
    :param Hyperparameters hyperparameters: Tree count and split/leaf/bagging settings
    :param int seed: Random state of the forest
    :param int n_jobs: Parallel jobs for fitting
    :returns RandomForestRegressor: Fitted model
    """

    if not predictors:
        raise ValueError('At least one predictor is required for training')
    model = RandomForestRegressor(
        n_estimators=int(hyperparameters.number_of_trees),
        max_features=min(int(hyperparameters.variables_per_split), len(predictors)),
        min_samples_leaf=int(hyperparameters.min_leaf_population),
        max_samples=float(hyperparameters.bag_fraction),
        bootstrap=True,
        n_jobs=n_jobs,
        random_state=int(seed)
    )
    model.fit(training[list(predictors)].to_numpy(dtype=float), training[response_var].to_numpy(dtype=float))
    return model


def predict(model: RandomForestRegressor, features: pd.DataFrame|np.ndarray, predictors: list[str]=None) -> np.ndarray:
    if isinstance(features, pd.DataFrame):
        features = features[list(predictors)].to_numpy(dtype=float)
    if len(features) == 0:
        return np.empty(0)
    return model.predict(features)


def explain(model: RandomForestRegressor, predictors: list[str]) -> dict[str, float]:
    """Predictor importances, largest first"""

    importances = sorted(zip(predictors, model.feature_importances_), key=lambda item: (-item[1], item[0]))
    return {name: float(value) for name, value in importances}


def assess_accuracy(actual: np.ndarray, predicted: np.ndarray) -> tuple[float, float]:
    """
    RMSE and R-squared of a testing subset
    :param np.ndarray actual: Observed values
    :param np.ndarray predicted: Estimated values
    :returns tuple[float, float]: RMSE and R-squared, R-squared is NaN when the observations are constant
    """

    actual = np.asarray(actual, dtype=float)
    predicted = np.asarray(predicted, dtype=float)
    if len(actual) == 0:
        return np.nan, np.nan
    rmse = float(np.sqrt(mean_squared_error(actual, predicted)))
    # baseline is the testing mean
    ss_tot = float(np.sum((actual - actual.mean()) ** 2))
    if ss_tot == 0:
        return rmse, np.nan
    return rmse, float(r2_score(actual, predicted))


def top_importances(importances: dict[str, float], top_k: int) -> dict[str, object]:
    """Flatten the top-K importances into Var{i}_Name / Var{i}_Importance fields"""

    record = {}
    for rank, (name, value) in enumerate(list(importances.items())[:top_k], start=1):
        record[f'Var{rank}_Name'] = name
        record[f'Var{rank}_Importance'] = value
    return record
