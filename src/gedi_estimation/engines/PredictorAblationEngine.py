import pathlib
import logging
import dask
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from gedi_estimation.engines.Engine import Engine
from gedi_estimation.engines.HyperparameterTuningEngine import get_optimal_hyperparameters
from gedi_estimation.helpers import modeling
from gedi_estimation.helpers.modeling import Hyperparameters
from gedi_estimation.helpers.predictors import ALL_PREDICTORS, PredictorGroup, get_group_predictors, get_response_var_index


COMPLETE_MODEL = 'Complete'


def _fit_and_score(training: pd.DataFrame, testing: pd.DataFrame, response_var: str, predictors: list[str],
                   hyperparameters: Hyperparameters, seed: int) -> tuple[float, float]:
    """RMSE and R-squared of one model on its testing subset"""

    model = modeling.train_random_forest(training, response_var, predictors, hyperparameters, seed, n_jobs=1)
    return modeling.assess_accuracy(testing[response_var].to_numpy(), modeling.predict(model, testing, predictors))


class PredictorAblationEngine(Engine):
    """Retrain without each predictor group and compare against the complete model"""

    def __init__(self, env_string: str=False):
        super().__init__(env_string)
        self.number_of_trees = int(self.config('MODELING', 'TREE_NUMBER'))

    def get_model_predictors(self, predictors: list[str]) -> dict[str, list[str]]:
        """Complete predictor set plus one reduced set per group present"""

        model_predictors = {COMPLETE_MODEL: list(predictors)}
        for group in PredictorGroup:
            excluded = set(get_group_predictors(group, predictors))
            if excluded:
                model_predictors[group.value] = [name for name in predictors if name not in excluded]
        return model_predictors

    def evaluate_drawings(self, drawings: pd.DataFrame, optima: pd.DataFrame, response_vars: list[str]) -> pd.DataFrame:
        """
        Score complete and group-excluded models for every tile, drawing and response variable
        :param pd.DataFrame drawings: Samples with Tile_ID, Drawing_ID and Category (1 train, 0 test)
        :param pd.DataFrame optima: Tuned hyperparameters
        :param list[str] response_vars: Response variables to test
        :returns pd.DataFrame: One accuracy row per model
        """

        predictors = [name for name in ALL_PREDICTORS if name in drawings.columns]
        model_predictors = self.get_model_predictors(predictors)
        keys, tasks = [], []
        for response_var in response_vars:
            hyperparameters = get_optimal_hyperparameters(optima, response_var, self.number_of_trees)
            response_var_index = get_response_var_index(response_var)
            for (tile_id, drawing_id), drawing in drawings.groupby(['Tile_ID', 'Drawing_ID'], sort=True):
                usable = drawing.dropna(subset=predictors + [response_var]).sort_values(['Tile_ID', 'Sample_ID'], kind='mergesort')
                training = usable[usable['Category'] == 1]
                testing = usable[usable['Category'] == 0]
                if len(training) < 2 or len(testing) < 1:
                    logging.warning(f'Tile {tile_id} drawing {drawing_id} has too few samples for {response_var}')
                    continue
                # complete and partial models share a seed
                seed = int(tile_id) * int(drawing_id) * (response_var_index + 1)
                for model_name, names in model_predictors.items():
                    keys.append({'Tile_ID': int(tile_id), 'Drawing_ID': int(drawing_id), 'Response_Var': response_var, 'Model': model_name})
                    tasks.append(dask.delayed(_fit_and_score)(training, testing, response_var, names, hyperparameters, seed))
        scores = dask.compute(*tasks)
        results = pd.DataFrame(keys, columns=['Tile_ID', 'Drawing_ID', 'Response_Var', 'Model'])
        results['RMSE'] = [score[0] for score in scores]
        results['R_squared'] = [score[1] for score in scores]
        return results

    def compare_models(self, results: pd.DataFrame) -> pd.DataFrame:
        """Complete minus group-excluded accuracy for each drawing"""

        keys = ['Tile_ID', 'Drawing_ID', 'Response_Var']
        complete = results[results['Model'] == COMPLETE_MODEL][keys + ['RMSE', 'R_squared']]
        partial = results[results['Model'] != COMPLETE_MODEL]
        compared = partial.merge(complete, on=keys, suffixes=('_Partial', '_Complete'))
        compared['d_R2'] = compared['R_squared_Complete'] - compared['R_squared_Partial']
        compared['d_RMSE'] = compared['RMSE_Complete'] - compared['RMSE_Partial']
        return compared.rename(columns={'Model': 'Pred_Grp'})[keys + ['Pred_Grp', 'd_R2', 'd_RMSE']]

    def aggregate(self, comparisons: pd.DataFrame) -> pd.DataFrame:
        """Mean and standard deviation of the differences over drawings"""

        aggregated = (comparisons
                      .groupby(['Tile_ID', 'Response_Var', 'Pred_Grp'])
                      .agg(d_R2_Mean=('d_R2', 'mean'), d_R2_SD=('d_R2', 'std'),
                           d_RMSE_Mean=('d_RMSE', 'mean'), d_RMSE_SD=('d_RMSE', 'std'),
                           Drawing_Count=('d_R2', 'count'))
                      .reset_index())
        return aggregated

    def evaluate_global_model(self, drawings: pd.DataFrame, optima: pd.DataFrame, response_vars: list[str]) -> pd.DataFrame:
        """One model per drawing trained on the pooled samples of all tiles"""

        predictors = [name for name in ALL_PREDICTORS if name in drawings.columns]
        keys, tasks = [], []
        for response_var in response_vars:
            hyperparameters = get_optimal_hyperparameters(optima, response_var, self.number_of_trees)
            response_var_index = get_response_var_index(response_var)
            for drawing_id, drawing in drawings.groupby('Drawing_ID', sort=True):
                usable = drawing.dropna(subset=predictors + [response_var]).sort_values(['Tile_ID', 'Sample_ID'], kind='mergesort')
                training = usable[usable['Category'] == 1]
                testing = usable[usable['Category'] == 0]
                if len(training) < 2 or len(testing) < 1:
                    continue
                keys.append({'Drawing_ID': int(drawing_id), 'Response_Var': response_var})
                tasks.append(dask.delayed(_fit_and_score)(training, testing, response_var, predictors, hyperparameters,
                                                          int(drawing_id) * (response_var_index + 1)))
        scores = dask.compute(*tasks)
        results = pd.DataFrame(keys, columns=['Drawing_ID', 'Response_Var'])
        results['RMSE'] = [score[0] for score in scores]
        results['R_squared'] = [score[1] for score in scores]
        return results

    def compare_global_local(self, global_results: pd.DataFrame, local_results: pd.DataFrame) -> pd.DataFrame:
        """Mean and standard deviation of global and per-tile complete model accuracy"""

        local_complete = local_results[local_results['Model'] == COMPLETE_MODEL]
        summaries = []
        for label, results in [('Global', global_results), ('Local', local_complete)]:
            summary = (results.groupby('Response_Var')
                       .agg(R2_Mean=('R_squared', 'mean'), R2_SD=('R_squared', 'std'),
                            RMSE_Mean=('RMSE', 'mean'), RMSE_SD=('RMSE', 'std'))
                       .reset_index())
            summary['Model'] = label
            summaries.append(summary)
        return pd.concat(summaries, ignore_index=True)

    def create_ablation_report(self, aggregated: pd.DataFrame, output_folder: str|pathlib.Path) -> pathlib.Path:
        fig, ax = plt.subplots(1, 1, figsize=(12, 8))
        sns.boxplot(data=aggregated, y='Response_Var', x='d_R2_Mean', hue='Pred_Grp', ax=ax, orient='h')
        ax.axvline(0, color='grey', linewidth=0.7)
        ax.set_title('R-squared lost when a predictor group is excluded')
        plt.tight_layout()
        report_path = pathlib.Path(output_folder) / 'reports' / 'ablation_report.png'
        report_path.parents[0].mkdir(parents=True, exist_ok=True)
        plt.savefig(report_path, dpi=100)
        plt.close()
        return report_path

    def run(self, drawings: pd.DataFrame, optima: pd.DataFrame, response_vars: list[str], outputs: str|pathlib.Path) -> pd.DataFrame:
        print('Testing predictor groups')
        ablation_folder = pathlib.Path(outputs) / 'ablation'
        ablation_folder.mkdir(parents=True, exist_ok=True)
        results = self.evaluate_drawings(drawings, optima, response_vars)
        comparisons = self.compare_models(results)
        aggregated = self.aggregate(comparisons)
        global_local = self.compare_global_local(self.evaluate_global_model(drawings, optima, response_vars), results)
        results.to_parquet(ablation_folder / 'Model_Results.parquet')
        comparisons.to_parquet(ablation_folder / 'Model_Comparison.parquet')
        aggregated.to_parquet(ablation_folder / 'Model_Comparison_Aggregated.parquet')
        global_local.to_parquet(ablation_folder / 'Global_vs_Local.parquet')
        self.create_ablation_report(aggregated, outputs)
        self.write_message(f'Ablation models: {len(results)}', outputs)
        logging.info(f'Compared {len(comparisons)} group-excluded models')
        return aggregated
