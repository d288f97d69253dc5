import pathlib
import logging
import dask
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from gedi_estimation.engines.Engine import Engine
from gedi_estimation.helpers import modeling
from gedi_estimation.helpers.modeling import Hyperparameters
from gedi_estimation.helpers.predictors import ALL_PREDICTORS, get_response_var_index
from gedi_estimation.helpers.tools import split_samples


# tuning order, the position doubles as the ID used in split seeds
HP_NAMES = ['variablesPerSplit', 'minLeafPopulation', 'bagFraction']
HP_FIELDS = {
    'variablesPerSplit': 'variables_per_split',
    'minLeafPopulation': 'min_leaf_population',
    'bagFraction': 'bag_fraction',
}


def _evaluate_candidate(training: pd.DataFrame, testing: pd.DataFrame, response_var: str, predictors: list[str],
                        hyperparameters: Hyperparameters, seed: int) -> float:
    """Test RMSE of one candidate setting"""

    model = modeling.train_random_forest(training, response_var, predictors, hyperparameters, seed, n_jobs=1)
    rmse, _ = modeling.assess_accuracy(testing[response_var].to_numpy(), modeling.predict(model, testing, predictors))
    return rmse


class HyperparameterTuningEngine(Engine):
    """Coarse-to-fine, one-hyperparameter-at-a-time Random Forest tuning per response variable"""

    def __init__(self, env_string: str=False):
        super().__init__(env_string)
        tuning = self.config('TUNING')
        self.training_ratio = float(tuning['TRAINING_RATIO'])
        self.number_of_trees = int(tuning['TREE_NUMBER'])
        self.tree_numbers = tuning['TREE_NUMBERS']
        self.rounds = int(tuning['ROUNDS'])
        self.default_min_leaf = int(tuning['DEFAULT_MIN_LEAF_POPULATION'])
        self.default_bag_fraction = float(tuning['DEFAULT_BAG_FRACTION'])
        self.coarse_step = int(tuning['COARSE_STEP'])
        self.fine_step = int(tuning['FINE_STEP'])
        self.refine_candidates = int(tuning['REFINE_CANDIDATES'])
        self.manual_overrides = tuning.get('MANUAL_OVERRIDES') or []
        self.grid_bounds = {hp_name: (int(bounds[0]), int(bounds[1])) for hp_name, bounds in tuning['GRID_BOUNDS'].items()}

    def get_bounds(self, hp_name: str, predictor_count: int) -> tuple[int, int]:
        """Lowest and highest grid value, bagFraction in percent"""

        if hp_name == 'variablesPerSplit':
            return 1, predictor_count
        elif hp_name in self.grid_bounds:
            return self.grid_bounds[hp_name]
        raise ValueError(f'Unknown hyperparameter: {hp_name}')

    def get_coarse_values(self, hp_name: str, predictor_count: int) -> list[int]:
        low, high = self.get_bounds(hp_name, predictor_count)
        return sorted({low, high, *range(self.coarse_step, high, self.coarse_step)})

    def get_refined_values(self, coarse_results: pd.DataFrame, hp_name: str, predictor_count: int, limits: list[int]=None) -> list[int]:
        """Every value around the best coarse candidates, or inside manual limits"""

        if limits:
            low, high = int(limits[0]), int(limits[1])
        else:
            best = coarse_results.sort_values(['RMSE', 'Grid_Value']).head(self.refine_candidates)['Grid_Value']
            lower_bound, upper_bound = self.get_bounds(hp_name, predictor_count)
            low = max(lower_bound, int(best.min()) - self.coarse_step)
            high = min(upper_bound, int(best.max()) + self.coarse_step)
        return list(range(low, high + 1, self.fine_step))

    def get_override(self, response_var: str, round_id: int, hp_name: str) -> dict:
        for override in self.manual_overrides:
            if (override['RESPONSE_VAR'] == response_var and int(override['ROUND_ID']) == round_id
                    and override['HP_NAME'] == hp_name):
                return override
        return {}

    def to_model_value(self, hp_name: str, grid_value: int) -> int|float:
        return grid_value / 100 if hp_name == 'bagFraction' else int(grid_value)

    def evaluate_values(self, training: pd.DataFrame, testing: pd.DataFrame, response_var: str, predictors: list[str],
                        current: Hyperparameters, hp_name: str, grid_values: list[int]) -> list[float]:
        """RMSE of each candidate value, fitted in parallel"""

        tasks = []
        for grid_value in grid_values:
            candidate = current._replace(**{HP_FIELDS[hp_name]: self.to_model_value(hp_name, grid_value)})
            # the grid value seeds the forest, bagFraction in percent
            tasks.append(dask.delayed(_evaluate_candidate)(training, testing, response_var, predictors, candidate, grid_value))
        return list(dask.compute(*tasks))

    def sweep(self, samples: pd.DataFrame, response_var: str, predictors: list[str], current: Hyperparameters,
              hp_name: str, round_id: int) -> tuple[pd.DataFrame, dict]:
        """
        Tune one hyperparameter with the others held at their current values
        :param pd.DataFrame samples: Tuning samples
        :param str response_var: Response variable
        :param list[str] predictors: Predictor columns
        :param Hyperparameters current: Best values so far
        :param str hp_name: Hyperparameter to tune
        :param int round_id: Round number starting at 1
        :returns tuple: Records of both tuning steps and the optimal record
        """

        hp_id = HP_NAMES.index(hp_name) + 1
        seed = hp_id * round_id * (get_response_var_index(response_var) + 1)
        training, testing = split_samples(samples, seed, self.training_ratio, 'Split_ID')
        override = self.get_override(response_var, round_id, hp_name)

        records = []
        grid_values = self.get_coarse_values(hp_name, len(predictors))
        for tuning_id in [1, 2]:
            if tuning_id == 2:
                grid_values = self.get_refined_values(pd.DataFrame(records), hp_name, len(predictors), override.get('LIMITS'))
            rmses = self.evaluate_values(training, testing, response_var, predictors, current, hp_name, grid_values)
            for grid_value, rmse in zip(grid_values, rmses):
                records.append({
                    'Response_Var': response_var,
                    'Round_ID': round_id,
                    'Tuning_ID': tuning_id,
                    'HP_Name': hp_name,
                    'Grid_Value': grid_value,
                    'HP_Value': self.to_model_value(hp_name, grid_value),
                    'RMSE': rmse
                })
        results = pd.DataFrame(records)

        refined = results[results['Tuning_ID'] == 2]
        if 'VALUE' in override:
            # manual picks come from the recorded sweep like automatic ones
            picked = refined[refined['Grid_Value'] == int(override['VALUE'])]
            if picked.empty:
                raise ValueError(f'Manual {hp_name} value {override["VALUE"]} is outside the refined range for {response_var}')
            logging.info(f'Manual {hp_name} pick for {response_var} round {round_id}: {override["VALUE"]}')
        else:
            picked = refined.sort_values(['RMSE', 'Grid_Value']).head(1)
        optimum = picked.iloc[0].to_dict()
        optimum['Manual'] = 'VALUE' in override
        return results, optimum

    def tune_tree_number(self, samples: pd.DataFrame, response_var: str, predictors: list[str]) -> pd.DataFrame:
        """RMSE against tree count with default settings"""

        seed = get_response_var_index(response_var) + 1
        training, testing = split_samples(samples, seed, self.training_ratio, 'Split_ID')
        sweep = self.tree_numbers
        tree_numbers = sorted({int(sweep['LOWEST']), int(sweep['HIGHEST']), *range(int(sweep['START']), int(sweep['END']) + 1, int(sweep['STEP']))})
        defaults = Hyperparameters(max(1, round(len(predictors) / 3)), self.default_min_leaf, self.default_bag_fraction)
        tasks = [dask.delayed(_evaluate_candidate)(training, testing, response_var, predictors, defaults._replace(number_of_trees=trees), trees)
                 for trees in tree_numbers]
        rmses = dask.compute(*tasks)
        return pd.DataFrame({'Response_Var': response_var, 'Tree_Number': tree_numbers, 'RMSE': list(rmses)})

    def tune_response_var(self, samples: pd.DataFrame, response_var: str, predictors: list[str]) -> tuple[pd.DataFrame, pd.DataFrame]:
        """All rounds for one response variable"""

        usable = samples.dropna(subset=list(predictors) + [response_var])
        current = Hyperparameters(max(1, round(len(predictors) / 3)), self.default_min_leaf, self.default_bag_fraction, self.number_of_trees)
        all_results = []
        optima = []
        for round_id in range(1, self.rounds + 1):
            for hp_name in HP_NAMES:
                results, optimum = self.sweep(usable, response_var, predictors, current, hp_name, round_id)
                current = current._replace(**{HP_FIELDS[hp_name]: optimum['HP_Value']})
                all_results.append(results)
                optima.append(optimum)
            print(f' - {response_var} round {round_id}: {current}')
        return pd.concat(all_results, ignore_index=True), pd.DataFrame(optima)

    def get_predictors(self, samples: pd.DataFrame) -> list[str]:
        predictors = [name for name in ALL_PREDICTORS if name in samples.columns]
        if not predictors:
            raise ValueError('No predictor columns found in the tuning samples')
        return predictors

    def create_tuning_report(self, results: pd.DataFrame, tree_results: pd.DataFrame, output_folder: str|pathlib.Path) -> pathlib.Path:
        """Plot RMSE curves of the tree count and the last round of each hyperparameter"""

        last_round = results[(results['Round_ID'] == results['Round_ID'].max()) & (results['Tuning_ID'] == 1)]
        fig, axes = plt.subplots(1, 4, figsize=(22, 5))
        sns.lineplot(data=tree_results, x='Tree_Number', y='RMSE', hue='Response_Var', ax=axes[0], legend=False)
        axes[0].set_title('Tree number')
        for ax, hp_name in zip(axes[1:], HP_NAMES):
            sns.lineplot(data=last_round[last_round['HP_Name'] == hp_name], x='HP_Value', y='RMSE', hue='Response_Var', ax=ax, legend=hp_name == 'bagFraction')
            ax.set_title(hp_name)
        plt.tight_layout()
        report_path = pathlib.Path(output_folder) / 'reports' / 'tuning_report.png'
        report_path.parents[0].mkdir(parents=True, exist_ok=True)
        plt.savefig(report_path, dpi=100)
        plt.close()
        return report_path

    def run(self, collected: pd.DataFrame, response_vars: list[str], outputs: str|pathlib.Path) -> pd.DataFrame:
        print('Tuning hyperparameters')
        predictors = self.get_predictors(collected)
        tree_results, all_results, all_optima = [], [], []
        for response_var in response_vars:
            tree_results.append(self.tune_tree_number(collected, response_var, predictors))
            results, optima = self.tune_response_var(collected, response_var, predictors)
            all_results.append(results)
            all_optima.append(optima)
            self.write_message(f'Tuned {response_var}', outputs)

        tuning_folder = pathlib.Path(outputs) / 'tuning'
        tuning_folder.mkdir(parents=True, exist_ok=True)
        tree_results = pd.concat(tree_results, ignore_index=True)
        results = pd.concat(all_results, ignore_index=True)
        optima = pd.concat(all_optima, ignore_index=True)
        tree_results.to_parquet(tuning_folder / 'TreeNumber_Results.parquet')
        results.to_parquet(tuning_folder / 'HP_Results.parquet')
        optima.to_parquet(tuning_folder / 'Optimal_HPs.parquet')
        self.create_tuning_report(results, tree_results, outputs)
        logging.info(f'Tuned {len(response_vars)} response variables')
        return optima


def get_optimal_hyperparameters(optima: pd.DataFrame, response_var: str, number_of_trees: int) -> Hyperparameters:
    """Picks of the last tuning round for a response variable"""

    subset = optima[optima['Response_Var'] == response_var]
    if subset.empty:
        raise KeyError(f'No tuned hyperparameters for {response_var}')
    last_round = subset[subset['Round_ID'] == subset['Round_ID'].max()]
    values = {HP_FIELDS[row['HP_Name']]: row['HP_Value'] for _, row in last_round.iterrows()}
    return Hyperparameters(
        variables_per_split=int(values['variables_per_split']),
        min_leaf_population=int(values['min_leaf_population']),
        bag_fraction=float(values['bag_fraction']),
        number_of_trees=number_of_trees
    )
