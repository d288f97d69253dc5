import pathlib
import logging
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from gedi_estimation.engines.Engine import Engine


class AccuracyExaminationEngine(Engine):
    """Merge per-batch accuracy tables and summarize them per response variable"""

    def __init__(self, env_string: str=False):
        super().__init__(env_string)
        examination = self.config('EXAMINATION')
        self.lower_percentile = float(examination['LOWER_PERCENTILE'])
        self.upper_percentile = float(examination['UPPER_PERCENTILE'])
        self.min_median_r2 = float(examination['MIN_MEDIAN_R2'])

    def merge_accuracy(self, outputs: str|pathlib.Path, tile_ids=None) -> pd.DataFrame:
        """Concatenate the Accuracy_Tiles tables under the prediction folder, oldest first"""

        accuracy_files = sorted((pathlib.Path(outputs) / 'prediction').rglob('Accuracy_Tiles*.parquet'),
                                key=lambda accuracy_file: (accuracy_file.stat().st_mtime, str(accuracy_file)))
        if not accuracy_files:
            raise FileNotFoundError(f'No accuracy tables found under {outputs}')
        merged = pd.concat([pd.read_parquet(accuracy_file) for accuracy_file in accuracy_files], ignore_index=True)
        if tile_ids is not None:
            merged = merged[merged['Tile_ID'].isin(tile_ids)]
        # the newest table wins for a repeated tile
        merged = merged.drop_duplicates(subset=['Tile_ID', 'Response_Var'], keep='last')
        return merged.sort_values(['Response_Var', 'Tile_ID']).reset_index(drop=True)

    def summarize(self, accuracy: pd.DataFrame) -> pd.DataFrame:
        """Lower, median and upper percentiles of RMSE and R-squared, ignoring undefined values"""

        percentiles = {'P_Lower': self.lower_percentile, 'Median': 50, 'P_Upper': self.upper_percentile}
        rows = []
        for response_var, group in accuracy.groupby('Response_Var', sort=False):
            row = {'Response_Var': response_var, 'Tile_Count': len(group)}
            for metric in ['RMSE', 'R_squared']:
                values = group[metric].to_numpy(dtype=float)
                values = values[np.isfinite(values)]
                row[f'{metric}_Count'] = len(values)
                for label, percentile in percentiles.items():
                    row[f'{metric}_{label}'] = float(np.percentile(values, percentile)) if len(values) else np.nan
            rows.append(row)
        return pd.DataFrame(rows)

    def get_well_modeled(self, summary: pd.DataFrame) -> list[str]:
        """Response variables whose median R-squared meets the threshold"""

        return list(summary.loc[summary['R_squared_Median'] >= self.min_median_r2, 'Response_Var'])

    def create_accuracy_report(self, accuracy: pd.DataFrame, output_folder: str|pathlib.Path) -> pathlib.Path:
        fig, axes = plt.subplots(1, 2, figsize=(16, 7))
        sns.boxplot(data=accuracy, y='Response_Var', x='R_squared', ax=axes[0], color='steelblue', orient='h')
        axes[0].set_title('Tile R-squared')
        sns.boxplot(data=accuracy, y='Response_Var', x='RMSE', ax=axes[1], color='darkorange', orient='h')
        axes[1].set_title('Tile RMSE')
        plt.tight_layout()
        report_path = pathlib.Path(output_folder) / 'reports' / 'accuracy_report.png'
        report_path.parents[0].mkdir(parents=True, exist_ok=True)
        plt.savefig(report_path, dpi=100)
        plt.close()
        return report_path

    def run(self, outputs: str|pathlib.Path, selected_tiles: pd.DataFrame=None) -> tuple[pd.DataFrame, pd.DataFrame]:
        print('Examining tile accuracy')
        tile_ids = None if selected_tiles is None else set(selected_tiles['Tile_ID'])
        accuracy = self.merge_accuracy(outputs, tile_ids)
        summary = self.summarize(accuracy)
        prediction_folder = pathlib.Path(outputs) / 'prediction'
        accuracy.to_parquet(prediction_folder / 'Accuracy_AllTiles.parquet')
        summary.to_parquet(prediction_folder / 'Accuracy_Summary.parquet')
        self.create_accuracy_report(accuracy, outputs)
        well_modeled = self.get_well_modeled(summary)
        self.write_message(f'Response variables with median R-squared >= {self.min_median_r2}: {well_modeled}', outputs)
        logging.info(f'Merged accuracy of {len(accuracy)} tile models')
        return accuracy, summary
