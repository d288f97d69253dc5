import re
import pathlib
import logging
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from gedi_estimation.engines.Engine import Engine
from gedi_estimation.helpers.predictors import ALL_PREDICTORS, PredictorGroup, get_group, get_group_predictors


class PredictorImportanceEngine(Engine):
    """Aggregate per-tile importance rankings into predictor group contributions"""

    def rearrange(self, accuracy: pd.DataFrame) -> pd.DataFrame:
        """
        One row per ranked predictor of each tile model
        :param pd.DataFrame accuracy: Accuracy records with Var{i}_Name and Var{i}_Importance
        :returns pd.DataFrame: Response_Var, Tile_ID, Var_Rank, Var_Name, Var_Impt, Pred_Grp
        """

        name_columns = [re.fullmatch(r'Var(\d+)_Name', column) for column in accuracy.columns]
        ranks = sorted(int(match.group(1)) for match in name_columns if match)
        rows = []
        for _, record in accuracy.iterrows():
            for rank in ranks:
                name = record.get(f'Var{rank}_Name')
                if not isinstance(name, str):
                    continue
                rows.append({
                    'Response_Var': record['Response_Var'],
                    'Tile_ID': int(record['Tile_ID']),
                    'Var_Rank': rank,
                    'Var_Name': name,
                    'Var_Impt': float(record[f'Var{rank}_Importance']),
                    'Pred_Grp': get_group(name).value
                })
        return pd.DataFrame(rows, columns=['Response_Var', 'Tile_ID', 'Var_Rank', 'Var_Name', 'Var_Impt', 'Pred_Grp'])

    def summarize_groups(self, long_importance: pd.DataFrame, predictors: list[str]=None) -> pd.DataFrame:
        """Mean, count and sum of importance per response variable, tile and group"""

        predictors = ALL_PREDICTORS if predictors is None else predictors
        group_sizes = {group.value: len(get_group_predictors(group, predictors)) for group in PredictorGroup}
        summary = (long_importance
                   .groupby(['Response_Var', 'Tile_ID', 'Pred_Grp'])['Var_Impt']
                   .agg(GrpImpt_Mean='mean', GrpImpt_Count='count', GrpImpt_Sum='sum')
                   .reset_index())
        summary['GrpImpt_CountRatio'] = summary['GrpImpt_Count'] / summary['Pred_Grp'].map(group_sizes)
        return summary

    def rank_groups(self, summary: pd.DataFrame) -> pd.DataFrame:
        """Group with the highest mean importance for each tile model"""

        ordered = summary.sort_values(['Response_Var', 'Tile_ID', 'GrpImpt_Mean', 'GrpImpt_Sum', 'Pred_Grp'],
                                      ascending=[True, True, False, False, True])
        top = ordered.groupby(['Response_Var', 'Tile_ID'], sort=True).head(1)
        return top.rename(columns={'Pred_Grp': 'Top_Group', 'GrpImpt_Mean': 'Top_Value'})[
            ['Response_Var', 'Tile_ID', 'Top_Group', 'Top_Value']].reset_index(drop=True)

    def count_top_groups(self, ranking: pd.DataFrame) -> pd.DataFrame:
        """How often each group ranks first, per response variable"""

        counts = ranking.groupby(['Response_Var', 'Top_Group']).size().rename('Tile_Count').reset_index()
        counts['Tile_Ratio'] = counts['Tile_Count'] / counts.groupby('Response_Var')['Tile_Count'].transform('sum')
        return counts

    def create_importance_report(self, summary: pd.DataFrame, output_folder: str|pathlib.Path) -> pathlib.Path:
        plot_data = summary.groupby(['Response_Var', 'Pred_Grp'])['GrpImpt_Sum'].mean().reset_index()
        fig, ax = plt.subplots(1, 1, figsize=(12, 8))
        sns.barplot(data=plot_data, y='Response_Var', x='GrpImpt_Sum', hue='Pred_Grp', ax=ax, orient='h')
        ax.set_title('Mean summed importance of predictor groups')
        ax.set_xlabel('Importance')
        plt.tight_layout()
        report_path = pathlib.Path(output_folder) / 'reports' / 'importance_report.png'
        report_path.parents[0].mkdir(parents=True, exist_ok=True)
        plt.savefig(report_path, dpi=100)
        plt.close()
        return report_path

    def run(self, accuracy: pd.DataFrame, outputs: str|pathlib.Path) -> pd.DataFrame:
        print('Summarizing predictor importance')
        importance_folder = pathlib.Path(outputs) / 'importance'
        importance_folder.mkdir(parents=True, exist_ok=True)
        long_importance = self.rearrange(accuracy)
        summary = self.summarize_groups(long_importance)
        ranking = self.rank_groups(summary)
        long_importance.to_parquet(importance_folder / 'Importance_Rearranged.parquet')
        summary.to_parquet(importance_folder / 'Importance_GroupSummary.parquet')
        ranking.to_parquet(importance_folder / 'Importance_Ranking.parquet')
        self.count_top_groups(ranking).to_parquet(importance_folder / 'Importance_TopGroupCounts.parquet')
        self.create_importance_report(summary, outputs)
        logging.info(f'Summarized importance of {len(accuracy)} tile models')
        return summary
