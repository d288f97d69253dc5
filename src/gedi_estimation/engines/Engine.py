import os
import pathlib
import logging

from dask.distributed import Client, LocalCluster
from gedi_estimation.helpers.tools import get_config_item


class Engine:
    """Base class for all Engines"""

    def __init__(self, env_string: str=False):
        self.env_string = env_string
        self.client = None
        self.cluster = None

    def close_dask(self) -> None:
        """Shut down Dask objects"""

        if self.client is not None:
            self.client.close()
            self.client = None
        if self.cluster is not None:
            self.cluster.close()
            self.cluster = None

    def config(self, parent: str, child: str=False):
        return get_config_item(parent, child, self.env_string)

    def print_async_results(self, results: list[str], output_folder: str|pathlib.Path) -> None:
        """Consolidate result printing"""

        for result in results:
            if result:
                self.write_message(result, output_folder)

    def setup_dask(self, n_workers: int=None, processes: bool=True) -> None:
        """Create Dask objects outside of init"""

        if n_workers is None:
            n_workers = max(1, (os.cpu_count() or 3) - 2)
        self.cluster = LocalCluster(n_workers=n_workers, threads_per_worker=1, processes=processes)
        self.client = Client(self.cluster)
        logging.info(f'Dask dashboard: {self.client.dashboard_link}')

    def write_message(self, message: str, output_folder: str|pathlib.Path) -> None:
        """Write a message to the main logfile in the output folder"""

        output_folder = pathlib.Path(output_folder)
        output_folder.mkdir(parents=True, exist_ok=True)
        with open(output_folder / 'log_prints.txt', 'a') as writer:
            writer.write(message + '\n')
