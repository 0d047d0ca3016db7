"""
Per-species result tables on disk.

Each table kind (e.g. ``lc-clim-modelEst``) is a directory holding one CSV
per species, named after the scientific name with spaces replaced.
"""

import os
import re

import pandas as pd

from ghats_occupancy.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


def species_filename(species):
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", species.strip()) + ".csv"


def species_table_path(directory, species):
    return os.path.join(directory, species_filename(species))


def write_species_table(df, directory, species):
    os.makedirs(directory, exist_ok=True)
    path = species_table_path(directory, species)
    df.to_csv(path, index=False)
    return path


def read_species_tables(directory, species_list):
    """Read one table per species; missing species are warned about and skipped.

    Returns
    -------
    dict[str, pd.DataFrame]
        Only the species whose file was found.
    """
    tables = {}
    missing = []
    for species in species_list:
        path = species_table_path(directory, species)
        try:
            tables[species] = pd.read_csv(path)
        except FileNotFoundError:
            missing.append(species)
        except pd.errors.EmptyDataError:
            log.warning("Empty result table for %s: %s", species, path,
                        extra={"species": species})
    if missing:
        log.warning("%d of %d species have no table in %s: %s",
                    len(missing), len(species_list), directory, ", ".join(missing))
    return tables
