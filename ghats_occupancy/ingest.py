"""
eBird Basic Dataset ingestion and cleaning.

Reads the tab-separated EBD detection extract and its sampling-event file,
keeps complete Traveling/Stationary checklists inside the study area and
date range with bounded effort, collapses shared group checklists, and
zero-fills detections of the focal species.

Ref: Johnston et al. (2021), Analytical guidelines to increase the value
of community science data, Diversity and Distributions 27(7), 1265-1277.
"""

import csv
import os
import re

import geopandas as gpd
import numpy as np
import pandas as pd

from ghats_occupancy import config
from ghats_occupancy.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)

SAMPLING_COLUMNS = [
    "sampling_event_identifier", "group_identifier", "observer_id",
    "locality", "locality_id", "locality_type", "latitude", "longitude",
    "observation_date", "time_observations_started", "duration_minutes",
    "effort_distance_km", "number_observers", "protocol_type",
    "all_species_reported",
]


def normalise_columns(df):
    """EBD headers ("SAMPLING EVENT IDENTIFIER") -> snake_case."""
    out = df.copy()
    out.columns = [
        re.sub(r"[^0-9a-z]+", "_", str(c).strip().lower()).strip("_")
        for c in out.columns
    ]
    return out


def _read_ebd_table(path):
    if not os.path.exists(path):
        raise FileNotFoundError(f"EBD file not found: {path}")
    df = pd.read_csv(path, sep="\t", quoting=csv.QUOTE_NONE, dtype=str,
                     low_memory=False)
    df = normalise_columns(df)
    # EBD rows end with a tab, which yields an empty trailing column.
    return df.loc[:, [c for c in df.columns if c and not c.startswith("unnamed")]]


def read_checklists(ebd_path, sampling_path):
    """Read EBD detections and sampling events.

    Returns
    -------
    detections : pd.DataFrame
        One row per species reported on a checklist.
    sampling : pd.DataFrame
        One row per checklist, effort fields converted to numbers.
    """
    detections = _read_ebd_table(ebd_path)
    sampling = _read_ebd_table(sampling_path)

    missing = [c for c in SAMPLING_COLUMNS if c not in sampling.columns]
    if missing:
        raise KeyError(f"Sampling-event file lacks columns: {missing}")

    for column in ("latitude", "longitude", "duration_minutes",
                   "effort_distance_km", "number_observers", "all_species_reported"):
        sampling[column] = pd.to_numeric(sampling[column], errors="coerce")
    sampling["observation_date"] = pd.to_datetime(sampling["observation_date"], errors="coerce")

    log.info("Read %d detections and %d sampling events", len(detections), len(sampling))
    return detections, sampling


def collapse_groups(sampling):
    """One record per shared group checklist.

    Members of a group share ``group_identifier``; the kept record takes the
    group id as its identifier and lists every member's ``observer_id``.

    Returns
    -------
    collapsed : pd.DataFrame
    id_map : pd.Series
        Original sampling_event_identifier -> checklist id.
    """
    sampling = sampling.copy()
    group = sampling["group_identifier"].replace("", np.nan)
    checklist_id = group.fillna(sampling["sampling_event_identifier"])
    id_map = pd.Series(checklist_id.to_numpy(), index=sampling["sampling_event_identifier"])

    sampling["sampling_event_identifier"] = checklist_id
    observers = (
        sampling.groupby("sampling_event_identifier")["observer_id"]
        .agg(lambda ids: ",".join(sorted(set(ids.dropna()))))
    )
    collapsed = sampling.drop_duplicates("sampling_event_identifier").copy()
    collapsed["observer_id"] = collapsed["sampling_event_identifier"].map(observers)
    n_merged = len(sampling) - len(collapsed)
    if n_merged:
        log.info("Collapsed %d shared group checklists", n_merged)
    return collapsed.reset_index(drop=True), id_map


def filter_checklists(sampling, study_area=None, protocol_types=None,
                      date_start=None, date_end=None, bbox=None,
                      max_duration=None, max_distance=None, max_observers=None):
    """Keep complete checklists within the study bounds and effort limits.

    Parameters
    ----------
    sampling : pd.DataFrame
        Sampling events from ``read_checklists``.
    study_area : gpd.GeoDataFrame, optional
        Polygon(s) to clip to, in any CRS.
    Other parameters default to the ingestion constants in ``config``.

    Returns
    -------
    pd.DataFrame
    """
    if protocol_types is None:
        protocol_types = config.PROTOCOL_TYPES
    if date_start is None:
        date_start = config.DATE_START
    if date_end is None:
        date_end = config.DATE_END
    if bbox is None:
        bbox = config.STUDY_AREA_BBOX
    if max_duration is None:
        max_duration = config.MAX_DURATION_MINUTES
    if max_distance is None:
        max_distance = config.MAX_EFFORT_DISTANCE_KM
    if max_observers is None:
        max_observers = config.MAX_NUMBER_OBSERVERS

    df = sampling.copy()
    n_start = len(df)

    dates = pd.to_datetime(df["observation_date"])
    stationary = df["protocol_type"] == "Stationary"
    df.loc[stationary & df["effort_distance_km"].isna(), "effort_distance_km"] = 0.0

    keep = (
        (df["all_species_reported"] == 1)
        & df["protocol_type"].isin(protocol_types)
        & dates.between(pd.Timestamp(date_start), pd.Timestamp(date_end))
        & df["longitude"].between(bbox["west"], bbox["east"])
        & df["latitude"].between(bbox["south"], bbox["north"])
        & (df["duration_minutes"] <= max_duration)
        & (df["effort_distance_km"] <= max_distance)
        & (df["number_observers"] <= max_observers)
    )
    df = df[keep]

    if study_area is not None and not df.empty:
        points = gpd.GeoDataFrame(
            df, geometry=gpd.points_from_xy(df["longitude"], df["latitude"]),
            crs=f"EPSG:{config.WGS84_EPSG}",
        )
        area = study_area.to_crs(epsg=config.WGS84_EPSG).union_all()
        df = pd.DataFrame(points[points.within(area)].drop(columns="geometry"))

    log.info("Checklist filter: %d -> %d sampling events", n_start, len(df))
    return df.reset_index(drop=True)


def _is_present(count):
    return count.notna() & (count.astype(str).str.strip() != "0")


def zero_fill(detections, checklists, species):
    """Presence/absence of each focal species on every retained checklist.

    ``observation_count`` "X" (present, not counted) becomes a presence with
    a missing count.

    Returns
    -------
    pd.DataFrame
        ``checklists`` x ``species`` rows with ``scientific_name``,
        ``observation_count`` and ``pres_abs``.
    """
    species = list(dict.fromkeys(species))
    focal = detections[detections["scientific_name"].isin(species)]
    focal = focal[["sampling_event_identifier", "scientific_name", "observation_count"]]
    focal = focal.drop_duplicates(["sampling_event_identifier", "scientific_name"])

    grid = checklists.merge(pd.DataFrame({"scientific_name": species}), how="cross")
    filled = grid.merge(focal, on=["sampling_event_identifier", "scientific_name"], how="left")

    present = _is_present(filled["observation_count"])
    filled["pres_abs"] = present.astype(int)
    counts = filled["observation_count"].replace("X", np.nan)
    filled["observation_count"] = pd.to_numeric(counts, errors="coerce")
    filled.loc[~present, "observation_count"] = 0
    return filled


def add_derived_fields(df):
    """Julian date, start time in minutes, year and stationary distance."""
    out = df.copy()
    dates = pd.to_datetime(out["observation_date"])
    out["julian_date"] = dates.dt.dayofyear
    out["year"] = dates.dt.year

    start = pd.to_datetime(out["time_observations_started"], format="%H:%M:%S", errors="coerce")
    out["min_obs_started"] = start.dt.hour * 60 + start.dt.minute

    stationary = out["protocol_type"] == "Stationary"
    no_distance = out["effort_distance_km"].isna() | (out["effort_distance_km"] == 0)
    out.loc[stationary & no_distance, "effort_distance_km"] = config.STATIONARY_DISTANCE_KM
    return out


def species_richness(detections, checklists):
    """Number of species reported on each retained checklist.

    Only ``category == "species"`` rows count when the column is present.
    """
    records = detections
    if "category" in records.columns:
        records = records[records["category"] == "species"]
    counts = (
        records.groupby("sampling_event_identifier")["scientific_name"]
        .nunique()
        .rename("n_species")
    )
    out = checklists.merge(counts, left_on="sampling_event_identifier",
                           right_index=True, how="left")
    out["n_species"] = out["n_species"].fillna(0).astype(int)
    return out


def read_species_list(path):
    species = normalise_columns(pd.read_csv(path))
    if "scientific_name" not in species.columns:
        raise KeyError(f"Species list {path} has no scientific_name column")
    return species["scientific_name"].dropna().str.strip().tolist()


def run_ingest(ebd_path, sampling_path, species, output_dir, study_area=None):
    """Ingest, clean and zero-fill; write the stage outputs.

    Returns
    -------
    dict
        ``checklists`` and ``richness`` output paths.
    """
    detections, sampling = read_checklists(ebd_path, sampling_path)
    sampling, id_map = collapse_groups(sampling)
    detections = detections.copy()
    detections["sampling_event_identifier"] = (
        detections["sampling_event_identifier"].map(id_map)
        .fillna(detections["sampling_event_identifier"])
    )

    checklists = filter_checklists(sampling, study_area=study_area)
    checklists = add_derived_fields(checklists)

    filled = zero_fill(detections, checklists, species)
    richness = species_richness(detections, checklists)

    os.makedirs(output_dir, exist_ok=True)
    checklist_path = os.path.join(output_dir, "01_checklists.csv")
    richness_path = os.path.join(output_dir, "01_checklist_richness.csv")
    filled.to_csv(checklist_path, index=False)
    richness.to_csv(richness_path, index=False)

    log.info("Ingest: %d checklists x %d species, %d detections",
             len(checklists), len(species), int(filled["pres_abs"].sum()))
    return {"checklists": checklist_path, "richness": richness_path}
