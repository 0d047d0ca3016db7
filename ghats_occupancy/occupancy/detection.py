"""
Detection-history construction for single-species occupancy models.

Turns the long checklist table (one row per checklist x species) into the
site x visit detection matrix plus site- and visit-level covariates.

A site is a locality within a closure window: all checklists at one
locality within ``CLOSURE_WINDOW_DAYS`` are repeat visits to the same site
and the species is assumed not to colonise or vanish between them.
"""

from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from ghats_occupancy import config
from ghats_occupancy.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


@dataclass
class DetectionData:
    """Inputs for one species' occupancy model.

    Attributes
    ----------
    y : np.ndarray
        (n_sites, n_visits) 0/1 detections, NaN where a site had fewer visits.
    site_covs : pd.DataFrame
        One row per site (index = site id), occupancy covariates.
    obs_covs : dict[str, np.ndarray]
        Visit-level covariates, each shaped like ``y``.
    site_ids : list[str]
    species : str
    """

    y: np.ndarray
    site_covs: pd.DataFrame
    obs_covs: dict = field(default_factory=dict)
    site_ids: list = field(default_factory=list)
    species: str = ""

    @property
    def n_sites(self):
        return self.y.shape[0]

    @property
    def n_visits(self):
        return self.y.shape[1]

    @property
    def n_observations(self):
        return int((~np.isnan(self.y)).sum())

    @property
    def naive_occupancy(self):
        """Fraction of sites with at least one detection."""
        if self.n_sites == 0:
            return float("nan")
        return float((np.nan_to_num(self.y) > 0).any(axis=1).mean())


def recode_protocol(series):
    """Traveling -> 1, anything else (Stationary) -> 0."""
    return (series.astype(str).str.strip().str.lower() == "traveling").astype(int)


def prepare_model_data(df, det_covs=None, occ_covs=None, unscaled=None):
    """Recode protocol type and z-score the model covariates.

    Scaling uses the sample SD (ddof=1) over the whole table, so the same
    scaled values are shared by every species.

    Returns
    -------
    scaled : pd.DataFrame
    scaling : pd.DataFrame
        ``covariate``, ``mean``, ``sd`` for back-transformation.
    """
    if det_covs is None:
        det_covs = config.DETECTION_COVARIATES
    if occ_covs is None:
        occ_covs = config.OCCUPANCY_COVARIATES
    if unscaled is None:
        unscaled = config.UNSCALED_COVARIATES

    missing = [c for c in list(det_covs) + list(occ_covs) if c not in df.columns]
    if missing:
        raise KeyError(f"Covariates missing from model data: {missing}")

    scaled = df.copy()
    if "protocol_type" in scaled.columns and not pd.api.types.is_numeric_dtype(scaled["protocol_type"]):
        scaled["protocol_type"] = recode_protocol(scaled["protocol_type"])

    rows = []
    for column in dict.fromkeys(list(det_covs) + list(occ_covs)):
        if column in unscaled:
            continue
        values = pd.to_numeric(scaled[column], errors="coerce")
        mean = values.mean()
        sd = values.std(ddof=1)
        if not np.isfinite(sd) or sd == 0:
            log.warning("Covariate %s has zero variance; centred but not scaled", column)
            sd = 1.0
        scaled[column] = (values - mean) / sd
        rows.append({"covariate": column, "mean": mean, "sd": sd})

    return scaled, pd.DataFrame(rows, columns=["covariate", "mean", "sd"])


def filter_repeat_visits(df, site_vars=("locality_id",), date_col="observation_date",
                         min_obs=None, max_obs=None, n_days=None, seed=None):
    """Group checklists into sites and keep sites with enough repeat visits.

    Parameters
    ----------
    df : pd.DataFrame
        Checklists of one species.
    site_vars : sequence of str
        Columns whose combination identifies a locality.
    date_col : str
    min_obs, max_obs : int, optional
        Sites with fewer than *min_obs* visits are dropped; sites with more
        than *max_obs* are randomly subsampled to *max_obs*.
    n_days : int, optional
        Closure window length in days.
    seed : int, optional

    Returns
    -------
    pd.DataFrame
        Input rows kept, with ``closure_id``, ``site``, ``visit`` (1-based,
        chronological) and ``n_observations`` columns.
    """
    if min_obs is None:
        min_obs = config.MIN_VISITS_PER_SITE
    if max_obs is None:
        max_obs = config.MAX_VISITS_PER_SITE
    if n_days is None:
        n_days = config.CLOSURE_WINDOW_DAYS
    if seed is None:
        seed = config.REPEAT_VISIT_SEED
    if min_obs > max_obs:
        raise ValueError(f"min_obs ({min_obs}) exceeds max_obs ({max_obs})")

    extra_cols = ["closure_id", "site", "visit", "n_observations"]
    if df.empty:
        return df.reindex(columns=list(df.columns) + extra_cols)

    out = df.copy()
    dates = pd.to_datetime(out[date_col])
    out["closure_id"] = ((dates - dates.min()).dt.days // n_days).astype(int)
    key = out[list(site_vars)].astype(str).agg("_".join, axis=1)
    out["site"] = key + "_" + out["closure_id"].astype(str)
    out["_date"] = dates

    rng = np.random.default_rng(seed)
    kept = []
    for _, group in out.groupby("site", sort=True):
        if len(group) < min_obs:
            continue
        if len(group) > max_obs:
            picks = np.sort(rng.choice(len(group), size=max_obs, replace=False))
            group = group.iloc[picks]
        kept.append(group)

    if not kept:
        return df.iloc[0:0].reindex(columns=list(df.columns) + extra_cols)

    out = pd.concat(kept).sort_values(["site", "_date"], kind="mergesort")
    out["visit"] = out.groupby("site").cumcount() + 1
    out["n_observations"] = out.groupby("site")["site"].transform("size")
    return out.drop(columns="_date").reset_index(drop=True)


def build_detection_data(visits, site_covs, obs_covs, response="pres_abs", species=""):
    """Pivot repeat visits into a ``DetectionData``.

    Visits whose observation covariates are missing are treated as not
    made (NaN in ``y``). Sites with missing site covariates are dropped.
    """
    if visits.empty:
        raise ValueError(f"No repeat visits to build detection data for {species!r}")

    site_covs = list(site_covs)
    obs_covs = list(obs_covs)

    incomplete = visits[site_covs].isna().any(axis=1)
    dropped_sites = visits.loc[incomplete, "site"].unique()
    if len(dropped_sites):
        log.warning("%s: dropping %d sites with missing site covariates",
                    species, len(dropped_sites), extra={"species": species})
        visits = visits[~visits["site"].isin(dropped_sites)]
        if visits.empty:
            raise ValueError(f"No sites with complete covariates for {species!r}")

    sites = sorted(visits["site"].unique())
    n_visits = int(visits["visit"].max())
    columns = range(1, n_visits + 1)

    def _pivot(column):
        wide = visits.pivot(index="site", columns="visit", values=column)
        return wide.reindex(index=sites, columns=columns).to_numpy(dtype=float, copy=True)

    y = _pivot(response)
    obs = {name: _pivot(name) for name in obs_covs}

    made = ~np.isnan(y)
    gaps = np.zeros_like(made)
    for values in obs.values():
        gaps |= made & np.isnan(values)
    if gaps.any():
        log.warning("%s: %d visits discarded for missing observation covariates",
                    species, int(gaps.sum()), extra={"species": species})
        y[gaps] = np.nan
        surveyed = (~np.isnan(y)).any(axis=1)
        if not surveyed.all():
            y = y[surveyed]
            obs = {name: values[surveyed] for name, values in obs.items()}
            sites = [s for s, keep in zip(sites, surveyed) if keep]
        if len(sites) == 0:
            raise ValueError(f"No visits with complete covariates for {species!r}")

    site_frame = visits.groupby("site")[site_covs].first().reindex(sites)
    return DetectionData(y=y, site_covs=site_frame, obs_covs=obs,
                         site_ids=list(sites), species=species)
