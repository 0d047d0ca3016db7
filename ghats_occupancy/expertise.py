"""
Observer expertise scores (checklist calibration index).

Species richness of single-observer checklists is modelled as a Poisson
GLMM with effort, time of day and landcover as fixed effects and a random
intercept per observer. An observer's score is the predicted species count
under average conditions plus that observer's random effect.

Ref: Johnston et al. (2018), Estimates of observer expertise improve
species distributions from citizen science data, Methods Ecol. Evol. 9(1).
"""

import os
import re
import warnings

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from statsmodels.genmod.bayes_mixed_glm import PoissonBayesMixedGLM
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from ghats_occupancy import config
from ghats_occupancy.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)

OBSERVER_VC = {"observer": "0 + C(observer)"}

# Continuous predictors centred and scaled before fitting.
STANDARDISED_COLUMNS = ["log_duration", "min_obs_started"]


def observer_number(observer_id):
    """Numeric part of an eBird observer id ("obsr12345" -> "12345")."""
    match = re.search(r"\d+", str(observer_id))
    return match.group(0) if match else None


def sample_raster(path, longitude, latitude):
    """Raster values at WGS84 points; nodata becomes NaN."""
    points = gpd.GeoSeries(gpd.points_from_xy(longitude, latitude), crs=f"EPSG:{config.WGS84_EPSG}")
    with rasterio.open(path) as src:
        if src.crs is not None:
            points = points.to_crs(src.crs)
        coords = list(zip(points.x, points.y))
        values = np.array([v[0] for v in src.sample(coords)], dtype=float)
        if src.nodata is not None:
            values[values == src.nodata] = np.nan
    return values


def prepare_expertise_data(richness, landcover_path=None, landcover=None,
                           single_observer_only=None, min_checklists=None):
    """Model table for the expertise GLMM.

    Parameters
    ----------
    richness : pd.DataFrame
        Output of ``ingest.species_richness``.
    landcover_path : str, optional
        Landcover raster sampled at each checklist location.
    landcover : array-like, optional
        Landcover class per row, used instead of *landcover_path*.
    single_observer_only : bool, optional
    min_checklists : int, optional
        Observers with fewer checklists are left out.

    Returns
    -------
    pd.DataFrame
        ``observer``, ``n_species``, ``log_duration``, ``min_obs_started``
        (minutes since midnight), ``landcover``.
    """
    if single_observer_only is None:
        single_observer_only = config.EXPERTISE_SINGLE_OBSERVER_ONLY
    if min_checklists is None:
        min_checklists = config.EXPERTISE_MIN_CHECKLISTS

    df = richness.copy()
    if landcover is not None:
        df["landcover"] = np.asarray(landcover)
    elif landcover_path is not None:
        df["landcover"] = sample_raster(landcover_path, df["longitude"], df["latitude"])
    else:
        raise ValueError("Either landcover_path or landcover is required")

    if single_observer_only:
        single = ~df["observer_id"].astype(str).str.contains(",")
        df = df[single & (df["number_observers"] == 1)]

    df = df[df["duration_minutes"] > 0].copy()
    df["observer"] = df["observer_id"].map(observer_number)
    df["log_duration"] = np.log(df["duration_minutes"])
    df = df.dropna(subset=["observer", "n_species", "log_duration",
                           "min_obs_started", "landcover"])
    df["landcover"] = df["landcover"].astype(int)

    counts = df.groupby("observer")["observer"].transform("size")
    df = df[counts >= min_checklists]
    log.info("Expertise data: %d checklists from %d observers",
             len(df), df["observer"].nunique())
    return df[["observer", "n_species", "log_duration", "min_obs_started", "landcover"]]\
        .reset_index(drop=True)


def standardise_predictors(df, columns=None):
    """Centre and scale the continuous predictors; constant columns are only centred."""
    if columns is None:
        columns = STANDARDISED_COLUMNS
    out = df.copy()
    for col in columns:
        values = out[col].astype(float)
        sd = values.std(ddof=0)
        out[col] = (values - values.mean()) / (sd if sd > 0 else 1.0)
    return out


def _convergence_messages(caught):
    return sorted({str(w.message) for w in caught if issubclass(w.category, ConvergenceWarning)})


def fit_expertise_model(df, formula=None):
    """Fit the Poisson GLMM by variational Bayes, started from the MAP fit.

    ``log_duration`` and ``min_obs_started`` are standardised first; on raw
    start times the squared term overflows the variational objective. If
    the variational fit does not converge but the MAP fit did, the MAP
    result is used.

    Returns
    -------
    (PoissonBayesMixedGLM, BayesMixedGLMResults, list[str])
        The last item holds convergence warnings; empty when converged.
    """
    if formula is None:
        formula = config.EXPERTISE_FORMULA
    if df["observer"].nunique() < 2:
        raise ValueError("Expertise model needs at least two observers")
    model = PoissonBayesMixedGLM.from_formula(formula, OBSERVER_VC, standardise_predictors(df))

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        start = model.fit_map()
    map_warnings = _convergence_messages(caught)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        result = model.fit_vb(mean=start.params)
    vb_warnings = _convergence_messages(caught)

    if vb_warnings and not map_warnings:
        log.warning("Variational fit did not converge; using the MAP estimates")
        return model, start, [f"variational fit: {w}" for w in vb_warnings]
    fit_warnings = [f"MAP fit: {w}" for w in map_warnings] + \
        [f"variational fit: {w}" for w in vb_warnings]
    if fit_warnings:
        log.warning("Expertise model did not converge: %s", "; ".join(fit_warnings))
    return model, result, fit_warnings


def expertise_summary_text(result, fit_warnings):
    """Model summary headed by the convergence status."""
    lines = [f"Converged: {not fit_warnings}"]
    lines += [f"  {w}" for w in fit_warnings]
    lines += ["", str(result.summary())]
    return "\n".join(lines)


def score_observers(model, result):
    """Expected species count per observer at average checklist conditions.

    Returns
    -------
    pd.DataFrame
        ``observer``, ``score``, ``random_effect``, ``random_effect_sd``.
    """
    mean_eta = float(np.mean(model.exog @ result.fe_mean))
    effects = result.random_effects("observer")
    observers = [re.search(r"\[(.*)\]$", name).group(1) for name in effects.index]
    scores = pd.DataFrame({
        "observer": observers,
        "random_effect": effects["Mean"].to_numpy(),
        "random_effect_sd": effects["SD"].to_numpy(),
    })
    scores["score"] = np.exp(mean_eta + scores["random_effect"])
    return scores[["observer", "score", "random_effect", "random_effect_sd"]]


def assign_checklist_expertise(checklists, scores):
    """Attach the highest observer score to every checklist.

    Multi-observer checklists list ids separated by commas. Checklists with
    no scored observer are dropped.
    """
    lookup = scores.assign(observer=scores["observer"].astype(str))\
        .set_index("observer")["score"]

    sei_observers = checklists[["sampling_event_identifier", "observer_id"]]\
        .drop_duplicates("sampling_event_identifier")
    exploded = sei_observers.assign(
        observer=sei_observers["observer_id"].astype(str).str.split(",")
    ).explode("observer")
    exploded["observer"] = exploded["observer"].map(observer_number)
    exploded["expertise"] = exploded["observer"].map(lookup)
    best = exploded.groupby("sampling_event_identifier")["expertise"].max()

    out = checklists.drop(columns="expertise", errors="ignore")
    out = out.merge(best.rename("expertise"), left_on="sampling_event_identifier",
                    right_index=True, how="left")
    n_before = out["sampling_event_identifier"].nunique()
    out = out[out["expertise"].notna()]
    n_dropped = n_before - out["sampling_event_identifier"].nunique()
    if n_dropped:
        log.info("Dropped %d checklists without an expertise score", n_dropped)
    return out.reset_index(drop=True)


def run_expertise(richness_path, landcover_path, output_dir):
    """Fit the expertise model, write scores and the model summary."""
    richness = pd.read_csv(richness_path)
    data = prepare_expertise_data(richness, landcover_path)
    model, result, fit_warnings = fit_expertise_model(data)
    scores = score_observers(model, result)

    os.makedirs(output_dir, exist_ok=True)
    score_path = os.path.join(output_dir, "03_data-obsExpertise-score.csv")
    summary_path = os.path.join(output_dir, "03_expertise-model-summary.txt")
    scores.to_csv(score_path, index=False)
    with open(summary_path, "w") as f:
        f.write(expertise_summary_text(result, fit_warnings))

    log.info("Scored %d observers (median %.1f species)", len(scores), scores["score"].median())
    return {"scores": score_path, "summary": summary_path}
