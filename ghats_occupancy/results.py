"""
Cross-species summaries of the occupancy results.

Reads the per-species importance and model-averaged estimate tables of the
landcover + climate models and produces:
- cumulative AIC weight summary per occupancy predictor;
- significant predictor effects per species (p < 0.05);
- number of species with positive / negative effects per predictor;
- predicted occupancy across each significant predictor's scaled range.
"""

import os
import re

import numpy as np
import pandas as pd
from scipy.special import expit

from ghats_occupancy import config
from ghats_occupancy.logging_config import get_pipeline_logger
from ghats_occupancy.occupancy.fitting import TABLE_DIRS
from ghats_occupancy.species_tables import read_species_tables

log = get_pipeline_logger(__name__)

_PSI_TERM = re.compile(r"^psi\((.+)\)$")


def occupancy_predictor(label):
    """``psi(bio_1)`` -> ``bio_1``; None for detection terms and the intercept."""
    match = _PSI_TERM.match(str(label))
    if not match or match.group(1) == "Int":
        return None
    return match.group(1)


def summarise_importance(importances):
    """Mean, SD, min, max and median cumulative AIC weight per predictor.

    Parameters
    ----------
    importances : dict[str, pd.DataFrame]
        Species -> importance table (``predictor``, ``importance``).
    """
    frames = []
    for species, table in importances.items():
        df = table.assign(predictor=table["predictor"].map(occupancy_predictor))
        df = df.dropna(subset=["predictor"])
        frames.append(df.assign(scientific_name=species)[["scientific_name", "predictor", "importance"]])
    columns = ["predictor", "mean_AIC", "sd_AIC", "min_AIC", "max_AIC", "med_AIC"]
    if not frames:
        return pd.DataFrame(columns=columns)

    long = pd.concat(frames, ignore_index=True)
    summary = long.groupby("predictor")["importance"].agg(
        mean_AIC="mean", sd_AIC="std", min_AIC="min", max_AIC="max", med_AIC="median",
    ).reset_index()
    return summary.sort_values("mean_AIC", ascending=False).reset_index(drop=True)[columns]


def predictor_effects(estimates, alpha=None):
    """Occupancy predictors with p < *alpha* for each species."""
    if alpha is None:
        alpha = config.SIGNIFICANCE_ALPHA
    rows = []
    for species, table in estimates.items():
        df = table.assign(predictor=table["predictor"].map(occupancy_predictor))
        df = df.dropna(subset=["predictor"])
        df = df[df["p_value"] < alpha]
        for row in df.itertuples():
            rows.append({
                "scientific_name": species,
                "predictor": row.predictor,
                "coefficient": row.coefficient,
                "se": row.se,
                "p_value": row.p_value,
            })
    return pd.DataFrame(rows, columns=["scientific_name", "predictor", "coefficient",
                                       "se", "p_value"])


def effect_directions(effects):
    """Species counts with positive and negative effects per predictor.

    ``magnitude`` is signed: negative effects count downward, as plotted.
    """
    columns = ["predictor", "effect", "n_species", "magnitude"]
    if effects.empty:
        return pd.DataFrame(columns=columns)
    df = effects.assign(effect=np.where(effects["coefficient"] > 0, "positive", "negative"))
    counts = df.groupby(["predictor", "effect"]).size().unstack(fill_value=0)
    counts = counts.reindex(columns=["negative", "positive"], fill_value=0)
    counts.columns.name = "effect"
    long = counts.stack().rename("n_species").reset_index()
    long["magnitude"] = np.where(long["effect"] == "negative", -long["n_species"], long["n_species"])
    return long[columns]


def make_response_data(estimates, effects, n_points=50, x_range=(-2.0, 2.0)):
    """Predicted occupancy along each significant predictor, others at 0.

    Covariates are z-scaled, so 0 is the mean and the default range spans
    two SDs either side. Bounds use the coefficient's confidence limits.
    """
    x = np.linspace(x_range[0], x_range[1], n_points)
    frames = []
    for row in effects.itertuples():
        table = estimates.get(row.scientific_name)
        if table is None:
            continue
        indexed = table.set_index("predictor")
        intercept = indexed.loc["psi(Int)", "coefficient"] if "psi(Int)" in indexed.index else 0.0
        term = f"psi({row.predictor})"
        est = indexed.loc[term]
        lo = expit(intercept + est["ci_lower"] * x)
        hi = expit(intercept + est["ci_upper"] * x)
        frames.append(pd.DataFrame({
            "scientific_name": row.scientific_name,
            "predictor": row.predictor,
            "x": x,
            "psi": expit(intercept + est["coefficient"] * x),
            "psi_lower": np.minimum(lo, hi),
            "psi_upper": np.maximum(lo, hi),
        }))
    if not frames:
        return pd.DataFrame(columns=["scientific_name", "predictor", "x", "psi",
                                     "psi_lower", "psi_upper"])
    return pd.concat(frames, ignore_index=True)


def run_results(results_dir, species_list):
    """Aggregate per-species landcover + climate results into summary CSVs."""
    importances = read_species_tables(os.path.join(results_dir, TABLE_DIRS["occ_importance"]),
                                      species_list)
    estimates = read_species_tables(os.path.join(results_dir, TABLE_DIRS["occ_estimates"]),
                                    species_list)

    summary = summarise_importance(importances)
    effects = predictor_effects(estimates)
    directions = effect_directions(effects)
    responses = make_response_data(estimates, effects)

    paths = {
        "importance": os.path.join(results_dir, "cumulative_AIC_weights.csv"),
        "effects": os.path.join(results_dir, "data_predictor_effect.csv"),
        "directions": os.path.join(results_dir, "data_predictor_direction_nSpecies.csv"),
        "responses": os.path.join(results_dir, "data_occupancy_predictors.csv"),
    }
    summary.to_csv(paths["importance"], index=False)
    effects.to_csv(paths["effects"], index=False)
    directions.to_csv(paths["directions"], index=False)
    responses.to_csv(paths["responses"], index=False)

    log.info("Results: %d species with importance, %d significant effects",
             len(importances), len(effects))
    return paths
