"""
Per-species occupancy analysis and batch driver.

For each species:
1. null model ``~1 ~1``;
2. detection model: dredge over the detection covariates (occupancy ~1);
3. landcover + climate model: dredge over the occupancy covariates with all
   detection covariates fixed;
4. model averaging over the Δ AICc < 2 subset and cumulative importance
   for steps 2 and 3;
5. MacKenzie-Bailey goodness of fit on the global model.

A species that fails at any point is logged and recorded with status
"error"; the loop moves on to the next species.
"""

import os

import numpy as np
import pandas as pd
from scipy.special import expit

from ghats_occupancy import config
from ghats_occupancy.logging_config import get_pipeline_logger, species_logger
from ghats_occupancy.occupancy.detection import build_detection_data, filter_repeat_visits
from ghats_occupancy.occupancy.gof import parametric_bootstrap_gof
from ghats_occupancy.occupancy.model import detection_label, fit_occupancy
from ghats_occupancy.occupancy.selection import dredge
from ghats_occupancy.pipeline_types import SpeciesFitResult, StepStatus
from ghats_occupancy.species_tables import write_species_table

log = get_pipeline_logger(__name__)

# Directory names of the per-species tables.
TABLE_DIRS = {
    "det_candidates": "det-dred",
    "det_estimates": "det-modelEst",
    "det_importance": "det-imp",
    "occ_candidates": "lc-clim",
    "occ_estimates": "lc-clim-modelEst",
    "occ_importance": "lc-clim-imp",
}


def fit_species(species, model_data, det_covs=None, occ_covs=None,
                max_workers=None, gof_simulations=None, seed=None):
    """Run the full model sequence for one species.

    Parameters
    ----------
    species : str
    model_data : pd.DataFrame
        Scaled checklist table for all species (``prepare_model_data``).
    det_covs, occ_covs : list[str], optional
    max_workers : int, optional
        Passed to ``dredge``.
    gof_simulations : int, optional
        0 skips the goodness-of-fit bootstrap.
    seed : int, optional
        Seed for the goodness-of-fit bootstrap.

    Returns
    -------
    SpeciesFitResult
    """
    if det_covs is None:
        det_covs = config.DETECTION_COVARIATES
    if occ_covs is None:
        occ_covs = config.OCCUPANCY_COVARIATES
    if gof_simulations is None:
        gof_simulations = config.GOF_SIMULATIONS

    species_rows = model_data[model_data["scientific_name"] == species]
    if species_rows.empty:
        raise ValueError(f"No checklists for {species!r}")

    visits = filter_repeat_visits(species_rows)
    data = build_detection_data(visits, site_covs=occ_covs, obs_covs=det_covs, species=species)
    result = SpeciesFitResult(species=species, n_sites=data.n_sites, n_visits=data.n_observations)

    null = fit_occupancy(data)
    result.null_summary = {
        "scientific_name": species,
        **null.summary_dict(),
        "psi": float(expit(null.params[0])),
        "p": float(expit(null.params[1])),
        "naive_occupancy": data.naive_occupancy,
    }

    det_set = dredge(data, det_terms=det_covs, max_workers=max_workers)
    result.det_candidates = det_set.table
    result.det_estimates = det_set.average()
    result.det_importance = det_set.importance()

    fixed = [detection_label(t) for t in det_covs]
    occ_set = dredge(data, det_terms=det_covs, occ_terms=occ_covs, fixed=fixed,
                     max_workers=max_workers)
    result.occ_candidates = occ_set.table
    result.occ_estimates = occ_set.average()
    result.occ_importance = occ_set.importance()
    result.n_top_models = len(occ_set.top())

    if gof_simulations > 0:
        global_fit = fit_occupancy(data, det_covs, occ_covs)
        result.gof = {"scientific_name": species,
                      **parametric_bootstrap_gof(global_fit, gof_simulations, seed)}

    species_logger(log, species).info("%d sites, %d visits, %d top models",
                                      result.n_sites, result.n_visits, result.n_top_models)
    return result


def fit_all_species(model_data, species_list, **kwargs):
    """Fit every species, isolating per-species failures.

    Returns
    -------
    dict[str, SpeciesFitResult]
        One entry per requested species, failed ones with status "error".
    """
    results = {}
    n = len(species_list)
    for i, species in enumerate(species_list, start=1):
        slog = species_logger(log, species)
        slog.info("[%d/%d] Fitting occupancy models", i, n)
        try:
            results[species] = fit_species(species, model_data, **kwargs)
        except (ValueError, KeyError, np.linalg.LinAlgError, FloatingPointError) as e:
            slog.error("[%d/%d] failed: %s", i, n, e)
            results[species] = SpeciesFitResult(species=species, status=StepStatus.ERROR.value,
                                                error=str(e))
        except Exception as e:
            slog.error("[%d/%d] failed unexpectedly: %s", i, n, e, exc_info=True)
            results[species] = SpeciesFitResult(species=species, status=StepStatus.ERROR.value,
                                                error=f"{type(e).__name__}: {e}")

    n_ok = sum(r.ok for r in results.values())
    log.info("Occupancy fitting complete: %d/%d species succeeded", n_ok, n)
    return results


def write_species_results(results, results_dir):
    """Write per-species tables plus the cross-species summaries.

    Returns
    -------
    list[str]
        Paths written.
    """
    os.makedirs(results_dir, exist_ok=True)
    written = []

    for species, res in results.items():
        if not res.ok:
            continue
        for attr, subdir in TABLE_DIRS.items():
            table = getattr(res, attr)
            if table is not None:
                written.append(write_species_table(table, os.path.join(results_dir, subdir), species))

    null_rows = [r.null_summary for r in results.values() if r.ok and r.null_summary]
    null_path = os.path.join(results_dir, "null_models.csv")
    pd.DataFrame(null_rows).to_csv(null_path, index=False)
    written.append(null_path)

    gof_rows = [r.gof for r in results.values() if r.ok and r.gof]
    gof_path = os.path.join(results_dir, "05_goodness-of-fit-2.5km.csv")
    pd.DataFrame(gof_rows, columns=["scientific_name", "chi_square", "p_value",
                                    "c_hat", "n_simulations"]).to_csv(gof_path, index=False)
    written.append(gof_path)

    summary = pd.DataFrame([r.summary_row() for r in results.values()],
                           columns=["scientific_name", "status", "n_sites", "n_visits",
                                    "n_top_models", "error"])
    summary_path = os.path.join(results_dir, "species_fit_summary.csv")
    summary.to_csv(summary_path, index=False)
    written.append(summary_path)

    failures_path = os.path.join(results_dir, "fit_failures.csv")
    summary[summary["status"] != StepStatus.SUCCESS.value][
        ["scientific_name", "error"]
    ].to_csv(failures_path, index=False)
    written.append(failures_path)

    return written
