"""
Occupancy pipeline step functions.

Each function is one stage with explicit file inputs/outputs and
StepResult tracking. Boilerplate (timing, error handling, logging) is
handled by ``run_step()``; schema warnings from the validation gates are
attached to the StepResult.
"""

import os

import geopandas as gpd
import pandas as pd

from ghats_occupancy import config
from ghats_occupancy.logging_config import get_pipeline_logger
from ghats_occupancy.schemas import (
    ChecklistSchema,
    ExpertiseScoreSchema,
    GoodnessOfFitSchema,
    ImportanceSchema,
    ModelEstimateSchema,
    SiteCovariateSchema,
    validate_schema,
)
from ghats_occupancy.step_runner import run_step

log = get_pipeline_logger(__name__)


def _gate(path, schema, step_name, strict, warnings_out, dtype=None):
    """Read a stage output back and validate it."""
    df = pd.read_csv(path, dtype=dtype)
    found = validate_schema(df, schema, step_name, strict=strict)
    for w in found:
        log.warning(w)
    warnings_out.extend(found)
    return df


# Per-species tables validated in memory after the occupancy fits.
SPECIES_TABLE_SCHEMAS = {
    "det_estimates": ModelEstimateSchema,
    "det_importance": ImportanceSchema,
    "occ_estimates": ModelEstimateSchema,
    "occ_importance": ImportanceSchema,
}


def gate_species_tables(results, strict=False):
    """Validate the estimate and importance tables of each fitted species.

    Returns the warning messages; with *strict* the first failure raises.
    """
    found = []
    for species, res in results.items():
        if not res.ok:
            continue
        for attr, schema in SPECIES_TABLE_SCHEMAS.items():
            found.extend(validate_schema(getattr(res, attr), schema,
                                         f"occupancy:{species}:{attr}", strict=strict))
    for w in found:
        log.warning(w)
    return found


def _study_area(data_dir):
    path = os.path.join(data_dir, config.STUDY_AREA_SHAPEFILE)
    if not os.path.exists(path):
        log.warning("Study area shapefile not found (%s); using bounding box only", path)
        return None
    return gpd.read_file(path)


def step_ingest(data_dir: str, out_dir: str, species: list[str], strict: bool = False) -> tuple:
    """Read, clean and zero-fill the eBird extract."""
    from ghats_occupancy.ingest import run_ingest

    warnings_out = []

    def _work():
        paths = run_ingest(
            os.path.join(data_dir, config.EBD_FILENAME),
            os.path.join(data_dir, config.SAMPLING_FILENAME),
            species, out_dir, study_area=_study_area(data_dir),
        )
        _gate(paths["checklists"], ChecklistSchema, "ingest", strict, warnings_out,
              dtype={"sampling_event_identifier": str, "locality_id": str})
        return paths

    result, paths = run_step(
        "ingest", _work,
        input_summary={"data_dir": data_dir, "species": len(species)},
        output_summary_fn=lambda p: dict(p),
    )
    result.warnings = warnings_out
    return result, paths


def step_expertise(data_dir: str, out_dir: str, strict: bool = False) -> tuple:
    """Fit the observer expertise GLMM and score observers."""
    from ghats_occupancy.expertise import run_expertise

    warnings_out = []
    richness_path = os.path.join(out_dir, "01_checklist_richness.csv")

    def _work():
        paths = run_expertise(
            richness_path, os.path.join(data_dir, config.LANDCOVER_RASTER), out_dir,
        )
        _gate(paths["scores"], ExpertiseScoreSchema, "expertise", strict, warnings_out,
              dtype={"observer": str})
        return paths

    result, paths = run_step(
        "expertise", _work,
        input_summary={"richness": richness_path},
        output_summary_fn=lambda p: dict(p),
    )
    result.warnings = warnings_out
    return result, paths


def step_rasters(data_dir: str, spatial_dir: str) -> tuple:
    """Prepare the 1 km landscape stack."""
    from ghats_occupancy.rasters import run_rasters

    return run_step(
        "rasters", run_rasters, data_dir, spatial_dir,
        input_summary={"data_dir": data_dir},
        output_summary_fn=lambda p: {"stack": p["stack"]},
    )


def step_covariates(data_dir: str, out_dir: str, spatial_dir: str,
                    strict: bool = False) -> tuple:
    """Thin checklists and attach expertise and buffer covariates."""
    from ghats_occupancy.covariates import run_covariates

    warnings_out = []

    def _work():
        path = run_covariates(
            os.path.join(out_dir, "01_checklists.csv"),
            os.path.join(out_dir, "03_data-obsExpertise-score.csv"),
            os.path.join(spatial_dir, config.LANDSCAPE_STACK_FILENAME),
            out_dir, study_area=_study_area(data_dir),
        )
        _gate(path, SiteCovariateSchema, "covariates", strict, warnings_out)
        return path

    result, path = run_step(
        "covariates", _work,
        input_summary={"out_dir": out_dir},
        output_summary_fn=lambda p: {"covariates": p},
    )
    result.warnings = warnings_out
    return result, path


def step_occupancy(out_dir: str, results_dir: str, species: list[str],
                   max_workers=None, gof_simulations=None, strict: bool = False) -> tuple:
    """Scale covariates and fit occupancy models for every species.

    Per-species failures are recorded in the returned mapping and in
    ``fit_failures.csv``; they do not fail the step.
    """
    from ghats_occupancy.occupancy.detection import prepare_model_data
    from ghats_occupancy.occupancy.fitting import fit_all_species, write_species_results

    warnings_out = []
    covars_path = os.path.join(out_dir, "04_data-covars-2.5km.csv")

    def _work():
        covars = pd.read_csv(covars_path)
        scaled, scaling = prepare_model_data(covars)
        os.makedirs(results_dir, exist_ok=True)
        scaled.to_csv(os.path.join(out_dir, "05_scaled-covars-2.5km.csv"), index=False)
        scaling.to_csv(os.path.join(results_dir, "covariate_scaling.csv"), index=False)

        targets = [s for s in species if s in set(scaled["scientific_name"])]
        absent = sorted(set(species) - set(targets))
        if absent:
            log.warning("No covariate data for %d species: %s", len(absent), ", ".join(absent))

        results = fit_all_species(scaled, targets, max_workers=max_workers,
                                  gof_simulations=gof_simulations)
        write_species_results(results, results_dir)
        warnings_out.extend(gate_species_tables(results, strict))
        if any(r.gof for r in results.values()):
            _gate(os.path.join(results_dir, "05_goodness-of-fit-2.5km.csv"),
                  GoodnessOfFitSchema, "occupancy", strict, warnings_out)
        return results

    result, results = run_step(
        "occupancy", _work,
        input_summary={"covariates": covars_path, "species": len(species)},
        output_summary_fn=lambda r: {
            "species_fitted": sum(v.ok for v in r.values()),
            "species_failed": sum(not v.ok for v in r.values()),
        },
    )
    result.warnings = warnings_out
    return result, results


def step_results(results_dir: str, species: list[str]) -> tuple:
    """Aggregate per-species results into summary tables."""
    from ghats_occupancy.results import run_results

    return run_step(
        "results", run_results, results_dir, species,
        input_summary={"results_dir": results_dir, "species": len(species)},
        output_summary_fn=lambda p: {"tables": len(p)},
    )


def step_figures(results_dir: str, spatial_dir: str, out_dir: str, figs_dir: str) -> tuple:
    """Render the publication figures."""
    from ghats_occupancy.outputs.figures import run_figures

    return run_step(
        "figures", run_figures, results_dir, spatial_dir, out_dir, figs_dir,
        input_summary={"results_dir": results_dir},
        output_summary_fn=lambda paths: {"figures": len(paths)},
    )
