#!/usr/bin/env python3
"""
Pipeline runner for the Western Ghats occupancy analysis.

Orchestrates the stages in order:

    ingest -> expertise -> rasters -> covariates -> occupancy -> results -> figures

with:
- Pandera schema validation on stage outputs (warn, or abort with
  ``--strict-validation``)
- NaN tracking on the covariate table
- ``--stage`` to run a single stage from saved intermediate files
- Full PipelineRunResult provenance saved as JSON

Usage:
    # Run every stage
    python3 -m ghats_occupancy.pipeline_runner --data-dir data --output-dir outputs

    # Refit occupancy models only, serially, for two species
    python3 -m ghats_occupancy.pipeline_runner --stage occupancy --workers 1 \\
        --species "Sholicola major,Montecincla cachinnans"
"""

import argparse
import json
import os
import time

from ghats_occupancy import config
from ghats_occupancy.logging_config import get_pipeline_logger, setup_logging, set_run_id
from ghats_occupancy.pipeline_types import PipelineRunResult

log = get_pipeline_logger(__name__)

STAGES = [
    "ingest",
    "expertise",
    "rasters",
    "covariates",
    "occupancy",
    "results",
    "figures",
]

# Downstream stages read these stages' outputs; a failure stops the run.
CRITICAL_STAGES = {"ingest", "expertise", "rasters", "covariates", "occupancy"}


def track_nan_counts(df, step_name, columns=None):
    """Log NaN counts per column and return the non-zero ones.

    Parameters
    ----------
    df : pd.DataFrame or None
    step_name : str
    columns : list[str], optional
        Restrict the count to these columns.

    Returns
    -------
    dict
        Column -> NaN count.
    """
    if df is None:
        return {}
    if columns is not None:
        df = df[[c for c in columns if c in df.columns]]
    nan_counts = {k: int(v) for k, v in df.isna().sum().items() if v > 0}
    if nan_counts:
        log.warning(
            "[%s] NaN counts: %s", step_name, nan_counts,
            extra={"step_name": step_name, "nan_summary": nan_counts},
        )
    return nan_counts


def resolve_species(args):
    """Species from ``--species`` or the species list in the data directory."""
    from ghats_occupancy.ingest import read_species_list

    if args.species:
        return [s.strip() for s in args.species.split(",") if s.strip()]
    return read_species_list(os.path.join(args.data_dir, config.SPECIES_LIST_FILENAME))


def run_pipeline(args, stages=None):
    """Run the requested stages with validation gates.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command-line arguments.
    stages : list[str], optional
        Stages to run, in pipeline order. Default: all.

    Returns
    -------
    PipelineRunResult
    """
    import pandas as pd

    from ghats_occupancy.pipeline_steps import (
        step_covariates,
        step_expertise,
        step_figures,
        step_ingest,
        step_occupancy,
        step_rasters,
        step_results,
    )

    if stages is None:
        stages = list(STAGES)
    strict = getattr(args, "strict_validation", False)

    pipeline_result = PipelineRunResult(run_dir=args.output_dir, stages=list(stages))
    start_time = time.time()

    dirs = config.get_stage_dirs(args.output_dir)
    for d in dirs.values():
        os.makedirs(d, exist_ok=True)

    species = resolve_species(args)
    pipeline_result.species_processed = species
    log.info("Species: %d", len(species))

    runners = {
        "ingest": lambda: step_ingest(args.data_dir, dirs["data"], species, strict=strict),
        "expertise": lambda: step_expertise(args.data_dir, dirs["data"], strict=strict),
        "rasters": lambda: step_rasters(args.data_dir, dirs["spatial"]),
        "covariates": lambda: step_covariates(args.data_dir, dirs["data"], dirs["spatial"],
                                              strict=strict),
        "occupancy": lambda: step_occupancy(dirs["data"], dirs["results"], species,
                                            max_workers=args.workers,
                                            gof_simulations=args.gof_simulations,
                                            strict=strict),
        "results": lambda: step_results(dirs["results"], species),
        "figures": lambda: step_figures(dirs["results"], dirs["spatial"], dirs["data"],
                                        dirs["figs"]),
    }

    for stage in STAGES:
        if stage not in stages:
            continue
        log.info("-" * 60)
        log.info("Stage: %s", stage)
        result, data = runners[stage]()
        pipeline_result.step_results.append(result)

        if not result.ok:
            if stage in CRITICAL_STAGES:
                log.error("Pipeline aborted at %s: %s", stage, result.error)
                pipeline_result.total_time_seconds = time.time() - start_time
                return pipeline_result
            log.warning("%s failed; continuing", stage)
            continue

        if stage == "covariates":
            covars = pd.read_csv(data)
            result.output_summary["nan_counts"] = track_nan_counts(
                covars, stage, columns=config.OCCUPANCY_COVARIATES + config.DETECTION_COVARIATES,
            )
        if stage == "occupancy":
            failed = sorted(s for s, r in data.items() if not r.ok)
            if failed:
                log.warning("Occupancy failed for %d species: %s", len(failed), ", ".join(failed))
                result.warnings.extend(f"{s}: fit failed" for s in failed)
        for path in _output_paths(data):
            pipeline_result.output_files.append(path)

    pipeline_result.total_time_seconds = time.time() - start_time
    return pipeline_result


def _output_paths(data):
    if isinstance(data, str):
        return [data]
    if isinstance(data, dict):
        return [v for v in data.values() if isinstance(v, str)]
    if isinstance(data, list):
        return [v for v in data if isinstance(v, str)]
    return []


def save_pipeline_result(pipeline_result, output_dir):
    """Save PipelineRunResult as JSON for provenance."""
    os.makedirs(output_dir, exist_ok=True)
    result_path = os.path.join(output_dir, "pipeline_run.json")
    with open(result_path, "w") as f:
        json.dump(pipeline_result.to_dict(), f, indent=2, default=str)
    log.info("Pipeline result saved: %s", result_path)
    return result_path


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Western Ghats bird occupancy pipeline"
    )
    parser.add_argument(
        "--stage",
        choices=STAGES + ["all"],
        default="all",
        help="Run a single stage from saved intermediate files",
    )
    parser.add_argument(
        "--data-dir",
        default=config.DEFAULT_DATA_DIR,
        dest="data_dir",
        help="Directory with the eBird extract, species list and rasters",
    )
    parser.add_argument(
        "--output-dir",
        default=config.DEFAULT_OUTPUT_DIR,
        dest="output_dir",
        help="Output directory",
    )
    parser.add_argument(
        "--species",
        default=None,
        help="Comma-separated scientific names (default: species list file)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=config.MAX_WORKERS,
        help="Worker processes for the submodel search (1 = serial)",
    )
    parser.add_argument(
        "--gof-simulations",
        type=int,
        default=config.GOF_SIMULATIONS,
        dest="gof_simulations",
        help="Parametric bootstrap draws for goodness of fit (0 = skip)",
    )
    parser.add_argument(
        "--strict-validation",
        action="store_true",
        default=False,
        dest="strict_validation",
        help="Abort on schema validation failures (default: warn only)",
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    run_id = set_run_id()
    setup_logging(run_dir=args.output_dir)

    stages = STAGES if args.stage == "all" else [args.stage]
    log.info("=" * 60)
    log.info("Occupancy pipeline: %s (run_id=%s)", ", ".join(stages), run_id)
    log.info("=" * 60)

    result = run_pipeline(args, stages=stages)
    save_pipeline_result(result, args.output_dir)

    log.info("Pipeline complete in %.1fs", result.total_time_seconds)
    if result.failed_steps:
        log.warning("Failed steps: %s", [s.step_name for s in result.failed_steps])
    else:
        log.info("All steps succeeded.")
    return result


if __name__ == "__main__":
    main()
