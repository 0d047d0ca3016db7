"""
Exhaustive submodel search ("dredge") for occupancy models.

Every combination of the candidate detection and occupancy terms is fitted
(terms listed in *fixed* are in every model), ranked by AICc and summarised
through the pure functions in ``formulas.model_selection``.

Fits for one species run in a process pool that is torn down before the
next species starts; ``max_workers=1`` runs them serially in-process.
"""

import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field

import pandas as pd

from ghats_occupancy import config
from ghats_occupancy.formulas.model_selection import (
    candidate_term_sets,
    cumulative_importance,
    model_average,
    rank_candidates,
    top_models,
)
from ghats_occupancy.logging_config import get_pipeline_logger
from ghats_occupancy.occupancy.model import (
    detection_label,
    fit_occupancy,
    occupancy_label,
)

log = get_pipeline_logger(__name__)


@dataclass
class CandidateSet:
    """All fitted submodels of one global model.

    ``table`` has one row per model sorted by AICc with a boolean column per
    term and ``model``, ``k``, ``loglik``, ``aicc``, ``delta``, ``weight``,
    ``converged``, ``identifiable``. ``fits`` maps the ``model`` id to the
    worker record holding that model's coefficient table.
    """

    table: pd.DataFrame
    fits: dict
    terms: list
    fixed: list = field(default_factory=list)
    n_failed: int = 0

    def top(self, threshold=None):
        return top_models(self.table, threshold)

    def average(self, threshold=None, ci_level=None):
        """Model-averaged estimates over the top subset."""
        top = self.top(threshold)
        tables = [self.fits[m]["coefficients"] for m in top["model"]]
        return model_average(tables, top["aicc"].to_numpy(), ci_level)

    def importance(self):
        return cumulative_importance(self.table, self.terms)


def _fit_candidate(args):
    """Worker: fit one submodel and return its picklable record."""
    model_id, data, det_terms, occ_terms = args
    fit = fit_occupancy(data, det_terms, occ_terms)
    record = fit.to_record()
    record["model"] = model_id
    return record


def _split_terms(labels, det_terms, occ_terms):
    det = tuple(t for t in det_terms if detection_label(t) in labels)
    occ = tuple(t for t in occ_terms if occupancy_label(t) in labels)
    return det, occ


def dredge(data, det_terms=(), occ_terms=(), fixed=(), max_workers=None):
    """Fit every submodel of ``~ det_terms ~ occ_terms``.

    Parameters
    ----------
    data : DetectionData
    det_terms, occ_terms : sequence of str
        Covariates of the global model.
    fixed : sequence of str
        Term labels (``p(x)`` / ``psi(x)``) kept in every submodel.
    max_workers : int, optional
        Process pool size. Default: ``config.MAX_WORKERS`` or CPU count - 1.

    Returns
    -------
    CandidateSet
    """
    labels = [detection_label(t) for t in det_terms] + [occupancy_label(t) for t in occ_terms]
    fixed = list(fixed)
    subsets = list(candidate_term_sets(labels, fixed))

    if max_workers is None:
        max_workers = config.MAX_WORKERS
    if max_workers is None:
        max_workers = max(1, (os.cpu_count() or 2) - 1)

    tasks = []
    for model_id, subset in enumerate(subsets):
        det, occ = _split_terms(subset, det_terms, occ_terms)
        tasks.append((model_id, data, det, occ))

    log.info("%s: fitting %d candidate models (%d workers)",
             data.species, len(tasks), max_workers, extra={"species": data.species})

    records = []
    n_failed = 0
    if max_workers == 1 or len(tasks) == 1:
        for task in tasks:
            try:
                records.append(_fit_candidate(task))
            except Exception as e:
                n_failed += 1
                log.warning("%s: candidate %s failed: %s", data.species, task[2:], e,
                            extra={"species": data.species})
    else:
        with ProcessPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(_fit_candidate, t): t for t in tasks}
            for future in as_completed(futures):
                task = futures[future]
                try:
                    records.append(future.result())
                except Exception as e:
                    n_failed += 1
                    log.warning("%s: candidate %s failed: %s", data.species, task[2:], e,
                                extra={"species": data.species})

    if not records:
        raise ValueError(f"No candidate model could be fitted for {data.species!r}")

    rows = []
    for record in records:
        present = set(detection_label(t) for t in record["det_terms"])
        present |= set(occupancy_label(t) for t in record["occ_terms"])
        row = {"model": record["model"]}
        row.update({label: label in present for label in labels})
        row.update({key: record[key] for key in ("k", "loglik", "aicc", "converged", "identifiable")})
        rows.append(row)

    table = rank_candidates(pd.DataFrame(rows).sort_values("model"))
    fits = {record["model"]: record for record in records}
    return CandidateSet(table=table, fits=fits, terms=labels, fixed=fixed, n_failed=n_failed)
