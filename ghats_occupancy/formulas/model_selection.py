"""
Information-theoretic model selection and multi-model inference.

All functions are pure (no I/O, no model fitting). They operate on a
candidate table with one row per fitted submodel and one boolean column per
dredged term, plus ``k``, ``loglik`` and ``aicc`` columns.

METHODOLOGY:
Burnham & Anderson (2002), Model Selection and Multimodel Inference, 2nd ed.
- AICc = -2 logL + 2k + 2k(k + 1) / (n - k - 1)  (eq. 2.14)
- Akaike weight w_i = exp(-Δ_i / 2) / Σ exp(-Δ_j / 2)  (eq. 2.14 / 4.1)
- Full ("zero") model averaging: a term absent from a model contributes
  β = 0 and SE = 0 to the average (Section 4.2.1).
- Unconditional SE = Σ w_i sqrt(se_i² + (β_i - β̄)²)  (eq. 4.9)
- Term importance = Σ w_i over models containing the term (Section 4.2.2).
"""

import itertools

import numpy as np
import pandas as pd
from scipy import stats

from ghats_occupancy import config

ESTIMATE_COLUMNS = [
    "predictor", "coefficient", "se", "ci_lower", "ci_upper", "z_value", "p_value",
]


def aicc(llf, k, n):
    """Small-sample corrected AIC.

    Returns ``inf`` when ``n - k - 1 <= 0``: the correction is undefined
    and such a model must never rank as best.
    """
    aic = -2.0 * llf + 2.0 * k
    if n - k - 1 <= 0:
        return np.inf
    return aic + (2.0 * k * (k + 1)) / (n - k - 1)


def delta_aicc(aicc_values):
    """AICc differences from the best (minimum finite) model."""
    values = np.asarray(aicc_values, dtype=float)
    finite = np.isfinite(values)
    if not finite.any():
        raise ValueError("No candidate model has a finite AICc")
    return values - values[finite].min()


def akaike_weights(aicc_values):
    """Normalised Akaike weights. Non-finite AICc values get weight 0."""
    delta = delta_aicc(aicc_values)
    relative = np.where(np.isfinite(delta), np.exp(-0.5 * delta), 0.0)
    return relative / relative.sum()


def candidate_term_sets(terms, fixed=()):
    """Every subset of *terms* that contains all *fixed* terms.

    Yields 2**(len(terms) - len(fixed)) tuples, smallest first, each keeping
    the order of *terms*.
    """
    terms = list(terms)
    missing = [t for t in fixed if t not in terms]
    if missing:
        raise ValueError(f"Fixed terms not among candidate terms: {missing}")
    free = [t for t in terms if t not in fixed]
    for size in range(len(free) + 1):
        for combo in itertools.combinations(free, size):
            chosen = set(combo) | set(fixed)
            yield tuple(t for t in terms if t in chosen)


def rank_candidates(table):
    """Add ``delta`` and ``weight`` columns and sort by AICc."""
    ranked = table.copy()
    ranked["delta"] = delta_aicc(ranked["aicc"])
    ranked["weight"] = akaike_weights(ranked["aicc"])
    return ranked.sort_values("aicc", kind="mergesort").reset_index(drop=True)


def top_models(table, threshold=None):
    """Rows of a ranked table with Δ AICc strictly below *threshold*."""
    if threshold is None:
        threshold = config.DELTA_AICC_THRESHOLD
    return table[table["delta"] < threshold]


def cumulative_importance(table, terms):
    """Sum of Akaike weights over all candidate models containing each term.

    Weights are taken from the full candidate table (not the top subset), so
    a term present in every model has importance 1.
    """
    rows = []
    for term in terms:
        contains = table[term].astype(bool)
        rows.append({
            "predictor": term,
            "importance": float(table.loc[contains, "weight"].sum()),
            "n_models": int(contains.sum()),
        })
    out = pd.DataFrame(rows, columns=["predictor", "importance", "n_models"])
    return out.sort_values("importance", ascending=False, kind="mergesort").reset_index(drop=True)


def wald_table(predictors, coefficients, se, ci_level=None):
    """Coefficient table with Wald confidence interval, z and p values."""
    if ci_level is None:
        ci_level = config.CI_LEVEL
    coefficients = np.asarray(coefficients, dtype=float)
    se = np.asarray(se, dtype=float)
    z_crit = stats.norm.ppf(0.5 + ci_level / 2.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        z_value = coefficients / se
    p_value = 2.0 * stats.norm.sf(np.abs(z_value))
    return pd.DataFrame({
        "predictor": list(predictors),
        "coefficient": coefficients,
        "se": se,
        "ci_lower": coefficients - z_crit * se,
        "ci_upper": coefficients + z_crit * se,
        "z_value": z_value,
        "p_value": p_value,
    }, columns=ESTIMATE_COLUMNS)


def model_average(coef_tables, aicc_values, ci_level=None):
    """Full model-averaged coefficients across a set of fitted models.

    Parameters
    ----------
    coef_tables : list[pd.DataFrame]
        One table per model with ``predictor``, ``coefficient`` and ``se``.
    aicc_values : sequence of float
        AICc of each model, in the same order. Weights are renormalised
        over this set.
    ci_level : float, optional
        Confidence level for the Wald interval. Default: ``config.CI_LEVEL``.

    Returns
    -------
    pd.DataFrame
        Columns ``ESTIMATE_COLUMNS``. With a single model the model's own
        coefficients and standard errors are returned unchanged.
    """
    if len(coef_tables) == 0:
        raise ValueError("model_average needs at least one model")
    if len(coef_tables) != len(aicc_values):
        raise ValueError("coef_tables and aicc_values differ in length")

    if len(coef_tables) == 1:
        only = coef_tables[0]
        return wald_table(only["predictor"], only["coefficient"], only["se"], ci_level)

    predictors = []
    for table in coef_tables:
        for name in table["predictor"]:
            if name not in predictors:
                predictors.append(name)

    coef = pd.DataFrame(0.0, index=predictors, columns=range(len(coef_tables)))
    se = coef.copy()
    for i, table in enumerate(coef_tables):
        indexed = table.set_index("predictor")
        coef.loc[indexed.index, i] = indexed["coefficient"].to_numpy(dtype=float)
        se.loc[indexed.index, i] = indexed["se"].to_numpy(dtype=float)

    weights = akaike_weights(aicc_values)
    averaged = coef.to_numpy() @ weights
    spread = np.sqrt(se.to_numpy() ** 2 + (coef.to_numpy() - averaged[:, None]) ** 2)
    unconditional_se = spread @ weights
    return wald_table(predictors, averaged, unconditional_se, ci_level)
