"""
Tests for ghats_occupancy/formulas/model_selection.py.

AICc, Akaike weights, the candidate enumeration, the Δ AICc < 2 subset,
cumulative importance and full model averaging with unconditional SEs.
"""

import numpy as np
import pandas as pd
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from ghats_occupancy.formulas.model_selection import (
    ESTIMATE_COLUMNS,
    aicc,
    akaike_weights,
    candidate_term_sets,
    cumulative_importance,
    delta_aicc,
    model_average,
    rank_candidates,
    top_models,
    wald_table,
)

TERMS = ["A", "B", "C"]
SYNTHETIC_AICC = [0.0, 1.0, 1.5, 2.0, 3.0, 4.0, 5.0, 6.0]


def _candidate_table(terms=TERMS, aicc_values=SYNTHETIC_AICC):
    rows = []
    for i, subset in enumerate(candidate_term_sets(terms)):
        row = {"model": i}
        row.update({t: t in subset for t in terms})
        row.update({"k": len(subset) + 2, "loglik": -aicc_values[i] / 2, "aicc": aicc_values[i]})
        rows.append(row)
    return pd.DataFrame(rows)


class TestAICc:

    def test_formula(self):
        # -2(-10) + 2*2 + 2*2*3/(20-2-1)
        assert aicc(-10.0, 2, 20) == pytest.approx(24.0 + 12.0 / 17.0)

    def test_undefined_correction_is_infinite(self):
        assert aicc(-10.0, 5, 6) == np.inf
        assert aicc(-10.0, 5, 5) == np.inf

    def test_converges_to_aic_for_large_n(self):
        assert aicc(-10.0, 3, 10**7) == pytest.approx(26.0, abs=1e-4)


class TestAkaikeWeights:

    def test_equal_aicc_equal_weights(self):
        np.testing.assert_allclose(akaike_weights([5.0, 5.0, 5.0, 5.0]), 0.25)

    def test_infinite_aicc_gets_zero_weight(self):
        w = akaike_weights([1.0, np.inf, 3.0])
        assert w[1] == 0.0
        assert w.sum() == pytest.approx(1.0)

    def test_all_infinite_raises(self):
        with pytest.raises(ValueError):
            delta_aicc([np.inf, np.inf])

    @given(st.lists(st.floats(min_value=-1e4, max_value=1e4), min_size=1, max_size=30))
    @settings(max_examples=200, deadline=5000)
    def test_weights_sum_to_one(self, values):
        w = akaike_weights(values)
        assert w.sum() == pytest.approx(1.0)
        assert np.all(w >= 0)

    @given(st.lists(st.floats(min_value=-1e3, max_value=1e3), min_size=2, max_size=20))
    @settings(max_examples=200, deadline=5000)
    def test_lower_aicc_never_lower_weight(self, values):
        w = akaike_weights(values)
        order = np.argsort(values, kind="mergesort")
        assert np.all(np.diff(w[order]) <= 1e-12)


class TestCandidateTermSets:

    def test_all_subsets(self):
        subsets = list(candidate_term_sets(TERMS))
        assert len(subsets) == 8
        assert subsets[0] == ()
        assert subsets[-1] == ("A", "B", "C")
        assert len(set(subsets)) == 8

    def test_term_order_preserved(self):
        for subset in candidate_term_sets(["C", "A", "B"]):
            assert list(subset) == [t for t in ["C", "A", "B"] if t in subset]

    def test_fixed_terms_in_every_subset(self):
        subsets = list(candidate_term_sets(TERMS, fixed=["B"]))
        assert len(subsets) == 4
        assert all("B" in s for s in subsets)

    def test_unknown_fixed_term_raises(self):
        with pytest.raises(ValueError):
            list(candidate_term_sets(TERMS, fixed=["D"]))

    @given(st.integers(min_value=0, max_value=8), st.integers(min_value=0, max_value=8))
    @settings(max_examples=50, deadline=5000)
    def test_count_is_power_of_two(self, n_terms, n_fixed):
        n_fixed = min(n_fixed, n_terms)
        terms = [f"t{i}" for i in range(n_terms)]
        subsets = list(candidate_term_sets(terms, fixed=terms[:n_fixed]))
        assert len(subsets) == 2 ** (n_terms - n_fixed)


class TestTopSubset:
    """Three binary predictors, AICc [0, 1, 1.5, 2, 3, 4, 5, 6]."""

    def test_strictly_below_two(self):
        ranked = rank_candidates(_candidate_table())
        top = top_models(ranked)
        assert top["delta"].tolist() == [0.0, 1.0, 1.5]
        assert top["model"].tolist() == [0, 1, 2]

    def test_weights(self):
        ranked = rank_candidates(_candidate_table())
        assert ranked["weight"].sum() == pytest.approx(1.0)
        expected = np.exp(-0.5 * np.array(SYNTHETIC_AICC))
        np.testing.assert_allclose(ranked["weight"], expected / expected.sum())
        assert ranked["weight"].iloc[:4].sum() > 0.5
        assert top_models(ranked)["weight"].sum() > 0.5

    def test_ranked_by_aicc(self):
        shuffled = _candidate_table().sample(frac=1.0, random_state=0)
        ranked = rank_candidates(shuffled)
        assert ranked["aicc"].is_monotonic_increasing
        assert ranked.index.tolist() == list(range(8))

    @given(st.floats(min_value=0.0, max_value=10.0), st.floats(min_value=0.0, max_value=10.0))
    @settings(max_examples=100, deadline=5000)
    def test_threshold_monotone(self, t1, t2):
        lo, hi = sorted([t1, t2])
        ranked = rank_candidates(_candidate_table())
        assert set(top_models(ranked, lo)["model"]) <= set(top_models(ranked, hi)["model"])


class TestCumulativeImportance:

    def test_sums_weights_of_models_with_term(self):
        ranked = rank_candidates(_candidate_table())
        imp = cumulative_importance(ranked, TERMS).set_index("predictor")
        for term in TERMS:
            expected = ranked.loc[ranked[term], "weight"].sum()
            assert imp.loc[term, "importance"] == pytest.approx(expected)
            assert imp.loc[term, "n_models"] == 4

    def test_fixed_term_has_importance_one(self):
        table = _candidate_table()
        table["fixed"] = True
        ranked = rank_candidates(table)
        imp = cumulative_importance(ranked, TERMS + ["fixed"]).set_index("predictor")
        assert imp.loc["fixed", "importance"] == pytest.approx(1.0)

    def test_sorted_descending(self):
        imp = cumulative_importance(rank_candidates(_candidate_table()), TERMS)
        assert imp["importance"].is_monotonic_decreasing


class TestModelAverage:

    def _coefs(self, predictors, coefficients, se):
        return pd.DataFrame({"predictor": predictors, "coefficient": coefficients, "se": se})

    def test_single_model_passthrough(self):
        table = self._coefs(["psi(Int)", "psi(A)"], [0.5, -1.0], [0.1, 0.2])
        out = model_average([table], [10.0])
        assert list(out.columns) == ESTIMATE_COLUMNS
        np.testing.assert_allclose(out["coefficient"], [0.5, -1.0])
        np.testing.assert_allclose(out["se"], [0.1, 0.2])

    def test_absent_term_counts_as_zero(self):
        m1 = self._coefs(["psi(Int)", "psi(A)"], [0.0, 1.0], [0.1, 0.1])
        m2 = self._coefs(["psi(Int)"], [0.0], [0.1])
        out = model_average([m1, m2], [5.0, 5.0]).set_index("predictor")
        assert out.loc["psi(A)", "coefficient"] == pytest.approx(0.5)
        # 0.5 * sqrt(0.01 + 0.25) + 0.5 * sqrt(0 + 0.25)
        assert out.loc["psi(A)", "se"] == pytest.approx(0.5 * np.sqrt(0.26) + 0.25)
        assert out.loc["psi(Int)", "se"] == pytest.approx(0.1)

    def test_predictor_union_in_first_seen_order(self):
        m1 = self._coefs(["psi(Int)", "psi(B)"], [0.0, 1.0], [0.1, 0.1])
        m2 = self._coefs(["psi(Int)", "psi(A)"], [0.0, 1.0], [0.1, 0.1])
        out = model_average([m1, m2], [1.0, 2.0])
        assert out["predictor"].tolist() == ["psi(Int)", "psi(B)", "psi(A)"]

    def test_weights_renormalised(self):
        m1 = self._coefs(["psi(Int)"], [1.0], [0.0])
        m2 = self._coefs(["psi(Int)"], [3.0], [0.0])
        out = model_average([m1, m2], [100.0, 100.0 + 2 * np.log(3.0)])
        # Weights 0.75 / 0.25.
        assert out["coefficient"].iloc[0] == pytest.approx(1.5)

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            model_average([self._coefs(["x"], [1.0], [0.1])], [1.0, 2.0])

    def test_empty(self):
        with pytest.raises(ValueError):
            model_average([], [])


class TestWaldTable:

    def test_interval_and_p_value(self):
        out = wald_table(["x"], [1.96], [1.0], ci_level=0.95)
        assert out.loc[0, "ci_lower"] == pytest.approx(0.0, abs=1e-3)
        assert out.loc[0, "ci_upper"] == pytest.approx(3.92, abs=1e-3)
        assert out.loc[0, "p_value"] == pytest.approx(0.05, abs=1e-3)

    def test_nan_se_propagates(self):
        out = wald_table(["x"], [1.0], [np.nan])
        assert np.isnan(out.loc[0, "z_value"])
        assert np.isnan(out.loc[0, "p_value"])
