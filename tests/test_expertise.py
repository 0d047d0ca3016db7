"""
Tests for ghats_occupancy/expertise.py.

Observer id matching, the model table filters, the Poisson GLMM scores on
simulated observers of known skill, and checklist score assignment.
"""

import numpy as np
import pandas as pd
import pytest

from ghats_occupancy.expertise import (
    assign_checklist_expertise,
    expertise_summary_text,
    fit_expertise_model,
    observer_number,
    prepare_expertise_data,
    score_observers,
    standardise_predictors,
)


def _richness(n_observers=6, n_checklists=25, seed=5):
    """Single-observer checklists; observer i sees exp(0.25 * i) times more species."""
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n_observers):
        for j in range(n_checklists):
            duration = rng.uniform(20, 240)
            rate = np.exp(1.0 + 0.3 * np.log(duration) + 0.25 * i)
            rows.append({
                "sampling_event_identifier": f"S{i}_{j}",
                "observer_id": f"obsr{100 + i}",
                "number_observers": 1,
                "duration_minutes": duration,
                "min_obs_started": rng.uniform(300, 720),
                "n_species": rng.poisson(rate),
                "longitude": 76.7,
                "latitude": 11.4,
            })
    df = pd.DataFrame(rows)
    landcover = np.where(np.arange(len(df)) % 2 == 0, 2, 4)
    return df, landcover


class TestObserverNumber:

    @pytest.mark.parametrize("raw, expected", [
        ("obsr12345", "12345"),
        ("OBS12345", "12345"),
        ("12345", "12345"),
        ("unknown", None),
    ])
    def test_numeric_part(self, raw, expected):
        assert observer_number(raw) == expected


class TestPrepareExpertiseData:

    def test_columns_and_transforms(self):
        richness, landcover = _richness(n_observers=2, n_checklists=3)
        df = prepare_expertise_data(richness, landcover=landcover)
        assert list(df.columns) == ["observer", "n_species", "log_duration",
                                    "min_obs_started", "landcover"]
        assert set(df["observer"]) == {"100", "101"}
        np.testing.assert_allclose(df["log_duration"], np.log(richness["duration_minutes"]))

    def test_group_checklists_excluded(self):
        richness, landcover = _richness(n_observers=2, n_checklists=3)
        richness.loc[0, "observer_id"] = "obsr100,obsr101"
        richness.loc[3, "number_observers"] = 2
        df = prepare_expertise_data(richness, landcover=landcover)
        assert len(df) == 4

    def test_min_checklists(self):
        richness, landcover = _richness(n_observers=2, n_checklists=3)
        richness = richness.iloc[:4]
        df = prepare_expertise_data(richness, landcover=landcover[:4], min_checklists=2)
        assert set(df["observer"]) == {"100"}

    def test_needs_landcover(self):
        richness, _ = _richness(n_observers=2, n_checklists=2)
        with pytest.raises(ValueError):
            prepare_expertise_data(richness)


class TestExpertiseModel:

    def test_scores_rank_observers(self):
        richness, landcover = _richness()
        df = prepare_expertise_data(richness, landcover=landcover)
        model, result, _ = fit_expertise_model(df)
        scores = score_observers(model, result).set_index("observer")
        assert len(scores) == 6
        assert (scores["score"] > 0).all()
        assert scores["score"].nunique() == 6
        assert scores.loc["105", "score"] > scores.loc["100", "score"]

    def test_start_times_in_minutes(self):
        # Raw start times (300-720 min) and their square on one scale.
        richness, landcover = _richness()
        df = prepare_expertise_data(richness, landcover=landcover)
        assert df["min_obs_started"].min() >= 300
        model, result, _ = fit_expertise_model(df)
        assert np.any(np.abs(result.fe_mean) > 1e-6)
        assert result.vc_mean.std() > 0

    def test_standardise(self):
        df = pd.DataFrame({"log_duration": [1.0, 2.0, 3.0], "min_obs_started": [360.0] * 3})
        out = standardise_predictors(df)
        np.testing.assert_allclose(out["log_duration"], [-np.sqrt(1.5), 0.0, np.sqrt(1.5)])
        np.testing.assert_allclose(out["min_obs_started"], 0.0)
        assert df["min_obs_started"].iloc[0] == 360.0

    def test_summary_reports_convergence(self):
        richness, landcover = _richness(n_observers=3, n_checklists=10)
        df = prepare_expertise_data(richness, landcover=landcover)
        _, result, _ = fit_expertise_model(df)
        ok = expertise_summary_text(result, [])
        assert ok.startswith("Converged: True")
        failed = expertise_summary_text(result, ["variational fit: VB fitting did not converge"])
        assert failed.splitlines()[:2] == [
            "Converged: False", "  variational fit: VB fitting did not converge",
        ]

    def test_single_observer_rejected(self):
        richness, landcover = _richness(n_observers=1, n_checklists=5)
        df = prepare_expertise_data(richness, landcover=landcover)
        with pytest.raises(ValueError):
            fit_expertise_model(df)


class TestAssignChecklistExpertise:

    def test_group_checklist_takes_highest_score(self):
        checklists = pd.DataFrame({
            "sampling_event_identifier": ["S1", "S1", "S2", "S3"],
            "scientific_name": ["a", "b", "a", "a"],
            "observer_id": ["obsr1,obsr2", "obsr1,obsr2", "obsr2", "obsr9"],
        })
        scores = pd.DataFrame({"observer": ["1", "2"], "score": [40.0, 25.0]})
        out = assign_checklist_expertise(checklists, scores)
        by_id = out.groupby("sampling_event_identifier")["expertise"].first()
        assert by_id["S1"] == 40.0
        assert by_id["S2"] == 25.0
        # No scored observer.
        assert "S3" not in by_id.index
        assert len(out) == 3

    def test_integer_observer_ids(self):
        checklists = pd.DataFrame({"sampling_event_identifier": ["S1"], "observer_id": ["obsr7"]})
        scores = pd.DataFrame({"observer": [7], "score": [12.0]})
        out = assign_checklist_expertise(checklists, scores)
        assert out["expertise"].tolist() == [12.0]
