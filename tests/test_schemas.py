"""
Tests for ghats_occupancy/schemas.py.

Validates that the hand-off schemas accept well-formed frames, reject
out-of-range values, and that validate_schema() switches between
warning and raising modes.
"""

import numpy as np
import pandas as pd
import pytest

from ghats_occupancy.schemas import (
    ChecklistSchema,
    ExpertiseScoreSchema,
    GoodnessOfFitSchema,
    ImportanceSchema,
    ModelEstimateSchema,
    SiteCovariateSchema,
    validate_schema,
)


def _valid_checklists():
    return pd.DataFrame({
        "sampling_event_identifier": ["S1", "S1", "S2"],
        "scientific_name": ["Sholicola major", "Montecincla cachinnans", "Sholicola major"],
        "locality_id": ["L1", "L1", "L2"],
        "latitude": [11.40, 11.40, 10.25],
        "longitude": [76.70, 76.70, 77.48],
        "pres_abs": [1, 0, 0],
        "duration_minutes": [45.0, 45.0, 120.0],
        "effort_distance_km": [0.8, 0.8, np.nan],
        "julian_date": [12, 12, 300],
    })


def _valid_site_covariates():
    return pd.DataFrame({
        "locality_id": ["L1", "L2"],
        "scientific_name": ["Sholicola major", "Sholicola major"],
        "pres_abs": [1, 0],
        "expertise": [0.4, 1.7],
        "bio_1": [18.2, 21.5],
        "bio_12": [2400.0, 1800.0],
        "lc_01": [0.1, 0.0],
        "lc_02": [0.7, 0.5],
    })


def _valid_estimates():
    return pd.DataFrame({
        "predictor": ["psi(Int)", "psi(bio_1)", "p(Int)"],
        "coefficient": [0.2, -1.5, -0.5],
        "se": [0.1, 0.3, 0.1],
        "ci_lower": [0.004, -2.09, -0.7],
        "ci_upper": [0.396, -0.91, -0.3],
        "z_value": [2.0, -5.0, -5.0],
        "p_value": [0.045, 1e-6, 1e-6],
    })


# ---------------------------------------------------------------------------
# ChecklistSchema
# ---------------------------------------------------------------------------

class TestChecklistSchema:

    def test_valid_passes(self):
        ChecklistSchema.validate(_valid_checklists())

    def test_pres_abs_must_be_binary(self):
        df = _valid_checklists()
        df.loc[0, "pres_abs"] = 3
        with pytest.raises(Exception):
            ChecklistSchema.validate(df)

    def test_latitude_range(self):
        df = _valid_checklists()
        df.loc[0, "latitude"] = 95.0
        with pytest.raises(Exception):
            ChecklistSchema.validate(df)

    def test_negative_duration_rejected(self):
        df = _valid_checklists()
        df.loc[1, "duration_minutes"] = -5.0
        with pytest.raises(Exception):
            ChecklistSchema.validate(df)

    def test_missing_distance_allowed(self):
        df = _valid_checklists()
        df["effort_distance_km"] = np.nan
        ChecklistSchema.validate(df)

    def test_extra_columns_allowed(self):
        df = _valid_checklists()
        df["observer_id"] = "obs1"
        ChecklistSchema.validate(df)


# ---------------------------------------------------------------------------
# ExpertiseScoreSchema
# ---------------------------------------------------------------------------

class TestExpertiseScoreSchema:

    def test_valid_passes(self):
        ExpertiseScoreSchema.validate(pd.DataFrame({
            "observer": ["obs1", "obs2"], "score": [0.8, 2.5],
        }))

    def test_duplicate_observer_rejected(self):
        with pytest.raises(Exception):
            ExpertiseScoreSchema.validate(pd.DataFrame({
                "observer": ["obs1", "obs1"], "score": [0.8, 2.5],
            }))

    def test_score_must_be_positive(self):
        with pytest.raises(Exception):
            ExpertiseScoreSchema.validate(pd.DataFrame({
                "observer": ["obs1"], "score": [0.0],
            }))


# ---------------------------------------------------------------------------
# SiteCovariateSchema
# ---------------------------------------------------------------------------

class TestSiteCovariateSchema:

    def test_valid_passes(self):
        SiteCovariateSchema.validate(_valid_site_covariates())

    def test_landcover_proportion_out_of_range(self):
        df = _valid_site_covariates()
        df.loc[0, "lc_02"] = 1.4
        with pytest.raises(Exception):
            SiteCovariateSchema.validate(df)

    def test_negative_rainfall_rejected(self):
        df = _valid_site_covariates()
        df.loc[1, "bio_12"] = -10.0
        with pytest.raises(Exception):
            SiteCovariateSchema.validate(df)

    def test_expertise_required(self):
        df = _valid_site_covariates().drop(columns="expertise")
        with pytest.raises(Exception):
            SiteCovariateSchema.validate(df)


# ---------------------------------------------------------------------------
# Model output schemas
# ---------------------------------------------------------------------------

class TestModelEstimateSchema:

    def test_valid_passes(self):
        ModelEstimateSchema.validate(_valid_estimates())

    def test_extra_columns_rejected(self):
        df = _valid_estimates()
        df["weight"] = 1.0
        with pytest.raises(Exception):
            ModelEstimateSchema.validate(df)

    def test_duplicate_predictor_rejected(self):
        df = _valid_estimates()
        df.loc[2, "predictor"] = "psi(Int)"
        with pytest.raises(Exception):
            ModelEstimateSchema.validate(df)

    def test_p_value_in_unit_interval(self):
        df = _valid_estimates()
        df.loc[0, "p_value"] = 1.5
        with pytest.raises(Exception):
            ModelEstimateSchema.validate(df)


class TestImportanceSchema:

    def test_valid_passes(self):
        ImportanceSchema.validate(pd.DataFrame({
            "predictor": ["psi(bio_1)", "psi(lc_02)"],
            "importance": [1.0, 0.35],
            "n_models": [4, 2],
        }))

    def test_importance_above_one_rejected(self):
        with pytest.raises(Exception):
            ImportanceSchema.validate(pd.DataFrame({
                "predictor": ["psi(bio_1)"], "importance": [1.2], "n_models": [4],
            }))


class TestGoodnessOfFitSchema:

    def test_valid_passes(self):
        GoodnessOfFitSchema.validate(pd.DataFrame({
            "scientific_name": ["Sholicola major"],
            "chi_square": [12.4],
            "p_value": [0.31],
            "c_hat": [1.1],
            "n_simulations": [100],
        }))

    def test_negative_chi_square_rejected(self):
        with pytest.raises(Exception):
            GoodnessOfFitSchema.validate(pd.DataFrame({
                "scientific_name": ["Sholicola major"],
                "chi_square": [-1.0],
                "p_value": [0.31],
                "c_hat": [1.1],
                "n_simulations": [100],
            }))


# ---------------------------------------------------------------------------
# validate_schema()
# ---------------------------------------------------------------------------

class TestValidateSchema:

    def test_none_lenient(self):
        warnings = validate_schema(None, ChecklistSchema, "ingest")
        assert warnings == ["[ingest] DataFrame is None"]

    def test_none_strict(self):
        with pytest.raises(ValueError, match="is None"):
            validate_schema(None, ChecklistSchema, "ingest", strict=True)

    def test_empty_lenient(self):
        warnings = validate_schema(pd.DataFrame(), ChecklistSchema, "ingest")
        assert len(warnings) == 1
        assert "empty" in warnings[0]

    def test_empty_strict(self):
        with pytest.raises(ValueError, match="empty"):
            validate_schema(pd.DataFrame(), ChecklistSchema, "ingest", strict=True)

    def test_valid_no_warnings(self):
        assert validate_schema(_valid_checklists(), ChecklistSchema, "ingest") == []

    def test_invalid_lenient_returns_warnings(self):
        df = _valid_checklists()
        df.loc[0, "pres_abs"] = 3
        warnings = validate_schema(df, ChecklistSchema, "ingest")
        assert len(warnings) >= 1
        assert all(w.startswith("[ingest] Schema violation") for w in warnings)
        assert any("pres_abs" in w for w in warnings)

    def test_invalid_strict_raises(self):
        df = _valid_site_covariates()
        df.loc[0, "lc_02"] = 1.4
        with pytest.raises(ValueError, match="SiteCovariateSchema"):
            validate_schema(df, SiteCovariateSchema, "covariates", strict=True)
