"""
Tests for ghats_occupancy/step_runner.py.

Verifies the generic step execution framework: timing, error handling,
StepResult construction, and the expected_exceptions pattern.

Every pipeline stage flows through run_step(). A bug here silently
swallows errors or misreports stage status.
"""

import logging
import time

import numpy as np
import pandas as pd
from rasterio.errors import RasterioIOError
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from ghats_occupancy.pipeline_types import PipelineRunResult, SpeciesFitResult, StepResult
from ghats_occupancy.step_runner import run_step


class TestRunStepSuccess:
    """Successful step execution."""

    def test_basic_success(self):
        result, data = run_step("covariates", lambda: 42)
        assert isinstance(result, StepResult)
        assert result.status == "success"
        assert result.ok
        assert result.step_name == "covariates"
        assert result.error is None
        assert data == 42

    def test_timing_recorded(self):
        def slow_fn():
            time.sleep(0.05)
            return "done"

        result, _ = run_step("timed_step", slow_fn)
        assert result.timing_seconds >= 0.04

    def test_args_and_kwargs_passed(self):
        def adder(a, b, multiplier=1):
            return (a + b) * multiplier

        _, data = run_step("adder", adder, 3, 4, multiplier=2)
        assert data == 14

    def test_input_summary_recorded(self):
        result, _ = run_step("ingest", lambda: "ok", input_summary={"species": 12})
        assert result.input_summary == {"species": 12}

    def test_output_summary_fn_called(self):
        result, _ = run_step("results", lambda: {"a.csv": 1, "b.csv": 2},
                             output_summary_fn=lambda x: {"tables": len(x)})
        assert result.output_summary == {"tables": 2}

    def test_output_summary_skipped_for_none(self):
        called = []
        result, data = run_step("none_result", lambda: None,
                                output_summary_fn=lambda x: called.append(True) or {})
        assert data is None
        assert called == []

    def test_empty_dataframe_is_a_result(self):
        result, data = run_step("empty_df", pd.DataFrame,
                                output_summary_fn=lambda df: {"rows": len(df)})
        assert result.ok
        assert result.output_summary == {"rows": 0}


class TestRunStepErrorHandling:
    """Errors are captured into the StepResult, never raised."""

    def test_missing_file(self):
        def fails():
            raise FileNotFoundError("04_data-covars-2.5km.csv not found")

        result, data = run_step("occupancy", fails)
        assert result.status == "error"
        assert not result.ok
        assert "04_data-covars-2.5km.csv not found" in result.error
        assert data is None

    def test_value_and_key_errors(self):
        def bad_value():
            raise ValueError("No candidate model could be fitted")

        def missing_key():
            raise KeyError("expertise")

        assert run_step("bad_value", bad_value)[0].status == "error"
        assert run_step("missing_key", missing_key)[0].status == "error"

    def test_raster_io_error(self):
        def unreadable():
            raise RasterioIOError("alt.tif: No such file or directory")

        result, _ = run_step("rasters", unreadable)
        assert result.status == "error"

    def test_model_fit_errors_expected(self, caplog):
        caplog.set_level(logging.ERROR, logger="ghats_occupancy.step_runner")

        def separated():
            raise PerfectSeparationError("Perfect separation detected")

        def singular():
            raise np.linalg.LinAlgError("Singular matrix")

        assert run_step("expertise", separated)[0].status == "error"
        assert run_step("occupancy", singular)[0].status == "error"
        messages = [r.getMessage() for r in caplog.records]
        assert "expertise failed: Perfect separation detected" in messages
        assert "occupancy failed: Singular matrix" in messages
        assert not any("unexpectedly" in m for m in messages)

    def test_unexpected_exception_logged_as_such(self, caplog):
        caplog.set_level(logging.ERROR, logger="ghats_occupancy.step_runner")
        run_step("figures", lambda: [].pop())
        assert "figures failed unexpectedly" in [r.getMessage() for r in caplog.records]

    def test_unexpected_exception_also_caught(self):
        def unexpected():
            raise RuntimeError("unexpected crash")

        result, _ = run_step("unexpected", unexpected)
        assert result.status == "error"
        assert "unexpected crash" in result.error

    def test_custom_expected_exceptions(self):
        def type_error():
            raise TypeError("wrong type")

        result, _ = run_step("custom", type_error, expected_exceptions=(TypeError,))
        assert result.status == "error"

    def test_error_timing_still_recorded(self):
        def fails_slowly():
            time.sleep(0.05)
            raise ValueError("slow fail")

        result, _ = run_step("slow_fail", fails_slowly)
        assert result.timing_seconds >= 0.04


class TestResultTypes:

    def test_step_result_roundtrip(self):
        result, _ = run_step("ingest", lambda: 1, input_summary={"species": 3})
        restored = StepResult.from_dict(result.to_dict())
        assert restored == result

    def test_pipeline_result_failed_steps(self):
        ok, _ = run_step("ingest", lambda: 1)
        bad, _ = run_step("expertise", lambda: 1 / 0)
        run = PipelineRunResult(run_dir="out", stages=["ingest", "expertise"])
        run.step_results = [ok, bad]
        assert not run.all_ok
        assert [s.step_name for s in run.failed_steps] == ["expertise"]
        restored = PipelineRunResult.from_dict(run.to_dict())
        assert [s.status for s in restored.step_results] == ["success", "error"]
        assert restored.stages == ["ingest", "expertise"]

    def test_species_summary_row(self):
        res = SpeciesFitResult(species="Sholicola major", status="error", error="singular")
        assert not res.ok
        assert res.summary_row() == {
            "scientific_name": "Sholicola major",
            "status": "error",
            "n_sites": 0,
            "n_visits": 0,
            "n_top_models": 0,
            "error": "singular",
        }
