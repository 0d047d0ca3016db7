"""
Typed result dataclasses for pipeline stage and per-species tracking.

Every stage returns a StepResult; the occupancy stage additionally keeps
one SpeciesFitResult per species in a single species -> result mapping.
"""

import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import pandas as pd


class StepStatus(str, Enum):
    """Pipeline step outcome status."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def _get_git_sha():
    """Return the short git SHA of the current HEAD, or None."""
    try:
        return subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"],
            stderr=subprocess.DEVNULL,
            text=True,
        ).strip()
    except (subprocess.SubprocessError, FileNotFoundError):
        return None


@dataclass
class StepResult:
    """Result of a single pipeline step execution."""

    step_name: str
    status: str  # "success", "skipped", "error"
    input_summary: dict = field(default_factory=dict)
    output_summary: dict = field(default_factory=dict)
    timing_seconds: float = 0.0
    warnings: list = field(default_factory=list)
    error: Optional[str] = None
    started_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    @property
    def ok(self):
        return self.status == StepStatus.SUCCESS.value

    def to_dict(self):
        return {
            "step_name": self.step_name,
            "status": self.status,
            "input_summary": self.input_summary,
            "output_summary": self.output_summary,
            "timing_seconds": self.timing_seconds,
            "warnings": self.warnings,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, d):
        """Reconstruct a StepResult from a serialized dict."""
        return cls(
            step_name=d["step_name"],
            status=d["status"],
            input_summary=d.get("input_summary", {}),
            output_summary=d.get("output_summary", {}),
            timing_seconds=d.get("timing_seconds", 0.0),
            warnings=d.get("warnings", []),
            error=d.get("error"),
            started_at=d.get("started_at", ""),
            completed_at=d.get("completed_at"),
        )


@dataclass
class SpeciesFitResult:
    """Outcome of the occupancy analysis for one species.

    Tables are None when the corresponding fit failed or was not run.
    """

    species: str
    status: str = StepStatus.SUCCESS.value
    error: Optional[str] = None
    n_sites: int = 0
    n_visits: int = 0
    null_summary: Optional[dict] = None
    det_candidates: Optional[pd.DataFrame] = None
    det_estimates: Optional[pd.DataFrame] = None
    det_importance: Optional[pd.DataFrame] = None
    occ_candidates: Optional[pd.DataFrame] = None
    occ_estimates: Optional[pd.DataFrame] = None
    occ_importance: Optional[pd.DataFrame] = None
    n_top_models: int = 0
    gof: Optional[dict] = None

    @property
    def ok(self):
        return self.status == StepStatus.SUCCESS.value

    def summary_row(self):
        """Flat dict for the per-species run table."""
        return {
            "scientific_name": self.species,
            "status": self.status,
            "n_sites": self.n_sites,
            "n_visits": self.n_visits,
            "n_top_models": self.n_top_models,
            "error": self.error,
        }


@dataclass
class PipelineRunResult:
    """Result of a complete pipeline execution."""

    run_dir: str = ""
    stages: list = field(default_factory=list)
    species_processed: list = field(default_factory=list)
    step_results: list = field(default_factory=list)
    total_time_seconds: float = 0.0
    output_files: list = field(default_factory=list)
    git_sha: Optional[str] = field(default_factory=_get_git_sha)
    started_at: str = field(default_factory=_now_iso)

    @property
    def all_ok(self):
        return all(s.ok for s in self.step_results)

    @property
    def failed_steps(self):
        return [s for s in self.step_results if not s.ok]

    def to_dict(self):
        return {
            "run_dir": self.run_dir,
            "stages": self.stages,
            "species_processed": self.species_processed,
            "steps": [s.to_dict() for s in self.step_results],
            "total_time_seconds": self.total_time_seconds,
            "output_files": self.output_files,
            "all_ok": self.all_ok,
            "git_sha": self.git_sha,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, d):
        """Reconstruct a PipelineRunResult from a serialized dict."""
        result = cls(
            run_dir=d.get("run_dir", ""),
            stages=d.get("stages", []),
            species_processed=d.get("species_processed", []),
            total_time_seconds=d.get("total_time_seconds", 0.0),
            output_files=d.get("output_files", []),
            git_sha=d.get("git_sha"),
            started_at=d.get("started_at", ""),
        )
        result.step_results = [
            StepResult.from_dict(s) for s in d.get("steps", [])
        ]
        return result
