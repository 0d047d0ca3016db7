"""
Logging setup for the occupancy pipeline.

Console output is human-readable; file output is JSON Lines, one record
per line, tagged with the run id and (when known) the pipeline step and
species being processed.

Usage:
    from ghats_occupancy.logging_config import get_pipeline_logger
    log = get_pipeline_logger(__name__)

    slog = species_logger(log, "Sholicola major")
    slog.info("fitting")  # record carries species="Sholicola major"
"""

import json
import logging
import os
import time
import uuid
from logging.handlers import RotatingFileHandler

# Record attributes copied into the JSON output when present.
STRUCTURED_FIELDS = (
    "step_name",
    "species",
    "input_summary",
    "output_summary",
    "timing_seconds",
    "nan_summary",
    "warnings",
)

_run_id = None
_configured = False
_run_dir_handler = None


def _new_run_id():
    return uuid.uuid4().hex[:8]


def get_run_id():
    """Current run id; one is generated on first use."""
    global _run_id
    if _run_id is None:
        _run_id = _new_run_id()
    return _run_id


def set_run_id(run_id=None):
    """Start a new run id (or adopt *run_id*) and return it."""
    global _run_id
    _run_id = run_id or _new_run_id()
    return _run_id


class RunIdFilter(logging.Filter):
    def filter(self, record):
        record.run_id = get_run_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}",
            "level": record.levelname,
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno,
            "run_id": getattr(record, "run_id", None),
            "message": record.getMessage(),
        }
        entry.update({k: getattr(record, k) for k in STRUCTURED_FIELDS if hasattr(record, k)})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``time [LEVEL] (species) message``; the species tag only when set."""

    def __init__(self):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(message)s",
                         datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record):
        text = super().format(record)
        species = getattr(record, "species", None)
        if species:
            head, sep, tail = text.partition("] ")
            text = f"{head}] ({species}) {tail}" if sep else text
        return text


def setup_logging(run_dir=None, console_level=None, file_level=logging.DEBUG):
    """Attach console and file handlers to the root logger.

    Safe to call repeatedly: handlers are added once, and the per-run
    ``{run_dir}/pipeline.jsonl`` handler is added the first time a
    *run_dir* is given.

    Parameters
    ----------
    run_dir : str, optional
    console_level : int, optional
        Default from the ``LOG_LEVEL`` environment variable, else INFO.
    file_level : int
    """
    global _configured, _run_dir_handler

    if console_level is None:
        console_level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)

    root = logging.getLogger()
    if not _configured:
        root.setLevel(logging.DEBUG)
        root.addFilter(RunIdFilter())

        console = logging.StreamHandler()
        console.setLevel(console_level)
        console.setFormatter(ConsoleFormatter())
        root.addHandler(console)

        # Cross-run history; LOG_DIR overrides ./logs.
        log_dir = os.environ.get("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        os.makedirs(log_dir, exist_ok=True)
        history = RotatingFileHandler(os.path.join(log_dir, "occupancy.log"),
                                      maxBytes=10 * 1024 * 1024, backupCount=3)
        history.setLevel(file_level)
        history.setFormatter(JsonFormatter())
        root.addHandler(history)
        _configured = True

    if run_dir and _run_dir_handler is None:
        os.makedirs(run_dir, exist_ok=True)
        handler = logging.FileHandler(os.path.join(run_dir, "pipeline.jsonl"))
        handler.setLevel(file_level)
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
        _run_dir_handler = handler


def reset_logging():
    """Drop every root handler and filter and forget the run id (tests)."""
    global _configured, _run_dir_handler, _run_id

    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    for f in list(root.filters):
        root.removeFilter(f)
    _configured = False
    _run_dir_handler = None
    _run_id = None


def get_pipeline_logger(name, run_dir=None):
    """``logging.getLogger(name)``, configuring logging first if needed."""
    if not _configured:
        setup_logging(run_dir=run_dir)
    return logging.getLogger(name)


class SpeciesAdapter(logging.LoggerAdapter):
    """Adds ``species`` to every record's extras."""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("species", self.extra["species"])
        kwargs["extra"] = extra
        return msg, kwargs


def species_logger(logger, species):
    return SpeciesAdapter(logger, {"species": species})


def log_step_summary(logger, step_name, status="success", input_summary=None,
                     output_summary=None, timing_seconds=None, warnings_list=None):
    """One INFO line per finished step, with the summaries as extras.

    Parameters
    ----------
    logger : logging.Logger
    step_name : str
    status : str
        "success", "skipped" or "error".
    input_summary, output_summary : dict, optional
    timing_seconds : float, optional
    warnings_list : list[str], optional
    """
    message = f"[{step_name}] {status}"
    if timing_seconds is not None:
        message += f" ({timing_seconds:.1f}s)"
    if output_summary:
        message += f" output={output_summary}"

    extra = {"step_name": step_name}
    optional = {
        "input_summary": input_summary,
        "output_summary": output_summary,
        "timing_seconds": timing_seconds,
        "warnings": warnings_list,
    }
    extra.update({k: v for k, v in optional.items() if v or (k == "timing_seconds" and v is not None)})
    logger.info(message, extra=extra)


class StepTimer:
    """Wall-clock timer: ``with StepTimer() as t: ...; t.elapsed``."""

    def __enter__(self):
        self.start = time.perf_counter()
        self.elapsed = 0.0
        return self

    def __exit__(self, *exc):
        self.elapsed = time.perf_counter() - self.start
        return False
