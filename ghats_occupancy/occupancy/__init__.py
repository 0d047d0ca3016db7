"""Single-species occupancy models: data, estimator, model selection, fit checks."""

from ghats_occupancy.occupancy.detection import (
    DetectionData,
    build_detection_data,
    filter_repeat_visits,
    prepare_model_data,
)
from ghats_occupancy.occupancy.model import OccupancyFit, OccupancyModel, fit_occupancy
from ghats_occupancy.occupancy.selection import CandidateSet, dredge
