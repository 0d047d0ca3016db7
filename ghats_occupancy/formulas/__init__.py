"""
Pure computational functions used across the occupancy pipeline.

config.py retains runtime parameters and paths; this package holds the
science: bioclimatic indices, terrain derivatives and information-theoretic
model selection.
"""

from ghats_occupancy.formulas.bioclim import compute_bioclim
from ghats_occupancy.formulas.terrain import terrain_metrics
from ghats_occupancy.formulas.model_selection import (
    ESTIMATE_COLUMNS,
    aicc,
    akaike_weights,
    candidate_term_sets,
    cumulative_importance,
    model_average,
    top_models,
)
