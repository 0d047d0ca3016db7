"""
Centralized configuration for the Western Ghats bird occupancy analysis.

All analysis parameters, thresholds, covariate definitions, and paths are
defined here with inline citations justifying each choice.
"""

import os

# ─── PATHS ───────────────────────────────────────────────────────────────
DEFAULT_DATA_DIR = "data"
DEFAULT_OUTPUT_DIR = "outputs"

# eBird Basic Dataset extract (detections) and its sampling-event file.
EBD_FILENAME = "ebd_IN_relMay-2020.txt"
SAMPLING_FILENAME = "ebd_sampling_relMay-2020.txt"
SPECIES_LIST_FILENAME = "species_list.csv"

# Nilgiri, Anamalai and Palani hills boundary.
STUDY_AREA_SHAPEFILE = os.path.join("spatial", "hillsShapefile", "Nil_Ana_Pal.shp")

# Raster inputs (relative to the data directory).
ELEVATION_RASTER = os.path.join("spatial", "Elevation", "alt.tif")
CHELSA_MONTHLY_DIR = "chelsa"
CHELSA_TMEAN_PATTERN = "CHELSA_tmean_*.tif"
CHELSA_PREC_PATTERN = "CHELSA_prec_*.tif"
LANDCOVER_RASTER = os.path.join("landUseClassification", "classifiedImage-UTM.tif")

# ─── COORDINATE REFERENCE SYSTEMS ────────────────────────────────────────
WGS84_EPSG = 4326
# UTM Zone 43N covers the Nilgiris and Anamalais; all metric buffering
# and gridding is done in this CRS to avoid distortion.
STUDY_AREA_UTM_EPSG = 32643

# ─── INGESTION FILTERS ───────────────────────────────────────────────────
# Only Traveling and Stationary checklists carry comparable effort fields.
PROTOCOL_TYPES = ("Traveling", "Stationary")
DATE_START = "2013-01-01"
DATE_END = "2019-12-31"
# Approximate bounding box around the three hill ranges.
STUDY_AREA_BBOX = {
    "west": 76.0,
    "south": 9.5,
    "east": 78.0,
    "north": 12.0,
}
# Following Johnston et al. (2021) best practices for eBird:
# "restrict checklists to < 5 h and < 5 km to reduce variation in effort."
MAX_DURATION_MINUTES = 300
MAX_EFFORT_DISTANCE_KM = 5.0
MAX_NUMBER_OBSERVERS = 10
# Stationary counts have zero distance; 100 m is approximately the maximum
# hearing distance for observers doing point counts.
STATIONARY_DISTANCE_KM = 0.1

# ─── OBSERVER EXPERTISE ──────────────────────────────────────────────────
# Checklist calibration index following Johnston et al. (2018):
# species richness ~ effort + landcover + time of day + (1 | observer).
# log_duration and min_obs_started are standardised before the fit.
EXPERTISE_FORMULA = (
    "n_species ~ log_duration + min_obs_started + "
    "I(min_obs_started ** 2) + C(landcover)"
)
EXPERTISE_SINGLE_OBSERVER_ONLY = True
EXPERTISE_MIN_CHECKLISTS = 2  # Observers with fewer checklists are not scored

# ─── RASTER PREPARATION ──────────────────────────────────────────────────
STUDY_AREA_BUFFER_M = 30_000  # 30 km mask around the hills
LANDCOVER_RESAMPLE_FACTOR = 100  # 10 m Sentinel-2 classification -> 1 km
LANDCOVER_NODATA = 0
# CHELSA stores temperature as degC * 10.
CHELSA_TEMP_SCALE = 0.1

ELEVATION_BANDS = ["elev", "slope", "aspect"]
BIOCLIM_BANDS = ["bio_1", "bio_4", "bio_12", "bio_15"]
LANDSCAPE_BANDS = ELEVATION_BANDS + BIOCLIM_BANDS + ["landcover"]
LANDSCAPE_STACK_FILENAME = "landscape_resamp01_km.tif"

LANDCOVER_CLASSES = {
    1: "Agriculture",
    2: "Forest",
    3: "Grassland",
    4: "Plantations",
    5: "Settlements",
    6: "Tea",
    7: "Water Bodies",
}

# Elevation bins used for the landcover/climate-by-elevation summaries.
ELEVATION_BIN_LANDCOVER_M = 100
ELEVATION_BIN_CLIMATE_M = 200

# ─── SPATIAL AND TEMPORAL THINNING ───────────────────────────────────────
# Over 80% of checklists are retained with a 1 km independence distance.
THINNING_GRID_SIZE_M = 1000
EFFORT_DISTANCE_CUTOFF_KM = 1.0
MAX_VISITS_PER_LOCALITY = 10
THINNING_SEED = 42

# Following Johnston et al. (2019): most observations fall within a 3 km
# grid even for long checklists; sample covariates within 2.5 km.
SAMPLE_RADIUS_M = 2500

# ─── OCCUPANCY MODELS ────────────────────────────────────────────────────
DETECTION_COVARIATES = [
    "min_obs_started",
    "julian_date",
    "duration_minutes",
    "effort_distance_km",
    "number_observers",
    "protocol_type",
    "expertise",
]
# Grassland (lc_03) is excluded: r = -0.77 with forest.
OCCUPANCY_COVARIATES = [
    "lc_01", "lc_02", "lc_04", "lc_05", "lc_06", "lc_07", "bio_1", "bio_12",
]
# protocol_type is recoded to 0/1 and is not standardised.
UNSCALED_COVARIATES = ["protocol_type"]
CORRELATION_THRESHOLD = 0.5

# Repeat-visit structure: a site is a locality within a closure window.
MIN_VISITS_PER_SITE = 1
MAX_VISITS_PER_SITE = 10
CLOSURE_WINDOW_DAYS = 2600  # ~7 years treated as one closure period
REPEAT_VISIT_SEED = 42

# Burnham & Anderson (2002): models with delta AICc < 2 have substantial
# support and form the averaging subset.
DELTA_AICC_THRESHOLD = 2.0
CI_LEVEL = 0.95
SIGNIFICANCE_ALPHA = 0.05

# Optimiser settings for the occupancy likelihood.
OPTIMIZER_METHOD = "bfgs"
OPTIMIZER_MAXITER = 1000

# MacKenzie & Bailey (2004) chi-square parametric bootstrap.
GOF_SIMULATIONS = 5000
GOF_SEED = 42

# Workers for the exhaustive submodel search (default: CPU count - 1).
MAX_WORKERS = None

# ─── OUTPUT PATHS ─────────────────────────────────────────────────────────
OUTPUT_DIRS = {
    "data": "data",
    "spatial": "spatial",
    "results": "results",
    "figs": "figs",
}

MAP_DPI = 300


def get_stage_dirs(output_dir):
    """Return the output subdirectories used by the pipeline stages.

    Parameters
    ----------
    output_dir : str
        Run-level output directory.

    Returns
    -------
    dict
        Keys from ``OUTPUT_DIRS`` mapped to absolute-ish paths.
    """
    return {key: os.path.join(output_dir, sub) for key, sub in OUTPUT_DIRS.items()}
