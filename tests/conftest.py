"""
Shared fixtures for the occupancy pipeline tests.

Provides simulated detection histories with known occupancy and detection
parameters, synthetic GeoTIFFs in the study-area UTM zone, and a tiny
eBird extract, so each test module can check pipeline logic against
known inputs.
"""

import os

import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin
from scipy.special import expit

from ghats_occupancy.occupancy.detection import DetectionData


# ---------------------------------------------------------------------------
# Known parameters for simulated detection histories
# ---------------------------------------------------------------------------
PSI_INTERCEPT = 0.3   # logit scale
PSI_FOREST = 1.2
P_INTERCEPT = -0.3
P_EFFORT = 0.9

UTM_CRS = "EPSG:32643"
# Somewhere in the Nilgiris, UTM 43N.
UTM_ORIGIN = (680_000.0, 1_270_000.0)


def simulate_occupancy(n_sites=300, n_visits=5, seed=1, missing_visits=True,
                       psi_intercept=PSI_INTERCEPT, psi_forest=PSI_FOREST,
                       p_intercept=P_INTERCEPT, p_effort=P_EFFORT):
    """Simulate detections from the occupancy model.

    Site covariates: ``forest`` (drives psi) and ``noise`` (no effect).
    Visit covariate: ``effort`` (drives p). With *missing_visits*, about a
    fifth of the sites have their last two visits missing.
    """
    rng = np.random.default_rng(seed)
    forest = rng.normal(size=n_sites)
    noise = rng.normal(size=n_sites)
    effort = rng.normal(size=(n_sites, n_visits))

    psi = expit(psi_intercept + psi_forest * forest)
    p = expit(p_intercept + p_effort * effort)
    z = rng.random(n_sites) < psi
    y = ((rng.random((n_sites, n_visits)) < p) & z[:, None]).astype(float)

    if missing_visits:
        short = rng.random(n_sites) < 0.2
        y[short, -2:] = np.nan
        effort[short, -2:] = np.nan

    site_ids = [f"L{i}_0" for i in range(n_sites)]
    site_covs = pd.DataFrame({"forest": forest, "noise": noise}, index=site_ids)
    return DetectionData(y=y, site_covs=site_covs, obs_covs={"effort": effort},
                         site_ids=site_ids, species="Simulatus avis")


def simulate_checklists(species="Simulatus avis", n_localities=120, n_visits=4, seed=3):
    """Long checklist table (one row per checklist) for one species."""
    data = simulate_occupancy(n_sites=n_localities, n_visits=n_visits, seed=seed,
                              missing_visits=False)
    rows = []
    dates = pd.date_range("2018-01-01", periods=n_visits, freq="7D")
    for i in range(n_localities):
        for j in range(n_visits):
            rows.append({
                "sampling_event_identifier": f"S{i}_{j}",
                "scientific_name": species,
                "locality_id": f"L{i}",
                "observation_date": dates[j].strftime("%Y-%m-%d"),
                "pres_abs": int(data.y[i, j]),
                "effort": data.obs_covs["effort"][i, j],
                "forest": data.site_covs["forest"].iloc[i],
                "noise": data.site_covs["noise"].iloc[i],
            })
    return pd.DataFrame(rows)


@pytest.fixture(scope="session")
def simulated_data():
    """300 sites x 5 visits with a forest effect on psi and an effort effect on p."""
    return simulate_occupancy()


@pytest.fixture
def simulated_checklists():
    return simulate_checklists()


# ---------------------------------------------------------------------------
# Rasters
# ---------------------------------------------------------------------------

def write_raster(path, data, transform=None, crs=UTM_CRS, nodata=None, descriptions=None):
    """Write a 2-D or (bands, rows, cols) array as a GeoTIFF."""
    data = np.asarray(data)
    if data.ndim == 2:
        data = data[None]
    if transform is None:
        transform = from_origin(UTM_ORIGIN[0], UTM_ORIGIN[1], 1000.0, 1000.0)
    meta = {
        "driver": "GTiff",
        "height": data.shape[1],
        "width": data.shape[2],
        "count": data.shape[0],
        "dtype": data.dtype.name,
        "crs": crs,
        "transform": transform,
        "nodata": nodata,
    }
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with rasterio.open(path, "w", **meta) as dst:
        dst.write(data)
        for i, name in enumerate(descriptions or [], start=1):
            dst.set_band_description(i, name)
    return path


@pytest.fixture
def landcover_raster(tmp_path):
    """4 x 4 classified raster at 10 m whose 2 x 2 blocks have clear majorities."""
    data = np.array([
        [2, 2, 1, 1],
        [2, 3, 1, 5],
        [6, 6, 4, 4],
        [6, 0, 4, 7],
    ], dtype="uint8")
    transform = from_origin(UTM_ORIGIN[0], UTM_ORIGIN[1], 10.0, 10.0)
    return write_raster(str(tmp_path / "landcover.tif"), data, transform=transform, nodata=0)


# ---------------------------------------------------------------------------
# eBird extract
# ---------------------------------------------------------------------------

SAMPLING_HEADER = [
    "SAMPLING EVENT IDENTIFIER", "GROUP IDENTIFIER", "OBSERVER ID", "LOCALITY",
    "LOCALITY ID", "LOCALITY TYPE", "LATITUDE", "LONGITUDE", "OBSERVATION DATE",
    "TIME OBSERVATIONS STARTED", "DURATION MINUTES", "EFFORT DISTANCE KM",
    "NUMBER OBSERVERS", "PROTOCOL TYPE", "ALL SPECIES REPORTED",
]

EBD_HEADER = [
    "SAMPLING EVENT IDENTIFIER", "CATEGORY", "SCIENTIFIC NAME", "OBSERVATION COUNT",
]


def _write_tsv(path, header, rows):
    # EBD lines end with a trailing tab.
    with open(path, "w") as f:
        f.write("\t".join(header) + "\t\n")
        for row in rows:
            f.write("\t".join(str(v) for v in row) + "\t\n")
    return path


@pytest.fixture
def ebd_files(tmp_path):
    """A sampling-event file with one checklist per filter rule, plus detections.

    S1, S2: kept (S2 is Stationary with no distance).
    S3/S4: one shared group checklist G1.
    S5: incomplete; S6: Incidental; S7: too long; S8: outside the box;
    S9: before the study period.
    """
    sampling = [
        ["S1", "", "obsr1", "Ooty", "L1", "H", 11.40, 76.70, "2018-03-01", "06:30:00", 60, 1.2, 1, "Traveling", 1],
        ["S2", "", "obsr2", "Kodai", "L2", "H", 10.23, 77.48, "2018-03-02", "07:00:00", 30, "", 1, "Stationary", 1],
        ["S3", "G1", "obsr1", "Ooty", "L1", "H", 11.40, 76.70, "2018-04-01", "08:00:00", 45, 0.5, 2, "Traveling", 1],
        ["S4", "G1", "obsr3", "Ooty", "L1", "H", 11.40, 76.70, "2018-04-01", "08:00:00", 45, 0.5, 2, "Traveling", 1],
        ["S5", "", "obsr2", "Kodai", "L2", "H", 10.23, 77.48, "2018-05-01", "07:00:00", 30, 0.3, 1, "Traveling", 0],
        ["S6", "", "obsr2", "Kodai", "L2", "H", 10.23, 77.48, "2018-05-02", "07:00:00", 30, 0.3, 1, "Incidental", 1],
        ["S7", "", "obsr2", "Kodai", "L2", "H", 10.23, 77.48, "2018-05-03", "07:00:00", 400, 0.3, 1, "Traveling", 1],
        ["S8", "", "obsr2", "Mumbai", "L9", "H", 19.00, 72.80, "2018-05-04", "07:00:00", 30, 0.3, 1, "Traveling", 1],
        ["S9", "", "obsr2", "Kodai", "L2", "H", 10.23, 77.48, "2010-05-04", "07:00:00", 30, 0.3, 1, "Traveling", 1],
    ]
    detections = [
        ["S1", "species", "Sholicola major", "2"],
        ["S1", "species", "Montecincla cachinnans", "X"],
        ["S1", "spuh", "Accipiter sp.", "1"],
        ["S2", "species", "Montecincla cachinnans", "1"],
        ["S3", "species", "Sholicola major", "1"],
        ["S4", "species", "Sholicola major", "1"],
        ["S4", "species", "Pycnonotus jocosus", "3"],
    ]
    sampling_path = _write_tsv(str(tmp_path / "sampling.txt"), SAMPLING_HEADER, sampling)
    ebd_path = _write_tsv(str(tmp_path / "ebd.txt"), EBD_HEADER, detections)
    return ebd_path, sampling_path
