"""
Bioclimatic indices from monthly climate grids.

Definitions follow the WorldClim/ANUCLIM BIOCLIM set (O'Donnell & Ignizio
2012, USGS Data Series 691) as implemented in ``dismo::biovars``:
- BIO1  annual mean temperature = mean of the 12 monthly means
- BIO4  temperature seasonality = SD of monthly means × 100
- BIO12 annual precipitation = sum of monthly totals
- BIO15 precipitation seasonality = CV of monthly totals (%); monthly
  totals are offset by 1 mm so dry cells do not divide by zero.

Inputs are stacks shaped (12, rows, cols). NaN cells propagate.
"""

import numpy as np

N_MONTHS = 12


def _check_stack(stack, name):
    stack = np.asarray(stack, dtype=float)
    if stack.ndim != 3 or stack.shape[0] != N_MONTHS:
        raise ValueError(
            f"{name} must be shaped (12, rows, cols), got {stack.shape}"
        )
    return stack


def annual_mean_temperature(tmean):
    return _check_stack(tmean, "tmean").mean(axis=0)


def temperature_seasonality(tmean):
    return _check_stack(tmean, "tmean").std(axis=0, ddof=1) * 100.0


def annual_precipitation(prec):
    return _check_stack(prec, "prec").sum(axis=0)


def precipitation_seasonality(prec):
    shifted = _check_stack(prec, "prec") + 1.0
    return 100.0 * shifted.std(axis=0, ddof=1) / shifted.mean(axis=0)


def compute_bioclim(tmean, prec, temp_scale=1.0):
    """Compute BIO1, BIO4, BIO12 and BIO15.

    Parameters
    ----------
    tmean : array-like
        Monthly mean temperature, shape (12, rows, cols).
    prec : array-like
        Monthly precipitation totals (mm), same shape.
    temp_scale : float
        Multiplier applied once to *tmean* (CHELSA stores °C × 10, so the
        raster stage passes 0.1).

    Returns
    -------
    dict[str, np.ndarray]
        Keys ``bio_1``, ``bio_4``, ``bio_12``, ``bio_15``.
    """
    tmean = _check_stack(tmean, "tmean") * temp_scale
    prec = _check_stack(prec, "prec")
    if tmean.shape != prec.shape:
        raise ValueError(
            f"tmean and prec grids differ: {tmean.shape} vs {prec.shape}"
        )
    return {
        "bio_1": annual_mean_temperature(tmean),
        "bio_4": temperature_seasonality(tmean),
        "bio_12": annual_precipitation(prec),
        "bio_15": precipitation_seasonality(prec),
    }
