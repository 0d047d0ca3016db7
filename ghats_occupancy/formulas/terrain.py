"""
Slope and aspect from an elevation grid.

Horn (1981) third-order finite differences over the 3 × 3 neighbourhood,
the same kernel used by GDAL ``gdaldem`` and ``raster::terrain`` with eight
neighbours. Edges are handled by repeating the border cells.

Aspect is the compass direction the slope faces, clockwise from north in
degrees [0, 360). Flat cells have undefined aspect (NaN).
"""

import numpy as np

# Mean metres per degree of latitude (WGS84), used when the grid is geographic.
METRES_PER_DEGREE = 111_320.0


def cell_size_metres(transform, is_geographic, center_lat=0.0):
    """Return (x_res, y_res) of a grid in metres.

    Geographic grids are converted at *center_lat*; longitude spacing
    shrinks with cos(latitude).
    """
    x_res = abs(transform.a)
    y_res = abs(transform.e)
    if is_geographic:
        x_res *= METRES_PER_DEGREE * np.cos(np.radians(center_lat))
        y_res *= METRES_PER_DEGREE
    return x_res, y_res


def horn_gradients(elevation, x_res, y_res):
    """dz/dx (eastward) and dz/dy (southward, row direction) per Horn (1981)."""
    z = np.pad(np.asarray(elevation, dtype=float), 1, mode="edge")
    a, b, c = z[:-2, :-2], z[:-2, 1:-1], z[:-2, 2:]
    d, f = z[1:-1, :-2], z[1:-1, 2:]
    g, h, i = z[2:, :-2], z[2:, 1:-1], z[2:, 2:]
    dz_dx = ((c + 2 * f + i) - (a + 2 * d + g)) / (8.0 * x_res)
    dz_dy = ((g + 2 * h + i) - (a + 2 * b + c)) / (8.0 * y_res)
    return dz_dx, dz_dy


def slope_degrees(dz_dx, dz_dy):
    return np.degrees(np.arctan(np.hypot(dz_dx, dz_dy)))


def aspect_degrees(dz_dx, dz_dy):
    # Row index grows southward, so the downslope vector is (-dz_dx, dz_dy)
    # in (east, north) coordinates.
    aspect = np.degrees(np.arctan2(-dz_dx, dz_dy))
    aspect = np.mod(aspect, 360.0)
    flat = (dz_dx == 0) & (dz_dy == 0)
    return np.where(flat, np.nan, aspect)


def terrain_metrics(elevation, transform, is_geographic=False, center_lat=None):
    """Slope and aspect in degrees for an elevation grid.

    Parameters
    ----------
    elevation : np.ndarray
        2-D elevation grid in metres. NaN marks nodata.
    transform : affine.Affine
        Grid transform.
    is_geographic : bool
        True when the grid is in degrees (e.g. EPSG:4326).
    center_lat : float, optional
        Latitude used to convert degrees to metres. Defaults to the
        latitude of the grid centre.

    Returns
    -------
    dict[str, np.ndarray]
        ``slope`` and ``aspect``.
    """
    elevation = np.asarray(elevation, dtype=float)
    if center_lat is None:
        center_lat = transform.f + transform.e * elevation.shape[0] / 2.0
    x_res, y_res = cell_size_metres(transform, is_geographic, center_lat)
    dz_dx, dz_dy = horn_gradients(elevation, x_res, y_res)
    # The kernel skips the centre cell, so nodata cells are masked explicitly.
    nodata = np.isnan(elevation)
    return {
        "slope": np.where(nodata, np.nan, slope_degrees(dz_dx, dz_dy)),
        "aspect": np.where(nodata, np.nan, aspect_degrees(dz_dx, dz_dy)),
    }
