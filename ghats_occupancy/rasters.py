"""
Environmental covariate rasters on a common 1 km grid.

Elevation (with slope and aspect), CHELSA bioclimatic indices and the
Sentinel-2 landcover classification are cropped to a 30 km buffer around
the hills, the landcover is mode-resampled to 1 km, and every continuous
layer is reprojected (bilinear) onto that landcover grid. The result is a
single multiband GeoTIFF with band descriptions
``elev, slope, aspect, bio_1, bio_4, bio_12, bio_15, landcover``.
"""

import glob
import os

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
import rasterio.mask
from rasterio.transform import Affine
from rasterio.warp import Resampling, reproject
from shapely.geometry import mapping

from ghats_occupancy import config
from ghats_occupancy.formulas.bioclim import compute_bioclim
from ghats_occupancy.formulas.terrain import terrain_metrics
from ghats_occupancy.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


def mode(values, nodata=None):
    """Most frequent value; ties go to the smallest value.

    NaN and *nodata* are ignored. Returns *nodata* (or NaN) when nothing
    is left.
    """
    values = np.asarray(values).ravel()
    if np.issubdtype(values.dtype, np.floating):
        values = values[~np.isnan(values)]
    if nodata is not None:
        values = values[values != nodata]
    if values.size == 0:
        return np.nan if nodata is None else nodata
    uniques, counts = np.unique(values, return_counts=True)
    return uniques[np.argmax(counts)]


def study_area_buffer(study_area, buffer_m=None):
    """Dissolved study area buffered by *buffer_m* metres, in WGS84.

    Parameters
    ----------
    study_area : str or gpd.GeoDataFrame
        Shapefile path or polygons.
    buffer_m : float, optional
        Default: ``config.STUDY_AREA_BUFFER_M``.
    """
    if buffer_m is None:
        buffer_m = config.STUDY_AREA_BUFFER_M
    if isinstance(study_area, str):
        study_area = gpd.read_file(study_area)
    utm = study_area.to_crs(epsg=config.STUDY_AREA_UTM_EPSG)
    buffered = utm.union_all().buffer(buffer_m)
    return gpd.GeoDataFrame(geometry=[buffered], crs=utm.crs).to_crs(epsg=config.WGS84_EPSG)


def crop_raster(path, area):
    """Crop and mask a single-band raster to *area*.

    Returns
    -------
    data : np.ndarray
        float64, NaN outside the area and at nodata cells.
    transform : affine.Affine
    crs : rasterio.crs.CRS
    """
    with rasterio.open(path) as src:
        shapes = [mapping(g) for g in area.to_crs(src.crs).geometry]
        masked, transform = rasterio.mask.mask(src, shapes, crop=True, filled=False,
                                               all_touched=True)
        crs = src.crs
    data = masked[0].astype("float64").filled(np.nan)
    return data, transform, crs


def read_monthly_stack(paths, area):
    """Crop twelve monthly rasters and stack them as (12, rows, cols)."""
    if len(paths) != 12:
        raise ValueError(f"Expected 12 monthly rasters, found {len(paths)}")
    layers = []
    transform = crs = None
    for path in sorted(paths):
        data, transform, crs = crop_raster(path, area)
        layers.append(data)
    return np.stack(layers), transform, crs


def terrain_layers(elevation, transform, crs):
    """Elevation, slope and aspect as a dict of arrays."""
    metrics = terrain_metrics(elevation, transform, is_geographic=crs.is_geographic)
    return {"elev": elevation, "slope": metrics["slope"], "aspect": metrics["aspect"]}


def resample_landcover(src_path, dst_path, factor=None, nodata=None):
    """Majority (mode) resampling of a classified raster by an integer factor.

    Class 0 is treated as nodata in both input and output.
    """
    if factor is None:
        factor = config.LANDCOVER_RESAMPLE_FACTOR
    if nodata is None:
        nodata = config.LANDCOVER_NODATA

    with rasterio.open(src_path) as src:
        data = src.read(1)
        dst_height = max(1, src.height // factor)
        dst_width = max(1, src.width // factor)
        dst_transform = src.transform * Affine.scale(factor, factor)
        out = np.full((dst_height, dst_width), nodata, dtype="uint8")
        reproject(
            data, out,
            src_transform=src.transform, src_crs=src.crs, src_nodata=nodata,
            dst_transform=dst_transform, dst_crs=src.crs, dst_nodata=nodata,
            resampling=Resampling.mode,
        )
        meta = src.meta.copy()

    meta.update({
        "driver": "GTiff",
        "height": dst_height,
        "width": dst_width,
        "transform": dst_transform,
        "dtype": "uint8",
        "nodata": nodata,
        "count": 1,
    })
    os.makedirs(os.path.dirname(dst_path) or ".", exist_ok=True)
    with rasterio.open(dst_path, "w", **meta) as dst:
        dst.write(out, 1)

    log.info("Landcover resampled x%d: %dx%d -> %dx%d", factor,
             data.shape[0], data.shape[1], dst_height, dst_width)
    return dst_path


def landcover_class_frequencies(path, nodata=None):
    """Cell counts and proportions per landcover class."""
    if nodata is None:
        nodata = config.LANDCOVER_NODATA
    with rasterio.open(path) as src:
        data = src.read(1)
    values = data[data != nodata]
    classes, counts = np.unique(values, return_counts=True)
    df = pd.DataFrame({"landcover": classes.astype(int), "count": counts})
    df["proportion"] = df["count"] / max(int(df["count"].sum()), 1)
    df["label"] = df["landcover"].map(config.LANDCOVER_CLASSES)
    return df


def compare_landcover_resampling(original_path, resampled_path):
    """Class proportions before and after resampling, long format."""
    frames = []
    for source, path in (("original", original_path), ("resampled", resampled_path)):
        freq = landcover_class_frequencies(path)
        freq.insert(0, "source", source)
        frames.append(freq)
    return pd.concat(frames, ignore_index=True)


def align_to_template(layers, template_path, out_path, band_names=None):
    """Reproject continuous layers onto the landcover grid and stack them.

    Parameters
    ----------
    layers : dict[str, tuple]
        Band name -> (array, transform, crs).
    template_path : str
        Resampled landcover raster; its grid is the target and its values
        become the last band.
    out_path : str
    band_names : list[str], optional
        Output band order. Default: ``config.LANDSCAPE_BANDS``.

    Returns
    -------
    str
        *out_path*.
    """
    if band_names is None:
        band_names = config.LANDSCAPE_BANDS

    with rasterio.open(template_path) as tpl:
        landcover = tpl.read(1).astype("float32")
        if tpl.nodata is not None:
            landcover[landcover == tpl.nodata] = np.nan
        dst_transform, dst_crs = tpl.transform, tpl.crs
        shape = (tpl.height, tpl.width)

    bands = []
    for name in band_names:
        if name == "landcover":
            bands.append(landcover)
            continue
        if name not in layers:
            raise KeyError(f"No layer for band {name}")
        data, transform, crs = layers[name]
        out = np.full(shape, np.nan, dtype="float32")
        reproject(
            data.astype("float32"), out,
            src_transform=transform, src_crs=crs, src_nodata=np.nan,
            dst_transform=dst_transform, dst_crs=dst_crs, dst_nodata=np.nan,
            resampling=Resampling.bilinear,
        )
        bands.append(out)

    meta = {
        "driver": "GTiff",
        "height": shape[0],
        "width": shape[1],
        "count": len(bands),
        "dtype": "float32",
        "crs": dst_crs,
        "transform": dst_transform,
        "nodata": np.nan,
    }
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    with rasterio.open(out_path, "w", **meta) as dst:
        for i, (name, band) in enumerate(zip(band_names, bands), start=1):
            dst.write(band, i)
            dst.set_band_description(i, name)

    log.info("Landscape stack written: %s (%d bands)", out_path, len(bands))
    return out_path


def read_stack(path):
    """Read a multiband stack into a dict of band name -> array."""
    with rasterio.open(path) as src:
        names = [d or f"band_{i}" for i, d in enumerate(src.descriptions, start=1)]
        return {name: src.read(i).astype("float64") for i, name in enumerate(names, start=1)}


def landcover_by_elevation(elevation, landcover, bin_m=None):
    """Proportion of each landcover class within elevation bins.

    Elevations are rounded to the nearest multiple of *bin_m*.
    """
    if bin_m is None:
        bin_m = config.ELEVATION_BIN_LANDCOVER_M
    df = pd.DataFrame({"elev": np.ravel(elevation), "landcover": np.ravel(landcover)}).dropna()
    df["elev_round"] = (np.round(df["elev"] / bin_m) * bin_m).astype(int)
    counts = df.groupby(["elev_round", "landcover"]).size().rename("n").reset_index()
    counts["landcover"] = counts["landcover"].astype(int)
    counts["prop"] = counts["n"] / counts.groupby("elev_round")["n"].transform("sum")
    return counts


def climate_by_elevation(elevation, climate, bin_m=None, ci_z=1.96):
    """Mean and 95% CI of climate layers within elevation bins.

    Parameters
    ----------
    elevation : np.ndarray
    climate : dict[str, np.ndarray]
        Layers on the same grid as *elevation*.

    Returns
    -------
    pd.DataFrame
        ``variable``, ``elev_round``, ``mean``, ``sd``, ``n``, ``ci``.
    """
    if bin_m is None:
        bin_m = config.ELEVATION_BIN_CLIMATE_M
    frames = []
    for name, values in climate.items():
        df = pd.DataFrame({"elev": np.ravel(elevation), "value": np.ravel(values)}).dropna()
        df["elev_round"] = (np.round(df["elev"] / bin_m) * bin_m).astype(int)
        summary = df.groupby("elev_round")["value"].agg(["mean", "std", "count"]).reset_index()
        summary = summary.rename(columns={"std": "sd", "count": "n"})
        summary["ci"] = ci_z * summary["sd"].fillna(0.0) / np.sqrt(summary["n"])
        summary.insert(0, "variable", name)
        frames.append(summary)
    return pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()


def run_rasters(data_dir, output_dir):
    """Build the landscape stack and its elevation summaries.

    Returns
    -------
    dict
        Output paths keyed by product.
    """
    area = study_area_buffer(os.path.join(data_dir, config.STUDY_AREA_SHAPEFILE))

    elevation, elev_transform, elev_crs = crop_raster(
        os.path.join(data_dir, config.ELEVATION_RASTER), area,
    )
    layers = {name: (array, elev_transform, elev_crs)
              for name, array in terrain_layers(elevation, elev_transform, elev_crs).items()}

    chelsa_dir = os.path.join(data_dir, config.CHELSA_MONTHLY_DIR)
    tmean, clim_transform, clim_crs = read_monthly_stack(
        glob.glob(os.path.join(chelsa_dir, config.CHELSA_TMEAN_PATTERN)), area,
    )
    prec, _, _ = read_monthly_stack(
        glob.glob(os.path.join(chelsa_dir, config.CHELSA_PREC_PATTERN)), area,
    )
    bioclim = compute_bioclim(tmean, prec, temp_scale=config.CHELSA_TEMP_SCALE)
    layers.update({name: (array, clim_transform, clim_crs) for name, array in bioclim.items()})

    landcover_src = os.path.join(data_dir, config.LANDCOVER_RASTER)
    landcover_1km = resample_landcover(
        landcover_src, os.path.join(output_dir, "landcover_resamp01_km.tif"),
    )
    stack_path = align_to_template(
        layers, landcover_1km, os.path.join(output_dir, config.LANDSCAPE_STACK_FILENAME),
    )

    stack = read_stack(stack_path)
    lc_elev = landcover_by_elevation(stack["elev"], stack["landcover"])
    clim_elev = climate_by_elevation(stack["elev"], {b: stack[b] for b in config.BIOCLIM_BANDS})
    lc_compare = compare_landcover_resampling(landcover_src, landcover_1km)

    paths = {
        "stack": stack_path,
        "landcover": landcover_1km,
        "landcover_elevation": os.path.join(output_dir, "landcover_by_elevation.csv"),
        "climate_elevation": os.path.join(output_dir, "climate_by_elevation.csv"),
        "landcover_comparison": os.path.join(output_dir, "landcover_resampling_comparison.csv"),
    }
    lc_elev.to_csv(paths["landcover_elevation"], index=False)
    clim_elev.to_csv(paths["climate_elevation"], index=False)
    lc_compare.to_csv(paths["landcover_comparison"], index=False)
    return paths
