"""
Spatial/temporal thinning of checklists and buffer covariate attachment.

Spatial thinning: the study area is covered with a 1 km square grid and,
per species, each cell keeps only the locality with the most checklists.
Temporal thinning: at most 10 random checklists per locality and species.

Each retained locality gets a 2.5 km buffer in which continuous layers are
averaged and landcover classes are converted to areal proportions.

Ref: Johnston et al. (2019), Best practices for making reliable inferences
from citizen science data: case study using eBird to estimate species
distributions. bioRxiv 574392.
"""

import os

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterstats import zonal_stats

from ghats_occupancy import config
from ghats_occupancy.expertise import assign_checklist_expertise
from ghats_occupancy.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


def project_points(df, epsg=None):
    """Add UTM ``X``/``Y`` columns from longitude/latitude."""
    if epsg is None:
        epsg = config.STUDY_AREA_UTM_EPSG
    points = gpd.GeoSeries(gpd.points_from_xy(df["longitude"], df["latitude"]),
                           crs=f"EPSG:{config.WGS84_EPSG}").to_crs(epsg=epsg)
    out = df.copy()
    out["X"] = points.x.to_numpy()
    out["Y"] = points.y.to_numpy()
    return out


def grid_cells(x, y, grid_size_m, origin):
    """Integer cell id of each point on a square grid anchored at *origin*."""
    col = np.floor((np.asarray(x) - origin[0]) / grid_size_m).astype(np.int64)
    row = np.floor((np.asarray(y) - origin[1]) / grid_size_m).astype(np.int64)
    return row * 10_000_000 + col


def spatial_thin(df, study_area=None, grid_size_m=None, distance_cutoff_km=None, seed=None):
    """Keep, per species and grid cell, the locality with the most checklists.

    Parameters
    ----------
    df : pd.DataFrame
        Zero-filled checklists with ``scientific_name``, ``locality_id``,
        ``longitude``, ``latitude`` and ``effort_distance_km``.
    study_area : gpd.GeoDataFrame, optional
        Grid extent; points outside its bounding box are dropped. Without
        it the grid is anchored at the data's minimum coordinates.
    grid_size_m : float, optional
    distance_cutoff_km : float, optional
        Longer checklists are dropped before thinning.
    seed : int, optional
        Breaks ties between equally visited localities.

    Returns
    -------
    pd.DataFrame
        All checklists of the retained localities, with ``X``, ``Y``,
        ``tot_effort`` and ``cell``.
    """
    if grid_size_m is None:
        grid_size_m = config.THINNING_GRID_SIZE_M
    if distance_cutoff_km is None:
        distance_cutoff_km = config.EFFORT_DISTANCE_CUTOFF_KM
    if seed is None:
        seed = config.THINNING_SEED

    df = df.copy()
    df["tot_effort"] = df.groupby(["scientific_name", "locality_id"])[
        "sampling_event_identifier"
    ].transform("size")
    df = df[df["effort_distance_km"] <= distance_cutoff_km]
    if df.empty:
        return df.assign(X=[], Y=[], cell=[])
    df = project_points(df)

    if study_area is not None:
        xmin, ymin, xmax, ymax = study_area.to_crs(epsg=config.STUDY_AREA_UTM_EPSG).total_bounds
        inside = df["X"].between(xmin, xmax) & df["Y"].between(ymin, ymax)
        df = df[inside].copy()
        origin = (xmin, ymin)
    else:
        origin = (df["X"].min(), df["Y"].min())
    if df.empty:
        log.warning("Spatial thinning: no checklists inside the study area")
        return df.assign(cell=[])
    df["cell"] = grid_cells(df["X"], df["Y"], grid_size_m, origin)

    rng = np.random.default_rng(seed)
    localities = (
        df.groupby(["scientific_name", "cell", "locality_id"])["tot_effort"]
        .first()
        .reset_index()
    )
    kept = []
    for _, cell in localities.groupby(["scientific_name", "cell"], sort=True):
        best = cell[cell["tot_effort"] == cell["tot_effort"].max()]
        kept.append(best.iloc[rng.integers(len(best))] if len(best) > 1 else best.iloc[0])
    kept = pd.DataFrame(kept)[["scientific_name", "locality_id"]]

    thinned = df.merge(kept, on=["scientific_name", "locality_id"], how="inner")
    log.info("Spatial thinning: %d -> %d checklist rows (%d localities)",
             len(df), len(thinned), len(kept))
    return thinned.reset_index(drop=True)


def temporal_subsample(df, max_visits=None, seed=None):
    """At most *max_visits* random checklists per locality and species."""
    if max_visits is None:
        max_visits = config.MAX_VISITS_PER_LOCALITY
    if seed is None:
        seed = config.THINNING_SEED
    rng = np.random.default_rng(seed)
    parts = []
    for _, group in df.groupby(["scientific_name", "locality_id"], sort=True):
        if len(group) > max_visits:
            group = group.iloc[np.sort(rng.choice(len(group), size=max_visits, replace=False))]
        parts.append(group)
    if not parts:
        return df.iloc[0:0]
    return pd.concat(parts).reset_index(drop=True)


def attach_expertise(df, scores):
    """Highest observer expertise per checklist; unscored checklists dropped."""
    return assign_checklist_expertise(df, scores)


def buffer_sites(df, radius_m=None, raster_crs=None):
    """Circular buffers around the distinct site coordinates.

    Returns
    -------
    gpd.GeoDataFrame
        ``X``, ``Y``, ``geometry``; in *raster_crs* when given, else UTM.
    """
    if radius_m is None:
        radius_m = config.SAMPLE_RADIUS_M
    sites = df[["X", "Y"]].drop_duplicates().reset_index(drop=True)
    buffers = gpd.GeoDataFrame(
        sites, geometry=gpd.points_from_xy(sites["X"], sites["Y"]),
        crs=f"EPSG:{config.STUDY_AREA_UTM_EPSG}",
    )
    buffers["geometry"] = buffers.geometry.buffer(radius_m)
    if raster_crs is not None:
        buffers = buffers.to_crs(raster_crs)
    return buffers


def extract_buffer_means(buffers, stack, transform, bands=None):
    """Mean of each continuous band within every buffer.

    Parameters
    ----------
    buffers : gpd.GeoDataFrame
        In the raster CRS.
    stack : dict[str, np.ndarray]
        Band name -> array.
    transform : affine.Affine
    bands : list[str], optional
        Default: every band except ``landcover``.
    """
    if bands is None:
        bands = [b for b in stack if b != "landcover"]
    out = pd.DataFrame(index=buffers.index)
    for band in bands:
        stats = zonal_stats(buffers, stack[band], affine=transform,
                            stats=["mean"], nodata=np.nan, all_touched=False)
        out[band] = [s["mean"] for s in stats]
    return out.astype(float)


def extract_landcover_proportions(buffers, landcover, transform, classes=None):
    """Areal proportion of each landcover class within every buffer.

    Returns
    -------
    pd.DataFrame
        ``lc_01`` ... one column per class; classes absent from a buffer
        are 0 and each row sums to 1 (NaN when the buffer has no data).
    """
    if classes is None:
        classes = sorted(config.LANDCOVER_CLASSES)
    codes = np.nan_to_num(np.asarray(landcover, dtype=float), nan=config.LANDCOVER_NODATA)
    stats = zonal_stats(buffers, codes.astype("int32"), affine=transform,
                        nodata=config.LANDCOVER_NODATA, categorical=True)
    rows = []
    for counts in stats:
        total = sum(counts.values())
        rows.append({
            f"lc_{c:02d}": (counts.get(c, 0) / total) if total else np.nan
            for c in classes
        })
    return pd.DataFrame(rows, index=buffers.index)


def screen_correlations(df, columns, threshold=None):
    """Covariate pairs with |Pearson r| above *threshold*, logged as warnings."""
    columns = list(columns)
    if threshold is None:
        threshold = config.CORRELATION_THRESHOLD
    corr = df[list(columns)].corr()
    rows = []
    for i, a in enumerate(columns):
        for b in columns[i + 1:]:
            r = corr.loc[a, b]
            if pd.notna(r) and abs(r) > threshold:
                rows.append({"covariate_1": a, "covariate_2": b, "r": float(r)})
                log.warning("Correlated covariates: %s ~ %s (r = %.2f)", a, b, r)
    return pd.DataFrame(rows, columns=["covariate_1", "covariate_2", "r"])


def attach_buffer_covariates(df, stack_path, radius_m=None):
    """Buffer means and landcover proportions joined back to the checklists."""
    with rasterio.open(stack_path) as src:
        names = [d or f"band_{i}" for i, d in enumerate(src.descriptions, start=1)]
        stack = {name: src.read(i).astype("float64") for i, name in enumerate(names, start=1)}
        transform, crs = src.transform, src.crs

    buffers = buffer_sites(df, radius_m, raster_crs=crs)
    means = extract_buffer_means(buffers, stack, transform)
    props = extract_landcover_proportions(buffers, stack["landcover"], transform)
    site_covs = pd.concat([buffers[["X", "Y"]], means, props], axis=1)
    return df.merge(site_covs, on=["X", "Y"], how="inner")


def run_covariates(checklist_path, scores_path, stack_path, output_dir,
                   study_area=None):
    """Thin checklists, attach expertise and buffer covariates, write CSV."""
    checklists = pd.read_csv(checklist_path)
    scores = pd.read_csv(scores_path, dtype={"observer": str})

    thinned = spatial_thin(checklists, study_area=study_area)
    subsampled = temporal_subsample(thinned)
    with_expertise = attach_expertise(subsampled, scores)
    covars = attach_buffer_covariates(with_expertise, stack_path)

    lc_cols = [c for c in covars.columns if c.startswith("lc_")]
    screen_correlations(covars, lc_cols + list(config.BIOCLIM_BANDS))

    os.makedirs(output_dir, exist_ok=True)
    radius_km = config.SAMPLE_RADIUS_M / 1000
    path = os.path.join(output_dir, f"04_data-covars-{radius_km:g}km.csv")
    covars.to_csv(path, index=False)
    log.info("Covariate table: %d rows, %d species, %d sites", len(covars),
             covars["scientific_name"].nunique(), covars[["X", "Y"]].drop_duplicates().shape[0])
    return path
