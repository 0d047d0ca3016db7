"""
Publication figures for the occupancy analysis.

Cumulative AIC weights, predictor effect directions (combined as Figure 4),
landcover and climate along the elevation gradient, the landcover
resampling check, and checklist counts by elevation.
"""

import os

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from ghats_occupancy import config
from ghats_occupancy.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)

PREDICTOR_NAMES = {
    "bio_1": "Annual Mean Temperature (°C)",
    "bio_4": "Temperature Seasonality",
    "bio_12": "Annual Precipitation (mm)",
    "bio_15": "Precipitation Seasonality",
    "lc_01": "% Agriculture",
    "lc_02": "% Forests",
    "lc_03": "% Grassland",
    "lc_04": "% Plantations",
    "lc_05": "% Settlements",
    "lc_06": "% Tea",
    "lc_07": "% Water Bodies",
}

EFFECT_COLORS = {"negative": "#e41a1c", "positive": "#377eb8"}


def _save(fig, output_path):
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    fig.savefig(output_path, dpi=config.MAP_DPI, bbox_inches="tight")
    plt.close(fig)
    log.info("Saved: %s", output_path)
    return output_path


def _draw_aic_weights(ax, summary):
    df = summary.sort_values("mean_AIC").reset_index(drop=True)
    y = np.arange(len(df))
    ax.errorbar(df["mean_AIC"], y, xerr=df["sd_AIC"].fillna(0.0), fmt="o",
                color="black", ecolor="black", elinewidth=1, capsize=0)
    ax.set_yticks(y)
    ax.set_yticklabels([PREDICTOR_NAMES.get(p, p) for p in df["predictor"]])
    ax.set_xlabel("Cumulative AIC weight")
    ax.set_ylabel("Predictor")
    return df["predictor"].tolist()


def _draw_directions(ax, directions, order):
    y_pos = {p: i for i, p in enumerate(order)}
    for effect, color in EFFECT_COLORS.items():
        sub = directions[directions["effect"] == effect]
        sub = sub[sub["predictor"].isin(y_pos)]
        ax.barh([y_pos[p] for p in sub["predictor"]], sub["magnitude"], height=0.3,
                color=color, label=effect)
    ax.axvline(0, color="grey", linewidth=0.4)
    ax.set_yticks(range(len(order)))
    ax.set_yticklabels([PREDICTOR_NAMES.get(p, p) for p in order])
    ax.set_xlabel("# Species")


def plot_aic_weights(summary, output_path):
    """Mean ± SD cumulative AIC weight per predictor."""
    fig, ax = plt.subplots(figsize=(3.1, 4.7))
    _draw_aic_weights(ax, summary)
    return _save(fig, output_path)


def plot_predictor_directions(directions, summary, output_path):
    """Signed number of species per predictor and effect direction."""
    order = summary.sort_values("mean_AIC")["predictor"].tolist()
    fig, ax = plt.subplots(figsize=(3.1, 4.7))
    _draw_directions(ax, directions, order)
    ax.set_ylabel("Predictor")
    return _save(fig, output_path)


def plot_figure_4(summary, directions, output_path):
    """(a) cumulative AIC weights, (b) effect directions, shared predictor axis."""
    fig, (ax_a, ax_b) = plt.subplots(1, 2, figsize=(6.6, 5.1), sharey=True)
    order = _draw_aic_weights(ax_a, summary)
    _draw_directions(ax_b, directions, order)
    ax_a.set_title("(a)", loc="left")
    ax_b.set_title("(b)", loc="left")
    fig.tight_layout()
    return _save(fig, output_path)


def plot_landcover_by_elevation(lc_elev, output_path):
    """Tile map of landcover proportion within each elevation bin."""
    grid = lc_elev.pivot(index="landcover", columns="elev_round", values="prop")
    fig, ax = plt.subplots(figsize=(10, 4))
    mesh = ax.pcolormesh(np.arange(grid.shape[1] + 1), np.arange(grid.shape[0] + 1),
                         grid.to_numpy(), cmap="inferno", shading="flat")
    ax.set_xticks(np.arange(grid.shape[1]) + 0.5)
    ax.set_xticklabels(grid.columns, rotation=90, fontsize=7)
    ax.set_yticks(np.arange(grid.shape[0]) + 0.5)
    ax.set_yticklabels([config.LANDCOVER_CLASSES.get(int(c), c) for c in grid.index])
    ax.set_xlabel(f"elevation ({config.ELEVATION_BIN_LANDCOVER_M} m interval)")
    ax.set_title("landcover proportion ~ elevation")
    fig.colorbar(mesh, ax=ax, label="proportion")
    return _save(fig, output_path)


def plot_climate_by_elevation(clim_elev, output_path):
    """Mean ± 95% CI of each climate layer along the elevation gradient."""
    variables = list(dict.fromkeys(clim_elev["variable"]))
    fig, axes = plt.subplots(1, len(variables), figsize=(3.5 * len(variables), 3.5),
                             squeeze=False)
    for ax, var in zip(axes[0], variables):
        sub = clim_elev[clim_elev["variable"] == var].sort_values("elev_round")
        ax.errorbar(sub["elev_round"], sub["mean"], yerr=sub["ci"], fmt="o-",
                    markersize=3, color="black", linewidth=0.8)
        ax.set_title(PREDICTOR_NAMES.get(var, var), fontsize=9)
        ax.set_xlabel("elevation (m)")
    fig.tight_layout()
    return _save(fig, output_path)


def plot_landcover_resampling(comparison, output_path):
    """Class proportions of the original and resampled landcover."""
    wide = comparison.pivot(index="landcover", columns="source", values="proportion").fillna(0.0)
    x = np.arange(len(wide))
    width = 0.4
    fig, ax = plt.subplots(figsize=(6, 4))
    for i, source in enumerate(wide.columns):
        ax.bar(x + (i - 0.5) * width, wide[source], width=width, label=source)
    ax.set_xticks(x)
    ax.set_xticklabels([config.LANDCOVER_CLASSES.get(int(c), c) for c in wide.index],
                       rotation=45, ha="right")
    ax.set_ylabel("proportion of cells")
    ax.legend(frameon=False)
    return _save(fig, output_path)


def plot_checklists_by_elevation(elevations, output_path, bin_m=None):
    """Histogram of checklist elevations."""
    if bin_m is None:
        bin_m = config.ELEVATION_BIN_LANDCOVER_M
    elevations = pd.Series(elevations).dropna()
    if elevations.empty:
        log.warning("No checklist elevations to plot")
        return None
    lo = np.floor(elevations.min() / bin_m) * bin_m
    hi = np.floor(elevations.max() / bin_m) * bin_m + bin_m
    bins = np.arange(lo, hi + 1, bin_m)
    fig, ax = plt.subplots(figsize=(6, 4))
    ax.hist(elevations, bins=bins, color="lightgrey", edgecolor="black", linewidth=0.2)
    ax.set_xlabel(f"elevation ({bin_m} m interval)")
    ax.set_ylabel("count")
    ax.set_title("N checklists ~ elevation")
    return _save(fig, output_path)


def run_figures(results_dir, spatial_dir, data_dir, figs_dir):
    """Render every figure whose input table exists."""
    written = []

    def _read(path):
        if not os.path.exists(path):
            log.warning("Figure input missing: %s", path)
            return None
        return pd.read_csv(path)

    summary = _read(os.path.join(results_dir, "cumulative_AIC_weights.csv"))
    directions = _read(os.path.join(results_dir, "data_predictor_direction_nSpecies.csv"))
    if summary is not None and not summary.empty:
        written.append(plot_aic_weights(summary, os.path.join(figs_dir, "fig_aic_weight.png")))
        if directions is not None:
            written.append(plot_predictor_directions(
                directions, summary, os.path.join(figs_dir, "fig_predictor_effect.png")))
            written.append(plot_figure_4(
                summary, directions, os.path.join(figs_dir, "fig_04_aic_weight_effect.png")))

    lc_elev = _read(os.path.join(spatial_dir, "landcover_by_elevation.csv"))
    if lc_elev is not None and not lc_elev.empty:
        written.append(plot_landcover_by_elevation(lc_elev, os.path.join(figs_dir, "fig_lc_elev.png")))

    clim_elev = _read(os.path.join(spatial_dir, "climate_by_elevation.csv"))
    if clim_elev is not None and not clim_elev.empty:
        written.append(plot_climate_by_elevation(clim_elev, os.path.join(figs_dir, "fig_climate_elev.png")))

    comparison = _read(os.path.join(spatial_dir, "landcover_resampling_comparison.csv"))
    if comparison is not None and not comparison.empty:
        written.append(plot_landcover_resampling(
            comparison, os.path.join(figs_dir, "fig_landcover_resampling.png")))

    covars = _read(os.path.join(data_dir, "04_data-covars-2.5km.csv"))
    if covars is not None and "elev" in covars.columns:
        checklists = covars.drop_duplicates("sampling_event_identifier")
        path = plot_checklists_by_elevation(checklists["elev"],
                                            os.path.join(figs_dir, "fig_nchk_elev.png"))
        if path:
            written.append(path)

    return written
