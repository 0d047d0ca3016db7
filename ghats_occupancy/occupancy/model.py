"""
Single-season site-occupancy model (MacKenzie et al. 2002).

The latent state z_i ~ Bernoulli(psi_i) says whether site i is occupied;
each visit j to an occupied site detects the species with probability p_ij.
Both probabilities use a logit link on their own design matrix.

Likelihood of one site with detection history y_i over its observed visits:
- detected at least once:  psi_i * prod_j p_ij^y_ij (1 - p_ij)^(1 - y_ij)
- never detected:          psi_i * prod_j (1 - p_ij) + (1 - psi_i)

Optimisation, numerical Hessian and standard errors come from statsmodels'
``GenericLikelihoodModel``; this module only supplies the log-likelihood.
"""

import warnings
from dataclasses import dataclass, field

import numpy as np
from scipy.special import expit
from statsmodels.base.model import GenericLikelihoodModel
from statsmodels.tools.sm_exceptions import ConvergenceWarning, HessianInversionWarning

from ghats_occupancy import config
from ghats_occupancy.formulas.model_selection import aicc as _aicc, wald_table


def occupancy_label(term):
    return f"psi({term})"


def detection_label(term):
    return f"p({term})"


INTERCEPT = "Int"


def _log_expit(x):
    return -np.logaddexp(0.0, -x)


class OccupancyModel(GenericLikelihoodModel):
    """MacKenzie single-season occupancy likelihood.

    Parameters
    ----------
    y : np.ndarray
        Detection matrix (n_sites, n_visits) of 0/1 with NaN for visits
        that did not happen.
    state_exog : np.ndarray
        Occupancy design matrix (n_sites, k_psi), intercept column included.
    det_exog : np.ndarray
        Detection design array (n_sites, n_visits, k_p), intercept included.
        Entries at unobserved visits are ignored.
    state_names, det_names : list[str]
        Parameter labels, e.g. ``psi(Int)`` and ``p(expertise)``.
    """

    def __init__(self, y, state_exog, det_exog, state_names, det_names, **kwds):
        self.y = np.asarray(y, dtype=float)
        if self.y.ndim != 2:
            raise ValueError(f"y must be 2-D (sites x visits), got shape {self.y.shape}")
        self.observed = ~np.isnan(self.y)
        self.det_design = np.asarray(det_exog, dtype=float)
        if self.det_design.shape[:2] != self.y.shape:
            raise ValueError(
                f"Detection design {self.det_design.shape} does not match y {self.y.shape}"
            )
        self.det_exog = np.where(self.observed[:, :, None], self.det_design, 0.0)
        self.state_names = list(state_names)
        self.det_names = list(det_names)
        self.k_state = len(self.state_names)
        self.coef_names = self.state_names + self.det_names
        super().__init__(
            self.y, np.asarray(state_exog, dtype=float),
            extra_params_names=self.det_names, missing="none", **kwds,
        )

    def with_response(self, y):
        """Same designs, new detection matrix (used by the bootstrap)."""
        return type(self)(y, self.exog, self.det_design, self.state_names, self.det_names)

    def split_params(self, params):
        params = np.asarray(params, dtype=float)
        return params[:self.k_state], params[self.k_state:]

    def predict_psi(self, params):
        beta_state, _ = self.split_params(params)
        return expit(self.exog @ beta_state)

    def predict_p(self, params):
        """Detection probabilities (n_sites, n_visits); NaN at unobserved visits."""
        _, beta_det = self.split_params(params)
        p = expit(self.det_exog @ beta_det)
        return np.where(self.observed, p, np.nan)

    def loglikeobs(self, params):
        beta_state, beta_det = self.split_params(params)
        eta_psi = self.exog @ beta_state
        eta_p = self.det_exog @ beta_det

        y = np.where(self.observed, self.y, 0.0)
        per_visit = y * _log_expit(eta_p) + (1.0 - y) * _log_expit(-eta_p)
        ll_history = np.where(self.observed, per_visit, 0.0).sum(axis=1)

        occupied = _log_expit(eta_psi) + ll_history
        detected = (y > 0).any(axis=1)
        return np.where(detected, occupied, np.logaddexp(occupied, _log_expit(-eta_psi)))

    def loglike(self, params):
        return self.loglikeobs(params).sum()


@dataclass
class OccupancyFit:
    """A fitted occupancy model with information criteria and diagnostics."""

    det_terms: tuple
    occ_terms: tuple
    param_names: list
    params: np.ndarray
    bse: np.ndarray
    llf: float
    n_sites: int
    converged: bool
    identifiable: bool
    fit_warnings: list = field(default_factory=list)
    model: OccupancyModel = None

    @property
    def k(self):
        return len(self.params)

    @property
    def aic(self):
        return -2.0 * self.llf + 2.0 * self.k

    @property
    def aicc(self):
        return _aicc(self.llf, self.k, self.n_sites)

    def coef_table(self, ci_level=None):
        """Wald table: predictor, coefficient, se, ci_lower, ci_upper, z_value, p_value."""
        return wald_table(self.param_names, self.params, self.bse, ci_level)

    def predict_psi(self):
        return self.model.predict_psi(self.params)

    def predict_p(self):
        return self.model.predict_p(self.params)

    def to_record(self):
        """Picklable summary used by the submodel search workers."""
        return {
            "det_terms": tuple(self.det_terms),
            "occ_terms": tuple(self.occ_terms),
            "k": self.k,
            "loglik": self.llf,
            "aicc": self.aicc,
            "converged": self.converged,
            "identifiable": self.identifiable,
            "coefficients": self.coef_table()[["predictor", "coefficient", "se"]],
        }

    def summary_dict(self):
        return {
            "k": self.k,
            "loglik": self.llf,
            "aic": self.aic,
            "aicc": self.aicc,
            "n_sites": self.n_sites,
            "converged": self.converged,
            "identifiable": self.identifiable,
        }

    def summary_text(self):
        det = " + ".join(self.det_terms) or "1"
        occ = " + ".join(self.occ_terms) or "1"
        lines = [
            f"Occupancy model  ~{det}  ~{occ}",
            f"Sites: {self.n_sites}   k: {self.k}   logLik: {self.llf:.3f}",
            f"AIC: {self.aic:.3f}   AICc: {self.aicc:.3f}",
            f"Converged: {self.converged}   Identifiable: {self.identifiable}",
            "",
            self.coef_table().to_string(index=False, float_format=lambda v: f"{v:.4f}"),
        ]
        if self.fit_warnings:
            lines += ["", "Warnings:"] + [f"  {w}" for w in self.fit_warnings]
        return "\n".join(lines)


def design_matrices(data, det_terms=(), occ_terms=()):
    """Build the occupancy and detection designs for a ``DetectionData``.

    Detection terms may be visit-level (``data.obs_covs``) or site-level
    (``data.site_covs``, broadcast across visits).
    """
    n_sites, n_visits = data.y.shape

    state_cols = [np.ones(n_sites)]
    for term in occ_terms:
        if term not in data.site_covs.columns:
            raise KeyError(f"Unknown site covariate: {term}")
        state_cols.append(data.site_covs[term].to_numpy(dtype=float))
    state_exog = np.column_stack(state_cols)

    det_layers = [np.ones((n_sites, n_visits))]
    for term in det_terms:
        if term in data.obs_covs:
            det_layers.append(np.asarray(data.obs_covs[term], dtype=float))
        elif term in data.site_covs.columns:
            column = data.site_covs[term].to_numpy(dtype=float)
            det_layers.append(np.repeat(column[:, None], n_visits, axis=1))
        else:
            raise KeyError(f"Unknown detection covariate: {term}")
    det_exog = np.stack(det_layers, axis=2)

    if np.isnan(state_exog).any():
        raise ValueError("Site covariates contain missing values")
    observed = ~np.isnan(data.y)
    if np.isnan(det_exog[observed]).any():
        raise ValueError("Observation covariates contain missing values at observed visits")

    state_names = [occupancy_label(t) for t in (INTERCEPT, *occ_terms)]
    det_names = [detection_label(t) for t in (INTERCEPT, *det_terms)]
    return state_exog, det_exog, state_names, det_names


def _fit_model(model, start_params=None, method=None, maxiter=None):
    if method is None:
        method = config.OPTIMIZER_METHOD
    if maxiter is None:
        maxiter = config.OPTIMIZER_MAXITER
    if start_params is None:
        start_params = np.zeros(len(model.coef_names))

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ConvergenceWarning)
        warnings.simplefilter("always", HessianInversionWarning)
        warnings.simplefilter("always", RuntimeWarning)
        result = model.fit(start_params=start_params, method=method,
                           maxiter=maxiter, disp=0)
        try:
            bse = np.asarray(result.bse, dtype=float)
        except (ValueError, np.linalg.LinAlgError):
            bse = np.full(len(model.coef_names), np.nan)

    fit_warnings = sorted({str(w.message) for w in caught})
    converged = bool(result.mle_retvals.get("converged", False))
    identifiable = bool(np.all(np.isfinite(bse)) and np.all(bse > 0))
    return result, bse, converged, identifiable, fit_warnings


def fit_occupancy(data, det_terms=(), occ_terms=(), start_params=None,
                  method=None, maxiter=None):
    """Fit ``~ det_terms ~ occ_terms`` to a species' detection data.

    Parameters
    ----------
    data : DetectionData
    det_terms : sequence of str
        Detection covariates (visit- or site-level).
    occ_terms : sequence of str
        Occupancy covariates (site-level).
    start_params : array-like, optional
        Starting values. Default: all zeros (psi = p = 0.5).
    method, maxiter : optional
        Optimiser settings. Default: ``config.OPTIMIZER_METHOD`` /
        ``config.OPTIMIZER_MAXITER``.

    Returns
    -------
    OccupancyFit
        Non-convergence and singular Hessians are reported through
        ``converged`` / ``identifiable`` and ``fit_warnings``, not raised.
    """
    det_terms = tuple(det_terms)
    occ_terms = tuple(occ_terms)
    state_exog, det_exog, state_names, det_names = design_matrices(data, det_terms, occ_terms)
    model = OccupancyModel(data.y, state_exog, det_exog, state_names, det_names)
    result, bse, converged, identifiable, fit_warnings = _fit_model(
        model, start_params, method, maxiter,
    )
    return OccupancyFit(
        det_terms=det_terms,
        occ_terms=occ_terms,
        param_names=model.coef_names,
        params=np.asarray(result.params, dtype=float),
        bse=bse,
        llf=float(result.llf),
        n_sites=model.y.shape[0],
        converged=converged,
        identifiable=identifiable,
        fit_warnings=fit_warnings,
        model=model,
    )


def refit(fit, y):
    """Refit *fit*'s model to a new detection matrix, starting from its estimates."""
    model = fit.model.with_response(y)
    result, bse, converged, identifiable, fit_warnings = _fit_model(model, fit.params)
    return OccupancyFit(
        det_terms=fit.det_terms,
        occ_terms=fit.occ_terms,
        param_names=model.coef_names,
        params=np.asarray(result.params, dtype=float),
        bse=bse,
        llf=float(result.llf),
        n_sites=fit.n_sites,
        converged=converged,
        identifiable=identifiable,
        fit_warnings=fit_warnings,
        model=model,
    )
