"""
hydrorating.bayes - Bayesian uncertainty propagation for rating curves

Places priors on the spline weights of a fitted rating and on the residual
scale, then approximates the posterior either at its mode (Laplace) or by
Hamiltonian Monte Carlo with pymc. Posterior draws are carried through the
design-row function to give credible intervals on discharge.

Likelihoods
-----------
basic
    ``lflow_i ~ N(X_i w, sigma)``
measurement error
    ``lflow_true_i ~ N(X_i w, lflow_true_sd)`` and
    ``lflow_meas_i ~ N(lflow_true_i, meas_lflow_stderr_i)``
stage error (NUTS only)
    the measurement-error model with a latent log-stage error per record,
    ``lstage_err_i ~ N(0, meas_lstage_stderr_i)``, entering through the
    linearised spline mean ``X_i w + (dX_i w) lstage_err_i``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import arviz as az
import numpy as np
import pandas as pd
from scipy import linalg, stats
from scipy.optimize import minimize

from .config import BayesConfig
from .core import COL_DATETIME, COL_STAGE, EstimationMethod, LikelihoodKind, SigmaPriorFamily, parse_enum
from .exceptions import InputContractViolation, SamplerNonConvergedError
from .smoother import SplineModel

logger = logging.getLogger(__name__)

# Step in log10 stage for the design-matrix derivative
_LSTAGE_STEP = 1e-4

# Largest gradient component accepted at the mode, relative to the objective
_GRAD_TOL = 1e-3


@dataclass(frozen=True)
class SigmaPrior:
    """Prior on a residual scale parameter.

    Use the constructors rather than building directly::

        SigmaPrior.gamma(1, 1)
        SigmaPrior.normal(1, 1)       # truncated at zero
        SigmaPrior.exponential(1)
    """

    family: SigmaPriorFamily
    params: Tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "family", parse_enum(SigmaPriorFamily, self.family))
        object.__setattr__(self, "params", tuple(float(p) for p in self.params))
        expected = 1 if self.family is SigmaPriorFamily.EXPONENTIAL else 2
        if len(self.params) != expected:
            raise InputContractViolation(
                f"{self.family.name.lower()} prior takes {expected} parameters", params=self.params
            )
        positive = self.params if self.family is not SigmaPriorFamily.NORMAL else self.params[1:]
        if any(p <= 0 for p in positive):
            raise InputContractViolation("Prior parameters must be positive", params=self.params)

    @classmethod
    def gamma(cls, alpha: float = 1.0, beta: float = 1.0) -> "SigmaPrior":
        return cls(SigmaPriorFamily.GAMMA, (alpha, beta))

    @classmethod
    def normal(cls, mu: float = 1.0, sigma: float = 1.0) -> "SigmaPrior":
        return cls(SigmaPriorFamily.NORMAL, (mu, sigma))

    @classmethod
    def exponential(cls, lam: float = 1.0) -> "SigmaPrior":
        return cls(SigmaPriorFamily.EXPONENTIAL, (lam,))

    @classmethod
    def from_family(cls, family, *params: float) -> "SigmaPrior":
        """Prior of a family with its default parameters unless given."""
        family = parse_enum(SigmaPriorFamily, family)
        builder = {
            SigmaPriorFamily.GAMMA: cls.gamma,
            SigmaPriorFamily.NORMAL: cls.normal,
            SigmaPriorFamily.EXPONENTIAL: cls.exponential,
        }[family]
        return builder(*params)

    @property
    def label(self) -> str:
        name = {
            SigmaPriorFamily.GAMMA: "Gamma",
            SigmaPriorFamily.NORMAL: "HalfNormal" if self.params[0] == 0 else "TruncNormal",
            SigmaPriorFamily.EXPONENTIAL: "Exponential",
        }[self.family]
        return f"{name}({', '.join(f'{p:g}' for p in self.params)})"

    def logpdf(self, sigma):
        sigma = np.asarray(sigma, dtype=float)
        if self.family is SigmaPriorFamily.GAMMA:
            alpha, beta = self.params
            return stats.gamma.logpdf(sigma, a=alpha, scale=1.0 / beta)
        if self.family is SigmaPriorFamily.NORMAL:
            mu, sd = self.params
            return stats.truncnorm.logpdf(sigma, a=(0.0 - mu) / sd, b=np.inf, loc=mu, scale=sd)
        (lam,) = self.params
        return stats.expon.logpdf(sigma, scale=1.0 / lam)

    def dlogp(self, sigma):
        """d logpdf / d sigma for sigma > 0."""
        if self.family is SigmaPriorFamily.GAMMA:
            alpha, beta = self.params
            return (alpha - 1.0) / sigma - beta
        if self.family is SigmaPriorFamily.NORMAL:
            mu, sd = self.params
            return -(sigma - mu) / sd**2
        return -self.params[0] + 0.0 * sigma

    def d2logp(self, sigma):
        """d2 logpdf / d sigma2 for sigma > 0."""
        if self.family is SigmaPriorFamily.GAMMA:
            alpha, _ = self.params
            return -(alpha - 1.0) / sigma**2
        if self.family is SigmaPriorFamily.NORMAL:
            return -1.0 / self.params[1] ** 2 + 0.0 * sigma
        return 0.0 * sigma

    def to_pymc(self, name: str):
        """Create the prior as a pymc random variable (inside a model context)."""
        import pymc as pm

        if self.family is SigmaPriorFamily.GAMMA:
            alpha, beta = self.params
            return pm.Gamma(name, alpha=alpha, beta=beta)
        if self.family is SigmaPriorFamily.NORMAL:
            mu, sd = self.params
            return pm.TruncatedNormal(name, mu=mu, sigma=sd, lower=0.0)
        return pm.Exponential(name, lam=self.params[0])


DEFAULT_SIGMA_PRIORS = (SigmaPrior.gamma(), SigmaPrior.normal(), SigmaPrior.exponential())


@dataclass(frozen=True)
class BayesModelSpec:
    """One Bayesian model variant, selected once per analysis run.

    Parameters
    ----------
    likelihood : LikelihoodKind
        Basic, measurement-error or stage-error likelihood.
    sigma_prior : SigmaPrior
        Prior on the residual scale (``sigma`` or ``lflow_true_sd``).
    center_on_gam : bool
        Weights ~ N(gam coef, gam coef se) instead of N(0, weight_prior_sd).
    weight_prior_sd : float
        Prior standard deviation of uncentered weights.
    """

    likelihood: LikelihoodKind = LikelihoodKind.BASIC
    sigma_prior: SigmaPrior = field(default_factory=SigmaPrior.gamma)
    center_on_gam: bool = True
    weight_prior_sd: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "likelihood", parse_enum(LikelihoodKind, self.likelihood))
        if self.weight_prior_sd <= 0:
            raise InputContractViolation("weight_prior_sd must be positive", value=self.weight_prior_sd)

    @classmethod
    def from_config(cls, config: BayesConfig) -> "BayesModelSpec":
        return cls(
            likelihood=config.likelihood,
            sigma_prior=SigmaPrior.from_family(config.sigma_prior, *config.sigma_prior_params),
            center_on_gam=config.center_on_gam,
            weight_prior_sd=config.weight_prior_sd,
        )

    @property
    def scale_name(self) -> str:
        return "sigma" if self.likelihood is LikelihoodKind.BASIC else "lflow_true_sd"

    @property
    def has_latent(self) -> bool:
        return self.likelihood is not LikelihoodKind.BASIC

    def describe(self) -> str:
        centre = "gam-centred" if self.center_on_gam else f"N(0, {self.weight_prior_sd:g})"
        return f"{self.likelihood.name.lower()} / {self.sigma_prior.label} / {centre}"


@dataclass(frozen=True, eq=False)
class _ModelData:
    X: np.ndarray
    y: np.ndarray
    meas_sd: np.ndarray
    lstage_sd: Optional[np.ndarray]
    prior_mean: np.ndarray
    prior_sd: np.ndarray
    records: pd.DataFrame


def _model_data(spline: SplineModel, cleaned: pd.DataFrame, spec: BayesModelSpec) -> _ModelData:
    required = [COL_STAGE, "lflow", "meas_lflow_stderr"]
    if spec.likelihood is LikelihoodKind.STAGE_ERROR:
        required.append("meas_lstage_stderr")
    missing = [c for c in required if c not in cleaned.columns]
    if missing:
        raise InputContractViolation("Cleaned measurements are missing columns", missing=missing)
    if not spline.log_space:
        raise InputContractViolation("Bayesian rating models require a log-space spline")

    X = spline.design_matrix(cleaned[COL_STAGE].values)
    if not np.all(np.isfinite(X)):
        raise InputContractViolation("Design matrix has undefined rows for some measurements")
    y = cleaned["lflow"].values.astype(float)
    meas_sd = cleaned["meas_lflow_stderr"].values.astype(float)
    if spec.has_latent and np.any(meas_sd <= 0):
        raise InputContractViolation("Measurement standard errors must be positive")

    if spec.center_on_gam:
        prior_mean = spline.coef.copy()
        prior_sd = np.maximum(spline.coef_se, 1e-6)
    else:
        prior_mean = np.zeros(spline.k)
        prior_sd = np.full(spline.k, spec.weight_prior_sd)

    cols = [c for c in (COL_DATETIME, COL_STAGE, "lflow", "meas_lflow_stderr", "accuracy") if c in cleaned]
    return _ModelData(
        X=X,
        y=y,
        meas_sd=meas_sd,
        lstage_sd=(
            cleaned["meas_lstage_stderr"].values.astype(float)
            if spec.likelihood is LikelihoodKind.STAGE_ERROR
            else None
        ),
        prior_mean=prior_mean,
        prior_sd=prior_sd,
        records=cleaned[cols].reset_index(drop=True),
    )


@dataclass(frozen=True, eq=False)
class PosteriorSamples:
    """Posterior draws and summaries for one model variant.

    Parameters
    ----------
    method : EstimationMethod
        Laplace or NUTS.
    spec : BayesModelSpec
        Model variant.
    draws : pd.DataFrame
        One row per draw: ``chain``, ``draw``, ``b0..b{k-1}`` and the scale.
    idata : arviz.InferenceData
        Posterior in arviz form.
    summary : pd.DataFrame
        arviz summary of the weights and scale.
    diagnostics : dict
        Convergence diagnostics (NUTS) or optimizer report (Laplace).
    latent : np.ndarray or None
        ``lflow_true`` draws (n_draws, n_records) for latent likelihoods.
    records : pd.DataFrame
        Measurements the model was fitted to.
    design : np.ndarray or None
        Design rows of those measurements (n_records, k).
    mode, cov : np.ndarray or None
        Laplace mode and covariance in ``(w, log scale)``.
    """

    method: EstimationMethod
    spec: BayesModelSpec
    draws: pd.DataFrame
    idata: Any = field(repr=False)
    summary: pd.DataFrame = field(repr=False)
    diagnostics: Dict[str, Any] = field(default_factory=dict)
    latent: Optional[np.ndarray] = field(default=None, repr=False)
    records: Optional[pd.DataFrame] = field(default=None, repr=False)
    design: Optional[np.ndarray] = field(default=None, repr=False)
    mode: Optional[np.ndarray] = field(default=None, repr=False)
    cov: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def coef_names(self) -> List[str]:
        return [c for c in self.draws.columns if c.startswith("b") and c[1:].isdigit()]

    @property
    def scale_name(self) -> str:
        return self.spec.scale_name

    @property
    def n_draws(self) -> int:
        return len(self.draws)

    def coef_draws(self) -> np.ndarray:
        """Weight draws (n_draws, k)."""
        return self.draws[self.coef_names].values

    def scale_draws(self) -> np.ndarray:
        return self.draws[self.scale_name].values

    def correlation(self) -> pd.DataFrame:
        """Posterior correlation of the weights and scale."""
        return self.draws[self.coef_names + [self.scale_name]].corr()

    def predict(
        self,
        spline: SplineModel,
        stages,
        prob: float = 0.9,
        include_scale: bool = False,
        seed: Optional[int] = None,
    ) -> pd.DataFrame:
        """Push every draw through the design rows at new stages.

        Parameters
        ----------
        spline : SplineModel
            Spline whose basis the weights belong to.
        stages : array-like
            Stage values (original units).
        prob : float
            Central credible interval probability.
        include_scale : bool
            Add residual-scale noise (posterior predictive) instead of the
            mean curve only.

        Returns
        -------
        pd.DataFrame
            ``stage, lflow_mean, lflow_sd, lflow_lower, lflow_upper, flow_median,
            flow_lower, flow_upper``.
        """
        stages = np.atleast_1d(np.asarray(stages, dtype=float))
        X = spline.design_matrix(stages)
        W = self.coef_draws()
        if W.shape[1] != X.shape[1]:
            raise InputContractViolation(
                "Posterior weights do not match the spline basis", k_draws=W.shape[1], k_spline=X.shape[1]
            )
        L = W @ X.T
        if include_scale:
            rng = np.random.default_rng(seed)
            L = L + rng.standard_normal(L.shape) * self.scale_draws()[:, np.newaxis]

        tail = (1.0 - prob) / 2.0
        lower, median, upper = np.quantile(L, [tail, 0.5, 1.0 - tail], axis=0)
        return pd.DataFrame(
            {
                "stage": stages,
                "lflow_mean": L.mean(axis=0),
                "lflow_sd": L.std(axis=0, ddof=1),
                "lflow_lower": lower,
                "lflow_upper": upper,
                "flow_median": 10**median,
                "flow_lower": 10**lower,
                "flow_upper": 10**upper,
            }
        )

    def latent_summary(self, prob: float = 0.9) -> pd.DataFrame:
        """Posterior of each record's true log discharge.

        ``shrinkage`` is the fraction of the gap between the measured value
        and the spline mean that the posterior moves toward the spline.
        """
        if self.latent is None:
            raise InputContractViolation("Model has no latent true discharge", likelihood=self.spec.likelihood.name)
        tail = (1.0 - prob) / 2.0
        spline_mean = self.coef_draws() @ self.design.T
        mean = self.latent.mean(axis=0)
        measured = self.records["lflow"].values
        mu = spline_mean.mean(axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            shrinkage = (measured - mean) / (measured - mu)
        out = self.records.copy()
        out["spline_mean"] = mu
        out["lflow_true_mean"] = mean
        out["lflow_true_sd"] = self.latent.std(axis=0, ddof=1)
        out["lflow_true_lower"] = np.quantile(self.latent, tail, axis=0)
        out["lflow_true_upper"] = np.quantile(self.latent, 1.0 - tail, axis=0)
        out["shrinkage"] = shrinkage
        return out


def _draws_frame(W: np.ndarray, scale: np.ndarray, chain: np.ndarray, draw: np.ndarray, scale_name: str):
    df = pd.DataFrame({"chain": chain, "draw": draw})
    for i in range(W.shape[1]):
        df[f"b{i}"] = W[:, i]
    df[scale_name] = scale
    return df


# ---------------------------------------------------------------------------
# Laplace approximation
# ---------------------------------------------------------------------------


def _neg_log_post(theta, data: _ModelData, prior: SigmaPrior, latent: bool):
    """Negative log posterior in (w, log scale) with its gradient."""
    w, s = theta[:-1], theta[-1]
    sigma = np.exp(s)
    m2 = data.meas_sd**2 if latent else np.zeros_like(data.y)
    v = sigma**2 + m2
    r = data.y - data.X @ w
    dw = (w - data.prior_mean) / data.prior_sd**2

    lp_sigma = float(prior.logpdf(sigma))
    if not np.isfinite(lp_sigma):
        return np.inf, np.zeros_like(theta)
    f = 0.5 * np.sum(np.log(2 * np.pi * v) + r**2 / v) + 0.5 * np.sum(dw * (w - data.prior_mean)) - lp_sigma - s

    grad = np.empty_like(theta)
    grad[:-1] = -data.X.T @ (r / v) + dw
    grad[-1] = np.sum(sigma**2 * (1.0 / v - r**2 / v**2)) - sigma * prior.dlogp(sigma) - 1.0
    return f, grad


def _hessian(theta, data: _ModelData, prior: SigmaPrior, latent: bool) -> np.ndarray:
    w, s = theta[:-1], theta[-1]
    sigma = np.exp(s)
    s2, s4 = sigma**2, sigma**4
    m2 = data.meas_sd**2 if latent else np.zeros_like(data.y)
    v = s2 + m2
    r = data.y - data.X @ w
    k = w.size

    H = np.empty((k + 1, k + 1))
    H[:k, :k] = (data.X / v[:, np.newaxis]).T @ data.X + np.diag(1.0 / data.prior_sd**2)
    H[:k, k] = H[k, :k] = data.X.T @ (r * 2 * s2 / v**2)
    H[k, k] = (
        np.sum(2 * s2 / v - 2 * s2 * r**2 / v**2 - 2 * s4 / v**2 + 4 * s4 * r**2 / v**3)
        - sigma * prior.dlogp(sigma)
        - s2 * prior.d2logp(sigma)
    )
    return H


def _newton_polish(theta, args, max_steps: int = 5):
    """Refine a quasi-Newton mode with full Newton steps while they descend."""
    f, grad = _neg_log_post(theta, *args)
    for _ in range(max_steps):
        try:
            step = linalg.solve(_hessian(theta, *args), grad, assume_a="sym")
        except (linalg.LinAlgError, ValueError):
            break
        candidate = theta - step
        f_new, grad_new = _neg_log_post(candidate, *args)
        if not np.isfinite(f_new) or f_new > f:
            break
        theta, f, grad = candidate, f_new, grad_new
    return theta, f, grad


def fit_laplace(
    spline: SplineModel,
    cleaned: pd.DataFrame,
    spec: Optional[BayesModelSpec] = None,
    draws: int = 1000,
    seed: Optional[int] = None,
    hdi_prob: float = 0.9,
) -> PosteriorSamples:
    """Quadratic approximation of the posterior at its mode.

    The mode is found in ``(w, log scale)`` by BFGS with an analytic
    gradient. For the measurement-error likelihood the latent true values
    are integrated out (marginal variance ``scale^2 + meas_sd^2``) and then
    drawn from their exact Gaussian conditional for each posterior draw.

    Raises
    ------
    SamplerNonConvergedError
        If the optimizer fails or the Hessian at the mode is not positive
        definite.
    InputContractViolation
        For the stage-error likelihood (requires NUTS).
    """
    spec = spec or BayesModelSpec()
    if spec.likelihood is LikelihoodKind.STAGE_ERROR:
        raise InputContractViolation("The stage-error likelihood requires NUTS sampling")
    data = _model_data(spline, cleaned, spec)
    latent = spec.has_latent

    args = (data, spec.sigma_prior, latent)
    theta0 = np.r_[spline.coef, 0.5 * np.log(max(spline.scale, 1e-8))]
    res = minimize(_neg_log_post, theta0, args=args, jac=True, method="BFGS")
    mode, f, grad = _newton_polish(res.x, args)
    grad_max = float(np.max(np.abs(grad)))
    diagnostics: Dict[str, Any] = {
        "success": bool(res.success),
        "message": str(res.message),
        "iterations": int(res.nit),
        "grad_max": grad_max,
        "neg_log_post": float(f),
    }
    if not (np.all(np.isfinite(mode)) and np.isfinite(f)) or grad_max > _GRAD_TOL * max(1.0, abs(f)):
        raise SamplerNonConvergedError("Posterior mode search did not converge", diagnostics=diagnostics)

    H = _hessian(mode, data, spec.sigma_prior, latent)
    try:
        chol = linalg.cho_factor(H, lower=True)
    except linalg.LinAlgError as exc:
        raise SamplerNonConvergedError(
            "Hessian at the posterior mode is not positive definite", diagnostics=diagnostics
        ) from exc
    cov = linalg.cho_solve(chol, np.eye(H.shape[0]))
    cov = 0.5 * (cov + cov.T)

    rng = np.random.default_rng(seed)
    theta = mode + rng.standard_normal((draws, mode.size)) @ np.linalg.cholesky(cov).T
    W, scale = theta[:, :-1], np.exp(theta[:, -1])

    lflow_true = None
    if latent:
        mu = W @ data.X.T
        precision = 1.0 / scale[:, np.newaxis] ** 2 + 1.0 / data.meas_sd**2
        mean = (mu / scale[:, np.newaxis] ** 2 + data.y / data.meas_sd**2) / precision
        lflow_true = mean + rng.standard_normal(mean.shape) / np.sqrt(precision)

    idata = _to_idata(W[np.newaxis], scale[np.newaxis], spec, lflow_true)
    summary = az.summary(idata, var_names=["w", spec.scale_name], kind="stats", hdi_prob=hdi_prob)

    logger.info(
        "Laplace posterior (%s): %s mode %.4g after %d iterations",
        spec.describe(),
        spec.scale_name,
        float(np.exp(mode[-1])),
        res.nit,
    )
    return PosteriorSamples(
        method=EstimationMethod.LAPLACE,
        spec=spec,
        draws=_draws_frame(W, scale, np.zeros(draws, dtype=int), np.arange(draws), spec.scale_name),
        idata=idata,
        summary=summary,
        diagnostics=diagnostics,
        latent=lflow_true,
        records=data.records,
        design=data.X,
        mode=mode,
        cov=cov,
    )


def _to_idata(W: np.ndarray, scale: np.ndarray, spec: BayesModelSpec, lflow_true=None):
    """Wrap (chain, draw, ...) arrays as arviz InferenceData."""
    k = W.shape[-1]
    posterior = {"w": W, spec.scale_name: scale}
    coords = {"coef": [f"b{i}" for i in range(k)]}
    dims = {"w": ["coef"]}
    if lflow_true is not None:
        posterior["lflow_true"] = lflow_true.reshape(W.shape[0], W.shape[1], -1)
        coords["obs"] = np.arange(posterior["lflow_true"].shape[-1])
        dims["lflow_true"] = ["obs"]
    return az.from_dict(posterior=posterior, coords=coords, dims=dims)


# ---------------------------------------------------------------------------
# Hamiltonian Monte Carlo
# ---------------------------------------------------------------------------


def design_derivative(spline: SplineModel, stage) -> np.ndarray:
    """Central-difference derivative of the design rows in log10 stage."""
    lstage = spline.to_model_space(stage)
    h = _LSTAGE_STEP
    upper = spline.design_matrix(lstage + h, model_space=True)
    lower = spline.design_matrix(lstage - h, model_space=True)
    return (upper - lower) / (2 * h)


def build_pymc_model(spline: SplineModel, cleaned: pd.DataFrame, spec: Optional[BayesModelSpec] = None):
    """Build (but do not sample) the pymc model for a variant."""
    import pymc as pm
    import pytensor.tensor as pt

    spec = spec or BayesModelSpec()
    data = _model_data(spline, cleaned, spec)
    coords = {"coef": [f"b{i}" for i in range(spline.k)], "obs": np.arange(len(data.y))}

    with pm.Model(coords=coords) as model:
        w = pm.Normal("w", mu=data.prior_mean, sigma=data.prior_sd, dims="coef")
        scale = spec.sigma_prior.to_pymc(spec.scale_name)
        mu = pt.dot(data.X, w)

        if spec.likelihood is LikelihoodKind.BASIC:
            pm.Normal("lflow", mu=mu, sigma=scale, observed=data.y, dims="obs")
            return model

        if spec.likelihood is LikelihoodKind.STAGE_ERROR:
            dX = design_derivative(spline, cleaned[COL_STAGE].values)
            z_stage = pm.Normal("lstage_err_z", 0.0, 1.0, dims="obs")
            lstage_err = pm.Deterministic("lstage_err", z_stage * data.lstage_sd, dims="obs")
            mu = mu + pt.dot(dX, w) * lstage_err

        # Non-centred latent values avoid the funnel as the scale shrinks
        z_true = pm.Normal("lflow_true_z", 0.0, 1.0, dims="obs")
        lflow_true = pm.Deterministic("lflow_true", mu + scale * z_true, dims="obs")
        pm.Normal("lflow_meas", mu=lflow_true, sigma=data.meas_sd, observed=data.y, dims="obs")
    return model


def convergence_diagnostics(idata, var_names: Sequence[str]) -> Dict[str, Any]:
    """Max r-hat, min bulk ESS and divergent transitions for ``var_names``."""
    rhat = az.rhat(idata, var_names=list(var_names))
    ess = az.ess(idata, var_names=list(var_names), method="bulk")
    divergences = 0
    if hasattr(idata, "sample_stats") and "diverging" in idata.sample_stats:
        divergences = int(idata.sample_stats["diverging"].values.sum())
    return {
        "r_hat_max": float(max(float(rhat[v].max()) for v in var_names)),
        "ess_bulk_min": float(min(float(ess[v].min()) for v in var_names)),
        "divergences": divergences,
        "chains": int(idata.posterior.sizes["chain"]),
        "draws": int(idata.posterior.sizes["draw"]),
    }


def check_convergence(diagnostics: Dict[str, Any], config: BayesConfig) -> List[str]:
    """Names of the diagnostics that violate the configured thresholds."""
    failed = []
    if not np.isfinite(diagnostics["r_hat_max"]) or diagnostics["r_hat_max"] > config.r_hat_max:
        failed.append("r_hat")
    if not np.isfinite(diagnostics["ess_bulk_min"]) or diagnostics["ess_bulk_min"] < config.ess_min:
        failed.append("ess")
    if diagnostics["divergences"] > config.max_divergences:
        failed.append("divergences")
    return failed


def fit_nuts(
    spline: SplineModel,
    cleaned: pd.DataFrame,
    spec: Optional[BayesModelSpec] = None,
    config: Optional[BayesConfig] = None,
) -> PosteriorSamples:
    """Sample the posterior with NUTS over independent chains.

    Raises
    ------
    SamplerNonConvergedError
        If r-hat, bulk ESS or the divergence count fail the thresholds in
        ``config``; the draws are not returned.
    """
    import pymc as pm

    config = config or BayesConfig(method=EstimationMethod.NUTS)
    if config.chains < 2:
        raise InputContractViolation("NUTS sampling requires at least 2 chains", chains=config.chains)
    spec = spec or BayesModelSpec.from_config(config)
    data = _model_data(spline, cleaned, spec)
    model = build_pymc_model(spline, cleaned, spec)

    logger.info(
        "Sampling %s with NUTS: %d chains x %d draws (%d tune)",
        spec.describe(),
        config.chains,
        config.draws,
        config.tune,
    )
    with model:
        idata = pm.sample(
            draws=config.draws,
            tune=config.tune,
            chains=config.chains,
            cores=config.cores,
            random_seed=config.seed,
            target_accept=config.target_accept,
            progressbar=False,
        )

    monitored = ["w", spec.scale_name]
    diagnostics = convergence_diagnostics(idata, monitored)
    failed = check_convergence(diagnostics, config)
    if failed:
        raise SamplerNonConvergedError(
            f"Sampler failed convergence checks: {', '.join(failed)}",
            diagnostics=diagnostics,
            likelihood=spec.likelihood.name.lower(),
        )

    post = idata.posterior
    n_chain, n_draw = post.sizes["chain"], post.sizes["draw"]
    W = post["w"].transpose("chain", "draw", "coef").values.reshape(n_chain * n_draw, -1)
    scale = post[spec.scale_name].values.reshape(-1)
    chain, draw = np.meshgrid(np.arange(n_chain), np.arange(n_draw), indexing="ij")
    latent = None
    if spec.has_latent:
        latent = post["lflow_true"].transpose("chain", "draw", "obs").values.reshape(n_chain * n_draw, -1)

    summary = az.summary(idata, var_names=monitored, hdi_prob=config.hdi_prob)
    logger.info(
        "NUTS converged: max r_hat %.3f, min ESS %.0f, %d divergences",
        diagnostics["r_hat_max"],
        diagnostics["ess_bulk_min"],
        diagnostics["divergences"],
    )
    return PosteriorSamples(
        method=EstimationMethod.NUTS,
        spec=spec,
        draws=_draws_frame(W, scale, chain.ravel(), draw.ravel(), spec.scale_name),
        idata=idata,
        summary=summary,
        diagnostics=diagnostics,
        latent=latent,
        records=data.records,
        design=data.X,
    )


def fit_posterior(spline: SplineModel, cleaned: pd.DataFrame, config: Optional[BayesConfig] = None) -> PosteriorSamples:
    """Fit the model variant and method selected by ``config``."""
    config = config or BayesConfig()
    spec = BayesModelSpec.from_config(config)
    if config.method is EstimationMethod.NUTS:
        return fit_nuts(spline, cleaned, spec, config)
    return fit_laplace(spline, cleaned, spec, draws=config.draws, seed=config.seed, hdi_prob=config.hdi_prob)


def compare_sigma_priors(
    spline: SplineModel,
    cleaned: pd.DataFrame,
    priors: Optional[Sequence[SigmaPrior]] = None,
    config: Optional[BayesConfig] = None,
) -> pd.DataFrame:
    """Fit the same model under several scale priors.

    Returns
    -------
    pd.DataFrame
        One row per prior with the posterior mean, sd and central interval of
        the scale and the mean posterior sd of the weights.
    """
    config = config or BayesConfig()
    priors = list(priors) if priors is not None else list(DEFAULT_SIGMA_PRIORS)
    tail = (1.0 - config.hdi_prob) / 2.0
    rows = []
    for prior in priors:
        spec = BayesModelSpec(
            likelihood=config.likelihood,
            sigma_prior=prior,
            center_on_gam=config.center_on_gam,
            weight_prior_sd=config.weight_prior_sd,
        )
        if config.method is EstimationMethod.NUTS:
            post = fit_nuts(spline, cleaned, spec, config)
        else:
            post = fit_laplace(spline, cleaned, spec, draws=config.draws, seed=config.seed)
        scale = post.scale_draws()
        rows.append(
            {
                "prior": prior.label,
                "method": post.method.name.lower(),
                "likelihood": spec.likelihood.name.lower(),
                "scale_mean": float(scale.mean()),
                "scale_sd": float(scale.std(ddof=1)),
                "scale_lower": float(np.quantile(scale, tail)),
                "scale_upper": float(np.quantile(scale, 1.0 - tail)),
                "coef_sd_mean": float(post.coef_draws().std(axis=0, ddof=1).mean()),
            }
        )
    return pd.DataFrame(rows)
