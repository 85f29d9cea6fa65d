"""
hydrorating.kalman - Dynamic (Kalman) rating estimation

The spline weights of a fitted rating are treated as a latent state that
follows a random walk, observed each day through that day's design row:

    lflow_t = Z_t x_t + e_t,      e_t ~ N(0, R_t)
    x_t     = x_{t-1} + u_t,      u_t ~ N(0, Q)

Days without a usable measurement enter as missing observations so that
the state index stays aligned one-to-one with calendar days. The process
covariance Q is estimated by maximum likelihood with statsmodels, in
bounded passes that re-seed from the previous pass until the
log-likelihood settles.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from scipy.special import ndtri
from statsmodels.tools.sm_exceptions import ConvergenceWarning
from statsmodels.tsa.statespace.mlemodel import MLEModel

from .config import KalmanConfig
from .core import MISSING_OBS_VARIANCE, CovarianceStructure, EstimatorState, parse_enum
from .exceptions import EstimationDivergedError, InputContractViolation
from .observation import ObservationSet
from .smoother import SplineModel

logger = logging.getLogger(__name__)


class ProcessCovariance:
    """Structure and parameterization of the process covariance Q.

    Parameters
    ----------
    structure : CovarianceStructure or str
        Covariance pattern.
    k : int
        State dimension (number of spline weights).

    Notes
    -----
    Constrained parameters are variances (diagonal structures), a variance
    and an adjacent-weight correlation (tridiagonal, ``|rho| < 0.5`` keeps Q
    positive definite), or the lower-triangular Cholesky entries of Q (full).
    """

    def __init__(self, structure, k: int):
        self.structure = parse_enum(CovarianceStructure, structure)
        if int(k) < 1:
            raise InputContractViolation("State dimension must be positive", k=k)
        if self.structure is CovarianceStructure.TRIDIAGONAL and k < 2:
            raise InputContractViolation("Tridiagonal process covariance needs k >= 2", k=k)
        self.k = int(k)
        self._tril = np.tril_indices(self.k)

    @property
    def param_names(self) -> List[str]:
        if self.structure is CovarianceStructure.DIAGONAL_EQUAL:
            return ["q.var"]
        if self.structure is CovarianceStructure.DIAGONAL_UNEQUAL:
            return [f"q.var.b{i}" for i in range(self.k)]
        if self.structure is CovarianceStructure.TRIDIAGONAL:
            return ["q.var", "q.rho"]
        return [f"q.L{i}{j}" for i, j in zip(*self._tril)]

    @property
    def n_params(self) -> int:
        return len(self.param_names)

    def start_params(self, scale: float = 1e-4) -> np.ndarray:
        """Constrained starting values with process variance ``scale``."""
        if self.structure is CovarianceStructure.DIAGONAL_EQUAL:
            return np.array([scale])
        if self.structure is CovarianceStructure.DIAGONAL_UNEQUAL:
            return np.full(self.k, scale)
        if self.structure is CovarianceStructure.TRIDIAGONAL:
            return np.array([scale, 0.0])
        L = np.eye(self.k) * np.sqrt(scale)
        return L[self._tril]

    def matrix(self, params) -> np.ndarray:
        """Q (k, k) from constrained parameters."""
        params = np.asarray(params)
        if params.size != self.n_params:
            raise InputContractViolation(
                "Wrong number of process covariance parameters",
                expected=self.n_params,
                got=params.size,
            )
        k = self.k
        if self.structure is CovarianceStructure.DIAGONAL_EQUAL:
            return np.eye(k, dtype=params.dtype) * params[0]
        if self.structure is CovarianceStructure.DIAGONAL_UNEQUAL:
            return np.diag(params)
        if self.structure is CovarianceStructure.TRIDIAGONAL:
            adjacent = np.eye(k, k=1) + np.eye(k, k=-1)
            return params[0] * (np.eye(k) + params[1] * adjacent)
        L = np.zeros((k, k), dtype=params.dtype)
        L[self._tril] = params
        return L @ L.T

    def transform(self, unconstrained) -> np.ndarray:
        unconstrained = np.asarray(unconstrained)
        if self.structure is CovarianceStructure.FULL:
            return unconstrained.copy()
        constrained = unconstrained**2
        if self.structure is CovarianceStructure.TRIDIAGONAL:
            constrained[1] = 0.5 * np.tanh(unconstrained[1])
        return constrained

    def untransform(self, constrained) -> np.ndarray:
        constrained = np.asarray(constrained)
        if self.structure is CovarianceStructure.FULL:
            return constrained.copy()
        unconstrained = np.sqrt(np.abs(constrained))
        if self.structure is CovarianceStructure.TRIDIAGONAL:
            unconstrained[1] = np.arctanh(np.clip(2.0 * constrained[1], -0.999999, 0.999999))
        return unconstrained

    def __repr__(self) -> str:
        return f"ProcessCovariance({self.structure.name.lower()}, k={self.k})"


class RatingStateSpace(MLEModel):
    """Random-walk spline weights observed through daily design rows.

    Parameters
    ----------
    observations : ObservationSet
        Daily design rows, measurements and variances.
    x0, V0 : np.ndarray
        Known initial state mean (k,) and covariance (k, k).
    process : ProcessCovariance
        Process covariance structure.
    estimate_obs_variance : bool
        Add a free variance to every measurement variance.
    """

    def __init__(
        self,
        observations: ObservationSet,
        x0: np.ndarray,
        V0: np.ndarray,
        process: ProcessCovariance,
        estimate_obs_variance: bool = False,
        start_scale: float = 1e-4,
    ):
        k = observations.k
        x0 = np.asarray(x0, dtype=float)
        V0 = np.asarray(V0, dtype=float)
        if x0.shape != (k,) or V0.shape != (k, k) or process.k != k:
            raise InputContractViolation(
                "Initial state, covariance and process dimension must match the design",
                k=k,
                x0=x0.shape,
                V0=V0.shape,
                process_k=process.k,
            )

        observed = observations.observed
        endog = np.where(observed, observations.lflow, np.nan)
        super().__init__(endog, k_states=k, k_posdef=k)

        self.observations = observations
        self.process = process
        self.estimate_obs_variance = estimate_obs_variance
        self.start_scale = start_scale
        self._obs_var = np.where(observed, observations.obs_var, MISSING_OBS_VARIANCE)

        # Undefined design rows only ever pair with missing endog
        self["design"] = np.where(np.isfinite(observations.design), observations.design, 0.0)
        self["obs_cov"] = self._obs_var.reshape(1, 1, -1)
        self["transition"] = np.eye(k)
        self["selection"] = np.eye(k)
        self["state_cov"] = process.matrix(process.start_params(start_scale))
        self.ssm.initialize_known(x0, V0)

    @property
    def param_names(self) -> List[str]:
        names = list(self.process.param_names)
        if self.estimate_obs_variance:
            names.append("r.extra")
        return names

    @property
    def start_params(self) -> np.ndarray:
        params = self.process.start_params(self.start_scale)
        if self.estimate_obs_variance:
            observed = self._obs_var[self.observations.observed]
            extra = float(np.median(observed)) if observed.size else self.start_scale
            params = np.r_[params, extra]
        return params

    def transform_params(self, unconstrained):
        unconstrained = np.asarray(unconstrained)
        nq = self.process.n_params
        out = self.process.transform(unconstrained[:nq])
        if self.estimate_obs_variance:
            out = np.r_[out, unconstrained[nq:] ** 2]
        return out

    def untransform_params(self, constrained):
        constrained = np.asarray(constrained)
        nq = self.process.n_params
        out = self.process.untransform(constrained[:nq])
        if self.estimate_obs_variance:
            out = np.r_[out, np.sqrt(np.abs(constrained[nq:]))]
        return out

    def update(self, params, transformed=True, includes_fixed=False, complex_step=False):
        params = super().update(
            params, transformed=transformed, includes_fixed=includes_fixed, complex_step=complex_step
        )
        nq = self.process.n_params
        self["state_cov"] = self.process.matrix(params[:nq])
        if self.estimate_obs_variance:
            self["obs_cov"] = (self._obs_var + params[nq]).reshape(1, 1, -1)


@dataclass(frozen=True, eq=False)
class KalmanFit:
    """Converged dynamic rating estimate.

    State arrays follow the statsmodels layout: ``smoothed_state`` is
    (k, T) and ``smoothed_state_cov`` is (k, k, T).
    """

    params: np.ndarray
    param_names: List[str]
    bse: np.ndarray
    llf: float
    llf_history: List[float]
    iterations: int
    passes: int
    process_cov: np.ndarray
    filtered_state: np.ndarray
    smoothed_state: np.ndarray
    smoothed_state_cov: np.ndarray
    observations: ObservationSet = field(repr=False)
    state: EstimatorState = EstimatorState.CONVERGED

    @property
    def param_table(self) -> pd.DataFrame:
        return pd.DataFrame({"estimate": self.params, "se": self.bse}, index=self.param_names)

    def state_frame(self) -> pd.DataFrame:
        """Smoothed weights and their standard errors by day."""
        k = self.smoothed_state.shape[0]
        data = {}
        for i in range(k):
            data[f"b{i}"] = self.smoothed_state[i]
            data[f"b{i}_se"] = np.sqrt(np.clip(self.smoothed_state_cov[i, i], 0.0, None))
        return pd.DataFrame(data, index=pd.Index(self.observations.dates, name="date"))

    def reconstruct(self, alpha: float = 0.05) -> pd.DataFrame:
        """Daily discharge implied by the smoothed weights.

        ``lflow_t = Z_t x_{t|T}`` with ``se_t = sqrt(Z_t V_{t|T} Z_t')`` and a
        (1 - alpha) interval ``lflow_t -/+ z * se_t``. Days without a design
        row are NaN.
        """
        Z = self.observations.design[0]
        lflow = np.einsum("kt,kt->t", Z, self.smoothed_state)
        var = np.einsum("it,ijt,jt->t", Z, self.smoothed_state_cov, Z)
        se = np.sqrt(np.clip(var, 0.0, None))
        z = ndtri(1 - alpha / 2)
        df = pd.DataFrame(
            {
                "stage": self.observations.stage,
                "stage_source": self.observations.stage_source,
                "measured_lflow": np.where(self.observations.observed, self.observations.lflow, np.nan),
                "lflow": lflow,
                "lflow_se": se,
                "lflow_lower": lflow - z * se,
                "lflow_upper": lflow + z * se,
            },
            index=pd.Index(self.observations.dates, name="date"),
        )
        df["flow"] = 10 ** df["lflow"]
        df["flow_lower"] = 10 ** df["lflow_lower"]
        df["flow_upper"] = 10 ** df["lflow_upper"]
        return df

    def summary(self) -> str:
        lines = [
            "Dynamic Rating Estimate",
            "=" * 35,
            f"Days (T):            {self.observations.T}",
            f"Measured days:       {int(self.observations.observed.sum())}",
            f"Log-likelihood:      {self.llf:.3f}",
            f"Passes / iterations: {self.passes} / {self.iterations}",
            "",
            "Parameters:",
        ]
        for name, value, se in zip(self.param_names, self.params, self.bse):
            lines.append(f"  {name:<12s} {value:.4g}  (se {se:.3g})")
        return "\n".join(lines)


class DynamicRatingEstimator:
    """Estimate how a rating's spline weights evolve day to day.

    Parameters
    ----------
    spline : SplineModel
        Fitted rating supplying the initial state (weights and covariance).
    observations : ObservationSet
        Daily observation equations built from the same spline.
    config : KalmanConfig, optional
        Estimation options.
    context : dict, optional
        Diagnostic context (site id, window) attached to raised errors.
    """

    def __init__(
        self,
        spline: SplineModel,
        observations: ObservationSet,
        config: Optional[KalmanConfig] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        if not spline.log_space:
            raise InputContractViolation("Dynamic rating requires a log-space spline", **(context or {}))
        if observations.k != spline.k:
            raise InputContractViolation(
                "Observation design does not match the spline basis",
                design_k=observations.k,
                spline_k=spline.k,
            )
        self.spline = spline
        self.observations = observations
        self.config = config or KalmanConfig()
        self.context = dict(context or {})
        self.process = ProcessCovariance(self.config.structure, spline.k)
        self.state = EstimatorState.UNINITIALIZED
        self.llf_history: List[float] = []
        self.iterations = 0

    def build_model(self) -> RatingStateSpace:
        V0 = self.spline.cov_corrected * self.config.initial_cov_scale
        return RatingStateSpace(
            self.observations,
            x0=self.spline.coef,
            V0=V0,
            process=self.process,
            estimate_obs_variance=self.config.estimate_obs_variance,
            start_scale=self.config.start_scale,
        )

    def _diverged(self, message: str, **extra) -> EstimationDivergedError:
        self.state = EstimatorState.DIVERGED
        return EstimationDivergedError(
            message,
            iterations=self.iterations,
            llf_history=self.llf_history,
            passes=len(self.llf_history),
            **{**self.context, **extra},
        )

    def fit(self) -> KalmanFit:
        """Run bounded estimation passes until the log-likelihood settles.

        Raises
        ------
        EstimationDivergedError
            Non-finite or decreasing log-likelihood, linear-algebra failure,
            or no convergence within ``max_passes``.
        """
        cfg = self.config
        model = self.build_model()
        self.state = EstimatorState.CONVERGING
        self.llf_history = []
        self.iterations = 0
        params = model.start_params
        res = None

        for n_pass in range(1, cfg.max_passes + 1):
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", ConvergenceWarning)
                    res = model.fit(
                        start_params=params,
                        maxiter=cfg.iterations_per_pass,
                        method="lbfgs",
                        disp=False,
                    )
            except (np.linalg.LinAlgError, ValueError) as exc:
                raise self._diverged(f"State-space estimation failed: {exc}") from exc

            self.iterations += int(res.mle_retvals.get("iterations", cfg.iterations_per_pass))
            llf = float(res.llf)
            if not np.isfinite(llf):
                raise self._diverged("Log-likelihood is not finite", llf=llf)

            prev = self.llf_history[-1] if self.llf_history else None
            self.llf_history.append(llf)
            logger.debug("Kalman pass %d: llf=%.6f params=%s", n_pass, llf, res.params)

            if prev is not None and llf < prev - cfg.decrease_tol:
                raise self._diverged("Log-likelihood decreased between passes", llf=llf, previous=prev)
            if prev is not None and abs(llf - prev) < cfg.tol:
                self.state = EstimatorState.CONVERGED
                break
            params = res.params
        else:
            raise self._diverged("No convergence within the pass budget", max_passes=cfg.max_passes)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            bse = np.asarray(res.bse, dtype=float)

        fit = self._package(res, bse, passes=len(self.llf_history))
        logger.info(
            "Kalman estimation converged after %d passes (%d iterations), llf=%.3f",
            fit.passes,
            fit.iterations,
            fit.llf,
        )
        return fit

    def smooth(self, params) -> KalmanFit:
        """Filter and smooth with fixed (constrained) parameters."""
        model = self.build_model()
        try:
            res = model.smooth(np.asarray(params, dtype=float), cov_type="none")
        except np.linalg.LinAlgError as exc:
            raise self._diverged(f"Smoothing failed: {exc}") from exc
        self.llf_history = [float(res.llf)]
        self.state = EstimatorState.CONVERGED
        return self._package(res, np.full(len(model.param_names), np.nan), passes=0)

    def _package(self, res, bse: np.ndarray, passes: int) -> KalmanFit:
        V = np.asarray(res.smoothed_state_cov)
        diag = np.einsum("iit->it", V)
        if not np.all(np.isfinite(diag)) or np.any(diag < -1e-10):
            raise self._diverged("Smoothed state covariance is not positive semi-definite")

        params = np.asarray(res.params, dtype=float)
        return KalmanFit(
            params=params,
            param_names=list(res.model.param_names),
            bse=bse,
            llf=float(res.llf),
            llf_history=list(self.llf_history),
            iterations=self.iterations,
            passes=passes,
            process_cov=self.process.matrix(params[: self.process.n_params]),
            filtered_state=np.asarray(res.filtered_state),
            smoothed_state=np.asarray(res.smoothed_state),
            smoothed_state_cov=V,
            observations=self.observations,
            state=self.state,
        )
