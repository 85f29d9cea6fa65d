"""
hydrorating.core - Core enumerations, constants and small value types
"""

from __future__ import annotations

from enum import Enum, IntEnum, auto
from typing import Dict, Optional, Tuple

from .exceptions import InputContractViolation


class AccuracyClass(IntEnum):
    """Qualitative accuracy rating of a field measurement (ordered)."""

    EXCELLENT = 0
    GOOD = 1
    FAIR = 2
    POOR = 3
    UNSPECIFIED = 4

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @classmethod
    def parse(cls, code: str) -> "AccuracyClass":
        """Parse a word or one-letter accuracy code (case-insensitive)."""
        text = str(code).strip().upper()
        if text in _ACCURACY_LETTERS:
            return _ACCURACY_LETTERS[text]
        try:
            return cls[text]
        except KeyError:
            raise ValueError(f"Unknown accuracy code: {code!r}") from None


_ACCURACY_LETTERS: Dict[str, AccuracyClass] = {
    "E": AccuracyClass.EXCELLENT,
    "G": AccuracyClass.GOOD,
    "F": AccuracyClass.FAIR,
    "P": AccuracyClass.POOR,
    "U": AccuracyClass.UNSPECIFIED,
}

# Fractional discharge error implied by each accuracy class
DEFAULT_ERROR_FRACTIONS: Dict[AccuracyClass, float] = {
    AccuracyClass.EXCELLENT: 0.02,
    AccuracyClass.GOOD: 0.05,
    AccuracyClass.FAIR: 0.08,
    AccuracyClass.POOR: 0.15,
}

ACCURACY_LABELS: Tuple[str, ...] = tuple(a.label for a in AccuracyClass)


class ControlSeverity(IntEnum):
    """Ordered severity scale for channel-control conditions."""

    CLEAR = 0
    LIGHT = 1
    MODERATE = 2
    HEAVY = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_control_code(cls, code: Optional[str]) -> Optional["ControlSeverity"]:
        """Bucket an NWIS ``control_type_cd`` value into a severity level.

        Returns None for missing or ``Unspecified`` codes.
        """
        if code is None:
            return None
        text = str(code).strip().lower().replace(" ", "").replace("_", "")
        if text in ("", "nan", "none", "unspecified", "unknown"):
            return None
        if text in _CONTROL_EXACT:
            return _CONTROL_EXACT[text]
        for suffix, level in (("light", cls.LIGHT), ("moderate", cls.MODERATE), ("heavy", cls.HEAVY)):
            if text.endswith(suffix):
                return level
        return None


_CONTROL_EXACT: Dict[str, ControlSeverity] = {
    "clear": ControlSeverity.CLEAR,
    "iceshore": ControlSeverity.LIGHT,
    "iceanchor": ControlSeverity.MODERATE,
    "icecover": ControlSeverity.HEAVY,
    "fill": ControlSeverity.MODERATE,
    "scour": ControlSeverity.MODERATE,
    "debris": ControlSeverity.MODERATE,
    "vegetation": ControlSeverity.MODERATE,
}

CONTROL_LABELS: Tuple[str, ...] = tuple(c.label for c in ControlSeverity)


class CovarianceStructure(Enum):
    """Pattern of the process covariance matrix Q of the spline-weight random walk."""

    DIAGONAL_EQUAL = auto()  # sigma^2 * I
    DIAGONAL_UNEQUAL = auto()  # diag(sigma_0^2 .. sigma_k-1^2)
    TRIDIAGONAL = auto()  # sigma^2 * (I + rho * (adjacent))
    FULL = auto()  # L L'


class EstimatorState(Enum):
    """Lifecycle of the dynamic (Kalman) estimator."""

    UNINITIALIZED = auto()
    CONVERGING = auto()
    CONVERGED = auto()
    DIVERGED = auto()


class SigmaPriorFamily(Enum):
    """Prior family for the residual scale of the Bayesian rating model."""

    GAMMA = auto()
    NORMAL = auto()  # truncated at zero
    EXPONENTIAL = auto()


class LikelihoodKind(Enum):
    """Likelihood variant of the Bayesian rating model."""

    BASIC = auto()  # lflow ~ N(Xw, sigma)
    MEASUREMENT_ERROR = auto()  # latent lflow_true between spline and measurement
    STAGE_ERROR = auto()  # MEASUREMENT_ERROR plus latent stage error


class EstimationMethod(Enum):
    """Posterior estimation method."""

    LAPLACE = auto()
    NUTS = auto()


def parse_enum(enum_cls, value):
    """Coerce an enum member, its name, or its value into ``enum_cls``."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return enum_cls[key]
        except KeyError:
            valid = ", ".join(m.name.lower() for m in enum_cls)
            raise InputContractViolation(
                f"Invalid {enum_cls.__name__}: {value!r} (expected one of {valid})"
            ) from None
    return enum_cls(value)


# Canonical column names shared across modules
COL_DATETIME = "datetime"
COL_STAGE = "stage"
COL_DISCHARGE = "discharge"
COL_ACCURACY = "accuracy"
COL_CONTROL = "control"

# Observation variance used in place of an infinite variance for missing days
MISSING_OBS_VARIANCE = 1e12
