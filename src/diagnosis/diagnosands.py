"""
Diagnosand functions: callables reducing one partition of simulations to named statistics.

A diagnosand function receives a simulations sub-table and returns a pair
``(names, values)`` of equal length. It may expose a ``group_by`` attribute
listing the columns used to partition simulations instead of the default
grouping key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

import numpy as np
import pandas as pd

__all__ = [
    "DEFAULT_ALPHA",
    "DEFAULT_DIAGNOSAND_NAMES",
    "DefaultDiagnosands",
    "DiagnosandFunction",
    "DiagnosandSet",
    "declare_diagnosands",
    "default_diagnosands",
    "diagnosand_group_by",
]

DiagnosandFunction = Callable[[pd.DataFrame], Any]

DEFAULT_ALPHA = 0.05
DEFAULT_DIAGNOSAND_NAMES: tuple[str, ...] = (
    "bias",
    "rmse",
    "power",
    "coverage",
    "mean_estimate",
    "sd_estimate",
    "mean_se",
    "type_s_rate",
    "mean_estimand",
)


def diagnosand_group_by(diagnosand: object) -> tuple[str, ...] | None:
    """Return the alternate grouping columns declared by ``diagnosand``, if any."""

    group_by = getattr(diagnosand, "group_by", None)
    if group_by is None:
        return None
    if isinstance(group_by, str):
        return (group_by,)
    return tuple(str(col) for col in group_by)


@dataclass(frozen=True)
class DiagnosandSet:
    """Named scalar reducers evaluated together on one partition."""

    functions: Mapping[str, Callable[[pd.DataFrame], Any]] = field(default_factory=dict)
    group_by: tuple[str, ...] | None = None

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self.functions)

    def __call__(self, frame: pd.DataFrame) -> tuple[list[str], list[Any]]:
        names = list(self.functions)
        values = [fn(frame) for fn in self.functions.values()]
        return names, values


def declare_diagnosands(
    *,
    group_by: Sequence[str] | str | None = None,
    **functions: Callable[[pd.DataFrame], Any],
) -> DiagnosandSet:
    """
    Build a diagnosand function from keyword reducers.

    Each keyword names a statistic; its value maps a simulations sub-table to
    a scalar, e.g. ``declare_diagnosands(bias=lambda d: (d.estimate - d.estimand).mean())``.
    """

    if not functions:
        raise ValueError("declare_diagnosands requires at least one named reducer.")
    for name, fn in functions.items():
        if not callable(fn):
            raise TypeError(f"Diagnosand {name!r} must be callable.")
    if isinstance(group_by, str):
        group_by = (group_by,)
    resolved = tuple(group_by) if group_by is not None else None
    return DiagnosandSet(functions=dict(functions), group_by=resolved)


def _numeric(frame: pd.DataFrame, column: str) -> pd.Series:
    if column in frame.columns:
        return pd.to_numeric(frame[column], errors="coerce").astype(float)
    return pd.Series(np.nan, index=frame.index, dtype=float)


def _mean(values: pd.Series) -> float:
    values = values.dropna()
    if values.empty:
        return float("nan")
    return float(values.astype(float).mean())


@dataclass(frozen=True)
class DefaultDiagnosands:
    """Bias, RMSE, power, coverage, estimate moments, type-S rate and mean estimand."""

    alpha: float = DEFAULT_ALPHA

    def __post_init__(self) -> None:
        if not (0.0 < self.alpha < 1.0):
            raise ValueError("alpha must lie in (0, 1).")

    def __call__(self, frame: pd.DataFrame) -> tuple[list[str], list[float]]:
        estimate = _numeric(frame, "estimate")
        estimand = _numeric(frame, "estimand")
        p_value = _numeric(frame, "p.value")
        std_error = _numeric(frame, "std.error")
        conf_low = _numeric(frame, "conf.low")
        conf_high = _numeric(frame, "conf.high")

        error = estimate - estimand
        significant = (p_value < self.alpha).astype(float).where(p_value.notna())
        covered = ((conf_low <= estimand) & (estimand <= conf_high)).astype(float).where(
            estimand.notna() & conf_low.notna() & conf_high.notna()
        )
        sign_flip = (np.sign(estimate) != np.sign(estimand)).astype(float).where(estimate.notna() & estimand.notna())

        values = [
            _mean(error),
            float(np.sqrt(_mean(error**2))),
            _mean(significant),
            _mean(covered),
            _mean(estimate),
            float(estimate.std(ddof=1)) if estimate.notna().sum() > 1 else float("nan"),
            _mean(std_error),
            _mean(sign_flip[significant == 1.0]),
            _mean(estimand),
        ]
        return list(DEFAULT_DIAGNOSAND_NAMES), values


default_diagnosands = DefaultDiagnosands()
