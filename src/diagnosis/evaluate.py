from __future__ import annotations

from typing import Any, Sequence

import numpy as np
import pandas as pd

from .diagnosands import DiagnosandFunction
from .errors import EvaluationError
from .partition import GroupKey, format_group_key

__all__ = ["evaluate_partition"]


def _split_output(output: Any, where: str) -> tuple[list[Any], list[Any]]:
    if isinstance(output, pd.DataFrame):
        if output.shape[1] < 2:
            raise EvaluationError(
                f"Diagnosand output for {where} must carry a names column and a values column."
            )
        return output.iloc[:, 0].tolist(), output.iloc[:, 1].tolist()
    if isinstance(output, (tuple, list)) and len(output) == 2:
        names, values = output
        if isinstance(names, str):
            names = [names]
        if not isinstance(values, (list, tuple, np.ndarray, pd.Series)):
            values = [values]
        return list(names), list(values)
    raise EvaluationError(
        f"Diagnosand output for {where} must be a (names, values) pair, got {type(output).__name__}."
    )


def _scalar(value: Any, name: str, where: str) -> Any:
    if isinstance(value, (pd.Series, pd.DataFrame, list, tuple, dict, set)):
        raise EvaluationError(f"Diagnosand {name!r} for {where} is not a scalar value.")
    if isinstance(value, np.ndarray) and value.ndim != 0:
        raise EvaluationError(f"Diagnosand {name!r} for {where} is not a scalar value.")
    if isinstance(value, np.ndarray):
        value = value.item()
    if isinstance(value, np.generic):
        return value.item()
    return value


def evaluate_partition(
    diagnosand: DiagnosandFunction,
    frame: pd.DataFrame,
    key: GroupKey | None = None,
    columns: Sequence[str] = (),
) -> dict[str, Any]:
    """Apply ``diagnosand`` to one partition and return ``{statistic: value}``."""

    where = format_group_key(columns, key) if key is not None else "<all rows>"
    try:
        output = diagnosand(frame)
    except EvaluationError:
        raise
    except Exception as exc:
        raise EvaluationError(f"Diagnosand failed for {where}: {exc!r}") from exc
    names, values = _split_output(output, where)

    if len(names) != len(values):
        raise EvaluationError(
            f"Diagnosand for {where} returned {len(names)} names but {len(values)} values."
        )

    statistics: dict[str, Any] = {}
    for name, value in zip(names, values):
        label = str(name)
        if label in statistics:
            raise EvaluationError(f"Diagnosand {label!r} for {where} is returned more than once.")
        statistics[label] = _scalar(value, label, where)
    return statistics
