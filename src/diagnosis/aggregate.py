"""
Split-apply-combine of diagnosand functions over simulation partitions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Union

import pandas as pd

from .diagnosands import DiagnosandFunction, diagnosand_group_by
from .errors import ConfigurationError, EvaluationError
from .evaluate import evaluate_partition
from .partition import DESIGN_COLUMN, MISSING, partition_frame, present_columns

__all__ = [
    "BOOTSTRAP_ID_COLUMN",
    "ColumnRegistry",
    "DiagnosandSpec",
    "N_SIMS_COLUMN",
    "calculate_diagnosands",
    "calculate_sims",
    "is_reserved_name",
    "key_columns",
    "rbind_disjoint",
    "se_column",
]

_LOGGER = logging.getLogger(__name__)

N_SIMS_COLUMN = "n_sims"
BOOTSTRAP_ID_COLUMN = "bootstrap_id"


def se_column(name: str) -> str:
    return f"se({name})"


def is_reserved_name(name: str) -> bool:
    """Whether ``name`` is a column the diagnosis tables add themselves."""

    return name in (N_SIMS_COLUMN, BOOTSTRAP_ID_COLUMN) or (name.startswith("se(") and name.endswith(")"))


DiagnosandSpec = Union[DiagnosandFunction, Mapping[Any, DiagnosandFunction]]


class ColumnRegistry:
    """Ordered set of column names, grown as partial results are folded in."""

    def __init__(self, initial: Iterable[str] = ()) -> None:
        self._names: list[str] = []
        self._seen: set[str] = set()
        self.extend(initial)

    def extend(self, names: Iterable[str]) -> None:
        for name in names:
            if name not in self._seen:
                self._seen.add(name)
                self._names.append(name)

    @property
    def names(self) -> list[str]:
        return list(self._names)


def rbind_disjoint(frames: Sequence[pd.DataFrame], columns: Iterable[str] = ()) -> pd.DataFrame:
    """
    Stack frames with differing column sets.

    The result carries the union of columns in first-encountered order;
    cells absent from a frame are left missing.
    """

    registry = ColumnRegistry(columns)
    for frame in frames:
        registry.extend(frame.columns)
    names = registry.names
    non_empty = [frame.reindex(columns=names) for frame in frames if frame.shape[0] > 0]
    if not non_empty:
        return pd.DataFrame(columns=names)
    if len(non_empty) == 1:
        return non_empty[0].reset_index(drop=True)
    return pd.concat(non_empty, ignore_index=True)


def _spec_functions(diagnosands: DiagnosandSpec) -> list[DiagnosandFunction]:
    if isinstance(diagnosands, Mapping):
        return list(diagnosands.values())
    return [diagnosands]


def key_columns(table: pd.DataFrame, group_by_set: Sequence[str], diagnosands: DiagnosandSpec) -> list[str]:
    """Grouping columns present in ``table``, including any declared by the diagnosand functions."""

    candidates = list(group_by_set)
    for fn in _spec_functions(diagnosands):
        override = diagnosand_group_by(fn)
        if override:
            candidates.extend(override)
    return present_columns(candidates, table)


def _grouping_for(
    diagnosand: DiagnosandFunction,
    simulations: pd.DataFrame,
    group_by_set: Sequence[str],
    required: Sequence[str],
) -> list[str]:
    override = diagnosand_group_by(diagnosand)
    if override is None:
        return present_columns(group_by_set, simulations)
    return present_columns([*required, *override], simulations)


def _calculate_single(
    simulations: pd.DataFrame,
    diagnosand: DiagnosandFunction,
    group_by_set: Sequence[str],
    required: Sequence[str] = (),
) -> pd.DataFrame:
    if not callable(diagnosand):
        raise ConfigurationError(
            f"Diagnosand specification must be callable, got {type(diagnosand).__name__}."
        )
    columns = _grouping_for(diagnosand, simulations, group_by_set, required)
    registry = ColumnRegistry(columns)
    rows: list[dict[str, Any]] = []
    for key, partition in partition_frame(simulations, columns).items():
        statistics = evaluate_partition(diagnosand, partition.frame, key, columns)
        clashes = [name for name in statistics if name in partition.labels]
        if clashes:
            raise EvaluationError(
                f"Diagnosand names {clashes} collide with grouping columns {columns}."
            )
        if not isinstance(diagnosand, _CountRows):
            reserved = [name for name in statistics if is_reserved_name(name)]
            if reserved:
                raise EvaluationError(
                    f"Diagnosand names {reserved} are reserved for columns the diagnosis adds "
                    f"({N_SIMS_COLUMN!r}, {BOOTSTRAP_ID_COLUMN!r}, 'se(...)')."
                )
        registry.extend(statistics)
        rows.append({**partition.labels, **statistics})
    return pd.DataFrame.from_records(rows, columns=registry.names)


def _lookup_design(diagnosands: Mapping[Any, DiagnosandFunction], label: Any) -> DiagnosandFunction:
    if label is not MISSING:
        if label in diagnosands:
            return diagnosands[label]
        if str(label) in diagnosands:
            return diagnosands[str(label)]
    available = ", ".join(repr(name) for name in diagnosands)
    raise ConfigurationError(
        f"No diagnosand function registered for {DESIGN_COLUMN}={label!r} (available: {available})."
    )


def calculate_diagnosands(
    simulations: pd.DataFrame,
    diagnosands: DiagnosandSpec,
    group_by_set: Sequence[str],
) -> pd.DataFrame:
    """
    Compute one row of diagnosands per group of simulations.

    ``diagnosands`` is either one diagnosand function or a mapping from
    design label to function. With a mapping and ``design_label`` among the
    grouping columns, each design is diagnosed with its own function and the
    results are stacked with :func:`rbind_disjoint`.
    """

    if not isinstance(simulations, pd.DataFrame):
        raise TypeError("simulations must be a pandas DataFrame.")
    group_by = present_columns(group_by_set, simulations)

    if not isinstance(diagnosands, Mapping):
        required = (DESIGN_COLUMN,) if DESIGN_COLUMN in group_by else ()
        return _calculate_single(simulations, diagnosands, group_by, required=required)

    if not diagnosands:
        raise ConfigurationError("Diagnosand mapping is empty.")

    if DESIGN_COLUMN not in group_by:
        if len(diagnosands) > 1:
            _LOGGER.warning(
                "%s is not a grouping column; using the first of %d diagnosand functions",
                DESIGN_COLUMN,
                len(diagnosands),
            )
        return _calculate_single(simulations, next(iter(diagnosands.values())), group_by)

    results: list[pd.DataFrame] = []
    for key, partition in partition_frame(simulations, [DESIGN_COLUMN]).items():
        label = key[0]
        diagnosand = _lookup_design(diagnosands, label)
        _LOGGER.debug("diagnosing %s=%r over %d rows", DESIGN_COLUMN, label, partition.n_rows)
        results.append(
            _calculate_single(partition.frame, diagnosand, group_by, required=(DESIGN_COLUMN,))
        )
    return rbind_disjoint(results, columns=group_by)


@dataclass(frozen=True)
class _CountRows:
    group_by: tuple[str, ...] | None = None

    def __call__(self, frame: pd.DataFrame) -> tuple[list[str], list[int]]:
        return [N_SIMS_COLUMN], [int(frame.shape[0])]


def _counting_spec(diagnosands: DiagnosandSpec | None) -> DiagnosandSpec:
    if diagnosands is None:
        return _CountRows()
    if isinstance(diagnosands, Mapping):
        return {label: _CountRows(diagnosand_group_by(fn)) for label, fn in diagnosands.items()}
    return _CountRows(diagnosand_group_by(diagnosands))


def calculate_sims(
    simulations: pd.DataFrame,
    group_by_set: Sequence[str],
    diagnosands: DiagnosandSpec | None = None,
) -> pd.DataFrame:
    """
    Count simulation rows per group.

    When ``diagnosands`` is given, groups follow the same dispatch as
    :func:`calculate_diagnosands`, so declared grouping overrides line up.
    """

    return calculate_diagnosands(simulations, _counting_spec(diagnosands), group_by_set)
