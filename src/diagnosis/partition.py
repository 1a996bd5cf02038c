"""
Split simulation tables into partitions keyed by composite grouping values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Hashable, Iterable, Sequence

import numpy as np
import pandas as pd

__all__ = [
    "DESIGN_COLUMN",
    "DEFAULT_GROUP_BY",
    "MISSING",
    "GroupKey",
    "Partition",
    "format_group_key",
    "group_key",
    "is_missing",
    "partition_frame",
    "present_columns",
]

DESIGN_COLUMN = "design_label"
DEFAULT_GROUP_BY: tuple[str, ...] = (DESIGN_COLUMN, "estimand_label", "estimator_label", "term")

GroupKey = tuple[Hashable, ...]


class _Missing:
    """Key placeholder for a missing grouping value; equal only to itself."""

    __slots__ = ()
    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<NA>"

    def __reduce__(self) -> tuple[type, tuple[()]]:
        return (_Missing, ())


MISSING = _Missing()


def is_missing(value: Any) -> bool:
    if value is None or value is MISSING:
        return True
    if np.ndim(value) != 0:
        return False
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def group_key(values: Iterable[Any]) -> GroupKey:
    """Map raw grouping values onto a hashable key, folding missing values to ``MISSING``."""

    return tuple(MISSING if is_missing(value) else value for value in values)


def format_group_key(columns: Sequence[str], key: GroupKey) -> str:
    if not columns:
        return "<all rows>"
    return ", ".join(f"{col}={value!r}" for col, value in zip(columns, key))


def present_columns(columns: Iterable[str], frame: pd.DataFrame) -> list[str]:
    """Return ``columns`` restricted to those in ``frame``, order kept, duplicates dropped."""

    available = set(frame.columns)
    ordered: list[str] = []
    for col in columns:
        if col in available and col not in ordered:
            ordered.append(col)
    return ordered


@dataclass(frozen=True, slots=True)
class Partition:
    key: GroupKey
    labels: dict[str, Any]
    positions: np.ndarray
    frame: pd.DataFrame = field(repr=False)

    @property
    def n_rows(self) -> int:
        return int(self.positions.size)


def partition_frame(frame: pd.DataFrame, group_by: Sequence[str] = ()) -> dict[GroupKey, Partition]:
    """
    Partition ``frame`` by the grouping columns it actually carries.

    Partitions are returned in order of first appearance. Missing values in a
    key column are a category of their own, so every row belongs to exactly
    one partition. ``labels`` holds the first row's key values as stored in
    ``frame`` (missing values are not replaced by the sentinel).
    """

    if not isinstance(frame, pd.DataFrame):
        raise TypeError("frame must be a pandas DataFrame.")

    columns = present_columns(group_by, frame)
    n_rows = int(frame.shape[0])
    if n_rows == 0:
        return {}

    if not columns:
        positions = np.arange(n_rows, dtype=np.intp)
        return {(): Partition(key=(), labels={}, positions=positions, frame=frame)}

    key_values = [frame[col].tolist() for col in columns]
    positions_by_key: dict[GroupKey, list[int]] = {}
    for position, raw in enumerate(zip(*key_values)):
        positions_by_key.setdefault(group_key(raw), []).append(position)

    partitions: dict[GroupKey, Partition] = {}
    for key, positions in positions_by_key.items():
        index = np.asarray(positions, dtype=np.intp)
        first = positions[0]
        labels = {col: values[first] for col, values in zip(columns, key_values)}
        partitions[key] = Partition(key=key, labels=labels, positions=index, frame=frame.iloc[index])
    return partitions
