from __future__ import annotations

import logging
from typing import Sequence

import pandas as pd

from .aggregate import ColumnRegistry
from .partition import DESIGN_COLUMN, present_columns

__all__ = ["assemble_diagnosis", "merge_parameters", "reorder_columns", "usable_parameters"]

_LOGGER = logging.getLogger(__name__)

STATISTIC_COLUMN = "statistic"


def reorder_columns(first: Sequence[str], second: Sequence[str]) -> list[str]:
    """Columns of ``first`` followed by the columns of ``second`` not already listed."""

    registry = ColumnRegistry(first)
    registry.extend(second)
    return registry.names


def usable_parameters(parameters: pd.DataFrame | None) -> bool:
    return (
        isinstance(parameters, pd.DataFrame)
        and not parameters.empty
        and DESIGN_COLUMN in parameters.columns
    )


def merge_parameters(table: pd.DataFrame, parameters: pd.DataFrame | None, *, how: str = "outer") -> pd.DataFrame:
    """Join design-level parameters onto ``table`` by design label, parameter columns first."""

    if DESIGN_COLUMN not in table.columns:
        return table
    if not usable_parameters(parameters):
        _LOGGER.warning("design parameters unavailable; diagnosis carries no design metadata")
        return table

    merged = table.merge(parameters, on=DESIGN_COLUMN, how=how, sort=False, suffixes=("", "_parameter"))
    parameter_columns = [
        col if col == DESIGN_COLUMN or col not in table.columns else f"{col}_parameter"
        for col in parameters.columns
    ]
    return merged.loc[:, reorder_columns(parameter_columns, merged.columns)]


def _design_levels(table: pd.DataFrame, parameters: pd.DataFrame | None) -> list[object]:
    registry = ColumnRegistry()
    if usable_parameters(parameters):
        registry.extend(parameters[DESIGN_COLUMN].dropna().tolist())
    registry.extend(table[DESIGN_COLUMN].dropna().tolist())
    return registry.names


def _merge_sims(diagnosands_df: pd.DataFrame, n_sims_df: pd.DataFrame | None, keys: Sequence[str]) -> pd.DataFrame:
    if n_sims_df is None or n_sims_df.empty:
        return diagnosands_df
    on = [key for key in keys if key in n_sims_df.columns]
    extra = [col for col in n_sims_df.columns if col not in on and col not in diagnosands_df.columns]
    if not on:
        return pd.concat(
            [diagnosands_df.reset_index(drop=True), n_sims_df.loc[:, extra].reset_index(drop=True)],
            axis=1,
        )
    return diagnosands_df.merge(n_sims_df.loc[:, [*on, *extra]], on=on, how="outer", sort=False)


def assemble_diagnosis(
    diagnosands_df: pd.DataFrame,
    n_sims_df: pd.DataFrame | None,
    parameters_df: pd.DataFrame | None,
    group_by_set: Sequence[str],
) -> pd.DataFrame:
    """
    Merge diagnosands, simulation counts and design parameters into one table.

    Merges are outer joins, so no group is lost when it is absent from one of
    the inputs. Rows are sorted by the grouping columns (then ``statistic``
    when present) with missing values last; design parameter columns lead.
    """

    keys = present_columns(group_by_set, diagnosands_df)
    merged = _merge_sims(diagnosands_df, n_sims_df, keys)
    merged = merge_parameters(merged, parameters_df, how="outer")

    if DESIGN_COLUMN in merged.columns and usable_parameters(parameters_df):
        merged[DESIGN_COLUMN] = pd.Categorical(
            merged[DESIGN_COLUMN],
            categories=_design_levels(merged, parameters_df),
            ordered=True,
        )

    sort_by = present_columns([*keys, STATISTIC_COLUMN], merged)
    if sort_by and merged.shape[0] > 1:
        merged = merged.sort_values(sort_by, kind="mergesort", na_position="last")
    return merged.reset_index(drop=True)
