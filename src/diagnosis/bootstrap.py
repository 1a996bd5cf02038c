"""
Cluster bootstrap of diagnosands over simulation draws.

Whole draws are resampled with replacement, so rows produced by the same
draw (several estimators, terms or estimands) always travel together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np
import pandas as pd

from meta.runtime import MapExecutor, SequentialExecutor

from .aggregate import (
    BOOTSTRAP_ID_COLUMN,
    DiagnosandSpec,
    calculate_diagnosands,
    key_columns,
    rbind_disjoint,
    se_column,
)
from .errors import ResamplingError
from .partition import group_key, partition_frame

__all__ = [
    "BOOTSTRAP_ID_COLUMN",
    "CLUSTER_COLUMNS",
    "BootstrapResult",
    "bootstrap_diagnosands",
    "cluster_column",
    "cluster_positions",
    "resample_positions",
    "se_column",
    "standard_errors",
]

_LOGGER = logging.getLogger(__name__)

CLUSTER_COLUMNS = ("step_1_draw", "sim_ID")


@dataclass(frozen=True)
class BootstrapResult:
    diagnosands_df: pd.DataFrame
    diagnosand_replicates: pd.DataFrame


def cluster_column(simulations: pd.DataFrame) -> str:
    """Return the column identifying the draw each row came from."""

    for column in CLUSTER_COLUMNS:
        if column in simulations.columns:
            break
    else:
        raise ResamplingError(
            f"Cannot bootstrap: simulations carry none of the draw columns {list(CLUSTER_COLUMNS)}."
        )
    ids = simulations[column]
    if ids.empty or ids.isna().all():
        raise ResamplingError(f"Cannot bootstrap: draw column {column!r} is empty.")
    missing = int(ids.isna().sum())
    if missing:
        raise ResamplingError(f"Cannot bootstrap: draw column {column!r} has {missing} missing ids.")
    return column


def cluster_positions(simulations: pd.DataFrame, column: str) -> tuple[np.ndarray, ...]:
    """Row positions for each distinct draw id, ordered by id."""

    codes, _ = pd.factorize(simulations[column], sort=True)
    order = np.argsort(codes, kind="stable")
    counts = np.bincount(codes)
    boundaries = np.cumsum(counts)[:-1]
    return tuple(block.astype(np.intp) for block in np.split(order, boundaries))


def resample_positions(clusters: Sequence[np.ndarray], rng: np.random.Generator) -> np.ndarray:
    """Draw ``len(clusters)`` clusters with replacement and return their stacked row positions."""

    n_draws = len(clusters)
    picks = rng.integers(0, n_draws, size=n_draws)
    return np.concatenate([clusters[idx] for idx in picks])


@dataclass(frozen=True)
class _ReplicateTask:
    simulations: pd.DataFrame
    diagnosands: DiagnosandSpec
    group_by_set: tuple[str, ...]
    clusters: tuple[np.ndarray, ...]

    def __call__(self, job: tuple[int, int]) -> pd.DataFrame:
        replicate, seed = job
        rng = np.random.default_rng(seed)
        positions = resample_positions(self.clusters, rng)
        resampled = self.simulations.iloc[positions]
        table = calculate_diagnosands(resampled, self.diagnosands, self.group_by_set)
        table.insert(0, BOOTSTRAP_ID_COLUMN, replicate)
        return table


def standard_errors(
    replicates: pd.DataFrame,
    keys: Sequence[str],
    statistics: Sequence[str],
) -> dict[tuple, dict[str, float]]:
    """Sample standard deviation of every statistic across replicates, per group."""

    results: dict[tuple, dict[str, float]] = {}
    for key, partition in partition_frame(replicates, keys).items():
        values: dict[str, float] = {}
        for name in statistics:
            if name in partition.frame.columns:
                column = pd.to_numeric(partition.frame[name], errors="coerce")
                values[se_column(name)] = float(column.std(ddof=1))
            else:
                values[se_column(name)] = float("nan")
        results[key] = values
    return results


def _attach_standard_errors(
    point_estimates: pd.DataFrame,
    errors: dict[tuple, dict[str, float]],
    keys: Sequence[str],
) -> pd.DataFrame:
    statistics = [col for col in point_estimates.columns if col not in keys]
    se_names = [se_column(name) for name in statistics]
    if keys:
        row_keys = [group_key(raw) for raw in zip(*(point_estimates[col].tolist() for col in keys))]
    else:
        row_keys = [()] * int(point_estimates.shape[0])
    se_frame = pd.DataFrame.from_records(
        [errors.get(key, {}) for key in row_keys],
        columns=se_names,
        index=point_estimates.index,
    )
    ordered: list[str] = list(keys)
    for name, se_name in zip(statistics, se_names):
        ordered.extend((name, se_name))
    combined = pd.concat([point_estimates, se_frame.astype(float)], axis=1)
    return combined.loc[:, ordered]


def bootstrap_diagnosands(
    simulations: pd.DataFrame,
    diagnosands: DiagnosandSpec,
    diagnosands_df: pd.DataFrame,
    group_by_set: Sequence[str],
    bootstrap_sims: int,
    *,
    executor: MapExecutor | None = None,
    seed: int | np.random.Generator | None = None,
    chunksize: int = 1,
) -> BootstrapResult:
    """
    Attach bootstrap standard errors to ``diagnosands_df``.

    Each replicate resamples whole draws, re-runs
    :func:`~diagnosis.aggregate.calculate_diagnosands` and is tagged with its
    1-based ``bootstrap_id``. Replicates are mapped over ``executor``
    (sequential when omitted) in batches of ``chunksize``, so a process pool
    ships the simulations table once per batch. A failing replicate aborts
    the bootstrap.
    The returned table interleaves every statistic with its ``se(...)`` column.
    """

    keys = key_columns(diagnosands_df, group_by_set, diagnosands)
    if bootstrap_sims <= 0:
        empty = pd.DataFrame(columns=[BOOTSTRAP_ID_COLUMN, *diagnosands_df.columns])
        return BootstrapResult(diagnosands_df.copy(), empty)

    column = cluster_column(simulations)
    clusters = cluster_positions(simulations, column)
    rng = seed if isinstance(seed, np.random.Generator) else np.random.default_rng(seed)
    seeds = rng.integers(0, 2**63 - 1, size=int(bootstrap_sims), dtype=np.int64)
    jobs = [(replicate, int(value)) for replicate, value in enumerate(seeds, start=1)]

    _LOGGER.info(
        "bootstrapping %d replicates over %d draws (cluster column %r)",
        len(jobs),
        len(clusters),
        column,
    )
    task = _ReplicateTask(
        simulations=simulations,
        diagnosands=diagnosands,
        group_by_set=tuple(group_by_set),
        clusters=clusters,
    )
    runner = executor if executor is not None else SequentialExecutor()
    tables: list[pd.DataFrame] = list(runner.map(task, jobs, chunksize=max(1, int(chunksize))))

    replicates = rbind_disjoint(tables, columns=[BOOTSTRAP_ID_COLUMN, *keys])
    statistics: list[Any] = [col for col in diagnosands_df.columns if col not in keys]
    errors = standard_errors(replicates, keys, statistics)
    return BootstrapResult(
        diagnosands_df=_attach_standard_errors(diagnosands_df, errors, keys),
        diagnosand_replicates=replicates,
    )
