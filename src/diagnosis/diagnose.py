from __future__ import annotations

import contextlib
import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

import numpy as np
import pandas as pd

from meta.runtime import MapExecutor, effective_worker_count, make_executor, resolve_exec_mode

from .aggregate import DiagnosandSpec, calculate_diagnosands, calculate_sims, key_columns
from .assemble import assemble_diagnosis, merge_parameters, usable_parameters
from .bootstrap import bootstrap_diagnosands, se_column
from .config import DiagnosisSettings, get_diagnosis_settings
from .diagnosands import DEFAULT_ALPHA, DefaultDiagnosands, default_diagnosands
from .errors import ConfigurationError
from .partition import DEFAULT_GROUP_BY, DESIGN_COLUMN, present_columns

__all__ = [
    "Diagnosis",
    "diagnose_design",
    "diagnose_designs",
    "get_diagnosands",
    "get_simulations",
    "write_diagnosis",
]

_LOGGER = logging.getLogger(__name__)

LABEL_COLUMNS = ("estimator_label", "estimand_label")


@dataclass(frozen=True)
class Diagnosis:
    """Outcome of one diagnosis call."""

    simulations: pd.DataFrame
    diagnosands: pd.DataFrame
    diagnosand_names: tuple[str, ...]
    group_by_set: tuple[str, ...]
    parameters: pd.DataFrame
    bootstrap_sims: int = 0
    bootstrap_replicates: pd.DataFrame | None = None

    @property
    def has_bootstrap(self) -> bool:
        return self.bootstrap_sims > 0 and self.bootstrap_replicates is not None

    def standard_error_columns(self) -> list[str]:
        if not self.has_bootstrap:
            return []
        return [se_column(name) for name in self.diagnosand_names]

    def to_json(self) -> dict[str, object]:
        designs: list[str] = []
        if DESIGN_COLUMN in self.diagnosands.columns:
            designs = [str(label) for label in pd.unique(self.diagnosands[DESIGN_COLUMN].dropna())]
        return {
            "group_by_set": list(self.group_by_set),
            "diagnosand_names": list(self.diagnosand_names),
            "bootstrap_sims": int(self.bootstrap_sims),
            "designs": designs,
            "n_simulation_rows": int(self.simulations.shape[0]),
            "n_diagnosand_rows": int(self.diagnosands.shape[0]),
            "parameter_columns": [str(col) for col in self.parameters.columns],
        }


def get_diagnosands(diagnosis: Diagnosis) -> pd.DataFrame:
    return diagnosis.diagnosands


def get_simulations(diagnosis: Diagnosis) -> pd.DataFrame:
    return diagnosis.simulations


def _resolve_diagnosands(
    diagnosands: DiagnosandSpec | None,
    simulations: pd.DataFrame,
    settings: DiagnosisSettings,
) -> DiagnosandSpec:
    if diagnosands is not None:
        return diagnosands
    attached = simulations.attrs.get("diagnosands")
    if attached is not None:
        return attached
    if settings.alpha != DEFAULT_ALPHA:
        return DefaultDiagnosands(alpha=settings.alpha)
    return default_diagnosands


def _resolve_parameters(parameters: pd.DataFrame | None, simulations: pd.DataFrame) -> pd.DataFrame:
    if parameters is None:
        parameters = simulations.attrs.get("parameters")
    if usable_parameters(parameters):
        return parameters.reset_index(drop=True)
    if DESIGN_COLUMN not in simulations.columns:
        return pd.DataFrame()
    _LOGGER.info("no design parameters supplied; using design labels only")
    labels = pd.unique(simulations[DESIGN_COLUMN].dropna())
    return pd.DataFrame({DESIGN_COLUMN: labels})


def _bootstrap_count(bootstrap_sims: int | bool | None, settings: DiagnosisSettings) -> int:
    if bootstrap_sims is None:
        return settings.bootstrap_sims
    if bootstrap_sims is False:
        return 0
    return max(0, int(bootstrap_sims))


def _replicate_chunksize(n_boot: int, executor: MapExecutor | None, settings: DiagnosisSettings) -> int:
    # one batch of replicates per worker
    if executor is None:
        workers = resolve_exec_mode(settings.exec_mode, workers=settings.workers).workers
    else:
        workers = effective_worker_count("process", settings.workers)
    return max(1, math.ceil(n_boot / workers))


@contextlib.contextmanager
def _bootstrap_executor(executor: MapExecutor | None, settings: DiagnosisSettings) -> Iterator[MapExecutor]:
    if executor is not None:
        yield executor
        return
    exec_settings = resolve_exec_mode(settings.exec_mode, workers=settings.workers)
    with make_executor(exec_settings) as pool:
        yield pool


def diagnose_design(
    simulations: pd.DataFrame,
    diagnosands: DiagnosandSpec | None = None,
    *,
    bootstrap_sims: int | bool | None = None,
    add_grouping_variables: Sequence[str] | None = None,
    parameters: pd.DataFrame | None = None,
    executor: MapExecutor | None = None,
    seed: int | np.random.Generator | None = None,
    settings: DiagnosisSettings | None = None,
) -> Diagnosis:
    """
    Diagnose a design from a table of its simulations.

    Parameters
    ----------
    simulations
        One row per estimate per simulation draw. Must carry an
        ``estimator_label`` or ``estimand_label`` column. Design parameters and
        an attached diagnosand specification may travel in
        ``simulations.attrs["parameters"]`` and ``simulations.attrs["diagnosands"]``.
    diagnosands
        A diagnosand function, or a mapping from design label to function.
        Defaults to the attached specification, then :data:`default_diagnosands`.
    bootstrap_sims
        Number of bootstrap replicates used for standard errors. ``None`` takes
        the configured default, ``0`` or ``False`` disables bootstrapping.
    add_grouping_variables
        Columns appended to the default grouping key
        ``(design_label, estimand_label, estimator_label, term)``.
    parameters
        Design-level metadata keyed by ``design_label``.
    executor
        Executor used to map bootstrap replicates; built from the settings
        when omitted.
    seed
        Seed or generator for bootstrap resampling.
    settings
        Overrides the cached :class:`DiagnosisSettings`.

    Raises
    ------
    ConfigurationError
        If the table lacks estimator/estimand labels or a design has no
        diagnosand function.
    EvaluationError
        If a diagnosand function returns malformed output.
    ResamplingError
        If bootstrapping is requested but draws cannot be identified.
    """

    if not isinstance(simulations, pd.DataFrame):
        raise ConfigurationError(
            "diagnose_design expects a simulations DataFrame; run the simulations first."
        )
    if not present_columns(LABEL_COLUMNS, simulations):
        raise ConfigurationError(
            "Can't calculate diagnosands on this data frame, which does not include either an "
            "estimator_label or an estimand_label. Did you send a simulations data frame?"
        )

    settings = settings or get_diagnosis_settings()
    spec = _resolve_diagnosands(diagnosands, simulations, settings)
    extra = settings.add_grouping_variables if add_grouping_variables is None else tuple(add_grouping_variables)
    group_by_set = present_columns([*DEFAULT_GROUP_BY, *extra], simulations)
    n_boot = _bootstrap_count(bootstrap_sims, settings)
    seed = settings.seed if seed is None else seed
    parameters_df = _resolve_parameters(parameters, simulations)

    working = simulations.copy(deep=False)
    working.attrs = {}

    diagnosands_df = calculate_diagnosands(working, spec, group_by_set)
    keys = key_columns(diagnosands_df, group_by_set, spec)
    diagnosand_names = tuple(col for col in diagnosands_df.columns if col not in keys)
    n_sims_df = calculate_sims(working, group_by_set, spec)
    _LOGGER.info(
        "diagnosed %d groups by %s (%d diagnosands)",
        diagnosands_df.shape[0],
        keys,
        len(diagnosand_names),
    )

    replicates: pd.DataFrame | None = None
    if n_boot > 0:
        with _bootstrap_executor(executor, settings) as runner:
            bootout = bootstrap_diagnosands(
                working,
                spec,
                diagnosands_df,
                group_by_set,
                n_boot,
                executor=runner,
                seed=seed,
                chunksize=_replicate_chunksize(n_boot, executor, settings),
            )
        diagnosands_df = bootout.diagnosands_df
        replicates = merge_parameters(bootout.diagnosand_replicates, parameters_df, how="left")

    final = assemble_diagnosis(diagnosands_df, n_sims_df, parameters_df, keys)

    return Diagnosis(
        simulations=simulations,
        diagnosands=final,
        diagnosand_names=diagnosand_names,
        group_by_set=tuple(keys),
        parameters=parameters_df,
        bootstrap_sims=n_boot,
        bootstrap_replicates=replicates,
    )


diagnose_designs = diagnose_design


def write_diagnosis(diagnosis: Diagnosis, out_dir: str | Path) -> Path:
    """Persist the diagnosis tables as CSV plus a ``diagnosis.json`` summary."""

    output_dir = Path(out_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    diagnosis.diagnosands.to_csv(output_dir / "diagnosands.csv", index=False)
    diagnosis.parameters.to_csv(output_dir / "parameters.csv", index=False)
    if diagnosis.bootstrap_replicates is not None:
        diagnosis.bootstrap_replicates.to_csv(output_dir / "bootstrap_replicates.csv", index=False)
    summary_path = output_dir / "diagnosis.json"
    summary_path.write_text(json.dumps(diagnosis.to_json(), indent=2), encoding="utf-8")
    return output_dir
