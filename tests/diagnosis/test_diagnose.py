from __future__ import annotations

import json

import numpy as np
import pandas as pd
import pytest

from diagnosis import (
    ConfigurationError,
    DEFAULT_DIAGNOSAND_NAMES,
    DiagnosisSettings,
    EvaluationError,
    declare_diagnosands,
    diagnose_design,
    diagnose_designs,
    get_diagnosands,
    get_simulations,
    override_diagnosis_settings,
    write_diagnosis,
)
from meta.runtime import SequentialExecutor

pytestmark = pytest.mark.unit


def _bias(frame: pd.DataFrame) -> float:
    return float((frame["estimate"] - frame["estimand"]).mean())


def test_two_designs_with_bootstrap(make_simulations) -> None:
    simulations = make_simulations(n_designs=2, n_sims=250)
    diagnosis = diagnose_design(simulations, declare_diagnosands(bias=_bias), bootstrap_sims=50, seed=2024)

    table = get_diagnosands(diagnosis)
    assert table.shape[0] == 2
    assert table["design_label"].astype(str).tolist() == ["design_1", "design_2"]
    assert np.isfinite(table["se(bias)"]).all()
    assert (table["se(bias)"] >= 0).all()
    assert table["n_sims"].tolist() == [250, 250]
    assert diagnosis.diagnosand_names == ("bias",)
    assert diagnosis.standard_error_columns() == ["se(bias)"]

    replicates = diagnosis.bootstrap_replicates
    assert replicates is not None
    assert replicates.shape[0] == 100
    assert get_simulations(diagnosis) is simulations


def test_default_diagnosands_without_bootstrap(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=40)
    diagnosis = diagnose_design(simulations, bootstrap_sims=0)

    table = diagnosis.diagnosands
    assert diagnosis.diagnosand_names == DEFAULT_DIAGNOSAND_NAMES
    assert not any(col.startswith("se(") for col in table.columns)
    assert diagnosis.bootstrap_replicates is None
    assert not diagnosis.has_bootstrap
    assert table["bias"].abs().iloc[0] < 0.1


def test_bootstrap_false_disables(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=10)
    diagnosis = diagnose_design(simulations, declare_diagnosands(bias=_bias), bootstrap_sims=False)
    assert diagnosis.bootstrap_sims == 0


def test_settings_supply_bootstrap_default(make_simulations) -> None:
    override_diagnosis_settings(DiagnosisSettings(bootstrap_sims=5, seed=1))
    simulations = make_simulations(n_designs=1, n_sims=20)
    diagnosis = diagnose_design(simulations, declare_diagnosands(bias=_bias))

    assert diagnosis.bootstrap_sims == 5
    assert "se(bias)" in diagnosis.diagnosands.columns


def test_same_seed_is_reproducible(make_simulations) -> None:
    simulations = make_simulations(n_designs=2, n_sims=30)
    first = diagnose_design(simulations, declare_diagnosands(bias=_bias), bootstrap_sims=8, seed=5)
    second = diagnose_design(
        simulations,
        declare_diagnosands(bias=_bias),
        bootstrap_sims=8,
        seed=5,
        executor=SequentialExecutor(),
    )
    pd.testing.assert_frame_equal(first.diagnosands, second.diagnosands)


def test_rejects_tables_without_labels(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=5).drop(columns=["estimator_label", "estimand_label"])
    with pytest.raises(ConfigurationError, match="estimator_label"):
        diagnose_design(simulations, bootstrap_sims=0)


def test_rejects_non_frames() -> None:
    with pytest.raises(ConfigurationError):
        diagnose_design([1, 2, 3], bootstrap_sims=0)  # type: ignore[arg-type]


def test_attached_parameters_and_diagnosands(make_simulations) -> None:
    simulations = make_simulations(n_designs=2, n_sims=15)
    simulations.attrs["parameters"] = pd.DataFrame(
        {"design_label": ["design_2", "design_1"], "N": [200, 100]}
    )
    simulations.attrs["diagnosands"] = declare_diagnosands(bias=_bias)

    diagnosis = diagnose_designs(simulations, bootstrap_sims=3, seed=0)

    table = diagnosis.diagnosands
    assert list(table.columns)[:2] == ["design_label", "N"]
    assert table["design_label"].astype(str).tolist() == ["design_2", "design_1"]
    assert diagnosis.diagnosand_names == ("bias",)
    assert list(diagnosis.bootstrap_replicates.columns)[:2] == ["design_label", "N"]
    assert simulations.attrs["parameters"].shape == (2, 2)


def test_parameters_default_to_design_labels(make_simulations) -> None:
    simulations = make_simulations(n_designs=2, n_sims=5)
    diagnosis = diagnose_design(simulations, declare_diagnosands(bias=_bias), bootstrap_sims=0)
    assert diagnosis.parameters["design_label"].tolist() == ["design_1", "design_2"]


def test_add_grouping_variables(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=20)
    simulations["block"] = np.where(simulations["sim_ID"] % 2 == 0, "even", "odd")
    diagnosis = diagnose_design(
        simulations,
        declare_diagnosands(bias=_bias),
        bootstrap_sims=0,
        add_grouping_variables=["block"],
    )

    assert "block" in diagnosis.group_by_set
    assert diagnosis.diagnosands.shape[0] == 2
    assert diagnosis.diagnosands["n_sims"].tolist() == [10, 10]


def test_per_design_mapping(make_simulations) -> None:
    simulations = make_simulations(n_designs=2, n_sims=20)
    spec = {
        "design_1": declare_diagnosands(bias=_bias),
        "design_2": declare_diagnosands(mean_estimate=lambda d: float(d["estimate"].mean())),
    }
    diagnosis = diagnose_design(simulations, spec, bootstrap_sims=4, seed=8)

    table = diagnosis.diagnosands.set_index(diagnosis.diagnosands["design_label"].astype(str))
    assert np.isnan(table.loc["design_2", "bias"])
    assert np.isnan(table.loc["design_1", "mean_estimate"])
    assert list(diagnosis.diagnosand_names) == ["bias", "mean_estimate"]


def test_write_diagnosis(tmp_path, make_simulations) -> None:
    simulations = make_simulations(n_designs=2, n_sims=10)
    diagnosis = diagnose_design(simulations, declare_diagnosands(bias=_bias), bootstrap_sims=2, seed=4)

    out_dir = write_diagnosis(diagnosis, tmp_path / "out")

    written = pd.read_csv(out_dir / "diagnosands.csv")
    assert written.shape[0] == 2
    assert "se(bias)" in written.columns
    assert (out_dir / "parameters.csv").exists()
    assert (out_dir / "bootstrap_replicates.csv").exists()
    summary = json.loads((out_dir / "diagnosis.json").read_text(encoding="utf-8"))
    assert summary["designs"] == ["design_1", "design_2"]
    assert summary["bootstrap_sims"] == 2


class _RecordingExecutor(SequentialExecutor):
    def __init__(self) -> None:
        self.chunksizes: list[int] = []

    def map(self, fn, *iterables, chunksize: int = 1):
        self.chunksizes.append(chunksize)
        return super().map(fn, *iterables, chunksize=chunksize)


def test_replicates_are_batched_per_worker(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=20)
    executor = _RecordingExecutor()
    diagnose_design(
        simulations,
        declare_diagnosands(bias=_bias),
        bootstrap_sims=6,
        seed=3,
        executor=executor,
        settings=DiagnosisSettings(workers=2),
    )
    assert executor.chunksizes == [3]


@pytest.mark.slow
def test_process_pool_matches_sequential(make_simulations) -> None:
    simulations = make_simulations(n_designs=2, n_sims=30)
    sequential = diagnose_design(simulations, bootstrap_sims=6, seed=21)
    pooled = diagnose_design(
        simulations,
        bootstrap_sims=6,
        seed=21,
        settings=DiagnosisSettings(exec_mode="process", workers=2),
    )
    pd.testing.assert_frame_equal(sequential.diagnosands, pooled.diagnosands)


@pytest.mark.parametrize("name", ["n_sims", "bootstrap_id"])
def test_reserved_names_fail_before_merging(make_simulations, name: str) -> None:
    simulations = make_simulations(n_designs=1, n_sims=10)
    with pytest.raises(EvaluationError, match="reserved"):
        diagnose_design(simulations, declare_diagnosands(**{name: lambda d: 3.0}), bootstrap_sims=2)
