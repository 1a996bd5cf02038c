from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pandas as pd
import pytest

from diagnosis.aggregate import calculate_diagnosands
from diagnosis.bootstrap import (
    BOOTSTRAP_ID_COLUMN,
    bootstrap_diagnosands,
    cluster_column,
    cluster_positions,
    resample_positions,
    se_column,
    standard_errors,
)
from diagnosis.diagnosands import declare_diagnosands
from diagnosis.errors import EvaluationError, ResamplingError
from diagnosis.partition import DEFAULT_GROUP_BY

pytestmark = pytest.mark.unit


def _bias(frame: pd.DataFrame) -> float:
    return float((frame["estimate"] - frame["estimand"]).mean())


def _run(simulations: pd.DataFrame, diagnosands, bootstrap_sims: int, **kwargs):
    point = calculate_diagnosands(simulations, diagnosands, DEFAULT_GROUP_BY)
    return bootstrap_diagnosands(simulations, diagnosands, point, DEFAULT_GROUP_BY, bootstrap_sims, **kwargs)


def test_cluster_resample_keeps_draws_together(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=8, estimators=("ols", "dim"), terms=("Z", "X"))
    column = cluster_column(simulations)
    clusters = cluster_positions(simulations, column)

    assert column == "sim_ID"
    assert len(clusters) == 8
    assert all(len(block) == 4 for block in clusters)

    positions = resample_positions(clusters, np.random.default_rng(7))
    resampled = simulations.iloc[positions]
    assert resampled.shape[0] == simulations.shape[0]
    # every drawn id contributes all of its rows, possibly several times
    counts = resampled.groupby("sim_ID").size()
    assert (counts % 4 == 0).all()


def test_step_1_draw_takes_precedence(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=4)
    simulations["step_1_draw"] = [1, 1, 2, 2]
    assert cluster_column(simulations) == "step_1_draw"
    assert len(cluster_positions(simulations, "step_1_draw")) == 2


def test_missing_draw_column_raises(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=4).drop(columns=["sim_ID"])
    with pytest.raises(ResamplingError):
        _run(simulations, declare_diagnosands(bias=_bias), 5)


def test_missing_draw_ids_raise(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=4)
    simulations["sim_ID"] = simulations["sim_ID"].astype(float)
    simulations.loc[0, "sim_ID"] = np.nan
    with pytest.raises(ResamplingError, match="missing"):
        cluster_column(simulations)


def test_standard_errors_are_interleaved(make_simulations) -> None:
    simulations = make_simulations(n_designs=2, n_sims=60)
    diagnosands = declare_diagnosands(
        bias=_bias,
        mean_estimate=lambda d: float(d["estimate"].mean()),
    )
    result = _run(simulations, diagnosands, 20, seed=11)

    table = result.diagnosands_df
    assert list(table.columns)[-4:] == ["bias", se_column("bias"), "mean_estimate", se_column("mean_estimate")]
    assert (table["se(bias)"] >= 0).all()
    assert np.isfinite(table["se(bias)"]).all()

    replicates = result.diagnosand_replicates
    assert list(replicates.columns)[0] == BOOTSTRAP_ID_COLUMN
    assert sorted(replicates[BOOTSTRAP_ID_COLUMN].unique().tolist()) == list(range(1, 21))
    assert replicates.shape[0] == 20 * table.shape[0]


def test_standard_error_matches_replicate_spread(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=40)
    result = _run(simulations, declare_diagnosands(bias=_bias), 15, seed=3)

    expected = result.diagnosand_replicates["bias"].std(ddof=1)
    assert result.diagnosands_df["se(bias)"].iloc[0] == pytest.approx(expected)


def test_disabled_bootstrap_returns_input(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=10)
    point = calculate_diagnosands(simulations, declare_diagnosands(bias=_bias), DEFAULT_GROUP_BY)
    result = bootstrap_diagnosands(simulations, declare_diagnosands(bias=_bias), point, DEFAULT_GROUP_BY, 0)

    pd.testing.assert_frame_equal(result.diagnosands_df, point)
    assert result.diagnosand_replicates.empty


def test_same_seed_same_errors_across_executors(make_simulations) -> None:
    simulations = make_simulations(n_designs=2, n_sims=30)
    diagnosands = declare_diagnosands(bias=_bias)

    sequential = _run(simulations, diagnosands, 10, seed=99)
    with ThreadPoolExecutor(max_workers=2) as pool:
        threaded = _run(simulations, diagnosands, 10, seed=99, executor=pool)

    pd.testing.assert_frame_equal(sequential.diagnosands_df, threaded.diagnosands_df)
    pd.testing.assert_frame_equal(sequential.diagnosand_replicates, threaded.diagnosand_replicates)


def test_failing_replicate_aborts(make_simulations) -> None:
    simulations = make_simulations(n_designs=1, n_sims=20)
    calls = {"n": 0}

    def fragile(frame: pd.DataFrame) -> tuple[list[str], list[float]]:
        calls["n"] += 1
        if calls["n"] > 2:
            raise RuntimeError("replicate failed")
        return ["bias"], [_bias(frame)]

    point = calculate_diagnosands(simulations, fragile, DEFAULT_GROUP_BY)
    with pytest.raises(EvaluationError, match="replicate failed"):
        bootstrap_diagnosands(simulations, fragile, point, DEFAULT_GROUP_BY, 5, seed=1)


def test_standard_errors_missing_statistic_is_nan() -> None:
    replicates = pd.DataFrame({"design_label": ["a", "a", "a"], "bias": [0.1, 0.2, 0.3]})
    errors = standard_errors(replicates, ["design_label"], ["bias", "power"])

    assert errors[("a",)]["se(bias)"] == pytest.approx(0.1)
    assert np.isnan(errors[("a",)]["se(power)"])
