from __future__ import annotations

import math
import sys
from pathlib import Path
from typing import Callable, Sequence

import numpy as np
import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

SRC_ROOT = ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))


@pytest.fixture(autouse=True)
def _reset_diagnosis_settings() -> None:
    from diagnosis.config import DiagnosisSettings, override_diagnosis_settings

    override_diagnosis_settings(DiagnosisSettings())
    yield
    override_diagnosis_settings(None)


def _simulations(
    n_designs: int = 2,
    n_sims: int = 250,
    estimators: Sequence[str] = ("estimator",),
    terms: Sequence[str | None] = ("Z",),
    effect: float = 0.5,
    noise: float = 0.2,
    seed: int = 2024,
) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    records: list[dict[str, object]] = []
    for design in range(n_designs):
        estimand = effect * (design + 1)
        for sim in range(1, n_sims + 1):
            for estimator in estimators:
                for term in terms:
                    estimate = estimand + float(rng.normal(scale=noise))
                    std_error = noise
                    p_value = math.erfc(abs(estimate / std_error) / math.sqrt(2.0))
                    records.append(
                        {
                            "design_label": f"design_{design + 1}",
                            "sim_ID": sim,
                            "estimand_label": "ATE",
                            "estimand": estimand,
                            "estimator_label": estimator,
                            "term": term,
                            "estimate": estimate,
                            "std.error": std_error,
                            "p.value": p_value,
                            "conf.low": estimate - 1.96 * std_error,
                            "conf.high": estimate + 1.96 * std_error,
                        }
                    )
    return pd.DataFrame.from_records(records)


@pytest.fixture
def make_simulations() -> Callable[..., pd.DataFrame]:
    """Factory for synthetic simulations tables (one row per draw, estimator and term)."""

    return _simulations
