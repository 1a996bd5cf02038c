from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

import pandas as pd

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from diagnosis import DiagnosisSettings, Diagnosis, diagnose_design, write_diagnosis
from experiments.diagnose.config import DiagnoseRunConfig, resolve_diagnose_config
from meta import runtime
from meta.run_meta import write_run_meta

_LOGGER = logging.getLogger(__name__)


def load_simulations(simulations_csv: Path, parameters_csv: Path | None = None) -> pd.DataFrame:
    """Read a simulations table, attaching design parameters when supplied."""

    if not simulations_csv.exists():
        raise FileNotFoundError(f"Simulations file {simulations_csv} does not exist.")
    simulations = pd.read_csv(simulations_csv)
    if parameters_csv is not None:
        if not parameters_csv.exists():
            raise FileNotFoundError(f"Parameters file {parameters_csv} does not exist.")
        simulations.attrs["parameters"] = pd.read_csv(parameters_csv)
    return simulations


def parse_args(argv: Sequence[str] | None = None) -> tuple[DiagnoseRunConfig, dict[str, Any]]:
    parser = argparse.ArgumentParser(description="Diagnose designs from a simulations CSV.")
    parser.add_argument("--simulations", dest="simulations_csv", type=Path, default=None, help="Simulations CSV.")
    parser.add_argument(
        "--parameters",
        dest="parameters_csv",
        type=Path,
        default=None,
        help="Optional design parameters CSV keyed by design_label.",
    )
    parser.add_argument("--out", type=Path, default=None, help="Output directory.")
    parser.add_argument(
        "--bootstrap-sims",
        type=int,
        default=None,
        help="Bootstrap replicates for diagnosand standard errors (0 disables).",
    )
    parser.add_argument(
        "--group-by",
        dest="add_grouping_variables",
        nargs="+",
        default=None,
        help="Extra grouping columns appended to the default grouping key.",
    )
    parser.add_argument("--alpha", type=float, default=None, help="Significance level for power and type-S rate.")
    parser.add_argument(
        "--exec-mode",
        type=str,
        choices=list(runtime.EXEC_MODES),
        default=None,
        help="Executor used for bootstrap replicates (default: sequential).",
    )
    parser.add_argument("--workers", type=int, default=None, help="Worker count for thread/process modes.")
    parser.add_argument("--seed", type=int, default=None, help="Bootstrap random seed.")
    parser.add_argument("--config", type=Path, default=None, help="YAML config layered under CLI flags.")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (default: INFO).")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    payload = vars(args).copy()
    payload.pop("log_level", None)
    result = resolve_diagnose_config(payload)
    return result.config, result.resolved


def run_diagnosis(config: DiagnoseRunConfig, *, resolved_config: dict[str, Any] | None = None) -> Diagnosis:
    simulations = load_simulations(config.simulations_csv, config.parameters_csv)
    settings = DiagnosisSettings(
        bootstrap_sims=config.bootstrap_sims,
        add_grouping_variables=config.add_grouping_variables,
        alpha=config.alpha,
        exec_mode=config.exec_mode,
        workers=config.workers,
        seed=config.seed,
    )
    exec_settings = runtime.resolve_exec_mode(config.exec_mode, workers=config.workers)

    diagnosis = diagnose_design(simulations, settings=settings)

    write_diagnosis(diagnosis, config.out_dir)
    inputs = [config.simulations_csv]
    if config.parameters_csv is not None:
        inputs.append(config.parameters_csv)
    write_run_meta(
        config.out_dir,
        summary=diagnosis.to_json(),
        inputs=inputs,
        exec_mode=runtime.exec_mode_metadata(exec_settings),
        config=resolved_config,
    )
    _LOGGER.info("wrote diagnosis to %s", config.out_dir)
    return diagnosis


def main(argv: Sequence[str] | None = None) -> None:
    config, resolved = parse_args(argv)
    _LOGGER.debug("resolved config: %s", json.dumps(resolved, default=str, sort_keys=True))
    run_diagnosis(config, resolved_config=resolved)


if __name__ == "__main__":  # pragma: no cover
    main()
