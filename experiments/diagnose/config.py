from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_CONFIG_PATH = Path("configs/diagnosis.yaml")


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(
                merged[key], value  # type: ignore[arg-type]
            )
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path | None) -> dict[str, Any]:
    if path is None or not path.exists():
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _normalise_layer(payload: Mapping[str, Any]) -> dict[str, Any]:
    normalised = dict(payload)
    if "out" in normalised and "out_dir" not in normalised:
        normalised["out_dir"] = normalised.pop("out")
    if "group_by" in normalised and "add_grouping_variables" not in normalised:
        normalised["add_grouping_variables"] = normalised.pop("group_by")
    return normalised


DEFAULTS: dict[str, Any] = {
    "out_dir": "reports/diagnosis-latest",
    "parameters_csv": None,
    "bootstrap_sims": 100,
    "add_grouping_variables": [],
    "alpha": 0.05,
    "exec_mode": "sequential",
    "workers": None,
    "seed": None,
}


@dataclass(slots=True)
class DiagnoseRunConfig:
    simulations_csv: Path
    parameters_csv: Path | None
    out_dir: Path
    bootstrap_sims: int
    add_grouping_variables: tuple[str, ...]
    alpha: float
    exec_mode: str
    workers: int | None
    seed: int | None
    config_path: Path | None


@dataclass(slots=True)
class ResolveResult:
    config: DiagnoseRunConfig
    resolved: dict[str, Any]


def resolve_diagnose_config(args: Mapping[str, Any]) -> ResolveResult:
    """Layer defaults, the YAML config and CLI arguments (later layers win)."""

    config_path = args.get("config")
    config_path_obj = Path(config_path) if config_path else None

    layers: list[dict[str, Any]] = [dict(DEFAULTS)]

    yaml_data = _normalise_layer(_load_yaml(config_path_obj or DEFAULT_CONFIG_PATH))
    if yaml_data:
        layers.append(yaml_data)

    cli_data: dict[str, Any] = {}
    for key, value in args.items():
        if key == "config":
            continue
        if value is None:
            continue
        cli_data[key] = value
    cli_data = _normalise_layer(cli_data)
    if cli_data:
        layers.append(cli_data)

    merged: dict[str, Any] = {}
    for layer in layers:
        merged = _deep_merge(merged, layer)

    simulations_csv = merged.get("simulations_csv")
    if simulations_csv is None:
        raise ValueError("simulations_csv must be provided via CLI or configuration.")

    bootstrap_raw = merged.get("bootstrap_sims", DEFAULTS["bootstrap_sims"])
    if bootstrap_raw is None or bootstrap_raw is False:
        bootstrap_sims = 0
    else:
        bootstrap_sims = int(bootstrap_raw)
    if bootstrap_sims < 0:
        raise ValueError("bootstrap_sims must be non-negative.")

    grouping_raw = merged.get("add_grouping_variables") or []
    if isinstance(grouping_raw, str):
        grouping_raw = [grouping_raw]
    grouping = tuple(str(col) for col in grouping_raw)

    alpha_val = float(merged.get("alpha", DEFAULTS["alpha"]))
    if not (0.0 < alpha_val < 1.0):
        raise ValueError("alpha must lie in (0, 1).")

    parameters_csv = merged.get("parameters_csv")
    out_dir = merged.get("out_dir")

    config = DiagnoseRunConfig(
        simulations_csv=Path(simulations_csv),
        parameters_csv=Path(parameters_csv) if parameters_csv else None,
        out_dir=Path(out_dir) if out_dir else Path(DEFAULTS["out_dir"]),
        bootstrap_sims=bootstrap_sims,
        add_grouping_variables=grouping,
        alpha=alpha_val,
        exec_mode=str(merged.get("exec_mode") or DEFAULTS["exec_mode"]).strip().lower(),
        workers=int(merged["workers"]) if merged.get("workers") is not None else None,
        seed=int(merged["seed"]) if merged.get("seed") is not None else None,
        config_path=config_path_obj if (config_path_obj and config_path_obj.exists()) else (
            DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None
        ),
    )

    resolved = dict(merged)
    resolved.update(
        {
            "simulations_csv": str(config.simulations_csv),
            "parameters_csv": str(config.parameters_csv) if config.parameters_csv else None,
            "out_dir": str(config.out_dir),
            "bootstrap_sims": config.bootstrap_sims,
            "add_grouping_variables": list(config.add_grouping_variables),
            "alpha": config.alpha,
            "exec_mode": config.exec_mode,
            "workers": config.workers,
            "seed": config.seed,
            "config_path": str(config.config_path) if config.config_path else None,
        }
    )
    return ResolveResult(config=config, resolved=resolved)
