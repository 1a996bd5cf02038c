"""
Configuration helpers for diagnosis defaults.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from meta.runtime import EXEC_MODES

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DiagnosisSettings",
    "get_diagnosis_settings",
    "load_diagnosis_settings",
    "override_diagnosis_settings",
]

DEFAULT_CONFIG_PATH = Path("configs/diagnosis.yaml")


@dataclass(frozen=True)
class DiagnosisSettings:
    """Resolved defaults used by :func:`diagnosis.diagnose.diagnose_design`."""

    bootstrap_sims: int = 100
    add_grouping_variables: tuple[str, ...] = ()
    alpha: float = 0.05
    exec_mode: str = "sequential"
    workers: int | None = None
    seed: int | None = None

    def with_overrides(self, **kwargs: object) -> "DiagnosisSettings":
        data = self.__dict__ | kwargs
        return DiagnosisSettings(**data)


_SETTINGS_CACHE: DiagnosisSettings | None = None


def get_diagnosis_settings(force_reload: bool = False) -> DiagnosisSettings:
    """Return cached diagnosis settings, reloading from disk when requested."""

    global _SETTINGS_CACHE
    if force_reload or _SETTINGS_CACHE is None:
        _SETTINGS_CACHE = load_diagnosis_settings()
    return _SETTINGS_CACHE


def override_diagnosis_settings(settings: DiagnosisSettings | None) -> None:
    """Override the cached diagnosis settings (primarily for tests)."""

    global _SETTINGS_CACHE
    _SETTINGS_CACHE = settings


def load_diagnosis_settings(*, config_path: Path | None = None) -> DiagnosisSettings:
    """
    Load diagnosis defaults from YAML, falling back to built-in values.
    """

    defaults = DiagnosisSettings()
    config_data = _read_yaml_dict(config_path or DEFAULT_CONFIG_PATH)

    merged = defaults.__dict__ | {
        key: config_data.get(key, getattr(defaults, key))
        for key in defaults.__dict__.keys()
    }

    # Normalise types
    merged["bootstrap_sims"] = _bootstrap_count(merged["bootstrap_sims"])
    grouping = merged["add_grouping_variables"] or ()
    if isinstance(grouping, str):
        grouping = (grouping,)
    merged["add_grouping_variables"] = tuple(str(col) for col in grouping)
    merged["alpha"] = float(merged["alpha"])
    if not (0.0 < merged["alpha"] < 1.0):
        raise ValueError("alpha must lie in (0, 1).")
    merged["exec_mode"] = str(merged["exec_mode"]).strip().lower()
    if merged["exec_mode"] not in EXEC_MODES:
        raise ValueError(f"exec_mode must be one of {EXEC_MODES}, got {merged['exec_mode']!r}.")
    if merged.get("workers") is not None:
        merged["workers"] = int(merged["workers"])
    if merged.get("seed") is not None:
        merged["seed"] = int(merged["seed"])

    return DiagnosisSettings(**merged)


def _bootstrap_count(value: object) -> int:
    if value is None or value is False:
        return 0
    count = int(value)  # type: ignore[arg-type]
    return max(0, count)


def _read_yaml_dict(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Diagnosis config at {path} must be a mapping.")
    return loaded
