from __future__ import annotations

import hashlib
import json
import subprocess
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

__all__ = ["RunMeta", "code_signature", "write_run_meta"]


@dataclass
class RunMeta:
    """Lightweight metadata summary for a single diagnosis run.

    Fields are intentionally flat and JSON-serialisable.
    """

    git_sha: str
    code_signature: str | None

    # Diagnosis shape
    bootstrap_sims: int
    group_by_set: list[str]
    diagnosand_names: list[str]
    designs: list[str]
    n_simulation_rows: int | None

    # Input provenance
    input_sha256: dict[str, str]

    # Execution
    exec_mode: Mapping[str, Any] | None

    # Persist the resolved configuration as captured by the runner (optional)
    config_snapshot: Mapping[str, Any] | None


_DEFAULT_SIGNATURE_GLOBS = [
    "src/diagnosis/*.py",
    "src/meta/runtime.py",
]


def code_signature(targets: Iterable[str | Path] | None = None) -> str:
    """Compute a SHA-256 signature over the diagnosis code."""

    root = Path(__file__).resolve().parents[2]
    paths: list[Path] = []
    if targets is None:
        for pattern in _DEFAULT_SIGNATURE_GLOBS:
            paths.extend(sorted(root.glob(pattern)))
    else:
        for item in targets:
            path = Path(item)
            paths.append(path if path.is_absolute() else (root / path))

    seen: set[Path] = set()
    ordered: list[Path] = []
    for path in paths:
        resolved = path.resolve()
        if resolved in seen:
            continue
        if resolved.exists():
            seen.add(resolved)
            ordered.append(resolved)

    h = hashlib.sha256()
    for path in ordered:
        h.update(path.read_bytes())
    marker = "::".join(p.name for p in ordered).encode("utf-8")
    h.update(marker)
    return h.hexdigest()


def _git_sha() -> str:
    """Return the git SHA for the current repository, or 'unknown'."""

    try:
        out = subprocess.check_output(["git", "rev-parse", "HEAD"], text=True, stderr=subprocess.DEVNULL)
        return out.strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def _sha256_of_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def write_run_meta(
    output_dir: str | Path,
    *,
    summary: Mapping[str, Any],
    inputs: Iterable[str | Path] = (),
    exec_mode: Mapping[str, Any] | None = None,
    config: Mapping[str, Any] | None = None,
) -> Path:
    """Create a ``run.json`` artifact in ``output_dir``.

    Parameters
    ----------
    output_dir
        Directory holding the diagnosis tables.
    summary
        Output of :meth:`diagnosis.diagnose.Diagnosis.to_json`.
    inputs
        Input files whose SHA-256 digests are recorded.
    exec_mode
        Execution-mode metadata from :func:`meta.runtime.exec_mode_metadata`.
    config
        Optional resolved configuration mapping captured by the runner.
    """

    out_path = Path(output_dir)
    out_path.mkdir(parents=True, exist_ok=True)

    input_hashes: dict[str, str] = {}
    for item in inputs:
        path = Path(item)
        if path.exists():
            input_hashes[path.name] = _sha256_of_file(path)

    rows = summary.get("n_simulation_rows")
    meta = RunMeta(
        git_sha=_git_sha(),
        code_signature=code_signature(),
        bootstrap_sims=int(summary.get("bootstrap_sims", 0)),
        group_by_set=[str(col) for col in summary.get("group_by_set", [])],
        diagnosand_names=[str(name) for name in summary.get("diagnosand_names", [])],
        designs=[str(label) for label in summary.get("designs", [])],
        n_simulation_rows=int(rows) if rows is not None else None,
        input_sha256=input_hashes,
        exec_mode=dict(exec_mode) if exec_mode is not None else None,
        config_snapshot=dict(config) if config is not None else None,
    )

    meta_path = out_path / "run.json"
    with meta_path.open("w", encoding="utf-8") as fh:
        json.dump(asdict(meta), fh, indent=2, default=str)
    return meta_path
