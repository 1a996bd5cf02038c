from __future__ import annotations

import math
import os
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Mapping, Protocol, TypeVar

from threadpoolctl import threadpool_limits

__all__ = [
    "EXEC_MODES",
    "ExecModeSettings",
    "MapExecutor",
    "SequentialExecutor",
    "effective_worker_count",
    "exec_mode_metadata",
    "make_executor",
    "resolve_exec_mode",
    "thread_caps_snapshot",
]

THREAD_ENV_VARS = (
    "OMP_NUM_THREADS",
    "OPENBLAS_NUM_THREADS",
    "MKL_NUM_THREADS",
    "NUMEXPR_NUM_THREADS",
    "BLIS_NUM_THREADS",
    "VECLIB_MAXIMUM_THREADS",
)

EXEC_MODES = ("sequential", "thread", "process")

T = TypeVar("T")
R = TypeVar("R")

_THREADPOOL_CONTROLLER = None


class MapExecutor(Protocol):
    """Anything that maps a function over independent units of work.

    ``concurrent.futures`` executors satisfy this interface.
    """

    def map(self, fn: Callable[..., Any], *iterables: Iterable[Any], chunksize: int = 1) -> Iterator[Any]: ...


class SequentialExecutor:
    """In-process executor running each unit of work in submission order."""

    def map(self, fn: Callable[[T], R], *iterables: Iterable[T], chunksize: int = 1) -> Iterator[R]:
        return map(fn, *iterables)

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        return None

    def __enter__(self) -> "SequentialExecutor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


@dataclass(frozen=True)
class ExecModeSettings:
    """Resolved execution-mode settings for the bootstrap loop."""

    mode: str
    workers: int
    blas_threads: int


def _limit_worker_threads(max_threads: int) -> None:
    global _THREADPOOL_CONTROLLER
    capped = max(1, int(max_threads))
    for key in THREAD_ENV_VARS:
        os.environ[key] = str(capped)
    _THREADPOOL_CONTROLLER = threadpool_limits(limits=capped)


def effective_worker_count(
    mode: str,
    requested_workers: int | None,
    cpu_count: int | None = None,
) -> int:
    """Return the worker count for ``mode``, defaulting to the CPU count for pools."""

    if mode == "sequential":
        return 1
    if requested_workers is not None and requested_workers > 0:
        return int(requested_workers)
    cpus = cpu_count if cpu_count is not None else os.cpu_count()
    if cpus is None or cpus <= 0:
        cpus = 1
    if mode == "thread":
        return max(1, math.floor(cpus / 2))
    return max(1, int(cpus))


def resolve_exec_mode(
    mode: str | None,
    *,
    workers: int | None = None,
    cpu_count: int | None = None,
) -> ExecModeSettings:
    """Normalise an execution mode name and resolve its worker count."""

    normalized = (mode or "sequential").strip().lower()
    if normalized not in EXEC_MODES:
        raise ValueError(f"Unsupported exec mode {mode!r}; expected one of {EXEC_MODES}.")
    count = effective_worker_count(normalized, workers, cpu_count)
    return ExecModeSettings(mode=normalized, workers=count, blas_threads=1)


def make_executor(settings: ExecModeSettings) -> MapExecutor:
    """Build the executor described by ``settings``; pools must be shut down by the caller."""

    if settings.mode == "sequential" or settings.workers <= 1:
        return SequentialExecutor()
    if settings.mode == "thread":
        return ThreadPoolExecutor(max_workers=settings.workers)
    return ProcessPoolExecutor(
        max_workers=settings.workers,
        initializer=_limit_worker_threads,
        initargs=(settings.blas_threads,),
    )


def thread_caps_snapshot() -> dict[str, str]:
    """Return the current BLAS/OpenMP thread caps for logging."""

    return {var: os.environ.get(var, "") for var in THREAD_ENV_VARS if os.environ.get(var) is not None}


def exec_mode_metadata(settings: ExecModeSettings) -> Mapping[str, object]:
    """Execution-mode metadata for run.json payloads."""

    return {
        "exec_mode": settings.mode,
        "workers": settings.workers,
        "blas_threads": settings.blas_threads,
        "thread_caps": thread_caps_snapshot(),
    }
