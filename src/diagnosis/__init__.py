"""Diagnose research designs from Monte Carlo simulations, with cluster-bootstrap standard errors."""

from .aggregate import calculate_diagnosands, calculate_sims, rbind_disjoint
from .assemble import assemble_diagnosis
from .bootstrap import BootstrapResult, bootstrap_diagnosands
from .config import DiagnosisSettings, get_diagnosis_settings, override_diagnosis_settings
from .diagnosands import (
    DEFAULT_DIAGNOSAND_NAMES,
    DefaultDiagnosands,
    DiagnosandSet,
    declare_diagnosands,
    default_diagnosands,
)
from .diagnose import (
    Diagnosis,
    diagnose_design,
    diagnose_designs,
    get_diagnosands,
    get_simulations,
    write_diagnosis,
)
from .errors import ConfigurationError, DiagnosisError, EvaluationError, ResamplingError
from .evaluate import evaluate_partition
from .partition import MISSING, Partition, partition_frame

__all__ = [
    "BootstrapResult",
    "DEFAULT_DIAGNOSAND_NAMES",
    "ConfigurationError",
    "DefaultDiagnosands",
    "DiagnosandSet",
    "Diagnosis",
    "DiagnosisError",
    "DiagnosisSettings",
    "EvaluationError",
    "MISSING",
    "Partition",
    "ResamplingError",
    "assemble_diagnosis",
    "bootstrap_diagnosands",
    "calculate_diagnosands",
    "calculate_sims",
    "declare_diagnosands",
    "default_diagnosands",
    "diagnose_design",
    "diagnose_designs",
    "evaluate_partition",
    "get_diagnosands",
    "get_diagnosis_settings",
    "get_simulations",
    "override_diagnosis_settings",
    "partition_frame",
    "rbind_disjoint",
    "write_diagnosis",
]
