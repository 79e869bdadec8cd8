"""scruv: RUV-III batch correction for single-cell expression data.

Removes unwanted variation (batch effects) with negative-control genes and
replicate structure, choosing the number of unwanted factors by silhouette
width. Works on in-memory, sparse and out-of-core matrices.

Quick Start:
    >>> from scruv import sc_ruviii, ruv_simulate
    >>> sim = ruv_simulate(m=200, n=1000, nc=100, random_state=0)
    >>> res = sc_ruviii(sim.log_counts, sim.M, sim.ctl, k=[5, 10, 15, 20], batch=sim.batch)
    >>> res.optimal_k

Version: v0.1.0
"""

from __future__ import annotations

__version__ = "0.1.0"

from scruv.config import RuvConfig, load_config
from scruv.core import (
    Assay,
    AssayNotFoundError,
    ConfigurationError,
    DegeneracyError,
    DimensionError,
    LayerNotFoundError,
    NumericalError,
    ProvenanceLog,
    ScContainer,
    ScMatrix,
    ScruvError,
    ScruvValueError,
    SelectionError,
    SVDBackendError,
    ValidationError,
)
from scruv.datasets import RuvSimulation, ruv_simulate
from scruv.integration import integrate_ruviii
from scruv.ruv import (
    ExactSVD,
    FactorModel,
    RandomizedSVD,
    RuvFit,
    RuvResult,
    SelectionEvent,
    StandardizeResult,
    TruncatedSVD,
    fast_ruviii,
    fit_factor_model,
    get_adjusted_matrix,
    replicate_matrix,
    sc_ruviii,
    select_ruv_k,
    standardize,
    unstandardize,
)

__all__ = [
    "__version__",
    # Core
    "ScContainer",
    "Assay",
    "ScMatrix",
    "ProvenanceLog",
    # RUV-III
    "sc_ruviii",
    "select_ruv_k",
    "fast_ruviii",
    "fit_factor_model",
    "get_adjusted_matrix",
    "standardize",
    "unstandardize",
    "replicate_matrix",
    "FactorModel",
    "RuvFit",
    "RuvResult",
    "SelectionEvent",
    "StandardizeResult",
    "ExactSVD",
    "TruncatedSVD",
    "RandomizedSVD",
    # Integration
    "integrate_ruviii",
    # Configuration
    "RuvConfig",
    "load_config",
    # Datasets
    "ruv_simulate",
    "RuvSimulation",
    # Exceptions
    "ScruvError",
    "ValidationError",
    "ScruvValueError",
    "DimensionError",
    "DegeneracyError",
    "NumericalError",
    "SVDBackendError",
    "SelectionError",
    "AssayNotFoundError",
    "LayerNotFoundError",
    "ConfigurationError",
]
