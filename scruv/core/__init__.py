from .exceptions import (
    AssayNotFoundError,
    ConfigurationError,
    DegeneracyError,
    DimensionError,
    LayerNotFoundError,
    NumericalError,
    ScruvError,
    ScruvValueError,
    SelectionError,
    SVDBackendError,
    ValidationError,
)
from .structures import Assay, ProvenanceLog, ScContainer, ScMatrix

__all__ = [
    "ScContainer",
    "Assay",
    "ScMatrix",
    "ProvenanceLog",
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
