"""scruv exception hierarchy.

Every error raised by the package derives from :class:`ScruvError`. The
subclasses follow the failure classes of the RUV-III pipeline: bad input
shapes, degenerate designs, numerical breakdown and SVD backend failures.
"""

from __future__ import annotations

from typing import Any


class ScruvError(Exception):
    """Base class for exceptions in scruv."""

    pass


class ValidationError(ScruvError):
    """Raised when an argument has the wrong type or an unusable value."""

    pass


class ScruvValueError(ValidationError):
    """Raised when a parameter value is outside its accepted range.

    Parameters
    ----------
    message : str
        Error message.
    parameter : str, optional
        Name of the offending parameter.
    value : Any, optional
        The rejected value.
    """

    def __init__(self, message: str, parameter: str | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.parameter = parameter
        self.value = value


class DimensionError(ValidationError):
    """Raised when array dimensions disagree (Y vs. M, batch, ctl)."""

    def __init__(
        self,
        message: str,
        expected: tuple[int, ...] | int | None = None,
        actual: tuple[int, ...] | int | None = None,
    ) -> None:
        if expected is not None and actual is not None:
            message = f"{message} (expected {expected}, got {actual})"
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class DegeneracyError(ScruvError):
    """Raised when the design cannot support the requested estimate.

    Examples are a single batch level, fewer cells than batches, a
    replicate row without membership, zero-variance genes, or asking for
    at least as many factors as there are control genes.
    """

    pass


class NumericalError(ScruvError):
    """Raised when non-finite values show up in an intermediate result.

    Parameters
    ----------
    message : str
        Error message.
    stage : str
        Pipeline stage that produced the values.
    k : int, optional
        Candidate factor count being evaluated, if any.
    """

    def __init__(self, message: str, stage: str, k: int | None = None) -> None:
        context = f"[stage={stage}" + (f", k={k}]" if k is not None else "]")
        super().__init__(f"{context} {message}")
        self.stage = stage
        self.k = k


class SVDBackendError(ScruvError):
    """Raised when the SVD backend fails (e.g. ARPACK does not converge)."""

    def __init__(self, message: str, backend: str) -> None:
        super().__init__(f"{backend} SVD failed: {message}")
        self.backend = backend


class SelectionError(ScruvError):
    """Raised when factor-count selection has no usable candidate."""

    def __init__(self, message: str, failures: dict[int, str] | None = None) -> None:
        super().__init__(message)
        self.failures = failures or {}


class AssayNotFoundError(ScruvError):
    """Raised when an assay is missing from a container."""

    def __init__(self, assay_name: str) -> None:
        super().__init__(f"Assay '{assay_name}' not found.")
        self.assay_name = assay_name


class LayerNotFoundError(ScruvError):
    """Raised when a layer is missing from an assay."""

    def __init__(self, layer_name: str, assay_name: str | None = None) -> None:
        where = f" in assay '{assay_name}'" if assay_name else ""
        super().__init__(f"Layer '{layer_name}' not found{where}.")
        self.layer_name = layer_name
        self.assay_name = assay_name


class ConfigurationError(ScruvError):
    """Exception raised for configuration-related errors.

    Attributes
    ----------
    config_path : Path | str | None
        Path to the configuration file that caused the error.
    """

    def __init__(self, message: str, config_path: Any = None) -> None:
        super().__init__(message)
        self.config_path = config_path
