"""Configuration file loader for RUV-III runs.

Provides YAML-based configuration loading on top of the packaged defaults
(``ruv_config.yaml``) and a type-checked configuration dataclass.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from scruv.core.exceptions import ConfigurationError, ScruvValueError
from scruv.ruv.svd import get_svd_backend

if TYPE_CHECKING:
    from scruv.ruv.svd import SVDBackend

# Default paths
DEFAULT_CONFIG_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "ruv_config.yaml"

_SVD_METHODS = ("exact", "truncated", "randomized")
_COMBINE_METHODS = ("harmonic", "weighted")
_ZERO_VARIANCE = ("raise", "skip")


@dataclass(slots=True)
class RuvConfig:
    """Tuning knobs of :func:`~scruv.ruv.sc_ruviii`.

    Attributes
    ----------
    k : list[int]
        Candidate numbers of unwanted factors.
    svd_method : str
        ``"exact"``, ``"truncated"`` or ``"randomized"``.
    svd_k : int
        Rank bound of the approximate SVD backends.
    svd_seed : int
        Seed of the approximate SVD backends.
    n_pcs : int
        Principal components used for silhouette scoring.
    combine : str
        ``"harmonic"`` or ``"weighted"``.
    batch_weight : float
        Weight of cell-type cohesion when ``combine="weighted"``.
    n_jobs : int
        Worker threads evaluating candidates.
    block_size : int | None
        Rows per block; None processes the matrix in one block.
    return_all : bool
        Keep the corrected matrix of every candidate.
    zero_variance : str
        ``"raise"`` or ``"skip"``.
    silhouette_sample_size : int | None
        Subsample size for silhouette computation.
    """

    k: list[int] = field(default_factory=lambda: [5, 10, 15, 20])
    svd_method: str = "exact"
    svd_k: int = 50
    svd_seed: int = 0
    n_pcs: int = 10
    combine: str = "harmonic"
    batch_weight: float = 0.5
    n_jobs: int = 1
    block_size: int | None = None
    return_all: bool = True
    zero_variance: str = "raise"
    silhouette_sample_size: int | None = None

    def validate(self) -> None:
        """Check value ranges; raises :class:`ScruvValueError`."""
        if not self.k or any(isinstance(v, bool) or not isinstance(v, int) or v < 0 for v in self.k):
            raise ScruvValueError(f"k must be non-negative integers, got {self.k!r}", parameter="k", value=self.k)
        choices = {
            "svd_method": _SVD_METHODS,
            "combine": _COMBINE_METHODS,
            "zero_variance": _ZERO_VARIANCE,
        }
        for name, allowed in choices.items():
            value = getattr(self, name)
            if value not in allowed:
                raise ScruvValueError(f"{name} must be one of {allowed}, got {value!r}", parameter=name, value=value)
        for name in ("svd_k", "n_pcs", "n_jobs"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ScruvValueError(f"{name} must be a positive integer, got {value!r}", parameter=name, value=value)
        for name in ("block_size", "silhouette_sample_size"):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, int) or value < 1):
                raise ScruvValueError(f"{name} must be None or a positive integer, got {value!r}", parameter=name, value=value)
        if not 0.0 <= self.batch_weight <= 1.0:
            raise ScruvValueError(
                f"batch_weight must be in [0, 1], got {self.batch_weight}",
                parameter="batch_weight",
                value=self.batch_weight,
            )

    def svd_backend(self) -> SVDBackend:
        """Build the configured SVD backend."""
        return get_svd_backend(self.svd_method, rank=self.svd_k, seed=self.svd_seed)

    def to_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``sc_ruviii`` / ``integrate_ruviii``."""
        return {
            "k": list(self.k),
            "svd_backend": self.svd_backend(),
            "n_pcs": self.n_pcs,
            "combine": self.combine,
            "batch_weight": self.batch_weight,
            "n_jobs": self.n_jobs,
            "block_size": self.block_size,
            "return_all": self.return_all,
            "zero_variance": self.zero_variance,
            "silhouette_sample_size": self.silhouette_sample_size,
        }


def _read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML mapping; an empty file gives an empty dict."""
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML config: {e}",
            config_path=path,
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read config file: {e}",
            config_path=path,
        ) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError("Config file must hold a mapping at top level", config_path=path)
    return data


def _build_config(data: dict[str, Any], path: Path | None) -> RuvConfig:
    known = {f.name for f in fields(RuvConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {unknown}", config_path=path)

    data = dict(data)
    if "k" in data and isinstance(data["k"], int) and not isinstance(data["k"], bool):
        data["k"] = [data["k"]]
    try:
        config = RuvConfig(**data)
        config.validate()
    except (ScruvValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid configuration: {e}", config_path=path) from e
    return config


def load_config(config_path: str | Path | None = None) -> RuvConfig:
    """Load RUV-III settings from YAML.

    The packaged defaults are read first and the user file, if given,
    overrides them key by key.

    Parameters
    ----------
    config_path : str | Path | None
        User configuration file. None returns the defaults.

    Returns
    -------
    RuvConfig
        Loaded configuration.

    Raises
    ------
    ConfigurationError
        If the file is missing or unreadable, is not valid YAML, holds
        unknown keys or invalid values.
    """
    data = _read_yaml(DEFAULT_CONFIG_PATH)
    path = None
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}", config_path=path)
        data.update(_read_yaml(path))
    return _build_config(data, path)


def get_default_config() -> RuvConfig:
    """Packaged default configuration."""
    return load_config()


def save_config(config: RuvConfig, config_path: str | Path) -> None:
    """Save configuration to YAML file.

    Parameters
    ----------
    config : RuvConfig
        Configuration to save.
    config_path : str | Path
        Path where configuration should be saved.

    Raises
    ------
    ConfigurationError
        If file cannot be written.
    """
    path = Path(config_path)

    # Ensure parent directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(asdict(config), f, default_flow_style=False, sort_keys=False)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Failed to save config file: {e}",
            config_path=path,
        ) from e
