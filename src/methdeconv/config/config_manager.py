#!/usr/bin/env python
# coding: utf-8

"""
Option schemas and configuration files for marker discovery and deconvolution.

Provides validated pydantic models for the discovery thresholds and the
estimation solver, plus loading/saving in JSON, YAML, TOML and Python-literal
formats with deep-merged overrides and atomic writes.
"""

import json
import os
import tempfile
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from methdeconv.exceptions import ConfigurationError
from methdeconv.utils.logger import logger

try:
    import yaml

    YAML_AVAILABLE = True
except ImportError:
    yaml = None
    YAML_AVAILABLE = False
    logger.debug("PyYAML not installed. Install with: pip install pyyaml")

try:
    import toml

    TOML_AVAILABLE = True
except ImportError:
    toml = None
    TOML_AVAILABLE = False
    logger.debug("toml not installed. Install with: pip install toml")


# Pydantic Schemas


class DiscoveryConfig(BaseModel):
    """
    Thresholds and switches for cell type-specific marker discovery.

    Defaults reproduce the reference whole-blood run (six cell types,
    one-vs-rest contrasts, regions only).
    """

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    include_cpgs: bool = False
    include_dmrs: bool = True
    num_cpgs: int = Field(50, ge=1, description="Per-contrast, per-direction site cap")
    num_regions: int = Field(
        50, ge=1, description="Per-contrast, per-direction region cap"
    )
    bumphunter_beta_cutoff: float = Field(
        0.2, gt=0.0, le=1.0, description="Coefficient magnitude defining a bump"
    )
    dmr_up_cutoff: float = Field(0.5, gt=0.0)
    dmr_down_cutoff: float = Field(0.4, gt=0.0)
    dmr_pval_cutoff: float = Field(1e-11, gt=0.0, le=1.0)
    cpg_pval_cutoff: float = Field(1e-08, gt=0.0, le=1.0)
    cpg_up_dm_cutoff: float = Field(0.0, ge=-1.0, le=1.0)
    cpg_down_dm_cutoff: float = Field(0.0, ge=-1.0, le=1.0)
    pairwise_comparison: bool = False
    max_gap: int = Field(300, ge=0, description="Maximum bp gap inside a cluster")
    smooth: bool = False
    smooth_window: int = Field(5, ge=1)
    smooth_min_sites: int = Field(7, ge=1)
    equal_var: bool = False
    verbose: bool = True

    @model_validator(mode="after")
    def check_requested_markers(self) -> "DiscoveryConfig":
        if not (self.include_cpgs or self.include_dmrs):
            raise ValueError("at least one of include_cpgs / include_dmrs must be True")
        if self.smooth_window % 2 == 0:
            raise ValueError("smooth_window must be odd (centred window)")
        return self


class DeconvolutionConfig(BaseModel):
    """Solver settings for the per-sample mixture estimate."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    n_jobs: int = 1
    tol: float = Field(1e-10, gt=0.0, lt=1e-3)
    max_iter: int = Field(1000, ge=1)

    @model_validator(mode="after")
    def check_n_jobs(self) -> "DeconvolutionConfig":
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be a non-zero integer (use -1 for all cores)")
        return self


class MethDeconvConfigModel(BaseModel):
    """Complete configuration file model."""

    model_config = ConfigDict(extra="forbid")

    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    deconvolution: DeconvolutionConfig = Field(default_factory=DeconvolutionConfig)


# Utility Functions


def _atomic_write(path: Union[str, Path], content: Union[str, bytes]) -> None:
    """
    Write content to a file atomically using a temporary file.

    Parameters
    ----------
    path : str or Path
        Destination file path.
    content : str or bytes
        Content to write.

    Raises
    ------
    OSError
        If the write or the final replace fails.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    content_bytes = content.encode("utf-8") if isinstance(content, str) else content

    tmp_file = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb", dir=str(path.parent), delete=False
        ) as tmp:
            tmp_file = Path(tmp.name)
            tmp.write(content_bytes)
            tmp.flush()
            os.fsync(tmp.fileno())

        os.replace(str(tmp_file), str(path))
        logger.debug(f"Successfully wrote file: {path}")
    except OSError as e:
        logger.error(f"Failed to write file {path}: {e}")
        if tmp_file is not None and tmp_file.exists():
            tmp_file.unlink()
        raise


def _read_python_literal(path: Path) -> Dict[str, Any]:
    """
    Parse a Python literal dictionary from a file.

    Raises
    ------
    ValueError
        If the file doesn't contain a valid dictionary.
    """
    import ast

    try:
        obj = ast.literal_eval(path.read_text(encoding="utf-8"))
    except (SyntaxError, ValueError) as e:
        raise ValueError(f"Failed to parse Python literal from {path}: {e}")

    if not isinstance(obj, dict):
        raise ValueError(f"File {path} must contain a dictionary at top level")

    return obj


def _deep_update(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively update ``base`` (in place) with values from ``updates``.
    """
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _load_by_format(path: Path) -> Dict[str, Any]:
    ext = path.suffix.lower()

    if ext == ".json":
        return json.loads(path.read_text(encoding="utf-8"))
    elif ext in (".yml", ".yaml"):
        if not YAML_AVAILABLE:
            raise RuntimeError("PyYAML required to load YAML files")
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    elif ext == ".toml":
        if not TOML_AVAILABLE:
            raise RuntimeError("toml required to load TOML files")
        return toml.loads(path.read_text(encoding="utf-8"))
    elif ext in (".py", ".txt"):
        return _read_python_literal(path)
    else:
        raise ValueError(f"Unsupported file extension: {ext}")


# Public API


def validate_discovery_config(
    config: Optional[Union[DiscoveryConfig, Dict[str, Any]]] = None, **overrides
) -> DiscoveryConfig:
    """
    Build a validated :class:`DiscoveryConfig` from a model, a mapping, or defaults.

    Parameters
    ----------
    config : DiscoveryConfig or dict, optional
        Base options. ``None`` uses the defaults.
    **overrides
        Individual options replacing those of ``config``.

    Returns
    -------
    DiscoveryConfig
        A new, validated instance (the input is never mutated).

    Raises
    ------
    ConfigurationError
        If any option is invalid or the combination is contradictory.
    """
    if config is None:
        raw: Dict[str, Any] = {}
    elif isinstance(config, DiscoveryConfig):
        raw = config.model_dump()
    elif isinstance(config, dict):
        raw = deepcopy(config)
    else:
        raise ConfigurationError(
            f"config must be a DiscoveryConfig or dict, got {type(config).__name__}"
        )
    raw.update(overrides)

    try:
        return DiscoveryConfig(**raw)
    except ValidationError as e:
        logger.error(f"Discovery configuration validation failed: {e}")
        raise ConfigurationError(f"Invalid discovery configuration: {e}") from e


def load_config(
    path: Union[str, Path], overrides: Optional[Dict[str, Any]] = None
) -> MethDeconvConfigModel:
    """
    Load a configuration file with ``discovery`` and/or ``deconvolution`` sections.

    Supported formats: JSON, YAML, TOML and Python literal (``.py`` / ``.txt``).

    Parameters
    ----------
    path : str or Path
        Path to the configuration file.
    overrides : dict, optional
        Nested mapping deep-merged over the file contents before validation.

    Returns
    -------
    MethDeconvConfigModel
        Validated configuration.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the format is unsupported or the top level is not a mapping.
    ConfigurationError
        If the merged configuration fails validation.
    """
    path = Path(path).resolve()
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    logger.info(f"Loading configuration from {path}")
    loaded = _load_by_format(path)
    if not isinstance(loaded, dict):
        raise ValueError(f"Configuration must be a dictionary, got {type(loaded)}")

    merged = _deep_update(deepcopy(loaded), overrides or {})
    try:
        return MethDeconvConfigModel(**merged)
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


def save_config(
    config: Union[MethDeconvConfigModel, DiscoveryConfig],
    path: Union[str, Path],
    fmt: Optional[str] = None,
) -> None:
    """
    Save a configuration to JSON, YAML or TOML (inferred from the extension).

    A bare :class:`DiscoveryConfig` is written as the ``discovery`` section.

    Raises
    ------
    ValueError
        If the format is unsupported.
    """
    if isinstance(config, DiscoveryConfig):
        config = MethDeconvConfigModel(discovery=config)

    path = Path(path)
    fmt = (fmt or path.suffix.lstrip(".")).lower()
    data = config.model_dump()

    if fmt in ("json", ""):
        content = json.dumps(data, indent=2)
    elif fmt in ("yml", "yaml"):
        if not YAML_AVAILABLE:
            raise RuntimeError("PyYAML required to write YAML")
        content = yaml.safe_dump(data, sort_keys=False)
    elif fmt == "toml":
        if not TOML_AVAILABLE:
            raise RuntimeError("toml required to write TOML")
        content = toml.dumps(data)
    else:
        raise ValueError(f"Unsupported format: {fmt}")

    _atomic_write(path, content)
    logger.info(f"Configuration saved to {path}")
