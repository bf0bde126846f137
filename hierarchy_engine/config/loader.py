"""
Layered configuration loading.

Priority (highest first):
1. explicit overrides passed by the caller
2. environment variables HIERARCHY_ENGINE_<FIELD> (e.g. HIERARCHY_ENGINE_CHUNK_SIZE)
3. YAML file: the `resolution_engine:` section, or the top level if absent
4. EngineConfig defaults

The loaded config is validated before it is returned, so callers get a
ConfigurationError instead of a half-valid object.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from hierarchy_engine.errors import ConfigurationError
from hierarchy_engine.models.config import EngineConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "HIERARCHY_ENGINE_"
SECTION = "resolution_engine"


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            message=f"Config file {path} is not valid YAML: {exc}",
            details={"path": str(path)},
        ) from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(
            message=f"Config file {path} must contain a mapping",
            details={"path": str(path)},
        )
    section = raw.get(SECTION, raw)
    if not isinstance(section, dict):
        raise ConfigurationError(
            message=f"Section '{SECTION}' in {path} must be a mapping",
            details={"path": str(path)},
        )
    return section


def _from_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in EngineConfig.model_fields:
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is None:
            continue
        if name == "excluded_groups":
            values[name] = [g.strip() for g in raw.split(",") if g.strip()]
        else:
            values[name] = raw
    return values


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EngineConfig:
    """Merge all configuration sources into a validated EngineConfig."""
    merged: Dict[str, Any] = {}

    if path:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(
                message=f"Config file not found: {config_path}",
                details={"path": str(config_path)},
            )
        merged.update(_read_yaml(config_path))
        logger.info("Loaded engine configuration from %s", config_path)

    merged.update(_from_environment(os.environ if environ is None else environ))
    merged.update(overrides or {})

    unknown = sorted(set(merged) - set(EngineConfig.model_fields))
    if unknown:
        raise ConfigurationError(
            message=f"Unknown configuration keys: {', '.join(unknown)}",
            details={"unknown": unknown},
        )

    try:
        config = EngineConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(
            message="Configuration values could not be parsed",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc
    return config.ensure_valid()
