"""
Application Configuration Persistence
======================================

Loads and saves the ``PhotomarkConfig`` used by the CLI and by embedding
applications.

Key Responsibilities:
---------------------
- File-System Persistence: Stores config in a hidden JSON file in the
  user's home directory (``~/.photomark_config.json``).
- Environment Overrides: ``PHOTOMARK_*`` variables (and ``GEMINI_API_KEY``)
  win over the file, so keys never need to be written to disk.
- Security Logging: Records save/load events through ``log_config`` with
  sensitive fields redacted. The API key is never saved.

Author: Photomark Project
"""

import json
import logging
import os
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from photomark.core.config import (
    API_KEY_ENV_VARS,
    AnnotationConfig,
    CircuitBreakerConfig,
    ImageLimits,
    PhotomarkConfig,
    RateLimitConfig,
    RetryPolicy,
    ServiceConfig,
)
from photomark.core.errors import ConfigurationError
from photomark.utils.logger import log_config

CONFIG_PATH = Path.home() / ".photomark_config.json"

logger = logging.getLogger(__name__)

_SECTIONS = {
    "service": ServiceConfig,
    "retry": RetryPolicy,
    "rate_limit": RateLimitConfig,
    "circuit_breaker": CircuitBreakerConfig,
    "annotation": AnnotationConfig,
    "images": ImageLimits,
}

# PHOTOMARK_<NAME> -> (section, field, type)
ENV_OVERRIDES = {
    "PHOTOMARK_BASE_URL": ("service", "base_url", str),
    "PHOTOMARK_MODEL": ("service", "model", str),
    "PHOTOMARK_GENERATION_TIMEOUT": ("service", "generation_timeout", float),
    "PHOTOMARK_METADATA_TIMEOUT": ("service", "metadata_timeout", float),
    "PHOTOMARK_MAX_ATTEMPTS": ("retry", "max_attempts", int),
    "PHOTOMARK_RETRY_BASE_DELAY": ("retry", "base_delay", float),
    "PHOTOMARK_RETRY_MAX_DELAY": ("retry", "max_delay", float),
    "PHOTOMARK_RATE_LIMIT_CAPACITY": ("rate_limit", "capacity", int),
    "PHOTOMARK_RATE_LIMIT_WINDOW": ("rate_limit", "window", float),
    "PHOTOMARK_CIRCUIT_FAILURE_THRESHOLD": ("circuit_breaker", "failure_threshold", int),
    "PHOTOMARK_CIRCUIT_RESET_TIMEOUT": ("circuit_breaker", "reset_timeout", float),
    "PHOTOMARK_MIN_MARKER_SPACING": ("annotation", "min_marker_spacing", float),
    "PHOTOMARK_MAX_IMAGE_BYTES": ("images", "max_image_bytes", int),
    "PHOTOMARK_MAX_CONCURRENT_OPERATIONS": (None, "max_concurrent_operations", int),
}


def config_to_dict(config: PhotomarkConfig, include_secrets: bool = False) -> Dict[str, Any]:
    data = asdict(config)
    if not include_secrets:
        data["service"].pop("api_key", None)
    return data


def config_from_dict(data: Mapping[str, Any]) -> PhotomarkConfig:
    """
    Build a config from a (possibly partial) dictionary.

    Unknown keys are ignored with a warning; missing keys keep their defaults.

    Raises:
        ConfigurationError: A value is out of range or has the wrong type
    """
    sections: Dict[str, Any] = {}
    for name, cls in _SECTIONS.items():
        raw = data.get(name) or {}
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"Config section '{name}' must be an object")
        known = {f.name for f in fields(cls)}
        for key in raw:
            if key not in known:
                logger.warning(f"Ignoring unknown config key {name}.{key}")
        values = {k: v for k, v in raw.items() if k in known}
        for key in ("allowed_mime_types", "jitter"):
            if key in values and isinstance(values[key], list):
                values[key] = tuple(values[key])
        try:
            sections[name] = cls(**values)
        except TypeError as e:
            raise ConfigurationError(f"Invalid '{name}' section: {e}") from e

    kwargs = dict(sections)
    if "max_concurrent_operations" in data:
        kwargs["max_concurrent_operations"] = data["max_concurrent_operations"]
    return PhotomarkConfig(**kwargs)


def apply_env_overrides(config: PhotomarkConfig, env: Optional[Mapping[str, str]] = None) -> PhotomarkConfig:
    """Return ``config`` with environment variables applied on top."""
    env = os.environ if env is None else env
    updates: Dict[str, Dict[str, Any]] = {}
    top_level: Dict[str, Any] = {}

    for var, (section, field_name, kind) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = kind(raw)
        except ValueError as e:
            raise ConfigurationError(f"{var}={raw!r} is not a valid {kind.__name__}") from e
        if section is None:
            top_level[field_name] = value
        else:
            updates.setdefault(section, {})[field_name] = value

    for var in API_KEY_ENV_VARS:
        if env.get(var):
            updates.setdefault("service", {})["api_key"] = env[var]
            break

    if not updates and not top_level:
        return config

    logger.debug(f"Applying environment overrides: {sorted(updates)} {sorted(top_level)}")
    changed = {
        section: replace(getattr(config, section), **values)
        for section, values in updates.items()
    }
    return replace(config, **changed, **top_level)


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> PhotomarkConfig:
    """
    Load configuration from disk, then apply environment overrides.

    A missing file is not an error: defaults are used.

    Raises:
        ConfigurationError: The file is not valid JSON or holds invalid values
    """
    path = Path(path) if path else CONFIG_PATH

    if path.exists():
        logger.info(f"Loading configuration from {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Configuration file {path} is corrupted: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a JSON object")
        log_config("Loaded Configuration", data, logger)
        config = config_from_dict(data)
    else:
        logger.info(f"No existing configuration file found at {path}")
        config = PhotomarkConfig()

    config = apply_env_overrides(config, env)
    log_config("Effective Configuration", config_to_dict(config, include_secrets=True), logger)
    return config


def save_config(config: PhotomarkConfig, path: Optional[Path] = None) -> Path:
    """
    Persist ``config`` as pretty-printed JSON. The API key is omitted.

    Returns:
        The path written
    """
    path = Path(path) if path else CONFIG_PATH
    data = config_to_dict(config)

    log_config("Saving Configuration", data, logger)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)

    logger.info(f"Configuration saved successfully to {path}")
    return path
