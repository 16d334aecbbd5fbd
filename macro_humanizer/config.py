"""
Configuration loading for the macro humanizer.

Configuration lives under the `macro_humanizer:` key of a YAML file.
Every key is optional and falls back to the defaults in const.py.
"""

import logging
from typing import Dict, Optional

import voluptuous as vol
import yaml

from .const import (
    BACKOFF_EXPONENTIAL,
    BACKOFF_FIXED,
    BACKOFF_NONE,
    CACHE_BACKEND_MEMORY,
    CACHE_BACKEND_NONE,
    CACHE_BACKEND_SQL,
    DEFAULT_CACHE_TTL,
    DEFAULT_DB_URL,
    DEFAULT_MIN_FREQUENCY,
    DEFAULT_MIN_SEQUENCE_LENGTH,
    DEFAULT_STORAGE_DIR,
    DOMAIN,
    QUEUE_DEFAULTS,
)
from .errors import ValidationError

_LOGGER = logging.getLogger(__name__)

positive_int = vol.All(vol.Coerce(int), vol.Range(min=1))

QUEUE_SCHEMA = vol.Schema({
    vol.Optional("concurrency"): positive_int,
    vol.Optional("attempts"): positive_int,
    vol.Optional("backoff_type"): vol.In([BACKOFF_EXPONENTIAL, BACKOFF_FIXED, BACKOFF_NONE]),
    vol.Optional("backoff_delay"): vol.All(vol.Coerce(float), vol.Range(min=0)),
})

CONFIG_SCHEMA = vol.Schema(
    {
        DOMAIN: vol.Schema({
            vol.Optional("db_url", default=DEFAULT_DB_URL): str,
            vol.Optional("storage_dir", default=DEFAULT_STORAGE_DIR): str,
            vol.Optional("cache", default=dict): vol.Schema({
                vol.Optional("backend", default=CACHE_BACKEND_MEMORY): vol.In(
                    [CACHE_BACKEND_MEMORY, CACHE_BACKEND_SQL, CACHE_BACKEND_NONE]
                ),
                vol.Optional("ttl", default=DEFAULT_CACHE_TTL): positive_int,
            }),
            vol.Optional("mining", default=dict): vol.Schema({
                vol.Optional("min_length", default=DEFAULT_MIN_SEQUENCE_LENGTH): positive_int,
                vol.Optional("min_frequency", default=DEFAULT_MIN_FREQUENCY): positive_int,
            }),
            vol.Optional("queues", default=dict): vol.Schema({
                vol.In(list(QUEUE_DEFAULTS)): QUEUE_SCHEMA,
            }),
        })
    },
    extra=vol.ALLOW_EXTRA,
)


def validate_config(config: Optional[Dict]) -> Dict:
    """
    Validate a full configuration mapping and return the component section.

    Raises:
        ValidationError: The configuration does not match CONFIG_SCHEMA
    """
    config = dict(config or {})
    # An empty `macro_humanizer:` key loads as None
    config[DOMAIN] = config.get(DOMAIN) or {}

    try:
        return CONFIG_SCHEMA(config)[DOMAIN]
    except vol.Invalid as e:
        raise ValidationError(f"Invalid configuration: {e}") from e


def load_config(path: Optional[str] = None) -> Dict:
    """
    Read and validate a YAML configuration file.

    Args:
        path: YAML file path, or None for pure defaults

    Returns:
        The validated `macro_humanizer` section
    """
    if path is None:
        return validate_config({})

    with open(path, "r") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValidationError(f"Could not parse {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ValidationError(f"Configuration in {path} must be a mapping")

    conf = validate_config(raw)
    _LOGGER.info(f"Loaded configuration from {path}")
    return conf
