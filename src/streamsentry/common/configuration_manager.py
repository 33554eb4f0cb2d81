#!/usr/bin/env python3
"""
Configuration Manager for StreamSentry

Builds the exporter configuration from, in increasing precedence, built-in
defaults, a YAML or JSON file, STREAMS_* environment variables and explicit
overrides, then validates the result against a JSON schema.
"""

import os
import copy
import json
import yaml
import logging
import threading
import jsonschema
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from streamsentry.common.errors import ConfigurationError

logger = logging.getLogger("ConfigManager")

VALID_PROTOCOLS = ("http", "https")

DEFAULT_CONFIG = {
    "domain_id": None,
    "instance_id": None,
    "refresh_rate": 10,
    "bean_source": {
        "url": "redis://localhost:6379/0",
        "namespace": "streams",
        "socket_timeout": 10.0,
    },
    "feeds": {
        "snapshot_url": None,
        "metrics_url": None,
        "timeout": 30.0,
        "username": None,
        "password": None,
        "x509_cert": None,
        "verify": True,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 25500,
        "webpath": "/",
        "protocol": "http",
        "certfile": None,
        "keyfile": None,
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
}

CONFIG_SCHEMA = {
    "type": "object",
    "required": ["domain_id", "instance_id", "refresh_rate", "bean_source", "feeds", "server"],
    "properties": {
        "domain_id": {"type": "string", "minLength": 1},
        "instance_id": {"type": "string", "minLength": 1},
        "refresh_rate": {"type": "integer", "minimum": 1},
        "bean_source": {
            "type": "object",
            "required": ["url", "namespace"],
            "properties": {
                "url": {"type": "string", "minLength": 1},
                "namespace": {"type": "string", "minLength": 1},
                "socket_timeout": {"type": "number", "exclusiveMinimum": 0},
            },
        },
        "feeds": {
            "type": "object",
            "required": ["snapshot_url", "metrics_url"],
            "properties": {
                "snapshot_url": {"type": "string", "minLength": 1},
                "metrics_url": {"type": "string", "minLength": 1},
                "timeout": {"type": "number", "exclusiveMinimum": 0},
                "username": {"type": ["string", "null"]},
                "password": {"type": ["string", "null"]},
                "x509_cert": {"type": ["string", "null"]},
                "verify": {"type": "boolean"},
            },
        },
        "server": {
            "type": "object",
            "required": ["host", "port", "webpath", "protocol"],
            "properties": {
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "webpath": {"type": "string"},
                "protocol": {"type": "string"},
                "certfile": {"type": ["string", "null"]},
                "keyfile": {"type": ["string", "null"]},
            },
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
                "file": {"type": ["string", "null"]},
            },
        },
    },
}

# Environment variable -> (configuration path, converter)
ENVIRONMENT_VARIABLES = {
    "STREAMS_EXPORTER_BEANSOURCE_URL": (("bean_source", "url"), str),
    "STREAMS_DOMAIN_ID": (("domain_id",), str),
    "STREAMS_INSTANCE_ID": (("instance_id",), str),
    "STREAMS_EXPORTER_HOST": (("server", "host"), str),
    "STREAMS_EXPORTER_PORT": (("server", "port"), int),
    "STREAMS_EXPORTER_WEBPATH": (("server", "webpath"), str),
    "STREAMS_EXPORTER_USERNAME": (("feeds", "username"), str),
    "STREAMS_EXPORTER_PASSWORD": (("feeds", "password"), str),
    "STREAMS_X509CERT": (("feeds", "x509_cert"), str),
    "STREAMS_EXPORTER_REFRESHRATE": (("refresh_rate",), int),
    "STREAMS_EXPORTER_SERVER_PROTOCOL": (("server", "protocol"), str),
    "STREAMS_EXPORTER_SERVER_CERTFILE": (("server", "certfile"), str),
    "STREAMS_EXPORTER_SERVER_KEYFILE": (("server", "keyfile"), str),
    "STREAMS_EXPORTER_SNAPSHOT_URL": (("feeds", "snapshot_url"), str),
    "STREAMS_EXPORTER_METRICS_URL": (("feeds", "metrics_url"), str),
}


def merge_config(base: Dict[str, Any], updates: Mapping[str, Any], skip_none: bool = False) -> Dict[str, Any]:
    """
    Recursively merge updates into base

    Args:
        base: Configuration to update in place
        updates: Values to apply
        skip_none: Ignore None values in updates (unset CLI options)

    Returns:
        The updated base
    """
    for key, value in updates.items():
        if skip_none and value is None:
            continue
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            merge_config(base[key], value, skip_none)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _set_path(config: Dict[str, Any], path: Tuple[str, ...], value: Any):
    node = config
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


class ConfigurationManager:
    """
    Configuration for one exporter process.

    load() must be called before get(); it raises ConfigurationError listing
    every problem found.
    """

    def __init__(self, config_file: Optional[Union[str, Path]] = None,
                 overrides: Optional[Dict[str, Any]] = None,
                 environ: Optional[Mapping[str, str]] = None):
        """
        Initialize the configuration manager

        Args:
            config_file: Optional YAML (.yaml/.yml) or JSON configuration file
            overrides: Values taking precedence over everything else; None values are ignored
            environ: Environment to read STREAMS_* variables from (defaults to os.environ)
        """
        self.config_file = Path(config_file) if config_file else None
        self.overrides = overrides or {}
        self.environ = os.environ if environ is None else environ

        self.config = {}
        self.lock = threading.RLock()

    def load(self) -> Dict[str, Any]:
        """
        Build and validate the configuration

        Returns:
            Configuration dictionary

        Raises:
            ConfigurationError: the file could not be read or the result is invalid
        """
        with self.lock:
            config = copy.deepcopy(DEFAULT_CONFIG)

            if self.config_file:
                merge_config(config, self._load_config(self.config_file))
                logger.info(f"Loaded configuration from {self.config_file}")

            merge_config(config, self._load_environment())
            merge_config(config, self.overrides, skip_none=True)

            self._normalize(config)

            is_valid, errors = self.validate_configuration(config)
            if not is_valid:
                for error in errors:
                    logger.error(f"Configuration error: {error}")
                raise ConfigurationError("Invalid configuration: " + "; ".join(errors), errors)

            self.config = config
            return config

    def _load_config(self, config_path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML or JSON file"""
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file does not exist: {config_path}")

        try:
            with open(config_path, 'r') as f:
                if config_path.suffix.lower() in ('.yaml', '.yml'):
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Error loading configuration file {config_path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
        return data

    def _load_environment(self) -> Dict[str, Any]:
        """Collect values from STREAMS_* environment variables"""
        values = {}
        for variable, (path, converter) in ENVIRONMENT_VARIABLES.items():
            raw = self.environ.get(variable)
            if raw is None or raw == "":
                continue
            try:
                value = converter(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {variable}: {raw!r}") from e
            _set_path(values, path, value)
            logger.debug(f"Configuration {'.'.join(path)} taken from {variable}")
        return values

    def _normalize(self, config: Dict[str, Any]):
        server = config.get("server", {})
        if isinstance(server.get("protocol"), str):
            server["protocol"] = server["protocol"].lower()
        webpath = server.get("webpath")
        if isinstance(webpath, str):
            if not webpath.startswith("/"):
                webpath = "/" + webpath
            if not webpath.endswith("/"):
                webpath = webpath + "/"
            server["webpath"] = webpath
        log_config = config.get("logging", {})
        if isinstance(log_config.get("level"), str):
            log_config["level"] = log_config["level"].upper()

    def validate_configuration(self, config: Dict[str, Any],
                               schema: Optional[Dict[str, Any]] = None) -> Tuple[bool, List[str]]:
        """
        Validate configuration against the JSON schema and protocol rules

        Args:
            config: Configuration to validate
            schema: JSON Schema for validation (defaults to CONFIG_SCHEMA)

        Returns:
            Tuple of (is_valid, error_messages)
        """
        validator = jsonschema.Draft7Validator(schema or CONFIG_SCHEMA)
        error_messages = []
        for error in sorted(validator.iter_errors(config), key=lambda e: [str(p) for p in e.path]):
            path = ".".join(str(p) for p in error.path) if error.path else "root"
            error_messages.append(f"At {path}: {error.message}")

        server = config.get("server") or {}
        protocol = server.get("protocol")
        if isinstance(protocol, str):
            if protocol not in VALID_PROTOCOLS:
                error_messages.append(f"{protocol} is not a valid protocol.  Valid values include [http|https]")
            elif protocol == "https" and not server.get("certfile"):
                error_messages.append("At server.certfile: a server certificate file is required for https")

        return not error_messages, error_messages

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by dotted path, e.g. "server.port"

        Args:
            key: Dotted configuration path
            default: Value returned when the path does not exist
        """
        with self.lock:
            node = self.config
            for part in key.split("."):
                if not isinstance(node, dict) or part not in node:
                    return default
                node = node[part]
            return node

    def get_all(self) -> Dict[str, Any]:
        with self.lock:
            return copy.deepcopy(self.config)


def redacted(config: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a configuration with secrets masked, for logging"""
    safe = copy.deepcopy(config)
    feeds = safe.get("feeds") or {}
    if feeds.get("password"):
        feeds["password"] = "********"
    return safe
