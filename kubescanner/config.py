"""Configuration loading from the YAML config file and environment variables.

The REST endpoints (probes and metrics) always listen on ``metricsAddress``;
``probeAddress`` optionally adds a second listener serving the same endpoints.
"""

from __future__ import annotations

import math
import os
import re
from typing import Any
from urllib.parse import urlparse

import yaml

from kubescanner.errors import ConfigurationError
from kubescanner.models.config import (
    DEFAULT_API_BASE_URL,
    DEFAULT_CONFIG_FILE,
    EgressConfig,
    LogConfig,
    ScannerConfig,
    ScanningConfig,
    ScanType,
)

_TOKEN_ENV = "SNYK_SERVICE_ACCOUNT_TOKEN"

_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_RE_DURATION_PART = re.compile(r"([0-9]+(?:\.[0-9]+)?)(ms|s|m|h)")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBESCANNER_{key}", default)


def parse_duration(value: Any) -> float:
    """Parse a Go-style duration (``1h30m``, ``5s``, ``500ms``) into seconds.

    Bare numbers are taken as seconds.  Negative durations are rejected.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        if not math.isfinite(value) or value < 0:
            raise ConfigurationError(f"Invalid duration: {value!r}, must be a non-negative number of seconds")
        return float(value)
    text = str(value).strip()
    pos = 0
    total = 0.0
    for match in _RE_DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if not text or pos != len(text):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    return total


def _positive_duration(raw: Any, field_name: str) -> float:
    seconds = parse_duration(raw)
    if seconds <= 0:
        raise ConfigurationError(f"{field_name} must be greater than zero, got {raw!r}")
    return seconds


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ConfigurationError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def _string_list(raw: Any, field_name: str) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ConfigurationError(f"{field_name} must be a list of strings, got {raw!r}")
    return tuple(raw)


def _parse_scan_type(raw: Any, index: int) -> ScanType:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"scanning.types[{index}] must be a mapping")
    prefix = f"scanning.types[{index}]"
    api_groups = _string_list(raw.get("apiGroups"), f"{prefix}.apiGroups")
    resources = _string_list(raw.get("resources"), f"{prefix}.resources")
    if not api_groups:
        raise ConfigurationError(f"{prefix}.apiGroups must not be empty")
    if not resources:
        raise ConfigurationError(f"{prefix}.resources must not be empty")
    # an explicit empty list keeps its meaning: no namespaced objects at all
    namespaces = raw.get("namespaces")
    return ScanType(
        api_groups=api_groups,
        resources=resources,
        versions=_string_list(raw.get("versions"), f"{prefix}.versions"),
        namespaces=None if namespaces is None else _string_list(namespaces, f"{prefix}.namespaces"),
    )


def _positive_int(raw: Any, default: int, field_name: str) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        raise ConfigurationError(f"{field_name} must be a positive integer, got {raw!r}")
    return raw


def _validate_base_url(value: str) -> str:
    try:
        parsed = urlparse(value)
    except ValueError as exc:
        raise ConfigurationError(f"could not parse API base URL {value!r}: {exc}") from exc
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(f"API base URL {value!r} has no scheme or host set")
    return value.rstrip("/")


def parse_config(data: dict[str, Any], token: str = "") -> ScannerConfig:
    """Build a ScannerConfig from an already decoded config document."""
    if not isinstance(data, dict):
        raise ConfigurationError("config file must contain a mapping at the top level")

    organization_id = str(data.get("organizationID") or "")
    if not organization_id:
        raise ConfigurationError("organization ID is missing in config file")

    scanning_raw = data.get("scanning") or {}
    egress_raw = data.get("egress") or {}
    if not isinstance(scanning_raw, dict) or not isinstance(egress_raw, dict):
        raise ConfigurationError("scanning and egress must be mappings")

    types_raw = scanning_raw.get("types") or []
    if not isinstance(types_raw, list):
        raise ConfigurationError("scanning.types must be a list")

    if not token:
        raise ConfigurationError(f"no service account token set ({_TOKEN_ENV})")

    egress = EgressConfig(
        api_base_url=_validate_base_url(str(egress_raw.get("snykAPIBaseURL") or DEFAULT_API_BASE_URL)),
        service_account_token=token,
        http_client_timeout_seconds=_positive_duration(
            egress_raw.get("httpClientTimeout", "5s"),
            "egress.httpClientTimeout",
        ),
        batch_size=_positive_int(egress_raw.get("batchSize"), 100, "egress.batchSize"),
        batch_interval_seconds=_positive_duration(egress_raw.get("batchInterval", "10s"), "egress.batchInterval"),
    )

    return ScannerConfig(
        cluster_name=str(data.get("clusterName") or ""),
        organization_id=organization_id,
        metrics_address=str(data.get("metricsAddress") or ":8080"),
        probe_address=str(data.get("probeAddress") or ""),
        scanning=ScanningConfig(
            types=[_parse_scan_type(raw, i) for i, raw in enumerate(types_raw)],
            requeue_after_seconds=parse_duration(scanning_raw.get("requeueAfter", "1h")),
            workers=_positive_int(scanning_raw.get("workers"), 4, "scanning.workers"),
        ),
        egress=egress,
        log=LogConfig(level=_validate_log_level(_env("LOG_LEVEL", "info"))),
    )


def load_config(config_file: str | None = None) -> ScannerConfig:
    """Read the YAML config file and the token from the environment.

    The file location is *config_file*, else ``KUBESCANNER_CONFIG``, else the
    in-container default.
    """
    path = config_file or _env("CONFIG", DEFAULT_CONFIG_FILE)
    try:
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except OSError as exc:
        raise ConfigurationError(f"could not read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"could not parse config file {path}: {exc}") from exc

    return parse_config(data, token=os.environ.get(_TOKEN_ENV, ""))
