"""Configuration and application setup for the MDS trust service."""
from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Mapping, Optional, Union

from flask import Flask

MDS_ROOT_CERTIFICATE_KEY = "MDS_ROOT_CERTIFICATE_PATH"
MDS_ENDPOINTS_KEY = "MDS_ENDPOINTS"
MDS_METADATA_STATEMENTS_KEY = "MDS_METADATA_STATEMENTS_DIR"
MDS_REVOCATION_CHECK_KEY = "MDS_REVOCATION_CHECK_ENABLED"
MDS_FETCH_TIMEOUT_KEY = "MDS_FETCH_TIMEOUT"
MDS_FETCH_WORKERS_KEY = "MDS_FETCH_WORKERS"
MDS_INITIALIZE_ON_START_KEY = "MDS_INITIALIZE_ON_START"
MDS_REFRESH_ROUTE_KEY = "MDS_REFRESH_ROUTE_ENABLED"

DEFAULT_FETCH_TIMEOUT = 30.0
DEFAULT_FETCH_WORKERS = 4

# config key -> environment variable
_ENVIRONMENT_KEYS: Mapping[str, str] = {
    MDS_ROOT_CERTIFICATE_KEY: "FIDO_SERVER_MDS_ROOT_CERTIFICATE",
    MDS_ENDPOINTS_KEY: "FIDO_SERVER_MDS_ENDPOINTS",
    MDS_METADATA_STATEMENTS_KEY: "FIDO_SERVER_METADATA_STATEMENTS",
    MDS_REVOCATION_CHECK_KEY: "FIDO_SERVER_MDS_REVOCATION_CHECK",
    MDS_FETCH_TIMEOUT_KEY: "FIDO_SERVER_MDS_FETCH_TIMEOUT",
    MDS_FETCH_WORKERS_KEY: "FIDO_SERVER_MDS_FETCH_WORKERS",
    MDS_INITIALIZE_ON_START_KEY: "FIDO_SERVER_MDS_INITIALIZE_ON_START",
    MDS_REFRESH_ROUTE_KEY: "FIDO_SERVER_MDS_REFRESH_ROUTE",
}


def _parse_flag(raw_value: Optional[str]) -> Optional[bool]:
    """Return ``True`` or ``False`` when *raw_value* is explicitly set."""

    if raw_value is None:
        return None

    normalised = raw_value.strip().lower()
    if normalised in {"", "0", "false", "off", "no"}:
        return False
    return True


def _parse_endpoints(raw_value: Optional[str]) -> Optional[Union[str, List[str]]]:
    """Split a comma, semicolon or newline separated list of endpoint URLs.

    A single URL is kept as a scalar string so the endpoint resolver sees the
    same shapes it would see from a structured configuration file.
    """

    if raw_value is None:
        return None

    components = [
        component.strip()
        for component in re.split(r"[,;\n]+", raw_value)
        if component.strip()
    ]
    if not components:
        return None
    if len(components) == 1:
        return components[0]
    return components


def _parse_number(raw_value: Optional[str], cast: type) -> Optional[Any]:
    if raw_value is None or not raw_value.strip():
        return None
    try:
        return cast(raw_value.strip())
    except ValueError:
        return None


def load_config_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Translate ``FIDO_SERVER_*`` environment variables into config values.

    Only variables that are present produce a key in the returned mapping.
    """

    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}

    def _get(key: str) -> Optional[str]:
        return env.get(_ENVIRONMENT_KEYS[key])

    for key in (MDS_ROOT_CERTIFICATE_KEY, MDS_METADATA_STATEMENTS_KEY):
        raw = _get(key)
        if raw is not None:
            values[key] = raw

    endpoints = _parse_endpoints(_get(MDS_ENDPOINTS_KEY))
    if endpoints is not None:
        values[MDS_ENDPOINTS_KEY] = endpoints

    for key in (MDS_REVOCATION_CHECK_KEY, MDS_INITIALIZE_ON_START_KEY, MDS_REFRESH_ROUTE_KEY):
        flag = _parse_flag(_get(key))
        if flag is not None:
            values[key] = flag

    timeout = _parse_number(_get(MDS_FETCH_TIMEOUT_KEY), float)
    if timeout is not None and timeout > 0:
        values[MDS_FETCH_TIMEOUT_KEY] = timeout

    workers = _parse_number(_get(MDS_FETCH_WORKERS_KEY), int)
    if workers is not None and workers > 0:
        values[MDS_FETCH_WORKERS_KEY] = workers

    return values


def read_path(config: Mapping[str, Any], key: str) -> str:
    """Return the configured path for *key*, or an empty string when blank."""

    value = config.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return ""


def read_flag(config: Mapping[str, Any], key: str, default: bool) -> bool:
    value = config.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        parsed = _parse_flag(value)
        return default if parsed is None else parsed
    return default


def read_timeout(config: Mapping[str, Any]) -> float:
    value = config.get(MDS_FETCH_TIMEOUT_KEY)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    return DEFAULT_FETCH_TIMEOUT


def read_workers(config: Mapping[str, Any]) -> int:
    value = config.get(MDS_FETCH_WORKERS_KEY)
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return DEFAULT_FETCH_WORKERS


app = Flask(__name__)
app.config.setdefault(MDS_ROOT_CERTIFICATE_KEY, "")
app.config.setdefault(MDS_ENDPOINTS_KEY, None)
app.config.setdefault(MDS_METADATA_STATEMENTS_KEY, "")
app.config.setdefault(MDS_REVOCATION_CHECK_KEY, True)
app.config.setdefault(MDS_FETCH_TIMEOUT_KEY, DEFAULT_FETCH_TIMEOUT)
app.config.setdefault(MDS_FETCH_WORKERS_KEY, DEFAULT_FETCH_WORKERS)
app.config.setdefault(MDS_INITIALIZE_ON_START_KEY, False)
app.config.setdefault(MDS_REFRESH_ROUTE_KEY, False)
app.config.update(load_config_from_env())


__all__ = [
    "DEFAULT_FETCH_TIMEOUT",
    "DEFAULT_FETCH_WORKERS",
    "MDS_ENDPOINTS_KEY",
    "MDS_FETCH_TIMEOUT_KEY",
    "MDS_FETCH_WORKERS_KEY",
    "MDS_INITIALIZE_ON_START_KEY",
    "MDS_METADATA_STATEMENTS_KEY",
    "MDS_REFRESH_ROUTE_KEY",
    "MDS_REVOCATION_CHECK_KEY",
    "MDS_ROOT_CERTIFICATE_KEY",
    "app",
    "load_config_from_env",
    "read_flag",
    "read_path",
    "read_timeout",
    "read_workers",
]
