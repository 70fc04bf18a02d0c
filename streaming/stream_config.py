"""Stream client configuration — defaults, env overrides, header interpolation, redaction.

Provides:
- Layered config: DEFAULT_CONFIG ← AGENTJ_STREAM_* env vars ← caller overrides
- {env:VAR} interpolation in header values (allowlisted to AGENTJ_*)
- Redaction for safe logging (never leak tokens)
- httpx.Timeout construction
"""

from __future__ import annotations

import copy
import logging
import os
import re
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger("agentj_stream.config")

# Redaction sentinel
REDACTED = "***REDACTED***"

ENV_PREFIX = "AGENTJ_STREAM_"

DEFAULT_CONFIG: Dict[str, Any] = {
    "connect_timeout_ms": 5000,
    # Backend emitters time out after five minutes
    "read_timeout_ms": 300000,
    "write_timeout_ms": 30000,
    "headers": {},
    "retry": {
        "max_retries": 3,
        "delay_ms": 1000,
        "backoff": "fixed",
        "max_delay_ms": 30000,
        "jitter_percent": 0,
    },
}

# Env var → (config path, type)
_ENV_KEYS = {
    "CONNECT_TIMEOUT_MS": (("connect_timeout_ms",), int),
    "READ_TIMEOUT_MS": (("read_timeout_ms",), int),
    "WRITE_TIMEOUT_MS": (("write_timeout_ms",), int),
    "MAX_RETRIES": (("retry", "max_retries"), int),
    "RETRY_DELAY_MS": (("retry", "delay_ms"), int),
    "RETRY_BACKOFF": (("retry", "backoff"), str),
    "RETRY_MAX_DELAY_MS": (("retry", "max_delay_ms"), int),
    "RETRY_JITTER_PERCENT": (("retry", "jitter_percent"), int),
}

_ENV_ALLOWED_RE = re.compile(r"^AGENTJ_")

# Regex for interpolation tokens: {env:VAR}
_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

# Patterns that indicate sensitive keys (for redaction)
_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer|cookie)",
    re.IGNORECASE,
)


# ── Layering ──────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for suffix, (path, cast) in _ENV_KEYS.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}{suffix} must be {cast.__name__}, got {raw!r}")
        node = overrides
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value
    return overrides


def load_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Build the effective config: defaults, then env, then caller overrides."""
    config = deep_merge(DEFAULT_CONFIG, _env_overrides(environ))
    if overrides:
        config = deep_merge(config, overrides)

    backoff = config["retry"]["backoff"]
    if backoff not in ("fixed", "exponential"):
        raise ValueError(f"Unknown retry backoff: {backoff!r} (expected 'fixed' or 'exponential')")

    logger.debug("Stream config: %s", redact_config(config))
    return config


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(value: str, environ: Optional[Dict[str, str]] = None) -> str:
    """Resolve {env:VAR_NAME} tokens. Only AGENTJ_* variables may be read."""
    environ = os.environ if environ is None else environ

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not _ENV_ALLOWED_RE.search(var_name):
            raise ValueError(
                f"Environment variable '{var_name}' is not in the allowlist. Allowed: ^AGENTJ_.*"
            )
        val = environ.get(var_name)
        if val is None:
            raise ValueError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def resolve_headers(
    config: Dict[str, Any],
    extra: Optional[Dict[str, str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Config headers (interpolated) overlaid with caller headers."""
    headers = {
        key: interpolate_value(value, environ) if isinstance(value, str) else value
        for key, value in config.get("headers", {}).items()
    }
    if extra:
        headers.update(extra)
    return headers


# ── Redaction ─────────────────────────────────────────────────────────


def redact_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Create a redacted copy of config for display/logging."""
    result = {}
    for key, value in config.items():
        if isinstance(value, dict):
            result[key] = redact_config(value) if key != "headers" else redact_headers(value)
        elif isinstance(value, str) and _INTERP_RE.search(value):
            refs = ", ".join(f"env:{r}" for r in _INTERP_RE.findall(value))
            result[key] = f"{REDACTED} (from {refs})"
        elif _SENSITIVE_KEY_RE.search(key):
            result[key] = REDACTED
        else:
            result[key] = value
    return result


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    redacted = {}
    for key, value in headers.items():
        if _SENSITIVE_KEY_RE.search(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted


# ── Transport ─────────────────────────────────────────────────────────


def build_timeout(config: Dict[str, Any]) -> httpx.Timeout:
    return httpx.Timeout(
        connect=config["connect_timeout_ms"] / 1000.0,
        read=config["read_timeout_ms"] / 1000.0,
        write=config["write_timeout_ms"] / 1000.0,
        pool=config["connect_timeout_ms"] / 1000.0,
    )
