"""Server configuration loaded from environment variables.

``GOOGLE_OAUTH_CREDENTIALS`` is required; everything else has a default.
Path values may reference other variables as ``${VAR_NAME}``.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calguard.calendar import DEFAULT_CALENDAR_ID
from calguard.server import DEFAULT_TIMEZONE

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

ENV_CREDENTIALS = "GOOGLE_OAUTH_CREDENTIALS"
ENV_TOKENS = "GOOGLE_OAUTH_TOKENS"
ENV_PERMISSIONS = "CALGUARD_PERMISSIONS"
ENV_SELF_EMAIL = "CALGUARD_SELF_EMAIL"
ENV_CALENDAR_ID = "CALGUARD_CALENDAR_ID"
ENV_TIMEZONE = "CALGUARD_TIMEZONE"
ENV_AUTH_TIMEOUT = "CALGUARD_AUTH_TIMEOUT"

DEFAULT_TOKENS_PATH = "./tokens.json"


class ConfigError(Exception):
    """Raised when server configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class ServerConfig:
    """Parsed and validated server configuration."""

    credentials_path: Path
    tokens_path: Path = Path(DEFAULT_TOKENS_PATH)
    permissions_path: Path | None = None
    self_email: str | None = None
    calendar_id: str = DEFAULT_CALENDAR_ID
    timezone: str = DEFAULT_TIMEZONE
    auth_timeout: float | None = None

    def with_overrides(self, **overrides: Any) -> ServerConfig:
        """Return a copy with every non-None override applied (CLI options)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def resolve_env_vars(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    env = os.environ if environ is None else environ

    if isinstance(value, dict):
        return {k: resolve_env_vars(v, env) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item, env) for item in value]

    if isinstance(value, str):
        return _resolve_string(value, env)

    return value


def _resolve_string(s: str, environ: Mapping[str, str]) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)  # keep placeholder for error reporting
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _optional(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _optional_path(environ: Mapping[str, str], name: str) -> Path | None:
    value = _optional(environ, name)
    if value is None:
        return None
    return Path(resolve_env_vars(value, environ)).expanduser()


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown time zone: {name!r}") from exc
    return name


def load_server_config(environ: Mapping[str, str] | None = None) -> ServerConfig:
    """Build a :class:`ServerConfig` from *environ* (defaults to ``os.environ``).

    Raises
    ------
    ConfigError
        If the credentials path is unset or a value is invalid.
    """
    env = os.environ if environ is None else environ

    credentials_path = _optional_path(env, ENV_CREDENTIALS)
    if credentials_path is None:
        raise ConfigError(f"Set the {ENV_CREDENTIALS} environment variable")

    tokens_path = _optional_path(env, ENV_TOKENS) or Path(DEFAULT_TOKENS_PATH)

    timezone = validate_timezone(_optional(env, ENV_TIMEZONE) or DEFAULT_TIMEZONE)

    auth_timeout: float | None = None
    raw_timeout = _optional(env, ENV_AUTH_TIMEOUT)
    if raw_timeout is not None:
        try:
            auth_timeout = float(raw_timeout)
        except ValueError as exc:
            raise ConfigError(
                f"{ENV_AUTH_TIMEOUT} must be a number of seconds, got {raw_timeout!r}"
            ) from exc
        if auth_timeout <= 0:
            raise ConfigError(f"{ENV_AUTH_TIMEOUT} must be positive, got {raw_timeout!r}")

    return ServerConfig(
        credentials_path=credentials_path,
        tokens_path=tokens_path,
        permissions_path=_optional_path(env, ENV_PERMISSIONS),
        self_email=_optional(env, ENV_SELF_EMAIL),
        calendar_id=_optional(env, ENV_CALENDAR_ID) or DEFAULT_CALENDAR_ID,
        timezone=timezone,
        auth_timeout=auth_timeout,
    )
