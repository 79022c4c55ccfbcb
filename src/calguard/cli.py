"""CLI for calguard: run the permission-gated Google Calendar MCP server."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import NoReturn

import click

from calguard import __version__
from calguard.calendar import CalendarError
from calguard.config import (
    ENV_CREDENTIALS,
    ENV_PERMISSIONS,
    ConfigError,
    ServerConfig,
    load_server_config,
)
from calguard.google_credentials import CredentialsFileError
from calguard.logging import LOG_FORMATS, configure_logging
from calguard.oauth import AuthorizationError, authorize
from calguard.permissions import (
    OperationType,
    check_permission,
    deny_message,
    load_permission_config,
)
from calguard.server import build_server

logger = logging.getLogger(__name__)

_STARTUP_ERRORS = (ConfigError, CredentialsFileError, AuthorizationError, CalendarError, OSError)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    envvar="CALGUARD_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root log level",
)
@click.option(
    "--log-format",
    envvar="CALGUARD_LOG_FORMAT",
    type=click.Choice(LOG_FORMATS, case_sensitive=False),
    default="text",
    show_default=True,
    help="Log output format (always written to stderr)",
)
@click.option(
    "--log-file",
    envvar="CALGUARD_LOG_FILE",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write JSON log lines to this file",
)
def cli(log_level: str, log_format: str, log_file: Path | None) -> None:
    """calguard: Google Calendar MCP server with attendee-aware permissions."""
    try:
        configure_logging(level=log_level, fmt=log_format.lower(), log_file=log_file)
    except OSError as exc:
        _fail(exc)


def _load_config(credentials: Path | None, **overrides: object) -> ServerConfig:
    environ = dict(os.environ)
    if credentials is not None:
        environ[ENV_CREDENTIALS] = str(credentials)
    return load_server_config(environ).with_overrides(**overrides)


def _fail(exc: Exception) -> NoReturn:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(1)


_credentials_option = click.option(
    "--credentials",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"OAuth client credentials file (default: ${ENV_CREDENTIALS})",
)
_tokens_option = click.option(
    "--tokens",
    "tokens_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Token store path (default: $GOOGLE_OAUTH_TOKENS or ./tokens.json)",
)


@cli.command()
@_credentials_option
@_tokens_option
@click.option(
    "--permissions",
    "permissions_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Permission config file (default: ${ENV_PERMISSIONS}; built-in policy when unset)",
)
@click.option("--self-email", default=None, help="Authenticated user's email address")
def serve(
    credentials: Path | None,
    tokens_path: Path | None,
    permissions_path: Path | None,
    self_email: str | None,
) -> None:
    """Authorize, then run the MCP server on stdio."""
    try:
        config = _load_config(
            credentials,
            tokens_path=tokens_path,
            permissions_path=permissions_path,
            self_email=self_email,
        )
    except ConfigError as exc:
        _fail(exc)

    try:
        asyncio.run(_serve(config))
    except _STARTUP_ERRORS as exc:
        _fail(exc)
    except KeyboardInterrupt:
        click.echo("\nShutting down...", err=True)


async def _serve(config: ServerConfig) -> None:
    permissions = load_permission_config(config.permissions_path)
    client = await authorize(
        config.credentials_path,
        config.tokens_path,
        timeout=config.auth_timeout,
    )
    async with client:
        mcp = build_server(
            client,
            permissions,
            self_email=config.self_email,
            calendar_id=config.calendar_id,
            timezone=config.timezone,
        )
        logger.info("Serving calendar tools on stdio")
        await mcp.run_async(transport="stdio")


@cli.command("authorize")
@_credentials_option
@_tokens_option
@click.option("--timeout", type=float, default=None, help="Seconds to wait for consent")
def authorize_cmd(
    credentials: Path | None,
    tokens_path: Path | None,
    timeout: float | None,
) -> None:
    """Run only the authorization step (first-time consent)."""
    try:
        config = _load_config(credentials, tokens_path=tokens_path, auth_timeout=timeout)
    except ConfigError as exc:
        _fail(exc)

    async def _authorize() -> None:
        client = await authorize(
            config.credentials_path, config.tokens_path, timeout=config.auth_timeout
        )
        await client.aclose()

    try:
        asyncio.run(_authorize())
    except _STARTUP_ERRORS as exc:
        _fail(exc)
    click.echo(f"Authorized; token set stored at {config.tokens_path}", err=True)


@cli.command("init-permissions")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
def init_permissions(path: Path) -> None:
    """Write the default permission config to PATH (if absent) and print it."""
    existed = path.exists()
    config = load_permission_config(path)
    if not existed and path.exists():
        click.echo(f"Created {path}", err=True)
    click.echo(json.dumps(config.to_json(), indent=2))


@cli.command()
@click.argument("operation", type=click.Choice([op.value for op in OperationType]))
@click.option("--self", "self_email", required=True, help="Authenticated user's email address")
@click.option("--attendee", "attendees", multiple=True, help="Attendee email (repeatable)")
@click.option(
    "--permissions",
    "permissions_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Permission config file (built-in policy when omitted)",
)
def check(
    operation: str,
    self_email: str,
    attendees: tuple[str, ...],
    permissions_path: Path | None,
) -> None:
    """Evaluate the permission policy for OPERATION on an event."""
    config = load_permission_config(permissions_path)
    result = check_permission(config, operation, attendees, self_email)
    click.echo(f"{result.action.value} ({result.condition.value})")
    if not result.allowed:
        click.echo(deny_message(operation, result.condition))
        sys.exit(2)
