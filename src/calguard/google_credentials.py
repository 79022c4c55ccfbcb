"""Google OAuth client credentials and the durable token store.

Two JSON files back the authenticator:

- the **credentials file** downloaded from the Google Cloud console::

      {"installed": {"client_id": "...", "client_secret": "...",
                     "redirect_uris": ["http://localhost"]}}

  (a top-level ``"web"`` section is accepted as well).  Failing to load it is
  fatal: :class:`CredentialsFileError` propagates to the caller.

- the **token store** written after a successful consent exchange::

      {"access_token": "...", "refresh_token": "...", "scope": "...",
       "token_type": "Bearer", "expiry_date": 1735689600000}

  Failing to load it is never fatal: the caller treats it as "no saved
  token" and runs the interactive flow.

Secret material (client_secret, tokens) is never logged.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

logger = logging.getLogger(__name__)

# Fixed loopback redirect used by the interactive consent flow.
DEFAULT_REDIRECT_URI = "http://localhost:3000/callback"

_CLIENT_SECTIONS = ("installed", "web")


class CredentialsFileError(Exception):
    """Raised when the OAuth client credentials file is missing or malformed.

    The message names the file and the problem but never includes secrets.
    """


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class ClientCredentials(BaseModel):
    """OAuth client identity used to build consent URLs and exchange codes."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    redirect_uri: str = DEFAULT_REDIRECT_URI

    @field_validator("client_id", "client_secret")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    def __repr__(self) -> str:
        return (
            f"ClientCredentials(client_id={self.client_id!r}, "
            f"client_secret=<REDACTED>, redirect_uri={self.redirect_uri!r})"
        )

    __str__ = __repr__


class TokenSet(BaseModel):
    """Access/refresh token pair with metadata, as persisted in the token store."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str = "Bearer"
    expiry_date: int | None = Field(
        default=None,
        description="Access-token expiry as milliseconds since the Unix epoch.",
    )

    @classmethod
    def from_token_response(cls, payload: dict[str, Any], *, now: float | None = None) -> TokenSet:
        """Build a token set from a Google token-endpoint response.

        The endpoint reports a relative ``expires_in`` (seconds); it is
        converted to an absolute ``expiry_date``.
        """
        issued_at = time.time() if now is None else now
        expires_in = payload.get("expires_in")
        expiry_date: int | None = None
        if isinstance(expires_in, int | float) and not isinstance(expires_in, bool):
            expiry_date = int((issued_at + expires_in) * 1000)
        return cls(
            access_token=payload.get("access_token") or "",
            refresh_token=payload.get("refresh_token"),
            scope=payload.get("scope"),
            token_type=payload.get("token_type") or "Bearer",
            expiry_date=expiry_date,
        )

    def is_expired(self, *, now: float | None = None, leeway_seconds: int = 60) -> bool:
        """Return True when the access token is past (or near) its expiry.

        Tokens without a recorded expiry are treated as not expired.
        """
        if self.expiry_date is None:
            return False
        current_ms = (time.time() if now is None else now) * 1000
        return current_ms >= self.expiry_date - leeway_seconds * 1000

    def __repr__(self) -> str:
        return (
            f"TokenSet(access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"scope={self.scope!r}, token_type={self.token_type!r}, "
            f"expiry_date={self.expiry_date!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Credentials file
# ---------------------------------------------------------------------------


def _extract_client_section(payload: dict[str, Any]) -> dict[str, Any]:
    for key in _CLIENT_SECTIONS:
        section = payload.get(key)
        if isinstance(section, dict):
            return section
    raise CredentialsFileError(
        "Credentials JSON must contain an 'installed' (or 'web') client section"
    )


def load_client_credentials(
    path: str | Path,
    *,
    redirect_uri: str = DEFAULT_REDIRECT_URI,
) -> ClientCredentials:
    """Load OAuth client credentials from a Google client-secrets file.

    The loopback *redirect_uri* is fixed by the consent flow; the file's own
    ``redirect_uris`` are only used to warn about a mismatch.

    Raises
    ------
    CredentialsFileError
        If the file cannot be read, is not valid JSON, or lacks a non-empty
        ``client_id`` / ``client_secret``.
    """
    credentials_path = Path(path)
    try:
        content = credentials_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CredentialsFileError(
            f"Cannot read OAuth credentials file {credentials_path}: {exc.strerror or exc}"
        ) from exc

    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise CredentialsFileError(
            f"OAuth credentials file {credentials_path} is not valid JSON: {exc.msg}"
        ) from exc

    if not isinstance(payload, dict):
        raise CredentialsFileError(
            f"OAuth credentials file {credentials_path} must contain a JSON object"
        )

    section = _extract_client_section(payload)
    client_id = section.get("client_id")
    client_secret = section.get("client_secret")
    missing = sorted(
        key
        for key, value in (("client_id", client_id), ("client_secret", client_secret))
        if not isinstance(value, str) or not value.strip()
    )
    if missing:
        raise CredentialsFileError(
            f"OAuth credentials file {credentials_path} is missing required field(s): "
            f"{', '.join(missing)}"
        )

    registered = section.get("redirect_uris")
    if isinstance(registered, list) and registered and redirect_uri not in registered:
        logger.debug(
            "Redirect URI %s is not among the registered redirect_uris; "
            "loopback redirects are still accepted for installed apps",
            redirect_uri,
        )

    try:
        return ClientCredentials(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
        )
    except ValidationError as exc:
        raise CredentialsFileError(
            f"OAuth credentials file {credentials_path} is invalid: "
            f"{exc.error_count()} validation error(s)"
        ) from exc


# ---------------------------------------------------------------------------
# Token store
# ---------------------------------------------------------------------------


def load_token_set(path: str | Path) -> TokenSet | None:
    """Load a previously saved token set, or None when unavailable.

    Any read, parse, or shape error is treated as "no saved token".  No expiry
    check is made here; refreshing is left to the calendar client.
    """
    token_path = Path(path)
    try:
        content = token_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("No saved token at %s", token_path)
        return None
    except OSError as exc:
        logger.warning("Cannot read token store %s: %s", token_path, exc)
        return None

    try:
        return TokenSet.model_validate_json(content)
    except ValidationError as exc:
        logger.warning(
            "Ignoring unusable token store %s (%d validation error(s))",
            token_path,
            exc.error_count(),
        )
        return None


def save_token_set(path: str | Path, tokens: TokenSet) -> bool:
    """Persist *tokens* as indented JSON, creating or overwriting *path*.

    Returns True on success.  Failures are logged and reported through the
    return value; the caller keeps using the in-memory token set.
    """
    token_path = Path(path)
    try:
        token_path.parent.mkdir(parents=True, exist_ok=True)
        token_path.write_text(
            json.dumps(tokens.model_dump(mode="json"), indent=2),
            encoding="utf-8",
        )
    except OSError as exc:
        logger.error("Failed to save token set to %s: %s", token_path, exc)
        return False
    logger.info("Saved token set to %s", token_path)
    return True
