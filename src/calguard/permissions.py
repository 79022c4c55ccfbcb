"""Attendee-aware access policy for calendar operations.

Decides whether a calendar operation may proceed based on who else is on the
affected event.  Attendees are classified relative to the authenticated user:

- ``self_only``: nobody but the user (or no attendees at all)
- ``internal``: everyone else shares the configured internal domain
- ``external``: anything else, including every case where no internal
  domain is configured and other people are invited

Each operation maps either to a single action (flat) or to one action per
attendee condition (conditional).

Policy file layout::

    {
      "internalDomain": "example.com",
      "permissions": {
        "read": "allow",
        "create": {"self_only": "allow", "internal": "allow", "external": "deny"},
        "update": {"self_only": "allow", "internal": "allow", "external": "deny"},
        "delete": {"self_only": "allow", "internal": "allow", "external": "deny"}
      }
    }

Loading never fails: missing or malformed parts fall back to the default
policy field by field.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)


class OperationType(StrEnum):
    """Calendar operations subject to policy checks."""

    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PermissionAction(StrEnum):
    ALLOW = "allow"
    DENY = "deny"


class AttendeeCondition(StrEnum):
    """Who else is on an event, relative to the authenticated user."""

    SELF_ONLY = "self_only"
    INTERNAL = "internal"
    EXTERNAL = "external"


# ---------------------------------------------------------------------------
# Permission values (flat or conditional)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FlatPermission:
    """One action regardless of attendee condition."""

    action: PermissionAction

    def to_json(self) -> str:
        return self.action.value


@dataclass(frozen=True)
class ConditionalPermission:
    """One action per attendee condition."""

    self_only: PermissionAction
    internal: PermissionAction
    external: PermissionAction

    def action_for(self, condition: AttendeeCondition) -> PermissionAction:
        if condition is AttendeeCondition.SELF_ONLY:
            return self.self_only
        if condition is AttendeeCondition.INTERNAL:
            return self.internal
        return self.external

    def to_json(self) -> dict[str, str]:
        return {
            AttendeeCondition.SELF_ONLY.value: self.self_only.value,
            AttendeeCondition.INTERNAL.value: self.internal.value,
            AttendeeCondition.EXTERNAL.value: self.external.value,
        }


PermissionValue = FlatPermission | ConditionalPermission


@dataclass(frozen=True)
class PermissionConfig:
    """Loaded policy: internal domain plus a value for every operation."""

    internal_domain: str
    permissions: Mapping[OperationType, PermissionValue]

    def __post_init__(self) -> None:
        missing = [op.value for op in OperationType if op not in self.permissions]
        if missing:
            raise ValueError(f"PermissionConfig is missing operation(s): {', '.join(missing)}")
        # Freeze the mapping so a shared config cannot be mutated by callers.
        object.__setattr__(self, "permissions", MappingProxyType(dict(self.permissions)))

    def to_json(self) -> dict[str, Any]:
        return {
            "internalDomain": self.internal_domain,
            "permissions": {op.value: self.permissions[op].to_json() for op in OperationType},
        }


@dataclass(frozen=True)
class PermissionCheckResult:
    action: PermissionAction
    condition: AttendeeCondition

    @property
    def allowed(self) -> bool:
        return self.action is PermissionAction.ALLOW


_EXTERNAL_DENIED = ConditionalPermission(
    self_only=PermissionAction.ALLOW,
    internal=PermissionAction.ALLOW,
    external=PermissionAction.DENY,
)

DEFAULT_PERMISSION_CONFIG = PermissionConfig(
    internal_domain="",
    permissions={
        OperationType.READ: FlatPermission(PermissionAction.ALLOW),
        OperationType.CREATE: _EXTERNAL_DENIED,
        OperationType.UPDATE: _EXTERNAL_DENIED,
        OperationType.DELETE: _EXTERNAL_DENIED,
    },
)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_permission_value(raw: Any) -> PermissionValue:
    """Parse a policy entry: ``"allow"``/``"deny"`` or a three-way mapping.

    Raises ``ValueError`` when the entry has neither shape.
    """
    if isinstance(raw, str):
        return FlatPermission(PermissionAction(raw.strip().lower()))

    if isinstance(raw, Mapping):
        actions: dict[str, PermissionAction] = {}
        for condition in AttendeeCondition:
            value = raw.get(condition.value)
            if not isinstance(value, str):
                raise ValueError(f"conditional permission is missing '{condition.value}'")
            actions[condition.value] = PermissionAction(value.strip().lower())
        return ConditionalPermission(**actions)

    raise ValueError(f"permission must be an action string or an object, got {type(raw).__name__}")


def merge_permission_config(raw: Mapping[str, Any], default: PermissionConfig) -> PermissionConfig:
    """Overlay a parsed policy document on *default*, one field at a time.

    Each of ``internalDomain`` and the four operation entries is taken from
    *raw* when present and well-typed, otherwise from *default*.
    """
    internal_domain = raw.get("internalDomain")
    if not isinstance(internal_domain, str):
        if internal_domain is not None:
            logger.warning("Ignoring non-string internalDomain in permission config")
        internal_domain = default.internal_domain

    raw_permissions = raw.get("permissions")
    if not isinstance(raw_permissions, Mapping):
        if raw_permissions is not None:
            logger.warning("Ignoring non-object 'permissions' in permission config")
        raw_permissions = {}

    permissions: dict[OperationType, PermissionValue] = {}
    for operation in OperationType:
        entry = raw_permissions.get(operation.value)
        if entry is None:
            permissions[operation] = default.permissions[operation]
            continue
        try:
            permissions[operation] = parse_permission_value(entry)
        except ValueError as exc:
            logger.warning(
                "Invalid '%s' permission in config (%s); using default",
                operation.value,
                exc,
            )
            permissions[operation] = default.permissions[operation]

    return PermissionConfig(internal_domain=internal_domain.strip(), permissions=permissions)


def load_permission_config(
    path: str | Path | None = None,
    *,
    default: PermissionConfig = DEFAULT_PERMISSION_CONFIG,
) -> PermissionConfig:
    """Load the policy at *path*, falling back to *default*.

    - ``path`` is None: *default* is returned as-is.
    - ``path`` does not exist: *default* is written there (parents created)
      and returned.  A failed write is logged only.
    - ``path`` exists: fields present in the file override *default*; a file
      that cannot be read or parsed yields *default*.
    """
    if path is None:
        return default

    config_path = Path(path)
    if not config_path.exists():
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            config_path.write_text(
                json.dumps(default.to_json(), indent=2) + "\n",
                encoding="utf-8",
            )
            logger.info("Wrote default permission config to %s", config_path)
        except OSError as exc:
            logger.error("Failed to write default permission config to %s: %s", config_path, exc)
        return default

    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("Failed to load permission config from %s: %s", config_path, exc)
        return default

    if not isinstance(raw, Mapping):
        logger.error("Permission config at %s must be a JSON object; using defaults", config_path)
        return default

    return merge_permission_config(raw, default)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


def classify_attendees(
    attendees: Iterable[str],
    self_email: str,
    internal_domain: str,
) -> AttendeeCondition:
    """Classify the attendees other than *self_email*."""
    normalized_self = self_email.lower()
    others = [email.lower() for email in attendees if email.lower() != normalized_self]

    if not others:
        return AttendeeCondition.SELF_ONLY

    if internal_domain:
        suffix = f"@{internal_domain.lower()}"
        if all(email.endswith(suffix) for email in others):
            return AttendeeCondition.INTERNAL

    return AttendeeCondition.EXTERNAL


def check_permission(
    config: PermissionConfig,
    operation: OperationType | str,
    attendees: Iterable[str],
    self_email: str,
) -> PermissionCheckResult:
    """Decide whether *operation* may run on an event with *attendees*.

    The condition is always reported, even when a flat value ignores it.
    """
    operation = OperationType(operation)
    condition = classify_attendees(attendees, self_email, config.internal_domain)
    value = config.permissions[operation]

    if isinstance(value, FlatPermission):
        action = value.action
    elif isinstance(value, ConditionalPermission):
        action = value.action_for(condition)
    else:
        raise TypeError(f"Unsupported permission value: {value!r}")

    return PermissionCheckResult(action=action, condition=condition)


CONDITION_LABELS: Mapping[AttendeeCondition, str] = MappingProxyType(
    {
        AttendeeCondition.SELF_ONLY: "only yourself",
        AttendeeCondition.INTERNAL: "internal members",
        AttendeeCondition.EXTERNAL: "external participants",
    }
)


def deny_message(operation: OperationType | str, condition: AttendeeCondition | str) -> str:
    """Render the user-facing explanation for a denied operation."""
    operation = OperationType(operation)
    condition = AttendeeCondition(condition)
    return f"{operation.value} is not permitted on events with {CONDITION_LABELS[condition]}."
