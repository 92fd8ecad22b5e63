"""
Per-workspace permission overlays attached to registered command modules.

Overlays are additive: each entry grants one role access. There are no deny
entries; a role that is not listed falls back to the platform default (no access).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class PermissionOverlay:
    entries: tuple[tuple[str, bool], ...] = ()

    @property
    def role_ids(self) -> tuple[str, ...]:
        return tuple(role_id for role_id, _ in self.entries)

    def allows(self, role_id: str) -> bool:
        return str(role_id) in self.role_ids

    def to_payload(self) -> list[dict[str, Any]]:
        return [{"role_id": role_id, "allow": allow} for role_id, allow in self.entries]


class PermissionOverlayBuilder:
    """Collects role grants for one (module, workspace) registration."""

    def __init__(self) -> None:
        self._roles: list[str] = []

    def add_role(self, role_id: str | int, allow: bool = True) -> "PermissionOverlayBuilder":
        if not allow:
            raise ValueError("deny entries are not supported; omit the role instead")
        role = str(role_id)
        if not role:
            raise ValueError("role_id must be non-empty")
        if role not in self._roles:
            self._roles.append(role)
        return self

    def build(self) -> PermissionOverlay:
        return PermissionOverlay(entries=tuple((role, True) for role in self._roles))
