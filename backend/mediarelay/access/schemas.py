"""Pydantic schemas for access control.

This module defines the data models for whitelist-based gating:
- PrincipalKind: Enum for who can be granted access (user or group)
- Principal: Identity of a user or group, unique by (kind, id)
- WhitelistEntry: A principal plus an optional human-readable label
- AccessDecision: Result of AccessGate.authorize()

Rooms (multi-person chats without a group) are gated as group-kind
principals keyed by the room id.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PrincipalKind(str, Enum):
    """Kinds of principals that can be whitelisted."""
    USER = "user"
    GROUP = "group"


class Principal(BaseModel):
    """A user or group identity recognized by the messaging platform."""
    model_config = ConfigDict(frozen=True)

    kind: PrincipalKind = Field(..., description="user or group")
    id: str = Field(..., min_length=1, description="Platform identifier")

    @classmethod
    def user(cls, user_id: str) -> "Principal":
        return cls(kind=PrincipalKind.USER, id=user_id)

    @classmethod
    def group(cls, group_id: str) -> "Principal":
        return cls(kind=PrincipalKind.GROUP, id=group_id)

    @classmethod
    def from_target(cls, target: str) -> "Principal":
        """Infer the principal kind from a raw LINE id.

        LINE group ids start with ``C`` and room ids with ``R``; everything
        else is treated as a user id.
        """
        target = target.strip()
        if target[:1] in ("C", "R"):
            return cls.group(target)
        return cls.user(target)


class WhitelistEntry(BaseModel):
    """A principal authorized to trigger archival."""
    model_config = ConfigDict(frozen=True)

    principal: Principal
    label: Optional[str] = Field(None, description="Display name at enrollment time")

    @property
    def key(self) -> tuple:
        return (self.principal.kind.value, self.principal.id)


class AccessDecision(str, Enum):
    """Outcome of gating one inbound event.

    ALLOWED and REQUIRES_ENROLLMENT are the two non-terminal results; the
    others mean the gate already handled (and replied to) the event.
    """
    ALLOWED = "allowed"
    REQUIRES_ENROLLMENT = "requires_enrollment"
    ENROLLED = "enrolled"
    ADMIN_HANDLED = "admin_handled"
    DENIED = "denied"

    @property
    def short_circuits(self) -> bool:
        return self is not AccessDecision.ALLOWED
