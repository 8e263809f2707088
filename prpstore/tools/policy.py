"""Caller identity and the two-tier authorization policy.

Authentication happens outside prpstore; by the time a tool call arrives the
caller is a verified handle. The policy decides what that handle may do:
read tools are open to every authenticated caller, write tools only to the
handles in the privileged set given at construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

READ = "read"
WRITE = "write"

DENIED_REASON = "Insufficient permissions"


@dataclass(frozen=True)
class Identity:
    handle: str
    display_name: str = ""
    tier: str = READ

    @property
    def authenticated(self) -> bool:
        return bool(self.handle)


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str = ""


ALLOW = PolicyDecision(allowed=True)
DENY = PolicyDecision(allowed=False, reason=DENIED_REASON)


class AuthorizationPolicy:
    def __init__(self, privileged_handles: Iterable[str] = ()) -> None:
        self._privileged = frozenset(h for h in privileged_handles if h)

    def resolve_identity(self, handle: str, display_name: str = "") -> Identity:
        """Attach the permission tier to an externally authenticated handle."""
        handle = handle.strip()
        tier = WRITE if handle in self._privileged else READ
        return Identity(handle=handle, display_name=display_name or handle, tier=tier)

    def authorize(self, operation, identity: Identity) -> PolicyDecision:
        """Decide whether ``identity`` may run ``operation`` (anything with a ``tier``).

        Membership is checked on the handle itself, so a caller-supplied tier
        claim grants nothing.
        """
        if not identity.authenticated:
            return DENY
        if operation.tier == READ:
            return ALLOW
        if identity.handle in self._privileged:
            return ALLOW
        return DENY
