"""
auth/rbac.py -- Role-based access decisions.

authorize() is a pure function: no I/O, no logging, no clock. The caller
resolves role names to Role records (via UserStore.get_roles) and passes them
in, so the same decision logic serves session auth, token auth and tests.

Policy:
  Allowed iff the union of permissions over the principal's roles contains
  every required permission. An empty requirement is always allowed. Deny by
  default: no roles, or roles with no permissions, grant nothing.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from auth.models import Role


@dataclass(frozen=True)
class Decision:
    allowed: bool
    missing: frozenset[str] = frozenset()


def permissions_for(roles: Iterable[Role]) -> frozenset[str]:
    """Return the union of permissions granted by roles."""
    granted: set[str] = set()
    for role in roles:
        granted |= role.permissions
    return frozenset(granted)


def authorize(principal_roles: Iterable[Role], required: Iterable[str]) -> Decision:
    """Decide whether principal_roles cover every permission in required."""
    missing = frozenset(required) - permissions_for(principal_roles)
    return Decision(allowed=not missing, missing=missing)
