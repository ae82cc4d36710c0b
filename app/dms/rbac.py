"""
Role-derived capabilities.

Roles are plain strings (``Role.key``). Capabilities are computed once per
request from the actor's roles and handed to the workflow explicitly; nothing
downstream reads roles from ``g`` on its own.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.dms.errors import PermissionError

ADMIN = "Admin"
QHSE = "QHSE"
APPROVER = "Approver"
AUTHOR = "Author"

KNOWN_ROLES = (ADMIN, QHSE, APPROVER, AUTHOR)
ROLE_PRIORITY = KNOWN_ROLES


@dataclass(frozen=True)
class Capabilities:
    is_admin: bool = False
    is_qhse: bool = False
    is_approver: bool = False
    is_author: bool = False
    roles: frozenset[str] = frozenset()

    def has_any_role(self, wanted: Iterable[str]) -> bool:
        return has_any_role(self.roles, wanted)

    def has_all_roles(self, wanted: Iterable[str]) -> bool:
        return has_all_roles(self.roles, wanted)

    @property
    def can_publish(self) -> bool:
        return self.is_qhse or self.is_admin

    def to_dict(self) -> dict[str, bool]:
        return {
            "isAdmin": self.is_admin,
            "isQHSE": self.is_qhse,
            "isApprover": self.is_approver,
            "isAuthor": self.is_author,
        }


NO_CAPABILITIES = Capabilities()


def capabilities_for(roles: Iterable[str]) -> Capabilities:
    role_set = frozenset(r for r in roles if r)
    return Capabilities(
        is_admin=ADMIN in role_set,
        is_qhse=QHSE in role_set,
        is_approver=APPROVER in role_set,
        is_author=AUTHOR in role_set,
        roles=role_set,
    )


def preferred_role(roles: Iterable[str]) -> str | None:
    """
    Highest-priority role for display/auditing: Admin > QHSE > Approver > Author,
    otherwise the first role present. Unordered inputs are sorted first so the
    fallback is stable.
    """
    if isinstance(roles, (set, frozenset)):
        ordered = sorted(roles)
    else:
        ordered = list(roles)
    ordered = [r for r in ordered if r]
    for candidate in ROLE_PRIORITY:
        if candidate in ordered:
            return candidate
    return ordered[0] if ordered else None


def has_any_role(roles: Iterable[str], wanted: Iterable[str]) -> bool:
    return not frozenset(roles).isdisjoint(wanted)


def has_all_roles(roles: Iterable[str], wanted: Iterable[str]) -> bool:
    return frozenset(wanted).issubset(frozenset(roles))


def current_capabilities() -> Capabilities:
    return getattr(g, "capabilities", None) or NO_CAPABILITIES


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return jsonify({"error": "authentication_required", "message": "Sign in first."}), 401
        return fn(*args, **kwargs)

    return wrapped


def require_roles(*roles: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Route guard: signed in and holding at least one of ``roles``."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        @require_login
        def wrapped(*args: Any, **kwargs: Any):
            if not current_capabilities().has_any_role(roles):
                g.missing_roles = roles
                raise PermissionError()
            return fn(*args, **kwargs)

        return wrapped

    return decorator
