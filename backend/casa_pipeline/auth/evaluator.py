"""
Authorization Evaluator — role checks over the current session.

Every check is a pure function of the session's role set. An absent
session, or one without a user, holds no roles, so every check answers
False instead of raising.

The evaluator does not decide which pipeline actions are visible; the board
combines `actions_for(...)` with a `CapabilityMap` it owns.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from casa_pipeline.auth.capabilities import Capability, CapabilityMap
from casa_pipeline.auth.roles import ADMIN_ROLES, SUPER_ADMIN_ROLES
from casa_pipeline.config import settings

if TYPE_CHECKING:
    from casa_pipeline.services.session_store import SessionStore

logger = logging.getLogger(__name__)


def roles_of(session: SessionStore | None) -> frozenset[str]:
    if session is None or session.user is None:
        return frozenset()
    return session.user.role_set


def has_role(session: SessionStore | None, roles: str | Iterable[str]) -> bool:
    """True if the session holds ANY of the given roles."""
    wanted = frozenset([roles]) if isinstance(roles, str) else frozenset(roles)
    return bool(roles_of(session) & wanted)


def is_admin(session: SessionStore | None) -> bool:
    return has_role(session, ADMIN_ROLES)


def is_super_admin(session: SessionStore | None) -> bool:
    """Platform-level operator check.

    Besides role membership, a single account configured through
    `LEGACY_SUPER_ADMIN_EMAIL` is treated as super admin. That escape hatch
    sits outside the role matrix, is off unless configured, and is refused
    by the production settings validator.
    """
    if has_role(session, SUPER_ADMIN_ROLES):
        return True
    legacy_email = settings.legacy_super_admin_email
    if not legacy_email or session is None or session.user is None:
        return False
    if session.user.email.lower() == legacy_email.lower():
        logger.warning("Super-admin granted to %s via legacy email override", session.user.id)
        return True
    return False


def has_capability(
    session: SessionStore | None,
    capability: Capability,
    capability_map: CapabilityMap,
) -> bool:
    return bool(roles_of(session) & capability_map.roles_for(capability))


def capabilities_of(session: SessionStore | None, capability_map: CapabilityMap) -> list[str]:
    """Sorted capability values held by the session, for the UI."""
    return sorted(c.value for c in capability_map.capabilities_of(roles_of(session)))
