"""
Role names as the WordPress backend reports them.

The backend mixes plain WordPress roles with organization-scoped CASA roles
(`casa_` prefix). Both spellings mean the same thing inside one
organization, so every grouping below lists both.
"""

from enum import Enum


class Role(str, Enum):
    ADMINISTRATOR = "administrator"
    CASA_ADMINISTRATOR = "casa_administrator"
    CASA_SUPER_ADMIN = "casa_super_admin"
    SUPERVISOR = "supervisor"
    CASA_SUPERVISOR = "casa_supervisor"
    COORDINATOR = "coordinator"
    CASA_COORDINATOR = "casa_coordinator"
    VOLUNTEER = "volunteer"
    CASA_VOLUNTEER = "casa_volunteer"
    VIEWER = "viewer"


# ── Coarse groupings ──
ADMIN_ROLES: frozenset[str] = frozenset({
    Role.ADMINISTRATOR.value,
    Role.CASA_ADMINISTRATOR.value,
    Role.SUPERVISOR.value,
    Role.CASA_SUPERVISOR.value,
})

SUPER_ADMIN_ROLES: frozenset[str] = frozenset({
    Role.CASA_SUPER_ADMIN.value,
    Role.ADMINISTRATOR.value,
})

COORDINATOR_ROLES: frozenset[str] = frozenset({
    Role.COORDINATOR.value,
    Role.CASA_COORDINATOR.value,
})

# Fallback when the profile endpoint returns no roles at all
DEFAULT_ROLES: tuple[str, ...] = (Role.VOLUNTEER.value,)
