from casa_pipeline.auth.roles import Role, ADMIN_ROLES, SUPER_ADMIN_ROLES
from casa_pipeline.auth.capabilities import Capability, CapabilityMap, ACTION_CAPABILITIES, DEFAULT_ROLE_MATRIX
from casa_pipeline.auth.evaluator import has_role, is_admin, is_super_admin, has_capability, capabilities_of

__all__ = [
    "Role", "ADMIN_ROLES", "SUPER_ADMIN_ROLES",
    "Capability", "CapabilityMap", "ACTION_CAPABILITIES", "DEFAULT_ROLE_MATRIX",
    "has_role", "is_admin", "is_super_admin", "has_capability", "capabilities_of",
]
