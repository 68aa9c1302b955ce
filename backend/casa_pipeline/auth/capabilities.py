"""
Capabilities and the role matrix for the volunteer pipeline.

A capability is a named permission ("can approve volunteers"), held by a
set of roles and independent of any single action. The board binds actions
to capabilities through `ACTION_CAPABILITIES`; the matrix itself is
configuration and can be replaced per deployment via
`settings.pipeline_role_matrix`.

    capability ──(role matrix)──> roles
    action ──(ACTION_CAPABILITIES)──> capability
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum

from casa_pipeline.auth.roles import ADMIN_ROLES, COORDINATOR_ROLES, SUPER_ADMIN_ROLES
from casa_pipeline.schemas.schemas import PipelineAction


class Capability(str, Enum):
    VIEW_PIPELINE = "pipeline:view"
    RUN_BACKGROUND_CHECKS = "pipeline:background_check"
    MANAGE_TRAINING = "pipeline:training"
    APPROVE_VOLUNTEERS = "pipeline:approve"
    REJECT_APPLICATIONS = "pipeline:reject"


_STAFF = ADMIN_ROLES | SUPER_ADMIN_ROLES | COORDINATOR_ROLES
_APPROVERS = ADMIN_ROLES | SUPER_ADMIN_ROLES

DEFAULT_ROLE_MATRIX: dict[Capability, frozenset[str]] = {
    Capability.VIEW_PIPELINE: _STAFF,
    Capability.RUN_BACKGROUND_CHECKS: _STAFF,
    Capability.MANAGE_TRAINING: _STAFF,
    Capability.APPROVE_VOLUNTEERS: _APPROVERS,
    Capability.REJECT_APPLICATIONS: _APPROVERS,
}

ACTION_CAPABILITIES: dict[PipelineAction, Capability] = {
    PipelineAction.START_BACKGROUND_CHECK: Capability.RUN_BACKGROUND_CHECKS,
    PipelineAction.APPROVE_BACKGROUND_CHECK: Capability.RUN_BACKGROUND_CHECKS,
    PipelineAction.FAIL_BACKGROUND_CHECK: Capability.RUN_BACKGROUND_CHECKS,
    PipelineAction.COMPLETE_TRAINING: Capability.MANAGE_TRAINING,
    PipelineAction.APPROVE_VOLUNTEER: Capability.APPROVE_VOLUNTEERS,
    PipelineAction.REJECT_APPLICATION: Capability.REJECT_APPLICATIONS,
}


class CapabilityMap:
    """Resolves which roles may invoke which pipeline actions."""

    def __init__(
        self,
        role_matrix: Mapping[Capability, Iterable[str]] | None = None,
        action_capabilities: Mapping[PipelineAction, Capability] | None = None,
    ):
        matrix = DEFAULT_ROLE_MATRIX if role_matrix is None else role_matrix
        self.role_matrix: dict[Capability, frozenset[str]] = {
            cap: frozenset(roles) for cap, roles in matrix.items()
        }
        self.action_capabilities = dict(action_capabilities or ACTION_CAPABILITIES)

    @classmethod
    def from_config(cls, overrides: Mapping[str, Iterable[str]]) -> CapabilityMap:
        """Build a map from the default matrix with per-capability overrides.

        Keys are capability values (e.g. ``"pipeline:approve"``); unknown keys
        raise ValueError so a typo in configuration cannot silently widen or
        narrow access.
        """
        matrix: dict[Capability, Iterable[str]] = dict(DEFAULT_ROLE_MATRIX)
        for key, roles in overrides.items():
            matrix[Capability(key)] = roles
        return cls(matrix)

    def roles_for(self, capability: Capability) -> frozenset[str]:
        return self.role_matrix.get(capability, frozenset())

    def capabilities_of(self, roles: Iterable[str]) -> set[Capability]:
        held = frozenset(roles)
        return {cap for cap, allowed in self.role_matrix.items() if held & allowed}

    def allows(self, action: PipelineAction, roles: Iterable[str]) -> bool:
        capability = self.action_capabilities.get(action)
        if capability is None:
            return False
        return bool(frozenset(roles) & self.roles_for(capability))
