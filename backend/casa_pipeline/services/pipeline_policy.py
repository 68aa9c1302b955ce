"""
Pipeline Policy — which actions a volunteer's pipeline state offers.

A volunteer's place in the pipeline is read into a tagged state instead of
being re-derived from `volunteer_status` and `training_status` at each call
site:

    Applied
    BackgroundCheck
    Training(completed)      completed = training_status == "completed"
    Closed(status)           active | inactive | rejected | suspended | unknown

`actions_for_state()` is total over those variants. `actions_for(status)`
is the status-only view used for column headers and the JSON API; it treats
a training volunteer as not yet completed.

`approve_volunteer` hangs off `Training(completed=True)` only. A record
with `training_status == "completed"` in any other column (an applied or
background-check record with stale training data, or a closed one) is not
offered approval: the column decides the state first, and only a volunteer
still in training can move on to active.

Order and variant of each descriptor are part of the contract: the first
action is the one the UI renders as the main button.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from casa_pipeline.auth.capabilities import CapabilityMap
from casa_pipeline.auth.evaluator import roles_of
from casa_pipeline.schemas.schemas import (
    ActionDescriptor,
    ActionVariant,
    PipelineAction,
    TrainingStatus,
    Volunteer,
    VolunteerStatus,
)

if TYPE_CHECKING:
    from casa_pipeline.services.session_store import SessionStore


@dataclass(frozen=True)
class Applied:
    pass


@dataclass(frozen=True)
class BackgroundCheck:
    pass


@dataclass(frozen=True)
class Training:
    completed: bool = False


@dataclass(frozen=True)
class Closed:
    status: str


PipelineState = Applied | BackgroundCheck | Training | Closed


def _descriptor(action: PipelineAction, label: str, variant: ActionVariant) -> ActionDescriptor:
    return ActionDescriptor(action=action, label=label, variant=variant)


START_BACKGROUND_CHECK = _descriptor(PipelineAction.START_BACKGROUND_CHECK, "Start BG Check", ActionVariant.PRIMARY)
APPROVE_BACKGROUND_CHECK = _descriptor(PipelineAction.APPROVE_BACKGROUND_CHECK, "Approve BG", ActionVariant.PRIMARY)
FAIL_BACKGROUND_CHECK = _descriptor(PipelineAction.FAIL_BACKGROUND_CHECK, "Fail BG", ActionVariant.DANGER)
COMPLETE_TRAINING = _descriptor(PipelineAction.COMPLETE_TRAINING, "Complete Training", ActionVariant.PRIMARY)
APPROVE_VOLUNTEER = _descriptor(PipelineAction.APPROVE_VOLUNTEER, "Approve & Activate", ActionVariant.PRIMARY)
REJECT_APPLICATION = _descriptor(PipelineAction.REJECT_APPLICATION, "Reject", ActionVariant.DANGER)

# Actions that must carry a non-empty rejection reason
REASON_REQUIRED: frozenset[PipelineAction] = frozenset({
    PipelineAction.REJECT_APPLICATION,
    PipelineAction.FAIL_BACKGROUND_CHECK,
})

TERMINAL_STATUSES: frozenset[VolunteerStatus] = frozenset({
    VolunteerStatus.ACTIVE,
    VolunteerStatus.INACTIVE,
    VolunteerStatus.REJECTED,
    VolunteerStatus.SUSPENDED,
})


def pipeline_state(volunteer: Volunteer) -> PipelineState:
    status = volunteer.volunteer_status
    if status == VolunteerStatus.APPLIED:
        return Applied()
    if status == VolunteerStatus.BACKGROUND_CHECK:
        return BackgroundCheck()
    if status == VolunteerStatus.TRAINING:
        return Training(completed=volunteer.training_status == TrainingStatus.COMPLETED)
    return Closed(status=str(getattr(status, "value", status)))


def state_for_status(status: VolunteerStatus | str) -> PipelineState:
    try:
        status = VolunteerStatus(status)
    except ValueError:
        return Closed(status=str(status))
    if status is VolunteerStatus.APPLIED:
        return Applied()
    if status is VolunteerStatus.BACKGROUND_CHECK:
        return BackgroundCheck()
    if status is VolunteerStatus.TRAINING:
        return Training(completed=False)
    return Closed(status=status.value)


def actions_for_state(state: PipelineState) -> tuple[ActionDescriptor, ...]:
    if isinstance(state, Applied):
        return (START_BACKGROUND_CHECK, REJECT_APPLICATION)
    if isinstance(state, BackgroundCheck):
        return (APPROVE_BACKGROUND_CHECK, FAIL_BACKGROUND_CHECK)
    if isinstance(state, Training):
        if state.completed:
            return (APPROVE_VOLUNTEER, REJECT_APPLICATION)
        return (COMPLETE_TRAINING, REJECT_APPLICATION)
    # Closed: further changes happen through direct edits
    return ()


def actions_for(status: VolunteerStatus | str) -> tuple[ActionDescriptor, ...]:
    """Candidate actions for a status; unknown statuses get none."""
    return actions_for_state(state_for_status(status))


def actions_for_volunteer(volunteer: Volunteer) -> tuple[ActionDescriptor, ...]:
    return actions_for_state(pipeline_state(volunteer))


def authorized_actions_for(
    status: VolunteerStatus | str,
    session: SessionStore | None,
    capability_map: CapabilityMap,
) -> list[ActionDescriptor]:
    """`actions_for(status)` narrowed to what the session may invoke."""
    roles = roles_of(session)
    return [d for d in actions_for(status) if capability_map.allows(d.action, roles)]


def authorized_actions_for_volunteer(
    volunteer: Volunteer,
    session: SessionStore | None,
    capability_map: CapabilityMap,
) -> list[ActionDescriptor]:
    roles = roles_of(session)
    return [d for d in actions_for_volunteer(volunteer) if capability_map.allows(d.action, roles)]
