"""
Pipeline Controller — runs one pipeline action against one volunteer.

Each volunteer id moves through its own action phase:

    idle --invoke--> pending --backend ok--> applied
                             --error------> failed

While an id is pending, a second invoke for it is refused locally with
ConcurrentActionError; other ids are unaffected. Input and precondition
problems raise ValidationError before the phase changes, so they never
hold the lock and never reach the network. Every outcome, local refusals
included, is counted in `pipeline_actions_total`.

On success the controller returns the volunteer with the transition below
applied; on failure the volunteer passed in is left untouched and the error
propagates unchanged. Mutating calls are not retried here (the session's
single refresh-and-retry on 401 is the only repeat).

    action                    requires                  volunteer_status   other fields
    start_background_check    applied                   background_check   background_check_status=pending
    approve_background_check  background_check          training           background_check_status=approved
    fail_background_check     background_check          rejected           background_check_status=rejected, rejection_reason
    complete_training         training                  (unchanged)        training_status=completed
    approve_volunteer         training, completed       active             -
    reject_application        applied|bg check|training rejected           rejection_reason
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from casa_pipeline.errors import CasaError, ConcurrentActionError, Forbidden, InvalidTransition, ValidationError
from casa_pipeline.middleware.metrics import pipeline_action_duration_seconds, pipeline_actions_total
from casa_pipeline.schemas.schemas import (
    ActionPhase,
    BackgroundCheckStatus,
    PipelineAction,
    PipelineActionRequest,
    PipelineOutcome,
    TrainingStatus,
    Volunteer,
    VolunteerStatus,
)
from casa_pipeline.services.pipeline_policy import REASON_REQUIRED, actions_for_volunteer
from casa_pipeline.services.session_store import SessionStore
from casa_pipeline.services.volunteer_service import VolunteerService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    new_status: VolunteerStatus | None
    changes: dict = field(default_factory=dict)
    records_reason: bool = False


TRANSITIONS: dict[PipelineAction, Transition] = {
    PipelineAction.START_BACKGROUND_CHECK: Transition(
        VolunteerStatus.BACKGROUND_CHECK,
        {"background_check_status": BackgroundCheckStatus.PENDING},
    ),
    PipelineAction.APPROVE_BACKGROUND_CHECK: Transition(
        VolunteerStatus.TRAINING,
        {"background_check_status": BackgroundCheckStatus.APPROVED},
    ),
    PipelineAction.FAIL_BACKGROUND_CHECK: Transition(
        VolunteerStatus.REJECTED,
        {"background_check_status": BackgroundCheckStatus.REJECTED},
        records_reason=True,
    ),
    PipelineAction.COMPLETE_TRAINING: Transition(
        None,
        {"training_status": TrainingStatus.COMPLETED},
    ),
    PipelineAction.APPROVE_VOLUNTEER: Transition(VolunteerStatus.ACTIVE),
    PipelineAction.REJECT_APPLICATION: Transition(VolunteerStatus.REJECTED, records_reason=True),
}


def apply_transition(volunteer: Volunteer, action: PipelineAction, rejection_reason: str | None = None) -> Volunteer:
    transition = TRANSITIONS[action]
    update = dict(transition.changes)
    if transition.new_status is not None:
        update["volunteer_status"] = transition.new_status
    if transition.records_reason:
        update["rejection_reason"] = rejection_reason
    return volunteer.model_copy(update=update)


def _value_of(status) -> str:
    return str(getattr(status, "value", status))


class PipelineController:
    def __init__(self, session: SessionStore, volunteers: VolunteerService):
        self.session = session
        self.volunteers = volunteers
        self._phases: dict[str, ActionPhase] = {}
        self._errors: dict[str, str] = {}

    # ── Per-volunteer phase ──────────────────────────────────────────────

    def phase(self, volunteer_id: str) -> ActionPhase:
        return self._phases.get(volunteer_id, ActionPhase.IDLE)

    def last_error(self, volunteer_id: str) -> str | None:
        return self._errors.get(volunteer_id)

    def is_pending(self, volunteer_id: str) -> bool:
        return self.phase(volunteer_id) is ActionPhase.PENDING

    def has_pending(self) -> bool:
        return any(p is ActionPhase.PENDING for p in self._phases.values())

    def reset(self) -> None:
        """Forget settled phases; pending ones belong to calls still running."""
        self._phases = {vid: p for vid, p in self._phases.items() if p is ActionPhase.PENDING}
        self._errors.clear()

    # ── Validation ───────────────────────────────────────────────────────

    def validate(
        self,
        volunteer: Volunteer,
        action: PipelineAction | str,
        notes: str | None = None,
        rejection_reason: str | None = None,
    ) -> PipelineActionRequest:
        try:
            action = PipelineAction(action)
        except ValueError:
            raise ValidationError(f"Unknown pipeline action: {action}")

        available = {d.action for d in actions_for_volunteer(volunteer)}
        if action not in available:
            status = _value_of(volunteer.volunteer_status)
            if action is PipelineAction.APPROVE_VOLUNTEER and volunteer.training_status != TrainingStatus.COMPLETED:
                raise InvalidTransition("Training must be completed before a volunteer can be approved")
            raise InvalidTransition(f"'{action.value}' is not available for a volunteer in '{status}'")

        reason = (rejection_reason or "").strip()
        if action in REASON_REQUIRED and not reason:
            raise ValidationError("A rejection reason is required")

        return PipelineActionRequest(
            action=action,
            notes=(notes or "").strip() or None,
            rejection_reason=reason if action in REASON_REQUIRED else None,
        )

    # ── Invocation ───────────────────────────────────────────────────────

    async def invoke(
        self,
        volunteer: Volunteer,
        action: PipelineAction | str,
        *,
        notes: str | None = None,
        rejection_reason: str | None = None,
    ) -> PipelineOutcome:
        vid = volunteer.id
        if self.is_pending(vid):
            pipeline_actions_total.labels(action=_value_of(action), outcome=ConcurrentActionError.code).inc()
            raise ConcurrentActionError()

        try:
            request = self.validate(volunteer, action, notes, rejection_reason)
            org_id = self.session.organization_id
            if volunteer.organization_id and org_id and volunteer.organization_id != org_id:
                raise Forbidden("Volunteer belongs to a different organization")
        except CasaError as exc:
            pipeline_actions_total.labels(action=_value_of(action), outcome=exc.code).inc()
            raise

        self._phases[vid] = ActionPhase.PENDING
        self._errors.pop(vid, None)
        log_extra = {"volunteer_id": vid, "action": request.action.value}
        start = time.monotonic()
        succeeded = False
        try:
            result = await self.volunteers.submit_pipeline_action(vid, request)
            succeeded = True
        except CasaError as exc:
            self._errors[vid] = exc.message
            pipeline_actions_total.labels(action=request.action.value, outcome=exc.code).inc()
            logger.warning(
                "Pipeline action %s on volunteer %s failed: %s", request.action.value, vid, exc.message,
                extra={**log_extra, "outcome": exc.code},
            )
            raise
        finally:
            self._phases[vid] = ActionPhase.APPLIED if succeeded else ActionPhase.FAILED
            pipeline_action_duration_seconds.observe(time.monotonic() - start)

        updated = apply_transition(volunteer, request.action, request.rejection_reason)
        expected = _value_of(updated.volunteer_status)
        if result.new_status and result.new_status != expected:
            logger.warning(
                "Backend reported status %s after %s, expected %s; next reload will reconcile",
                result.new_status, request.action.value, expected, extra=log_extra,
            )

        pipeline_actions_total.labels(action=request.action.value, outcome="applied").inc()
        logger.info(
            "Pipeline action %s on volunteer %s: %s -> %s",
            request.action.value, vid, _value_of(volunteer.volunteer_status), expected,
            extra={**log_extra, "outcome": "applied"},
        )
        return PipelineOutcome(volunteer=updated, result=result)
