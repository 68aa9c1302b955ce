"""Tests for pipeline action invocation: validation, transitions, in-flight lock, failures."""

import asyncio
import json

import pytest
from prometheus_client import REGISTRY

from casa_pipeline.errors import (
    BackendError,
    ConcurrentActionError,
    Forbidden,
    InvalidTransition,
    SessionExpired,
    ValidationError,
)
from casa_pipeline.schemas.schemas import (
    ActionPhase,
    BackgroundCheckStatus,
    PipelineAction,
    TokenState,
    TrainingStatus,
    Volunteer,
    VolunteerStatus,
)
from casa_pipeline.services.pipeline_controller import PipelineController, apply_transition
from casa_pipeline.services.volunteer_service import VolunteerService


def _volunteer(vid: str, status: str, **fields) -> Volunteer:
    return Volunteer(id=vid, volunteer_status=status, organization_id="1", **fields)


# ── Transition table ──────────────────────────────────────────────────────────

class TestApplyTransition:
    def test_start_background_check_changes_only_status_fields(self):
        before = _volunteer("v1", "applied", background_check_status="expired", first_name="Ana")
        after = apply_transition(before, PipelineAction.START_BACKGROUND_CHECK)
        assert after.volunteer_status == VolunteerStatus.BACKGROUND_CHECK
        assert after.background_check_status == BackgroundCheckStatus.PENDING
        assert after.model_dump(exclude={"volunteer_status", "background_check_status"}) == before.model_dump(
            exclude={"volunteer_status", "background_check_status"}
        )

    def test_fail_background_check_records_reason(self):
        after = apply_transition(_volunteer("v2", "background_check"), PipelineAction.FAIL_BACKGROUND_CHECK, "Record")
        assert after.volunteer_status == VolunteerStatus.REJECTED
        assert after.background_check_status == BackgroundCheckStatus.REJECTED
        assert after.rejection_reason == "Record"

    def test_complete_training_keeps_status(self):
        after = apply_transition(_volunteer("v3", "training"), PipelineAction.COMPLETE_TRAINING)
        assert after.volunteer_status == VolunteerStatus.TRAINING
        assert after.training_status == TrainingStatus.COMPLETED

    def test_original_is_not_mutated(self):
        before = _volunteer("v1", "applied")
        apply_transition(before, PipelineAction.REJECT_APPLICATION, "No show")
        assert before.volunteer_status == VolunteerStatus.APPLIED
        assert before.rejection_reason is None


# ── Validation before the network ─────────────────────────────────────────────

@pytest.mark.asyncio
class TestValidation:
    async def test_reject_without_reason_makes_no_call(self, controller, backend):
        with pytest.raises(ValidationError):
            await controller.invoke(_volunteer("v1", "applied"), PipelineAction.REJECT_APPLICATION)
        with pytest.raises(ValidationError):
            await controller.invoke(_volunteer("v1", "applied"), "reject_application", rejection_reason="   ")
        assert backend.action_calls() == []
        assert controller.phase("v1") is ActionPhase.IDLE

    async def test_fail_background_check_with_empty_reason(self, controller, backend):
        with pytest.raises(ValidationError):
            await controller.invoke(
                _volunteer("v2", "background_check"), PipelineAction.FAIL_BACKGROUND_CHECK, rejection_reason="",
            )
        assert backend.action_calls() == []

    async def test_action_not_offered_for_status(self, controller, backend):
        with pytest.raises(InvalidTransition):
            await controller.invoke(_volunteer("v1", "applied"), PipelineAction.APPROVE_BACKGROUND_CHECK)
        with pytest.raises(InvalidTransition):
            await controller.invoke(_volunteer("v5", "active"), PipelineAction.REJECT_APPLICATION, rejection_reason="x")
        assert backend.action_calls() == []

    @pytest.mark.parametrize("status", ["applied", "background_check", "training", "active"])
    async def test_approve_volunteer_requires_completed_training(self, controller, backend, status):
        volunteer = _volunteer("v9", status, training_status="in_progress")
        with pytest.raises(InvalidTransition, match="Training must be completed"):
            await controller.invoke(volunteer, PipelineAction.APPROVE_VOLUNTEER)
        assert backend.action_calls() == []

    async def test_unknown_action(self, controller, backend):
        with pytest.raises(ValidationError, match="Unknown pipeline action"):
            await controller.invoke(_volunteer("v1", "applied"), "delete_volunteer")
        assert backend.action_calls() == []

    async def test_volunteer_from_other_organization(self, controller, backend):
        volunteer = Volunteer(id="v20", volunteer_status="applied", organization_id="2")
        with pytest.raises(Forbidden):
            await controller.invoke(volunteer, PipelineAction.START_BACKGROUND_CHECK)
        assert backend.action_calls() == []
        assert controller.phase("v20") is ActionPhase.IDLE

    async def test_local_refusals_are_counted(self, controller, backend):
        def count(action, outcome):
            return REGISTRY.get_sample_value("pipeline_actions_total", {"action": action, "outcome": outcome}) or 0

        rejected = count("reject_application", "validation_error")
        unknown = count("delete_volunteer", "validation_error")
        foreign = count("start_background_check", "forbidden")

        with pytest.raises(ValidationError):
            await controller.invoke(_volunteer("v1", "applied"), PipelineAction.REJECT_APPLICATION)
        with pytest.raises(ValidationError):
            await controller.invoke(_volunteer("v1", "applied"), "delete_volunteer")
        with pytest.raises(Forbidden):
            await controller.invoke(
                Volunteer(id="v20", volunteer_status="applied", organization_id="2"),
                PipelineAction.START_BACKGROUND_CHECK,
            )

        assert count("reject_application", "validation_error") == rejected + 1
        assert count("delete_volunteer", "validation_error") == unknown + 1
        assert count("start_background_check", "forbidden") == foreign + 1
        assert backend.action_calls() == []


# ── Successful invocations ────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestInvoke:
    async def test_start_background_check(self, controller, backend):
        before = _volunteer("v1", "applied")
        outcome = await controller.invoke(before, PipelineAction.START_BACKGROUND_CHECK, notes="  called  ")

        assert outcome.volunteer.volunteer_status == VolunteerStatus.BACKGROUND_CHECK
        assert outcome.volunteer.background_check_status == BackgroundCheckStatus.PENDING
        assert outcome.result.new_status == "background_check"
        assert controller.phase("v1") is ActionPhase.APPLIED

        (request,) = backend.action_calls()
        assert request.url.path == "/wp-json/casa/v1/volunteers/v1/pipeline-action"
        assert request.headers["Authorization"].startswith("Bearer ")
        assert json.loads(request.content) == {"action": "start_background_check", "notes": "called"}

    async def test_supervisor_approves_trained_volunteer(self, login_as, backend):
        supervisor = await login_as("supervisor@casa-demo.org")
        controller = PipelineController(supervisor, VolunteerService(supervisor))
        volunteer = _volunteer("v4", "training", training_status="completed")

        outcome = await controller.invoke(volunteer, PipelineAction.APPROVE_VOLUNTEER)

        assert len(backend.action_calls()) == 1
        assert outcome.volunteer.volunteer_status == VolunteerStatus.ACTIVE
        assert outcome.result.user_created is True
        assert outcome.result.username == "vol.v4"
        assert outcome.result.temporary_password == "Tmp-Pass-42"
        assert outcome.result.welcome_email_sent is True

    async def test_reject_sends_trimmed_reason(self, controller, backend):
        outcome = await controller.invoke(
            _volunteer("v3", "training"), PipelineAction.REJECT_APPLICATION, rejection_reason="  Moved away ",
        )
        assert outcome.volunteer.volunteer_status == VolunteerStatus.REJECTED
        assert outcome.volunteer.rejection_reason == "Moved away"
        assert backend.volunteers["v3"]["rejection_reason"] == "Moved away"

    async def test_reason_is_dropped_for_other_actions(self, controller, backend):
        outcome = await controller.invoke(
            _volunteer("v1", "applied"), PipelineAction.START_BACKGROUND_CHECK, rejection_reason="ignored",
        )
        assert outcome.volunteer.rejection_reason is None
        assert b"rejection_reason" not in backend.action_calls()[0].content


# ── In-flight lock ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestInFlightLock:
    async def test_second_call_for_same_volunteer_is_rejected(self, controller, backend):
        backend.action_gate = asyncio.Event()
        volunteer = _volunteer("v1", "applied")

        first = asyncio.create_task(controller.invoke(volunteer, PipelineAction.START_BACKGROUND_CHECK))
        await asyncio.sleep(0)
        assert controller.phase("v1") is ActionPhase.PENDING

        with pytest.raises(ConcurrentActionError):
            await controller.invoke(volunteer, PipelineAction.START_BACKGROUND_CHECK)

        backend.action_gate.set()
        outcome = await first
        assert outcome.volunteer.volunteer_status == VolunteerStatus.BACKGROUND_CHECK
        assert len(backend.action_calls()) == 1

        # released: the next action for the same id is dispatched
        await controller.invoke(outcome.volunteer, PipelineAction.APPROVE_BACKGROUND_CHECK)
        assert len(backend.action_calls()) == 2

    async def test_different_volunteers_are_independent(self, controller, backend):
        backend.action_gate = asyncio.Event()
        first = asyncio.create_task(
            controller.invoke(_volunteer("v1", "applied"), PipelineAction.START_BACKGROUND_CHECK)
        )
        second = asyncio.create_task(
            controller.invoke(_volunteer("v2", "background_check"), PipelineAction.APPROVE_BACKGROUND_CHECK)
        )
        await asyncio.sleep(0)
        assert controller.is_pending("v1") and controller.is_pending("v2")

        backend.action_gate.set()
        results = await asyncio.gather(first, second)
        assert [r.volunteer.volunteer_status for r in results] == [
            VolunteerStatus.BACKGROUND_CHECK,
            VolunteerStatus.TRAINING,
        ]

    async def test_lock_released_after_failure(self, controller, backend):
        backend.action_error = (500, {"message": "Database unavailable"})
        volunteer = _volunteer("v1", "applied")
        with pytest.raises(BackendError):
            await controller.invoke(volunteer, PipelineAction.START_BACKGROUND_CHECK)
        assert controller.phase("v1") is ActionPhase.FAILED
        assert controller.last_error("v1") == "Database unavailable"

        backend.action_error = None
        await controller.invoke(volunteer, PipelineAction.START_BACKGROUND_CHECK)
        assert controller.phase("v1") is ActionPhase.APPLIED
        assert controller.last_error("v1") is None


# ── Failures ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestFailures:
    async def test_forbidden_leaves_volunteer_untouched(self, controller, backend):
        backend.action_error = (403, {"code": "rest_forbidden", "message": "Sorry, you are not allowed to do that."})
        volunteer = _volunteer("v4", "training", training_status="completed")
        before = volunteer.model_dump_json()

        with pytest.raises(Forbidden, match="not allowed"):
            await controller.invoke(volunteer, PipelineAction.APPROVE_VOLUNTEER)

        assert volunteer.model_dump_json() == before
        assert len(backend.action_calls()) == 1

    async def test_handler_failure_body_is_backend_error(self, controller, backend):
        backend.action_error = (200, {"success": False, "message": "Volunteer is locked"})
        with pytest.raises(BackendError, match="Volunteer is locked"):
            await controller.invoke(_volunteer("v1", "applied"), PipelineAction.START_BACKGROUND_CHECK)

    async def test_expired_token_and_failed_refresh_never_reach_pipeline(self, login_as, backend):
        backend.token_ttl = -60
        backend.refresh_ok = False
        session = await login_as()
        assert session.token_state is TokenState.EXPIRED
        controller = PipelineController(session, VolunteerService(session))

        with pytest.raises(SessionExpired):
            await controller.invoke(_volunteer("v1", "applied"), PipelineAction.START_BACKGROUND_CHECK)

        assert backend.action_calls() == []
        assert len(backend.calls("/token/refresh")) == 1
        assert session.token_state is TokenState.ABSENT
        assert controller.phase("v1") is ActionPhase.FAILED

    async def test_expired_token_is_refreshed_before_the_action(self, login_as, backend):
        backend.token_ttl = -60
        session = await login_as()
        backend.token_ttl = 3600
        controller = PipelineController(session, VolunteerService(session))

        outcome = await controller.invoke(_volunteer("v1", "applied"), PipelineAction.START_BACKGROUND_CHECK)

        assert outcome.volunteer.volunteer_status == VolunteerStatus.BACKGROUND_CHECK
        assert len(backend.calls("/token/refresh")) == 1
        assert len(backend.action_calls()) == 1
        assert session.token_state is TokenState.VALID

    async def test_401_refreshes_and_retries_once(self, controller, backend, session):
        backend.force_401 = 1
        outcome = await controller.invoke(_volunteer("v1", "applied"), PipelineAction.START_BACKGROUND_CHECK)
        assert outcome.volunteer.volunteer_status == VolunteerStatus.BACKGROUND_CHECK
        assert len(backend.action_calls()) == 2
        assert len(backend.calls("/token/refresh")) == 1
        assert session.token_state is TokenState.VALID

    async def test_second_401_ends_session(self, controller, backend, session):
        backend.force_401 = 2
        with pytest.raises(SessionExpired):
            await controller.invoke(_volunteer("v1", "applied"), PipelineAction.START_BACKGROUND_CHECK)
        assert len(backend.action_calls()) == 2
        assert session.user is None
        assert session.token_state is TokenState.ABSENT
