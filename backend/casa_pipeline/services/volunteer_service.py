"""Volunteer endpoints of the CASA backend, scoped to the session's organization."""

from __future__ import annotations

import logging
from typing import Any

from casa_pipeline.schemas.schemas import PipelineActionRequest, PipelineActionResult, Volunteer
from casa_pipeline.services.api_client import raise_for_envelope, unwrap
from casa_pipeline.services.session_store import SessionStore

logger = logging.getLogger(__name__)


def _volunteer_list(body: Any) -> list[dict]:
    """Accept a bare list, `{volunteers: [...]}`, or either wrapped in `data`."""
    items = unwrap(body)
    if isinstance(items, dict):
        items = items.get("volunteers", [])
    return [item for item in items or [] if isinstance(item, dict)]


class VolunteerService:
    def __init__(self, session: SessionStore):
        self.session = session

    async def list_volunteers(self, status: str | None = None) -> list[Volunteer]:
        params = {"status": status} if status else None
        resp = await self.session.authenticated_request("GET", "casa/v1/volunteers", params=params)
        raise_for_envelope(resp)
        return [Volunteer.model_validate(item) for item in _volunteer_list(resp.data)]

    async def get_volunteer(self, volunteer_id: str) -> Volunteer:
        resp = await self.session.authenticated_request("GET", f"casa/v1/volunteers/{volunteer_id}")
        raise_for_envelope(resp)
        return Volunteer.model_validate(resp.payload)

    async def submit_pipeline_action(
        self,
        volunteer_id: str,
        request: PipelineActionRequest,
    ) -> PipelineActionResult:
        """POST one pipeline action. Exactly one mutating call, never retried here."""
        body: dict[str, Any] = {"action": request.action.value}
        if request.notes:
            body["notes"] = request.notes
        if request.rejection_reason:
            body["rejection_reason"] = request.rejection_reason

        resp = await self.session.authenticated_request(
            "POST", f"casa/v1/volunteers/{volunteer_id}/pipeline-action", json=body,
        )
        raise_for_envelope(resp)

        data = resp.payload if isinstance(resp.payload, dict) else {}
        fields = {"id": volunteer_id, "action": request.action.value, **data}
        # some handlers answer with the updated volunteer record instead
        if "new_status" not in fields and "volunteer_status" in data:
            fields["new_status"] = data["volunteer_status"]
        return PipelineActionResult.model_validate(fields)
