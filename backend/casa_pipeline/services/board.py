"""
Pipeline Board — the volunteer collection of one session, grouped by status.

The collection has exactly two writers: `load()` (full reload from the
backend) and the single-volunteer patch applied after a successful
controller call in `invoke_action()`. The patch re-applies the action to
the record currently on the board, so a reload that landed while the call
was in flight is kept. A reload that started before an
organization switch or logout is dropped when it returns, and so is a
patch for an action that finished after one.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

from casa_pipeline.auth.capabilities import CapabilityMap
from casa_pipeline.auth.evaluator import roles_of
from casa_pipeline.errors import Forbidden, ValidationError
from casa_pipeline.schemas.schemas import (
    BoardColumn,
    BoardView,
    Organization,
    PipelineAction,
    PipelineOutcome,
    Volunteer,
    VolunteerCard,
    VolunteerStatus,
)
from casa_pipeline.services.pipeline_controller import PipelineController, apply_transition
from casa_pipeline.services.pipeline_policy import authorized_actions_for_volunteer
from casa_pipeline.services.session_store import SessionStore
from casa_pipeline.services.volunteer_service import VolunteerService

logger = logging.getLogger(__name__)

# (status, title, color) in display order
COLUMNS: tuple[tuple[VolunteerStatus, str, str], ...] = (
    (VolunteerStatus.APPLIED, "Applied", "blue"),
    (VolunteerStatus.BACKGROUND_CHECK, "Background Check", "yellow"),
    (VolunteerStatus.TRAINING, "Training", "purple"),
    (VolunteerStatus.ACTIVE, "Active", "green"),
    (VolunteerStatus.REJECTED, "Rejected", "red"),
    (VolunteerStatus.INACTIVE, "Inactive", "gray"),
    (VolunteerStatus.SUSPENDED, "Suspended", "orange"),
)

_KNOWN_STATUSES = {status.value for status, _, _ in COLUMNS}


def _status_key(volunteer: Volunteer) -> str:
    status = volunteer.volunteer_status
    return str(getattr(status, "value", status))


class PipelineBoard:
    def __init__(
        self,
        session: SessionStore,
        controller: PipelineController,
        volunteers: VolunteerService,
        capability_map: CapabilityMap | None = None,
    ):
        self.session = session
        self.controller = controller
        self.volunteers = volunteers
        self.capability_map = capability_map or CapabilityMap()
        self._items: dict[str, Volunteer] = {}
        self._organization_id: str | None = None
        self._generation = 0
        self._loaded = False

        session.on_organization_switch(self._on_organization_switch)
        session.on_logout(self.discard)

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def items(self) -> list[Volunteer]:
        return list(self._items.values())

    def get(self, volunteer_id: str) -> Volunteer | None:
        return self._items.get(str(volunteer_id))

    # ── Writers ──────────────────────────────────────────────────────────

    async def load(self) -> bool:
        """Replace the collection with the backend's current list.

        Returns False when the result was dropped because the session moved
        to another organization (or logged out) while the request ran.
        """
        generation = self._generation
        organization_id = self.session.organization_id
        items = await self.volunteers.list_volunteers()

        if generation != self._generation or self.session.organization_id != organization_id:
            logger.info("Dropping volunteer list loaded for organization %s", organization_id)
            return False

        unknown = [v.id for v in items if _status_key(v) not in _KNOWN_STATUSES]
        if unknown:
            logger.warning(
                "%d volunteer(s) with unknown status left off the board: %s",
                len(unknown), ", ".join(unknown),
                extra={"organization_id": organization_id},
            )

        self._items = {v.id: v for v in items}
        self._organization_id = organization_id
        self._loaded = True
        self.controller.reset()
        logger.info(
            "Loaded %d volunteers", len(items),
            extra={"organization_id": organization_id},
        )
        return True

    def _patch(self, action: PipelineAction, updated: Volunteer, generation: int) -> Volunteer | None:
        current = self._items.get(updated.id)
        if generation != self._generation or current is None:
            return None
        patched = apply_transition(current, action, updated.rejection_reason)
        self._items[updated.id] = patched
        return patched

    def discard(self) -> None:
        self._generation += 1
        self._items = {}
        self._organization_id = None
        self._loaded = False
        self.controller.reset()

    def _on_organization_switch(self, old: Organization | None, new: Organization) -> None:
        logger.info(
            "Organization changed; discarding board for %s", old.id if old else None,
            extra={"organization_id": new.id},
        )
        self.discard()

    # ── Actions ──────────────────────────────────────────────────────────

    async def invoke_action(
        self,
        volunteer_id: str,
        action: PipelineAction | str,
        *,
        notes: str | None = None,
        rejection_reason: str | None = None,
    ) -> PipelineOutcome:
        volunteer = self.get(volunteer_id)
        if volunteer is None:
            raise ValidationError(f"Volunteer {volunteer_id} is not on the board")
        try:
            action = PipelineAction(action)
        except ValueError:
            raise ValidationError(f"Unknown pipeline action: {action}")
        if not self.capability_map.allows(action, roles_of(self.session)):
            raise Forbidden(f"You are not allowed to {action.value.replace('_', ' ')}")

        generation = self._generation
        outcome = await self.controller.invoke(
            volunteer, action, notes=notes, rejection_reason=rejection_reason,
        )
        patched = self._patch(action, outcome.volunteer, generation)
        if patched is None:
            logger.info(
                "Board changed while %s ran; not patching volunteer %s", action.value, volunteer.id,
                extra={"volunteer_id": volunteer.id, "action": action.value},
            )
            return outcome
        return outcome.model_copy(update={"volunteer": patched})

    # ── Presentation ─────────────────────────────────────────────────────

    def _card(self, volunteer: Volunteer) -> VolunteerCard:
        return VolunteerCard(
            volunteer=volunteer,
            actions=authorized_actions_for_volunteer(volunteer, self.session, self.capability_map),
            phase=self.controller.phase(volunteer.id),
            last_error=self.controller.last_error(volunteer.id),
        )

    def columns(self) -> list[BoardColumn]:
        grouped: dict[str, list[Volunteer]] = {status.value: [] for status, _, _ in COLUMNS}
        for volunteer in self._items.values():
            bucket = grouped.get(_status_key(volunteer))
            if bucket is not None:
                bucket.append(volunteer)

        return [
            BoardColumn(
                status=status,
                title=title,
                color=color,
                count=len(grouped[status.value]),
                cards=[self._card(v) for v in grouped[status.value]],
            )
            for status, title, color in COLUMNS
        ]

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status, _, _ in COLUMNS}
        for volunteer in self._items.values():
            key = _status_key(volunteer)
            if key in counts:
                counts[key] += 1
        counts["total"] = sum(counts.values())
        return counts

    def application_url(self, base_url: str) -> str | None:
        """Public application link for the current organization."""
        organization = self.session.organization
        if organization is None or not organization.slug:
            return None
        return f"{base_url.rstrip('/')}/apply?org={quote(organization.slug)}"

    def view(self, base_url: str | None = None) -> BoardView:
        return BoardView(
            organization_id=self._organization_id,
            columns=self.columns(),
            stats=self.stats(),
            application_url=self.application_url(base_url) if base_url else None,
        )
