"""
Pipeline API — the volunteer onboarding board.

GET  /api/pipeline/actions/{status}
  Candidate actions for a volunteer status, in display order
GET  /api/pipeline/board
  Columns with per-volunteer authorized actions and action phase
POST /api/pipeline/board/reload
  Reload the volunteer list from the backend
POST /api/pipeline/volunteers/{volunteer_id}/actions
  Run one pipeline action against one volunteer
"""

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from casa_pipeline.api.deps import SessionContext, require
from casa_pipeline.auth.capabilities import Capability
from casa_pipeline.schemas.schemas import ActionDescriptor, BoardView, PipelineOutcome
from casa_pipeline.services.pipeline_policy import actions_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])


class ActionInvocation(BaseModel):
    # validated by the controller so bad input maps to its error codes
    action: str
    notes: str | None = None
    rejection_reason: str | None = None


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


@router.get("/actions/{status}", response_model=list[ActionDescriptor])
async def list_actions(status: str):
    return list(actions_for(status))


@router.get("/board", response_model=BoardView)
async def get_board(request: Request, ctx: SessionContext = Depends(require(Capability.VIEW_PIPELINE))):
    if not ctx.board.loaded:
        await ctx.board.load()
    return ctx.board.view(_base_url(request))


@router.post("/board/reload", response_model=BoardView)
async def reload_board(request: Request, ctx: SessionContext = Depends(require(Capability.VIEW_PIPELINE))):
    await ctx.board.load()
    return ctx.board.view(_base_url(request))


@router.post("/volunteers/{volunteer_id}/actions", response_model=PipelineOutcome)
async def invoke_action(
    volunteer_id: str,
    body: ActionInvocation,
    ctx: SessionContext = Depends(require(Capability.VIEW_PIPELINE)),
):
    if not ctx.board.loaded:
        await ctx.board.load()
    return await ctx.board.invoke_action(
        volunteer_id,
        body.action,
        notes=body.notes,
        rejection_reason=body.rejection_reason,
    )
