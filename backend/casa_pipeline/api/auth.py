"""Authentication API — login (with 2FA), refresh, logout, organization switch, profile."""

import logging

from fastapi import APIRouter, Depends, Response

from casa_pipeline.api.deps import SessionContext, get_session_context, require_session
from casa_pipeline.auth.evaluator import capabilities_of, is_admin, is_super_admin
from casa_pipeline.config import settings
from casa_pipeline.errors import SessionExpired
from casa_pipeline.schemas.schemas import (
    LoginCredentials,
    Organization,
    SessionInfo,
    SwitchOrganizationRequest,
    TwoFactorChallenge,
    TwoFactorResendRequest,
    TwoFactorVerifyRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _session_info(ctx: SessionContext) -> SessionInfo:
    session = ctx.session
    return SessionInfo(
        user=session.user,
        organization=session.organization,
        organizations=session.organizations,
        token_state=session.token_state,
        is_admin=is_admin(session),
        is_super_admin=is_super_admin(session),
        capabilities=capabilities_of(session, ctx.capability_map),
    )


# ── Login ─────────────────────────────────────────────────────────────────────

@router.post("/login", response_model=SessionInfo)
async def login(body: LoginCredentials, ctx: SessionContext = Depends(get_session_context)):
    """Sign in against the CASA backend.

    Answers with the session on success, or with a `two_factor_required`
    challenge that must be completed through /verify-2fa.
    """
    if ctx.session.is_authenticated:
        await ctx.session.logout()
    await ctx.session.login(body)
    return _session_info(ctx)


@router.post("/verify-2fa", response_model=SessionInfo)
async def verify_two_factor(body: TwoFactorVerifyRequest, ctx: SessionContext = Depends(get_session_context)):
    await ctx.session.verify_two_factor(body.temp_token, body.code, body.organization_slug)
    return _session_info(ctx)


@router.post("/resend-2fa", response_model=TwoFactorChallenge)
async def resend_two_factor(body: TwoFactorResendRequest, ctx: SessionContext = Depends(get_session_context)):
    return await ctx.session.resend_two_factor(body.temp_token)


# ── Token / session lifecycle ─────────────────────────────────────────────────

@router.post("/refresh", response_model=SessionInfo)
async def refresh(ctx: SessionContext = Depends(require_session)):
    if not await ctx.session.refresh_token():
        raise SessionExpired()
    return _session_info(ctx)


@router.post("/logout")
async def logout(response: Response, ctx: SessionContext = Depends(get_session_context)):
    await ctx.session.logout()
    response.delete_cookie(settings.session_cookie_name)
    return {"detail": "Logged out"}


@router.get("/me", response_model=SessionInfo)
async def me(ctx: SessionContext = Depends(require_session)):
    return _session_info(ctx)


# ── Organizations ─────────────────────────────────────────────────────────────

@router.get("/organizations", response_model=list[Organization])
async def organizations(ctx: SessionContext = Depends(require_session)):
    return await ctx.session.load_organizations()


@router.post("/switch-organization", response_model=SessionInfo)
async def switch_organization(body: SwitchOrganizationRequest, ctx: SessionContext = Depends(require_session)):
    await ctx.session.switch_organization(body.organization_id)
    return _session_info(ctx)
