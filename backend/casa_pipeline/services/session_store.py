"""
Session Store — the authenticated identity of one browser context.

Holds the user, the current organization, the organizations the user may
switch to, and the access/refresh token pair. It is the only writer of that
state; everything else reads it through properties.

Token lifecycle:

    absent --login--> valid --(exp passed | backend 401)--> expired
    expired --refresh ok--> valid
    expired --refresh failed--> absent   (forced logout)
    any --logout--> absent

`authenticated_request()` is the single path for backend calls that need a
token: it refreshes an expired token first, and on a 401 refreshes and
retries exactly once. When refresh fails the call aborts with
`SessionExpired` without touching the network again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from casa_pipeline.auth.roles import DEFAULT_ROLES
from casa_pipeline.auth.tokens import is_token_expired
from casa_pipeline.config import settings
from casa_pipeline.errors import (
    BackendError,
    InvalidCredentials,
    OrganizationMismatch,
    SessionExpired,
    TwoFactorRequired,
    Unauthorized,
)
from casa_pipeline.middleware.metrics import session_refresh_total
from casa_pipeline.schemas.schemas import (
    LoginCredentials,
    Organization,
    SessionSnapshot,
    TokenState,
    TwoFactorChallenge,
    User,
)
from casa_pipeline.services.api_client import ApiClient, ApiResponse, raise_for_envelope, unwrap

logger = logging.getLogger(__name__)

OrganizationListener = Callable[[Organization | None, Organization], None]
LogoutListener = Callable[[], None]


def _organization_list(body: Any) -> list[Organization]:
    """Accept a bare list, `{organizations: [...]}`, or `{data: [...]}`."""
    items = unwrap(body)
    if isinstance(items, dict):
        items = items.get("organizations") or items.get("data") or [items]
    if not isinstance(items, list):
        return []
    return [Organization.model_validate(item) for item in items if isinstance(item, dict) and "id" in item]


class SessionStore:
    def __init__(self, client: ApiClient, *, refresh_leeway: float | None = None):
        self._client = client
        self._leeway = settings.token_refresh_leeway_seconds if refresh_leeway is None else refresh_leeway
        self._user: User | None = None
        self._organization: Organization | None = None
        self._organizations: list[Organization] = []
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._expired = False
        self._refreshing = False
        self._refresh_lock = asyncio.Lock()
        self._organization_listeners: list[OrganizationListener] = []
        self._logout_listeners: list[LogoutListener] = []

    # ── Read-only state ──────────────────────────────────────────────────

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def organization(self) -> Organization | None:
        return self._organization

    @property
    def organization_id(self) -> str | None:
        return self._organization.id if self._organization else None

    @property
    def organizations(self) -> list[Organization]:
        return list(self._organizations)

    @property
    def token_state(self) -> TokenState:
        if not self._access_token:
            return TokenState.ABSENT
        if self._refreshing:
            return TokenState.REFRESHING
        if self._expired or is_token_expired(self._access_token, self._leeway):
            return TokenState.EXPIRED
        return TokenState.VALID

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None and self.token_state is not TokenState.ABSENT

    # ── Listeners ────────────────────────────────────────────────────────

    def on_organization_switch(self, listener: OrganizationListener) -> None:
        """Called with (old, new) after a successful switch.

        Listeners own discarding whatever they loaded for the old
        organization; the store does not track it.
        """
        self._organization_listeners.append(listener)

    def on_logout(self, listener: LogoutListener) -> None:
        self._logout_listeners.append(listener)

    # ── Login ────────────────────────────────────────────────────────────

    async def login(self, credentials: LoginCredentials) -> None:
        """Authenticate and establish the session.

        Raises InvalidCredentials, TwoFactorRequired (with the challenge to
        pass to `verify_two_factor`), OrganizationMismatch or BackendError.
        """
        slug = credentials.organization_slug or settings.default_organization_slug
        resp = await self._client.casa_post("auth/login", {
            "username": credentials.email,
            "password": credentials.password,
            "organization_slug": slug,
        })
        self._raise_login_failure(resp)

        body = resp.data
        if isinstance(body, dict) and body.get("requires_2fa"):
            data = unwrap(body) or {}
            challenge = TwoFactorChallenge(
                temp_token=data.get("temp_token", ""),
                email=data.get("email") or credentials.email,
                organization_slug=data.get("organization_slug") or slug,
            )
            logger.info("Two-factor challenge issued for %s", challenge.email)
            raise TwoFactorRequired(challenge, body.get("message"))

        self._establish(resp.payload, requested_slug=credentials.organization_slug)

    async def verify_two_factor(self, temp_token: str, code: str, organization_slug: str | None = None) -> None:
        resp = await self._client.casa_post("auth/verify-2fa", {
            "temp_token": temp_token,
            "code": code,
            "organization_slug": organization_slug or settings.default_organization_slug,
        })
        self._raise_login_failure(resp)
        self._establish(resp.payload, requested_slug=organization_slug)

    async def resend_two_factor(self, temp_token: str) -> TwoFactorChallenge:
        resp = await self._client.casa_post("auth/resend-2fa", {"temp_token": temp_token})
        self._raise_login_failure(resp)
        data = resp.payload or {}
        return TwoFactorChallenge(
            temp_token=data.get("temp_token") or temp_token,
            email=data.get("email", ""),
        )

    @staticmethod
    def _raise_login_failure(resp: ApiResponse) -> None:
        if resp.success:
            return
        message = resp.error or ""
        if "not assigned" in message.lower():
            raise OrganizationMismatch(message)
        # the login handler answers bad credentials with 403
        if resp.status_code in (400, 401, 403):
            raise InvalidCredentials(message or None)
        raise BackendError(message or None)

    def _establish(self, payload: Any, *, requested_slug: str | None) -> None:
        if not isinstance(payload, dict) or not payload.get("token") or not payload.get("user"):
            raise BackendError("Login response did not include a token and user")

        user = User.model_validate(payload["user"])
        if not user.roles:
            user = user.model_copy(update={"roles": list(DEFAULT_ROLES)})

        if not payload.get("organization"):
            raise OrganizationMismatch()
        organization = Organization.model_validate(payload["organization"])
        if requested_slug and organization.slug and organization.slug != requested_slug:
            raise OrganizationMismatch(
                f"Your account belongs to '{organization.slug}', not '{requested_slug}'"
            )

        organizations = _organization_list(payload.get("organizations") or [])
        if not any(o.id == organization.id for o in organizations):
            organizations.insert(0, organization)

        self._access_token = payload["token"]
        self._refresh_token = payload.get("refresh_token")
        self._expired = False
        self._user = user
        self._organization = organization
        self._organizations = organizations
        logger.info(
            "Login: user %s in organization %s (%s)",
            user.id, organization.id, ",".join(user.roles),
            extra={"organization_id": organization.id},
        )

    # ── Token lifecycle ──────────────────────────────────────────────────

    async def refresh_token(self) -> bool:
        """Exchange the refresh token for a new access token.

        On failure the session is cleared (token state → absent) and False
        is returned; a half-valid session is never left behind.
        """
        async with self._refresh_lock:
            return await self._refresh()

    async def _refresh_stale(self, stale_token: str | None) -> bool:
        async with self._refresh_lock:
            # another caller refreshed while we waited for the lock
            if self._access_token and self._access_token != stale_token and self.token_state is TokenState.VALID:
                return True
            return await self._refresh()

    async def _refresh(self) -> bool:
        if not self._access_token:
            return False
        if not self._refresh_token:
            logger.info("Access token expired and no refresh token is held; ending session")
            session_refresh_total.labels(result="missing").inc()
            self._clear()
            return False

        self._refreshing = True
        try:
            resp = await self._client.jwt_post("token/refresh", {"refresh_token": self._refresh_token})
        finally:
            self._refreshing = False

        payload = resp.payload if resp.success else None
        if not isinstance(payload, dict) or not payload.get("token"):
            logger.warning("Token refresh failed: %s", resp.error or "no token in response")
            session_refresh_total.labels(result="failure").inc()
            self._clear()
            return False

        self._access_token = payload["token"]
        self._refresh_token = payload.get("refresh_token") or self._refresh_token
        self._expired = False
        if isinstance(payload.get("user"), dict) and self._user is not None:
            refreshed = User.model_validate(payload["user"])
            self._user = refreshed if refreshed.roles else refreshed.model_copy(update={"roles": self._user.roles})
        session_refresh_total.labels(result="success").inc()
        logger.info("Access token refreshed")
        return True

    def _mark_expired(self, token: str) -> None:
        if self._access_token == token:
            self._expired = True

    async def ensure_valid_token(self) -> str:
        """Return a usable access token, refreshing it first if expired."""
        if self._user is None or self.token_state is TokenState.ABSENT:
            raise SessionExpired("Not signed in")
        if self.token_state is TokenState.VALID:
            return self._access_token
        if not await self._refresh_stale(self._access_token):
            raise SessionExpired()
        return self._access_token

    async def authenticated_request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Any = None,
        params: dict | None = None,
    ) -> ApiResponse:
        token = await self.ensure_valid_token()
        resp = await self._client.request(method, endpoint, json=json, params=params, token=token)
        if resp.status_code != 401:
            return resp

        logger.info("Backend rejected access token on %s %s; refreshing", method, endpoint)
        self._mark_expired(token)
        if not await self._refresh_stale(token):
            raise SessionExpired()

        resp = await self._client.request(method, endpoint, json=json, params=params, token=self._access_token)
        if resp.status_code == 401:
            logger.warning("Backend rejected refreshed token on %s %s; ending session", method, endpoint)
            self._clear()
            raise SessionExpired(resp.error)
        return resp

    async def validate(self) -> bool:
        """Check a restored session against the backend; log out if rejected."""
        if not self.is_authenticated:
            return False
        try:
            await self.ensure_valid_token()
        except SessionExpired:
            return False
        resp = await self._client.jwt_post("token/validate", token=self._access_token)
        if resp.success:
            return True
        logger.info("Stored session rejected by backend: %s", resp.error)
        self._clear()
        return False

    # ── Logout ───────────────────────────────────────────────────────────

    async def logout(self) -> None:
        """Revoke the token remotely (best effort) and always clear locally."""
        token = self._access_token
        try:
            if token:
                resp = await self._client.jwt_post("logout", token=token)
                if not resp.success:
                    logger.warning("Remote logout failed: %s", resp.error)
        finally:
            self._clear()
            logger.info("Logout")

    def _clear(self) -> None:
        had_user = self._user is not None
        self._user = None
        self._organization = None
        self._organizations = []
        self._access_token = None
        self._refresh_token = None
        self._expired = False
        if had_user:
            for listener in self._logout_listeners:
                listener()

    # ── Organizations ────────────────────────────────────────────────────

    async def load_organizations(self) -> list[Organization]:
        resp = await self.authenticated_request("GET", "casa/v1/user-organizations")
        raise_for_envelope(resp)
        organizations = _organization_list(resp.data)
        if self._organization and not any(o.id == self._organization.id for o in organizations):
            organizations.insert(0, self._organization)
        self._organizations = organizations
        return self.organizations

    async def switch_organization(self, organization_id: str) -> Organization:
        if self._user is None:
            raise SessionExpired("Not signed in")
        organization_id = str(organization_id)
        target = next((o for o in self._organizations if o.id == organization_id), None)
        if target is None:
            raise Unauthorized()

        resp = await self.authenticated_request(
            "POST", "casa/v1/auth/switch-organization", json={"organization_id": organization_id},
        )
        raise_for_envelope(resp)
        payload = resp.payload
        if isinstance(payload, dict) and isinstance(payload.get("organization"), dict):
            target = Organization.model_validate(payload["organization"])
        if isinstance(payload, dict) and payload.get("token"):
            self._access_token = payload["token"]
            self._expired = False

        previous = self._organization
        self._organization = target
        if self._user is not None:
            self._user = self._user.model_copy(update={"organization_id": target.id})
        logger.info(
            "Switched organization %s -> %s",
            previous.id if previous else None, target.id,
            extra={"organization_id": target.id},
        )
        for listener in self._organization_listeners:
            listener(previous, target)
        return target

    # ── Persistence ──────────────────────────────────────────────────────

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            token_expired=self._expired,
            user=self._user,
            organization=self._organization,
            organizations=self._organizations,
        )

    @classmethod
    def restore(cls, client: ApiClient, snapshot: SessionSnapshot, **kwargs) -> SessionStore:
        store = cls(client, **kwargs)
        # a user without an organization or token is not a session worth keeping
        if snapshot.access_token and snapshot.user and snapshot.organization:
            store._access_token = snapshot.access_token
            store._refresh_token = snapshot.refresh_token
            store._expired = snapshot.token_expired
            store._user = snapshot.user
            store._organization = snapshot.organization
            store._organizations = list(snapshot.organizations) or [snapshot.organization]
        return store

    def adopt(self, snapshot: SessionSnapshot) -> bool:
        """Take the tokens from a snapshot another worker wrote for this session.

        Returns False when the snapshot is for a different user or
        organization; the caller restores a fresh store from it instead.
        """
        if self._user is None or snapshot.user is None or snapshot.user.id != self._user.id:
            return False
        if snapshot.organization is None or snapshot.organization.id != self.organization_id:
            return False
        if not snapshot.access_token:
            return False
        # a refresh running here will write its own tokens when it settles
        if not self._refreshing:
            self._access_token = snapshot.access_token
            self._refresh_token = snapshot.refresh_token
            self._expired = snapshot.token_expired
        return True
