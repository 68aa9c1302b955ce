"""Shared test fixtures: an in-process WordPress backend behind httpx.MockTransport."""

import asyncio
import json
import time
import uuid
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from casa_pipeline.api.deps import SessionRegistry, get_registry
from casa_pipeline.main import app
from casa_pipeline.schemas.schemas import LoginCredentials
from casa_pipeline.services.api_client import ApiClient
from casa_pipeline.services.board import PipelineBoard
from casa_pipeline.services.pipeline_controller import PipelineController
from casa_pipeline.services.session_storage import MemorySessionStorage
from casa_pipeline.services.session_store import SessionStore
from casa_pipeline.services.volunteer_service import VolunteerService

BACKEND_URL = "http://wp.test"
PASSWORD = "secret"
TWO_FACTOR_CODE = "123456"

ORGANIZATIONS = {
    "1": {"id": 1, "name": "Default CASA", "slug": "default", "status": "active", "settings": "{}"},
    "2": {"id": 2, "name": "Riverside CASA", "slug": "riverside", "status": "active"},
}

USERS = {
    "admin@casa-demo.org": {"id": 10, "roles": ["casa_administrator"], "organizations": ["1", "2"]},
    "supervisor@casa-demo.org": {"id": 11, "roles": ["supervisor"], "organizations": ["1"]},
    "coordinator@casa-demo.org": {"id": 12, "roles": ["casa_coordinator"], "organizations": ["1"]},
    "volunteer@casa-demo.org": {"id": 13, "roles": ["casa_volunteer"], "organizations": ["1"]},
    "noroles@casa-demo.org": {"id": 14, "roles": [], "organizations": ["1"]},
    "twofa@casa-demo.org": {"id": 15, "roles": ["casa_administrator"], "organizations": ["1"], "two_factor": True},
}

# backend-side effect of each action, as the WordPress handler applies it
BACKEND_TRANSITIONS = {
    "start_background_check": {"volunteer_status": "background_check", "background_check_status": "pending"},
    "approve_background_check": {"volunteer_status": "training", "background_check_status": "approved"},
    "fail_background_check": {"volunteer_status": "rejected", "background_check_status": "rejected"},
    "complete_training": {"training_status": "completed"},
    "approve_volunteer": {"volunteer_status": "active"},
    "reject_application": {"volunteer_status": "rejected"},
}


def make_token(subject, expires_in: int = 3600) -> str:
    claims = {"sub": str(subject), "exp": int(time.time()) + expires_in, "jti": uuid.uuid4().hex}
    return jwt.encode(claims, "test-signing-key", algorithm="HS256")


def volunteer_record(vid: str, status: str, organization_id: str = "1", **fields) -> dict:
    record = {
        "id": vid,
        "first_name": "Vol",
        "last_name": vid.upper(),
        "email": f"{vid}@casa-demo.org",
        "volunteer_status": status,
        "background_check_status": "pending",
        "training_status": "not_started",
        "organization_id": organization_id,
        "created_at": "2026-01-05 10:00:00",
    }
    record.update(fields)
    return record


def seed_volunteers() -> dict[str, dict]:
    records = [
        volunteer_record("v1", "applied"),
        volunteer_record("v2", "background_check"),
        volunteer_record("v3", "training", background_check_status="approved", training_status="in_progress"),
        volunteer_record("v4", "training", background_check_status="approved", training_status="completed"),
        volunteer_record("v5", "active", background_check_status="approved", training_status="completed"),
        volunteer_record("v6", "archived"),
        volunteer_record("v20", "applied", organization_id="2"),
    ]
    return {r["id"]: r for r in records}


class FakeBackend:
    """Enough of the CASA WordPress REST API to drive the session and pipeline."""

    def __init__(self):
        self.volunteers = seed_volunteers()
        self.requests: list[httpx.Request] = []
        self.tokens: dict[str, dict] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.token_ttl = 3600
        self.refresh_ok = True
        self.force_401 = 0
        self.action_error: tuple[int, dict] | None = None
        self.action_gate: asyncio.Event | None = None
        self.list_gate: asyncio.Event | None = None
        self.logout_fails = False
        self.role_override: dict[str, list[str]] = {}

    # ── Inspection helpers ──

    def calls(self, fragment: str, method: str | None = None) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if fragment in r.url.path and (method is None or r.method == method)
        ]

    def action_calls(self) -> list[httpx.Request]:
        return self.calls("/pipeline-action", "POST")

    # ── Transport ──

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/wp-json/")
        body = json.loads(request.content) if request.content else {}

        if path == "casa/v1/auth/login":
            return self._login(body)
        if path == "casa/v1/auth/verify-2fa":
            if body.get("code") != TWO_FACTOR_CODE:
                return httpx.Response(400, json={"code": "invalid_code", "message": "Invalid verification code"})
            return self._session_payload("twofa@casa-demo.org", body.get("organization_slug") or "default")
        if path == "casa/v1/auth/resend-2fa":
            return httpx.Response(200, json={
                "success": True,
                "message": "A new code has been sent",
                "data": {"temp_token": "tmp-resent", "email": "twofa@casa-demo.org"},
            })
        if path == "jwt-auth/v1/token/refresh":
            return self._refresh(body)

        # everything below needs a bearer token
        owner = self._authenticate(request)
        if owner is None:
            return httpx.Response(401, json={"code": "jwt_auth_invalid_token", "message": "Expired token"})

        if path == "jwt-auth/v1/token/validate":
            return httpx.Response(200, json={"code": "jwt_auth_valid_token", "data": {"status": 200}})
        if path == "jwt-auth/v1/logout":
            if self.logout_fails:
                return httpx.Response(500, json={"message": "Logout failed"})
            return httpx.Response(200, json={"success": True})
        if path == "casa/v1/user-organizations":
            orgs = [ORGANIZATIONS[o] for o in USERS[owner["email"]]["organizations"]]
            return httpx.Response(200, json={"success": True, "data": orgs})
        if path == "casa/v1/auth/switch-organization":
            return self._switch(owner, body)
        if path == "casa/v1/volunteers" and request.method == "GET":
            if self.list_gate is not None:
                await self.list_gate.wait()
            status = request.url.params.get("status")
            items = [
                v for v in self.volunteers.values()
                if v["organization_id"] == owner["organization_id"] and (not status or v["volunteer_status"] == status)
            ]
            return httpx.Response(200, json={"success": True, "data": items})
        if path.startswith("casa/v1/volunteers/") and path.endswith("/pipeline-action"):
            return await self._pipeline_action(path.split("/")[3], body)
        if path.startswith("casa/v1/volunteers/"):
            record = self.volunteers.get(path.split("/")[3])
            if record is None:
                return httpx.Response(404, json={"message": "Volunteer not found"})
            return httpx.Response(200, json={"success": True, "data": record})

        return httpx.Response(404, json={"code": "rest_no_route", "message": "No route was found"})

    # ── Handlers ──

    def _issue(self, email: str, organization_id: str) -> tuple[str, str]:
        token = make_token(USERS[email]["id"], self.token_ttl)
        refresh = f"refresh-{uuid.uuid4().hex}"
        self.tokens[token] = {"email": email, "organization_id": organization_id}
        self.refresh_tokens[refresh] = token
        return token, refresh

    def _user(self, email: str, organization_id: str) -> dict:
        info = USERS[email]
        return {
            "id": info["id"],
            "email": email,
            "firstName": "Test",
            "lastName": email.split("@")[0].title(),
            "roles": self.role_override.get(email, info["roles"]),
            "organizationId": int(organization_id),
        }

    def _session_payload(self, email: str, slug: str) -> httpx.Response:
        info = USERS[email]
        org = next((o for o in info["organizations"] if ORGANIZATIONS[o]["slug"] == slug), None)
        if org is None:
            return httpx.Response(403, json={"message": "User is not assigned to this organization"})
        token, refresh = self._issue(email, org)
        return httpx.Response(200, json={
            "success": True,
            "data": {
                "token": token,
                "refresh_token": refresh,
                "user": self._user(email, org),
                "organization": ORGANIZATIONS[org],
                "organizations": [ORGANIZATIONS[o] for o in info["organizations"]],
            },
        })

    def _login(self, body: dict) -> httpx.Response:
        email = body.get("username")
        if email not in USERS or body.get("password") != PASSWORD:
            return httpx.Response(403, json={"code": "invalid_login", "message": "Invalid username or password"})
        if USERS[email].get("two_factor"):
            return httpx.Response(200, json={
                "success": True,
                "requires_2fa": True,
                "message": "Verification code sent to your email",
                "data": {"temp_token": "tmp-123", "email": email},
            })
        return self._session_payload(email, body.get("organization_slug") or "default")

    def _refresh(self, body: dict) -> httpx.Response:
        old = self.refresh_tokens.pop(body.get("refresh_token"), None)
        if not self.refresh_ok or old is None or old not in self.tokens:
            return httpx.Response(401, json={"code": "invalid_refresh_token", "message": "Invalid refresh token"})
        owner = self.tokens.pop(old)
        token, refresh = self._issue(owner["email"], owner["organization_id"])
        return httpx.Response(200, json={"success": True, "data": {"token": token, "refresh_token": refresh}})

    def _authenticate(self, request: httpx.Request) -> dict | None:
        header = request.headers.get("Authorization", "")
        if not header.startswith("Bearer "):
            return None
        if self.force_401 > 0:
            self.force_401 -= 1
            return None
        return self.tokens.get(header[7:])

    def _switch(self, owner: dict, body: dict) -> httpx.Response:
        org = str(body.get("organization_id"))
        if org not in USERS[owner["email"]]["organizations"]:
            return httpx.Response(403, json={"message": "You do not have access to this organization"})
        token, _ = self._issue(owner["email"], org)
        return httpx.Response(200, json={"success": True, "data": {"organization": ORGANIZATIONS[org], "token": token}})

    async def _pipeline_action(self, vid: str, body: dict) -> httpx.Response:
        if self.action_gate is not None:
            await self.action_gate.wait()
        if self.action_error is not None:
            status, payload = self.action_error
            return httpx.Response(status, json=payload)
        record = self.volunteers.get(vid)
        if record is None:
            return httpx.Response(404, json={"message": "Volunteer not found"})

        action = body["action"]
        old_status = record["volunteer_status"]
        record.update(BACKEND_TRANSITIONS[action])
        if body.get("rejection_reason"):
            record["rejection_reason"] = body["rejection_reason"]

        data = {
            "id": vid,
            "action": action,
            "old_status": old_status,
            "new_status": record["volunteer_status"],
            "user_created": action == "approve_volunteer",
        }
        if action == "approve_volunteer":
            data.update(username=f"vol.{vid}", temporary_password="Tmp-Pass-42", welcome_email_sent=True)
        return httpx.Response(200, json={"success": True, "message": "Pipeline updated", "data": data})


# ── Fixtures ──

@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def api_client(backend: FakeBackend) -> AsyncGenerator[ApiClient, None]:
    client = ApiClient(BACKEND_URL, transport=httpx.MockTransport(backend.handler))
    yield client
    await client.aclose()


@pytest.fixture
def login_as(api_client: ApiClient):
    """Factory: a SessionStore signed in as the given user."""
    async def _login(email: str = "admin@casa-demo.org", **kwargs) -> SessionStore:
        session = SessionStore(api_client, **kwargs)
        await session.login(LoginCredentials(email=email, password=PASSWORD))
        return session
    return _login


@pytest_asyncio.fixture
async def session(login_as) -> SessionStore:
    """Session signed in as a CASA administrator of the default organization."""
    return await login_as()


@pytest.fixture
def controller(session: SessionStore) -> PipelineController:
    return PipelineController(session, VolunteerService(session))


@pytest.fixture
def board(session: SessionStore, controller: PipelineController) -> PipelineBoard:
    return PipelineBoard(session, controller, controller.volunteers)


@pytest_asyncio.fixture
async def registry(backend: FakeBackend) -> AsyncGenerator[SessionRegistry, None]:
    api = ApiClient(BACKEND_URL, transport=httpx.MockTransport(backend.handler))
    registry = SessionRegistry(api, MemorySessionStorage(ttl_seconds=3600))
    yield registry
    await registry.aclose()
    await api.aclose()


@pytest_asyncio.fixture
async def client(registry: SessionRegistry) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, with its backend calls routed to the fake."""
    app.dependency_overrides[get_registry] = lambda: registry
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()
