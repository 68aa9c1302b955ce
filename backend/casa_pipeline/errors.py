"""
Error taxonomy for the session and volunteer pipeline core.

Every failure the UI layer can observe is a `CasaError`. Each carries the
HTTP status the JSON API answers with and a stable machine-readable code,
so the front end can branch on `code` instead of parsing messages.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from casa_pipeline.schemas.schemas import TwoFactorChallenge


class CasaError(Exception):
    status_code: int = 400
    code: str = "error"
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


# ── Pipeline errors ──────────────────────────────────────────────────────────

class ValidationError(CasaError):
    """Malformed pipeline input. Never reaches the network."""
    status_code = 422
    code = "validation_error"
    default_message = "Invalid pipeline action"


class InvalidTransition(ValidationError):
    """The action is not available in the volunteer's current pipeline state."""
    code = "invalid_transition"
    default_message = "Action is not available for this volunteer"


class ConcurrentActionError(CasaError):
    status_code = 409
    code = "action_in_flight"
    default_message = "An action is already in progress for this volunteer"


class SessionExpired(CasaError):
    status_code = 401
    code = "session_expired"
    default_message = "Your session has expired. Please sign in again."


class Forbidden(CasaError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to perform this action"


class BackendError(CasaError):
    status_code = 502
    code = "backend_error"
    default_message = "An unexpected error occurred"


# ── Session errors ───────────────────────────────────────────────────────────

class InvalidCredentials(CasaError):
    status_code = 401
    code = "invalid_credentials"
    default_message = "Invalid credentials"


class TwoFactorRequired(CasaError):
    """Login succeeded up to the second factor; carries the challenge."""
    status_code = 200
    code = "two_factor_required"
    default_message = "Verification code sent to your email"

    def __init__(self, challenge: TwoFactorChallenge, message: str | None = None):
        self.challenge = challenge
        super().__init__(message)


class OrganizationMismatch(CasaError):
    status_code = 403
    code = "organization_mismatch"
    default_message = "You are not assigned to this organization. Please contact your administrator."


class Unauthorized(CasaError):
    status_code = 403
    code = "unauthorized"
    default_message = "You do not have access to this organization"
