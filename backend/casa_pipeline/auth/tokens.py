"""Access-token inspection.

The backend signs its JWTs with a key we never see, so the claims are read
unverified and used only to decide when to refresh. Authorization is always
enforced by the backend.
"""

import time

from jose import JWTError, jwt


def token_expiry(token: str) -> float | None:
    """Return the `exp` claim as a unix timestamp, or None for opaque tokens."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    exp = claims.get("exp")
    if exp is None:
        return None
    try:
        return float(exp)
    except (TypeError, ValueError):
        return None


def is_token_expired(token: str, leeway: float = 0.0, now: float | None = None) -> bool:
    """True if the token's `exp` is within `leeway` seconds of now or past it."""
    exp = token_expiry(token)
    if exp is None:
        return False
    current = time.time() if now is None else now
    return exp <= current + leeway
