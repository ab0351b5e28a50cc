"""Signed session tokens for wallet and metering requests.

Tokens carry the account id (``sub``), an optional email and a role. Admin
tokens may act on other accounts (manual grants, support lookups); every
other token is scoped to its own wallet.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "lead_session"
SESSION_AUDIENCE = "lead-metering-api"
ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = frozenset({ROLE_USER, ROLE_ADMIN})


def _token_lifetime(expires_hours: Optional[int]) -> timedelta:
    hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    return timedelta(hours=max(hours, 1))


def _build_claims(
    user_id: str,
    email: Optional[str],
    role: str,
    issued_at: datetime,
    expires_at: datetime,
) -> Dict[str, Any]:
    claims: Dict[str, Any] = {
        "sub": user_id,
        "aud": SESSION_AUDIENCE,
        "type": SESSION_TOKEN_TYPE,
        # Unknown roles are downgraded, never elevated
        "role": role if role in ROLES else ROLE_USER,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    return claims


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
    role: str = ROLE_USER,
) -> Dict[str, Any]:
    """Sign a session token for ``user_id``.

    Returns the encoded token and its expiry as a unix timestamp.
    """
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + _token_lifetime(expires_hours)
    claims = _build_claims(user_id, email, role, issued_at, expires_at)
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": claims["exp"],
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verify signature, expiry, audience and token type; return the claims.

    Raises ``ValueError`` with a client-safe message on any failure.
    """
    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=SESSION_AUDIENCE,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if claims.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(claims.get("sub") or "").strip():
        raise ValueError("Session token missing subject.")
    if claims.get("role", ROLE_USER) not in ROLES:
        raise ValueError("Session token has an unknown role.")
    return claims
