"""Signed session tokens scoping API calls to one ledger account.

Tokens are HS256 JWTs issued by ``/accounts/sync``. Besides the usual
``sub``/``iat``/``exp`` they carry an issuer and audience so a token minted
for another service sharing the secret is refused.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_ISSUER = "valutai-credits"
SESSION_AUDIENCE = "valutai-api"
SESSION_SCOPE = "credits"


@dataclass(frozen=True)
class IssuedSession:
    token: str
    expires_at: int


@dataclass(frozen=True)
class SessionClaims:
    account_id: str
    email: Optional[str]
    expires_at: int


def _ttl(hours: Optional[int]) -> timedelta:
    return timedelta(hours=max(int(hours or settings.JWT_EXPIRATION_HOURS or 24), 1))


def create_session_token(account_id: str, email: Optional[str] = None, ttl_hours: Optional[int] = None) -> IssuedSession:
    now = datetime.now(timezone.utc)
    expires_at = int((now + _ttl(ttl_hours)).timestamp())
    claims: Dict[str, Any] = {
        "sub": account_id,
        "iss": SESSION_ISSUER,
        "aud": SESSION_AUDIENCE,
        "scope": SESSION_SCOPE,
        "iat": int(now.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email
    return IssuedSession(jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM), expires_at)


def decode_session_token(token: str) -> SessionClaims:
    """Verify a session token; ValueError with a client-safe message otherwise."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=SESSION_AUDIENCE,
            issuer=SESSION_ISSUER,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if payload.get("scope") != SESSION_SCOPE:
        raise ValueError("Session token is not valid for the credits API.")
    account_id = str(payload.get("sub") or "").strip()
    if not account_id:
        raise ValueError("Session token missing account.")
    return SessionClaims(
        account_id=account_id,
        email=str(payload.get("email") or "") or None,
        expires_at=int(payload["exp"]),
    )


def session_subject(token: str) -> Optional[str]:
    """Account id of a valid token, None for anything else."""
    try:
        return decode_session_token(token).account_id
    except ValueError:
        return None
