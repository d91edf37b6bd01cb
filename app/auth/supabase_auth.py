"""Request authentication dependencies for FastAPI.

User-facing routes validate a Supabase JWT; the processing trigger routes
validate a shared bearer secret held by the external scheduler.
"""

import hmac
from typing import Any

from fastapi import Header, HTTPException, Request

from app.config import settings
from app.db.supabase_client import create_anon_client


def _bearer_token(authorization: str) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")
    return authorization[len("Bearer "):].strip()


async def verify_jwt(request: Request, authorization: str = Header(None)) -> Any:
    """Validate Supabase JWT from Authorization header.

    Returns the authenticated user object.
    """
    token = _bearer_token(authorization)
    try:
        client = getattr(request.app.state, "auth_client", None) or create_anon_client()
        user_response = client.auth.get_user(token)
        user = user_response.user
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user


def user_id_of(user: Any) -> str:
    if isinstance(user, dict):
        return str(user["id"])
    return str(user.id)


async def verify_trigger_token(authorization: str = Header(None)) -> None:
    """Check the scheduler's bearer secret before any processing work starts.

    An unset secret rejects every request.
    """
    expected = settings.background_job_token
    if not expected:
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = _bearer_token(authorization)
    if not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")
