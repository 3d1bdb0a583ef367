"""
Session authentication for the dashboard API
Sessions come from the ozvps_session cookie or an "Authorization: Bearer <session id>" header
"""
import logging
from typing import Dict, Optional, Any

from fastapi import Depends, Request

from api.utils.errors import UnauthorizedError, ForbiddenError
from config import get_config
from database import (
    get_session,
    touch_session,
    delete_session,
    revoke_session,
    revoke_user_sessions,
    get_user_flags,
    SESSION_REVOKE_REASONS,
)
from utils.timezone_utils import utc_now, to_utc

logger = logging.getLogger(__name__)


def get_session_id(request: Request) -> Optional[str]:
    cookie_name = get_config().app.session_cookie
    session_id = request.cookies.get(cookie_name)
    if session_id:
        return session_id

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        return token or None
    return None


def session_user(session: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "session_id": session["id"],
        "auth0_user_id": session["auth0_user_id"],
        "email": session["email"],
        "name": session.get("name"),
        "is_admin": bool(session.get("is_admin")),
        "virtfusion_user_id": session.get("virtfusion_user_id"),
    }


async def get_current_user(request: Request) -> Dict[str, Any]:
    """
    Resolve and validate the caller's session

    Rejections carry a machine-readable code so the dashboard can tell
    an expired session from a blocked account.
    """
    session_id = get_session_id(request)
    if not session_id:
        raise UnauthorizedError("Not authenticated", "NO_SESSION")

    session = await get_session(session_id)
    if not session:
        raise UnauthorizedError("Session not found", "NO_SESSION")

    if session.get("revoked_at") is not None:
        if session.get("revoked_reason") == SESSION_REVOKE_REASONS['USER_BLOCKED']:
            raise UnauthorizedError("Your account has been blocked", "SESSION_REVOKED_BLOCKED")
        if session.get("revoked_reason") == SESSION_REVOKE_REASONS['IDLE_TIMEOUT']:
            raise UnauthorizedError("Session timed out due to inactivity", "SESSION_IDLE_TIMEOUT")
        raise UnauthorizedError("Session has been revoked", "SESSION_REVOKED")

    now = utc_now()
    if to_utc(session["expires_at"]) <= now:
        await delete_session(session_id)
        raise UnauthorizedError("Session expired", "SESSION_EXPIRED")

    idle_limit = get_config().app.idle_timeout_minutes * 60
    last_activity = session.get("last_activity_at")
    if last_activity is not None and (now - to_utc(last_activity)).total_seconds() > idle_limit:
        await revoke_session(session_id, SESSION_REVOKE_REASONS['IDLE_TIMEOUT'])
        raise UnauthorizedError("Session timed out due to inactivity", "SESSION_IDLE_TIMEOUT")

    flags = await get_user_flags(session["auth0_user_id"])
    if flags and flags.get("blocked"):
        await revoke_user_sessions(session["auth0_user_id"], SESSION_REVOKE_REASONS['USER_BLOCKED'])
        logger.warning(f"🔒 Blocked user {session['email']} attempted access")
        raise UnauthorizedError("Your account has been blocked", "SESSION_REVOKED_BLOCKED")

    await touch_session(session_id)
    return session_user(session)


async def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        logger.warning(f"🚫 Non-admin {user['email']} attempted admin access")
        raise ForbiddenError("Admin access required")
    return user


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
