"""
Authentication Routes
Auth0 login/registration backed by local sessions
"""
import logging
from typing import Dict, Any

from fastapi import APIRouter, Depends, Request, Response

from api.middleware.authentication import get_current_user, get_session_id
from api.schemas.auth import RegisterRequest, LoginRequest
from api.utils.errors import (
    APIError,
    BadRequestError,
    UnauthorizedError,
    ForbiddenError,
    ConflictError,
    ServiceUnavailableError,
    require_available,
)
from api.utils.responses import success_response
from config import get_config
from database import (
    create_session,
    delete_session,
    get_user_flags,
    get_wallet,
    revoke_user_sessions,
    session_expiry,
    SESSION_REVOKE_REASONS,
)
from services.accounts import link_virtfusion_account
from services.auth0 import auth0_service, Auth0Error, BLOCKED_ACCOUNT_MESSAGE
from services.virtfusion import virtfusion_service
from utils.environment import is_production_environment
from utils.validation import validate_email

logger = logging.getLogger(__name__)

router = APIRouter()


def _translate_auth0_error(error: Auth0Error) -> APIError:
    message = str(error)
    if error.status_code == 401:
        return UnauthorizedError(message, "INVALID_CREDENTIALS")
    if error.status_code == 403:
        return ForbiddenError(message, "USER_BLOCKED")
    if error.status_code == 409:
        return ConflictError(message)
    if error.status_code >= 500:
        return ServiceUnavailableError(message)
    return BadRequestError(message)


def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["auth0_user_id"],
        "email": user["email"],
        "name": user.get("name"),
        "isAdmin": bool(user.get("is_admin")),
        "virtFusionUserId": user.get("virtfusion_user_id"),
    }


async def _start_session(response: Response, email: str, password: str) -> Dict[str, Any]:
    auth0 = require_available(auth0_service, "Authentication")
    try:
        identity = await auth0.authenticate_user(email, password)
    except Auth0Error as e:
        raise _translate_auth0_error(e)

    auth0_user_id = identity["user_id"]
    flags = await get_user_flags(auth0_user_id)
    if flags and flags.get("blocked"):
        logger.warning(f"🔒 Blocked user {email} attempted login")
        raise ForbiddenError(BLOCKED_ACCOUNT_MESSAGE, "USER_BLOCKED")

    try:
        profile = await auth0.get_user(auth0_user_id) or identity
    except Auth0Error as e:
        logger.warning(f"⚠️ Could not load Auth0 profile for {email}: {e}")
        profile = identity

    # single active session per user
    await revoke_user_sessions(auth0_user_id, SESSION_REVOKE_REASONS['CONCURRENT_LOGIN'])

    virtfusion_user_id = await link_virtfusion_account(virtfusion_service, auth0, {**profile, "user_id": auth0_user_id})
    is_admin = (profile.get("app_metadata") or {}).get("is_admin") is True

    app_config = get_config().app
    session = await create_session(
        auth0_user_id,
        identity["email"] or email,
        identity.get("name"),
        is_admin,
        virtfusion_user_id,
        session_expiry(app_config.session_days),
    )
    if not session:
        raise ServiceUnavailableError("Could not create session")

    response.set_cookie(
        key=app_config.session_cookie,
        value=session["id"],
        httponly=True,
        secure=is_production_environment(),
        samesite="lax",
        max_age=app_config.session_days * 24 * 3600,
        path="/",
    )
    if is_admin:
        logger.info(f"🛡️ Admin user logged in: {email}")
    else:
        logger.info(f"✅ User logged in: {email}")

    return {
        "id": auth0_user_id,
        "email": session["email"],
        "name": session.get("name"),
        "isAdmin": is_admin,
        "virtFusionUserId": virtfusion_user_id,
    }


@router.post("/auth/register", status_code=201)
async def register(body: RegisterRequest, response: Response):
    """Create an Auth0 account and sign it in"""
    ok, error = validate_email(body.email)
    if not ok:
        raise BadRequestError(error)

    auth0 = require_available(auth0_service, "Authentication")
    try:
        await auth0.create_user(body.email.strip().lower(), body.password, body.name)
    except Auth0Error as e:
        raise _translate_auth0_error(e)

    logger.info(f"🆕 Registered account for {body.email}")
    user = await _start_session(response, body.email.strip().lower(), body.password)
    return success_response({"user": user})


@router.post("/auth/login")
async def login(body: LoginRequest, response: Response):
    user = await _start_session(response, body.email.strip().lower(), body.password)
    return success_response({"user": user})


@router.post("/auth/logout")
async def logout(request: Request, response: Response):
    session_id = get_session_id(request)
    if session_id:
        await delete_session(session_id)
    response.delete_cookie(get_config().app.session_cookie, path="/")
    return success_response()


@router.get("/auth/me")
@router.get("/me")
async def me(user: dict = Depends(get_current_user)):
    wallet = await get_wallet(user["auth0_user_id"])
    return success_response({
        "user": _public_user(user),
        "balanceCents": int(wallet["balance_cents"]) if wallet else 0,
    })
