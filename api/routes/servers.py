"""
Customer Server Routes
Servers are looked up on VirtFusion and always checked against the session's VirtFusion user
"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Any, Optional

from fastapi import APIRouter, Depends

from api.middleware.authentication import get_current_user
from api.schemas.servers import PowerRequest, RenameRequest, CancellationRequest
from api.utils.errors import (
    BadRequestError,
    ForbiddenError,
    ConflictError,
    InternalServerError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    require_available,
)
from api.utils.responses import success_response
from config import get_config
from database import (
    get_server_billing,
    list_server_billing_for_user,
    list_user_cancellations,
    get_active_cancellation,
    create_cancellation,
    revoke_cancellation,
)
from services.virtfusion import virtfusion_service, VirtFusionError
from utils.timezone_utils import utc_now
from utils.validation import validate_server_name

logger = logging.getLogger(__name__)

router = APIRouter()


def _vf():
    return require_available(virtfusion_service, "Server management")


def cancellation_view(cancellation: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not cancellation:
        return None
    return {
        "id": cancellation["id"],
        "mode": cancellation["mode"],
        "status": cancellation["status"],
        "reason": cancellation.get("reason"),
        "requestedAt": cancellation.get("requested_at"),
        "scheduledDeletionAt": cancellation.get("scheduled_deletion_at"),
    }


def billing_view(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not record:
        return None
    return {
        "status": record["status"],
        "planCode": record["plan_code"],
        "priceMonthlyCents": int(record["price_monthly_cents"]),
        "nextBillAt": record.get("next_bill_at"),
        "overdueSince": record.get("overdue_since"),
    }


async def _owned_server(server_id: int, user: Dict[str, Any]) -> Dict[str, Any]:
    """Fetch a server the caller owns; anything else is reported as not found"""
    vf = _vf()
    try:
        server = await asyncio.to_thread(vf.get_server, server_id)
    except VirtFusionError as e:
        logger.error(f"❌ VirtFusion lookup failed for server {server_id}: {e}")
        raise ServiceUnavailableError("Server panel is unavailable. Please try again shortly.")

    owner = (server or {}).get("owner") or {}
    if not server or not user.get("virtfusion_user_id") or owner.get("id") != user["virtfusion_user_id"]:
        raise ResourceNotFoundError("Server", str(server_id))
    return server


async def _ensure_not_suspended(server: Dict[str, Any]):
    billing = await get_server_billing(server["id"])
    if server.get("suspended") or (billing and billing["status"] == "suspended"):
        raise ForbiddenError("This server is suspended. Please contact support.", "SERVER_SUSPENDED")


@router.get("/servers")
async def list_servers(user: dict = Depends(get_current_user)):
    if not user.get("virtfusion_user_id"):
        return success_response({"servers": []})

    vf = _vf()
    try:
        servers = await asyncio.to_thread(vf.list_servers_by_user, int(user["virtfusion_user_id"]))
    except VirtFusionError as e:
        logger.error(f"❌ Failed to list servers for {user['email']}: {e}")
        raise ServiceUnavailableError("Server panel is unavailable. Please try again shortly.")

    billing = {r["virtfusion_server_id"]: r for r in await list_server_billing_for_user(user["auth0_user_id"])}
    cancellations = {c["virtfusion_server_id"]: c for c in await list_user_cancellations(user["auth0_user_id"])}
    for server in servers:
        server["billing"] = billing_view(billing.get(server["id"]))
        server["cancellation"] = cancellation_view(cancellations.get(server["id"]))
    return success_response({"servers": servers})


@router.get("/servers/{server_id}")
async def get_server(server_id: int, user: dict = Depends(get_current_user)):
    server = await _owned_server(server_id, user)
    server["billing"] = billing_view(await get_server_billing(server_id))
    server["cancellation"] = cancellation_view(await get_active_cancellation(server_id))
    return success_response({"server": server})


@router.post("/servers/{server_id}/power")
async def power_server(server_id: int, body: PowerRequest, user: dict = Depends(get_current_user)):
    server = await _owned_server(server_id, user)
    await _ensure_not_suspended(server)

    try:
        await asyncio.to_thread(_vf().power_action, server_id, body.action)
    except VirtFusionError as e:
        raise BadRequestError(f"Power action failed: {e}")

    logger.info(f"⚡ {user['email']} sent {body.action} to server {server_id}")
    return success_response({"action": body.action})


@router.put("/servers/{server_id}/name")
async def rename_server(server_id: int, body: RenameRequest, user: dict = Depends(get_current_user)):
    ok, error = validate_server_name(body.name)
    if not ok:
        raise BadRequestError(error)

    await _owned_server(server_id, user)
    name = body.name.strip()
    try:
        await asyncio.to_thread(_vf().rename_server, server_id, name)
    except VirtFusionError as e:
        raise BadRequestError(f"Rename failed: {e}")
    return success_response({"name": name})


async def _panel_read(server_id: int, user: Dict[str, Any], operation: str):
    """Ownership check, then one VirtFusion read for that server"""
    await _owned_server(server_id, user)
    try:
        return await asyncio.to_thread(getattr(_vf(), operation), server_id)
    except VirtFusionError as e:
        logger.error(f"❌ VirtFusion {operation} failed for server {server_id}: {e}")
        raise ServiceUnavailableError("Server panel is unavailable. Please try again shortly.")


@router.get("/servers/{server_id}/stats")
async def get_server_stats(server_id: int, user: dict = Depends(get_current_user)):
    stats = await _panel_read(server_id, user, "get_server_live_stats")
    if stats is None:
        raise ResourceNotFoundError("Server stats")
    return success_response({"stats": stats})


@router.get("/servers/{server_id}/traffic")
async def get_server_traffic(server_id: int, user: dict = Depends(get_current_user)):
    traffic = await _panel_read(server_id, user, "get_server_traffic")
    return success_response({"traffic": traffic or {}})


@router.get("/servers/{server_id}/build-status")
async def get_build_status(server_id: int, user: dict = Depends(get_current_user)):
    status = await _panel_read(server_id, user, "get_build_status")
    if status is None:
        raise ResourceNotFoundError("Server", str(server_id))
    return success_response({"build": status})


@router.get("/servers/{server_id}/network")
async def get_network(server_id: int, user: dict = Depends(get_current_user)):
    network = await _panel_read(server_id, user, "get_network_info")
    if network is None:
        raise ResourceNotFoundError("Server", str(server_id))
    return success_response({"network": network})


@router.get("/servers/{server_id}/cancellation")
async def get_cancellation(server_id: int, user: dict = Depends(get_current_user)):
    await _owned_server(server_id, user)
    return success_response({"cancellation": cancellation_view(await get_active_cancellation(server_id))})


@router.post("/servers/{server_id}/cancellation")
async def request_cancellation(server_id: int, body: CancellationRequest, user: dict = Depends(get_current_user)):
    """Schedule deletion: 'grace' runs to the end of the grace period, 'immediate' within minutes"""
    server = await _owned_server(server_id, user)
    if await get_active_cancellation(server_id):
        raise ConflictError("A cancellation is already pending for this server")

    billing_config = get_config().billing
    if body.mode == 'immediate':
        scheduled = utc_now() + timedelta(minutes=billing_config.immediate_cancellation_minutes)
    else:
        scheduled = utc_now() + timedelta(days=billing_config.cancellation_grace_days)

    cancellation = await create_cancellation(
        server_id, user["auth0_user_id"], server.get("name"),
        (body.reason or '').strip() or None, body.mode, scheduled,
    )
    if not cancellation:
        logger.error(f"❌ Could not record cancellation of server {server_id} for {user['email']}")
        raise InternalServerError("Could not schedule cancellation. Please try again.")
    logger.info(f"🗓️ {user['email']} requested {body.mode} cancellation of server {server_id}")
    return success_response({"cancellation": cancellation_view(cancellation)})


@router.delete("/servers/{server_id}/cancellation")
async def revoke_cancellation_endpoint(server_id: int, user: dict = Depends(get_current_user)):
    await _owned_server(server_id, user)
    cancellation = await get_active_cancellation(server_id)
    if not cancellation:
        raise ResourceNotFoundError("Cancellation")
    if cancellation["mode"] == 'immediate':
        raise BadRequestError("Immediate cancellations cannot be revoked")
    if not await revoke_cancellation(cancellation["id"]):
        raise ConflictError("Cancellation is already being processed")

    logger.info(f"↩️ {user['email']} revoked cancellation of server {server_id}")
    return success_response({"revoked": True})
