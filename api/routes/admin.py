"""
Admin Routes
VirtFusion server management, infrastructure views, wallets and account blocking.
Every mutating server action writes an admin audit log entry, successful or not.
"""
import asyncio
import logging
from typing import Dict, Any, Optional, Callable

from fastapi import APIRouter, Depends, Query, Request

from api.middleware.authentication import require_admin, client_ip
from api.schemas.admin import AdminActionRequest, TransferRequest, WalletAdjustRequest, BlockUserRequest
from api.utils.errors import (
    BadRequestError,
    ResourceNotFoundError,
    ServiceUnavailableError,
    require_available,
)
from api.utils.responses import success_response
from api.routes.billing import transaction_view
from database import (
    list_wallets,
    get_wallet,
    get_wallet_totals,
    admin_adjust_wallet,
    list_wallet_transactions,
    set_user_blocked,
    revoke_user_sessions,
    create_audit_log,
    list_audit_logs,
    InsufficientFundsError,
    SESSION_REVOKE_REASONS,
)
from monitoring.production_logging import log_audit_event, log_business_event
from services.auth0 import auth0_service, Auth0Error
from services.server_actions import POWER_ACTIONS, ACTION_RESULTS, validate_action
from services.virtfusion import virtfusion_service, VirtFusionError
from services.wallet import wallet_summary

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_SEARCH_LENGTH = 3


def _vf():
    return require_available(virtfusion_service, "VirtFusion")


async def _vf_call(func: Callable, *args):
    try:
        return await asyncio.to_thread(func, *args)
    except VirtFusionError as e:
        logger.error(f"❌ VirtFusion admin call {func.__name__} failed: {e}")
        raise ServiceUnavailableError(f"VirtFusion request failed: {e}")


async def _perform_server_action(request: Request, admin: Dict[str, Any], server_id: int, action: str,
                                 reason: Optional[str], operation: Callable, *args,
                                 new_owner_id: Optional[int] = None):
    """Validate, run and audit one admin action against a VirtFusion server"""
    ok, error = validate_action(action, reason, new_owner_id)
    if not ok:
        raise BadRequestError(error)

    vf = _vf()
    reason = (reason or '').strip() or None
    payload: Dict[str, Any] = {'action': action}
    if new_owner_id is not None:
        payload['newOwnerId'] = new_owner_id

    target_label = None
    try:
        server = await asyncio.to_thread(vf.get_server, server_id)
        target_label = server.get('name') if server else None
    except VirtFusionError as e:
        logger.warning(f"⚠️ Could not resolve name of server {server_id}: {e}")

    audit = dict(
        target_type='server', target_id=str(server_id), target_label=target_label,
        payload=payload, reason=reason, ip_address=client_ip(request),
        user_agent=request.headers.get('User-Agent'),
    )
    try:
        await asyncio.to_thread(operation, server_id, *args)
    except (VirtFusionError, ValueError) as e:
        await create_audit_log(admin['auth0_user_id'], admin['email'], f'server.{action}', status='failure',
                               error_message=str(e), **audit)
        logger.error(f"❌ Admin {admin['email']} failed to {action} server {server_id}: {e}")
        raise BadRequestError(f"Failed to {action} server: {e}")

    await create_audit_log(admin['auth0_user_id'], admin['email'], f'server.{action}', status='success', **audit)
    log_audit_event('admin', f'server.{action}', {'server_id': server_id, 'reason': reason, **payload},
                    user_id=admin['auth0_user_id'])
    return success_response(message=f"Server {ACTION_RESULTS[action]}")


# === VirtFusion servers ===

@router.get("/admin/vf/servers")
async def list_vf_servers(admin: dict = Depends(require_admin)):
    vf = _vf()
    servers = await _vf_call(vf.list_all_servers)
    return success_response({"servers": servers})


@router.get("/admin/vf/servers/{server_id}")
async def get_vf_server(server_id: int, admin: dict = Depends(require_admin)):
    vf = _vf()
    server = await _vf_call(vf.get_server, server_id)
    if not server:
        raise ResourceNotFoundError("Server", str(server_id))
    return success_response({"server": server})


@router.post("/admin/vf/servers/{server_id}/power/{action}")
async def admin_power_action(request: Request, server_id: int, action: str,
                             body: Optional[AdminActionRequest] = None, admin: dict = Depends(require_admin)):
    if action not in POWER_ACTIONS:
        raise BadRequestError(f"Unknown action: {action}")
    return await _perform_server_action(request, admin, server_id, action, body.reason if body else None,
                                        _vf().power_action, action)


@router.post("/admin/vf/servers/{server_id}/suspend")
async def admin_suspend_server(request: Request, server_id: int, body: Optional[AdminActionRequest] = None,
                               admin: dict = Depends(require_admin)):
    return await _perform_server_action(request, admin, server_id, 'suspend', body.reason if body else None,
                                        _vf().suspend_server)


@router.post("/admin/vf/servers/{server_id}/unsuspend")
async def admin_unsuspend_server(request: Request, server_id: int, body: Optional[AdminActionRequest] = None,
                                 admin: dict = Depends(require_admin)):
    return await _perform_server_action(request, admin, server_id, 'unsuspend', body.reason if body else None,
                                        _vf().unsuspend_server)


@router.delete("/admin/vf/servers/{server_id}")
async def admin_delete_server(request: Request, server_id: int, body: Optional[AdminActionRequest] = None,
                              admin: dict = Depends(require_admin)):
    return await _perform_server_action(request, admin, server_id, 'delete', body.reason if body else None,
                                        _vf().delete_server)


@router.post("/admin/vf/servers/{server_id}/transfer")
async def admin_transfer_server(request: Request, server_id: int, body: TransferRequest,
                                admin: dict = Depends(require_admin)):
    return await _perform_server_action(request, admin, server_id, 'transfer', body.reason,
                                        _vf().transfer_server, body.newOwnerId, new_owner_id=body.newOwnerId)


# === Infrastructure ===

@router.get("/admin/vf/hypervisors")
async def list_hypervisors(admin: dict = Depends(require_admin)):
    vf = _vf()
    return success_response({"hypervisors": await _vf_call(vf.get_hypervisors)})


@router.get("/admin/vf/hypervisors/{hypervisor_id}")
async def get_hypervisor(hypervisor_id: int, admin: dict = Depends(require_admin)):
    vf = _vf()
    hypervisor = await _vf_call(vf.get_hypervisor, hypervisor_id)
    if not hypervisor:
        raise ResourceNotFoundError("Hypervisor", str(hypervisor_id))
    return success_response({"hypervisor": hypervisor})


@router.get("/admin/vf/hypervisor-groups")
async def list_hypervisor_groups(admin: dict = Depends(require_admin)):
    vf = _vf()
    return success_response({"groups": await _vf_call(vf.get_hypervisor_groups)})


@router.get("/admin/vf/ip-blocks")
async def list_ip_blocks(admin: dict = Depends(require_admin)):
    vf = _vf()
    return success_response({"ipBlocks": await _vf_call(vf.get_ip_blocks)})


@router.get("/admin/vf/ip-allocations")
async def list_ip_allocations(admin: dict = Depends(require_admin)):
    vf = _vf()
    return success_response({"allocations": await _vf_call(vf.get_ip_allocations)})


@router.get("/admin/vf/users")
async def list_vf_users(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    admin: dict = Depends(require_admin)
):
    vf = _vf()
    return success_response(await _vf_call(vf.get_all_users, page, limit))


@router.get("/admin/vf/packages")
async def list_packages(admin: dict = Depends(require_admin)):
    vf = _vf()
    return success_response({"packages": await _vf_call(vf.get_packages)})


def summarize_infrastructure(servers, hypervisors, ip_blocks) -> Dict[str, Any]:
    total_ips = sum(block['totalAddresses'] for block in ip_blocks)
    used_ips = sum(block['usedAddresses'] for block in ip_blocks)
    return {
        "servers": {
            "total": len(servers),
            "running": sum(1 for s in servers if s['status'] == 'running'),
            "stopped": sum(1 for s in servers if s['status'] == 'stopped'),
        },
        "hypervisors": {
            "total": len(hypervisors),
            "enabled": sum(1 for h in hypervisors if h['enabled']),
            "maintenance": sum(1 for h in hypervisors if h['maintenance']),
        },
        "networking": {
            "totalIps": total_ips,
            "usedIps": used_ips,
            "availableIps": max(total_ips - used_ips, 0),
            "utilization": round(used_ips / total_ips * 100) if total_ips else 0,
        },
    }


@router.get("/admin/vf/stats")
async def get_admin_stats(admin: dict = Depends(require_admin)):
    vf = _vf()
    servers, hypervisors, ip_blocks = await asyncio.gather(
        _vf_call(vf.list_all_servers),
        _vf_call(vf.get_hypervisors),
        _vf_call(vf.get_ip_blocks),
    )
    stats = summarize_infrastructure(servers, hypervisors, ip_blocks)
    stats["billing"] = await get_wallet_totals()
    return success_response({"stats": stats})


# === Wallets & users ===

@router.get("/admin/wallets")
async def admin_list_wallets(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin: dict = Depends(require_admin)
):
    wallets = await list_wallets(limit, offset)
    return success_response({"wallets": [
        {
            "auth0UserId": w["auth0_user_id"],
            "virtFusionUserId": w.get("virtfusion_user_id"),
            "stripeCustomerId": w.get("stripe_customer_id"),
            "balanceCents": int(w["balance_cents"]),
            "autoTopupEnabled": bool(w.get("auto_topup_enabled")),
            "frozen": w.get("deleted_at") is not None,
            "createdAt": w.get("created_at"),
        }
        for w in wallets
    ]})


@router.post("/admin/wallet/adjust")
async def admin_wallet_adjust(request: Request, body: WalletAdjustRequest, admin: dict = Depends(require_admin)):
    if body.amountCents == 0:
        raise BadRequestError("Adjustment amount cannot be zero")

    reason = body.reason.strip()
    audit = dict(
        target_type='wallet', target_id=body.auth0UserId, payload={'amountCents': body.amountCents},
        reason=reason, ip_address=client_ip(request), user_agent=request.headers.get('User-Agent'),
    )
    try:
        result = await admin_adjust_wallet(body.auth0UserId, body.amountCents, reason,
                                           admin['auth0_user_id'], admin['email'])
    except InsufficientFundsError as e:
        await create_audit_log(admin['auth0_user_id'], admin['email'], 'wallet.adjust', status='failure',
                               error_message=str(e), **audit)
        raise BadRequestError(f"Adjustment would make the balance negative (balance {e.balance_cents}c)")

    await create_audit_log(admin['auth0_user_id'], admin['email'], 'wallet.adjust', status='success', **audit)
    log_business_event('admin', 'wallet_adjust', {
        'target_user': body.auth0UserId,
        'amount_cents': body.amountCents,
        'reason': reason,
    }, user_id=admin['auth0_user_id'])
    return success_response({
        "balanceCents": result['balance_cents'],
        "transaction": transaction_view(result['transaction']),
    })


@router.get("/admin/users/search")
async def admin_search_users(email: str = Query(""), admin: dict = Depends(require_admin)):
    query = email.strip()
    if len(query) < MIN_SEARCH_LENGTH:
        raise BadRequestError(f"Search query must be at least {MIN_SEARCH_LENGTH} characters")

    auth0 = require_available(auth0_service, "User directory")
    try:
        user = await auth0.get_user_by_email(query)
    except Auth0Error as e:
        raise ServiceUnavailableError(str(e))
    if not user:
        return success_response({"users": []})

    wallet = await get_wallet(user['user_id'])
    return success_response({"users": [{
        "auth0UserId": user['user_id'],
        "email": user['email'],
        "name": user.get('name'),
        "emailVerified": user.get('email_verified'),
        "blocked": user.get('blocked'),
        "virtFusionUserId": user['app_metadata'].get('virtfusion_user_id'),
        "wallet": wallet_summary(wallet) if wallet else None,
    }]})


@router.get("/admin/users/{auth0_user_id}/transactions")
async def admin_user_transactions(
    auth0_user_id: str,
    limit: int = Query(100, ge=1, le=500),
    admin: dict = Depends(require_admin)
):
    transactions = await list_wallet_transactions(auth0_user_id, limit)
    return success_response({"transactions": [transaction_view(tx) for tx in transactions]})


@router.post("/admin/block-user")
async def admin_block_user(request: Request, body: BlockUserRequest, admin: dict = Depends(require_admin)):
    if body.auth0UserId == admin['auth0_user_id']:
        raise BadRequestError("You cannot block your own account")

    reason = (body.reason or '').strip() or None
    await set_user_blocked(body.auth0UserId, body.blocked, reason)
    revoked = 0
    if body.blocked:
        revoked = await revoke_user_sessions(body.auth0UserId, SESSION_REVOKE_REASONS['USER_BLOCKED'])

    if auth0_service is not None and auth0_service.is_available():
        try:
            await auth0_service.set_user_blocked(body.auth0UserId, body.blocked)
        except Auth0Error as e:
            logger.warning(f"⚠️ Auth0 block flag not updated for {body.auth0UserId}: {e}")

    action = 'user.block' if body.blocked else 'user.unblock'
    await create_audit_log(admin['auth0_user_id'], admin['email'], action, target_type='user',
                           target_id=body.auth0UserId, status='success', reason=reason,
                           payload={'sessionsRevoked': revoked}, ip_address=client_ip(request),
                           user_agent=request.headers.get('User-Agent'))
    log_audit_event('admin', action, {'target_user': body.auth0UserId, 'reason': reason},
                    user_id=admin['auth0_user_id'])
    return success_response({"blocked": body.blocked, "sessionsRevoked": revoked})


# === Audit log ===

@router.get("/admin/audit-logs")
async def admin_audit_logs(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    action: Optional[str] = None,
    targetType: Optional[str] = None,
    status: Optional[str] = None,
    admin: dict = Depends(require_admin)
):
    result = await list_audit_logs(limit, offset, action, targetType, status)
    return success_response({"logs": result['logs'], "total": result['total'], "limit": limit, "offset": offset})
