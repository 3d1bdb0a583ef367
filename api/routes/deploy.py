"""
Deploy Routes
"""
import logging
from typing import Dict, Any

from fastapi import APIRouter, Depends

from api.middleware.authentication import get_current_user
from api.schemas.deploy import DeployRequest
from api.utils.errors import BadRequestError, PaymentRequiredError, ResourceNotFoundError, InternalServerError
from api.utils.responses import success_response
from database import get_deploy_order, list_deploy_orders
from services.deploy_orchestrator import (
    DeployOrchestrator,
    DeployValidationError,
    DeployInsufficientFundsError,
    DeployProvisioningError,
)
from services.virtfusion import virtfusion_service

logger = logging.getLogger(__name__)

router = APIRouter()


def order_view(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": order["id"],
        "planCode": order["plan_code"],
        "hostname": order.get("hostname"),
        "locationCode": order["location_code"],
        "osId": order.get("os_id"),
        "priceCents": int(order["price_cents"]),
        "status": order["status"],
        "serverId": order.get("virtfusion_server_id"),
        "errorMessage": order.get("error_message"),
        "createdAt": order.get("created_at"),
    }


@router.post("/deploy")
async def deploy_server(body: DeployRequest, user: dict = Depends(get_current_user)):
    """Pay for the first month from the wallet and provision a server"""
    orchestrator = DeployOrchestrator(virtfusion_service)
    try:
        result = await orchestrator.deploy(user, body.planId, body.locationCode, body.hostname, body.osId)
    except DeployValidationError as e:
        raise BadRequestError(str(e))
    except DeployInsufficientFundsError as e:
        raise PaymentRequiredError(
            f"Insufficient balance. Please add at least ${e.shortfall_cents / 100:.2f} to your wallet.",
            "INSUFFICIENT_FUNDS",
        )
    except DeployProvisioningError as e:
        logger.error(f"❌ Deploy order {e.order_id} failed for {user['email']}: {e}")
        raise InternalServerError(str(e), "PROVISIONING_FAILED")

    return success_response(result)


@router.get("/deploy")
async def get_deploy_orders(user: dict = Depends(get_current_user)):
    orders = await list_deploy_orders(user["auth0_user_id"])
    return success_response({"orders": [order_view(order) for order in orders]})


@router.get("/deploy/{order_id}")
async def get_deploy_order_endpoint(order_id: int, user: dict = Depends(get_current_user)):
    order = await get_deploy_order(order_id)
    if not order or order["auth0_user_id"] != user["auth0_user_id"]:
        raise ResourceNotFoundError("Order", str(order_id))
    return success_response({"order": order_view(order)})
