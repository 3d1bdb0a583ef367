"""
Plan and Location Routes
"""
import asyncio
import logging
from typing import Dict, Any, List

from fastapi import APIRouter, Depends

from api.middleware.authentication import get_current_user
from api.utils.errors import ResourceNotFoundError, require_available
from api.utils.responses import success_response
from database import list_plans, get_plan
from pricing_utils import STATIC_PLANS, LOCATIONS, format_price, format_ram, format_transfer, daily_rate_cents
from services.virtfusion import virtfusion_service

logger = logging.getLogger(__name__)

router = APIRouter()


def plan_view(plan: Dict[str, Any]) -> Dict[str, Any]:
    price = int(plan['price_monthly_cents'])
    return {
        "id": plan.get('id'),
        "code": plan['code'],
        "name": plan['name'],
        "vcpu": plan['vcpu'],
        "ramMb": plan['ram_mb'],
        "storageGb": plan['storage_gb'],
        "transferGb": plan['transfer_gb'],
        "priceMonthly": price,
        "dailyRateCents": daily_rate_cents(price),
        "priceDisplay": format_price(price),
        "ramDisplay": format_ram(plan['ram_mb']),
        "transferDisplay": format_transfer(plan['transfer_gb']),
        "active": bool(plan.get('active', True)),
    }


def flatten_templates(groups: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    templates = []
    for group in groups or []:
        for template in group.get('templates') or []:
            templates.append({
                "id": template.get('id'),
                "name": template.get('name'),
                "version": template.get('version'),
                "variant": template.get('variant'),
                "group": group.get('name'),
            })
    return templates


@router.get("/plans")
async def get_plans():
    plans = await list_plans(active_only=True)
    if not plans:
        logger.warning("⚠️ Plan table empty or unavailable - serving static catalogue")
        plans = [plan.to_dict() for plan in STATIC_PLANS if plan.active]
    return success_response({"plans": [plan_view(plan) for plan in plans]})


@router.get("/locations")
async def get_locations():
    return success_response({"locations": [
        {
            "code": location.code,
            "name": location.name,
            "country": location.country,
            "enabled": location.enabled,
        }
        for location in LOCATIONS
    ]})


@router.get("/plans/{plan_id}/templates")
async def get_plan_templates(plan_id: int, user: dict = Depends(get_current_user)):
    plan = await get_plan(plan_id)
    if not plan or not plan.get('active'):
        raise ResourceNotFoundError("Plan", str(plan_id))

    vf = require_available(virtfusion_service, "Server provisioning")
    groups = await asyncio.to_thread(vf.get_os_templates_for_package, int(plan['virtfusion_package_id']))
    return success_response({"groups": groups, "templates": flatten_templates(groups)})
