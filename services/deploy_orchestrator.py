"""
Deploy Orchestrator - wallet-funded VPS provisioning

Flow:
- Validate hostname, location, plan and OS template
- Debit the first month and record the order in one transaction
- Provision on VirtFusion (create server + queue OS build)
- On failure refund the wallet and mark the order failed
- On success start server billing one month out
"""

import asyncio
import logging
import time
from typing import Optional, Dict, Any

from database import (
    get_plan,
    get_wallet,
    create_deploy_order_with_debit,
    update_deploy_order,
    refund_deploy_order,
    create_server_billing,
    InsufficientFundsError,
)
from monitoring.production_logging import log_business_event, log_error_with_context, log_performance_metric
from pricing_utils import get_location, topup_shortfall_cents
from services.virtfusion import VirtFusionError, os_template_ids
from utils.timezone_utils import utc_now, add_month
from utils.validation import normalize_hostname, validate_hostname, MIN_TOPUP_CENTS

logger = logging.getLogger(__name__)

BASE36_ALPHABET = '0123456789abcdefghijklmnopqrstuvwxyz'


class DeployValidationError(Exception):
    """Request rejected before any money moved"""


class DeployInsufficientFundsError(Exception):
    def __init__(self, balance_cents: int, price_cents: int):
        self.balance_cents = balance_cents
        self.price_cents = price_cents
        self.shortfall_cents = topup_shortfall_cents(price_cents, balance_cents, MIN_TOPUP_CENTS)
        super().__init__("Insufficient wallet balance")


class DeployProvisioningError(Exception):
    """VirtFusion rejected the build; the order has been refunded"""

    def __init__(self, message: str, order_id: int, refunded: bool):
        self.order_id = order_id
        self.refunded = refunded
        super().__init__(message)


def to_base36(number: int) -> str:
    if number == 0:
        return '0'
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return ''.join(reversed(digits))


def default_hostname(now_ms: Optional[int] = None) -> str:
    """Server-assigned hostname for deploys submitted without one"""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f'vps-{to_base36(now_ms)}'


class DeployOrchestrator:
    """Single entry point for customer deploys"""

    def __init__(self, virtfusion):
        self.vf = virtfusion

    async def _validate(self, plan_id: int, location_code: str, hostname: Optional[str],
                        os_id: Optional[int]) -> Dict[str, Any]:
        if hostname:
            ok, error = validate_hostname(hostname)
            if not ok:
                raise DeployValidationError(error)
            hostname = normalize_hostname(hostname)
        else:
            hostname = default_hostname()

        location = get_location(location_code)
        if location is None or not location.enabled or location.hypervisor_group_id is None:
            raise DeployValidationError("Selected location is not available")

        plan = await get_plan(plan_id)
        if not plan or not plan.get('active'):
            raise DeployValidationError("Selected plan is not available")
        if not plan.get('virtfusion_package_id'):
            raise DeployValidationError("Selected plan is not configured for deployment")

        if os_id is not None:
            groups = await asyncio.to_thread(self.vf.get_os_templates_for_package, int(plan['virtfusion_package_id']))
            if int(os_id) not in os_template_ids(groups):
                raise DeployValidationError("Selected operating system is not available for this plan")

        return {'plan': plan, 'location': location, 'hostname': hostname}

    async def deploy(self, user: Dict[str, Any], plan_id: int, location_code: str,
                     hostname: Optional[str] = None, os_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Deploy a server for the session user

        Returns:
            {'orderId': int, 'serverId': int, 'hostname': str}

        Raises:
            DeployValidationError, DeployInsufficientFundsError, DeployProvisioningError
        """
        if self.vf is None or not self.vf.is_available():
            raise DeployValidationError("Server provisioning is currently unavailable")

        virtfusion_user_id = user.get('virtfusion_user_id')
        if not virtfusion_user_id:
            raise DeployValidationError("Your account is not linked to the server panel yet. Please contact support.")

        checked = await self._validate(plan_id, location_code, hostname, os_id)
        plan, location, hostname = checked['plan'], checked['location'], checked['hostname']
        auth0_user_id = user['auth0_user_id']

        wallet = await get_wallet(auth0_user_id)
        if wallet and wallet.get('deleted_at') is not None:
            raise DeployValidationError("Your wallet is frozen. Please contact support.")

        try:
            order = await create_deploy_order_with_debit(auth0_user_id, plan, hostname, location.code, os_id)
        except InsufficientFundsError as e:
            raise DeployInsufficientFundsError(e.balance_cents, int(plan['price_monthly_cents']))

        logger.info(f"🚀 DEPLOY: Order {order['id']} provisioning {plan['code']} '{hostname}' in {location.code}")
        await update_deploy_order(order['id'], 'provisioning')

        started = time.time()
        try:
            server = await asyncio.to_thread(
                self.vf.provision_server,
                int(virtfusion_user_id),
                int(plan['virtfusion_package_id']),
                int(location.hypervisor_group_id),
                os_id,
                hostname,
            )
        except (VirtFusionError, ValueError) as e:
            log_performance_metric('deploy', 'provision_server', (time.time() - started) * 1000, success=False)
            log_error_with_context('deploy', e, {'order_id': order['id'], 'plan': plan['code']},
                                   user_id=auth0_user_id)
            refund = await refund_deploy_order(order, f"Provisioning failed: {e}")
            raise DeployProvisioningError("Server provisioning failed. Your wallet has been refunded.",
                                          order['id'], refund.get('refunded', False))

        log_performance_metric('deploy', 'provision_server', (time.time() - started) * 1000, success=True)
        server_id = int(server['id'])
        await update_deploy_order(order['id'], 'active', virtfusion_server_id=server_id)
        await create_server_billing(server_id, auth0_user_id, plan['code'], int(plan['price_monthly_cents']),
                                    order['id'], add_month(utc_now()))

        log_business_event('deploy', 'server_deployed', {
            'server_id': server_id,
            'plan': plan['code'],
            'location': location.code,
            'price_cents': int(plan['price_monthly_cents']),
        }, user_id=auth0_user_id, order_id=str(order['id']))
        logger.info(f"✅ DEPLOY: Order {order['id']} active as VirtFusion server {server_id}")

        return {'orderId': order['id'], 'serverId': server_id, 'hostname': hostname}
