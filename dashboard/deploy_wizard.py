"""
Deploy wizard: region -> plan -> OS template -> hostname -> confirm
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from dashboard.api_client import ApiClient, ApiError
from dashboard.query_client import QueryClient
from dashboard.toasts import Toaster
from pricing_utils import format_price, topup_shortfall_cents
from utils.validation import MIN_TOPUP_CENTS, normalize_hostname, validate_hostname

logger = logging.getLogger(__name__)

STEPS = ('location', 'plan', 'os', 'hostname', 'confirm')

INVALIDATE_ON_DEPLOY = (('wallet',), ('servers',), ('me',))


def can_afford(balance_cents: int, price_cents: int) -> bool:
    return balance_cents >= price_cents


def suggested_topup_cents(balance_cents: int, price_cents: int) -> int:
    return topup_shortfall_cents(price_cents, balance_cents, MIN_TOPUP_CENTS)


class DeployWizard:
    def __init__(self, api: ApiClient, queries: QueryClient, toaster: Toaster,
                 redirect: Callable[[str], None]):
        self.api = api
        self.queries = queries
        self.toaster = toaster
        self.redirect = redirect
        self.step = 0
        self.locations: List[Dict[str, Any]] = []
        self.plans: List[Dict[str, Any]] = []
        self.templates: List[Dict[str, Any]] = []
        self.balance_cents = 0
        self.location_code: Optional[str] = None
        self.plan: Optional[Dict[str, Any]] = None
        self.os_id: Optional[int] = None
        self.hostname = ''
        self.pending = False

    @property
    def current_step(self) -> str:
        return STEPS[self.step]

    async def load(self) -> None:
        async def fetch_locations():
            return (await self.api.get('/locations')).get('locations') or []

        async def fetch_plans():
            return (await self.api.get('/plans')).get('plans') or []

        async def fetch_wallet():
            return (await self.api.get('/wallet')).get('wallet') or {}

        self.locations = await self.queries.fetch_query(('locations',), fetch_locations)
        self.plans = await self.queries.fetch_query(('plans',), fetch_plans)
        wallet = await self.queries.fetch_query(('wallet',), fetch_wallet)
        self.balance_cents = int(wallet.get('balanceCents') or 0)

    def select_location(self, code: str) -> None:
        location = next((loc for loc in self.locations if loc['code'] == code), None)
        if location is None or not location.get('enabled'):
            raise ValueError(f"Location {code} is not available")
        self.location_code = code

    async def select_plan(self, plan_id: int) -> None:
        plan = next((p for p in self.plans if p['id'] == plan_id), None)
        if plan is None:
            raise ValueError(f"Unknown plan: {plan_id}")
        self.plan = plan
        self.os_id = None

        async def fetch_templates():
            return (await self.api.get(f'/plans/{plan_id}/templates')).get('templates') or []

        self.templates = await self.queries.fetch_query(('plans', plan_id, 'templates'), fetch_templates)

    def select_os(self, os_id: int) -> None:
        if not any(t['id'] == os_id for t in self.templates):
            raise ValueError(f"Template {os_id} is not offered for this plan")
        self.os_id = os_id

    def set_hostname(self, hostname: str) -> None:
        self.hostname = normalize_hostname(hostname)

    @property
    def hostname_error(self) -> Optional[str]:
        # Blank is fine: the server assigns one
        if not self.hostname:
            return None
        _, error = validate_hostname(self.hostname)
        return error

    @property
    def price_cents(self) -> int:
        return int(self.plan['priceMonthly']) if self.plan else 0

    @property
    def can_afford(self) -> bool:
        return self.plan is not None and can_afford(self.balance_cents, self.price_cents)

    @property
    def suggested_topup_cents(self) -> int:
        return suggested_topup_cents(self.balance_cents, self.price_cents)

    def step_complete(self, step: str) -> bool:
        if step == 'location':
            return self.location_code is not None
        if step == 'plan':
            return self.plan is not None
        if step == 'os':
            return self.os_id is not None
        if step == 'hostname':
            return self.hostname_error is None
        return self.can_afford

    def next(self) -> str:
        if not self.step_complete(self.current_step):
            raise ValueError(f"Step '{self.current_step}' is incomplete")
        if self.step < len(STEPS) - 1:
            self.step += 1
        return self.current_step

    def back(self) -> str:
        if self.step > 0:
            self.step -= 1
        return self.current_step

    async def deploy(self) -> Optional[Dict[str, Any]]:
        """Place the order; on success redirect to the new server"""
        if self.hostname_error:
            self.toaster.error("Invalid hostname", self.hostname_error)
            return None
        if not all(self.step_complete(step) for step in ('location', 'plan', 'os')):
            self.toaster.error("Incomplete order", "Choose a location, plan and operating system.")
            return None
        if not self.can_afford:
            self.toaster.error(
                "Insufficient balance",
                f"Add at least {format_price(self.suggested_topup_cents)} to your wallet to deploy this plan.",
            )
            return None

        body: Dict[str, Any] = {
            'planId': self.plan['id'],
            'osId': self.os_id,
            'locationCode': self.location_code,
        }
        if self.hostname:
            body['hostname'] = self.hostname

        self.pending = True
        try:
            result = await self.api.post('/deploy', body)
        except ApiError as e:
            logger.warning(f"⚠️ Deploy failed: {e.message}")
            self.toaster.error("Deployment failed", e.message)
            return None
        finally:
            self.pending = False

        for key in INVALIDATE_ON_DEPLOY:
            await self.queries.invalidate_queries(key)
        self.toaster.success("Server deploying", f"{result.get('hostname') or 'Your server'} is being provisioned.")
        self.redirect(f"/servers/{result['serverId']}")
        return result
