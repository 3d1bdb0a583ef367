"""
Billing screen flows: wallet top-up and auto top-up settings

A top-up charges the selected saved card directly. When the card needs
3-D Secure the flow falls back to hosted Stripe Checkout; with no saved
card Checkout is used from the start.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from dashboard.api_client import ApiClient, ApiError
from dashboard.query_client import QueryClient
from dashboard.toasts import Toaster
from pricing_utils import format_price
from utils.validation import dollars_to_cents, validate_topup_amount

logger = logging.getLogger(__name__)

TOPUP_PRESETS_CENTS = (1000, 2000, 5000, 10000)
AUTO_TOPUP_THRESHOLD_PRESETS_CENTS = (500, 1000, 2000, 5000, 10000)
AUTO_TOPUP_AMOUNT_PRESETS_CENTS = (1000, 2000, 5000, 10000, 20000)

WALLET_KEY = ('wallet',)
TRANSACTIONS_KEY = ('transactions',)
PAYMENT_METHODS_KEY = ('payment-methods',)
AUTO_TOPUP_KEY = ('auto-topup',)

# Top-up outcomes
CHARGED = 'charged'
REDIRECTED = 'redirected'
FAILED = 'failed'


async def load_payment_methods(api: ApiClient, queries: QueryClient) -> List[Dict[str, Any]]:
    async def fetch():
        return (await api.get('/payment-methods')).get('paymentMethods') or []
    return await queries.fetch_query(PAYMENT_METHODS_KEY, fetch)


class TopUpFlow:
    def __init__(self, api: ApiClient, queries: QueryClient, toaster: Toaster,
                 redirect: Callable[[str], None]):
        self.api = api
        self.queries = queries
        self.toaster = toaster
        self.redirect = redirect
        self.preset_cents: Optional[int] = TOPUP_PRESETS_CENTS[1]
        self.custom_amount = ''
        self.payment_methods: List[Dict[str, Any]] = []
        self.payment_method_id: Optional[str] = None
        self.pending = False

    async def load(self) -> None:
        self.payment_methods = await load_payment_methods(self.api, self.queries)
        if self.payment_method_id is None and self.payment_methods:
            self.payment_method_id = self.payment_methods[0]['id']

    def select_preset(self, cents: int) -> None:
        if cents not in TOPUP_PRESETS_CENTS:
            raise ValueError(f"Unknown preset amount: {cents}")
        self.preset_cents = cents
        self.custom_amount = ''

    def set_custom_amount(self, dollars: str) -> None:
        self.custom_amount = dollars
        self.preset_cents = None

    @property
    def amount_cents(self) -> Optional[int]:
        if self.custom_amount.strip():
            return dollars_to_cents(self.custom_amount)
        return self.preset_cents

    @property
    def amount_error(self) -> Optional[str]:
        _, error = validate_topup_amount(self.amount_cents)
        return error

    async def submit(self) -> str:
        """Charge the wallet top-up; returns CHARGED, REDIRECTED or FAILED"""
        amount = self.amount_cents
        ok, error = validate_topup_amount(amount)
        if not ok:
            self.toaster.error("Invalid amount", error)
            return FAILED

        self.pending = True
        try:
            if self.payment_method_id:
                return await self._direct_charge(amount)
            return await self._checkout(amount)
        finally:
            self.pending = False

    async def _direct_charge(self, amount: int) -> str:
        try:
            result = await self.api.post('/billing/topup/direct', {
                'amountCents': amount,
                'paymentMethodId': self.payment_method_id,
            })
        except ApiError as e:
            self.toaster.error("Payment Failed", e.message)
            return FAILED

        if result.get('requiresAction'):
            self.toaster.info("Redirecting to Secure Payment", "Your card requires additional verification.")
            return await self._checkout(amount)

        if not result.get('success'):
            self.toaster.error("Payment Failed", result.get('error') or "Failed to process payment")
            return FAILED

        await self.queries.invalidate_queries(WALLET_KEY)
        await self.queries.invalidate_queries(TRANSACTIONS_KEY)
        charged = result.get('chargedAmountCents') or amount
        self.toaster.success("Payment Successful", f"{format_price(charged)} has been added to your wallet.")
        return CHARGED

    async def _checkout(self, amount: int) -> str:
        try:
            session = await self.api.post('/billing/topup', {'amountCents': amount})
        except ApiError as e:
            self.toaster.error("Error", e.message)
            return FAILED

        url = session.get('url')
        if not url:
            self.toaster.error("Error", "Failed to create checkout session")
            return FAILED
        self.redirect(url)
        return REDIRECTED


class AutoTopupSettings:
    def __init__(self, api: ApiClient, queries: QueryClient, toaster: Toaster):
        self.api = api
        self.queries = queries
        self.toaster = toaster
        self.enabled = False
        self.threshold_cents = AUTO_TOPUP_THRESHOLD_PRESETS_CENTS[0]
        self.amount_cents = AUTO_TOPUP_AMOUNT_PRESETS_CENTS[1]
        self.payment_method_id: Optional[str] = None
        self.payment_methods: List[Dict[str, Any]] = []
        self.pending = False

    async def load(self) -> None:
        async def fetch():
            return (await self.api.get('/billing/auto-topup')).get('autoTopup') or {}

        settings = await self.queries.fetch_query(AUTO_TOPUP_KEY, fetch)
        self.payment_methods = await load_payment_methods(self.api, self.queries)
        self.enabled = bool(settings.get('enabled'))
        self.threshold_cents = settings.get('thresholdCents') or self.threshold_cents
        self.amount_cents = settings.get('amountCents') or self.amount_cents
        self.payment_method_id = settings.get('paymentMethodId')

    def set_threshold(self, cents: int) -> None:
        if cents not in AUTO_TOPUP_THRESHOLD_PRESETS_CENTS:
            raise ValueError(f"Unknown threshold: {cents}")
        self.threshold_cents = cents

    def set_amount(self, cents: int) -> None:
        if cents not in AUTO_TOPUP_AMOUNT_PRESETS_CENTS:
            raise ValueError(f"Unknown amount: {cents}")
        self.amount_cents = cents

    async def save(self, enabled: Optional[bool] = None) -> bool:
        if enabled is not None:
            self.enabled = enabled

        if self.enabled and not self.payment_method_id:
            if not self.payment_methods:
                self.toaster.error("Add a Payment Method", "Please add a card before enabling auto top-up.")
                self.enabled = False
                return False
            self.payment_method_id = self.payment_methods[0]['id']

        self.pending = True
        try:
            await self.api.post('/billing/auto-topup', {
                'enabled': self.enabled,
                'thresholdCents': self.threshold_cents,
                'amountCents': self.amount_cents,
                'paymentMethodId': self.payment_method_id if self.enabled else None,
            })
        except ApiError as e:
            self.toaster.error("Error", e.message or "Failed to update settings")
            return False
        finally:
            self.pending = False

        await self.queries.invalidate_queries(AUTO_TOPUP_KEY)
        self.toaster.success("Settings Updated", "Your auto top-up settings have been saved.")
        return True
