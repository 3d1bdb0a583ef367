"""
Stripe service implementation for card payments and wallet top-ups
Talks to the Stripe REST API directly with httpx (form-encoded requests)
"""

import hashlib
import hmac
import logging
import time
import uuid
from typing import Dict, List, Optional, Any, Tuple

import httpx

from config import get_config

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


class StripeError(Exception):
    """Error response from Stripe (card declines included)"""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None,
                 decline_code: Optional[str] = None, payment_intent: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.code = code
        self.decline_code = decline_code
        self.payment_intent = payment_intent
        super().__init__(message)

    @property
    def requires_action(self) -> bool:
        if self.code == 'authentication_required':
            return True
        return bool(self.payment_intent and self.payment_intent.get('status') == 'requires_action')


class WebhookSignatureError(Exception):
    """Stripe-Signature header missing, malformed, stale or not matching"""


def encode_form(params: Dict[str, Any], prefix: str = '') -> List[Tuple[str, str]]:
    """
    Flatten nested params into Stripe's bracket form encoding

    {'metadata': {'type': 'wallet_topup'}, 'payment_method_types': ['card']}
    -> [('metadata[type]', 'wallet_topup'), ('payment_method_types[0]', 'card')]
    """
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f'{prefix}[{key}]' if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f'{name}[{index}]'
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, item_name))
                else:
                    pairs.append((item_name, _form_value(item)))
        else:
            pairs.append((name, _form_value(value)))
    return pairs


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def compute_signature(payload: bytes, timestamp: str, secret: str) -> str:
    signed_payload = f"{timestamp}.".encode('utf-8') + payload
    return hmac.new(secret.encode('utf-8'), signed_payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature_header: Optional[str], secret: str,
                             tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
                             now: Optional[int] = None) -> bool:
    """
    Verify a Stripe-Signature header (t=<unix>,v1=<hex>[,v1=...])

    Raises WebhookSignatureError when verification fails, returns True otherwise.
    """
    if not signature_header:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    if not secret:
        raise WebhookSignatureError("Webhook secret not configured")

    timestamp = None
    signatures: List[str] = []
    for part in signature_header.split(','):
        key, _, value = part.strip().partition('=')
        if key == 't':
            timestamp = value
        elif key == 'v1':
            signatures.append(value)

    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed Stripe-Signature header")

    try:
        signed_at = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Invalid signature timestamp")

    current = int(time.time()) if now is None else now
    if tolerance and abs(current - signed_at) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("No matching v1 signature")
    return True


class StripeService:
    """Stripe REST API wrapper"""

    def __init__(self) -> None:
        stripe_config = get_config().stripe
        self.secret_key = stripe_config.secret_key
        self.publishable_key = stripe_config.publishable_key
        self.webhook_secret = stripe_config.webhook_secret
        self.base_url = stripe_config.api_base_url
        self.currency = stripe_config.currency

        if self.secret_key:
            mode = 'test' if self.secret_key.startswith('sk_test') else 'live'
            logger.info(f"🔧 Stripe service initialized ({mode} mode)")
        else:
            logger.info("🔧 Stripe service initialized (missing credentials)")

    def is_available(self) -> bool:
        return bool(self.secret_key)

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            'Authorization': f'Bearer {self.secret_key}',
            'Content-Type': 'application/x-www-form-urlencoded',
        }
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key
        return headers

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                       idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        if not self.is_available():
            raise StripeError("Stripe is not configured", 503)

        url = f'{self.base_url}{path}'
        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                if method == 'GET':
                    response = await client.get(url, params=encode_form(params or {}), headers=self._headers())
                else:
                    response = await client.request(
                        method, url,
                        data=dict(encode_form(params or {})),
                        headers=self._headers(idempotency_key),
                    )
        except httpx.HTTPError as e:
            logger.error(f"❌ Stripe network error on {method} {path}: {e}")
            raise StripeError(f"Payment provider unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get('error') or {}
            message = error.get('message') or f"Stripe API error: {response.status_code}"
            logger.warning(f"⚠️ Stripe {method} {path} failed ({response.status_code}): "
                           f"{error.get('code') or error.get('type')} - {message}")
            raise StripeError(
                message,
                response.status_code,
                code=error.get('code'),
                decline_code=error.get('decline_code'),
                payment_intent=error.get('payment_intent'),
            )
        return body

    # === Customers ===

    async def create_customer(self, email: str, auth0_user_id: str, name: Optional[str] = None) -> Dict[str, Any]:
        customer = await self._request('POST', '/customers', {
            'email': email,
            'name': name,
            'metadata': {'auth0_user_id': auth0_user_id},
        }, idempotency_key=f'customer-{auth0_user_id}')
        logger.info(f"✅ Stripe customer {customer.get('id')} created for {email}")
        return customer

    async def get_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        try:
            customer = await self._request('GET', f'/customers/{customer_id}')
        except StripeError as e:
            if e.status_code == 404:
                return None
            raise
        if customer.get('deleted'):
            return None
        return customer

    async def get_or_create_customer(self, auth0_user_id: str, email: str, name: Optional[str] = None,
                                     existing_customer_id: Optional[str] = None) -> str:
        """Return a live customer id, creating one when the stored id is missing or deleted"""
        if existing_customer_id:
            customer = await self.get_customer(existing_customer_id)
            if customer:
                return customer['id']
            logger.warning(f"⚠️ Stripe customer {existing_customer_id} no longer exists - creating a new one")
        customer = await self.create_customer(email, auth0_user_id, name)
        return customer['id']

    # === Payment methods ===

    async def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        result = await self._request('GET', '/payment_methods', {'customer': customer_id, 'type': 'card'})
        return result.get('data') or []

    async def get_payment_method(self, payment_method_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self._request('GET', f'/payment_methods/{payment_method_id}')
        except StripeError as e:
            if e.status_code == 404:
                return None
            raise

    async def detach_payment_method(self, payment_method_id: str) -> Dict[str, Any]:
        result = await self._request('POST', f'/payment_methods/{payment_method_id}/detach')
        logger.info(f"🗑️ Detached payment method {payment_method_id}")
        return result

    async def create_setup_intent(self, customer_id: str) -> Dict[str, Any]:
        return await self._request('POST', '/setup_intents', {
            'customer': customer_id,
            'payment_method_types': ['card'],
            'usage': 'off_session',
        })

    # === Charges ===

    async def create_payment_intent(self, customer_id: str, payment_method_id: str, amount_cents: int,
                                    description: str, metadata: Optional[Dict[str, str]] = None,
                                    idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        """Confirm an off-session charge against a saved card"""
        return await self._request('POST', '/payment_intents', {
            'amount': amount_cents,
            'currency': self.currency,
            'customer': customer_id,
            'payment_method': payment_method_id,
            'off_session': True,
            'confirm': True,
            'description': description,
            'metadata': metadata or {},
        }, idempotency_key=idempotency_key or str(uuid.uuid4()))

    async def create_checkout_session(self, customer_id: str, amount_cents: int, auth0_user_id: str,
                                      success_url: str, cancel_url: str) -> Dict[str, Any]:
        """Hosted checkout for a wallet top-up; saves the card for future off-session use"""
        return await self._request('POST', '/checkout/sessions', {
            'mode': 'payment',
            'customer': customer_id,
            'payment_method_types': ['card'],
            'line_items': [{
                'quantity': 1,
                'price_data': {
                    'currency': self.currency,
                    'unit_amount': amount_cents,
                    'product_data': {'name': 'OzVPS Wallet Top-up'},
                },
            }],
            'payment_intent_data': {
                'setup_future_usage': 'off_session',
                'metadata': {'type': 'wallet_topup', 'auth0UserId': auth0_user_id},
            },
            'metadata': {'type': 'wallet_topup', 'auth0UserId': auth0_user_id},
            'success_url': success_url,
            'cancel_url': cancel_url,
        }, idempotency_key=str(uuid.uuid4()))

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        return await self._request('POST', '/billing_portal/sessions', {
            'customer': customer_id,
            'return_url': return_url,
        })

    def verify_webhook_signature(self, payload: bytes, signature_header: Optional[str]) -> bool:
        return verify_webhook_signature(payload, signature_header, self.webhook_secret or '')


def payment_method_summary(pm: Dict[str, Any]) -> Dict[str, Any]:
    card = pm.get('card') or {}
    return {
        'id': pm.get('id'),
        'brand': card.get('brand'),
        'last4': card.get('last4'),
        'expMonth': card.get('exp_month'),
        'expYear': card.get('exp_year'),
    }


# Global instance
try:
    stripe_service = StripeService()
except Exception as e:
    logger.warning(f"Stripe service not initialized: {e}")
    stripe_service = None
