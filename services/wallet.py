"""
Wallet service
Stripe customer provisioning, direct card top-ups and auto-top-up rules on top of the wallet ledger
"""

import logging
from typing import Dict, Optional, Any, Tuple

from database import (
    get_or_create_wallet,
    set_wallet_stripe_customer,
    credit_wallet,
    DEFAULT_AUTO_TOPUP_THRESHOLD_CENTS,
    DEFAULT_AUTO_TOPUP_AMOUNT_CENTS,
)
from monitoring.production_logging import log_business_event
from pricing_utils import format_price
from services.stripe_service import StripeError

logger = logging.getLogger(__name__)

AUTO_TOPUP_MIN_THRESHOLD_CENTS = 100
AUTO_TOPUP_MAX_THRESHOLD_CENTS = 10000
AUTO_TOPUP_MIN_AMOUNT_CENTS = 500
AUTO_TOPUP_MAX_AMOUNT_CENTS = 50000


class PaymentMethodOwnershipError(Exception):
    """Payment method is not attached to the caller's Stripe customer"""


class TopUpFailedError(Exception):
    """Card charge did not succeed and needs no further customer action"""

    def __init__(self, message: str, status: Optional[str] = None):
        self.status = status
        super().__init__(message)


def wallet_summary(wallet: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    wallet = wallet or {}
    return {
        'balanceCents': int(wallet.get('balance_cents') or 0),
        'stripeCustomerId': wallet.get('stripe_customer_id'),
        'autoTopupEnabled': bool(wallet.get('auto_topup_enabled')),
        'autoTopupThresholdCents': int(wallet.get('auto_topup_threshold_cents') or DEFAULT_AUTO_TOPUP_THRESHOLD_CENTS),
        'autoTopupAmountCents': int(wallet.get('auto_topup_amount_cents') or DEFAULT_AUTO_TOPUP_AMOUNT_CENTS),
        'autoTopupPaymentMethodId': wallet.get('auto_topup_payment_method_id'),
        'frozen': wallet.get('deleted_at') is not None,
    }


def auto_topup_settings(wallet: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    summary = wallet_summary(wallet)
    return {
        'enabled': summary['autoTopupEnabled'],
        'thresholdCents': summary['autoTopupThresholdCents'],
        'amountCents': summary['autoTopupAmountCents'],
        'paymentMethodId': summary['autoTopupPaymentMethodId'],
    }


def validate_auto_topup_settings(enabled: bool, threshold_cents: int, amount_cents: int,
                                 payment_method_id: Optional[str]) -> Tuple[bool, Optional[str]]:
    if enabled and not payment_method_id:
        return False, "A payment method is required to enable auto top-up"
    if not AUTO_TOPUP_MIN_THRESHOLD_CENTS <= threshold_cents <= AUTO_TOPUP_MAX_THRESHOLD_CENTS:
        return False, (f"Threshold must be between {format_price(AUTO_TOPUP_MIN_THRESHOLD_CENTS)} "
                       f"and {format_price(AUTO_TOPUP_MAX_THRESHOLD_CENTS)}")
    if not AUTO_TOPUP_MIN_AMOUNT_CENTS <= amount_cents <= AUTO_TOPUP_MAX_AMOUNT_CENTS:
        return False, (f"Top-up amount must be between {format_price(AUTO_TOPUP_MIN_AMOUNT_CENTS)} "
                       f"and {format_price(AUTO_TOPUP_MAX_AMOUNT_CENTS)}")
    return True, None


async def ensure_stripe_customer(stripe, user: Dict[str, Any]) -> str:
    """Stripe customer id for the session user, created and stored on first use"""
    wallet = await get_or_create_wallet(user['auth0_user_id'])
    existing = wallet.get('stripe_customer_id') if wallet else None
    customer_id = await stripe.get_or_create_customer(
        user['auth0_user_id'], user['email'], user.get('name'), existing_customer_id=existing
    )
    if customer_id != existing:
        await set_wallet_stripe_customer(user['auth0_user_id'], customer_id)
    return customer_id


async def assert_payment_method_owned(stripe, customer_id: Optional[str], payment_method_id: str) -> Dict[str, Any]:
    pm = await stripe.get_payment_method(payment_method_id)
    if not pm or not customer_id or pm.get('customer') != customer_id:
        raise PaymentMethodOwnershipError("Payment method not found")
    return pm


async def direct_topup(stripe, user: Dict[str, Any], amount_cents: int, payment_method_id: str) -> Dict[str, Any]:
    """
    Charge a saved card off-session and credit the wallet

    Returns {'success': True, ...} when the charge succeeded, or
    {'success': False, 'requiresAction': True, 'clientSecret': ...} when the card needs 3-D Secure.
    Raises TopUpFailedError for declines and PaymentMethodOwnershipError for foreign cards.
    """
    customer_id = await ensure_stripe_customer(stripe, user)
    await assert_payment_method_owned(stripe, customer_id, payment_method_id)

    try:
        intent = await stripe.create_payment_intent(
            customer_id, payment_method_id, amount_cents,
            description='OzVPS wallet top-up',
            metadata={'type': 'wallet_topup', 'auth0UserId': user['auth0_user_id'], 'direct': 'true'},
        )
    except StripeError as e:
        if e.requires_action:
            logger.info(f"🔐 Direct top-up for {user['auth0_user_id']} requires authentication")
            return {
                'success': False,
                'requiresAction': True,
                'clientSecret': (e.payment_intent or {}).get('client_secret'),
            }
        raise TopUpFailedError(str(e) or "Payment failed", e.decline_code or e.code)

    status = intent.get('status')
    if status == 'requires_action':
        return {'success': False, 'requiresAction': True, 'clientSecret': intent.get('client_secret')}
    if status != 'succeeded':
        raise TopUpFailedError(f"Payment was not completed (status: {status})", status)

    result = await credit_wallet(
        user['auth0_user_id'], amount_cents, tx_type='credit',
        payment_intent_id=intent.get('id'),
        metadata={'source': 'direct_topup', 'paymentMethodId': payment_method_id},
    )
    log_business_event('billing', 'wallet_topup', {
        'amount_cents': amount_cents,
        'method': 'direct',
        'payment_intent_id': intent.get('id'),
    }, user_id=user['auth0_user_id'])
    return {
        'success': True,
        'balanceCents': result['balance_cents'],
        'chargedAmountCents': amount_cents,
        'paymentIntentId': intent.get('id'),
    }


async def run_auto_topup(stripe, wallet: Dict[str, Any]) -> bool:
    """Off-session charge for a wallet at or below its threshold; True when credited"""
    amount = int(wallet['auto_topup_amount_cents'])
    intent = await stripe.create_payment_intent(
        wallet['stripe_customer_id'], wallet['auto_topup_payment_method_id'], amount,
        description='Auto top-up',
        metadata={'auto_topup': 'true', 'auth0_user_id': wallet['auth0_user_id']},
    )
    if intent.get('status') != 'succeeded':
        logger.warning(f"⚠️ Auto top-up for {wallet['auth0_user_id']} not completed: {intent.get('status')}")
        return False

    await credit_wallet(
        wallet['auth0_user_id'], amount, tx_type='auto_topup',
        payment_intent_id=intent.get('id'),
        metadata={'auto_topup': True},
    )
    log_business_event('billing', 'wallet_topup', {
        'amount_cents': amount,
        'method': 'auto_topup',
    }, user_id=wallet['auth0_user_id'])
    logger.info(f"💳 Auto top-up successful for {wallet['auth0_user_id']}: {format_price(amount)}")
    return True
