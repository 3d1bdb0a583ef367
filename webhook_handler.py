"""
Webhook handler for Stripe payment events
Credits wallets for completed Checkout top-ups; every event is processed at most once
"""

import asyncio
import logging
import time
from typing import Dict, Any

from database import (
    get_wallet_by_stripe_customer,
    credit_wallet,
    disable_auto_topup_for_payment_method,
)
from monitoring.production_logging import log_business_event
from utils.validation import MIN_TOPUP_CENTS, MAX_TOPUP_CENTS

logger = logging.getLogger(__name__)

EXPECTED_CURRENCY = 'aud'

# Webhook failure tracking
_webhook_failure_count = 0
_last_successful_webhook = 0.0
_webhook_stats_lock = asyncio.Lock()


async def increment_webhook_failure_count():
    global _webhook_failure_count
    async with _webhook_stats_lock:
        _webhook_failure_count += 1


async def record_successful_webhook():
    global _webhook_failure_count, _last_successful_webhook
    async with _webhook_stats_lock:
        _webhook_failure_count = 0
        _last_successful_webhook = time.time()


async def get_webhook_stats() -> Dict[str, Any]:
    async with _webhook_stats_lock:
        return {
            'consecutive_failures': _webhook_failure_count,
            'last_successful_webhook': _last_successful_webhook,
        }


def _ignored(reason: str, **extra) -> Dict[str, Any]:
    logger.info(f"⏭️ Stripe webhook ignored: {reason}")
    return {'status': 'ignored', 'reason': reason, **extra}


async def _process_checkout_completed(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Credit a wallet for a paid Checkout top-up

    Every field is checked against our own records before money moves:
    paid status, top-up metadata, a wallet owning the customer, currency and bounds.
    """
    session = (event.get('data') or {}).get('object') or {}
    metadata = session.get('metadata') or {}

    if session.get('payment_status') != 'paid':
        return _ignored('payment not completed', session_id=session.get('id'))
    if metadata.get('type') != 'wallet_topup':
        return _ignored('not a wallet top-up', session_id=session.get('id'))

    customer_id = session.get('customer')
    wallet = await get_wallet_by_stripe_customer(customer_id) if customer_id else None
    if not wallet:
        logger.error(f"❌ STRIPE WEBHOOK: No wallet for customer {customer_id} (session {session.get('id')})")
        return _ignored('unknown customer', session_id=session.get('id'))

    claimed_user = metadata.get('auth0UserId')
    if claimed_user and claimed_user != wallet['auth0_user_id']:
        logger.error(f"❌ STRIPE WEBHOOK: Customer {customer_id} belongs to {wallet['auth0_user_id']}, "
                     f"metadata claims {claimed_user}")
        return _ignored('customer mismatch', session_id=session.get('id'))

    if (session.get('currency') or '').lower() != EXPECTED_CURRENCY:
        return _ignored(f"unexpected currency {session.get('currency')}", session_id=session.get('id'))

    try:
        amount = int(session.get('amount_total'))
    except (TypeError, ValueError):
        return _ignored('missing amount', session_id=session.get('id'))
    if not MIN_TOPUP_CENTS <= amount <= MAX_TOPUP_CENTS:
        return _ignored(f"amount {amount} outside allowed range", session_id=session.get('id'))

    result = await credit_wallet(
        wallet['auth0_user_id'],
        amount,
        tx_type='credit',
        stripe_event_id=event.get('id'),
        payment_intent_id=session.get('payment_intent'),
        session_id=session.get('id'),
        metadata={'source': 'checkout'},
    )
    if result['duplicate']:
        return {'status': 'duplicate', 'event_id': event.get('id')}

    log_business_event('billing', 'wallet_topup', {
        'amount_cents': amount,
        'method': 'checkout',
        'session_id': session.get('id'),
    }, user_id=wallet['auth0_user_id'])
    return {'status': 'credited', 'amount_cents': amount, 'balance_cents': result['balance_cents']}


async def _process_payment_method_detached(event: Dict[str, Any]) -> Dict[str, Any]:
    payment_method = (event.get('data') or {}).get('object') or {}
    disabled = await disable_auto_topup_for_payment_method(payment_method.get('id', ''))
    return {'status': 'processed', 'auto_topup_disabled': disabled}


EVENT_HANDLERS = {
    'checkout.session.completed': _process_checkout_completed,
    'payment_method.detached': _process_payment_method_detached,
}


async def process_stripe_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Dispatch a verified Stripe event to its handler"""
    event_type = event.get('type')
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        return {'status': 'ignored', 'reason': f'unhandled event type {event_type}'}

    logger.info(f"📨 STRIPE WEBHOOK: {event_type} ({event.get('id')})")
    try:
        result = await handler(event)
    except Exception:
        await increment_webhook_failure_count()
        raise
    await record_successful_webhook()
    return result
