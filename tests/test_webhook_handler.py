import asyncio

import pytest
from unittest.mock import AsyncMock, patch

import webhook_handler
from webhook_handler import process_stripe_event

WALLET = {'auth0_user_id': 'auth0|u1', 'stripe_customer_id': 'cus_1'}


def checkout_event(**overrides):
    session = {
        'id': 'cs_1',
        'customer': 'cus_1',
        'payment_status': 'paid',
        'currency': 'aud',
        'amount_total': 2000,
        'payment_intent': 'pi_1',
        'metadata': {'type': 'wallet_topup', 'auth0UserId': 'auth0|u1'},
    }
    session.update(overrides)
    return {'id': 'evt_1', 'type': 'checkout.session.completed', 'data': {'object': session}}


@pytest.fixture
def ledger():
    with patch('webhook_handler.get_wallet_by_stripe_customer', AsyncMock(return_value=dict(WALLET))) as lookup, \
            patch('webhook_handler.credit_wallet',
                  AsyncMock(return_value={'balance_cents': 2000, 'duplicate': False})) as credit:
        yield {'lookup': lookup, 'credit': credit}


def test_paid_checkout_credits_wallet(ledger):
    result = asyncio.run(process_stripe_event(checkout_event()))
    assert result == {'status': 'credited', 'amount_cents': 2000, 'balance_cents': 2000}
    args, kwargs = ledger['credit'].await_args
    assert args == ('auth0|u1', 2000)
    assert kwargs['stripe_event_id'] == 'evt_1'
    assert kwargs['session_id'] == 'cs_1'


def test_replayed_event_is_duplicate(ledger):
    ledger['credit'].return_value = {'balance_cents': 2000, 'duplicate': True}
    result = asyncio.run(process_stripe_event(checkout_event()))
    assert result == {'status': 'duplicate', 'event_id': 'evt_1'}


@pytest.mark.parametrize("overrides,reason", [
    ({'payment_status': 'unpaid'}, 'payment not completed'),
    ({'metadata': {'type': 'donation'}}, 'not a wallet top-up'),
    ({'currency': 'usd'}, 'unexpected currency usd'),
    ({'amount_total': 100}, 'amount 100 outside allowed range'),
    ({'amount_total': 60000}, 'amount 60000 outside allowed range'),
    ({'amount_total': None}, 'missing amount'),
    ({'metadata': {'type': 'wallet_topup', 'auth0UserId': 'auth0|someone-else'}}, 'customer mismatch'),
])
def test_untrusted_sessions_are_ignored(ledger, overrides, reason):
    result = asyncio.run(process_stripe_event(checkout_event(**overrides)))
    assert result['status'] == 'ignored'
    assert result['reason'] == reason
    ledger['credit'].assert_not_awaited()


def test_unknown_customer_is_ignored(ledger):
    ledger['lookup'].return_value = None
    result = asyncio.run(process_stripe_event(checkout_event()))
    assert result['reason'] == 'unknown customer'
    ledger['credit'].assert_not_awaited()


def test_detached_card_disables_auto_topup():
    event = {'id': 'evt_2', 'type': 'payment_method.detached', 'data': {'object': {'id': 'pm_1'}}}
    with patch('webhook_handler.disable_auto_topup_for_payment_method', AsyncMock(return_value=1)) as disable:
        result = asyncio.run(process_stripe_event(event))
    disable.assert_awaited_once_with('pm_1')
    assert result == {'status': 'processed', 'auto_topup_disabled': 1}


def test_unhandled_event_type():
    result = asyncio.run(process_stripe_event({'id': 'evt_3', 'type': 'invoice.paid'}))
    assert result['status'] == 'ignored'


def test_failures_are_counted(ledger):
    ledger['credit'].side_effect = RuntimeError("db down")
    with pytest.raises(RuntimeError):
        asyncio.run(process_stripe_event(checkout_event()))
    stats = asyncio.run(webhook_handler.get_webhook_stats())
    assert stats['consecutive_failures'] >= 1

    ledger['credit'].side_effect = None
    asyncio.run(process_stripe_event(checkout_event()))
    assert asyncio.run(webhook_handler.get_webhook_stats())['consecutive_failures'] == 0
