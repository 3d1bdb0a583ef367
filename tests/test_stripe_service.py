import asyncio

import pytest
from unittest.mock import AsyncMock

from config import reset_config
from services.stripe_service import (
    StripeError,
    StripeService,
    WebhookSignatureError,
    compute_signature,
    encode_form,
    payment_method_summary,
    verify_webhook_signature,
)

SECRET = 'whsec_test'
PAYLOAD = b'{"id": "evt_1", "type": "checkout.session.completed"}'


@pytest.fixture
def stripe(monkeypatch):
    monkeypatch.setenv('STRIPE_SECRET_KEY', 'sk_test_123')
    reset_config()
    yield StripeService()
    reset_config()


def _header(timestamp, secret=SECRET, payload=PAYLOAD):
    return f"t={timestamp},v1={compute_signature(payload, str(timestamp), secret)}"


def test_encode_form_nested():
    pairs = encode_form({
        'amount': 2000,
        'off_session': True,
        'description': None,
        'metadata': {'type': 'wallet_topup'},
        'payment_method_types': ['card'],
        'line_items': [{'quantity': 1, 'price_data': {'unit_amount': 2000}}],
    })
    assert pairs == [
        ('amount', '2000'),
        ('off_session', 'true'),
        ('metadata[type]', 'wallet_topup'),
        ('payment_method_types[0]', 'card'),
        ('line_items[0][quantity]', '1'),
        ('line_items[0][price_data][unit_amount]', '2000'),
    ]


def test_valid_signature():
    assert verify_webhook_signature(PAYLOAD, _header(1000), SECRET, now=1010)


def test_any_v1_signature_may_match():
    header = f"t=1000,v1=deadbeef,v1={compute_signature(PAYLOAD, '1000', SECRET)}"
    assert verify_webhook_signature(PAYLOAD, header, SECRET, now=1000)


def test_stale_signature_rejected():
    with pytest.raises(WebhookSignatureError, match="tolerance"):
        verify_webhook_signature(PAYLOAD, _header(1000), SECRET, now=1000 + 301)


def test_signature_mismatch_rejected():
    with pytest.raises(WebhookSignatureError, match="No matching"):
        verify_webhook_signature(PAYLOAD, _header(1000, secret='whsec_other'), SECRET, now=1000)


def test_tampered_payload_rejected():
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(PAYLOAD + b' ', _header(1000), SECRET, now=1000)


@pytest.mark.parametrize("header", [None, "", "v1=abc", "t=abc,v1=abc"])
def test_missing_or_malformed_header(header):
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(PAYLOAD, header, SECRET, now=1000)


def test_missing_secret_rejected():
    with pytest.raises(WebhookSignatureError):
        verify_webhook_signature(PAYLOAD, _header(1000), '', now=1000)


def test_requires_action_detection():
    assert StripeError("auth", 402, code='authentication_required').requires_action
    assert StripeError("auth", 402, payment_intent={'status': 'requires_action'}).requires_action
    assert not StripeError("declined", 402, code='card_declined').requires_action


def test_payment_method_summary():
    pm = {'id': 'pm_1', 'card': {'brand': 'visa', 'last4': '4242', 'exp_month': 12, 'exp_year': 2030}}
    assert payment_method_summary(pm) == {
        'id': 'pm_1', 'brand': 'visa', 'last4': '4242', 'expMonth': 12, 'expYear': 2030,
    }


def test_get_or_create_reuses_live_customer(stripe):
    stripe._request = AsyncMock(return_value={'id': 'cus_live'})
    customer_id = asyncio.run(stripe.get_or_create_customer('auth0|u', 'u@example.com', existing_customer_id='cus_live'))
    assert customer_id == 'cus_live'
    stripe._request.assert_awaited_once_with('GET', '/customers/cus_live')


def test_get_or_create_replaces_deleted_customer(stripe):
    stripe._request = AsyncMock(side_effect=[{'id': 'cus_old', 'deleted': True}, {'id': 'cus_new'}])
    customer_id = asyncio.run(stripe.get_or_create_customer('auth0|u', 'u@example.com', existing_customer_id='cus_old'))
    assert customer_id == 'cus_new'
    method, path, params = stripe._request.await_args.args
    assert (method, path) == ('POST', '/customers')
    assert params['metadata'] == {'auth0_user_id': 'auth0|u'}
    assert stripe._request.await_args.kwargs['idempotency_key'] == 'customer-auth0|u'


def test_get_or_create_treats_404_as_missing(stripe):
    stripe._request = AsyncMock(side_effect=[StripeError("No such customer", 404), {'id': 'cus_new'}])
    assert asyncio.run(stripe.get_or_create_customer('auth0|u', 'u@example.com', existing_customer_id='cus_x')) == 'cus_new'


def test_payment_intent_is_off_session_in_currency(stripe):
    stripe._request = AsyncMock(return_value={'id': 'pi_1', 'status': 'succeeded'})
    asyncio.run(stripe.create_payment_intent('cus_1', 'pm_1', 2000, 'Wallet top-up', idempotency_key='key-1'))
    method, path, params = stripe._request.await_args.args
    assert (method, path) == ('POST', '/payment_intents')
    assert params['currency'] == 'aud'
    assert params['off_session'] is True and params['confirm'] is True
    assert stripe._request.await_args.kwargs['idempotency_key'] == 'key-1'


def test_unconfigured_request_raises(monkeypatch):
    monkeypatch.delenv('STRIPE_SECRET_KEY', raising=False)
    reset_config()
    try:
        service = StripeService()
        with pytest.raises(StripeError) as exc:
            asyncio.run(service.list_payment_methods('cus_1'))
        assert exc.value.status_code == 503
    finally:
        reset_config()
