import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from services.stripe_service import StripeError
from services.wallet import PaymentMethodOwnershipError, TopUpFailedError

WALLET = {
    'auth0_user_id': 'auth0|customer',
    'balance_cents': 2500,
    'stripe_customer_id': 'cus_1',
    'auto_topup_enabled': False,
    'auto_topup_threshold_cents': 500,
    'auto_topup_amount_cents': 2000,
    'auto_topup_payment_method_id': None,
    'deleted_at': None,
}


@pytest.fixture
def wallet():
    with patch('api.routes.billing.get_or_create_wallet', AsyncMock(return_value=dict(WALLET))) as mock_wallet:
        yield mock_wallet


@pytest.fixture
def stripe():
    service = MagicMock()
    service.is_available.return_value = True
    service.publishable_key = 'pk_test_1'
    service.webhook_secret = 'whsec_1'
    with patch('api.routes.billing.stripe_service', service):
        yield service


def test_wallet_summary(client, wallet):
    response = client.get('/api/wallet')
    assert response.status_code == 200
    assert response.json()['wallet']['balanceCents'] == 2500


def test_transactions(client):
    rows = [{'id': 1, 'type': 'credit', 'amount_cents': 2000, 'metadata': None, 'created_at': None}]
    with patch('api.routes.billing.list_wallet_transactions', AsyncMock(return_value=rows)) as list_tx:
        response = client.get('/api/wallet/transactions?limit=10')
    list_tx.assert_awaited_once_with('auth0|customer', 10)
    assert response.json()['transactions'][0] == {
        'id': 1, 'type': 'credit', 'amountCents': 2000, 'stripePaymentIntentId': None,
        'metadata': {}, 'createdAt': None,
    }


@pytest.mark.parametrize("amount,message", [
    (499, "Minimum top-up amount is $5.00"),
    (50001, "Maximum top-up amount is $500.00"),
])
def test_topup_bounds(client, stripe, amount, message):
    response = client.post('/api/billing/topup', json={'amountCents': amount})
    assert response.status_code == 400
    assert response.json()['error'] == message


def test_checkout_topup(client, stripe):
    stripe.create_checkout_session = AsyncMock(return_value={'id': 'cs_1', 'url': 'https://checkout.stripe.com/cs_1'})
    with patch('api.routes.billing.ensure_stripe_customer', AsyncMock(return_value='cus_1')):
        response = client.post('/api/wallet/topup', json={'amountCents': 2000})
    assert response.json() == {'success': True, 'url': 'https://checkout.stripe.com/cs_1', 'sessionId': 'cs_1'}
    args = stripe.create_checkout_session.await_args.args
    assert args == ('cus_1', 2000, 'auth0|customer')


def test_topup_without_stripe_is_503(client):
    with patch('api.routes.billing.stripe_service', None):
        response = client.post('/api/billing/topup', json={'amountCents': 2000})
    assert response.status_code == 503


def test_direct_topup_success(client, stripe):
    result = {'success': True, 'balanceCents': 4500, 'chargedAmountCents': 2000, 'paymentIntentId': 'pi_1'}
    with patch('api.routes.billing.direct_topup', AsyncMock(return_value=result)):
        response = client.post('/api/billing/topup/direct', json={'amountCents': 2000, 'paymentMethodId': 'pm_1'})
    assert response.json()['balanceCents'] == 4500


def test_direct_topup_requires_action(client, stripe):
    result = {'success': False, 'requiresAction': True, 'clientSecret': 'secret'}
    with patch('api.routes.billing.direct_topup', AsyncMock(return_value=result)):
        response = client.post('/api/billing/topup/direct', json={'amountCents': 2000, 'paymentMethodId': 'pm_1'})
    assert response.status_code == 200
    assert response.json() == result


def test_direct_topup_declined(client, stripe):
    with patch('api.routes.billing.direct_topup', AsyncMock(side_effect=TopUpFailedError("Card declined"))):
        response = client.post('/api/billing/topup/direct', json={'amountCents': 2000, 'paymentMethodId': 'pm_1'})
    assert response.status_code == 402
    assert response.json()['code'] == 'PAYMENT_FAILED'


def test_direct_topup_foreign_card(client, stripe):
    with patch('api.routes.billing.direct_topup', AsyncMock(side_effect=PaymentMethodOwnershipError())):
        response = client.post('/api/billing/topup/direct', json={'amountCents': 2000, 'paymentMethodId': 'pm_x'})
    assert response.status_code == 404


def test_payment_methods(client, wallet, stripe):
    stripe.list_payment_methods = AsyncMock(return_value=[
        {'id': 'pm_1', 'card': {'brand': 'visa', 'last4': '4242', 'exp_month': 1, 'exp_year': 2030}},
    ])
    response = client.get('/api/payment-methods')
    assert response.json()['paymentMethods'][0]['last4'] == '4242'
    stripe.list_payment_methods.assert_awaited_once_with('cus_1')


def test_payment_methods_empty_without_customer(client, wallet, stripe):
    wallet.return_value = dict(WALLET, stripe_customer_id=None)
    assert client.get('/api/billing/payment-methods').json()['paymentMethods'] == []


def test_stripe_outage_is_503(client, wallet, stripe):
    stripe.list_payment_methods = AsyncMock(side_effect=StripeError("upstream", 502))
    assert client.get('/api/payment-methods').status_code == 503


def test_delete_card_disables_auto_topup(client, wallet, stripe):
    stripe.detach_payment_method = AsyncMock(return_value={})
    with patch('api.routes.billing.assert_payment_method_owned', AsyncMock(return_value={})), \
            patch('api.routes.billing.disable_auto_topup_for_payment_method', AsyncMock(return_value=1)) as disable:
        response = client.delete('/api/payment-methods/pm_1')
    assert response.json() == {'success': True, 'removed': 'pm_1'}
    disable.assert_awaited_once_with('pm_1')


def test_enable_auto_topup_requires_card(client, wallet):
    response = client.post('/api/billing/auto-topup', json={'enabled': True, 'thresholdCents': 500, 'amountCents': 2000})
    assert response.status_code == 400
    assert response.json()['error'] == "A payment method is required to enable auto top-up"


def test_enable_auto_topup(client, wallet, stripe):
    updated = dict(WALLET, auto_topup_enabled=True, auto_topup_payment_method_id='pm_1')
    with patch('api.routes.billing.assert_payment_method_owned', AsyncMock(return_value={})), \
            patch('api.routes.billing.update_auto_topup_settings', AsyncMock(return_value=updated)) as update:
        response = client.patch('/api/billing/auto-topup', json={
            'enabled': True, 'thresholdCents': 1000, 'amountCents': 5000, 'paymentMethodId': 'pm_1',
        })
    update.assert_awaited_once_with('auth0|customer', True, 1000, 5000, 'pm_1')
    assert response.json()['autoTopup'] == {
        'enabled': True, 'thresholdCents': 500, 'amountCents': 2000, 'paymentMethodId': 'pm_1',
    }


def test_portal_rejects_absolute_return_path(client, stripe):
    stripe.create_billing_portal_session = AsyncMock(return_value={'url': 'https://billing.stripe.com/p'})
    with patch('api.routes.billing.ensure_stripe_customer', AsyncMock(return_value='cus_1')), \
            patch('api.routes.billing.get_app_url', side_effect=lambda path: f'https://app.example.com{path}'):
        response = client.post('/api/billing/portal', json={'returnPath': 'https://evil.example.com'})
    assert response.json()['url'] == 'https://billing.stripe.com/p'
    assert stripe.create_billing_portal_session.await_args.args == ('cus_1', 'https://app.example.com/billing')


def test_stripe_status(client, stripe):
    assert client.get('/api/billing/stripe/status').json() == {
        'configured': True, 'publishableKeyConfigured': True, 'webhookConfigured': True,
    }


def test_unsaved_auto_topup_settings_is_500(client, wallet, stripe):
    with patch('api.routes.billing.assert_payment_method_owned', AsyncMock(return_value={})), \
            patch('api.routes.billing.update_auto_topup_settings', AsyncMock(return_value=None)):
        response = client.post('/api/billing/auto-topup', json={
            'enabled': True, 'thresholdCents': 2000, 'amountCents': 5000, 'paymentMethodId': 'pm_1',
        })
    assert response.status_code == 500
    assert response.json()['error'] == 'Could not save auto top-up settings. Please try again.'
