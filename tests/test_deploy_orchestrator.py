import asyncio

import pytest
from unittest.mock import AsyncMock, patch

from database import InsufficientFundsError
from services.deploy_orchestrator import (
    DeployInsufficientFundsError,
    DeployOrchestrator,
    DeployProvisioningError,
    DeployValidationError,
    default_hostname,
    to_base36,
)
from services.virtfusion import VirtFusionError

USER = {'auth0_user_id': 'auth0|u1', 'email': 'u1@example.com', 'virtfusion_user_id': 42}
PLAN = {
    'id': 2, 'code': 'starter', 'name': 'Starter', 'active': True,
    'price_monthly_cents': 1499, 'virtfusion_package_id': 7,
}


@pytest.fixture
def db():
    with patch('services.deploy_orchestrator.get_plan', AsyncMock(return_value=dict(PLAN))) as get_plan, \
            patch('services.deploy_orchestrator.get_wallet', AsyncMock(return_value={'deleted_at': None})) as get_wallet, \
            patch('services.deploy_orchestrator.create_deploy_order_with_debit',
                  AsyncMock(return_value={'id': 55, 'price_cents': 1499})) as create_order, \
            patch('services.deploy_orchestrator.update_deploy_order', AsyncMock()) as update_order, \
            patch('services.deploy_orchestrator.refund_deploy_order',
                  AsyncMock(return_value={'refunded': True})) as refund, \
            patch('services.deploy_orchestrator.create_server_billing', AsyncMock()) as create_billing:
        yield {
            'get_plan': get_plan,
            'get_wallet': get_wallet,
            'create_order': create_order,
            'update_order': update_order,
            'refund': refund,
            'create_billing': create_billing,
        }


@pytest.fixture
def orchestrator(vf):
    vf.get_os_templates_for_package.return_value = [{'templates': [{'id': 1}, {'id': 3}]}]
    vf.provision_server.return_value = {'id': 900}
    return DeployOrchestrator(vf)


def test_base36():
    assert to_base36(0) == '0'
    assert to_base36(35) == 'z'
    assert to_base36(36) == '10'


def test_default_hostname_is_valid_label():
    assert default_hostname(1700000000000) == f'vps-{to_base36(1700000000000)}'


def test_successful_deploy(db, orchestrator, vf):
    result = asyncio.run(orchestrator.deploy(USER, 2, 'BNE', 'Web-1', os_id=3))

    assert result == {'orderId': 55, 'serverId': 900, 'hostname': 'web-1'}
    vf.provision_server.assert_called_once_with(42, 7, 2, 3, 'web-1')
    db['update_order'].assert_any_await(55, 'provisioning')
    db['update_order'].assert_any_await(55, 'active', virtfusion_server_id=900)
    server_id, owner, plan_code, price, order_id, _ = db['create_billing'].await_args.args
    assert (server_id, owner, plan_code, price, order_id) == (900, 'auth0|u1', 'starter', 1499, 55)


def test_blank_hostname_gets_default(db, orchestrator):
    result = asyncio.run(orchestrator.deploy(USER, 2, 'BNE', None))
    assert result['hostname'].startswith('vps-')


@pytest.mark.parametrize("location,hostname,os_id,message", [
    ('SYD', 'web1', None, 'location'),
    ('PER', 'web1', None, 'location'),
    ('BNE', 'bad_host', None, 'Hostname'),
    ('BNE', 'web1', 99, 'operating system'),
])
def test_validation_happens_before_money_moves(db, orchestrator, location, hostname, os_id, message):
    with pytest.raises(DeployValidationError, match=message):
        asyncio.run(orchestrator.deploy(USER, 2, location, hostname, os_id))
    db['create_order'].assert_not_awaited()


def test_inactive_plan_rejected(db, orchestrator):
    db['get_plan'].return_value = dict(PLAN, active=False)
    with pytest.raises(DeployValidationError, match='plan'):
        asyncio.run(orchestrator.deploy(USER, 2, 'BNE', 'web1'))


def test_unlinked_account_rejected(db, orchestrator):
    with pytest.raises(DeployValidationError, match='not linked'):
        asyncio.run(orchestrator.deploy(dict(USER, virtfusion_user_id=None), 2, 'BNE', 'web1'))


def test_frozen_wallet_rejected(db, orchestrator):
    db['get_wallet'].return_value = {'deleted_at': '2026-01-01'}
    with pytest.raises(DeployValidationError, match='frozen'):
        asyncio.run(orchestrator.deploy(USER, 2, 'BNE', 'web1'))
    db['create_order'].assert_not_awaited()


def test_insufficient_funds_reports_shortfall(db, orchestrator, vf):
    db['create_order'].side_effect = InsufficientFundsError(1200, 1499)
    with pytest.raises(DeployInsufficientFundsError) as exc:
        asyncio.run(orchestrator.deploy(USER, 2, 'BNE', 'web1'))
    assert exc.value.balance_cents == 1200
    assert exc.value.shortfall_cents == 500
    vf.provision_server.assert_not_called()


def test_provisioning_failure_refunds(db, orchestrator, vf):
    vf.provision_server.side_effect = VirtFusionError("No capacity", 500)
    with pytest.raises(DeployProvisioningError) as exc:
        asyncio.run(orchestrator.deploy(USER, 2, 'BNE', 'web1'))
    assert exc.value.order_id == 55
    assert exc.value.refunded is True
    db['refund'].assert_awaited_once()
    db['create_billing'].assert_not_awaited()
