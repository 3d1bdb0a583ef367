import pytest
from unittest.mock import AsyncMock, patch

from services.virtfusion import VirtFusionError
from tests.helpers import CUSTOMER, login_as, vf_server


@pytest.fixture
def servers_vf(vf):
    vf.get_server.return_value = vf_server()
    with patch('api.routes.servers.virtfusion_service', vf):
        yield vf


@pytest.fixture
def no_billing():
    with patch('api.routes.servers.get_server_billing', AsyncMock(return_value=None)), \
            patch('api.routes.servers.get_active_cancellation', AsyncMock(return_value=None)) as active:
        yield active


def test_list_servers_attaches_billing_and_cancellation(client, servers_vf):
    servers_vf.list_servers_by_user.return_value = [vf_server(101), vf_server(102, name='db-1')]
    billing = [{'virtfusion_server_id': 101, 'status': 'active', 'plan_code': 'starter',
                'price_monthly_cents': 1499, 'next_bill_at': None, 'overdue_since': None}]
    cancellations = [{'id': 9, 'virtfusion_server_id': 102, 'mode': 'grace', 'status': 'pending',
                      'reason': None, 'requested_at': None, 'scheduled_deletion_at': None}]
    with patch('api.routes.servers.list_server_billing_for_user', AsyncMock(return_value=billing)), \
            patch('api.routes.servers.list_user_cancellations', AsyncMock(return_value=cancellations)):
        response = client.get('/api/servers')

    assert response.status_code == 200
    servers = response.json()['servers']
    servers_vf.list_servers_by_user.assert_called_once_with(42)
    assert servers[0]['billing']['planCode'] == 'starter'
    assert servers[0]['cancellation'] is None
    assert servers[1]['cancellation']['mode'] == 'grace'


def test_unlinked_user_has_no_servers(client):
    login_as(dict(CUSTOMER, virtfusion_user_id=None))
    response = client.get('/api/servers')
    assert response.json() == {'success': True, 'servers': []}


def test_other_users_server_is_not_found(client, servers_vf, no_billing):
    servers_vf.get_server.return_value = vf_server(owner_id=7)
    response = client.get('/api/servers/101')
    assert response.status_code == 404
    assert response.json()['error'] == "Server '101' not found"


def test_get_owned_server(client, servers_vf, no_billing):
    response = client.get('/api/servers/101')
    assert response.status_code == 200
    assert response.json()['server']['id'] == 101


def test_panel_outage_is_503(client, servers_vf):
    servers_vf.get_server.side_effect = VirtFusionError("timeout")
    assert client.get('/api/servers/101').status_code == 503


def test_power_action(client, servers_vf, no_billing):
    response = client.post('/api/servers/101/power', json={'action': 'reboot'})
    assert response.status_code == 200
    servers_vf.power_action.assert_called_once_with(101, 'reboot')


def test_power_rejected_for_unknown_action(client, servers_vf):
    response = client.post('/api/servers/101/power', json={'action': 'explode'})
    assert response.status_code == 400
    assert response.json()['code'] == 'VALIDATION_ERROR'


def test_power_blocked_while_suspended(client, servers_vf, no_billing):
    servers_vf.get_server.return_value = vf_server(suspended=True)
    response = client.post('/api/servers/101/power', json={'action': 'boot'})
    assert response.status_code == 403
    assert response.json()['code'] == 'SERVER_SUSPENDED'
    servers_vf.power_action.assert_not_called()


def test_rename_trims_and_validates(client, servers_vf):
    response = client.put('/api/servers/101/name', json={'name': '  New Name  '})
    assert response.json() == {'success': True, 'name': 'New Name'}
    servers_vf.rename_server.assert_called_once_with(101, 'New Name')

    response = client.put('/api/servers/101/name', json={'name': 'x'})
    assert response.status_code == 400
    assert response.json()['error'] == 'Server name must be at least 2 characters'


def test_stats_missing_is_404(client, servers_vf):
    servers_vf.get_server_live_stats.return_value = None
    assert client.get('/api/servers/101/stats').status_code == 404


def test_traffic_defaults_to_empty(client, servers_vf):
    servers_vf.get_server_traffic.return_value = None
    assert client.get('/api/servers/101/traffic').json()['traffic'] == {}


def test_request_grace_cancellation(client, servers_vf, no_billing):
    created = {'id': 3, 'mode': 'grace', 'status': 'pending', 'reason': 'Too slow',
               'requested_at': None, 'scheduled_deletion_at': None}
    with patch('api.routes.servers.create_cancellation', AsyncMock(return_value=created)) as create:
        response = client.post('/api/servers/101/cancellation', json={'reason': ' Too slow ', 'mode': 'grace'})

    assert response.status_code == 200
    assert response.json()['cancellation']['id'] == 3
    server_id, owner, name, reason, mode, _ = create.await_args.args
    assert (server_id, owner, name, reason, mode) == (101, 'auth0|customer', 'web-1', 'Too slow', 'grace')


def test_duplicate_cancellation_conflicts(client, servers_vf, no_billing):
    no_billing.return_value = {'id': 3, 'mode': 'grace', 'status': 'pending'}
    assert client.post('/api/servers/101/cancellation', json={}).status_code == 409


def test_immediate_cancellation_cannot_be_revoked(client, servers_vf, no_billing):
    no_billing.return_value = {'id': 3, 'mode': 'immediate', 'status': 'pending'}
    response = client.delete('/api/servers/101/cancellation')
    assert response.status_code == 400
    assert response.json()['error'] == 'Immediate cancellations cannot be revoked'


def test_revoke_grace_cancellation(client, servers_vf, no_billing):
    no_billing.return_value = {'id': 3, 'mode': 'grace', 'status': 'pending'}
    with patch('api.routes.servers.revoke_cancellation', AsyncMock(return_value=True)) as revoke:
        response = client.delete('/api/servers/101/cancellation')
    assert response.json() == {'success': True, 'revoked': True}
    revoke.assert_awaited_once_with(3)


def test_requires_session(anonymous_client):
    with patch('api.middleware.authentication.get_session', AsyncMock(return_value=None)):
        response = anonymous_client.get('/api/servers')
    assert response.status_code == 401
    assert response.json()['code'] == 'NO_SESSION'


def test_network_interfaces(client, servers_vf):
    servers_vf.get_network_info.return_value = {'interfaces': [{'name': 'eth0', 'mac': 'N/A', 'ipv4': [], 'ipv6': []}]}
    response = client.get('/api/servers/101/network')
    assert response.json()['network']['interfaces'][0]['name'] == 'eth0'
    servers_vf.get_network_info.assert_called_once_with(101)


def test_panel_outage_on_traffic_is_503(client, servers_vf):
    servers_vf.get_server_traffic.side_effect = VirtFusionError("timeout")
    response = client.get('/api/servers/101/traffic')
    assert response.status_code == 503
    assert response.json()['error'] == 'Server panel is unavailable. Please try again shortly.'


def test_unsaved_cancellation_is_500(client, servers_vf, no_billing):
    with patch('api.routes.servers.create_cancellation', AsyncMock(return_value=None)):
        response = client.post('/api/servers/101/cancellation', json={'mode': 'grace'})
    assert response.status_code == 500
    assert response.json()['error'] == 'Could not schedule cancellation. Please try again.'
