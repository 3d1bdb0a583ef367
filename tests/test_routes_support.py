import pytest
from unittest.mock import AsyncMock, patch


def ticket(owner='auth0|customer', status='open', ticket_id=5):
    return {
        'id': ticket_id, 'auth0_user_id': owner, 'email': 'customer@example.com',
        'title': 'Server will not boot', 'category': 'server', 'priority': 'high', 'status': status,
        'virtfusion_server_id': 101, 'created_at': None, 'last_message_at': None, 'closed_at': None,
    }


def message(is_admin=False):
    return {'id': 1, 'author_email': 'someone@example.com', 'is_admin': is_admin,
            'message': 'Any update?', 'created_at': None}


@pytest.fixture
def tickets():
    with patch('api.routes.support.get_support_ticket', AsyncMock(return_value=ticket())) as get_ticket:
        yield get_ticket


def test_customer_lists_own_tickets(client):
    with patch('api.routes.support.list_support_tickets', AsyncMock(return_value=[ticket()])) as list_tickets:
        response = client.get('/api/support/tickets?status=open')
    list_tickets.assert_awaited_once_with('auth0|customer', 'open')
    assert response.json()['tickets'][0]['virtfusionServerId'] == 101


def test_admin_lists_every_ticket(admin_client):
    with patch('api.routes.support.list_support_tickets', AsyncMock(return_value=[])) as list_tickets:
        admin_client.get('/api/support/tickets')
    list_tickets.assert_awaited_once_with(None, 'all')


def test_invalid_status_filter(client):
    assert client.get('/api/support/tickets?status=pending').status_code == 400


def test_create_ticket(client):
    with patch('api.routes.support.create_support_ticket', AsyncMock(return_value=ticket())) as create:
        response = client.post('/api/support/tickets', json={
            'title': '  Server will not boot ',
            'description': 'It hangs at the bootloader screen.',
            'category': 'server',
            'priority': 'high',
            'virtfusionServerId': 101,
        })
    assert response.status_code == 201
    create.assert_awaited_once_with('auth0|customer', 'customer@example.com', 'Server will not boot',
                                    'server', 'high', 'It hangs at the bootloader screen.', 101)


def test_create_ticket_rejects_whitespace_padding(client):
    response = client.post('/api/support/tickets', json={'title': '  ab   ', 'description': 'Long enough text'})
    assert response.status_code == 400
    assert response.json()['error'] == 'Title must be at least 5 characters'


def test_create_ticket_content_filter(client):
    response = client.post('/api/support/tickets', json={'title': 'porn hosting', 'description': 'Is this allowed?'})
    assert response.status_code == 400
    assert response.json()['error'] == 'Your message contains inappropriate content'


def test_unknown_category(client):
    response = client.post('/api/support/tickets', json={
        'title': 'Hello there', 'description': 'Long enough text', 'category': 'sales',
    })
    assert response.status_code == 400


def test_other_customers_ticket_is_hidden(client, tickets):
    tickets.return_value = ticket(owner='auth0|other')
    assert client.get('/api/support/tickets/5').status_code == 404


def test_admin_sees_any_ticket(admin_client, tickets):
    tickets.return_value = ticket(owner='auth0|other')
    with patch('api.routes.support.list_ticket_messages', AsyncMock(return_value=[message()])):
        response = admin_client.get('/api/support/tickets/5')
    assert response.status_code == 200
    assert response.json()['messages'][0]['message'] == 'Any update?'


def test_customer_reply_waits_on_admin(client, tickets):
    with patch('api.routes.support.add_ticket_message', AsyncMock(return_value=message())) as add:
        response = client.post('/api/support/tickets/5/messages', json={'message': ' Any update? '})
    assert response.status_code == 201
    assert response.json()['status'] == 'waiting_admin'
    add.assert_awaited_once_with(5, 'auth0|customer', 'customer@example.com', False, 'Any update?', 'waiting_admin')


def test_staff_reply_waits_on_customer(admin_client, tickets):
    with patch('api.routes.support.add_ticket_message', AsyncMock(return_value=message(True))) as add:
        response = admin_client.post('/api/support/tickets/5/messages', json={'message': 'Rebooted it for you.'})
    assert response.json()['status'] == 'waiting_user'
    assert add.await_args.args[3] is True


def test_reply_to_closed_ticket_conflicts(client, tickets):
    tickets.return_value = ticket(status='resolved')
    assert client.post('/api/support/tickets/5/messages', json={'message': 'Hello?'}).status_code == 409


def test_blank_reply_rejected(client, tickets):
    assert client.post('/api/support/tickets/5/messages', json={'message': '   '}).status_code == 400


def test_close_and_reopen(client, tickets):
    with patch('api.routes.support.set_support_ticket_status', AsyncMock()) as set_status:
        assert client.post('/api/support/tickets/5/close').json()['status'] == 'closed'
        set_status.assert_awaited_once_with(5, 'closed')

        assert client.post('/api/support/tickets/5/reopen').status_code == 409

        tickets.return_value = ticket(status='closed')
        assert client.post('/api/support/tickets/5/reopen').json()['status'] == 'open'
        set_status.assert_awaited_with(5, 'open')


def test_counts(client):
    counts = {'open': 1, 'waiting': 2, 'closed': 3}
    with patch('api.routes.support.get_support_ticket_counts', AsyncMock(return_value=counts)):
        assert client.get('/api/support/counts').json()['counts'] == counts
