import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from services.billing_processor import BillingProcessor, NON_PAYMENT_REASON
from services.virtfusion import VirtFusionError

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def billing_record(server_id=101, price=3000, **extra):
    record = {
        'id': server_id * 10,
        'virtfusion_server_id': server_id,
        'auth0_user_id': 'auth0|u1',
        'price_monthly_cents': price,
        'next_bill_at': NOW - timedelta(hours=1),
        'wallet_deleted_at': None,
        'overdue_since': None,
    }
    record.update(extra)
    return record


@pytest.fixture
def db():
    names = [
        'list_due_server_billing', 'list_overdue_server_billing', 'charge_server_billing',
        'mark_server_billing_overdue', 'set_server_billing_status', 'list_wallets_needing_auto_topup',
        'get_active_cancellation', 'create_cancellation', 'claim_due_cancellations', 'finish_cancellation',
    ]
    patchers = {name: patch(f'services.billing_processor.{name}', AsyncMock(return_value=[])) for name in names}
    mocks = {name: p.start() for name, p in patchers.items()}
    yield mocks
    for p in patchers.values():
        p.stop()


@pytest.fixture
def processor(vf):
    return BillingProcessor(vf, None)


def test_due_server_charged_one_day(db, processor):
    db['list_due_server_billing'].return_value = [billing_record(price=3001)]
    db['charge_server_billing'].return_value = True

    stats = asyncio.run(processor.process_due_billing(NOW))

    record, amount, next_bill_at = db['charge_server_billing'].await_args.args
    assert amount == 101
    assert next_bill_at == NOW - timedelta(hours=1) + timedelta(days=1)
    assert stats['charged'] == 1


def test_insufficient_funds_marks_overdue(db, processor):
    db['list_due_server_billing'].return_value = [billing_record()]
    db['charge_server_billing'].return_value = False

    stats = asyncio.run(processor.process_due_billing(NOW))

    db['mark_server_billing_overdue'].assert_awaited_once_with(1010)
    assert stats['overdue'] == 1


def test_frozen_wallet_is_skipped(db, processor):
    db['list_due_server_billing'].return_value = [billing_record(wallet_deleted_at=NOW)]
    stats = asyncio.run(processor.process_due_billing(NOW))
    db['charge_server_billing'].assert_not_awaited()
    assert stats['skipped_frozen'] == 1


def test_one_failure_does_not_stop_batch(db, processor):
    db['list_due_server_billing'].return_value = [billing_record(101), billing_record(102)]
    db['charge_server_billing'].side_effect = [RuntimeError("boom"), True]
    stats = asyncio.run(processor.process_due_billing(NOW))
    assert stats['errors'] == 1
    assert stats['charged'] == 1


def test_overdue_past_grace_suspends_and_schedules_deletion(db, processor, vf):
    db['list_overdue_server_billing'].return_value = [billing_record(overdue_since=NOW - timedelta(days=8))]
    db['charge_server_billing'].return_value = False
    db['get_active_cancellation'].return_value = None

    stats = asyncio.run(processor.process_overdue_servers(NOW))

    assert db['list_overdue_server_billing'].await_args.args == (NOW - timedelta(days=7),)
    vf.suspend_server.assert_called_once_with(101)
    db['set_server_billing_status'].assert_awaited_once_with(101, 'suspended')
    args = db['create_cancellation'].await_args.args
    assert args[3] == NON_PAYMENT_REASON
    assert args[4] == 'immediate'
    assert args[5] == NOW + timedelta(minutes=5)
    assert stats['suspended'] == 1


def test_overdue_recovered_by_final_charge(db, processor, vf):
    db['list_overdue_server_billing'].return_value = [billing_record()]
    db['charge_server_billing'].return_value = True
    stats = asyncio.run(processor.process_overdue_servers(NOW))
    vf.suspend_server.assert_not_called()
    assert stats['charged'] == 1


def test_existing_cancellation_not_duplicated(db, processor):
    db['list_overdue_server_billing'].return_value = [billing_record()]
    db['charge_server_billing'].return_value = False
    db['get_active_cancellation'].return_value = {'id': 1}
    asyncio.run(processor.process_overdue_servers(NOW))
    db['create_cancellation'].assert_not_awaited()


def test_due_cancellation_deletes_server(db, processor, vf):
    db['claim_due_cancellations'].return_value = [
        {'id': 5, 'virtfusion_server_id': 101, 'auth0_user_id': 'auth0|u1', 'mode': 'grace', 'reason': None},
    ]
    stats = asyncio.run(processor.process_cancellations(NOW))
    vf.delete_server.assert_called_once_with(101)
    db['finish_cancellation'].assert_awaited_once_with(5, True)
    db['set_server_billing_status'].assert_awaited_once_with(101, 'cancelled')
    assert stats['deleted'] == 1


def test_already_deleted_server_completes_cancellation(db, processor, vf):
    db['claim_due_cancellations'].return_value = [{'id': 5, 'virtfusion_server_id': 101, 'auth0_user_id': 'u'}]
    vf.delete_server.side_effect = VirtFusionError("gone", 404)
    asyncio.run(processor.process_cancellations(NOW))
    db['finish_cancellation'].assert_awaited_once_with(5, True)


def test_failed_deletion_recorded(db, processor, vf):
    db['claim_due_cancellations'].return_value = [{'id': 5, 'virtfusion_server_id': 101, 'auth0_user_id': 'u'}]
    vf.delete_server.side_effect = VirtFusionError("panel error", 500)
    stats = asyncio.run(processor.process_cancellations(NOW))
    db['finish_cancellation'].assert_awaited_once_with(5, False, 'panel error')
    db['set_server_billing_status'].assert_not_awaited()
    assert stats['errors'] == 1


def test_auto_topups_skipped_without_stripe(db, processor):
    asyncio.run(processor.process_auto_topups())
    db['list_wallets_needing_auto_topup'].assert_not_awaited()


def test_auto_topups_counted(db, vf):
    stripe = MagicMock()
    stripe.is_available.return_value = True
    processor = BillingProcessor(vf, stripe)
    db['list_wallets_needing_auto_topup'].return_value = [{'auth0_user_id': 'a'}, {'auth0_user_id': 'b'}]
    with patch('services.billing_processor.run_auto_topup', AsyncMock(side_effect=[True, False])):
        stats = asyncio.run(processor.process_auto_topups())
    assert stats['auto_topups'] == 1
    assert stats['auto_topup_failures'] == 1


def test_cancellations_skipped_without_virtfusion(db):
    vf = MagicMock()
    vf.is_available.return_value = False
    assert asyncio.run(BillingProcessor(vf, None).run_cancellations()) == {}
    db['claim_due_cancellations'].assert_not_awaited()


def test_unexpected_deletion_error_does_not_stop_batch(db, processor, vf):
    db['claim_due_cancellations'].return_value = [
        {'id': 5, 'virtfusion_server_id': 101, 'auth0_user_id': 'u'},
        {'id': 6, 'virtfusion_server_id': 102, 'auth0_user_id': 'u'},
    ]
    vf.delete_server.side_effect = [RuntimeError("connection reset"), None]
    stats = asyncio.run(processor.process_cancellations(NOW))
    assert db['finish_cancellation'].await_args_list[0].args == (5, False, 'connection reset')
    assert db['finish_cancellation'].await_args_list[1].args == (6, True)
    assert stats['errors'] == 1
    assert stats['deleted'] == 1
