"""
Server Billing Processor
Hourly wallet billing for running servers, auto top-ups, non-payment suspension and scheduled deletions
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Any

from config import get_config
from database import (
    list_due_server_billing,
    list_overdue_server_billing,
    charge_server_billing,
    mark_server_billing_overdue,
    set_server_billing_status,
    list_wallets_needing_auto_topup,
    get_active_cancellation,
    create_cancellation,
    claim_due_cancellations,
    finish_cancellation,
)
from monitoring.production_logging import log_business_event, log_error_with_context
from pricing_utils import daily_rate_cents
from services.stripe_service import StripeError
from services.virtfusion import VirtFusionError
from services.wallet import run_auto_topup
from utils.timezone_utils import utc_now, to_utc, add_days

logger = logging.getLogger(__name__)

NON_PAYMENT_REASON = "Automatically cancelled due to non-payment"


class BillingProcessor:
    """
    Runs the scheduled billing jobs

    Each job handles its own per-record failures so one bad server or wallet
    never stops the rest of the batch.
    """

    def __init__(self, virtfusion, stripe):
        self.vf = virtfusion
        self.stripe = stripe
        billing = get_config().billing
        self.overdue_grace_days = billing.overdue_grace_days
        self.immediate_cancellation_minutes = billing.immediate_cancellation_minutes
        self.stats = self._empty_stats()
        logger.info(f"🔄 BillingProcessor initialized: overdue grace {self.overdue_grace_days}d")

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            'charged': 0,
            'overdue': 0,
            'skipped_frozen': 0,
            'auto_topups': 0,
            'auto_topup_failures': 0,
            'suspended': 0,
            'deleted': 0,
            'errors': 0,
        }

    async def process_due_billing(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Charge one day's rate for every active server whose next_bill_at has passed"""
        now = now or utc_now()
        due = await list_due_server_billing(now)
        if due:
            logger.info(f"💰 BILLING: {len(due)} server(s) due")

        for record in due:
            try:
                if record.get('wallet_deleted_at') is not None:
                    self.stats['skipped_frozen'] += 1
                    continue

                amount = daily_rate_cents(int(record['price_monthly_cents']))
                next_bill_at = add_days(to_utc(record['next_bill_at']), 1)
                charged = await charge_server_billing(record, amount, next_bill_at)
                if charged:
                    self.stats['charged'] += 1
                    logger.info(f"✅ BILLING: Server {record['virtfusion_server_id']} charged {amount}c")
                else:
                    await mark_server_billing_overdue(record['id'])
                    self.stats['overdue'] += 1
                    logger.warning(f"⚠️ BILLING: Server {record['virtfusion_server_id']} marked overdue (insufficient funds)")
            except Exception as e:
                self.stats['errors'] += 1
                log_error_with_context('billing', e, {'server_id': record.get('virtfusion_server_id')},
                                       user_id=record.get('auth0_user_id'))
        return self.stats

    async def process_auto_topups(self) -> Dict[str, int]:
        if self.stripe is None or not self.stripe.is_available():
            return self.stats

        wallets = await list_wallets_needing_auto_topup()
        for wallet in wallets:
            try:
                if await run_auto_topup(self.stripe, wallet):
                    self.stats['auto_topups'] += 1
                else:
                    self.stats['auto_topup_failures'] += 1
            except StripeError as e:
                self.stats['auto_topup_failures'] += 1
                logger.warning(f"⚠️ Auto top-up failed for {wallet['auth0_user_id']}: {e}")
            except Exception as e:
                self.stats['errors'] += 1
                log_error_with_context('billing', e, {'job': 'auto_topup'}, user_id=wallet.get('auth0_user_id'))
        return self.stats

    async def process_overdue_servers(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Servers overdue past the grace period get one last charge attempt,
        then are suspended and queued for immediate deletion
        """
        now = now or utc_now()
        overdue = await list_overdue_server_billing(now - timedelta(days=self.overdue_grace_days))

        for record in overdue:
            server_id = record['virtfusion_server_id']
            try:
                amount = daily_rate_cents(int(record['price_monthly_cents']))
                if await charge_server_billing(record, amount, add_days(now, 1)):
                    self.stats['charged'] += 1
                    logger.info(f"✅ BILLING: Overdue server {server_id} recovered")
                    continue

                if self.vf is not None and self.vf.is_available():
                    await asyncio.to_thread(self.vf.suspend_server, server_id)
                await set_server_billing_status(server_id, 'suspended')
                self.stats['suspended'] += 1

                if not await get_active_cancellation(server_id):
                    await create_cancellation(
                        server_id, record['auth0_user_id'], None, NON_PAYMENT_REASON, 'immediate',
                        now + timedelta(minutes=self.immediate_cancellation_minutes),
                    )
                log_business_event('billing', 'server_suspended_non_payment', {
                    'server_id': server_id,
                    'overdue_since': str(record.get('overdue_since')),
                }, user_id=record['auth0_user_id'])
                logger.warning(f"⏸️ BILLING: Server {server_id} suspended for non-payment")
            except Exception as e:
                self.stats['errors'] += 1
                log_error_with_context('billing', e, {'server_id': server_id, 'job': 'overdue'},
                                       user_id=record.get('auth0_user_id'))
        return self.stats

    async def process_cancellations(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utc_now()
        due = await claim_due_cancellations(now)

        for cancellation in due:
            server_id = cancellation['virtfusion_server_id']
            try:
                await asyncio.to_thread(self.vf.delete_server, server_id)
            except VirtFusionError as e:
                if e.status_code != 404:
                    self.stats['errors'] += 1
                    await finish_cancellation(cancellation['id'], False, str(e))
                    logger.error(f"❌ CANCELLATION: Failed to delete server {server_id}: {e}")
                    continue
                logger.info(f"Server {server_id} already gone from VirtFusion")
            except Exception as e:
                self.stats['errors'] += 1
                await finish_cancellation(cancellation['id'], False, str(e))
                log_error_with_context('billing', e, {'server_id': server_id, 'job': 'cancellation'},
                                       user_id=cancellation.get('auth0_user_id'))
                continue

            await finish_cancellation(cancellation['id'], True)
            await set_server_billing_status(server_id, 'cancelled')
            self.stats['deleted'] += 1
            log_business_event('billing', 'server_cancelled', {
                'server_id': server_id,
                'mode': cancellation.get('mode'),
                'reason': cancellation.get('reason'),
            }, user_id=cancellation['auth0_user_id'])
        return self.stats

    async def run_billing_cycle(self) -> Dict[str, Any]:
        """Hourly entry point: top-ups first so fresh funds are billable"""
        self.stats = self._empty_stats()
        started = utc_now()
        await self.process_auto_topups()
        await self.process_due_billing(started)
        await self.process_overdue_servers(started)
        log_business_event('billing', 'billing_cycle_completed', dict(self.stats))
        logger.info(f"📊 BILLING CYCLE: {self.stats}")
        return dict(self.stats)

    async def run_cancellations(self) -> Dict[str, Any]:
        if self.vf is None or not self.vf.is_available():
            return {}
        self.stats = self._empty_stats()
        await self.process_cancellations()
        return dict(self.stats)
