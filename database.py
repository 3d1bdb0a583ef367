"""
Simple PostgreSQL database functions for the OzVPS dashboard
Direct database connections with raw SQL queries for transparency and performance
"""

import os
import asyncio
import logging
import secrets
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, List, Any, Callable, cast

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor, RealDictRow, Json

from config import get_config

# Initialize logger
logger = logging.getLogger(__name__)

_connection_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()

# Raise instead of degrading gracefully (used by integration tests)
TEST_STRICT_DB = os.getenv('TEST_STRICT_DB', 'false').lower() == 'true'

TICKET_CATEGORIES = ('billing', 'server', 'network', 'panel', 'abuse', 'general')
TICKET_PRIORITIES = ('low', 'normal', 'high', 'urgent')
TICKET_STATUSES = ('new', 'open', 'waiting_user', 'waiting_admin', 'resolved', 'closed')
TICKET_CLOSED_STATUSES = ('resolved', 'closed')

DEPLOY_ORDER_STATUSES = ('pending_payment', 'paid', 'provisioning', 'active', 'failed', 'cancelled')

SESSION_REVOKE_REASONS = {
    'CONCURRENT_LOGIN': 'CONCURRENT_LOGIN',
    'USER_BLOCKED': 'USER_BLOCKED',
    'ADMIN_REVOKED': 'ADMIN_REVOKED',
    'PASSWORD_CHANGED': 'PASSWORD_CHANGED',
    'IDLE_TIMEOUT': 'IDLE_TIMEOUT',
    'USER_DELETED': 'USER_DELETED',
}

DEFAULT_AUTO_TOPUP_THRESHOLD_CENTS = 500
DEFAULT_AUTO_TOPUP_AMOUNT_CENTS = 2000


class InsufficientFundsError(Exception):
    """Wallet balance too low for the requested debit"""

    def __init__(self, balance_cents: int, required_cents: int):
        self.balance_cents = balance_cents
        self.required_cents = required_cents
        super().__init__(f"Insufficient balance: {balance_cents} < {required_cents} cents")


# ============================================================================
# Connection pool
# ============================================================================

def get_connection_pool() -> psycopg2.pool.ThreadedConnectionPool:
    """Get or create the database connection pool"""
    global _connection_pool
    if _connection_pool is None:
        with _pool_lock:
            if _connection_pool is None:
                db_config = get_config().database
                if not db_config.url:
                    raise ValueError("Database URL not found - set DATABASE_URL")
                _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=db_config.min_connections,
                    maxconn=db_config.max_connections,
                    dsn=db_config.url,
                    cursor_factory=RealDictCursor,
                    connect_timeout=15,
                    keepalives_idle=300,
                    keepalives_interval=15,
                    keepalives_count=2,
                )
                logger.info(f"✅ Connection pool created ({db_config.min_connections}-{db_config.max_connections} connections)")
    return _connection_pool


def close_connection_pool():
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔌 Connection pool closed")


def get_connection():
    """Get a pooled connection in autocommit mode with the session timezone set to UTC"""
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    with conn.cursor() as cursor:
        cursor.execute("SET TIME ZONE 'UTC'")
    return conn


def return_connection(conn, is_broken=False):
    """Return connection to pool"""
    try:
        get_connection_pool().putconn(conn, close=is_broken)
    except Exception as e:
        logger.warning(f"⚠️ Failed to return connection to pool: {e}")
        try:
            conn.close()
        except Exception as close_error:
            logger.debug(f"Closing orphaned connection failed: {close_error}")


async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a SELECT (or INSERT ... RETURNING) query and return rows, retrying on dead connections"""

    def _execute() -> List[Dict]:
        max_retries = 3
        for attempt in range(max_retries):
            conn = None
            broken = False
            try:
                conn = get_connection()
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    if cursor.description is None:
                        return []
                    results = cursor.fetchall()
                    return [dict(row) for row in results] if results else []
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                broken = True
                if attempt < max_retries - 1:
                    logger.warning(f"🔄 Database connection retry {attempt + 1}/{max_retries}: {e}")
                    time.sleep(0.5 + attempt * 0.5)
                    continue
                logger.error(f"💥 All database connection attempts failed after {max_retries} retries: {e}")
                if TEST_STRICT_DB:
                    raise
                return []
            except Exception as e:
                logger.error(f"Database query error: {e}")
                if TEST_STRICT_DB:
                    raise
                return []
            finally:
                if conn:
                    return_connection(conn, is_broken=broken)
        return []

    return await asyncio.to_thread(_execute)


async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = None
        broken = False
        try:
            conn = get_connection()
            conn.autocommit = False
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                rowcount = cursor.rowcount
            conn.commit()
            return rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            logger.error(f"💥 CONNECTION ERROR in execute_update: {e}")
            logger.debug(f"  Query: {query}")
            if TEST_STRICT_DB:
                raise
            return 0
        except Exception as e:
            logger.error(f"💥 SQL ERROR in execute_update: {type(e).__name__}: {e}")
            logger.debug(f"  Query: {query}")
            if conn:
                try:
                    conn.rollback()
                except Exception as rollback_error:
                    logger.error(f"Failed to rollback transaction: {rollback_error}")
            if TEST_STRICT_DB:
                raise
            return 0
        finally:
            if conn:
                try:
                    conn.autocommit = True
                except Exception:
                    broken = True
                return_connection(conn, is_broken=broken)

    return await asyncio.to_thread(_execute)


async def run_in_transaction(func: Callable, *args, **kwargs):
    """Run func(conn, *args, **kwargs) inside a single transaction; errors roll back and propagate"""

    def _execute_in_transaction():
        conn = get_connection()
        try:
            conn.autocommit = False
            try:
                result = func(conn, *args, **kwargs)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.autocommit = True
        finally:
            return_connection(conn)

    return await asyncio.to_thread(_execute_in_transaction)


# ============================================================================
# Schema
# ============================================================================

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id VARCHAR(128) PRIMARY KEY,
        auth0_user_id VARCHAR(255) NOT NULL,
        email VARCHAR(255) NOT NULL,
        name VARCHAR(255),
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        virtfusion_user_id INTEGER,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        revoked_at TIMESTAMPTZ,
        revoked_reason VARCHAR(64),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_auth0_user ON sessions(auth0_user_id)",
    """
    CREATE TABLE IF NOT EXISTS user_flags (
        auth0_user_id VARCHAR(255) PRIMARY KEY,
        blocked BOOLEAN NOT NULL DEFAULT FALSE,
        blocked_reason TEXT,
        blocked_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS plans (
        id SERIAL PRIMARY KEY,
        code VARCHAR(64) UNIQUE NOT NULL,
        name VARCHAR(255) NOT NULL,
        vcpu INTEGER NOT NULL,
        ram_mb INTEGER NOT NULL,
        storage_gb INTEGER NOT NULL,
        transfer_gb INTEGER NOT NULL,
        price_monthly_cents INTEGER NOT NULL,
        virtfusion_package_id INTEGER,
        active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wallets (
        id SERIAL PRIMARY KEY,
        auth0_user_id VARCHAR(255) UNIQUE NOT NULL,
        stripe_customer_id VARCHAR(255),
        virtfusion_user_id INTEGER,
        balance_cents INTEGER NOT NULL DEFAULT 0 CHECK (balance_cents >= 0),
        auto_topup_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        auto_topup_threshold_cents INTEGER NOT NULL DEFAULT 500,
        auto_topup_amount_cents INTEGER NOT NULL DEFAULT 2000,
        auto_topup_payment_method_id VARCHAR(255),
        deleted_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS wallet_transactions (
        id SERIAL PRIMARY KEY,
        auth0_user_id VARCHAR(255) NOT NULL,
        type VARCHAR(32) NOT NULL,
        amount_cents INTEGER NOT NULL,
        stripe_event_id VARCHAR(255) UNIQUE,
        stripe_payment_intent_id VARCHAR(255),
        stripe_session_id VARCHAR(255),
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_wallet_tx_user ON wallet_transactions(auth0_user_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS deploy_orders (
        id SERIAL PRIMARY KEY,
        auth0_user_id VARCHAR(255) NOT NULL,
        plan_id INTEGER NOT NULL,
        plan_code VARCHAR(64) NOT NULL,
        hostname VARCHAR(63),
        location_code VARCHAR(8) NOT NULL,
        os_id INTEGER,
        price_cents INTEGER NOT NULL,
        status VARCHAR(32) NOT NULL DEFAULT 'pending_payment',
        virtfusion_server_id INTEGER,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS server_billing (
        id SERIAL PRIMARY KEY,
        virtfusion_server_id INTEGER UNIQUE NOT NULL,
        auth0_user_id VARCHAR(255) NOT NULL,
        plan_code VARCHAR(64) NOT NULL,
        price_monthly_cents INTEGER NOT NULL,
        deploy_order_id INTEGER,
        status VARCHAR(32) NOT NULL DEFAULT 'active',
        next_bill_at TIMESTAMPTZ NOT NULL,
        overdue_since TIMESTAMPTZ,
        suspended_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS server_cancellations (
        id SERIAL PRIMARY KEY,
        virtfusion_server_id INTEGER NOT NULL,
        auth0_user_id VARCHAR(255) NOT NULL,
        server_name VARCHAR(255),
        reason TEXT,
        mode VARCHAR(16) NOT NULL,
        status VARCHAR(16) NOT NULL DEFAULT 'pending',
        requested_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        scheduled_deletion_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        error_message TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS support_tickets (
        id SERIAL PRIMARY KEY,
        auth0_user_id VARCHAR(255) NOT NULL,
        email VARCHAR(255) NOT NULL,
        title VARCHAR(200) NOT NULL,
        category VARCHAR(16) NOT NULL,
        priority VARCHAR(16) NOT NULL DEFAULT 'normal',
        status VARCHAR(16) NOT NULL DEFAULT 'new',
        virtfusion_server_id INTEGER,
        last_message_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        closed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS support_ticket_messages (
        id SERIAL PRIMARY KEY,
        ticket_id INTEGER NOT NULL REFERENCES support_tickets(id) ON DELETE CASCADE,
        author_id VARCHAR(255) NOT NULL,
        author_email VARCHAR(255) NOT NULL,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        message TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_audit_logs (
        id SERIAL PRIMARY KEY,
        admin_auth0_user_id VARCHAR(255) NOT NULL,
        admin_email VARCHAR(255) NOT NULL,
        action VARCHAR(128) NOT NULL,
        target_type VARCHAR(64) NOT NULL,
        target_id VARCHAR(255),
        target_label VARCHAR(255),
        payload JSONB,
        reason TEXT,
        status VARCHAR(16) NOT NULL,
        error_message TEXT,
        ip_address VARCHAR(64),
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_created ON admin_audit_logs(created_at DESC)",
]


async def init_database():
    """Initialize database tables if they don't exist and seed the plan catalogue"""
    from pricing_utils import STATIC_PLANS

    def _init(conn):
        with conn.cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)
            for plan in STATIC_PLANS:
                cursor.execute(
                    """INSERT INTO plans (code, name, vcpu, ram_mb, storage_gb, transfer_gb,
                                          price_monthly_cents, virtfusion_package_id, active)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                       ON CONFLICT (code) DO UPDATE SET
                           name = EXCLUDED.name, vcpu = EXCLUDED.vcpu, ram_mb = EXCLUDED.ram_mb,
                           storage_gb = EXCLUDED.storage_gb, transfer_gb = EXCLUDED.transfer_gb,
                           price_monthly_cents = EXCLUDED.price_monthly_cents,
                           virtfusion_package_id = EXCLUDED.virtfusion_package_id""",
                    (plan.code, plan.name, plan.vcpu, plan.ram_mb, plan.storage_gb, plan.transfer_gb,
                     plan.price_monthly_cents, plan.virtfusion_package_id, plan.active)
                )

    await run_in_transaction(_init)
    logger.info(f"✅ Database schema ready ({len(SCHEMA_STATEMENTS)} statements, plans seeded)")


def _first(rows: List[Dict]) -> Optional[Dict]:
    return rows[0] if rows else None


# ============================================================================
# Sessions & user flags
# ============================================================================

async def create_session(auth0_user_id: str, email: str, name: Optional[str], is_admin: bool,
                         virtfusion_user_id: Optional[int], expires_at: datetime) -> Optional[Dict]:
    session_id = secrets.token_urlsafe(32)
    rows = await execute_query(
        """INSERT INTO sessions (id, auth0_user_id, email, name, is_admin, virtfusion_user_id, expires_at)
           VALUES (%s, %s, %s, %s, %s, %s, %s)
           RETURNING *""",
        (session_id, auth0_user_id, email, name, is_admin, virtfusion_user_id, expires_at)
    )
    return _first(rows)


async def get_session(session_id: str) -> Optional[Dict]:
    return _first(await execute_query("SELECT * FROM sessions WHERE id = %s", (session_id,)))


async def touch_session(session_id: str) -> None:
    await execute_update("UPDATE sessions SET last_activity_at = NOW() WHERE id = %s", (session_id,))


async def delete_session(session_id: str) -> None:
    await execute_update("DELETE FROM sessions WHERE id = %s", (session_id,))


async def revoke_session(session_id: str, reason: str) -> None:
    await execute_update(
        "UPDATE sessions SET revoked_at = NOW(), revoked_reason = %s WHERE id = %s AND revoked_at IS NULL",
        (reason, session_id)
    )


async def revoke_user_sessions(auth0_user_id: str, reason: str) -> int:
    count = await execute_update(
        """UPDATE sessions SET revoked_at = NOW(), revoked_reason = %s
           WHERE auth0_user_id = %s AND revoked_at IS NULL""",
        (reason, auth0_user_id)
    )
    if count:
        logger.info(f"🔒 Revoked {count} session(s) for {auth0_user_id} ({reason})")
    return count


async def get_user_flags(auth0_user_id: str) -> Optional[Dict]:
    return _first(await execute_query("SELECT * FROM user_flags WHERE auth0_user_id = %s", (auth0_user_id,)))


async def set_user_blocked(auth0_user_id: str, blocked: bool, reason: Optional[str] = None) -> None:
    await execute_update(
        """INSERT INTO user_flags (auth0_user_id, blocked, blocked_reason, blocked_at, updated_at)
           VALUES (%s, %s, %s, CASE WHEN %s THEN NOW() ELSE NULL END, NOW())
           ON CONFLICT (auth0_user_id) DO UPDATE SET
               blocked = EXCLUDED.blocked,
               blocked_reason = EXCLUDED.blocked_reason,
               blocked_at = EXCLUDED.blocked_at,
               updated_at = NOW()""",
        (auth0_user_id, blocked, reason, blocked)
    )


# ============================================================================
# Plans
# ============================================================================

async def list_plans(active_only: bool = True) -> List[Dict]:
    query = "SELECT * FROM plans"
    if active_only:
        query += " WHERE active = TRUE"
    return await execute_query(query + " ORDER BY price_monthly_cents ASC")


async def get_plan(plan_id: int) -> Optional[Dict]:
    return _first(await execute_query("SELECT * FROM plans WHERE id = %s", (plan_id,)))


# ============================================================================
# Wallets & ledger
# ============================================================================

async def get_wallet(auth0_user_id: str) -> Optional[Dict]:
    return _first(await execute_query("SELECT * FROM wallets WHERE auth0_user_id = %s", (auth0_user_id,)))


async def get_or_create_wallet(auth0_user_id: str) -> Optional[Dict]:
    rows = await execute_query(
        """INSERT INTO wallets (auth0_user_id) VALUES (%s)
           ON CONFLICT (auth0_user_id) DO UPDATE SET updated_at = wallets.updated_at
           RETURNING *""",
        (auth0_user_id,)
    )
    return _first(rows)


async def get_wallet_by_stripe_customer(stripe_customer_id: str) -> Optional[Dict]:
    return _first(await execute_query(
        "SELECT * FROM wallets WHERE stripe_customer_id = %s", (stripe_customer_id,)
    ))


async def set_wallet_stripe_customer(auth0_user_id: str, stripe_customer_id: str) -> None:
    await execute_update(
        "UPDATE wallets SET stripe_customer_id = %s, updated_at = NOW() WHERE auth0_user_id = %s",
        (stripe_customer_id, auth0_user_id)
    )


async def set_wallet_virtfusion_user(auth0_user_id: str, virtfusion_user_id: Optional[int]) -> None:
    await execute_update(
        "UPDATE wallets SET virtfusion_user_id = %s, updated_at = NOW() WHERE auth0_user_id = %s",
        (virtfusion_user_id, auth0_user_id)
    )


async def list_wallets(limit: int = 100, offset: int = 0) -> List[Dict]:
    return await execute_query(
        """SELECT auth0_user_id, stripe_customer_id, virtfusion_user_id, balance_cents,
                  auto_topup_enabled, deleted_at, created_at, updated_at
           FROM wallets ORDER BY created_at DESC LIMIT %s OFFSET %s""",
        (limit, offset)
    )


async def get_wallet_totals() -> Dict[str, int]:
    row = _first(await execute_query(
        "SELECT COUNT(*) AS total_wallets, COALESCE(SUM(balance_cents), 0) AS total_balance FROM wallets WHERE deleted_at IS NULL"
    ))
    if not row:
        return {'totalWallets': 0, 'totalBalance': 0}
    return {'totalWallets': int(row['total_wallets']), 'totalBalance': int(row['total_balance'])}


def _insert_transaction(cursor, auth0_user_id: str, tx_type: str, amount_cents: int,
                        stripe_event_id: Optional[str] = None, payment_intent_id: Optional[str] = None,
                        session_id: Optional[str] = None, metadata: Optional[Dict] = None) -> Dict:
    cursor.execute(
        """INSERT INTO wallet_transactions
               (auth0_user_id, type, amount_cents, stripe_event_id, stripe_payment_intent_id, stripe_session_id, metadata)
           VALUES (%s, %s, %s, %s, %s, %s, %s)
           RETURNING *""",
        (auth0_user_id, tx_type, amount_cents, stripe_event_id, payment_intent_id, session_id,
         Json(metadata or {}))
    )
    return dict(cast(RealDictRow, cursor.fetchone()))


def _lock_wallet(cursor, auth0_user_id: str) -> Optional[Dict]:
    cursor.execute("SELECT * FROM wallets WHERE auth0_user_id = %s FOR UPDATE", (auth0_user_id,))
    row = cursor.fetchone()
    return dict(row) if row else None


async def credit_wallet(auth0_user_id: str, amount_cents: int, tx_type: str = 'credit',
                        stripe_event_id: Optional[str] = None, payment_intent_id: Optional[str] = None,
                        session_id: Optional[str] = None, metadata: Optional[Dict] = None) -> Dict[str, Any]:
    """
    Credit a wallet and append a ledger entry atomically

    Idempotent on stripe_event_id: a repeated event returns duplicate=True without crediting.

    Returns:
        {'credited': bool, 'duplicate': bool, 'balance_cents': int, 'transaction': dict|None}
    """
    if amount_cents <= 0:
        raise ValueError(f"Credit amount must be positive, got {amount_cents}")

    def _credit(conn) -> Dict[str, Any]:
        with conn.cursor() as cursor:
            if stripe_event_id:
                cursor.execute("SELECT id FROM wallet_transactions WHERE stripe_event_id = %s", (stripe_event_id,))
                if cursor.fetchone():
                    wallet = _lock_wallet(cursor, auth0_user_id)
                    return {
                        'credited': False,
                        'duplicate': True,
                        'balance_cents': wallet['balance_cents'] if wallet else 0,
                        'transaction': None,
                    }

            wallet = _lock_wallet(cursor, auth0_user_id)
            if wallet is None:
                cursor.execute("INSERT INTO wallets (auth0_user_id) VALUES (%s) RETURNING *", (auth0_user_id,))
                wallet = dict(cast(RealDictRow, cursor.fetchone()))

            new_balance = wallet['balance_cents'] + amount_cents
            cursor.execute(
                "UPDATE wallets SET balance_cents = %s, updated_at = NOW() WHERE auth0_user_id = %s",
                (new_balance, auth0_user_id)
            )
            transaction = _insert_transaction(cursor, auth0_user_id, tx_type, amount_cents,
                                              stripe_event_id, payment_intent_id, session_id, metadata)
            return {'credited': True, 'duplicate': False, 'balance_cents': new_balance, 'transaction': transaction}

    result = await run_in_transaction(_credit)
    if result['credited']:
        logger.info(f"✅ CREDIT SUCCESS: {amount_cents}c ({tx_type}) to {auth0_user_id} | New balance: {result['balance_cents']}c")
    else:
        logger.info(f"🔁 Duplicate credit ignored for event {stripe_event_id}")
    return result


async def debit_wallet(auth0_user_id: str, amount_cents: int, tx_type: str = 'debit',
                       metadata: Optional[Dict] = None) -> int:
    """
    Debit a wallet when the balance covers the amount

    Returns the new balance. Raises InsufficientFundsError otherwise.
    """
    if amount_cents <= 0:
        raise ValueError(f"Debit amount must be positive, got {amount_cents}")

    def _debit(conn) -> int:
        with conn.cursor() as cursor:
            wallet = _lock_wallet(cursor, auth0_user_id)
            balance = wallet['balance_cents'] if wallet else 0
            if wallet is None or balance < amount_cents:
                raise InsufficientFundsError(balance, amount_cents)
            new_balance = balance - amount_cents
            cursor.execute(
                "UPDATE wallets SET balance_cents = %s, updated_at = NOW() WHERE auth0_user_id = %s",
                (new_balance, auth0_user_id)
            )
            _insert_transaction(cursor, auth0_user_id, tx_type, -amount_cents, metadata=metadata)
            return new_balance

    new_balance = await run_in_transaction(_debit)
    logger.info(f"✅ DEBIT SUCCESS: {amount_cents}c ({tx_type}) from {auth0_user_id} | New balance: {new_balance}c")
    return new_balance


async def admin_adjust_wallet(auth0_user_id: str, amount_cents: int, reason: str,
                              admin_auth0_user_id: str, admin_email: str) -> Dict[str, Any]:
    """Signed manual adjustment; a negative adjustment may not take the balance below zero"""
    if amount_cents == 0:
        raise ValueError("Adjustment amount cannot be zero")

    def _adjust(conn) -> Dict[str, Any]:
        with conn.cursor() as cursor:
            wallet = _lock_wallet(cursor, auth0_user_id)
            if wallet is None:
                cursor.execute("INSERT INTO wallets (auth0_user_id) VALUES (%s) RETURNING *", (auth0_user_id,))
                wallet = dict(cast(RealDictRow, cursor.fetchone()))
            new_balance = wallet['balance_cents'] + amount_cents
            if new_balance < 0:
                raise InsufficientFundsError(wallet['balance_cents'], -amount_cents)
            cursor.execute(
                "UPDATE wallets SET balance_cents = %s, updated_at = NOW() WHERE auth0_user_id = %s",
                (new_balance, auth0_user_id)
            )
            transaction = _insert_transaction(
                cursor, auth0_user_id, 'credit' if amount_cents > 0 else 'debit', amount_cents,
                metadata={'source': 'admin', 'reason': reason, 'adminId': admin_auth0_user_id, 'adminEmail': admin_email}
            )
            return {'balance_cents': new_balance, 'transaction': transaction}

    return await run_in_transaction(_adjust)


async def list_wallet_transactions(auth0_user_id: str, limit: int = 50) -> List[Dict]:
    return await execute_query(
        """SELECT id, type, amount_cents, stripe_payment_intent_id, stripe_session_id, metadata, created_at
           FROM wallet_transactions WHERE auth0_user_id = %s
           ORDER BY created_at DESC LIMIT %s""",
        (auth0_user_id, limit)
    )


async def update_auto_topup_settings(auth0_user_id: str, enabled: bool, threshold_cents: int,
                                     amount_cents: int, payment_method_id: Optional[str]) -> Optional[Dict]:
    rows = await execute_query(
        """UPDATE wallets SET auto_topup_enabled = %s, auto_topup_threshold_cents = %s,
                              auto_topup_amount_cents = %s, auto_topup_payment_method_id = %s,
                              updated_at = NOW()
           WHERE auth0_user_id = %s
           RETURNING *""",
        (enabled, threshold_cents, amount_cents, payment_method_id, auth0_user_id)
    )
    return _first(rows)


async def disable_auto_topup_for_payment_method(payment_method_id: str) -> int:
    return await execute_update(
        """UPDATE wallets SET auto_topup_enabled = FALSE, auto_topup_payment_method_id = NULL, updated_at = NOW()
           WHERE auto_topup_payment_method_id = %s""",
        (payment_method_id,)
    )


async def list_wallets_needing_auto_topup() -> List[Dict]:
    return await execute_query(
        """SELECT * FROM wallets
           WHERE auto_topup_enabled = TRUE
             AND auto_topup_payment_method_id IS NOT NULL
             AND stripe_customer_id IS NOT NULL
             AND deleted_at IS NULL
             AND balance_cents <= auto_topup_threshold_cents"""
    )


# ============================================================================
# Deploy orders
# ============================================================================

async def create_deploy_order_with_debit(auth0_user_id: str, plan: Dict, hostname: str,
                                         location_code: str, os_id: Optional[int]) -> Dict:
    """
    Charge the first month and record the order in one transaction

    Raises InsufficientFundsError when the wallet cannot cover the plan price.
    """
    price = int(plan['price_monthly_cents'])

    def _create(conn) -> Dict:
        with conn.cursor() as cursor:
            wallet = _lock_wallet(cursor, auth0_user_id)
            balance = wallet['balance_cents'] if wallet else 0
            if wallet is None or wallet.get('deleted_at') is not None or balance < price:
                raise InsufficientFundsError(balance, price)
            cursor.execute(
                """INSERT INTO deploy_orders (auth0_user_id, plan_id, plan_code, hostname, location_code, os_id, price_cents, status)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, 'paid')
                   RETURNING *""",
                (auth0_user_id, plan['id'], plan['code'], hostname, location_code, os_id, price)
            )
            order = dict(cast(RealDictRow, cursor.fetchone()))
            cursor.execute(
                "UPDATE wallets SET balance_cents = %s, updated_at = NOW() WHERE auth0_user_id = %s",
                (balance - price, auth0_user_id)
            )
            _insert_transaction(cursor, auth0_user_id, 'debit', -price,
                                metadata={'deployOrderId': order['id'], 'planCode': plan['code']})
            return order

    order = await run_in_transaction(_create)
    logger.info(f"🧾 Deploy order {order['id']} created for {auth0_user_id}: {plan['code']} ({price}c debited)")
    return order


async def update_deploy_order(order_id: int, status: str, virtfusion_server_id: Optional[int] = None,
                              error_message: Optional[str] = None) -> None:
    if status not in DEPLOY_ORDER_STATUSES:
        raise ValueError(f"Unknown deploy order status: {status}")
    await execute_update(
        """UPDATE deploy_orders
           SET status = %s,
               virtfusion_server_id = COALESCE(%s, virtfusion_server_id),
               error_message = %s,
               updated_at = NOW()
           WHERE id = %s""",
        (status, virtfusion_server_id, error_message, order_id)
    )


async def refund_deploy_order(order: Dict, error_message: str) -> Dict[str, Any]:
    """Mark an order failed and return its price to the wallet"""
    def _refund(conn) -> Dict[str, Any]:
        with conn.cursor() as cursor:
            cursor.execute("SELECT status FROM deploy_orders WHERE id = %s FOR UPDATE", (order['id'],))
            row = cursor.fetchone()
            if row is None or row['status'] in ('failed', 'cancelled'):
                return {'refunded': False}
            cursor.execute(
                "UPDATE deploy_orders SET status = 'failed', error_message = %s, updated_at = NOW() WHERE id = %s",
                (error_message, order['id'])
            )
            wallet = _lock_wallet(cursor, order['auth0_user_id'])
            new_balance = (wallet['balance_cents'] if wallet else 0) + int(order['price_cents'])
            cursor.execute(
                "UPDATE wallets SET balance_cents = %s, updated_at = NOW() WHERE auth0_user_id = %s",
                (new_balance, order['auth0_user_id'])
            )
            _insert_transaction(cursor, order['auth0_user_id'], 'refund', int(order['price_cents']),
                                metadata={'deployOrderId': order['id'], 'reason': error_message})
            return {'refunded': True, 'balance_cents': new_balance}

    result = await run_in_transaction(_refund)
    if result['refunded']:
        logger.info(f"💸 Refunded deploy order {order['id']} ({order['price_cents']}c)")
    return result


async def get_deploy_order(order_id: int) -> Optional[Dict]:
    return _first(await execute_query("SELECT * FROM deploy_orders WHERE id = %s", (order_id,)))


async def list_deploy_orders(auth0_user_id: str, limit: int = 50) -> List[Dict]:
    return await execute_query(
        "SELECT * FROM deploy_orders WHERE auth0_user_id = %s ORDER BY created_at DESC LIMIT %s",
        (auth0_user_id, limit)
    )


# ============================================================================
# Server billing
# ============================================================================

async def create_server_billing(virtfusion_server_id: int, auth0_user_id: str, plan_code: str,
                                price_monthly_cents: int, deploy_order_id: Optional[int],
                                next_bill_at: datetime) -> None:
    await execute_update(
        """INSERT INTO server_billing (virtfusion_server_id, auth0_user_id, plan_code, price_monthly_cents,
                                       deploy_order_id, next_bill_at)
           VALUES (%s, %s, %s, %s, %s, %s)
           ON CONFLICT (virtfusion_server_id) DO NOTHING""",
        (virtfusion_server_id, auth0_user_id, plan_code, price_monthly_cents, deploy_order_id, next_bill_at)
    )


async def get_server_billing(virtfusion_server_id: int) -> Optional[Dict]:
    return _first(await execute_query(
        "SELECT * FROM server_billing WHERE virtfusion_server_id = %s", (virtfusion_server_id,)
    ))


async def list_server_billing_for_user(auth0_user_id: str) -> List[Dict]:
    return await execute_query(
        "SELECT * FROM server_billing WHERE auth0_user_id = %s ORDER BY created_at DESC", (auth0_user_id,)
    )


async def list_due_server_billing(now: datetime) -> List[Dict]:
    return await execute_query(
        """SELECT sb.*, w.deleted_at AS wallet_deleted_at
           FROM server_billing sb
           LEFT JOIN wallets w ON w.auth0_user_id = sb.auth0_user_id
           WHERE sb.status = 'active' AND sb.next_bill_at <= %s
           ORDER BY sb.next_bill_at ASC""",
        (now,)
    )


async def list_overdue_server_billing(overdue_before: datetime) -> List[Dict]:
    return await execute_query(
        """SELECT * FROM server_billing
           WHERE status = 'overdue' AND overdue_since IS NOT NULL AND overdue_since <= %s""",
        (overdue_before,)
    )


async def charge_server_billing(record: Dict, amount_cents: int, next_bill_at: datetime) -> bool:
    """
    Debit one billing period for a server and advance next_bill_at

    Returns False (and changes nothing) when the wallet cannot cover the charge.
    """
    def _charge(conn) -> bool:
        with conn.cursor() as cursor:
            wallet = _lock_wallet(cursor, record['auth0_user_id'])
            if wallet is None or wallet['balance_cents'] < amount_cents:
                return False
            cursor.execute(
                "UPDATE wallets SET balance_cents = balance_cents - %s, updated_at = NOW() WHERE auth0_user_id = %s",
                (amount_cents, record['auth0_user_id'])
            )
            _insert_transaction(cursor, record['auth0_user_id'], 'server_billing', -amount_cents,
                                metadata={'serverBilling': True, 'serverId': record['virtfusion_server_id'],
                                          'planCode': record['plan_code']})
            cursor.execute(
                """UPDATE server_billing SET status = 'active', next_bill_at = %s, overdue_since = NULL,
                                             suspended_at = NULL, updated_at = NOW()
                   WHERE id = %s""",
                (next_bill_at, record['id'])
            )
            return True

    return await run_in_transaction(_charge)


async def mark_server_billing_overdue(record_id: int) -> None:
    await execute_update(
        """UPDATE server_billing SET status = 'overdue', overdue_since = COALESCE(overdue_since, NOW()), updated_at = NOW()
           WHERE id = %s""",
        (record_id,)
    )


async def set_server_billing_status(virtfusion_server_id: int, status: str) -> None:
    await execute_update(
        """UPDATE server_billing SET status = %s,
                  suspended_at = CASE WHEN %s = 'suspended' THEN NOW() ELSE suspended_at END,
                  updated_at = NOW()
           WHERE virtfusion_server_id = %s""",
        (status, status, virtfusion_server_id)
    )


# ============================================================================
# Server cancellations
# ============================================================================

async def create_cancellation(virtfusion_server_id: int, auth0_user_id: str, server_name: Optional[str],
                              reason: Optional[str], mode: str, scheduled_deletion_at: datetime) -> Optional[Dict]:
    rows = await execute_query(
        """INSERT INTO server_cancellations (virtfusion_server_id, auth0_user_id, server_name, reason, mode,
                                             scheduled_deletion_at)
           VALUES (%s, %s, %s, %s, %s, %s)
           RETURNING *""",
        (virtfusion_server_id, auth0_user_id, server_name, reason, mode, scheduled_deletion_at)
    )
    return _first(rows)


async def get_active_cancellation(virtfusion_server_id: int) -> Optional[Dict]:
    return _first(await execute_query(
        """SELECT * FROM server_cancellations
           WHERE virtfusion_server_id = %s AND status IN ('pending', 'processing')
           ORDER BY requested_at DESC LIMIT 1""",
        (virtfusion_server_id,)
    ))


async def list_user_cancellations(auth0_user_id: str) -> List[Dict]:
    return await execute_query(
        """SELECT * FROM server_cancellations
           WHERE auth0_user_id = %s AND status IN ('pending', 'processing')""",
        (auth0_user_id,)
    )


async def revoke_cancellation(cancellation_id: int) -> bool:
    count = await execute_update(
        """UPDATE server_cancellations SET status = 'revoked', revoked_at = NOW()
           WHERE id = %s AND status = 'pending' AND mode = 'grace'""",
        (cancellation_id,)
    )
    return count > 0


async def claim_due_cancellations(now: datetime) -> List[Dict]:
    """Move due pending cancellations to processing and return them"""
    return await execute_query(
        """UPDATE server_cancellations SET status = 'processing'
           WHERE status = 'pending' AND scheduled_deletion_at <= %s
           RETURNING *""",
        (now,)
    )


async def finish_cancellation(cancellation_id: int, success: bool, error_message: Optional[str] = None) -> None:
    await execute_update(
        """UPDATE server_cancellations
           SET status = %s, completed_at = CASE WHEN %s THEN NOW() ELSE NULL END, error_message = %s
           WHERE id = %s""",
        ('completed' if success else 'failed', success, error_message, cancellation_id)
    )


# ============================================================================
# Support tickets
# ============================================================================

async def create_support_ticket(auth0_user_id: str, email: str, title: str, category: str, priority: str,
                                description: str, virtfusion_server_id: Optional[int] = None) -> Dict:
    def _create(conn) -> Dict:
        with conn.cursor() as cursor:
            cursor.execute(
                """INSERT INTO support_tickets (auth0_user_id, email, title, category, priority, status, virtfusion_server_id)
                   VALUES (%s, %s, %s, %s, %s, 'new', %s)
                   RETURNING *""",
                (auth0_user_id, email, title, category, priority, virtfusion_server_id)
            )
            ticket = dict(cast(RealDictRow, cursor.fetchone()))
            cursor.execute(
                """INSERT INTO support_ticket_messages (ticket_id, author_id, author_email, is_admin, message)
                   VALUES (%s, %s, %s, FALSE, %s)""",
                (ticket['id'], auth0_user_id, email, description)
            )
            return ticket

    ticket = await run_in_transaction(_create)
    logger.info(f"🎫 Support ticket #{ticket['id']} created by {email} ({category}/{priority})")
    return ticket


async def list_support_tickets(auth0_user_id: Optional[str], status_filter: str = 'all',
                               limit: int = 100) -> List[Dict]:
    """List tickets for one user (or every user when auth0_user_id is None)"""
    clauses = []
    params: List[Any] = []
    if auth0_user_id is not None:
        clauses.append("auth0_user_id = %s")
        params.append(auth0_user_id)
    if status_filter == 'open':
        clauses.append("status NOT IN ('resolved', 'closed')")
    elif status_filter == 'closed':
        clauses.append("status IN ('resolved', 'closed')")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
    params.append(limit)
    return await execute_query(
        f"SELECT * FROM support_tickets {where} ORDER BY last_message_at DESC LIMIT %s",
        tuple(params)
    )


async def get_support_ticket(ticket_id: int) -> Optional[Dict]:
    return _first(await execute_query("SELECT * FROM support_tickets WHERE id = %s", (ticket_id,)))


async def list_ticket_messages(ticket_id: int) -> List[Dict]:
    return await execute_query(
        "SELECT * FROM support_ticket_messages WHERE ticket_id = %s ORDER BY created_at ASC",
        (ticket_id,)
    )


async def add_ticket_message(ticket_id: int, author_id: str, author_email: str, is_admin: bool,
                             message: str, new_status: str) -> Dict:
    def _add(conn) -> Dict:
        with conn.cursor() as cursor:
            cursor.execute(
                """INSERT INTO support_ticket_messages (ticket_id, author_id, author_email, is_admin, message)
                   VALUES (%s, %s, %s, %s, %s)
                   RETURNING *""",
                (ticket_id, author_id, author_email, is_admin, message)
            )
            created = dict(cast(RealDictRow, cursor.fetchone()))
            cursor.execute(
                """UPDATE support_tickets SET status = %s, last_message_at = NOW(), updated_at = NOW()
                   WHERE id = %s""",
                (new_status, ticket_id)
            )
            return created

    return await run_in_transaction(_add)


async def set_support_ticket_status(ticket_id: int, status: str) -> None:
    if status not in TICKET_STATUSES:
        raise ValueError(f"Unknown ticket status: {status}")
    await execute_update(
        """UPDATE support_tickets
           SET status = %s,
               closed_at = CASE WHEN %s IN ('resolved', 'closed') THEN NOW() ELSE NULL END,
               updated_at = NOW()
           WHERE id = %s""",
        (status, status, ticket_id)
    )


async def get_support_ticket_counts(auth0_user_id: str) -> Dict[str, int]:
    row = _first(await execute_query(
        """SELECT
               COUNT(*) FILTER (WHERE status NOT IN ('resolved', 'closed')) AS open,
               COUNT(*) FILTER (WHERE status = 'waiting_user') AS waiting_user,
               COUNT(*) AS total
           FROM support_tickets WHERE auth0_user_id = %s""",
        (auth0_user_id,)
    ))
    if not row:
        return {'open': 0, 'waitingUser': 0, 'total': 0}
    return {'open': int(row['open']), 'waitingUser': int(row['waiting_user']), 'total': int(row['total'])}


# ============================================================================
# Admin audit log
# ============================================================================

async def create_audit_log(admin_auth0_user_id: str, admin_email: str, action: str, target_type: str,
                           target_id: Optional[str], status: str, target_label: Optional[str] = None,
                           payload: Optional[Dict] = None, reason: Optional[str] = None,
                           error_message: Optional[str] = None, ip_address: Optional[str] = None,
                           user_agent: Optional[str] = None) -> None:
    await execute_update(
        """INSERT INTO admin_audit_logs (admin_auth0_user_id, admin_email, action, target_type, target_id,
                                         target_label, payload, reason, status, error_message, ip_address, user_agent)
           VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
        (admin_auth0_user_id, admin_email, action, target_type, target_id, target_label,
         Json(payload or {}), reason, status, error_message, ip_address, user_agent)
    )


async def list_audit_logs(limit: int = 50, offset: int = 0, action: Optional[str] = None,
                          target_type: Optional[str] = None, status: Optional[str] = None) -> Dict[str, Any]:
    clauses = []
    params: List[Any] = []
    if action:
        clauses.append("action = %s")
        params.append(action)
    if target_type:
        clauses.append("target_type = %s")
        params.append(target_type)
    if status:
        clauses.append("status = %s")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ''

    logs = await execute_query(
        f"SELECT * FROM admin_audit_logs {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
        tuple(params + [limit, offset])
    )
    total_row = _first(await execute_query(
        f"SELECT COUNT(*) AS total FROM admin_audit_logs {where}", tuple(params)
    ))
    return {'logs': logs, 'total': int(total_row['total']) if total_row else 0}


def session_expiry(days: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)
