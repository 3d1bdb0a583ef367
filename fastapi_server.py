#!/usr/bin/env python3
"""
FastAPI server - HTTP entry point for the OzVPS dashboard API and the Stripe webhook
Starts in graceful degradation mode: missing services disable features, never the server
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

import uvicorn
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_config
from monitoring.production_logging import get_production_logger
from utils.environment import get_webhook_url

# Configure logging early to capture all startup logs including lifespan
# Single structured JSON log format
import json as _json
from datetime import datetime as _dt, timezone as _tz


class _JsonLogFormatter(logging.Formatter):
    """Single structured JSON log format for production"""
    def format(self, record):
        log_data = {
            'timestamp': _dt.fromtimestamp(record.created, _tz.utc).isoformat(),
            'level': record.levelname,
            'component': record.name,
            'message': record.getMessage(),
        }
        # Structured business/audit events carry their context as extras
        for key in ('user_id', 'order_id', 'context'):
            value = getattr(record, key, None)
            if value:
                log_data[key] = value
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)
        return _json.dumps(log_data, default=str)


_handler = logging.StreamHandler()
_handler.setFormatter(_JsonLogFormatter())
logging.root.handlers = [_handler]
logging.root.setLevel(logging.INFO)

# SECURITY: Keep API keys in request URLs/headers out of the logs
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

from api.utils.errors import APIError
from api.utils.responses import error_payload
from services.stripe_service import verify_webhook_signature, WebhookSignatureError
from webhook_handler import process_stripe_event, get_webhook_stats


class WebhookVerifier:
    """Webhook signature verification"""

    @staticmethod
    def verify_stripe(request_body: bytes, headers: Dict[str, str]) -> bool:
        """Verify a Stripe-Signature header - STRICT verification required"""
        secret = get_config().stripe.webhook_secret
        if not secret:
            logger.error("❌ CRITICAL: Missing STRIPE_WEBHOOK_SECRET - cannot verify webhook")
            return False

        try:
            return verify_webhook_signature(request_body, headers.get('stripe-signature'), secret)
        except WebhookSignatureError as e:
            logger.error(f"❌ CRITICAL: Stripe signature verification failed: {e}")
            return False


# Global service status tracking for health checks
_service_status = {
    'database': False,
    'virtfusion': False,
    'stripe': False,
    'auth0': False,
    'scheduler': False,
}

_scheduler: Optional[AsyncIOScheduler] = None


async def run_with_timeout(coro, timeout_seconds: float, task_name: str, default=None):
    """Run a coroutine with timeout, logging and returning default on timeout/failure"""
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"⏱️ TIMEOUT: {task_name} took longer than {timeout_seconds}s - skipping")
        return default
    except Exception as e:
        logger.warning(f"⚠️ {task_name} failed: {e}")
        return default


async def run_billing_job():
    """Hourly billing cycle: auto top-ups, daily server charges, overdue suspensions"""
    from services.billing_processor import BillingProcessor
    from services.stripe_service import stripe_service
    from services.virtfusion import virtfusion_service

    try:
        await BillingProcessor(virtfusion_service, stripe_service).run_billing_cycle()
    except Exception as e:
        logger.error(f"❌ Billing cycle failed: {e}")


async def run_cancellation_job():
    """Delete servers whose scheduled cancellation time has passed"""
    from services.billing_processor import BillingProcessor
    from services.stripe_service import stripe_service
    from services.virtfusion import virtfusion_service

    try:
        await BillingProcessor(virtfusion_service, stripe_service).run_cancellations()
    except Exception as e:
        logger.error(f"❌ Cancellation processing failed: {e}")


def create_scheduler() -> AsyncIOScheduler:
    billing_config = get_config().billing
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_billing_job,
        'interval',
        minutes=billing_config.billing_interval_minutes,
        id='billing_cycle',
        name='Server Billing Cycle',
        replace_existing=True
    )
    logger.info(f"✅ Scheduled: Billing cycle every {billing_config.billing_interval_minutes} minutes")

    scheduler.add_job(
        run_cancellation_job,
        'interval',
        minutes=billing_config.immediate_cancellation_minutes,
        id='server_cancellations',
        name='Server Cancellation Processor',
        replace_existing=True
    )
    logger.info(f"✅ Scheduled: Cancellation processor every {billing_config.immediate_cancellation_minutes} minutes")
    return scheduler


# FastAPI lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage FastAPI lifecycle - ALWAYS STARTS SUCCESSFULLY"""
    global _service_status, _scheduler

    logger.info("=" * 80)
    logger.info("🚀 STARTING OZVPS DASHBOARD API - GRACEFUL DEGRADATION MODE")
    logger.info("=" * 80)

    _service_status = {key: False for key in _service_status}

    config = get_config()
    validation = config.validate()
    for issue in validation['issues']:
        logger.error(f"❌ CONFIG: {issue}")
    for warning in validation['warnings']:
        logger.warning(f"⚠️ CONFIG: {warning}")

    # 1. Database schema and plan catalogue
    try:
        from database import init_database
        await init_database()
        _service_status['database'] = True
        logger.info("✅ Database initialization completed successfully")
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")

    # 2. External services
    from services.virtfusion import virtfusion_service
    from services.stripe_service import stripe_service
    from services.auth0 import auth0_service

    if virtfusion_service is not None and virtfusion_service.is_available():
        connected = await run_with_timeout(asyncio.to_thread(virtfusion_service.validate_connection),
                                           10.0, "VirtFusion connection check", default=False)
        _service_status['virtfusion'] = bool(connected)
    _service_status['stripe'] = stripe_service is not None and stripe_service.is_available()
    if _service_status['stripe']:
        logger.info(f"🔗 Stripe webhook endpoint: {get_webhook_url('stripe')}")
    _service_status['auth0'] = auth0_service is not None and auth0_service.is_available()

    # 3. Scheduled billing
    _scheduler = None
    if config.billing.scheduler_enabled:
        try:
            logger.info("📅 Initializing APScheduler for billing jobs...")
            _scheduler = create_scheduler()
            _scheduler.start()
            _service_status['scheduler'] = True
            logger.info("✅ APScheduler started successfully")
        except Exception as scheduler_error:
            logger.error(f"❌ Failed to initialize APScheduler: {scheduler_error}")
            logger.error("   • Billing will not run automatically")
    else:
        logger.info("⏸️ Billing scheduler disabled (BILLING_SCHEDULER_ENABLED=false)")

    logger.info("=" * 80)
    logger.info("📊 SERVICE STATUS SUMMARY:")
    logger.info(f"   🗄️  Database:    {'✅ Connected' if _service_status['database'] else '❌ Failed'}")
    logger.info(f"   🖥️  VirtFusion:  {'✅ Connected' if _service_status['virtfusion'] else '❌ Unavailable'}")
    logger.info(f"   💳 Stripe:      {'✅ Configured' if _service_status['stripe'] else '❌ Not configured'}")
    logger.info(f"   🔐 Auth0:       {'✅ Configured' if _service_status['auth0'] else '❌ Not configured'}")
    logger.info(f"   📅 Scheduler:   {'✅ Running' if _service_status['scheduler'] else '❌ Stopped'}")
    logger.info("=" * 80)

    successful_services = sum(1 for status in _service_status.values() if status)
    total_services = len(_service_status)
    if successful_services == total_services:
        logger.info(f"🎉 ALL SERVICES STARTED SUCCESSFULLY ({successful_services}/{total_services})")
    else:
        logger.warning(f"⚠️ PARTIAL STARTUP: {successful_services}/{total_services} services running")

    yield

    # Cleanup
    if _scheduler is not None:
        try:
            logger.info("📅 Stopping APScheduler...")
            _scheduler.shutdown(wait=False)
        except Exception as scheduler_stop_error:
            logger.error(f"❌ Error stopping APScheduler: {scheduler_stop_error}")

    try:
        from database import close_connection_pool
        close_connection_pool()
    except Exception as e:
        logger.error(f"❌ Error closing database pool: {e}")
    logger.info("👋 Shutdown complete")


app = FastAPI(
    title="OzVPS Dashboard API",
    description="Customer and admin API for OzVPS servers, wallets and support",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().app.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint - ALWAYS RETURNS 200
@app.get("/health", include_in_schema=False)
@app.get("/api/health", include_in_schema=False)
async def health_check():
    """
    Health check for monitoring - ALWAYS returns 200 OK
    Even if services are degraded, HTTP server is operational
    """
    successful_services = sum(1 for status in _service_status.values() if status)
    total_services = len(_service_status)

    if successful_services == total_services:
        overall_status = "healthy"
    elif successful_services > total_services // 2:
        overall_status = "degraded"
    else:
        overall_status = "critical"

    return {
        "status": overall_status,
        "http_server": "operational",
        "timestamp": int(time.time()),
        "services": {
            "database": "connected" if _service_status.get('database') else "failed",
            "virtfusion": "connected" if _service_status.get('virtfusion') else "unavailable",
            "stripe": "configured" if _service_status.get('stripe') else "not_configured",
            "auth0": "configured" if _service_status.get('auth0') else "not_configured",
            "scheduler": "running" if _service_status.get('scheduler') else "stopped",
        },
        "webhooks": await get_webhook_stats(),
        "metrics": get_production_logger().get_metrics_snapshot(),
        "summary": {
            "successful": successful_services,
            "total": total_services,
            "percentage": round((successful_services / total_services * 100) if total_services > 0 else 0, 1)
        }
    }


@app.post("/api/webhook/stripe", include_in_schema=False)
@app.post("/webhook/stripe", include_in_schema=False)
async def stripe_webhook(request: Request):
    """Handle Stripe events; 5xx responses make Stripe retry"""
    body = await request.body()
    if not WebhookVerifier.verify_stripe(body, dict(request.headers)):
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    try:
        result = await process_stripe_event(event)
    except Exception as e:
        logger.error(f"❌ STRIPE WEBHOOK: Processing {event.get('type')} ({event.get('id')}) failed: {e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"received": True, **result}


from api.routes import auth, billing, plans, deploy, servers, admin, support

app.include_router(auth.router, prefix="/api", tags=["Auth"])
app.include_router(billing.router, prefix="/api", tags=["Billing"])
app.include_router(plans.router, prefix="/api", tags=["Plans"])
app.include_router(deploy.router, prefix="/api", tags=["Deploy"])
app.include_router(servers.router, prefix="/api", tags=["Servers"])
app.include_router(admin.router, prefix="/api", tags=["Admin"])
app.include_router(support.router, prefix="/api", tags=["Support"])


# Error handlers
@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    """Handle API errors that carry a machine-readable code"""
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc.detail, exc.code))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "timestamp": int(time.time())}
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report the first failing field as a 400"""
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
        message = f"{field}: {first.get('msg')}" if field else first.get('msg', 'Invalid request')
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content=error_payload(message, "VALIDATION_ERROR"))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions"""
    logger.error(f"❌ Unhandled exception on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "timestamp": int(time.time())}
    )


# Development server
if __name__ == "__main__":
    uvicorn.run(
        "fastapi_server:app",
        host="0.0.0.0",
        port=get_config().app.port,
        reload=False,
        log_level="info"
    )
