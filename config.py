"""
Centralized configuration for the OzVPS dashboard
All settings are read from environment variables (loaded from .env at startup)
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class DatabaseConfig:
    url: Optional[str] = None
    min_connections: int = 2
    max_connections: int = 20


@dataclass
class VirtFusionConfig:
    panel_url: Optional[str] = None
    api_token: Optional[str] = None
    timeout: int = 15

    @property
    def api_base_url(self) -> Optional[str]:
        if not self.panel_url:
            return None
        return f"{self.panel_url.rstrip('/')}/api/v1"


@dataclass
class StripeConfig:
    secret_key: Optional[str] = None
    publishable_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    api_base_url: str = 'https://api.stripe.com/v1'
    currency: str = 'aud'


@dataclass
class Auth0Config:
    domain: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass
class AppConfig:
    environment: str = 'development'
    public_url: Optional[str] = None
    port: int = 5000
    session_cookie: str = 'ozvps_session'
    session_days: int = 7
    idle_timeout_minutes: int = 15
    cors_origins: List[str] = field(default_factory=lambda: ['*'])


@dataclass
class BillingConfig:
    min_topup_cents: int = 500
    max_topup_cents: int = 50000
    overdue_grace_days: int = 7
    cancellation_grace_days: int = 30
    immediate_cancellation_minutes: int = 5
    scheduler_enabled: bool = True
    billing_interval_minutes: int = 60


@dataclass
class Config:
    database: DatabaseConfig
    virtfusion: VirtFusionConfig
    stripe: StripeConfig
    auth0: Auth0Config
    app: AppConfig
    billing: BillingConfig

    @classmethod
    def from_env(cls) -> 'Config':
        cors = os.getenv('CORS_ORIGINS', '*')
        return cls(
            database=DatabaseConfig(
                url=os.getenv('DATABASE_URL'),
                min_connections=_env_int('DB_POOL_MIN', 2),
                max_connections=_env_int('DB_POOL_MAX', 20),
            ),
            virtfusion=VirtFusionConfig(
                panel_url=os.getenv('VIRTFUSION_PANEL_URL'),
                api_token=os.getenv('VIRTFUSION_API_TOKEN'),
                timeout=_env_int('VIRTFUSION_TIMEOUT', 15),
            ),
            stripe=StripeConfig(
                secret_key=os.getenv('STRIPE_SECRET_KEY'),
                publishable_key=os.getenv('STRIPE_PUBLISHABLE_KEY'),
                webhook_secret=os.getenv('STRIPE_WEBHOOK_SECRET'),
            ),
            auth0=Auth0Config(
                domain=os.getenv('AUTH0_DOMAIN'),
                client_id=os.getenv('AUTH0_CLIENT_ID'),
                client_secret=os.getenv('AUTH0_CLIENT_SECRET'),
            ),
            app=AppConfig(
                environment=os.getenv('ENVIRONMENT', 'development').lower(),
                public_url=os.getenv('APP_URL'),
                port=_env_int('PORT', 5000),
                cors_origins=[o.strip() for o in cors.split(',') if o.strip()],
            ),
            billing=BillingConfig(
                scheduler_enabled=_env_bool('BILLING_SCHEDULER_ENABLED', True),
                billing_interval_minutes=_env_int('BILLING_INTERVAL_MINUTES', 60),
                overdue_grace_days=_env_int('OVERDUE_GRACE_DAYS', 7),
            ),
        )

    def validate(self) -> Dict[str, Any]:
        """Check for missing settings. Issues disable features, warnings are informational."""
        issues: List[str] = []
        warnings: List[str] = []

        if not self.database.url:
            issues.append("DATABASE_URL is not set")
        if not self.virtfusion.panel_url or not self.virtfusion.api_token:
            issues.append("VIRTFUSION_PANEL_URL / VIRTFUSION_API_TOKEN are not set - server management disabled")
        if not self.stripe.secret_key:
            issues.append("STRIPE_SECRET_KEY is not set - payments disabled")

        if not self.stripe.publishable_key:
            warnings.append("STRIPE_PUBLISHABLE_KEY is not set - card setup unavailable in the browser")
        if not self.stripe.webhook_secret:
            warnings.append("STRIPE_WEBHOOK_SECRET is not set - Stripe webhooks will be rejected")
        if not self.auth0.domain or not self.auth0.client_id:
            warnings.append("AUTH0_DOMAIN / AUTH0_CLIENT_ID are not set - login disabled")
        if self.app.environment == 'production' and not self.app.public_url:
            warnings.append("APP_URL is not set in production - checkout return URLs fall back to localhost")

        return {
            'valid': not issues,
            'issues': issues,
            'warnings': warnings,
        }


_config: Optional[Config] = None


def get_config() -> Config:
    """Get global configuration (built on first use)"""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment"""
    global _config
    _config = None
