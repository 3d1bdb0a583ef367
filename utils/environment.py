"""Environment detection utilities for production vs development"""

import os
import logging

logger = logging.getLogger(__name__)

def get_app_domain() -> str:
    """
    Get the public domain the dashboard is served from

    Returns:
        str: The domain used to build checkout return URLs and webhook URLs
    """
    # Priority order:
    # 1. ENVIRONMENT=development explicitly set (overrides everything)
    # 2. APP_URL / PRODUCTION_DOMAIN environment variables
    # 3. localhost fallback
    environment = os.getenv('ENVIRONMENT', '').lower()
    dev_domain = os.getenv('DEV_DOMAIN') or f"localhost:{os.getenv('PORT', '5000')}"

    if environment == 'development':
        logger.debug(f"🔧 Development mode - using dev domain: {dev_domain}")
        return dev_domain

    app_url = os.getenv('APP_URL', '')
    if app_url:
        return app_url.split('://', 1)[-1].rstrip('/')

    production_domain = os.getenv('PRODUCTION_DOMAIN')
    if production_domain:
        return production_domain

    if is_production_environment():
        logger.error("❌ CRITICAL: Production detected but APP_URL / PRODUCTION_DOMAIN not set - return URLs will be wrong")
    return dev_domain

def get_app_url(path: str = '') -> str:
    """
    Get an absolute dashboard URL

    Args:
        path: Path on the dashboard (e.g., '/billing?topup=success')

    Returns:
        str: Complete URL
    """
    domain = get_app_domain()
    protocol = 'http' if domain.startswith('localhost') or domain.startswith('127.') else 'https'
    if path and not path.startswith('/'):
        path = f"/{path}"
    return f"{protocol}://{domain}{path}"

def get_webhook_url(endpoint: str) -> str:
    """Get the complete webhook URL for a provider endpoint (e.g., 'stripe')"""
    return get_app_url(f"/api/webhook/{endpoint}")

def is_production_environment() -> bool:
    """
    Check if we're running in production

    Returns:
        bool: True if in production, False if in development
    """
    environment = os.getenv('ENVIRONMENT', '').lower()
    if environment == 'development':
        return False
    elif environment == 'production':
        return True

    return bool(os.getenv('PRODUCTION_DOMAIN'))
