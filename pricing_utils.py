"""
Pricing utility functions for OzVPS plans
All money is held as integer cents (AUD); Decimal is only used for display
"""

import math
import logging
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)

CURRENCY = 'AUD'
BILLING_DAYS_PER_MONTH = 30


@dataclass(frozen=True)
class PlanDefinition:
    code: str
    name: str
    vcpu: int
    ram_mb: int
    storage_gb: int
    transfer_gb: int  # -1 = unlimited
    price_monthly_cents: int
    virtfusion_package_id: int
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['price_display'] = format_price(self.price_monthly_cents)
        data['ram_display'] = format_ram(self.ram_mb)
        data['transfer_display'] = format_transfer(self.transfer_gb)
        return data


@dataclass(frozen=True)
class Location:
    code: str
    name: str
    country: str
    hypervisor_group_id: Optional[int]
    enabled: bool


STATIC_PLANS: List[PlanDefinition] = [
    PlanDefinition('nano', 'Nano', 1, 1024, 25, 1000, 999, 1),
    PlanDefinition('starter', 'Starter', 2, 2048, 50, 2000, 1499, 2),
    PlanDefinition('dev', 'Dev', 3, 4096, 80, 3000, 2199, 3),
    PlanDefinition('lite', 'Lite', 4, 6144, 120, 4000, 2799, 4),
    PlanDefinition('value', 'Value', 6, 8192, 180, 5000, 3699, 5),
    PlanDefinition('ubw-micro', 'Unlimited Bandwidth - Micro', 8, 16384, 320, -1, 5999, 6),
]

LOCATIONS: List[Location] = [
    Location('BNE', 'Brisbane', 'AU', 2, True),
    Location('SYD', 'Sydney', 'AU', None, False),
]


def get_location(code: Optional[str]) -> Optional[Location]:
    if not code:
        return None
    code = code.upper()
    return next((loc for loc in LOCATIONS if loc.code == code), None)


def format_price(cents: int) -> str:
    """Format cents as a dollar string, e.g. 999 -> '$9.99'"""
    amount = (Decimal(int(cents)) / Decimal(100)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
    sign = '-' if amount < 0 else ''
    return f"{sign}${abs(amount):.2f}"


def format_money(cents: int, include_currency: bool = True) -> str:
    """Format cents with the currency code, e.g. '$9.99 AUD'"""
    formatted = format_price(cents)
    if include_currency:
        formatted += f" {CURRENCY}"
    return formatted


def format_ram(ram_mb: int) -> str:
    if ram_mb >= 1024:
        gb = ram_mb / 1024
        return f"{gb:g} GB"
    return f"{ram_mb} MB"


def format_transfer(transfer_gb: int) -> str:
    if transfer_gb < 0:
        return 'Unlimited'
    if transfer_gb >= 1000:
        return f"{transfer_gb / 1000:g} TB"
    return f"{transfer_gb} GB"


def daily_rate_cents(price_monthly_cents: int) -> int:
    """Daily server charge; rounded up so 30 daily charges never undercut the monthly price"""
    return math.ceil(price_monthly_cents / BILLING_DAYS_PER_MONTH)


def topup_shortfall_cents(price_cents: int, balance_cents: int, minimum_topup_cents: int = 500) -> int:
    """Suggested top-up to afford a plan: the shortfall, but never less than the minimum top-up"""
    return max(price_cents - balance_cents, minimum_topup_cents)
