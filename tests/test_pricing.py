import pytest

from pricing_utils import (
    STATIC_PLANS,
    LOCATIONS,
    get_location,
    format_price,
    format_ram,
    format_transfer,
    daily_rate_cents,
    topup_shortfall_cents,
)


def test_static_plan_codes():
    assert [p.code for p in STATIC_PLANS] == ['nano', 'starter', 'dev', 'lite', 'value', 'ubw-micro']


def test_locations():
    assert get_location('bne').enabled
    assert get_location('BNE').hypervisor_group_id == 2
    assert not get_location('SYD').enabled
    assert get_location('PER') is None
    assert len(LOCATIONS) == 2


@pytest.mark.parametrize("cents,text", [(999, "$9.99"), (0, "$0.00"), (50000, "$500.00"), (5, "$0.05")])
def test_format_price(cents, text):
    assert format_price(cents) == text


def test_format_ram():
    assert format_ram(512) == "512 MB"
    assert format_ram(2048) == "2 GB"


def test_format_transfer():
    assert format_transfer(-1) == "Unlimited"
    assert format_transfer(500) == "500 GB"
    assert format_transfer(2000) == "2 TB"


def test_daily_rate_rounds_up():
    assert daily_rate_cents(999) == 34
    assert daily_rate_cents(3000) == 100
    assert daily_rate_cents(3001) == 101


def test_topup_shortfall_has_minimum():
    assert topup_shortfall_cents(1499, 1400) == 500
    assert topup_shortfall_cents(5999, 0) == 5999
    assert topup_shortfall_cents(999, 2000) == 500
