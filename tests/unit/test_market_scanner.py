"""
Market scanner: eligibility filters, bounded rate lookups, ordering.
"""
from decimal import Decimal

import pytest

from cashcarry.config.config import ScannerConfig
from cashcarry.exceptions import ExchangeError
from cashcarry.services.market_scanner import MarketScanner


@pytest.fixture
def market(fake_okx):
    # turnover = volCcy24h x last
    fake_okx.add_pair("BTC", "40000", "0.0004", vol_ccy_24h="5000")      # 200M
    fake_okx.add_pair("ETH", "2000", "0.0009", vol_ccy_24h="50000")      # 100M
    fake_okx.add_pair("SOL", "100", "-0.0002", vol_ccy_24h="500000")     # 50M, negative rate
    fake_okx.add_pair("DOGE", "0.1", "0.0020", vol_ccy_24h="10000000")   # 1M, illiquid
    fake_okx.add_pair("XRP", "0.5", "0.0001", vol_ccy_24h="60000000")    # 30M, below min rate
    fake_okx.add_pair("BTC", "40000", "0.0030", vol_ccy_24h="5000", quote="USD")
    return fake_okx


@pytest.mark.asyncio
async def test_scan_filters_and_sorts_by_rate(market, scanner_config):
    scanner = MarketScanner(market, scanner_config)

    candidates = await scanner.scan(Decimal("10000000"), Decimal("0.0003"))

    assert [c.inst_id for c in candidates] == ["ETH-USDT-SWAP", "BTC-USDT-SWAP"]
    assert candidates[0].funding_rate == Decimal("0.0009")
    assert candidates[0].turnover_24h == Decimal("100000000")


@pytest.mark.asyncio
async def test_scan_never_returns_non_positive_rates_even_with_zero_threshold(market, scanner_config):
    scanner = MarketScanner(market, scanner_config)

    candidates = await scanner.scan(Decimal("0"), Decimal("0"))

    assert "SOL-USDT-SWAP" not in [c.inst_id for c in candidates]
    assert all(c.funding_rate > 0 for c in candidates)


@pytest.mark.asyncio
async def test_scan_skips_instruments_whose_rate_lookup_fails(market, scanner_config):
    market.fail("get_funding_rate", ExchangeError("50011", "Too many requests"), inst_id="ETH-USDT-SWAP")
    scanner = MarketScanner(market, scanner_config)

    candidates = await scanner.scan(Decimal("10000000"), Decimal("0.0003"))

    assert [c.inst_id for c in candidates] == ["BTC-USDT-SWAP"]


@pytest.mark.asyncio
async def test_scan_only_queries_liquidity_prefix(market):
    scanner = MarketScanner(market, ScannerConfig(prefix_limit=1, rate_batch_size=1))

    candidates = await scanner.scan(Decimal("0"), Decimal("0"))

    # Only the most liquid USDT swap (BTC, 200M) was rated
    assert [c.inst_id for c in candidates] == ["BTC-USDT-SWAP"]


@pytest.mark.asyncio
async def test_scan_stops_after_target_count(market):
    scanner = MarketScanner(market, ScannerConfig(target_count=1, rate_batch_size=1))

    candidates = await scanner.scan(Decimal("0"), Decimal("0.0003"))

    assert len(candidates) == 1


@pytest.mark.asyncio
async def test_scan_top_n(market, scanner_config):
    scanner = MarketScanner(market, scanner_config)
    candidates = await scanner.scan(Decimal("0"), Decimal("0.0003"), top_n=1)
    assert [c.inst_id for c in candidates] == ["DOGE-USDT-SWAP"]


@pytest.mark.asyncio
async def test_watchlist_rates_most_liquid_swaps(market):
    scanner = MarketScanner(market, ScannerConfig(watchlist_size=3))

    watch = await scanner.watchlist()

    assert [t.inst_id for t in watch] == ["BTC-USDT-SWAP", "ETH-USDT-SWAP", "SOL-USDT-SWAP"]
    assert watch[2].funding_rate == Decimal("-0.0002")
