"""
Hedge auditor: classification, corrective orders and idempotence.
"""
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from cashcarry.domain.models import (
    AuditAction,
    AuditClassification,
    HedgeOutcome,
    HedgeResult,
    OrderSide,
    TargetCurrency,
)
from cashcarry.exceptions import ExchangeError
from cashcarry.execution.instrument_specs import InstrumentRegistry
from cashcarry.reconciliation.hedge_auditor import HedgeAuditor

SWAP = "ABC-USDT-SWAP"
SPOT = "ABC-USDT"


@pytest.fixture
def market(fake_okx):
    fake_okx.add_pair("ABC", "100", spot_lot_sz="0.0001", spot_min_sz="0.001")
    fake_okx.balances["USDT"] = Decimal("1000")
    return fake_okx


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.emergency_unwind = AsyncMock(return_value=HedgeResult(SWAP, HedgeOutcome.EMERGENCY_UNWOUND, "unwound"))
    return engine


@pytest.fixture
def auditor(market, engine, exec_config, events):
    return HedgeAuditor(market, InstrumentRegistry(market), engine, exec_config, events)


def _hold(market, spot: str, contracts: str):
    market.balances["ABC"] = Decimal(spot)
    market.positions[SWAP] = -Decimal(contracts)


@pytest.mark.asyncio
async def test_balanced_within_half_lot_is_noop_and_not_journaled(auditor, market, events):
    _hold(market, "4.00004", "4")

    result = await auditor.audit(SWAP)

    assert result.classification == AuditClassification.BALANCED
    assert result.action == AuditAction.NONE
    assert market.placed == []
    assert events.events == []


@pytest.mark.asyncio
async def test_no_short_position_is_not_hedged(auditor, market):
    market.balances["ABC"] = Decimal("2")

    result = await auditor.audit(SWAP)

    assert result.classification == AuditClassification.NOT_HEDGED
    assert market.placed == []


@pytest.mark.asyncio
async def test_excess_spot_worth_whole_contracts_increases_short(auditor, market):
    _hold(market, "6.2", "4")

    result = await auditor.audit(SWAP)

    assert result.action == AuditAction.INCREASE_SHORT
    assert result.action_size == Decimal("2")
    assert result.action_taken
    order = market.swap_orders()[0]
    assert (order["side"], order["sz"], order["td_mode"]) == (OrderSide.SELL, "2", "cross")


@pytest.mark.asyncio
async def test_excess_below_one_contract_sells_spot(auditor, market):
    _hold(market, "4.3", "4")

    result = await auditor.audit(SWAP)

    assert result.classification == AuditClassification.DUSTY
    assert result.action == AuditAction.SELL_SPOT
    order = market.spot_orders()[0]
    assert (order["side"], order["sz"], order["tgt_ccy"]) == (OrderSide.SELL, "0.3000", TargetCurrency.BASE)


@pytest.mark.asyncio
async def test_excess_below_minimum_order_is_reported_as_dust(auditor, market, events):
    _hold(market, "4.0005", "4")

    result = await auditor.audit(SWAP)

    assert result.classification == AuditClassification.DUSTY
    assert result.action == AuditAction.NONE
    assert market.placed == []
    assert events.events[0][0] == "HEDGE_AUDIT"


@pytest.mark.asyncio
async def test_naked_short_buys_fee_inflated_shortfall_rounded_up(auditor, market):
    _hold(market, "3.5", "4")

    result = await auditor.audit(SWAP)

    assert result.classification == AuditClassification.AT_RISK
    assert result.action == AuditAction.BUY_SPOT
    # 0.5 / 0.999 = 0.5005005..., ceil to 0.0001
    assert result.action_size == Decimal("0.5006")
    order = market.spot_orders()[0]
    assert (order["side"], order["sz"]) == (OrderSide.BUY, "0.5006")


@pytest.mark.asyncio
async def test_shortfall_below_minimum_is_known_gap(auditor, market):
    _hold(market, "3.9995", "4")

    result = await auditor.audit(SWAP)

    assert result.classification == AuditClassification.AT_RISK
    assert result.action == AuditAction.NONE
    assert market.placed == []


@pytest.mark.asyncio
async def test_extreme_deviation_delegates_to_emergency_unwind(auditor, market, engine):
    _hold(market, "10", "40")

    result = await auditor.audit(SWAP)

    assert result.action == AuditAction.EMERGENCY_UNWIND
    assert result.action_taken
    engine.emergency_unwind.assert_awaited_once()
    assert market.placed == []


@pytest.mark.asyncio
async def test_report_only_mode_places_nothing(auditor, market, engine):
    _hold(market, "3.5", "4")

    result = await auditor.audit(SWAP, fix=False)

    assert result.action == AuditAction.BUY_SPOT
    assert not result.action_taken
    assert market.placed == []


@pytest.mark.asyncio
async def test_failed_repair_is_reported_not_raised(auditor, market):
    _hold(market, "3.5", "4")
    market.fail("place_order", ExchangeError("1", "Order rejected", "51008", "Insufficient balance"))

    result = await auditor.audit(SWAP)

    assert not result.action_taken
    assert "repair failed" in result.message


@pytest.mark.asyncio
async def test_repairs_converge_and_second_pass_is_noop(auditor, market):
    _hold(market, "6.2", "4")
    market.fee_rate = Decimal("0")

    await auditor.audit(SWAP)   # short 2 more
    await auditor.audit(SWAP)   # sell 0.2 excess
    placed = len(market.placed)
    final = await auditor.audit(SWAP)

    assert final.classification == AuditClassification.BALANCED
    assert len(market.placed) == placed
    assert market.positions[SWAP] == Decimal("-6")
    assert market.balances["ABC"] == Decimal("6.0000")


@pytest.mark.asyncio
async def test_audit_all_covers_only_short_quote_swaps(auditor, market):
    market.add_pair("XYZ", "10")
    _hold(market, "4", "4")
    market.positions["XYZ-USDT-SWAP"] = Decimal("3")  # long, not a hedge

    results = await auditor.audit_all()

    assert [r.inst_id for r in results] == [SWAP]
