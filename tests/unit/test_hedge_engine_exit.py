"""
Hedge exit and emergency unwind: both legs together, partial failures classified.
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from cashcarry.domain.models import HedgeOutcome, OrderSide
from cashcarry.exceptions import ExchangeError
from cashcarry.execution.hedge_engine import HedgeEngine
from cashcarry.execution.instrument_specs import InstrumentRegistry

SWAP = "ABC-USDT-SWAP"
SPOT = "ABC-USDT"


@pytest.fixture
def hedged(fake_okx):
    fake_okx.add_pair("ABC", "100")
    fake_okx.balances.update({"USDT": Decimal("600"), "ABC": Decimal("4.0003")})
    fake_okx.positions[SWAP] = Decimal("-4")
    return fake_okx


@pytest.fixture
def alert():
    return AsyncMock()


@pytest.fixture
def engine(hedged, exec_config, events, alert):
    return HedgeEngine(hedged, InstrumentRegistry(hedged), exec_config, recorder=events, alert=alert)


@pytest.mark.asyncio
async def test_exit_closes_short_and_sells_matching_spot(engine, hedged, events):
    result = await engine.exit_hedge(SWAP, Decimal("4"))

    assert result.outcome == HedgeOutcome.SUCCESS
    assert hedged.closed == [SWAP]
    sell = hedged.spot_orders(OrderSide.SELL)[0]
    assert sell["sz"] == "4.0000"
    assert hedged.balances["ABC"] == Decimal("0.0003")
    assert events.events[-1][0] == "HEDGE_EXIT"


@pytest.mark.asyncio
async def test_exit_reads_live_position_when_contracts_omitted(engine, hedged):
    result = await engine.exit_hedge(SWAP)

    assert result.outcome == HedgeOutcome.SUCCESS
    assert result.contracts == Decimal("4")


@pytest.mark.asyncio
async def test_exit_with_sweep_sells_whole_available_balance(engine, hedged):
    result = await engine.exit_hedge(SWAP, Decimal("4"), sweep_dust=True)

    assert result.outcome == HedgeOutcome.SUCCESS
    assert hedged.spot_orders(OrderSide.SELL)[0]["sz"] == "4.0003"
    assert hedged.balances["ABC"] == Decimal("0")


@pytest.mark.asyncio
async def test_exit_swap_close_failure_after_spot_sale_is_unhedged(engine, hedged, alert):
    hedged.fail("close_position", ExchangeError("51023", "Position does not exist"))

    result = await engine.exit_hedge(SWAP, Decimal("4"))

    assert result.outcome == HedgeOutcome.UNHEDGED
    assert result.requires_manual_intervention
    alert.assert_awaited_once()
    assert alert.await_args.kwargs["urgent"] is True


@pytest.mark.asyncio
async def test_exit_spot_failure_leaves_residual(engine, hedged):
    hedged.fail("place_order", ExchangeError("1", "Order rejected", "51008", "Insufficient"), inst_id=SPOT)

    result = await engine.exit_hedge(SWAP, Decimal("4"))

    assert result.outcome == HedgeOutcome.FAILED
    assert result.residual_spot == Decimal("4.0000")
    assert hedged.closed == [SWAP]


@pytest.mark.asyncio
async def test_exit_both_legs_failing_is_failed(engine, hedged):
    hedged.fail("close_position", ExchangeError("50001", "Service unavailable"))
    hedged.fail("place_order", ExchangeError("50001", "Service unavailable"), inst_id=SPOT)

    result = await engine.exit_hedge(SWAP, Decimal("4"))

    assert result.outcome == HedgeOutcome.FAILED
    assert "position unchanged" in result.message
    assert hedged.positions[SWAP] == Decimal("-4")


@pytest.mark.asyncio
async def test_exit_propagates_programming_errors(engine, hedged):
    hedged.fail("close_position", RuntimeError("bug"))
    with pytest.raises(RuntimeError):
        await engine.exit_hedge(SWAP, Decimal("4"))


@pytest.mark.asyncio
async def test_emergency_unwind_flattens_both_legs(engine, hedged, events, alert):
    result = await engine.emergency_unwind(SWAP, "deviation 0.7")

    assert result.outcome == HedgeOutcome.EMERGENCY_UNWOUND
    assert SWAP not in hedged.positions
    assert result.spot_filled == Decimal("4.0003")
    assert events.events[-1][0] == "HEDGE_EMERGENCY_UNWIND"
    assert alert.await_args.args[0] == "HEDGE_EMERGENCY_UNWIND"


@pytest.mark.asyncio
async def test_emergency_unwind_incomplete_is_unhedged(engine, hedged, events):
    hedged.fail("close_position", ExchangeError("50001", "Service unavailable"))

    result = await engine.emergency_unwind(SWAP, "deviation 0.7")

    assert result.outcome == HedgeOutcome.UNHEDGED
    # The spot leg was still flattened
    assert hedged.balances["ABC"] == Decimal("0")
    assert events.events[-1][0] == "HEDGE_UNHEDGED"
