"""
Unit tests for instrument identifiers and the metadata registry.
No network calls.
"""
from decimal import Decimal

import pytest

from cashcarry.domain.models import InstType
from cashcarry.exceptions import ExchangeError, InstrumentNotFoundError
from cashcarry.execution.instrument_specs import (
    InstrumentRegistry,
    base_ccy_for,
    spot_inst_id_for,
    split_swap_inst_id,
)


def test_split_swap_inst_id():
    assert split_swap_inst_id("BTC-USDT-SWAP") == ("BTC", "USDT")
    assert spot_inst_id_for("ETH-USDC-SWAP") == "ETH-USDC"
    assert base_ccy_for("1INCH-USDT-SWAP") == "1INCH"


@pytest.mark.parametrize("bad", ["BTC-USDT", "BTC-USDT-FUTURES", "-USDT-SWAP", "BTC-USD-T-SWAP"])
def test_malformed_ids_rejected(bad):
    with pytest.raises(ValueError):
        split_swap_inst_id(bad)


@pytest.mark.asyncio
async def test_registry_loads_each_type_once(fake_okx):
    fake_okx.add_pair("ABC", "10", ct_val="0.1")
    calls = []
    original = fake_okx.get_instruments

    async def counting(inst_type):
        calls.append(inst_type)
        return await original(inst_type)

    fake_okx.get_instruments = counting
    registry = InstrumentRegistry(fake_okx)

    swap = await registry.get_swap("ABC-USDT-SWAP")
    await registry.get_swap("ABC-USDT-SWAP")
    spot = await registry.get_spot("ABC-USDT")

    assert swap.ct_val == Decimal("0.1")
    assert spot.lot_sz == Decimal("0.0001")
    assert calls == [InstType.SWAP, InstType.SPOT]
    assert registry.cached("ABC-USDT-SWAP", InstType.SWAP) is swap


@pytest.mark.asyncio
async def test_new_listing_found_by_direct_lookup(fake_okx):
    fake_okx.add_pair("ABC", "10")
    registry = InstrumentRegistry(fake_okx)
    await registry.refresh(InstType.SWAP)

    fake_okx.add_pair("NEW", "1")
    instrument = await registry.get_swap("NEW-USDT-SWAP")

    assert instrument.inst_id == "NEW-USDT-SWAP"
    assert registry.cached("NEW-USDT-SWAP", InstType.SWAP) is instrument


@pytest.mark.asyncio
async def test_refresh_failure_falls_back_to_direct_lookup(fake_okx):
    fake_okx.add_pair("ABC", "10")
    fake_okx.fail("get_instruments", ExchangeError("50001", "service unavailable"))

    instrument = await InstrumentRegistry(fake_okx).get_swap("ABC-USDT-SWAP")

    assert instrument.inst_id == "ABC-USDT-SWAP"


@pytest.mark.asyncio
async def test_unknown_instrument_raises(fake_okx):
    with pytest.raises(InstrumentNotFoundError):
        await InstrumentRegistry(fake_okx).get_swap("NOPE-USDT-SWAP")
