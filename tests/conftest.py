"""
Pytest configuration and shared fixtures.
"""
import os

# Journal writes go to an in-memory SQLite unless a test points elsewhere.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.pop("ALERT_WEBHOOK_URL", None)

import itertools
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from cashcarry.config.config import ExecutionConfig, ScannerConfig
from cashcarry.domain.models import (
    AccountBalance,
    Asset,
    InstType,
    Instrument,
    Order,
    OrderAck,
    OrderSide,
    OrderState,
    OrderType,
    Position,
    TickerSnapshot,
    ZERO,
)
from cashcarry.exceptions import ExchangeError, InstrumentNotFoundError


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture(autouse=True)
def _isolated_state(tmp_path, monkeypatch):
    """Kill switch state and alerts never leak between tests."""
    monkeypatch.setenv("KILL_SWITCH_STATE_PATH", str(tmp_path / "kill_switch_state.json"))
    monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)
    yield


def make_instrument(
    inst_id: str,
    inst_type: InstType,
    *,
    ct_val: str = "1",
    min_sz: str = "1",
    lot_sz: str = "1",
    tick_sz: str = "0.01",
) -> Instrument:
    base, quote = inst_id.split("-")[:2]
    return Instrument(
        inst_id=inst_id,
        inst_type=inst_type,
        base_ccy=base,
        quote_ccy=quote,
        ct_val=Decimal(ct_val),
        min_sz=Decimal(min_sz),
        lot_sz=Decimal(lot_sz),
        tick_sz=Decimal(tick_sz),
        lot_sz_str=lot_sz,
        tick_sz_str=tick_sz,
    )


@dataclass
class _Failure:
    method: str
    exc: BaseException
    inst_id: Optional[str]
    side: Optional[OrderSide]
    remaining: int


class FakeOKX:
    """
    In-memory OKX account with the OKXClient method surface.

    Market orders fill immediately at the ticker's last price unless
    ``next_fill`` (partial or slipped fill) or ``hold_open`` (order stays
    live until cancelled) say otherwise. Spot buys are charged ``fee_rate``
    in the base currency, like OKX. Failures are injected per method with
    ``fail()``.
    """

    def __init__(self):
        self.instruments: Dict[InstType, Dict[str, Instrument]] = {InstType.SPOT: {}, InstType.SWAP: {}}
        self.tickers: Dict[str, TickerSnapshot] = {}
        self.funding: Dict[str, Decimal] = {}
        self.balances: Dict[str, Decimal] = {}
        self.positions: Dict[str, Decimal] = {}
        self.orders: Dict[str, Order] = {}
        self.placed: List[dict] = []
        self.leverage_calls: List[tuple] = []
        self.closed: List[str] = []
        self.cancelled: List[str] = []
        self.fee_rate = Decimal("0.001")
        self.next_fill: Optional[Decimal] = None
        self.hold_open = False
        self.short_fill_override: Optional[Decimal] = None
        self.acct_lv = "2"
        self._failures: List[_Failure] = []
        self._ids = itertools.count(1)

    # -- setup helpers -------------------------------------------------

    def add_pair(
        self,
        base: str,
        price: str,
        funding: Optional[str] = "0.0005",
        *,
        ct_val: str = "1",
        swap_min_sz: str = "1",
        spot_lot_sz: str = "0.0001",
        spot_min_sz: str = "0.001",
        vol_ccy_24h: str = "1000000",
        quote: str = "USDT",
    ) -> str:
        swap_id = f"{base}-{quote}-SWAP"
        spot_id = f"{base}-{quote}"
        self.instruments[InstType.SWAP][swap_id] = make_instrument(
            swap_id, InstType.SWAP, ct_val=ct_val, min_sz=swap_min_sz, lot_sz="1"
        )
        self.instruments[InstType.SPOT][spot_id] = make_instrument(
            spot_id, InstType.SPOT, min_sz=spot_min_sz, lot_sz=spot_lot_sz
        )
        last = Decimal(price)
        vol_ccy = Decimal(vol_ccy_24h)
        self.tickers[swap_id] = TickerSnapshot(
            inst_id=swap_id,
            last=last,
            vol_24h=vol_ccy / Decimal(ct_val),
            vol_ccy_24h=vol_ccy,
            turnover_24h=vol_ccy * last,
        )
        if funding is not None:
            self.funding[swap_id] = Decimal(funding)
        return swap_id

    def fail(self, method: str, exc: BaseException, *, inst_id: str = None, side: OrderSide = None, times: int = 1):
        self._failures.append(_Failure(method, exc, inst_id, side, times))

    def _maybe_fail(self, method: str, inst_id: str = None, side: OrderSide = None) -> None:
        for failure in self._failures:
            if failure.method != method or failure.remaining <= 0:
                continue
            if failure.inst_id is not None and failure.inst_id != inst_id:
                continue
            if failure.side is not None and failure.side != side:
                continue
            failure.remaining -= 1
            raise failure.exc

    def _price(self, inst_id: str) -> Decimal:
        swap_id = inst_id if inst_id.endswith("-SWAP") else f"{inst_id}-SWAP"
        ticker = self.tickers.get(swap_id)
        return ticker.last if ticker else Decimal("1")

    def spot_orders(self, side: OrderSide = None) -> List[dict]:
        return [o for o in self.placed if not o["inst_id"].endswith("-SWAP") and (side is None or o["side"] == side)]

    def swap_orders(self) -> List[dict]:
        return [o for o in self.placed if o["inst_id"].endswith("-SWAP")]

    # -- market data ---------------------------------------------------

    async def get_instruments(self, inst_type: InstType) -> List[Instrument]:
        self._maybe_fail("get_instruments")
        return list(self.instruments[inst_type].values())

    async def get_instrument(self, inst_id: str, inst_type: InstType) -> Instrument:
        instrument = self.instruments[inst_type].get(inst_id)
        if instrument is None:
            raise InstrumentNotFoundError(f"Instrument not found: {inst_id}")
        return instrument

    async def get_tickers(self, inst_type: InstType = InstType.SWAP) -> List[TickerSnapshot]:
        self._maybe_fail("get_tickers")
        return [replace(t) for t in self.tickers.values()]

    async def get_ticker(self, inst_id: str) -> TickerSnapshot:
        self._maybe_fail("get_ticker", inst_id)
        if inst_id not in self.tickers:
            raise InstrumentNotFoundError(f"No ticker for {inst_id}")
        return replace(self.tickers[inst_id])

    async def get_funding_rate(self, inst_id: str) -> Decimal:
        self._maybe_fail("get_funding_rate", inst_id)
        if inst_id not in self.funding:
            raise InstrumentNotFoundError(f"No funding rate for {inst_id}")
        return self.funding[inst_id]

    async def get_latency_ms(self) -> float:
        return 12.0

    # -- account -------------------------------------------------------

    async def check_account_mode(self) -> bool:
        return self.acct_lv != "1"

    async def get_balance(self) -> AccountBalance:
        self._maybe_fail("get_balance")
        assets = {}
        for ccy, amount in self.balances.items():
            price = Decimal("1") if ccy == "USDT" else self._price(f"{ccy}-USDT")
            assets[ccy] = Asset(currency=ccy, balance=amount, available=amount, equity_usd=amount * price)
        total = sum((a.equity_usd for a in assets.values()), ZERO)
        return AccountBalance(total_equity=total, available_equity=total, assets=assets)

    async def get_positions(self, inst_type: InstType = InstType.SWAP) -> List[Position]:
        self._maybe_fail("get_positions")
        return [Position(inst_id=i, pos=p) for i, p in self.positions.items() if p != 0]

    async def get_position(self, inst_id: str) -> Optional[Position]:
        self._maybe_fail("get_position", inst_id)
        pos = self.positions.get(inst_id, ZERO)
        return Position(inst_id=inst_id, pos=pos) if pos != 0 else None

    async def set_leverage(self, inst_id: str, lever: str, mgn_mode: str = "cross") -> bool:
        self._maybe_fail("set_leverage", inst_id)
        self.leverage_calls.append((inst_id, lever, mgn_mode))
        return True

    # -- trading -------------------------------------------------------

    async def place_order(self, inst_id: str, side: OrderSide, sz: str, **kwargs) -> OrderAck:
        self._maybe_fail("place_order", inst_id, side)
        size = Decimal(sz)
        ord_id = str(next(self._ids))
        self.placed.append({"ord_id": ord_id, "inst_id": inst_id, "side": side, "sz": sz, **kwargs})

        if inst_id.endswith("-SWAP"):
            filled = self.short_fill_override if (side == OrderSide.SELL and self.short_fill_override is not None) else size
            delta = -filled if side == OrderSide.SELL else filled
            self.positions[inst_id] = self.positions.get(inst_id, ZERO) + delta
            state, fee, fee_ccy = OrderState.FILLED, ZERO, "USDT"
        else:
            base, quote = inst_id.split("-")
            filled = size
            if side == OrderSide.BUY and self.next_fill is not None:
                filled, self.next_fill = self.next_fill, None
            if side == OrderSide.SELL and size > self.balances.get(base, ZERO):
                raise ExchangeError("1", "Order rejected", "51008", "Insufficient balance")
            price = self._price(inst_id)
            if side == OrderSide.BUY:
                fee, fee_ccy = -(filled * self.fee_rate), base
                self.balances[base] = self.balances.get(base, ZERO) + filled + fee
                self.balances[quote] = self.balances.get(quote, ZERO) - filled * price
            else:
                fee, fee_ccy = -(filled * price * self.fee_rate), quote
                self.balances[base] = self.balances.get(base, ZERO) - filled
                self.balances[quote] = self.balances.get(quote, ZERO) + filled * price + fee
            if side == OrderSide.BUY and self.hold_open:
                state = OrderState.PARTIALLY_FILLED if filled > 0 else OrderState.LIVE
            else:
                state = OrderState.FILLED if filled == size else OrderState.CANCELED

        self.orders[ord_id] = Order(
            ord_id=ord_id,
            inst_id=inst_id,
            side=side,
            ord_type=OrderType.MARKET,
            sz=size,
            state=state,
            acc_fill_sz=filled,
            fill_sz=filled,
            fee=fee,
            fee_ccy=fee_ccy,
        )
        return OrderAck(ord_id=ord_id, cl_ord_id=kwargs.get("cl_ord_id"))

    async def get_order(self, inst_id: str, ord_id: str) -> Order:
        self._maybe_fail("get_order", inst_id)
        if ord_id not in self.orders:
            raise ExchangeError("51603", f"Order does not exist: {ord_id}")
        return replace(self.orders[ord_id])

    async def cancel_order(self, inst_id: str, ord_id: str) -> None:
        self._maybe_fail("cancel_order", inst_id)
        self.cancelled.append(ord_id)
        order = self.orders[ord_id]
        if not order.state.is_terminal:
            self.orders[ord_id] = replace(order, state=OrderState.CANCELED)

    async def close_position(self, inst_id: str, mgn_mode: str = "cross") -> None:
        self._maybe_fail("close_position", inst_id)
        self.closed.append(inst_id)
        self.positions.pop(inst_id, None)

    async def get_orders_pending(self, inst_type: InstType = None) -> List[Order]:
        return [o for o in self.orders.values() if not o.state.is_terminal]

    async def get_orders_history(self, inst_type: InstType = InstType.SWAP, limit: int = 50) -> List[Order]:
        return [o for o in self.orders.values() if o.state.is_terminal][:limit]

    async def close(self) -> None:
        pass


@pytest.fixture
def fake_okx() -> FakeOKX:
    return FakeOKX()


@pytest.fixture
def exec_config() -> ExecutionConfig:
    """Execution settings with no waiting between polls or before verification."""
    return ExecutionConfig(poll_retries=3, poll_interval_seconds=0.0, settle_delay_seconds=0.0)


@pytest.fixture
def scanner_config() -> ScannerConfig:
    return ScannerConfig(prefix_limit=30, target_count=10, rate_batch_size=5)


@pytest.fixture
def events():
    """List-backed event recorder."""
    recorded = []

    def recorder(event_type, inst_id, details, timestamp=None):
        recorded.append((event_type, inst_id, details))

    recorder.events = recorded
    return recorder
