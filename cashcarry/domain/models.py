"""
Domain models for the cash-and-carry engine.

All quantities are Decimal; conversion from exchange strings happens in the
gateway client. All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


ZERO = Decimal("0")


class InstType(str, Enum):
    SPOT = "SPOT"
    SWAP = "SWAP"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"


class TargetCurrency(str, Enum):
    """How a spot market order size is denominated."""
    BASE = "base_ccy"
    QUOTE = "quote_ccy"


class OrderState(str, Enum):
    """OKX order lifecycle states."""
    LIVE = "live"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELED = "canceled"
    MMP_CANCELED = "mmp_canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderState.FILLED, OrderState.CANCELED, OrderState.MMP_CANCELED)


@dataclass(frozen=True)
class Instrument:
    """
    Instrument metadata. Read-only once loaded.

    ``ct_val`` is the base-currency amount per swap contract (1 for spot).
    ``lot_sz`` and ``tick_sz`` keep their exchange string form too, since
    rounding precision is taken from the step string.
    """
    inst_id: str
    inst_type: InstType
    base_ccy: str
    quote_ccy: str
    ct_val: Decimal
    min_sz: Decimal
    lot_sz: Decimal
    tick_sz: Decimal
    lot_sz_str: str
    tick_sz_str: str
    state: str = "live"

    def __post_init__(self):
        if self.lot_sz <= 0:
            raise ValueError(f"Invalid lot size for {self.inst_id}: {self.lot_sz}")
        if self.ct_val <= 0:
            raise ValueError(f"Invalid contract value for {self.inst_id}: {self.ct_val}")

    def to_dict(self) -> Dict[str, str]:
        return {
            "inst_id": self.inst_id,
            "inst_type": self.inst_type.value,
            "base_ccy": self.base_ccy,
            "quote_ccy": self.quote_ccy,
            "ct_val": str(self.ct_val),
            "min_sz": str(self.min_sz),
            "lot_sz": self.lot_sz_str,
            "tick_sz": self.tick_sz_str,
            "state": self.state,
        }


@dataclass
class TickerSnapshot:
    """Ticker with derived quote turnover; funding_rate is attached by the scanner."""
    inst_id: str
    last: Decimal
    vol_24h: Decimal
    vol_ccy_24h: Decimal
    turnover_24h: Decimal
    funding_rate: Optional[Decimal] = None
    ts: Optional[datetime] = None


@dataclass
class Position:
    """A swap position. ``pos`` is signed: negative means short."""
    inst_id: str
    pos: Decimal
    avg_px: Decimal = ZERO
    upl: Decimal = ZERO
    upl_ratio: Decimal = ZERO
    lever: str = "1"
    mgn_mode: str = "cross"
    liq_px: Optional[Decimal] = None
    c_time: Optional[datetime] = None

    @property
    def is_short(self) -> bool:
        return self.pos < 0

    @property
    def contracts(self) -> Decimal:
        return abs(self.pos)


@dataclass
class Asset:
    currency: str
    balance: Decimal
    available: Decimal
    equity_usd: Decimal = ZERO


@dataclass
class AccountBalance:
    total_equity: Decimal
    available_equity: Decimal
    assets: Dict[str, Asset] = field(default_factory=dict)

    def available(self, currency: str) -> Decimal:
        asset = self.assets.get(currency)
        return asset.available if asset else ZERO


@dataclass
class Order:
    """
    Exchange order view.

    ``acc_fill_sz`` is the cumulative filled size and is authoritative.
    ``fill_sz`` is only the size of the most recent fill event.
    """
    ord_id: str
    inst_id: str
    side: OrderSide
    ord_type: OrderType
    sz: Decimal
    state: OrderState
    acc_fill_sz: Decimal = ZERO
    fill_sz: Decimal = ZERO
    px: Optional[Decimal] = None
    avg_px: Optional[Decimal] = None
    fill_px: Optional[Decimal] = None
    cl_ord_id: Optional[str] = None
    tgt_ccy: Optional[str] = None
    fee: Decimal = ZERO
    fee_ccy: Optional[str] = None
    c_time: Optional[datetime] = None

    @property
    def net_fill(self) -> Decimal:
        """Cumulative fill less any fee charged in the filled currency (spot buys)."""
        if self.side == OrderSide.BUY and self.fee_ccy and self.inst_id.startswith(f"{self.fee_ccy}-"):
            return max(ZERO, self.acc_fill_sz - abs(self.fee))
        return self.acc_fill_sz


@dataclass(frozen=True)
class OrderAck:
    """Acknowledgement returned by order placement."""
    ord_id: str
    cl_ord_id: Optional[str] = None
    s_code: str = "0"
    s_msg: str = ""


class HedgeOutcome(str, Enum):
    """Terminal outcome of a hedge operation."""
    SUCCESS = "success"
    REJECTED = "rejected"                    # validation failed, nothing placed
    FAILED = "failed"                        # placement failed or nothing filled
    ROLLED_BACK = "rolled_back"              # short failed, spot sold back
    EMERGENCY_UNWOUND = "emergency_unwound"  # deviation too large, both legs closed
    UNHEDGED = "unhedged"                    # exposed leg left, manual intervention


@dataclass
class HedgeResult:
    inst_id: str
    outcome: HedgeOutcome
    message: str = ""
    spot_filled: Decimal = ZERO
    contracts: Decimal = ZERO
    deviation: Optional[Decimal] = None
    spot_order_id: Optional[str] = None
    swap_order_id: Optional[str] = None
    residual_spot: Decimal = ZERO
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.outcome == HedgeOutcome.SUCCESS

    @property
    def requires_manual_intervention(self) -> bool:
        return self.outcome == HedgeOutcome.UNHEDGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inst_id": self.inst_id,
            "outcome": self.outcome.value,
            "message": self.message,
            "spot_filled": str(self.spot_filled),
            "contracts": str(self.contracts),
            "deviation": str(self.deviation) if self.deviation is not None else None,
            "spot_order_id": self.spot_order_id,
            "swap_order_id": self.swap_order_id,
            "residual_spot": str(self.residual_spot),
            "requires_manual_intervention": self.requires_manual_intervention,
            "timestamp": self.timestamp.isoformat(),
        }


class AuditClassification(str, Enum):
    BALANCED = "balanced"
    DUSTY = "dusty"
    AT_RISK = "at_risk"
    NOT_HEDGED = "not_hedged"


class AuditAction(str, Enum):
    NONE = "none"
    INCREASE_SHORT = "increase_short"
    SELL_SPOT = "sell_spot"
    BUY_SPOT = "buy_spot"
    EMERGENCY_UNWIND = "emergency_unwind"


@dataclass
class HedgeAuditResult:
    inst_id: str
    spot_balance: Decimal
    contracts: Decimal
    hedged_amount: Decimal
    delta: Decimal
    classification: AuditClassification
    action: AuditAction = AuditAction.NONE
    action_size: Decimal = ZERO
    action_taken: bool = False
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inst_id": self.inst_id,
            "spot_balance": str(self.spot_balance),
            "contracts": str(self.contracts),
            "hedged_amount": str(self.hedged_amount),
            "delta": str(self.delta),
            "classification": self.classification.value,
            "action": self.action.value,
            "action_size": str(self.action_size),
            "action_taken": self.action_taken,
            "message": self.message,
        }


class OracleAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    WAIT = "WAIT"
    ERROR = "ERROR"

    @property
    def allows_entry(self) -> bool:
        return self in (OracleAction.BUY, OracleAction.HOLD)


@dataclass
class OracleRecommendation:
    recommended_action: OracleAction
    reasoning: str
    risk_score: int = 100
    suggested_pairs: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.risk_score = max(0, min(100, int(self.risk_score)))


@dataclass
class StrategyState:
    """Runtime bookkeeping for one strategy (not persisted)."""
    strategy_id: str
    last_run: Optional[datetime] = None
    cycles: int = 0
    last_error: Optional[str] = None
