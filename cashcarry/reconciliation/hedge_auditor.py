"""
Hedge auditor / rebalancer.

Compares the live spot balance of a base currency with the live swap short
(|contracts| x ctVal) and repairs the gap:

    delta = spot - hedged

    |delta| <= lot/2         balanced, nothing to do
    delta > 0 (excess spot)  short more whole contracts, else sell the excess,
                             else report as dust
    delta < 0 (naked short)  buy the shortfall (fee-inflated, rounded up),
                             else report the gap as at risk

Running it twice on a balanced pair is a no-op.
"""
from decimal import Decimal
from typing import List

from cashcarry.config.config import ExecutionConfig
from cashcarry.constants import SWAP_SUFFIX
from cashcarry.data.okx_client import REQUEST_ERRORS
from cashcarry.domain.models import (
    AuditAction,
    AuditClassification,
    HedgeAuditResult,
    OrderSide,
    TargetCurrency,
    ZERO,
)
from cashcarry.domain.protocols import EventRecorder, _noop_event_recorder
from cashcarry.execution.instrument_specs import spot_inst_id_for
from cashcarry.execution.precision import ceil_to_step, floor_to_step, to_order_size, whole_contracts
from cashcarry.monitoring.logger import get_logger

logger = get_logger(__name__)

ONE = Decimal("1")
TWO = Decimal("2")


class HedgeAuditor:

    def __init__(
        self,
        client,
        registry,
        engine,
        config: ExecutionConfig,
        recorder: EventRecorder = _noop_event_recorder,
    ):
        self.client = client
        self.registry = registry
        self.engine = engine
        self.config = config
        self.recorder = recorder

    async def audit(self, swap_inst_id: str, *, fix: bool = True) -> HedgeAuditResult:
        """Classify the hedge on ``swap_inst_id`` and, with ``fix``, repair it."""
        spot_inst_id = spot_inst_id_for(swap_inst_id)
        swap = await self.registry.get_swap(swap_inst_id)
        spot = await self.registry.get_spot(spot_inst_id)
        position = await self.client.get_position(swap_inst_id)
        balance = await self.client.get_balance()

        asset = balance.assets.get(spot.base_ccy)
        spot_balance = asset.balance if asset else ZERO
        available = asset.available if asset else ZERO
        contracts = position.contracts if position and position.is_short else ZERO
        hedged = contracts * swap.ct_val
        delta = spot_balance - hedged

        def result(classification, action=AuditAction.NONE, size=ZERO, message=""):
            return HedgeAuditResult(
                inst_id=swap_inst_id,
                spot_balance=spot_balance,
                contracts=contracts,
                hedged_amount=hedged,
                delta=delta,
                classification=classification,
                action=action,
                action_size=size,
                message=message,
            )

        if contracts == 0:
            return self._record(result(AuditClassification.NOT_HEDGED, message="No short swap position"))

        if abs(delta) <= spot.lot_sz / TWO:
            return self._record(result(AuditClassification.BALANCED, message="Balanced"))

        # Extreme drift: unwind rather than patch
        reference = max(spot_balance, hedged)
        if (
            reference > swap.ct_val * self.config.noise_floor_contracts
            and abs(delta) / reference > self.config.audit_emergency_deviation
        ):
            audit = result(
                AuditClassification.AT_RISK,
                AuditAction.EMERGENCY_UNWIND,
                message=f"Deviation {abs(delta) / reference:.4f} exceeds {self.config.audit_emergency_deviation}",
            )
            if fix:
                unwind = await self.engine.emergency_unwind(swap_inst_id, audit.message)
                audit.action_taken = True
                audit.message = f"{audit.message}; {unwind.outcome.value}: {unwind.message}"
            return self._record(audit)

        if delta > 0:
            extra_contracts = whole_contracts(delta, swap.ct_val)
            if extra_contracts >= max(ONE, swap.min_sz):
                audit = result(
                    AuditClassification.DUSTY,
                    AuditAction.INCREASE_SHORT,
                    extra_contracts,
                    f"Excess {delta} {spot.base_ccy} covers {extra_contracts} more contracts",
                )
                if fix:
                    await self._act(audit, swap_inst_id, OrderSide.SELL, extra_contracts, td_mode=self.config.margin_mode)
                return self._record(audit)

            sell_qty = floor_to_step(min(delta, available), spot.lot_sz_str)
            if sell_qty > 0 and sell_qty >= spot.min_sz:
                audit = result(
                    AuditClassification.DUSTY,
                    AuditAction.SELL_SPOT,
                    sell_qty,
                    f"Selling excess {sell_qty} {spot.base_ccy}",
                )
                if fix:
                    await self._act(audit, spot_inst_id, OrderSide.SELL, sell_qty, td_mode="cash", tgt_ccy=TargetCurrency.BASE)
                return self._record(audit)

            return self._record(result(
                AuditClassification.DUSTY,
                message=f"Excess {delta} {spot.base_ccy} below minimum size {spot.min_sz}, left as dust",
            ))

        shortfall = -delta
        if shortfall < spot.min_sz:
            return self._record(result(
                AuditClassification.AT_RISK,
                message=f"Shortfall {shortfall} {spot.base_ccy} below minimum size {spot.min_sz}, known unhedged gap",
            ))

        buy_qty = ceil_to_step(shortfall / (ONE - self.config.taker_fee_rate), spot.lot_sz_str)
        audit = result(
            AuditClassification.AT_RISK,
            AuditAction.BUY_SPOT,
            buy_qty,
            f"Naked short: buying {buy_qty} {spot.base_ccy} to cover {shortfall}",
        )
        if fix:
            await self._act(audit, spot_inst_id, OrderSide.BUY, buy_qty, td_mode="cash", tgt_ccy=TargetCurrency.BASE)
        return self._record(audit)

    async def _act(self, audit: HedgeAuditResult, inst_id: str, side: OrderSide, size: Decimal, **order_kwargs) -> None:
        try:
            await self.client.place_order(inst_id, side, to_order_size(size), **order_kwargs)
        except REQUEST_ERRORS as e:
            logger.error("Audit repair order failed", inst_id=inst_id, action=audit.action.value, error=str(e))
            audit.message = f"{audit.message}; repair failed: {e}"
            return
        audit.action_taken = True

    async def audit_all(self, *, fix: bool = True, quote_ccy: str = "USDT") -> List[HedgeAuditResult]:
        """Audit every short swap position in ``quote_ccy``. One failing pair does not stop the rest."""
        positions = await self.client.get_positions()
        suffix = f"-{quote_ccy}{SWAP_SUFFIX}"
        results = []
        for position in positions:
            if not position.is_short or not position.inst_id.endswith(suffix):
                continue
            try:
                results.append(await self.audit(position.inst_id, fix=fix))
            except REQUEST_ERRORS as e:
                logger.error("Audit failed", inst_id=position.inst_id, error=str(e))
        return results

    def _record(self, audit: HedgeAuditResult) -> HedgeAuditResult:
        details = audit.to_dict()
        if audit.classification == AuditClassification.BALANCED:
            logger.debug("HEDGE_AUDIT", **details)
        elif audit.classification == AuditClassification.AT_RISK:
            logger.warning("HEDGE_AUDIT", **details)
        else:
            logger.info("HEDGE_AUDIT", **details)
        if audit.classification != AuditClassification.BALANCED or audit.action_taken:
            self.recorder("HEDGE_AUDIT", audit.inst_id, details)
        return audit
