"""
Hedge execution engine.

Opens and closes a spot long + perpetual swap short pair as one operation.

Entry is contract-anchored: the number of whole swap contracts affordable
with the one-sided budget fixes the spot target, the spot buy is inflated
for taker fees and rounded up to the lot step, and the short is sized from
the spot quantity actually filled. Any failure after the spot leg filled is
rolled back; a failed rollback is reported as UNHEDGED and never as a plain
failure.
"""
import asyncio
import uuid
from decimal import Decimal
from typing import Optional

from cashcarry.config.config import ExecutionConfig
from cashcarry.data.okx_client import REQUEST_ERRORS
from cashcarry.domain.models import (
    HedgeOutcome,
    HedgeResult,
    Instrument,
    OrderSide,
    TargetCurrency,
    ZERO,
)
from cashcarry.domain.protocols import AlertSender, EventRecorder, _noop_alert, _noop_event_recorder
from cashcarry.execution.instrument_specs import InstrumentRegistry, base_ccy_for, spot_inst_id_for
from cashcarry.execution.order_monitor import FillStatus, OrderMonitor
from cashcarry.execution.precision import ceil_to_step, floor_to_step, to_order_size, whole_contracts
from cashcarry.monitoring.logger import get_logger
from cashcarry.utils.retry import poll_until

logger = get_logger(__name__)

ONE = Decimal("1")


def _client_order_id(prefix: str) -> str:
    # OKX clOrdId: alphanumeric, max 32 chars
    return f"{prefix}{uuid.uuid4().hex[:24]}"


class HedgeEngine:
    """
    Executes hedge entry, exit and emergency unwind.

    Order placement within one operation is strictly sequential: the swap leg
    is never sent before the spot fill is confirmed.
    """

    def __init__(
        self,
        client,
        registry: InstrumentRegistry,
        config: ExecutionConfig,
        *,
        recorder: EventRecorder = _noop_event_recorder,
        alert: AlertSender = _noop_alert,
        monitor: Optional[OrderMonitor] = None,
    ):
        self.client = client
        self.registry = registry
        self.config = config
        self.recorder = recorder
        self.alert = alert
        self.monitor = monitor or OrderMonitor(
            client,
            retries=config.poll_retries,
            interval_seconds=config.poll_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def plan_entry(self, usdt_budget: Decimal, price: Decimal, swap: Instrument, spot: Instrument):
        """
        Returns (max_contracts, target_spot, buy_size).

        buy_size is target / (1 - fee) rounded up to the spot lot step, so the
        net spot received still covers every contract.
        """
        side_budget = usdt_budget * self.config.side_budget_fraction
        max_contracts = whole_contracts(side_budget / price, swap.ct_val)
        target_spot = max_contracts * swap.ct_val
        buy_size = ceil_to_step(target_spot / (ONE - self.config.taker_fee_rate), spot.lot_sz_str)
        return max_contracts, target_spot, buy_size

    def _min_contracts(self, swap: Instrument) -> Decimal:
        return max(ONE, swap.min_sz)

    # ------------------------------------------------------------------
    # Entry
    # ------------------------------------------------------------------

    async def enter_hedge(self, swap_inst_id: str, usdt_budget: Decimal) -> HedgeResult:
        """Open spot long + swap short on ``swap_inst_id`` using up to ``usdt_budget`` USDT."""
        usdt_budget = Decimal(str(usdt_budget))
        log = logger.bind(inst_id=swap_inst_id)

        if usdt_budget <= 0:
            return await self._finish("HEDGE_ENTRY", HedgeResult(
                swap_inst_id, HedgeOutcome.REJECTED, f"Budget must be positive, got {usdt_budget}",
            ))

        # Step 1: spot pair from the identifier itself
        try:
            spot_inst_id = spot_inst_id_for(swap_inst_id)
        except ValueError as e:
            return await self._finish("HEDGE_ENTRY", HedgeResult(swap_inst_id, HedgeOutcome.REJECTED, str(e)))

        # Step 2: price, metadata, 1x leverage
        try:
            swap = await self.registry.get_swap(swap_inst_id)
            spot = await self.registry.get_spot(spot_inst_id)
            ticker = await self.client.get_ticker(swap_inst_id)
            await self.client.set_leverage(swap_inst_id, self.config.leverage, self.config.margin_mode)
        except REQUEST_ERRORS as e:
            log.error("Entry preparation failed", error=str(e))
            return await self._finish("HEDGE_ENTRY", HedgeResult(
                swap_inst_id, HedgeOutcome.FAILED, f"Preparation failed: {e}",
            ))

        price = ticker.last
        if price <= 0:
            return await self._finish("HEDGE_ENTRY", HedgeResult(
                swap_inst_id, HedgeOutcome.REJECTED, f"No valid price for {swap_inst_id}",
            ))

        # Steps 3-6: contract-anchored sizing
        max_contracts, target_spot, buy_size = self.plan_entry(usdt_budget, price, swap, spot)
        log.info(
            "Entry plan",
            budget=str(usdt_budget),
            price=str(price),
            ct_val=str(swap.ct_val),
            max_contracts=str(max_contracts),
            target_spot=str(target_spot),
            buy_size=to_order_size(buy_size),
        )
        if max_contracts < self._min_contracts(swap):
            return await self._finish("HEDGE_ENTRY", HedgeResult(
                swap_inst_id,
                HedgeOutcome.REJECTED,
                f"Insufficient funds: budget {usdt_budget} affords {max_contracts} contracts, "
                f"minimum is {self._min_contracts(swap)}",
            ))
        if buy_size < spot.min_sz:
            return await self._finish("HEDGE_ENTRY", HedgeResult(
                swap_inst_id,
                HedgeOutcome.REJECTED,
                f"Spot size {buy_size} below minimum {spot.min_sz}",
            ))

        # Step 7: spot buy, bounded poll, cumulative fill
        try:
            ack = await self.client.place_order(
                spot_inst_id,
                OrderSide.BUY,
                to_order_size(buy_size),
                td_mode="cash",
                tgt_ccy=TargetCurrency.BASE,
                cl_ord_id=_client_order_id("ccin"),
            )
        except REQUEST_ERRORS as e:
            log.error("Spot buy failed", error=str(e))
            return await self._finish("HEDGE_ENTRY", HedgeResult(
                swap_inst_id, HedgeOutcome.FAILED, f"Spot buy failed: {e}",
            ))

        report = await self.monitor.wait_for_fill(spot_inst_id, ack.ord_id)
        if report.status == FillStatus.UNKNOWN:
            return await self._finish("HEDGE_ENTRY", HedgeResult(
                swap_inst_id,
                HedgeOutcome.UNHEDGED,
                f"Spot order {ack.ord_id} state unknown after cancel; check spot balance manually",
                spot_order_id=ack.ord_id,
            ))

        filled = report.net_filled
        if report.filled <= 0:
            return await self._finish("HEDGE_ENTRY", HedgeResult(
                swap_inst_id,
                HedgeOutcome.FAILED,
                f"Spot order {ack.ord_id} not filled ({report.status.value})",
                spot_order_id=ack.ord_id,
            ))

        # Step 8: contracts from the actual fill
        contracts = whole_contracts(filled, swap.ct_val)
        log.info(
            "Spot leg filled",
            ord_id=ack.ord_id,
            acc_fill_sz=str(report.filled),
            net_fill=str(filled),
            contracts=str(contracts),
        )

        # Step 9: not enough for one contract
        if contracts < self._min_contracts(swap):
            return await self._finish("HEDGE_ENTRY", await self._rollback(
                swap_inst_id, spot, filled, ack.ord_id,
                f"Fill {filled} covers {contracts} contracts, below minimum",
            ))

        # Step 10: swap short
        try:
            swap_ack = await self.client.place_order(
                swap_inst_id,
                OrderSide.SELL,
                to_order_size(contracts),
                td_mode=self.config.margin_mode,
                cl_ord_id=_client_order_id("ccsh"),
            )
        except REQUEST_ERRORS as e:
            log.error("Swap short failed after spot fill", error=str(e))
            return await self._finish("HEDGE_ENTRY", await self._rollback(
                swap_inst_id, spot, filled, ack.ord_id, f"Swap short failed: {e}",
            ))

        # Step 11: verify both legs
        deviation = await self._verify(swap_inst_id, swap, spot)
        if deviation is None:
            # Both legs were placed but neither can be confirmed
            return await self._finish("HEDGE_ENTRY", HedgeResult(
                swap_inst_id,
                HedgeOutcome.UNHEDGED,
                f"Hedge unverified: balance and position reads failed after shorting {contracts} contracts; "
                "audit before resuming",
                spot_filled=filled,
                contracts=contracts,
                spot_order_id=ack.ord_id,
                swap_order_id=swap_ack.ord_id,
            ))
        if deviation > self.config.max_hedge_deviation:
            unwind = await self.emergency_unwind(
                swap_inst_id,
                f"Post-entry deviation {deviation:.4f} exceeds {self.config.max_hedge_deviation}",
                record=False,
            )
            unwind.spot_filled = filled
            unwind.spot_order_id = ack.ord_id
            unwind.swap_order_id = swap_ack.ord_id
            unwind.deviation = deviation
            return await self._finish("HEDGE_ENTRY", unwind)

        # Step 12
        return await self._finish("HEDGE_ENTRY", HedgeResult(
            swap_inst_id,
            HedgeOutcome.SUCCESS,
            f"Hedged {filled} {spot.base_ccy} against {contracts} contracts",
            spot_filled=filled,
            contracts=contracts,
            deviation=deviation,
            spot_order_id=ack.ord_id,
            swap_order_id=swap_ack.ord_id,
        ))

    async def _verify(self, swap_inst_id: str, swap: Instrument, spot: Instrument) -> Optional[Decimal]:
        """Relative deviation between live spot balance and live short, or None if unreadable."""
        if self.config.settle_delay_seconds > 0:
            await asyncio.sleep(self.config.settle_delay_seconds)

        async def read_both():
            return await asyncio.gather(
                self.client.get_balance(),
                self.client.get_position(swap_inst_id),
            )

        reads = await poll_until(
            read_both,
            lambda _: True,
            attempts=self.config.poll_retries,
            interval=self.config.poll_interval_seconds,
            tolerate=REQUEST_ERRORS,
        )
        if not reads.done:
            logger.error("Hedge verification reads failed", inst_id=swap_inst_id, attempts=reads.attempts)
            return None
        balance, position = reads.value

        asset = balance.assets.get(spot.base_ccy)
        spot_balance = asset.balance if asset else ZERO
        hedged = (position.contracts if position else ZERO) * swap.ct_val
        noise_floor = swap.ct_val * self.config.noise_floor_contracts
        deviation = abs(spot_balance - hedged) / spot_balance if spot_balance > noise_floor else ZERO
        logger.info(
            "Hedge verified",
            inst_id=swap_inst_id,
            spot_balance=str(spot_balance),
            hedged=str(hedged),
            deviation=str(deviation),
        )
        return deviation

    async def _rollback(
        self,
        swap_inst_id: str,
        spot: Instrument,
        filled: Decimal,
        spot_order_id: str,
        reason: str,
    ) -> HedgeResult:
        """Sell back the filled spot quantity. A failed sale is UNHEDGED."""
        sell_qty = floor_to_step(filled, spot.lot_sz_str)
        try:
            balance = await self.client.get_balance()
            available = balance.available(spot.base_ccy)
            if available < sell_qty:
                sell_qty = floor_to_step(available, spot.lot_sz_str)
        except REQUEST_ERRORS as e:
            logger.warning("Balance read before rollback failed, selling filled size", inst_id=swap_inst_id, error=str(e))

        logger.warning("Rolling back spot leg", inst_id=swap_inst_id, sell_qty=str(sell_qty), reason=reason)

        if sell_qty <= 0 or sell_qty < spot.min_sz:
            return HedgeResult(
                swap_inst_id,
                HedgeOutcome.ROLLED_BACK,
                f"{reason}; residual {filled} {spot.base_ccy} below minimum size, left as dust",
                spot_filled=filled,
                spot_order_id=spot_order_id,
                residual_spot=filled,
            )

        try:
            await self.client.place_order(
                spot.inst_id,
                OrderSide.SELL,
                to_order_size(sell_qty),
                td_mode="cash",
                tgt_ccy=TargetCurrency.BASE,
                cl_ord_id=_client_order_id("ccrb"),
            )
        except REQUEST_ERRORS as e:
            logger.critical(
                "ROLLBACK FAILED: unhedged spot position",
                inst_id=swap_inst_id,
                spot_qty=str(filled),
                error=str(e),
            )
            return HedgeResult(
                swap_inst_id,
                HedgeOutcome.UNHEDGED,
                f"{reason}; rollback sell of {sell_qty} {spot.base_ccy} failed: {e}. "
                "Unhedged position requires manual intervention",
                spot_filled=filled,
                spot_order_id=spot_order_id,
                residual_spot=filled,
            )

        return HedgeResult(
            swap_inst_id,
            HedgeOutcome.ROLLED_BACK,
            f"{reason}; sold back {sell_qty} {spot.base_ccy}",
            spot_filled=filled,
            spot_order_id=spot_order_id,
            residual_spot=filled - sell_qty,
        )

    # ------------------------------------------------------------------
    # Exit
    # ------------------------------------------------------------------

    async def exit_hedge(
        self,
        swap_inst_id: str,
        contracts: Optional[Decimal] = None,
        sweep_dust: Optional[bool] = None,
    ) -> HedgeResult:
        """
        Close the swap short and sell the matching spot concurrently.

        ``contracts`` defaults to the live position. With ``sweep_dust`` the
        whole available spot balance is sold instead of contracts x ctVal.
        """
        if sweep_dust is None:
            sweep_dust = self.config.sweep_dust_on_exit
        log = logger.bind(inst_id=swap_inst_id)

        try:
            spot_inst_id = spot_inst_id_for(swap_inst_id)
            swap = await self.registry.get_swap(swap_inst_id)
            spot = await self.registry.get_spot(spot_inst_id)
            if contracts is None:
                position = await self.client.get_position(swap_inst_id)
                contracts = position.contracts if position else ZERO
            contracts = abs(Decimal(str(contracts)))
            if sweep_dust:
                balance = await self.client.get_balance()
                sell_qty = floor_to_step(balance.available(spot.base_ccy), spot.lot_sz_str)
            else:
                sell_qty = floor_to_step(contracts * swap.ct_val, spot.lot_sz_str)
        except (ValueError,) + REQUEST_ERRORS as e:
            log.error("Exit preparation failed", error=str(e))
            return await self._finish("HEDGE_EXIT", HedgeResult(
                swap_inst_id, HedgeOutcome.FAILED, f"Exit preparation failed: {e}",
            ))

        sell_spot = sell_qty > 0 and sell_qty >= spot.min_sz
        log.info("Exiting hedge", contracts=str(contracts), sell_qty=str(sell_qty), sweep_dust=sweep_dust)

        async def close_swap():
            if contracts > 0:
                await self.client.close_position(swap_inst_id, self.config.margin_mode)

        async def sell():
            if sell_spot:
                await self.client.place_order(
                    spot_inst_id,
                    OrderSide.SELL,
                    to_order_size(sell_qty),
                    td_mode="cash",
                    tgt_ccy=TargetCurrency.BASE,
                    cl_ord_id=_client_order_id("ccex"),
                )

        swap_res, spot_res = await asyncio.gather(close_swap(), sell(), return_exceptions=True)
        for res in (swap_res, spot_res):
            if isinstance(res, BaseException) and not isinstance(res, REQUEST_ERRORS):
                raise res

        swap_failed = isinstance(swap_res, BaseException)
        spot_failed = isinstance(spot_res, BaseException)

        if not swap_failed and not spot_failed:
            residual = ZERO if sell_spot else sell_qty
            message = f"Closed {contracts} contracts and sold {sell_qty if sell_spot else 0} {spot.base_ccy}"
            result = HedgeResult(
                swap_inst_id, HedgeOutcome.SUCCESS, message,
                spot_filled=sell_qty if sell_spot else ZERO,
                contracts=contracts,
                residual_spot=residual,
            )
        elif swap_failed and not spot_failed and sell_spot:
            log.critical("EXIT LEFT NAKED SHORT", error=str(swap_res))
            result = HedgeResult(
                swap_inst_id,
                HedgeOutcome.UNHEDGED,
                f"Spot sold but swap close failed: {swap_res}. Unhedged short requires manual intervention",
                spot_filled=sell_qty,
                contracts=contracts,
            )
        elif spot_failed and not swap_failed:
            log.error("Exit left residual spot", error=str(spot_res))
            result = HedgeResult(
                swap_inst_id,
                HedgeOutcome.FAILED,
                f"Swap closed but spot sell failed: {spot_res}; {sell_qty} {spot.base_ccy} held unhedged long",
                contracts=contracts,
                residual_spot=sell_qty,
            )
        else:
            errors = "; ".join(str(r) for r in (swap_res, spot_res) if isinstance(r, BaseException))
            result = HedgeResult(
                swap_inst_id, HedgeOutcome.FAILED, f"Exit failed, position unchanged: {errors}",
                contracts=contracts,
            )
        return await self._finish("HEDGE_EXIT", result)

    # ------------------------------------------------------------------
    # Emergency unwind
    # ------------------------------------------------------------------

    async def emergency_unwind(self, swap_inst_id: str, reason: str, record: bool = True) -> HedgeResult:
        """Close the swap position and sell all spot of the base currency."""
        base = base_ccy_for(swap_inst_id)
        logger.critical("EMERGENCY UNWIND", inst_id=swap_inst_id, reason=reason)

        errors = []
        sold = ZERO
        try:
            position = await self.client.get_position(swap_inst_id)
            if position is not None and position.pos != 0:
                await self.client.close_position(swap_inst_id, self.config.margin_mode)
        except REQUEST_ERRORS as e:
            errors.append(f"swap close: {e}")

        try:
            spot = await self.registry.get_spot(spot_inst_id_for(swap_inst_id))
            balance = await self.client.get_balance()
            sold = floor_to_step(balance.available(base), spot.lot_sz_str)
            if sold > 0 and sold >= spot.min_sz:
                await self.client.place_order(
                    spot.inst_id,
                    OrderSide.SELL,
                    to_order_size(sold),
                    td_mode="cash",
                    tgt_ccy=TargetCurrency.BASE,
                    cl_ord_id=_client_order_id("ccem"),
                )
            else:
                sold = ZERO
        except REQUEST_ERRORS as e:
            errors.append(f"spot sell: {e}")

        if errors:
            result = HedgeResult(
                swap_inst_id,
                HedgeOutcome.UNHEDGED,
                f"Emergency unwind incomplete ({reason}): {'; '.join(errors)}. Manual intervention required",
                spot_filled=sold,
            )
        else:
            result = HedgeResult(
                swap_inst_id,
                HedgeOutcome.EMERGENCY_UNWOUND,
                f"Emergency unwind: {reason}; sold {sold} {base}",
                spot_filled=sold,
            )
        if record:
            return await self._finish("HEDGE_EMERGENCY_UNWIND", result)
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def _finish(self, event_type: str, result: HedgeResult) -> HedgeResult:
        """Log, journal and alert on a terminal result."""
        details = result.to_dict()
        if result.outcome == HedgeOutcome.UNHEDGED:
            logger.critical("HEDGE_UNHEDGED", **details)
            event_type = "HEDGE_UNHEDGED"
        elif result.outcome in (HedgeOutcome.SUCCESS, HedgeOutcome.REJECTED):
            logger.info(event_type, **details)
        else:
            logger.warning(event_type, **details)

        self.recorder(event_type, result.inst_id, details)

        if result.outcome == HedgeOutcome.UNHEDGED:
            await self.alert("HEDGE_UNHEDGED", f"{result.inst_id}: {result.message}", urgent=True)
        elif result.outcome == HedgeOutcome.EMERGENCY_UNWOUND:
            await self.alert("HEDGE_EMERGENCY_UNWIND", f"{result.inst_id}: {result.message}", urgent=True)
        elif result.outcome == HedgeOutcome.ROLLED_BACK:
            await self.alert("HEDGE_ROLLBACK", f"{result.inst_id}: {result.message}")
        return result
