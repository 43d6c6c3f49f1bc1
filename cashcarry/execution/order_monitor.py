"""
Order fill monitoring.

Bounded polling of a submitted order until it reaches a terminal state. On
timeout the order is cancelled and re-read, so callers always act on the
exchange's final cumulative fill rather than on an assumption.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from cashcarry.data.okx_client import REQUEST_ERRORS
from cashcarry.domain.models import Order, OrderState, ZERO
from cashcarry.monitoring.logger import get_logger
from cashcarry.utils.retry import poll_until

logger = get_logger(__name__)


class FillStatus(str, Enum):
    FILLED = "filled"
    CANCELED = "canceled"      # terminal without full fill (partial fill possible)
    TIMEOUT = "timeout"        # still open after polling; cancel attempted, state re-read
    UNKNOWN = "unknown"        # order state could not be read at all


@dataclass
class FillReport:
    status: FillStatus
    order: Optional[Order]

    @property
    def filled(self) -> Decimal:
        """Cumulative filled size (authoritative)."""
        return self.order.acc_fill_sz if self.order else ZERO

    @property
    def net_filled(self) -> Decimal:
        """Cumulative fill net of fees charged in the received currency."""
        return self.order.net_fill if self.order else ZERO


class OrderMonitor:
    """Polls one order at a time with a fixed retry budget."""

    def __init__(self, client, retries: int = 10, interval_seconds: float = 0.5):
        self.client = client
        self.retries = retries
        self.interval_seconds = interval_seconds

    async def wait_for_fill(self, inst_id: str, ord_id: str) -> FillReport:
        result = await poll_until(
            lambda: self.client.get_order(inst_id, ord_id),
            lambda order: order.state.is_terminal,
            attempts=self.retries,
            interval=self.interval_seconds,
            tolerate=REQUEST_ERRORS,
        )

        if result.done:
            order = result.value
            status = FillStatus.FILLED if order.state == OrderState.FILLED else FillStatus.CANCELED
            logger.info(
                "Order reached terminal state",
                inst_id=inst_id,
                ord_id=ord_id,
                state=order.state.value,
                acc_fill_sz=str(order.acc_fill_sz),
                attempts=result.attempts,
            )
            return FillReport(status, order)

        logger.warning("Order fill poll timed out, cancelling", inst_id=inst_id, ord_id=ord_id, attempts=result.attempts)
        try:
            await self.client.cancel_order(inst_id, ord_id)
        except REQUEST_ERRORS as e:
            # Already filled or cancelled orders reject the cancel; the re-read decides
            logger.warning("Cancel after timeout failed", inst_id=inst_id, ord_id=ord_id, error=str(e))

        try:
            order = await self.client.get_order(inst_id, ord_id)
        except REQUEST_ERRORS as e:
            logger.error("Order state unreadable after cancel", inst_id=inst_id, ord_id=ord_id, error=str(e))
            return FillReport(FillStatus.UNKNOWN, result.value)

        status = FillStatus.FILLED if order.state == OrderState.FILLED else FillStatus.TIMEOUT
        logger.info(
            "Order re-read after timeout",
            inst_id=inst_id,
            ord_id=ord_id,
            state=order.state.value,
            acc_fill_sz=str(order.acc_fill_sz),
        )
        return FillReport(status, order)
