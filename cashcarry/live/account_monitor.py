"""
Read-only account poller.

Refreshes balance, open swap positions and the liquidity watchlist on its own
interval and keeps the most recent snapshot for the status endpoint. It never
places orders, so it runs beside the scheduler without coordination.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from cashcarry.data.okx_client import REQUEST_ERRORS
from cashcarry.domain.models import AccountBalance, InstType, Position, TickerSnapshot, ZERO
from cashcarry.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class AccountSnapshot:
    taken_at: datetime
    total_equity: Decimal = ZERO
    balance: Optional[AccountBalance] = None
    positions: List[Position] = field(default_factory=list)
    watchlist: List[TickerSnapshot] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        assets = {}
        if self.balance:
            assets = {
                ccy: {"balance": str(a.balance), "available": str(a.available), "equity_usd": str(a.equity_usd)}
                for ccy, a in self.balance.assets.items()
            }
        return {
            "taken_at": self.taken_at.isoformat(),
            "total_equity": str(self.total_equity),
            "assets": assets,
            "positions": [
                {"inst_id": p.inst_id, "pos": str(p.pos), "avg_px": str(p.avg_px), "upl": str(p.upl)}
                for p in self.positions
            ],
            "watchlist": [
                {
                    "inst_id": t.inst_id,
                    "last": str(t.last),
                    "turnover_24h": str(t.turnover_24h),
                    "funding_rate": str(t.funding_rate) if t.funding_rate is not None else None,
                }
                for t in self.watchlist
            ],
            "errors": self.errors,
        }


class AccountMonitor:
    """Keeps the latest AccountSnapshot fresh."""

    def __init__(self, client, scanner, interval_seconds: float = 30.0):
        self.client = client
        self.scanner = scanner
        self.interval_seconds = interval_seconds
        self.latest: Optional[AccountSnapshot] = None

    async def refresh(self) -> AccountSnapshot:
        """Read balance, positions and watchlist concurrently; partial reads are kept."""
        balance, positions, watchlist = await asyncio.gather(
            self.client.get_balance(),
            self.client.get_positions(InstType.SWAP),
            self.scanner.watchlist(),
            return_exceptions=True,
        )
        snapshot = AccountSnapshot(taken_at=datetime.now(timezone.utc))
        for name, value in (("balance", balance), ("positions", positions), ("watchlist", watchlist)):
            if isinstance(value, BaseException):
                if not isinstance(value, REQUEST_ERRORS):
                    raise value
                snapshot.errors.append(f"{name}: {value}")
                logger.warning("Account monitor read failed", source=name, error=str(value))

        if not isinstance(balance, BaseException):
            snapshot.balance = balance
            # Sum of per-asset USD equity; the account-level figure lags on demo accounts
            snapshot.total_equity = sum((a.equity_usd for a in balance.assets.values()), ZERO)
        if not isinstance(positions, BaseException):
            snapshot.positions = positions
        if not isinstance(watchlist, BaseException):
            snapshot.watchlist = watchlist

        self.latest = snapshot
        logger.debug(
            "Account snapshot",
            total_equity=str(snapshot.total_equity),
            positions=len(snapshot.positions),
            watchlist=len(snapshot.watchlist),
        )
        return snapshot

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info("Account monitor started", interval_seconds=self.interval_seconds)
        while not stop_event.is_set():
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Keep the last good snapshot; the next tick retries
                logger.error("Account monitor refresh failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Account monitor stopped")
