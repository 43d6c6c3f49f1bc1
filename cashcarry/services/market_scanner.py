"""
Market scanner: rank perpetual swaps by funding rate.

Funding rates are a per-instrument call, so only a bounded prefix of the
most liquid swaps is queried, in small concurrent batches, stopping once
enough qualifying candidates are found.
"""
import asyncio
from decimal import Decimal
from typing import List, Optional

from cashcarry.config.config import ScannerConfig
from cashcarry.constants import SWAP_SUFFIX
from cashcarry.data.okx_client import REQUEST_ERRORS
from cashcarry.domain.models import InstType, TickerSnapshot
from cashcarry.monitoring.logger import get_logger

logger = get_logger(__name__)


class MarketScanner:

    def __init__(self, client, config: ScannerConfig):
        self.client = client
        self.config = config

    async def _liquid_swaps(self, min_turnover: Decimal, quote_ccy: str) -> List[TickerSnapshot]:
        tickers = await self.client.get_tickers(InstType.SWAP)
        suffix = f"-{quote_ccy}{SWAP_SUFFIX}"
        liquid = [
            t for t in tickers
            if t.inst_id.endswith(suffix) and t.turnover_24h > min_turnover
        ]
        liquid.sort(key=lambda t: t.turnover_24h, reverse=True)
        return liquid

    async def _attach_rate(self, ticker: TickerSnapshot) -> Optional[TickerSnapshot]:
        try:
            ticker.funding_rate = await self.client.get_funding_rate(ticker.inst_id)
        except REQUEST_ERRORS as e:
            logger.warning("Funding rate lookup failed", inst_id=ticker.inst_id, error=str(e))
            return None
        return ticker

    async def scan(
        self,
        min_turnover: Decimal,
        min_funding_rate: Decimal,
        top_n: Optional[int] = None,
        quote_ccy: Optional[str] = None,
    ) -> List[TickerSnapshot]:
        """
        Candidate queue: liquid swaps with a positive funding rate at or above
        ``min_funding_rate``, highest rate first.
        """
        quote_ccy = quote_ccy or self.config.quote_ccy
        min_turnover = Decimal(str(min_turnover))
        min_funding_rate = Decimal(str(min_funding_rate))

        liquid = await self._liquid_swaps(min_turnover, quote_ccy)
        prefix = liquid[: self.config.prefix_limit]

        qualifying: List[TickerSnapshot] = []
        queried = 0
        batch_size = self.config.rate_batch_size
        for start in range(0, len(prefix), batch_size):
            batch = prefix[start:start + batch_size]
            rated = await asyncio.gather(*(self._attach_rate(t) for t in batch))
            queried += len(batch)
            for ticker in rated:
                if ticker is None or ticker.funding_rate is None:
                    continue
                if ticker.funding_rate > 0 and ticker.funding_rate >= min_funding_rate:
                    qualifying.append(ticker)
            if len(qualifying) >= self.config.target_count:
                break

        qualifying.sort(key=lambda t: t.funding_rate, reverse=True)
        if top_n is not None:
            qualifying = qualifying[:top_n]

        logger.info(
            "Scan complete",
            liquid=len(liquid),
            queried=queried,
            qualifying=len(qualifying),
            top=[(t.inst_id, str(t.funding_rate)) for t in qualifying[:5]],
        )
        return qualifying

    async def watchlist(self, limit: Optional[int] = None, quote_ccy: Optional[str] = None) -> List[TickerSnapshot]:
        """Most liquid swaps with their current funding rate (display feed)."""
        quote_ccy = quote_ccy or self.config.quote_ccy
        liquid = await self._liquid_swaps(Decimal("0"), quote_ccy)
        top = liquid[: limit or self.config.watchlist_size]
        rated = await asyncio.gather(*(self._attach_rate(t) for t in top))
        return [t for t in rated if t is not None]
