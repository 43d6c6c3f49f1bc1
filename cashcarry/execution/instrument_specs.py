"""
Instrument metadata registry.

Single source of truth for lot size, minimum size and contract value of the
SPOT and SWAP instruments the engine trades. Loaded from the exchange and
cached in memory with a TTL; callers never mutate it.
"""
import time
from typing import Dict, Optional, Tuple

from cashcarry.constants import SWAP_SUFFIX
from cashcarry.data.okx_client import REQUEST_ERRORS
from cashcarry.domain.models import InstType, Instrument
from cashcarry.exceptions import InstrumentNotFoundError
from cashcarry.monitoring.logger import get_logger

logger = get_logger(__name__)

CACHE_TTL_SECONDS = 6 * 3600


def split_swap_inst_id(swap_inst_id: str) -> Tuple[str, str]:
    """
    ``BTC-USDT-SWAP`` -> (``BTC``, ``USDT``).

    Derived from the identifier itself, never from cached metadata.
    """
    if not swap_inst_id.endswith(SWAP_SUFFIX):
        raise ValueError(f"Not a swap instrument id: {swap_inst_id}")
    parts = swap_inst_id[: -len(SWAP_SUFFIX)].split("-")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Malformed swap instrument id: {swap_inst_id}")
    return parts[0], parts[1]


def spot_inst_id_for(swap_inst_id: str) -> str:
    base, quote = split_swap_inst_id(swap_inst_id)
    return f"{base}-{quote}"


def base_ccy_for(swap_inst_id: str) -> str:
    return split_swap_inst_id(swap_inst_id)[0]


class InstrumentRegistry:
    """Caches SPOT and SWAP instrument metadata per type."""

    def __init__(self, client, cache_ttl_seconds: int = CACHE_TTL_SECONDS):
        self._client = client
        self._cache_ttl = cache_ttl_seconds
        self._by_type: Dict[InstType, Dict[str, Instrument]] = {}
        self._loaded_at: Dict[InstType, float] = {}

    def _is_stale(self, inst_type: InstType) -> bool:
        loaded_at = self._loaded_at.get(inst_type, 0)
        if not self._by_type.get(inst_type) or loaded_at == 0:
            return True
        return (time.monotonic() - loaded_at) > self._cache_ttl

    async def refresh(self, inst_type: InstType, force: bool = False) -> None:
        """Reload one instrument type from the exchange when stale."""
        if not force and not self._is_stale(inst_type):
            return
        instruments = await self._client.get_instruments(inst_type)
        self._by_type[inst_type] = {i.inst_id: i for i in instruments}
        self._loaded_at[inst_type] = time.monotonic()
        logger.info("Instrument registry refreshed", inst_type=inst_type.value, count=len(instruments))

    async def get(self, inst_id: str, inst_type: InstType) -> Instrument:
        """
        Look up one instrument, refreshing the type when stale and falling back
        to a single-instrument fetch for listings newer than the cache.
        """
        if self._is_stale(inst_type):
            try:
                await self.refresh(inst_type)
            except REQUEST_ERRORS as e:
                logger.warning("Instrument refresh failed, trying direct lookup", inst_type=inst_type.value, error=str(e))

        cached = self._by_type.get(inst_type, {}).get(inst_id)
        if cached is not None:
            return cached

        instrument = await self._client.get_instrument(inst_id, inst_type)
        if instrument.inst_id != inst_id:
            raise InstrumentNotFoundError(f"Instrument not found: {inst_id}")
        self._by_type.setdefault(inst_type, {})[inst_id] = instrument
        return instrument

    async def get_swap(self, swap_inst_id: str) -> Instrument:
        return await self.get(swap_inst_id, InstType.SWAP)

    async def get_spot(self, spot_inst_id: str) -> Instrument:
        return await self.get(spot_inst_id, InstType.SPOT)

    def cached(self, inst_id: str, inst_type: InstType) -> Optional[Instrument]:
        return self._by_type.get(inst_type, {}).get(inst_id)
