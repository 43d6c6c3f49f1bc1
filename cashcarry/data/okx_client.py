"""
OKX V5 REST client for spot and perpetual swap markets.

Handles:
- Request signing (HMAC-SHA256, base64) and demo-trading header
- Response envelope checks (code "0", per-item sCode/sMsg)
- Rate limiting (token bucket)
- Retries for idempotent GET calls

Every quantity leaves this module as Decimal and enters it as a string.
"""
import asyncio
import base64
import hashlib
import hmac
import json
import ssl
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp
import certifi

from cashcarry.config.config import ExchangeConfig
from cashcarry.constants import (
    ACCOUNT_BALANCE_ENDPOINT,
    ACCOUNT_CONFIG_ENDPOINT,
    ACCOUNT_POSITIONS_ENDPOINT,
    ACCOUNT_SET_LEVERAGE_ENDPOINT,
    MARKET_TICKER_ENDPOINT,
    MARKET_TICKERS_ENDPOINT,
    MAX_RETRY_ATTEMPTS,
    PRIVATE_API_CAPACITY,
    PRIVATE_API_REFILL_RATE,
    PUBLIC_API_CAPACITY,
    PUBLIC_API_REFILL_RATE,
    PUBLIC_FUNDING_RATE_ENDPOINT,
    PUBLIC_INSTRUMENTS_ENDPOINT,
    PUBLIC_TIME_ENDPOINT,
    RETRY_BACKOFF_SECONDS,
    SIMPLE_ACCOUNT_MODE,
    TRADE_CANCEL_ORDER_ENDPOINT,
    TRADE_CLOSE_POSITION_ENDPOINT,
    TRADE_ORDER_ENDPOINT,
    TRADE_ORDERS_HISTORY_ENDPOINT,
    TRADE_ORDERS_PENDING_ENDPOINT,
)
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
    TargetCurrency,
    TickerSnapshot,
    ZERO,
)
from cashcarry.exceptions import (
    AuthenticationError,
    CashCarryError,
    ConfigurationError,
    ExchangeError,
    InstrumentNotFoundError,
    UpstreamNonJSONError,
)
from cashcarry.monitoring.logger import get_logger
from cashcarry.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)

# OKX codes that mean the credentials themselves were rejected
_AUTH_ERROR_CODES = {"50100", "50101", "50102", "50103", "50104", "50105", "50111", "50113"}

_TRANSIENT = (aiohttp.ClientError, asyncio.TimeoutError, UpstreamNonJSONError)

# System busy, rate limited, request timeout, endpoint busy, system error
_RETRYABLE_CODES = {"50001", "50004", "50011", "50013", "50026"}


def _is_retryable_exchange_error(exc: Exception) -> bool:
    return isinstance(exc, ExchangeError) and not isinstance(exc, AuthenticationError) and exc.code in _RETRYABLE_CODES

# Everything a single request can raise besides programming errors
REQUEST_ERRORS = (CashCarryError, aiohttp.ClientError, asyncio.TimeoutError)


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    """Exchange string to Decimal; empty strings and None become ``default``."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation:
        logger.warning("Unparseable decimal from exchange", value=value)
        return default


def _ms_to_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def derive_turnover(volume: Decimal, last: Decimal) -> Decimal:
    """Quote-currency turnover from a base-unit 24h volume and last price."""
    return volume * last


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""
    capacity: int
    refill_rate: float
    tokens: float
    last_refill: float

    def __init__(self, capacity: int, refill_rate: float):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()

    def consume(self, tokens: int = 1) -> bool:
        """
        Try to consume tokens.

        Returns:
            True if tokens consumed, False if insufficient tokens
        """
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def wait_for_token(self):
        """Wait until a token is available."""
        while not self.consume(1):
            await asyncio.sleep(0.05)


class OKXClient:
    """
    OKX V5 REST client.

    The configuration is owned by the instance; two clients with different
    credentials can coexist in one process.
    """

    def __init__(self, config: ExchangeConfig):
        self.config = config
        self.public_limiter = RateLimiter(PUBLIC_API_CAPACITY, PUBLIC_API_REFILL_RATE)
        self.private_limiter = RateLimiter(PRIVATE_API_CAPACITY, PRIVATE_API_REFILL_RATE)
        self._ssl_context: Optional[ssl.SSLContext] = None
        self._session: Optional[aiohttp.ClientSession] = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
        return self._session

    async def close(self):
        """Cleanup resources."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def _timestamp() -> str:
        """ISO-8601 UTC with milliseconds, e.g. 2020-12-08T09:08:57.715Z."""
        now = datetime.now(timezone.utc)
        return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

    def sign(self, timestamp: str, method: str, request_path: str, body: str = "") -> str:
        """
        OKX signature: base64(HMAC-SHA256(secret, timestamp + METHOD + requestPath + body)).

        ``request_path`` includes the query string for GET requests.
        """
        if not self.config.secret_key:
            raise ConfigurationError("OKX secret key not configured")
        message = f"{timestamp}{method.upper()}{request_path}{body}"
        digest = hmac.new(
            self.config.secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("utf-8")

    def _headers(self, method: str, request_path: str, body: str, private: bool) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.simulated:
            headers["x-simulated-trading"] = "1"
        if not private:
            return headers

        if not self.config.has_credentials:
            raise ConfigurationError("OKX API credentials not configured (key, secret, passphrase)")

        timestamp = self._timestamp()
        headers.update({
            "OK-ACCESS-KEY": self.config.api_key,
            "OK-ACCESS-SIGN": self.sign(timestamp, method, request_path, body),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self.config.passphrase,
        })
        return headers

    async def _send(self, method: str, request_path: str, body: str, headers: Dict[str, str]):
        """Perform the HTTP call. Returns (status, content_type, text)."""
        session = await self._get_session()
        url = f"{self.config.base_url}{request_path}"
        async with session.request(method, url, data=body or None, headers=headers) as response:
            text = await response.text()
            return response.status, response.headers.get("Content-Type", ""), text

    async def request(
        self,
        path: str,
        method: str = "GET",
        body: Optional[Dict[str, Any]] = None,
        *,
        params: Optional[Dict[str, Any]] = None,
        private: bool = True,
    ) -> List[Dict[str, Any]]:
        """
        Send one request and unwrap the OKX envelope.

        Returns:
            The ``data`` array of a ``code == "0"`` response.

        Raises:
            UpstreamNonJSONError: body is not JSON (HTML error page, proxy failure)
            ExchangeError: ``code != "0"``; per-item sCode/sMsg attached when present
            ConfigurationError: private call without credentials
        """
        method = method.upper()
        query = {k: v for k, v in (params or {}).items() if v is not None}
        request_path = f"{path}?{urlencode(query)}" if query else path
        body_str = json.dumps(body, separators=(",", ":")) if body is not None else ""

        limiter = self.private_limiter if private else self.public_limiter
        await limiter.wait_for_token()

        headers = self._headers(method, request_path, body_str, private)
        status, content_type, text = await self._send(method, request_path, body_str, headers)

        if "json" not in (content_type or "").lower():
            logger.error(
                "Non-JSON upstream response",
                path=path,
                status=status,
                content_type=content_type,
                snippet=text[:200],
            )
            raise UpstreamNonJSONError(status, content_type, text[:200])

        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            raise UpstreamNonJSONError(status, content_type, text[:200])

        code = str(payload.get("code", ""))
        data = payload.get("data") or []
        if code != "0":
            sub_code = sub_msg = None
            if data and isinstance(data[0], dict) and str(data[0].get("sCode", "0")) not in ("", "0"):
                sub_code = str(data[0].get("sCode"))
                sub_msg = data[0].get("sMsg", "")
            error_cls = AuthenticationError if code in _AUTH_ERROR_CODES else ExchangeError
            logger.warning(
                "OKX request rejected",
                path=path,
                method=method,
                code=code,
                msg=payload.get("msg", ""),
                s_code=sub_code,
                s_msg=sub_msg,
            )
            raise error_cls(code, payload.get("msg", ""), sub_code, sub_msg)

        return data

    @retry_on_transient_errors(
        max_retries=MAX_RETRY_ATTEMPTS,
        base_delay=RETRY_BACKOFF_SECONDS,
        transient_errors=_TRANSIENT,
        should_retry=_is_retryable_exchange_error,
    )
    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, private: bool = True):
        return await self.request(path, "GET", params=params, private=private)

    async def _post(self, path: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        # Order-affecting POSTs are never retried automatically
        return await self.request(path, "POST", body=body)

    # ------------------------------------------------------------------
    # Public market data
    # ------------------------------------------------------------------

    async def get_server_time(self) -> datetime:
        data = await self._get(PUBLIC_TIME_ENDPOINT, private=False)
        return _ms_to_datetime(data[0]["ts"])

    async def get_latency_ms(self) -> float:
        """Round-trip time of the public time endpoint."""
        started = time.monotonic()
        await self.get_server_time()
        return (time.monotonic() - started) * 1000

    async def get_instruments(self, inst_type: InstType) -> List[Instrument]:
        data = await self._get(PUBLIC_INSTRUMENTS_ENDPOINT, {"instType": inst_type.value}, private=False)
        return [self._parse_instrument(item) for item in data]

    async def get_instrument(self, inst_id: str, inst_type: InstType) -> Instrument:
        data = await self._get(
            PUBLIC_INSTRUMENTS_ENDPOINT,
            {"instType": inst_type.value, "instId": inst_id},
            private=False,
        )
        if not data:
            raise InstrumentNotFoundError(f"Instrument not found: {inst_id}")
        return self._parse_instrument(data[0])

    async def get_tickers(self, inst_type: InstType = InstType.SWAP) -> List[TickerSnapshot]:
        data = await self._get(MARKET_TICKERS_ENDPOINT, {"instType": inst_type.value}, private=False)
        return [self._parse_ticker(item) for item in data]

    async def get_ticker(self, inst_id: str) -> TickerSnapshot:
        data = await self._get(MARKET_TICKER_ENDPOINT, {"instId": inst_id}, private=False)
        if not data:
            raise InstrumentNotFoundError(f"No ticker for {inst_id}")
        return self._parse_ticker(data[0])

    async def get_funding_rate(self, inst_id: str) -> Decimal:
        """Current funding rate of a perpetual swap (per funding period)."""
        data = await self._get(PUBLIC_FUNDING_RATE_ENDPOINT, {"instId": inst_id}, private=False)
        if not data:
            raise InstrumentNotFoundError(f"No funding rate for {inst_id}")
        return to_decimal(data[0].get("fundingRate"))

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_account_config(self) -> Dict[str, Any]:
        data = await self._get(ACCOUNT_CONFIG_ENDPOINT)
        return data[0] if data else {}

    async def check_account_mode(self) -> bool:
        """
        True when the account mode can hold spot and swap together.

        Simple mode (acctLv "1") cannot trade swaps against spot holdings.
        """
        cfg = await self.get_account_config()
        acct_lv = str(cfg.get("acctLv", ""))
        ok = acct_lv != SIMPLE_ACCOUNT_MODE
        if not ok:
            logger.error(
                "Account mode does not support hedging; switch to single-currency margin or higher",
                acct_lv=acct_lv,
            )
        else:
            logger.info("Account mode verified", acct_lv=acct_lv, pos_mode=cfg.get("posMode"))
        return ok

    async def get_balance(self) -> AccountBalance:
        data = await self._get(ACCOUNT_BALANCE_ENDPOINT)
        if not data:
            return AccountBalance(total_equity=ZERO, available_equity=ZERO)
        raw = data[0]
        assets = {}
        for detail in raw.get("details", []):
            asset = Asset(
                currency=detail.get("ccy", ""),
                balance=to_decimal(detail.get("cashBal")),
                available=to_decimal(detail.get("availBal")),
                equity_usd=to_decimal(detail.get("eqUsd")),
            )
            assets[asset.currency] = asset
        total = to_decimal(raw.get("totalEq"))
        if total == ZERO:
            total = sum((a.equity_usd for a in assets.values()), ZERO)
        return AccountBalance(
            total_equity=total,
            available_equity=to_decimal(raw.get("availEq"), default=total),
            assets=assets,
        )

    async def get_positions(self, inst_type: InstType = InstType.SWAP) -> List[Position]:
        data = await self._get(ACCOUNT_POSITIONS_ENDPOINT, {"instType": inst_type.value})
        positions = [self._parse_position(item) for item in data]
        return [p for p in positions if p.pos != ZERO]

    async def get_position(self, inst_id: str) -> Optional[Position]:
        data = await self._get(ACCOUNT_POSITIONS_ENDPOINT, {"instId": inst_id})
        for item in data:
            position = self._parse_position(item)
            if position.pos != ZERO:
                return position
        return None

    async def set_leverage(self, inst_id: str, lever: str, mgn_mode: str = "cross") -> bool:
        """
        Set swap leverage. Rejections are logged, not raised: the leverage is
        often already set, and entry continues either way.
        """
        try:
            await self._post(
                ACCOUNT_SET_LEVERAGE_ENDPOINT,
                {"instId": inst_id, "lever": str(lever), "mgnMode": mgn_mode},
            )
        except ExchangeError as e:
            logger.warning("Set leverage rejected", inst_id=inst_id, lever=lever, error=str(e))
            return False
        logger.info("Leverage set", inst_id=inst_id, lever=lever, mgn_mode=mgn_mode)
        return True

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    async def place_order(
        self,
        inst_id: str,
        side: OrderSide,
        sz: str,
        *,
        ord_type: OrderType = OrderType.MARKET,
        td_mode: str = "cash",
        tgt_ccy: Optional[TargetCurrency] = None,
        px: Optional[str] = None,
        cl_ord_id: Optional[str] = None,
        reduce_only: bool = False,
    ) -> OrderAck:
        """
        Place an order. ``sz`` is already formatted to the instrument step.

        Spot market orders may pass ``tgt_ccy`` to size in base or quote units.
        """
        body: Dict[str, Any] = {
            "instId": inst_id,
            "tdMode": td_mode,
            "side": side.value,
            "ordType": ord_type.value,
            "sz": sz,
        }
        if tgt_ccy is not None:
            body["tgtCcy"] = tgt_ccy.value
        if px is not None:
            body["px"] = px
        if cl_ord_id:
            body["clOrdId"] = cl_ord_id
        if reduce_only:
            body["reduceOnly"] = True

        logger.info("Placing order", inst_id=inst_id, side=side.value, sz=sz, td_mode=td_mode, tgt_ccy=body.get("tgtCcy"))
        data = await self._post(TRADE_ORDER_ENDPOINT, body)
        item = data[0] if data else {}
        ack = OrderAck(
            ord_id=item.get("ordId", ""),
            cl_ord_id=item.get("clOrdId") or None,
            s_code=str(item.get("sCode", "0")),
            s_msg=item.get("sMsg", ""),
        )
        if ack.s_code != "0" or not ack.ord_id:
            raise ExchangeError("1", "Order rejected", ack.s_code, ack.s_msg)
        logger.info("Order accepted", inst_id=inst_id, ord_id=ack.ord_id)
        return ack

    async def get_order(self, inst_id: str, ord_id: str) -> Order:
        data = await self._get(TRADE_ORDER_ENDPOINT, {"instId": inst_id, "ordId": ord_id})
        if not data:
            raise ExchangeError("51603", f"Order does not exist: {ord_id}")
        return self._parse_order(data[0])

    async def cancel_order(self, inst_id: str, ord_id: str) -> None:
        await self._post(TRADE_CANCEL_ORDER_ENDPOINT, {"instId": inst_id, "ordId": ord_id})
        logger.info("Order cancel requested", inst_id=inst_id, ord_id=ord_id)

    async def close_position(self, inst_id: str, mgn_mode: str = "cross") -> None:
        """Market-close the whole position on ``inst_id``."""
        await self._post(TRADE_CLOSE_POSITION_ENDPOINT, {"instId": inst_id, "mgnMode": mgn_mode})
        logger.info("Position close requested", inst_id=inst_id, mgn_mode=mgn_mode)

    async def get_orders_pending(self, inst_type: Optional[InstType] = None) -> List[Order]:
        params = {"instType": inst_type.value} if inst_type else None
        data = await self._get(TRADE_ORDERS_PENDING_ENDPOINT, params)
        return [self._parse_order(item) for item in data]

    async def get_orders_history(self, inst_type: InstType = InstType.SWAP, limit: int = 50) -> List[Order]:
        data = await self._get(TRADE_ORDERS_HISTORY_ENDPOINT, {"instType": inst_type.value, "limit": str(limit)})
        return [self._parse_order(item) for item in data]

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_instrument(item: Dict[str, Any]) -> Instrument:
        inst_type = InstType(item.get("instType", "SPOT"))
        inst_id = item.get("instId", "")
        if inst_type == InstType.SWAP:
            # Linear swaps report settle/ctValCcy instead of base/quote
            base = item.get("ctValCcy") or inst_id.split("-")[0]
            quote = item.get("settleCcy") or inst_id.split("-")[1]
            ct_val = to_decimal(item.get("ctVal"), default=Decimal("1"))
        else:
            base = item.get("baseCcy") or inst_id.split("-")[0]
            quote = item.get("quoteCcy") or inst_id.split("-")[1]
            ct_val = Decimal("1")
        lot_str = str(item.get("lotSz") or "1")
        tick_str = str(item.get("tickSz") or "0.0001")
        return Instrument(
            inst_id=inst_id,
            inst_type=inst_type,
            base_ccy=base,
            quote_ccy=quote,
            ct_val=ct_val,
            min_sz=to_decimal(item.get("minSz")),
            lot_sz=Decimal(lot_str),
            tick_sz=Decimal(tick_str),
            lot_sz_str=lot_str,
            tick_sz_str=tick_str,
            state=item.get("state", "live"),
        )

    @staticmethod
    def _parse_ticker(item: Dict[str, Any]) -> TickerSnapshot:
        last = to_decimal(item.get("last"))
        vol_ccy = to_decimal(item.get("volCcy24h"))
        return TickerSnapshot(
            inst_id=item.get("instId", ""),
            last=last,
            vol_24h=to_decimal(item.get("vol24h")),
            vol_ccy_24h=vol_ccy,
            turnover_24h=derive_turnover(vol_ccy, last),
            ts=_ms_to_datetime(item.get("ts")),
        )

    @staticmethod
    def _parse_position(item: Dict[str, Any]) -> Position:
        pos = to_decimal(item.get("pos"))
        # Long/short position mode reports unsigned size with posSide
        if item.get("posSide") == "short" and pos > 0:
            pos = -pos
        liq = item.get("liqPx")
        return Position(
            inst_id=item.get("instId", ""),
            pos=pos,
            avg_px=to_decimal(item.get("avgPx")),
            upl=to_decimal(item.get("upl")),
            upl_ratio=to_decimal(item.get("uplRatio")),
            lever=str(item.get("lever") or "1"),
            mgn_mode=item.get("mgnMode", "cross"),
            liq_px=to_decimal(liq) if liq not in (None, "") else None,
            c_time=_ms_to_datetime(item.get("cTime")),
        )

    @staticmethod
    def _parse_order(item: Dict[str, Any]) -> Order:
        px = item.get("px")
        avg_px = item.get("avgPx")
        fill_px = item.get("fillPx")
        return Order(
            ord_id=item.get("ordId", ""),
            inst_id=item.get("instId", ""),
            side=OrderSide(item.get("side", "buy")),
            ord_type=OrderType(item.get("ordType", "market")) if item.get("ordType") in ("market", "limit") else OrderType.MARKET,
            sz=to_decimal(item.get("sz")),
            state=OrderState(item.get("state", "live")),
            acc_fill_sz=to_decimal(item.get("accFillSz")),
            fill_sz=to_decimal(item.get("fillSz")),
            px=to_decimal(px) if px not in (None, "") else None,
            avg_px=to_decimal(avg_px) if avg_px not in (None, "") else None,
            fill_px=to_decimal(fill_px) if fill_px not in (None, "") else None,
            cl_ord_id=item.get("clOrdId") or None,
            tgt_ccy=item.get("tgtCcy") or None,
            fee=to_decimal(item.get("fee")),
            fee_ccy=item.get("feeCcy") or None,
            c_time=_ms_to_datetime(item.get("cTime")),
        )
