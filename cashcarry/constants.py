"""
System-wide constants for the cash-and-carry engine.

Centralizes endpoint paths and magic numbers used across modules.
"""

# API Configuration
OKX_BASE_URL = "https://www.okx.com"

# API Endpoints (OKX V5)
PUBLIC_TIME_ENDPOINT = "/api/v5/public/time"
PUBLIC_INSTRUMENTS_ENDPOINT = "/api/v5/public/instruments"
PUBLIC_FUNDING_RATE_ENDPOINT = "/api/v5/public/funding-rate"
MARKET_TICKERS_ENDPOINT = "/api/v5/market/tickers"
MARKET_TICKER_ENDPOINT = "/api/v5/market/ticker"
ACCOUNT_BALANCE_ENDPOINT = "/api/v5/account/balance"
ACCOUNT_POSITIONS_ENDPOINT = "/api/v5/account/positions"
ACCOUNT_CONFIG_ENDPOINT = "/api/v5/account/config"
ACCOUNT_SET_LEVERAGE_ENDPOINT = "/api/v5/account/set-leverage"
TRADE_ORDER_ENDPOINT = "/api/v5/trade/order"
TRADE_CANCEL_ORDER_ENDPOINT = "/api/v5/trade/cancel-order"
TRADE_CLOSE_POSITION_ENDPOINT = "/api/v5/trade/close-position"
TRADE_ORDERS_PENDING_ENDPOINT = "/api/v5/trade/orders-pending"
TRADE_ORDERS_HISTORY_ENDPOINT = "/api/v5/trade/orders-history"

# Rate Limiting
PUBLIC_API_CAPACITY = 20
PUBLIC_API_REFILL_RATE = 10.0  # requests per second
PRIVATE_API_CAPACITY = 10
PRIVATE_API_REFILL_RATE = 5.0

# Timeouts and Retries
MAX_RETRY_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 1.0

# Account modes that cannot hold a spot long against a swap short (1 = simple)
SIMPLE_ACCOUNT_MODE = "1"

# Instruments
SWAP_SUFFIX = "-SWAP"
