"""
Advisory oracle adapter.

Asks a DeepSeek-compatible chat-completions endpoint to review the candidate
queue and re-validates whatever comes back: a suggested pair that is not a
known positive-funding candidate turns the decision into WAIT.
"""
import asyncio
import json
import ssl
from decimal import Decimal
from typing import Dict, List, Optional

import aiohttp
import certifi

from cashcarry.config.config import OracleConfig
from cashcarry.domain.models import OracleAction, OracleRecommendation, TickerSnapshot
from cashcarry.exceptions import OracleError
from cashcarry.monitoring.logger import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a quantitative crypto researcher specialising in arbitrage risk assessment. "
    "Reply with valid JSON only."
)

USER_PROMPT = """Review market data for strategy "{strategy}".
Strategy: cash-and-carry (long spot, short perpetual swap, collect funding).

Hard rules:
1. Funding rate must be > 0.
2. Liquidity must be sufficient (usually > 5M USDT 24h turnover).
3. If turnover looks abnormal (e.g. > 50B USDT), be suspicious and return WAIT.

Candidates:
{candidates}

Return a JSON object with fields:
- recommendedAction: "BUY", "SELL", "HOLD" or "WAIT"
- reasoning: short analysis
- riskScore: integer 0-100
- suggestedPairs: array of instrument ids from the candidates
"""


def format_candidates(candidates: List[TickerSnapshot], limit: int = 10) -> List[Dict[str, str]]:
    """Top positive-rate candidates as rate %, turnover $M and last price."""
    positive = [c for c in candidates if c.funding_rate is not None and c.funding_rate > 0]
    positive.sort(key=lambda c: c.funding_rate, reverse=True)
    return [
        {
            "instId": c.inst_id,
            "fundingRate": f"{c.funding_rate * 100:.4f}%",
            "turnoverUsdt24h": f"${c.turnover_24h / Decimal(1_000_000):.2f}M",
            "lastPrice": str(c.last),
        }
        for c in positive[:limit]
    ]


def parse_recommendation(content: str) -> OracleRecommendation:
    """Parse the model's JSON reply. Raises OracleError on malformed content."""
    try:
        raw = json.loads(content)
    except (TypeError, json.JSONDecodeError) as e:
        raise OracleError(f"Oracle reply is not JSON: {e}")
    if not isinstance(raw, dict):
        raise OracleError("Oracle reply is not a JSON object")

    action_raw = str(raw.get("recommendedAction", "")).upper()
    try:
        action = OracleAction(action_raw)
    except ValueError:
        return OracleRecommendation(
            OracleAction.ERROR,
            f"Oracle returned unknown action {action_raw!r}",
            risk_score=100,
        )

    pairs = raw.get("suggestedPairs") or []
    if not isinstance(pairs, list):
        pairs = [pairs]
    try:
        risk = int(float(raw.get("riskScore", 100)))
    except (TypeError, ValueError):
        risk = 100
    return OracleRecommendation(
        recommended_action=action,
        reasoning=str(raw.get("reasoning", "")),
        risk_score=risk,
        suggested_pairs=[str(p) for p in pairs],
    )


def validate_recommendation(
    recommendation: OracleRecommendation,
    known_rates: Dict[str, Decimal],
) -> OracleRecommendation:
    """
    Reject hallucinated pairs: any suggested pair without a known positive
    funding rate downgrades the whole decision to WAIT with no pairs.
    """
    invalid = [
        pair for pair in recommendation.suggested_pairs
        if known_rates.get(pair) is None or known_rates[pair] <= 0
    ]
    if not invalid:
        return recommendation

    logger.warning(
        "Oracle suggested ineligible pairs, downgrading to WAIT",
        action=recommendation.recommended_action.value,
        invalid=invalid,
    )
    return OracleRecommendation(
        OracleAction.WAIT,
        f"Rejected: oracle suggested pairs with non-positive or unknown funding rate ({', '.join(invalid)})",
        risk_score=100,
        suggested_pairs=[],
    )


class OracleAdapter:

    def __init__(self, config: OracleConfig):
        self.config = config
        self._ssl_context: Optional[ssl.SSLContext] = None

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def _complete(self, prompt: str) -> str:
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        payload = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }
        connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
            async with session.post(url, json=payload, headers=headers) as response:
                if response.status != 200:
                    text = await response.text()
                    raise OracleError(f"Oracle HTTP {response.status}: {text[:200]}")
                data = await response.json(content_type=None)
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise OracleError(f"Unexpected oracle response shape: {e}")

    async def analyze(self, candidates: List[TickerSnapshot], strategy_name: str) -> OracleRecommendation:
        """Advisory decision for ``candidates``. Never raises; failures become ERROR."""
        if not self.config.api_key:
            return OracleRecommendation(OracleAction.ERROR, "Oracle API key not configured", risk_score=0)

        formatted = format_candidates(candidates, self.config.max_candidates)
        if not formatted:
            return OracleRecommendation(
                OracleAction.WAIT,
                "No positive funding-rate candidates; nothing to carry",
                risk_score=0,
            )

        prompt = USER_PROMPT.format(strategy=strategy_name, candidates=json.dumps(formatted))
        try:
            content = await self._complete(prompt)
            recommendation = parse_recommendation(content)
        except (OracleError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error("Oracle analysis failed", error=str(e))
            return OracleRecommendation(OracleAction.ERROR, f"Oracle unavailable: {e}", risk_score=0)

        known_rates = {c.inst_id: c.funding_rate for c in candidates if c.funding_rate is not None}
        recommendation = validate_recommendation(recommendation, known_rates)
        logger.info(
            "Oracle decision",
            action=recommendation.recommended_action.value,
            risk_score=recommendation.risk_score,
            pairs=recommendation.suggested_pairs,
        )
        return recommendation
