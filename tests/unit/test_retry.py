"""
Retry decorator and bounded polling.
"""
from unittest.mock import AsyncMock, patch

import pytest

from cashcarry.exceptions import ExchangeError
from cashcarry.utils.retry import PollStatus, poll_until, retry_on_transient_errors


@pytest.fixture(autouse=True)
def _instant_sleep():
    with patch("cashcarry.utils.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


@pytest.mark.asyncio
async def test_transient_error_is_retried_then_succeeds():
    calls = AsyncMock(side_effect=[ExchangeError("50001", "busy"), ExchangeError("50001", "busy"), "ok"])

    @retry_on_transient_errors(max_retries=3, transient_errors=(ExchangeError,))
    async def fetch():
        return await calls()

    assert await fetch() == "ok"
    assert calls.await_count == 3


@pytest.mark.asyncio
async def test_retries_exhausted_reraises():
    @retry_on_transient_errors(max_retries=2, transient_errors=(ExchangeError,))
    async def fetch():
        raise ExchangeError("50001", "down")

    with pytest.raises(ExchangeError):
        await fetch()


@pytest.mark.asyncio
async def test_non_transient_error_is_not_retried(_instant_sleep):
    calls = AsyncMock(side_effect=ValueError("bad input"))

    @retry_on_transient_errors(max_retries=5)
    async def fetch():
        return await calls()

    with pytest.raises(ValueError):
        await fetch()
    assert calls.await_count == 1
    _instant_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_error_outside_transient_list_is_not_retried():
    calls = AsyncMock(side_effect=KeyError("x"))

    @retry_on_transient_errors(max_retries=5, transient_errors=(ExchangeError,))
    async def fetch():
        return await calls()

    with pytest.raises(KeyError):
        await fetch()
    assert calls.await_count == 1


@pytest.mark.asyncio
async def test_poll_until_done_on_third_attempt(_instant_sleep):
    fetch = AsyncMock(side_effect=["live", "live", "filled"])

    result = await poll_until(fetch, lambda s: s == "filled", attempts=5, interval=0.5)

    assert result.status == PollStatus.DONE
    assert result.done
    assert result.value == "filled"
    assert result.attempts == 3
    assert _instant_sleep.await_count == 2


@pytest.mark.asyncio
async def test_poll_until_timeout_keeps_last_good_value():
    fetch = AsyncMock(side_effect=["live", ExchangeError("50001", "blip"), ExchangeError("50001", "blip")])

    result = await poll_until(fetch, lambda s: s == "filled", attempts=3, interval=0, tolerate=(ExchangeError,))

    assert result.status == PollStatus.TIMEOUT
    assert result.value == "live"
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_poll_until_untolerated_error_propagates():
    fetch = AsyncMock(side_effect=RuntimeError("bug"))

    with pytest.raises(RuntimeError):
        await poll_until(fetch, bool, attempts=3, interval=0, tolerate=(ExchangeError,))


@pytest.mark.asyncio
async def test_should_retry_predicate_selects_codes():
    calls = AsyncMock(side_effect=[ExchangeError("50011", "rate limited"), ExchangeError("51008", "insufficient"), "ok"])

    @retry_on_transient_errors(max_retries=3, should_retry=lambda e: getattr(e, "code", None) == "50011")
    async def fetch():
        return await calls()

    with pytest.raises(ExchangeError) as exc_info:
        await fetch()
    assert exc_info.value.code == "51008"
    assert calls.await_count == 2
