from datetime import timedelta
from unittest import mock

import pytest

from talos_on_hcloud.exceptions import BootstrapTimeout, CommandError, ReadinessTimeout
from talos_on_hcloud.polling import PollingConfig, poll_until

FAST = PollingConfig(timeout=timedelta(milliseconds=30), interval=timedelta(milliseconds=5))


@pytest.mark.asyncio
async def test_poll_until_returns_first_truthy_value():
    predicate = mock.AsyncMock(side_effect=[None, False, "ready"])

    assert await poll_until(predicate, FAST, "thing") == "ready"
    assert predicate.await_count == 3


@pytest.mark.asyncio
async def test_poll_until_calls_predicate_at_least_once():
    predicate = mock.AsyncMock(return_value=True)
    config = PollingConfig(timeout=timedelta(0), interval=timedelta(seconds=1))

    assert await poll_until(predicate, config, "thing") is True
    predicate.assert_awaited_once()


@pytest.mark.asyncio
async def test_poll_until_timeout_chains_last_swallowed_error():
    error = CommandError("not yet", stderr="connection refused")
    predicate = mock.AsyncMock(side_effect=error)

    with pytest.raises(BootstrapTimeout) as exc_info:
        await poll_until(
            predicate,
            FAST,
            "Kubernetes API",
            retry_on=(CommandError,),
            timeout_error=BootstrapTimeout,
            resource="node-1",
            hint="try again",
        )

    assert exc_info.value.__cause__ is error
    assert exc_info.value.resource == "node-1"
    assert exc_info.value.hint == "try again"
    assert exc_info.value.timeout == FAST.timeout
    assert predicate.await_count > 1


@pytest.mark.asyncio
async def test_poll_until_propagates_unexpected_errors():
    predicate = mock.AsyncMock(side_effect=ValueError("boom"))

    with pytest.raises(ValueError):
        await poll_until(predicate, FAST, "thing", retry_on=(CommandError,))

    predicate.assert_awaited_once()


@pytest.mark.asyncio
async def test_poll_until_times_out_on_falsy_values():
    predicate = mock.AsyncMock(return_value=None)

    with pytest.raises(ReadinessTimeout) as exc_info:
        await poll_until(predicate, FAST, "node `a` to report Ready")

    assert exc_info.value.__cause__ is None
    assert "node `a` to report Ready" in str(exc_info.value)
