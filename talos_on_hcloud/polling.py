import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict

from talos_on_hcloud.exceptions import ReadinessTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollingConfig(BaseModel):
    """Bounded total timeout and fixed interval of a single wait."""

    timeout: timedelta
    interval: timedelta

    model_config = ConfigDict(extra="forbid", frozen=True)


async def poll_until(
    predicate: Callable[[], Awaitable[T]],
    config: PollingConfig,
    description: str,
    *,
    retry_on: Tuple[Type[Exception], ...] = (),
    timeout_error: Type[ReadinessTimeout] = ReadinessTimeout,
    resource: Optional[str] = None,
    hint: Optional[str] = None,
) -> T:
    """Call `predicate` every `config.interval` until it returns truthy value and return that value.

    Exceptions listed in `retry_on` are treated as "not yet" and logged at debug level, any other
    exception propagates immediately. The predicate is always called at least once. When the
    deadline passes without success, `timeout_error` is raised with the last swallowed exception
    chained as its cause.
    """

    logger.debug("Waiting for %s...", description)

    interval_seconds = config.interval.total_seconds()
    deadline = datetime.now() + config.timeout
    last_error: Optional[Exception] = None

    while True:
        try:
            result = await predicate()
        except retry_on as e:
            last_error = e
            logger.debug("%s not yet ready: %s", description, e)
        else:
            if result:
                logger.debug("Waiting for %s done", description)
                return result

        if datetime.now() + config.interval > deadline:
            break

        await asyncio.sleep(interval_seconds)

    logger.debug("Waiting for %s failed with timeout!", description)

    raise timeout_error(description, config.timeout, resource=resource, hint=hint) from last_error
