import asyncio
import random
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional

import aiohttp
from loguru import logger
from prediction_client.errors import ApiError
from prediction_client.models import HttpResponse, RetryConfig

ShouldRetry = Callable[[HttpResponse], bool]

_DELAY_SECONDS = re.compile(r"[0-9]+")


def should_retry_for(method: str) -> ShouldRetry:
    """GET requests are retried on 429 and any 5xx, everything else on 429 only"""
    if method.upper() == "GET":
        return lambda response: response.status == 429 or response.status >= 500
    return lambda response: response.status == 429


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff with a uniform jitter in [0, config.jitter]"""
    return config.interval * (2**attempt) + random.uniform(0, config.jitter)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait according to a Retry-After value, or None if it can't be parsed"""
    if not value:
        return None
    value = value.strip()

    if _DELAY_SECONDS.fullmatch(value):
        return float(value)

    try:
        date = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if date is None:
        return None
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    return (date - now).total_seconds()


async def with_automatic_retries(
    request: Callable[[], Awaitable[HttpResponse]],
    config: Optional[RetryConfig] = None,
    should_retry: Optional[ShouldRetry] = None,
) -> HttpResponse:
    """Issue a request, retrying it on retryable responses and transport errors.

    Each attempt waits ``interval * 2 ** attempt`` plus jitter, unless the
    server sent a parseable Retry-After header, which is used instead. Once
    ``max_retries`` retries are spent a final attempt is made whose result is
    returned as-is and whose errors propagate.
    """
    config = config or RetryConfig()
    should_retry = should_retry or (lambda response: False)

    attempts = 0
    while attempts < config.max_retries:
        delay = calculate_delay(attempts, config)
        retry_after = None

        try:
            response = await request()
            if response.ok or not should_retry(response):
                return response
            retry_after = response.header("Retry-After")
            logger.warning(
                f"Request to {response.url} returned {response.status}, "
                f"retrying ({attempts + 1}/{config.max_retries})"
            )
        except ApiError as api_error:
            retry_after = api_error.headers.get("retry-after")
            logger.warning(f"Request failed: {api_error}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as transport_error:
            logger.warning(f"Transport error: {transport_error!r}")

        server_delay = parse_retry_after(retry_after)
        if server_delay is not None:
            delay = server_delay

        if delay > 0:
            logger.debug(f"Waiting {delay:.2f}s before retrying")
            await asyncio.sleep(delay)
        attempts += 1

    return await request()
