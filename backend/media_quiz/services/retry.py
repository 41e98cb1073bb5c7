import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

import httpx

logger = logging.getLogger("media_quiz.services.retry")

# Indirection so tests can replace the sleep without touching asyncio itself.
_sleep = asyncio.sleep


@dataclass(frozen=True)
class RetryPolicy:
    tries: int = 3
    base_delay: float = 0.6  # seconds
    max_delay: float = 60.0

    def __post_init__(self):
        if self.tries < 1:
            raise ValueError("tries must be >= 1")


@dataclass
class UpstreamReply:
    """
    Response-shaped wrapper for calls that do not hand back an HTTP response
    (SDK clients). Exposes the same `status_code` / `headers` the orchestrator
    reads from an httpx.Response.
    """
    status_code: int
    value: Any = None
    error: Optional[BaseException] = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


def is_transient(status: int) -> bool:
    return status == 429 or 500 <= status < 600


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds: either delta-seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def backoff_delay(attempt_index: int, policy: RetryPolicy, retry_after: Optional[float] = None) -> float:
    if retry_after is not None:
        return min(retry_after, policy.max_delay)
    jitter = random.random() * 0.25
    return min(policy.base_delay * (2 ** attempt_index) * (1 + jitter), policy.max_delay)


async def with_retries(
    attempt: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    discard: Optional[Callable[[Any], Awaitable[None]]] = None,
    transport_errors: Tuple[Type[BaseException], ...] = (httpx.TransportError,),
    label: str = "request",
) -> Any:
    """
    Run `attempt` up to `policy.tries` times.

    Success (2xx) returns at once. 429 and 5xx are retried after a backoff,
    honouring Retry-After when present. Any other status is a caller defect
    and is returned immediately without sleeping. Transport failures count
    as status 0 and are retried the same way.

    When the budget runs out the last response is returned; if no attempt
    ever produced a response the last transport error is raised.
    """
    last_response = None
    last_error: Optional[BaseException] = None

    for i in range(policy.tries):
        try:
            response = await attempt()
        except transport_errors as exc:
            last_error = exc
            status = 0
            retry_after = None
            logger.warning(f"{label}: attempt {i + 1}/{policy.tries} failed: {exc!r}")
        else:
            if last_response is not None and discard is not None:
                await discard(last_response)
            last_response = response
            status = response.status_code
            if 200 <= status < 300:
                return response
            if not is_transient(status):
                return response
            retry_after = parse_retry_after(response.headers.get("retry-after") or response.headers.get("Retry-After"))
            logger.warning(f"{label}: attempt {i + 1}/{policy.tries} got HTTP {status}")

        if i == policy.tries - 1:
            break
        delay = backoff_delay(i, policy, retry_after)
        logger.info(f"{label}: retrying in {delay:.2f}s")
        await _sleep(delay)

    if last_response is not None:
        return last_response
    if last_error is None:
        raise RuntimeError(f"{label}: no attempt was made (tries={policy.tries})")
    raise last_error
