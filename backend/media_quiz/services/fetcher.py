import logging
from typing import AsyncIterator, Dict, Optional

import httpx

from ..errors import NetworkError, PayloadTooLarge, upstream_error_for_status
from .media import MediaBuffer
from .retry import RetryPolicy, with_retries
from .sniffer import resolve_kind

logger = logging.getLogger("media_quiz.services.fetcher")

# Cap on how much of an error body is kept for diagnostics
ERROR_SNIPPET_BYTES = 500


async def read_bounded(chunks: AsyncIterator[bytes], max_bytes: int, reason: str) -> bytes:
    """
    Drain `chunks` into memory, failing the moment the running total passes
    `max_bytes`. The caller owns the producer and must close it on failure.
    """
    buf = bytearray()
    async for chunk in chunks:
        if not chunk:
            continue
        if len(buf) + len(chunk) > max_bytes:
            raise PayloadTooLarge(
                reason,
                f"Source exceeds the {max_bytes} byte limit",
                details={"limit_bytes": max_bytes, "received_bytes": len(buf) + len(chunk)},
            )
        buf.extend(chunk)
    return bytes(buf)


async def read_snippet(response: httpx.Response, limit: int = ERROR_SNIPPET_BYTES) -> str:
    """
    Up to `limit` bytes of a body as text, for error details. Stops pulling
    from the stream as soon as it has them.
    """
    buf = bytearray()
    async for chunk in response.aiter_bytes():
        buf.extend(chunk[:limit - len(buf)])
        if len(buf) >= limit:
            break
    return bytes(buf).decode("utf-8", errors="replace")


def _declared_length(response: httpx.Response) -> Optional[int]:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


async def fetch_bounded(
    client: httpx.AsyncClient,
    url: str,
    *,
    max_bytes: int,
    policy: RetryPolicy,
    headers: Optional[Dict[str, str]] = None,
    label: str = "DIRECT",
) -> MediaBuffer:
    """
    GET `url` with retries and a hard byte ceiling.

    The body is streamed; once more than `max_bytes` have arrived the
    response is closed, which tears down the underlying connection, and
    PayloadTooLarge is raised. The returned buffer carries a kind resolved
    from its bytes (server content-type only as fallback); acceptance of
    that kind is left to the caller.
    """

    async def attempt() -> httpx.Response:
        request = client.build_request("GET", url, headers=headers)
        return await client.send(request, stream=True, follow_redirects=True)

    async def discard(response: httpx.Response) -> None:
        await response.aclose()

    try:
        response = await with_retries(attempt, policy, discard=discard, label=f"{label} fetch")
    except httpx.TransportError as exc:
        raise NetworkError(f"{label}_NETWORK_ERROR", f"Network failure fetching {url}", details=str(exc))

    try:
        if not response.is_success:
            body = await read_snippet(response)
            raise upstream_error_for_status(
                response.status_code,
                f"{label}_FETCH_{response.status_code}",
                details={"status": response.status_code, "body": body},
            )

        declared = _declared_length(response)
        if declared is not None and declared > max_bytes:
            raise PayloadTooLarge(
                f"{label}_TOO_LARGE",
                f"Source declares {declared} bytes, limit is {max_bytes}",
                details={"limit_bytes": max_bytes, "declared_bytes": declared},
            )

        data = await read_bounded(response.aiter_bytes(), max_bytes, f"{label}_TOO_LARGE")
    except httpx.TransportError as exc:
        raise NetworkError(f"{label}_NETWORK_ERROR", f"Transfer from {url} was interrupted", details=str(exc))
    finally:
        await response.aclose()

    content_type = response.headers.get("content-type")
    kind = resolve_kind(data, content_type, str(response.url))
    logger.info(f"{label} fetch: {len(data)} bytes from {url}, server type {content_type!r}, resolved {kind.value}")
    return MediaBuffer(data=data, kind=kind, declared_content_type=content_type, source=url)
