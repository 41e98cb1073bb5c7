import json
import logging
from enum import Enum

import httpx

from ..config import Settings
from ..errors import (
    ConfigurationError,
    NetworkError,
    PermanentUpstreamError,
    TransientUpstreamError,
    upstream_error_for_status,
)
from .fetcher import ERROR_SNIPPET_BYTES, fetch_bounded, read_bounded, read_snippet
from .media import AUDIO_KINDS, MediaBuffer, MediaKind, SourceRequest
from .resolvers import SourceResolver, accept_kind, normalize_url
from .retry import with_retries
from .sniffer import sniff
from .video_service import is_rate_limit_error

logger = logging.getLogger("media_quiz.services.fallback")

# The resolver answers with a small JSON descriptor
DESCRIPTOR_MAX_BYTES = 64 * 1024


class ChainState(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class FallbackChain:
    """
    Streaming-video resolution with one fallback level.

    Starts in PRIMARY. A rate-limited primary moves the chain to FALLBACK,
    where an external resolver service is asked for a direct download URL
    that is then fetched with the bounded fetcher. Anything that fails in
    FALLBACK is final.

    One instance per request; `state` is per-request bookkeeping.
    """

    label = "FALLBACK"

    def __init__(self, primary: SourceResolver, settings: Settings, client: httpx.AsyncClient):
        self.primary = primary
        self.settings = settings
        self.client = client
        self.state = ChainState.PRIMARY

    async def resolve(self, request: SourceRequest) -> MediaBuffer:
        self.state = ChainState.PRIMARY
        try:
            return await self.primary.resolve(request)
        except TransientUpstreamError as exc:
            if not is_rate_limit_error(exc):
                raise
            logger.warning(f"Primary video resolver rate limited ({exc.reason}), switching to fallback")

        self.state = ChainState.FALLBACK
        if not self.settings.fallback_configured:
            raise ConfigurationError(
                "VIDEO_FALLBACK_NOT_CONFIGURED",
                "Video platform rate limited the request and no fallback resolver is configured",
            )

        video_url = normalize_url(request.url)
        download_url = await self.lookup_download_url(video_url)
        buffer = await fetch_bounded(
            self.client,
            download_url,
            max_bytes=self.settings.max_video_bytes,
            policy=self.settings.retry_policy("FALLBACK"),
            headers={"User-Agent": self.settings.user_agent},
            label=self.label,
        )
        # Sniffed audio only; the declared type is not trusted here.
        kind = sniff(buffer.data) or MediaKind.UNKNOWN
        buffer = MediaBuffer(buffer.data, kind, buffer.declared_content_type, video_url)
        return accept_kind(buffer, AUDIO_KINDS, self.label)

    async def lookup_download_url(self, video_url: str) -> str:
        endpoint = f"{self.settings.video_fallback_url.rstrip('/')}/resolve"
        headers = {"Accept": "application/json"}
        if self.settings.video_fallback_token:
            headers["Authorization"] = f"Bearer {self.settings.video_fallback_token}"

        async def attempt() -> httpx.Response:
            request = self.client.build_request("GET", endpoint, params={"url": video_url}, headers=headers)
            return await self.client.send(request, stream=True)

        async def discard(response: httpx.Response) -> None:
            await response.aclose()

        try:
            response = await with_retries(attempt, self.settings.retry_policy("FALLBACK"), discard=discard,
                                          label="fallback resolve")
        except httpx.TransportError as exc:
            raise NetworkError("FALLBACK_NETWORK_ERROR", "Fallback resolver unreachable", details=str(exc))

        try:
            if not response.is_success:
                raise upstream_error_for_status(
                    response.status_code,
                    f"FALLBACK_RESOLVE_{response.status_code}",
                    details={"status": response.status_code, "body": await read_snippet(response)},
                )
            raw = await read_bounded(response.aiter_bytes(), DESCRIPTOR_MAX_BYTES, "FALLBACK_RESPONSE_TOO_LARGE")
        except httpx.TransportError as exc:
            raise NetworkError("FALLBACK_NETWORK_ERROR", "Fallback resolver reply was interrupted", details=str(exc))
        finally:
            await response.aclose()

        try:
            descriptor = json.loads(raw)
        except ValueError:
            raise PermanentUpstreamError("FALLBACK_BAD_RESPONSE", "Fallback resolver did not return JSON",
                                         details=raw[:ERROR_SNIPPET_BYTES].decode("utf-8", errors="replace"))

        download_url = descriptor.get("download_url") if isinstance(descriptor, dict) else None
        if not download_url:
            raise PermanentUpstreamError("FALLBACK_NO_DOWNLOAD_URL", "Fallback resolver returned no download_url",
                                         details=descriptor)
        logger.info(f"Fallback resolver returned a download URL for {video_url}")
        return normalize_url(download_url)
