import asyncio
import logging
import re
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
from urllib.parse import urlsplit

import httpx
import yt_dlp

from ..config import Settings
from ..errors import (
    NetworkError,
    PermanentUpstreamError,
    RateLimitedError,
    TransientUpstreamError,
    UnsupportedContent,
    upstream_error_for_status,
)
from .fetcher import read_bounded
from .media import MediaBuffer, SourceRequest
from .resolvers import normalize_url
from .retry import with_retries
from .sniffer import sniff

logger = logging.getLogger("media_quiz.services.video_service")

VIDEO_HOSTS = {
    "youtube.com",
    "m.youtube.com",
    "music.youtube.com",
    "youtu.be",
    "youtube-nocookie.com",
}

# Renditions delivered through a manifest; we only take progressive files.
MANIFEST_PROTOCOLS = {"m3u8", "m3u8_native", "http_dash_segments", "dash", "f4m", "ism"}

# An HTTP 429 as yt-dlp and most clients word it. Video IDs and URLs may
# contain "429" too, so a bare substring is not enough.
_RATE_LIMIT_MESSAGE = re.compile(
    r"\bhttp error\s*:?\s*429\b|\bstatus(?:\s*code)?\s*[:=]?\s*429\b|too many requests",
    re.IGNORECASE,
)


def is_streaming_video_url(url: Optional[str]) -> bool:
    if not url:
        return False
    host = (urlsplit(url.strip()).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host in VIDEO_HOSTS


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for a 429 status or a 429 marker buried in an SDK error message."""
    if isinstance(exc, TransientUpstreamError) and exc.upstream_status == 429:
        return True
    for attr in ("status", "status_code", "code"):
        if getattr(exc, attr, None) == 429:
            return True
    return _RATE_LIMIT_MESSAGE.search(str(exc)) is not None


def _ytdlp_extract_info(url: str) -> Dict[str, Any]:
    ydl_opts = {
        "quiet": True,
        "no_warnings": True,
        "skip_download": True,
        "noplaylist": True,
    }
    with yt_dlp.YoutubeDL(ydl_opts) as ydl:
        return ydl.extract_info(url, download=False)


def _bitrate(fmt: Dict[str, Any]) -> float:
    return float(fmt.get("abr") or fmt.get("tbr") or -1)


def audio_renditions(info: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Audio-only progressive renditions, best reported bitrate first.
    Renditions without a bitrate sort last in their original order.
    """
    candidates = []
    for fmt in info.get("formats") or []:
        if not fmt.get("url"):
            continue
        if fmt.get("vcodec") not in (None, "none") or fmt.get("acodec") in (None, "none"):
            continue
        if fmt.get("protocol") in MANIFEST_PROTOCOLS:
            continue
        candidates.append(fmt)
    return sorted(candidates, key=_bitrate, reverse=True)


class StreamingVideoResolver:
    """
    Primary resolver for video platforms: ask yt-dlp for the available
    renditions, pick the best audio-only one and pull it through a bounded
    chunk stream.
    """

    label = "VIDEO"

    def __init__(self, client: httpx.AsyncClient, settings: Settings,
                 extract_info: Optional[Callable[[str], Dict[str, Any]]] = None):
        self.client = client
        self.settings = settings
        self._extract_info = extract_info or _ytdlp_extract_info

    async def renditions(self, url: str) -> List[Dict[str, Any]]:
        try:
            # yt-dlp is blocking
            info = await asyncio.to_thread(self._extract_info, url)
        except (yt_dlp.utils.DownloadError, yt_dlp.utils.ExtractorError) as exc:
            if is_rate_limit_error(exc):
                raise RateLimitedError("VIDEO_RATE_LIMITED", "Video platform is rate limiting us", details=str(exc))
            raise PermanentUpstreamError("VIDEO_EXTRACTION_FAILED", "Could not read video information", details=str(exc))
        return audio_renditions(info or {})

    async def stream_chunks(self, url: str, headers: Dict[str, str]) -> AsyncIterator[bytes]:
        async def attempt() -> httpx.Response:
            request = self.client.build_request("GET", url, headers=headers)
            return await self.client.send(request, stream=True, follow_redirects=True)

        async def discard(response: httpx.Response) -> None:
            await response.aclose()

        response = await with_retries(attempt, self.settings.retry_policy("VIDEO"), discard=discard,
                                      label="VIDEO stream")
        try:
            if not response.is_success:
                raise upstream_error_for_status(
                    response.status_code,
                    f"VIDEO_STREAM_{response.status_code}",
                    details={"status": response.status_code},
                )
            async for chunk in response.aiter_bytes():
                yield chunk
        finally:
            await response.aclose()

    async def resolve(self, request: SourceRequest) -> MediaBuffer:
        url = normalize_url(request.url)
        candidates = await self.renditions(url)
        if not candidates:
            raise UnsupportedContent("VIDEO_NO_AUDIO_STREAM", "No progressive audio-only rendition available")

        best = candidates[0]
        logger.info(f"Video {url}: {len(candidates)} audio renditions, using format "
                    f"{best.get('format_id')} ({best.get('ext')}, abr={best.get('abr')})")

        headers = dict(best.get("http_headers") or {})
        headers.setdefault("User-Agent", self.settings.user_agent)
        try:
            async with aclosing(self.stream_chunks(best["url"], headers)) as chunks:
                data = await read_bounded(chunks, self.settings.max_video_bytes, "VIDEO_TOO_LARGE")
        except httpx.TransportError as exc:
            raise NetworkError("VIDEO_NETWORK_ERROR", "Video download was interrupted", details=str(exc))

        kind = sniff(data)
        if kind is None or not kind.is_audio:
            raise UnsupportedContent(
                "VIDEO_INVALID_BYTES",
                "Downloaded video stream is not recognisable audio",
                details={"sniffed": kind.value if kind else None, "format_id": best.get("format_id")},
            )
        ext = best.get("ext")
        return MediaBuffer(data=data, kind=kind, declared_content_type=f"audio/{ext}" if ext else None, source=url)
