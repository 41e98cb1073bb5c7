import logging
from typing import FrozenSet, Optional, Protocol
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from ..config import Settings
from ..errors import PayloadTooLarge, UnsupportedContent, ValidationError
from .fetcher import fetch_bounded
from .media import AUDIO_KINDS, DOCUMENT_KINDS, MediaBuffer, MediaKind, SourceRequest
from .retry import RetryPolicy
from .sniffer import kind_from_extension, resolve_kind

logger = logging.getLogger("media_quiz.services.resolvers")

# Characters left alone when re-encoding a URL; '%' keeps existing escapes intact.
_URL_SAFE = ":/?#[]@!$&'()*+,;=%~"


class SourceResolver(Protocol):
    async def resolve(self, request: SourceRequest) -> MediaBuffer:
        ...


def normalize_url(raw: Optional[str]) -> str:
    """Validate an http(s) URL, percent-encoding anything malformed in it."""
    if not raw or not raw.strip():
        raise ValidationError("URL_REQUIRED", "Provide 'url'")
    raw = raw.strip()
    parts = urlsplit(raw)
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise ValidationError("INVALID_URL", f"Not an http(s) URL: {raw}", details={"url": raw})
    try:
        netloc = parts.netloc.encode("idna").decode("ascii") if not parts.netloc.isascii() else parts.netloc
    except UnicodeError:
        raise ValidationError("INVALID_URL", f"Invalid host in URL: {raw}", details={"url": raw})
    return urlunsplit((
        parts.scheme.lower(),
        netloc,
        quote(parts.path, safe=_URL_SAFE),
        quote(parts.query, safe=_URL_SAFE),
        quote(parts.fragment, safe=_URL_SAFE),
    ))


def accept_kind(buffer: MediaBuffer, accepted: FrozenSet[MediaKind], label: str,
                allow_unsniffed_mp3: bool = False) -> MediaBuffer:
    """
    Check a resolved buffer against what the channel can use. HTML and
    playlists get their own reasons so "wrong content" is distinguishable
    from a network failure.
    """
    kind = buffer.kind
    if kind == MediaKind.HTML:
        raise UnsupportedContent(
            f"{label}_RETURNED_HTML_NOT_MEDIA",
            "Source returned an HTML page instead of media",
            details={"declared_content_type": buffer.declared_content_type},
        )
    if kind == MediaKind.HLS:
        raise UnsupportedContent(
            f"{label}_RETURNED_PLAYLIST_NOT_MEDIA",
            "Source returned a streaming playlist; only progressive files are supported",
        )
    if kind == MediaKind.UNKNOWN and allow_unsniffed_mp3 and MediaKind.MP3 in accepted:
        logger.warning(f"{label}: unrecognised bytes from {buffer.source}, treating as mp3")
        return MediaBuffer(buffer.data, MediaKind.MP3, buffer.declared_content_type, buffer.source)
    if kind not in accepted:
        raise UnsupportedContent(
            f"{label}_UNSUPPORTED_CONTENT",
            f"Content kind '{kind.value}' is not supported here",
            details={"kind": kind.value, "declared_content_type": buffer.declared_content_type},
        )
    return buffer


class UrlResolver:
    """Fetch a plain URL through the bounded fetcher, then vet the sniffed kind."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings, *, accepted: FrozenSet[MediaKind],
                 policy: RetryPolicy, label: str, max_bytes: Optional[int] = None):
        self.client = client
        self.settings = settings
        self.accepted = accepted
        self.policy = policy
        self.label = label
        self.max_bytes = max_bytes or settings.max_payload_bytes

    async def resolve(self, request: SourceRequest) -> MediaBuffer:
        url = normalize_url(request.url)
        buffer = await fetch_bounded(
            self.client,
            url,
            max_bytes=self.max_bytes,
            policy=self.policy,
            headers={"User-Agent": self.settings.user_agent},
            label=self.label,
        )
        return accept_kind(buffer, self.accepted, self.label, self.settings.allow_unsniffed_mp3)


class DirectUrlResolver(UrlResolver):
    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        super().__init__(client, settings, accepted=AUDIO_KINDS,
                         policy=settings.retry_policy("DIRECT"), label="DIRECT")


class DocumentUrlResolver(UrlResolver):
    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        super().__init__(client, settings, accepted=AUDIO_KINDS | DOCUMENT_KINDS,
                         policy=settings.retry_policy("DOCUMENT"), label="DOCUMENT")


class UploadResolver:
    """Bytes are already in memory; sniff them, use the filename only as a hint."""

    label = "UPLOAD"

    def __init__(self, settings: Settings):
        self.settings = settings

    async def resolve(self, request: SourceRequest) -> MediaBuffer:
        data = request.upload
        if not data:
            raise ValidationError("UPLOAD_REQUIRED", "Send a file in the 'file' field (multipart/form-data)")
        limit = self.settings.max_payload_bytes
        if len(data) > limit:
            raise PayloadTooLarge(
                "UPLOAD_TOO_LARGE",
                f"Upload exceeds the {limit} byte limit",
                details={"limit_bytes": limit, "received_bytes": len(data)},
            )
        kind = resolve_kind(data, extension=request.filename)
        hint = kind_from_extension(request.filename)
        logger.info(f"Upload {request.filename!r}: {len(data)} bytes, resolved {kind.value} "
                    f"(extension hint {hint.value if hint else None})")
        buffer = MediaBuffer(data=data, kind=kind, declared_content_type=None, source=request.filename)
        return accept_kind(buffer, AUDIO_KINDS | DOCUMENT_KINDS, self.label, self.settings.allow_unsniffed_mp3)
