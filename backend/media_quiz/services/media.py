from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import ValidationError


class MediaKind(str, Enum):
    MP3 = "mp3"
    WEBM = "webm"
    MP4 = "mp4"  # m4a audio lives in the same container
    WAV = "wav"
    PDF = "pdf"
    HTML = "html"
    HLS = "hls-playlist"
    UNKNOWN = "unknown"

    @property
    def mime_type(self) -> str:
        return _MIME_TYPES[self]

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def is_audio(self) -> bool:
        return self in AUDIO_KINDS


_MIME_TYPES = {
    MediaKind.MP3: "audio/mpeg",
    MediaKind.WEBM: "audio/webm",
    MediaKind.MP4: "audio/mp4",
    MediaKind.WAV: "audio/wav",
    MediaKind.PDF: "application/pdf",
    MediaKind.HTML: "text/html",
    MediaKind.HLS: "application/vnd.apple.mpegurl",
    MediaKind.UNKNOWN: "application/octet-stream",
}

_EXTENSIONS = {
    MediaKind.MP3: "mp3",
    MediaKind.WEBM: "webm",
    MediaKind.MP4: "m4a",
    MediaKind.WAV: "wav",
    MediaKind.PDF: "pdf",
    MediaKind.HTML: "html",
    MediaKind.HLS: "m3u8",
    MediaKind.UNKNOWN: "bin",
}

AUDIO_KINDS = frozenset({MediaKind.MP3, MediaKind.WEBM, MediaKind.MP4, MediaKind.WAV})
DOCUMENT_KINDS = frozenset({MediaKind.PDF})


@dataclass(frozen=True)
class MediaBuffer:
    """Bytes of one acquired source plus the kind we settled on for them."""
    data: bytes
    kind: MediaKind
    declared_content_type: Optional[str] = None
    source: Optional[str] = None

    @property
    def mime_type(self) -> str:
        return self.kind.mime_type

    @property
    def extension(self) -> str:
        return self.kind.extension

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"MediaBuffer(kind={self.kind.value}, bytes={len(self.data)}, source={self.source!r})"


CHANNELS = ("auto", "media", "document", "video")


@dataclass
class SourceRequest:
    """
    One caller request. Exactly one of `url` / `upload` must be given;
    this is checked before any network activity happens.
    """
    url: Optional[str] = None
    upload: Optional[bytes] = None
    filename: Optional[str] = None
    question_count: int = 5
    channel: str = "auto"

    def __post_init__(self):
        if self.url is not None:
            self.url = self.url.strip() or None
        if self.url is None and self.upload is None:
            raise ValidationError("SOURCE_REQUIRED", "Provide either 'url' or an uploaded file")
        if self.url is not None and self.upload is not None:
            raise ValidationError("AMBIGUOUS_SOURCE", "Provide only one of 'url' or an uploaded file")
        if self.upload is not None and len(self.upload) == 0:
            raise ValidationError("EMPTY_UPLOAD", "Uploaded file is empty")
        if not isinstance(self.question_count, int) or self.question_count < 1:
            raise ValidationError("INVALID_QUESTION_COUNT", "'num' must be a positive integer")
        if self.channel not in CHANNELS:
            raise ValidationError("INVALID_CHANNEL", f"'channel' must be one of {', '.join(CHANNELS)}")
