"""
Binary signature sniffing.

Remote hosts routinely mislabel what they serve (HTML error pages with
`200 OK` and an audio content-type, HLS manifests where a progressive file
was asked for), so the bytes are the source of truth and headers are only
consulted when the signature table has nothing to say.
"""
from typing import Optional
from urllib.parse import urlsplit

from .media import MediaKind

MIN_SNIFF_BYTES = 12
TEXT_HEAD_BYTES = 15


def sniff(data: Optional[bytes]) -> Optional[MediaKind]:
    """
    Classify `data` by its leading bytes. Returns None when the buffer is too
    short to judge or nothing in the table matches. First match wins.
    """
    if not data or len(data) < MIN_SNIFF_BYTES:
        return None
    head = bytes(data[:16])

    if head.startswith(b"%PDF"):
        return MediaKind.PDF
    if head.startswith(b"ID3"):
        return MediaKind.MP3
    # MPEG audio frame sync: 11 set bits
    if head[0] == 0xFF and (head[1] & 0xE0) == 0xE0:
        return MediaKind.MP3
    if head.startswith(b"\x1a\x45\xdf\xa3"):
        return MediaKind.WEBM
    if head[4:8] == b"ftyp":
        return MediaKind.MP4
    if head[0:4] == b"RIFF" and head[8:12] == b"WAVE":
        return MediaKind.WAV
    if head.startswith(b"#EXTM3U"):
        return MediaKind.HLS

    text = head[:TEXT_HEAD_BYTES].decode("utf-8", errors="ignore").lower().lstrip("\ufeff \t\r\n")
    if text.startswith("<!doctype") or text.startswith("<html"):
        return MediaKind.HTML
    return None


_CONTENT_TYPES = {
    "audio/mpeg": MediaKind.MP3,
    "audio/mp3": MediaKind.MP3,
    "audio/mpeg3": MediaKind.MP3,
    "audio/webm": MediaKind.WEBM,
    "video/webm": MediaKind.WEBM,
    "audio/mp4": MediaKind.MP4,
    "audio/m4a": MediaKind.MP4,
    "audio/x-m4a": MediaKind.MP4,
    "video/mp4": MediaKind.MP4,
    "audio/wav": MediaKind.WAV,
    "audio/x-wav": MediaKind.WAV,
    "audio/wave": MediaKind.WAV,
    "audio/vnd.wave": MediaKind.WAV,
    "application/pdf": MediaKind.PDF,
    "text/html": MediaKind.HTML,
    "application/xhtml+xml": MediaKind.HTML,
    "application/vnd.apple.mpegurl": MediaKind.HLS,
    "application/x-mpegurl": MediaKind.HLS,
    "audio/mpegurl": MediaKind.HLS,
    "audio/x-mpegurl": MediaKind.HLS,
}

_EXTENSIONS = {
    "mp3": MediaKind.MP3,
    "webm": MediaKind.WEBM,
    "weba": MediaKind.WEBM,
    "m4a": MediaKind.MP4,
    "mp4": MediaKind.MP4,
    "wav": MediaKind.WAV,
    "pdf": MediaKind.PDF,
    "htm": MediaKind.HTML,
    "html": MediaKind.HTML,
    "m3u8": MediaKind.HLS,
}


def kind_from_content_type(content_type: Optional[str]) -> Optional[MediaKind]:
    if not content_type:
        return None
    base = content_type.split(";", 1)[0].strip().lower()
    return _CONTENT_TYPES.get(base)


def kind_from_extension(name: Optional[str]) -> Optional[MediaKind]:
    """Map a filename, bare extension or URL to a kind via its suffix."""
    if not name:
        return None
    if "://" in name:
        name = urlsplit(name).path
    name = name.rsplit("/", 1)[-1]
    ext = name.rsplit(".", 1)[-1] if "." in name else name
    return _EXTENSIONS.get(ext.strip().lower())


def resolve_kind(data: bytes, content_type: Optional[str] = None,
                 extension: Optional[str] = None) -> MediaKind:
    """
    Signature first; the server-declared type and then the extension hint are
    only used when sniffing is inconclusive.
    """
    sniffed = sniff(data)
    if sniffed is not None:
        return sniffed
    return kind_from_content_type(content_type) or kind_from_extension(extension) or MediaKind.UNKNOWN
