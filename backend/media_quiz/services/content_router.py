from dataclasses import dataclass
from typing import Optional

from ..errors import UnsupportedContent
from .media import MediaBuffer, MediaKind
from .sniffer import kind_from_content_type, kind_from_extension

TRANSCRIBE = "transcribe"
EXTRACT_TEXT = "extract-text"


@dataclass(frozen=True)
class RoutedContent:
    path: str
    buffer: MediaBuffer


def route(buffer: MediaBuffer, url_hint: Optional[str] = None) -> RoutedContent:
    """
    Decide whether a buffer is transcribed or has its text extracted.
    The confirmed kind decides; the URL suffix and declared MIME type are
    only looked at when the bytes could not be classified.
    """
    kind = buffer.kind
    if kind == MediaKind.PDF:
        return RoutedContent(EXTRACT_TEXT, buffer)
    if kind.is_audio:
        return RoutedContent(TRANSCRIBE, buffer)

    if kind == MediaKind.UNKNOWN:
        hinted = kind_from_content_type(buffer.declared_content_type) or kind_from_extension(url_hint)
        if hinted == MediaKind.PDF:
            return RoutedContent(EXTRACT_TEXT, MediaBuffer(buffer.data, MediaKind.PDF,
                                                            buffer.declared_content_type, buffer.source))

    raise UnsupportedContent(
        "UNROUTABLE_CONTENT",
        f"Nothing can be done with content of kind '{kind.value}'",
        details={"kind": kind.value},
    )
