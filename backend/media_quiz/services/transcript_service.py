import asyncio
import logging

from ..errors import PermanentUpstreamError, UnsupportedContent
from .content_router import EXTRACT_TEXT, TRANSCRIBE, RoutedContent
from .llm_client import GeminiClient
from .pdf_service import extract_text_from_pdf

logger = logging.getLogger("media_quiz.services.transcript_service")


async def get_source_text(routed: RoutedContent, transcriber: GeminiClient) -> str:
    """
    Turn a routed buffer into plain text: PDFs have their text extracted,
    audio goes to the transcription backend.
    """
    buffer = routed.buffer

    if routed.path == EXTRACT_TEXT:
        # PyMuPDF is blocking
        text = await asyncio.to_thread(extract_text_from_pdf, buffer.data)
        if not text.strip():
            raise UnsupportedContent("DOCUMENT_HAS_NO_TEXT", "The document contains no extractable text")
        logger.info(f"Extracted {len(text)} characters from {buffer.source}")
        return text

    if routed.path == TRANSCRIBE:
        text = await transcriber.transcribe(buffer)
        if not text:
            raise PermanentUpstreamError("EMPTY_TRANSCRIPT", "Transcription returned no text")
        logger.info(f"Transcribed {len(text)} characters from {buffer.source}")
        return text

    raise ValueError(f"Unknown content path: {routed.path}")
