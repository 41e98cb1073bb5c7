import logging
import re

import fitz  # PyMuPDF

from ..errors import UnsupportedContent

logger = logging.getLogger("media_quiz.services.pdf_service")


def extract_text_from_pdf(pdf_bytes: bytes) -> str:
    """
    Extract all text from PDF bytes, pages joined by a blank line.
    Raises UnsupportedContent if the bytes cannot be opened as a PDF.
    """
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as e:
        raise UnsupportedContent("DOCUMENT_UNREADABLE", "Could not open the PDF document", details=str(e))
    if doc.page_count == 0:
        doc.close()
        raise UnsupportedContent("DOCUMENT_UNREADABLE", "The PDF document has no pages")

    try:
        text_parts = []
        for page in doc:
            text = page.get_text() or ""
            text = re.sub(r"[ \t]+", " ", text).strip()
            if text:
                text_parts.append(text)
    finally:
        doc.close()

    logger.info(f"Extracted text from {len(text_parts)} PDF pages")
    return "\n\n".join(text_parts)
