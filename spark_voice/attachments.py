"""Document attachments sent along with a chat turn.

PDF and Word uploads arrive as data URLs; their plain text is appended to
the user's message so any completion backend can read it.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
import re
from pathlib import Path

import docx
from PyPDF2 import PdfReader

from spark_voice.errors import DeliveryError, ErrorCode

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_CHARS = 50_000
TRUNCATION_MARKER = "\n\n[... truncated ...]"

_DATA_URL_PREFIX = re.compile(r"^data:[^;,]*;base64,", re.IGNORECASE)


class AttachmentError(DeliveryError):
    code = ErrorCode.E_BAD_PAYLOAD


def decode_data_url(data_url: str) -> bytes:
    """Return the raw bytes of a base64 data URL (a bare base64 string works too)."""
    payload = _DATA_URL_PREFIX.sub("", data_url.strip(), count=1)
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AttachmentError(f"Failed to read file: not valid base64 ({exc})") from exc


def extract_text(filename: str, data: bytes) -> str:
    """Plain text of a PDF or Word document; other types yield ``""``."""
    suffix = Path(filename).suffix.lower()
    try:
        if suffix == ".pdf":
            reader = PdfReader(io.BytesIO(data))
            return "\n".join(page.extract_text() or "" for page in reader.pages).strip()
        if suffix in (".docx", ".doc"):
            document = docx.Document(io.BytesIO(data))
            return "\n".join(p.text for p in document.paragraphs).strip()
    except Exception as exc:
        logger.warning("[Attachment] Could not extract %s: %s", filename, exc)
        raise AttachmentError(f"Failed to read file: {exc}") from exc
    logger.info("[Attachment] No extractor for %s; sending the name only.", filename)
    return ""


async def expand_with_attachment(text: str, filename: str, data_url: str) -> str:
    """Append the attachment's text to *text* under a ``[File: name]`` header."""
    data = decode_data_url(data_url)
    extracted = await asyncio.to_thread(extract_text, filename, data)
    if len(extracted) > MAX_ATTACHMENT_CHARS:
        extracted = extracted[:MAX_ATTACHMENT_CHARS] + TRUNCATION_MARKER
    logger.info("[Attachment] %s: %d chars extracted", filename, len(extracted))
    return f"{text}\n\n[File: {filename}]\n\n{extracted}"
