"""
Attachment Text Extractor — turns an attachment into plain text.

Supported kinds:
  - text documents (.txt, .md, .csv): decoded as UTF-8
  - PDF (.pdf): page text via pypdf
  - raster images (.png, .jpg, .jpeg, .gif): OCR via pytesseract

Failures are local to the attachment: they are logged and produce "".
"""

from __future__ import annotations

import asyncio
import io
import logging
from enum import Enum
from pathlib import Path

import httpx
import pytesseract
from PIL import Image
from pypdf import PdfReader

from turns import Attachment

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".csv"}
PDF_EXTENSIONS = {".pdf"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif"}
OCR_LANGUAGE = "eng"
FETCH_TIMEOUT = 30.0


class AttachmentKind(str, Enum):
    TEXT = "text"
    PDF = "pdf"
    IMAGE = "image"
    UNSUPPORTED = "unsupported"


def classify(file_name: str) -> AttachmentKind:
    ext = Path(file_name.lower()).suffix
    if ext in TEXT_EXTENSIONS:
        return AttachmentKind.TEXT
    if ext in PDF_EXTENSIONS:
        return AttachmentKind.PDF
    if ext in IMAGE_EXTENSIONS:
        return AttachmentKind.IMAGE
    return AttachmentKind.UNSUPPORTED


def pdf_to_text(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    pages = [(page.extract_text() or "").strip() for page in reader.pages]
    return "\n\n".join(p for p in pages if p)


def image_to_text(data: bytes, lang: str = OCR_LANGUAGE) -> str:
    with Image.open(io.BytesIO(data)) as image:
        return pytesseract.image_to_string(image, lang=lang)


def bytes_to_text(data: bytes, kind: AttachmentKind) -> str:
    """Convert raw bytes of a known kind to text (blocking)."""
    if kind == AttachmentKind.TEXT:
        return data.decode("utf-8", errors="ignore")
    if kind == AttachmentKind.PDF:
        return pdf_to_text(data)
    if kind == AttachmentKind.IMAGE:
        return image_to_text(data)
    return ""


def file_to_text(path: str | Path) -> str:
    """Convert a local file to text by extension; "" when unsupported."""
    kind = classify(str(path))
    if kind == AttachmentKind.UNSUPPORTED:
        return ""
    return bytes_to_text(Path(path).read_bytes(), kind)


async def extract_text(attachment: Attachment, client: httpx.AsyncClient | None = None) -> str:
    """Fetch an attachment and return its text, or "" when it has none."""
    kind = classify(attachment.name)
    if kind == AttachmentKind.UNSUPPORTED:
        logger.warning("Unsupported attachment type: %s", attachment.name)
        return ""

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=FETCH_TIMEOUT, follow_redirects=True) as own:
                resp = await own.get(attachment.url)
        else:
            resp = await client.get(attachment.url)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Error fetching attachment %s: %s", attachment.name, e)
        return ""

    try:
        # pypdf and tesseract are CPU-bound; keep the event loop free
        text = await asyncio.to_thread(bytes_to_text, resp.content, kind)
    except Exception as e:
        logger.error("Error extracting text from attachment %s: %s", attachment.name, e)
        return ""
    return text.strip()
