from __future__ import annotations

import re
import zipfile
from io import BytesIO

from docx import Document
from openpyxl import load_workbook
from pptx import Presentation
from pypdf import PdfReader


class ExtractionError(RuntimeError):
    pass


def strip_html(text: str) -> str:
    if not text:
        return ""
    text = re.sub(r"<script[\s\S]*?</script>", " ", text, flags=re.IGNORECASE)
    text = re.sub(r"<style[\s\S]*?</style>", " ", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="ignore")


def render_pdf_text(data: bytes) -> str:
    reader = PdfReader(BytesIO(data))
    lines: list[str] = []
    for page in reader.pages:
        text = page.extract_text() or ""
        if text.strip():
            lines.append(text.strip())
    return "\n\n".join(lines)


def render_docx_text(data: bytes) -> str:
    doc = Document(BytesIO(data))
    lines = [item.text.strip() for item in doc.paragraphs if item.text.strip()]
    return "\n\n".join(lines)


def render_pptx_text(data: bytes) -> str:
    presentation = Presentation(BytesIO(data))
    lines: list[str] = []
    for idx, slide in enumerate(presentation.slides, start=1):
        slide_texts = []
        for shape in slide.shapes:
            text = getattr(shape, "text", "").strip()
            if text:
                slide_texts.append(text)
        if slide_texts:
            lines.append(f"## Slide {idx}")
            lines.extend(slide_texts)
            lines.append("")
    return "\n".join(lines).strip()


def render_xlsx_text(data: bytes) -> str:
    workbook = load_workbook(BytesIO(data), read_only=True, data_only=True)
    chunks: list[str] = []
    try:
        for sheet in workbook.worksheets:
            chunks.append(f"## Sheet: {sheet.title}")
            for row in sheet.iter_rows(values_only=True):
                values = [str(item) if item is not None else "" for item in row]
                if any(values):
                    chunks.append(" | ".join(values))
            chunks.append("")
    finally:
        workbook.close()
    return "\n".join(chunks).strip()


def render_epub_text(data: bytes) -> str:
    parts: list[str] = []
    with zipfile.ZipFile(BytesIO(data)) as archive:
        for name in sorted(archive.namelist()):
            if name.lower().endswith((".xhtml", ".html", ".htm")):
                text = strip_html(_decode(archive.read(name)))
                if text:
                    parts.append(text)
    return "\n\n".join(parts)


EXTRACTORS = {
    "pdf": render_pdf_text,
    "docx": render_docx_text,
    "pptx": render_pptx_text,
    "xlsx": render_xlsx_text,
    "epub": render_epub_text,
    "text": _decode,
    "markdown": _decode,
    "csv": _decode,
    "html": lambda data: strip_html(_decode(data)),
}


def has_extractor(file_type: str) -> bool:
    return file_type in EXTRACTORS


def extract_text(file_type: str, data: bytes) -> str | None:
    """Return the plain text of a document, or None when the type carries no text."""
    extractor = EXTRACTORS.get(file_type)
    if extractor is None:
        return None
    try:
        return extractor(data)
    except Exception as error:  # noqa: BLE001
        raise ExtractionError(f"{file_type} extraction failed: {error}") from error
