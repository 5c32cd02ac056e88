"""
Text-to-PDF conversion bridge.
Mixed-format merges render every non-PDF input as paginated text, then merge the PDFs in order.
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from reportlab.lib.pagesizes import letter
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfgen.canvas import Canvas

from chunk_processor import _safe_progress
from document_processors import (
    CSVProcessor,
    MergeOptions,
    ProcessorResult,
    get_processor,
    sanitize_text,
)
from error_handler import ErrorCode, record_warning
from format_detection import LogicalFormat

logger = logging.getLogger(__name__)

PAGE_WIDTH, PAGE_HEIGHT = letter
MARGIN = 72
CONTENT_WIDTH = PAGE_WIDTH - 2 * MARGIN

FONT = "Helvetica"
BOLD_FONT = "Helvetica-Bold"
FONT_SIZE = 12
TITLE_FONT_SIZE = FONT_SIZE + 2
FOOTER_FONT_SIZE = 10
LINE_HEIGHT = FONT_SIZE * 1.4
LINES_PER_PAGE = int((PAGE_HEIGHT - 2 * MARGIN) // LINE_HEIGHT)

TITLE_MAX_LENGTH = 50
MIN_STRUCTURED_TEXT = 100
EMPTY_DOCUMENT_NOTICE = "(This document contains no extractable text)"


@dataclass
class ConversionInput:
    name: str
    format: LogicalFormat
    data: bytes


def to_winansi(text: str) -> str:
    """Replace characters the standard PDF fonts cannot encode."""
    return text.encode("cp1252", errors="replace").decode("cp1252")


def format_table_for_pdf(csv_text: str) -> str:
    """Render CSV text as a pipe-separated grid with a dashed line under the header."""
    formatted = []
    for index, row in enumerate(CSVProcessor.parse_csv(csv_text)):
        line = " | ".join(row)
        formatted.append(line)
        if index == 0 and len(row) > 1:
            formatted.append("-" * len(line))
    return "\n".join(formatted)


def _text_width(text: str, font_name: str = FONT, font_size: float = FONT_SIZE) -> float:
    return pdfmetrics.stringWidth(text, font_name, font_size)


def _fit_prefix(word: str, max_width: float, font_name: str, font_size: float) -> int:
    """Length of the longest prefix that still fits with a trailing hyphen (at least one character)."""
    low, high = 1, len(word)
    while low < high:
        middle = (low + high + 1) // 2
        if _text_width(word[:middle] + "-", font_name, font_size) <= max_width:
            low = middle
        else:
            high = middle - 1
    return low


def wrap_text(
    text: str,
    max_width: float = CONTENT_WIDTH,
    font_name: str = FONT,
    font_size: float = FONT_SIZE,
) -> List[str]:
    """Greedy word wrap by measured width; blank lines are kept, overlong words are hyphenated."""
    wrapped: List[str] = []
    for line in text.split("\n"):
        if not line.strip():
            wrapped.append("")
            continue
        current = ""
        for word in line.split(" "):
            if not word:
                continue
            candidate = f"{current} {word}" if current else word
            if _text_width(candidate, font_name, font_size) <= max_width:
                current = candidate
                continue
            if current:
                wrapped.append(current)
            while _text_width(word, font_name, font_size) > max_width and len(word) > 1:
                cut = _fit_prefix(word, max_width, font_name, font_size)
                wrapped.append(word[:cut] + "-")
                word = word[cut:]
            current = word
        if current:
            wrapped.append(current)
    return wrapped


def paginate(lines: Sequence[str], lines_per_page: int = LINES_PER_PAGE) -> List[List[str]]:
    if not lines:
        return [[]]
    return [list(lines[start:start + lines_per_page]) for start in range(0, len(lines), lines_per_page)]


def is_title_line(line: str) -> bool:
    stripped = line.strip()
    return stripped.isupper() and len(stripped) < TITLE_MAX_LENGTH


def render_text_to_pdf(text: str) -> bytes:
    """Lay text out on US Letter pages: Helvetica 12pt, 1-inch margins, "Page X of N" footers."""
    lines = wrap_text(to_winansi(sanitize_text(text)))
    if not any(line.strip() for line in lines):
        lines = [EMPTY_DOCUMENT_NOTICE]
    pages = paginate(lines)

    buffer = io.BytesIO()
    pdf = Canvas(buffer, pagesize=letter)
    for page_number, page_lines in enumerate(pages, 1):
        for index, line in enumerate(page_lines):
            y = PAGE_HEIGHT - MARGIN - index * LINE_HEIGHT
            if is_title_line(line):
                pdf.setFont(BOLD_FONT, TITLE_FONT_SIZE)
            else:
                pdf.setFont(FONT, FONT_SIZE)
            pdf.setFillGray(0)
            pdf.drawString(MARGIN, y, line)

        pdf.setFont(FONT, FOOTER_FONT_SIZE)
        pdf.setFillGray(0.5)
        pdf.drawString(PAGE_WIDTH - MARGIN - 80, MARGIN / 2, f"Page {page_number} of {len(pages)}")
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def docx_to_text(data: bytes) -> str:
    word = get_processor(LogicalFormat.DOCX)
    try:
        text = sanitize_text(word.extract_structured_text(data)).strip()
    except Exception as exc:
        logger.info("Structured Word extraction failed, using raw text: %s", exc)
        return sanitize_text(word.extract_text(data)).strip()
    if len(text) < MIN_STRUCTURED_TEXT:
        text = sanitize_text(word.extract_text(data)).strip() or text
    return text


def document_to_text(fmt: LogicalFormat, data: bytes) -> str:
    """Best-effort text rendering of any non-PDF format."""
    fmt = LogicalFormat(fmt)
    if fmt == LogicalFormat.DOCX:
        return docx_to_text(data)
    if fmt == LogicalFormat.CSV:
        return format_table_for_pdf(get_processor(fmt).decode(data))
    if fmt == LogicalFormat.PDF:
        raise ValueError("PDF documents are not converted to text")
    return get_processor(fmt).extract_text(data)


def convert_to_pdf(fmt: LogicalFormat, data: bytes) -> bytes:
    if LogicalFormat(fmt) == LogicalFormat.PDF:
        return data
    return render_text_to_pdf(document_to_text(fmt, data))


async def convert_and_merge_to_pdf(
    documents: Sequence[ConversionInput],
    options: Optional[MergeOptions] = None,
    on_progress: Optional[Callable[[float], None]] = None,
    checkpoint: Optional[Callable[[], None]] = None,
) -> ProcessorResult:
    """
    Convert each document to PDF in order, then merge through the PDF processor.

    A document that fails to convert is recorded as a warning and left out; the
    merge fails only when nothing could be converted. ``checkpoint`` is called
    before each document and may raise to abort the run.
    """
    options = options or MergeOptions()
    warnings: List = []
    pdf_buffers: List[bytes] = []
    names: List[str] = []
    total = len(documents)

    for index, document in enumerate(documents):
        if checkpoint is not None:
            checkpoint()
        try:
            pdf_buffers.append(convert_to_pdf(document.format, document.data))
            names.append(document.name)
        except Exception as exc:
            record_warning(
                warnings,
                ErrorCode.CONVERSION_FAILED.value,
                f"Could not convert {document.format.value} document to PDF; skipping",
                file=document.name,
                index=index,
                error=str(exc),
            )
            logger.warning("Conversion of %s failed: %s", document.name, exc)
        _safe_progress(on_progress, 0.9 * (index + 1) / total)
        await asyncio.sleep(0)

    if checkpoint is not None:
        checkpoint()
    if not pdf_buffers:
        return ProcessorResult(
            success=False,
            error="Conversion failed: no document could be converted to PDF",
            warnings=warnings,
        )

    result = get_processor(LogicalFormat.PDF).merge_same_format(pdf_buffers, options, names)
    result.warnings = warnings + result.warnings
    _safe_progress(on_progress, 1.0)
    return result
