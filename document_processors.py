"""
Per-format document processors.
Each processor analyzes, previews, extracts text from and merges buffers of one logical format.
"""

import codecs
import csv
import io
import logging
import math
import re
import xml.etree.ElementTree as ET
import zipfile
from copy import deepcopy
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, Tuple

import olefile
from dateutil import parser as date_parser
from docx import Document
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.oxml.ns import qn
from docx.table import Table
from docx.text.paragraph import Paragraph
from openpyxl import Workbook, load_workbook
from PIL import Image
from pypdf import PdfReader, PdfWriter

from chunk_processor import BufferSliceReader, ChunkProcessor, format_bytes, recommended_chunk_size
from error_handler import ErrorCode, record_warning, warning_from_code
from format_detection import OLE_SIGNATURE, LogicalFormat, ValidationResult, validate_structure

logger = logging.getLogger(__name__)

PREVIEW_LIMIT = 600
WORDS_PER_PAGE = 250
MAX_SHEET_NAME = 31
LARGE_SPREADSHEET_CELLS = 1_000_000

DEFAULT_TEXT_SEPARATOR = "\n\n---\n\n"
PAGE_BREAK_SEPARATOR = "\n\n---PAGE BREAK---\n\n"

MERGED_TITLE = "Merged Document"
MERGED_AUTHOR = "Document Merger"

_ZERO_WIDTH_RE = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")
_CONTROL_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_INVALID_SHEET_CHARS_RE = re.compile(r"[\[\]:*?/\\]")

WORD_NS = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"
PRESENTATION_NS = "{http://schemas.openxmlformats.org/presentationml/2006/main}"
DRAWING_NS = "{http://schemas.openxmlformats.org/drawingml/2006/main}"
REL_NS = "{http://schemas.openxmlformats.org/officeDocument/2006/relationships}"
PACKAGE_REL_NS = "{http://schemas.openxmlformats.org/package/2006/relationships}"
DC_NS = "{http://purl.org/dc/elements/1.1/}"
DCTERMS_NS = "{http://purl.org/dc/terms/}"

MERGE_MODES = ("sequential", "smart", "custom")
QUALITY_LEVELS = ("low", "medium", "high")
SHEET_NAMING_MODES = ("default", "sequential", "original")


@dataclass(frozen=True)
class MergeOptions:
    """User-selected merge behaviour. Immutable once a job starts."""

    mode: str = "sequential"
    output_format: Optional[LogicalFormat] = None
    output_name: str = "merged-document"
    preserve_metadata: bool = True
    preserve_formatting: bool = True
    quality: str = "medium"
    page_breaks: bool = False
    include_headers: bool = False
    include_footers: bool = False
    custom_order: Optional[Tuple[str, ...]] = None
    skip_duplicate_headers: bool = True
    preserve_formulas: bool = False
    text_separator: Optional[str] = None
    sheet_naming: str = "default"

    def __post_init__(self):
        if self.mode not in MERGE_MODES:
            raise ValueError(f"mode must be one of {MERGE_MODES}, got {self.mode!r}")
        if self.quality not in QUALITY_LEVELS:
            raise ValueError(f"quality must be one of {QUALITY_LEVELS}, got {self.quality!r}")
        if self.sheet_naming not in SHEET_NAMING_MODES:
            raise ValueError(f"sheet_naming must be one of {SHEET_NAMING_MODES}, got {self.sheet_naming!r}")
        if self.output_format is not None:
            object.__setattr__(self, "output_format", LogicalFormat(self.output_format))
        if self.custom_order is not None:
            object.__setattr__(self, "custom_order", tuple(self.custom_order))

    def with_changes(self, **changes) -> "MergeOptions":
        return replace(self, **changes)


@dataclass
class DocumentMetadata:
    page_count: Optional[int] = None
    sheet_count: Optional[int] = None
    slide_count: Optional[int] = None
    word_count: Optional[int] = None
    title: Optional[str] = None
    author: Optional[str] = None
    created_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass
class ProcessorResult:
    success: bool
    data: Optional[bytes] = None
    metadata: Optional[DocumentMetadata] = None
    error: Optional[str] = None
    media_type: Optional[str] = None
    warnings: List[Dict] = field(default_factory=list)


def sanitize_text(text: str) -> str:
    """Strip zero-width and control characters and normalize line endings to LF."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _ZERO_WIDTH_RE.sub("", text)
    return _CONTROL_RE.sub("", text)


def count_words(text: str) -> int:
    return len(text.split())


def truncate_preview(text: str, limit: int = PREVIEW_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "..."


def _snippet(text: str, lines: int = 5, chars: int = 200) -> str:
    head = "\n".join(text.split("\n")[:lines])
    return head[:chars] + ("..." if len(head) > chars else "")


def _source_name(names: Optional[Sequence[str]], index: int) -> str:
    if names and index < len(names) and names[index]:
        return names[index]
    return f"Document {index + 1}"


def _text_lines(text: str) -> List[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


def _as_datetime(value) -> Optional[datetime]:
    return value if isinstance(value, datetime) else None


def decode_text(data: bytes, chunk_size: Optional[int] = None) -> str:
    """
    Decode a text buffer, trying UTF-8 first, then cp1252, then latin-1.
    Large buffers are decoded incrementally over a slice reader.
    """
    if data.startswith(codecs.BOM_UTF8):
        data = data[len(codecs.BOM_UTF8):]
    if not ChunkProcessor.should_use_chunked_processing(len(data)):
        chunk_size = None
    for encoding in ("utf-8", "cp1252", "latin-1"):
        try:
            if chunk_size is None:
                return data.decode(encoding)
            decoder = codecs.getincrementaldecoder(encoding)()
            parts = [decoder.decode(bytes(chunk)) for chunk in BufferSliceReader(data, chunk_size)]
            parts.append(decoder.decode(b"", final=True))
            return "".join(parts)
        except UnicodeDecodeError:
            continue
    return data.decode("latin-1", errors="replace")


class BaseProcessor:
    """Common contract for every format processor."""

    format: LogicalFormat
    label = "Document"
    media_type: Optional[str] = None

    def analyze(self, data: bytes, warnings: Optional[List[Dict]] = None) -> DocumentMetadata:
        """Never raises; returns partial or empty metadata when parsing fails."""
        try:
            return self._analyze(data, warnings)
        except Exception as exc:
            logger.warning("%s analysis failed: %s", self.label, exc)
            return DocumentMetadata()

    def generate_preview(self, data: bytes) -> str:
        try:
            return truncate_preview(self._preview(data))
        except Exception as exc:
            logger.warning("%s preview failed: %s", self.label, exc)
            return f"{self.label} (Preview not available)"

    def extract_text(self, data: bytes) -> str:
        raise NotImplementedError

    def validate_structure(self, data: bytes) -> ValidationResult:
        return validate_structure(data, self.format)

    def merge_same_format(
        self,
        buffers: Sequence[bytes],
        options: Optional[MergeOptions] = None,
        names: Optional[Sequence[str]] = None,
    ) -> ProcessorResult:
        raise NotImplementedError

    def _analyze(self, data: bytes, warnings: Optional[List[Dict]]) -> DocumentMetadata:
        raise NotImplementedError

    def _preview(self, data: bytes) -> str:
        raise NotImplementedError


class PDFProcessor(BaseProcessor):
    format = LogicalFormat.PDF
    label = "PDF Document"
    media_type = "application/pdf"

    @staticmethod
    def open_reader(data: bytes) -> PdfReader:
        """Open a PDF, trying the empty password on encrypted files (handles view-only PDFs)."""
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted and not reader.decrypt(""):
            raise ValueError("PDF is password-protected and cannot be opened")
        return reader

    @staticmethod
    def try_convert_image_to_pdf(data: bytes) -> Optional[bytes]:
        """
        Attempt to open bytes as an image and convert them to PDF bytes.
        Returns None if the buffer is not a valid image.
        """
        try:
            img = Image.open(io.BytesIO(data))
            # Convert to RGB so it can be saved as PDF (handles RGBA, P, etc.)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            pdf_bytes = io.BytesIO()
            img.save(pdf_bytes, format="PDF", resolution=150)
            return pdf_bytes.getvalue()
        except Exception:
            return None

    def _analyze(self, data: bytes, warnings: Optional[List[Dict]]) -> DocumentMetadata:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted and not reader.decrypt(""):
            if warnings is not None:
                warnings.append(warning_from_code(ErrorCode.PDF_PASSWORD_PROTECTED))
            return DocumentMetadata()

        metadata = DocumentMetadata(page_count=len(reader.pages))
        info = reader.metadata
        if info is not None:
            metadata.title = info.title or None
            metadata.author = info.author or None
            try:
                metadata.created_date = info.creation_date
                metadata.modified_date = info.modification_date
            except Exception as exc:
                logger.debug("Unparseable PDF date: %s", exc)

        text = self._text_from_reader(reader)
        metadata.word_count = count_words(text)
        if not text.strip() and warnings is not None:
            warnings.append(warning_from_code(ErrorCode.PDF_EXTRACTION_FAILED))
        return metadata

    def _preview(self, data: bytes) -> str:
        reader = self.open_reader(data)
        return f"PDF Document\nPages: {len(reader.pages)}"

    @staticmethod
    def _text_from_reader(reader: PdfReader) -> str:
        texts = []
        for page in reader.pages:
            try:
                texts.append(page.extract_text() or "")
            except Exception as exc:
                logger.debug("Page text extraction failed: %s", exc)
        return "\n\n".join(text for text in texts if text)

    def extract_text(self, data: bytes) -> str:
        return self._text_from_reader(self.open_reader(data))

    def split_pdf(self, data: bytes, page_ranges: Sequence[Tuple[int, int]]) -> List[bytes]:
        """Split into one PDF per inclusive 1-based (start, end) page range."""
        reader = self.open_reader(data)
        outputs = []
        for start, end in page_ranges:
            writer = PdfWriter()
            for page_number in range(max(start, 1), min(end, len(reader.pages)) + 1):
                writer.add_page(reader.pages[page_number - 1])
            buffer = io.BytesIO()
            writer.write(buffer)
            outputs.append(buffer.getvalue())
        return outputs

    def merge_same_format(self, buffers, options=None, names=None) -> ProcessorResult:
        options = options or MergeOptions()
        warnings: List[Dict] = []
        writer = PdfWriter()
        total_pages_added = 0

        for index, data in enumerate(buffers):
            name = _source_name(names, index)
            try:
                reader = PdfReader(io.BytesIO(data))
                if reader.is_encrypted and not reader.decrypt(""):
                    record_warning(
                        warnings,
                        ErrorCode.PDF_PASSWORD_PROTECTED.value,
                        "PDF is password-protected and cannot be merged; skipping",
                        file=name,
                        index=index,
                    )
                    continue
                pages = list(reader.pages)
            except Exception as exc:
                # Fallback: the bytes may be an image with a .pdf name
                image_pdf = self.try_convert_image_to_pdf(data)
                if image_pdf is None:
                    record_warning(
                        warnings,
                        "pdf_unreadable",
                        "Could not read PDF file and fallback conversion failed; skipping",
                        file=name,
                        index=index,
                        error=str(exc),
                    )
                    logger.warning("Could not merge %s: %s", name, exc)
                    continue
                logger.info("Converted image to PDF: %s", name)
                pages = list(PdfReader(io.BytesIO(image_pdf)).pages)

            if not pages:
                record_warning(warnings, "pdf_no_pages", "PDF contained zero readable pages", file=name, index=index)
                continue

            page_start = total_pages_added
            for page in pages:
                writer.add_page(page)
            total_pages_added += len(pages)
            if options.preserve_formatting and names:
                try:
                    writer.add_outline_item(name, page_start)
                except Exception as exc:
                    logger.debug("Could not add bookmark for %s: %s", name, exc)

        if total_pages_added == 0:
            return ProcessorResult(
                success=False,
                error="PDF merge failed: no pages could be read from any document",
                warnings=warnings,
            )

        if options.preserve_metadata:
            stamp = datetime.now(timezone.utc).strftime("D:%Y%m%d%H%M%SZ")
            writer.add_metadata({
                "/Title": MERGED_TITLE,
                "/Author": MERGED_AUTHOR,
                "/Creator": MERGED_AUTHOR,
                "/Producer": MERGED_AUTHOR,
                "/CreationDate": stamp,
                "/ModDate": stamp,
            })

        output = io.BytesIO()
        writer.write(output)
        logger.info("Merged %d PDFs (%d pages)", len(buffers), total_pages_added)
        return ProcessorResult(
            success=True,
            data=output.getvalue(),
            metadata=DocumentMetadata(page_count=total_pages_added, title=MERGED_TITLE, author=MERGED_AUTHOR),
            media_type=self.media_type,
            warnings=warnings,
        )


class WordProcessor(BaseProcessor):
    format = LogicalFormat.DOCX
    label = "Word Document"
    media_type = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

    @staticmethod
    def try_extract_docx_text(data: bytes) -> Optional[str]:
        """
        Fallback: extract raw paragraph text from word/document.xml inside the zip.
        Works even when python-docx can't open the file due to broken relationships.
        """
        try:
            with zipfile.ZipFile(io.BytesIO(data), "r") as archive:
                # word/document.xml may sit at a different path in some files
                candidates = [n for n in archive.namelist() if n.endswith("document.xml")]
                if not candidates:
                    return None
                xml_bytes = archive.read(candidates[0])
            root = ET.fromstring(xml_bytes)
            paragraphs = []
            for para in root.iter(f"{WORD_NS}p"):
                paragraphs.append("".join(t.text or "" for t in para.iter(f"{WORD_NS}t")))
            return "\n".join(paragraphs) if paragraphs else None
        except Exception:
            return None

    @staticmethod
    def try_extract_ole_text(data: bytes) -> Optional[str]:
        """Fallback: scrape printable runs out of the WordDocument stream of a legacy .doc file."""
        if not data.startswith(OLE_SIGNATURE):
            return None
        try:
            ole = olefile.OleFileIO(io.BytesIO(data))
            try:
                if not ole.exists("WordDocument"):
                    return None
                raw = ole.openstream("WordDocument").read()
            finally:
                ole.close()
        except Exception:
            return None

        text_chunks = []
        current_chunk = []
        for byte in raw:
            if 32 <= byte < 127 or byte in (10, 13, 9):
                current_chunk.append(chr(byte))
            else:
                if len(current_chunk) > 3:
                    text_chunks.append("".join(current_chunk))
                current_chunk = []
        if len(current_chunk) > 3:
            text_chunks.append("".join(current_chunk))
        text = "\n".join(text_chunks).strip()
        return text or None

    @staticmethod
    def _iter_blocks(doc):
        """Yield paragraphs and tables in body order."""
        for element in doc.element.body.iterchildren():
            if element.tag == qn("w:p"):
                yield Paragraph(element, doc)
            elif element.tag == qn("w:tbl"):
                yield Table(element, doc)

    def _text_from_document(self, doc) -> str:
        lines = []
        for block in self._iter_blocks(doc):
            if isinstance(block, Paragraph):
                lines.append(block.text)
            else:
                for row in block.rows:
                    lines.append("\t".join(cell.text for cell in row.cells))
        return "\n".join(lines)

    def extract_text(self, data: bytes) -> str:
        try:
            return self._text_from_document(Document(io.BytesIO(data)))
        except Exception as exc:
            open_error = exc

        raw_text = self.try_extract_docx_text(data) or self.try_extract_ole_text(data)
        if raw_text:
            return raw_text
        raise ValueError(f"Could not read Word document: {open_error}")

    def extract_structured_text(self, data: bytes) -> str:
        """Text with heading levels, list bullets and table rows made explicit."""
        doc = Document(io.BytesIO(data))
        lines = []
        for block in self._iter_blocks(doc):
            if isinstance(block, Table):
                rows = [[cell.text.strip() for cell in row.cells] for row in block.rows]
                if rows:
                    lines.append(format_grid(rows))
                continue
            text = block.text.strip()
            if not text:
                continue
            style = (block.style.name if block.style is not None else "") or ""
            if style == "Title" or style.startswith("Heading"):
                lines.append(text.upper() if len(text) < 50 else text)
            elif style.startswith("List"):
                lines.append(f"• {text}")
            else:
                lines.append(text)
        return "\n\n".join(lines)

    def _analyze(self, data: bytes, warnings: Optional[List[Dict]]) -> DocumentMetadata:
        try:
            doc = Document(io.BytesIO(data))
        except Exception:
            text = self.extract_text(data)
            words = count_words(text)
            return DocumentMetadata(word_count=words, page_count=math.ceil(words / WORDS_PER_PAGE))

        words = count_words(self._text_from_document(doc))
        props = doc.core_properties
        metadata = DocumentMetadata(
            word_count=words,
            page_count=math.ceil(words / WORDS_PER_PAGE),
            title=props.title or None,
            author=props.author or None,
            created_date=_as_datetime(props.created),
            modified_date=_as_datetime(props.modified),
        )
        if warnings is not None and (doc.tables or doc.inline_shapes or len(doc.sections) > 1):
            warnings.append(warning_from_code(
                ErrorCode.DOCX_COMPLEX_FORMATTING,
                tables=len(doc.tables),
                images=len(doc.inline_shapes),
                sections=len(doc.sections),
            ))
        return metadata

    def _preview(self, data: bytes) -> str:
        text = self.extract_text(data)
        words = count_words(text)
        return (
            f"Word Document\nWords: {words}\nPages: ~{math.ceil(words / WORDS_PER_PAGE)}\n\n"
            f"Preview:\n{_snippet(text)}"
        )

    @staticmethod
    def _copy_relationship(source_part, target_part, r_id: str) -> Optional[str]:
        """Recreate one source relationship on the merged part and return its new rId."""
        rel = source_part.rels.get(r_id)
        if rel is None:
            return None
        if rel.is_external:
            return target_part.relate_to(rel.target_ref, rel.reltype, is_external=True)
        if rel.reltype == RT.IMAGE:
            try:
                new_r_id, _image = target_part.get_or_add_image(io.BytesIO(rel.target_part.blob))
            except Exception as exc:
                logger.info("Image %s could not be copied: %s", r_id, exc)
                return None
            return new_r_id
        # charts, embedded objects and other owned parts are not carried over
        return None

    def _copy_body(self, merged_doc, source_doc) -> Optional[List]:
        """Deep-copy the source body elements with every r:* reference re-keyed onto the merged part.

        Returns None when a reference points at something that cannot be copied; the
        caller then merges that document as plain text instead.
        """
        elements = [
            deepcopy(element)
            for element in source_doc.element.body.iterchildren()
            if not element.tag.endswith("}sectPr")
        ]
        remapped: Dict[str, str] = {}
        for element in elements:
            for node in element.iter():
                if not isinstance(node.tag, str):
                    continue
                for key, value in list(node.attrib.items()):
                    if not key.startswith(REL_NS):
                        continue
                    if value not in remapped:
                        new_r_id = self._copy_relationship(source_doc.part, merged_doc.part, value)
                        if new_r_id is None:
                            logger.info("Relationship %s (%s) cannot be carried over", value, key)
                            return None
                        remapped[value] = new_r_id
                    node.set(key, remapped[value])
        return elements

    @staticmethod
    def _append_body(merged_doc, elements) -> None:
        """Insert copied body elements, keeping the merged section properties last."""
        body = merged_doc.element.body
        sect_pr = body.find(qn("w:sectPr"))
        for element in elements:
            if sect_pr is not None:
                sect_pr.addprevious(element)
            else:
                body.append(element)

    def _source_content(
        self, merged_doc, data: bytes, options, name: str, index: int, warnings
    ) -> Tuple[List, List[str]]:
        """Read one source as (body elements, text lines); only one of the two is filled."""
        try:
            source_doc = Document(io.BytesIO(data))
        except Exception:
            raw_text = self.try_extract_docx_text(data) or self.try_extract_ole_text(data)
            if not raw_text:
                raise
            logger.info("Recovered (raw text): %s", name)
            return [], _text_lines(raw_text)

        if options.preserve_formatting:
            elements = self._copy_body(merged_doc, source_doc)
            if elements is not None:
                return elements, []
            record_warning(
                warnings,
                ErrorCode.DOCX_COMPLEX_FORMATTING.value,
                "Embedded content could not be carried over; document merged as text",
                file=name,
                index=index,
            )
        return [], _text_lines(self._text_from_document(source_doc))

    def merge_same_format(self, buffers, options=None, names=None) -> ProcessorResult:
        options = options or MergeOptions()
        warnings: List[Dict] = []
        merged_doc = Document()
        merged_docs_count = 0
        sections_written = 0

        def start_section(index: int, name: str) -> None:
            nonlocal sections_written
            if sections_written and options.page_breaks:
                merged_doc.add_page_break()
            if options.include_headers:
                merged_doc.add_heading(f"Document {index + 1}: {name}", level=1)
            sections_written += 1

        for index, data in enumerate(buffers):
            name = _source_name(names, index)
            try:
                elements, lines = self._source_content(merged_doc, data, options, name, index, warnings)
            except Exception as exc:
                record_warning(
                    warnings,
                    "docx_unreadable",
                    "Could not read Word document; inserted error placeholder",
                    file=name,
                    index=index,
                    error=str(exc),
                )
                logger.warning("Could not merge %s: %s", name, exc)
                start_section(index, name)
                merged_doc.add_paragraph(f"[Error: Could not process document {index + 1} ({name})]")
                continue

            if not elements and not lines:
                record_warning(warnings, "docx_empty_document", "Word document had no content", file=name)
                continue

            start_section(index, name)
            if elements:
                self._append_body(merged_doc, elements)
            for line in lines:
                merged_doc.add_paragraph(line)
            merged_docs_count += 1

        if merged_docs_count == 0:
            return ProcessorResult(
                success=False,
                error="Word merge failed: no document contributed any content",
                warnings=warnings,
            )

        if options.include_footers:
            footer = merged_doc.sections[0].footer
            footer.paragraphs[0].text = f"{options.output_name} - merged from {len(buffers)} documents"

        if options.preserve_metadata:
            props = merged_doc.core_properties
            props.title = MERGED_TITLE
            props.author = MERGED_AUTHOR
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            props.created = now
            props.modified = now

        output = io.BytesIO()
        merged_doc.save(output)
        logger.info("Merged %d Word documents (%d contributed)", len(buffers), merged_docs_count)
        return ProcessorResult(
            success=True,
            data=output.getvalue(),
            metadata=DocumentMetadata(title=MERGED_TITLE, author=MERGED_AUTHOR),
            media_type=self.media_type,
            warnings=warnings,
        )


def format_grid(rows: Sequence[Sequence[Any]]) -> str:
    """Render rows as a pipe-separated grid with a dashed line under the header row."""
    lines = []
    for index, row in enumerate(rows):
        line = " | ".join("" if cell is None else str(cell) for cell in row)
        lines.append(line)
        if index == 0:
            lines.append("-" * max(len(line), 3))
    return "\n".join(lines)


class ExcelProcessor(BaseProcessor):
    format = LogicalFormat.XLSX
    label = "Excel Workbook"
    media_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

    @staticmethod
    def _load(data: bytes, data_only: bool = True, read_only: bool = False):
        return load_workbook(io.BytesIO(data), data_only=data_only, read_only=read_only)

    def extract_rows(self, data: bytes) -> Dict[str, List[List[Any]]]:
        """Sheet name to list of value rows, trailing empty rows dropped."""
        workbook = self._load(data, read_only=True)
        try:
            sheets = {}
            for sheet in workbook.worksheets:
                rows = [list(row) for row in sheet.iter_rows(values_only=True)]
                while rows and all(value is None for value in rows[-1]):
                    rows.pop()
                sheets[sheet.title] = rows
            return sheets
        finally:
            workbook.close()

    def convert_to_csv(self, data: bytes, sheet_name: Optional[str] = None) -> str:
        sheets = self.extract_rows(data)
        if not sheets:
            return ""
        name = sheet_name or next(iter(sheets))
        if name not in sheets:
            raise ValueError(f"Sheet not found: {name}")
        out = io.StringIO()
        writer = csv.writer(out, lineterminator="\n")
        for row in sheets[name]:
            writer.writerow(["" if value is None else value for value in row])
        return out.getvalue()

    def extract_text(self, data: bytes) -> str:
        blocks = []
        for name, rows in self.extract_rows(data).items():
            blocks.append(f"=== Sheet: {name} ===\n{format_grid(rows)}" if rows else f"=== Sheet: {name} ===")
        return "\n\n".join(blocks)

    def _analyze(self, data: bytes, warnings: Optional[List[Dict]]) -> DocumentMetadata:
        workbook = self._load(data, read_only=True)
        try:
            total_rows = 0
            total_cells = 0
            for sheet in workbook.worksheets:
                max_row = sheet.max_row or 0
                max_column = sheet.max_column or 0
                total_rows += max_row
                total_cells += max_row * max_column
            props = workbook.properties
            metadata = DocumentMetadata(
                sheet_count=len(workbook.worksheets),
                word_count=total_rows,
                title=props.title or None,
                author=props.creator or None,
                created_date=_as_datetime(props.created),
                modified_date=_as_datetime(props.modified),
            )
        finally:
            workbook.close()

        if total_cells > LARGE_SPREADSHEET_CELLS and warnings is not None:
            warnings.append(warning_from_code(ErrorCode.XLSX_LARGE_SPREADSHEET, cells=total_cells))
        return metadata

    def _preview(self, data: bytes) -> str:
        sheets = self.extract_rows(data)
        preview = f"Excel Workbook\nSheets: {len(sheets)}\n\n"
        if sheets:
            first_name, rows = next(iter(sheets.items()))
            preview += f'Preview of "{first_name}":\n'
            for row in rows[:3]:
                preview += " | ".join("" if value is None else str(value) for value in row[:3]) + "\n"
            if len(rows) > 3:
                preview += "...\n"
        return preview

    @staticmethod
    def _unique_sheet_name(candidate: str, used: set) -> str:
        base = _INVALID_SHEET_CHARS_RE.sub("_", candidate).strip() or "Sheet"
        base = base[:MAX_SHEET_NAME]
        name = base
        counter = 1
        while name.lower() in used:
            suffix = f"_{counter}"
            name = base[:MAX_SHEET_NAME - len(suffix)] + suffix
            counter += 1
        used.add(name.lower())
        return name

    def _sheet_name_for(self, title: str, file_index: int, sequence: int, naming: str, used: set) -> str:
        if naming == "sequential":
            candidate = f"Sheet{sequence}"
        elif naming == "original":
            candidate = f"{title}_File{file_index + 1}"
        else:
            candidate = title
        return self._unique_sheet_name(candidate, used)

    def merge_same_format(self, buffers, options=None, names=None) -> ProcessorResult:
        options = options or MergeOptions()
        warnings: List[Dict] = []
        merged = Workbook()
        merged.remove(merged.active)
        used_names: set = set()
        sheet_sequence = 0
        contributed = 0

        for index, data in enumerate(buffers):
            name = _source_name(names, index)
            try:
                source = self._load(data, data_only=not options.preserve_formulas)
                created = []
                for sheet in source.worksheets:
                    sheet_sequence += 1
                    title = self._sheet_name_for(sheet.title, index, sheet_sequence, options.sheet_naming, used_names)
                    target = merged.create_sheet(title=title)
                    created.append(target)
                    for row in sheet.iter_rows():
                        for cell in row:
                            if cell.value is not None:
                                target.cell(row=cell.row, column=cell.column, value=cell.value)
                source.close()
                if created:
                    contributed += 1
                else:
                    record_warning(warnings, "xlsx_no_sheets", "Workbook contained no worksheets", file=name)
            except Exception as exc:
                record_warning(
                    warnings,
                    "xlsx_unreadable",
                    "Could not read workbook; inserted error sheet",
                    file=name,
                    index=index,
                    error=str(exc),
                )
                logger.warning("Could not merge %s: %s", name, exc)
                error_sheet = merged.create_sheet(title=self._unique_sheet_name(f"Error_File{index + 1}", used_names))
                error_sheet["A1"] = f"Error processing file {index + 1} ({name}): {exc}"

        if contributed == 0:
            return ProcessorResult(
                success=False,
                error="Excel merge failed: no workbook contributed any sheets",
                warnings=warnings,
            )

        if options.preserve_metadata:
            merged.properties.title = MERGED_TITLE
            merged.properties.creator = MERGED_AUTHOR

        output = io.BytesIO()
        merged.save(output)
        logger.info("Merged %d workbooks into %d sheets", len(buffers), len(merged.worksheets))
        return ProcessorResult(
            success=True,
            data=output.getvalue(),
            metadata=DocumentMetadata(sheet_count=len(merged.worksheets), title=MERGED_TITLE, author=MERGED_AUTHOR),
            media_type=self.media_type,
            warnings=warnings,
        )


class TextProcessor(BaseProcessor):
    format = LogicalFormat.TXT
    label = "Text Document"
    media_type = "text/plain"

    def decode(self, data: bytes) -> str:
        return decode_text(data, recommended_chunk_size(len(data)))

    def extract_text(self, data: bytes) -> str:
        return sanitize_text(self.decode(data))

    def _analyze(self, data: bytes, warnings: Optional[List[Dict]]) -> DocumentMetadata:
        text = self.extract_text(data)
        words = count_words(text)
        lines = text.split("\n")
        title = lines[0].strip()[:100] if lines and lines[0].strip() else None
        return DocumentMetadata(word_count=words, page_count=max(1, math.ceil(words / WORDS_PER_PAGE)), title=title)

    def _preview(self, data: bytes) -> str:
        text = self.extract_text(data)
        line_count = len(text.split("\n"))
        return (
            f"Text Document\nLines: {line_count}\nWords: {count_words(text)}\n"
            f"Characters: {len(text)}\nSize: {format_bytes(len(data))}\n\nPreview:\n{_snippet(text)}"
        )

    def split_by_lines(self, text: str, lines_per_section: int) -> List[str]:
        if lines_per_section <= 0:
            raise ValueError("lines_per_section must be positive")
        lines = text.split("\n")
        return ["\n".join(lines[i:i + lines_per_section]) for i in range(0, len(lines), lines_per_section)]

    @staticmethod
    def merge_texts(
        texts: Sequence[str],
        separator: str = DEFAULT_TEXT_SEPARATOR,
        include_headers: bool = False,
        names: Optional[Sequence[str]] = None,
    ) -> str:
        """Join non-empty texts in order; with headers every document gets a banner."""
        parts = []
        for index, text in enumerate(texts):
            body = sanitize_text(text or "").strip()
            if not body:
                continue
            if include_headers:
                body = f"=== Document {index + 1}: {_source_name(names, index)} ===\n\n{body}"
            parts.append(body)
        return ("\n\n" if include_headers else separator).join(parts)

    def merge_same_format(self, buffers, options=None, names=None) -> ProcessorResult:
        options = options or MergeOptions()
        warnings: List[Dict] = []
        texts = []
        for index, data in enumerate(buffers):
            try:
                texts.append(self.decode(data))
            except Exception as exc:
                record_warning(warnings, "text_unreadable", "Could not decode text file", file=_source_name(names, index), error=str(exc))
                texts.append("")

        separator = options.text_separator
        if separator is None:
            separator = PAGE_BREAK_SEPARATOR if options.page_breaks else DEFAULT_TEXT_SEPARATOR
        merged = self.merge_texts(texts, separator, options.include_headers, names)
        skipped = sum(1 for text in texts if not sanitize_text(text).strip())
        if skipped:
            record_warning(warnings, "text_empty_skipped", "Skipped empty text documents", count=skipped)
        if not merged:
            return ProcessorResult(success=False, error="Text merge failed: every document was empty", warnings=warnings)

        return ProcessorResult(
            success=True,
            data=merged.encode("utf-8"),
            metadata=DocumentMetadata(word_count=count_words(merged)),
            media_type=self.media_type,
            warnings=warnings,
        )


class CSVProcessor(TextProcessor):
    format = LogicalFormat.CSV
    label = "CSV Document"
    media_type = "text/csv"

    @staticmethod
    def parse_csv(text: str) -> List[List[str]]:
        """
        Naive comma split with surrounding quotes stripped; blank lines skipped.
        Quoted fields containing commas are not supported.
        """
        rows = []
        for line in sanitize_text(text).split("\n"):
            if not line.strip():
                continue
            rows.append([cell.strip().strip('"') for cell in line.split(",")])
        return rows

    @staticmethod
    def format_csv(rows: Sequence[Sequence[str]]) -> str:
        return "\n".join(",".join('"' + str(cell).replace('"', '""') + '"' for cell in row) for row in rows)

    def extract_text(self, data: bytes) -> str:
        return format_grid(self.parse_csv(self.decode(data)))

    def _preview(self, data: bytes) -> str:
        rows = self.parse_csv(self.decode(data))
        preview = "\n".join(" | ".join(row) for row in rows[:5])
        columns = len(rows[0]) if rows else 0
        more = "\n..." if len(rows) > 5 else ""
        return f"CSV Document\nRows: {len(rows)}\nColumns: {columns}\n\nPreview:\n{preview}{more}"

    def merge_rows(self, tables: Sequence[List[List[str]]], include_headers: bool, skip_duplicate_headers: bool):
        merged: List[List[str]] = []
        header_written = False
        for rows in tables:
            if not rows:
                continue
            if include_headers and not header_written:
                merged.extend(rows)
                header_written = True
            elif include_headers and skip_duplicate_headers:
                merged.extend(rows[1:])
            else:
                merged.extend(rows)
        return merged

    def merge_same_format(self, buffers, options=None, names=None) -> ProcessorResult:
        options = options or MergeOptions()
        warnings: List[Dict] = []
        tables = []
        for index, data in enumerate(buffers):
            try:
                tables.append(self.parse_csv(self.decode(data)))
            except Exception as exc:
                record_warning(warnings, "csv_unreadable", "Could not parse CSV file", file=_source_name(names, index), error=str(exc))
                tables.append([])

        rows = self.merge_rows(tables, options.include_headers, options.skip_duplicate_headers)
        if not rows:
            return ProcessorResult(success=False, error="CSV merge failed: no rows in any document", warnings=warnings)

        return ProcessorResult(
            success=True,
            data=self.format_csv(rows).encode("utf-8"),
            metadata=DocumentMetadata(word_count=len(rows)),
            media_type=self.media_type,
            warnings=warnings,
        )


@dataclass
class SlideContent:
    number: int
    title: str = ""
    text: str = ""
    bullets: List[str] = field(default_factory=list)

    def as_text(self) -> str:
        parts = [part for part in (self.title, self.text) if part]
        parts.extend(f"• {bullet}" for bullet in self.bullets)
        return "\n".join(parts)


@dataclass
class Presentation:
    slides: List[SlideContent]
    title: Optional[str] = None
    author: Optional[str] = None
    created: Optional[datetime] = None
    modified: Optional[datetime] = None
    media_count: int = 0


class OOXMLPresentationParser:
    """Reads slide text and core properties straight out of the .pptx package."""

    SLIDE_RE = re.compile(r"^ppt/slides/slide(\d+)\.xml$")
    TITLE_TYPES = ("title", "ctrTitle")
    BODY_TYPES = ("body", "obj", None)

    def parse(self, data: bytes) -> Presentation:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = archive.namelist()
            slide_paths = self._slide_order(archive, names)
            slides = [self._parse_slide(number, archive.read(path)) for number, path in enumerate(slide_paths, 1)]
            presentation = Presentation(
                slides=slides,
                media_count=sum(1 for name in names if name.startswith("ppt/media/")),
            )
            if "docProps/core.xml" in names:
                self._read_core(archive.read("docProps/core.xml"), presentation)
        return presentation

    def _slide_order(self, archive: zipfile.ZipFile, names: List[str]) -> List[str]:
        ordered = []
        try:
            presentation = ET.fromstring(archive.read("ppt/presentation.xml"))
            rels = ET.fromstring(archive.read("ppt/_rels/presentation.xml.rels"))
            targets = {rel.get("Id"): rel.get("Target") for rel in rels.iter(f"{PACKAGE_REL_NS}Relationship")}
            for slide_id in presentation.iter(f"{PRESENTATION_NS}sldId"):
                target = targets.get(slide_id.get(f"{REL_NS}id"))
                if target:
                    path = target.lstrip("/") if target.startswith("/") else f"ppt/{target}"
                    if path in names:
                        ordered.append(path)
        except (KeyError, ET.ParseError):
            ordered = []
        if ordered:
            return ordered
        numbered = [(int(match.group(1)), name) for name in names for match in [self.SLIDE_RE.match(name)] if match]
        return [name for _, name in sorted(numbered)]

    def _parse_slide(self, number: int, xml_bytes: bytes) -> SlideContent:
        slide = SlideContent(number=number)
        text_lines = []
        root = ET.fromstring(xml_bytes)
        for shape in root.iter(f"{PRESENTATION_NS}sp"):
            paragraphs = []
            for para in shape.iter(f"{DRAWING_NS}p"):
                line = "".join(t.text or "" for t in para.iter(f"{DRAWING_NS}t")).strip()
                if line:
                    paragraphs.append(line)
            if not paragraphs:
                continue
            placeholder = shape.find(f"{PRESENTATION_NS}nvSpPr/{PRESENTATION_NS}nvPr/{PRESENTATION_NS}ph")
            ph_type = placeholder.get("type") if placeholder is not None else None
            if placeholder is not None and ph_type in self.TITLE_TYPES and not slide.title:
                slide.title = " ".join(paragraphs)
            elif placeholder is not None and ph_type in self.BODY_TYPES:
                slide.bullets.extend(paragraphs)
            else:
                text_lines.extend(paragraphs)
        slide.text = "\n".join(text_lines)
        return slide

    @staticmethod
    def _read_core(xml_bytes: bytes, presentation: Presentation) -> None:
        root = ET.fromstring(xml_bytes)

        def text_of(tag: str) -> Optional[str]:
            node = root.find(tag)
            return node.text.strip() if node is not None and node.text and node.text.strip() else None

        presentation.title = text_of(f"{DC_NS}title")
        presentation.author = text_of(f"{DC_NS}creator")
        for attr, tag in (("created", f"{DCTERMS_NS}created"), ("modified", f"{DCTERMS_NS}modified")):
            value = text_of(tag)
            if value:
                try:
                    setattr(presentation, attr, date_parser.isoparse(value))
                except ValueError:
                    logger.debug("Unparseable presentation date %r", value)


class PowerPointProcessor(BaseProcessor):
    format = LogicalFormat.PPTX
    label = "PowerPoint Presentation"
    media_type = "text/plain"

    UNAVAILABLE_TEXT = "PowerPoint text extraction not available"
    UNAVAILABLE_MERGE = (
        "PowerPoint merging is not available. Convert the presentations to PDF and merge those instead."
    )

    def __init__(self, parser: Optional[OOXMLPresentationParser] = OOXMLPresentationParser()):
        self.parser = parser

    def parse(self, data: bytes) -> Presentation:
        return self.parser.parse(data)

    def extract_text(self, data: bytes) -> str:
        if self.parser is None:
            return self.UNAVAILABLE_TEXT
        presentation = self.parse(data)
        return "\n\n".join(
            f"--- Slide {slide.number} ---\n{slide.as_text()}".rstrip() for slide in presentation.slides
        )

    def _analyze(self, data: bytes, warnings: Optional[List[Dict]]) -> DocumentMetadata:
        if self.parser is None:
            return DocumentMetadata(title=self.label)
        presentation = self.parse(data)
        words = sum(
            count_words(" ".join([slide.title, slide.text, *slide.bullets])) for slide in presentation.slides
        )
        if presentation.media_count and warnings is not None:
            warnings.append(warning_from_code(ErrorCode.PPTX_MEDIA_NOT_SUPPORTED, media_parts=presentation.media_count))
        return DocumentMetadata(
            slide_count=len(presentation.slides),
            word_count=words,
            title=presentation.title or self.label,
            author=presentation.author,
            created_date=presentation.created,
            modified_date=presentation.modified,
        )

    def _preview(self, data: bytes) -> str:
        if self.parser is None:
            return f"{self.label}\n{self.UNAVAILABLE_TEXT}"
        metadata = self._analyze(data, None)
        preview = f"{self.label}\n"
        if metadata.slide_count:
            preview += f"Slides: {metadata.slide_count}\n"
        if metadata.word_count:
            preview += f"Words: ~{metadata.word_count}\n"
        if metadata.title and metadata.title != self.label:
            preview += f"Title: {metadata.title}\n"
        if metadata.author:
            preview += f"Author: {metadata.author}\n"
        preview += f"Size: {format_bytes(len(data))}\n"
        slides = self.parse(data).slides
        if slides:
            preview += f"\nPreview:\n{_snippet(slides[0].as_text())}"
        return preview

    def merge_same_format(self, buffers, options=None, names=None) -> ProcessorResult:
        if self.parser is None:
            return ProcessorResult(success=False, error=self.UNAVAILABLE_MERGE)
        warnings: List[Dict] = []
        sections = []
        total_slides = 0
        for index, data in enumerate(buffers):
            name = _source_name(names, index)
            header = f"=== Document {index + 1}: {name} ==="
            try:
                slides = self.parse(data).slides
            except Exception as exc:
                record_warning(warnings, "pptx_unreadable", "Could not read presentation", file=name, error=str(exc))
                sections.append(f"{header}\n\n[Error: Could not process document {index + 1} ({name})]")
                continue
            total_slides += len(slides)
            body = "\n\n".join(f"--- Slide {slide.number} ---\n{slide.as_text()}".rstrip() for slide in slides)
            sections.append(f"{header}\n\n{body}" if body else header)

        if total_slides == 0:
            return ProcessorResult(success=False, error="PowerPoint merge failed: no slides found", warnings=warnings)

        record_warning(
            warnings,
            ErrorCode.PPTX_MEDIA_NOT_SUPPORTED.value,
            "PowerPoint output is text only; layouts and media are not preserved",
        )
        return ProcessorResult(
            success=True,
            data="\n\n".join(sections).encode("utf-8"),
            metadata=DocumentMetadata(slide_count=total_slides),
            media_type=self.media_type,
            warnings=warnings,
        )


PROCESSOR_CLASSES = {
    LogicalFormat.PDF: PDFProcessor,
    LogicalFormat.DOCX: WordProcessor,
    LogicalFormat.XLSX: ExcelProcessor,
    LogicalFormat.PPTX: PowerPointProcessor,
    LogicalFormat.TXT: TextProcessor,
    LogicalFormat.CSV: CSVProcessor,
}


@lru_cache(maxsize=None)
def get_processor(fmt: LogicalFormat) -> BaseProcessor:
    return PROCESSOR_CLASSES[LogicalFormat(fmt)]()
