"""
Format detection and validation for incoming documents.
Classifies files into logical formats and enforces size/support limits.
"""

import io
import mimetypes
import os
import zipfile
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Union

from pypdf import PdfReader

from chunk_processor import ChunkProcessor, recommended_chunk_size
from error_handler import DocumentError, ErrorCode

MAX_FILE_SIZE = 50 * 1024 * 1024
MAX_FILES_BULK = 100

PDF_SIGNATURE = b"%PDF-"
ZIP_SIGNATURE = b"PK\x03\x04"
OLE_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"


class LogicalFormat(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    XLSX = "xlsx"
    PPTX = "pptx"
    TXT = "txt"
    CSV = "csv"

    @property
    def extension(self) -> str:
        return f".{self.value}"

    @property
    def media_type(self) -> str:
        return MEDIA_TYPES[self]


SUPPORTED_MIME_TYPES: Dict[LogicalFormat, List[str]] = {
    LogicalFormat.PDF: ["application/pdf"],
    LogicalFormat.DOCX: [
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/msword",
    ],
    LogicalFormat.XLSX: [
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
    ],
    LogicalFormat.PPTX: [
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "application/vnd.ms-powerpoint",
    ],
    LogicalFormat.TXT: ["text/plain"],
    LogicalFormat.CSV: ["text/csv", "application/csv"],
}

EXTENSION_MAP: Dict[str, LogicalFormat] = {
    "pdf": LogicalFormat.PDF,
    "docx": LogicalFormat.DOCX,
    "doc": LogicalFormat.DOCX,
    "xlsx": LogicalFormat.XLSX,
    "xls": LogicalFormat.XLSX,
    "pptx": LogicalFormat.PPTX,
    "ppt": LogicalFormat.PPTX,
    "txt": LogicalFormat.TXT,
    "csv": LogicalFormat.CSV,
}

MEDIA_TYPES: Dict[LogicalFormat, str] = {fmt: mimes[0] for fmt, mimes in SUPPORTED_MIME_TYPES.items()}

# Main part that must exist inside each OOXML package
OOXML_MAIN_PARTS: Dict[LogicalFormat, str] = {
    LogicalFormat.DOCX: "word/document.xml",
    LogicalFormat.XLSX: "xl/workbook.xml",
    LogicalFormat.PPTX: "ppt/presentation.xml",
}


@dataclass
class InputFile:
    """File-like handle supplied by the caller: name, declared MIME type, size and a byte accessor."""

    name: str
    mime_type: str
    size: int
    reader: Callable[[], bytes]

    def read(self) -> bytes:
        return self.reader()

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: Optional[str] = None) -> "InputFile":
        if mime_type is None:
            mime_type = mimetypes.guess_type(name)[0] or ""
        payload = bytes(data)
        return cls(name=name, mime_type=mime_type, size=len(payload), reader=lambda: payload)

    @classmethod
    def from_path(cls, path: Union[str, os.PathLike], mime_type: Optional[str] = None) -> "InputFile":
        path = os.fspath(path)
        if mime_type is None:
            mime_type = mimetypes.guess_type(path)[0] or ""

        def _read() -> bytes:
            with open(path, "rb") as handle:
                return handle.read()

        return cls(name=os.path.basename(path), mime_type=mime_type, size=os.path.getsize(path), reader=_read)


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[DocumentError] = None


def _extension_of(name: str) -> str:
    _, ext = os.path.splitext(name or "")
    return ext.lstrip(".").lower()


def detect(file: InputFile) -> Optional[LogicalFormat]:
    """Declared MIME type first, then filename extension. None when both fail."""
    mime_type = (file.mime_type or "").split(";")[0].strip().lower()
    if mime_type:
        for fmt, mime_types in SUPPORTED_MIME_TYPES.items():
            if mime_type in mime_types:
                return fmt
    return EXTENSION_MAP.get(_extension_of(file.name))


def validate(file: InputFile, max_file_size: int = MAX_FILE_SIZE) -> ValidationResult:
    if file.size > max_file_size:
        limit_mb = max_file_size / 1024 / 1024
        return ValidationResult(False, DocumentError(
            ErrorCode.FILE_TOO_LARGE,
            f"{file.name}: file size exceeds {limit_mb:g}MB limit",
        ))
    if detect(file) is None:
        return ValidationResult(False, DocumentError(
            ErrorCode.UNSUPPORTED_FORMAT,
            f"{file.name}: unsupported file format",
        ))
    if file.size == 0:
        return ValidationResult(False, DocumentError(ErrorCode.FILE_EMPTY, f"{file.name}: file is empty"))
    return ValidationResult(True)


def validate_batch(
    files: Iterable[InputFile],
    existing_count: int = 0,
    max_files: int = MAX_FILES_BULK,
) -> None:
    """Raise when adding ``files`` would push the session over the batch limit."""
    incoming = len(list(files))
    if existing_count + incoming > max_files:
        raise DocumentError(
            ErrorCode.FILE_TOO_LARGE,
            f"Cannot add more than {max_files} documents (batch limit exceeded)",
            user_action=f"Remove some documents or merge in batches of at most {max_files}.",
        )


def _text_chunk_ok(chunk: bytes, _is_first: bool, _is_last: bool) -> bool:
    return b"\x00" not in chunk


def _check_ooxml(data: bytes, fmt: LogicalFormat) -> Optional[str]:
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = set(archive.namelist())
    except zipfile.BadZipFile as exc:
        return f"Invalid {fmt.value.upper()} archive: {exc}"
    if OOXML_MAIN_PARTS[fmt] not in names:
        return f"Invalid {fmt.value.upper()} structure: missing {OOXML_MAIN_PARTS[fmt]}"
    return None


def _check_pdf(data: bytes) -> Optional[str]:
    try:
        reader = PdfReader(io.BytesIO(data))
        if reader.is_encrypted:
            # Page count is unavailable until decrypted; the header is enough here
            return None
        if len(reader.pages) == 0:
            return "Invalid PDF structure: document has no pages"
    except Exception as exc:
        return f"Invalid PDF structure: {exc}"
    return None


def validate_structure(data: bytes, fmt: LogicalFormat) -> ValidationResult:
    """
    Check the format's magic signature and attempt a lightweight parse.
    Failures are returned, never raised, so a batch can continue.
    """
    fmt = LogicalFormat(fmt)
    if not data:
        return ValidationResult(False, DocumentError(ErrorCode.FILE_EMPTY, "File is empty"))

    if fmt == LogicalFormat.PDF:
        if not data.startswith(PDF_SIGNATURE):
            return ValidationResult(False, DocumentError(
                ErrorCode.FILE_CORRUPTED, "Invalid PDF file format (missing %PDF- header)",
            ))
        problem = _check_pdf(data)
    elif fmt == LogicalFormat.DOCX and data.startswith(OLE_SIGNATURE):
        # Legacy .doc: text is recovered from the OLE stream later
        problem = None
    elif fmt in OOXML_MAIN_PARTS:
        if not data.startswith(ZIP_SIGNATURE):
            return ValidationResult(False, DocumentError(
                ErrorCode.FILE_CORRUPTED,
                f"Invalid {fmt.value.upper()} file format (not a valid ZIP archive)",
            ))
        problem = _check_ooxml(data, fmt)
    else:
        outcome = ChunkProcessor.validate_buffer_structure(
            data, _text_chunk_ok, chunk_size=recommended_chunk_size(len(data)),
        )
        problem = None if outcome.valid else f"Binary content in text file ({outcome.error})"

    if problem:
        return ValidationResult(False, DocumentError(ErrorCode.FILE_CORRUPTED, problem, technical_details=problem))
    return ValidationResult(True)


def chunk_validator_for(fmt: LogicalFormat) -> Callable[[bytes, bool, bool], bool]:
    """Per-chunk predicate used by the streaming validation walk."""
    if fmt in (LogicalFormat.TXT, LogicalFormat.CSV):
        return _text_chunk_ok
    if fmt == LogicalFormat.PDF:
        return lambda chunk, is_first, _is_last: not is_first or chunk.startswith(PDF_SIGNATURE)
    signatures = (ZIP_SIGNATURE, OLE_SIGNATURE) if fmt == LogicalFormat.DOCX else (ZIP_SIGNATURE,)
    return lambda chunk, is_first, _is_last: not is_first or chunk.startswith(signatures)


def media_type_for(fmt: LogicalFormat) -> str:
    return MEDIA_TYPES[LogicalFormat(fmt)]


def extension_for(fmt: LogicalFormat) -> str:
    return LogicalFormat(fmt).extension
