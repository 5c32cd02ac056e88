"""
Error taxonomy and classification for the document merger.
Maps raw failures onto a fixed set of codes carrying severity and user guidance.
"""

import importlib.util
import logging
import sys
import zipfile
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from pypdf.errors import FileNotDecryptedError, PdfReadError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode(str, Enum):
    # Upload / validation
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    FILE_CORRUPTED = "FILE_CORRUPTED"
    FILE_EMPTY = "FILE_EMPTY"
    # Processing
    PROCESSING_FAILED = "PROCESSING_FAILED"
    MEMORY_EXCEEDED = "MEMORY_EXCEEDED"
    MERGE_FAILED = "MERGE_FAILED"
    CONVERSION_FAILED = "CONVERSION_FAILED"
    # Format specific
    PDF_PASSWORD_PROTECTED = "PDF_PASSWORD_PROTECTED"
    PDF_EXTRACTION_FAILED = "PDF_EXTRACTION_FAILED"
    DOCX_COMPLEX_FORMATTING = "DOCX_COMPLEX_FORMATTING"
    XLSX_LARGE_SPREADSHEET = "XLSX_LARGE_SPREADSHEET"
    PPTX_MEDIA_NOT_SUPPORTED = "PPTX_MEDIA_NOT_SUPPORTED"
    # Environment
    BROWSER_NOT_SUPPORTED = "BROWSER_NOT_SUPPORTED"
    INSUFFICIENT_MEMORY = "INSUFFICIENT_MEMORY"
    # Generic
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


@dataclass(frozen=True)
class ErrorSpec:
    title: str
    message: str
    user_action: str
    severity: Severity


ERROR_CODES: Dict[ErrorCode, ErrorSpec] = {
    ErrorCode.FILE_TOO_LARGE: ErrorSpec(
        "File Too Large",
        "The selected file exceeds the maximum size limit.",
        "Please choose a smaller file or compress the document.",
        Severity.MEDIUM,
    ),
    ErrorCode.UNSUPPORTED_FORMAT: ErrorSpec(
        "Unsupported File Format",
        "This file format is not supported for merging.",
        "Please convert your file to PDF, DOCX, XLSX, PPTX, TXT, or CSV format.",
        Severity.MEDIUM,
    ),
    ErrorCode.FILE_CORRUPTED: ErrorSpec(
        "Corrupted File",
        "The file appears to be damaged or corrupted.",
        "Try opening the file in its original application to verify it works, then add it again.",
        Severity.HIGH,
    ),
    ErrorCode.FILE_EMPTY: ErrorSpec(
        "Empty File",
        "The selected file appears to be empty.",
        "Please select a file that contains content.",
        Severity.MEDIUM,
    ),
    ErrorCode.PROCESSING_FAILED: ErrorSpec(
        "Processing Failed",
        "Unable to process the document due to an internal error.",
        "Please try again. If the problem persists, try converting the file to PDF first.",
        Severity.HIGH,
    ),
    ErrorCode.MEMORY_EXCEEDED: ErrorSpec(
        "Memory Limit Exceeded",
        "The document is too large to process in memory.",
        "Try processing fewer documents at once or use smaller files.",
        Severity.HIGH,
    ),
    ErrorCode.MERGE_FAILED: ErrorSpec(
        "Merge Operation Failed",
        "Unable to combine the selected documents.",
        "Ensure all documents are valid and try again with fewer files.",
        Severity.HIGH,
    ),
    ErrorCode.CONVERSION_FAILED: ErrorSpec(
        "Format Conversion Failed",
        "Unable to convert document to the target format.",
        "Try manually converting the file using its original application first.",
        Severity.MEDIUM,
    ),
    ErrorCode.PDF_PASSWORD_PROTECTED: ErrorSpec(
        "Password Protected PDF",
        "This PDF is password protected and cannot be processed.",
        "Please unlock the PDF in a PDF reader first, then add it again.",
        Severity.MEDIUM,
    ),
    ErrorCode.PDF_EXTRACTION_FAILED: ErrorSpec(
        "PDF Text Extraction Failed",
        "Unable to extract text from this PDF document.",
        "The PDF might contain only images. Try using OCR software first.",
        Severity.LOW,
    ),
    ErrorCode.DOCX_COMPLEX_FORMATTING: ErrorSpec(
        "Complex Formatting Detected",
        "This document contains complex formatting that may not be preserved.",
        "For best results, consider converting to PDF first.",
        Severity.LOW,
    ),
    ErrorCode.XLSX_LARGE_SPREADSHEET: ErrorSpec(
        "Large Spreadsheet",
        "This spreadsheet is very large and may take time to process.",
        "Consider splitting large spreadsheets into smaller files.",
        Severity.LOW,
    ),
    ErrorCode.PPTX_MEDIA_NOT_SUPPORTED: ErrorSpec(
        "Media Content Not Supported",
        "Images, videos, and other media in the presentation cannot be processed.",
        "Only text content will be preserved in the merged document.",
        Severity.LOW,
    ),
    ErrorCode.BROWSER_NOT_SUPPORTED: ErrorSpec(
        "Environment Not Supported",
        "This environment does not provide the features required for document processing.",
        "Install the missing libraries or use a supported Python version.",
        Severity.CRITICAL,
    ),
    ErrorCode.INSUFFICIENT_MEMORY: ErrorSpec(
        "Insufficient Memory",
        "There is not enough memory available to process these documents.",
        "Close other applications and try processing fewer documents at once.",
        Severity.HIGH,
    ),
    ErrorCode.UNKNOWN_ERROR: ErrorSpec(
        "Unexpected Error",
        "An unexpected error occurred while processing your request.",
        "Please try again. If the problem persists, try with different files.",
        Severity.MEDIUM,
    ),
    ErrorCode.TIMEOUT_ERROR: ErrorSpec(
        "Processing Timeout",
        "The operation took too long and was cancelled.",
        "Try processing smaller files or fewer documents at once.",
        Severity.MEDIUM,
    ),
}


class DocumentError(Exception):
    """Exception carrying a taxonomy code, severity and user guidance."""

    def __init__(
        self,
        code: ErrorCode,
        message: Optional[str] = None,
        severity: Optional[Severity] = None,
        user_action: Optional[str] = None,
        technical_details: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        spec = ERROR_CODES.get(code, ERROR_CODES[ErrorCode.UNKNOWN_ERROR])
        self.code = ErrorCode(code)
        self.message = message or spec.message
        self.severity = Severity(severity) if severity else spec.severity
        self.user_action = user_action or spec.user_action
        if technical_details is None and cause is not None:
            technical_details = str(cause)
        self.technical_details = technical_details
        super().__init__(self.message)

    @property
    def title(self) -> str:
        return ERROR_CODES.get(self.code, ERROR_CODES[ErrorCode.UNKNOWN_ERROR]).title

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "title": self.title,
            "message": self.message,
            "user_action": self.user_action,
            "technical_details": self.technical_details,
            "severity": self.severity.value,
        }

    def __repr__(self) -> str:
        return f"DocumentError({self.code.value!r}, {self.message!r})"


@dataclass
class ErrorDetails:
    code: str
    title: str
    message: str
    user_action: str
    severity: str
    technical_details: Optional[str] = None


# Predicates receive (exception, lower-cased message, context hint).
_Predicate = Callable[[BaseException, str, Optional[str]], bool]


def _is_instance(*types) -> _Predicate:
    types = tuple(t for t in types if t is not None)
    return lambda exc, _msg, _ctx: bool(types) and isinstance(exc, types)


def _contains_all(*phrases: str) -> _Predicate:
    return lambda _exc, msg, _ctx: all(phrase in msg for phrase in phrases)


def _contains_any(*phrases: str) -> _Predicate:
    return lambda _exc, msg, _ctx: any(phrase in msg for phrase in phrases)


def _context_failed(context: str) -> _Predicate:
    return lambda _exc, msg, ctx: ctx == context and "failed" in msg


# Best-effort classification, evaluated top to bottom. First match wins.
CLASSIFICATION_RULES: List[Tuple[_Predicate, ErrorCode]] = [
    (_is_instance(MemoryError), ErrorCode.MEMORY_EXCEEDED),
    (_is_instance(TimeoutError), ErrorCode.TIMEOUT_ERROR),
    (_is_instance(FileNotDecryptedError), ErrorCode.PDF_PASSWORD_PROTECTED),
    (_is_instance(zipfile.BadZipFile), ErrorCode.FILE_CORRUPTED),
    (_is_instance(PdfReadError), ErrorCode.FILE_CORRUPTED),
    (_contains_all("exceeds", "limit"), ErrorCode.FILE_TOO_LARGE),
    (_contains_all("file size", "too large"), ErrorCode.FILE_TOO_LARGE),
    (_contains_all("unsupported", "format"), ErrorCode.UNSUPPORTED_FORMAT),
    (_contains_all("invalid", "format"), ErrorCode.UNSUPPORTED_FORMAT),
    (_contains_all("not supported", "conversion"), ErrorCode.CONVERSION_FAILED),
    (_contains_any("corrupt", "damaged"), ErrorCode.FILE_CORRUPTED),
    (lambda _e, msg, _c: "invalid" in msg and ("pdf" in msg or "document" in msg), ErrorCode.FILE_CORRUPTED),
    (_contains_any("empty", "no content"), ErrorCode.FILE_EMPTY),
    # "out of memory" must precede the broader memory check or it is unreachable
    (_contains_any("out of memory"), ErrorCode.MEMORY_EXCEEDED),
    (_contains_any("memory", "heap"), ErrorCode.INSUFFICIENT_MEMORY),
    (_contains_all("password", "protect"), ErrorCode.PDF_PASSWORD_PROTECTED),
    (_contains_all("pdf", "text extraction"), ErrorCode.PDF_EXTRACTION_FAILED),
    (_contains_all("merge", "failed"), ErrorCode.MERGE_FAILED),
    (_contains_all("conversion", "failed"), ErrorCode.CONVERSION_FAILED),
    (_contains_any("timeout", "timed out"), ErrorCode.TIMEOUT_ERROR),
    (_context_failed("pdf"), ErrorCode.PDF_EXTRACTION_FAILED),
    (_context_failed("merge"), ErrorCode.MERGE_FAILED),
    (_context_failed("processing"), ErrorCode.PROCESSING_FAILED),
]


class ErrorHandler:
    """Centralized conversion of raw failures into DocumentError instances."""

    REQUIRED_MODULES = ("pypdf", "docx", "openpyxl", "reportlab")
    MIN_PYTHON = (3, 9)

    @staticmethod
    def identify_error_code(error: Any, context: Optional[str] = None) -> ErrorCode:
        """Classify an exception or message. Never raises; unmatched input is UNKNOWN_ERROR."""
        exc = error if isinstance(error, BaseException) else Exception(str(error))
        message = str(exc).lower()
        for predicate, code in CLASSIFICATION_RULES:
            try:
                if predicate(exc, message, context):
                    return code
            except Exception:
                continue
        return ErrorCode.UNKNOWN_ERROR

    @classmethod
    def create_user_friendly_error(
        cls,
        error: Any,
        context: Optional[str] = None,
        fallback_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
    ) -> DocumentError:
        if isinstance(error, DocumentError):
            return error

        raw_message = str(error) if error is not None else ""
        code = cls.identify_error_code(error, context)
        if code == ErrorCode.UNKNOWN_ERROR:
            code = fallback_code
        if not raw_message and isinstance(error, BaseException):
            raw_message = type(error).__name__
        return DocumentError(
            code,
            technical_details=raw_message or None,
            cause=error if isinstance(error, BaseException) else None,
        )

    @staticmethod
    def get_error_details(error: DocumentError) -> ErrorDetails:
        spec = ERROR_CODES.get(error.code, ERROR_CODES[ErrorCode.UNKNOWN_ERROR])
        return ErrorDetails(
            code=error.code.value,
            title=spec.title,
            message=error.message or spec.message,
            user_action=error.user_action or spec.user_action,
            severity=error.severity.value,
            technical_details=error.technical_details,
        )

    @classmethod
    def log_and_raise(cls, error: Any, context: Optional[str] = None):
        """Log technical details, then raise the user-facing error."""
        user_error = cls.create_user_friendly_error(error, context)
        logger.error(
            "[%s] %s: %s (severity=%s, details=%s)",
            user_error.code.value,
            context or "unknown context",
            user_error.message,
            user_error.severity.value,
            user_error.technical_details,
        )
        if isinstance(error, BaseException) and error is not user_error:
            raise user_error from error
        raise user_error

    @classmethod
    async def handle_async(cls, operation: Callable[[], Awaitable[T]], context: Optional[str] = None) -> T:
        try:
            return await operation()
        except DocumentError:
            raise
        except Exception as exc:
            raise cls.create_user_friendly_error(exc, context) from exc

    @classmethod
    def check_environment_support(cls) -> None:
        """Raise BROWSER_NOT_SUPPORTED when the runtime lacks a required capability."""
        if sys.version_info < cls.MIN_PYTHON:
            raise DocumentError(
                ErrorCode.BROWSER_NOT_SUPPORTED,
                f"Python {'.'.join(map(str, cls.MIN_PYTHON))}+ is required for document processing.",
            )
        for module_name in cls.REQUIRED_MODULES:
            if importlib.util.find_spec(module_name) is None:
                raise DocumentError(
                    ErrorCode.BROWSER_NOT_SUPPORTED,
                    f"The '{module_name}' library, which is required for document processing, is not installed.",
                )

    @staticmethod
    def severity_label(severity: Severity) -> str:
        return {
            Severity.LOW: "warning",
            Severity.MEDIUM: "notice",
            Severity.HIGH: "error",
            Severity.CRITICAL: "fatal",
        }[Severity(severity)]


def warning_from_code(code: ErrorCode, **context) -> Dict[str, Any]:
    """Build a structured warning dict for a low-severity taxonomy code."""
    spec = ERROR_CODES[code]
    warning = {
        "code": code.value,
        "message": spec.message,
        "severity": spec.severity.value,
    }
    warning.update(context)
    return warning


def record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {"code": code, "message": message}
    warning.update(context)
    warnings.append(warning)
