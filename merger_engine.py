"""
Document Merger Engine - merge orchestration
Tracks documents through validation and analysis, picks the output format and runs merges.
"""

import asyncio
import atexit
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from chunk_processor import MB, ChunkProcessor, _safe_progress, recommended_chunk_size
from conversion_bridge import ConversionInput, convert_and_merge_to_pdf
from document_processors import DocumentMetadata, MergeOptions, get_processor
from error_handler import DocumentError, ErrorCode, ErrorHandler
from format_detection import (
    MAX_FILE_SIZE,
    MAX_FILES_BULK,
    MEDIA_TYPES,
    InputFile,
    LogicalFormat,
    chunk_validator_for,
    detect,
    validate,
    validate_batch,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOTAL_BYTES = 500 * MB

# Module-level tracking of live output buffers for atexit release if a session is never closed.
_active_outputs: Set["OutputHandle"] = set()
_active_outputs_lock = threading.Lock()


def _atexit_release_outputs():
    """Last-resort release of output buffers when the process exits."""
    with _active_outputs_lock:
        outputs = list(_active_outputs)
    for output in outputs:
        output.release()


atexit.register(_atexit_release_outputs)


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class DocumentStage(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    ANALYZING = "analyzing"
    PREVIEWING = "previewing"
    PROCESSED = "processed"
    ERROR = "error"


TERMINAL_STAGES = (DocumentStage.PROCESSED, DocumentStage.ERROR)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OutputHandle:
    """
    Owns the merged output buffer until released.

    Use as a context manager, or call ``release()``; the orchestrator releases
    outputs on cancellation, job replacement and teardown.
    """

    def __init__(self, data: bytes, media_type: str, filename: str):
        self._data: Optional[bytes] = data
        self.media_type = media_type
        self.filename = filename
        self.size = len(data)
        with _active_outputs_lock:
            _active_outputs.add(self)

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> bytes:
        if self._data is None:
            raise ValueError(f"Output {self.filename} has been released")
        return self._data

    def save(self, path: str) -> str:
        """Write the buffer to ``path`` (a directory gets the handle's file name)."""
        if os.path.isdir(path):
            path = os.path.join(path, self.filename)
        with open(path, "wb") as handle:
            handle.write(self.data)
        return path

    def release(self) -> None:
        self._data = None
        with _active_outputs_lock:
            _active_outputs.discard(self)

    def __enter__(self) -> "OutputHandle":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else f"{self.size} bytes"
        return f"OutputHandle({self.filename!r}, {self.media_type!r}, {state})"


@dataclass(eq=False)
class DocumentHandle:
    source: InputFile
    format: LogicalFormat
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: DocumentStatus = DocumentStatus.PENDING
    stage: DocumentStage = DocumentStage.PENDING
    metadata: Optional[DocumentMetadata] = None
    preview: Optional[str] = None
    progress: float = 0.0
    error: Optional[DocumentError] = None
    warnings: List[Dict] = field(default_factory=list)
    _data: Optional[bytes] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def size(self) -> int:
        return self.source.size

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def read(self) -> bytes:
        if self._data is None:
            self._data = self.source.read()
        return self._data

    def release(self) -> None:
        self._data = None
        self.preview = None


@dataclass(eq=False)
class ProcessingJob:
    documents: List[DocumentHandle]
    options: MergeOptions
    output_format: LogicalFormat
    format_reason: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    result: Optional[OutputHandle] = None
    error: Optional[DocumentError] = None
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    warnings: List[Dict] = field(default_factory=list)
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        summary = {
            "job_id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "output_format": self.output_format.value,
            "format_reason": self.format_reason,
            "documents": [document.name for document in self.documents],
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if self.result is not None and not self.result.released:
            summary["output"] = {
                "filename": self.result.filename,
                "media_type": self.result.media_type,
                "size": self.result.size,
            }
        if self.warnings:
            summary["warnings"] = self.warnings
        if self.error is not None:
            summary["error"] = self.error.to_dict()
        return summary


class RunLogger:
    """Record run events in memory and, when a logs directory is configured, to text and JSONL logs."""

    def __init__(
        self,
        run_id: str,
        logs_dir: Optional[str] = None,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.enabled = enabled
        self.privacy_mode = privacy_mode
        self.run_id = run_id
        self.logs_dir = logs_dir
        self.event_callback = event_callback
        self.events: List[Dict[str, Any]] = []
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log") if logs_dir else None
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl") if logs_dir else None
        self._text_handle = None
        self._jsonl_handle = None

        if self.enabled and logs_dir:
            os.makedirs(logs_dir, exist_ok=True)
            self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
            self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")

    def close(self) -> None:
        for handle in (self._text_handle, self._jsonl_handle):
            if handle is not None:
                handle.close()
        self._text_handle = None
        self._jsonl_handle = None

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if isinstance(value, str) and key.lower() in {"file", "source", "destination", "path"}:
            return os.path.basename(value)
        return value

    def _sanitize_context(self, context: Dict) -> Dict:
        return {key: self._redact_value(key, value) for key, value in context.items()}

    def log(self, level: str, event: str, message: str, **context) -> None:
        if not self.enabled:
            return
        timestamp = datetime.now().isoformat()
        safe_context = self._sanitize_context(context)
        payload = {
            "ts": timestamp,
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": safe_context,
        }
        self.events.append(payload)
        logger.log(getattr(logging, level.upper(), logging.INFO), "%s: %s", event, message)

        if self._jsonl_handle is not None:
            self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            self._jsonl_handle.flush()
        if self._text_handle is not None:
            text_context = ""
            if safe_context:
                context_parts = [f"{key}={value}" for key, value in sorted(safe_context.items())]
                text_context = " | " + ", ".join(context_parts)
            self._text_handle.write(f"[{timestamp}] {level.upper()} {event}: {message}{text_context}\n")
            self._text_handle.flush()
        _safe_progress(self.event_callback, payload)


def decide_output_format(formats: Sequence[LogicalFormat]) -> Tuple[LogicalFormat, str]:
    """
    Pick the output format for a set of input formats.

    Empty input and mixed formats produce PDF. Two or more Word documents are
    also merged through PDF, which keeps their layout better than a Word merge.
    """
    formats = [LogicalFormat(fmt) for fmt in formats]
    if not formats:
        return LogicalFormat.PDF, "No documents selected; defaulting to PDF"
    unique = set(formats)
    if len(unique) > 1:
        return LogicalFormat.PDF, "Mixed document formats are converted to PDF for cross-format compatibility"
    only = formats[0]
    if only == LogicalFormat.DOCX and len(formats) >= 2:
        return LogicalFormat.PDF, "Multiple Word documents are merged as PDF to preserve formatting fidelity"
    return only, f"All documents are {only.value.upper()}; merging natively"


def plan_merge(
    formats: Sequence[LogicalFormat],
    requested: Optional[LogicalFormat] = None,
) -> Tuple[LogicalFormat, str, str]:
    """
    Return (output format, reason, route) where route is "native" or "convert".
    Raises DocumentError before any work starts when the combination is unsupported.
    """
    formats = [LogicalFormat(fmt) for fmt in formats]
    decided, reason = decide_output_format(formats)
    if requested is not None and LogicalFormat(requested) != decided:
        source = "/".join(sorted({fmt.value for fmt in formats})) or "nothing"
        raise DocumentError(
            ErrorCode.CONVERSION_FAILED,
            f"Conversion from {source} to {LogicalFormat(requested).value} is not supported",
            user_action=f"Choose {decided.value.upper()} as the output format or leave it on automatic.",
        )
    unique = set(formats)
    if decided == LogicalFormat.PDF and (len(unique) > 1 or formats.count(LogicalFormat.DOCX) >= 2):
        return decided, reason, "convert"
    if unique == {decided}:
        return decided, reason, "native"
    raise DocumentError(
        ErrorCode.CONVERSION_FAILED,
        f"Conversion to {decided.value} is not supported for these documents",
    )


_EXTENSIONS_BY_MEDIA_TYPE = {media_type: fmt.extension for fmt, media_type in MEDIA_TYPES.items()}


def build_output_filename(output_name: str, media_type: str) -> str:
    base = os.path.basename((output_name or "").strip()) or "merged-document"
    extension = _EXTENSIONS_BY_MEDIA_TYPE.get(media_type, "")
    if extension and base.lower().endswith(extension):
        return base
    return f"{base}{extension}"


class MergeOrchestrator:
    """Coordinates document intake, per-document pipelines and merge jobs for one session"""

    def __init__(
        self,
        max_file_size=MAX_FILE_SIZE,
        max_files=MAX_FILES_BULK,
        max_total_bytes=DEFAULT_MAX_TOTAL_BYTES,
        max_concurrent_files=ChunkProcessor.MAX_CONCURRENT_FILES,
        enable_detailed_logging=True,
        log_privacy_mode="redacted",
        logs_dir=None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.max_file_size = int(max_file_size)
        self.max_files = max(1, int(max_files))
        self.max_total_bytes = int(max_total_bytes)
        self.max_concurrent_files = max(1, int(max_concurrent_files))
        self.error_handler = ErrorHandler()
        self.documents: List[DocumentHandle] = []
        self.current_job: Optional[ProcessingJob] = None
        self.run_id = datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
        self.run_logger = RunLogger(
            run_id=self.run_id,
            logs_dir=logs_dir,
            enabled=enable_detailed_logging,
            privacy_mode=log_privacy_mode,
            event_callback=event_callback,
        )
        self._closed = False

    # Session lifecycle

    def __enter__(self) -> "MergeOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        """Release every document buffer and output, then close the run log."""
        if self._closed:
            return
        self._discard_job()
        self.clear_documents()
        self.run_logger.log("info", "session_closed", "Session closed")
        self.run_logger.close()
        self._closed = True

    # Document intake

    def add_documents(self, files: Iterable[InputFile]) -> Tuple[List[DocumentHandle], List[DocumentError]]:
        """
        Validate and register files. Returns the accepted handles and the per-file rejections.
        Raises DocumentError when the batch would exceed the document limit.
        """
        files = list(files)
        validate_batch(files, existing_count=len(self.documents), max_files=self.max_files)

        accepted: List[DocumentHandle] = []
        rejected: List[DocumentError] = []
        total_bytes = sum(document.size for document in self.documents)
        for file in files:
            result = validate(file, self.max_file_size)
            if not result.valid:
                rejected.append(result.error)
                self.run_logger.log("warning", "document_rejected", result.error.message, file=file.name)
                continue
            if total_bytes + file.size > self.max_total_bytes:
                error = DocumentError(
                    ErrorCode.INSUFFICIENT_MEMORY,
                    f"{file.name}: adding this file would exceed the session memory limit",
                )
                rejected.append(error)
                self.run_logger.log("warning", "document_rejected", error.message, file=file.name)
                continue

            handle = DocumentHandle(source=file, format=detect(file))
            total_bytes += file.size
            self.documents.append(handle)
            accepted.append(handle)
            self.run_logger.log(
                "info", "document_added", "Document added",
                file=file.name, format=handle.format.value, size=file.size,
            )
        return accepted, rejected

    def get_document(self, document_id: str) -> Optional[DocumentHandle]:
        for document in self.documents:
            if document.id == document_id:
                return document
        return None

    def reorder_documents(self, from_index: int, to_index: int) -> None:
        """Move one document; ids stay attached to their documents."""
        count = len(self.documents)
        if not (0 <= from_index < count and 0 <= to_index < count):
            raise IndexError(f"Cannot move document {from_index} to {to_index} in a list of {count}")
        document = self.documents.pop(from_index)
        self.documents.insert(to_index, document)

    def remove_document(self, document_id: str) -> bool:
        document = self.get_document(document_id)
        if document is None:
            return False
        self.documents.remove(document)
        document.release()
        self.run_logger.log("info", "document_removed", "Document removed", file=document.name)
        return True

    def clear_documents(self) -> None:
        for document in self.documents:
            document.release()
        self.documents = []

    # Per-document pipelines

    async def process_documents(self, on_progress: Optional[Callable[[float], None]] = None) -> List[DocumentHandle]:
        """
        Run validation, analysis and preview for every pending document.
        A failing document ends in the error stage; the others carry on.
        """
        pending = [document for document in self.documents if document.stage == DocumentStage.PENDING]
        if not pending:
            return []
        await ChunkProcessor.process_multiple_files(
            pending,
            self._process_document,
            max_concurrent=self.max_concurrent_files,
            on_progress=on_progress,
        )
        return pending

    async def _process_document(self, document: DocumentHandle, _index: int) -> DocumentHandle:
        def set_progress(value: float) -> None:
            document.progress = max(document.progress, min(1.0, value))

        try:
            document.status = DocumentStatus.PROCESSING
            document.stage = DocumentStage.VALIDATING
            data = document.read()
            processor = get_processor(document.format)

            walk = await ChunkProcessor.validate_file_structure(
                data,
                chunk_validator_for(document.format),
                chunk_size=recommended_chunk_size(len(data)),
                on_progress=lambda fraction: set_progress(0.3 * fraction),
            )
            if not walk.valid:
                raise DocumentError(ErrorCode.FILE_CORRUPTED, f"{document.name}: {walk.error}")
            structure = processor.validate_structure(data)
            if not structure.valid:
                raise structure.error
            set_progress(0.3)
            await asyncio.sleep(0)

            document.stage = DocumentStage.ANALYZING
            document.metadata = processor.analyze(data, document.warnings)
            set_progress(0.6)
            await asyncio.sleep(0)

            document.stage = DocumentStage.PREVIEWING
            document.preview = processor.generate_preview(data)
            set_progress(1.0)

            document.stage = DocumentStage.PROCESSED
            document.status = DocumentStatus.PROCESSED
            self.run_logger.log("info", "document_processed", "Document processed", file=document.name)
        except Exception as exc:
            document.error = self.error_handler.create_user_friendly_error(exc, "processing")
            document.stage = DocumentStage.ERROR
            document.status = DocumentStatus.ERROR
            self.run_logger.log(
                "warning", "document_failed", document.error.message,
                file=document.name, code=document.error.code.value,
            )
        return document

    # Merge jobs

    def _ordered_documents(self, options: MergeOptions) -> List[DocumentHandle]:
        if options.mode != "custom" or not options.custom_order:
            return list(self.documents)
        ordered = []
        for document_id in options.custom_order:
            document = self.get_document(document_id)
            if document is None:
                raise DocumentError(
                    ErrorCode.PROCESSING_FAILED,
                    f"Unknown document id in custom order: {document_id}",
                )
            ordered.append(document)
        return ordered

    @staticmethod
    def _advance(job: ProcessingJob, value: float, on_progress) -> None:
        job.progress = max(job.progress, min(100.0, value))
        _safe_progress(on_progress, job.progress / 100.0)

    @staticmethod
    def _checkpoint(job: ProcessingJob) -> None:
        if job.cancel_requested:
            raise DocumentError(ErrorCode.PROCESSING_FAILED, "Merge cancelled by user")

    def _discard_job(self) -> None:
        job = self.current_job
        if job is None:
            return
        job.cancel_requested = True
        if job.result is not None:
            job.result.release()
        self.current_job = None

    def _sync_warning_events(self, warnings: List[Dict], cursor: int = 0) -> int:
        while cursor < len(warnings):
            warning = warnings[cursor]
            context = {key: value for key, value in warning.items() if key not in {"code", "message"}}
            self.run_logger.log("warning", warning.get("code", "warning"), warning.get("message", ""), **context)
            cursor += 1
        return cursor

    async def merge(
        self,
        options: Optional[MergeOptions] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> ProcessingJob:
        """
        Merge the current documents into one output.

        Unsupported output combinations, an already running job, unfinished
        documents and an empty document list raise DocumentError before a job
        is created. Any later failure ends the returned job as failed.
        """
        options = options or MergeOptions()
        if self.current_job is not None and not self.current_job.is_terminal:
            raise DocumentError(ErrorCode.PROCESSING_FAILED, "A merge is already in progress")
        if any(not document.is_terminal for document in self.documents):
            raise DocumentError(
                ErrorCode.PROCESSING_FAILED,
                "Documents are still being processed",
                user_action="Wait for every document to finish processing, then merge again.",
            )
        documents = self._ordered_documents(options)
        if not documents:
            raise DocumentError(ErrorCode.FILE_EMPTY, "No documents to merge")

        output_format, reason, route = plan_merge([document.format for document in documents], options.output_format)

        # A new job replaces the previous one and frees its output
        self._discard_job()
        job = ProcessingJob(documents=documents, options=options, output_format=output_format, format_reason=reason)
        self.current_job = job
        self.run_logger.log(
            "info", "merge_start", "Merge started",
            job=job.id, documents=len(documents), output_format=output_format.value, route=route,
        )

        try:
            job.status = JobStatus.PROCESSING
            self._advance(job, 0, on_progress)

            # Reading each source and rolling up its analysis warnings share the first 60%
            buffers: List[bytes] = []
            for index, document in enumerate(documents):
                self._checkpoint(job)
                buffers.append(document.read())
                job.warnings.extend(document.warnings)
                self._advance(job, 60 * (index + 1) / len(documents), on_progress)
                await asyncio.sleep(0)
            self._checkpoint(job)

            names = [document.name for document in documents]

            if route == "convert":
                inputs = [
                    ConversionInput(name=name, format=document.format, data=data)
                    for name, document, data in zip(names, documents, buffers)
                ]
                result = await convert_and_merge_to_pdf(
                    inputs,
                    options,
                    on_progress=lambda fraction: self._advance(job, 60 + 30 * fraction, on_progress),
                    checkpoint=lambda: self._checkpoint(job),
                )
            else:
                result = get_processor(output_format).merge_same_format(buffers, options, names)
            self._checkpoint(job)
            job.warnings.extend(result.warnings)
            self._advance(job, 90, on_progress)

            if not result.success:
                raise DocumentError(ErrorCode.MERGE_FAILED, result.error or "Merge produced no output")

            media_type = result.media_type or output_format.media_type
            job.result = OutputHandle(result.data, media_type, build_output_filename(options.output_name, media_type))
            job.status = JobStatus.COMPLETED
            self._advance(job, 100, on_progress)
            self.run_logger.log(
                "info", "merge_complete", "Merge completed",
                job=job.id, filename=job.result.filename, size=job.result.size,
            )
        except Exception as exc:
            job.error = self.error_handler.create_user_friendly_error(exc, "merge", fallback_code=ErrorCode.MERGE_FAILED)
            job.status = JobStatus.FAILED
            if job.result is not None:
                job.result.release()
                job.result = None
            self.run_logger.log("error", "merge_failed", job.error.message, job=job.id, code=job.error.code.value)
        finally:
            job.completed_at = datetime.now()
            self._sync_warning_events(job.warnings)

        return job

    def cancel(self) -> bool:
        """
        Discard the current job and release its output.
        A merge still running stops at its next checkpoint and ends as failed.
        """
        job = self.current_job
        if job is None:
            return False
        self._discard_job()
        self.run_logger.log("info", "merge_cancelled", "Merge cancelled", job=job.id)
        return True
