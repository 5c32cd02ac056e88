"""
Chunked processing utilities for large in-memory documents.
Bounds peak memory and per-tick latency by slicing buffers and batching work.
"""

import asyncio
import inspect
import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Iterator, List, Optional, Sequence, Tuple, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MB = 1024 * 1024

ProgressCallback = Callable[[float], None]
ChunkCallback = Callable[[int, int], None]
ChunkValidator = Callable[[bytes, bool, bool], bool]


def _safe_progress(callback, *args) -> None:
    """Call a progress callback, swallowing exceptions to avoid crashing the run."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.debug("Progress callback raised; ignoring", exc_info=True)


async def _resolve(value: Union[T, Awaitable[T]]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


async def _gather_batch(*coroutines) -> List:
    """Await one batch in order; if any member fails, cancel the rest and wait for them before re-raising."""
    tasks = [asyncio.ensure_future(coroutine) for coroutine in coroutines]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


@dataclass
class ChunkProcessingResult(Generic[T]):
    success: bool
    data: Optional[List[T]] = None
    error: Optional[str] = None
    processed_chunks: int = 0
    total_chunks: int = 0


@dataclass
class ChunkValidation:
    valid: bool
    error: Optional[str] = None
    failed_chunk: Optional[int] = None


def iter_chunk_ranges(size: int, chunk_size: int) -> Iterator[Tuple[int, int]]:
    """Yield (start, end) offsets covering ``size`` bytes with no gaps or overlaps."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    for start in range(0, size, chunk_size):
        yield start, min(start + chunk_size, size)


def chunk_count(size: int, chunk_size: int) -> int:
    return math.ceil(size / chunk_size) if size > 0 else 0


class BufferSliceReader:
    """
    Lazy, forward-only reader over a byte buffer.
    Each slice is a zero-copy memoryview; once exhausted the reader cannot be restarted.
    """

    def __init__(self, data: Union[bytes, bytearray, memoryview], chunk_size: int = 5 * MB):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._view = memoryview(data)
        self.chunk_size = chunk_size
        self.total_size = len(self._view)
        self.offset = 0

    @property
    def total_chunks(self) -> int:
        return chunk_count(self.total_size, self.chunk_size)

    @property
    def exhausted(self) -> bool:
        return self.offset >= self.total_size

    def __iter__(self) -> "BufferSliceReader":
        return self

    def __next__(self) -> memoryview:
        if self.offset >= self.total_size:
            raise StopIteration
        end = min(self.offset + self.chunk_size, self.total_size)
        chunk = self._view[self.offset:end]
        self.offset = end
        return chunk


def _walk_chunks(data: bytes, validator: ChunkValidator, chunk_size: int) -> Iterator[Tuple[int, int, bool]]:
    total = chunk_count(len(data), chunk_size)
    for index, (start, end) in enumerate(iter_chunk_ranges(len(data), chunk_size)):
        ok = bool(validator(bytes(data[start:end]), index == 0, index == total - 1))
        yield index, total, ok


class ChunkProcessor:
    """Processes large buffers and file lists with bounded concurrency."""

    DEFAULT_CHUNK_SIZE = 5 * MB
    MAX_CONCURRENT_CHUNKS = 3
    MAX_CONCURRENT_FILES = 2
    BATCH_PAUSE_SECONDS = 0.1
    VALIDATION_YIELD_EVERY = 10

    @classmethod
    async def process_buffer_in_chunks(
        cls,
        data: bytes,
        processor: Callable[[bytes, int, bool], Union[R, Awaitable[R]]],
        chunk_size: Optional[int] = None,
        max_concurrent_chunks: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_chunk_processed: Optional[ChunkCallback] = None,
    ) -> ChunkProcessingResult[R]:
        """
        Run ``processor(chunk, index, is_last)`` over fixed-size slices of ``data``.

        At most ``max_concurrent_chunks`` slices are in flight at once; results keep slice order.
        """
        chunk_size = chunk_size or cls.DEFAULT_CHUNK_SIZE
        max_concurrent = max(1, max_concurrent_chunks or cls.MAX_CONCURRENT_CHUNKS)
        ranges = list(iter_chunk_ranges(len(data), chunk_size))
        total_chunks = len(ranges)
        results: List[R] = []
        processed = 0

        async def run_one(index: int, start: int, end: int) -> R:
            nonlocal processed
            result = await _resolve(processor(bytes(data[start:end]), index, index == total_chunks - 1))
            processed += 1
            _safe_progress(on_chunk_processed, processed, total_chunks)
            _safe_progress(on_progress, processed / total_chunks)
            return result

        try:
            for batch_start in range(0, total_chunks, max_concurrent):
                batch = ranges[batch_start:batch_start + max_concurrent]
                batch_results = await _gather_batch(
                    *(run_one(batch_start + offset, start, end) for offset, (start, end) in enumerate(batch))
                )
                results.extend(batch_results)
        except Exception as exc:
            logger.error("Chunked processing failed after %d/%d chunks: %s", processed, total_chunks, exc)
            return ChunkProcessingResult(
                success=False,
                error=str(exc) or type(exc).__name__,
                processed_chunks=processed,
                total_chunks=total_chunks,
            )

        return ChunkProcessingResult(
            success=True,
            data=results,
            processed_chunks=processed,
            total_chunks=total_chunks,
        )

    @classmethod
    async def process_multiple_files(
        cls,
        items: Sequence[T],
        processor: Callable[[T, int], Union[R, Awaitable[R]]],
        max_concurrent: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        pause_seconds: Optional[float] = None,
    ) -> ChunkProcessingResult[R]:
        """Process whole files in batches, pausing between batches so the loop stays responsive."""
        max_concurrent = max(1, max_concurrent or cls.MAX_CONCURRENT_FILES)
        pause = cls.BATCH_PAUSE_SECONDS if pause_seconds is None else pause_seconds
        total = len(items)
        results: List[R] = []
        processed = 0

        async def run_one(item: T, index: int) -> R:
            nonlocal processed
            result = await _resolve(processor(item, index))
            processed += 1
            _safe_progress(on_progress, processed / total)
            return result

        try:
            for batch_start in range(0, total, max_concurrent):
                batch = items[batch_start:batch_start + max_concurrent]
                batch_results = await _gather_batch(
                    *(run_one(item, batch_start + offset) for offset, item in enumerate(batch))
                )
                results.extend(batch_results)
                if batch_start + max_concurrent < total:
                    await asyncio.sleep(pause)
        except Exception as exc:
            logger.error("Multiple file processing failed: %s", exc)
            return ChunkProcessingResult(
                success=False,
                error=str(exc) or type(exc).__name__,
                processed_chunks=processed,
                total_chunks=total,
            )

        return ChunkProcessingResult(success=True, data=results, processed_chunks=processed, total_chunks=total)

    @classmethod
    def stream_buffer(cls, data: bytes, chunk_size: Optional[int] = None) -> BufferSliceReader:
        return BufferSliceReader(data, chunk_size or cls.DEFAULT_CHUNK_SIZE)

    @classmethod
    async def validate_file_structure(
        cls,
        data: bytes,
        validator: ChunkValidator,
        chunk_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ChunkValidation:
        """
        Walk ``data`` chunk by chunk with ``validator(chunk, is_first, is_last)``.
        Stops at the first rejecting chunk and reports its 1-based index.
        """
        chunk_size = chunk_size or cls.DEFAULT_CHUNK_SIZE
        try:
            for index, total, ok in _walk_chunks(data, validator, chunk_size):
                if not ok:
                    return ChunkValidation(
                        valid=False,
                        error=f"File structure validation failed at chunk {index + 1}",
                        failed_chunk=index + 1,
                    )
                _safe_progress(on_progress, (index + 1) / total)
                if index % cls.VALIDATION_YIELD_EVERY == 0:
                    await asyncio.sleep(0)
        except Exception as exc:
            return ChunkValidation(valid=False, error=str(exc) or "Validation error")
        return ChunkValidation(valid=True)

    @classmethod
    def validate_buffer_structure(
        cls,
        data: bytes,
        validator: ChunkValidator,
        chunk_size: Optional[int] = None,
    ) -> ChunkValidation:
        """Synchronous form of :meth:`validate_file_structure` for callers outside the event loop."""
        chunk_size = chunk_size or cls.DEFAULT_CHUNK_SIZE
        for index, _total, ok in _walk_chunks(data, validator, chunk_size):
            if not ok:
                return ChunkValidation(
                    valid=False,
                    error=f"File structure validation failed at chunk {index + 1}",
                    failed_chunk=index + 1,
                )
        return ChunkValidation(valid=True)

    @staticmethod
    def should_use_chunked_processing(size: int, threshold: int = 10 * MB) -> bool:
        return size > threshold

    @staticmethod
    def estimate_processing_time(size: int, bytes_per_second: int = MB) -> int:
        """Rough estimate in whole seconds."""
        return math.ceil(size / bytes_per_second)


def recommended_chunk_size(file_size: int) -> int:
    if file_size < 10 * MB:
        return 1 * MB
    if file_size < 100 * MB:
        return 5 * MB
    return 10 * MB


def is_large_file(size: int, threshold_mb: int = 10) -> bool:
    return size > threshold_mb * MB


def format_bytes(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    index = 0
    while num_bytes >= 1024 ** (index + 1) and index < len(units) - 1:
        index += 1
    value = round(num_bytes / (1024 ** index), 2)
    return f"{value:g} {units[index]}"
