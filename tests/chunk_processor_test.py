import asyncio

import pytest

from chunk_processor import (
    MB,
    BufferSliceReader,
    ChunkProcessor,
    chunk_count,
    format_bytes,
    is_large_file,
    iter_chunk_ranges,
    recommended_chunk_size,
)


def test_chunk_ranges_cover_buffer_exactly():
    ranges = list(iter_chunk_ranges(25, 10))

    assert ranges == [(0, 10), (10, 20), (20, 25)]
    assert chunk_count(25, 10) == 3
    assert chunk_count(0, 10) == 0


def test_chunk_size_must_be_positive():
    with pytest.raises(ValueError):
        list(iter_chunk_ranges(10, 0))
    with pytest.raises(ValueError):
        BufferSliceReader(b"abc", chunk_size=0)


def test_process_buffer_keeps_order_and_last_chunk_length():
    data = bytes(range(256)) * 4
    seen = []

    def processor(chunk, index, is_last):
        seen.append((index, len(chunk), is_last))
        return chunk

    result = asyncio.run(ChunkProcessor.process_buffer_in_chunks(data, processor, chunk_size=300))

    assert result.success
    assert result.total_chunks == 4
    assert result.processed_chunks == 4
    assert b"".join(result.data) == data
    assert seen[-1] == (3, 1024 - 900, True)


def test_process_buffer_bounds_concurrency():
    in_flight = 0
    peak = 0

    async def processor(chunk, index, is_last):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return index

    result = asyncio.run(
        ChunkProcessor.process_buffer_in_chunks(b"x" * 100, processor, chunk_size=10, max_concurrent_chunks=3)
    )

    assert result.data == list(range(10))
    assert peak == 3


def test_process_buffer_reports_failure_and_progress():
    progress = []

    def processor(chunk, index, is_last):
        if index == 2:
            raise ValueError("bad chunk")
        return index

    result = asyncio.run(
        ChunkProcessor.process_buffer_in_chunks(
            b"x" * 40, processor, chunk_size=10, max_concurrent_chunks=1, on_progress=progress.append
        )
    )

    assert not result.success
    assert result.error == "bad chunk"
    assert result.processed_chunks == 2
    assert progress == [0.25, 0.5]


def test_progress_callback_errors_do_not_abort():
    def broken(_fraction):
        raise RuntimeError("ui went away")

    result = asyncio.run(
        ChunkProcessor.process_buffer_in_chunks(b"abc", lambda c, i, last: c, chunk_size=1, on_progress=broken)
    )

    assert result.success


def test_process_multiple_files_in_batches():
    progress = []

    result = asyncio.run(
        ChunkProcessor.process_multiple_files(
            ["a", "b", "c"], lambda item, index: f"{index}:{item}", on_progress=progress.append, pause_seconds=0
        )
    )

    assert result.data == ["0:a", "1:b", "2:c"]
    assert progress[-1] == 1.0


def test_failed_chunk_cancels_the_rest_of_its_batch():
    finished = []
    progress = []

    async def processor(chunk, index, is_last):
        if index == 0:
            raise ValueError("first chunk broken")
        await asyncio.sleep(0.05)
        finished.append(index)
        return index

    async def run_and_settle():
        result = await ChunkProcessor.process_buffer_in_chunks(
            b"x" * 30, processor, chunk_size=10, max_concurrent_chunks=3, on_progress=progress.append
        )
        await asyncio.sleep(0.1)
        return result

    result = asyncio.run(run_and_settle())

    assert not result.success
    assert result.error == "first chunk broken"
    assert result.processed_chunks == 0
    assert finished == []
    assert progress == []


def test_failed_file_cancels_the_rest_of_its_batch():
    finished = []
    progress = []

    async def processor(item, index):
        if index == 0:
            raise OSError("cannot read a")
        await asyncio.sleep(0.05)
        finished.append(item)
        return item

    async def run_and_settle():
        result = await ChunkProcessor.process_multiple_files(
            ["a", "b", "c"], processor, max_concurrent=3, on_progress=progress.append, pause_seconds=0
        )
        await asyncio.sleep(0.1)
        return result

    result = asyncio.run(run_and_settle())

    assert not result.success
    assert result.error == "cannot read a"
    assert finished == []
    assert progress == []


def test_slice_reader_is_forward_only():
    reader = ChunkProcessor.stream_buffer(b"abcdefg", chunk_size=3)

    assert reader.total_chunks == 3
    assert [bytes(chunk) for chunk in reader] == [b"abc", b"def", b"g"]
    assert reader.exhausted
    assert list(reader) == []


def test_validation_reports_one_based_failed_chunk():
    def validator(chunk, is_first, is_last):
        return b"!" not in chunk

    data = b"aaaa" + b"bb!b" + b"cccc"

    result = asyncio.run(ChunkProcessor.validate_file_structure(data, validator, chunk_size=4))
    sync_result = ChunkProcessor.validate_buffer_structure(data, validator, chunk_size=4)

    assert not result.valid
    assert result.failed_chunk == 2
    assert result.error == "File structure validation failed at chunk 2"
    assert sync_result.failed_chunk == 2


def test_validation_passes_first_and_last_flags():
    flags = []

    def validator(chunk, is_first, is_last):
        flags.append((is_first, is_last))
        return True

    result = asyncio.run(ChunkProcessor.validate_file_structure(b"x" * 9, validator, chunk_size=3))

    assert result.valid
    assert flags == [(True, False), (False, False), (False, True)]


def test_validator_exception_is_reported():
    def validator(chunk, is_first, is_last):
        raise ValueError("unreadable")

    result = asyncio.run(ChunkProcessor.validate_file_structure(b"abc", validator))

    assert not result.valid
    assert result.error == "unreadable"


def test_size_thresholds_and_estimates():
    assert not ChunkProcessor.should_use_chunked_processing(10 * MB)
    assert ChunkProcessor.should_use_chunked_processing(10 * MB + 1)
    assert ChunkProcessor.estimate_processing_time(MB + 1) == 2
    assert is_large_file(11 * MB)
    assert recommended_chunk_size(5 * MB) == 1 * MB
    assert recommended_chunk_size(50 * MB) == 5 * MB
    assert recommended_chunk_size(200 * MB) == 10 * MB


def test_format_bytes():
    assert format_bytes(0) == "0 Bytes"
    assert format_bytes(500) == "500 Bytes"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(5 * MB) == "5 MB"
