"""
Tests for chunked message reassembly.
"""

import pytest

from rollout_dev.sdk.rollout.chunks import (
    OLD_BUFFER_TIMEOUT,
    ChunkReassembler,
    split_into_chunks,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _chunk(batch_id: str, index: int, total: int, data: str) -> dict:
    return {"batchId": batch_id, "chunkIndex": index, "totalChunks": total, "data": data}


def test_reassembles_in_order_chunks():
    """Three chunks delivered in order produce the original message."""
    reassembler = ChunkReassembler()

    assert reassembler.add(_chunk("b1", 0, 3, "hel")) is None
    assert reassembler.add(_chunk("b1", 1, 3, "lo ")) is None
    assert "b1" in reassembler
    assert reassembler.add(_chunk("b1", 2, 3, "world")) == "hello world"

    # buffer is dropped as soon as the batch completes
    assert "b1" not in reassembler
    assert len(reassembler) == 0


def test_reassembles_out_of_order_chunks():
    """Chunks are joined by index, not by arrival order."""
    reassembler = ChunkReassembler()

    assert reassembler.add(_chunk("b1", 2, 3, "c")) is None
    assert reassembler.add(_chunk("b1", 0, 3, "a")) is None
    assert reassembler.add(_chunk("b1", 1, 3, "b")) == "abc"


def test_single_chunk_batch():
    reassembler = ChunkReassembler()
    assert reassembler.add(_chunk("b1", 0, 1, "whole")) == "whole"
    assert len(reassembler) == 0


def test_interleaved_batches():
    """Batches with different ids are tracked independently."""
    reassembler = ChunkReassembler()

    reassembler.add(_chunk("a", 0, 2, "a0"))
    reassembler.add(_chunk("b", 0, 2, "b0"))
    assert len(reassembler) == 2

    assert reassembler.add(_chunk("b", 1, 2, "b1")) == "b0b1"
    assert reassembler.add(_chunk("a", 1, 2, "a1")) == "a0a1"
    assert len(reassembler) == 0


def test_duplicate_chunk_does_not_overflow_buffer():
    """A re-sent chunk replaces the earlier copy instead of counting twice."""
    reassembler = ChunkReassembler()

    reassembler.add(_chunk("b1", 0, 2, "x"))
    assert reassembler.add(_chunk("b1", 0, 2, "y")) is None
    assert reassembler.add(_chunk("b1", 1, 2, "z")) == "yz"


def test_stale_buffer_pruned_on_next_arrival():
    """A buffer untouched for over 60s is dropped when any chunk arrives."""
    clock = FakeClock()
    reassembler = ChunkReassembler(clock=clock)

    reassembler.add(_chunk("stale", 0, 2, "s0"))
    clock.now += OLD_BUFFER_TIMEOUT + 1
    reassembler.add(_chunk("fresh", 0, 2, "f0"))

    assert "stale" not in reassembler
    assert "fresh" in reassembler


def test_buffer_within_timeout_is_kept():
    clock = FakeClock()
    reassembler = ChunkReassembler(clock=clock)

    reassembler.add(_chunk("slow", 0, 2, "s0"))
    clock.now += OLD_BUFFER_TIMEOUT - 1
    reassembler.add(_chunk("other", 0, 2, "o0"))

    assert "slow" in reassembler
    clock.now += 5
    assert reassembler.add(_chunk("slow", 1, 2, "s1")) == "s0s1"


def test_touching_a_buffer_refreshes_its_timestamp():
    clock = FakeClock()
    reassembler = ChunkReassembler(clock=clock)

    reassembler.add(_chunk("b1", 0, 3, "a"))
    clock.now += 50
    reassembler.add(_chunk("b1", 1, 3, "b"))
    clock.now += 50
    reassembler.add(_chunk("other", 0, 2, "o"))

    assert "b1" in reassembler


@pytest.mark.parametrize(
    "index,total",
    [(-1, 2), (2, 2), (0, 0)],
)
def test_invalid_chunk_rejected(index, total):
    reassembler = ChunkReassembler()
    with pytest.raises(ValueError):
        reassembler.add(_chunk("b1", index, total, "x"))
    assert len(reassembler) == 0


def test_changed_total_rejected():
    reassembler = ChunkReassembler()
    reassembler.add(_chunk("b1", 0, 3, "x"))
    with pytest.raises(ValueError, match="total changed"):
        reassembler.add(_chunk("b1", 1, 4, "y"))


def test_split_into_chunks_feeds_reassembler():
    data = "x" * 25 + "y" * 10
    chunks = split_into_chunks(data, "batch", chunk_size=10)

    assert len(chunks) == 4
    assert all(c["totalChunks"] == 4 for c in chunks)

    reassembler = ChunkReassembler()
    results = [reassembler.add(c) for c in reversed(chunks)]
    assert results[:-1] == [None, None, None]
    assert results[-1] == data


def test_split_empty_message_is_one_chunk():
    chunks = split_into_chunks("", "batch", chunk_size=10)
    assert chunks == [{"batchId": "batch", "chunkIndex": 0, "totalChunks": 1, "data": ""}]
