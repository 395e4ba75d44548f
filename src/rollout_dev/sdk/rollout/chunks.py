"""
Reassembly of messages that arrive split into ordered chunks.

A sender splits a large payload into `totalChunks` pieces that share a
`batchId`. Chunks may arrive in any order; the message is released once
every index is present. Batches that never complete are dropped after
OLD_BUFFER_TIMEOUT seconds, checked whenever any chunk arrives.
"""

import dataclasses
import time
from typing import Callable, TypedDict

from rollout_dev.sdk.log import get_default_logger

logger = get_default_logger(__name__)

OLD_BUFFER_TIMEOUT = 60


class EventChunk(TypedDict):
    batchId: str
    chunkIndex: int
    totalChunks: int
    data: str


@dataclasses.dataclass
class ChunkBuffer:
    batch_id: str
    total: int
    chunks: dict[int, str] = dataclasses.field(default_factory=dict)
    timestamp: float = 0.0


class ChunkReassembler:
    def __init__(
        self,
        timeout: float = OLD_BUFFER_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self._clock = clock
        self._buffers: dict[str, ChunkBuffer] = {}

    def __len__(self) -> int:
        return len(self._buffers)

    def __contains__(self, batch_id: str) -> bool:
        return batch_id in self._buffers

    def add(self, chunk: EventChunk) -> str | None:
        """
        Store a chunk and return the full message if this chunk completed it.

        Args:
            chunk: A chunk with batchId, chunkIndex, totalChunks and data

        Returns:
            str | None: The reassembled message, or None while chunks are missing

        Raises:
            ValueError: If the chunk index or total is out of range
        """
        batch_id = chunk["batchId"]
        chunk_index = chunk["chunkIndex"]
        total_chunks = chunk["totalChunks"]

        if total_chunks <= 0 or not 0 <= chunk_index < total_chunks:
            raise ValueError(
                f"Invalid chunk {chunk_index} of {total_chunks} for batch {batch_id}"
            )

        now = self._clock()
        buffer = self._buffers.get(batch_id)
        if buffer is None:
            buffer = ChunkBuffer(batch_id=batch_id, total=total_chunks, timestamp=now)
            self._buffers[batch_id] = buffer
        elif buffer.total != total_chunks:
            raise ValueError(
                f"Chunk total changed for batch {batch_id}: "
                f"{buffer.total} != {total_chunks}"
            )

        buffer.chunks[chunk_index] = chunk["data"]
        buffer.timestamp = now

        full_data = None
        if len(buffer.chunks) == buffer.total:
            full_data = "".join(buffer.chunks[i] for i in range(buffer.total))
            del self._buffers[batch_id]

        self._prune(now)
        return full_data

    def _prune(self, now: float) -> None:
        to_delete = [
            bid
            for bid, buffer in self._buffers.items()
            if now - buffer.timestamp > self.timeout
        ]
        for bid in to_delete:
            logger.debug(f"Cleaning up incomplete chunk buffer: {bid}")
            del self._buffers[bid]

    def clear(self) -> None:
        self._buffers = {}


def split_into_chunks(data: str, batch_id: str, chunk_size: int) -> list[EventChunk]:
    """Split a message into chunks that ChunkReassembler can put back together."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    pieces = [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)] or [""]
    return [
        {
            "batchId": batch_id,
            "chunkIndex": index,
            "totalChunks": len(pieces),
            "data": piece,
        }
        for index, piece in enumerate(pieces)
    ]
