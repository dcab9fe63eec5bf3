"""Data models for blockstore merger."""

import base64
from dataclasses import dataclass, field, asdict
from pathlib import Path

import xxhash

from .sharding import ShardSpec, next_to_last

DEFAULT_BATCH_SIZE = 100
DEFAULT_DESTINATION = Path("./merged-blockstore")


def encode_cid(raw: bytes) -> str:
    """Render raw identifier bytes (e.g. a multihash) as a datastore key: unpadded upper-case base32."""
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def compute_cid(data: bytes) -> str:
    """Derive a content identifier for a payload from its xxh3 128-bit digest."""
    return encode_cid(xxhash.xxh3_128_digest(data))


def payload_checksum(data: bytes) -> str:
    """Short xxh64 digest of a payload, used when inspecting stores."""
    return xxhash.xxh64_hexdigest(data)


@dataclass(frozen=True)
class Block:
    """A content identifier and the raw bytes it addresses."""
    cid: str
    data: bytes

    @classmethod
    def from_data(cls, data: bytes) -> "Block":
        return cls(cid=compute_cid(data), data=data)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class MergeConfig:
    """Parameters of one merge run, built once and passed to the orchestrator."""
    sources: list[Path]
    destination: Path = DEFAULT_DESTINATION
    batch_size: int = DEFAULT_BATCH_SIZE
    shard: ShardSpec = field(default_factory=lambda: next_to_last(3))
    sync_files: bool = False
    show_progress: bool = True

    def __post_init__(self) -> None:
        self.sources = [Path(p) for p in self.sources]
        self.destination = Path(self.destination)
        if not self.sources:
            raise ValueError("at least one input is required")
        if self.batch_size < 1:
            raise ValueError(f"batch size must be at least 1, got {self.batch_size}")


@dataclass
class TransferStats:
    """Counters for one source drained into the destination."""
    blocks_read: int = 0
    blocks_flushed: int = 0
    blocks_written: int = 0
    bytes_read: int = 0
    batches: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MergeSummary:
    """Outcome of a complete merge run."""
    destination: str
    sources_total: int
    sources_completed: int = 0
    estimated_bytes: int = 0
    blocks_read: int = 0
    blocks_written: int = 0
    bytes_read: int = 0

    def add(self, stats: TransferStats, estimated_bytes: int) -> None:
        self.sources_completed += 1
        self.estimated_bytes += estimated_bytes
        self.blocks_read += stats.blocks_read
        self.blocks_written += stats.blocks_written
        self.bytes_read += stats.bytes_read

    def to_dict(self) -> dict:
        return asdict(self)
