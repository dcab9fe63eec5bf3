"""Shared test fixtures."""

import tempfile
from pathlib import Path

import pytest

from blockstore_merger.models import Block, encode_cid
from blockstore_merger.store import create_blockstore, open_blockstore


def cid_for(name: str) -> str:
    """Identifier whose raw bytes are name, e.g. cid_for("k1") == "NMYQ"."""
    return encode_cid(name.encode())


def make_blocks(count: int, prefix: str = "k", size: int = 1024) -> list[Block]:
    """Blocks identified by cid_for(prefix1..prefixN) with distinct payloads of the given size."""
    blocks = []
    for i in range(1, count + 1):
        header = f"{prefix}{i}:".encode()
        data = (header * (size // len(header) + 1))[:size]
        blocks.append(Block(cid_for(f"{prefix}{i}"), data))
    return blocks


def populate_store(path: Path, blocks: list[Block]) -> Path:
    """Create a blockstore at path holding the given blocks."""
    create_blockstore(path)
    with open_blockstore(path) as store:
        store.put_many(blocks)
        store.sync()
    return path


def read_all(path: Path) -> dict[str, bytes]:
    """Every key and payload in the store at path."""
    with open_blockstore(path, read_only=True) as store:
        with store.all_keys() as keys:
            return {cid: store.get(cid).data for cid in keys}


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store_path(temp_dir):
    """Path of a freshly created, empty blockstore."""
    path = temp_dir / "store"
    create_blockstore(path)
    return path


@pytest.fixture
def store(store_path):
    """An open, writable, empty blockstore."""
    bs = open_blockstore(store_path)
    yield bs
    bs.close()


@pytest.fixture
def sample_stores(temp_dir):
    """Two populated sources with disjoint keys and a destination path."""
    source_a = populate_store(temp_dir / "source_a", make_blocks(150, prefix="a", size=64))
    source_b = populate_store(temp_dir / "source_b", make_blocks(30, prefix="b", size=64))
    output = temp_dir / "merged"
    return source_a, source_b, output
