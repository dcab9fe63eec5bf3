"""Tests for blockstore_merger.transfer module."""

from unittest.mock import patch

import pytest

from blockstore_merger.context import Context
from blockstore_merger.errors import BlockNotFoundError, CancelledError, StorageIOError
from blockstore_merger.store import create_blockstore, open_blockstore
from blockstore_merger.transfer import transfer_blocks

from conftest import cid_for, make_blocks, populate_store, read_all


@pytest.fixture
def make_pair(temp_dir):
    """Open a populated source (read-only) and an empty destination."""
    handles = []

    def _make(blocks):
        source_path = populate_store(temp_dir / "source", blocks)
        create_blockstore(temp_dir / "dest")
        source = open_blockstore(source_path, read_only=True)
        destination = open_blockstore(temp_dir / "dest")
        handles.extend([source, destination])
        return source, destination

    yield _make
    for handle in handles:
        handle.close()


class TestTransferBlocks:
    """Tests for transfer_blocks function."""

    def test_full_batches(self, make_pair):
        source, destination = make_pair(make_blocks(200))

        stats = transfer_blocks(source, destination, 200 * 1024, show_progress=False)

        assert stats.blocks_read == 200
        assert stats.blocks_flushed == 200
        assert stats.blocks_written == 200
        assert stats.batches == 2
        assert stats.bytes_read == 200 * 1024

    def test_trailing_batch_is_flushed(self, make_pair):
        blocks = make_blocks(250)
        source, destination = make_pair(blocks)

        stats = transfer_blocks(source, destination, 250 * 1024, show_progress=False)

        assert stats.batches == 3
        assert stats.blocks_written == 250
        stored = read_all(destination.path)
        assert len(stored) == 250
        for name in ("k201", "k225", "k250"):
            assert cid_for(name) in stored

    def test_payloads_are_byte_exact(self, make_pair):
        blocks = make_blocks(30, size=333)
        source, destination = make_pair(blocks)

        transfer_blocks(source, destination, 0, show_progress=False)

        assert read_all(destination.path) == {b.cid: b.data for b in blocks}

    def test_custom_batch_size(self, make_pair):
        source, destination = make_pair(make_blocks(10))

        stats = transfer_blocks(source, destination, 0, batch_size=3, show_progress=False)

        assert stats.batches == 4
        assert stats.blocks_written == 10

    def test_batch_bounds_put_many_calls(self, make_pair):
        source, destination = make_pair(make_blocks(250))
        sizes = []
        original = destination.put_many

        def recording_put_many(blocks, ctx=None):
            sizes.append(len(blocks))
            return original(blocks, ctx)

        with patch.object(destination, "put_many", side_effect=recording_put_many):
            transfer_blocks(source, destination, 0, show_progress=False)

        assert sizes == [100, 100, 50]

    def test_empty_source(self, make_pair):
        source, destination = make_pair([])

        stats = transfer_blocks(source, destination, 0, show_progress=False)

        assert stats.blocks_read == 0
        assert stats.batches == 0
        assert read_all(destination.path) == {}

    def test_second_transfer_is_idempotent(self, make_pair):
        blocks = make_blocks(120)
        source, destination = make_pair(blocks)

        transfer_blocks(source, destination, 0, show_progress=False)
        stats = transfer_blocks(source, destination, 0, show_progress=False)

        assert stats.blocks_read == 120
        assert stats.blocks_written == 0
        assert read_all(destination.path) == {b.cid: b.data for b in blocks}

    def test_progress_advances_by_payload_size(self, make_pair):
        source, destination = make_pair(make_blocks(5, size=100))

        with patch("blockstore_merger.transfer.tqdm") as mock_tqdm:
            pbar = mock_tqdm.return_value.__enter__.return_value
            transfer_blocks(source, destination, 4096, desc="Source 1")

        _, kwargs = mock_tqdm.call_args
        assert kwargs["total"] == 4096
        assert kwargs["unit"] == "B"
        assert kwargs["desc"] == "Source 1"
        assert [c.args[0] for c in pbar.update.call_args_list] == [100] * 5

    def test_missing_block_aborts_after_salvaging_read_blocks(self, make_pair):
        source, destination = make_pair(make_blocks(150))
        with source.all_keys() as keys:
            order = list(keys)
        failing = order[120]
        original = source.get

        def flaky_get(cid, ctx=None):
            if cid == failing:
                raise BlockNotFoundError(cid, str(source.path))
            return original(cid, ctx)

        with patch.object(source, "get", side_effect=flaky_get):
            with pytest.raises(BlockNotFoundError) as exc_info:
                transfer_blocks(source, destination, 0, show_progress=False)

        details = exc_info.value.details
        assert details["key"] == failing
        assert details["step"] == "get"
        assert details["source"] == str(source.path)
        assert set(read_all(destination.path)) == set(order[:120])

    def test_put_failure_aborts_without_retry(self, make_pair):
        source, destination = make_pair(make_blocks(250))
        calls = []
        original = destination.put_many

        def failing_second_put(blocks, ctx=None):
            calls.append(len(blocks))
            if len(calls) == 2:
                raise StorageIOError("put_many", str(destination.path), "disk full")
            return original(blocks, ctx)

        with patch.object(destination, "put_many", side_effect=failing_second_put):
            with pytest.raises(StorageIOError, match="disk full") as exc_info:
                transfer_blocks(source, destination, 0, show_progress=False)

        assert calls == [100, 100]
        assert exc_info.value.details["step"] == "put_many"
        assert len(read_all(destination.path)) == 100

    def test_salvage_failure_keeps_original_error(self, make_pair):
        source, destination = make_pair(make_blocks(10))
        original = source.get
        reads = []

        def failing_fifth_get(cid, ctx=None):
            reads.append(cid)
            if len(reads) == 5:
                raise StorageIOError("get", "x", "bad sector")
            return original(cid, ctx)

        with patch.object(source, "get", side_effect=failing_fifth_get):
            with patch.object(destination, "put_many", side_effect=StorageIOError("put_many", "y", "full")) as put:
                with pytest.raises(StorageIOError, match="bad sector"):
                    transfer_blocks(source, destination, 0, batch_size=100, show_progress=False)

        assert put.call_count == 1

    def test_cancellation(self, make_pair):
        source, destination = make_pair(make_blocks(50))
        ctx = Context()
        original = source.get
        seen = []

        def cancelling_get(cid, ctx=None):
            seen.append(cid)
            if len(seen) == 10:
                ctx.cancel()
            return original(cid, ctx)

        with patch.object(source, "get", side_effect=cancelling_get):
            with pytest.raises(CancelledError):
                transfer_blocks(source, destination, 0, ctx, batch_size=100, show_progress=False)

        assert read_all(destination.path) == {}

    def test_stream_closed_on_abort(self, make_pair):
        source, destination = make_pair(make_blocks(5))
        streams = []
        original = source.all_keys

        def recording_all_keys(ctx=None, strict=False):
            stream = original(ctx, strict=strict)
            streams.append(stream)
            return stream

        with patch.object(source, "all_keys", side_effect=recording_all_keys):
            with patch.object(source, "get", side_effect=StorageIOError("get", "x", "boom")):
                with pytest.raises(StorageIOError):
                    transfer_blocks(source, destination, 0, show_progress=False)

        with pytest.raises(StopIteration):
            next(streams[0])

    def test_invalid_entry_aborts_after_salvaging_read_blocks(self, make_pair):
        blocks = make_blocks(3)
        source, destination = make_pair(blocks)
        # Sorts after every shard holding the valid blocks
        bad_dir = source.path / "QQQ"
        bad_dir.mkdir()
        (bad_dir / "bad!.data").write_bytes(b"x")

        with pytest.raises(StorageIOError, match="invalid key") as exc_info:
            transfer_blocks(source, destination, 0, show_progress=False)

        details = exc_info.value.details
        assert details["source"] == str(source.path)
        assert details["step"] == "all_keys"
        assert details["path"].endswith("bad!.data")
        assert read_all(destination.path) == {b.cid: b.data for b in blocks}

    def test_destination_tracks_shards_not_blocks(self, make_pair):
        blocks = make_blocks(1000, size=16)
        source, destination = make_pair(blocks)

        stats = transfer_blocks(source, destination, 0, show_progress=False)

        assert stats.batches == 10
        shard_dirs = {p for p in destination.path.iterdir() if p.is_dir()}
        assert destination._dirty_dirs == shard_dirs
        destination.sync()
        assert destination._dirty_dirs == set()
