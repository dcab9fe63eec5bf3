"""Core merge logic."""

import logging
import sys
from pathlib import Path

from tqdm import tqdm

from .context import Context, ensure_context
from .errors import BlockstoreError
from .models import MergeConfig, MergeSummary, TransferStats, payload_checksum
from .sizing import estimate_size
from .store import METADATA_FILES, FlatfsBlockstore, create_blockstore, open_blockstore
from .transfer import transfer_blocks

logger = logging.getLogger(__name__)


def _close_source(source: FlatfsBlockstore, index: int) -> None:
    """Close a source store. It was only read from, so a failure here is not fatal."""
    try:
        source.close()
    except BlockstoreError as e:
        logger.warning("Failed to close input blockstore %d (%s): %s", index, source.path, e)
        print(f"  Warning: failed to close input blockstore {index}: {source.path}")


def merge_source(
    source_path: Path,
    destination: FlatfsBlockstore,
    config: MergeConfig,
    ctx: Context,
    index: int
) -> tuple[TransferStats, int]:
    """
    Open one source read-only, estimate its size and drain it into destination.

    Returns:
        Tuple of (transfer stats, estimated size in bytes)
    """
    try:
        source = open_blockstore(source_path, read_only=True)
    except BlockstoreError as e:
        raise e.with_context(source=str(source_path), step="open source")

    try:
        try:
            estimated = estimate_size(source_path, ctx, ignore=METADATA_FILES)
        except BlockstoreError as e:
            raise e.with_context(source=str(source_path), step="estimate_size")

        stats = transfer_blocks(
            source,
            destination,
            estimated,
            ctx,
            batch_size=config.batch_size,
            desc=f"Source {index}",
            show_progress=config.show_progress
        )
    finally:
        _close_source(source, index)

    return stats, estimated


def merge_blockstores(config: MergeConfig, ctx: Context | None = None) -> MergeSummary:
    """
    Merge every source blockstore into a newly created destination.

    Steps run strictly in order:

    1. Create the destination layout (fails if a store already exists there)
    2. Open the destination
    3. For each source, one at a time: open, estimate size, transfer, close
    4. Sync the destination, then close it

    The merge is not transactional: if a step fails, blocks already written
    stay in the destination, the destination is released without a sync, and
    the error is raised with the failing source and the number of sources
    completed attached.

    Returns:
        MergeSummary describing the completed run
    """
    ctx = ensure_context(ctx)
    total = len(config.sources)
    summary = MergeSummary(destination=str(config.destination), sources_total=total)

    try:
        create_blockstore(config.destination, config.shard)
    except BlockstoreError as e:
        raise e.with_context(step="create destination")

    try:
        destination = open_blockstore(config.destination, sync_files=config.sync_files)
    except BlockstoreError as e:
        raise e.with_context(step="open destination")

    try:
        for index, source_path in enumerate(config.sources, start=1):
            print(f"Merging {source_path}... ({index}/{total})")
            stats, estimated = merge_source(source_path, destination, config, ctx, index)
            summary.add(stats, estimated)

            print(f"  {stats.blocks_read} blocks read, {stats.blocks_written} new "
                  f"({tqdm.format_sizeof(stats.bytes_read, 'B', 1024)})")

        try:
            destination.sync("/", ctx)
        except BlockstoreError as e:
            raise e.with_context(step="sync destination")
    except BlockstoreError as e:
        destination.close()
        raise e.with_context(
            destination=str(config.destination),
            sources_completed=f"{summary.sources_completed}/{total}"
        )

    try:
        destination.close()
    except BlockstoreError as e:
        raise e.with_context(step="close destination", destination=str(config.destination))

    print("Finished merging")
    print(f"Output blockstore: {config.destination}")
    print(f"Total blocks read: {summary.blocks_read}")
    print(f"  - New blocks written: {summary.blocks_written}")
    print(f"  - Already present: {summary.blocks_read - summary.blocks_written}")
    return summary


def peek_blockstores(paths: list[Path], ctx: Context | None = None, checksum: bool = False) -> int:
    """
    Print every key held by each store.

    With checksum, each line also carries the payload size and its xxh64
    digest, tab separated. A per-store count goes to stderr so stdout stays a
    plain key listing.

    Returns:
        Total number of keys printed
    """
    ctx = ensure_context(ctx)
    total = 0

    for path in paths:
        try:
            store = open_blockstore(path, read_only=True)
        except BlockstoreError as e:
            raise e.with_context(source=str(path), step="open source")

        count = 0
        with store:
            try:
                with store.all_keys(ctx) as keys:
                    for cid in keys:
                        if checksum:
                            block = store.get(cid, ctx)
                            print(f"{cid}\t{block.size}\t{payload_checksum(block.data)}")
                        else:
                            print(cid)
                        count += 1
            except BlockstoreError as e:
                raise e.with_context(source=str(path), step="peek")

        print(f"{path}: {count} blocks", file=sys.stderr)
        if keys.errors:
            print(f"  Warning: {len(keys.errors)} entries skipped (not valid block keys)", file=sys.stderr)
        total += count

    return total
