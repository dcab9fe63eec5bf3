"""Block transfer between two open blockstores."""

import logging

from tqdm import tqdm

from .context import Context, ensure_context
from .errors import BlockstoreError, CancelledError
from .models import DEFAULT_BATCH_SIZE, Block, TransferStats
from .store import FlatfsBlockstore

logger = logging.getLogger(__name__)


def _flush(
    destination: FlatfsBlockstore,
    batch: list[Block],
    stats: TransferStats,
    ctx: Context
) -> None:
    """Write the batch to the destination, then clear it. A failed write leaves the batch as is."""
    try:
        written = destination.put_many(batch, ctx)
    except BlockstoreError as e:
        raise e.with_context(step="put_many", batch_first_key=batch[0].cid, batch_size=len(batch))

    stats.blocks_written += written
    stats.blocks_flushed += len(batch)
    stats.batches += 1
    logger.debug(
        "Flushed batch %d: %d blocks, %d new",
        stats.batches, len(batch), written
    )
    batch.clear()


def _salvage(
    destination: FlatfsBlockstore,
    batch: list[Block],
    stats: TransferStats,
    ctx: Context
) -> None:
    """Flush blocks already read before a source failure. Failure here is logged only."""
    try:
        _flush(destination, batch, stats, ctx)
    except BlockstoreError as e:
        logger.error("Could not flush %d blocks read before the failure: %s", len(batch), e)


def transfer_blocks(
    source: FlatfsBlockstore,
    destination: FlatfsBlockstore,
    estimated_size: int,
    ctx: Context | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    desc: str | None = None,
    show_progress: bool = True
) -> TransferStats:
    """
    Copy every block of source into destination.

    Keys are consumed in the order the source stream yields them. Each block
    is read, added to an in-memory batch, and the batch is written with
    put_many once it holds batch_size blocks, so at most batch_size payloads
    are held at a time. The residual batch is written when the stream ends.

    Progress advances by each payload's length as soon as it has been read,
    scaled against estimated_size.

    Any read or write failure aborts the transfer; no retry is attempted. A
    source entry that is not a valid key counts as a read failure, so no block
    is left behind unnoticed.
    Blocks read before a read failure are flushed first, then the error is
    raised with the source path, key and step attached.

    Returns:
        TransferStats for this source

    Raises:
        BlockstoreError: The first failure, with its kind preserved.
    """
    ctx = ensure_context(ctx)
    source_path = str(source.path)
    stats = TransferStats()
    batch: list[Block] = []

    try:
        keys = source.all_keys(ctx, strict=True)
    except BlockstoreError as e:
        raise e.with_context(source=source_path, step="all_keys")

    with keys, tqdm(
        total=estimated_size,
        desc=desc,
        unit="B",
        unit_scale=True,
        unit_divisor=1024,
        leave=False,
        disable=not show_progress
    ) as pbar:
        try:
            for cid in keys:
                try:
                    block = source.get(cid, ctx)
                except BlockstoreError as e:
                    raise e.with_context(step="get", key=cid)

                batch.append(block)
                stats.blocks_read += 1
                stats.bytes_read += block.size
                pbar.update(block.size)

                if len(batch) >= batch_size:
                    _flush(destination, batch, stats, ctx)

            if batch:
                _flush(destination, batch, stats, ctx)
        except BlockstoreError as e:
            read_failed = e.details.get("step") != "put_many"
            if batch and read_failed and not isinstance(e, CancelledError):
                _salvage(destination, batch, stats, ctx)
            raise e.with_context(source=source_path, step="all_keys")

    return stats
