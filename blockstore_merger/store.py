"""Flatfs blockstore handle: create, open, enumerate, read and write blocks."""

import base64
import binascii
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, Iterator

from .context import Context, ensure_context
from .errors import (
    AlreadyExistsError,
    BlockNotFoundError,
    CancelledError,
    InvalidLayoutError,
    StorageIOError,
    StoreNotFoundError,
)
from .models import Block
from .sharding import README_FILE, README_TEXT, SHARDING_FILE, ShardSpec, next_to_last

logger = logging.getLogger(__name__)

DATA_EXTENSION = ".data"
TEMP_PREFIX = ".put-"
TEMP_SUFFIX = ".tmp"

# Files at the store root that describe the layout rather than hold blocks.
METADATA_FILES = (SHARDING_FILE, README_FILE)

_BASE32_ALPHABET = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")


def validate_key(key: str) -> str:
    """
    Check that key is a well-formed datastore key and return it.

    A content identifier is its datastore key: the unpadded upper-case base32
    rendering of the identifier bytes. The bytes themselves are opaque (a
    binary multihash, a digest), so only the base32 form is checked.

    Raises:
        ValueError: If key is empty or not unpadded upper-case base32.
    """
    if not key:
        raise ValueError("empty key")
    if not _BASE32_ALPHABET.issuperset(key):
        raise ValueError(f"not upper-case base32: {key!r}")
    try:
        base64.b32decode(key + "=" * (-len(key) % 8))
    except binascii.Error as e:
        raise ValueError(f"not valid base32: {key!r} ({e})") from None
    return key


def _fsync_path(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _fsync_dir(path: Path) -> None:
    # Directories cannot be opened for fsync on Windows
    if os.name == 'nt':
        return
    _fsync_path(path)


def _write_atomic(path: Path, content: str) -> None:
    """Write a small text file via a temp file and rename, so readers never see it half written."""
    fd, temp = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp, path)
    except BaseException:
        if os.path.exists(temp):
            os.unlink(temp)
        raise


def create_blockstore(path: Path, shard: ShardSpec | None = None) -> None:
    """
    Initialize an empty blockstore layout at path.

    The directory (and its parents) is created if needed, then the SHARDING
    descriptor and a _README are written.

    Raises:
        AlreadyExistsError: If path already holds a blockstore. Nothing is written.
        StorageIOError: If the layout cannot be written.
    """
    path = Path(path)
    shard = shard or next_to_last(3)

    if (path / SHARDING_FILE).exists():
        raise AlreadyExistsError(str(path))

    try:
        path.mkdir(parents=True, exist_ok=True)
        _write_atomic(path / SHARDING_FILE, shard.descriptor() + "\n")
        if not (path / README_FILE).exists():
            _write_atomic(path / README_FILE, README_TEXT)
        _fsync_dir(path)
    except OSError as e:
        raise StorageIOError("create", str(path), e) from e

    logger.debug("Created blockstore at %s (%s)", path, shard)


def open_blockstore(path: Path, read_only: bool = False, sync_files: bool = False) -> "FlatfsBlockstore":
    """
    Open an existing blockstore.

    Args:
        path: Store root
        read_only: Reject writes through this handle
        sync_files: Sync shard directories after every batch instead of at sync()

    Raises:
        StoreNotFoundError: If path does not exist.
        InvalidLayoutError: If path is not a directory or has no valid SHARDING file.
        StorageIOError: If the SHARDING file cannot be read.
    """
    path = Path(path)
    if not path.exists():
        raise StoreNotFoundError(str(path))
    if not path.is_dir():
        raise InvalidLayoutError(str(path), "not a directory")

    try:
        descriptor = (path / SHARDING_FILE).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise InvalidLayoutError(str(path), f"missing {SHARDING_FILE} file") from None
    except (OSError, UnicodeDecodeError) as e:
        raise StorageIOError("open", str(path / SHARDING_FILE), e) from e

    try:
        shard = ShardSpec.parse(descriptor)
    except ValueError as e:
        raise InvalidLayoutError(str(path), str(e)) from e

    return FlatfsBlockstore(path, shard, read_only=read_only, sync_files=sync_files)


class KeyDecodeError:
    """Record of a block file whose name is not a key this store can serve."""

    def __init__(self, path: str, error: str):
        self.path = path
        self.error = error


class KeyStream:
    """
    One-shot stream of the content identifiers held by a store.

    Keys come out in storage-layout order: shard directories sorted by name,
    then block files sorted by name within each shard. Each shard directory is
    listed only when the stream reaches it, so memory stays bounded by the
    fan-out of a single shard.

    A block file whose name is not a valid key, or that sits in the wrong shard
    directory, is skipped and recorded in ``errors``. With ``strict`` the stream
    raises StorageIOError on such an entry instead, so a copy never silently
    leaves blocks behind.

    Use it as a context manager so the scan is released even when the consumer
    stops early.
    """

    def __init__(
        self,
        root: Path,
        shard: ShardSpec,
        shard_dirs: list[str],
        ctx: Context,
        strict: bool = False
    ):
        self.root = root
        self.shard = shard
        self.strict = strict
        self.errors: list[KeyDecodeError] = []
        self._gen = self._scan(shard_dirs, ctx)

    def _skip(self, entry_path: str, reason: str) -> None:
        if self.strict:
            raise StorageIOError("all_keys", entry_path, reason)
        logger.warning("Skipping entry %s: %s", entry_path, reason)
        self.errors.append(KeyDecodeError(entry_path, reason))

    def _scan(self, shard_dirs: list[str], ctx: Context) -> Iterator[str]:
        for shard_dir in shard_dirs:
            ctx.check()
            dir_path = self.root / shard_dir
            try:
                with os.scandir(dir_path) as entries:
                    names = sorted(
                        entry.name for entry in entries
                        if entry.name.endswith(DATA_EXTENSION) and entry.is_file()
                    )
            except FileNotFoundError:
                # Shard removed since the root was listed
                continue
            except OSError as e:
                raise StorageIOError("all_keys", str(dir_path), e) from e

            for name in names:
                ctx.check()
                key = name[:-len(DATA_EXTENSION)]
                try:
                    validate_key(key)
                except ValueError as e:
                    self._skip(str(dir_path / name), f"invalid key: {e}")
                    continue
                if self.shard.dir_for(key) != shard_dir:
                    self._skip(str(dir_path / name), f"key does not belong in shard {shard_dir}")
                    continue
                yield key

    def __iter__(self) -> "KeyStream":
        return self

    def __next__(self) -> str:
        return next(self._gen)

    def close(self) -> None:
        self._gen.close()

    def __enter__(self) -> "KeyStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class FlatfsBlockstore:
    """
    Handle on an open flatfs blockstore.

    Each block is one file; writes go to a temp file in the target shard and
    are fsynced, then renamed into place, so a reader sees either the whole
    block or no block. The renames become durable once their shard directories
    are synced: after every batch with sync_files, otherwise at sync().
    Closing never syncs: call sync() first when durability matters.
    """

    def __init__(self, path: Path, shard: ShardSpec, read_only: bool = False, sync_files: bool = False):
        self.path = Path(path)
        self.shard = shard
        self.read_only = read_only
        self.sync_files = sync_files
        self._closed = False
        # Shard directories holding renames not yet synced; at most one entry per shard
        self._dirty_dirs: set[Path] = set()

    def __repr__(self) -> str:
        mode = "ro" if self.read_only else "rw"
        return f"FlatfsBlockstore({str(self.path)!r}, {self.shard}, {mode})"

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise StorageIOError(operation, str(self.path), "blockstore is closed")

    def _block_path(self, key: str) -> Path:
        return self.path / self.shard.dir_for(key) / (key + DATA_EXTENSION)

    def all_keys(self, ctx: Context | None = None, strict: bool = False) -> KeyStream:
        """
        Start a fresh scan over the keys currently on disk.

        With strict, an entry that is not a valid key aborts the scan instead
        of being skipped.

        Raises:
            StorageIOError: If the store root cannot be listed.
        """
        ctx = ensure_context(ctx)
        self._check_open("all_keys")
        ctx.check()
        try:
            with os.scandir(self.path) as entries:
                shard_dirs = sorted(
                    entry.name for entry in entries
                    if entry.is_dir() and not entry.name.startswith(".")
                )
        except OSError as e:
            raise StorageIOError("all_keys", str(self.path), e) from e
        return KeyStream(self.path, self.shard, shard_dirs, ctx, strict=strict)

    def get(self, cid: str, ctx: Context | None = None) -> Block:
        """
        Read the block stored under cid.

        Raises:
            BlockNotFoundError: If no block is stored under cid.
            StorageIOError: If the block file cannot be read.
        """
        ctx = ensure_context(ctx)
        self._check_open("get")
        ctx.check()
        try:
            validate_key(cid)
        except ValueError:
            raise BlockNotFoundError(cid, str(self.path)) from None

        block_path = self._block_path(cid)
        try:
            with open(block_path, "rb") as f:
                data = f.read()
        except FileNotFoundError:
            raise BlockNotFoundError(cid, str(self.path)) from None
        except OSError as e:
            raise StorageIOError("get", str(block_path), e, key=cid) from e
        return Block(cid, data)

    def has(self, cid: str, ctx: Context | None = None) -> bool:
        ctx = ensure_context(ctx)
        self._check_open("has")
        ctx.check()
        try:
            validate_key(cid)
        except ValueError:
            return False
        return self._block_path(cid).is_file()

    def put_many(self, blocks: Iterable[Block], ctx: Context | None = None) -> int:
        """
        Write a batch of blocks, each one atomically.

        All payloads are first written and fsynced to temp files in their shard
        directories, then renamed into place. Blocks already present are left
        untouched: identical identifiers address identical content.

        Returns:
            Number of blocks newly written

        Raises:
            StorageIOError: If any block fails. Blocks renamed before the
                failure stay in the store; temp files are removed.
            CancelledError: If ctx is done before the renames start.
        """
        ctx = ensure_context(ctx)
        self._check_open("put_many")
        if self.read_only:
            raise StorageIOError("put_many", str(self.path), "blockstore is read-only")

        pending: list[tuple[str, str, Path]] = []
        seen: set[str] = set()
        renamed = 0
        current = None
        try:
            for block in blocks:
                ctx.check()
                current = block.cid
                target = self._block_path(validate_key(block.cid))
                if block.cid in seen or target.exists():
                    continue
                seen.add(block.cid)

                target.parent.mkdir(exist_ok=True)
                fd, temp = tempfile.mkstemp(dir=target.parent, prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX)
                pending.append((block.cid, temp, target))
                with os.fdopen(fd, "wb") as f:
                    f.write(block.data)
                    f.flush()
                    os.fsync(f.fileno())

            shard_dirs = set()
            for cid, temp, target in pending:
                current = cid
                os.replace(temp, target)
                renamed += 1
                shard_dirs.add(target.parent)

            if self.sync_files and shard_dirs:
                for shard_dir in sorted(shard_dirs):
                    _fsync_dir(shard_dir)
                _fsync_dir(self.path)
            else:
                self._dirty_dirs.update(shard_dirs)
        except CancelledError:
            self._discard_temps(pending[renamed:])
            raise
        except (OSError, ValueError) as e:
            self._discard_temps(pending[renamed:])
            raise StorageIOError("put_many", str(self.path), e, key=current) from e

        if renamed:
            logger.debug("Wrote %d new blocks to %s", renamed, self.path)
        return renamed

    @staticmethod
    def _discard_temps(pending: list[tuple[str, str, Path]]) -> None:
        for _, temp, _ in pending:
            try:
                os.unlink(temp)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Could not remove temp file %s: %s", temp, e)

    def sync(self, prefix: str = "/", ctx: Context | None = None) -> None:
        """
        Make every block written so far durable.

        prefix is a datastore key prefix; "/" covers the whole store. Shard
        directories do not group keys by prefix (next-to-last sharding spreads
        one prefix over many shards), so every shard directory with unsynced
        renames is flushed whatever the prefix.

        Raises:
            StorageIOError: If a directory cannot be synced.
        """
        ctx = ensure_context(ctx)
        self._check_open("sync")
        ctx.check()

        synced = 0
        try:
            for shard_dir in sorted(self._dirty_dirs):
                ctx.check()
                try:
                    _fsync_dir(shard_dir)
                except FileNotFoundError:
                    pass
                self._dirty_dirs.discard(shard_dir)
                synced += 1
            _fsync_dir(self.path)
        except OSError as e:
            raise StorageIOError("sync", str(self.path), e) from e

        logger.debug("Synced %d shard directories under %s in %s", synced, prefix, self.path)

    def close(self) -> None:
        """Release the handle. Does not sync."""
        if self._closed:
            return
        if self._dirty_dirs:
            logger.debug("Closing %s with %d unsynced shard directories", self.path, len(self._dirty_dirs))
        self._closed = True

    def __enter__(self) -> "FlatfsBlockstore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
