"""Size estimation for progress reporting."""

import os
import stat
from pathlib import Path
from typing import Iterable

from .context import Context, ensure_context
from .errors import StorageIOError


def estimate_size(path: Path, ctx: Context | None = None, ignore: Iterable[str] = ()) -> int:
    """
    Sum the sizes of all regular files under path.

    This is the on-disk footprint of the store, used only to scale the
    progress bar; it is never consulted for correctness.

    Args:
        path: Directory to walk
        ctx: Cancellation context, checked once per directory
        ignore: File names at the top level of path that are not counted

    Returns:
        Total size in bytes

    Raises:
        StorageIOError: If the walk cannot complete.
        CancelledError: If ctx is done before the walk finishes.
    """
    ctx = ensure_context(ctx)
    root = Path(path)
    ignored = set(ignore)

    if not root.is_dir():
        raise StorageIOError("estimate_size", str(root), "not a directory")

    def on_error(error: OSError) -> None:
        raise StorageIOError("estimate_size", error.filename or str(root), error) from error

    total = 0
    for current, _, filenames in os.walk(root, onerror=on_error):
        ctx.check()
        top_level = Path(current) == root
        for filename in filenames:
            if top_level and filename in ignored:
                continue
            file_path = os.path.join(current, filename)
            try:
                st = os.lstat(file_path)
            except FileNotFoundError:
                # Removed while walking
                continue
            except OSError as e:
                raise StorageIOError("estimate_size", file_path, e) from e
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total
