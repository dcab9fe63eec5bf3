"""
Exceptions raised by the blockstore merger.

Every failure surfaced by the store, the size estimator, the transfer engine
and the orchestrator is a BlockstoreError subclass, so callers can handle the
whole family in one place while still telling the kinds apart. Each class maps
to the process exit code the CLI uses for it.
"""


class BlockstoreError(Exception):
    """Base exception for all blockstore merger errors."""

    exit_code = 1

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def with_context(self, **details) -> "BlockstoreError":
        """Attach extra context (source, step, ...) without changing the error kind.

        Keys already present are kept, so the innermost context wins.
        """
        for key, value in details.items():
            if value is not None:
                self.details.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{key}={value}" for key, value in self.details.items())
        return f"{self.message} ({context})"


class NotFoundError(BlockstoreError):
    """Raised when a store or a block is missing."""

    exit_code = 3


class StoreNotFoundError(NotFoundError):
    """Raised when no blockstore exists at a path."""

    def __init__(self, path: str):
        super().__init__(f"Blockstore not found: {path}", {"path": path})
        self.path = path


class BlockNotFoundError(NotFoundError):
    """Raised when a block is absent from a store."""

    def __init__(self, cid: str, path: str | None = None):
        details = {"key": cid}
        if path:
            details["path"] = path
        super().__init__(f"Block not found: {cid}", details)
        self.cid = cid
        self.path = path


class AlreadyExistsError(BlockstoreError):
    """Raised when creating a blockstore where one already exists."""

    exit_code = 4

    def __init__(self, path: str):
        super().__init__(f"Blockstore already exists: {path}", {"path": path})
        self.path = path


class InvalidLayoutError(BlockstoreError):
    """Raised when a path exists but does not hold a valid blockstore layout."""

    exit_code = 5

    def __init__(self, path: str, reason: str):
        super().__init__(f"Invalid blockstore layout at {path}: {reason}", {"path": path})
        self.path = path
        self.reason = reason


class StorageIOError(BlockstoreError):
    """Raised when a filesystem or storage operation fails."""

    exit_code = 6

    def __init__(
        self,
        operation: str,
        path: str | None = None,
        cause: Exception | str | None = None,
        key: str | None = None,
    ):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if key:
            details["key"] = key
        if cause:
            details["cause"] = str(cause)
        message = f"Storage operation '{operation}' failed"
        if cause:
            message = f"{message}: {cause}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class CancelledError(BlockstoreError):
    """Raised when an operation is cancelled or its deadline passes."""

    exit_code = 130

    def __init__(self, reason: str = "operation cancelled"):
        super().__init__(reason)
        self.reason = reason

