"""Shard functions mapping a datastore key to its shard directory.

The layout follows the flatfs format: a ``SHARDING`` file at the store root
holds a descriptor such as ``/repo/flatfs/shard/v1/next-to-last/3``, and every
block lives in ``<root>/<shard-dir>/<KEY>.data`` where the shard directory is
derived from the key by one of the functions below.
"""

from dataclasses import dataclass
from typing import Callable

SHARDING_FILE = "SHARDING"
README_FILE = "_README"
DESCRIPTOR_PREFIX = "/repo/flatfs/shard/v1/"


def _prefix(length: int) -> Callable[[str], str]:
    padding = "_" * length

    def shard(key: str) -> str:
        return (key + padding)[:length]
    return shard


def _suffix(length: int) -> Callable[[str], str]:
    padding = "_" * length

    def shard(key: str) -> str:
        padded = padding + key
        return padded[len(padded) - length:]
    return shard


def _next_to_last(length: int) -> Callable[[str], str]:
    padding = "_" * (length + 1)

    def shard(key: str) -> str:
        padded = padding + key
        offset = len(padded) - length - 1
        return padded[offset:offset + length]
    return shard


SHARD_FUNCTIONS = {
    "prefix": _prefix,
    "suffix": _suffix,
    "next-to-last": _next_to_last,
}


@dataclass(frozen=True)
class ShardSpec:
    """A named shard function and its length parameter."""
    name: str
    length: int

    def __post_init__(self) -> None:
        if self.name not in SHARD_FUNCTIONS:
            raise ValueError(f"unknown shard function: {self.name}")
        if self.length < 1:
            raise ValueError(f"shard length must be positive, got {self.length}")

    def dir_for(self, key: str) -> str:
        """Return the shard directory name for a datastore key (leading slash optional)."""
        return SHARD_FUNCTIONS[self.name](self.length)(key.lstrip("/"))

    def descriptor(self) -> str:
        return f"{DESCRIPTOR_PREFIX}{self.name}/{self.length}"

    def __str__(self) -> str:
        return self.descriptor()

    @classmethod
    def parse(cls, text: str) -> "ShardSpec":
        """
        Parse a shard descriptor.

        Accepts the full form written to SHARDING files
        (``/repo/flatfs/shard/v1/next-to-last/3``) as well as the short
        ``next-to-last/3`` form used on the command line.

        Raises:
            ValueError: If the descriptor is malformed or names an unknown function.
        """
        text = text.strip()
        if text.startswith(DESCRIPTOR_PREFIX):
            text = text[len(DESCRIPTOR_PREFIX):]
        elif text.startswith("/"):
            raise ValueError(f"unsupported shard descriptor: {text}")

        parts = text.split("/")
        if len(parts) != 2:
            raise ValueError(f"malformed shard descriptor: {text!r}")
        name, length = parts
        try:
            return cls(name, int(length))
        except ValueError as e:
            raise ValueError(f"malformed shard descriptor {text!r}: {e}") from e


def prefix(length: int) -> ShardSpec:
    return ShardSpec("prefix", length)


def suffix(length: int) -> ShardSpec:
    return ShardSpec("suffix", length)


def next_to_last(length: int) -> ShardSpec:
    return ShardSpec("next-to-last", length)


README_TEXT = """This is a repository of content-addressed blocks.

Each block is stored in its own file named <KEY>.data, where KEY is the
upper-case, unpadded base32 encoding of the block's identifier bytes
(usually a multihash). The key itself is the content identifier.
Files are grouped into shard directories; the SHARDING file next to this one
names the function that maps a key to its directory. Do not edit the SHARDING
file, and do not add or remove files by hand while the store is open.
"""
