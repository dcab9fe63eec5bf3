"""
Blockstore Merger - A CLI tool to merge flatfs blockstores into one destination store.

Features:
- Streams every key of each source store without loading them into memory
- Batched, per-block atomic writes into the destination
- Deduplication by content identifier
- Progress visualization against a precomputed size estimate
- Peek at the keys held by one or more stores
"""

__version__ = "1.0.0"
