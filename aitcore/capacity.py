"""EXT4 image sizing.

strict     reuse the source image's block and inode counts; refuse content
           that does not fit.
flexible   derive the size from the content: data + 7% metadata estimate +
           inode tables, grown by a user-chosen free-space percentage. An
           ext4 source only contributes its identity (uuid, label, features,
           hash seed, inode size).

All arithmetic is exact (Fraction) so the block count is monotonic in both
content size and overhead percentage.
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from fractions import Fraction
from typing import Optional

from .classify import WorkingTree
from .errors import CapacityExceeded, ConfigError, NotFound
from .metadata import Kind, UnpackInfo

BLOCK_SIZE = 4096
# reserved inodes 1..10 plus lost+found
INODE_SAFETY_MARGIN = 11
METADATA_OVERHEAD = Fraction(7, 100)
INODE_BUFFER = 1024
DEFAULT_INODE_SIZE = 256
DEFAULT_OVERHEAD_PERCENT = 10
MIN_IMAGE_BYTES = 8 * 1024 * 1024

__all__ = [
    'SizingPlan', 'ContentStats', 'measure_content', 'plan_strict', 'plan_flexible', 'plan_ext4',
    'INODE_SAFETY_MARGIN', 'BLOCK_SIZE',
]


@dataclass(frozen=True)
class SizingPlan:
    block_count: int
    inode_count: Optional[int]
    block_size: int = BLOCK_SIZE
    strategy: str = 'flexible'
    inode_size: Optional[int] = None
    uuid: Optional[str] = None
    volume_name: Optional[str] = None
    features: Optional[str] = None
    hash_seed: Optional[str] = None

    @property
    def size_bytes(self) -> int:
        return self.block_count * self.block_size


@dataclass(frozen=True)
class ContentStats:
    size: int
    file_count: int
    dir_count: int

    @property
    def inode_count(self) -> int:
        return self.file_count + self.dir_count


def measure_content(tree: WorkingTree) -> ContentStats:
    """Apparent size of every entry (``du -sb`` style) and entry counts, root excluded from counts."""
    size = files = dirs = 0
    for path, kind in tree:
        size += os.lstat(tree.full(path)).st_size
        if kind is Kind.DIRECTORY:
            dirs += 0 if path == '/' else 1
        else:
            files += 1
    return ContentStats(size, files, dirs)


def plan_strict(block_count: int, inode_count: int, content_size: int, content_inodes: int,
                block_size: int = BLOCK_SIZE, **identity) -> SizingPlan:
    available = block_count * block_size
    if content_size > available:
        raise CapacityExceeded(content_size, available, what='content (strict ext4 geometry)')
    needed = content_inodes + INODE_SAFETY_MARGIN
    if needed > inode_count:
        raise CapacityExceeded(needed, inode_count, unit='inodes', what='entries (strict ext4 geometry)')
    return SizingPlan(block_count, inode_count, block_size, 'strict', **identity)


def _ceil_div(value: Fraction, divisor: int) -> int:
    return -(-value.numerator // (value.denominator * divisor))


def plan_flexible(content_size: int, file_count: int, dir_count: int,
                  overhead_percent: int = DEFAULT_OVERHEAD_PERCENT, inode_size: Optional[int] = None,
                  block_size: int = BLOCK_SIZE, **identity) -> SizingPlan:
    if overhead_percent < 0:
        raise ConfigError(f"overhead percent must be >= 0, got {overhead_percent}")
    inodes = file_count + dir_count + INODE_BUFFER
    inode_table = inodes * (inode_size or DEFAULT_INODE_SIZE)
    base = content_size + content_size * METADATA_OVERHEAD + inode_table
    total = max(base * Fraction(100 + overhead_percent, 100), Fraction(MIN_IMAGE_BYTES))
    return SizingPlan(_ceil_div(total, block_size), inodes, block_size, 'flexible',
                      inode_size=inode_size, **identity)


def plan_ext4(mode: str, info: UnpackInfo, stats: ContentStats,
              overhead_percent: int = DEFAULT_OVERHEAD_PERCENT) -> SizingPlan:
    """Pick the geometry for the rebuilt image from the unpack record."""
    identity = dict(uuid=info.uuid, volume_name=info.volume_name, features=info.features,
                    hash_seed=info.hash_seed)
    if mode == 'strict':
        if not info.is_ext4:
            raise ConfigError(f"strict mode needs an ext4 source, this one was {info.filesystem_type}")
        if info.block_count is None or info.inode_count is None:
            raise NotFound("original block/inode count missing from metadata")
        return plan_strict(info.block_count, info.inode_count, stats.size, stats.inode_count,
                           inode_size=info.inode_size, **identity)
    if mode != 'flexible':
        raise ConfigError(f"unknown ext4 mode: {mode}")
    if not info.is_ext4:
        return plan_flexible(stats.size, stats.file_count, stats.dir_count, overhead_percent)
    return plan_flexible(stats.size, stats.file_count, stats.dir_count, overhead_percent,
                         inode_size=info.inode_size, **identity)
