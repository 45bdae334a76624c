"""Image type detection from on-disk magic values.

Only the headers are inspected: Android sparse header at offset 0, the EXT4
superblock at 1024 and the EROFS superblock at 1024.
"""
from __future__ import annotations
import struct, uuid
from dataclasses import dataclass
from typing import Dict, Optional

SPARSE_MAGIC = 0xED26FF3A
EXT4_MAGIC = 0xEF53
EROFS_MAGIC = 0xE0F5E1E2
SUPERBLOCK_OFFSET = 1024

# ext4 superblock feature bits
INCOMPAT_RECOVER = 0x0004
INCOMPAT_64BIT = 0x0080
RO_COMPAT_SHARED_BLOCKS = 0x4000
COMPAT_HAS_JOURNAL = 0x0004

__all__ = ['ImageInfo', 'detect_image']


@dataclass(frozen=True)
class ImageInfo:
    kind: str  # 'sparse', 'ext4', 'erofs' or 'unknown'
    needs_recovery: bool = False
    shared_blocks: bool = False
    has_journal: bool = False
    block_size: Optional[int] = None
    block_count: Optional[int] = None
    inode_count: Optional[int] = None
    inode_size: Optional[int] = None
    uuid: Optional[str] = None
    volume_name: Optional[str] = None

    @property
    def needs_repair(self) -> bool:
        return self.needs_recovery or self.shared_blocks

    def geometry(self) -> Dict[str, object]:
        """Fields that map onto UnpackInfo's ORIGINAL_* values."""
        out: Dict[str, object] = {}
        for name in ('block_count', 'inode_count', 'inode_size', 'uuid', 'volume_name'):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


def _ext4_info(sb: bytes) -> ImageInfo:
    inodes_count, blocks_lo = struct.unpack_from('<II', sb, 0x00)
    log_block_size = struct.unpack_from('<I', sb, 0x18)[0]
    inode_size = struct.unpack_from('<H', sb, 0x58)[0]
    compat, incompat, ro_compat = struct.unpack_from('<III', sb, 0x5C)
    blocks_hi = struct.unpack_from('<I', sb, 0x150)[0] if incompat & INCOMPAT_64BIT else 0
    label = sb[0x78:0x88].split(b'\x00', 1)[0].decode('utf-8', errors='replace')
    return ImageInfo(
        kind='ext4',
        needs_recovery=bool(incompat & INCOMPAT_RECOVER),
        shared_blocks=bool(ro_compat & RO_COMPAT_SHARED_BLOCKS),
        has_journal=bool(compat & COMPAT_HAS_JOURNAL),
        block_size=1024 << log_block_size,
        block_count=(blocks_hi << 32) | blocks_lo,
        inode_count=inodes_count,
        inode_size=inode_size or 128,
        uuid=str(uuid.UUID(bytes=bytes(sb[0x68:0x78]))),
        volume_name=label,
    )


def detect_image(path: str) -> ImageInfo:
    with open(path, 'rb') as f:
        head = f.read(SUPERBLOCK_OFFSET + 1024)
    if len(head) >= 4 and struct.unpack_from('<I', head, 0)[0] == SPARSE_MAGIC:
        return ImageInfo('sparse')
    sb = head[SUPERBLOCK_OFFSET:]
    if len(sb) >= 4 and struct.unpack_from('<I', sb, 0)[0] == EROFS_MAGIC:
        return ImageInfo('erofs')
    if len(sb) >= 0x154 and struct.unpack_from('<H', sb, 0x38)[0] == EXT4_MAGIC:
        return _ext4_info(sb)
    return ImageInfo('unknown')
