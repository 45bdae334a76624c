"""SELinux label and file capability extended attributes.

Reads never raise: a filesystem without xattr support, or an entry without
the attribute, reads as None. Writes raise OSError for the caller to record.
"""
from __future__ import annotations
import os, struct
from typing import Optional

SELINUX_XATTR = 'security.selinux'
CAPABILITY_XATTR = 'security.capability'

VFS_CAP_REVISION_MASK = 0xFF000000
VFS_CAP_REVISION_2 = 0x02000000
VFS_CAP_REVISION_3 = 0x03000000
VFS_CAP_FLAGS_EFFECTIVE = 0x000001

UNKNOWN_CONTEXTS = ('', '?')

__all__ = [
    'read_context', 'write_context', 'read_capabilities', 'write_capabilities', 'normalize_context'
]

def normalize_context(value: Optional[str]) -> Optional[str]:
    """Map the unknown spellings ('' and '?') to None."""
    if value is None:
        return None
    value = value.strip().rstrip('\x00')
    return None if value in UNKNOWN_CONTEXTS else value

def read_context(path: str) -> Optional[str]:
    try:
        raw = os.getxattr(path, SELINUX_XATTR, follow_symlinks=False)
    except OSError:
        return None
    return normalize_context(raw.decode('utf-8', errors='replace'))

def write_context(path: str, context: str) -> None:
    os.setxattr(path, SELINUX_XATTR, context.encode('utf-8') + b'\x00', follow_symlinks=False)

def read_capabilities(path: str) -> Optional[int]:
    """Return the 64-bit permitted capability set of |path|, or None."""
    try:
        data = os.getxattr(path, CAPABILITY_XATTR, follow_symlinks=False)
    except OSError:
        return None
    if len(data) < 20:
        return None
    magic, p_low, _, p_high, _ = struct.unpack('<IIIII', data[:20])
    if magic & VFS_CAP_REVISION_MASK not in (VFS_CAP_REVISION_2, VFS_CAP_REVISION_3):
        return None
    caps = (p_high << 32) | p_low
    return caps or None

def write_capabilities(path: str, caps: int) -> None:
    magic = VFS_CAP_REVISION_2 | VFS_CAP_FLAGS_EFFECTIVE
    data = struct.pack('<IIIII', magic, caps & 0xFFFFFFFF, 0, (caps >> 32) & 0xFFFFFFFF, 0)
    os.setxattr(path, CAPABILITY_XATTR, data, follow_symlinks=False)
