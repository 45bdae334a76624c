"""File hashing, size formatting and tree copy helpers."""
from __future__ import annotations
import os, hashlib, shutil
from typing import Iterable, Optional, Tuple

__all__ = [
    'sha256sum', 'human_size', 'copy_tree', 'sudo_owner', 'hand_back'
]

def sha256sum(path: str) -> str:
    h = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(1024*1024), b''):
            h.update(chunk)
    return h.hexdigest()

def human_size(num: int) -> str:
    """IEC formatting, same shape as ``numfmt --to=iec-i --suffix=B``."""
    value = float(num)
    for unit in ('B', 'KiB', 'MiB', 'GiB'):
        if abs(value) < 1024:
            return f"{int(value)}B" if unit == 'B' else f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}TiB"

def copy_tree(src: str, dst: str, exclude: Iterable[str] = ()) -> None:
    """Copy |src| into |dst| keeping symlinks as links.

    Names in |exclude| are skipped at the top level of |src| only.
    Ownership is not copied; callers re-apply it from the stored snapshot.
    """
    skip = set(exclude)
    src_abs = os.path.abspath(src)

    def _ignore(directory, names):
        if os.path.abspath(directory) == src_abs:
            return [n for n in names if n in skip]
        return []

    shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True, ignore=_ignore)

def sudo_owner() -> Optional[Tuple[int, int]]:
    """(uid, gid) of the user that invoked sudo, or None."""
    uid = os.environ.get('SUDO_UID')
    gid = os.environ.get('SUDO_GID')
    if not uid or not gid:
        return None
    try:
        return int(uid), int(gid)
    except ValueError:
        return None

def hand_back(path: str) -> bool:
    """chown |path| (recursively for directories) to the sudo caller."""
    owner = sudo_owner()
    if owner is None or not os.path.lexists(path):
        return False
    uid, gid = owner
    os.lchown(path, uid, gid)
    if os.path.isdir(path) and not os.path.islink(path):
        for dirpath, dirnames, filenames in os.walk(path):
            for name in dirnames + filenames:
                os.lchown(os.path.join(dirpath, name), uid, gid)
    return True
