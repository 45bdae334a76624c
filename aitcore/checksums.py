"""Content checksum table (``original_checksums.txt``).

Lines follow the sha256sum convention, ``<hash>  ./relative/path``, so the
file can also be verified with ``sha256sum -c`` from the extracted root.
Paths are held internally in the same ``/``-rooted form as PathRecord.path.
"""
from __future__ import annotations
import logging, os
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, Iterator, Optional

from .file_utils import sha256sum

log = logging.getLogger(__name__)

__all__ = [
    'ChecksumTable', 'compute_checksums', 'hash_files', 'load_checksums', 'save_checksums', 'store_path'
]

def store_path(rel: str) -> str:
    """Normalize './a/b', 'a/b' or '/a/b' to '/a/b'."""
    rel = rel.replace(os.sep, '/')
    if rel.startswith('./'):
        rel = rel[1:]
    elif rel in ('.', ''):
        return '/'
    if not rel.startswith('/'):
        rel = '/' + rel
    return rel


class ChecksumTable:
    """Mapping of regular-file path to content hash, in insertion order."""

    def __init__(self, items: Optional[Dict[str, str]] = None):
        self._sums: Dict[str, str] = dict(items or {})

    def __contains__(self, path: str) -> bool:
        return path in self._sums

    def __len__(self) -> int:
        return len(self._sums)

    def __iter__(self) -> Iterator[str]:
        return iter(self._sums)

    def get(self, path: str) -> Optional[str]:
        return self._sums.get(path)

    def set(self, path: str, digest: str) -> None:
        self._sums[path] = digest

    def items(self):
        return self._sums.items()


def hash_files(paths: Dict[str, str], workers: Optional[int] = None) -> Dict[str, str]:
    """Hash {store_path: filesystem_path} on a thread pool; returns {store_path: digest}."""
    keys = list(paths)
    with ThreadPoolExecutor(max_workers=workers) as ex:
        digests = list(ex.map(sha256sum, (paths[k] for k in keys)))
    return dict(zip(keys, digests))


def compute_checksums(root_dir: str, files: Iterable[str], workers: Optional[int] = None) -> ChecksumTable:
    """Hash the given store paths (regular files) under |root_dir|."""
    targets = {p: os.path.join(root_dir, p.lstrip('/')) for p in files}
    return ChecksumTable(hash_files(targets, workers))


def _escape(path: str) -> str:
    return path.replace('\\', '\\\\').replace('\n', '\\n')


def _unescape(path: str) -> str:
    out = []
    i = 0
    while i < len(path):
        ch = path[i]
        if ch == '\\' and i + 1 < len(path):
            nxt = path[i + 1]
            out.append('\n' if nxt == 'n' else nxt)
            i += 2
            continue
        out.append(ch)
        i += 1
    return ''.join(out)


def save_checksums(table: ChecksumTable, path: str) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        for p, digest in table.items():
            rel = '.' + p
            if '\\' in rel or '\n' in rel:
                f.write(f"\\{digest}  {_escape(rel)}\n")
            else:
                f.write(f"{digest}  {rel}\n")


def load_checksums(path: str) -> ChecksumTable:
    table = ChecksumTable()
    with open(path, 'r', encoding='utf-8') as f:
        for lineno, line in enumerate(f, 1):
            line = line.rstrip('\n')
            if not line or line.startswith('#'):
                continue
            escaped = line.startswith('\\')
            if escaped:
                line = line[1:]
            digest, sep, rel = line.partition(' ')
            if not sep or not rel:
                log.warning("%s:%d: malformed checksum line skipped", path, lineno)
                continue
            rel = rel[1:] if rel[:1] in (' ', '*') else rel
            if escaped:
                rel = _unescape(rel)
            table.set(store_path(rel), digest.lower())
    return table
