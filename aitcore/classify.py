"""Change classification of a working tree against the unpack snapshot.

Regular files are compared by content hash against the checksum table.
Directories and symlinks have no checksum and are classified by whether the
snapshot holds a record of the same kind at that path.
"""
from __future__ import annotations
import enum, logging, os, stat
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .checksums import ChecksumTable, hash_files, store_path
from .metadata import REPACK_INFO_DIR, Kind, MetadataStore

log = logging.getLogger(__name__)

__all__ = ['Classification', 'WorkingTree', 'ChangeSummary', 'walk_tree', 'classify', 'summarize']


class Classification(enum.Enum):
    UNCHANGED = 'unchanged'
    MODIFIED = 'modified'
    NEW = 'new'


class WorkingTree:
    """Paths found under |root_dir| mapped to their Kind, parents before children."""

    def __init__(self, root_dir: str, entries: Optional[Dict[str, Kind]] = None):
        self.root_dir = os.path.abspath(root_dir)
        self.entries: Dict[str, Kind] = dict(entries or {})

    def full(self, path: str) -> str:
        return os.path.join(self.root_dir, path.lstrip('/')) if path != '/' else self.root_dir

    def __contains__(self, path: str) -> bool:
        return path in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Tuple[str, Kind]]:
        return iter(self.entries.items())

    def paths(self, kind: Kind) -> List[str]:
        return [p for p, k in self.entries.items() if k is kind]


def walk_tree(root_dir: str, exclude: Iterable[str] = (REPACK_INFO_DIR,)) -> WorkingTree:
    """List every entry below |root_dir| without following symlinks."""
    tree = WorkingTree(root_dir)
    if not os.path.isdir(tree.root_dir):
        raise NotADirectoryError(root_dir)
    skip = set(exclude)
    tree.entries['/'] = Kind.DIRECTORY
    for dirpath, dirnames, filenames in os.walk(tree.root_dir, followlinks=False):
        dirnames.sort()
        filenames.sort()
        if dirpath == tree.root_dir:
            dirnames[:] = [d for d in dirnames if d not in skip]
            filenames = [f for f in filenames if f not in skip]
        for name in dirnames + filenames:
            full = os.path.join(dirpath, name)
            mode = os.lstat(full).st_mode
            path = store_path(os.path.relpath(full, tree.root_dir))
            if stat.S_ISLNK(mode):
                tree.entries[path] = Kind.SYMLINK
            elif stat.S_ISDIR(mode):
                tree.entries[path] = Kind.DIRECTORY
            elif stat.S_ISREG(mode):
                tree.entries[path] = Kind.FILE
            else:
                log.warning("ignoring special file %s", path)
    return tree


def classify(tree: WorkingTree, store: MetadataStore, checksums: ChecksumTable,
             workers: Optional[int] = None) -> Dict[str, Classification]:
    """Assign exactly one Classification to every path of |tree|, in tree order."""
    to_hash = {p: tree.full(p) for p in tree.paths(Kind.FILE) if p in checksums}
    live = hash_files(to_hash, workers) if to_hash else {}

    result: Dict[str, Classification] = {}
    for path, kind in tree:
        if kind is Kind.FILE:
            if path not in live:
                result[path] = Classification.NEW
            elif live[path] == checksums.get(path):
                result[path] = Classification.UNCHANGED
            else:
                result[path] = Classification.MODIFIED
        else:
            rec = store.get(path)
            known = rec is not None and rec.kind is kind
            result[path] = Classification.UNCHANGED if known else Classification.NEW
    return result


@dataclass
class ChangeSummary:
    unchanged: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    new: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            'unchanged': len(self.unchanged),
            'modified': len(self.modified),
            'new': len(self.new),
            'removed': len(self.removed),
        }

    def describe(self) -> str:
        c = self.counts()
        return (f"{c['unchanged']} unchanged, {c['modified']} modified, "
                f"{c['new']} new, {c['removed']} removed")


def summarize(classification: Dict[str, Classification], store: MetadataStore) -> ChangeSummary:
    """Group paths by class; stored paths missing from the tree are 'removed'."""
    summary = ChangeSummary()
    buckets = {
        Classification.UNCHANGED: summary.unchanged,
        Classification.MODIFIED: summary.modified,
        Classification.NEW: summary.new,
    }
    for path, cls in classification.items():
        buckets[cls].append(path)
    summary.removed = [r.path for r in store if r.path not in classification]
    return summary
