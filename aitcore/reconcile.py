"""Apply final ownership, mode, SELinux label and capabilities to a tree.

Three passes, in order:

  1. symlinks: stored links whose target drifted are recreated, then owner
     and label are applied;
  2. directories, level by level from the root down, each level on the
     worker pool with a barrier before the next;
  3. regular files, in parallel.

Paths with a stored record of the same kind get the stored attributes.
Anything else is resolved by PatternMatcher; inferred directories are kept
in the ReconciliationContext so deeper new directories chain from them.

Only attributes that differ from the live value are written. A failed write
is reported as an AttributeApplyWarning and never aborts the run.
"""
from __future__ import annotations
import logging, os, threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from . import xattrs
from .classify import Classification, WorkingTree
from .matcher import InferredAttributes, PatternMatcher
from .metadata import Kind, MetadataStore, PathRecord, capture

log = logging.getLogger(__name__)

SETID_BITS = 0o6000

__all__ = [
    'AttributeApplier', 'AttributeApplyWarning', 'ReconcileReport', 'ReconciliationContext', 'reconcile', 'depth'
]


@dataclass(frozen=True)
class AttributeApplyWarning:
    path: str
    attribute: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.attribute}: {self.message}"


class AttributeApplier:
    """Reads and writes attributes of live filesystem entries.

    Tests substitute a recording implementation; the default one works on
    the real filesystem and never follows symlinks.
    """

    def read(self, full_path: str, path: str) -> Optional[PathRecord]:
        return capture(full_path, path)

    def chown(self, full_path: str, uid: int, gid: int) -> None:
        os.lchown(full_path, uid, gid)

    def chmod(self, full_path: str, mode: int) -> None:
        os.chmod(full_path, mode)

    def set_context(self, full_path: str, context: str) -> None:
        xattrs.write_context(full_path, context)

    def set_capabilities(self, full_path: str, caps: int) -> None:
        xattrs.write_capabilities(full_path, caps)

    def readlink(self, full_path: str) -> str:
        return os.readlink(full_path)

    def relink(self, full_path: str, target: str) -> None:
        if os.path.lexists(full_path):
            os.unlink(full_path)
        os.symlink(target, full_path)


class ReconciliationContext:
    """Mutable state of one reconcile run: the store plus inferred records."""

    def __init__(self, store: MetadataStore, partition: Optional[str] = None):
        self.store = store
        self.partition = partition
        self.inferred: Dict[str, PathRecord] = {}
        self._lock = threading.Lock()
        self.matcher = PatternMatcher(store, partition, overlay=self)

    # overlay protocol used by PatternMatcher
    def get(self, path: str) -> Optional[PathRecord]:
        with self._lock:
            return self.inferred.get(path)

    def remember(self, record: PathRecord) -> None:
        with self._lock:
            self.inferred[record.path] = record

    def target_for(self, path: str, kind: Kind,
                   cls: Classification = Classification.UNCHANGED) -> Tuple[PathRecord, Optional[InferredAttributes]]:
        """Stored record for known paths, else the matcher's inference.

        A regular file classified new only for lack of a checksum still
        takes its stored record when one of the same kind exists.
        """
        rec = self.store.get(path)
        if rec is not None and rec.kind is kind and (cls is not Classification.NEW or kind is Kind.FILE):
            return rec, None
        attrs = self.matcher.resolve(path, kind)
        return attrs.to_record(path, kind), attrs


@dataclass
class ReconcileReport:
    changed: Dict[str, List[str]] = field(default_factory=dict)
    relinked: List[str] = field(default_factory=list)
    inferred: Dict[str, InferredAttributes] = field(default_factory=dict)
    warnings: List[AttributeApplyWarning] = field(default_factory=list)

    @property
    def change_count(self) -> int:
        return sum(len(v) for v in self.changed.values())

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


@dataclass
class _Outcome:
    path: str
    changed: List[str] = field(default_factory=list)
    warnings: List[AttributeApplyWarning] = field(default_factory=list)
    inferred: Optional[InferredAttributes] = None
    relinked: bool = False


def depth(path: str) -> int:
    return 0 if path == '/' else path.count('/')


def _apply(applier: AttributeApplier, full: str, want: PathRecord, out: _Outcome) -> None:
    try:
        live = applier.read(full, want.path)
    except OSError as e:
        out.warnings.append(AttributeApplyWarning(want.path, 'stat', str(e)))
        return
    if live is None:
        out.warnings.append(AttributeApplyWarning(want.path, 'stat', 'unsupported file type'))
        return

    def attempt(attribute, fn, *args) -> bool:
        try:
            fn(full, *args)
        except OSError as e:
            out.warnings.append(AttributeApplyWarning(want.path, attribute, e.strerror or str(e)))
            return False
        out.changed.append(attribute)
        return True

    chowned = False
    if (live.uid, live.gid) != (want.uid, want.gid):
        chowned = attempt('owner', applier.chown, want.uid, want.gid)
    if want.kind is not Kind.SYMLINK:
        # chown clears set-id bits and file capabilities
        if live.mode != want.mode or (chowned and want.mode & SETID_BITS):
            attempt('mode', applier.chmod, want.mode)
        if want.capabilities and (chowned or live.capabilities != want.capabilities):
            attempt('capabilities', applier.set_capabilities, want.capabilities)
    if want.context and live.context != want.context:
        attempt('context', applier.set_context, want.context)


def reconcile(tree: WorkingTree, store: MetadataStore, classification: Dict[str, Classification],
              context: Optional[ReconciliationContext] = None, applier: Optional[AttributeApplier] = None,
              workers: Optional[int] = None) -> ReconcileReport:
    """Bring every path of |tree| to its stored or inferred attributes."""
    ctx = context or ReconciliationContext(store)
    applier = applier or AttributeApplier()
    report = ReconcileReport()

    def do_symlink(path: str) -> _Outcome:
        out = _Outcome(path)
        want, inferred = ctx.target_for(path, Kind.SYMLINK, classification.get(path, Classification.NEW))
        out.inferred = inferred
        full = tree.full(path)
        if inferred is None and want.symlink_target is not None:
            try:
                current = applier.readlink(full)
            except OSError as e:
                out.warnings.append(AttributeApplyWarning(path, 'symlink', str(e)))
                return out
            if current != want.symlink_target:
                try:
                    applier.relink(full, want.symlink_target)
                    out.relinked = True
                except OSError as e:
                    out.warnings.append(AttributeApplyWarning(path, 'symlink', str(e)))
                    return out
        _apply(applier, full, want, out)
        return out

    def do_entry(path: str, kind: Kind) -> _Outcome:
        out = _Outcome(path)
        want, inferred = ctx.target_for(path, kind, classification.get(path, Classification.NEW))
        out.inferred = inferred
        if inferred is not None and kind is Kind.DIRECTORY:
            ctx.remember(want)
        _apply(applier, tree.full(path), want, out)
        return out

    outcomes: List[_Outcome] = []
    with ThreadPoolExecutor(max_workers=workers) as ex:
        outcomes.extend(ex.map(do_symlink, tree.paths(Kind.SYMLINK)))

        levels: Dict[int, List[str]] = {}
        for path in tree.paths(Kind.DIRECTORY):
            levels.setdefault(depth(path), []).append(path)
        for level in sorted(levels):
            outcomes.extend(ex.map(lambda p: do_entry(p, Kind.DIRECTORY), levels[level]))

        outcomes.extend(ex.map(lambda p: do_entry(p, Kind.FILE), tree.paths(Kind.FILE)))

    for out in outcomes:
        if out.changed:
            report.changed[out.path] = out.changed
        if out.relinked:
            report.relinked.append(out.path)
        if out.inferred is not None:
            report.inferred[out.path] = out.inferred
        report.warnings.extend(out.warnings)

    for w in report.warnings:
        log.warning("attribute not applied: %s", w)
    log.info("reconciled %d paths: %d attribute changes, %d relinked, %d inferred, %d warnings",
             len(tree), report.change_count, len(report.relinked), len(report.inferred), report.warning_count)
    return report
