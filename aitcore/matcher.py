"""Attribute inference for paths that have no stored record.

Resolution order for a path:
  1. sibling: a stored regular file in the same directory with the same
     extension (files only, store insertion order),
  2. ancestor: the nearest stored (or already inferred) parent directory,
     ending at the root record,
  3. built-in defaults chosen by partition / path prefix.
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .metadata import Kind, MetadataStore, PathRecord, parent_of

FILE_MODE = 0o644
DIR_MODE = 0o755
SYMLINK_MODE = 0o777

SYSTEM_CONTEXT = 'u:object_r:system_file:s0'
VENDOR_CONTEXT = 'u:object_r:vendor_file:s0'
VENDOR_PARTITIONS = ('vendor', 'odm', 'vendor_dlkm', 'odm_dlkm')

__all__ = ['InferredAttributes', 'PatternMatcher', 'default_context', 'FILE_MODE', 'DIR_MODE']


def _base_partition(name: str) -> str:
    for suffix in ('_a', '_b'):
        if name.endswith(suffix):
            return name[:-len(suffix)]
    return name


def default_context(path: str, partition: Optional[str] = None) -> str:
    """Generic label for |path| when nothing in the snapshot applies."""
    first = path.lstrip('/').split('/', 1)[0]
    if first in VENDOR_PARTITIONS:
        return VENDOR_CONTEXT
    if partition and _base_partition(partition) in VENDOR_PARTITIONS:
        return VENDOR_CONTEXT
    return SYSTEM_CONTEXT


@dataclass(frozen=True)
class InferredAttributes:
    uid: Optional[int]
    gid: Optional[int]
    mode: Optional[int]
    context: Optional[str]
    source: str = 'default'
    source_path: Optional[str] = None

    def to_record(self, path: str, kind: Kind) -> PathRecord:
        default_mode = DIR_MODE if kind is Kind.DIRECTORY else FILE_MODE
        return PathRecord(
            path, kind,
            self.uid if self.uid is not None else 0,
            self.gid if self.gid is not None else 0,
            self.mode if self.mode is not None else default_mode,
            self.context,
        )


class PatternMatcher:
    """Infers ownership, mode and label from a MetadataStore.

    |overlay| holds records inferred earlier in the same run (new parent
    directories) and is consulted before the store during ancestor walks.
    """

    def __init__(self, store: MetadataStore, partition: Optional[str] = None,
                 overlay: Optional[Mapping[str, PathRecord]] = None):
        self.store = store
        self.partition = partition
        self.overlay = overlay if overlay is not None else {}
        self._labelled = store.has_contexts() or len(store) == 0

    def lookup(self, path: str) -> Optional[PathRecord]:
        rec = self.overlay.get(path)
        return rec if rec is not None else self.store.get(path)

    def match_by_ancestor(self, path: str) -> Optional[PathRecord]:
        parent = path
        while parent != '/':
            parent = parent_of(parent)
            rec = self.lookup(parent)
            if rec is not None:
                return rec
        return self.lookup('/')

    def match_by_sibling(self, path: str) -> Optional[PathRecord]:
        ext = os.path.splitext(path.rsplit('/', 1)[-1])[1]
        for rec in self.store.children(parent_of(path)):
            if rec.path != path and rec.kind is Kind.FILE and rec.extension == ext:
                return rec
        return None

    def _ancestor_context(self, path: str) -> Optional[str]:
        parent = path
        while parent != '/':
            parent = parent_of(parent)
            rec = self.lookup(parent)
            if rec is not None and rec.context:
                return rec.context
        return None

    def resolve(self, path: str, kind: Kind) -> InferredAttributes:
        src, how = None, 'default'
        if kind is Kind.FILE:
            src = self.match_by_sibling(path)
            how = 'sibling' if src is not None else how
        if src is None:
            src = self.match_by_ancestor(path)
            how = 'ancestor' if src is not None else how

        if src is None:
            mode = DIR_MODE if kind is Kind.DIRECTORY else FILE_MODE
            if kind is Kind.SYMLINK:
                mode = SYMLINK_MODE
            return InferredAttributes(0, 0, mode, default_context(path, self.partition))

        if kind is Kind.DIRECTORY:
            mode = src.mode if src.kind is Kind.DIRECTORY else DIR_MODE
        elif kind is Kind.SYMLINK:
            mode = SYMLINK_MODE
        else:
            mode = src.mode if how == 'sibling' else FILE_MODE

        context = src.context or self._ancestor_context(path)
        if context is None and self._labelled:
            context = default_context(path, self.partition)
        return InferredAttributes(src.uid, src.gid, mode, context, how, src.path)
