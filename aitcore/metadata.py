"""Filesystem metadata snapshot captured at unpack time.

The snapshot is persisted in the ``.repack_info`` directory of an extracted
image as three line-oriented files plus ``metadata.txt``:

    fs-config.txt       <path> <uid> <gid> <mode>[ capabilities=<hex>]
    file_contexts.txt   <path> <context>
    symlink_info.txt    <path> <target> <uid> <gid> <mode> <context|?>

Paths are ``/``-rooted relative to the image root. Whitespace and backslashes
inside paths are written as octal escapes (``\\040``) like fstab.

Regular files and directories share fs-config.txt; which is which is
recovered from the checksum table, which lists every regular file.
"""
from __future__ import annotations
import datetime, enum, logging, os, stat, time
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Iterator, List, Optional

from . import xattrs
from .checksums import ChecksumTable, load_checksums, store_path

log = logging.getLogger(__name__)

REPACK_INFO_DIR = '.repack_info'
FS_CONFIG_FILE = 'fs-config.txt'
FILE_CONTEXTS_FILE = 'file_contexts.txt'
SYMLINK_INFO_FILE = 'symlink_info.txt'
CHECKSUMS_FILE = 'original_checksums.txt'
METADATA_FILE = 'metadata.txt'

__all__ = [
    'Kind', 'PathRecord', 'MetadataStore', 'UnpackInfo', 'REPACK_INFO_DIR',
    'load_store', 'save_store', 'load_unpack_info', 'save_unpack_info', 'parse_tune2fs',
    'quote_path', 'unquote_path', 'parent_of',
]


class Kind(enum.Enum):
    FILE = 'file'
    DIRECTORY = 'dir'
    SYMLINK = 'symlink'


@dataclass(frozen=True)
class PathRecord:
    path: str
    kind: Kind
    uid: int
    gid: int
    mode: int
    context: Optional[str] = None
    symlink_target: Optional[str] = None
    capabilities: Optional[int] = None

    @property
    def extension(self) -> str:
        return os.path.splitext(self.path.rsplit('/', 1)[-1])[1]


def parent_of(path: str) -> str:
    if path == '/':
        return '/'
    parent = path.rsplit('/', 1)[0]
    return parent or '/'


def quote_path(path: str) -> str:
    out = []
    for ch in path:
        if ch == '\\' or ch.isspace():
            out.append('\\%03o' % ord(ch))
        else:
            out.append(ch)
    return ''.join(out)


def unquote_path(text: str) -> str:
    out = []
    i = 0
    while i < len(text):
        chunk = text[i + 1:i + 4]
        if text[i] == '\\' and len(chunk) == 3 and all(c in '01234567' for c in chunk):
            out.append(chr(int(chunk, 8)))
            i += 4
            continue
        out.append(text[i])
        i += 1
    return ''.join(out)


class MetadataStore:
    """Path-indexed PathRecord collection, append-only, in insertion order."""

    def __init__(self, records: Iterable[PathRecord] = ()):
        self._records: Dict[str, PathRecord] = {}
        self._children: Dict[str, List[str]] = {}
        for r in records:
            self.add(r)

    def add(self, record: PathRecord) -> None:
        if record.path in self._records:
            raise ValueError(f"duplicate record for {record.path}")
        self._records[record.path] = record
        if record.path != '/':
            self._children.setdefault(parent_of(record.path), []).append(record.path)

    def get(self, path: str) -> Optional[PathRecord]:
        return self._records.get(path)

    def __contains__(self, path: str) -> bool:
        return path in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[PathRecord]:
        return iter(self._records.values())

    def records(self) -> List[PathRecord]:
        return list(self._records.values())

    @property
    def root(self) -> Optional[PathRecord]:
        return self._records.get('/')

    def children(self, parent: str) -> List[PathRecord]:
        return [self._records[p] for p in self._children.get(parent, ())]

    def has_contexts(self) -> bool:
        return any(r.context for r in self._records.values())

    @classmethod
    def snapshot(cls, root_dir: str, exclude: Iterable[str] = (REPACK_INFO_DIR,)) -> 'MetadataStore':
        """Capture every entry under |root_dir| without following symlinks.

        The root record is added before any child. Names in |exclude| are
        skipped at the top level only.
        """
        root_dir = os.path.abspath(root_dir)
        if not os.path.isdir(root_dir):
            raise NotADirectoryError(root_dir)
        skip = set(exclude)
        store = cls()
        store.add(capture(root_dir, '/'))
        for dirpath, dirnames, filenames in os.walk(root_dir, followlinks=False):
            dirnames.sort()
            filenames.sort()
            if dirpath == root_dir:
                dirnames[:] = [d for d in dirnames if d not in skip]
                filenames = [f for f in filenames if f not in skip]
            for name in dirnames + filenames:
                full = os.path.join(dirpath, name)
                rec = capture(full, store_path(os.path.relpath(full, root_dir)))
                if rec is not None:
                    store.add(rec)
        return store


def capture(full_path: str, path: str) -> Optional[PathRecord]:
    st = os.lstat(full_path)
    mode = stat.S_IMODE(st.st_mode)
    context = xattrs.read_context(full_path)
    if stat.S_ISLNK(st.st_mode):
        return PathRecord(path, Kind.SYMLINK, st.st_uid, st.st_gid, mode, context,
                          symlink_target=os.readlink(full_path))
    if stat.S_ISDIR(st.st_mode):
        return PathRecord(path, Kind.DIRECTORY, st.st_uid, st.st_gid, mode, context)
    if stat.S_ISREG(st.st_mode):
        return PathRecord(path, Kind.FILE, st.st_uid, st.st_gid, mode, context,
                          capabilities=xattrs.read_capabilities(full_path))
    log.warning("skipping special file %s", path)
    return None


# --- persistence -----------------------------------------------------------

def _header(kind: str, source: Optional[str]) -> str:
    when = datetime.datetime.now().strftime('%a %b %d %H:%M:%S %Y')
    return f"# {kind} extracted from {source or 'directory'} on {when}\n"


def save_store(store: MetadataStore, info_dir: str, source: Optional[str] = None) -> None:
    os.makedirs(info_dir, exist_ok=True)
    with open(os.path.join(info_dir, FS_CONFIG_FILE), 'w', encoding='utf-8') as cfg, \
         open(os.path.join(info_dir, FILE_CONTEXTS_FILE), 'w', encoding='utf-8') as ctx, \
         open(os.path.join(info_dir, SYMLINK_INFO_FILE), 'w', encoding='utf-8') as lnk:
        cfg.write(_header('FS config', source))
        ctx.write(_header('File contexts', source))
        lnk.write(_header('Symlink info', source))
        for r in store:
            p = quote_path(r.path)
            if r.kind is Kind.SYMLINK:
                lnk.write(f"{p} {quote_path(r.symlink_target or '')} {r.uid} {r.gid} {r.mode:03o} {r.context or '?'}\n")
                continue
            line = f"{p} {r.uid} {r.gid} {r.mode:03o}"
            if r.capabilities:
                line += f" capabilities=0x{r.capabilities:x}"
            cfg.write(line + '\n')
            if r.context:
                ctx.write(f"{p} {r.context}\n")


def _data_lines(path: str):
    if not os.path.isfile(path):
        return
    with open(path, 'r', encoding='utf-8') as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if line and not line.startswith('#'):
                yield lineno, line.split()


def load_store(info_dir: str, checksums: Optional[ChecksumTable] = None) -> MetadataStore:
    """Parse the persisted snapshot back into a MetadataStore.

    First occurrence of a path wins, matching how the files were consulted
    historically (``grep | head -n1``).
    """
    cfg_path = os.path.join(info_dir, FS_CONFIG_FILE)
    if not os.path.isfile(cfg_path):
        raise FileNotFoundError(cfg_path)
    if checksums is None:
        sums_path = os.path.join(info_dir, CHECKSUMS_FILE)
        if not os.path.isfile(sums_path):
            raise FileNotFoundError(sums_path)
        checksums = load_checksums(sums_path)

    contexts: Dict[str, str] = {}
    for lineno, parts in _data_lines(os.path.join(info_dir, FILE_CONTEXTS_FILE)):
        if len(parts) < 2:
            continue
        path = unquote_path(parts[0])
        ctx = xattrs.normalize_context(parts[1])
        if ctx and path not in contexts:
            contexts[path] = ctx

    store = MetadataStore()
    for lineno, parts in _data_lines(cfg_path):
        try:
            caps = None
            if parts[-1].startswith('capabilities='):
                caps = int(parts.pop()[len('capabilities='):], 16) or None
            if len(parts) != 4:
                raise ValueError('expected path uid gid mode')
            uid, gid, mode = int(parts[1]), int(parts[2]), int(parts[3], 8)
        except ValueError:
            log.warning("%s:%d: malformed fs-config line skipped", cfg_path, lineno)
            continue
        path = unquote_path(parts[0])
        if path in store:
            continue
        kind = Kind.FILE if path in checksums else Kind.DIRECTORY
        store.add(PathRecord(path, kind, uid, gid, mode, contexts.get(path), capabilities=caps))

    lnk_path = os.path.join(info_dir, SYMLINK_INFO_FILE)
    for lineno, parts in _data_lines(lnk_path):
        try:
            uid, gid, mode = int(parts[2]), int(parts[3]), int(parts[4], 8)
        except (IndexError, ValueError):
            log.warning("%s:%d: malformed symlink line skipped", lnk_path, lineno)
            continue
        path = unquote_path(parts[0])
        if path in store:
            continue
        ctx = xattrs.normalize_context(parts[5]) if len(parts) > 5 else None
        store.add(PathRecord(path, Kind.SYMLINK, uid, gid, mode, ctx,
                             symlink_target=unquote_path(parts[1])))
    return store


# --- metadata.txt ----------------------------------------------------------

TUNE2FS_FIELDS = {
    'Block count': 'block_count',
    'Inode count': 'inode_count',
    'Filesystem UUID': 'uuid',
    'Filesystem volume name': 'volume_name',
    'Inode size': 'inode_size',
    'Filesystem features': 'features',
    'Directory Hash Seed': 'hash_seed',
}


def parse_tune2fs(text: str) -> Dict[str, object]:
    """Extract the geometry fields of ``tune2fs -l`` output."""
    out: Dict[str, object] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(':')
        name = TUNE2FS_FIELDS.get(key.strip())
        if not sep or not name:
            continue
        value = value.strip()
        if name in ('block_count', 'inode_count', 'inode_size'):
            out[name] = int(value.split()[0])
        elif name == 'features':
            out[name] = ','.join(value.split())
        elif name == 'volume_name':
            out[name] = '' if value == '<none>' else value
        else:
            out[name] = value.split()[0] if value else ''
    return out


@dataclass(frozen=True)
class UnpackInfo:
    source_image: str
    filesystem_type: str
    unpack_time: int = field(default_factory=lambda: int(time.time()))
    block_count: Optional[int] = None
    inode_count: Optional[int] = None
    uuid: Optional[str] = None
    volume_name: Optional[str] = None
    inode_size: Optional[int] = None
    features: Optional[str] = None
    hash_seed: Optional[str] = None

    @property
    def is_ext4(self) -> bool:
        return self.filesystem_type == 'ext4'

    def with_geometry(self, fields: Dict[str, object]) -> 'UnpackInfo':
        return replace(self, **{k: v for k, v in fields.items() if k in TUNE2FS_FIELDS.values()})


_INFO_KEYS = [
    ('UNPACK_TIME', 'unpack_time', int),
    ('SOURCE_IMAGE', 'source_image', str),
    ('FILESYSTEM_TYPE', 'filesystem_type', str),
    ('ORIGINAL_BLOCK_COUNT', 'block_count', int),
    ('ORIGINAL_INODE_COUNT', 'inode_count', int),
    ('ORIGINAL_UUID', 'uuid', str),
    ('ORIGINAL_VOLUME_NAME', 'volume_name', str),
    ('ORIGINAL_INODE_SIZE', 'inode_size', int),
    ('ORIGINAL_FEATURES', 'features', str),
    ('ORIGINAL_HASH_SEED', 'hash_seed', str),
]


def save_unpack_info(info: UnpackInfo, path: str) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        for key, attr, _ in _INFO_KEYS:
            value = getattr(info, attr)
            if value is not None:
                f.write(f"{key}={value}\n")


def load_unpack_info(path: str) -> UnpackInfo:
    values: Dict[str, object] = {}
    conv = {key: (attr, typ) for key, attr, typ in _INFO_KEYS}
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, value = line.split('=', 1)
            value = value.strip().strip('"\'')
            if key.strip() not in conv:
                continue
            attr, typ = conv[key.strip()]
            if value == '' and typ is int:
                continue
            try:
                values[attr] = typ(value)
            except ValueError:
                log.warning("%s: bad value for %s: %r", path, key, value)
    values.setdefault('source_image', '')
    values.setdefault('filesystem_type', 'unknown')
    return UnpackInfo(**values)
