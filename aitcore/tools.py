"""Wrappers around the external image tools.

Everything that shells out lives here: loop mounting, sparse conversion,
e2fsck / tune2fs, mkfs.erofs and mkfs.ext4. Tools are looked up in the
bundled ``bin/`` directory next to ``ait.py`` first, then on PATH.
"""
from __future__ import annotations
import contextlib, logging, os, shutil, subprocess, tempfile
from typing import Iterator, List, Optional, Sequence

from .capacity import SizingPlan
from .errors import BuilderFailure, ConfigError, CorruptFilesystem, NotFound, UnmountableImage
from .logging_utils import LogFunc
from .metadata import parse_tune2fs

log = logging.getLogger(__name__)

REPO_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# algorithm -> (min level, max level, default level); None means no level flag
EROFS_COMPRESSORS = {
    'none': None,
    'lz4': None,
    'lz4hc': (0, 12, 9),
    'deflate': (0, 9, 1),
}

# features mkfs.ext4 must not be asked to recreate
TRANSIENT_EXT4_FEATURES = ('needs_recovery', 'shared_blocks')

__all__ = [
    'preferred_tool', 'require_tool', 'run_tool', 'mounted', 'sparse_to_raw', 'raw_to_sparse',
    'repair_image', 'read_tune2fs', 'erofs_compression_args', 'build_erofs', 'format_ext4',
    'fsck_ext4', 'cleanup_dir',
]


def preferred_tool(name: str) -> str:
    bundle_dirs = [os.environ.get('AIT_BIN_DIR', ''), os.path.join(REPO_DIR, 'bin')]
    for d in bundle_dirs:
        if not d:
            continue
        p = os.path.join(d, name)
        if os.path.isfile(p) and os.access(p, os.X_OK):
            return p
    which = shutil.which(name)
    return which or ''


def require_tool(name: str) -> str:
    path = preferred_tool(name)
    if not path:
        raise NotFound(f"required tool not found: {name}")
    return path


def run_tool(args: Sequence[str], check: bool = True, ok_codes: Sequence[int] = (0,),
             log_func: Optional[LogFunc] = None) -> subprocess.CompletedProcess:
    """Run an external tool, stdout and stderr merged into ``.stdout``.

    Raises BuilderFailure when |check| is set and the exit code is not in
    |ok_codes|.
    """
    cmd = [require_tool(args[0])] + [str(a) for a in args[1:]]
    log.debug("$ %s", ' '.join(cmd))
    if log_func:
        log_func(f"$ {' '.join(args)}")
    result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
    if check and result.returncode not in ok_codes:
        raise BuilderFailure(args[0], result.returncode, result.stdout)
    return result


def _release(mount_dir: str) -> None:
    run_tool(['sync'], check=False)
    if run_tool(['umount', mount_dir], check=False).returncode != 0:
        log.warning("umount %s failed, retrying lazily", mount_dir)
        run_tool(['umount', '-l', mount_dir], check=False)
    try:
        os.rmdir(mount_dir)
    except OSError as e:
        log.warning("could not remove mount point %s: %s", mount_dir, e)


@contextlib.contextmanager
def mounted(image: str, read_only: bool = True, parent: Optional[str] = None) -> Iterator[str]:
    """Loop-mount |image| on a fresh directory; always unmounted on exit."""
    mount_dir = tempfile.mkdtemp(prefix='ait_mnt_', dir=parent)
    opts = 'loop,ro' if read_only else 'loop,rw'
    try:
        run_tool(['mount', '-o', opts, image, mount_dir])
    except BuilderFailure as e:
        os.rmdir(mount_dir)
        raise UnmountableImage(f"cannot mount {image}: {e}") from e
    try:
        yield mount_dir
    finally:
        _release(mount_dir)


def sparse_to_raw(src: str, dst: str, log_func: Optional[LogFunc] = None) -> str:
    run_tool(['simg2img', src, dst], log_func=log_func)
    return dst


def raw_to_sparse(src: str, dst: str, log_func: Optional[LogFunc] = None) -> str:
    run_tool(['img2simg', src, dst], log_func=log_func)
    return dst


def _e2fsck(args: List[str], image: str, log_func: Optional[LogFunc]) -> int:
    # 0: clean, 1: errors corrected, 2: corrected, reboot advised
    result = run_tool(['e2fsck'] + args + [image], check=False, log_func=log_func)
    if result.returncode > 2:
        raise CorruptFilesystem(
            f"e2fsck {' '.join(args)} on {image} failed with exit code {result.returncode}")
    return result.returncode


def repair_image(image: str, needs_recovery: bool, shared_blocks: bool,
                 log_func: Optional[LogFunc] = None) -> None:
    """Replay the journal and/or unshare deduplicated blocks in place."""
    if needs_recovery:
        log.info("replaying ext4 journal of %s", image)
        _e2fsck(['-fy'], image, log_func)
    if shared_blocks:
        log.info("removing shared_blocks from %s", image)
        _e2fsck(['-E', 'unshare_blocks', '-fy'], image, log_func)
        _e2fsck(['-fy'], image, log_func)


def read_tune2fs(image: str) -> dict:
    return parse_tune2fs(run_tool(['tune2fs', '-l', image]).stdout)


def erofs_compression_args(compression: str, level: Optional[int] = None) -> List[str]:
    if compression not in EROFS_COMPRESSORS:
        raise ConfigError(f"unknown erofs compression: {compression}")
    levels = EROFS_COMPRESSORS[compression]
    if compression == 'none':
        return []
    if levels is None:
        return [f'-z{compression}']
    lo, hi, default = levels
    if level is None:
        level = default
    elif not lo <= level <= hi:
        log.warning("%s level %s out of range %d-%d, using %d", compression, level, lo, hi, default)
        level = default
    return [f'-z{compression},level={level}']


def build_erofs(src_dir: str, output: str, compression: str = 'none', level: Optional[int] = None,
                log_func: Optional[LogFunc] = None) -> str:
    run_tool(['mkfs.erofs'] + erofs_compression_args(compression, level) + [output, src_dir],
             log_func=log_func)
    return output


def format_ext4(output: str, plan: SizingPlan, log_func: Optional[LogFunc] = None) -> str:
    """Create an empty ext4 image at |output| laid out per |plan|."""
    with open(output, 'wb') as f:
        f.truncate(plan.size_bytes)
    args = ['mkfs.ext4', '-q', '-F', '-b', plan.block_size]
    if plan.inode_size:
        args += ['-I', plan.inode_size]
    if plan.inode_count:
        args += ['-N', plan.inode_count]
    if plan.uuid:
        args += ['-U', plan.uuid]
    if plan.volume_name:
        args += ['-L', plan.volume_name]
    if plan.features:
        features = [f for f in plan.features.split(',') if f and f not in TRANSIENT_EXT4_FEATURES]
        if features:
            args += ['-O', ','.join(features)]
    if plan.hash_seed:
        args += ['-E', f'hash_seed={plan.hash_seed}']
    args += [output, plan.block_count]
    run_tool(args, log_func=log_func)
    return output


def fsck_ext4(image: str, log_func: Optional[LogFunc] = None) -> int:
    result = run_tool(['e2fsck', '-yf', image], check=False, log_func=log_func)
    if result.returncode > 2:
        raise BuilderFailure('e2fsck', result.returncode, result.stdout)
    return result.returncode


def cleanup_dir(path: str) -> None:
    """rmtree |path| unless something is still mounted below it."""
    if not os.path.isdir(path):
        return
    for dirpath, dirnames, _ in os.walk(path):
        for d in dirnames:
            if os.path.ismount(os.path.join(dirpath, d)):
                log.error("refusing to remove %s: %s is still mounted", path, os.path.join(dirpath, d))
                return
    shutil.rmtree(path, ignore_errors=True)
