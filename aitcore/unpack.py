"""Image -> editable directory tree plus the ``.repack_info`` snapshot."""
from __future__ import annotations
import contextlib, logging, os, shutil, tempfile
from dataclasses import dataclass
from typing import Optional

from .checksums import compute_checksums, save_checksums
from .config import UnpackConfig
from .errors import AitError, BuilderFailure, ConfigError, NotFound, UnmountableImage
from .file_utils import copy_tree, hand_back
from .logging_utils import LogFunc
from .metadata import (CHECKSUMS_FILE, METADATA_FILE, REPACK_INFO_DIR, Kind, MetadataStore,
                       UnpackInfo, save_store, save_unpack_info)
from .probe import detect_image
from . import tools

log = logging.getLogger(__name__)

__all__ = ['UnpackResult', 'unpack_image']


@dataclass(frozen=True)
class UnpackResult:
    out_dir: str
    info: UnpackInfo
    entries: int
    files: int


def _prepare_source(image: str, work_dir: str, log_func: LogFunc):
    """Return (mountable path, ImageInfo), converting and repairing as needed."""
    source = image
    probe = detect_image(image)
    if probe.kind == 'sparse':
        log_func("sparse image detected, converting to raw")
        source = tools.sparse_to_raw(image, os.path.join(work_dir, 'raw.img'))
        probe = detect_image(source)
    if probe.kind == 'ext4' and probe.needs_repair:
        if source == image:
            log_func("ext4 image needs repair, working on a copy")
            source = os.path.join(work_dir, 'repair.img')
            shutil.copyfile(image, source)
        tools.repair_image(source, probe.needs_recovery, probe.shared_blocks)
        probe = detect_image(source)
    return source, probe


def _ext4_geometry(info: UnpackInfo, probe, source: str) -> UnpackInfo:
    info = info.with_geometry(probe.geometry())
    try:
        info = info.with_geometry(tools.read_tune2fs(source))
    except (BuilderFailure, NotFound) as e:
        log.warning("tune2fs unavailable, geometry taken from the superblock only: %s", e)
    return info


def unpack_image(image: str, out_dir: str, config: Optional[UnpackConfig] = None,
                 log_func: Optional[LogFunc] = None) -> UnpackResult:
    config = (config or UnpackConfig()).validate()
    log_func = log_func or log.info
    if not os.path.isfile(image):
        raise NotFound(f"image not found: {image}")
    if os.path.lexists(out_dir) and not config.overwrite:
        raise ConfigError(f"output directory already exists: {out_dir}")

    work_dir = tempfile.mkdtemp(prefix='ait_unpack_')
    created = False
    try:
        source, probe = _prepare_source(image, work_dir, log_func)
        with contextlib.ExitStack() as stack:
            try:
                mnt = stack.enter_context(tools.mounted(source, read_only=True, parent=work_dir))
            except UnmountableImage:
                if source != image:
                    raise
                log_func("mount failed, retrying after sparse to raw conversion")
                source = tools.sparse_to_raw(image, os.path.join(work_dir, 'raw.img'))
                probe = detect_image(source)
                mnt = stack.enter_context(tools.mounted(source, read_only=True, parent=work_dir))

            log_func(f"capturing metadata from {image}")
            store = MetadataStore.snapshot(mnt, exclude=())
            files = [r.path for r in store if r.kind is Kind.FILE]
            log_func(f"hashing {len(files)} files")
            checksums = compute_checksums(mnt, files, config.workers)
            if os.path.lexists(out_dir):
                tools.cleanup_dir(out_dir)
                if os.path.lexists(out_dir):
                    raise AitError(f"could not clear output directory {out_dir}")
            created = True
            log_func(f"copying {len(store)} entries to {out_dir}")
            copy_tree(mnt, out_dir)

        info = UnpackInfo(os.path.abspath(image), probe.kind)
        if probe.kind == 'ext4':
            info = _ext4_geometry(info, probe, source)

        info_dir = os.path.join(out_dir, REPACK_INFO_DIR)
        save_store(store, info_dir, source=os.path.basename(image))
        save_checksums(checksums, os.path.join(info_dir, CHECKSUMS_FILE))
        save_unpack_info(info, os.path.join(info_dir, METADATA_FILE))
        if config.hand_back and hand_back(out_dir):
            log.info("ownership of %s handed back to the sudo user", out_dir)
    except BaseException:
        if created:
            shutil.rmtree(out_dir, ignore_errors=True)
        raise
    finally:
        tools.cleanup_dir(work_dir)

    log_func(f"unpacked {image} ({info.filesystem_type}) to {out_dir}")
    return UnpackResult(out_dir, info, len(store), len(files))
