"""Edited directory tree -> EROFS or EXT4 image.

The image is always built as ``<output>.tmp`` and renamed into place once
complete. Any failure or interrupt removes the partial file (and an output
this run created) before the exception propagates.
"""
from __future__ import annotations
import logging, os, re, tempfile
from dataclasses import dataclass
from typing import Optional

from .capacity import SizingPlan, measure_content, plan_ext4
from .checksums import ChecksumTable, load_checksums
from .classify import ChangeSummary, WorkingTree, classify, summarize, walk_tree
from .config import RepackConfig
from .errors import BuilderFailure, ConfigError, NotFound
from .file_utils import copy_tree, hand_back, human_size
from .logging_utils import LogFunc
from .metadata import (CHECKSUMS_FILE, FS_CONFIG_FILE, METADATA_FILE, REPACK_INFO_DIR, MetadataStore,
                       UnpackInfo, load_store, load_unpack_info)
from .reconcile import AttributeApplier, ReconcileReport, ReconciliationContext, reconcile
from . import tools

log = logging.getLogger(__name__)

__all__ = ['RepackResult', 'repack_image', 'load_repack_info', 'sparse_name']


@dataclass
class RepackResult:
    output: str
    filesystem: str
    summary: ChangeSummary
    report: ReconcileReport
    plan: Optional[SizingPlan] = None
    sparse_output: Optional[str] = None


def sparse_name(output: str) -> str:
    base = output[:-4] if output.endswith('.img') else output
    return base + '.sparse.img'


def partition_name(src_dir: str, info: UnpackInfo) -> Optional[str]:
    m = re.match(r'extracted_(.+)$', os.path.basename(os.path.normpath(src_dir)))
    if m:
        return m.group(1)
    if info.source_image:
        return os.path.splitext(os.path.basename(info.source_image))[0]
    return None


def load_repack_info(src_dir: str):
    """Load (store, checksums, info) from ``<src_dir>/.repack_info``."""
    info_dir = os.path.join(src_dir, REPACK_INFO_DIR)
    if not os.path.isfile(os.path.join(info_dir, FS_CONFIG_FILE)):
        raise NotFound(f"no repack metadata in {info_dir}, was this directory produced by unpack?")
    sums_path = os.path.join(info_dir, CHECKSUMS_FILE)
    if not os.path.isfile(sums_path):
        raise NotFound(f"{sums_path} missing, stored files cannot be told apart from directories")
    checksums = load_checksums(sums_path)
    store = load_store(info_dir, checksums)
    meta_path = os.path.join(info_dir, METADATA_FILE)
    if os.path.isfile(meta_path):
        info = load_unpack_info(meta_path)
    else:
        log.warning("%s missing, source geometry unknown", meta_path)
        info = UnpackInfo('', 'unknown')
    return store, checksums, info


def _fill_geometry(info: UnpackInfo) -> UnpackInfo:
    """Re-read missing ORIGINAL_* values from the source image if it is still around."""
    missing = [k for k in ('block_count', 'inode_count', 'uuid', 'inode_size', 'features', 'hash_seed')
               if getattr(info, k) is None]
    if not missing or not info.is_ext4 or not os.path.isfile(info.source_image):
        return info
    try:
        fields = tools.read_tune2fs(info.source_image)
    except (BuilderFailure, NotFound) as e:
        log.warning("could not re-read geometry from %s: %s", info.source_image, e)
        return info
    return info.with_geometry({k: v for k, v in fields.items() if k in missing})


def _reconcile_tree(tree: WorkingTree, store: MetadataStore, checksums: ChecksumTable,
                    config: RepackConfig, partition: Optional[str], applier: Optional[AttributeApplier],
                    log_func: LogFunc):
    classification = classify(tree, store, checksums, config.workers)
    summary = summarize(classification, store)
    log_func(f"changes: {summary.describe()}")
    for p in summary.modified:
        log.debug("modified: %s", p)
    for p in summary.new:
        log.debug("new: %s", p)
    ctx = ReconciliationContext(store, partition)
    report = reconcile(tree, store, classification, ctx, applier, config.workers)
    if report.warnings:
        log_func(f"{report.warning_count} attributes could not be applied")
    return summary, report


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.error("could not remove partial output %s: %s", path, e)


def repack_image(src_dir: str, output: str, config: Optional[RepackConfig] = None,
                 log_func: Optional[LogFunc] = None, applier: Optional[AttributeApplier] = None) -> RepackResult:
    config = (config or RepackConfig()).validate()
    log_func = log_func or log.info
    if not os.path.isdir(src_dir):
        raise NotFound(f"directory not found: {src_dir}")
    store, checksums, info = load_repack_info(src_dir)

    fs = config.filesystem
    if fs == 'auto':
        fs = info.filesystem_type
        if fs not in ('erofs', 'ext4'):
            raise ConfigError(f"cannot infer output filesystem from source type {fs!r}, pass --fs")
    partition = config.partition or partition_name(src_dir, info)

    tmp = output + '.tmp'
    sparse_out = sparse_name(output) if config.create_sparse else None
    existed = os.path.exists(output)
    work_dir = tempfile.mkdtemp(prefix='ait_repack_')
    plan = None
    try:
        _remove(tmp)
        if fs == 'erofs':
            stage = os.path.join(work_dir, 'root')
            log_func(f"staging {src_dir}")
            copy_tree(src_dir, stage, exclude=(REPACK_INFO_DIR,))
            summary, report = _reconcile_tree(walk_tree(stage), store, checksums, config, partition,
                                              applier, log_func)
            log_func(f"building erofs image ({config.erofs_compression})")
            tools.build_erofs(stage, tmp, config.erofs_compression, config.erofs_level, log_func)
        else:
            info = _fill_geometry(info)
            stats = measure_content(walk_tree(src_dir))
            plan = plan_ext4(config.ext4_mode, info, stats, config.ext4_overhead_percent)
            log_func(f"ext4 {plan.strategy}: {plan.block_count} blocks ({human_size(plan.size_bytes)}), "
                     f"{plan.inode_count} inodes")
            tools.format_ext4(tmp, plan, log_func)
            with tools.mounted(tmp, read_only=False, parent=work_dir) as mnt:
                copy_tree(src_dir, mnt, exclude=(REPACK_INFO_DIR,))
                summary, report = _reconcile_tree(walk_tree(mnt, exclude=()), store, checksums, config,
                                                  partition, applier, log_func)
            tools.fsck_ext4(tmp, log_func)

        os.replace(tmp, output)
        if sparse_out:
            log_func(f"writing sparse image {sparse_out}")
            tools.raw_to_sparse(output, sparse_out + '.tmp', log_func)
            os.replace(sparse_out + '.tmp', sparse_out)
    except BaseException:
        _remove(tmp)
        if not existed:
            _remove(output)
        if sparse_out:
            _remove(sparse_out + '.tmp')
        raise
    finally:
        tools.cleanup_dir(work_dir)

    for p in (output, sparse_out):
        if p:
            hand_back(p)
    log_func(f"created {output} ({human_size(os.path.getsize(output))})")
    return RepackResult(output, fs, summary, report, plan, sparse_out)
