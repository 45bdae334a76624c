"""super.img (dynamic partitions) split and assembly.

Layout is read from ``lpdump`` and kept next to the extracted partition
images as ``repack_info.txt``::

    METADATA_SLOTS=3
    SUPER_DEVICE_SIZE=9126805504
    LP_GROUPS="qti_dynamic_partitions_a qti_dynamic_partitions_b"
    LP_GROUP_qti_dynamic_partitions_a_PARTITIONS="system_a vendor_a product_a"

Partition images are expected as ``<session>/<name>.img``; edited trees as
``<session>/extracted_<name>``.
"""
from __future__ import annotations
import datetime, logging, os, tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Callable, Dict, List, Optional, TypeVar

from .config import RepackConfig, UnpackConfig
from .errors import CapacityExceeded, ConfigError, CorruptFilesystem, NotFound, PartitionFailed
from .file_utils import hand_back
from .logging_utils import LogFunc
from .probe import detect_image
from .repack import repack_image
from .unpack import unpack_image
from . import tools

log = logging.getLogger(__name__)

LAYOUT_FILE = 'repack_info.txt'
METADATA_SIZE = 65536

T = TypeVar('T')

__all__ = [
    'SuperLayout', 'parse_lpdump', 'load_layout', 'save_layout', 'lpmake_args',
    'unpack_super', 'repack_super', 'run_partitions',
]


@dataclass
class SuperLayout:
    metadata_slots: int
    device_size: int
    groups: Dict[str, List[str]] = field(default_factory=dict)
    metadata_size: int = METADATA_SIZE
    super_name: str = 'super'

    @property
    def partitions(self) -> List[str]:
        return [p for parts in self.groups.values() for p in parts]


def parse_lpdump(text: str) -> SuperLayout:
    slots = device_size = None
    groups: Dict[str, List[str]] = {}
    section = None
    current = None
    for raw in text.splitlines():
        line = raw.strip()
        if line.endswith(':') and not raw.startswith(' '):
            section = line[:-1]
            continue
        key, sep, value = line.partition(':')
        if not sep:
            continue
        value = value.strip()
        if key == 'Metadata slot count' and slots is None:
            slots = int(value.split()[0])
        elif section == 'Partition table':
            if key == 'Name':
                current = value
            elif key == 'Group' and current:
                groups.setdefault(value, []).append(current)
        elif section == 'Block device table' and key == 'Size' and device_size is None:
            device_size = int(value.split()[0])
    if slots is None or device_size is None:
        raise CorruptFilesystem("lpdump output lacks metadata slot count or device size")
    return SuperLayout(slots, device_size, groups)


def save_layout(layout: SuperLayout, path: str) -> None:
    when = datetime.datetime.now().strftime('%a %b %d %H:%M:%S %Y')
    with open(path, 'w', encoding='utf-8') as f:
        f.write(f"# Repack config for super image, generated on {when}\n")
        f.write(f"METADATA_SLOTS={layout.metadata_slots}\n")
        f.write(f"SUPER_DEVICE_SIZE={layout.device_size}\n\n")
        f.write(f'LP_GROUPS="{" ".join(layout.groups)}"\n\n')
        for group, parts in layout.groups.items():
            f.write(f'LP_GROUP_{group}_PARTITIONS="{" ".join(parts)}"\n')


def load_layout(path: str) -> SuperLayout:
    if not os.path.isfile(path):
        raise NotFound(f"super layout not found: {path}")
    values: Dict[str, str] = {}
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, value = line.split('=', 1)
            values[key.strip()] = value.strip().strip('"\'')
    try:
        slots = int(values['METADATA_SLOTS'])
        device_size = int(values['SUPER_DEVICE_SIZE'])
    except (KeyError, ValueError) as e:
        raise ConfigError(f"{path}: missing or invalid METADATA_SLOTS / SUPER_DEVICE_SIZE") from e
    groups: Dict[str, List[str]] = {}
    for group in values.get('LP_GROUPS', '').split():
        groups[group] = values.get(f'LP_GROUP_{group}_PARTITIONS', '').split()
    if not groups:
        raise ConfigError(f"{path}: no partition groups, nothing to repack")
    return SuperLayout(slots, device_size, groups)


def lpmake_args(layout: SuperLayout, session_dir: str, output: str, sparse: bool = True) -> List[str]:
    """Arguments for ``lpmake`` (without the program name), sized from the current images."""
    args = ['--metadata-size', str(layout.metadata_size), '--super-name', layout.super_name,
            '--metadata-slots', str(layout.metadata_slots),
            '--device', f'{layout.super_name}:{layout.device_size}']
    total = 0
    for group, parts in layout.groups.items():
        if not parts:
            continue
        sizes: Dict[str, int] = {}
        for part in parts:
            img = os.path.join(session_dir, f'{part}.img')
            if not os.path.isfile(img):
                raise NotFound(f"partition image not found: {img}")
            sizes[part] = os.path.getsize(img)
        group_size = sum(sizes.values())
        total += group_size
        args += ['--group', f'{group}:{group_size}']
        for part in parts:
            args += ['--partition', f'{part}:readonly:{sizes[part]}:{group}',
                     '--image', f'{part}={os.path.join(session_dir, part + ".img")}']
    if total > layout.device_size:
        raise CapacityExceeded(total, layout.device_size, what='logical partitions')
    if sparse:
        args.append('--sparse')
    args += ['--output', output]
    return args


def run_partitions(jobs: Dict[str, Callable[[], T]], workers: Optional[int] = None) -> Dict[str, T]:
    """Run independent per-partition jobs on a pool.

    The first failure cancels every job that has not started yet and raises
    PartitionFailed; jobs already finished keep their output.
    """
    results: Dict[str, T] = {}
    ex = ThreadPoolExecutor(max_workers=workers)
    futures = {ex.submit(fn): name for name, fn in jobs.items()}
    try:
        for fut in as_completed(futures):
            name = futures[fut]
            try:
                results[name] = fut.result()
            except Exception as e:
                log.error("partition %s failed: %s", name, e)
                raise PartitionFailed(name, e, completed=results) from e
            log.info("partition %s done", name)
    except BaseException:
        ex.shutdown(wait=True, cancel_futures=True)
        raise
    ex.shutdown(wait=True)
    return results


def unpack_super(image: str, out_dir: str, config: Optional[UnpackConfig] = None, extract: bool = False,
                 log_func: Optional[LogFunc] = None) -> SuperLayout:
    """Split |image| into ``<out_dir>/<partition>.img`` and record its layout."""
    config = (config or UnpackConfig()).validate()
    log_func = log_func or log.info
    if not os.path.isfile(image):
        raise NotFound(f"super image not found: {image}")
    os.makedirs(out_dir, exist_ok=True)
    work_dir = tempfile.mkdtemp(prefix='ait_super_')
    try:
        raw = image
        if detect_image(image).kind == 'sparse':
            log_func("sparse super image, converting to raw")
            raw = tools.sparse_to_raw(image, os.path.join(work_dir, 'super.raw.img'))
        layout = parse_lpdump(tools.run_tool(['lpdump', raw]).stdout)
        save_layout(layout, os.path.join(out_dir, LAYOUT_FILE))
        log_func(f"extracting {len(layout.partitions)} logical partitions")
        tools.run_tool(['lpunpack', '--slot=0', raw, out_dir], log_func=log_func)
    finally:
        tools.cleanup_dir(work_dir)

    if extract:
        jobs = {}
        for part in layout.partitions:
            img = os.path.join(out_dir, f'{part}.img')
            if os.path.isfile(img) and os.path.getsize(img) > 0:
                jobs[part] = partial(unpack_image, img, os.path.join(out_dir, f'extracted_{part}'),
                                     replace(config, partition=part), log_func)
        run_partitions(jobs, config.workers)
    if config.hand_back:
        hand_back(out_dir)
    return layout


def repack_super(session_dir: str, output: str, config: Optional[RepackConfig] = None, rebuild: bool = False,
                 sparse: bool = True, log_func: Optional[LogFunc] = None) -> str:
    """Assemble ``<session_dir>/*.img`` back into a super image at |output|."""
    config = (config or RepackConfig()).validate()
    log_func = log_func or log.info
    layout = load_layout(os.path.join(session_dir, LAYOUT_FILE))

    if rebuild:
        jobs = {}
        for part in layout.partitions:
            src = os.path.join(session_dir, f'extracted_{part}')
            if os.path.isdir(src):
                jobs[part] = partial(repack_image, src, os.path.join(session_dir, f'{part}.img'),
                                     replace(config, partition=part, create_sparse=False), log_func)
        log_func(f"rebuilding {len(jobs)} partitions")
        run_partitions(jobs, config.workers)

    tmp = output + '.tmp'
    args = lpmake_args(layout, session_dir, tmp, sparse)
    existed = os.path.exists(output)
    try:
        tools.run_tool(['lpmake'] + args, log_func=log_func)
        os.replace(tmp, output)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        if not existed and os.path.exists(output):
            os.remove(output)
        raise
    hand_back(output)
    log_func(f"created {output}")
    return output
