#!/usr/bin/env python3
"""Android image tools: unpack / repack EROFS and EXT4 partition images and super.img."""
from __future__ import annotations
import argparse, logging, os, sys
from typing import List, Optional

from aitcore import __version__
from aitcore.config import RepackConfig, UnpackConfig, load_preset, merge_config, save_preset
from aitcore.errors import AitError
from aitcore.logging_utils import configure_logging
from aitcore.repack import repack_image
from aitcore.super_image import repack_super, unpack_super
from aitcore.unpack import unpack_image

log = logging.getLogger('ait')


def _partition_of(path: str) -> str:
    name = os.path.basename(os.path.normpath(path))
    if name.startswith('extracted_'):
        return name[len('extracted_'):]
    return os.path.splitext(name)[0]


def _require_root(what: str) -> None:
    if os.geteuid() != 0:
        raise AitError(f"{what} needs root (loop devices are mounted), re-run with sudo")


def _preset(args) -> dict:
    return load_preset(args.conf) if args.conf else {}


def _positional(args, preset: dict, name: str, key: str) -> Optional[str]:
    value = getattr(args, name)
    return value if value is not None else preset.get(key)


def cmd_unpack(args) -> int:
    preset = _preset(args)
    image = _positional(args, preset, 'image', 'input')
    if not image:
        raise AitError("no input image given")
    out_dir = _positional(args, preset, 'out_dir', 'output') or f'extracted_{_partition_of(image)}'
    config = merge_config(UnpackConfig, preset, dict(workers=args.workers, partition=args.partition))
    if args.export_conf:
        save_preset(args.export_conf, config, action='unpack', input=image, output=out_dir)
        log.info("settings exported to %s", args.export_conf)
    _require_root('unpack')
    result = unpack_image(image, out_dir, config)
    log.info("%d entries (%d files) extracted to %s", result.entries, result.files, result.out_dir)
    return 0


def cmd_repack(args) -> int:
    preset = _preset(args)
    src = _positional(args, preset, 'src_dir', 'input')
    if not src:
        raise AitError("no input directory given")
    output = _positional(args, preset, 'out_image', 'output') or f'{_partition_of(src)}_repacked.img'
    overrides = dict(
        filesystem=args.fs,
        ext4_mode=args.ext4_mode,
        ext4_overhead_percent=args.ext4_overhead_percent,
        erofs_compression=args.erofs_compression,
        erofs_level=args.erofs_level,
        create_sparse=args.sparse,
        workers=args.workers,
        partition=args.partition,
    )
    config = merge_config(RepackConfig, preset, overrides)
    if args.export_conf:
        save_preset(args.export_conf, config, action='repack', input=src, output=output)
        log.info("settings exported to %s", args.export_conf)
    _require_root('repack')
    result = repack_image(src, output, config)
    log.info("%s image written to %s (%s)", result.filesystem, result.output, result.summary.describe())
    if result.sparse_output:
        log.info("sparse image written to %s", result.sparse_output)
    if result.report.warnings:
        log.warning("%d attributes could not be applied", result.report.warning_count)
    return 0


def cmd_super_unpack(args) -> int:
    out_dir = args.out_dir or 'super_extracted'
    config = merge_config(UnpackConfig, _preset(args), dict(workers=args.workers))
    if args.extract:
        _require_root('super-unpack --extract')
    layout = unpack_super(args.image, out_dir, config, extract=args.extract)
    log.info("%d logical partitions in %d groups extracted to %s",
             len(layout.partitions), len(layout.groups), out_dir)
    return 0


def cmd_super_repack(args) -> int:
    output = args.out_image or 'super_repacked.img'
    config = merge_config(RepackConfig, _preset(args), dict(workers=args.workers))
    if args.rebuild:
        _require_root('super-repack --rebuild')
    repack_super(args.session_dir, output, config, rebuild=args.rebuild, sparse=not args.raw)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ait',
        description='Unpack and repack Android EROFS / EXT4 images keeping ownership, modes and SELinux labels',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""examples:
  %(prog)s unpack system.img extracted_system
  %(prog)s repack extracted_system system_new.img --fs ext4 --ext4-mode flexible
  %(prog)s repack extracted_vendor vendor_new.img --fs erofs --erofs-compression lz4hc --erofs-level 9
  %(prog)s super-unpack super.img super_extracted --extract
  %(prog)s super-repack super_extracted super_new.img --rebuild
""")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--no-log-file', action='store_true', help='Log to stdout only')
    sub = parser.add_subparsers(dest='command', required=True)

    def common(p):
        p.add_argument('--conf', help='YAML preset file')
        p.add_argument('--workers', type=int, help='Worker threads (default: CPU based)')

    p = sub.add_parser('unpack', help='Extract an image into a directory with its metadata')
    p.add_argument('image', nargs='?', help='EROFS / EXT4 image, raw or sparse')
    p.add_argument('out_dir', nargs='?', help='Output directory (default: extracted_<partition>)')
    p.add_argument('--partition', help='Partition name used for default labels')
    p.add_argument('--export-conf', help='Write the effective settings to a YAML preset')
    common(p)
    p.set_defaults(func=cmd_unpack)

    p = sub.add_parser('repack', help='Build an image from an extracted directory')
    p.add_argument('src_dir', nargs='?', help='Directory produced by unpack')
    p.add_argument('out_image', nargs='?', help='Output image (default: <partition>_repacked.img)')
    p.add_argument('--fs', choices=['auto', 'erofs', 'ext4'], help='Output filesystem (default: same as source)')
    p.add_argument('--ext4-mode', choices=['strict', 'flexible'])
    p.add_argument('--ext4-overhead-percent', type=int, help='Free space added in flexible mode')
    p.add_argument('--erofs-compression', choices=['none', 'lz4', 'lz4hc', 'deflate'])
    p.add_argument('--erofs-level', type=int, help='lz4hc: 0-12, deflate: 0-9')
    p.add_argument('--sparse', action='store_true', default=None, help='Also write <name>.sparse.img')
    p.add_argument('--partition', help='Partition name used for default labels')
    p.add_argument('--export-conf', help='Write the effective settings to a YAML preset')
    common(p)
    p.set_defaults(func=cmd_repack)

    p = sub.add_parser('super-unpack', help='Split super.img into logical partition images')
    p.add_argument('image', help='super.img, raw or sparse')
    p.add_argument('out_dir', nargs='?', help='Session directory (default: super_extracted)')
    p.add_argument('--extract', action='store_true', help='Also unpack every partition image')
    common(p)
    p.set_defaults(func=cmd_super_unpack)

    p = sub.add_parser('super-repack', help='Assemble super.img from a session directory')
    p.add_argument('session_dir', help='Directory produced by super-unpack')
    p.add_argument('out_image', nargs='?', help='Output image (default: super_repacked.img)')
    p.add_argument('--rebuild', action='store_true', help='Repack extracted_<partition> directories first')
    p.add_argument('--raw', action='store_true', help='Write a raw instead of a sparse super image')
    common(p)
    p.set_defaults(func=cmd_super_repack)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, log_file=not args.no_log_file)
    try:
        return args.func(args)
    except AitError as e:
        log.error("%s", e)
        return 1
    except OSError as e:
        log.error("%s", e)
        return 1
    except KeyboardInterrupt:
        log.error("interrupted, partial output removed")
        return 130


if __name__ == '__main__':
    sys.exit(main())
