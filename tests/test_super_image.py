import os, subprocess, threading
import pytest
from aitcore import tools
from aitcore.errors import CapacityExceeded, ConfigError, CorruptFilesystem, NotFound, PartitionFailed
from aitcore.super_image import (SuperLayout, parse_lpdump, load_layout, save_layout, lpmake_args,
                                 repack_super, run_partitions)

LPDUMP = """Slot 0:
Metadata version: 10.2
Metadata size: 1296 bytes
Metadata max size: 65536 bytes
Metadata slot count: 3
Header flags: virtual_ab_device
Partition table:
------------------------
  Name: system_a
  Attributes: readonly
  Extents:
    0 .. 2097151 linear super 2048
  Group: qti_dynamic_partitions_a
------------------------
  Name: vendor_a
  Attributes: readonly
  Extents:
    0 .. 1048575 linear super 2099200
  Group: qti_dynamic_partitions_a
------------------------
  Name: system_b
  Attributes: readonly
  Extents:
  Group: qti_dynamic_partitions_b
------------------------
Super partition layout:
------------------------
super: 2048 .. 2099200: system_a (2097152 sectors)
------------------------
Block device table:
------------------------
  Partition name: super
  First sector: 2048
  Size: 9126805504 bytes
  Flags: none
------------------------
Group table:
------------------------
  Name: default
  Maximum size: 0 bytes
  Flags: none
------------------------
  Name: qti_dynamic_partitions_a
  Maximum size: 9122611200 bytes
  Flags: none
------------------------
"""


def test_parse_lpdump():
    layout = parse_lpdump(LPDUMP)
    assert layout.metadata_slots == 3
    assert layout.device_size == 9126805504
    assert layout.groups == {
        'qti_dynamic_partitions_a': ['system_a', 'vendor_a'],
        'qti_dynamic_partitions_b': ['system_b'],
    }
    assert layout.partitions == ['system_a', 'vendor_a', 'system_b']


def test_parse_lpdump_incomplete():
    with pytest.raises(CorruptFilesystem):
        parse_lpdump("Metadata slot count: 2\n")


def test_layout_round_trip(tmp_path):
    layout = parse_lpdump(LPDUMP)
    path = tmp_path / "repack_info.txt"
    save_layout(layout, str(path))
    text = path.read_text()
    assert 'LP_GROUPS="qti_dynamic_partitions_a qti_dynamic_partitions_b"' in text
    assert 'LP_GROUP_qti_dynamic_partitions_a_PARTITIONS="system_a vendor_a"' in text
    assert load_layout(str(path)) == layout


def test_load_layout_errors(tmp_path):
    with pytest.raises(NotFound):
        load_layout(str(tmp_path / "none.txt"))
    p = tmp_path / "repack_info.txt"
    p.write_text("METADATA_SLOTS=2\nSUPER_DEVICE_SIZE=100\nLP_GROUPS=\"\"\n")
    with pytest.raises(ConfigError):
        load_layout(str(p))


def _session(tmp_path, sizes):
    for name, size in sizes.items():
        (tmp_path / f"{name}.img").write_bytes(b'\x00' * size)
    return SuperLayout(2, 10_000, {'main': list(sizes)})


def test_lpmake_args(tmp_path):
    layout = _session(tmp_path, {'system': 3000, 'vendor': 1000})
    args = lpmake_args(layout, str(tmp_path), 'out.img', sparse=True)
    assert args[:8] == ['--metadata-size', '65536', '--super-name', 'super',
                        '--metadata-slots', '2', '--device', 'super:10000']
    assert '--group' in args and args[args.index('--group') + 1] == 'main:4000'
    assert 'system:readonly:3000:main' in args
    assert f"vendor={tmp_path / 'vendor.img'}" in args
    assert args[-3:] == ['--sparse', '--output', 'out.img']
    assert '--sparse' not in lpmake_args(layout, str(tmp_path), 'out.img', sparse=False)


def test_lpmake_args_capacity(tmp_path):
    layout = _session(tmp_path, {'system': 8000, 'vendor': 3000})
    with pytest.raises(CapacityExceeded) as exc:
        lpmake_args(layout, str(tmp_path), 'out.img')
    assert exc.value.required == 11000
    assert exc.value.available == 10000


def test_lpmake_args_missing_image(tmp_path):
    layout = SuperLayout(2, 10_000, {'main': ['odm']})
    with pytest.raises(NotFound):
        lpmake_args(layout, str(tmp_path), 'out.img')


def test_run_partitions_collects_results():
    jobs = {name: (lambda n=name: n.upper()) for name in ['system', 'vendor', 'product']}
    assert run_partitions(jobs, workers=3) == {'system': 'SYSTEM', 'vendor': 'VENDOR', 'product': 'PRODUCT'}


def test_run_partitions_first_failure_cancels_queue():
    started = []
    gate = threading.Event()

    def ok(name):
        started.append(name)
        return name

    def bad():
        started.append('vendor')
        raise RuntimeError('mkfs failed')

    jobs = {'system': lambda: ok('system'), 'vendor': bad}
    jobs.update({f'p{i}': (lambda i=i: (gate.wait(1), ok(f'p{i}'))[1]) for i in range(20)})
    with pytest.raises(PartitionFailed) as exc:
        run_partitions(jobs, workers=1)
    assert exc.value.partition == 'vendor'
    assert set(exc.value.completed) <= {'system'}
    assert 'system' in started
    # at most the job the single worker had already picked up ran
    assert sum(name.startswith('p') for name in started) <= 1


def test_repack_super_runs_lpmake_atomically(tmp_path, monkeypatch):
    layout = _session(tmp_path, {'system': 3000})
    save_layout(layout, str(tmp_path / "repack_info.txt"))
    calls = []

    def fake_run(args, check=True, ok_codes=(0,), log_func=None):
        calls.append(args)
        out = args[args.index('--output') + 1]
        with open(out, 'wb') as f:
            f.write(b'super')
        return subprocess.CompletedProcess(args, 0, '')

    monkeypatch.setattr(tools, 'run_tool', fake_run)
    out = tmp_path / "super_new.img"
    repack_super(str(tmp_path), str(out), sparse=False)
    assert out.read_bytes() == b'super'
    assert calls[0][0] == 'lpmake'
    assert calls[0][-1] == str(out) + '.tmp'
    assert not os.path.exists(str(out) + '.tmp')


def test_repack_super_failure_leaves_no_output(tmp_path, monkeypatch):
    layout = _session(tmp_path, {'system': 3000})
    save_layout(layout, str(tmp_path / "repack_info.txt"))

    def failing(args, check=True, ok_codes=(0,), log_func=None):
        with open(args[-1], 'wb') as f:
            f.write(b'half')
        raise tools.BuilderFailure('lpmake', 1, 'no space')

    monkeypatch.setattr(tools, 'run_tool', failing)
    out = tmp_path / "super_new.img"
    with pytest.raises(tools.BuilderFailure):
        repack_super(str(tmp_path), str(out))
    assert not out.exists()
    assert not os.path.exists(str(out) + '.tmp')
