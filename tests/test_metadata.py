import os
import pytest
from aitcore.checksums import ChecksumTable
from aitcore.metadata import (Kind, PathRecord, MetadataStore, UnpackInfo, load_store, save_store,
                              load_unpack_info, save_unpack_info, parse_tune2fs, quote_path, unquote_path)


def _tree(root):
    (root / "bin").mkdir()
    (root / "bin" / "sh").write_bytes(b"#!/bin/sh\n")
    os.chmod(root / "bin" / "sh", 0o755)
    (root / "etc").mkdir()
    (root / "etc" / "hosts").write_text("127.0.0.1 localhost\n")
    os.symlink("/system/bin/sh", root / "bin" / "ash")
    (root / ".repack_info").mkdir()


def test_snapshot_records_root_first_and_skips_info_dir(tmp_path):
    _tree(tmp_path)
    store = MetadataStore.snapshot(str(tmp_path))
    records = store.records()
    assert records[0].path == '/'
    assert records[0].kind is Kind.DIRECTORY
    assert '/.repack_info' not in store
    assert store.get('/bin/sh').kind is Kind.FILE
    assert store.get('/bin/sh').mode == 0o755
    link = store.get('/bin/ash')
    assert link.kind is Kind.SYMLINK
    assert link.symlink_target == '/system/bin/sh'
    assert [r.path for r in store.children('/bin')] == ['/bin/ash', '/bin/sh']


def test_snapshot_requires_directory(tmp_path):
    f = tmp_path / "file"
    f.write_text("x")
    with pytest.raises(NotADirectoryError):
        MetadataStore.snapshot(str(f))


def test_duplicate_path_rejected():
    store = MetadataStore([PathRecord('/', Kind.DIRECTORY, 0, 0, 0o755)])
    with pytest.raises(ValueError):
        store.add(PathRecord('/', Kind.DIRECTORY, 0, 0, 0o755))


def test_store_round_trip(tmp_path):
    records = [
        PathRecord('/', Kind.DIRECTORY, 0, 0, 0o755, 'u:object_r:rootfs:s0'),
        PathRecord('/bin', Kind.DIRECTORY, 0, 2000, 0o751, 'u:object_r:system_file:s0'),
        PathRecord('/bin/sh', Kind.FILE, 0, 2000, 0o755, 'u:object_r:shell_exec:s0'),
        PathRecord('/bin/run-as', Kind.FILE, 0, 2000, 0o750, 'u:object_r:runas_exec:s0', capabilities=0xc0),
        PathRecord('/etc/my file', Kind.FILE, 1000, 1000, 0o4644),
        PathRecord('/bin/ash', Kind.SYMLINK, 0, 2000, 0o777, None, symlink_target='sh'),
    ]
    store = MetadataStore(records)
    info_dir = tmp_path / ".repack_info"
    save_store(store, str(info_dir), source='system.img')
    sums = ChecksumTable({'/bin/sh': 'a' * 64, '/bin/run-as': 'b' * 64, '/etc/my file': 'c' * 64})
    loaded = load_store(str(info_dir), sums)
    assert {r.path: r for r in loaded} == {r.path: r for r in records}
    cfg = (info_dir / "fs-config.txt").read_text()
    assert cfg.startswith('#')
    assert '\n/ 0 0 755\n' in cfg
    assert '/bin/run-as 0 2000 750 capabilities=0xc0' in cfg
    assert '/etc/my\\040file 1000 1000 4644' in cfg
    assert '/bin/ash sh 0 2000 777 ?' in (info_dir / "symlink_info.txt").read_text()


def test_load_store_tolerates_unknown_context_and_first_wins(tmp_path):
    (tmp_path / "fs-config.txt").write_text("# header\n/ 0 0 755\n/a 0 0 644\n/a 1 1 600\nbroken line\n")
    (tmp_path / "file_contexts.txt").write_text("/ ?\n/a u:object_r:system_file:s0\n")
    store = load_store(str(tmp_path), ChecksumTable({'/a': 'x'}))
    assert store.get('/').context is None
    assert store.get('/a').uid == 0
    assert store.get('/a').mode == 0o644
    assert len(store) == 2


def test_load_store_missing_fs_config(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_store(str(tmp_path))


def test_load_store_needs_checksum_table(tmp_path):
    store = MetadataStore([PathRecord('/', Kind.DIRECTORY, 0, 0, 0o755),
                           PathRecord('/bin/sh', Kind.FILE, 0, 2000, 0o755, 'u:object_r:shell_exec:s0')])
    save_store(store, str(tmp_path))
    with pytest.raises(FileNotFoundError):
        load_store(str(tmp_path))
    (tmp_path / "original_checksums.txt").write_text('a' * 64 + '  ./bin/sh\n')
    loaded = load_store(str(tmp_path))
    assert loaded.get('/bin/sh').kind is Kind.FILE
    assert loaded.get('/bin/sh').mode == 0o755


def test_load_store_skips_non_numeric_fields(tmp_path):
    (tmp_path / "fs-config.txt").write_text("/ 0 0 755\n/a root 0 644\n/b 0 0 rw-\n/c 0 0 644 capabilities=zz\n/d 0 0 644\n")
    (tmp_path / "symlink_info.txt").write_text("/l sh 0 x 777\n/m sh 0 0\n/n sh 0 0 777\n")
    store = load_store(str(tmp_path), ChecksumTable({'/d': 'x'}))
    assert sorted(r.path for r in store) == ['/', '/d', '/n']


def test_quote_round_trip():
    for p in ['/plain', '/with space', '/tab\there', '/back\\slash']:
        assert unquote_path(quote_path(p)) == p
        assert ' ' not in quote_path(p)


TUNE2FS = """tune2fs 1.47.0 (5-Feb-2023)
Filesystem volume name:   <none>
Last mounted on:          /
Filesystem UUID:          0b5a1c3e-6f3e-4b1c-9a40-4ad5f2b0c111
Filesystem features:      has_journal ext_attr resize_inode dir_index filetype extent sparse_super large_file
Inode count:              4096
Block count:              16384
Inode size:	          256
Directory Hash Seed:      2d9c8f3a-7c1b-4a2e-8f50-0a5c8c7d1e22
"""


def test_parse_tune2fs():
    fields = parse_tune2fs(TUNE2FS)
    assert fields['block_count'] == 16384
    assert fields['inode_count'] == 4096
    assert fields['inode_size'] == 256
    assert fields['volume_name'] == ''
    assert fields['uuid'] == '0b5a1c3e-6f3e-4b1c-9a40-4ad5f2b0c111'
    assert fields['features'].startswith('has_journal,ext_attr,')
    assert fields['hash_seed'] == '2d9c8f3a-7c1b-4a2e-8f50-0a5c8c7d1e22'


def test_unpack_info_round_trip(tmp_path):
    info = UnpackInfo('/images/system.img', 'ext4', unpack_time=1700000000).with_geometry(parse_tune2fs(TUNE2FS))
    path = tmp_path / "metadata.txt"
    save_unpack_info(info, str(path))
    text = path.read_text()
    assert 'ORIGINAL_BLOCK_COUNT=16384' in text
    assert 'FILESYSTEM_TYPE=ext4' in text
    assert load_unpack_info(str(path)) == info


def test_load_unpack_info_tolerates_quotes_and_garbage(tmp_path):
    path = tmp_path / "metadata.txt"
    path.write_text('# comment\nSOURCE_IMAGE="vendor.img"\nFILESYSTEM_TYPE=erofs\nORIGINAL_BLOCK_COUNT=abc\nUNKNOWN=1\n')
    info = load_unpack_info(str(path))
    assert info.source_image == 'vendor.img'
    assert info.filesystem_type == 'erofs'
    assert info.block_count is None
    assert not info.is_ext4
