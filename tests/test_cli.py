import types
import pytest
import yaml
import ait
from aitcore.errors import BuilderFailure


@pytest.fixture
def as_user(monkeypatch):
    monkeypatch.setattr(ait.os, 'geteuid', lambda: 1000)


@pytest.fixture
def as_root(monkeypatch):
    monkeypatch.setattr(ait.os, 'geteuid', lambda: 0)


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        ait.build_parser().parse_args([])


def test_repack_defaults_from_directory_name(as_root, monkeypatch):
    seen = {}

    def fake_repack(src, output, config):
        seen.update(src=src, output=output, config=config)
        summary = types.SimpleNamespace(describe=lambda: '0 unchanged, 0 modified, 0 new, 0 removed')
        report = types.SimpleNamespace(warnings=[], warning_count=0)
        return types.SimpleNamespace(filesystem='erofs', output=output, summary=summary,
                                     sparse_output=None, report=report)

    monkeypatch.setattr(ait, 'repack_image', fake_repack)
    rc = ait.main(['--no-log-file', 'repack', 'work/extracted_vendor', '--erofs-compression', 'lz4'])
    assert rc == 0
    assert seen['output'] == 'vendor_repacked.img'
    assert seen['config'].erofs_compression == 'lz4'
    assert seen['config'].create_sparse is False


def test_export_conf_written_before_root_check(tmp_path, as_user):
    preset = tmp_path / "vendor.yaml"
    rc = ait.main(['--no-log-file', 'repack', 'extracted_vendor', 'v.img', '--fs', 'ext4',
                   '--ext4-mode', 'strict', '--export-conf', str(preset)])
    assert rc == 1
    data = yaml.safe_load(preset.read_text())
    assert data['action'] == 'repack'
    assert data['input'] == 'extracted_vendor'
    assert data['output'] == 'v.img'
    assert data['ext4_mode'] == 'strict'


def test_preset_supplies_positionals(tmp_path, as_root, monkeypatch):
    preset = tmp_path / "job.yaml"
    preset.write_text("action: unpack\ninput: odm.img\noutput: out_odm\n")
    seen = {}

    def fake_unpack(image, out_dir, config):
        seen.update(image=image, out_dir=out_dir)
        return types.SimpleNamespace(entries=1, files=0, out_dir=out_dir)

    monkeypatch.setattr(ait, 'unpack_image', fake_unpack)
    assert ait.main(['--no-log-file', 'unpack', '--conf', str(preset)]) == 0
    assert seen == {'image': 'odm.img', 'out_dir': 'out_odm'}


def test_errors_map_to_exit_codes(tmp_path, as_root, monkeypatch):
    assert ait.main(['--no-log-file', 'unpack']) == 1
    bad = tmp_path / "bad.yaml"
    bad.write_text("ext4_mode: loose\n")
    assert ait.main(['--no-log-file', 'repack', 'x', '--conf', str(bad)]) == 1

    def failing(*a, **kw):
        raise BuilderFailure('mkfs.erofs', 1, 'no space left')

    monkeypatch.setattr(ait, 'repack_image', failing)
    assert ait.main(['--no-log-file', 'repack', 'extracted_vendor']) == 1

    def interrupted(*a, **kw):
        raise KeyboardInterrupt

    monkeypatch.setattr(ait, 'repack_image', interrupted)
    assert ait.main(['--no-log-file', 'repack', 'extracted_vendor']) == 130
