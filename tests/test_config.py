import pytest
import yaml
from aitcore.config import RepackConfig, UnpackConfig, load_preset, save_preset, merge_config
from aitcore.errors import ConfigError, NotFound


def test_defaults_are_valid():
    cfg = RepackConfig().validate()
    assert cfg.filesystem == 'auto'
    assert cfg.ext4_mode == 'flexible'
    assert cfg.ext4_overhead_percent == 10
    assert UnpackConfig().validate().overwrite


def test_merge_precedence(tmp_path):
    preset_file = tmp_path / "p.yaml"
    preset_file.write_text("action: repack\nfilesystem: ext4\next4_overhead_percent: 20\ncreate_sparse: true\n")
    preset = load_preset(str(preset_file))
    cfg = merge_config(RepackConfig, preset, dict(ext4_overhead_percent=15, filesystem=None))
    assert cfg.filesystem == 'ext4'
    assert cfg.ext4_overhead_percent == 15
    assert cfg.create_sparse is True
    assert cfg.erofs_compression == 'none'


def test_invalid_values_raise():
    with pytest.raises(ConfigError):
        merge_config(RepackConfig, {'ext4_mode': 'loose'})
    with pytest.raises(ConfigError):
        merge_config(RepackConfig, {'erofs_compression': 'zstd'})
    with pytest.raises(ConfigError):
        merge_config(RepackConfig, {'ext4_overhead_percent': -5})
    with pytest.raises(ConfigError):
        merge_config(UnpackConfig, {}, {'workers': 0})


def test_load_preset_errors(tmp_path):
    with pytest.raises(NotFound):
        load_preset(str(tmp_path / "missing.yaml"))
    bad = tmp_path / "bad.yaml"
    bad.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        load_preset(str(bad))
    unknown = tmp_path / "unknown.yaml"
    unknown.write_text("filesystem: ext4\ncolour: blue\n")
    with pytest.raises(ConfigError) as exc:
        load_preset(str(unknown))
    assert 'colour' in str(exc.value)
    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_preset(str(empty)) == {}


def test_save_preset_round_trip(tmp_path):
    cfg = RepackConfig(filesystem='erofs', erofs_compression='lz4hc', erofs_level=9)
    out = tmp_path / "export.yaml"
    save_preset(str(out), cfg, action='repack', input='extracted_vendor', output='vendor.img')
    data = yaml.safe_load(out.read_text())
    assert data['action'] == 'repack'
    assert data['erofs_level'] == 9
    assert 'workers' not in data
    assert merge_config(RepackConfig, load_preset(str(out))) == cfg
