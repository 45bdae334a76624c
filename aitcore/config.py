"""Run configuration and YAML presets.

Precedence: built-in defaults < preset file < explicit command-line values.
A preset is a flat YAML mapping, e.g.::

    action: repack
    input: extracted_system
    output: system_repacked.img
    filesystem: ext4
    ext4_mode: flexible
    ext4_overhead_percent: 15
    create_sparse: true
"""
from __future__ import annotations
import dataclasses, os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type, TypeVar

import yaml

from .errors import ConfigError, NotFound

FILESYSTEMS = ('auto', 'erofs', 'ext4')
EXT4_MODES = ('strict', 'flexible')
EROFS_COMPRESSIONS = ('none', 'lz4', 'lz4hc', 'deflate')
# keys that describe the job rather than a config field
JOB_KEYS = ('action', 'input', 'output')

__all__ = ['RepackConfig', 'UnpackConfig', 'load_preset', 'save_preset', 'merge_config']

C = TypeVar('C')


@dataclass(frozen=True)
class RepackConfig:
    filesystem: str = 'auto'
    ext4_mode: str = 'flexible'
    ext4_overhead_percent: int = 10
    erofs_compression: str = 'none'
    erofs_level: Optional[int] = None
    create_sparse: bool = False
    workers: Optional[int] = None
    partition: Optional[str] = None

    def validate(self) -> 'RepackConfig':
        if self.filesystem not in FILESYSTEMS:
            raise ConfigError(f"filesystem must be one of {', '.join(FILESYSTEMS)}, got {self.filesystem!r}")
        if self.ext4_mode not in EXT4_MODES:
            raise ConfigError(f"ext4_mode must be one of {', '.join(EXT4_MODES)}, got {self.ext4_mode!r}")
        if self.erofs_compression not in EROFS_COMPRESSIONS:
            raise ConfigError(f"erofs_compression must be one of {', '.join(EROFS_COMPRESSIONS)}, "
                              f"got {self.erofs_compression!r}")
        if not isinstance(self.ext4_overhead_percent, int) or self.ext4_overhead_percent < 0:
            raise ConfigError(f"ext4_overhead_percent must be a non-negative integer, got {self.ext4_overhead_percent!r}")
        if self.erofs_level is not None and not isinstance(self.erofs_level, int):
            raise ConfigError(f"erofs_level must be an integer, got {self.erofs_level!r}")
        _check_workers(self.workers)
        return self


@dataclass(frozen=True)
class UnpackConfig:
    workers: Optional[int] = None
    partition: Optional[str] = None
    overwrite: bool = True
    hand_back: bool = True

    def validate(self) -> 'UnpackConfig':
        _check_workers(self.workers)
        return self


def _check_workers(workers) -> None:
    if workers is not None and (not isinstance(workers, int) or workers < 1):
        raise ConfigError(f"workers must be a positive integer, got {workers!r}")


def load_preset(path: str) -> Dict[str, Any]:
    if not os.path.isfile(path):
        raise NotFound(f"preset not found: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"{path}: invalid YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: preset must be a mapping")
    known = {f.name for cls in (RepackConfig, UnpackConfig) for f in dataclasses.fields(cls)}
    unknown = sorted(k for k in data if k not in known and k not in JOB_KEYS)
    if unknown:
        raise ConfigError(f"{path}: unknown keys: {', '.join(map(str, unknown))}")
    return data


def save_preset(path: str, config, **job) -> None:
    """Write |config| (plus optional action/input/output) as a YAML preset."""
    data = {k: v for k, v in job.items() if k in JOB_KEYS and v is not None}
    data.update({k: v for k, v in dataclasses.asdict(config).items() if v is not None})
    with open(path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def merge_config(cls: Type[C], preset: Optional[Dict[str, Any]] = None,
                 overrides: Optional[Dict[str, Any]] = None) -> C:
    """Build |cls| from defaults, then preset values, then non-None overrides."""
    names = {f.name for f in dataclasses.fields(cls)}
    values = {k: v for k, v in (preset or {}).items() if k in names}
    values.update({k: v for k, v in (overrides or {}).items() if k in names and v is not None})
    return cls(**values).validate()
