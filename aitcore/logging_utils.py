"""Logging utilities to centralize logging configuration."""
from __future__ import annotations
import logging, os, pathlib, sys
from typing import Callable

LogFunc = Callable[[str], None]

LOG_DIR = pathlib.Path(os.environ.get('AIT_LOG_DIR', 'logs'))

LOG_FILE = LOG_DIR / 'ait.log'

def configure_logging(level: int = logging.INFO, log_file: bool = True) -> None:
    if logging.getLogger().handlers:
        return
    fmt = '%(asctime)s %(levelname)-7s %(name)s: %(message)s'
    datefmt = '%Y-%m-%dT%H:%M:%S'
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(LOG_FILE, encoding='utf-8'))
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt, handlers=handlers)
