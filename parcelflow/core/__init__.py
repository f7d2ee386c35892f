"""Parcelflow Core Package."""
from .config import Settings, get_settings
from .engine import Engine, build_engine
from .errors import ParcelflowError
from .metrics import init_metrics, get_mode, is_enabled

__all__ = [
    "Settings", "get_settings",
    "Engine", "build_engine",
    "ParcelflowError",
    "init_metrics", "get_mode", "is_enabled",
]
