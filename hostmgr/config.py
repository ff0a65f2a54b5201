"""
Runtime configuration for hostmgr.

Every setting is read from an environment variable with the HOSTMGR_ prefix.
Build a Settings object once at startup and pass it to hostmgr.bootstrap.
"""

import os
from dataclasses import dataclass

STORES = ("memory", "sqlalchemy")
BACKENDS = ("memory", "vagrant", "libvirt")


def _env_int(name, default, min_val=1):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")
    if value < min_val:
        raise ValueError(f"{name} must be >= {min_val}, got {value}")
    return value


def _env_float(name, default):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got '{raw}'")
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _env_choice(name, default, choices):
    value = os.getenv(name, default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {', '.join(choices)}, got '{value}'")
    return value


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///hostmgr_metadata.db"
    store: str = "memory"
    backend: str = "memory"
    vagrant_bin: str = "vagrant"
    vagrant_root: str = "/var/lib/hostmgr/machines"
    vagrant_provider: str = "virtualbox"
    libvirt_uri: str = "qemu:///system"
    image_dir: str = "/var/lib/libvirt/images"
    adapter_timeout: float = 600.0
    max_workers: int = 8
    default_page_limit: int = 10
    max_page_limit: int = 100
    log_level: str = "INFO"
    host: str = ""
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("HOSTMGR_DATABASE_URL", cls.database_url),
            store=_env_choice("HOSTMGR_STORE", cls.store, STORES),
            backend=_env_choice("HOSTMGR_BACKEND", cls.backend, BACKENDS),
            vagrant_bin=os.getenv("HOSTMGR_VAGRANT_BIN", cls.vagrant_bin),
            vagrant_root=os.getenv("HOSTMGR_VAGRANT_ROOT", cls.vagrant_root),
            vagrant_provider=os.getenv("HOSTMGR_VAGRANT_PROVIDER", cls.vagrant_provider),
            libvirt_uri=os.getenv("HOSTMGR_LIBVIRT_URI", cls.libvirt_uri),
            image_dir=os.getenv("HOSTMGR_IMAGE_DIR", cls.image_dir),
            adapter_timeout=_env_float("HOSTMGR_ADAPTER_TIMEOUT", cls.adapter_timeout),
            max_workers=_env_int("HOSTMGR_MAX_WORKERS", cls.max_workers),
            default_page_limit=_env_int("HOSTMGR_DEFAULT_PAGE_LIMIT", cls.default_page_limit),
            max_page_limit=_env_int("HOSTMGR_MAX_PAGE_LIMIT", cls.max_page_limit),
            log_level=os.getenv("HOSTMGR_LOG_LEVEL", cls.log_level).upper(),
            host=os.getenv("HOSTMGR_HOST", cls.host),
            port=_env_int("HOSTMGR_PORT", cls.port),
        )
