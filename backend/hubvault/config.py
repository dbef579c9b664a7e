import os

from hubvault.core.crypto import KDF_ITERS

DATA_DIR_ENV = "HUBVAULT_DATA_DIR"
KDF_ITERATIONS_ENV = "HUBVAULT_KDF_ITERATIONS"
STORAGE_ENV = "HUBVAULT_STORAGE"
LOG_LEVEL_ENV = "HUBVAULT_LOG_LEVEL"

DEFAULT_DATA_DIR = "./vault-data"
STORAGE_BACKENDS = ("filesystem", "memory")


def data_dir() -> str:
    return os.getenv(DATA_DIR_ENV, DEFAULT_DATA_DIR)


def kdf_iterations() -> int:
    raw = os.getenv(KDF_ITERATIONS_ENV)
    if not raw:
        return KDF_ITERS
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{KDF_ITERATIONS_ENV} must be an integer, got {raw!r}")
    if value < 1:
        raise ValueError(f"{KDF_ITERATIONS_ENV} must be positive")
    return value


def storage_backend() -> str:
    backend = os.getenv(STORAGE_ENV, "filesystem").lower()
    if backend not in STORAGE_BACKENDS:
        raise ValueError(f"unknown storage backend {backend!r}")
    return backend


def log_level() -> str:
    return os.getenv(LOG_LEVEL_ENV, "INFO").upper()
