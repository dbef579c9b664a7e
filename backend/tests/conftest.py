import os
import sys
from pathlib import Path

import pytest

# Keep the module-level vault off the filesystem and the KDF fast
os.environ.setdefault("HUBVAULT_STORAGE", "memory")
os.environ.setdefault("HUBVAULT_KDF_ITERATIONS", "1000")

sys.path.append(str(Path(__file__).resolve().parents[1]))

from hubvault.core.adapters import MemoryStorageAdapter
from hubvault.core.errors import IOFailure
from hubvault.core.vault import Vault

FAST_ITERS = 1000


class FlakyAdapter(MemoryStorageAdapter):
    """Memory adapter that fails writes for chosen names."""

    def __init__(self):
        super().__init__()
        self.fail_writes = set()
        self.fail_removes = set()
        self.fail_master_write = False

    def write_text(self, name, text):
        if name in self.fail_writes:
            raise IOFailure(f"simulated write failure for {name}")
        super().write_text(name, text)

    def remove(self, name):
        if name in self.fail_removes:
            raise IOFailure(f"simulated remove failure for {name}")
        super().remove(name)

    def write_master_key_record(self, text):
        if self.fail_master_write:
            raise IOFailure("simulated master record failure")
        super().write_master_key_record(text)


@pytest.fixture
def adapter():
    return FlakyAdapter()


@pytest.fixture
def vault(adapter):
    v = Vault(adapter, iterations=FAST_ITERS, backend="memory")
    v.setup("correct-horse")
    return v


@pytest.fixture
def store(vault):
    return vault.store()
