import logging
from typing import Optional

from hubvault import config
from hubvault.core.adapters import StorageAdapter, create_adapter
from hubvault.core.backup import BackupManager
from hubvault.core.crypto import KDF_ITERS
from hubvault.core.errors import VaultError, VaultLockedError
from hubvault.core.rekey import ProgressCallback, RekeyCoordinator
from hubvault.core.session import VaultSession, load_master_record, new_master_record, write_master_record
from hubvault.core.store import CollectionStore

logger = logging.getLogger(__name__)


class VaultAlreadyInitialized(VaultError):
    pass


class Vault:
    """
    Owns the master password record and the active session for one data root.
    Lock drops the session; unlock or a password change installs a new one.
    """

    def __init__(self, adapter: StorageAdapter, iterations: int = KDF_ITERS, backend: str = "filesystem"):
        self.adapter = adapter
        self.iterations = iterations
        self.backend = backend
        self.session: Optional[VaultSession] = None
        self.adapter.ensure_data_root()

    def has_master_key(self) -> bool:
        return self.adapter.master_key_exists()

    def is_locked(self) -> bool:
        return self.session is None

    def setup(self, password: str) -> VaultSession:
        if self.has_master_key():
            raise VaultAlreadyInitialized("master password already set")
        record, key = new_master_record(password, self.iterations)
        write_master_record(self.adapter, record)
        self.session = VaultSession(key=key, record=record)
        logger.info("Vault initialized")
        return self.session

    def unlock(self, password: str) -> VaultSession:
        record = load_master_record(self.adapter)
        if record is None:
            raise VaultLockedError("no master password set")
        self.session = VaultSession.open(password, record)
        return self.session

    def lock(self):
        self.session = None

    def _require_session(self) -> VaultSession:
        if self.session is None:
            raise VaultLockedError("vault locked")
        return self.session

    def store(self) -> CollectionStore:
        return CollectionStore(self._require_session(), self.adapter)

    def backups(self) -> BackupManager:
        return BackupManager(self.adapter, self.session)

    def change_password(self, old: str, new: str, on_progress: Optional[ProgressCallback] = None) -> VaultSession:
        coordinator = RekeyCoordinator(self._require_session(), self.adapter, self.iterations)
        self.session = coordinator.change_password(old, new, on_progress)
        return self.session


def build_vault(root: Optional[str] = None) -> Vault:
    backend = config.storage_backend()
    adapter = create_adapter(backend, root or config.data_dir())
    return Vault(adapter, iterations=config.kdf_iterations(), backend=backend)


vault = build_vault()


def swap_vault(data_dir: str) -> Vault:
    """
    Replace the global vault with one pointing to a new data root.
    """
    global vault
    vault = build_vault(data_dir)
    return vault


def current_vault() -> Vault:
    return vault
