import base64
import logging
from typing import Callable, Dict, List, Optional, Tuple

from hubvault.core.adapters import StorageAdapter
from hubvault.core.crypto import KDF_ITERS, derive_key, hash_password, new_salt, verify_password
from hubvault.core.errors import InvalidCredential, PartialMigrationFailure, VaultError
from hubvault.core.session import VaultSession, load_master_record, write_master_record
from hubvault.core.store import CollectionStore, decrypt_collection, encrypt_collection
from hubvault.models import MasterKeyRecord

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class RekeyCoordinator:
    """
    Re-encrypts every collection from the current session key to a key derived
    from a new password.

    Phases:
      1. stage: decrypt each collection under the old key and encrypt it under
         the new key, in memory. Any failure aborts with nothing written.
      2. write: persist the staged blobs one key at a time. If any write fails,
         every key already written gets its original blob back.
      3. commit: write the new master record. This is the only point after
         which the old password stops working.
    """

    def __init__(self, session: VaultSession, adapter: StorageAdapter, iterations: int = KDF_ITERS):
        self.session = session
        self.adapter = adapter
        self.iterations = iterations
        self.store = CollectionStore(session, adapter)

    def _stage(self, keys: List[str], new_key: bytes) -> Tuple[Dict[str, Tuple[str, str]], Dict[str, str]]:
        staged: Dict[str, Tuple[str, str]] = {}
        errors: Dict[str, str] = {}
        for key in keys:
            try:
                original = self.store.read_raw(key)
                if original is None:
                    continue
                records = decrypt_collection(key, original, self.session.key, strict=True)
                staged[key] = (original, encrypt_collection(records, new_key))
            except VaultError as exc:
                logger.warning("Cannot migrate %s: %s", key, exc)
                errors[key] = str(exc)
        return staged, errors

    def _rollback(self, written: Dict[str, str], errors: Dict[str, str]):
        for key, original in written.items():
            try:
                self.store.write_raw(key, original)
            except VaultError as exc:
                logger.error("Rollback failed for %s: %s", key, exc)
                errors[key] = f"rollback failed: {exc}"

    def change_password(
        self, old_password: str, new_password: str, on_progress: Optional[ProgressCallback] = None
    ) -> VaultSession:
        stored = load_master_record(self.adapter)
        if stored is None or not verify_password(old_password, stored.verifier):
            raise InvalidCredential("incorrect password")

        salt = new_salt()
        new_key = derive_key(new_password, salt, self.iterations)
        keys = self.store.keys()

        staged, errors = self._stage(keys, new_key)
        if errors:
            raise PartialMigrationFailure(errors)

        total = len(staged)
        written: Dict[str, str] = {}
        for idx, (key, (original, blob)) in enumerate(staged.items(), start=1):
            try:
                self.store.write_raw(key, blob)
                written[key] = original
            except VaultError as exc:
                logger.warning("Failed to write re-encrypted %s: %s", key, exc)
                errors[key] = str(exc)
            if on_progress:
                on_progress(idx, total)
        if errors:
            self._rollback(written, errors)
            raise PartialMigrationFailure(errors)

        record = MasterKeyRecord(
            verifier=hash_password(new_password, self.iterations),
            key_salt=base64.b64encode(salt).decode("utf-8"),
            iterations=self.iterations,
        )
        try:
            write_master_record(self.adapter, record)
        except VaultError:
            # old record still on disk, so the old key must still open every collection
            errors = {}
            self._rollback(written, errors)
            if errors:
                raise PartialMigrationFailure(errors)
            raise
        logger.info("Master password changed; %d collections re-encrypted", total)
        return VaultSession(key=new_key, record=record)
