import base64
import json
from dataclasses import dataclass, field
from typing import Optional, Tuple

from pydantic import ValidationError

from hubvault.core.adapters import StorageAdapter
from hubvault.core.crypto import KDF_ITERS, derive_key, hash_password, new_salt, verify_password
from hubvault.core.errors import InvalidCredential, IOFailure
from hubvault.models import MasterKeyRecord


@dataclass(frozen=True)
class VaultSession:
    """
    The unlocked state for one master password: the derived data key and the
    record it was derived against. Never holds the password itself. A password
    change produces a new session instead of mutating this one.
    """

    key: bytes = field(repr=False)
    record: MasterKeyRecord

    @classmethod
    def open(cls, password: str, record: MasterKeyRecord) -> "VaultSession":
        if not verify_password(password, record.verifier):
            raise InvalidCredential("incorrect password")
        salt = base64.b64decode(record.key_salt)
        return cls(key=derive_key(password, salt, record.iterations), record=record)


def new_master_record(password: str, iterations: int = KDF_ITERS) -> Tuple[MasterKeyRecord, bytes]:
    salt = new_salt()
    record = MasterKeyRecord(
        verifier=hash_password(password, iterations),
        key_salt=base64.b64encode(salt).decode("utf-8"),
        iterations=iterations,
    )
    return record, derive_key(password, salt, iterations)


def load_master_record(adapter: StorageAdapter) -> Optional[MasterKeyRecord]:
    raw = adapter.read_master_key_record()
    if raw is None:
        return None
    try:
        return MasterKeyRecord(**json.loads(raw))
    except (ValueError, TypeError, ValidationError) as exc:
        raise IOFailure("master key record is unreadable") from exc


def write_master_record(adapter: StorageAdapter, record: MasterKeyRecord):
    adapter.write_master_key_record(json.dumps(record.model_dump(), indent=2))
