import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from hubvault.core.adapters import StorageAdapter
from hubvault.core.crypto import ItemBlobs, decode_stored, decrypt_value, encode_single, encrypt_value
from hubvault.core.errors import DecryptError, NotFound
from hubvault.core.session import VaultSession
from hubvault.models import Record

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

COLLECTION_SUFFIX = ".encrypted.json"
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

# Collections the app knows about, with their current schema version. Used when
# the adapter cannot be enumerated and recorded in backup manifests.
KNOWN_COLLECTIONS: Dict[str, int] = {
    "contacts": 1,
    "finance_items": 1,
    "vehicles": 1,
    "properties": 1,
    "medical_history": 1,
    "medical_profile": 1,
    "dental_records": 1,
    "pets": 1,
    "budget_items": 1,
    "pension_items": 1,
    "pensions": 1,
    "certificates": 1,
    "education": 1,
    "education_records": 1,
    "employment": 1,
    "employment_records": 1,
    "documents_certificates": 1,
    "documents_education": 1,
    "documents_health": 1,
    "photos": 1,
    "panel_usage": 1,
    "kakeibo_entries": 1,
    "kakeibo_goals": 1,
    "virtual_street": 1,
    "user_files": 1,
    "file_categories": 1,
}


def validate_key(key: str) -> str:
    if not isinstance(key, str) or not _KEY_PATTERN.match(key):
        raise ValueError(f"invalid collection key {key!r}")
    return key


def storage_name(key: str) -> str:
    return validate_key(key) + COLLECTION_SUFFIX


def key_from_name(name: str) -> Optional[str]:
    if not name.endswith(COLLECTION_SUFFIX):
        return None
    key = name[: -len(COLLECTION_SUFFIX)]
    return key if _KEY_PATTERN.match(key) else None


def discover_keys(adapter: StorageAdapter) -> List[str]:
    """Collection keys that currently have a stored value."""
    keys = []
    for name in adapter.list_names():
        key = key_from_name(name)
        if key:
            keys.append(key)
    return keys


def _record_id(record: Any) -> str:
    if not isinstance(record, dict):
        raise ValueError("records must be JSON objects")
    rid = record.get("id")
    if not isinstance(rid, str) or not rid:
        raise ValueError("records need a non-empty string id")
    return rid


def _check_unique(records: List[Record]):
    seen = set()
    for r in records:
        rid = _record_id(r)
        if rid in seen:
            raise ValueError(f"duplicate record id {rid!r}")
        seen.add(rid)


def decrypt_collection(key: str, raw: str, data_key: bytes, strict: bool = False) -> List[Record]:
    """
    Decode a stored collection value. Whole-collection blobs must decrypt or the
    call fails; per-item blobs are decrypted one by one and bad items skipped,
    unless strict is set, in which case any bad item fails the whole call.
    """
    stored = decode_stored(raw)
    if isinstance(stored, ItemBlobs):
        records: List[Record] = []
        for item in stored.items:
            try:
                records.append(json.loads(decrypt_value(item.data, data_key)))
            except (DecryptError, ValueError) as exc:
                if strict:
                    raise DecryptError(f"item {item.id or '?'} in {key} is unreadable") from exc
                logger.warning("Skipping unreadable item %s in %s: %s", item.id or "?", key, exc)
        return records
    plaintext = decrypt_value(stored.blob, data_key)
    try:
        parsed = json.loads(plaintext)
    except ValueError as exc:
        raise DecryptError(f"blob for {key} is not valid JSON") from exc
    if not isinstance(parsed, list):
        raise DecryptError(f"blob for {key} is not a list")
    return parsed


def encrypt_collection(records: List[Record], data_key: bytes) -> str:
    payload = json.dumps(records, separators=(",", ":"))
    return encode_single(encrypt_value(payload, data_key))


class CollectionStore:
    def __init__(self, session: VaultSession, adapter: StorageAdapter):
        self._key = session.key
        self.adapter = adapter

    # --- Keys ---
    def discover_keys(self) -> List[str]:
        return discover_keys(self.adapter)

    def keys(self) -> List[str]:
        return sorted(set(self.discover_keys()) | set(KNOWN_COLLECTIONS))

    # --- Raw blobs ---
    def read_raw(self, key: str) -> Optional[str]:
        name = storage_name(key)
        if not self.adapter.exists(name):
            return None
        return self.adapter.read_text(name)

    def write_raw(self, key: str, raw: str):
        self.adapter.write_text(storage_name(key), raw)

    # --- CRUD ---
    def get(self, key: str) -> List[Record]:
        raw = self.read_raw(key)
        if raw is None:
            return []
        return decrypt_collection(key, raw, self._key)

    def save(self, key: str, records: List[Record], on_progress: Optional[ProgressCallback] = None):
        _check_unique(records)
        name = storage_name(key)
        if on_progress:
            on_progress(50, 100)
        blob = encrypt_collection(records, self._key)
        if on_progress:
            on_progress(75, 100)
        self.adapter.write_text(name, blob)
        if on_progress:
            on_progress(100, 100)

    def add(self, key: str, record: Record):
        rid = _record_id(record)
        records = self.get(key)
        if any(r.get("id") == rid for r in records):
            raise ValueError(f"record {rid!r} already exists in {key}")
        records.append(record)
        self.save(key, records)

    def update(self, key: str, record_id: str, record: Record):
        records = self.get(key)
        for idx, existing in enumerate(records):
            if existing.get("id") == record_id:
                records[idx] = record
                self.save(key, records)
                return
        raise NotFound(f"record {record_id!r} not found in {key}")

    def delete(self, key: str, record_id: str):
        records = self.get(key)
        remaining = [r for r in records if r.get("id") != record_id]
        if len(remaining) == len(records):
            raise NotFound(f"record {record_id!r} not found in {key}")
        self.save(key, remaining)

    def clear(self, key: str):
        self.adapter.remove(storage_name(key))

    def clear_all(self):
        for key in self.keys():
            self.clear(key)
        logger.info("Cleared all collections")
