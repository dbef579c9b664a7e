"""
ZIP backups (.phub) that copy the already-encrypted collection files without
decrypting them. The master key record is included so an archive is
self-contained: the password is the only thing needed to open it.

Archive layout:
  manifest.json
  data/<key>.encrypted.json
  .master.key
"""

import json
import logging
import os
import zipfile
import zlib
from pathlib import Path
from typing import Callable, List, Optional

from pydantic import ValidationError

from hubvault import __version__
from hubvault.core.adapters import StorageAdapter
from hubvault.core.crypto import decode_stored, decrypt_legacy, ItemBlobs
from hubvault.core.errors import (
    BackupFormatError,
    DecryptError,
    IncompatibleKey,
    IOFailure,
    VaultError,
    VaultLockedError,
)
from hubvault.core.session import VaultSession
from hubvault.core.store import (
    KNOWN_COLLECTIONS,
    CollectionStore,
    decrypt_collection,
    discover_keys,
    storage_name,
    validate_key,
)
from hubvault.models import (
    BackupFile,
    BackupManifest,
    LegacyImportResult,
    ReconciliationEntry,
    ReconciliationReport,
    RestoreOutcome,
    RestoreResult,
)

logger = logging.getLogger(__name__)

BackupProgressCallback = Callable[[str, int, int], None]

FORMAT_VERSION = "2.0"
MANIFEST_NAME = "manifest.json"
MASTER_KEY_ENTRY = ".master.key"
DATA_PREFIX = "data/"
LEGACY_KEY_SUFFIX = "_encrypted"


def _major(version: str) -> int:
    try:
        return int(str(version).split(".")[0])
    except ValueError:
        return 0


def check_compatibility(manifest: BackupManifest) -> List[str]:
    """Refuses archives from a newer format; returns warnings for everything softer."""
    if _major(manifest.format_version) > _major(FORMAT_VERSION):
        raise BackupFormatError(
            f"backup format {manifest.format_version} is newer than supported {FORMAT_VERSION}"
        )
    warnings = []
    if _major(manifest.app_version) > _major(__version__):
        warnings.append(f"Backup is from a newer app version ({manifest.app_version}).")
    for key, version in manifest.schema_versions.items():
        current = KNOWN_COLLECTIONS.get(key)
        if current is None:
            warnings.append(f"Unknown data type in backup: {key}")
        elif version > current:
            warnings.append(f"Data type '{key}' is from a newer schema version")
    return warnings


class _Archive:
    """Read side of a .phub file."""

    def __init__(self, path: str):
        self.path = path
        try:
            self._zip = zipfile.ZipFile(path, "r")
        except FileNotFoundError as exc:
            raise IOFailure(f"backup not found: {path}") from exc
        except zipfile.BadZipFile as exc:
            raise BackupFormatError("not a backup archive") from exc
        except OSError as exc:
            raise IOFailure(f"cannot open backup {path}") from exc
        try:
            self.manifest = BackupManifest(**json.loads(self._zip.read(MANIFEST_NAME)))
        except KeyError as exc:
            self._zip.close()
            raise BackupFormatError("backup has no manifest") from exc
        except (ValueError, TypeError, ValidationError, zipfile.BadZipFile, zlib.error) as exc:
            self._zip.close()
            raise BackupFormatError("backup manifest is unreadable") from exc

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self._zip.close()

    def read_blob(self, key: str) -> Optional[str]:
        try:
            return self._zip.read(DATA_PREFIX + storage_name(key)).decode("utf-8")
        except KeyError:
            return None
        except (zipfile.BadZipFile, zlib.error, UnicodeDecodeError) as exc:
            raise BackupFormatError(f"archived {key} is damaged") from exc


class BackupManager:
    def __init__(self, adapter: StorageAdapter, session: Optional[VaultSession] = None):
        self.adapter = adapter
        self.session = session

    def _store(self) -> CollectionStore:
        if self.session is None:
            raise VaultLockedError("vault locked")
        return CollectionStore(self.session, self.adapter)

    # --- Create ---
    def create(self, destination: str, on_progress: Optional[BackupProgressCallback] = None) -> BackupManifest:
        keys = sorted(discover_keys(self.adapter))
        master = self.adapter.read_master_key_record()
        manifest = BackupManifest(
            format_version=FORMAT_VERSION,
            app_version=__version__,
            has_master_key=master is not None,
        )
        target = Path(destination)
        tmp = target.with_name(target.name + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for idx, key in enumerate(keys, start=1):
                    name = storage_name(key)
                    raw = self.adapter.read_text(name)
                    st = self.adapter.stat(name)
                    zf.writestr(DATA_PREFIX + name, raw)
                    manifest.data_files.append(
                        BackupFile(path=key, size=len(raw.encode("utf-8")), modified=st[1] if st else None)
                    )
                    manifest.schema_versions[key] = KNOWN_COLLECTIONS.get(key, 1)
                    if on_progress:
                        on_progress("data", idx, len(keys))
                if master is not None:
                    zf.writestr(MASTER_KEY_ENTRY, master)
                zf.writestr(MANIFEST_NAME, json.dumps(manifest.model_dump(), indent=2))
            os.replace(tmp, target)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise IOFailure(f"failed to write backup {destination}") from exc
        except VaultError:
            tmp.unlink(missing_ok=True)
            raise
        logger.info("Backup created at %s with %d collections", target, len(keys))
        return manifest

    # --- Reconcile ---
    def reconcile(self, archive_path: str) -> ReconciliationReport:
        with _Archive(archive_path) as archive:
            manifest = archive.manifest
            warnings = check_compatibility(manifest)
            entries: List[ReconciliationEntry] = []
            archived = set()
            for f in manifest.data_files:
                try:
                    key = validate_key(f.path)
                except ValueError:
                    warnings.append(f"Ignoring invalid collection key {f.path!r} in manifest")
                    continue
                archived.add(key)
                blob = archive.read_blob(key)
                if blob is None:
                    warnings.append(f"Manifest lists {key} but the archive has no data for it")
                    continue
                name = storage_name(key)
                st = self.adapter.stat(name)
                entry = ReconciliationEntry(
                    key=key,
                    size_in_backup=len(blob.encode("utf-8")),
                    modified_in_backup=f.modified,
                    status="new",
                )
                if st is not None:
                    entry.size_on_disk, entry.modified_on_disk = st
                    if self.adapter.read_text(name) == blob:
                        entry.status = "same"
                    else:
                        entry.status = "conflict"
                        if f.modified is not None:
                            entry.archive_newer = f.modified > st[1]
                entries.append(entry)
            for key in sorted(set(discover_keys(self.adapter)) - archived):
                size, modified = self.adapter.stat(storage_name(key)) or (None, None)
                entries.append(
                    ReconciliationEntry(key=key, size_on_disk=size, modified_on_disk=modified, status="orphan")
                )
        return ReconciliationReport(manifest=manifest, entries=entries, warnings=warnings)

    # --- Restore ---
    def restore(
        self,
        archive_path: str,
        keys: Optional[List[str]] = None,
        on_progress: Optional[BackupProgressCallback] = None,
    ) -> RestoreResult:
        store = self._store()
        result = RestoreResult()
        with _Archive(archive_path) as archive:
            check_compatibility(archive.manifest)
            selected = list(keys) if keys is not None else archive.manifest.keys
            for idx, key in enumerate(selected, start=1):
                result.results.append(self._restore_one(archive, store, key))
                if on_progress:
                    on_progress("restore", idx, len(selected))
        logger.info("Restored %d of %d collections from %s", result.restored_count, len(result.results), archive_path)
        return result

    def _restore_one(self, archive: _Archive, store: CollectionStore, key: str) -> RestoreOutcome:
        try:
            blob = archive.read_blob(key)
        except ValueError as exc:
            return RestoreOutcome(key=key, status="not_found", error=str(exc))
        except BackupFormatError as exc:
            return RestoreOutcome(key=key, status="incompatible_key", error=str(exc))
        if blob is None:
            return RestoreOutcome(key=key, status="not_found", error="not in backup")
        try:
            decrypt_collection(key, blob, self.session.key, strict=True)
        except DecryptError as exc:
            logger.warning("Refusing to restore %s: %s", key, exc)
            return RestoreOutcome(key=key, status="incompatible_key", error=f"incompatible key: {exc}")
        try:
            store.write_raw(key, blob)
        except IOFailure as exc:
            return RestoreOutcome(key=key, status="io_failure", error=str(exc))
        return RestoreOutcome(key=key, status="restored")

    # --- Legacy import ---
    def import_legacy(
        self,
        source: str,
        password: str,
        on_progress: Optional[BackupProgressCallback] = None,
    ) -> LegacyImportResult:
        """
        Import an old browser-era JSON export:
          {"data": {"<key>_encrypted": <blob or per-item list, usually JSON-encoded>}, ...}
        Blobs there were encrypted straight from the password, so the password
        that produced the export is required; it may differ from the current one.
        """
        store = self._store()
        try:
            text = Path(source).read_text(encoding="utf-8")
        except OSError as exc:
            raise IOFailure(f"cannot read {source}") from exc
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise BackupFormatError("legacy backup is not valid JSON") from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise BackupFormatError('invalid backup file format, missing "data" field')

        result = LegacyImportResult()
        entries = [(k, v) for k, v in data.items() if k.endswith(LEGACY_KEY_SUFFIX) and v]
        for idx, (entry_name, value) in enumerate(entries, start=1):
            key = entry_name[: -len(LEGACY_KEY_SUFFIX)]
            try:
                validate_key(key)
                records, skipped = self._decrypt_legacy_value(key, value, password)
                store.save(key, records)
            except (VaultError, ValueError) as exc:
                logger.warning("Failed to import %s: %s", key, exc)
                result.errors[key] = str(exc)
            else:
                result.keys.append(key)
                result.records += len(records)
                result.skipped_items += skipped
            if on_progress:
                on_progress("import", idx, len(entries))

        if result.errors and not result.keys:
            raise IncompatibleKey("legacy backup could not be decrypted with the supplied password")
        logger.info("Legacy import: %d records across %d collections", result.records, len(result.keys))
        return result

    def _decrypt_legacy_value(self, key: str, value, password: str):
        stored = decode_stored(value)
        if isinstance(stored, ItemBlobs):
            records, skipped = [], 0
            for item in stored.items:
                try:
                    records.append(json.loads(decrypt_legacy(item.data, password)))
                except (DecryptError, ValueError) as exc:
                    logger.warning("Skipping unreadable item %s in %s: %s", item.id or "?", key, exc)
                    skipped += 1
            if stored.items and not records:
                raise IncompatibleKey(f"no item in {key} decrypts with the supplied password")
            return records, skipped
        try:
            parsed = json.loads(decrypt_legacy(stored.blob, password))
        except DecryptError as exc:
            raise IncompatibleKey(f"{key} does not decrypt with the supplied password") from exc
        except ValueError as exc:
            raise BackupFormatError(f"{key} is not valid JSON") from exc
        if not isinstance(parsed, list):
            raise BackupFormatError(f"{key} is not a list")
        return parsed, 0
