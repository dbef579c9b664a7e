import json
import zipfile

import pytest

from hubvault.core.adapters import FileSystemStorageAdapter, MemoryStorageAdapter
from hubvault.core.backup import BackupManager, FORMAT_VERSION
from hubvault.core.crypto import encrypt_legacy
from hubvault.core.errors import BackupFormatError, IncompatibleKey, IOFailure, VaultLockedError
from hubvault.core.store import storage_name
from hubvault.core.vault import Vault

CONTACTS = [{"id": "a1", "name": "X"}]
FINANCE = [{"id": "f1", "amount": 12.5}]


@pytest.fixture
def fs_vault(tmp_path):
    v = Vault(FileSystemStorageAdapter(str(tmp_path / "vault")), iterations=1000)
    v.setup("correct-horse")
    store = v.store()
    store.save("contacts", CONTACTS)
    store.save("finance_items", FINANCE)
    return v


def test_create_copies_blobs_verbatim(fs_vault, tmp_path):
    dest = tmp_path / "out" / "backup.phub"
    manifest = fs_vault.backups().create(str(dest))

    assert manifest.format_version == FORMAT_VERSION
    assert manifest.has_master_key
    assert manifest.keys == ["contacts", "finance_items"]
    with zipfile.ZipFile(dest) as zf:
        names = set(zf.namelist())
        assert {"manifest.json", ".master.key", "data/contacts.encrypted.json"} <= names
        assert zf.read("data/contacts.encrypted.json").decode() == fs_vault.adapter.read_text(
            storage_name("contacts")
        )
    assert not (tmp_path / "out" / "backup.phub.tmp").exists()


def test_create_needs_no_session(fs_vault, tmp_path):
    fs_vault.lock()
    manifest = fs_vault.backups().create(str(tmp_path / "cold.phub"))
    assert len(manifest.data_files) == 2


def test_create_progress(fs_vault, tmp_path):
    calls = []
    fs_vault.backups().create(str(tmp_path / "b.phub"), on_progress=lambda *a: calls.append(a))
    assert calls == [("data", 1, 2), ("data", 2, 2)]


def test_reconcile_reports_new_same_conflict_orphan(fs_vault, tmp_path):
    dest = str(tmp_path / "b.phub")
    fs_vault.backups().create(dest)
    store = fs_vault.store()
    store.clear("contacts")
    store.save("finance_items", FINANCE + [{"id": "f2"}])
    store.save("photos", [{"id": "p1"}])

    report = fs_vault.backups().reconcile(dest)
    status = {e.key: e.status for e in report.entries}
    assert status == {"contacts": "new", "finance_items": "conflict", "photos": "orphan"}
    conflict = report.by_status("conflict")[0]
    assert conflict.size_on_disk is not None and conflict.size_in_backup is not None
    assert conflict.archive_newer is False
    assert report.warnings == []


def test_reconcile_same_and_read_only(fs_vault, tmp_path):
    dest = str(tmp_path / "b.phub")
    fs_vault.backups().create(dest)
    before = fs_vault.adapter.read_text(storage_name("contacts"))
    report = fs_vault.backups().reconcile(dest)
    assert {e.status for e in report.entries} == {"same"}
    assert fs_vault.adapter.read_text(storage_name("contacts")) == before


def test_reconcile_rejects_non_archives(tmp_path, fs_vault):
    bogus = tmp_path / "bogus.phub"
    bogus.write_text("hello")
    with pytest.raises(BackupFormatError):
        fs_vault.backups().reconcile(str(bogus))
    with pytest.raises(IOFailure):
        fs_vault.backups().reconcile(str(tmp_path / "missing.phub"))


def test_reconcile_refuses_newer_format(tmp_path, fs_vault):
    path = tmp_path / "future.phub"
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("manifest.json", json.dumps({"format_version": "9.0", "app_version": "9.0.0"}))
    with pytest.raises(BackupFormatError):
        fs_vault.backups().reconcile(str(path))


def test_restore_selected_keys(fs_vault, tmp_path):
    dest = str(tmp_path / "b.phub")
    fs_vault.backups().create(dest)
    store = fs_vault.store()
    store.save("contacts", [{"id": "changed"}])
    store.save("finance_items", [])

    result = fs_vault.backups().restore(dest, ["contacts"])

    assert result.restored_count == 1
    assert store.get("contacts") == CONTACTS
    assert store.get("finance_items") == []


def test_restore_unknown_key_is_reported(fs_vault, tmp_path):
    dest = str(tmp_path / "b.phub")
    fs_vault.backups().create(dest)
    result = fs_vault.backups().restore(dest, ["photos", "contacts"])
    assert result.outcome("photos").status == "not_found"
    assert result.outcome("contacts").status == "restored"


def test_restore_refuses_blobs_from_another_key(fs_vault, tmp_path):
    foreign = Vault(MemoryStorageAdapter(), iterations=1000)
    foreign.setup("someone-else")
    foreign.store().save("contacts", [{"id": "zz"}])
    foreign.store().save("photos", [{"id": "p9"}])
    dest = str(tmp_path / "foreign.phub")
    foreign.backups().create(dest)

    # splice one compatible blob into the foreign archive
    compatible = fs_vault.adapter.read_text(storage_name("finance_items"))
    with zipfile.ZipFile(dest, "a") as zf:
        zf.writestr("data/finance_items.encrypted.json", compatible)
    before = fs_vault.adapter.read_text(storage_name("contacts"))

    result = fs_vault.backups().restore(dest, ["contacts", "photos", "finance_items"])

    assert result.outcome("contacts").status == "incompatible_key"
    assert result.outcome("photos").status == "incompatible_key"
    assert result.outcome("finance_items").status == "restored"
    assert fs_vault.adapter.read_text(storage_name("contacts")) == before
    assert not fs_vault.adapter.exists(storage_name("photos"))


def test_restore_requires_unlocked_vault(fs_vault, tmp_path):
    dest = str(tmp_path / "b.phub")
    fs_vault.backups().create(dest)
    fs_vault.lock()
    with pytest.raises(VaultLockedError):
        fs_vault.backups().restore(dest)


def _legacy_export(tmp_path, data, name="old.encrypted.json"):
    path = tmp_path / name
    path.write_text(json.dumps({"data": data, "master_password_hash": "ignored"}))
    return str(path)


def test_import_legacy_whole_collection_blobs(vault, tmp_path):
    blob = encrypt_legacy(json.dumps(CONTACTS), "old-pass")
    path = _legacy_export(tmp_path, {"contacts_encrypted": json.dumps(blob)})

    result = vault.backups().import_legacy(path, "old-pass")

    assert result.keys == ["contacts"]
    assert result.records == 1
    assert vault.store().get("contacts") == CONTACTS


def test_import_legacy_per_item_blobs_skips_bad_items(vault, tmp_path):
    items = [{"id": r["id"], "data": encrypt_legacy(json.dumps(r), "old-pass")} for r in FINANCE]
    items.append({"id": "bad", "data": encrypt_legacy("{}", "other-pass")})
    path = _legacy_export(tmp_path, {"finance_items_encrypted": json.dumps(items)})

    result = vault.backups().import_legacy(path, "old-pass")

    assert result.skipped_items == 1
    assert vault.store().get("finance_items") == FINANCE


def test_import_legacy_wrong_password(vault, tmp_path):
    blob = encrypt_legacy(json.dumps(CONTACTS), "old-pass")
    path = _legacy_export(tmp_path, {"contacts_encrypted": json.dumps(blob)})
    with pytest.raises(IncompatibleKey):
        vault.backups().import_legacy(path, "not-it")
    assert vault.store().get("contacts") == []


def test_import_legacy_collects_per_key_errors(vault, tmp_path):
    good = encrypt_legacy(json.dumps(CONTACTS), "old-pass")
    bad = encrypt_legacy(json.dumps(FINANCE), "different")
    path = _legacy_export(
        tmp_path,
        {"contacts_encrypted": json.dumps(good), "finance_items_encrypted": json.dumps(bad)},
    )
    result = vault.backups().import_legacy(path, "old-pass")
    assert result.keys == ["contacts"]
    assert list(result.errors) == ["finance_items"]


def test_import_legacy_rejects_other_files(vault, tmp_path):
    path = tmp_path / "x.json"
    path.write_text(json.dumps({"nothing": True}))
    with pytest.raises(BackupFormatError):
        vault.backups().import_legacy(str(path), "pw")
    with pytest.raises(IOFailure):
        vault.backups().import_legacy(str(tmp_path / "missing.json"), "pw")


def _stored_archive(path, manifest, members):
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
        for name, text in members.items():
            zf.writestr(name, text)
        zf.writestr("manifest.json", json.dumps(manifest))


def _flip(path, old: bytes, new: bytes):
    data = path.read_bytes()
    assert data.count(old) == 1
    path.write_bytes(data.replace(old, new))


def test_reconcile_rejects_damaged_manifest(fs_vault, tmp_path):
    path = tmp_path / "damaged.phub"
    _stored_archive(path, {"format_version": FORMAT_VERSION, "app_version": "1.0.0"}, {})
    # still valid JSON, but the member no longer matches its CRC
    _flip(path, b'"1.0.0"', b'"1.0.1"')
    with pytest.raises(BackupFormatError):
        fs_vault.backups().reconcile(str(path))


def test_damaged_collection_member_is_a_format_error(fs_vault, tmp_path):
    path = tmp_path / "damaged.phub"
    blob = fs_vault.adapter.read_text(storage_name("contacts"))
    manifest = {
        "format_version": FORMAT_VERSION,
        "app_version": "1.0.0",
        "data_files": [{"path": "contacts", "size": len(blob)}],
    }
    _stored_archive(path, manifest, {"data/" + storage_name("contacts"): blob})
    _flip(path, b"enc:v1", b"enc:v2")

    with pytest.raises(BackupFormatError):
        fs_vault.backups().reconcile(str(path))

    before = fs_vault.adapter.read_text(storage_name("contacts"))
    result = fs_vault.backups().restore(str(path))
    assert result.outcome("contacts").status == "incompatible_key"
    assert fs_vault.adapter.read_text(storage_name("contacts")) == before
