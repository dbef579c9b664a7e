import pytest

from hubvault.core import adapters
from hubvault.core.adapters import FileSystemStorageAdapter
from hubvault.core.errors import IOFailure


def test_write_and_list(tmp_path):
    adapter = FileSystemStorageAdapter(str(tmp_path))
    adapter.write_text("contacts.encrypted.json", '"x"')
    assert adapter.read_text("contacts.encrypted.json") == '"x"'
    assert adapter.list_names() == ["contacts.encrypted.json"]


def test_failed_write_leaves_no_temp_file(tmp_path, monkeypatch):
    adapter = FileSystemStorageAdapter(str(tmp_path))
    adapter.write_text("contacts.encrypted.json", '"old"')

    def broken_fsync(fd):
        raise OSError("disk full")

    monkeypatch.setattr(adapters.os, "fsync", broken_fsync)
    with pytest.raises(IOFailure):
        adapter.write_text("contacts.encrypted.json", '"new"')
    with pytest.raises(IOFailure):
        adapter.write_master_key_record("{}")

    assert sorted(p.name for p in adapter.data_dir.iterdir()) == ["contacts.encrypted.json"]
    assert not (tmp_path / ".master.key.tmp").exists()
    assert adapter.read_text("contacts.encrypted.json") == '"old"'
