import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from hubvault.core.errors import IOFailure

logger = logging.getLogger(__name__)

MASTER_KEY_NAME = ".master.key"


class StorageAdapter(ABC):
    """
    Where the engine puts bytes. One implementation per deployment target,
    chosen once by the host at startup.
    """

    @abstractmethod
    def ensure_data_root(self) -> None: ...

    @abstractmethod
    def exists(self, name: str) -> bool: ...

    @abstractmethod
    def read_text(self, name: str) -> str: ...

    @abstractmethod
    def write_text(self, name: str, text: str) -> None: ...

    @abstractmethod
    def remove(self, name: str) -> None: ...

    @abstractmethod
    def list_names(self) -> List[str]: ...

    @abstractmethod
    def stat(self, name: str) -> Optional[Tuple[int, float]]:
        """(size in bytes, modified timestamp) or None when absent."""

    # --- Master password record ---
    @abstractmethod
    def master_key_exists(self) -> bool: ...

    @abstractmethod
    def read_master_key_record(self) -> Optional[str]: ...

    @abstractmethod
    def write_master_key_record(self, text: str) -> None: ...


class MemoryStorageAdapter(StorageAdapter):
    def __init__(self):
        self._items: Dict[str, Tuple[str, float]] = {}
        self._master: Optional[str] = None

    def ensure_data_root(self) -> None:
        return None

    def exists(self, name: str) -> bool:
        return name in self._items

    def read_text(self, name: str) -> str:
        try:
            return self._items[name][0]
        except KeyError:
            raise IOFailure(f"{name} does not exist")

    def write_text(self, name: str, text: str) -> None:
        self._items[name] = (text, time.time())

    def remove(self, name: str) -> None:
        self._items.pop(name, None)

    def list_names(self) -> List[str]:
        return sorted(self._items)

    def stat(self, name: str) -> Optional[Tuple[int, float]]:
        entry = self._items.get(name)
        if entry is None:
            return None
        return len(entry[0].encode("utf-8")), entry[1]

    def master_key_exists(self) -> bool:
        return self._master is not None

    def read_master_key_record(self) -> Optional[str]:
        return self._master

    def write_master_key_record(self, text: str) -> None:
        self._master = text


class FileSystemStorageAdapter(StorageAdapter):
    """
    Layout under the vault root:
      data/<name>   one file per stored unit
      .master.key   master password record
    """

    def __init__(self, root: str):
        self.base_dir = Path(root)
        self.data_dir = self.base_dir / "data"
        self.ensure_data_root()

    def ensure_data_root(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"cannot create data directory {self.data_dir}") from exc

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise IOFailure(f"invalid storage name {name!r}")
        return self.data_dir / name

    def _atomic_write(self, target_path: Path, payload: str):
        target_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = target_path.with_name(target_path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target_path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def read_text(self, name: str) -> str:
        try:
            return self._path(name).read_text(encoding="utf-8")
        except OSError as exc:
            raise IOFailure(f"failed to read {name}") from exc

    def write_text(self, name: str, text: str) -> None:
        try:
            self._atomic_write(self._path(name), text)
        except OSError as exc:
            raise IOFailure(f"failed to write {name}") from exc

    def remove(self, name: str) -> None:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise IOFailure(f"failed to remove {name}") from exc

    def list_names(self) -> List[str]:
        try:
            return sorted(p.name for p in self.data_dir.iterdir() if p.is_file() and not p.name.endswith(".tmp"))
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise IOFailure(f"failed to list {self.data_dir}") from exc

    def stat(self, name: str) -> Optional[Tuple[int, float]]:
        try:
            st = self._path(name).stat()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise IOFailure(f"failed to stat {name}") from exc
        return st.st_size, st.st_mtime

    def _master_path(self) -> Path:
        return self.base_dir / MASTER_KEY_NAME

    def master_key_exists(self) -> bool:
        return self._master_path().exists()

    def read_master_key_record(self) -> Optional[str]:
        try:
            return self._master_path().read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise IOFailure("failed to read master key record") from exc

    def write_master_key_record(self, text: str) -> None:
        try:
            self._atomic_write(self._master_path(), text)
        except OSError as exc:
            raise IOFailure("failed to write master key record") from exc
        logger.info("Master key record written to %s", self._master_path())


def create_adapter(backend: str, root: str) -> StorageAdapter:
    if backend == "memory":
        return MemoryStorageAdapter()
    return FileSystemStorageAdapter(root)
