from __future__ import annotations
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field
import time

# --- Records ---
# Records are application-defined; the engine only relies on a string "id".
Record = Dict[str, Any]

# --- Master password record (persisted as .master.key) ---

class MasterKeyRecord(BaseModel):
    v: int = 1
    verifier: str  # pbkdf2-sha512$iters$salt$hash
    key_salt: str  # base64, salt for the data key (independent of the verifier salt)
    iterations: int
    created_at: float = Field(default_factory=time.time)

# --- Backup models ---

class BackupFile(BaseModel):
    path: str  # collection key
    size: int
    modified: Optional[float] = None

class BackupManifest(BaseModel):
    format_version: str
    app_version: str
    timestamp: float = Field(default_factory=time.time)
    data_files: List[BackupFile] = []
    has_master_key: bool = False
    schema_versions: Dict[str, int] = {}

    @property
    def keys(self) -> List[str]:
        return [f.path for f in self.data_files]

ReconcileStatus = Literal["new", "same", "conflict", "orphan"]

class ReconciliationEntry(BaseModel):
    key: str
    size_in_backup: Optional[int] = None
    size_on_disk: Optional[int] = None  # None = not on disk
    modified_in_backup: Optional[float] = None
    modified_on_disk: Optional[float] = None
    status: ReconcileStatus
    # only set for conflicts where both timestamps are known
    archive_newer: Optional[bool] = None

class ReconciliationReport(BaseModel):
    manifest: BackupManifest
    entries: List[ReconciliationEntry] = []
    warnings: List[str] = []

    def by_status(self, status: str) -> List[ReconciliationEntry]:
        return [e for e in self.entries if e.status == status]

RestoreStatus = Literal["restored", "incompatible_key", "not_found", "io_failure"]

class RestoreOutcome(BaseModel):
    key: str
    status: RestoreStatus
    error: Optional[str] = None

class RestoreResult(BaseModel):
    results: List[RestoreOutcome] = []

    @property
    def restored_count(self) -> int:
        return sum(1 for r in self.results if r.status == "restored")

    def outcome(self, key: str) -> Optional[RestoreOutcome]:
        for r in self.results:
            if r.key == key:
                return r
        return None

class LegacyImportResult(BaseModel):
    records: int = 0
    keys: List[str] = []
    skipped_items: int = 0
    errors: Dict[str, str] = {}

# --- API payloads ---

class VaultStatus(BaseModel):
    has_master_key: bool
    locked: bool
    storage: str

class PasswordPayload(BaseModel):
    password: str = Field(min_length=1)

class ChangePasswordPayload(BaseModel):
    old: str = Field(min_length=1)
    new: str = Field(min_length=1)

class PathPayload(BaseModel):
    path: str = Field(min_length=1)

class RestorePayload(BaseModel):
    path: str = Field(min_length=1)
    keys: Optional[List[str]] = None  # None restores every archived collection

class LegacyImportPayload(BaseModel):
    path: str = Field(min_length=1)
    password: str = Field(min_length=1)
