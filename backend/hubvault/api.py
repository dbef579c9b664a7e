from contextlib import contextmanager
from typing import Dict, Any, List
from fastapi import APIRouter, HTTPException, Body
from hubvault.models import (
    BackupManifest,
    ChangePasswordPayload,
    LegacyImportPayload,
    LegacyImportResult,
    PasswordPayload,
    PathPayload,
    ReconciliationReport,
    RestorePayload,
    RestoreResult,
    VaultStatus,
)
from hubvault.core.errors import (
    BackupFormatError,
    DecryptError,
    IncompatibleKey,
    InvalidCredential,
    IOFailure,
    NotFound,
    PartialMigrationFailure,
    VaultLockedError,
)
from hubvault.core.vault import VaultAlreadyInitialized, current_vault, swap_vault
import logging
import os

logger = logging.getLogger(__name__)

router = APIRouter()


@contextmanager
def _vault_errors():
    """Map engine errors to short HTTP errors; internal messages stay in the log."""
    try:
        yield
    except VaultLockedError:
        raise HTTPException(status_code=423, detail="vault locked")
    except InvalidCredential:
        raise HTTPException(status_code=401, detail="incorrect password")
    except NotFound:
        raise HTTPException(status_code=404, detail="record not found")
    except PartialMigrationFailure as ex:
        raise HTTPException(
            status_code=409,
            detail={"message": "password not changed", "failed": ex.failed_keys},
        )
    except IncompatibleKey:
        raise HTTPException(status_code=422, detail="data cannot be decrypted with this password")
    except DecryptError:
        raise HTTPException(status_code=422, detail="data could not be decrypted")
    except BackupFormatError as ex:
        raise HTTPException(status_code=422, detail=f"unsupported backup: {ex}")
    except IOFailure as ex:
        logger.error("Storage failure: %s", ex)
        raise HTTPException(status_code=500, detail="storage failure")
    except ValueError as ex:
        raise HTTPException(status_code=400, detail=str(ex))


# --- Vault ---
@router.get("/vault/status", response_model=VaultStatus)
async def get_status():
    vault = current_vault()
    return VaultStatus(has_master_key=vault.has_master_key(), locked=vault.is_locked(), storage=vault.backend)


@router.post("/vault/setup")
async def setup_vault(payload: PasswordPayload):
    try:
        with _vault_errors():
            current_vault().setup(payload.password)
    except VaultAlreadyInitialized:
        raise HTTPException(status_code=409, detail="master password already set")
    return {"status": "ok"}


@router.post("/vault/unlock")
async def unlock_vault(payload: PasswordPayload):
    with _vault_errors():
        current_vault().unlock(payload.password)
    return {"status": "unlocked"}


@router.post("/vault/lock")
async def lock_vault():
    current_vault().lock()
    return {"status": "locked"}


@router.post("/vault/password")
async def change_password(payload: ChangePasswordPayload):
    with _vault_errors():
        current_vault().change_password(payload.old, payload.new)
    return {"status": "changed"}


# --- Collections ---
@router.get("/collections", response_model=List[str])
async def list_collections():
    with _vault_errors():
        return current_vault().store().discover_keys()


@router.delete("/collections")
async def clear_all_collections():
    with _vault_errors():
        current_vault().store().clear_all()
    return {"status": "ok"}


@router.get("/collections/{key}")
async def get_collection(key: str) -> List[Dict[str, Any]]:
    with _vault_errors():
        return current_vault().store().get(key)


@router.put("/collections/{key}")
async def save_collection(key: str, records: List[Dict[str, Any]] = Body(...)):
    with _vault_errors():
        current_vault().store().save(key, records)
    return {"status": "ok"}


@router.delete("/collections/{key}")
async def clear_collection(key: str):
    with _vault_errors():
        current_vault().store().clear(key)
    return {"status": "ok"}


@router.post("/collections/{key}/items")
async def add_item(key: str, record: Dict[str, Any] = Body(...)):
    with _vault_errors():
        current_vault().store().add(key, record)
    return {"status": "ok"}


@router.put("/collections/{key}/items/{item_id}")
async def update_item(key: str, item_id: str, record: Dict[str, Any] = Body(...)):
    with _vault_errors():
        current_vault().store().update(key, item_id, record)
    return {"status": "ok"}


@router.delete("/collections/{key}/items/{item_id}")
async def delete_item(key: str, item_id: str):
    with _vault_errors():
        current_vault().store().delete(key, item_id)
    return {"status": "ok"}


# --- Backup ---
@router.post("/backup/create", response_model=BackupManifest)
async def create_backup(payload: PathPayload):
    with _vault_errors():
        return current_vault().backups().create(os.path.expanduser(payload.path))


@router.post("/backup/reconcile", response_model=ReconciliationReport)
async def reconcile_backup(payload: PathPayload):
    with _vault_errors():
        return current_vault().backups().reconcile(os.path.expanduser(payload.path))


@router.post("/backup/restore", response_model=RestoreResult)
async def restore_backup(payload: RestorePayload):
    with _vault_errors():
        return current_vault().backups().restore(os.path.expanduser(payload.path), payload.keys)


@router.post("/backup/import-legacy", response_model=LegacyImportResult)
async def import_legacy_backup(payload: LegacyImportPayload):
    with _vault_errors():
        return current_vault().backups().import_legacy(os.path.expanduser(payload.path), payload.password)


# --- Workspace ---
@router.get("/workspace")
async def get_workspace():
    base_dir = getattr(current_vault().adapter, "base_dir", None)
    return {"path": str(base_dir.resolve()) if base_dir else None}


@router.post("/workspace")
async def set_workspace(payload: PathPayload):
    try:
        abs_path = os.path.abspath(os.path.expanduser(payload.path))
        os.makedirs(abs_path, exist_ok=True)
    except OSError as ex:
        raise HTTPException(status_code=400, detail=f"Cannot use data path: {ex}")
    with _vault_errors():
        swap_vault(abs_path)
    return {"path": abs_path}
