from typing import Dict


class VaultError(Exception):
    """Base class for every storage engine failure."""


class VaultLockedError(VaultError):
    """Raised when sensitive data access is attempted while the vault is locked."""


class InvalidCredential(VaultError):
    pass


class DecryptError(VaultError):
    """Ciphertext failed to authenticate: wrong key or corrupted data."""


class NotFound(VaultError):
    pass


class IncompatibleKey(VaultError):
    """An archived or imported blob cannot be decrypted with the supplied key."""


class IOFailure(VaultError):
    pass


class BackupFormatError(VaultError):
    pass


class PartialMigrationFailure(VaultError):
    """
    One or more collections failed during a password change. The new password
    was not committed.
    """

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        keys = ", ".join(sorted(self.errors))
        super().__init__(f"password change aborted; failed collections: {keys}")

    @property
    def failed_keys(self):
        return sorted(self.errors)
