import base64
import binascii
import hmac
import json
import secrets
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from hubvault.core.errors import DecryptError

# --- Parameters ---
KDF_NAME = "pbkdf2-sha512"
MASTER_MODE = "master"
KDF_ITERS = 600_000
KEY_LEN = 32
SALT_LEN = 16
IV_LEN = 12
VERSION = "v1"
PREFIX = "enc:"

# Browser-era format: base64(salt || iv || ct), PBKDF2-SHA256 straight from the password
LEGACY_KDF_ITERS = 10_000


# --- KeyDerivation ---
def derive_key(password: str, salt: bytes, iterations: int = KDF_ITERS) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA512(), length=KEY_LEN, salt=salt, iterations=iterations)
    return kdf.derive(password.encode("utf-8"))


def new_salt() -> bytes:
    return secrets.token_bytes(SALT_LEN)


def hash_password(password: str, iterations: int = KDF_ITERS) -> str:
    """
    Verification hash for the master password. The salt travels inside the
    returned string: pbkdf2-sha512$<iterations>$<salt>$<hash>.
    """
    salt = new_salt()
    digest = derive_key(password, salt, iterations)
    return "$".join(
        [
            KDF_NAME,
            str(iterations),
            base64.b64encode(salt).decode("utf-8"),
            base64.b64encode(digest).decode("utf-8"),
        ]
    )


def _parse_verifier(verifier: str) -> Tuple[int, bytes, bytes]:
    parts = verifier.split("$")
    if len(parts) != 4 or parts[0] != KDF_NAME:
        raise ValueError("invalid verifier format")
    iterations = int(parts[1])
    salt = base64.b64decode(parts[2], validate=True)
    digest = base64.b64decode(parts[3], validate=True)
    if iterations <= 0 or len(salt) != SALT_LEN or len(digest) != KEY_LEN:
        raise ValueError("invalid verifier parameters")
    return iterations, salt, digest


def verify_password(password: str, verifier: str) -> bool:
    try:
        iterations, salt, expected = _parse_verifier(verifier)
    except (ValueError, binascii.Error):
        return False
    candidate = derive_key(password, salt, iterations)
    return hmac.compare_digest(candidate, expected)


# --- BlobCodec ---
def encrypt_value(plaintext: str, key: bytes) -> str:
    if len(key) != KEY_LEN:
        raise ValueError("invalid key length")
    iv = secrets.token_bytes(IV_LEN)
    aes = AESGCM(key)
    ct = aes.encrypt(iv, plaintext.encode("utf-8"), None)  # includes tag
    payload = "|".join(
        [
            VERSION,
            MASTER_MODE,
            "0",
            "",  # no per-blob salt, key is already derived
            base64.b64encode(iv).decode("utf-8"),
            base64.b64encode(ct).decode("utf-8"),
        ]
    )
    return PREFIX + payload


def is_encrypted_string(value) -> bool:
    return isinstance(value, str) and value.startswith(PREFIX)


def _parse_encrypted(value: str) -> Tuple[bytes, bytes]:
    if not is_encrypted_string(value):
        raise DecryptError("not encrypted")
    parts = value[len(PREFIX) :].split("|")
    if len(parts) != 6:
        raise DecryptError("invalid payload format")
    version, kdf_name, _, _, iv_b64, ct_b64 = parts
    if version != VERSION:
        raise DecryptError("unsupported version")
    if kdf_name != MASTER_MODE:
        raise DecryptError("unsupported kdf")
    try:
        iv = base64.b64decode(iv_b64, validate=True)
        ct = base64.b64decode(ct_b64, validate=True)
    except binascii.Error as exc:
        raise DecryptError("invalid payload encoding") from exc
    if len(iv) != IV_LEN:
        raise DecryptError("invalid iv length")
    return iv, ct


def decrypt_value(encrypted: str, key: bytes) -> str:
    iv, ct = _parse_encrypted(encrypted)
    if len(key) != KEY_LEN:
        raise DecryptError("invalid key length")
    aes = AESGCM(key)
    try:
        pt = aes.decrypt(iv, ct, None)
    except InvalidTag as exc:
        raise DecryptError("decryption failed") from exc
    try:
        return pt.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptError("decrypted payload is not text") from exc


# --- Legacy codec ---
def _derive_legacy_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LEN, salt=salt, iterations=LEGACY_KDF_ITERS)
    return kdf.derive(password.encode("utf-8"))


def encrypt_legacy(plaintext: str, password: str) -> str:
    salt = new_salt()
    iv = secrets.token_bytes(IV_LEN)
    ct = AESGCM(_derive_legacy_key(password, salt)).encrypt(iv, plaintext.encode("utf-8"), None)
    return base64.b64encode(salt + iv + ct).decode("utf-8")


def decrypt_legacy(encrypted: str, password: str) -> str:
    try:
        blob = base64.b64decode(encrypted, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptError("invalid legacy payload encoding") from exc
    if len(blob) <= SALT_LEN + IV_LEN:
        raise DecryptError("legacy payload too short")
    salt, iv, ct = blob[:SALT_LEN], blob[SALT_LEN : SALT_LEN + IV_LEN], blob[SALT_LEN + IV_LEN :]
    try:
        pt = AESGCM(_derive_legacy_key(password, salt)).decrypt(iv, ct, None)
    except InvalidTag as exc:
        raise DecryptError("legacy decryption failed") from exc
    try:
        return pt.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptError("decrypted payload is not text") from exc


# --- Stored shapes ---
@dataclass(frozen=True)
class SingleBlob:
    blob: str


@dataclass(frozen=True)
class ItemBlob:
    id: Optional[str]
    data: str


@dataclass(frozen=True)
class ItemBlobs:
    items: List[ItemBlob]


StoredValue = Union[SingleBlob, ItemBlobs]


def decode_stored(value: Union[str, list]) -> StoredValue:
    """
    Inspect a stored collection value. A JSON string is the whole collection
    in one blob; a JSON array is the older one-blob-per-item layout.
    Accepts either the raw stored text or an already-parsed value.
    """
    if isinstance(value, str) and not is_encrypted_string(value):
        try:
            value = json.loads(value)
        except ValueError:
            # a bare legacy blob (base64) is not JSON
            return SingleBlob(value)
    if isinstance(value, str):
        return SingleBlob(value)
    if isinstance(value, list):
        items = []
        for entry in value:
            if isinstance(entry, str):
                items.append(ItemBlob(id=None, data=entry))
            elif isinstance(entry, dict):
                data = entry.get("data")
                items.append(ItemBlob(id=entry.get("id"), data=data if isinstance(data, str) else ""))
            else:
                items.append(ItemBlob(id=None, data=""))
        return ItemBlobs(items)
    raise DecryptError("unrecognized stored collection shape")


def encode_single(blob: str) -> str:
    return json.dumps(blob)
