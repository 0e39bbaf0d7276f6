"""AES-256-GCM encrypted secrets file.

File format::

    [8 bytes:  magic "SUBTSECR"]
    [1 byte:   version = 0x01]
    [16 bytes: salt, bound as associated data]
    [12 bytes: nonce]
    [N bytes:  ciphertext + 16-byte GCM tag]

The plaintext is a JSON object mapping variable names (``MQTT_PASSWORD``)
to values; :func:`subtronics_gateway.config.load_config` consults it when
resolving ``${VAR}`` placeholders.  The master key is a raw 32-byte file.
"""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"SUBTSECR"
VERSION = 0x01
KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
_HEADER_LEN = len(MAGIC) + 1 + SALT_LEN + NONCE_LEN


class SecretStore:
    """An encrypted name → value store backed by a single file.

    Parameters
    ----------
    path:
        Location of the encrypted file.
    key_file:
        Location of the 32-byte master key.
    """

    def __init__(self, path: str | Path, key_file: str | Path) -> None:
        self.path = Path(path)
        self.key_file = Path(key_file)

    def exists(self) -> bool:
        return self.path.exists() and self.key_file.exists()

    def init(self) -> None:
        """Create an empty store, generating the key file when missing."""
        key = _ensure_key(self.key_file)
        _encrypt(self.path, key, {})

    def load(self) -> dict[str, str]:
        return _decrypt(self.path, _read_key(self.key_file))

    def set(self, name: str, value: str) -> None:
        """Add or replace one secret."""
        key = _read_key(self.key_file)
        store = _decrypt(self.path, key)
        store[name] = value
        _encrypt(self.path, key, store)

    def names(self) -> list[str]:
        """Names of stored secrets; values are never returned here."""
        return sorted(self.load())

    def rekey(self, new_key_file: str | Path) -> None:
        """Re-encrypt under *new_key_file* (generated when missing)."""
        store = self.load()
        new_key = _ensure_key(Path(new_key_file))
        _encrypt(self.path, new_key, store)
        self.key_file = Path(new_key_file)


def _ensure_key(key_file: Path) -> bytes:
    if not key_file.exists():
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key_file.write_bytes(AESGCM.generate_key(bit_length=256))
        os.chmod(key_file, 0o600)
    return _read_key(key_file)


def _read_key(key_file: Path) -> bytes:
    if not key_file.exists():
        raise FileNotFoundError(f"Key file not found: {key_file}")
    key = key_file.read_bytes()
    if len(key) != KEY_LEN:
        raise ValueError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


def _encrypt(path: Path, key: bytes, store: dict[str, str]) -> None:
    salt = os.urandom(SALT_LEN)
    nonce = os.urandom(NONCE_LEN)
    ciphertext = AESGCM(key).encrypt(nonce, orjson.dumps(store), salt)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(MAGIC)
        fh.write(bytes([VERSION]))
        fh.write(salt)
        fh.write(nonce)
        fh.write(ciphertext)
    os.chmod(path, 0o600)


def _decrypt(path: Path, key: bytes) -> dict[str, str]:
    data = path.read_bytes()
    if len(data) < _HEADER_LEN or data[: len(MAGIC)] != MAGIC:
        raise ValueError("Invalid secrets file (bad magic)")
    if data[len(MAGIC)] != VERSION:
        raise ValueError(f"Unsupported secrets file version: {data[len(MAGIC)]}")

    offset = len(MAGIC) + 1
    salt = data[offset: offset + SALT_LEN]
    nonce = data[offset + SALT_LEN: _HEADER_LEN]
    try:
        plaintext = AESGCM(key).decrypt(nonce, data[_HEADER_LEN:], salt)
    except InvalidTag as exc:
        raise ValueError("Secrets file does not match the key (or is corrupt)") from exc
    return orjson.loads(plaintext)
