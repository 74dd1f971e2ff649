# medreminder/store.py
import os
import re
import uuid
import asyncio
import logging
from pathlib import Path
from threading import RLock
from typing import Optional, Dict, Protocol

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from .errors import PersistenceError, CorruptBlobError

logger = logging.getLogger("medreminder")

_CRYPTO_LOCK = RLock()
_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[bytes]: ...
    async def set(self, key: str, blob: bytes) -> None: ...

# -------------------------
# Crypto utilities
# -------------------------
def _atomic_write_bytes(path: Path, data: bytes):
    tmp = path.with_suffix(path.suffix + f".tmp.{uuid.uuid4().hex}")
    tmp.parent.mkdir(parents=True, exist_ok=True)
    tmp.write_bytes(data)
    tmp.replace(path)

def aes_encrypt(data: bytes, key: bytes) -> bytes:
    aes = AESGCM(key)
    nonce = os.urandom(12)
    return nonce + aes.encrypt(nonce, data, None)

def aes_decrypt(data: bytes, key: bytes) -> bytes:
    if not data or len(data) < 12:
        raise InvalidTag("ciphertext too short")
    aes = AESGCM(key)
    nonce, ct = data[:12], data[12:]
    return aes.decrypt(nonce, ct, None)

def get_or_create_key(key_path: Path) -> bytes:
    with _CRYPTO_LOCK:
        if key_path.exists():
            d = key_path.read_bytes()
            if len(d) >= 32:
                return d[:32]
            logger.warning(f"key file too short, regenerating: {key_path}")
        key = AESGCM.generate_key(bit_length=256)
        _atomic_write_bytes(key_path, key)
        logger.info("key stored: file")
        return key

# -------------------------
# Stores
# -------------------------
class MemoryStore:
    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._data: Dict[str, bytes] = dict(initial or {})

    async def get(self, key: str) -> Optional[bytes]:
        return self._data.get(key)

    async def set(self, key: str, blob: bytes) -> None:
        self._data[key] = bytes(blob)

class EncryptedFileStore:
    """One AES-GCM encrypted file per key under base_dir."""

    def __init__(self, base_dir: Path, key: bytes):
        if len(key) != 32:
            raise ValueError("AES-256 key must be 32 bytes")
        self.base_dir = Path(base_dir)
        self.key = key

    def path_for(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise PersistenceError(f"invalid store key: {key!r}")
        return self.base_dir / f"{key}.aes"

    def _read(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        with _CRYPTO_LOCK:
            try:
                data = path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                raise PersistenceError(f"read failed {path}: {exc}") from exc
        try:
            return aes_decrypt(data, self.key)
        except InvalidTag as exc:
            raise CorruptBlobError(f"decrypt failed {path}") from exc

    def _write(self, key: str, blob: bytes):
        path = self.path_for(key)
        enc = aes_encrypt(blob, self.key)
        with _CRYPTO_LOCK:
            try:
                _atomic_write_bytes(path, enc)
            except OSError as exc:
                raise PersistenceError(f"write failed {path}: {exc}") from exc

    async def get(self, key: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, blob: bytes) -> None:
        await asyncio.to_thread(self._write, key, blob)
