"""
Ticker Engine Infrastructure: Checksummed Storage Codec

Persists engine snapshots as versioned, checksummed, obfuscated blobs in a
key/value backend.

NOTE: the byte-wise XOR transform is obfuscation only. It keeps casual eyes
off the stored payload; it is not encryption and provides no confidentiality.

Blob layout (before obfuscation):
    {"data": <payload>, "timestamp": <epoch ms>, "checksum": "<hex>", "version": 1}
"""

import base64
import binascii
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from core.exceptions import ErrorKind, StorageIntegrityError
from core.models import SecureStorageItem, ValidationResult

logger = logging.getLogger(__name__)

STORAGE_VERSION = 1
DEFAULT_PREFIX = "secure_ticker_"
DEFAULT_OBFUSCATION_KEY = "TICKER_STORAGE_KEY"
DEFAULT_MAX_ITEMS = 100


def canonical_json(data: Any) -> str:
    """Compact JSON; key order is preserved so a parsed payload re-serializes identically."""
    return json.dumps(data, separators=(",", ":"), ensure_ascii=True, allow_nan=False)


def generate_checksum(data: str) -> str:
    """
    Rolling 32-bit hash (hash * 31 + char) rendered as signed hex.

    Deterministic across runs, not collision resistant.
    """
    value = 0
    for char in data:
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return f"-{-value:x}" if value < 0 else f"{value:x}"


def xor_bytes(payload: bytes, key: bytes) -> bytes:
    """Reversible byte-wise XOR against a repeating key"""
    if not key:
        raise ValueError("Obfuscation key must not be empty")
    key_length = len(key)
    return bytes(byte ^ key[i % key_length] for i, byte in enumerate(payload))


class InMemoryKeyValueStore:
    """Dict-backed key/value storage (tests, ephemeral runs)."""

    def __init__(self, max_items: int = DEFAULT_MAX_ITEMS):
        self.max_items = max_items
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        if key not in self._items and len(self._items) >= self.max_items:
            raise StorageIntegrityError(key, f"Storage is full ({self.max_items} items)")
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self):
        return list(self._items.keys())

    def describe(self) -> str:
        return "memory"


class JsonFileKeyValueStore:
    """
    Key/value storage persisted to a single JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Bounded item count
    """

    def __init__(self, path: str, max_items: int = DEFAULT_MAX_ITEMS):
        self.path = Path(path)
        self.max_items = max_items
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized JsonFileKeyValueStore at {self.path}")

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise StorageIntegrityError(str(self.path), "Storage file is not a JSON object")
        return data

    def _write_all(self, items: Dict[str, str]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=".ticker_storage_",
            suffix=".json.tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(items, f, indent=2)
            os.replace(temp_path, self.path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._read_all().get(key)

    def set(self, key: str, value: str) -> None:
        items = self._read_all()
        if key not in items and len(items) >= self.max_items:
            raise StorageIntegrityError(key, f"Storage is full ({self.max_items} items)")
        items[key] = value
        self._write_all(items)

    def remove(self, key: str) -> None:
        items = self._read_all()
        if items.pop(key, None) is not None:
            self._write_all(items)

    def keys(self):
        return list(self._read_all().keys())

    def describe(self) -> str:
        return f"file:{self.path}"


def create_storage_from_config(config: Optional[Dict[str, Any]]):
    """Build the key/value backend named by the storage config section."""
    config = config or {}
    backend = str(config.get("backend", "memory")).lower()
    max_items = int(config.get("max_items", DEFAULT_MAX_ITEMS))

    if backend == "file":
        return JsonFileKeyValueStore(config.get("path", "data/ticker_storage.json"), max_items=max_items)
    if backend == "memory":
        return InMemoryKeyValueStore(max_items=max_items)
    raise ValueError(f"Unknown storage backend: {backend}")


class SecureStorageCodec:
    """
    Serialize payloads into checksum envelopes and back.

    persist() and restore() never raise; every failure is reported as a
    ValidationResult with ErrorKind.STORAGE.
    """

    def __init__(
        self,
        backend=None,
        prefix: str = DEFAULT_PREFIX,
        obfuscation_key: str = DEFAULT_OBFUSCATION_KEY,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.backend = backend if backend is not None else InMemoryKeyValueStore()
        self.prefix = prefix
        self._key = obfuscation_key.encode("utf-8")
        self._clock = clock or (lambda: time.time() * 1000.0)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]], clock: Optional[Callable[[], float]] = None) -> "SecureStorageCodec":
        config = config or {}
        key_env = config.get("obfuscation_key_env", "TICKER_STORAGE_KEY")
        obfuscation_key = os.getenv(key_env) or config.get("obfuscation_key", DEFAULT_OBFUSCATION_KEY)
        return cls(
            backend=create_storage_from_config(config),
            prefix=config.get("prefix", DEFAULT_PREFIX),
            obfuscation_key=obfuscation_key,
            clock=clock,
        )

    def storage_key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def encode(self, data: Any) -> str:
        """Wrap data in an envelope and produce the stored text"""
        item = SecureStorageItem(
            data=data,
            timestamp=self._clock(),
            checksum=generate_checksum(canonical_json(data)),
            version=STORAGE_VERSION,
        )
        raw = canonical_json(item.to_dict()).encode("utf-8")
        return base64.b64encode(xor_bytes(raw, self._key)).decode("ascii")

    def decode(self, name: str, blob: str) -> SecureStorageItem:
        """Reverse encode(); raises StorageIntegrityError on any mismatch"""
        try:
            raw = xor_bytes(base64.b64decode(blob.encode("ascii"), validate=True), self._key)
            envelope = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError) as e:
            raise StorageIntegrityError(name, "Failed to decode stored data", e) from e

        if not isinstance(envelope, dict) or not {"data", "checksum", "version"} <= envelope.keys():
            raise StorageIntegrityError(name, "Stored data has an invalid envelope")

        if envelope["version"] != STORAGE_VERSION:
            raise StorageIntegrityError(name, f"Unsupported storage version: {envelope['version']}")

        if generate_checksum(canonical_json(envelope["data"])) != envelope["checksum"]:
            raise StorageIntegrityError(name, "Data integrity check failed")

        return SecureStorageItem(
            data=envelope["data"],
            timestamp=envelope.get("timestamp", 0),
            checksum=envelope["checksum"],
            version=envelope["version"],
        )

    def persist(self, name: str, data: Any) -> ValidationResult:
        if not name or not isinstance(name, str):
            return ValidationResult.fail(ErrorKind.STORAGE, "Invalid storage key")
        try:
            self.backend.set(self.storage_key(name), self.encode(data))
        except Exception as e:
            logger.error(f"Failed to save {name} to storage: {e}")
            return ValidationResult.fail(ErrorKind.STORAGE, f"Failed to save data: {e}")

        logger.debug(f"Persisted {name} to {self.backend.describe()}")
        return ValidationResult.ok()

    def restore(self, name: str) -> Tuple[ValidationResult, Optional[Any]]:
        """
        Returns:
            (result, data); data is None whenever result is not valid
        """
        if not name or not isinstance(name, str):
            return ValidationResult.fail(ErrorKind.STORAGE, "Invalid storage key"), None
        try:
            blob = self.backend.get(self.storage_key(name))
            if not blob:
                return ValidationResult.fail(ErrorKind.STORAGE, f"No data found for key: {name}"), None
            item = self.decode(name, blob)
        except StorageIntegrityError as e:
            logger.warning(f"Rejected stored data for {name}: {e}")
            return ValidationResult.fail(ErrorKind.STORAGE, str(e)), None
        except Exception as e:
            logger.error(f"Failed to load {name} from storage: {e}")
            return ValidationResult.fail(ErrorKind.STORAGE, f"Failed to load data: {e}"), None

        return ValidationResult.ok(), item.data


__all__ = [
    "DEFAULT_OBFUSCATION_KEY",
    "DEFAULT_PREFIX",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "STORAGE_VERSION",
    "SecureStorageCodec",
    "canonical_json",
    "create_storage_from_config",
    "generate_checksum",
    "xor_bytes",
]
