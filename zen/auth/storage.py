"""Credential storage backends: OS keychain, AES-GCM encrypted file, in-memory."""

import base64
import hashlib
import json
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

import keyring
import keyring.errors
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from keyring.backends import fail, null

from zen.errors import EncryptionError, NotFound, StorageUnavailable
from zen.fs import atomic_write, ensure_dir
from zen.logging import get_logger
from zen.models import Credential
from zen.settings import AuthConfig

logger = get_logger("auth")

KEYCHAIN_SERVICE = "zen-cli"
_KEYCHAIN_INDEX = "auth-index"
_FILE_VERSION = 1


def _dump_credential(credential: Credential) -> str:
    return json.dumps(
        {
            "provider": credential.provider,
            "secret": credential.secret.get_secret_value(),
            "email": credential.email,
            "created_at": credential.created_at.isoformat(),
            "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
        }
    )


def _load_credential(payload: str) -> Credential:
    data = json.loads(payload)
    return Credential(
        provider=data["provider"],
        secret=data["secret"],
        email=data.get("email"),
        created_at=datetime.fromisoformat(data["created_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
    )


class CredentialStore(ABC):
    """One credential per provider id."""

    name: str

    @abstractmethod
    def put(self, credential: Credential) -> None: ...

    @abstractmethod
    def get(self, provider: str) -> Credential: ...

    @abstractmethod
    def delete(self, provider: str) -> None: ...

    @abstractmethod
    def list_providers(self) -> list[str]: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class MemoryStore(CredentialStore):
    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, Credential] = {}

    def put(self, credential: Credential) -> None:
        with self._lock:
            self._items[credential.provider] = credential

    def get(self, provider: str) -> Credential:
        with self._lock:
            if provider not in self._items:
                raise NotFound(f"no credential stored for '{provider}'")
            return self._items[provider]

    def delete(self, provider: str) -> None:
        with self._lock:
            self._items.pop(provider, None)

    def list_providers(self) -> list[str]:
        with self._lock:
            return sorted(self._items)


# ---------------------------------------------------------------------------
# OS keychain
# ---------------------------------------------------------------------------


def _keyring_available() -> bool:
    """True unless keyring resolved to its fail or null backend."""
    try:
        backend = keyring.get_keyring()
    except keyring.errors.KeyringError:
        return False
    return not isinstance(backend, (fail.Keyring, null.Keyring))


class KeychainStore(CredentialStore):
    """Stores each credential under service ``zen-cli``, account ``auth-<provider>``.

    Vaults cannot be enumerated portably, so the provider ids are also kept in
    a JSON list under the ``auth-index`` account.
    """

    name = "keychain"

    def __init__(self, service: str = KEYCHAIN_SERVICE) -> None:
        if not _keyring_available():
            raise StorageUnavailable("no usable OS keychain backend", details=type(keyring.get_keyring()).__name__)
        self._service = service
        self._lock = threading.Lock()

    @staticmethod
    def _account(provider: str) -> str:
        return f"auth-{provider}"

    def _read_index(self) -> list[str]:
        raw = keyring.get_password(self._service, _KEYCHAIN_INDEX)
        if not raw:
            return []
        try:
            return sorted(set(json.loads(raw)))
        except json.JSONDecodeError:
            logger.warning("keychain provider index is corrupt, rebuilding")
            return []

    def _write_index(self, providers: list[str]) -> None:
        keyring.set_password(self._service, _KEYCHAIN_INDEX, json.dumps(sorted(set(providers))))

    def put(self, credential: Credential) -> None:
        try:
            with self._lock:
                keyring.set_password(self._service, self._account(credential.provider), _dump_credential(credential))
                self._write_index(self._read_index() + [credential.provider])
        except keyring.errors.KeyringError as exc:
            raise StorageUnavailable("could not write to the OS keychain", details=str(exc)) from exc

    def get(self, provider: str) -> Credential:
        try:
            payload = keyring.get_password(self._service, self._account(provider))
        except keyring.errors.KeyringError as exc:
            raise StorageUnavailable("could not read from the OS keychain", details=str(exc)) from exc
        if payload is None:
            raise NotFound(f"no credential stored for '{provider}'")
        return _load_credential(payload)

    def delete(self, provider: str) -> None:
        with self._lock:
            try:
                keyring.delete_password(self._service, self._account(provider))
            except keyring.errors.PasswordDeleteError:
                pass  # already absent
            except keyring.errors.KeyringError as exc:
                raise StorageUnavailable("could not delete from the OS keychain", details=str(exc)) from exc
            remaining = [p for p in self._read_index() if p != provider]
            self._write_index(remaining)

    def list_providers(self) -> list[str]:
        try:
            return self._read_index()
        except keyring.errors.KeyringError as exc:
            raise StorageUnavailable("could not read from the OS keychain", details=str(exc)) from exc


# ---------------------------------------------------------------------------
# Encrypted file
# ---------------------------------------------------------------------------


class FileStore(CredentialStore):
    """AES-256-GCM encrypted JSON file, key = SHA-256 of the configured passphrase.

    Layout: ``{"version": 1, "credentials": {provider: {"ciphertext": b64, "nonce": b64}}}``.
    The file is mode 0600 inside a 0700 directory and is always rewritten atomically.
    """

    name = "file"

    def __init__(self, path: Path, encryption_key: str | None) -> None:
        if not encryption_key:
            raise StorageUnavailable("file credential storage requires auth.encryption_key")
        self._path = Path(path).expanduser()
        self._aead = AESGCM(hashlib.sha256(encryption_key.encode()).digest())
        self._lock = threading.Lock()

    def _read(self) -> dict[str, dict[str, str]]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageUnavailable(f"credential file {self._path} is unreadable", details=str(exc)) from exc
        return data.get("credentials", {})

    def _write(self, entries: dict[str, dict[str, str]]) -> None:
        ensure_dir(self._path.parent, mode=0o700)
        payload = json.dumps({"version": _FILE_VERSION, "credentials": entries}, indent=2, sort_keys=True)
        try:
            atomic_write(self._path, payload, mode=0o600)
        except OSError as exc:
            raise StorageUnavailable(f"could not write credential file {self._path}", details=str(exc)) from exc

    def put(self, credential: Credential) -> None:
        nonce = os.urandom(12)
        try:
            ciphertext = self._aead.encrypt(nonce, _dump_credential(credential).encode(), credential.provider.encode())
        except (ValueError, OverflowError) as exc:
            raise EncryptionError(f"could not encrypt credential for '{credential.provider}'") from exc
        with self._lock:
            entries = self._read()
            entries[credential.provider] = {
                "ciphertext": base64.b64encode(ciphertext).decode(),
                "nonce": base64.b64encode(nonce).decode(),
            }
            self._write(entries)

    def get(self, provider: str) -> Credential:
        with self._lock:
            entry = self._read().get(provider)
        if entry is None:
            raise NotFound(f"no credential stored for '{provider}'")
        try:
            plaintext = self._aead.decrypt(
                base64.b64decode(entry["nonce"]),
                base64.b64decode(entry["ciphertext"]),
                provider.encode(),
            )
        except (InvalidTag, KeyError, ValueError) as exc:
            raise EncryptionError(f"could not decrypt credential for '{provider}' (wrong encryption key?)") from exc
        return _load_credential(plaintext.decode())

    def delete(self, provider: str) -> None:
        with self._lock:
            entries = self._read()
            if entries.pop(provider, None) is not None:
                self._write(entries)

    def list_providers(self) -> list[str]:
        with self._lock:
            return sorted(self._read())


def create_store(config: AuthConfig) -> CredentialStore:
    """Build the configured backend. An unavailable backend is fatal, never downgraded."""
    match config.storage_type:
        case "keychain":
            store: CredentialStore = KeychainStore()
        case "file":
            key = config.encryption_key.get_secret_value() if config.encryption_key else None
            store = FileStore(config.storage_path, key)
        case "memory":
            store = MemoryStore()
        case _:
            raise StorageUnavailable(f"unknown credential storage type '{config.storage_type}'")
    logger.debug("credential storage: %s", store.name)
    return store
