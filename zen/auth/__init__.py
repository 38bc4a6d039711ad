"""Provider credentials: descriptors, storage backends and the auth manager."""

from zen.auth.manager import AuthManager
from zen.auth.providers import PROVIDERS, ProviderDescriptor, get_provider
from zen.auth.storage import CredentialStore, FileStore, KeychainStore, MemoryStore, create_store

__all__ = [
    "PROVIDERS",
    "AuthManager",
    "CredentialStore",
    "FileStore",
    "KeychainStore",
    "MemoryStore",
    "ProviderDescriptor",
    "create_store",
    "get_provider",
]
