from cryptopaylink.config import ENABLED_STORAGE, is_storage_enabled
from cryptopaylink.exceptions import ConfigurationError

from .base import StorageBackend, StorageCapabilities, StorageStatus
from .database import DatabaseStorage
from .memory import MemoryStorage

__all__ = ["StorageBackend", "StorageCapabilities", "StorageStatus", "create_storage"]

if "memory" in ENABLED_STORAGE:
    __all__.append("MemoryStorage")
if "database" in ENABLED_STORAGE:
    __all__.append("DatabaseStorage")


def create_storage(backend: str = "memory", **kwargs) -> StorageBackend:
    """Create an enabled storage backend by name ("memory" or "database")."""
    if not is_storage_enabled(backend):
        raise ConfigurationError(
            f"Storage backend '{backend}' is not enabled",
            config_key="CryptoPayLink_EnabledStorage",
            expected_value=",".join(ENABLED_STORAGE),
            actual_value=backend,
        )
    if backend.lower() == "database":
        return DatabaseStorage(**kwargs)
    return MemoryStorage()
