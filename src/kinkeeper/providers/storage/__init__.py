"""Storage adapters, resolved through the provider registry."""

from __future__ import annotations

from kinkeeper.core.config import storage_root
from kinkeeper.core.models import StorageProvider
from kinkeeper.providers.registry import registry
from kinkeeper.providers.storage.base import StorageAdapter
from kinkeeper.providers.storage.local import LocalStorageAdapter

registry.register("storage", StorageProvider.LOCAL.value, LocalStorageAdapter)


def create_storage(provider: StorageProvider | str, config: dict) -> StorageAdapter:
    """Instantiate the adapter for ``provider`` from a merged config.

    Raises:
        KeyError: no adapter is registered for the provider.
    """
    provider = StorageProvider(provider)
    storage_cfg = dict(config.get("storage", {}))
    storage_cfg["path"] = str(storage_root(config))
    return registry.get("storage", provider.value, storage_cfg)


__all__ = ["LocalStorageAdapter", "StorageAdapter", "create_storage"]
