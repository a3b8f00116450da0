"""Infrastructure modules for Stormbox."""

from . import async_client, blob_store, config_store, jmap_client

__all__ = ["async_client", "blob_store", "config_store", "jmap_client"]
