"""Store clients: the remote REST store and the SQL backend."""

from __future__ import annotations

from ..config import StoreConfig
from .base import Store, TransactionalStore
from .rest import RestStore, TokenSource
from .sql import SqlStore

__all__ = ["Store", "TransactionalStore", "RestStore", "SqlStore", "build_store"]


def build_store(config: StoreConfig, access_token: TokenSource | None = None) -> Store:
    """Create the store selected by the config (not yet opened)."""
    if config.backend == "sql":
        return SqlStore(config.database_url)

    api_key = config.api_key
    if not api_key:
        raise ValueError(f"Store API key missing: set ${config.api_key_env}")
    return RestStore(
        config.url,
        api_key,
        access_token=access_token,
        verify_tls=config.verify_tls,
        request_timeout=config.request_timeout_seconds,
    )
