"""Client package for BioSync.

Vendor API client and the sync orchestrator built on top of it.
"""
from typing import Optional

import requests

from shared.store import JsonStore

from .api_client import BioTimeClient, should_renew_token
from .sync_service import SyncService

__all__ = ["BioTimeClient", "SyncService", "create_sync_service", "should_renew_token"]


def create_sync_service(store: Optional[JsonStore] = None,
                        session: Optional[requests.Session] = None) -> SyncService:
    """Wire a store, an API client and the orchestrator together"""
    store = store or JsonStore.open_default()
    return SyncService(store, BioTimeClient(store, session=session))
