"""
Panelforge Storage Module

Two-tier persistence for generation jobs: a capacity-limited record store
for structured state and an asynchronous blob store for images.
"""

from .blob_store import BlobStore, BlobTransaction
from .persistence import HybridPersistence, StorageInfo, character_blob_key, panel_blob_key
from .record_store import RecordStore

__all__ = [
    'BlobStore',
    'BlobTransaction',
    'HybridPersistence',
    'RecordStore',
    'StorageInfo',
    'character_blob_key',
    'panel_blob_key',
]
