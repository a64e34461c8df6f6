"""
Backup module for finvault.

This module handles the core backup functionality including:
- Archive encoding (serialize, compress, encrypt)
- Integrity checksums
- Object storage (S3)
- Application data store access
- Catalog, engine and retention enforcement (import from their submodules)
"""

from .codec import ArchiveCodec
from .datastore import DataStore, MongoDataStore, SQLDataStore, create_data_store
from .integrity import compute_checksum, checksum_file
from .storage import S3Storage

__all__ = [
    'ArchiveCodec',
    'DataStore',
    'MongoDataStore',
    'SQLDataStore',
    'create_data_store',
    'compute_checksum',
    'checksum_file',
    'S3Storage'
]
