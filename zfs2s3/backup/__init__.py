"""
Backup module for zfs2s3.

This module handles the core backup functionality including:
- Snapshot source (zfs)
- Object storage (S3)
- Inventory and incremental chain resolution
- Streaming multipart transfers
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupCycleResult, BackupExecutor
from .inventory import match_volumes, missing_snapshots, resolve_transfers, split_chains
from .retention import CleanupResult, RetentionError, RetentionManager, select_for_deletion
from .sources import SendStream, SourceError, ZfsSource
from .storage import S3Storage, StorageError
from .transfer import CapacityError, TransferCancelled, TransferError, TransferPipeline, select_part_size

__all__ = [
    'BackupCycleResult',
    'BackupExecutor',
    'match_volumes',
    'missing_snapshots',
    'resolve_transfers',
    'split_chains',
    'CleanupResult',
    'RetentionError',
    'RetentionManager',
    'select_for_deletion',
    'SendStream',
    'SourceError',
    'ZfsSource',
    'S3Storage',
    'StorageError',
    'CapacityError',
    'TransferCancelled',
    'TransferError',
    'TransferPipeline',
    'select_part_size',
]
