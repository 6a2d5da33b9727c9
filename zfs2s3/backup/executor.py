"""
Backup executor - runs one backup cycle for one volume.

Workflow:
1. Take a new snapshot (if configured)
2. List local snapshots and remote backup records
3. Resolve the transfer plan (forced full for full cycles)
4. Transfer in plan order, skipping transfers whose base failed
5. Report transferred records, skipped transfers and errors
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from zfs2s3.models import BackupRecord, JobKind, PlannedTransfer, Snapshot, Volume
from .inventory import resolve_transfers, split_chains
from .transfer import TransferCancelled, TransferError, TransferPipeline


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'


@dataclass
class BackupCycleResult:
    """Outcome of one backup cycle"""
    volume: str
    kind: JobKind
    started_at: datetime
    completed_at: Optional[datetime] = None
    snapshot: Optional[Snapshot] = None
    planned: List[PlannedTransfer] = field(default_factory=list)
    transferred: List[BackupRecord] = field(default_factory=list)
    skipped: List[PlannedTransfer] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and not self.skipped


def snapshot_name(prefix: str, kind: JobKind, now: Optional[datetime] = None) -> str:
    """
    Name of a snapshot taken by a backup cycle.

    Full cycles produce ``<prefix><timestamp>``, incremental cycles
    ``<prefix>incremental-<timestamp>``.
    """
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime(TIMESTAMP_FORMAT)
    if kind == JobKind.INCREMENTAL:
        return f"{prefix}incremental-{timestamp}"
    return f"{prefix}{timestamp}"


class BackupExecutor:
    """
    Orchestrates one backup cycle of a volume.
    """

    def __init__(
        self,
        volume: Volume,
        kind: JobKind,
        source,
        storage,
        pipeline: TransferPipeline,
        snapshot_prefix: str,
        take_snapshot: bool = True,
    ):
        """
        Initialize backup executor.

        Args:
            volume: Volume to back up
            kind: JobKind.FULL or JobKind.INCREMENTAL
            source: ZfsSource of the volume
            storage: S3Storage holding the backups
            pipeline: TransferPipeline moving the snapshots
            snapshot_prefix: Prefix of snapshots taken by this tool
            take_snapshot: Take a new snapshot before syncing
        """
        if kind not in (JobKind.FULL, JobKind.INCREMENTAL):
            raise ValueError(f"Not a backup job kind: {kind}")

        self.volume = volume
        self.kind = kind
        self.source = source
        self.storage = storage
        self.pipeline = pipeline
        self.snapshot_prefix = snapshot_prefix
        self.take_snapshot = take_snapshot

    def execute(self) -> BackupCycleResult:
        """
        Execute the backup cycle.

        Transfer failures are collected in the result; a failed transfer
        skips every later transfer that depends on it.

        Returns:
            BackupCycleResult of the cycle

        Raises:
            SourceError: If snapshots cannot be taken or listed
            StorageError: If the remote records cannot be listed
        """
        result = BackupCycleResult(
            volume=self.volume.name,
            kind=self.kind,
            started_at=datetime.now(timezone.utc),
        )
        logger.info(f"Starting {self.kind} backup of {self.volume.name}")

        if self.take_snapshot:
            name = snapshot_name(self.snapshot_prefix, self.kind, result.started_at)
            result.snapshot = self.source.create_snapshot(self.volume, name)

        local = self.source.list_snapshots(self.volume)
        records = self.storage.list_records(self.volume.name)

        result.planned = resolve_transfers(
            self.volume,
            local,
            records,
            force_full=self.kind == JobKind.FULL,
        )

        if not result.planned:
            logger.info(f"{self.volume.name} is up to date ({len(records)} remote backups)")
        else:
            chains = split_chains(self.volume, result.planned)
            logger.info(
                f"{self.volume.name}: {len(result.planned)} snapshots to transfer "
                f"in {len(chains)} chains"
            )
            self._transfer_all(result)

        result.completed_at = datetime.now(timezone.utc)
        if result.success:
            logger.info(f"{self.kind} backup of {self.volume.name} completed ({len(result.transferred)} transferred)")
        else:
            logger.error(
                f"{self.kind} backup of {self.volume.name} finished with {len(result.errors)} errors, "
                f"{len(result.transferred)} transferred, {len(result.skipped)} skipped"
            )
        return result

    def _transfer_all(self, result: BackupCycleResult):
        failed = set()

        for planned in result.planned:
            if planned.base is not None and planned.base.name in failed:
                logger.warning(f"Skipping {planned.describe()}: base was not transferred")
                result.skipped.append(planned)
                failed.add(planned.snapshot.name)
                continue

            try:
                record = self.pipeline.transfer(planned)
            except TransferCancelled:
                raise
            except TransferError as e:
                logger.error(f"Failed {planned.describe()}: {e}")
                result.errors.append(f"{planned.snapshot.full_name}: {e}")
                failed.add(planned.snapshot.name)
                continue

            result.transferred.append(record)
