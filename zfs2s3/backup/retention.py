"""
Retention policy enforcement for remote backups.

A cleanup cycle lists the backup records of a volume, keeps the ones the
policy protects together with every base they depend on, and deletes the
rest. The local snapshot of every deleted record is destroyed first, so the
next backup cycle does not send it again. Deletions are independent: one
failure does not stop the others and is reconsidered by the next cleanup
cycle.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set

from zfs2s3.models import BackupRecord, RetentionPolicy, Snapshot, Volume
from .sources import SourceError
from .storage import StorageError


logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class RetentionError(Exception):
    """Raised (and collected) when one object could not be cleaned up."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


@dataclass
class CleanupResult:
    """Outcome of one cleanup cycle for a volume"""
    volume: str
    kept: List[BackupRecord] = field(default_factory=list)
    deleted: List[BackupRecord] = field(default_factory=list)
    errors: List[RetentionError] = field(default_factory=list)
    pruned_snapshots: List[str] = field(default_factory=list)
    aborted_uploads: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def _completed_at(record: BackupRecord) -> datetime:
    if record.completed_at is None:
        return _EPOCH
    if record.completed_at.tzinfo is None:
        return record.completed_at.replace(tzinfo=timezone.utc)
    return record.completed_at


def _chain_depths(records: List[BackupRecord]) -> Dict[str, int]:
    """Number of bases below each record, following bases present in records."""
    bases = {r.snapshot: r.base for r in records}
    depths = {}
    for name in bases:
        depth = 0
        seen = {name}
        current = bases[name]
        while current in bases and current not in seen:
            seen.add(current)
            depth += 1
            current = bases[current]
        depths[name] = depth
    return depths


def order_newest_first(records: Iterable[BackupRecord]) -> List[BackupRecord]:
    """
    Sort records from newest to oldest.

    Object timestamps have a resolution of one second, so records completed
    within the same second are ordered by snapshot creation order (createtxg)
    and then by their position in the incremental chain.
    """
    records = list(records)
    depths = _chain_depths(records)
    return sorted(
        records,
        key=lambda r: (_completed_at(r), r.createtxg or 0, depths[r.snapshot]),
        reverse=True,
    )


def select_for_deletion(
    records: Iterable[BackupRecord],
    policy: RetentionPolicy,
    now: datetime,
    pinned: Iterable[str] = (),
) -> List[BackupRecord]:
    """
    Compute the records a cleanup cycle may delete.

    A record is protected when it is among the keep_min newest, completed
    within keep_duration of now, its snapshot name matches an exclusion
    pattern or is pinned. Bases of protected incremental records are
    protected too, repeatedly until nothing changes.

    Args:
        records: Backup records of one volume
        policy: Retention policy
        now: Reference time (timezone-aware)
        pinned: Snapshot names that must be kept regardless of the policy

    Returns:
        Deletion candidates, newest first so dependents go before their bases
    """
    ordered = order_newest_first(records)
    cutoff = now - policy.keep_duration
    pinned = set(pinned)

    protected = set()
    for index, record in enumerate(ordered):
        if (
            index < policy.keep_min
            or _completed_at(record) >= cutoff
            or policy.is_excluded(record.snapshot)
            or record.snapshot in pinned
        ):
            protected.add(index)

    changed = True
    while changed:
        changed = False
        bases = {ordered[i].base for i in protected if ordered[i].base}
        for index, record in enumerate(ordered):
            if index not in protected and record.snapshot in bases:
                protected.add(index)
                changed = True

    return [record for index, record in enumerate(ordered) if index not in protected]


class RetentionManager:
    """
    Manages retention policy enforcement for the backups of a volume.

    With a snapshot source, remote records and local snapshots are kept
    consistent: either the local snapshot of every deleted record is
    destroyed (prune_local), or records whose snapshot still exists locally
    are never deleted. Without a source only the bucket is cleaned up.
    """

    def __init__(
        self,
        storage,
        policy: RetentionPolicy,
        source=None,
        prune_local: bool = False,
        stale_upload_age: Optional[timedelta] = None,
    ):
        """
        Initialize retention manager.

        Args:
            storage: S3Storage holding the backups
            policy: Retention policy to enforce
            source: ZfsSource of the volumes, required for prune_local
            prune_local: Destroy the local snapshot of every deleted backup;
                the newest local snapshot is always kept
            stale_upload_age: Abort incomplete multipart uploads older than this
        """
        if prune_local and source is None:
            raise ValueError("prune_local requires a snapshot source")

        self.storage = storage
        self.policy = policy
        self.source = source
        self.prune_local = prune_local
        self.stale_upload_age = stale_upload_age

    def enforce_volume_policy(self, volume: Volume, now: Optional[datetime] = None) -> CleanupResult:
        """
        Enforce the retention policy for one volume.

        Args:
            volume: Volume whose backups are cleaned up
            now: Reference time, defaults to the current time

        Returns:
            CleanupResult with deleted records and collected errors

        Raises:
            StorageError: If the remote records cannot be listed
        """
        now = now or datetime.now(timezone.utc)
        result = CleanupResult(volume=volume.name)

        logger.info(f"Enforcing retention policy for {volume.name}")

        records = self.storage.list_records(volume.name, with_metadata=True)

        local: Optional[List[Snapshot]] = None
        if self.source is not None:
            try:
                local = self.source.list_snapshots(volume)
            except SourceError as e:
                error = RetentionError(f"Failed to list local snapshots of {volume.name}: {e}")
                logger.error(f"{error}, not deleting any backup")
                result.errors.append(error)
                result.kept = list(records)

        if local is not None or self.source is None:
            self._delete_records(records, local or [], now, result)

        if self.stale_upload_age:
            self._abort_stale_uploads(volume, now, result)

        logger.info(
            f"Retention enforcement for {volume.name} complete. "
            f"Kept: {len(result.kept)}, "
            f"Deleted: {len(result.deleted)}, "
            f"Pruned: {len(result.pruned_snapshots)}, "
            f"Errors: {len(result.errors)}"
        )
        return result

    def _pinned(self, local: List[Snapshot]) -> Set[str]:
        if self.source is None or not local:
            return set()
        if self.prune_local:
            # The newest snapshot is the base of the next incremental backup
            return {max(local, key=lambda s: s.createtxg).name}
        return {s.name for s in local}

    def _delete_records(
        self,
        records: List[BackupRecord],
        local: List[Snapshot],
        now: datetime,
        result: CleanupResult,
    ):
        local_by_name = {s.name: s for s in local}
        records = [
            replace(r, createtxg=local_by_name[r.snapshot].createtxg)
            if r.createtxg is None and r.snapshot in local_by_name else r
            for r in records
        ]

        candidates = select_for_deletion(records, self.policy, now, pinned=self._pinned(local))
        candidate_keys = {r.key for r in candidates}
        result.kept = [r for r in records if r.key not in candidate_keys]

        for record in candidates:
            snapshot = local_by_name.get(record.snapshot) if self.prune_local else None
            if snapshot is not None:
                try:
                    self.source.destroy_snapshot(snapshot)
                except SourceError as e:
                    error = RetentionError(
                        f"Failed to destroy {snapshot.full_name}, keeping {record.key}: {e}",
                        key=record.key,
                    )
                    logger.error(str(error))
                    result.errors.append(error)
                    result.kept.append(record)
                    continue
                result.pruned_snapshots.append(snapshot.full_name)
                logger.info(f"Destroyed local snapshot {snapshot.full_name}")

            try:
                self.storage.delete(record.key)
            except StorageError as e:
                error = RetentionError(f"Failed to delete {record.key}: {e}", key=record.key)
                logger.error(str(error))
                result.errors.append(error)
                continue
            result.deleted.append(record)
            logger.info(f"Deleted backup {record.key}")

    def _abort_stale_uploads(self, volume: Volume, now: datetime, result: CleanupResult):
        cutoff = now - self.stale_upload_age

        try:
            uploads = self.storage.list_multipart_uploads(self.storage.volume_prefix(volume.name))
        except StorageError as e:
            result.errors.append(RetentionError(f"Failed to list multipart uploads of {volume.name}: {e}"))
            logger.error(f"Failed to list multipart uploads of {volume.name}: {e}")
            return

        for upload in uploads:
            initiated = upload['Initiated']
            if initiated.tzinfo is None:
                initiated = initiated.replace(tzinfo=timezone.utc)
            if initiated >= cutoff:
                continue
            try:
                self.storage.abort_multipart_upload(upload['Key'], upload['UploadId'])
            except StorageError as e:
                error = RetentionError(f"Failed to abort stale upload of {upload['Key']}: {e}", key=upload['Key'])
                logger.error(str(error))
                result.errors.append(error)
                continue
            result.aborted_uploads.append(upload['Key'])
            logger.info(f"Aborted stale multipart upload of {upload['Key']} (initiated {initiated.isoformat()})")
