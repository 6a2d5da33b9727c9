"""
Unit tests for backup cycles (zfs2s3/backup/executor.py).

Runs cycles against the in-memory ZFS source and a mocked bucket.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from zfs2s3.backup.executor import BackupExecutor, snapshot_name
from zfs2s3.backup.sources import SourceError
from zfs2s3.backup.transfer import TransferCancelled, TransferError, TransferPipeline
from zfs2s3.models import JobKind, TransferMode, Volume
from zfs2s3.utils.units import MIB


VOLUME = Volume('tank/vm-100-disk-0')


@pytest.fixture
def pipeline(fake_source, storage):
    return TransferPipeline(fake_source, storage, part_size=5 * MIB)


def _executor(fake_source, storage, pipeline, kind=JobKind.INCREMENTAL, take_snapshot=False):
    return BackupExecutor(
        VOLUME,
        kind,
        fake_source,
        storage,
        pipeline,
        snapshot_prefix='auto-backup-',
        take_snapshot=take_snapshot,
    )


def _remote(storage):
    return sorted((r.snapshot, r.mode, r.base) for r in storage.list_records(VOLUME.name))


class TestSnapshotName:
    """Test names of snapshots taken by backup cycles."""

    def test_full_name(self):
        now = datetime(2024, 3, 1, 4, 30, 0, tzinfo=timezone.utc)
        assert snapshot_name('auto-backup-', JobKind.FULL, now) == 'auto-backup-2024-03-01T04:30:00Z'

    def test_incremental_name(self):
        now = datetime(2024, 3, 1, 4, 30, 0, tzinfo=timezone.utc)
        assert snapshot_name('auto-backup-', JobKind.INCREMENTAL, now) == 'auto-backup-incremental-2024-03-01T04:30:00Z'


class TestBackupExecutor:
    """Test backup cycles."""

    def test_first_cycle_sends_full_then_incrementals(self, fake_source, storage, pipeline):
        for name in ('s1', 's2', 's3'):
            fake_source.add_snapshot(VOLUME.name, name)

        result = _executor(fake_source, storage, pipeline).execute()

        assert result.success
        assert [r.snapshot for r in result.transferred] == ['s1', 's2', 's3']
        assert _remote(storage) == [
            ('s1', TransferMode.FULL, None),
            ('s2', TransferMode.INCREMENTAL, 's1'),
            ('s3', TransferMode.INCREMENTAL, 's2'),
        ]
        assert fake_source.sent == [('s1', None), ('s2', 's1'), ('s3', 's2')]

    def test_second_cycle_without_changes_transfers_nothing(self, fake_source, storage, pipeline):
        for name in ('s1', 's2'):
            fake_source.add_snapshot(VOLUME.name, name)
        _executor(fake_source, storage, pipeline).execute()
        fake_source.sent.clear()

        result = _executor(fake_source, storage, pipeline).execute()

        assert result.success
        assert result.planned == []
        assert result.transferred == []
        assert fake_source.sent == []

    def test_new_snapshot_is_sent_incrementally(self, fake_source, storage, pipeline):
        fake_source.add_snapshot(VOLUME.name, 's1')
        _executor(fake_source, storage, pipeline).execute()
        fake_source.add_snapshot(VOLUME.name, 's2')

        result = _executor(fake_source, storage, pipeline).execute()

        assert [(r.snapshot, r.base) for r in result.transferred] == [('s2', 's1')]

    def test_takes_snapshot_before_sync(self, fake_source, storage, pipeline):
        result = _executor(fake_source, storage, pipeline, kind=JobKind.INCREMENTAL, take_snapshot=True).execute()

        assert result.snapshot.name.startswith('auto-backup-incremental-')
        assert [r.snapshot for r in result.transferred] == [result.snapshot.name]

    def test_full_cycle_forces_full_transfers(self, fake_source, storage, pipeline):
        fake_source.add_snapshot(VOLUME.name, 's1')
        _executor(fake_source, storage, pipeline).execute()
        fake_source.add_snapshot(VOLUME.name, 's2')

        result = _executor(fake_source, storage, pipeline, kind=JobKind.FULL).execute()

        assert [(r.snapshot, r.mode) for r in result.transferred] == [('s2', TransferMode.FULL)]

    def test_failed_transfer_skips_dependents(self, fake_source, storage, pipeline):
        for name in ('s1', 's2', 's3'):
            fake_source.add_snapshot(VOLUME.name, name)
        fake_source.failing_sends.add('s2')

        result = _executor(fake_source, storage, pipeline).execute()

        assert not result.success
        assert [r.snapshot for r in result.transferred] == ['s1']
        assert [t.snapshot.name for t in result.skipped] == ['s3']
        assert len(result.errors) == 1
        assert _remote(storage) == [('s1', TransferMode.FULL, None)]

    def test_interrupted_cycle_is_retried_from_scratch(self, fake_source, storage, pipeline):
        for name in ('s1', 's2'):
            fake_source.add_snapshot(VOLUME.name, name)
        fake_source.failing_sends.add('s2')
        _executor(fake_source, storage, pipeline).execute()
        fake_source.failing_sends.clear()
        fake_source.sent.clear()

        result = _executor(fake_source, storage, pipeline).execute()

        assert result.success
        assert fake_source.sent == [('s2', 's1')]

    def test_independent_full_transfers_continue_after_failure(self, fake_source, storage, pipeline):
        for name in ('s1', 's2'):
            fake_source.add_snapshot(VOLUME.name, name)
        fake_source.failing_sends.add('s1')

        result = _executor(fake_source, storage, pipeline, kind=JobKind.FULL).execute()

        assert [r.snapshot for r in result.transferred] == ['s2']
        assert result.skipped == []
        assert len(result.errors) == 1

    def test_cancellation_stops_the_cycle(self, fake_source, storage):
        for name in ('s1', 's2'):
            fake_source.add_snapshot(VOLUME.name, name)
        pipeline = MagicMock()
        pipeline.transfer.side_effect = TransferCancelled('Shutdown requested')

        with pytest.raises(TransferCancelled):
            _executor(fake_source, storage, pipeline).execute()

        assert pipeline.transfer.call_count == 1

    def test_source_failure_aborts_cycle(self, storage, pipeline):
        source = MagicMock()
        source.list_snapshots.side_effect = SourceError('zfs unavailable')

        with pytest.raises(SourceError):
            _executor(source, storage, pipeline).execute()

    def test_cleanup_kind_is_rejected(self, fake_source, storage, pipeline):
        with pytest.raises(ValueError):
            _executor(fake_source, storage, pipeline, kind=JobKind.CLEANUP)

    def test_transfer_error_is_reported(self, fake_source, storage):
        fake_source.add_snapshot(VOLUME.name, 's1')
        pipeline = MagicMock()
        pipeline.transfer.side_effect = TransferError('S3 unreachable')

        result = _executor(fake_source, storage, pipeline).execute()

        assert result.errors == [f'{VOLUME.name}@s1: S3 unreachable']
        assert result.completed_at is not None
