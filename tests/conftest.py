"""
Shared pytest fixtures for zfs2s3 tests.

This module provides fixtures for:
- Mocked S3 bucket (moto) and S3Storage handlers
- In-memory ZFS source with snapshot streams
- Snapshot and backup record factories
- Parsed configuration
"""

import io
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from moto import mock_aws

from zfs2s3.backup.sources import SourceError
from zfs2s3.backup.storage import S3Storage
from zfs2s3.config import parse_config
from zfs2s3.models import BackupRecord, Snapshot, TransferMode, Volume


BUCKET = 'test-bucket'

CONFIG_TOML = """
[backup]
schedule = "0 0 5 * * Sun *"
incremental = "0 30 4 * * Mon-Sat *"
volumes = ["tank/vm-*"]

[cleanup]
schedule = "0 0 6 * * * *"
keep_min = 2
keep_duration = "30d"
exclude = ["keep-*"]

[s3]
bucket = "test-bucket"
max_snapshot_size = "50GiB"
"""


class FakeZfsSource:
    """In-memory stand-in for ZfsSource."""

    def __init__(self, volumes=None):
        self.volumes = {}
        self.data = {}
        self.destroyed = []
        self.sent = []
        self.failing_sends = set()
        self._txg = 100
        for name in volumes or []:
            self.volumes[name] = []

    def add_snapshot(self, volume, name, data=None, creation=None):
        self._txg += 1
        snapshot = Snapshot(
            volume=volume,
            name=name,
            createtxg=self._txg,
            creation=creation or datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        self.volumes.setdefault(volume, []).append(snapshot)
        self.data[snapshot.full_name] = data if data is not None else f'stream of {name}'.encode()
        return snapshot

    def list_volumes(self):
        return [Volume(name) for name in sorted(self.volumes)]

    def list_snapshots(self, volume):
        return list(self.volumes.get(volume.name, []))

    def create_snapshot(self, volume, name):
        return self.add_snapshot(volume.name, name)

    def destroy_snapshot(self, snapshot):
        self.volumes[snapshot.volume] = [s for s in self.volumes[snapshot.volume] if s.name != snapshot.name]
        self.destroyed.append(snapshot.full_name)

    def open_send_stream(self, snapshot, base=None):
        self.sent.append((snapshot.name, base.name if base else None))
        if snapshot.name in self.failing_sends:
            return FailingStream(b'partial data')
        return io.BytesIO(self.data[snapshot.full_name])


class FailingStream(io.BytesIO):
    """Stream that returns some data and then fails like a crashed zfs send."""

    def read(self, size=-1):
        data = super().read(size)
        if not data:
            raise SourceError('zfs send exited 1: broken pipe')
        return data


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def s3_client(aws_credentials):
    """boto3 client on a mocked S3 with an empty test bucket."""
    with mock_aws():
        client = boto3.client('s3', region_name='us-east-1')
        client.create_bucket(Bucket=BUCKET)
        yield client


@pytest.fixture
def storage(s3_client):
    """S3Storage on the mocked bucket, without checksums or retry delays."""
    return S3Storage(
        bucket_name=BUCKET,
        access_key='testing',
        secret_key='testing',
        region='us-east-1',
        checksums=False,
        retry_delay=0,
    )


@pytest.fixture
def fake_source():
    return FakeZfsSource(volumes=['tank/vm-100-disk-0'])


@pytest.fixture
def make_source():
    """Factory for in-memory sources with the given volumes."""
    def _make(*volumes):
        return FakeZfsSource(volumes=list(volumes))
    return _make


@pytest.fixture
def volume():
    return Volume('tank/vm-100-disk-0')


@pytest.fixture
def make_snapshots(volume):
    """Factory for snapshots s1..sn of the test volume in creation order."""
    def _make(*names):
        return [
            Snapshot(volume=volume.name, name=name, createtxg=index + 1)
            for index, name in enumerate(names)
        ]
    return _make


@pytest.fixture
def make_record(volume):
    """Factory for backup records completed some seconds before a reference time."""
    reference = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def _make(snapshot, age_seconds=0, base=None, createtxg=None):
        key = f'{volume.name}/{snapshot}' + (f'@{base}' if base else '')
        return BackupRecord(
            volume=volume.name,
            snapshot=snapshot,
            key=key,
            mode=TransferMode.INCREMENTAL if base else TransferMode.FULL,
            base=base,
            size=1024,
            completed_at=reference - timedelta(seconds=age_seconds),
            createtxg=createtxg,
        )

    _make.reference = reference
    return _make


@pytest.fixture
def config_text():
    return CONFIG_TOML


@pytest.fixture
def config(config_text):
    return parse_config(config_text)
