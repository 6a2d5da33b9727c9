from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from fnmatch import fnmatchcase
from typing import List, Optional


class JobKind(str, Enum):
    """Kind of cycle a schedule triggers"""
    FULL = 'full'
    INCREMENTAL = 'incremental'
    CLEANUP = 'cleanup'

    def __str__(self):
        return self.value


class TransferMode(str, Enum):
    """How a snapshot is sent to the object store"""
    FULL = 'full'
    INCREMENTAL = 'incremental'

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class Volume:
    """A ZFS volume selected for backup, e.g. tank/vm-100-disk-0"""
    name: str

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class Snapshot:
    """A local ZFS snapshot: volume@name.

    createtxg is the transaction group the snapshot was created in, which
    orders snapshots of a volume strictly by creation.
    """
    volume: str
    name: str
    createtxg: int = 0
    creation: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f'{self.volume}@{self.name}'

    def __str__(self):
        return self.full_name


@dataclass(frozen=True)
class BackupRecord:
    """Remote presence of one snapshot, derived from the object listing"""
    volume: str
    snapshot: str
    key: str
    mode: TransferMode
    base: Optional[str] = None
    size: int = 0
    completed_at: Optional[datetime] = None
    checksum: Optional[str] = None
    createtxg: Optional[int] = None

    @property
    def is_incremental(self) -> bool:
        return self.mode == TransferMode.INCREMENTAL

    def __repr__(self):
        return f'<BackupRecord {self.key}>'


@dataclass(frozen=True)
class PlannedTransfer:
    """One snapshot to send, with the snapshot it is incremental from"""
    snapshot: Snapshot
    mode: TransferMode
    base: Optional[Snapshot] = None

    def describe(self) -> str:
        if self.base is None:
            return f'full {self.snapshot.full_name}'
        return f'incremental {self.snapshot.full_name} from @{self.base.name}'


@dataclass
class IncrementalChain:
    """Transfers of one volume where each element depends on the previous one"""
    volume: str
    transfers: List[PlannedTransfer] = field(default_factory=list)

    @property
    def snapshots(self) -> List[Snapshot]:
        return [t.snapshot for t in self.transfers]

    def __len__(self):
        return len(self.transfers)


@dataclass
class RetentionPolicy:
    """Which remote backups a cleanup cycle must keep.

    A record is kept when it is among the keep_min newest, newer than
    keep_duration, or its snapshot name matches one of the exclude globs.
    """
    keep_min: int = 0
    keep_duration: timedelta = timedelta(0)
    exclude: List[str] = field(default_factory=list)

    def is_excluded(self, snapshot_name: str) -> bool:
        return any(fnmatchcase(snapshot_name, pattern) for pattern in self.exclude)


@dataclass(frozen=True)
class ScheduleSpec:
    """A cron expression bound to the job kind it triggers"""
    kind: JobKind
    expression: str

    def __str__(self):
        return f'{self.kind} ({self.expression.strip()})'
