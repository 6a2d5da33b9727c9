"""
Inventory and chain resolution.

Pure functions computing what must be sent for a volume from the local
snapshot listing and the remote backup records. Nothing is cached between
cycles: every cycle resolves from scratch, so a crash mid-cycle is healed
by the next resolution.
"""

from fnmatch import fnmatchcase
from typing import Iterable, List, Optional

from zfs2s3.models import BackupRecord, IncrementalChain, PlannedTransfer, Snapshot, TransferMode, Volume


def match_volumes(volumes: Iterable[Volume], patterns: List[str]) -> List[Volume]:
    """
    Keep the volumes whose name matches any of the glob patterns.

    An empty pattern list matches nothing.
    """
    return [v for v in volumes if any(fnmatchcase(v.name, pattern) for pattern in patterns)]


def _ordered(volume: Volume, local: Iterable[Snapshot]) -> List[Snapshot]:
    snapshots = sorted(local, key=lambda s: s.createtxg)
    for snapshot in snapshots:
        if snapshot.volume != volume.name:
            raise ValueError(f"Snapshot {snapshot.full_name} does not belong to volume {volume.name}")
    return snapshots


def missing_snapshots(local: Iterable[Snapshot], records: Iterable[BackupRecord]) -> List[Snapshot]:
    """Local snapshots, in creation order, without a backup record."""
    remote = {r.snapshot for r in records}
    return [s for s in sorted(local, key=lambda s: s.createtxg) if s.name not in remote]


def resolve_transfers(
    volume: Volume,
    local: Iterable[Snapshot],
    records: Iterable[BackupRecord],
    force_full: bool = False,
) -> List[PlannedTransfer]:
    """
    Compute the transfers that bring the remote side up to date.

    Each missing snapshot is sent incrementally from the latest earlier
    local snapshot that is already remote or planned before it in this
    plan, which is the immediate predecessor unless a snapshot is missing
    locally. A missing snapshot without such a base is sent full, so
    nothing is ever skipped.

    Args:
        volume: Volume the snapshots belong to
        local: Local snapshots of the volume, in any order
        records: Remote backup records of the volume
        force_full: Send every missing snapshot as a full stream

    Returns:
        Transfers in creation order; a base always precedes its dependents

    Raises:
        ValueError: If a snapshot belongs to another volume
    """
    snapshots = _ordered(volume, local)
    remote = {r.snapshot for r in records if r.volume == volume.name}

    plan = []
    base: Optional[Snapshot] = None
    for snapshot in snapshots:
        if snapshot.name in remote:
            base = snapshot
            continue

        if force_full or base is None:
            plan.append(PlannedTransfer(snapshot=snapshot, mode=TransferMode.FULL))
        else:
            plan.append(PlannedTransfer(snapshot=snapshot, mode=TransferMode.INCREMENTAL, base=base))
        base = snapshot

    return plan


def split_chains(volume: Volume, transfers: Iterable[PlannedTransfer]) -> List[IncrementalChain]:
    """
    Group a plan into chains of mutually dependent transfers.

    A chain starts at every full transfer and at every incremental transfer
    whose base is already remote.
    """
    chains: List[IncrementalChain] = []
    planned = set()

    for transfer in transfers:
        starts_chain = (
            transfer.mode == TransferMode.FULL
            or transfer.base is None
            or transfer.base.name not in planned
            or not chains
        )
        if starts_chain:
            chains.append(IncrementalChain(volume=volume.name))
        chains[-1].transfers.append(transfer)
        planned.add(transfer.snapshot.name)

    return chains
