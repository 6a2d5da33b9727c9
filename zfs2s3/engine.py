"""
Backup engine - runs backup and cleanup cycles for all matched volumes.

Manages:
- Volume discovery (fresh every fire, so new volumes are picked up)
- One shared worker pool for all volumes and job kinds
- One guard per (volume, job kind): an overlapping fire is coalesced
  into a no-op instead of queued
- One lock per volume: cycles of different kinds on the same volume
  run one after the other
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

from zfs2s3.backup.executor import BackupExecutor
from zfs2s3.backup.inventory import match_volumes
from zfs2s3.backup.retention import RetentionManager
from zfs2s3.backup.sources import SourceError
from zfs2s3.backup.transfer import TransferPipeline
from zfs2s3.models import JobKind, Volume


logger = logging.getLogger(__name__)


class BackupEngine:
    """
    Entry point of scheduled and single-shot cycles.
    """

    def __init__(
        self,
        config,
        source,
        storage,
        pool: Optional[ThreadPoolExecutor] = None,
        cancellation_check: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize backup engine.

        Args:
            config: Validated Config
            source: ZfsSource
            storage: S3Storage
            pool: Worker pool, created from scheduler.max_workers when None
            cancellation_check: Called by transfers before every part;
                raises to abort them
        """
        self.config = config
        self.source = source
        self.storage = storage
        self.pool = pool or ThreadPoolExecutor(
            max_workers=config.scheduler.max_workers,
            thread_name_prefix='zfs2s3',
        )
        self.pipeline = TransferPipeline(
            source,
            storage,
            part_size=config.s3.part_size,
            cancellation_check=cancellation_check,
        )
        self.retention = RetentionManager(
            storage,
            config.cleanup.policy(),
            source=source,
            prune_local=config.cleanup.prune_local,
            stale_upload_age=config.cleanup.stale_upload_age,
        )

        self._guards: Dict[Tuple[str, JobKind], threading.Lock] = {}
        self._guards_lock = threading.Lock()
        self._volume_locks: Dict[str, threading.Lock] = {}
        self._closed = False

    def _guard(self, volume: Volume, kind: JobKind) -> threading.Lock:
        with self._guards_lock:
            return self._guards.setdefault((volume.name, kind), threading.Lock())

    def _volume_lock(self, volume: Volume) -> threading.Lock:
        with self._guards_lock:
            return self._volume_locks.setdefault(volume.name, threading.Lock())

    def matched_volumes(self) -> List[Volume]:
        """
        List local volumes and keep those matching backup.volumes.

        Raises:
            SourceError: If volumes cannot be listed
        """
        volumes = self.source.list_volumes()
        matched = match_volumes(volumes, self.config.backup.volumes)
        logger.debug(f"Matched {len(matched)} of {len(volumes)} volumes")
        return matched

    def run_cycle(self, kind: JobKind, volume: Volume):
        """
        Run one cycle of a job kind for a volume in the calling thread.

        Returns:
            BackupCycleResult for backup kinds, CleanupResult for cleanup
        """
        if kind == JobKind.CLEANUP:
            return self.retention.enforce_volume_policy(volume)

        executor = BackupExecutor(
            volume,
            kind,
            self.source,
            self.storage,
            self.pipeline,
            snapshot_prefix=self.config.backup.snapshot_prefix,
            take_snapshot=self.config.backup.take_snapshots,
        )
        return executor.execute()

    def _guarded_cycle(self, kind: JobKind, volume: Volume, guard: threading.Lock):
        volume_lock = self._volume_lock(volume)
        if not volume_lock.acquire(blocking=False):
            logger.info(f"Waiting for the running cycle of {volume.name} before starting {kind}")
            volume_lock.acquire()
        try:
            return self.run_cycle(kind, volume)
        except Exception:
            logger.exception(f"{kind} cycle for {volume.name} failed")
            return None
        finally:
            volume_lock.release()
            guard.release()

    def _submit_cycles(self, kind: JobKind, volumes: List[Volume]) -> List[Future]:
        futures = []
        for volume in volumes:
            guard = self._guard(volume, kind)
            if not guard.acquire(blocking=False):
                logger.warning(f"{kind} cycle for {volume.name} is still running, skipping this fire")
                continue
            try:
                futures.append(self.pool.submit(self._guarded_cycle, kind, volume, guard))
            except RuntimeError:
                guard.release()
                logger.warning(f"Worker pool is shut down, not starting {kind} cycle for {volume.name}")
                break
        return futures

    def _dispatch(self, kind: JobKind) -> List[Future]:
        try:
            volumes = self.matched_volumes()
        except SourceError as e:
            logger.error(f"Cannot list volumes for {kind} cycle: {e}")
            return []

        if not volumes:
            logger.warning(f"No volume matches {self.config.backup.volumes}, nothing to do for {kind}")
            return []
        return self._submit_cycles(kind, volumes)

    def trigger(self, kind: JobKind) -> Future:
        """
        Start a cycle of ``kind`` for every matched volume without blocking.

        Returns:
            Future resolving to the list of futures of the started cycles
        """
        if self._closed:
            future = Future()
            future.set_result([])
            logger.warning(f"Engine is shut down, ignoring {kind} trigger")
            return future

        logger.info(f"Triggering {kind} cycle")
        return self.pool.submit(self._dispatch, kind)

    def run_once(self, kind: JobKind) -> bool:
        """
        Run one cycle of ``kind`` for every matched volume and wait for it.

        Returns:
            True if every cycle succeeded
        """
        try:
            volumes = self.matched_volumes()
        except SourceError as e:
            logger.error(f"Cannot list volumes: {e}")
            return False

        if not volumes:
            logger.warning(f"No volume matches {self.config.backup.volumes}")
            return True

        futures = self._submit_cycles(kind, volumes)
        results = [f.result() for f in futures]
        success = len(results) == len(volumes) and all(r is not None and r.success for r in results)

        if success:
            logger.info(f"{kind} cycle succeeded for {len(volumes)} volumes")
        else:
            logger.error(f"{kind} cycle failed for at least one volume")
        return success

    def shutdown(self, wait: bool = True):
        """Stop accepting triggers and optionally wait for running cycles."""
        self._closed = True
        self.pool.shutdown(wait=wait)
