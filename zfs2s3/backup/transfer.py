"""
Streaming transfer of one snapshot into one multipart upload.

Memory use is bounded by the part size: the send stream is read one part
at a time and each part is uploaded before the next one is read. The
BackupRecord is only built after the upload was completed, and every
failure aborts the multipart upload first.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from zfs2s3.models import BackupRecord, PlannedTransfer
from zfs2s3.utils.units import GIB, MIB, format_size


logger = logging.getLogger(__name__)

MAX_PARTS = 10000
MIN_PART_SIZE = 5 * MIB
MAX_PART_SIZE = 5 * GIB
READ_CHUNK_SIZE = 1 * MIB


class TransferError(Exception):
    """Raised when a snapshot could not be transferred."""
    pass


class CapacityError(TransferError):
    """Raised when a stream does not fit into the maximum number of parts."""
    pass


class TransferCancelled(TransferError):
    """Raised by a cancellation check to abort a running transfer."""
    pass


def select_part_size(
    max_object_size: int,
    max_parts: int = MAX_PARTS,
    min_part_size: int = MIN_PART_SIZE,
    max_part_size: int = MAX_PART_SIZE,
) -> int:
    """
    Choose the multipart part size for streams of unknown length.

    The result is the smallest MiB-aligned size, no smaller than
    ``min_part_size``, for which ``max_parts`` parts hold ``max_object_size``.

    Args:
        max_object_size: Largest stream that must fit, in bytes
        max_parts: Part count limit of the object store
        min_part_size: Smallest legal part size
        max_part_size: Largest legal part size

    Returns:
        Part size in bytes

    Raises:
        CapacityError: If no legal part size can hold max_object_size
    """
    if max_object_size <= 0:
        raise CapacityError(f"Maximum object size must be positive, got {max_object_size}")
    if max_parts <= 0:
        raise CapacityError(f"Maximum part count must be positive, got {max_parts}")

    needed = -(-max_object_size // max_parts)
    part_size = -(-needed // MIB) * MIB
    part_size = max(part_size, min_part_size)

    if part_size > max_part_size:
        raise CapacityError(
            f"{format_size(max_object_size)} does not fit into {max_parts} parts "
            f"of at most {format_size(max_part_size)}"
        )
    return part_size


def _read_part(stream, part_size: int) -> bytes:
    """Read from stream until part_size bytes are buffered or it is exhausted."""
    chunks = []
    remaining = part_size
    while remaining > 0:
        data = stream.read(min(remaining, READ_CHUNK_SIZE))
        if not data:
            break
        chunks.append(data)
        remaining -= len(data)
    return b''.join(chunks)


class TransferPipeline:
    """
    Moves snapshots from the volume source to the object store.
    """

    def __init__(
        self,
        source,
        storage,
        part_size: int,
        max_parts: int = MAX_PARTS,
        cancellation_check: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize transfer pipeline.

        Args:
            source: ZfsSource providing send streams
            storage: S3Storage receiving the multipart uploads
            part_size: Bytes per part
            max_parts: Part count limit of the object store
            cancellation_check: Optional function called before every part;
                raises to abort the transfer
        """
        self.source = source
        self.storage = storage
        self.part_size = part_size
        self.max_parts = max_parts
        self.cancellation_check = cancellation_check

    def transfer(self, planned: PlannedTransfer) -> BackupRecord:
        """
        Stream one snapshot into a new object.

        Args:
            planned: Transfer to perform

        Returns:
            BackupRecord of the completed object

        Raises:
            CapacityError: If the stream needs more than max_parts parts
            TransferError: For any other failure; the upload was aborted
        """
        snapshot = planned.snapshot
        base_name = planned.base.name if planned.base is not None else None
        key = self.storage.object_key(snapshot.volume, snapshot.name, base_name)
        createtxg = snapshot.createtxg or None

        logger.info(f"Starting {planned.describe()} -> {key}")

        try:
            stream = self.source.open_send_stream(snapshot, planned.base)
        except Exception as e:
            raise TransferError(f"Failed to open send stream for {snapshot.full_name}: {e}") from e

        upload_id = None
        try:
            with stream:
                upload_id = self.storage.create_multipart_upload(key, createtxg=createtxg)
                parts, size = self._upload_parts(stream, key, upload_id)
                checksum = self.storage.complete_multipart_upload(key, upload_id, parts)
        except BaseException as e:
            if upload_id is not None:
                self._abort(key, upload_id)
            if not isinstance(e, Exception) or isinstance(e, TransferError):
                raise
            raise TransferError(f"Transfer of {snapshot.full_name} failed: {e}") from e

        record = BackupRecord(
            volume=snapshot.volume,
            snapshot=snapshot.name,
            key=key,
            mode=planned.mode,
            base=base_name,
            size=size,
            completed_at=datetime.now(timezone.utc),
            checksum=checksum,
            createtxg=createtxg,
        )
        logger.info(f"Completed {planned.describe()} ({format_size(size)} in {len(parts)} parts)")
        return record

    def _upload_parts(self, stream, key: str, upload_id: str):
        parts: List[dict] = []
        size = 0
        part_number = 1

        while True:
            if self.cancellation_check:
                self.cancellation_check()

            data = _read_part(stream, self.part_size)
            if not data and parts:
                break
            if part_number > self.max_parts:
                raise CapacityError(
                    f"Stream for {key} exceeds {self.max_parts} parts of {format_size(self.part_size)}"
                )

            parts.append(self.storage.upload_part(key, upload_id, part_number, data))
            size += len(data)
            logger.debug(f"Uploaded part {part_number} of {key} ({format_size(len(data))})")

            if len(data) < self.part_size:
                # Short part means the stream is exhausted and zfs send exited cleanly
                break
            part_number += 1

        return parts, size

    def _abort(self, key: str, upload_id: str):
        try:
            self.storage.abort_multipart_upload(key, upload_id)
            logger.info(f"Aborted multipart upload of {key}")
        except Exception as e:
            logger.error(f"Failed to abort multipart upload of {key} ({upload_id}): {e}")
