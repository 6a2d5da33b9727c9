"""
Object storage for snapshot streams.

S3Storage wraps an S3-compatible bucket. Objects are keyed so that the
listing alone reconstructs every BackupRecord:

    {prefix}{volume}/{snapshot}          full stream
    {prefix}{volume}/{snapshot}@{base}   incremental stream from base

ZFS does not allow '@' or '/' in snapshot names, which keeps the mapping
unambiguous.
"""

import base64
import hashlib
import logging
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from zfs2s3.models import BackupRecord, TransferMode
from zfs2s3.utils.retry import retry_call


logger = logging.getLogger(__name__)

CREATETXG_METADATA = 'createtxg'

TRANSIENT_ERROR_CODES = {
    'RequestTimeout',
    'RequestTimeTooSkewed',
    'SlowDown',
    'InternalError',
    'ServiceUnavailable',
    'Throttling',
    '500',
    '502',
    '503',
    '504',
}


class StorageError(Exception):
    """Raised when storage operation fails."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


def _wrap_error(action: str, e: Exception) -> StorageError:
    if isinstance(e, ClientError):
        error_code = e.response.get('Error', {}).get('Code', 'Unknown')
        return StorageError(f"S3 {action} failed ({error_code}): {e}", transient=error_code in TRANSIENT_ERROR_CODES)
    if isinstance(e, BotoCoreError):
        return StorageError(f"S3 {action} failed: {e}", transient=True)
    return StorageError(f"Failed to {action}: {e}")


def is_transient(error: Exception) -> bool:
    """Tell whether a storage error is worth retrying within the same cycle."""
    return isinstance(error, StorageError) and error.transient


def parse_object_key(key: str) -> Optional[Tuple[str, str, Optional[str]]]:
    """
    Split a key (without bucket prefix) into volume, snapshot and base.

    Returns:
        (volume, snapshot, base) with base None for full streams, or None
        if the key does not follow the naming scheme
    """
    volume, sep, name = key.rpartition('/')
    if not sep or not volume or not name:
        return None
    snapshot, at, base = name.partition('@')
    if not snapshot or (at and not base) or '@' in base:
        return None
    return volume, snapshot, base or None


class S3Storage:
    """
    Handler for snapshot streams in an S3-compatible bucket.

    Every call is bounded by botocore timeouts and retried a few times on
    transient errors.
    """

    def __init__(
        self,
        bucket_name: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        prefix: str = '',
        checksums: bool = True,
        addressing_style: str = 'path',
        connect_timeout: int = 60,
        read_timeout: int = 300,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        client=None,
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            access_key: Access key ID (default credential chain when None)
            secret_key: Secret access key
            region: Region name (default: us-east-1)
            endpoint_url: Endpoint of an S3-compatible service
            prefix: Key prefix for all objects
            checksums: Send SHA-256 checksums with every part
            addressing_style: botocore addressing style (auto, path, virtual)
            connect_timeout: Seconds to wait for a connection
            read_timeout: Seconds to wait for a response
            max_attempts: Attempts per call before an error surfaces
            retry_delay: Seconds before the first retry
            client: Preconfigured boto3 client (tests)
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix
        self.checksums = checksums
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

        if client is not None:
            self.s3_client = client
            return

        boto_config = BotoConfig(
            region_name=region,
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={'max_attempts': 1, 'mode': 'standard'},
            s3={'addressing_style': addressing_style},
            request_checksum_calculation='when_required',
            response_checksum_validation='when_required',
        )

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=boto_config,
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _call(self, action: str, method: str, **kwargs) -> Dict[str, Any]:
        def attempt():
            try:
                return getattr(self.s3_client, method)(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise _wrap_error(action, e) from e

        return retry_call(
            attempt,
            attempts=self.max_attempts,
            delay=self.retry_delay,
            should_retry=is_transient,
            description=f"S3 {action}",
        )

    def object_key(self, volume: str, snapshot: str, base: Optional[str] = None) -> str:
        """Return the object key of a snapshot stream."""
        key = f"{self.prefix}{volume}/{snapshot}"
        if base:
            key += f"@{base}"
        return key

    def volume_prefix(self, volume: str) -> str:
        return f"{self.prefix}{volume}/"

    def list_objects(self, prefix: str) -> list:
        """
        List objects in S3 with given prefix.

        Args:
            prefix: S3 key prefix to filter by

        Returns:
            List of dicts with 'Key', 'LastModified', 'Size' and 'ETag' keys

        Raises:
            StorageError: If listing fails
        """
        def list_all():
            objects = []
            try:
                paginator = self.s3_client.get_paginator('list_objects_v2')
                for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                    for obj in page.get('Contents', []):
                        objects.append({
                            'Key': obj['Key'],
                            'LastModified': obj['LastModified'],
                            'Size': obj['Size'],
                            'ETag': obj.get('ETag', '').strip('"') or None,
                        })
            except (ClientError, BotoCoreError) as e:
                raise _wrap_error('list', e) from e
            return objects

        return retry_call(
            list_all,
            attempts=self.max_attempts,
            delay=self.retry_delay,
            should_retry=is_transient,
            description='S3 list',
        )

    def list_records(self, volume: str, with_metadata: bool = False) -> List[BackupRecord]:
        """
        Reconstruct the backup records of a volume from the bucket listing.

        Keys that do not follow the naming scheme, and objects of nested
        datasets sharing the prefix, are ignored.

        Args:
            volume: Volume name
            with_metadata: Also read the snapshot creation order of every
                record (one HEAD request per object)

        Raises:
            StorageError: If listing fails
        """
        records = []
        for obj in self.list_objects(self.volume_prefix(volume)):
            key = obj['Key'][len(self.prefix):]
            parsed = parse_object_key(key)
            if parsed is None:
                logger.debug(f"Ignoring object with unexpected key: {obj['Key']}")
                continue
            key_volume, snapshot, base = parsed
            if key_volume != volume:
                continue
            records.append(BackupRecord(
                volume=key_volume,
                snapshot=snapshot,
                key=obj['Key'],
                mode=TransferMode.INCREMENTAL if base else TransferMode.FULL,
                base=base,
                size=obj['Size'],
                completed_at=obj['LastModified'],
                checksum=obj['ETag'],
                createtxg=self.object_createtxg(obj['Key']) if with_metadata else None,
            ))
        return records

    def object_createtxg(self, s3_key: str) -> Optional[int]:
        """
        Read the snapshot creation order stored with an object.

        Returns:
            createtxg, or None for objects uploaded without it

        Raises:
            StorageError: If the object cannot be read
        """
        response = self._call('head object', 'head_object', Bucket=self.bucket_name, Key=s3_key)
        value = response.get('Metadata', {}).get(CREATETXG_METADATA)
        try:
            return int(value) if value is not None else None
        except ValueError:
            logger.warning(f"Ignoring invalid {CREATETXG_METADATA} metadata on {s3_key}: {value!r}")
            return None

    def create_multipart_upload(self, key: str, createtxg: Optional[int] = None) -> str:
        """
        Start a multipart upload and return its upload ID.

        The creation order of the snapshot is stored as object metadata so
        cleanup can order backups completed within the same second.
        """
        kwargs = {'Bucket': self.bucket_name, 'Key': key}
        if createtxg is not None:
            kwargs['Metadata'] = {CREATETXG_METADATA: str(createtxg)}
        if self.checksums:
            kwargs['ChecksumAlgorithm'] = 'SHA256'
        response = self._call('create multipart upload', 'create_multipart_upload', **kwargs)
        return response['UploadId']

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> Dict[str, Any]:
        """
        Upload one part of a multipart upload.

        Returns:
            Part descriptor for complete_multipart_upload
        """
        kwargs = {
            'Bucket': self.bucket_name,
            'Key': key,
            'PartNumber': part_number,
            'UploadId': upload_id,
            'Body': data,
        }
        checksum = None
        if self.checksums:
            checksum = base64.b64encode(hashlib.sha256(data).digest()).decode('ascii')
            kwargs['ChecksumAlgorithm'] = 'SHA256'
            kwargs['ChecksumSHA256'] = checksum

        response = self._call(f'upload part {part_number}', 'upload_part', **kwargs)

        part = {'PartNumber': part_number, 'ETag': response['ETag']}
        if checksum:
            part['ChecksumSHA256'] = response.get('ChecksumSHA256', checksum)
        return part

    def complete_multipart_upload(self, key: str, upload_id: str, parts: List[Dict[str, Any]]) -> Optional[str]:
        """
        Finalize a multipart upload into one durable object.

        Returns:
            ETag of the completed object
        """
        response = self._call(
            'complete multipart upload',
            'complete_multipart_upload',
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={'Parts': parts},
        )
        etag = response.get('ETag')
        return etag.strip('"') if etag else None

    def abort_multipart_upload(self, key: str, upload_id: str):
        """Abort a multipart upload and discard its uploaded parts."""
        self._call(
            'abort multipart upload',
            'abort_multipart_upload',
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id,
        )

    def list_multipart_uploads(self, prefix: str) -> List[Dict[str, Any]]:
        """
        List incomplete multipart uploads under a prefix.

        Returns:
            List of dicts with 'Key', 'UploadId' and 'Initiated' keys
        """
        def list_all():
            uploads = []
            try:
                paginator = self.s3_client.get_paginator('list_multipart_uploads')
                for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                    for upload in page.get('Uploads', []):
                        uploads.append({
                            'Key': upload['Key'],
                            'UploadId': upload['UploadId'],
                            'Initiated': upload['Initiated'],
                        })
            except (ClientError, BotoCoreError) as e:
                raise _wrap_error('list multipart uploads', e) from e
            return uploads

        return retry_call(
            list_all,
            attempts=self.max_attempts,
            delay=self.retry_delay,
            should_retry=is_transient,
            description='S3 list multipart uploads',
        )

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Args:
            s3_key: S3 object key to delete

        Raises:
            StorageError: If deletion fails
        """
        self._call('delete', 'delete_object', Bucket=self.bucket_name, Key=s3_key)

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")
