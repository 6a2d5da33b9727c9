"""
Snapshot source backed by the local ``zfs`` command line tool.

Provides:
- ZfsSource: list volumes and snapshots, create/destroy snapshots and
  open send streams
- SendStream: file-like reader over the output of ``zfs send``
"""

import logging
import shlex
import subprocess
import tempfile
from datetime import datetime, timezone
from typing import List, Optional

from zfs2s3.models import Snapshot, Volume


logger = logging.getLogger(__name__)


class SourceError(Exception):
    """Raised when the volume manager is unreachable or returns malformed output."""
    pass


class SendStream:
    """
    Readable stream over a running ``zfs send`` process.

    End of stream is only reported after the process exited successfully;
    a failing ``zfs send`` raises SourceError from ``read`` instead of
    returning a short, truncated stream.
    """

    def __init__(self, process: subprocess.Popen, command: List[str], stderr_file, timeout: int):
        self._process = process
        self._command = command
        self._stderr_file = stderr_file
        self._timeout = timeout
        self._finished = False
        self.bytes_read = 0

    def read(self, size: int) -> bytes:
        """
        Read up to ``size`` bytes.

        Returns:
            Data, or b'' once the stream is exhausted and ``zfs send`` succeeded

        Raises:
            SourceError: If ``zfs send`` failed or did not exit in time
        """
        if self._finished:
            return b''

        data = self._process.stdout.read(size)
        if data:
            self.bytes_read += len(data)
            return data

        self._finish()
        return b''

    def _finish(self):
        self._finished = True
        try:
            returncode = self._process.wait(timeout=self._timeout)
        except subprocess.TimeoutExpired as e:
            self._process.kill()
            self._process.wait()
            raise SourceError(f"{shlex.join(self._command)} did not exit after end of stream") from e

        if returncode != 0:
            self._stderr_file.seek(0)
            stderr = self._stderr_file.read().decode('utf-8', errors='replace').strip()
            raise SourceError(f"{shlex.join(self._command)} exited {returncode}: {stderr}")

    def close(self):
        """Terminate ``zfs send`` if it is still running and release its pipes."""
        if self._process.poll() is None:
            self._process.kill()
            self._process.wait()
        if self._process.stdout:
            self._process.stdout.close()
        self._stderr_file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class ZfsSource:
    """
    Volume snapshot source using the ``zfs`` command.

    Every listing command runs with a timeout; send streams are bounded by
    the object store timeouts of the consumer.
    """

    def __init__(self, command: str = 'zfs', timeout: int = 120):
        """
        Initialize ZFS source.

        Args:
            command: Path or name of the zfs binary
            timeout: Seconds a zfs command may run before it is killed
        """
        self.command = command
        self.timeout = timeout

    def _run(self, args: List[str]) -> str:
        """
        Run a zfs subcommand and return its stdout.

        Raises:
            SourceError: If the command cannot start, times out or fails
        """
        cmd = [self.command] + args
        logger.debug(f"Running {shlex.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise SourceError(f"{shlex.join(cmd)} timed out after {self.timeout}s") from e
        except OSError as e:
            raise SourceError(f"Failed to run {shlex.join(cmd)}: {e}") from e

        if result.returncode != 0:
            raise SourceError(f"{shlex.join(cmd)} exited {result.returncode}: {result.stderr.strip()}")
        return result.stdout

    def list_volumes(self) -> List[Volume]:
        """Return all ZFS volumes on this host."""
        output = self._run(['list', '-H', '-o', 'name', '-t', 'volume'])
        return [Volume(name=line.strip()) for line in output.splitlines() if line.strip()]

    def list_snapshots(self, volume: Volume) -> List[Snapshot]:
        """
        Return the snapshots of a volume, oldest first.

        Raises:
            SourceError: If the listing fails or a line cannot be parsed
        """
        output = self._run([
            'list', '-H', '-p',
            '-o', 'name,createtxg,creation',
            '-t', 'snapshot',
            '-s', 'createtxg',
            '-d', '1',
            volume.name,
        ])

        snapshots = []
        for line in output.splitlines():
            if not line.strip():
                continue
            snapshot = self._parse_snapshot_line(line)
            # -d 1 already limits the listing to this volume
            if snapshot.volume == volume.name:
                snapshots.append(snapshot)

        snapshots.sort(key=lambda s: s.createtxg)
        return snapshots

    @staticmethod
    def _parse_snapshot_line(line: str) -> Snapshot:
        parts = line.split('\t')
        if len(parts) != 3:
            raise SourceError(f"Malformed snapshot listing line: {line!r}")

        full_name, createtxg, creation = parts
        volume, _, name = full_name.partition('@')
        if not volume or not name:
            raise SourceError(f"Not a snapshot: {full_name!r}")

        try:
            return Snapshot(
                volume=volume,
                name=name,
                createtxg=int(createtxg),
                creation=datetime.fromtimestamp(int(creation), tz=timezone.utc),
            )
        except (ValueError, OverflowError, OSError) as e:
            raise SourceError(f"Malformed snapshot listing line: {line!r}") from e

    def create_snapshot(self, volume: Volume, name: str) -> Snapshot:
        """Take a snapshot ``volume@name``."""
        snapshot = Snapshot(volume=volume.name, name=name)
        self._run(['snapshot', snapshot.full_name])
        logger.info(f"Created snapshot {snapshot.full_name}")
        return snapshot

    def destroy_snapshot(self, snapshot: Snapshot):
        """Destroy a single snapshot."""
        self._run(['destroy', snapshot.full_name])
        logger.info(f"Destroyed snapshot {snapshot.full_name}")

    def open_send_stream(self, snapshot: Snapshot, base: Optional[Snapshot] = None) -> SendStream:
        """
        Start ``zfs send`` for a snapshot.

        Args:
            snapshot: Snapshot to send
            base: Earlier snapshot of the same volume for an incremental stream

        Returns:
            SendStream to read the stream from; close it when done

        Raises:
            SourceError: If the process cannot be started
        """
        if base is not None and base.volume != snapshot.volume:
            raise SourceError(f"Base {base.full_name} is not on the volume of {snapshot.full_name}")

        cmd = [self.command, 'send']
        if base is not None:
            cmd += ['-i', base.full_name]
        cmd.append(snapshot.full_name)

        logger.debug(f"Starting {shlex.join(cmd)}")
        stderr_file = tempfile.TemporaryFile()
        try:
            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr_file)
        except OSError as e:
            stderr_file.close()
            raise SourceError(f"Failed to start {shlex.join(cmd)}: {e}") from e

        return SendStream(process, cmd, stderr_file, self.timeout)
